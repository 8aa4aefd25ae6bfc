"""Remote host reachability checks."""

from __future__ import annotations

import asyncio
import logging
from typing import Sequence

import asyncssh

from .scheduler import DispatchEvent, EventCallback, EventKind
from .slots import Slot

logger = logging.getLogger(__name__)

PROBE_TRANSPORTS = ("shell", "asyncssh")


class Prober:
    """Runs a no-op command on every distinct remote host and faults bad ones.

    Distinct hosts are probed concurrently. Slots that share a host share the
    outcome of that host's single probe.
    """

    def __init__(
        self,
        remote_shell: Sequence[str] = ("ssh",),
        transport: str = "shell",
        timeout: float = 30,
        on_event: EventCallback | None = None,
    ):
        if transport not in PROBE_TRANSPORTS:
            raise ValueError(f"Unknown probe transport: {transport!r}")
        self.remote_shell = list(remote_shell)
        self.transport = transport
        self.timeout = timeout
        self.on_event = on_event

    async def probe(self, slots: list[Slot]) -> int:
        """Mark slots on unreachable hosts as faulted. Returns the faulted count."""
        hosts: list[str] = []
        for slot in slots:
            if slot.remote and slot.hostname not in hosts:
                hosts.append(slot.hostname)

        results = await asyncio.gather(*(self._check(host) for host in hosts))
        errors = dict(zip(hosts, results))

        for slot in slots:
            error = errors.get(slot.hostname) if slot.remote else None
            if error is None:
                continue
            slot.faulted = True
            if self.on_event:
                self.on_event(
                    DispatchEvent(EventKind.FAULT_DETECTED, slot=slot, message=error)
                )

        for host in hosts:
            if errors[host] is not None:
                logger.warning("Host %s is unreachable (%s); its slots are disabled", host, errors[host])

        return sum(1 for slot in slots if slot.faulted)

    async def _check(self, host: str) -> str | None:
        """Return None if ``host`` answered, otherwise a reason."""
        if self.transport == "asyncssh":
            return await self._check_asyncssh(host)
        return await self._check_shell(host)

    async def _check_shell(self, host: str) -> str | None:
        argv = [*self.remote_shell, host, "true"]
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            return f"cannot run {argv[0]}: {e}"

        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return f"no answer after {self.timeout}s"

        if proc.returncode != 0:
            detail = stderr.decode(errors="replace").strip()
            message = f"probe exited with status {proc.returncode}"
            return f"{message}: {detail}" if detail else message
        return None

    async def _check_asyncssh(self, host: str) -> str | None:
        username, _, hostname = host.rpartition("@")
        options = {"username": username} if username else {}
        try:
            async with asyncssh.connect(
                hostname,
                **options,
                known_hosts=None,  # Reachability only; the real jobs go through the remote shell
                connect_timeout=self.timeout,
            ) as conn:
                result = await conn.run("true", check=False)
        except asyncssh.Error as e:
            return f"SSH error: {e}"
        except asyncio.TimeoutError:
            return f"no answer after {self.timeout}s"
        except OSError as e:
            return f"connection error: {e}"

        if result.exit_status != 0:
            return f"probe exited with status {result.exit_status}"
        return None
