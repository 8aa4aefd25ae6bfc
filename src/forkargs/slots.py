"""Slot table construction for forkargs."""

from __future__ import annotations

import os
import re
import shlex
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from asyncio.subprocess import Process


# Hostnames that mean "run on this machine"
LOCAL_HOSTNAMES = frozenset({"localhost", "-"})

_ENTRY_RE = re.compile(
    r"""
    ^(?:(?P<count>\d+)\*)?        # optional "N*"
    (?P<host>[A-Za-z0-9._@-]*)    # optional hostname, may carry user@
    (?::(?P<workdir>.*))?$        # optional ":workdir"
    """,
    re.VERBOSE,
)

_TILDE_PREFIX_RE = re.compile(r"^~[A-Za-z0-9._-]*(?:/|$)")


class SlotSpecError(ValueError):
    """Raised when a slot specification does not match the grammar."""


def escape_arg(arg: str) -> str:
    """Quote a literal argument so a remote shell passes it through unchanged.

    Tokens made only of shell-safe characters (letters, digits, ``_-/.`` and
    a few others) come back as they are, so escaping is a no-op for them.
    """
    return shlex.quote(arg)


def _escape_workdir(workdir: str) -> str:
    # Leave a leading ~ or ~user unquoted so the remote shell expands it.
    match = _TILDE_PREFIX_RE.match(workdir)
    if not match:
        return escape_arg(workdir)
    prefix, rest = match.group(0), workdir[match.end():]
    return prefix + (escape_arg(rest) if rest else "")


@dataclass
class SlotEntry:
    """One parsed ``[count*][host][:workdir]`` entry."""

    count: int
    hostname: str | None
    workdir: str | None


@dataclass
class Slot:
    """A single concurrency unit bound to a local or remote target."""

    id: int
    command: list[str]
    hostname: str | None = None
    workdir: str | None = None
    remote: bool = False
    faulted: bool = False
    process: Process | None = field(default=None, repr=False)
    job: str | None = None

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process is not None else None

    @property
    def busy(self) -> bool:
        return self.process is not None

    @property
    def usable(self) -> bool:
        return not self.faulted and self.process is None

    @property
    def target(self) -> str:
        return self.hostname or "localhost"

    def argv(self, job: str) -> list[str]:
        """Command line for running ``job`` in this slot."""
        return [*self.command, escape_arg(job) if self.remote else job]


def parse_slot_spec(spec: str) -> list[SlotEntry]:
    """Parse a comma separated slot specification into entries."""
    entries = []
    for raw in spec.split(","):
        raw = raw.strip()
        if not raw:
            raise SlotSpecError(f"Empty entry in slot specification: {spec!r}")

        match = _ENTRY_RE.match(raw)
        if not match:
            raise SlotSpecError(f"Malformed slot entry: {raw!r}")

        count_str, host, workdir = match.group("count", "host", "workdir")
        if count_str is None and host.isdigit():
            # A bare "4" is a count of local slots
            count_str, host = host, ""

        count = int(count_str) if count_str is not None else 1
        if count <= 0:
            raise SlotSpecError(f"Bad slot count ({count}) in entry {raw!r}")
        if workdir is not None and not workdir:
            raise SlotSpecError(f"Empty working directory in entry {raw!r}")

        hostname = None if not host or host in LOCAL_HOSTNAMES else host
        entries.append(SlotEntry(count=count, hostname=hostname, workdir=workdir))

    return entries


def default_slot_count() -> int:
    """Number of local slots used when no specification is given."""
    return os.cpu_count() or 1


def build_slots(
    spec: str | None,
    command: Sequence[str],
    remote_shell: Sequence[str] = ("ssh",),
) -> list[Slot]:
    """Build the ordered slot table for ``command``.

    Every entry yields ``count`` independent Slot records. Remote slots get a
    command prefix of the remote shell, the host, an optional ``cd`` clause,
    and the fixed arguments escaped for the remote shell.
    """
    if not command:
        raise SlotSpecError("No command given")

    if spec is None:
        entries = [SlotEntry(count=default_slot_count(), hostname=None, workdir=None)]
    else:
        entries = parse_slot_spec(spec)

    slots: list[Slot] = []
    for entry in entries:
        for _ in range(entry.count):
            slots.append(_make_slot(len(slots), entry, command, remote_shell))
    return slots


def _make_slot(
    slot_id: int,
    entry: SlotEntry,
    command: Sequence[str],
    remote_shell: Sequence[str],
) -> Slot:
    if entry.hostname is None:
        workdir = os.path.expanduser(entry.workdir) if entry.workdir else None
        return Slot(id=slot_id, command=list(command), workdir=workdir)

    template = [*remote_shell, entry.hostname]
    if entry.workdir:
        template += ["cd", _escape_workdir(entry.workdir), ";"]
    template += [escape_arg(arg) for arg in command]
    return Slot(
        id=slot_id,
        command=template,
        hostname=entry.hostname,
        workdir=entry.workdir,
        remote=True,
    )
