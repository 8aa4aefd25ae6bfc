"""Slot-based job scheduler for forkargs."""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import signal
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from collections.abc import AsyncIterable, AsyncIterator, Iterable, Iterator
from typing import IO, Callable

from .interrupt import InterruptController, InterruptLevel
from .slots import Slot

logger = logging.getLogger(__name__)


class SchedulerError(RuntimeError):
    """Fatal scheduler or OS failure; the run cannot continue."""


class AllSlotsFaultedError(SchedulerError):
    """Every slot is faulted, so no job could ever be started."""


class EventKind(Enum):
    """Things the scheduler reports while it runs."""

    SLOT_ASSIGNED = "slot assigned"
    PROCESS_STARTED = "process started"
    WAITING = "waiting"
    PROCESS_REAPED = "process reaped"
    JOB_FAILED = "job failed"
    FAULT_DETECTED = "fault detected"
    INTERRUPT_CHANGED = "interrupt changed"
    DRAINING = "draining"


@dataclass
class DispatchEvent:
    """A single scheduler event."""

    kind: EventKind
    slot: Slot | None = None
    job: str | None = None
    pid: int | None = None
    returncode: int | None = None
    message: str = ""


# Type alias for event callback
EventCallback = Callable[[DispatchEvent], None]


async def _anext(jobs: AsyncIterator[str]) -> str | None:
    try:
        return await jobs.__anext__()
    except StopAsyncIteration:
        return None


class Scheduler:
    """Runs one process per job, never more at once than there are usable slots.

    All bookkeeping happens on the event loop that calls ``run``; child
    processes are the only source of concurrency.
    """

    def __init__(
        self,
        slots: list[Slot],
        keep_going: bool = False,
        interrupt: InterruptController | None = None,
        on_event: EventCallback | None = None,
        log_dir: Path | None = None,
    ):
        if not slots:
            raise SchedulerError("Slot table is empty")
        self.slots = slots
        self.keep_going = keep_going
        self.interrupt = interrupt or InterruptController()
        self.on_event = on_event
        self.log_dir = log_dir
        self.active_count = 0
        self.faulted_count = sum(1 for slot in slots if slot.faulted)
        self.error_encountered = False
        self.started = 0
        self.finished = 0
        self._waiters: dict[asyncio.Future, int] = {}
        self._forced = False

        previous = self.interrupt.on_change
        self.interrupt.on_change = self._chain_interrupt_callback(previous)

    @property
    def total_slots(self) -> int:
        return len(self.slots)

    def _chain_interrupt_callback(self, previous):
        def on_change(level: InterruptLevel) -> None:
            if previous:
                previous(level)
            self._emit(DispatchEvent(EventKind.INTERRUPT_CHANGED, message=level.value))

        return on_change

    def _emit(self, event: DispatchEvent) -> None:
        if self.on_event:
            self.on_event(event)

    def _should_stop(self) -> bool:
        if self.interrupt.requested:
            return True
        return self.error_encountered and not self.keep_going

    async def run(self, jobs: Iterable[str] | AsyncIterable[str]) -> bool:
        """Dispatch every job and drain. Returns True if no job failed.

        ``jobs`` may be an async iterable, such as a pipe read with
        ``read_lines_async``; an interrupt then ends a pending read at once.
        """
        if self.faulted_count >= self.total_slots:
            raise AllSlotsFaultedError(
                f"All {self.total_slots} slots are faulted; no job can be started"
            )

        jobs = aiter(jobs) if isinstance(jobs, AsyncIterable) else iter(jobs)
        while not self._should_stop():
            if self.active_count + self.faulted_count >= self.total_slots:
                self._emit(
                    DispatchEvent(
                        EventKind.WAITING,
                        message=f"{self.active_count} processes active",
                    )
                )
                await self._reap_one()
                # A reaped failure or an interrupt may have stopped the run
                if self._should_stop():
                    break

            slot = self._free_slot()
            job = await self._next_job(jobs)
            # An interrupt may have arrived while the line was being read
            if job is None or self._should_stop():
                break
            await self._spawn(slot, job)

        await self._drain()
        return not self.error_encountered

    def _free_slot(self) -> Slot:
        for slot in self.slots:
            if slot.usable:
                return slot
        raise SchedulerError("Cannot find a free slot; active count is wrong")

    async def _next_job(self, jobs: Iterator[str] | AsyncIterator[str]) -> str | None:
        """Next input line, or None at end of input or once interrupted."""
        if isinstance(jobs, Iterator):
            return next(jobs, None)
        if self._should_stop():
            return None

        read = asyncio.ensure_future(_anext(jobs))
        while True:
            changed = asyncio.ensure_future(self.interrupt.wait_for_change())
            try:
                done, _ = await asyncio.wait([read, changed], return_when=asyncio.FIRST_COMPLETED)
            finally:
                if not changed.done():
                    changed.cancel()

            if read in done:
                return read.result()
            if self._should_stop():
                # Behave as if input ended; the pending line is never started
                read.cancel()
                await asyncio.wait([read])
                return None

    async def _spawn(self, slot: Slot, job: str) -> None:
        if self.active_count + self.faulted_count >= self.total_slots:
            raise SchedulerError(
                f"Slot ceiling exceeded: {self.active_count} active, "
                f"{self.faulted_count} faulted, {self.total_slots} total"
            )

        argv = slot.argv(job)
        self._emit(DispatchEvent(EventKind.SLOT_ASSIGNED, slot=slot, job=job))

        output = self._open_slot_log(slot, argv)
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=output,
                stderr=output,
                cwd=None if slot.remote else slot.workdir,
                start_new_session=True,
            )
        except OSError as e:
            raise SchedulerError(f"Cannot start {argv[0]!r} in slot {slot.id}: {e}") from e
        finally:
            if output is not None:
                output.close()

        slot.process = process
        slot.job = job
        self.active_count += 1
        self.started += 1
        self._waiters[asyncio.ensure_future(process.wait())] = process.pid
        self._emit(
            DispatchEvent(EventKind.PROCESS_STARTED, slot=slot, job=job, pid=process.pid)
        )

    def _open_slot_log(self, slot: Slot, argv: list[str]) -> IO[str] | None:
        if self.log_dir is None:
            return None
        log = open(self.log_dir / f"slot-{slot.id}.log", "a", errors="surrogateescape")
        log.write(f"$ {shlex.join(argv)}\n")
        log.flush()
        return log

    async def _reap_one(self) -> Slot:
        """Wait for any running child to exit and reclaim its slot."""
        if not self._waiters:
            raise SchedulerError("Waiting for a child but none is running")

        while True:
            if self.interrupt.forcing:
                self._terminate_all()

            changed = asyncio.ensure_future(self.interrupt.wait_for_change())
            try:
                done, _ = await asyncio.wait(
                    [*self._waiters, changed], return_when=asyncio.FIRST_COMPLETED
                )
            finally:
                if not changed.done():
                    changed.cancel()

            exited = [future for future in done if future is not changed]
            if exited:
                return self._reclaim(exited[0])

    def _reclaim(self, future: asyncio.Future) -> Slot:
        pid = self._waiters.pop(future)
        try:
            returncode = future.result()
        except OSError as e:
            raise SchedulerError(f"Waiting for child {pid} failed: {e}") from e

        # Resolve the pid to whichever slot actually owns it
        for slot in self.slots:
            if slot.pid == pid:
                break
        else:
            raise SchedulerError(f"Cannot find child {pid} in slot table")

        job = slot.job
        slot.process = None
        slot.job = None
        self.active_count -= 1
        self.finished += 1
        self._emit(
            DispatchEvent(
                EventKind.PROCESS_REAPED, slot=slot, job=job, pid=pid, returncode=returncode
            )
        )
        if returncode != 0:
            self.error_encountered = True
            logger.info(
                "Job %r in slot %d (%s) exited with status %d",
                job, slot.id, slot.target, returncode,
            )
            self._emit(
                DispatchEvent(
                    EventKind.JOB_FAILED, slot=slot, job=job, pid=pid, returncode=returncode
                )
            )
        return slot

    def _terminate_all(self) -> None:
        """Send SIGTERM to every slot with a live process. Done once."""
        if self._forced:
            return
        self._forced = True
        for slot in self.slots:
            if slot.process is None or slot.process.returncode is not None:
                continue
            logger.info("Terminating job %r in slot %d (pid %d)", slot.job, slot.id, slot.pid)
            try:
                # Each child leads its own session, so this reaches its children too
                os.killpg(slot.pid, signal.SIGTERM)
            except ProcessLookupError:
                pass

    async def _drain(self) -> None:
        while self.active_count:
            logger.info("Waiting for %d running jobs", self.active_count)
            self._emit(
                DispatchEvent(
                    EventKind.DRAINING, message=f"waiting for {self.active_count} children"
                )
            )
            await self._reap_one()
