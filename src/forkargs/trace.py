"""Plain-text trace of scheduler activity."""

from __future__ import annotations

from typing import TextIO

from .scheduler import DispatchEvent, EventKind
from .slots import Slot


class TraceWriter:
    """Writes slot table snapshots and one line per event to ``out``."""

    def __init__(self, out: TextIO, slots: list[Slot], prog: str = "forkargs"):
        self.out = out
        self.slots = slots
        self.prog = prog

    def print_slots(self) -> None:
        self.out.write("Slots:\n")
        if not self.slots:
            self.out.write("(no slots)\n")
        for slot in self.slots:
            pid = slot.pid if slot.pid is not None else -1
            state = " faulted" if slot.faulted else ""
            job = "(null)" if slot.job is None else slot.job
            self.out.write(f"{slot.target:>20} {pid} '{job}'{state}\n")
        self.out.flush()

    def __call__(self, event: DispatchEvent) -> None:
        line = self._format(event)
        if line:
            self.out.write(f"{self.prog}: {line}\n")
            self.out.flush()
        if event.kind is EventKind.SLOT_ASSIGNED:
            self.print_slots()

    def _format(self, event: DispatchEvent) -> str:
        slot = event.slot
        kind = event.kind
        if kind is EventKind.SLOT_ASSIGNED:
            return f"inserted '{event.job}' in slot {slot.id}"
        if kind is EventKind.PROCESS_STARTED:
            return f"started child {event.pid} on {slot.target}"
        if kind is EventKind.WAITING:
            return f"{event.message}, waiting for one to finish"
        if kind is EventKind.PROCESS_REAPED:
            return f"child {event.pid} in slot {slot.id} terminated with status {event.returncode}"
        if kind is EventKind.JOB_FAILED:
            return f"job '{event.job}' failed"
        if kind is EventKind.FAULT_DETECTED:
            return f"slot {slot.id} on {slot.target} faulted: {event.message}"
        if kind is EventKind.INTERRUPT_CHANGED:
            return f"interrupt state: {event.message}"
        if kind is EventKind.DRAINING:
            return event.message
        return ""
