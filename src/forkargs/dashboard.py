"""TUI Dashboard for forkargs."""

from dataclasses import dataclass
from typing import Iterable

from textual.app import App, ComposeResult
from textual.message import Message
from textual.reactive import reactive
from textual.widgets import DataTable, Footer, Header, RichLog, Static
from textual.worker import Worker

from .interrupt import InterruptLevel
from .scheduler import DispatchEvent, EventKind, Scheduler, SchedulerError
from .slots import Slot

SLOT_COLUMNS = [
    ("Slot", "slot"),
    ("Host", "host"),
    ("Workdir", "workdir"),
    ("PID", "pid"),
    ("Job", "job"),
    ("State", "state"),
]

EVENT_STYLES = {
    EventKind.PROCESS_STARTED: "cyan",
    EventKind.PROCESS_REAPED: "green",
    EventKind.JOB_FAILED: "bold red",
    EventKind.FAULT_DETECTED: "red",
    EventKind.INTERRUPT_CHANGED: "bold yellow",
    EventKind.DRAINING: "yellow",
}


def _slot_state(slot: Slot) -> str:
    if slot.faulted:
        return "[red]faulted[/red]"
    if slot.busy:
        return "[yellow]running[/yellow]"
    return "[dim]idle[/dim]"


class StatusBar(Static):
    """Bottom status bar showing overall progress."""

    started: reactive[int] = reactive(0)
    finished: reactive[int] = reactive(0)
    failed: reactive[int] = reactive(0)
    interrupt: reactive[str] = reactive(InterruptLevel.NONE.value)
    running: reactive[bool] = reactive(True)

    def render(self) -> str:
        status = self.interrupt if self.running else "Complete"
        return (
            f"Jobs: {self.started} started, {self.finished} finished, {self.failed} failed"
            f" | {status} | 'i' interrupt, 'q' quit"
        )


@dataclass
class SchedulerUpdate(Message):
    """Message for a scheduler event."""
    event: DispatchEvent


class Dashboard(App):
    """Live view of the slot table while jobs run."""

    CSS = """
    DataTable {
        height: auto;
        max-height: 50%;
        border: solid $primary;
    }

    RichLog {
        height: 1fr;
        border: solid $primary;
        padding: 0 1;
    }

    StatusBar {
        dock: bottom;
        height: 1;
        background: $surface;
        padding: 0 1;
    }
    """

    BINDINGS = [
        ("i", "interrupt", "Interrupt"),
        ("q", "quit", "Quit"),
    ]

    def __init__(self, scheduler: Scheduler, jobs: Iterable[str], **kwargs) -> None:
        super().__init__(**kwargs)
        self.scheduler = scheduler
        self.jobs = jobs
        self.succeeded: bool | None = None
        self.error: SchedulerError | None = None
        self._worker: Worker | None = None

        previous = scheduler.on_event

        def on_event(event: DispatchEvent) -> None:
            if previous:
                previous(event)
            self.post_message(SchedulerUpdate(event))

        scheduler.on_event = on_event

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        yield DataTable(id="slots", cursor_type="row")
        yield RichLog(id="events", highlight=True, markup=True, wrap=True, auto_scroll=True)
        yield StatusBar(id="status-bar")
        yield Footer()

    def on_mount(self) -> None:
        """Fill the slot table and start dispatching."""
        table = self.query_one("#slots", DataTable)
        for label, key in SLOT_COLUMNS:
            table.add_column(label, key=key)
        for slot in self.scheduler.slots:
            table.add_row(
                str(slot.id),
                slot.target,
                slot.workdir or "",
                "",
                "",
                _slot_state(slot),
                key=str(slot.id),
            )

        self._worker = self.run_worker(self._run_scheduler(), exclusive=True)

    async def _run_scheduler(self) -> None:
        try:
            self.succeeded = await self.scheduler.run(self.jobs)
        except SchedulerError as e:
            self.error = e
            self.query_one("#events", RichLog).write(f"[bold red]ERROR: {e}[/bold red]")
        self.query_one("#status-bar", StatusBar).running = False

    def _refresh_slot(self, slot: Slot) -> None:
        table = self.query_one("#slots", DataTable)
        row = str(slot.id)
        table.update_cell(row, "pid", str(slot.pid) if slot.pid is not None else "")
        table.update_cell(row, "job", slot.job or "")
        table.update_cell(row, "state", _slot_state(slot))

    def on_scheduler_update(self, message: SchedulerUpdate) -> None:
        """Handle SchedulerUpdate message in main thread."""
        event = message.event
        if event.slot is not None:
            self._refresh_slot(event.slot)

        status_bar = self.query_one("#status-bar", StatusBar)
        if event.kind is EventKind.PROCESS_STARTED:
            status_bar.started += 1
        elif event.kind is EventKind.PROCESS_REAPED:
            status_bar.finished += 1
        elif event.kind is EventKind.JOB_FAILED:
            status_bar.failed += 1
        elif event.kind is EventKind.INTERRUPT_CHANGED:
            status_bar.interrupt = event.message

        style = EVENT_STYLES.get(event.kind)
        if style is None:
            return
        line = f"{event.kind.value}: slot {event.slot.id}" if event.slot else event.kind.value
        if event.job is not None:
            line += f" '{event.job}'"
        if event.returncode is not None:
            line += f" status {event.returncode}"
        elif event.message:
            line += f" ({event.message})"
        self.query_one("#events", RichLog).write(f"[{style}]{line}[/{style}]")

    def action_interrupt(self) -> None:
        self.scheduler.interrupt.request()

    async def action_quit(self) -> None:
        """Quit once the scheduler is done; until then, interrupt it."""
        if self._worker and self._worker.is_running:
            self.scheduler.interrupt.request()
            return
        self.exit()
