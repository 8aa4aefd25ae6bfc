"""forkargs: run a command once per input line across local and remote slots."""

from .config import RunConfig, load_config
from .interrupt import InterruptController, InterruptLevel
from .lines import read_lines
from .probe import Prober
from .scheduler import (
    AllSlotsFaultedError,
    DispatchEvent,
    EventKind,
    Scheduler,
    SchedulerError,
)
from .slots import Slot, SlotSpecError, build_slots, escape_arg, parse_slot_spec

__version__ = "0.1.0"

__all__ = [
    "RunConfig",
    "load_config",
    "InterruptController",
    "InterruptLevel",
    "read_lines",
    "Prober",
    "AllSlotsFaultedError",
    "DispatchEvent",
    "EventKind",
    "Scheduler",
    "SchedulerError",
    "Slot",
    "SlotSpecError",
    "build_slots",
    "escape_arg",
    "parse_slot_spec",
]
