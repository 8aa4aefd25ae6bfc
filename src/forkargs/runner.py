#!/usr/bin/env python3
"""Main entry point for forkargs."""

from __future__ import annotations

import argparse
import asyncio
import logging
import shutil
import sys
from contextlib import ExitStack
from datetime import datetime
from pathlib import Path
from typing import AsyncIterable, Iterable

from .config import RunConfig, load_config
from .interrupt import InterruptController
from .lines import is_pipe, read_lines, read_lines_async
from .probe import PROBE_TRANSPORTS, Prober
from .scheduler import AllSlotsFaultedError, Scheduler, SchedulerError
from .slots import SlotSpecError, build_slots
from .trace import TraceWriter

# Process exit codes
EXIT_OK = 0
EXIT_JOB_FAILED = 1
EXIT_CONFIG_ERROR = 2
EXIT_SCHEDULER_ERROR = 3


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="forkargs",
        description="Run a command once per input line, in parallel across local and remote slots",
        epilog="Example: find . -name '*.tar' | forkargs -j '4,2*worker1:/scratch' bzip2 -9",
    )
    parser.add_argument(
        "-j",
        "--jobs",
        metavar="SPEC",
        help="Slot specification: [count*][host][:workdir], comma separated (default: one slot per CPU)",
    )
    parser.add_argument(
        "-k",
        "--keep-going",
        action="store_true",
        default=None,
        help="Keep starting jobs after one fails",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", default=None, help="Report dispatch progress"
    )
    parser.add_argument(
        "-n",
        "--no-probe",
        dest="probe",
        action="store_false",
        default=None,
        help="Do not check that remote hosts are reachable",
    )
    parser.add_argument("-f", "--file", type=Path, help="Read jobs from FILE instead of stdin")
    parser.add_argument("-t", "--trace", metavar="OUT", help="Trace process control to OUT ('-' for stderr)")
    parser.add_argument("--rsh", help="Remote shell command (default: ssh)")
    parser.add_argument("--probe-transport", choices=PROBE_TRANSPORTS, help="How remote hosts are probed")
    parser.add_argument("--probe-timeout", type=float, help="Seconds to wait for a probe")
    parser.add_argument("--log-dir", type=Path, help="Write each slot's job output under DIR")
    parser.add_argument("--config", type=Path, help="Path to YAML configuration file")
    parser.add_argument(
        "--dashboard",
        action="store_true",
        help="Run with the TUI dashboard (requires --file)",
    )
    parser.add_argument(
        "--sync",
        action="store_true",
        default=None,
        help="Synchronize working directories (not supported)",
    )
    parser.add_argument("command", nargs=argparse.REMAINDER, help="Command and fixed arguments")
    return parser


def _apply_args(config: RunConfig, args: argparse.Namespace) -> None:
    """Command-line flags override the config file and environment."""
    overrides = {
        "slots": args.jobs,
        "keep_going": args.keep_going,
        "verbose": args.verbose,
        "probe": args.probe,
        "input_file": args.file,
        "trace": args.trace,
        "remote_shell": args.rsh,
        "probe_transport": args.probe_transport,
        "probe_timeout": args.probe_timeout,
        "log_dir": args.log_dir,
        "sync": args.sync,
    }
    for key, value in overrides.items():
        if value is not None:
            setattr(config, key, value)


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    # Load configuration
    try:
        config = load_config(args.config)
        _apply_args(config, args)
        config.validate()
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    logging.basicConfig(
        format="forkargs: %(message)s",
        level=logging.INFO if config.verbose else logging.WARNING,
    )

    command = args.command
    if command and command[0] == "--":
        command = command[1:]

    try:
        slots = build_slots(config.slots, command, config.remote_shell_argv)
    except SlotSpecError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    if args.dashboard and config.input_file is None:
        print("Configuration error: --dashboard needs --file; the TUI owns stdin", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    with ExitStack() as stack:
        try:
            trace = _open_trace(stack, config, slots)
            jobs = _open_input(stack, config)
        except OSError as e:
            print(f"Error: {e}", file=sys.stderr)
            return EXIT_CONFIG_ERROR

        if config.probe:
            prober = Prober(
                config.remote_shell_argv,
                transport=config.probe_transport,
                timeout=config.probe_timeout,
                on_event=trace,
            )
            asyncio.run(prober.probe(slots))

        scheduler = Scheduler(
            slots,
            keep_going=config.keep_going,
            interrupt=InterruptController(),
            on_event=trace,
            log_dir=_setup_log_dir(config, args.dashboard),
        )

        if args.dashboard:
            return _run_dashboard(scheduler, jobs)
        return _run_headless(scheduler, jobs)


def _open_trace(stack: ExitStack, config: RunConfig, slots) -> TraceWriter | None:
    if config.trace is None:
        return None
    if config.trace == "-":
        out = sys.stderr
    else:
        out = stack.enter_context(open(config.trace, "w", errors="surrogateescape"))
    trace = TraceWriter(out, slots)
    trace.print_slots()
    return trace


def _open_input(stack: ExitStack, config: RunConfig) -> Iterable[str] | AsyncIterable[str]:
    """Job lines, decoded so that undecodable bytes pass through to the children."""
    if config.input_file is not None:
        return read_lines(stack.enter_context(open(config.input_file, errors="surrogateescape")))
    if is_pipe(sys.stdin):
        # Read on the event loop so interrupts are seen while the producer is idle
        return read_lines_async(sys.stdin.buffer)
    sys.stdin.reconfigure(errors="surrogateescape")
    return read_lines(sys.stdin)


def _setup_log_dir(config: RunConfig, dashboard: bool) -> Path | None:
    """Create a timestamped directory for job output, if output is captured."""
    log_dir = config.log_dir
    if log_dir is None and dashboard:
        # Job output would corrupt the TUI
        log_dir = Path("logs")
    if log_dir is None:
        return None

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    run_dir = log_dir.expanduser().resolve() / timestamp
    run_dir.mkdir(parents=True, exist_ok=True)

    # Copy the source config file to the log directory
    if config.source_path and config.source_path.exists():
        shutil.copy(config.source_path, run_dir / "config.yaml")
    return run_dir


def _run_headless(scheduler: Scheduler, jobs: Iterable[str] | AsyncIterable[str]) -> int:
    """Dispatch jobs with SIGINT/SIGTERM routed to the interrupt controller."""

    async def dispatch() -> bool:
        loop = asyncio.get_running_loop()
        scheduler.interrupt.install(loop)
        try:
            return await scheduler.run(jobs)
        finally:
            scheduler.interrupt.uninstall(loop)

    try:
        succeeded = asyncio.run(dispatch())
    except AllSlotsFaultedError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_SCHEDULER_ERROR
    except SchedulerError as e:
        print(f"Scheduler error: {e}", file=sys.stderr)
        return EXIT_SCHEDULER_ERROR

    return EXIT_OK if succeeded else EXIT_JOB_FAILED


def _run_dashboard(scheduler: Scheduler, jobs: Iterable[str]) -> int:
    from .dashboard import Dashboard

    app = Dashboard(scheduler, jobs)
    app.run()

    if app.error is not None:
        print(f"Scheduler error: {app.error}", file=sys.stderr)
        return EXIT_SCHEDULER_ERROR
    if app.succeeded is None:
        # Quit before the scheduler reported an outcome
        return EXIT_JOB_FAILED
    return EXIT_OK if app.succeeded else EXIT_JOB_FAILED


if __name__ == "__main__":
    sys.exit(main())
