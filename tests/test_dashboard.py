from __future__ import annotations

import asyncio

from textual.widgets import DataTable

from forkargs.dashboard import Dashboard, StatusBar
from forkargs.scheduler import Scheduler
from forkargs.slots import build_slots


def test_dashboard_runs_jobs_and_tracks_progress(record) -> None:
    command, out = record
    scheduler = Scheduler(build_slots("2", command))
    app = Dashboard(scheduler, ["a", "b", "c"])

    async def main() -> None:
        async with app.run_test() as pilot:
            await app.workers.wait_for_complete()
            await pilot.pause()

            status_bar = app.query_one("#status-bar", StatusBar)
            assert status_bar.started == 3
            assert status_bar.finished == 3
            assert status_bar.failed == 0
            assert not status_bar.running

            table = app.query_one("#slots", DataTable)
            assert table.row_count == 2

            await pilot.press("q")

    asyncio.run(main())

    assert app.succeeded is True
    assert app.error is None
    assert sorted(out.read_text().split()) == ["a", "b", "c"]


def test_dashboard_interrupt_key_stops_new_jobs() -> None:
    scheduler = Scheduler(build_slots("1", ["sleep"]))
    app = Dashboard(scheduler, ["1", "1", "1"])

    async def main() -> None:
        async with app.run_test() as pilot:
            for _ in range(100):
                if scheduler.started:
                    break
                await pilot.pause(0.02)
            await pilot.press("i")
            await app.workers.wait_for_complete()
            await pilot.pause()

    asyncio.run(main())

    assert scheduler.interrupt.requested
    assert scheduler.started == 1
    assert app.succeeded is True
