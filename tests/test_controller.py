"""Tests for controller.py: polling loop, terminal errors and the search manager."""

import asyncio
import time

import pytest

from conftest import EventLog, FakeClock, FakeSurface, batch, surface_factory

from tfdmarket import browser
from tfdmarket.controller import (
    MARKET_URL,
    ControllerSettings,
    ControllerState,
    ExtractionController,
    ParseFailure,
    ProgressEvent,
    SearchFilters,
    SearchManager,
    SnapshotEvent,
    StoppedEvent,
    parse_poll_payload,
)


def run_controller(surface, clock=None, filters=None, settings=None, listener=None):
    events = listener or EventLog()
    controller = ExtractionController(
        1,
        filters or SearchFilters(),
        surface,
        events,
        settings=settings,
        clock=clock or FakeClock(),
    )
    final = asyncio.run(controller.run())
    return controller, final, events


# ── Stability termination ────────────────────────────────

def test_stops_after_three_unchanged_counts():
    surface = FakeSurface([batch(5, loader=True), batch(5), batch(5), batch(5), batch(5)])
    controller, final, events = run_controller(surface)
    assert controller.polls == 4
    assert controller.state is ControllerState.DONE
    assert final.finished and final.error is None
    assert len(final.records) == 5


def test_loader_visible_keeps_polling():
    surface = FakeSurface([batch(5, loader=True)] * 6 + [batch(5)])
    controller, final, _ = run_controller(surface)
    assert controller.polls == 7
    assert len(final.records) == 5


def test_growing_batches_then_stable():
    surface = FakeSurface([batch(4), batch(7), batch(7), batch(7), batch(7), batch(7)])
    controller, final, events = run_controller(surface)
    # counter: 0 (4), 0 (7), 1, 2, 3 -> stops on the fifth poll
    assert controller.polls == 5
    assert len(final.records) == 7
    incremental = [e for e in events.of_type(SnapshotEvent) if not e.finished]
    assert [len(e.records) for e in incremental] == [4, 7, 7, 7, 7]


def test_hard_poll_cap_ends_normally():
    payloads = [batch(n, loader=True) for n in range(1, 80)]
    controller, final, _ = run_controller(FakeSurface(payloads), settings=ControllerSettings(max_polls=60))
    assert controller.polls == 60
    assert final.error is None and final.finished


def test_empty_page_without_loader_finishes_empty():
    controller, final, _ = run_controller(FakeSurface([batch(0)]))
    assert controller.polls == 3
    assert final.error is None
    assert final.records == []


# ── Zero-result timeout ──────────────────────────────────

def test_zero_result_timeout():
    clock = FakeClock()
    surface = FakeSurface([batch(0, loader=True)], clock=clock)
    controller, final, events = run_controller(surface, clock=clock)
    assert final.error == "timeout"
    assert final.records == []
    assert controller.state is ControllerState.TIMEOUT
    # 700 ms between polls: the 44th poll is the first one past 30000 ms
    assert controller.polls == 44
    assert surface.parse_calls == controller.polls
    assert surface.scrolls == controller.polls - 1
    assert events.events[-1] is final


def test_timeout_not_raised_once_records_exist():
    clock = FakeClock()
    payloads = [batch(0, loader=True)] * 10 + [batch(2, loader=True)] * 40 + [batch(2)]
    controller, final, _ = run_controller(FakeSurface(payloads, clock=clock), clock=clock)
    assert final.error is None
    assert len(final.records) == 2


# ── Errors ───────────────────────────────────────────────

def test_parse_failure_keeps_collected_records():
    surface = FakeSurface([batch(3, loader=True), "{not json"])
    controller, final, _ = run_controller(surface)
    assert final.error == "parse-failed"
    assert len(final.records) == 3
    assert controller.state is ControllerState.ERROR


def test_parse_payload_must_be_an_object():
    with pytest.raises(ParseFailure):
        parse_poll_payload("[1, 2]")


def test_generic_error_uses_message_and_keeps_records():
    surface = FakeSurface([batch(2, loader=True)], scroll_error=RuntimeError("boom"))
    controller, final, _ = run_controller(surface)
    assert final.error == "boom"
    assert final.message == "boom"
    assert len(final.records) == 2


def test_setup_failures_are_not_fatal():
    surface = FakeSurface([batch(1, loader=True), batch(1), batch(1), batch(1)], fail_setup=True)
    controller, final, _ = run_controller(surface)
    assert len(surface.setup_scripts) == 3
    assert final.error is None
    assert len(final.records) == 1


def test_listener_errors_do_not_abort_search():
    def listener(event):
        raise ValueError("render failed")

    controller, final, _ = run_controller(FakeSurface([batch(2), batch(2), batch(2), batch(2)]), listener=listener)
    assert final.error is None
    assert len(final.records) == 2


# ── Setup and events ─────────────────────────────────────

def test_setup_progress_and_settle_delays():
    surface = FakeSurface([batch(1), batch(1), batch(1), batch(1)])
    settings = ControllerSettings()
    _, _, events = run_controller(surface, settings=settings)
    assert [e.stage for e in events.of_type(ProgressEvent)] == ["enterName", "setPlatform", "waiting"]
    assert surface.waits[:3] == [8000, 8000, 8000]
    assert set(surface.waits[3:]) == {700}


def test_name_filter_applied_to_snapshots():
    payload = batch(3)
    payload["items"][1]["name"] = "Special Catalyst"
    surface = FakeSurface([payload] * 4)
    _, final, _ = run_controller(surface, filters=SearchFilters(module_name="special"))
    assert [r.name for r in final.records] == ["Special Catalyst"]


def test_snapshot_carries_module_type():
    _, final, _ = run_controller(FakeSurface([batch(1)] * 4), filters=SearchFilters(module_type="Trigger"))
    assert final.module_type == "Trigger"


# ── Search manager ───────────────────────────────────────

def test_manager_runs_search_and_releases_surface():
    surface = FakeSurface([batch(2)] * 4)
    events = EventLog()

    async def scenario():
        manager = SearchManager(surface_factory(surface), events, clock=FakeClock())
        search_id = await manager.start(SearchFilters(module_type="Ancestors"))
        final = await manager.wait(search_id)
        return manager, search_id, final

    manager, search_id, final = asyncio.run(scenario())
    assert search_id == 1
    assert surface.navigated == [MARKET_URL]
    assert final.finished and len(final.records) == 2
    assert surface.closed
    assert not manager.get(search_id).running
    assert len(manager.records(search_id)) == 2


def test_navigation_failure():
    surface = FakeSurface(fail_navigation=True)
    events = EventLog()

    async def scenario():
        manager = SearchManager(surface_factory(surface), events)
        search_id = await manager.start(SearchFilters())
        return await manager.wait(search_id)

    final = asyncio.run(scenario())
    assert final.error == "load-failed"
    assert final.records == []
    assert surface.parse_calls == 0
    assert surface.closed


def test_surface_factory_failure_is_load_failed():
    events = EventLog()

    async def broken_factory():
        raise RuntimeError("chromedriver missing")

    async def scenario():
        manager = SearchManager(broken_factory, events)
        search_id = await manager.start(SearchFilters())
        return await manager.wait(search_id)

    final = asyncio.run(scenario())
    assert final.error == "load-failed"
    assert "chromedriver" in final.message


def test_stop_mid_wait_keeps_records_and_releases_surface():
    surface = FakeSurface([batch(3, loader=True)], block_after_polls=2)
    events = EventLog()

    async def scenario():
        manager = SearchManager(surface_factory(surface), events)
        search_id = await manager.start(SearchFilters())
        await surface.blocked.wait()
        await manager.stop(search_id)
        await asyncio.sleep(0)
        return manager, search_id

    manager, search_id = asyncio.run(scenario())
    assert surface.closed
    assert surface.parse_calls == 2
    finals = [e for e in events.of_type(SnapshotEvent) if e.finished]
    assert len(finals) == 1
    assert finals[0].error is None
    assert len(finals[0].records) == 3
    assert isinstance(events.events[-1], StoppedEvent)
    entry = manager.get(search_id)
    assert not entry.running
    assert entry.controller.state is ControllerState.STOPPED


def test_stop_unknown_search_is_a_no_op():
    events = EventLog()

    async def scenario():
        manager = SearchManager(surface_factory(), events)
        await manager.stop(99)
        await manager.retry(99)

    asyncio.run(scenario())
    assert events.events == []


def test_stop_after_finish_still_reports_stopped():
    surface = FakeSurface([batch(1)] * 4)
    events = EventLog()

    async def scenario():
        manager = SearchManager(surface_factory(surface), events)
        search_id = await manager.start(SearchFilters())
        await manager.wait(search_id)
        await manager.stop(search_id)

    asyncio.run(scenario())
    assert isinstance(events.events[-1], StoppedEvent)
    assert surface.close_calls == 1


def test_stop_after_failure_keeps_error():
    surface = FakeSurface([batch(1, loader=True), "garbage"])
    events = EventLog()

    async def scenario():
        manager = SearchManager(surface_factory(surface), events)
        search_id = await manager.start(SearchFilters())
        await manager.wait(search_id)
        await manager.stop(search_id)
        return manager.get(search_id)

    entry = asyncio.run(scenario())
    finals = [e for e in events.of_type(SnapshotEvent) if e.finished]
    assert [e.error for e in finals] == ["parse-failed", "parse-failed"]
    assert [r.name for r in finals[-1].records] == ["Module 0"]
    assert entry.last_event.error == "parse-failed"
    assert surface.close_calls == 1


def test_stop_during_surface_acquisition_releases_late_surface():
    surface = FakeSurface([batch(1)] * 4)
    events = EventLog()

    async def scenario():
        acquiring = asyncio.Event()

        async def slow_factory():
            acquiring.set()
            await asyncio.sleep(0.05)
            return surface

        manager = SearchManager(slow_factory, events)
        search_id = await manager.start(SearchFilters())
        await acquiring.wait()
        await manager.stop(search_id)
        return manager, search_id

    manager, search_id = asyncio.run(scenario())
    assert surface.close_calls == 1
    assert surface.navigated == []
    assert not manager.get(search_id).running
    finals = [e for e in events.of_type(SnapshotEvent) if e.finished]
    assert len(finals) == 1
    assert finals[0].records == [] and finals[0].error is None
    assert isinstance(events.events[-1], StoppedEvent)


def test_stop_while_chrome_starts_quits_the_driver(monkeypatch):
    quits = []

    class StubDriver:
        def quit(self):
            quits.append(True)

    def slow_create_driver(headless=True):
        time.sleep(0.2)
        return StubDriver()

    monkeypatch.setattr(browser, "create_driver", slow_create_driver)
    events = EventLog()

    async def scenario():
        manager = SearchManager(lambda: browser.SeleniumPageSurface.open(headless=True), events)
        search_id = await manager.start(SearchFilters())
        await asyncio.sleep(0.05)
        await manager.stop(search_id)

    asyncio.run(scenario())
    assert quits == [True]
    assert isinstance(events.events[-1], StoppedEvent)


def test_stop_during_parse_pass_keeps_records_and_releases_surface():
    surface = FakeSurface([batch(2, loader=True)], block_on_parse=3)
    events = EventLog()

    async def scenario():
        manager = SearchManager(surface_factory(surface), events)
        search_id = await manager.start(SearchFilters())
        await surface.blocked.wait()
        await manager.stop(search_id)
        return manager, search_id

    manager, search_id = asyncio.run(scenario())
    assert surface.parse_calls == 3
    assert surface.close_calls == 1
    finals = [e for e in events.of_type(SnapshotEvent) if e.finished]
    assert len(finals) == 1
    assert finals[0].error is None
    assert len(finals[0].records) == 2
    assert isinstance(events.events[-1], StoppedEvent)
    assert manager.get(search_id).controller.state is ControllerState.STOPPED


def test_retry_discards_records_and_uses_a_fresh_surface():
    first = FakeSurface([batch(3, loader=True, prefix="Old")], block_after_polls=1)
    second = FakeSurface([batch(2, prefix="New")] * 4)
    events = EventLog()

    async def scenario():
        manager = SearchManager(surface_factory(first, second), events)
        search_id = await manager.start(SearchFilters(module_type="Trigger", platform="PC"))
        await first.blocked.wait()
        await manager.retry(search_id)
        final = await manager.wait(search_id)
        return manager, search_id, final

    manager, search_id, final = asyncio.run(scenario())
    assert first.closed and second.closed
    assert second.navigated == [MARKET_URL]
    assert [r.name for r in final.records] == ["New 0", "New 1"]
    assert manager.get(search_id).filters.module_type == "Trigger"
    assert not any(isinstance(e, StoppedEvent) for e in events.events)


def test_concurrent_searches_are_independent():
    good = FakeSurface([batch(2, prefix="Good")] * 4)
    bad = FakeSurface([batch(1, loader=True, prefix="Bad"), "garbage"])
    events = EventLog()

    async def scenario():
        manager = SearchManager(surface_factory(good, bad), events)
        first = await manager.start(SearchFilters())
        second = await manager.start(SearchFilters())
        return first, second, await manager.wait(first), await manager.wait(second), manager.metrics()

    first, second, good_final, bad_final, metrics = asyncio.run(scenario())
    assert (first, second) == (1, 2)
    assert good_final.error is None and len(good_final.records) == 2
    assert bad_final.error == "parse-failed" and [r.name for r in bad_final.records] == ["Bad 0"]
    assert {m["id"]: m["items"] for m in metrics} == {1: 2, 2: 1}
    assert all(not m["running"] for m in metrics)
    assert {m["state"] for m in metrics} == {"done", "error"}


def test_shutdown_stops_running_searches():
    surface = FakeSurface([batch(1, loader=True)], block_after_polls=1)
    events = EventLog()

    async def scenario():
        manager = SearchManager(surface_factory(surface), events)
        await manager.start(SearchFilters())
        await surface.blocked.wait()
        await manager.shutdown()

    asyncio.run(scenario())
    assert surface.closed
    assert isinstance(events.events[-1], StoppedEvent)
