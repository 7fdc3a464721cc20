from __future__ import annotations

import asyncio
import random
import threading
from datetime import datetime, timezone

import pytest

from sensor_dashboard.config import DashboardConfig
from sensor_dashboard.services.session import DashboardSession
from sensor_dashboard.state import DropNotification, SetLoading, ToggleSidebar, TouchLastUpdate

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


async def _no_delay(_seconds: float) -> None:
    await asyncio.sleep(0)


def _session(**config) -> DashboardSession:
    return DashboardSession(DashboardConfig(seed=11, **config), clock=lambda: NOW, sleep=_no_delay)


def test_grouped_dispatch_notifies_once_with_final_state():
    session = _session()
    seen = []
    session.subscribe(seen.append)
    applied = session.dispatch(ToggleSidebar(), SetLoading(True), TouchLastUpdate(NOW))
    assert applied is True
    assert len(seen) == 1
    assert seen[0].sidebar_open is True and seen[0].loading is True
    assert seen[0] is session.snapshot


def test_rejected_transition_does_not_notify():
    session = _session()
    seen = []
    session.subscribe(seen.append)
    before = session.snapshot
    assert session.set_page(0) is False
    assert session.set_connection_status("connecting") is False
    assert session.set_page("3") is False
    assert session.set_page_size(2.5) is False
    assert session.set_loading("false") is False
    assert session.snapshot is before
    assert seen == []


def test_unsubscribe_stops_notifications():
    session = _session()
    seen = []
    unsubscribe = session.subscribe(seen.append)
    session.toggle_sidebar()
    unsubscribe()
    session.toggle_sidebar()
    assert len(seen) == 1


def test_listener_errors_are_isolated():
    session = _session()
    seen = []

    def _boom(snapshot):
        raise RuntimeError("listener failed")

    session.subscribe(_boom)
    session.subscribe(seen.append)
    assert session.toggle_sidebar() is True
    assert len(seen) == 1


def test_refresh_sensor_data_draws_within_bounds_and_notifies():
    session = _session()
    for _ in range(50):
        session.refresh_sensor_data()
    snapshot = session.snapshot
    for reading in snapshot.sensor_data.values():
        assert reading.min <= reading.current <= reading.max
        assert round(reading.current, 1) == reading.current
        assert reading.trend in {"positive", "negative", "neutral"}
    assert snapshot.last_update == NOW
    assert snapshot.notifications[-1].category == "success"


def test_check_connection_only_dispatches_on_change():
    session = _session(online_probability=0.0)
    seen = []
    session.subscribe(seen.append)
    assert session.check_connection() == "offline"
    assert session.check_connection() == "offline"
    assert len(seen) == 1
    assert session.snapshot.connection_status == "offline"


def test_health_probability_is_roughly_ninety_percent():
    session = DashboardSession(DashboardConfig(), rng=random.Random(2))
    results = [session.check_connection() for _ in range(2000)]
    share = results.count("online") / len(results)
    assert 0.87 < share < 0.93


def test_set_page_and_page_size_announce_changes():
    session = _session()
    assert session.set_page(4) is True
    assert session.snapshot.pagination.page == 4
    assert session.set_page_size(50) is True
    assert session.snapshot.pagination.page == 1
    assert [n.message for n in session.snapshot.notifications] == ["Moved to page 4", "Showing 50 rows per page"]


def test_select_time_range_regenerates_chart_atomically():
    session = _session()
    seen = []
    session.subscribe(seen.append)
    assert session.select_time_range("7d") is True
    assert len(seen) == 1
    snapshot = session.snapshot
    assert snapshot.time_range == "7d"
    assert len(snapshot.chart_series) == 7
    assert snapshot.notifications[-1].category == "info"
    assert session.select_time_range("1y") is False
    assert session.snapshot is snapshot


def test_dispatch_is_serialized_across_threads():
    session = _session()

    def _toggle():
        for _ in range(500):
            session.toggle_sidebar()

    threads = [threading.Thread(target=_toggle) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    # 2000 flips return to the initial value only if none were lost
    assert session.snapshot.sidebar_open is False


@pytest.mark.anyio("asyncio")
async def test_refresh_sequence():
    session = _session()
    states = []
    session.subscribe(states.append)
    assert await session.refresh() is True

    assert states[0].loading is True
    final = session.snapshot
    assert final.loading is False
    assert len(final.chart_series) == 24
    assert [n.category for n in final.notifications] == ["success", "success"]
    assert final.notifications[-1].message == "Dashboard data refreshed"
    await session.stop()


@pytest.mark.anyio("asyncio")
async def test_refresh_rejected_while_loading():
    gate = asyncio.Event()

    async def _blocked(_seconds):
        await gate.wait()

    session = DashboardSession(DashboardConfig(seed=1), sleep=_blocked)
    first = asyncio.create_task(session.refresh())
    await asyncio.sleep(0)
    assert session.snapshot.loading is True
    assert await session.refresh() is False
    gate.set()
    assert await first is True
    assert session.snapshot.loading is False
    await session.stop()


@pytest.mark.anyio("asyncio")
async def test_refresh_failure_clears_loading_and_reports_danger():
    async def _failing(_seconds):
        raise OSError("backend unavailable")

    session = DashboardSession(DashboardConfig(seed=1), sleep=_failing)
    assert await session.refresh() is True
    snapshot = session.snapshot
    assert snapshot.loading is False
    assert [n.category for n in snapshot.notifications] == ["danger"]
    await session.stop()


@pytest.mark.anyio("asyncio")
async def test_cancelled_refresh_clears_loading():
    session = DashboardSession(DashboardConfig(seed=1, refresh_delay_seconds=10.0))
    task = asyncio.create_task(session.refresh())
    await asyncio.sleep(0.01)
    assert session.snapshot.loading is True
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert session.snapshot.loading is False


@pytest.mark.anyio("asyncio")
async def test_notifications_expire_after_duration():
    session = _session(notification_duration_seconds=0.05)
    notification = session.push_notification("hello", "warning")
    assert session.snapshot.notifications[-1].id == notification.id
    await asyncio.sleep(0.15)
    assert session.snapshot.notifications == ()


@pytest.mark.anyio("asyncio")
async def test_explicit_drop_cancels_expiry_timer():
    session = _session(notification_duration_seconds=0.05)
    seen = []
    notification = session.push_notification("bye")
    session.subscribe(seen.append)
    assert session.drop_notification(notification.id) is True
    await asyncio.sleep(0.1)
    assert len(seen) == 1
    assert session.drop_notification(notification.id) is False


@pytest.mark.anyio("asyncio")
async def test_expiry_for_already_removed_notification_is_noop():
    session = _session(notification_duration_seconds=0.05)
    notification = session.push_notification("gone")
    # removed without going through drop_notification, so the timer stays armed
    session.dispatch(DropNotification(notification.id))
    seen = []
    session.subscribe(seen.append)
    await asyncio.sleep(0.1)
    assert seen == []


@pytest.mark.anyio("asyncio")
async def test_push_from_worker_thread_still_expires():
    session = _session(notification_duration_seconds=0.05)
    session.start()
    try:
        await asyncio.to_thread(session.push_notification, "from thread")
        assert len(session.snapshot.notifications) == 1
        await asyncio.sleep(0.2)
        assert session.snapshot.notifications == ()
    finally:
        await session.stop()


@pytest.mark.anyio("asyncio")
async def test_drivers_run_on_their_cadence_and_stop_cancels_everything():
    session = _session(
        refresh_interval_seconds=0.05,
        health_interval_seconds=0.02,
        notification_duration_seconds=10.0,
        online_probability=0.5,
    )
    session.start()
    await asyncio.sleep(0.18)
    await session.stop()

    snapshot = session.snapshot
    assert len(snapshot.notifications) >= 2
    assert all(task.done() for task in session._drivers) or session._drivers == []
    assert session._timers == {}
    frozen = session.snapshot
    await asyncio.sleep(0.1)
    assert session.snapshot is frozen


@pytest.mark.anyio("asyncio")
async def test_stop_cancels_inflight_refresh():
    session = DashboardSession(DashboardConfig(seed=1, refresh_delay_seconds=10.0))
    task = asyncio.create_task(session.refresh())
    await asyncio.sleep(0.01)
    await session.stop()
    assert task.done()
    assert session.snapshot.loading is False
