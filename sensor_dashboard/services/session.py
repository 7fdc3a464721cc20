"""Dashboard session: owns the snapshot, its periodic drivers and notification expiry."""
from __future__ import annotations

import asyncio
import logging
import random
import threading
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence

from sensor_dashboard.config import DashboardConfig
from sensor_dashboard.state import (
    TRENDS,
    ChartPoint,
    DashboardSnapshot,
    DropNotification,
    MergeSensorData,
    Notification,
    PushNotification,
    SetChartSeries,
    SetConnectionStatus,
    SetLoading,
    SetPage,
    SetPageSize,
    SetTimeRange,
    ToggleSidebar,
    TouchLastUpdate,
    Transition,
    build_chart_series,
    initial_snapshot,
    reduce,
)

logger = logging.getLogger(__name__)

Listener = Callable[[DashboardSnapshot], None]
Sleeper = Callable[[float], Awaitable[Any]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DashboardSession:
    """Single owner of a :class:`DashboardSnapshot`.

    All mutation goes through :meth:`dispatch`, which serializes transitions on
    a re-entrant lock so triggers may be called from the event loop, from
    worker threads or from inside a listener. A grouped dispatch is applied as
    one update and listeners observe only its final state.
    """

    def __init__(
        self,
        config: DashboardConfig | None = None,
        *,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Sleeper = asyncio.sleep,
    ):
        self.config = config or DashboardConfig()
        self.random = rng if rng is not None else random.Random(self.config.seed)
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.RLock()
        self._snapshot = initial_snapshot(self.config, now=clock())
        self._listeners: List[Listener] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._drivers: List[asyncio.Task] = []
        self._refresh_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def snapshot(self) -> DashboardSnapshot:
        with self._lock:
            return self._snapshot

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener``; the returned callable unsubscribes it."""

        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def dispatch(self, *transitions: Transition) -> bool:
        """Apply ``transitions`` atomically; False when nothing changed."""

        with self._lock:
            before = self._snapshot
            after = before
            for transition in transitions:
                after = reduce(after, transition)
            if after is before:
                return False
            self._snapshot = after
            for listener in list(self._listeners):
                try:
                    listener(after)
                except Exception:
                    logger.exception("Dashboard listener raised an exception")
        return True

    # one trigger per transition

    def toggle_sidebar(self) -> bool:
        return self.dispatch(ToggleSidebar())

    def set_loading(self, value: bool) -> bool:
        return self.dispatch(SetLoading(value))

    def set_connection_status(self, status: str) -> bool:
        return self.dispatch(SetConnectionStatus(status))

    def touch_last_update(self, at: Optional[datetime] = None) -> bool:
        return self.dispatch(TouchLastUpdate(at or self._clock()))

    def merge_sensor_data(self, partial: Mapping[str, Mapping[str, Any]]) -> bool:
        return self.dispatch(MergeSensorData(partial))

    def set_chart_series(self, series: Sequence[ChartPoint]) -> bool:
        return self.dispatch(SetChartSeries(series))

    def set_time_range(self, time_range: str) -> bool:
        return self.dispatch(SetTimeRange(time_range))

    def set_page(self, page: int) -> bool:
        return self._dispatch_announced(SetPage(page), f"Moved to page {page}")

    def set_page_size(self, size: int) -> bool:
        return self._dispatch_announced(SetPageSize(size), f"Showing {size} rows per page")

    def push_notification(
        self,
        message: str,
        category: str = "info",
        *,
        duration_seconds: Optional[float] = None,
    ) -> Notification:
        notification = Notification(message=message, category=category)
        with self._lock:
            self.dispatch(PushNotification(notification))
            self._schedule_expiry(notification, duration_seconds)
        return notification

    def drop_notification(self, notification_id: str) -> bool:
        with self._lock:
            handle = self._timers.pop(notification_id, None)
            if handle is not None:
                handle.cancel()
            return self.dispatch(DropNotification(notification_id))

    # composite operations

    def select_time_range(self, time_range: str) -> bool:
        """Switch range, regenerate the chart for it and announce the change."""

        with self._lock:
            if not self._accepts(SetTimeRange(time_range)):
                return False
            series = build_chart_series(time_range, self.random, self._clock())
            return self._dispatch_announced(
                SetTimeRange(time_range),
                f"Switched chart to {time_range}",
                SetChartSeries(series),
            )

    def _accepts(self, transition: Transition) -> bool:
        with self._lock:
            return reduce(self._snapshot, transition) is not self._snapshot

    def _dispatch_announced(self, transition: Transition, message: str, *extra: Transition) -> bool:
        """Apply ``transition`` plus an info notification, or nothing if it is rejected."""

        with self._lock:
            if not self._accepts(transition):
                return False
            notification = Notification(message=message, category="info")
            self.dispatch(transition, *extra, PushNotification(notification))
            self._schedule_expiry(notification)
        return True

    def regenerate_chart(self) -> bool:
        with self._lock:
            series = build_chart_series(self._snapshot.time_range, self.random, self._clock())
            return self.dispatch(SetChartSeries(series))

    def refresh_sensor_data(self) -> None:
        """Draw a fresh value and trend for every kind and publish them as one update."""

        with self._lock:
            partial = {}
            for kind, reading in self._snapshot.sensor_data.items():
                partial[kind] = {
                    "current": round(self.random.uniform(reading.min, reading.max), 1),
                    "trend": self.random.choice(TRENDS),
                }
            notification = Notification(message="Sensor data updated", category="success")
            self.dispatch(
                MergeSensorData(partial),
                TouchLastUpdate(self._clock()),
                PushNotification(notification),
            )
            self._schedule_expiry(notification)

    def check_connection(self) -> str:
        """Probe connection health; only a change of status is dispatched."""

        with self._lock:
            status = "online" if self.random.random() < self.config.online_probability else "offline"
            if status != self._snapshot.connection_status:
                logger.info("Dashboard connection %s", status)
                self.dispatch(SetConnectionStatus(status))
            return status

    async def refresh(self, delay_seconds: Optional[float] = None) -> bool:
        """Manual refresh; returns False when a refresh is already in progress."""

        with self._lock:
            if self._snapshot.loading:
                return False
            self.dispatch(SetLoading(True))
        self._bind_loop()
        self._refresh_task = asyncio.current_task()
        delay = self.config.refresh_delay_seconds if delay_seconds is None else delay_seconds
        try:
            await self._sleep(delay)
            with self._lock:
                self.refresh_sensor_data()
                notification = Notification(message="Dashboard data refreshed", category="success")
                self.dispatch(
                    SetChartSeries(build_chart_series(self._snapshot.time_range, self.random, self._clock())),
                    SetLoading(False),
                    PushNotification(notification),
                )
                self._schedule_expiry(notification)
        except asyncio.CancelledError:
            self.dispatch(SetLoading(False))
            raise
        except Exception as exc:
            logger.warning("Dashboard refresh failed: %s", exc)
            with self._lock:
                notification = Notification(message="Failed to refresh dashboard data", category="danger")
                self.dispatch(SetLoading(False), PushNotification(notification))
                self._schedule_expiry(notification)
        finally:
            self._refresh_task = None
        return True

    # lifecycle

    def start(self) -> None:
        """Start the data-refresh and connection-health drivers on the running loop."""

        self._bind_loop()
        if any(not task.done() for task in self._drivers):
            return
        self._stop_event.clear()
        self._drivers = [
            asyncio.create_task(
                self._run_periodic(self.config.refresh_interval_seconds, self.refresh_sensor_data, "data refresh"),
                name="dashboard-data-refresh",
            ),
            asyncio.create_task(
                self._run_periodic(self.config.health_interval_seconds, self.check_connection, "connection health"),
                name="dashboard-connection-health",
            ),
        ]

    async def stop(self) -> None:
        self._stop_event.set()
        tasks = list(self._drivers)
        refresh_task = self._refresh_task
        if refresh_task is not None and refresh_task is not asyncio.current_task():
            tasks.append(refresh_task)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._drivers = []
        with self._lock:
            for handle in self._timers.values():
                handle.cancel()
            self._timers.clear()

    async def _run_periodic(self, interval: float, action: Callable[[], Any], label: str) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                try:
                    action()
                except Exception:
                    logger.exception("Dashboard %s driver failed", label)

    def _bind_loop(self) -> None:
        try:
            self._loop = asyncio.get_running_loop()
        except RuntimeError:
            pass

    def _schedule_expiry(self, notification: Notification, duration_seconds: Optional[float] = None) -> None:
        duration = self.config.notification_duration_seconds if duration_seconds is None else duration_seconds
        loop = self._loop
        try:
            current = asyncio.get_running_loop()
        except RuntimeError:
            current = None
        if loop is None or loop.is_closed():
            loop = current
            self._loop = current
        if loop is None:
            logger.debug("No event loop bound; notification %s will not expire", notification.id)
            return
        if current is loop:
            self._arm_expiry(notification.id, duration)
        else:
            loop.call_soon_threadsafe(self._arm_expiry, notification.id, duration)

    def _arm_expiry(self, notification_id: str, duration: float) -> None:
        with self._lock:
            if self._stop_event.is_set() and not self._drivers:
                return
            previous = self._timers.pop(notification_id, None)
            if previous is not None:
                previous.cancel()
            self._timers[notification_id] = self._loop.call_later(duration, self._expire, notification_id)

    def _expire(self, notification_id: str) -> None:
        with self._lock:
            self._timers.pop(notification_id, None)
            self.dispatch(DropNotification(notification_id))
