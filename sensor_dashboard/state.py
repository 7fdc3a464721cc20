"""Dashboard snapshot model and the pure reducer that evolves it."""
from __future__ import annotations

import logging
import random
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Literal, Mapping, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from sensor_dashboard.config import DashboardConfig

logger = logging.getLogger(__name__)

Trend = Literal["positive", "negative", "neutral"]
ConnectionStatus = Literal["online", "offline"]
NotificationCategory = Literal["success", "info", "warning", "danger"]

TRENDS: Tuple[str, ...] = ("positive", "negative", "neutral")
CONNECTION_STATUSES = frozenset({"online", "offline"})
TIME_RANGES = frozenset({"24h", "7d", "30d"})
NOTIFICATION_CATEGORIES = frozenset({"success", "info", "warning", "danger"})

SENSOR_BOUNDS: Dict[str, Tuple[float, float]] = {
    "temperature": (20.0, 35.0),
    "humidity": (40.0, 80.0),
    "pressure": (1000.0, 1020.0),
    "light": (100.0, 1000.0),
}
_INITIAL_READINGS: Dict[str, Tuple[float, str]] = {
    "temperature": (25.8, "positive"),
    "humidity": (62.3, "negative"),
    "pressure": (1013.2, "neutral"),
    "light": (845.0, "positive"),
}
CHART_POINTS = {"24h": 24, "7d": 7, "30d": 30}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SensorReading(BaseModel):
    model_config = ConfigDict(frozen=True)

    min: float
    max: float
    current: float
    trend: Trend


class Notification(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    message: str
    category: NotificationCategory = "info"
    created_at: datetime = Field(default_factory=_utcnow)


class PaginationCursor(BaseModel):
    model_config = ConfigDict(frozen=True)

    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1)
    total_pages: int = Field(default=250, ge=1)


class ChartPoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    time: datetime
    temperature: float
    humidity: float
    pressure: float
    light: int


class DashboardSnapshot(BaseModel):
    """Immutable view of everything the dashboard renders."""

    model_config = ConfigDict(frozen=True)

    sidebar_open: bool = False
    loading: bool = False
    connection_status: ConnectionStatus = "online"
    last_update: datetime = Field(default_factory=_utcnow)
    sensor_data: Dict[str, SensorReading] = Field(default_factory=dict)
    chart_series: Tuple[ChartPoint, ...] = ()
    time_range: Literal["24h", "7d", "30d"] = "24h"
    pagination: PaginationCursor = Field(default_factory=PaginationCursor)
    notifications: Tuple[Notification, ...] = ()


def initial_sensor_data() -> Dict[str, SensorReading]:
    readings = {}
    for kind, (low, high) in SENSOR_BOUNDS.items():
        current, trend = _INITIAL_READINGS[kind]
        readings[kind] = SensorReading(min=low, max=high, current=current, trend=trend)
    return readings


def initial_snapshot(config: Optional[DashboardConfig] = None, *, now: Optional[datetime] = None) -> DashboardSnapshot:
    config = config or DashboardConfig()
    return DashboardSnapshot(
        last_update=now or _utcnow(),
        sensor_data=initial_sensor_data(),
        time_range=config.time_range,
        pagination=PaginationCursor(page=1, page_size=config.page_size, total_pages=config.total_pages),
    )


def build_chart_series(
    time_range: str,
    rng: random.Random,
    now: Optional[datetime] = None,
) -> Tuple[ChartPoint, ...]:
    """Synthetic history for ``time_range``: hourly for 24h, daily otherwise, oldest first."""

    if time_range not in CHART_POINTS:
        raise ValueError(f"unknown time range {time_range!r}")
    now = now or _utcnow()
    step = timedelta(hours=1) if time_range == "24h" else timedelta(days=1)
    points = []
    for offset in range(CHART_POINTS[time_range], 0, -1):
        points.append(
            ChartPoint(
                time=now - step * offset,
                temperature=round(rng.uniform(20.0, 35.0), 1),
                humidity=round(rng.uniform(40.0, 80.0), 1),
                pressure=round(rng.uniform(1000.0, 1020.0), 1),
                light=rng.randint(100, 999),
            )
        )
    return tuple(points)


class PreconditionViolation(Exception):
    """A transition whose argument is outside its allowed domain."""


@dataclass(frozen=True)
class ToggleSidebar:
    pass


@dataclass(frozen=True)
class SetLoading:
    value: bool


@dataclass(frozen=True)
class SetConnectionStatus:
    status: str


@dataclass(frozen=True)
class TouchLastUpdate:
    at: datetime


@dataclass(frozen=True)
class MergeSensorData:
    partial: Mapping[str, Mapping[str, Any]]


@dataclass(frozen=True)
class SetChartSeries:
    series: Sequence[ChartPoint]


@dataclass(frozen=True)
class SetTimeRange:
    time_range: str


@dataclass(frozen=True)
class SetPage:
    page: int


@dataclass(frozen=True)
class SetPageSize:
    size: int


@dataclass(frozen=True)
class PushNotification:
    notification: Notification


@dataclass(frozen=True)
class DropNotification:
    notification_id: str


Transition = Union[
    ToggleSidebar,
    SetLoading,
    SetConnectionStatus,
    TouchLastUpdate,
    MergeSensorData,
    SetChartSeries,
    SetTimeRange,
    SetPage,
    SetPageSize,
    PushNotification,
    DropNotification,
]


def reduce(snapshot: DashboardSnapshot, transition: Transition) -> DashboardSnapshot:
    """Apply one transition; rejected transitions return ``snapshot`` itself."""

    try:
        return _apply(snapshot, transition)
    except PreconditionViolation as exc:
        logger.debug("Rejected %s: %s", type(transition).__name__, exc)
        return snapshot


def _apply(snapshot: DashboardSnapshot, transition: Transition) -> DashboardSnapshot:
    if isinstance(transition, ToggleSidebar):
        return snapshot.model_copy(update={"sidebar_open": not snapshot.sidebar_open})
    if isinstance(transition, SetLoading):
        if not isinstance(transition.value, bool):
            raise PreconditionViolation(f"loading must be a bool, got {transition.value!r}")
        return snapshot.model_copy(update={"loading": transition.value})
    if isinstance(transition, SetConnectionStatus):
        if not isinstance(transition.status, str) or transition.status not in CONNECTION_STATUSES:
            raise PreconditionViolation(f"unknown connection status {transition.status!r}")
        return snapshot.model_copy(update={"connection_status": transition.status})
    if isinstance(transition, TouchLastUpdate):
        return snapshot.model_copy(update={"last_update": transition.at})
    if isinstance(transition, MergeSensorData):
        return snapshot.model_copy(update={"sensor_data": _merge_sensor_data(snapshot.sensor_data, transition.partial)})
    if isinstance(transition, SetChartSeries):
        return snapshot.model_copy(update={"chart_series": tuple(transition.series)})
    if isinstance(transition, SetTimeRange):
        if not isinstance(transition.time_range, str) or transition.time_range not in TIME_RANGES:
            raise PreconditionViolation(f"unknown time range {transition.time_range!r}")
        return snapshot.model_copy(update={"time_range": transition.time_range})
    if isinstance(transition, SetPage):
        cursor = snapshot.pagination
        if not _is_int(transition.page) or not 1 <= transition.page <= cursor.total_pages:
            raise PreconditionViolation(f"page {transition.page!r} outside 1..{cursor.total_pages}")
        return snapshot.model_copy(update={"pagination": cursor.model_copy(update={"page": transition.page})})
    if isinstance(transition, SetPageSize):
        if not _is_int(transition.size) or transition.size <= 0:
            raise PreconditionViolation(f"page size must be positive, got {transition.size!r}")
        cursor = snapshot.pagination.model_copy(update={"page": 1, "page_size": transition.size})
        return snapshot.model_copy(update={"pagination": cursor})
    if isinstance(transition, PushNotification):
        return snapshot.model_copy(update={"notifications": snapshot.notifications + (transition.notification,)})
    if isinstance(transition, DropNotification):
        remaining = tuple(n for n in snapshot.notifications if n.id != transition.notification_id)
        if len(remaining) == len(snapshot.notifications):
            return snapshot
        return snapshot.model_copy(update={"notifications": remaining})
    raise PreconditionViolation(f"unsupported transition {transition!r}")


def _is_int(value: Any) -> bool:
    # bool is an int subclass
    return isinstance(value, int) and not isinstance(value, bool)


def _merge_sensor_data(
    current: Mapping[str, SensorReading],
    partial: Mapping[str, Mapping[str, Any]],
) -> Dict[str, SensorReading]:
    merged = dict(current)
    for kind, fields in partial.items():
        if isinstance(fields, SensorReading):
            merged[kind] = fields
            continue
        base = merged[kind].model_dump() if kind in merged else {}
        try:
            merged[kind] = SensorReading.model_validate({**base, **dict(fields)})
        except (ValidationError, TypeError, ValueError) as exc:
            raise PreconditionViolation(f"invalid reading for {kind}: {exc}") from exc
    return merged
