from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from sensor_dashboard.state import DashboardSnapshot

TransitionName = Literal[
    "toggle_sidebar",
    "set_loading",
    "set_connection_status",
    "touch_last_update",
    "merge_sensor_data",
    "set_chart_series",
    "set_time_range",
    "select_time_range",
    "set_page",
    "set_page_size",
    "push_notification",
    "drop_notification",
]


class TransitionRequest(BaseModel):
    name: TransitionName
    value: Any = None


class NotificationPayload(BaseModel):
    message: str = Field(min_length=1)
    category: Literal["success", "info", "warning", "danger"] = "info"
    duration_seconds: Optional[float] = Field(default=None, gt=0)


class TransitionResult(BaseModel):
    name: TransitionName
    applied: bool
    snapshot: DashboardSnapshot


class RefreshResult(BaseModel):
    refreshed: bool
    snapshot: DashboardSnapshot
