"""Runtime configuration for the publisher, diagnostic tool and dashboard session."""
from __future__ import annotations

from functools import lru_cache
from typing import Literal, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from sensor_dashboard import build_info

MIN_INTERVAL_SECONDS = 0.01
MAX_INTERVAL_SECONDS = 3600.0
MQTT_SCHEMES = {"mqtt", "mqtts", "tcp", "ssl"}
TLS_SCHEMES = {"mqtts", "ssl"}

TimeRange = Literal["24h", "7d", "30d"]


def _clamp_interval_seconds(value: float, *, field: str) -> float:
    try:
        parsed = float(value)
    except Exception as exc:
        raise ValueError(f"{field} must be a number") from exc
    if parsed != parsed:  # NaN
        raise ValueError(f"{field} must be a real number")
    if parsed <= 0:
        raise ValueError(f"{field} must be positive")
    return max(MIN_INTERVAL_SECONDS, min(parsed, MAX_INTERVAL_SECONDS))


class PublisherConfig(BaseModel):
    """Simulated device publishing one reading per interval."""

    device_id: str = Field(default="sensor-sim-01", min_length=1, description="deviceId stamped on readings")
    location: Optional[str] = Field(default="Test Lab", description="Free-text location stamped on readings")
    topic: str = Field(default="sensor/data", min_length=1, description="Channel readings are published to")
    qos: int = Field(default=1, ge=0, le=2, description="MQTT QoS; 1 waits for the broker PUBACK")
    interval_seconds: float = Field(default=5.0, description="Publish cadence in seconds")
    max_messages: Optional[int] = Field(default=None, ge=1, description="Stop after this many readings")
    seed: Optional[int] = Field(default=None, description="Seed for repeatable readings")
    drain_timeout_seconds: float = Field(
        default=2.0,
        ge=0.0,
        description="How long shutdown waits for in-flight publishes before cancelling them",
    )

    @field_validator("interval_seconds")
    @classmethod
    def _clamp_interval(cls, value: float) -> float:
        return _clamp_interval_seconds(value, field="publisher.interval_seconds")


class DiagnosticsConfig(BaseModel):
    """Wildcard subscriber used to inspect broker traffic."""

    topic: str = Field(default="#", min_length=1, description="Subscription filter; # observes every channel")
    window_seconds: float = Field(default=60.0, description="Observation window before the tool exits")
    max_messages: Optional[int] = Field(default=None, ge=1, description="Exit early after this many messages")

    @field_validator("window_seconds")
    @classmethod
    def _clamp_window(cls, value: float) -> float:
        return _clamp_interval_seconds(value, field="diagnostics.window_seconds")


class DashboardConfig(BaseModel):
    """Cadences and defaults for the dashboard session."""

    refresh_interval_seconds: float = Field(default=30.0, description="Data-refresh driver period")
    health_interval_seconds: float = Field(default=5.0, description="Connection-health driver period")
    notification_duration_seconds: float = Field(default=3.0, description="Notification auto-expiry")
    refresh_delay_seconds: float = Field(default=2.0, ge=0.0, description="Simulated manual refresh latency")
    online_probability: float = Field(default=0.9, ge=0.0, le=1.0, description="Chance a health probe reports online")
    total_pages: int = Field(default=250, ge=1)
    page_size: int = Field(default=20, ge=1)
    time_range: TimeRange = "24h"
    seed: Optional[int] = Field(default=None, description="Seed for repeatable synthetic updates")

    @field_validator("refresh_interval_seconds", "health_interval_seconds", "notification_duration_seconds")
    @classmethod
    def _clamp_periods(cls, value: float, info) -> float:
        return _clamp_interval_seconds(value, field=f"dashboard.{info.field_name}")


class Settings(BaseSettings):
    """Environment driven settings shared by every entry point."""

    service_name: str = "sensor-dashboard"
    service_version: str = build_info.SERVICE_VERSION
    log_level: str = "INFO"
    log_format: Literal["json", "text"] = "json"
    http_host: str = "127.0.0.1"
    http_port: int = Field(default=8000, ge=1, le=65535)
    mqtt_url: str = Field(default="mqtt://127.0.0.1:1883", description="MQTT broker URL")
    mqtt_username: Optional[str] = None
    mqtt_password: Optional[str] = None
    mqtt_client_id_prefix: str = Field(default="sensor-dashboard", description="Prefix for generated client ids")
    mqtt_connect_timeout_seconds: float = Field(default=10.0, gt=0)
    mqtt_keepalive_seconds: int = Field(default=60, ge=1)
    reconnect_delay_seconds: float = Field(default=5.0, ge=0.0)
    publisher: PublisherConfig = Field(default_factory=PublisherConfig)
    diagnostics: DiagnosticsConfig = Field(default_factory=DiagnosticsConfig)
    dashboard: DashboardConfig = Field(default_factory=DashboardConfig)

    model_config = SettingsConfigDict(
        env_prefix="SENSOR_",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    @field_validator("mqtt_url")
    @classmethod
    def _validate_mqtt_url(cls, value: str) -> str:
        parsed = urlparse(value)
        if parsed.scheme not in MQTT_SCHEMES:
            raise ValueError(f"mqtt_url scheme must be one of {sorted(MQTT_SCHEMES)}, got {value!r}")
        if not parsed.hostname:
            raise ValueError(f"mqtt_url is missing a host: {value!r}")
        return value

    @model_validator(mode="after")
    def _credentials_from_url(self):
        parsed = _parsed_mqtt(self.mqtt_url)
        if not self.mqtt_username and parsed.username:
            self.mqtt_username = parsed.username
        if not self.mqtt_password and parsed.password:
            self.mqtt_password = parsed.password
        return self

    @property
    def mqtt_host(self) -> str:
        return _parsed_mqtt(self.mqtt_url).hostname or "127.0.0.1"

    @property
    def mqtt_port(self) -> int:
        parsed = _parsed_mqtt(self.mqtt_url)
        if parsed.port:
            return parsed.port
        return 8883 if self.mqtt_tls else 1883

    @property
    def mqtt_scheme(self) -> str:
        return _parsed_mqtt(self.mqtt_url).scheme or "mqtt"

    @property
    def mqtt_tls(self) -> bool:
        return self.mqtt_scheme in TLS_SCHEMES


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


@lru_cache(maxsize=32)
def _parsed_mqtt(url: str):
    return urlparse(url)
