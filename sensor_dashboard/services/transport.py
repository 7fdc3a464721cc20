"""MQTT connection factory shared by the publisher and the diagnostic subscriber."""
from __future__ import annotations

import uuid
from typing import AsyncContextManager, Callable, Literal

from aiomqtt import Client, MqttError, TLSParameters

from sensor_dashboard.config import Settings

ClientFactory = Callable[[], AsyncContextManager[Client]]
TransportErrorKind = Literal["auth", "timeout", "connection"]

_AUTH_MARKERS = ("not authorized", "bad user name or password", "bad username or password", "authentication failed")
_TIMEOUT_MARKERS = ("timed out", "timeout")


class TransportError(Exception):
    """Broker connection refused, rejected credentials or timed out."""

    def __init__(self, message: str, *, kind: TransportErrorKind = "connection") -> None:
        super().__init__(message)
        self.kind = kind


def transport_error(exc: BaseException) -> TransportError:
    """Wrap a client error with a coarse classification for reporting."""

    message = str(exc) or exc.__class__.__name__
    lowered = message.lower()
    kind: TransportErrorKind = "connection"
    if any(marker in lowered for marker in _AUTH_MARKERS):
        kind = "auth"
    elif isinstance(exc, TimeoutError) or any(marker in lowered for marker in _TIMEOUT_MARKERS):
        kind = "timeout"
    error = TransportError(message, kind=kind)
    error.__cause__ = exc
    return error


def client_identifier(settings: Settings, role: str) -> str:
    return f"{settings.mqtt_client_id_prefix}-{role}-{uuid.uuid4().hex[:8]}"


def mqtt_client_factory(settings: Settings, *, role: str) -> ClientFactory:
    """Return a callable building a fresh, unconnected client per connection attempt."""

    def _factory() -> Client:
        return Client(
            settings.mqtt_host,
            port=settings.mqtt_port,
            username=settings.mqtt_username,
            password=settings.mqtt_password,
            identifier=client_identifier(settings, role),
            keepalive=settings.mqtt_keepalive_seconds,
            timeout=settings.mqtt_connect_timeout_seconds,
            tls_params=TLSParameters() if settings.mqtt_tls else None,
        )

    return _factory


__all__ = [
    "ClientFactory",
    "MqttError",
    "TransportError",
    "client_identifier",
    "mqtt_client_factory",
    "transport_error",
]
