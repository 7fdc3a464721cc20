"""Wire format for sensor readings and classification of arbitrary broker payloads.

Readings travel as compact UTF-8 JSON objects using the camelCase field names
devices already emit (``deviceId``, ``batteryLevel``, ``signalStrength``).
A payload counts as telemetry when it either carries a set ``data_points``
marker used by the full device protocol (empty lists and objects count; null,
false, zero and the empty string do not) or validates as a complete reading.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field, ValidationError, field_validator

DATA_POINTS_MARKER = "data_points"
ENVELOPE_MARKER = "envelope"


class DecodeError(Exception):
    """Base class for payloads that cannot be turned into a reading."""

    def __init__(self, message: str, *, raw: str = "") -> None:
        super().__init__(message)
        self.raw = raw


class MalformedPayload(DecodeError):
    """The bytes are not UTF-8 JSON."""


class UnrecognizedShape(DecodeError):
    """The payload is JSON but is not a reading."""


class PayloadKind(str, Enum):
    TELEMETRY = "telemetry"
    UNRECOGNIZED = "unrecognized"
    OPAQUE = "opaque"


class TelemetryEnvelope(BaseModel):
    """One snapshot from one device at one instant."""

    model_config = ConfigDict(populate_by_name=True, frozen=True, allow_inf_nan=False)

    device_id: str = Field(alias="deviceId", min_length=1)
    location: Optional[str] = None
    temperature: float
    humidity: float
    pressure: float
    light: Union[int, float]
    battery_level: int = Field(alias="batteryLevel", ge=0, le=100)
    signal_strength: int = Field(alias="signalStrength", lt=0)
    timestamp: AwareDatetime

    @field_validator(
        "temperature",
        "humidity",
        "pressure",
        "light",
        "battery_level",
        "signal_strength",
        mode="before",
    )
    @classmethod
    def _require_json_number(cls, value: Any) -> Any:
        # bool is an int subclass; strings would otherwise be coerced.
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError("must be a JSON number")
        return value


@dataclass(frozen=True)
class DecodeResult:
    """Tagged outcome of :func:`decode`; ``raw`` always holds the payload text."""

    kind: PayloadKind
    raw: str
    data: Any = None
    envelope: Optional[TelemetryEnvelope] = None
    marker: Optional[str] = None
    error: Optional[DecodeError] = None

    @property
    def recognized(self) -> bool:
        return self.kind is PayloadKind.TELEMETRY


def encode(envelope: TelemetryEnvelope) -> bytes:
    body = envelope.model_dump(mode="json", by_alias=True, exclude_none=True)
    return json.dumps(body, separators=(",", ":"), ensure_ascii=False, allow_nan=False).encode("utf-8")


def decode_envelope(payload: bytes | str) -> TelemetryEnvelope:
    """Strict decode that raises :class:`DecodeError` subclasses."""

    text, data = _parse_json(payload)
    if not isinstance(data, dict):
        raise UnrecognizedShape(f"expected a JSON object, got {type(data).__name__}", raw=text)
    try:
        return TelemetryEnvelope.model_validate(data)
    except ValidationError as exc:
        raise UnrecognizedShape(_summarize(exc), raw=text) from exc


def decode(payload: bytes | str) -> DecodeResult:
    """Classify any payload without raising."""

    try:
        text, data = _parse_json(payload)
    except MalformedPayload as exc:
        return DecodeResult(kind=PayloadKind.OPAQUE, raw=exc.raw, error=exc)

    if not isinstance(data, dict):
        error = UnrecognizedShape(f"expected a JSON object, got {type(data).__name__}", raw=text)
        return DecodeResult(kind=PayloadKind.UNRECOGNIZED, raw=text, data=data, error=error)

    if _has_marker(data):
        return DecodeResult(kind=PayloadKind.TELEMETRY, raw=text, data=data, marker=DATA_POINTS_MARKER)

    try:
        envelope = TelemetryEnvelope.model_validate(data)
    except ValidationError as exc:
        error = UnrecognizedShape(
            f"missing {DATA_POINTS_MARKER} marker and not a reading ({_summarize(exc)})",
            raw=text,
        )
        return DecodeResult(kind=PayloadKind.UNRECOGNIZED, raw=text, data=data, error=error)
    return DecodeResult(
        kind=PayloadKind.TELEMETRY,
        raw=text,
        data=data,
        envelope=envelope,
        marker=ENVELOPE_MARKER,
    )


def _has_marker(data: dict) -> bool:
    """Marker present with a value devices treat as set: empty lists and objects count."""

    if DATA_POINTS_MARKER not in data:
        return False
    value = data[DATA_POINTS_MARKER]
    if value is None or value is False or value == "":
        return False
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value == value and value != 0
    return True


def _parse_json(payload: bytes | str) -> tuple[str, Any]:
    if isinstance(payload, (bytes, bytearray, memoryview)):
        raw_bytes = bytes(payload)
        try:
            text = raw_bytes.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedPayload(
                "payload is not valid UTF-8",
                raw=raw_bytes.decode("utf-8", errors="replace"),
            ) from exc
    else:
        text = str(payload)
    if not text.strip():
        raise MalformedPayload("payload is empty", raw=text)
    try:
        data = json.loads(text)
    except (ValueError, RecursionError) as exc:
        raise MalformedPayload(f"payload is not JSON: {exc}", raw=text) from exc
    return text, data


def _summarize(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ())) or "payload"
        parts.append(f"{location}: {error.get('msg')}")
    return "; ".join(parts)
