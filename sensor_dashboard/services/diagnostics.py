"""Wildcard subscriber that reports every payload seen on the broker."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from aiomqtt import Client, MqttError

from sensor_dashboard.config import Settings
from sensor_dashboard.services.transport import ClientFactory, mqtt_client_factory, transport_error
from sensor_dashboard.telemetry import PayloadKind, decode

logger = logging.getLogger(__name__)


@dataclass
class DiagnosticReport:
    topic: str
    kind: PayloadKind
    marker: Optional[str]
    payload: Any
    error: Optional[str]
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class DiagnosticSummary:
    recognized: int = 0
    unrecognized: int = 0
    opaque: int = 0
    connection_errors: int = 0
    disconnects: int = 0
    reason: Optional[str] = None
    topics: List[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def total(self) -> int:
        return self.recognized + self.unrecognized + self.opaque

    def record(self, report: DiagnosticReport) -> None:
        if report.kind is PayloadKind.TELEMETRY:
            self.recognized += 1
        elif report.kind is PayloadKind.UNRECOGNIZED:
            self.unrecognized += 1
        else:
            self.opaque += 1
        if report.topic not in self.topics:
            self.topics.append(report.topic)

    def as_dict(self) -> Dict[str, object]:
        data = asdict(self)
        data["total"] = self.total
        for key in ("started_at", "finished_at"):
            value = data.get(key)
            data[key] = value.isoformat() if value else None
        return data


def classify_message(topic: str, payload: Any) -> DiagnosticReport:
    """Decode one payload into a report; never raises."""

    result = decode(_payload_bytes(payload))
    if result.kind is PayloadKind.OPAQUE:
        shown: Any = result.raw
    else:
        shown = result.data
    return DiagnosticReport(
        topic=topic,
        kind=result.kind,
        marker=result.marker,
        payload=shown,
        error=str(result.error) if result.error else None,
    )


def _payload_bytes(payload: Any) -> bytes:
    if payload is None:
        return b""
    if isinstance(payload, (bytes, bytearray, memoryview)):
        return bytes(payload)
    return str(payload).encode("utf-8")


def _topic_of(message: Any) -> str:
    topic = getattr(message.topic, "value", None)
    if topic is None:
        topic = str(message.topic)
    return topic


class DiagnosticSubscriber:
    """Observe a broker for a bounded window and classify every message.

    The window is the sole termination condition besides an explicit stop (or
    the optional message limit); broker errors are reported and retried.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        client_factory: ClientFactory | None = None,
        on_report: Callable[[DiagnosticReport], None] | None = None,
    ):
        self.settings = settings
        self.config = settings.diagnostics
        self._client_factory = client_factory or mqtt_client_factory(settings, role="diagnostic")
        self._on_report = on_report
        self._stop_event = asyncio.Event()
        self.summary = DiagnosticSummary()
        self.connected: bool = False

    def request_stop(self) -> None:
        """Signal-handler safe; :meth:`run` returns at its next wakeup."""

        self._stop_event.set()

    def stop(self) -> None:
        self.request_stop()

    async def run(self, window_seconds: float | None = None) -> DiagnosticSummary:
        window = float(window_seconds if window_seconds is not None else self.config.window_seconds)
        self.summary = DiagnosticSummary(started_at=datetime.now(timezone.utc))
        logger.info(
            "Observing %s on %s:%s for %ss",
            self.config.topic,
            self.settings.mqtt_host,
            self.settings.mqtt_port,
            window,
        )
        observe = asyncio.create_task(self._observe(), name="diagnostic-observe")
        stopper = asyncio.create_task(self._stop_event.wait(), name="diagnostic-stop")
        try:
            done, _ = await asyncio.wait({observe, stopper}, timeout=window, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (observe, stopper):
                task.cancel()
            await asyncio.gather(observe, stopper, return_exceptions=True)

        if observe in done:
            reason = "message limit reached"
        elif stopper in done:
            reason = "interrupted"
        else:
            reason = f"{window:g}s window elapsed"
        self.summary.reason = reason
        self.summary.finished_at = datetime.now(timezone.utc)
        logger.info("Diagnostic finished (%s)", reason, extra={"summary": self.summary.as_dict()})
        return self.summary

    async def _observe(self) -> None:
        retry_delay = self.settings.reconnect_delay_seconds
        while True:
            was_connected = False
            try:
                async with self._client_factory() as client:
                    self.connected = was_connected = True
                    logger.info("Connected to MQTT broker; subscribing to %s", self.config.topic)
                    await client.subscribe(self.config.topic)
                    if await self._listen(client):
                        return
                logger.warning("MQTT message stream ended; reconnecting")
            except MqttError as exc:
                error = transport_error(exc)
                if was_connected:
                    self.summary.disconnects += 1
                    logger.warning("MQTT client offline: %s", error)
                else:
                    self.summary.connection_errors += 1
                    logger.error("MQTT %s error: %s", error.kind, error)
            except Exception:
                logger.exception("Unhandled diagnostic subscriber error")
            finally:
                self.connected = False
            await asyncio.sleep(retry_delay)

    async def _listen(self, client: Client) -> bool:
        """Consume messages; True once the message limit has been reached."""

        limit = self.config.max_messages
        async for message in client.messages:
            self._handle_message(_topic_of(message), message.payload)
            if limit is not None and self.summary.total >= limit:
                return True
        return False

    def _handle_message(self, topic: str, payload: Any) -> DiagnosticReport:
        report = classify_message(topic, payload)
        self.summary.record(report)
        extra = {"topic": topic, "payload": report.payload}
        if report.kind is PayloadKind.TELEMETRY:
            logger.info("Recognized telemetry on %s (%s format)", topic, report.marker, extra=extra)
        elif report.kind is PayloadKind.UNRECOGNIZED:
            logger.warning("Unrecognized structured payload on %s: %s", topic, report.error, extra=extra)
        else:
            logger.info("Opaque payload on %s: %s", topic, report.payload, extra={"topic": topic})
        if self._on_report is not None:
            try:
                self._on_report(report)
            except Exception:
                logger.exception("Diagnostic report callback failed")
        return report
