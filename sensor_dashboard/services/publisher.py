"""Telemetry publisher responsible for emitting simulated readings over MQTT."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, Optional, Set

from aiomqtt import Client, MqttError

from sensor_dashboard.config import Settings
from sensor_dashboard.services.simulator import ReadingSimulator
from sensor_dashboard.services.transport import ClientFactory, mqtt_client_factory, transport_error
from sensor_dashboard.telemetry import TelemetryEnvelope, encode

logger = logging.getLogger(__name__)


class TelemetryPublisher:
    """Publish one reading per interval to the configured channel.

    The interval timeline is the only authority on when a reading is emitted:
    every publish runs as its own task, so a slow broker acknowledgment or a
    failed send never shifts the next tick.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        simulator: ReadingSimulator | None = None,
        client_factory: ClientFactory | None = None,
    ):
        self.settings = settings
        self.config = settings.publisher
        self.simulator = simulator or ReadingSimulator(self.config)
        self._client_factory = client_factory or mqtt_client_factory(settings, role="publisher")
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._inflight: Set[asyncio.Task] = set()
        self.emitted: int = 0
        self.published: int = 0
        self.failed: int = 0
        self.mqtt_connected: bool = False
        self.last_publish_at: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self.last_mqtt_error: Optional[str] = None

    def stats_snapshot(self) -> Dict[str, object]:
        return {
            "topic": self.config.topic,
            "emitted": self.emitted,
            "published": self.published,
            "failed": self.failed,
            "inflight": len(self._inflight),
            "mqtt_connected": bool(self.mqtt_connected),
            "last_publish_at": self.last_publish_at.isoformat() if self.last_publish_at else None,
            "last_error": self.last_error,
            "last_mqtt_error": self.last_mqtt_error,
        }

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self.run(), name="telemetry-publisher")

    def request_stop(self) -> None:
        """Signal-handler safe stop request; the run loop exits at its next wakeup."""

        self._stop_event.set()

    async def stop(self) -> None:
        self._stop_event.set()
        task = self._task
        if not task:
            return
        grace = self.settings.mqtt_connect_timeout_seconds + self.config.drain_timeout_seconds
        done, _ = await asyncio.wait({task}, timeout=grace)
        if not done:
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def run(self) -> None:
        """Publish until stopped or until ``max_messages`` readings were emitted."""

        reconnect_delay = self.settings.reconnect_delay_seconds
        while not self._should_stop():
            try:
                logger.info(
                    "Connecting to MQTT broker %s:%s",
                    self.settings.mqtt_host,
                    self.settings.mqtt_port,
                )
                async with self._client_factory() as client:
                    self.mqtt_connected = True
                    self.last_mqtt_error = None
                    try:
                        await self._publish_loop(client)
                    finally:
                        await self._drain_inflight()
                        self.mqtt_connected = False
            except MqttError as exc:
                self.mqtt_connected = False
                error = transport_error(exc)
                self.last_mqtt_error = str(error)
                logger.warning("MQTT %s error %s; retrying in %ss", error.kind, error, reconnect_delay)
                await self._wait_for_stop(reconnect_delay)
            except Exception:
                self.mqtt_connected = False
                logger.exception("Unhandled publisher loop error")
                await self._wait_for_stop(reconnect_delay)
        logger.info(
            "Publisher stopped: %s emitted, %s published, %s failed",
            self.emitted,
            self.published,
            self.failed,
        )

    def _should_stop(self) -> bool:
        if self._stop_event.is_set():
            return True
        limit = self.config.max_messages
        return limit is not None and self.emitted >= limit

    async def _wait_for_stop(self, timeout: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=max(timeout, 0.0))
        except asyncio.TimeoutError:
            pass

    async def _publish_loop(self, client: Client) -> None:
        loop = asyncio.get_running_loop()
        interval = self.config.interval_seconds
        next_tick = loop.time()
        while not self._should_stop():
            now = loop.time()
            if now >= next_tick:
                self._emit(client)
                next_tick += interval
                if next_tick <= now:
                    # fell behind (suspended process); resume from now instead of bursting
                    next_tick = now + interval
                continue
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=next_tick - now)
            except asyncio.TimeoutError:
                continue

    def _emit(self, client: Client) -> None:
        reading = self.simulator.next_reading()
        self.emitted += 1
        task = asyncio.create_task(self._publish(client, reading), name=f"publish-{self.emitted}")
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _publish(self, client: Client, reading: TelemetryEnvelope) -> None:
        topic = self.config.topic
        try:
            await client.publish(topic, encode(reading), qos=self.config.qos)
        except Exception as exc:
            self.failed += 1
            self.last_error = str(exc) or exc.__class__.__name__
            logger.warning("Publish to %s failed: %s", topic, self.last_error)
            return
        self.published += 1
        self.last_error = None
        self.last_publish_at = datetime.now(timezone.utc)
        logger.info(
            "Published reading from %s to %s",
            reading.device_id,
            topic,
            extra={"reading": reading.model_dump(mode="json", by_alias=True)},
        )

    async def _drain_inflight(self) -> None:
        if not self._inflight:
            return
        pending = set(self._inflight)
        _, unfinished = await asyncio.wait(pending, timeout=self.config.drain_timeout_seconds)
        for task in unfinished:
            task.cancel()
        if unfinished:
            await asyncio.gather(*unfinished, return_exceptions=True)
            logger.warning("Cancelled %s unacknowledged publishes on shutdown", len(unfinished))
