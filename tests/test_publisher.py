from __future__ import annotations

import asyncio
import json

import pytest

from sensor_dashboard.config import PublisherConfig, Settings
from sensor_dashboard.services.publisher import TelemetryPublisher
from sensor_dashboard.telemetry import decode


def _settings(**publisher) -> Settings:
    publisher.setdefault("interval_seconds", 0.05)
    return Settings(
        reconnect_delay_seconds=0.01,
        mqtt_connect_timeout_seconds=1.0,
        publisher=PublisherConfig(**publisher),
    )


@pytest.mark.anyio("asyncio")
async def test_publisher_emits_count_readings_then_stops(broker):
    publisher = TelemetryPublisher(_settings(max_messages=3, seed=5), client_factory=broker.client)
    await asyncio.wait_for(publisher.run(), timeout=2.0)

    assert publisher.emitted == 3
    assert publisher.published == 3
    assert publisher.failed == 0
    assert [topic for topic, _, _ in broker.published] == ["sensor/data"] * 3
    assert {qos for _, _, qos in broker.published} == {1}
    for _, payload, _ in broker.published:
        result = decode(payload)
        assert result.recognized
        assert result.envelope.device_id == "sensor-sim-01"
        assert result.envelope.location == "Test Lab"


@pytest.mark.anyio("asyncio")
async def test_first_reading_is_published_on_connect(broker):
    publisher = TelemetryPublisher(_settings(interval_seconds=10.0), client_factory=broker.client)
    publisher.start()
    try:
        for _ in range(50):
            if broker.published:
                break
            await asyncio.sleep(0.01)
        assert len(broker.published) == 1
    finally:
        await publisher.stop()
    assert publisher.stats_snapshot()["mqtt_connected"] is False


@pytest.mark.anyio("asyncio")
async def test_slow_acknowledgments_do_not_shift_the_timeline(broker):
    broker.publish_delay = 0.2
    publisher = TelemetryPublisher(_settings(interval_seconds=0.05, max_messages=4), client_factory=broker.client)
    loop = asyncio.get_running_loop()
    started = loop.time()
    await asyncio.wait_for(publisher.run(), timeout=2.0)
    elapsed = loop.time() - started

    assert publisher.published == 4
    # four ticks 50ms apart plus one ack; serial acks would need 800ms
    assert elapsed < 0.6


@pytest.mark.anyio("asyncio")
async def test_failed_publish_is_counted_and_next_tick_still_fires(broker):
    broker.fail_publishes = 1
    publisher = TelemetryPublisher(_settings(max_messages=3), client_factory=broker.client)
    await asyncio.wait_for(publisher.run(), timeout=2.0)

    assert publisher.emitted == 3
    assert publisher.failed == 1
    assert publisher.published == 2
    assert len(broker.published) == 2


@pytest.mark.anyio("asyncio")
async def test_publisher_retries_after_connection_refused(broker):
    broker.refuse_connects = 2
    publisher = TelemetryPublisher(_settings(max_messages=1), client_factory=broker.client)
    await asyncio.wait_for(publisher.run(), timeout=2.0)

    assert broker.connect_attempts == 3
    assert publisher.published == 1


@pytest.mark.anyio("asyncio")
async def test_stop_interrupts_reconnect_wait(broker):
    broker.refuse_connects = 100
    settings = _settings()
    settings.reconnect_delay_seconds = 30.0
    publisher = TelemetryPublisher(settings, client_factory=broker.client)
    publisher.start()
    await asyncio.sleep(0.05)
    await asyncio.wait_for(publisher.stop(), timeout=1.0)

    assert publisher.emitted == 0
    assert "refused" in publisher.stats_snapshot()["last_mqtt_error"]


@pytest.mark.anyio("asyncio")
async def test_custom_topic_and_qos(broker):
    publisher = TelemetryPublisher(
        _settings(topic="lab/bench", qos=0, max_messages=1, device_id="bench-01"),
        client_factory=broker.client,
    )
    await asyncio.wait_for(publisher.run(), timeout=2.0)

    topic, payload, qos = broker.published[0]
    assert (topic, qos) == ("lab/bench", 0)
    assert json.loads(payload)["deviceId"] == "bench-01"
