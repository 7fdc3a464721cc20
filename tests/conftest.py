from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path
from types import SimpleNamespace
from typing import List, Tuple

import pytest
from aiomqtt import MqttError

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from sensor_dashboard import build_info  # noqa: E402
from sensor_dashboard.config import get_settings  # noqa: E402

build_info.BUILD_FLAVOR = os.environ.get("SENSOR_TEST_BUILD_FLAVOR", "test")


def topic_matches(pattern: str, topic: str) -> bool:
    pattern_parts = pattern.split("/")
    topic_parts = topic.split("/")
    for index, part in enumerate(pattern_parts):
        if part == "#":
            return True
        if index >= len(topic_parts):
            return False
        if part != "+" and part != topic_parts[index]:
            return False
    return len(pattern_parts) == len(topic_parts)


class FakeClient:
    """In-memory stand-in for ``aiomqtt.Client`` bound to a :class:`FakeBroker`."""

    def __init__(self, broker: "FakeBroker"):
        self.broker = broker
        self.filters: List[str] = []
        self._queue: asyncio.Queue = asyncio.Queue()

    async def __aenter__(self) -> "FakeClient":
        self.broker.connect_attempts += 1
        if self.broker.refuse_connects > 0:
            self.broker.refuse_connects -= 1
            raise MqttError("[Errno 111] Connection refused")
        self.broker.clients.append(self)
        return self

    async def __aexit__(self, *exc_info) -> None:
        if self in self.broker.clients:
            self.broker.clients.remove(self)

    async def publish(self, topic: str, payload=None, qos: int = 0, **_kwargs) -> None:
        if self.broker.publish_delay:
            await asyncio.sleep(self.broker.publish_delay)
        if self.broker.fail_publishes > 0:
            self.broker.fail_publishes -= 1
            raise MqttError("Operation timed out")
        self.broker.published.append((topic, payload, qos))
        self.broker.deliver(topic, payload)

    async def subscribe(self, topic: str, qos: int = 0, **_kwargs) -> None:
        self.filters.append(topic)
        self.broker.subscribed.set()

    def put(self, topic: str, payload) -> None:
        self._queue.put_nowait(SimpleNamespace(topic=SimpleNamespace(value=topic), payload=payload))

    @property
    def messages(self):
        return self._iterate()

    async def _iterate(self):
        while True:
            yield await self._queue.get()


class FakeBroker:
    """Routes publishes to subscribed fake clients with MQTT wildcard matching."""

    def __init__(self) -> None:
        self.clients: List[FakeClient] = []
        self.published: List[Tuple[str, object, int]] = []
        self.subscribed = asyncio.Event()
        self.connect_attempts = 0
        self.refuse_connects = 0
        self.fail_publishes = 0
        self.publish_delay = 0.0

    def client(self) -> FakeClient:
        return FakeClient(self)

    def deliver(self, topic: str, payload) -> None:
        for client in list(self.clients):
            if any(topic_matches(pattern, topic) for pattern in client.filters):
                client.put(topic, payload)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()


@pytest.fixture(autouse=True)
def reset_settings_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("SENSOR_") and key != "SENSOR_TEST_BUILD_FLAVOR":
            monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(PROJECT_ROOT / "tests")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
