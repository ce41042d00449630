"""Shared fixtures and probe/resource fakes for streamperf tests."""

from collections import deque
from typing import Any, Callable

import pytest

from streamperf.config import StreamPerfConfig
from streamperf.event_bus import EventBus, PerformanceEvent
from streamperf.exceptions import ProbeFailure
from streamperf.interfaces.metrics import IMemoryProbe
from streamperf.interfaces.network import INetworkProbe
from streamperf.interfaces.resources import IEventTarget, IMediaElement, IPlayerInstance
from streamperf.models import HeapUsage

MB = 1024 * 1024


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def __call__(self) -> float:
        return self.now


class FakeMemoryProbe(IMemoryProbe):
    """Memory probe returning whatever the test sets."""

    def __init__(self, used_mb: float = 20, limit_mb: float = 1024):
        self.used = int(used_mb * MB)
        self.limit = int(limit_mb * MB)
        self.reads = 0

    def set_usage(self, used_mb: float, limit_mb: float | None = None) -> None:
        self.used = int(used_mb * MB)
        if limit_mb is not None:
            self.limit = int(limit_mb * MB)

    def read(self) -> HeapUsage:
        self.reads += 1
        return HeapUsage(used=self.used, total=self.used, limit=self.limit)


class FakeNetworkProbe(INetworkProbe):
    """Network probe replaying scripted results.

    Each queue holds floats or exceptions; an exhausted queue repeats the
    last entry.
    """

    def __init__(self, bandwidth=(5_000_000,), latency=(40.0,), packet_loss=(0.0,)):
        self._queues = {
            "bandwidth": deque(bandwidth),
            "latency": deque(latency),
            "packet_loss": deque(packet_loss),
        }
        self.calls = 0

    def _next(self, name: str) -> float:
        queue = self._queues[name]
        value = queue.popleft() if len(queue) > 1 else queue[0]
        if isinstance(value, Exception):
            raise value
        return value

    async def measure_bandwidth(self) -> float:
        self.calls += 1
        return self._next("bandwidth")

    async def measure_latency(self) -> float:
        return self._next("latency")

    async def measure_packet_loss(self) -> float:
        return self._next("packet_loss")


class FailingNetworkProbe(FakeNetworkProbe):
    def __init__(self):
        failure = ProbeFailure("probe endpoint unreachable")
        super().__init__(bandwidth=(failure,), latency=(failure,), packet_loss=(failure,))


class FakeMediaElement(IMediaElement):
    def __init__(self, attached: bool = True):
        self.attached = attached
        self.paused = False
        self.unloaded = False

    def pause(self) -> None:
        self.paused = True

    def unload(self) -> None:
        self.unloaded = True

    def is_attached(self) -> bool:
        return self.attached


class FakeEventTarget(IEventTarget):
    def __init__(self, attached: bool = True):
        self.attached = attached
        self.removed: list[tuple[str, Any, Any]] = []

    def remove_event_listener(self, event: str, handler: Callable[..., Any], options: Any = None) -> None:
        self.removed.append((event, handler, options))

    def is_attached(self) -> bool:
        return self.attached


class FakePlayer(IPlayerInstance):
    def __init__(self):
        self.destroyed = False

    def destroy(self) -> None:
        self.destroyed = True


class EventRecorder:
    """Subscribes to every event on a bus and records payloads."""

    def __init__(self, bus: EventBus):
        self.events: list[tuple[PerformanceEvent, Any]] = []
        for event in PerformanceEvent:
            bus.on(event, self._make_handler(event))

    def _make_handler(self, event: PerformanceEvent):
        def handler(payload):
            self.events.append((event, payload))

        return handler

    def payloads(self, event: PerformanceEvent) -> list[Any]:
        return [payload for name, payload in self.events if name == event]


@pytest.fixture
def config() -> StreamPerfConfig:
    """Configuration isolated from the environment, with instant retries."""
    return StreamPerfConfig(_env_file=None, retry_delay=0.0)


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def recorder(event_bus) -> EventRecorder:
    return EventRecorder(event_bus)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_probe() -> FakeMemoryProbe:
    return FakeMemoryProbe()
