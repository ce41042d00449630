"""
Event Bus and Periodic Timer Unit Tests

Tests handler isolation, registration by name, and tick scheduling.
"""

import asyncio

import pytest

from streamperf.event_bus import EventBus, PerformanceEvent
from streamperf.scheduler import PeriodicTimer


class TestEventBus:
    def test_handler_receives_payload(self):
        bus = EventBus()
        received = []
        bus.on("cdn_failover", received.append)

        delivered = bus.emit(PerformanceEvent.CDN_FAILOVER, {"from": "a", "to": "b"})

        assert delivered == 1
        assert received == [{"from": "a", "to": "b"}]

    def test_failing_handler_isolated(self):
        bus = EventBus()
        received = []

        def broken(payload):
            raise RuntimeError("consumer bug")

        bus.on(PerformanceEvent.MEMORY_WARNING, broken)
        bus.on(PerformanceEvent.MEMORY_WARNING, received.append)

        delivered = bus.emit(PerformanceEvent.MEMORY_WARNING, {"level": "warning"})

        assert delivered == 1, "Sibling handlers must still run"
        assert received == [{"level": "warning"}]
        assert bus.handler_failures == 1

    def test_off_removes_handler(self):
        bus = EventBus()
        received = []
        bus.on("memory_pressure", received.append)
        bus.off("memory_pressure", received.append)
        bus.off("memory_pressure", received.append)

        bus.emit(PerformanceEvent.MEMORY_PRESSURE, {})
        assert received == []
        assert bus.handler_count("memory_pressure") == 0

    def test_unknown_event_rejected(self):
        bus = EventBus()
        with pytest.raises(ValueError):
            bus.on("segment_loaded", print)

    def test_clear(self):
        bus = EventBus()
        bus.on(PerformanceEvent.OPTIMIZATION_APPLIED, print)
        bus.clear()
        assert bus.handler_count(PerformanceEvent.OPTIMIZATION_APPLIED) == 0


class TestPeriodicTimer:
    @pytest.mark.asyncio
    async def test_ticks_until_stopped(self):
        ticks = []
        timer = PeriodicTimer("test", 0.01, lambda: ticks.append(1))

        timer.start()
        assert timer.is_active
        await asyncio.sleep(0.055)
        timer.stop()
        count = len(ticks)
        await asyncio.sleep(0.03)

        assert count >= 2, f"Expected several ticks, got {count}"
        assert len(ticks) == count, "No ticks may run after stop()"
        assert not timer.is_active

    @pytest.mark.asyncio
    async def test_slow_tick_skipped_not_overlapped(self):
        running = {"now": 0, "max": 0}

        async def slow():
            running["now"] += 1
            running["max"] = max(running["max"], running["now"])
            await asyncio.sleep(0.05)
            running["now"] -= 1

        timer = PeriodicTimer("slow", 0.01, slow, run_immediately=True)
        timer.start()
        await asyncio.sleep(0.08)
        timer.stop()

        assert running["max"] == 1, "Ticks must never overlap"
        assert timer.skipped_ticks > 0

    @pytest.mark.asyncio
    async def test_failing_tick_keeps_timer_alive(self):
        def broken():
            raise RuntimeError("tick bug")

        timer = PeriodicTimer("broken", 0.01, broken, run_immediately=True)
        timer.start()
        await asyncio.sleep(0.035)
        timer.stop()

        assert timer.failed_ticks >= 2

    def test_rejects_non_positive_interval(self):
        with pytest.raises(ValueError):
            PeriodicTimer("bad", 0, print)

    def test_start_requires_running_loop(self):
        timer = PeriodicTimer("no-loop", 1.0, print)
        with pytest.raises(RuntimeError):
            timer.start()
