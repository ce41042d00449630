"""
Performance Orchestrator Integration Tests

Drives the orchestrator end to end with fake probes: timer lifecycle,
overall scoring, optimization advice and memory-driven cleanup.
"""

import asyncio
import random

import httpx
import pytest

from streamperf.config import StreamPerfConfig
from streamperf.event_bus import PerformanceEvent
from streamperf.exceptions import OptimizerClosedError
from streamperf.models import ConnectionInfo
from streamperf.orchestrator import PerformanceOrchestrator
from tests.conftest import FakeMediaElement, FakeNetworkProbe, FakePlayer


def ok(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200)


@pytest.fixture
def fast_config() -> StreamPerfConfig:
    return StreamPerfConfig(
        _env_file=None,
        retry_delay=0.0,
        buffer_tick_interval=0.01,
        network_tick_interval=0.02,
        memory_tick_interval=0.02,
        network_probe_interval=0.02,
    )


@pytest.fixture
def client():
    return httpx.AsyncClient(transport=httpx.MockTransport(ok))


@pytest.fixture
def orchestrator(fast_config, client, memory_probe, clock):
    orch = PerformanceOrchestrator(
        fast_config,
        client=client,
        memory_probe=memory_probe,
        clock=clock,
        install_exit_hook=False,
    )
    yield orch
    orch.destroy()


def collect(orchestrator: PerformanceOrchestrator, event: PerformanceEvent) -> list:
    received = []
    orchestrator.on(event, received.append)
    return received


class TestTimerLifecycle:
    """Every timer is cancelled by stop_monitoring() and destroy()."""

    @pytest.mark.asyncio
    async def test_stop_leaves_zero_timers(self, orchestrator):
        orchestrator.start_monitoring()
        assert orchestrator.pending_timer_count() == 3

        task = asyncio.create_task(orchestrator.optimize_request("https://api.example.com/info"))
        await asyncio.sleep(0)
        assert orchestrator.pending_timer_count() == 4, "Queued request should hold a batch timer"

        orchestrator.stop_monitoring()
        assert orchestrator.pending_timer_count() == 0, "stop_monitoring must cancel every timer"

        response = await task
        assert response.status_code == 200, "Queued request should be flushed, not dropped"
        assert orchestrator.connection_optimizer.metrics.batched_requests == 1

    @pytest.mark.asyncio
    async def test_probe_timer_counted(self, fast_config, client, memory_probe, clock):
        orchestrator = PerformanceOrchestrator(
            fast_config, client=client, network_probe=FakeNetworkProbe(),
            memory_probe=memory_probe, clock=clock, install_exit_hook=False,
        )
        orchestrator.start_monitoring()
        assert orchestrator.pending_timer_count() == 4

        await asyncio.sleep(0.05)
        assert orchestrator.network_detector.measurement_count >= 1

        orchestrator.destroy()
        assert orchestrator.pending_timer_count() == 0

    @pytest.mark.asyncio
    async def test_destroy_cancels_batch_timers(self, orchestrator):
        orchestrator.start_monitoring()
        task = asyncio.create_task(orchestrator.optimize_request("https://api.example.com/info"))
        await asyncio.sleep(0)
        assert orchestrator.pending_timer_count() == 4

        orchestrator.destroy()

        assert orchestrator.pending_timer_count() == 0
        with pytest.raises(OptimizerClosedError):
            await task

    @pytest.mark.asyncio
    async def test_destroy_empties_registries(self, orchestrator):
        player, element = FakePlayer(), FakeMediaElement()
        for i in range(10):
            orchestrator.register_blob_url(f"blob:{i}")
        orchestrator.register_player_instance(player)
        orchestrator.register_media_element(element)
        orchestrator.start_monitoring()

        orchestrator.destroy()
        orchestrator.destroy()

        assert orchestrator.resource_manager.blob_urls == {}
        assert player.destroyed and element.unloaded
        assert not orchestrator.is_monitoring

    @pytest.mark.asyncio
    async def test_restart_after_destroy_rejected(self, orchestrator):
        orchestrator.destroy()
        with pytest.raises(RuntimeError):
            orchestrator.start_monitoring()

    @pytest.mark.asyncio
    async def test_ticks_emit_buffer_health(self, orchestrator):
        changes = collect(orchestrator, PerformanceEvent.BUFFER_HEALTH_CHANGE)
        orchestrator.update_buffer_level(40)

        orchestrator.start_monitoring()
        await asyncio.sleep(0.05)
        orchestrator.stop_monitoring()

        assert len(changes) == 1, "A steady buffer should be reported exactly once"
        assert changes[0]["health_score"] == 100


class TestOverallScore:
    def test_no_data_scores_zero(self, orchestrator):
        summary = orchestrator.get_performance_summary()
        assert summary["overall"] == {"score": 0, "status": "poor"}

    def test_buffer_and_network_renormalized(self, orchestrator):
        orchestrator.update_buffer_level(40)
        orchestrator.buffer_monitor.evaluate()
        orchestrator.handle_connection_change(ConnectionInfo(type="wifi", effective_type="4g", downlink=2.0))

        # (100 * 0.30 + 70 * 0.20) / 0.50
        assert orchestrator.compute_overall_score() == 88

    def test_all_factors(self, orchestrator):
        orchestrator.update_buffer_level(40)
        orchestrator.buffer_monitor.evaluate()
        orchestrator.handle_connection_change(ConnectionInfo(downlink=2.0))
        orchestrator.record_segment_load(800, True)
        orchestrator.record_segment_load(0, False)
        orchestrator.record_quality_switch(720, 1080)
        orchestrator.segment_metrics.refresh()
        orchestrator.quality_metrics.refresh()

        # (100 * 0.30 + 50 * 0.25 + 100 * 0.25 + 70 * 0.20) / 1.0
        assert orchestrator.compute_overall_score() == 82
        assert orchestrator.get_performance_summary()["overall"]["status"] == "excellent"

    def test_score_always_in_range(self, orchestrator):
        rng = random.Random(7)
        for _ in range(200):
            orchestrator.update_buffer_level(rng.uniform(0, 60))
            orchestrator.buffer_monitor.evaluate()
            orchestrator.record_segment_load(rng.uniform(100, 5000), rng.random() > 0.3)
            orchestrator.record_quality_switch(rng.choice([360, 720, 1080]), rng.choice([360, 720, 1080]))
            orchestrator.network_detector.update_conditions(rng.uniform(0, 20_000_000), 50.0, 0.0)
            orchestrator.segment_metrics.refresh()
            orchestrator.quality_metrics.refresh()

            score = orchestrator.compute_overall_score()
            assert 0 <= score <= 100, f"Score out of range: {score}"

    @pytest.mark.parametrize("score,status", [(80, "excellent"), (79, "good"), (60, "good"), (40, "fair"), (39, "poor")])
    def test_status_bands(self, score, status):
        assert PerformanceOrchestrator.status_for_score(score) == status


class TestOptimizationAdvice:
    def test_all_rules_fire(self, orchestrator):
        applied = collect(orchestrator, PerformanceEvent.OPTIMIZATION_APPLIED)

        orchestrator.update_buffer_level(2)
        orchestrator.buffer_monitor.evaluate()
        orchestrator.handle_connection_change(ConnectionInfo(downlink=0.5))
        orchestrator.record_segment_load(4500, True)
        previous = 1080
        for quality in [720, 1080, 720, 1080, 720]:
            orchestrator.record_quality_switch(previous, quality)
            previous = quality
        orchestrator.segment_metrics.refresh()
        orchestrator.quality_metrics.refresh()

        opportunities = orchestrator.check_optimization_opportunities()

        assert [o.type for o in opportunities] == ["buffer", "quality", "cdn", "adaptation"]
        assert len(applied) == 4, "One advisory event per rule"
        assert applied[0]["proposal"]["buffer_size"] >= 30

    def test_healthy_session_is_quiet(self, orchestrator):
        applied = collect(orchestrator, PerformanceEvent.OPTIMIZATION_APPLIED)
        orchestrator.update_buffer_level(40)
        orchestrator.buffer_monitor.evaluate()
        orchestrator.handle_connection_change(ConnectionInfo(downlink=20.0))

        assert orchestrator.check_optimization_opportunities() == []
        assert applied == []

    def test_advice_does_not_mutate_playback(self, orchestrator):
        orchestrator.update_buffer_level(2)
        orchestrator.buffer_monitor.evaluate()
        before = orchestrator.get_streaming_parameters()

        orchestrator.check_optimization_opportunities()

        assert orchestrator.get_streaming_parameters() == before


class TestMemoryTick:
    def test_high_pressure_cleans_and_recommends(self, orchestrator, memory_probe):
        recommendations = collect(orchestrator, PerformanceEvent.RESOURCE_RECOMMENDATIONS)
        warnings = collect(orchestrator, PerformanceEvent.MEMORY_WARNING)
        orchestrator.register_blob_url("blob:a")
        memory_probe.set_usage(160)

        orchestrator._memory_tick()

        assert orchestrator.resource_manager.blob_urls == {}
        assert warnings and warnings[0]["level"] == "warning"
        assert recommendations[0][0]["type"] == "memory_pressure"

    def test_scheduled_cleanup_releases_aged_urls(self, orchestrator, clock):
        for i in range(25):
            orchestrator.register_blob_url(f"blob:{i}")
        clock.advance(10)
        orchestrator.register_blob_url("blob:fresh")
        clock.advance(295)

        orchestrator._memory_tick()

        assert list(orchestrator.resource_manager.blob_urls) == ["blob:fresh"]

    def test_failing_handler_does_not_break_tick(self, orchestrator, memory_probe):
        def broken(payload):
            raise RuntimeError("dashboard bug")

        received = []
        orchestrator.on("memory_warning", broken)
        orchestrator.on("memory_warning", received.append)
        memory_probe.set_usage(120)

        orchestrator._memory_tick()

        assert len(received) == 1
        assert orchestrator.event_bus.handler_failures == 1


class TestExport:
    def test_export_contains_every_component(self, orchestrator):
        data = orchestrator.export_performance_data()
        assert {"summary", "network", "segments", "resources", "connections", "gc", "config"} <= set(data)
        assert data["config"]["batch_size"] == 5

    @pytest.mark.asyncio
    async def test_optimize_request_passthrough(self, orchestrator):
        response = await orchestrator.optimize_request("https://origin.example.com/live/index.m3u8")
        assert response.status_code == 200
        assert orchestrator.connection_optimizer.metrics.successful_requests == 1
