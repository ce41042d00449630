"""
Resource Lifecycle Manager Unit Tests

Tests blob URL bounds, age-based cleanup, orphan detection, memory
pressure classification and teardown.
"""

import pytest

from streamperf.event_bus import PerformanceEvent
from streamperf.models import NetworkConditions, ResourceRecommendation
from streamperf.resource_manager import ResourceLifecycleManager
from tests.conftest import FakeEventTarget, FakeMediaElement, FakePlayer


@pytest.fixture
def revoked():
    return []


@pytest.fixture
def manager(config, event_bus, memory_probe, clock, revoked):
    return ResourceLifecycleManager(
        config,
        event_bus,
        memory_probe=memory_probe,
        revoke_blob_url=revoked.append,
        clock=clock,
        install_exit_hook=False,
    )


def listeners(*events):
    return [{"event": event, "handler": print} for event in events]


class TestBlobUrls:
    def test_registry_bounded_at_cap(self, manager, clock, revoked):
        for i in range(51):
            manager.register_blob_url(f"blob:{i}", size=1024)
            clock.advance(1)

        assert manager.metrics.blob_cleanups >= 1, "Exceeding the cap should trigger cleanup"
        assert len(manager.blob_urls) == 50, f"Registry should stay at the cap, has {len(manager.blob_urls)}"
        assert revoked == ["blob:0"], "Least recently accessed URL should be released first"

    def test_recently_accessed_survives_trim(self, manager, clock, revoked):
        for i in range(50):
            manager.register_blob_url(f"blob:{i}")
            clock.advance(1)
        manager.access_blob_url("blob:0")
        manager.register_blob_url("blob:50")

        assert "blob:0" in manager.blob_urls
        assert revoked == ["blob:1"]

    def test_aged_urls_cleaned(self, manager, clock, revoked):
        manager.register_blob_url("blob:old")
        clock.advance(200)
        manager.register_blob_url("blob:new")
        clock.advance(101)

        assert manager.cleanup_old_blob_urls() == 1
        assert revoked == ["blob:old"]
        assert list(manager.blob_urls) == ["blob:new"]

    def test_access_keeps_url_alive_until_max_age(self, manager, clock):
        manager.register_blob_url("blob:a")
        clock.advance(250)
        manager.access_blob_url("blob:a")
        clock.advance(100)

        manager.cleanup_old_blob_urls()
        assert "blob:a" not in manager.blob_urls, "Creation age alone exceeds the maximum"

    def test_revoke_failure_still_unregisters(self, config, event_bus, memory_probe, clock):
        def failing_revoke(url):
            raise RuntimeError("already revoked")

        manager = ResourceLifecycleManager(
            config, event_bus, memory_probe=memory_probe, revoke_blob_url=failing_revoke,
            clock=clock, install_exit_hook=False,
        )
        manager.register_blob_url("blob:x")

        assert manager.unregister_blob_url("blob:x") is True
        assert manager.blob_urls == {}

    def test_unregister_is_idempotent(self, manager, revoked):
        manager.register_blob_url("blob:x")
        assert manager.unregister_blob_url("blob:x") is True
        assert manager.unregister_blob_url("blob:x") is False
        assert revoked == ["blob:x"]

    def test_access_unknown(self, manager):
        assert manager.access_blob_url("blob:missing") is False


class TestListenersAndElements:
    def test_unregister_detaches_listeners(self, manager):
        target = FakeEventTarget()
        manager.register_event_listeners(target, listeners("play", "pause"))

        assert manager.unregister_event_listeners(target) == 2
        assert [event for event, _, _ in target.removed] == ["play", "pause"]
        assert manager.unregister_event_listeners(target) == 0

    def test_orphaned_listeners_cleaned(self, manager):
        live, detached = FakeEventTarget(), FakeEventTarget(attached=False)
        manager.register_event_listeners(live, listeners("play"))
        manager.register_event_listeners(detached, listeners("play", "ended", "error"))

        assert manager.cleanup_orphaned_event_listeners() == 3
        assert list(manager.event_listeners) == [live]
        assert len(detached.removed) == 3

    def test_orphaned_media_elements_released(self, manager):
        live, detached = FakeMediaElement(), FakeMediaElement(attached=False)
        manager.register_media_element(live)
        manager.register_media_element(detached)

        assert manager.cleanup_orphaned_media_elements() == 1
        assert detached.paused and detached.unloaded
        assert not live.paused
        assert manager.media_elements == {live}

    def test_custom_attachment_predicate(self, config, event_bus, memory_probe, clock):
        manager = ResourceLifecycleManager(
            config, event_bus, memory_probe=memory_probe, is_attached=lambda el: False,
            clock=clock, install_exit_hook=False,
        )
        manager.register_media_element(FakeMediaElement(attached=True))

        assert manager.cleanup_orphaned_media_elements() == 1

    def test_player_instance_destroyed(self, manager):
        player = FakePlayer()
        manager.register_player_instance(player)

        assert manager.unregister_player_instance(player) is True
        assert player.destroyed
        assert manager.unregister_player_instance(player) is False


class TestSubtitleCache:
    def test_cache_roundtrip_and_expiry(self, manager, clock):
        manager.cache_subtitle_data("en", [{"start": 0, "text": "Hello"}], size=2048)
        assert manager.get_cached_subtitle_data("en")[0]["text"] == "Hello"

        clock.advance(601)
        assert manager.cleanup_old_subtitle_caches() == 1
        assert manager.get_cached_subtitle_data("en") is None

    def test_clear_single_language(self, manager):
        manager.cache_subtitle_data("en", "a")
        manager.cache_subtitle_data("fr", "b")

        assert manager.clear_subtitle_cache("en") == 1
        assert list(manager.subtitle_caches) == ["fr"]
        assert manager.clear_subtitle_cache() == 1


class TestMemoryPressure:
    @pytest.mark.parametrize(
        "used_mb,limit_mb,expected",
        [
            (20, 1024, "low"),
            (50, 80, "medium"),
            (120, 1024, "medium"),
            (60, 80, "high"),
            (160, 1024, "high"),
            (75, 80, "critical"),
            (210, 4096, "critical"),
        ],
    )
    def test_classification(self, manager, used_mb, limit_mb, expected):
        MB = 1024 * 1024
        assert manager.classify_pressure(int(used_mb * MB), int(limit_mb * MB)) == expected

    def test_escalation_triggers_aggressive_cleanup(self, manager, memory_probe, recorder, revoked):
        manager.register_blob_url("blob:a")
        manager.cache_subtitle_data("en", "subs")
        memory_probe.set_usage(160)

        manager.update_memory_metrics()
        assert manager.check_memory_pressure() == "high"

        assert revoked == ["blob:a"], "Aggressive cleanup should revoke every blob URL"
        assert manager.subtitle_caches == {}
        pressure = recorder.payloads(PerformanceEvent.MEMORY_PRESSURE)
        assert pressure[0]["level"] == "high" and pressure[0]["previous"] == "low"
        assert recorder.payloads(PerformanceEvent.MEMORY_WARNING)[0]["level"] == "warning"
        cleanups = recorder.payloads(PerformanceEvent.MEMORY_CLEANUP)
        assert cleanups[-1]["type"] == "aggressive"

    def test_medium_pressure_keeps_resources(self, manager, memory_probe, recorder):
        manager.register_blob_url("blob:a")
        memory_probe.set_usage(50, 80)

        manager.update_memory_metrics()
        assert manager.check_memory_pressure() == "medium"
        assert "blob:a" in manager.blob_urls
        assert recorder.payloads(PerformanceEvent.MEMORY_WARNING) == []

    def test_deescalation_does_not_clean(self, manager, memory_probe, recorder):
        memory_probe.set_usage(250)
        manager.update_memory_metrics()
        manager.check_memory_pressure()
        manager.register_blob_url("blob:b")

        memory_probe.set_usage(160)
        manager.update_memory_metrics()
        assert manager.check_memory_pressure() == "high"
        assert "blob:b" in manager.blob_urls
        warnings = recorder.payloads(PerformanceEvent.MEMORY_WARNING)
        assert [w["level"] for w in warnings] == ["critical", "warning"]

    def test_probe_failure_keeps_last_reading(self, manager, memory_probe):
        manager.update_memory_metrics()
        used = manager.metrics.heap_used

        def broken():
            raise OSError("no such process")

        memory_probe.read = broken
        manager.update_memory_metrics()
        assert manager.metrics.heap_used == used


class TestScheduledCleanup:
    def test_runs_only_after_interval(self, manager, clock, recorder):
        assert manager.maybe_perform_scheduled_cleanup() is False
        clock.advance(30)
        assert manager.maybe_perform_scheduled_cleanup() is True
        assert manager.maybe_perform_scheduled_cleanup() is False

        assert manager.metrics.cleanup_count == 1
        cleanup = recorder.payloads(PerformanceEvent.MEMORY_CLEANUP)[0]
        assert cleanup["type"] == "scheduled"
        assert cleanup["duration_ms"] >= 0

    def test_visibility_hidden_triggers_cleanup(self, manager):
        manager.handle_visibility_change(False)
        assert manager.metrics.cleanup_count == 0
        manager.handle_visibility_change(True)
        assert manager.metrics.cleanup_count == 1

    def test_host_memory_pressure_event(self, manager, revoked):
        manager.register_blob_url("blob:a")
        manager.handle_memory_pressure_event()
        assert revoked == ["blob:a"]

    def test_long_session_gc(self, manager, clock, memory_probe):
        assert manager.optimize_garbage_collection() is False

        clock.advance(1801)
        assert manager.optimize_garbage_collection() is False, "Low pressure sessions are left alone"

        memory_probe.set_usage(120)
        manager.update_memory_metrics()
        manager.check_memory_pressure()
        assert manager.optimize_garbage_collection() is True
        assert manager.session_start == clock()


class TestRecommendations:
    def test_blob_and_listener_counts(self, manager):
        for i in range(21):
            manager.register_blob_url(f"blob:{i}")
        target = FakeEventTarget()
        manager.register_event_listeners(target, listeners(*[f"e{i}" for i in range(101)]))

        types = {r.type for r in manager.monitor_resource_usage()}
        assert types == {"blob_cleanup", "listener_cleanup"}

    def test_heap_usage(self, manager, memory_probe):
        memory_probe.set_usage(95, 100)
        manager.update_memory_metrics()
        manager.check_memory_pressure()

        recommendations = {r.type: r for r in manager.monitor_resource_usage()}
        assert recommendations["memory_pressure"].priority == "critical"
        assert recommendations["heap_usage"].priority == "high"

    def test_apply_blob_cleanup(self, manager, clock):
        manager.register_blob_url("blob:a")
        clock.advance(301)
        rec = ResourceRecommendation(type="blob_cleanup", priority="medium", message="")
        assert manager.apply_recommendation(rec) == 1

    def test_advisory_recommendation_is_noop(self, manager):
        rec = ResourceRecommendation(type="heap_usage", priority="high", message="")
        assert manager.apply_recommendation(rec) == 0


class TestBufferSizing:
    def test_slow_link_grows_buffer(self, manager):
        conditions = NetworkConditions(bandwidth=1_000_000)
        assert manager.optimize_buffer_size(conditions, 30) == 90

    def test_fast_stable_link_caps_buffer(self, manager):
        conditions = NetworkConditions(bandwidth=20_000_000)
        assert manager.optimize_buffer_size(conditions, 60) == 30

    def test_memory_pressure_caps_buffer(self, manager, memory_probe):
        memory_probe.set_usage(160)
        manager.update_memory_metrics()
        manager.check_memory_pressure()

        conditions = NetworkConditions(bandwidth=1_000_000, trend="degrading")
        assert manager.optimize_buffer_size(conditions, 30) == pytest.approx(54)


class TestDestroy:
    def test_destroy_releases_everything(self, manager, revoked):
        player, element, target = FakePlayer(), FakeMediaElement(), FakeEventTarget()
        manager.register_blob_url("blob:a")
        manager.register_player_instance(player)
        manager.register_media_element(element)
        manager.register_event_listeners(target, listeners("play"))
        manager.cache_subtitle_data("en", "subs")

        manager.destroy()

        assert manager.blob_urls == {}
        assert manager.player_instances == set()
        assert manager.media_elements == set()
        assert manager.event_listeners == {}
        assert manager.subtitle_caches == {}
        assert player.destroyed and element.unloaded and target.removed
        assert revoked == ["blob:a"]

    def test_destroy_idempotent(self, manager, recorder):
        manager.destroy()
        manager.destroy()
        assert len(recorder.payloads(PerformanceEvent.MEMORY_CLEANUP)) == 1

    def test_exit_hook_detached(self, config, event_bus, memory_probe):
        manager = ResourceLifecycleManager(config, event_bus, memory_probe=memory_probe)
        assert manager._exit_hook_installed
        manager.destroy()
        assert not manager._exit_hook_installed

    def test_summary(self, manager):
        manager.register_blob_url("blob:a", size=4096)
        summary = manager.get_memory_usage_summary()

        assert summary["resources"]["blob_urls"] == 1
        assert summary["resources"]["blob_size_kb"] == 4
        assert summary["pressure"] == "low"
