"""Resource lifecycle management for media playback sessions.

Tracks the transient resources a player creates (blob URLs, event
listeners, media elements, streaming engine instances, subtitle caches),
classifies memory pressure, and releases resources on a schedule or
aggressively when memory runs short.
"""

import atexit
import logging
import threading
import time
from typing import Any, Callable, Iterable, Mapping, Optional

from streamperf.config import StreamPerfConfig, get_config
from streamperf.event_bus import EventBus, PerformanceEvent
from streamperf.gc_config import request_collection
from streamperf.interfaces.metrics import IMemoryProbe
from streamperf.models import (
    PRESSURE_LEVELS,
    BlobUrlRecord,
    HeapUsage,
    ListenerRecord,
    MemoryMetrics,
    MemoryPressure,
    NetworkConditions,
    ResourceRecommendation,
    SubtitleCacheEntry,
)

logger = logging.getLogger(__name__)

MB = 1024 * 1024

# Usage ratio thresholds for pressure classification
CRITICAL_USAGE_RATIO = 0.9
HIGH_USAGE_RATIO = 0.7
MEDIUM_USAGE_RATIO = 0.5

# Resource monitoring thresholds
BLOB_URL_ADVISORY_COUNT = 20
LISTENER_ADVISORY_COUNT = 100
HEAP_ADVISORY_PERCENT = 80


class ResourceLifecycleManager:
    """Owns the resource registries of one playback session."""

    def __init__(
        self,
        config: Optional[StreamPerfConfig] = None,
        event_bus: Optional[EventBus] = None,
        memory_probe: Optional[IMemoryProbe] = None,
        revoke_blob_url: Optional[Callable[[str], None]] = None,
        is_attached: Optional[Callable[[Any], bool]] = None,
        clock: Callable[[], float] = time.time,
        install_exit_hook: bool = True,
    ):
        """Initialize resource manager.

        Args:
            config: Thresholds and ages (defaults to global config)
            event_bus: Bus receiving memory events
            memory_probe: Memory reader; defaults to a psutil process probe
            revoke_blob_url: Called with each blob URL being released
            is_attached: Predicate telling whether an element is still live;
                defaults to the element's own ``is_attached()``
            clock: Time source in seconds
            install_exit_hook: Run a complete sweep at interpreter exit
        """
        self.config = config or get_config()
        self.event_bus = event_bus or EventBus()
        if memory_probe is None:
            from streamperf.memory_monitor import PsutilMemoryProbe

            memory_probe = PsutilMemoryProbe()
        self.memory_probe = memory_probe
        self._revoke_blob_url = revoke_blob_url
        self._is_attached = is_attached
        self._clock = clock

        self.blob_urls: dict[str, BlobUrlRecord] = {}
        self.event_listeners: dict[Any, list[ListenerRecord]] = {}
        self.player_instances: set[Any] = set()
        self.media_elements: set[Any] = set()
        self.subtitle_caches: dict[str, SubtitleCacheEntry] = {}

        self.metrics = MemoryMetrics()
        self.session_start = clock()
        self.destroyed = False

        self._lock = threading.RLock()
        self._exit_hook_installed = False
        if install_exit_hook:
            atexit.register(self._handle_exit)
            self._exit_hook_installed = True

    # Blob URLs

    def register_blob_url(
        self, url: str, size: int = 0, type: str = "unknown", source: str = "unknown"
    ) -> None:
        """Track a blob URL.

        Re-registering a URL refreshes its metadata. Exceeding the blob URL
        cap triggers cleanup of old entries.

        Args:
            url: Blob URL string
            size: Payload size in bytes
            type: Content type
            source: Component that created it
        """
        now = self._clock()
        with self._lock:
            self.blob_urls[url] = BlobUrlRecord(
                created=now, last_accessed=now, size=size, type=type, source=source
            )
            over_cap = len(self.blob_urls) > self.config.max_blob_urls

        logger.debug(f"Registered blob URL: {url[:50]} ({type})")
        if over_cap:
            self.cleanup_old_blob_urls()

    def access_blob_url(self, url: str) -> bool:
        """Mark a blob URL as used now. Returns False if it is not tracked."""
        with self._lock:
            record = self.blob_urls.get(url)
            if record is None:
                return False
            record.last_accessed = self._clock()
            return True

    def unregister_blob_url(self, url: str) -> bool:
        """Revoke and stop tracking a blob URL.

        Returns:
            True if the URL was tracked
        """
        with self._lock:
            record = self.blob_urls.pop(url, None)
        if record is None:
            return False

        if self._revoke_blob_url is not None:
            try:
                self._revoke_blob_url(url)
            except Exception as e:
                logger.warning(f"Failed to revoke blob URL {url[:50]}: {e}")
        logger.debug(f"Unregistered blob URL: {url[:50]}")
        return True

    def cleanup_old_blob_urls(self) -> int:
        """Release blob URLs that are too old or unused, then enforce the cap.

        Entries older than, or unaccessed for, the maximum blob age go
        first; if the registry is still over the cap the least recently
        accessed entries are released until it fits.

        Returns:
            Number of URLs released
        """
        now = self._clock()
        max_age = self.config.max_blob_age
        with self._lock:
            stale = [
                url
                for url, record in self.blob_urls.items()
                if now - record.created > max_age or now - record.last_accessed > max_age
            ]
            remaining = len(self.blob_urls) - len(stale)
            overflow = remaining - self.config.max_blob_urls
            if overflow > 0:
                stale_set = set(stale)
                by_access = sorted(
                    (item for item in self.blob_urls.items() if item[0] not in stale_set),
                    key=lambda item: item[1].last_accessed,
                )
                stale.extend(url for url, _ in by_access[:overflow])
            self.metrics.blob_cleanups += 1

        cleaned = sum(1 for url in stale if self.unregister_blob_url(url))
        if cleaned:
            logger.info(f"Cleaned up {cleaned} old blob URLs")
        return cleaned

    def cleanup_all_blob_urls(self) -> int:
        """Release every tracked blob URL."""
        with self._lock:
            urls = list(self.blob_urls)
        cleaned = sum(1 for url in urls if self.unregister_blob_url(url))
        if cleaned:
            logger.info(f"Cleaned up all {cleaned} blob URLs")
        return cleaned

    # Event listeners

    def register_event_listeners(
        self, element: Any, listeners: Iterable[Mapping[str, Any]]
    ) -> int:
        """Track listeners attached to an element.

        Args:
            element: Object the listeners were attached to
            listeners: Mappings with ``event``, ``handler`` and optional ``options``

        Returns:
            Number of listeners registered
        """
        now = self._clock()
        records = [
            ListenerRecord(
                event=listener["event"],
                handler=listener["handler"],
                options=listener.get("options"),
                registered=now,
            )
            for listener in listeners
        ]
        with self._lock:
            self.event_listeners.setdefault(element, []).extend(records)
        logger.debug(f"Registered {len(records)} event listeners for {element!r}")
        return len(records)

    def unregister_event_listeners(self, element: Any) -> int:
        """Detach and stop tracking every listener on an element.

        Returns:
            Number of listeners removed
        """
        with self._lock:
            records = self.event_listeners.pop(element, None)
        if not records:
            return 0

        remove = getattr(element, "remove_event_listener", None)
        for record in records:
            if remove is None:
                break
            try:
                remove(record.event, record.handler, record.options)
            except Exception as e:
                logger.warning(f"Failed to remove {record.event} listener: {e}")

        logger.debug(f"Unregistered {len(records)} event listeners")
        return len(records)

    def cleanup_orphaned_event_listeners(self) -> int:
        """Drop listeners whose element is no longer attached."""
        with self._lock:
            orphaned = [el for el in self.event_listeners if not self._attached(el)]
        cleaned = sum(self.unregister_event_listeners(el) for el in orphaned)
        if cleaned:
            logger.info(f"Cleaned up {cleaned} orphaned event listeners")
        return cleaned

    # Player instances and media elements

    def register_player_instance(self, instance: Any) -> None:
        with self._lock:
            self.player_instances.add(instance)
        logger.debug("Registered player instance")

    def unregister_player_instance(self, instance: Any) -> bool:
        """Destroy and stop tracking a streaming engine instance."""
        with self._lock:
            if instance not in self.player_instances:
                return False
            self.player_instances.discard(instance)

        destroy = getattr(instance, "destroy", None)
        if callable(destroy):
            try:
                destroy()
            except Exception as e:
                logger.warning(f"Failed to destroy player instance: {e}")
        logger.debug("Unregistered and destroyed player instance")
        return True

    def register_media_element(self, element: Any) -> None:
        with self._lock:
            self.media_elements.add(element)
        logger.debug("Registered media element")

    def unregister_media_element(self, element: Any) -> bool:
        """Pause, unload and stop tracking a media element."""
        with self._lock:
            if element not in self.media_elements:
                return False
            self.media_elements.discard(element)

        for method_name in ("pause", "unload"):
            method = getattr(element, method_name, None)
            if not callable(method):
                continue
            try:
                method()
            except Exception as e:
                logger.warning(f"Failed to {method_name} media element: {e}")
        logger.debug("Unregistered and cleaned media element")
        return True

    def cleanup_orphaned_media_elements(self) -> int:
        """Release media elements that are no longer attached."""
        with self._lock:
            orphaned = [el for el in self.media_elements if not self._attached(el)]
        cleaned = sum(1 for el in orphaned if self.unregister_media_element(el))
        if cleaned:
            logger.info(f"Cleaned up {cleaned} orphaned media elements")
        return cleaned

    def _attached(self, element: Any) -> bool:
        if self._is_attached is not None:
            return bool(self._is_attached(element))
        check = getattr(element, "is_attached", None)
        if callable(check):
            try:
                return bool(check())
            except Exception as e:
                logger.warning(f"Attachment check failed for {element!r}: {e}")
                return True
        return True

    # Subtitle caches

    def cache_subtitle_data(self, language: str, data: Any, size: int = 0) -> None:
        """Cache parsed subtitles for a language."""
        now = self._clock()
        with self._lock:
            self.subtitle_caches[language] = SubtitleCacheEntry(
                data=data, created=now, size=size, last_accessed=now
            )
        logger.debug(f"Cached subtitle data for {language} ({size // 1024}KB)")
        self.cleanup_old_subtitle_caches()

    def get_cached_subtitle_data(self, language: str) -> Any:
        """Return cached subtitles for a language, or None."""
        with self._lock:
            entry = self.subtitle_caches.get(language)
            if entry is None:
                return None
            entry.last_accessed = self._clock()
            return entry.data

    def clear_subtitle_cache(self, language: Optional[str] = None) -> int:
        """Clear one language or every cache.

        Returns:
            Number of caches removed
        """
        with self._lock:
            if language is not None:
                return 1 if self.subtitle_caches.pop(language, None) is not None else 0
            count = len(self.subtitle_caches)
            self.subtitle_caches.clear()
        if count:
            logger.debug(f"Cleared all subtitle caches ({count} items)")
        return count

    def cleanup_old_subtitle_caches(self) -> int:
        now = self._clock()
        max_age = self.config.max_subtitle_cache_age
        with self._lock:
            stale = [
                language
                for language, entry in self.subtitle_caches.items()
                if now - entry.created > max_age or now - entry.last_accessed > max_age
            ]
        cleaned = sum(self.clear_subtitle_cache(language) for language in stale)
        if cleaned:
            logger.info(f"Cleaned up {cleaned} old subtitle caches")
        return cleaned

    # Memory metrics and pressure

    def update_memory_metrics(self) -> MemoryMetrics:
        """Refresh heap readings and resource counters."""
        try:
            usage: Optional[HeapUsage] = self.memory_probe.read()
        except Exception as e:
            logger.warning(f"Memory probe failed, keeping last reading: {e}")
            usage = None

        with self._lock:
            if usage is not None:
                self.metrics.heap_used = usage.used
                self.metrics.heap_total = usage.total
                self.metrics.heap_limit = usage.limit
            self.metrics.total_blob_urls = len(self.blob_urls)
            self.metrics.total_blob_size = sum(r.size for r in self.blob_urls.values())
            self.metrics.total_event_listeners = sum(
                len(records) for records in self.event_listeners.values()
            )
            return self.metrics

    def classify_pressure(self, heap_used: int, heap_limit: int) -> MemoryPressure:
        """Classify memory pressure from the usage ratio and absolute thresholds."""
        ratio = heap_used / heap_limit if heap_limit > 0 else 0.0
        if ratio > CRITICAL_USAGE_RATIO or heap_used > self.config.heap_critical_bytes:
            return "critical"
        if ratio > HIGH_USAGE_RATIO or heap_used > self.config.heap_high_bytes:
            return "high"
        if ratio > MEDIUM_USAGE_RATIO or heap_used > self.config.heap_warning_bytes:
            return "medium"
        return "low"

    def check_memory_pressure(self) -> MemoryPressure:
        """Reclassify pressure, emit events, and clean up on escalation.

        Returns:
            The current pressure level
        """
        with self._lock:
            heap_used = self.metrics.heap_used
            heap_limit = self.metrics.heap_limit
            previous = self.metrics.memory_pressure
            level = self.classify_pressure(heap_used, heap_limit)
            self.metrics.memory_pressure = level
        ratio = heap_used / heap_limit if heap_limit > 0 else 0.0

        if level != previous:
            logger.info(
                f"Memory pressure changed: {previous} -> {level} "
                f"(heap={heap_used / MB:.0f}MB, limit={heap_limit / MB:.0f}MB, "
                f"usage={ratio:.0%})"
            )
            self.event_bus.emit(
                PerformanceEvent.MEMORY_PRESSURE,
                {
                    "level": level,
                    "previous": previous,
                    "heap_used": heap_used,
                    "heap_limit": heap_limit,
                    "usage_ratio": ratio,
                },
            )
            escalated = PRESSURE_LEVELS.index(level) > PRESSURE_LEVELS.index(previous)
            if escalated and level in ("high", "critical"):
                self.perform_aggressive_cleanup()

        if heap_used > self.config.heap_warning_bytes:
            self.event_bus.emit(
                PerformanceEvent.MEMORY_WARNING,
                {
                    "level": "critical" if heap_used > self.config.heap_critical_bytes else "warning",
                    "heap_used": heap_used,
                    "heap_limit": heap_limit,
                    "usage_ratio": ratio,
                },
            )
        return level

    # Cleanup passes

    def _report_cleanup(self, kind: str, items: int, started: float) -> None:
        duration_ms = (time.perf_counter() - started) * 1000.0
        logger.info(f"{kind.capitalize()} cleanup completed: {items} items in {duration_ms:.1f}ms")
        self.event_bus.emit(
            PerformanceEvent.MEMORY_CLEANUP,
            {"type": kind, "items_cleaned": items, "duration_ms": duration_ms},
        )

    def perform_scheduled_cleanup(self) -> int:
        """Release aged blob URLs, aged subtitle caches and orphaned listeners."""
        started = time.perf_counter()
        cleaned = self.cleanup_old_blob_urls()
        cleaned += self.cleanup_old_subtitle_caches()
        cleaned += self.cleanup_orphaned_event_listeners()

        with self._lock:
            self.metrics.last_cleanup = self._clock()
            self.metrics.cleanup_count += 1
        self._report_cleanup("scheduled", cleaned, started)
        return cleaned

    def maybe_perform_scheduled_cleanup(self) -> bool:
        """Run the scheduled cleanup if the cleanup interval has elapsed."""
        since = self._clock() - (self.metrics.last_cleanup or self.session_start)
        if since < self.config.cleanup_interval:
            return False
        self.perform_scheduled_cleanup()
        return True

    def perform_aggressive_cleanup(self) -> int:
        """Release everything that can be recreated on demand."""
        logger.warning("Performing aggressive memory cleanup due to high memory pressure")
        started = time.perf_counter()
        cleaned = self.cleanup_all_blob_urls()
        cleaned += self.clear_subtitle_cache()
        cleaned += self.cleanup_orphaned_event_listeners()
        cleaned += self.cleanup_orphaned_media_elements()
        request_collection()
        self._report_cleanup("aggressive", cleaned, started)
        return cleaned

    def perform_complete_cleanup(self) -> int:
        """Release every tracked resource."""
        started = time.perf_counter()
        cleaned = self.cleanup_all_blob_urls()

        with self._lock:
            instances = list(self.player_instances)
            elements = list(self.media_elements)
            listener_targets = list(self.event_listeners)
        cleaned += sum(1 for i in instances if self.unregister_player_instance(i))
        cleaned += sum(1 for e in elements if self.unregister_media_element(e))
        cleaned += sum(self.unregister_event_listeners(t) for t in listener_targets)
        cleaned += self.clear_subtitle_cache()

        self._report_cleanup("complete", cleaned, started)
        return cleaned

    def force_cleanup(self, aggressive: bool = False) -> int:
        if aggressive:
            return self.perform_aggressive_cleanup()
        return self.perform_scheduled_cleanup()

    # Lifecycle hooks

    def handle_visibility_change(self, hidden: bool) -> None:
        """Clean up opportunistically when the player is hidden."""
        if hidden:
            logger.info("Player hidden, performing cleanup")
            self.perform_scheduled_cleanup()

    def handle_memory_pressure_event(self) -> None:
        """React to a host-level low-memory notification."""
        logger.warning("Host memory pressure notification received")
        self.perform_aggressive_cleanup()

    def _handle_exit(self) -> None:
        if not self.destroyed:
            logger.info("Interpreter exiting, performing complete cleanup")
            self.perform_complete_cleanup()

    # Recommendations

    def monitor_resource_usage(self) -> list[ResourceRecommendation]:
        """Inspect resource counts and pressure for cleanup advice."""
        metrics = self.update_memory_metrics()
        recommendations: list[ResourceRecommendation] = []

        if metrics.total_blob_urls > BLOB_URL_ADVISORY_COUNT:
            recommendations.append(
                ResourceRecommendation(
                    type="blob_cleanup",
                    priority="medium",
                    message=f"{metrics.total_blob_urls} blob URLs active. Consider cleanup.",
                )
            )
        if metrics.total_event_listeners > LISTENER_ADVISORY_COUNT:
            recommendations.append(
                ResourceRecommendation(
                    type="listener_cleanup",
                    priority="medium",
                    message=f"{metrics.total_event_listeners} event listeners active. Check for leaks.",
                )
            )
        if metrics.memory_pressure in ("high", "critical"):
            recommendations.append(
                ResourceRecommendation(
                    type="memory_pressure",
                    priority="critical" if metrics.memory_pressure == "critical" else "high",
                    message=f"Memory pressure is {metrics.memory_pressure}. Immediate cleanup recommended.",
                )
            )
        if metrics.heap_limit > 0:
            usage_percent = metrics.heap_used / metrics.heap_limit * 100
            if usage_percent > HEAP_ADVISORY_PERCENT:
                recommendations.append(
                    ResourceRecommendation(
                        type="heap_usage",
                        priority="high",
                        message=f"Heap usage at {usage_percent:.0f}%. Consider reducing buffer sizes.",
                    )
                )
        return recommendations

    def apply_recommendation(self, recommendation: ResourceRecommendation) -> int:
        """Carry out the cleanup a recommendation calls for.

        Returns:
            Number of items cleaned (0 for advisory-only recommendations)
        """
        if recommendation.type == "blob_cleanup":
            return self.cleanup_old_blob_urls()
        if recommendation.type == "listener_cleanup":
            return self.cleanup_orphaned_event_listeners()
        if recommendation.type == "memory_pressure":
            return self.perform_aggressive_cleanup()
        return 0

    def optimize_buffer_size(self, conditions: NetworkConditions, current_buffer_size: float) -> float:
        """Adjust a buffer size for the link and the memory situation.

        Args:
            conditions: Current network conditions
            current_buffer_size: Buffer size in use (seconds)

        Returns:
            Recommended buffer size (seconds)
        """
        mbps = conditions.bandwidth / 1_000_000
        recommended = current_buffer_size

        if mbps >= 10 and conditions.stability == "stable":
            recommended = min(current_buffer_size, 30)
        elif mbps < 2 or conditions.stability == "unstable":
            recommended = max(current_buffer_size, 90)

        if self.metrics.memory_pressure in ("high", "critical"):
            recommended = min(recommended, 45)

        if conditions.trend == "degrading":
            recommended = min(recommended * 1.2, 120)

        logger.debug(
            f"Buffer optimization: {current_buffer_size} -> {recommended} "
            f"(bandwidth={mbps:.1f}Mbps, stability={conditions.stability}, "
            f"trend={conditions.trend}, pressure={self.metrics.memory_pressure})"
        )
        return recommended

    def optimize_garbage_collection(self) -> bool:
        """Clean up and collect during long sessions under memory pressure.

        Returns:
            True if an optimization pass ran
        """
        session_length = self._clock() - self.session_start
        if session_length <= self.config.long_session_seconds or self.metrics.memory_pressure == "low":
            return False

        logger.info("Long session detected, optimizing garbage collection")
        self.perform_scheduled_cleanup()
        request_collection()
        self.session_start = self._clock()
        return True

    # Reporting

    def get_memory_usage_summary(self) -> dict[str, Any]:
        metrics = self.update_memory_metrics()
        with self._lock:
            return {
                "heap": {
                    "used_mb": round(metrics.heap_used / MB),
                    "total_mb": round(metrics.heap_total / MB),
                    "limit_mb": round(metrics.heap_limit / MB),
                    "usage_percentage": round(metrics.heap_used / metrics.heap_limit * 100)
                    if metrics.heap_limit
                    else 0,
                },
                "resources": {
                    "blob_urls": metrics.total_blob_urls,
                    "blob_size_kb": round(metrics.total_blob_size / 1024),
                    "event_listeners": metrics.total_event_listeners,
                    "player_instances": len(self.player_instances),
                    "media_elements": len(self.media_elements),
                    "subtitle_caches": len(self.subtitle_caches),
                },
                "pressure": metrics.memory_pressure,
                "last_cleanup": metrics.last_cleanup,
                "cleanup_count": metrics.cleanup_count,
            }

    def get_resource_usage_report(self) -> dict[str, Any]:
        """Memory summary plus recommendations and session bookkeeping."""
        report = self.get_memory_usage_summary()
        session_length = self._clock() - self.session_start
        report.update(
            recommendations=[r.to_dict() for r in self.monitor_resource_usage()],
            session_duration=session_length,
            last_cleanup_age=self._clock() - self.metrics.last_cleanup if self.metrics.last_cleanup else None,
            is_long_session=session_length > self.config.long_session_seconds,
        )
        return report

    def destroy(self) -> None:
        """Release every resource and detach lifecycle hooks. Idempotent."""
        if self.destroyed:
            return
        logger.info("Destroying resource lifecycle manager")
        if self._exit_hook_installed:
            atexit.unregister(self._handle_exit)
            self._exit_hook_installed = False
        self.perform_complete_cleanup()
        self.destroyed = True
