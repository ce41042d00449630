"""In-process event bus shared by the components of one orchestrator."""

import logging
import threading
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Any]


class PerformanceEvent(str, Enum):
    """Events a consumer can subscribe to."""

    BUFFER_HEALTH_CHANGE = "buffer_health_change"
    NETWORK_CONDITION_CHANGE = "network_condition_change"
    MEMORY_WARNING = "memory_warning"
    MEMORY_PRESSURE = "memory_pressure"
    MEMORY_CLEANUP = "memory_cleanup"
    RESOURCE_RECOMMENDATIONS = "resource_recommendations"
    OPTIMIZATION_APPLIED = "optimization_applied"
    CDN_FAILOVER = "cdn_failover"


class EventBus:
    """Synchronous publish/subscribe with per-handler exception isolation."""

    def __init__(self) -> None:
        self._handlers: dict[PerformanceEvent, list[Handler]] = {
            event: [] for event in PerformanceEvent
        }
        self._lock = threading.Lock()
        self.handler_failures = 0

    @staticmethod
    def _resolve(event: PerformanceEvent | str) -> PerformanceEvent:
        try:
            return PerformanceEvent(event)
        except ValueError:
            raise ValueError(f"Unknown performance event: {event!r}") from None

    def on(self, event: PerformanceEvent | str, handler: Handler) -> None:
        """Register a handler for an event.

        Args:
            event: Event enum member or its string value
            handler: Callable receiving the event payload

        Raises:
            ValueError: If the event name is unknown
        """
        resolved = self._resolve(event)
        with self._lock:
            self._handlers[resolved].append(handler)

    def off(self, event: PerformanceEvent | str, handler: Handler) -> None:
        """Unregister a handler; unknown handlers are ignored."""
        resolved = self._resolve(event)
        with self._lock:
            if handler in self._handlers[resolved]:
                self._handlers[resolved].remove(handler)

    def emit(self, event: PerformanceEvent, payload: Any = None) -> int:
        """Invoke every handler for an event.

        A handler that raises is logged and skipped; siblings still run.

        Returns:
            Number of handlers that completed without raising
        """
        with self._lock:
            handlers = list(self._handlers[event])

        delivered = 0
        for handler in handlers:
            try:
                handler(payload)
                delivered += 1
            except Exception:
                self.handler_failures += 1
                logger.exception(
                    f"Error in {event.value} handler {handler!r}",
                    extra={"event": event.value},
                )
        return delivered

    def handler_count(self, event: PerformanceEvent | str) -> int:
        with self._lock:
            return len(self._handlers[self._resolve(event)])

    def clear(self) -> None:
        """Drop all handlers."""
        with self._lock:
            for handlers in self._handlers.values():
                handlers.clear()
