"""Buffer health monitoring for adaptive streaming playback."""

import logging
import threading
import time
from typing import Optional

from streamperf.config import StreamPerfConfig, get_config
from streamperf.event_bus import EventBus, PerformanceEvent
from streamperf.interfaces.buffer import IBufferHealthMonitor
from streamperf.models import BufferHealthState

logger = logging.getLogger(__name__)


class BufferHealthMonitor(IBufferHealthMonitor):
    """Maps the buffered-ahead level onto a coarse health score."""

    # Health scores per band
    CRITICAL_SCORE = 0
    WARNING_SCORE = 30
    OPTIMAL_SCORE = 70
    HEALTHY_SCORE = 100

    def __init__(
        self,
        config: Optional[StreamPerfConfig] = None,
        event_bus: Optional[EventBus] = None,
    ):
        """Initialize buffer health monitor.

        Args:
            config: Threshold configuration (defaults to global config)
            event_bus: Bus receiving buffer_health_change events
        """
        self.config = config or get_config()
        self.event_bus = event_bus or EventBus()
        self.state = BufferHealthState(target_level=self.config.buffer_optimal_level)
        self._last_reported_score: Optional[int] = None
        self._lock = threading.Lock()

    def update_buffer_level(self, seconds: float) -> None:
        """Record the current buffer level.

        Args:
            seconds: Seconds of media buffered ahead of the playhead
        """
        with self._lock:
            self.state.current_level = max(0.0, float(seconds))
            self.state.level_reported = True

    def record_buffer_stall(self, duration_ms: float = 0.0) -> None:
        """Record a playback stall.

        Args:
            duration_ms: Stall duration in milliseconds
        """
        with self._lock:
            self.state.stalls += 1
            self.state.stall_duration_total += max(0.0, duration_ms)
            self.state.last_stall_timestamp = time.time()
            stalls = self.state.stalls

        logger.warning(f"Buffer stall recorded ({duration_ms:.0f}ms, total: {stalls})")

    def record_gap_jump(self) -> None:
        """Record that the player skipped over a gap in the buffer."""
        with self._lock:
            self.state.gap_jumps += 1

    def score_for_level(self, level: float) -> int:
        """Map a buffer level to its health score.

        Args:
            level: Seconds of media buffered ahead

        Returns:
            0 below critical, 30 below warning, 70 below optimal, else 100
        """
        if level < self.config.buffer_critical_level:
            return self.CRITICAL_SCORE
        elif level < self.config.buffer_warning_level:
            return self.WARNING_SCORE
        elif level < self.config.buffer_optimal_level:
            return self.OPTIMAL_SCORE
        return self.HEALTHY_SCORE

    def evaluate(self) -> Optional[int]:
        """Recompute the health score and emit on significant change.

        The first evaluated score is always reported; afterwards a change
        is reported only when it differs from the last reported score by
        more than the configured delta.

        Returns:
            Score in {0, 30, 70, 100}, or None if no level was reported yet
        """
        with self._lock:
            if not self.state.level_reported:
                return None
            score = self.score_for_level(self.state.current_level)
            self.state.health_score = score

            previous = self._last_reported_score
            changed = previous is None or abs(previous - score) > self.config.buffer_health_change_delta
            if changed:
                self._last_reported_score = score
            snapshot = self.state.to_dict()

        if changed:
            logger.info(
                f"Buffer health {previous if previous is not None else '-'} -> {score} "
                f"(level={snapshot['current_level']:.1f}s)"
            )
            self.event_bus.emit(PerformanceEvent.BUFFER_HEALTH_CHANGE, snapshot)
        return score

    @property
    def health_score(self) -> Optional[int]:
        return self.state.health_score

    def get_summary(self) -> dict[str, float | int | None]:
        """Get buffer summary for the performance report."""
        with self._lock:
            return {
                "health": self.state.health_score,
                "level": self.state.current_level,
                "target": self.state.target_level,
                "stalls": self.state.stalls,
                "stall_duration_ms": self.state.stall_duration_total,
                "gap_jumps": self.state.gap_jumps,
            }

    def reset(self) -> None:
        """Forget all buffer state, including derived scores."""
        with self._lock:
            self.state = BufferHealthState(target_level=self.config.buffer_optimal_level)
            self._last_reported_score = None
