"""Playback metrics collection and aggregation.

Tracks segment load latency, segment success rate, and quality-switch
behaviour for scoring and optimization.
"""

import logging
import threading
import time
from collections import deque
from typing import Any, Optional

import numpy as np

from streamperf.models import QualitySwitch

logger = logging.getLogger(__name__)


class LatencyHistogram:
    """Tracks latency measurements with percentile calculations."""

    def __init__(self, max_samples: int = 10000):
        """Initialize latency histogram.

        Args:
            max_samples: Maximum samples to retain (circular buffer)
        """
        self.samples: deque[float] = deque(maxlen=max_samples)
        self.max_samples = max_samples

    def record(self, latency_ms: float) -> None:
        """Record a latency measurement.

        Args:
            latency_ms: Latency in milliseconds
        """
        self.samples.append(latency_ms)

    def mean(self) -> Optional[float]:
        return float(np.mean(self.samples)) if self.samples else None

    def clear(self) -> None:
        self.samples.clear()

    def get_stats(self) -> dict[str, float | int]:
        """Get latency statistics.

        Returns:
            Dictionary with avg, p50, p95, p99, samples count
        """
        if not self.samples:
            return {"avg": 0.0, "p50": 0.0, "p95": 0.0, "p99": 0.0, "samples": 0}

        arr = np.array(list(self.samples))
        return {
            "avg": float(np.mean(arr)),
            "p50": float(np.percentile(arr, 50)),
            "p95": float(np.percentile(arr, 95)),
            "p99": float(np.percentile(arr, 99)),
            "samples": len(self.samples),
        }


class SegmentMetricsTracker:
    """Collects segment load outcomes."""

    def __init__(self, history_size: int = 20, slow_load_ms: float = 3000.0) -> None:
        """Initialize segment tracker.

        Args:
            history_size: Number of recent successful load times retained
            slow_load_ms: Load time above which a warning is logged
        """
        self.load_times = LatencyHistogram(max_samples=history_size)
        self.slow_load_ms = slow_load_ms
        self.failed_segments = 0
        self.total_segments = 0

        # Derived on refresh()
        self.average_load_time: Optional[float] = None
        self.success_rate: Optional[float] = None

        self._lock = threading.Lock()

    def record_segment_load(self, load_time_ms: float, success: bool = True) -> None:
        """Record one segment load.

        Args:
            load_time_ms: Time taken to load the segment
            success: Whether the segment loaded
        """
        with self._lock:
            if success:
                self.load_times.record(load_time_ms)
            else:
                self.failed_segments += 1
            self.total_segments += 1

        if success and load_time_ms > self.slow_load_ms:
            logger.warning(
                f"Segment load {load_time_ms:.0f}ms exceeds {self.slow_load_ms:.0f}ms target"
            )
        elif not success:
            logger.warning(f"Segment load failed (total failures: {self.failed_segments})")

    def refresh(self) -> None:
        """Recompute average load time and success rate."""
        with self._lock:
            self.average_load_time = self.load_times.mean()
            self.success_rate = (
                (self.total_segments - self.failed_segments) / self.total_segments * 100.0
                if self.total_segments > 0
                else None
            )

    def get_summary(self) -> dict[str, Any]:
        with self._lock:
            return {
                "average_load_time": round(self.average_load_time) if self.average_load_time is not None else None,
                "success_rate": round(self.success_rate) if self.success_rate is not None else None,
                "failed": self.failed_segments,
                "total": self.total_segments,
                "load_time_ms": self.load_times.get_stats(),
            }

    def reset(self) -> None:
        with self._lock:
            self.load_times.clear()
            self.failed_segments = 0
            self.total_segments = 0
            self.average_load_time = None
            self.success_rate = None


def count_oscillations(qualities: list[float]) -> int:
    """Count interior local maxima and minima in a quality sequence.

    Args:
        qualities: Quality values in switch order

    Returns:
        Number of direction reversals
    """
    oscillations = 0
    for prev, curr, nxt in zip(qualities, qualities[1:], qualities[2:]):
        if (prev < curr > nxt) or (prev > curr < nxt):
            oscillations += 1
    return oscillations


class QualityMetricsTracker:
    """Tracks quality switches and scores adaptation smoothness."""

    def __init__(
        self,
        history_size: int = 50,
        oscillation_window: int = 10,
        oscillation_penalty: int = 20,
    ) -> None:
        """Initialize quality tracker.

        Args:
            history_size: Number of switches retained
            oscillation_window: Recent switches examined for oscillation
            oscillation_penalty: Score deducted per oscillation
        """
        self.history: deque[QualitySwitch] = deque(maxlen=history_size)
        self.oscillation_window = oscillation_window
        self.oscillation_penalty = oscillation_penalty

        self.switches = 0
        self.upgrades = 0
        self.downgrades = 0
        self.current_quality: Optional[float] = None

        # Derived on refresh()
        self.adaptation_score: Optional[int] = None

        self._lock = threading.Lock()

    def record_quality_switch(
        self, from_quality: float, to_quality: float, reason: str = "unknown"
    ) -> None:
        """Record a quality switch.

        Args:
            from_quality: Previous quality (e.g. vertical resolution)
            to_quality: New quality
            reason: Why the player switched
        """
        with self._lock:
            self.switches += 1
            if to_quality < from_quality:
                self.downgrades += 1
            elif to_quality > from_quality:
                self.upgrades += 1
            self.current_quality = to_quality
            self.history.append(
                QualitySwitch(quality=to_quality, timestamp=time.time(), reason=reason)
            )

        logger.debug(f"Quality switch {from_quality} -> {to_quality} ({reason})")

    def refresh(self) -> None:
        """Recompute the adaptation score from recent switches."""
        with self._lock:
            if not self.history:
                self.adaptation_score = None
                return
            recent = [entry.quality for entry in list(self.history)[-self.oscillation_window:]]
            oscillations = count_oscillations(recent)
            self.adaptation_score = max(0, 100 - oscillations * self.oscillation_penalty)

    def get_summary(self) -> dict[str, Any]:
        with self._lock:
            return {
                "adaptation_score": self.adaptation_score,
                "switches": self.switches,
                "upgrades": self.upgrades,
                "downgrades": self.downgrades,
                "current": self.current_quality,
            }

    def reset(self) -> None:
        with self._lock:
            self.history.clear()
            self.switches = 0
            self.upgrades = 0
            self.downgrades = 0
            self.current_quality = None
            self.adaptation_score = None
