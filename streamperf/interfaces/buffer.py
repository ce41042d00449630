"""Buffer health interface definitions."""

from abc import ABC, abstractmethod
from typing import Optional


class IBufferHealthMonitor(ABC):
    """Scores how much playable media is buffered ahead of the playhead."""

    @abstractmethod
    def update_buffer_level(self, seconds: float) -> None:
        """Record the current buffer level.

        Args:
            seconds: Seconds of media buffered ahead of the playhead
        """
        pass

    @abstractmethod
    def record_buffer_stall(self, duration_ms: float = 0.0) -> None:
        """Record a playback stall.

        Args:
            duration_ms: Stall duration in milliseconds
        """
        pass

    @abstractmethod
    def evaluate(self) -> Optional[int]:
        """Recompute the health score for the current level.

        Returns:
            Score in {0, 30, 70, 100}, or None if no level was reported yet
        """
        pass
