"""Resource handle interfaces.

The resource manager treats handles as opaque and only calls these
methods when the handle provides them, so player objects need not
subclass these ABCs. They document the expected shape.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable


class IMediaElement(ABC):
    """A media output element owned by the player."""

    @abstractmethod
    def pause(self) -> None:
        pass

    @abstractmethod
    def unload(self) -> None:
        """Drop the current source and release decoder resources."""
        pass

    @abstractmethod
    def is_attached(self) -> bool:
        """Whether the element is still part of the live player tree."""
        pass


class IEventTarget(ABC):
    """An object listeners were attached to."""

    @abstractmethod
    def remove_event_listener(
        self, event: str, handler: Callable[..., Any], options: Any = None
    ) -> None:
        pass

    @abstractmethod
    def is_attached(self) -> bool:
        pass


class IPlayerInstance(ABC):
    """A streaming engine instance (e.g. an HLS loader)."""

    @abstractmethod
    def destroy(self) -> None:
        pass
