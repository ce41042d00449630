"""Custom exceptions for streamperf."""


class StreamPerfError(Exception):
    """Base exception for all streamperf errors."""

    pass


class ProbeFailure(StreamPerfError):
    """A network measurement could not be completed."""

    pass


class RequestFailure(StreamPerfError):
    """A request failed after its retry budget was exhausted."""

    def __init__(self, message: str, url: str | None = None, attempts: int = 0):
        super().__init__(message)
        self.url = url
        self.attempts = attempts


class OptimizerClosedError(RequestFailure):
    """The connection optimizer was destroyed before the request ran."""

    pass


class ConfigurationError(StreamPerfError):
    """Error in runtime configuration."""

    pass
