"""Configuration management for streamperf.

Loads and validates environment variables using Pydantic settings.
"""

from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class StreamPerfConfig(BaseSettings):
    """Performance controller configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="STREAMPERF_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"

    # Tick cadences (seconds)
    buffer_tick_interval: float = Field(default=1.0, gt=0.0)
    network_tick_interval: float = Field(default=5.0, gt=0.0)
    memory_tick_interval: float = Field(default=10.0, gt=0.0)
    network_probe_interval: float = Field(default=10.0, gt=0.0)
    cleanup_interval: float = Field(default=30.0, gt=0.0)

    # Buffer health thresholds (seconds of media ahead of the playhead)
    buffer_critical_level: float = Field(default=5.0, ge=0.0)
    buffer_warning_level: float = Field(default=15.0, ge=0.0)
    buffer_optimal_level: float = Field(default=30.0, ge=0.0)
    buffer_health_change_delta: int = Field(default=20, ge=0, le=100)

    # Network probing
    probe_url: str | None = None
    probe_payload_sizes: list[int] = Field(default_factory=lambda: [1024, 2048, 4096])
    probe_timeout: float = Field(default=5.0, gt=0.0)
    latency_probe_count: int = Field(default=3, ge=1, le=20)
    packet_loss_probe_count: int = Field(default=10, ge=1, le=50)

    # Network analysis heuristics
    history_size: int = Field(default=20, ge=5, le=500)
    unstable_cv_threshold: float = Field(default=0.3, gt=0.0)
    fluctuating_cv_threshold: float = Field(default=0.15, gt=0.0)
    trend_threshold: float = Field(default=0.2, gt=0.0)

    # Playback metrics
    segment_history_size: int = Field(default=20, ge=1, le=500)
    quality_history_size: int = Field(default=50, ge=10, le=1000)
    oscillation_window: int = Field(default=10, ge=3, le=100)
    oscillation_penalty: int = Field(default=20, ge=0, le=100)
    slow_connection_bps: float = Field(default=1_000_000, gt=0)
    fast_connection_bps: float = Field(default=5_000_000, gt=0)
    slow_segment_load_ms: float = Field(default=3000.0, gt=0)

    # Memory thresholds (bytes) and resource ages (seconds)
    heap_warning_bytes: int = Field(default=100 * 1024 * 1024, gt=0)
    heap_high_bytes: int = Field(default=150 * 1024 * 1024, gt=0)
    heap_critical_bytes: int = Field(default=200 * 1024 * 1024, gt=0)
    max_blob_urls: int = Field(default=50, ge=1)
    max_blob_age: float = Field(default=5 * 60.0, gt=0)
    max_subtitle_cache_age: float = Field(default=10 * 60.0, gt=0)
    long_session_seconds: float = Field(default=30 * 60.0, gt=0)

    # CDN endpoints
    cdn_primary_endpoints: list[str] = Field(default_factory=list)
    cdn_fallback_endpoints: list[str] = Field(default_factory=list)
    validate_endpoints: bool = False
    endpoint_probe_path: str = "/ping"
    endpoint_min_requests: int = Field(default=5, ge=1)
    endpoint_min_success_rate: float = Field(default=0.5, ge=0.0, le=1.0)

    # Request batching
    batching_enabled: bool = True
    batch_size: int = Field(default=5, ge=1, le=100)
    batch_timeout: float = Field(default=0.1, gt=0.0)

    # Retries and timeouts (seconds)
    retry_strategy: Literal["linear", "exponential", "adaptive"] = "exponential"
    max_attempts: int = Field(default=3, ge=1, le=10)
    retry_delay: float = Field(default=1.0, ge=0.0)
    segment_timeout: float = Field(default=10.0, gt=0)
    manifest_timeout: float = Field(default=15.0, gt=0)
    request_timeout: float = Field(default=30.0, gt=0)
    compression_enabled: bool = True
    cache_enabled: bool = True
    keep_alive_enabled: bool = True

    # Diagnostics API
    host: str = "127.0.0.1"
    port: int = Field(default=8085, ge=1024, le=65535)

    @field_validator("cdn_primary_endpoints", "cdn_fallback_endpoints")
    @classmethod
    def strip_trailing_slash(cls, v: list[str]) -> list[str]:
        """Normalize endpoint URLs so host comparisons are stable."""
        return [endpoint.rstrip("/") for endpoint in v]


# Singleton configuration instance
_config: StreamPerfConfig | None = None


def get_config() -> StreamPerfConfig:
    """Get the global configuration instance.

    Returns:
        StreamPerfConfig: Configuration singleton
    """
    global _config
    if _config is None:
        _config = StreamPerfConfig()
    return _config
