"""Configuration management for the Gemini proxy service."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Tuple

DEFAULT_MODEL_POOL: Tuple[str, ...] = (
    "gemini-1.5-pro",
    "gemini-1.5-pro-latest",
    "gemini-2.0-flash",
    "gemini-1.5-flash",
    "gemini-2.0-flash-exp",
)

DEFAULT_TRUSTED_ORIGINS: Tuple[str, ...] = (r"^https?://localhost(?::\d+)?$",)


def _env_bool(name: str, default: bool) -> bool:
    """Get boolean environment variable with fallback."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_float(name: str, default: float) -> float:
    """Get float environment variable with fallback."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return float(v)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    """Get integer environment variable with fallback."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return int(v.strip())
    except ValueError:
        return default


def _env_str(name: str, default: str) -> str:
    """Get string environment variable with fallback."""
    v = os.getenv(name)
    if v is None:
        return default
    return v


def _csv_tuple(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    """Parse comma-separated environment variable into an ordered, de-duplicated tuple."""
    v = os.getenv(name, "")
    items = [x.strip() for x in v.split(",") if x.strip() and x.strip().lower() != "empty"]
    if not items:
        return default
    return tuple(dict.fromkeys(items))


@dataclass(frozen=True)
class AppConfig:
    """Application configuration."""

    # Gemini settings
    gemini_base_url: str
    gemini_api_key: str
    model_pool: Tuple[str, ...]

    # Timeouts and retries
    default_timeout_ms: int
    min_timeout_ms: int
    max_timeout_ms: int
    max_tries: int
    base_backoff_s: float
    backoff_jitter_s: float

    # Auto-continuation
    continue_margin_s: float
    default_max_chunks: int
    max_chunks_ceiling: int

    # Streaming relay
    stream_ping_s: float

    # Input limits
    max_messages: int
    max_parts_per_message: int
    max_text_chars: int
    max_inline_bytes: int

    # Rate limiting
    rate_window_s: float
    rate_max_requests: int

    # CORS
    trusted_origins: Tuple[str, ...]

    # Outbound proxy
    http_proxy: str
    https_proxy: str

    # Server settings
    port: int
    log_level: str
    max_request_bytes: int
    log_path: str
    log_color: bool
    log_max_bytes: int
    log_backup_count: int
    user_agent: str

    @classmethod
    def from_env(cls) -> AppConfig:
        """Load configuration from environment variables."""
        return cls(
            gemini_base_url=_env_str(
                "GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta/models"
            ).rstrip("/"),
            gemini_api_key=os.getenv("GEMINI_API_KEY", ""),
            model_pool=_csv_tuple("MODEL_POOL", DEFAULT_MODEL_POOL),
            default_timeout_ms=_env_int("DEFAULT_TIMEOUT_MS", 28_000),
            min_timeout_ms=1_000,
            max_timeout_ms=29_000,
            max_tries=_env_int("MAX_TRIES", 3),
            base_backoff_s=_env_float("BASE_BACKOFF_S", 0.65),
            backoff_jitter_s=_env_float("BACKOFF_JITTER_S", 0.4),
            continue_margin_s=_env_float("CONTINUE_MARGIN_S", 2.5),
            default_max_chunks=_env_int("DEFAULT_MAX_CHUNKS", 4),
            max_chunks_ceiling=_env_int("MAX_CHUNKS_CEILING", 12),
            stream_ping_s=_env_float("STREAM_PING_S", 5.0),
            max_messages=64,
            max_parts_per_message=16,
            max_text_chars=24_000,
            max_inline_bytes=15 * 1024 * 1024,  # 15 MiB decoded
            rate_window_s=_env_float("RATE_WINDOW_S", 600.0),
            rate_max_requests=_env_int("RATE_MAX_REQ", 60),
            trusted_origins=_csv_tuple("TRUSTED_ORIGINS", DEFAULT_TRUSTED_ORIGINS),
            http_proxy=_env_str("HTTP_PROXY", ""),
            https_proxy=_env_str("HTTPS_PROXY", ""),
            port=int(os.getenv("PORT", "8000")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper().strip(),
            max_request_bytes=_env_int("MAX_REQUEST_BYTES", 40_000_000),  # inline media is large
            log_path=_env_str("LOG_PATH", "/var/log/gemini-proxy/gemini-proxy.log"),
            log_color=_env_bool("LOG_COLOR", True),
            log_max_bytes=_env_int("LOG_MAX_BYTES", 1_048_576),
            log_backup_count=_env_int("LOG_BACKUP_COUNT", 3),
            user_agent=_env_str("USER_AGENT", "gemini-proxy/1.0.0"),
        )

    def validate(self, require_api_key: bool = True) -> None:
        """Validate configuration."""
        if require_api_key and not self.gemini_api_key:
            raise ValueError("GEMINI_API_KEY is required")
        if not self.model_pool:
            raise ValueError("MODEL_POOL must contain at least one model")
        if not (self.min_timeout_ms <= self.default_timeout_ms <= self.max_timeout_ms):
            raise ValueError("DEFAULT_TIMEOUT_MS must be within [1000, 29000]")
        if self.max_tries < 1:
            raise ValueError("MAX_TRIES must be >= 1")
        if self.base_backoff_s < 0:
            raise ValueError("BASE_BACKOFF_S must be >= 0")
        if self.backoff_jitter_s < 0:
            raise ValueError("BACKOFF_JITTER_S must be >= 0")
        if self.continue_margin_s < 0:
            raise ValueError("CONTINUE_MARGIN_S must be >= 0")
        if not (1 <= self.default_max_chunks <= self.max_chunks_ceiling):
            raise ValueError("DEFAULT_MAX_CHUNKS must be within [1, MAX_CHUNKS_CEILING]")
        if self.stream_ping_s <= 0:
            raise ValueError("STREAM_PING_S must be > 0")
        if self.rate_window_s <= 0:
            raise ValueError("RATE_WINDOW_S must be > 0")
        if self.rate_max_requests <= 0:
            raise ValueError("RATE_MAX_REQ must be > 0")
        if self.max_request_bytes <= 0:
            raise ValueError("MAX_REQUEST_BYTES must be > 0")
        if not self.log_path:
            raise ValueError("LOG_PATH must be non-empty")
        if self.log_max_bytes <= 0:
            raise ValueError("LOG_MAX_BYTES must be > 0")
        if self.log_backup_count < 0:
            raise ValueError("LOG_BACKUP_COUNT must be >= 0")
        if not self.user_agent:
            raise ValueError("USER_AGENT must be non-empty")


def load_config() -> AppConfig:
    """Load configuration from environment."""
    return AppConfig.from_env()
