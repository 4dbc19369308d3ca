"""Startup helpers for the Gemini proxy."""

from __future__ import annotations

import logging
from pathlib import Path

from dotenv import load_dotenv

from config import AppConfig
from logger import mask_secret

log = logging.getLogger("gemini_proxy")


def load_env_files() -> None:
    """Load .env files from program and current directory."""
    this_dir = Path(__file__).resolve().parent
    p1 = this_dir / ".env"
    p2 = Path.cwd() / ".env"

    loaded_any = False
    if p1.exists():
        loaded_any = load_dotenv(dotenv_path=str(p1), override=True) or loaded_any
        log.info("Loaded .env from %s", str(p1))
    else:
        log.info("No .env in program directory: %s", str(p1))

    if p2.exists() and p2 != p1:
        loaded_any = load_dotenv(dotenv_path=str(p2), override=True) or loaded_any
        log.info("Loaded .env from %s", str(p2))
    elif p2 != p1:
        log.info("No .env in current directory: %s", str(p2))

    if not loaded_any:
        log.info(".env not loaded (not found or no variables applied).")


def dump_config(config: AppConfig) -> None:
    """Log effective configuration at startup."""
    log.info("=== Gemini proxy startup config ===")
    log.info("GEMINI_BASE_URL=%s", config.gemini_base_url)
    log.info(
        "GEMINI_API_KEY_set=%s value=%s len=%s",
        bool(config.gemini_api_key),
        mask_secret(config.gemini_api_key),
        len(config.gemini_api_key or ""),
    )
    log.info("MODEL_POOL=%s", list(config.model_pool))
    log.info("DEFAULT_TIMEOUT_MS=%s", config.default_timeout_ms)
    log.info("MAX_TRIES=%s", config.max_tries)
    log.info("BASE_BACKOFF_S=%s", config.base_backoff_s)
    log.info("BACKOFF_JITTER_S=%s", config.backoff_jitter_s)
    log.info("CONTINUE_MARGIN_S=%s", config.continue_margin_s)
    log.info("DEFAULT_MAX_CHUNKS=%s", config.default_max_chunks)
    log.info("MAX_CHUNKS_CEILING=%s", config.max_chunks_ceiling)
    log.info("STREAM_PING_S=%s", config.stream_ping_s)
    log.info("RATE_WINDOW_S=%s RATE_MAX_REQ=%s", config.rate_window_s, config.rate_max_requests)
    log.info("TRUSTED_ORIGINS=%s", list(config.trusted_origins))
    log.info("HTTP_PROXY=%s HTTPS_PROXY=%s", config.http_proxy or "-", config.https_proxy or "-")
    log.info("LOG_LEVEL=%s", config.log_level)
    log.info("LOG_PATH=%s LOG_COLOR=%s", config.log_path, config.log_color)
    log.info("LOG_MAX_BYTES=%s LOG_BACKUP_COUNT=%s", config.log_max_bytes, config.log_backup_count)
    log.info("MAX_REQUEST_BYTES=%s", config.max_request_bytes)
    log.info("USER_AGENT=%s", config.user_agent)
    log.info("WorkingDir=%s", str(Path.cwd()))
    log.info("===================================")
