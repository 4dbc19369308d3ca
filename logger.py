"""Logging configuration for the Gemini proxy service."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler

import colorlog

from config import AppConfig

LOGGER_NAME = "gemini_proxy"

_PLAIN_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"
_COLOR_FORMAT = "%(log_color)s%(asctime)s %(levelname)-8s%(reset)s %(name)s - %(message)s"
_LOG_COLORS = {
    "DEBUG": "cyan",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "red,bg_white",
}


def setup_logging(config: AppConfig) -> logging.Logger:
    """
    Configure the service logger from the loaded config.

    Records go to a rotating file at config.log_path
    (config.log_max_bytes × config.log_backup_count), or to stderr when the
    file cannot be opened. LOG_LEVEL=DISABLE silences everything.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.handlers.clear()
    logger.propagate = False

    if config.log_level == "DISABLE":
        logging.disable(logging.CRITICAL)
        logger.addHandler(logging.NullHandler())
        return logger

    logging.disable(logging.NOTSET)
    level = getattr(logging, config.log_level, logging.INFO)
    logger.setLevel(level)
    # Per-request httpx lines duplicate our own upstream logging.
    logging.getLogger("httpx").setLevel(logging.DEBUG if level <= logging.DEBUG else logging.WARNING)

    handler, fallback_err = _create_log_handler(config)
    handler.setFormatter(_create_log_formatter(config.log_color))
    logger.addHandler(handler)

    if fallback_err is not None:
        logger.warning(
            "Failed to open log file %r (%s). Falling back to stderr logging.",
            config.log_path,
            fallback_err,
        )
    return logger


def _create_log_handler(config: AppConfig) -> tuple[logging.Handler, Exception | None]:
    try:
        return RotatingFileHandler(
            config.log_path,
            maxBytes=config.log_max_bytes,
            backupCount=config.log_backup_count,
            encoding="utf-8",
        ), None
    except OSError as e:
        return logging.StreamHandler(), e


def _create_log_formatter(color: bool) -> logging.Formatter:
    if color:
        return colorlog.ColoredFormatter(_COLOR_FORMAT, reset=True, log_colors=_LOG_COLORS)
    return logging.Formatter(_PLAIN_FORMAT)


def mask_secret(s: str, keep_start: int = 6, keep_end: int = 4) -> str:
    """Mask a secret string, keeping only start and end characters."""
    s = (s or "").strip()
    if not s:
        return ""
    if len(s) <= keep_start + keep_end:
        return "*" * len(s)
    return f"{s[:keep_start]}...{s[-keep_end:]}"
