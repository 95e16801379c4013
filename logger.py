"""Logging configuration for the model gateway."""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler

import colorlog

LOGGER_NAME = "model_gateway"
FRAME_LOGGER_NAME = "model_gateway.frames"


def setup_logging(log_path: str | None = None) -> logging.Logger:
    """
    Configure logging with rotation.

    Logs are written to /var/log/model-gateway/gateway.log by default with:
      - maxBytes: 1 MB
      - backupCount: 3

    LOG_LEVEL=DISABLE disables logging entirely.
    """
    level_name = os.getenv("LOG_LEVEL", "INFO").upper().strip()
    logger = logging.getLogger(LOGGER_NAME)

    # Clear existing handlers to avoid duplication
    logger.handlers.clear()

    if level_name == "DISABLE":
        logging.disable(logging.CRITICAL)
        logger.addHandler(logging.NullHandler())
        logger.propagate = False
        return logger

    logging.disable(logging.NOTSET)
    level = getattr(logging, level_name, logging.INFO)
    logger.setLevel(level)

    if not log_path:
        log_path = "/var/log/model-gateway/gateway.log"

    handler, fallback_err = _create_log_handler(log_path)
    handler.setFormatter(_create_log_formatter())

    logger.addHandler(handler)
    if fallback_err is not None:
        logger.warning(
            "Failed to open log file %r (%s). Falling back to stdout/stderr logging.",
            log_path,
            fallback_err,
        )
    logger.propagate = False
    return logger


def _create_log_handler(log_path: str) -> tuple[logging.Handler, Exception | None]:
    """Create log handler with fallback to StreamHandler on error."""
    try:
        return RotatingFileHandler(
            log_path,
            maxBytes=1_048_576,  # 1 MB
            backupCount=3,
            encoding="utf-8",
        ), None
    except OSError as e:
        return logging.StreamHandler(), e


def _create_log_formatter() -> logging.Formatter:
    """Create log formatter, colored unless LOG_COLOR is off."""
    if os.getenv("LOG_COLOR", "true").lower() in ("true", "1", "yes"):
        return colorlog.ColoredFormatter(
            "%(log_color)s%(asctime)s %(levelname)-8s%(reset)s %(name)s - %(message)s",
            reset=True,
            log_colors={
                'DEBUG': 'cyan',
                'INFO': 'green',
                'WARNING': 'yellow',
                'ERROR': 'red',
                'CRITICAL': 'red,bg_white',
            },
            style='%'
        )
    return logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")


def mask_secret(s: str | None, keep_start: int = 6, keep_end: int = 4) -> str:
    """Mask a secret string, keeping only start and end characters."""
    s = (s or "").strip()
    if not s:
        return ""
    if len(s) <= keep_start + keep_end:
        return "*" * len(s)
    return f"{s[:keep_start]}...{s[-keep_end:]}"


def setup_frame_logging(enabled: bool, log_path: str) -> logging.Logger:
    """
    Dedicated upstream frame logger (VERY verbose), kept out of the main log.

    Every decoded provider frame is written here at DEBUG when DEBUG_STREAM_FRAMES is on.
    """
    frame_log = logging.getLogger(FRAME_LOGGER_NAME)
    for h in list(frame_log.handlers):
        h.close()
    frame_log.handlers.clear()
    frame_log.propagate = False
    if not enabled:
        frame_log.setLevel(logging.CRITICAL)
        frame_log.addHandler(logging.NullHandler())
        return frame_log

    frame_log.setLevel(logging.DEBUG)
    handler, fallback_err = _create_log_handler(log_path)
    handler.setFormatter(logging.Formatter("%(asctime)s %(message)s"))
    frame_log.addHandler(handler)
    if fallback_err is not None:
        logging.getLogger(LOGGER_NAME).warning(
            "Failed to open frame log %r (%s). Frames go to stderr.", log_path, fallback_err
        )
    frame_log.debug("Frame logger enabled path=%s", log_path)
    return frame_log
