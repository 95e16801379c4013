"""Utility functions for the model gateway."""

from __future__ import annotations

import logging
from pathlib import Path

from dotenv import load_dotenv

from config import AppConfig
from logger import mask_secret

log = logging.getLogger("model_gateway")


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
    log.info("=== Model gateway startup config ===")
    if config.catalog_url:
        log.info("GATEWAY_CATALOG_URL=%s", config.catalog_url)
        log.info(
            "GATEWAY_CATALOG_TOKEN_set=%s value=%s",
            bool(config.catalog_token),
            mask_secret(config.catalog_token),
        )
    else:
        log.info("GATEWAY_CATALOG_PATH=%s", config.catalog_path)
    log.info("TRUST_IDENTITY_HEADER=%s", config.trust_identity_header)
    log.info("GATEWAY_VAULT_KEY_set=%s", bool(config.vault_key))
    log.info("REQUEST_TIMEOUT_S=%s", config.request_timeout_s)
    log.info("MAX_REQUEST_TIMEOUT_S=%s", config.max_request_timeout_s)
    log.info("CONNECT_TIMEOUT_S=%s", config.connect_timeout_s)
    log.info("DEFAULT_MAX_TOKENS=%s", config.default_max_tokens)
    log.info("SCORE_THRESHOLD=%s", config.score_threshold)
    log.info("DIVERSE_DEFAULT_LIMIT=%s", config.diverse_default_limit)
    log.info("DIVERSE_MAX_LIMIT=%s", config.diverse_max_limit)
    log.info("HTTPS_PROXY=%s", config.https_proxy or None)
    log.info("HTTP_PROXY=%s", config.http_proxy or None)
    log.info("DEBUG_STREAM_FRAMES=%s", config.debug_stream_frames)
    if config.debug_stream_frames:
        log.info("DEBUG_STREAM_FRAMES_LOG_PATH=%s", config.debug_stream_frames_log_path)
    log.info("MAX_REQUEST_BYTES=%s", config.max_request_bytes)
    log.info("LOG_LEVEL=%s", config.log_level)
    log.info("LOG_PATH=%s", config.log_path)
    log.info("USER_AGENT=%s", config.user_agent)
    log.info("WorkingDir=%s", str(Path.cwd()))
    log.info("ProgramDir=%s", str(Path(__file__).resolve().parent))
    log.info("====================================")
