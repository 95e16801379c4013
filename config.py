"""Configuration management for the model gateway."""

from __future__ import annotations

import os
from dataclasses import dataclass


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


@dataclass(frozen=True)
class AppConfig:
    """Application configuration."""

    # Catalog / credential snapshot source
    catalog_path: str
    catalog_url: str
    catalog_token: str

    # Identity
    trust_identity_header: bool
    vault_key: str

    # Timeouts and limits
    request_timeout_s: float
    max_request_timeout_s: float
    connect_timeout_s: float
    default_max_tokens: int

    # Model selection
    score_threshold: int
    diverse_default_limit: int
    diverse_max_limit: int

    # Upstream transport
    https_proxy: str
    http_proxy: str
    user_agent: str

    # Debug frame logging (VERY VERBOSE)
    debug_stream_frames: bool
    debug_stream_frames_log_path: str

    # Server settings
    port: int
    log_level: str
    max_request_bytes: int
    log_path: str

    @classmethod
    def from_env(cls) -> AppConfig:
        """Load configuration from environment variables."""
        return cls(
            catalog_path=_env_str("GATEWAY_CATALOG_PATH", "catalog.json"),
            catalog_url=_env_str("GATEWAY_CATALOG_URL", "").strip(),
            catalog_token=_env_str("GATEWAY_CATALOG_TOKEN", ""),
            trust_identity_header=_env_bool("TRUST_IDENTITY_HEADER", False),
            vault_key=_env_str("GATEWAY_VAULT_KEY", ""),
            request_timeout_s=_env_float("REQUEST_TIMEOUT_S", 120.0),
            max_request_timeout_s=_env_float("MAX_REQUEST_TIMEOUT_S", 600.0),
            connect_timeout_s=_env_float("CONNECT_TIMEOUT_S", 30.0),
            default_max_tokens=_env_int("DEFAULT_MAX_TOKENS", 4096),
            score_threshold=_env_int("SCORE_THRESHOLD", 30),
            diverse_default_limit=_env_int("DIVERSE_DEFAULT_LIMIT", 4),
            diverse_max_limit=_env_int("DIVERSE_MAX_LIMIT", 20),
            https_proxy=_env_str("HTTPS_PROXY", "").strip(),
            http_proxy=_env_str("HTTP_PROXY", "").strip(),
            user_agent=_env_str("USER_AGENT", "model-gateway/0.3.0"),
            debug_stream_frames=_env_bool("DEBUG_STREAM_FRAMES", False),
            debug_stream_frames_log_path=_env_str(
                "DEBUG_STREAM_FRAMES_LOG_PATH", "/var/log/model-gateway/frames.log"
            ),
            port=_env_int("PORT", 8000),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper().strip(),
            max_request_bytes=_env_int("MAX_REQUEST_BYTES", 2_000_000),  # ~2MB
            log_path=_env_str("LOG_PATH", "/var/log/model-gateway/gateway.log"),
        )

    def validate(self) -> None:
        """Validate configuration."""
        if not self.catalog_path and not self.catalog_url:
            raise ValueError("GATEWAY_CATALOG_PATH or GATEWAY_CATALOG_URL is required")
        if self.catalog_url and not self.catalog_url.startswith(("http://", "https://")):
            raise ValueError("GATEWAY_CATALOG_URL must be an http(s) URL")
        if self.request_timeout_s <= 0:
            raise ValueError("REQUEST_TIMEOUT_S must be > 0")
        if self.max_request_timeout_s < self.request_timeout_s:
            raise ValueError("MAX_REQUEST_TIMEOUT_S must be >= REQUEST_TIMEOUT_S")
        if self.connect_timeout_s <= 0:
            raise ValueError("CONNECT_TIMEOUT_S must be > 0")
        if self.default_max_tokens <= 0:
            raise ValueError("DEFAULT_MAX_TOKENS must be > 0")
        if self.score_threshold < 0:
            raise ValueError("SCORE_THRESHOLD must be >= 0")
        if self.diverse_default_limit <= 0:
            raise ValueError("DIVERSE_DEFAULT_LIMIT must be > 0")
        if self.diverse_max_limit < self.diverse_default_limit:
            raise ValueError("DIVERSE_MAX_LIMIT must be >= DIVERSE_DEFAULT_LIMIT")
        if self.max_request_bytes <= 0:
            raise ValueError("MAX_REQUEST_BYTES must be > 0")
        if not self.log_path:
            raise ValueError("LOG_PATH must be non-empty")
        if self.debug_stream_frames and not self.debug_stream_frames_log_path:
            raise ValueError("DEBUG_STREAM_FRAMES_LOG_PATH must be non-empty when DEBUG_STREAM_FRAMES is on")
        if not self.user_agent:
            raise ValueError("USER_AGENT must be non-empty")


def load_config() -> AppConfig:
    """Load configuration from environment."""
    return AppConfig.from_env()
