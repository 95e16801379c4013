"""
Gateway error types.

Every error that can end a gateway request is a GatewayError carrying the HTTP
status it maps to and a machine-readable kind for the error envelope.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class GatewayError(Exception):
    """Base exception for gateway errors."""

    status_code = 500
    kind = "internal_error"

    def __init__(self, message: str, details: Optional[str] = None):
        self.message = message
        self.details = details
        super().__init__(message)

    def to_envelope(self) -> Dict[str, Any]:
        """Render the `{error, details?}` envelope."""
        out: Dict[str, Any] = {"error": self.kind}
        details = self.details if self.details is not None else self.message
        if details:
            out["details"] = details
        return out


class UnauthenticatedError(GatewayError):
    """Missing or invalid caller identity."""

    status_code = 401
    kind = "unauthenticated"


class InvalidRequestError(GatewayError):
    """Raised when the canonical request is malformed."""

    status_code = 400
    kind = "invalid_request"

    def __init__(self, message: str, details: Optional[str] = None, status_code: int = 400):
        super().__init__(message, details)
        self.status_code = status_code


class CatalogUnavailableError(GatewayError):
    """Raised when the catalog/credential snapshot cannot be loaded."""

    status_code = 503
    kind = "catalog_unavailable"


class ModelNotFoundError(GatewayError):
    """Raised when the model is absent or the caller is not entitled to it."""

    status_code = 404
    kind = "model_not_found"

    def __init__(self, model: str):
        super().__init__(f"Model not found: {model}")
        self.model = model


class ConfigurationError(GatewayError):
    """Operator fault discovered while resolving a model's route."""

    status_code = 500
    kind = "configuration_error"

    def __init__(self, message: str, model: str, provider: str):
        super().__init__(message)
        self.model = model
        self.provider = provider


class NoCredentialError(ConfigurationError):
    """Neither a model-level nor a provider-level API key is configured."""

    kind = "no_credential"

    def __init__(self, model: str, provider: str):
        super().__init__(
            f"No API credentials for provider: {provider} (model: {model})", model, provider
        )


class NoEndpointError(ConfigurationError):
    """No base URL could be resolved for the provider."""

    kind = "no_endpoint"

    def __init__(self, model: str, provider: str):
        super().__init__(
            f"No base URL configured for provider: {provider} (model: {model})", model, provider
        )


class NoApiPathError(ConfigurationError):
    """No API path could be resolved for the model."""

    kind = "no_api_path"

    def __init__(self, model: str, provider: str):
        super().__init__(
            f"No API path configured for model: {model} (provider: {provider})", model, provider
        )


class CredentialDecryptError(ConfigurationError):
    """Sealed key material could not be opened."""

    kind = "credential_unreadable"


class UpstreamError(GatewayError):
    """Non-2xx response from the provider, surfaced verbatim."""

    kind = "upstream_error"

    def __init__(self, status_code: int, body: str, provider: str = ""):
        super().__init__(f"API error: {status_code}", details=body)
        self.status_code = status_code
        self.body = body
        self.provider = provider


class UpstreamUnreachableError(GatewayError):
    """The provider could not be reached (connect/transport failure, no HTTP status)."""

    status_code = 502
    kind = "upstream_unreachable"


class UpstreamPayloadError(GatewayError):
    """A 2xx upstream body did not have the provider's documented shape."""

    status_code = 502
    kind = "upstream_payload_invalid"


class GatewayTimeoutError(GatewayError):
    """The per-request deadline expired before the upstream call finished."""

    status_code = 504
    kind = "timeout"


class RequestCancelledError(GatewayError):
    """The request was cancelled by the client."""

    status_code = 499
    kind = "cancelled"


class TranscodeWarning(Exception):
    """A stream frame could not be translated. Logged and skipped, never surfaced."""
