"""
Credential and endpoint resolution.

Precedence, per field:
  api key:   model override -> provider credential
  endpoint:  model override -> provider base_url -> provider endpoint_url -> provider default
  api path:  model override -> provider default path
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from adapters import protocol_for_provider
from catalog import CatalogSnapshot
from errors import (
    ConfigurationError,
    ModelNotFoundError,
    NoApiPathError,
    NoCredentialError,
    NoEndpointError,
)
from logger import mask_secret
from models import CallerIdentity, ModelKind, ResolvedRoute

log = logging.getLogger("model_gateway")

DEFAULT_ENDPOINTS: Dict[str, str] = {
    "openai": "https://api.openai.com",
    "anthropic": "https://api.anthropic.com",
    "google": "https://generativelanguage.googleapis.com",
    "gemini": "https://generativelanguage.googleapis.com",
    "oneai": "https://api.oneorigin.ai",
    "cohere": "https://api.cohere.com",
}

IMAGE_GENERATION_PATH = "/images/generations"


def default_endpoint(provider: str) -> Optional[str]:
    return DEFAULT_ENDPOINTS.get((provider or "").strip().lower())


def stream_path(path: str) -> str:
    """Gemini streams from :streamGenerateContent instead of :generateContent."""
    if ":generateContent" in path and ":streamGenerateContent" not in path:
        return path.replace(":generateContent", ":streamGenerateContent")
    return path


class CredentialResolver:
    """Pure resolution over a catalog snapshot. Never performs I/O."""

    def resolve(
        self,
        identity: CallerIdentity,
        model: str,
        snapshot: CatalogSnapshot,
        *,
        stream: bool = False,
    ) -> ResolvedRoute:
        entry = snapshot.find_model(identity, model)
        if entry is None or not entry.available:
            raise ModelNotFoundError(model)

        provider = entry.provider
        cred = snapshot.provider(provider)

        api_key = entry.api_key or (cred.api_key if cred else None)
        if not api_key:
            raise NoCredentialError(model, provider)

        base_url = (
            entry.endpoint_url
            or (cred.base_url if cred else None)
            or (cred.endpoint_url if cred else None)
            or default_endpoint(provider)
        )
        if not base_url:
            raise NoEndpointError(model, provider)

        api_path = entry.api_path or (cred.default_api_path if cred else None)
        if not api_path:
            raise NoApiPathError(model, provider)
        api_path = api_path.replace("{model}", entry.upstream_model_id)

        protocol = protocol_for_provider(provider, cred.protocol if cred else None)
        if IMAGE_GENERATION_PATH in api_path:
            protocol = "openai_images"
        elif protocol == "gemini" and stream:
            api_path = stream_path(api_path)

        log.debug(
            "Resolved model=%s provider=%s protocol=%s url=%s key=%s",
            model,
            provider,
            protocol,
            base_url.rstrip("/") + api_path,
            mask_secret(api_key),
        )
        return ResolvedRoute(
            model=entry.name,
            provider=provider,
            protocol=protocol,
            upstream_model_id=entry.upstream_model_id,
            base_url=base_url,
            api_path=api_path,
            api_key=api_key,
            auth_header=cred.auth_header if cred else None,
            auth_prefix=cred.auth_prefix if cred else None,
            extra_headers=cred.extra_headers if cred else {},
            max_tokens_default=cred.max_tokens_default if cred else None,
            supports_temperature_and_top_p=cred.supports_temperature_and_top_p if cred else True,
            kind=ModelKind.IMAGE_GENERATION if protocol == "openai_images" else entry.kind,
        )

    def resolve_all(self, identity: CallerIdentity, snapshot: CatalogSnapshot) -> Dict[str, Any]:
        """
        Resolution view for every entitled model.

        Keys are masked. Models that fail to resolve are listed with their error kind.
        """
        credentials: Dict[str, Any] = {}
        models: List[Dict[str, Any]] = []
        for entry in snapshot.models_for(identity):
            models.append(entry.to_public_dict())
            try:
                route = self.resolve(identity, entry.name, snapshot)
            except (ConfigurationError, ModelNotFoundError) as e:
                credentials[entry.name] = {"error": e.kind, "details": e.message}
                continue
            credentials[entry.name] = route.to_public_dict(mask_secret(route.api_key))
        return {"credentials": credentials, "models": models}
