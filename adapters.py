"""
Protocol adapters: canonical request -> provider request, provider body -> canonical response.

Adapters are looked up once per request in ADAPTERS by the route's protocol.
Streaming responses are delegated to the StreamTranscoder for the same protocol.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Type

from errors import UpstreamPayloadError
from models import CanonicalChatRequest, CanonicalChatResponse, ResolvedRoute, Usage
from provider_payloads import (
    AnthropicMessage,
    CohereChat,
    GeminiGenerateContent,
    ImageGeneration,
    OpenAIChatCompletion,
    ProviderReply,
)
from sse_handler import StreamTranscoder

log = logging.getLogger("model_gateway")

ANTHROPIC_VERSION = "2023-06-01"
IMAGE_SIZE = "1024x1024"


@dataclass
class UpstreamRequest:
    """A fully built provider call. `params` carries query-string values kept out of logged URLs."""

    url: str
    headers: Dict[str, str]
    body: Dict[str, Any]
    params: Dict[str, str] = field(default_factory=dict)
    stream: bool = False


class ProtocolAdapter:
    """Shared interface of all provider adapters."""

    protocol = ""
    payload_type: Type[ProviderReply] = OpenAIChatCompletion
    default_auth_header = "Authorization"
    default_auth_prefix = "Bearer "
    supports_upstream_stream = True

    def build_request(
        self,
        req: CanonicalChatRequest,
        route: ResolvedRoute,
        *,
        default_max_tokens: int = 4096,
        user_agent: str = "",
    ) -> UpstreamRequest:
        stream = req.stream and self.supports_upstream_stream
        return UpstreamRequest(
            url=route.url,
            headers=self.build_headers(route, stream=stream, user_agent=user_agent),
            body=self.build_body(req, route, default_max_tokens=default_max_tokens, stream=stream),
            params=self.build_params(route),
            stream=stream,
        )

    def build_headers(self, route: ResolvedRoute, *, stream: bool, user_agent: str = "") -> Dict[str, str]:
        headers: Dict[str, str] = {"Content-Type": "application/json"}
        if user_agent:
            headers["User-Agent"] = user_agent
        if stream:
            headers["Accept"] = "text/event-stream"
        header = route.auth_header or self.default_auth_header
        prefix = route.auth_prefix if route.auth_prefix is not None else self.default_auth_prefix
        if header and route.api_key:
            headers[header] = f"{prefix}{route.api_key}"
        headers.update(route.extra_headers)
        return headers

    def build_params(self, route: ResolvedRoute) -> Dict[str, str]:
        return {}

    def build_body(
        self,
        req: CanonicalChatRequest,
        route: ResolvedRoute,
        *,
        default_max_tokens: int,
        stream: bool,
    ) -> Dict[str, Any]:
        raise NotImplementedError

    def parse_response(self, raw: bytes, response_id: str, model: str) -> CanonicalChatResponse:
        """Map a 2xx provider body to the canonical response. Raises UpstreamPayloadError."""
        try:
            obj = json.loads(raw)
        except (ValueError, UnicodeDecodeError) as e:
            raise UpstreamPayloadError(
                f"Invalid {self.protocol} response", details=f"body is not JSON: {e}"
            ) from None
        reply = self.payload_type.from_payload(obj)
        return CanonicalChatResponse(
            id=response_id,
            model=model,
            content=reply.content,
            finish_reason=reply.finish_reason,
            usage=Usage.of(reply.prompt_tokens, reply.completion_tokens),
        )

    def new_transcoder(self, response_id: str, model: str, *, debug_frames: bool = False) -> StreamTranscoder:
        return StreamTranscoder(self.protocol, response_id, model, debug_frames=debug_frames)


def _sampling_one_of(req: CanonicalChatRequest) -> Dict[str, float]:
    """Providers that reject temperature and top_p together get temperature."""
    if req.temperature is not None:
        return {"temperature": req.temperature}
    if req.top_p is not None:
        return {"top_p": req.top_p}
    return {}


def _max_tokens(req: CanonicalChatRequest, route: ResolvedRoute, default_max_tokens: int) -> int:
    return req.max_tokens or route.max_tokens_default or default_max_tokens


class OpenAIAdapter(ProtocolAdapter):
    """OpenAI-compatible chat completions. Messages pass through unchanged."""

    protocol = "openai"
    payload_type = OpenAIChatCompletion

    def build_body(self, req, route, *, default_max_tokens, stream):
        body: Dict[str, Any] = {
            "model": route.upstream_model_id,
            "messages": [m.to_dict() for m in req.messages],
            "stream": stream,
        }
        if route.supports_temperature_and_top_p:
            if req.temperature is not None:
                body["temperature"] = req.temperature
            if req.top_p is not None:
                body["top_p"] = req.top_p
        else:
            body.update(_sampling_one_of(req))
        if req.max_tokens is not None:
            body["max_tokens"] = req.max_tokens
        if req.stop:
            body["stop"] = list(req.stop)
        return body


class AnthropicAdapter(ProtocolAdapter):
    """Anthropic Messages API."""

    protocol = "anthropic"
    payload_type = AnthropicMessage
    default_auth_header = "x-api-key"
    default_auth_prefix = ""

    def build_headers(self, route, *, stream, user_agent=""):
        headers = super().build_headers(route, stream=stream, user_agent=user_agent)
        if not any(k.lower() == "anthropic-version" for k in headers):
            headers["anthropic-version"] = ANTHROPIC_VERSION
        return headers

    def build_body(self, req, route, *, default_max_tokens, stream):
        body: Dict[str, Any] = {
            "model": route.upstream_model_id,
            "messages": [m.to_dict() for m in req.non_system_messages()],
            "max_tokens": _max_tokens(req, route, default_max_tokens),
            "stream": stream,
        }
        system = req.system_message
        if system is not None:
            body["system"] = system.content
        body.update(_sampling_one_of(req))
        if req.stop:
            body["stop_sequences"] = list(req.stop)
        return body


class GeminiAdapter(ProtocolAdapter):
    """Google Gemini generateContent / streamGenerateContent."""

    protocol = "gemini"
    payload_type = GeminiGenerateContent
    default_auth_header = ""
    default_auth_prefix = ""

    def build_headers(self, route, *, stream, user_agent=""):
        headers: Dict[str, str] = {"Content-Type": "application/json"}
        if user_agent:
            headers["User-Agent"] = user_agent
        headers.update(route.extra_headers)
        return headers

    def build_params(self, route):
        return {"key": route.api_key} if route.api_key else {}

    def build_body(self, req, route, *, default_max_tokens, stream):
        contents: List[Dict[str, Any]] = [
            {
                "role": "model" if m.role == "assistant" else m.role,
                "parts": [{"text": m.content}],
            }
            for m in req.non_system_messages()
        ]
        generation: Dict[str, Any] = {"maxOutputTokens": _max_tokens(req, route, default_max_tokens)}
        if req.temperature is not None:
            generation["temperature"] = req.temperature
        if req.top_p is not None:
            generation["topP"] = req.top_p
        if req.stop:
            generation["stopSequences"] = list(req.stop)

        body: Dict[str, Any] = {"contents": contents, "generationConfig": generation}
        system = req.system_message
        if system is not None:
            body["systemInstruction"] = {"parts": [{"text": system.content}]}
        return body


class CohereAdapter(ProtocolAdapter):
    """Cohere chat (v2 request shape; v1 and v2 replies understood)."""

    protocol = "cohere"
    payload_type = CohereChat

    def build_body(self, req, route, *, default_max_tokens, stream):
        body: Dict[str, Any] = {
            "model": route.upstream_model_id,
            "messages": [m.to_dict() for m in req.messages],
            "stream": stream,
        }
        if req.max_tokens is not None:
            body["max_tokens"] = req.max_tokens
        if req.temperature is not None:
            body["temperature"] = req.temperature
        if req.top_p is not None:
            body["p"] = req.top_p
        if req.stop:
            body["stop_sequences"] = list(req.stop)
        return body


class ImageGenerationAdapter(ProtocolAdapter):
    """OpenAI-style images/generations. Always called without upstream streaming."""

    protocol = "openai_images"
    payload_type = ImageGeneration
    supports_upstream_stream = False

    def build_body(self, req, route, *, default_max_tokens, stream):
        return {
            "model": route.upstream_model_id,
            "prompt": req.last_user_content(),
            "n": 1,
            "size": IMAGE_SIZE,
        }


ADAPTERS: Dict[str, ProtocolAdapter] = {
    a.protocol: a
    for a in (
        OpenAIAdapter(),
        AnthropicAdapter(),
        GeminiAdapter(),
        CohereAdapter(),
        ImageGenerationAdapter(),
    )
}


def protocol_for_provider(provider: str, configured: Optional[str] = None) -> str:
    """Protocol from explicit provider config, else derived from the provider name."""
    if configured:
        c = configured.strip().lower()
        if c == "google":
            c = "gemini"
        if c in ADAPTERS:
            return c
        log.warning("Unknown protocol %r for provider %s; using openai", configured, provider)
    p = (provider or "").strip().lower()
    if p == "anthropic":
        return "anthropic"
    if p in ("google", "gemini"):
        return "gemini"
    if p == "cohere":
        return "cohere"
    return "openai"


def get_adapter(protocol: str) -> ProtocolAdapter:
    return ADAPTERS.get(protocol) or ADAPTERS["openai"]
