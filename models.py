"""Canonical request/response/stream types and catalog records."""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

from errors import InvalidRequestError

log = logging.getLogger("model_gateway")

ROLES = ("system", "user", "assistant")
FINISH_REASONS = ("stop", "length", "error")


class ModelKind(str, Enum):
    """Capability tag of a catalog entry."""

    CHAT = "chat"
    EMBEDDING = "embedding"
    OCR = "ocr"
    TTS = "tts"
    IMAGE_GENERATION = "image-generation"
    VISION = "vision"

    @classmethod
    def parse(cls, value: Any) -> ModelKind:
        v = str(value or "").strip().lower().replace("_", "-")
        if v in ("image", "image-gen", "images"):
            return cls.IMAGE_GENERATION
        if v in ("stt", "speech", "audio"):
            return cls.TTS
        if v in ("embeddings",):
            return cls.EMBEDDING
        for kind in cls:
            if kind.value == v:
                return kind
        return cls.CHAT


def new_response_id() -> str:
    return f"chatcmpl-{uuid.uuid4().hex}"


def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def _as_int(v: Any, default: int = 0) -> int:
    if v is None or isinstance(v, bool):
        return default
    try:
        return int(v)
    except (TypeError, ValueError):
        return default


# ============================================================================
# Canonical request
# ============================================================================

@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class CanonicalChatRequest:
    """The single request shape accepted by the gateway."""

    model: str
    messages: Tuple[ChatMessage, ...]
    stream: bool = False
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    stop: Optional[Tuple[str, ...]] = None

    @property
    def system_message(self) -> Optional[ChatMessage]:
        for m in self.messages:
            if m.role == "system":
                return m
        return None

    def non_system_messages(self) -> List[ChatMessage]:
        return [m for m in self.messages if m.role != "system"]

    def last_user_content(self) -> str:
        for m in reversed(self.messages):
            if m.role == "user":
                return m.content
        return ""

    @classmethod
    def from_dict(cls, body: Any) -> CanonicalChatRequest:
        """
        Validate an inbound JSON body.

        Raises InvalidRequestError with a caller-readable reason on the first violation.
        """
        if not isinstance(body, dict):
            raise InvalidRequestError("Invalid JSON body: expected object")

        model = body.get("model")
        if not isinstance(model, str) or not model.strip():
            raise InvalidRequestError("Invalid request: 'model' must be a non-empty string")

        raw_messages = body.get("messages")
        if not isinstance(raw_messages, list):
            raise InvalidRequestError("Invalid request: 'messages' field must be an array")
        if not raw_messages:
            raise InvalidRequestError("Invalid request: 'messages' array cannot be empty")

        messages: List[ChatMessage] = []
        for i, m in enumerate(raw_messages):
            if not isinstance(m, dict):
                raise InvalidRequestError(f"Invalid request: messages[{i}] must be an object")
            role = m.get("role")
            if role not in ROLES:
                raise InvalidRequestError(
                    f"Invalid request: messages[{i}].role must be one of {', '.join(ROLES)}"
                )
            content = m.get("content")
            if not isinstance(content, str):
                raise InvalidRequestError(f"Invalid request: messages[{i}].content must be a string")
            messages.append(ChatMessage(role=role, content=content))

        if sum(1 for m in messages if m.role == "system") > 1:
            raise InvalidRequestError("Invalid request: at most one system message is allowed")

        stream = body.get("stream", False)
        if not isinstance(stream, bool):
            raise InvalidRequestError("Invalid request: 'stream' must be a boolean")

        temperature = body.get("temperature")
        if temperature is not None and not _is_number(temperature):
            raise InvalidRequestError("Invalid request: 'temperature' must be a number")

        top_p = body.get("top_p")
        if top_p is not None and not _is_number(top_p):
            raise InvalidRequestError("Invalid request: 'top_p' must be a number")

        max_tokens = body.get("max_tokens")
        if max_tokens is not None:
            if not isinstance(max_tokens, int) or isinstance(max_tokens, bool) or max_tokens <= 0:
                raise InvalidRequestError("Invalid request: 'max_tokens' must be a positive integer")

        stop = body.get("stop")
        stop_seq: Optional[Tuple[str, ...]] = None
        if stop is not None:
            if isinstance(stop, str):
                stop_seq = (stop,)
            elif isinstance(stop, list) and all(isinstance(s, str) for s in stop):
                stop_seq = tuple(stop)
            else:
                raise InvalidRequestError("Invalid request: 'stop' must be an array of strings")

        return cls(
            model=model.strip(),
            messages=tuple(messages),
            stream=stream,
            temperature=float(temperature) if temperature is not None else None,
            max_tokens=max_tokens,
            top_p=float(top_p) if top_p is not None else None,
            stop=stop_seq or None,
        )


# ============================================================================
# Canonical response
# ============================================================================

@dataclass(frozen=True)
class Usage:
    """Token usage. Fields are never None and total is always the sum."""

    prompt_tokens: int = 0
    completion_tokens: int = 0

    @classmethod
    def of(cls, prompt: Any, completion: Any) -> Usage:
        return cls(prompt_tokens=max(0, _as_int(prompt)), completion_tokens=max(0, _as_int(completion)))

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def to_dict(self) -> Dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass(frozen=True)
class CanonicalChatResponse:
    id: str
    model: str
    content: str
    finish_reason: str = "stop"
    usage: Usage = field(default_factory=Usage)
    created: int = field(default_factory=lambda: int(time.time()))

    def __post_init__(self) -> None:
        if self.finish_reason not in FINISH_REASONS:
            raise ValueError(f"unknown finish_reason {self.finish_reason!r}")

    def to_dict(self) -> Dict[str, Any]:
        """OpenAI chat.completion shape."""
        return {
            "id": self.id,
            "object": "chat.completion",
            "created": self.created,
            "model": self.model,
            "choices": [
                {
                    "index": 0,
                    "message": {"role": "assistant", "content": self.content},
                    "finish_reason": self.finish_reason,
                }
            ],
            "usage": self.usage.to_dict(),
        }


@dataclass(frozen=True)
class CanonicalStreamChunk:
    """
    One incremental piece of a streamed completion.

    A chunk either carries text (finish_reason None) or closes the completion
    (finish_reason set, empty delta). Never both.
    """

    id: str
    model: str
    delta: str = ""
    finish_reason: Optional[str] = None

    def __post_init__(self) -> None:
        if self.finish_reason is not None:
            if self.finish_reason not in FINISH_REASONS:
                raise ValueError(f"unknown finish_reason {self.finish_reason!r}")
            if self.delta:
                raise ValueError("a finish chunk must carry an empty delta")

    @property
    def is_finish(self) -> bool:
        return self.finish_reason is not None

    def to_dict(self, created: Optional[int] = None) -> Dict[str, Any]:
        """OpenAI chat.completion.chunk shape."""
        delta: Dict[str, Any] = {} if self.is_finish else {"content": self.delta}
        return {
            "id": self.id,
            "object": "chat.completion.chunk",
            "created": created if created is not None else int(time.time()),
            "model": self.model,
            "choices": [{"index": 0, "delta": delta, "finish_reason": self.finish_reason}],
        }


class StreamDone:
    """Closing sentinel of a canonical stream."""

    _instance: Optional[StreamDone] = None

    def __new__(cls) -> StreamDone:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "STREAM_DONE"


STREAM_DONE = StreamDone()


# ============================================================================
# Catalog records
# ============================================================================

@dataclass(frozen=True)
class CallerIdentity:
    email: str
    entitled_models: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class ProviderCredential:
    """Per-provider configuration and key material. Never mutated, never logged."""

    provider: str
    api_key: Optional[str] = field(default=None, repr=False)
    base_url: Optional[str] = None
    endpoint_url: Optional[str] = None
    default_api_path: Optional[str] = None
    auth_header: Optional[str] = None
    auth_prefix: Optional[str] = None
    extra_headers: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    protocol: Optional[str] = None
    max_tokens_default: Optional[int] = None
    supports_temperature_and_top_p: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional[ProviderCredential]:
        provider = str(data.get("provider") or "").strip().lower()
        if not provider:
            return None
        extra = data.get("extra_headers") or {}
        if not isinstance(extra, dict):
            extra = {}
        max_default = _as_int(data.get("max_tokens_default"), 0)
        return cls(
            provider=provider,
            api_key=data.get("api_key") or data.get("api_key_encrypted") or None,
            base_url=data.get("base_url") or None,
            endpoint_url=data.get("endpoint_url") or None,
            default_api_path=data.get("default_api_path") or None,
            auth_header=data.get("auth_header") or None,
            auth_prefix=data.get("auth_prefix"),
            extra_headers=MappingProxyType(
                {str(k): v for k, v in extra.items() if isinstance(v, str)}
            ),
            protocol=(str(data["protocol"]).strip().lower() if data.get("protocol") else None),
            max_tokens_default=max_default if max_default > 0 else None,
            supports_temperature_and_top_p=bool(data.get("supports_temperature_and_top_p", True)),
        )


@dataclass(frozen=True)
class ModelCatalogEntry:
    """A model from the externally synchronized catalog, plus its optional overrides."""

    name: str
    provider: str
    upstream_model_id: str
    context_length: int = 0
    max_output_tokens: int = 0
    kind: ModelKind = ModelKind.CHAT
    available: bool = True
    id: str = ""
    display_name: str = ""
    mode: str = ""
    api_path: Optional[str] = None
    endpoint_url: Optional[str] = None
    api_key: Optional[str] = field(default=None, repr=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional[ModelCatalogEntry]:
        """Parse a single catalog row. Returns None for rows without a name."""
        name = str(data.get("name") or "").strip()
        if not name:
            return None
        provider = str(data.get("provider") or "openai").strip().lower()
        upstream = str(data.get("model_key") or data.get("upstream_model_id") or name)

        ctx = _as_int(data.get("context_length") or data.get("context"), 0)
        max_out = _as_int(data.get("max_tokens") or data.get("max_output_tokens"), 0)

        if log.isEnabledFor(logging.DEBUG) and ctx <= 0:
            log.debug("Catalog model without context length: name=%s", name)

        return cls(
            name=name,
            provider=provider,
            upstream_model_id=upstream,
            context_length=max(0, ctx),
            max_output_tokens=max(0, max_out),
            kind=ModelKind.parse(data.get("kind")),
            available=bool(data.get("is_available", data.get("available", True))),
            id=str(data.get("id") or ""),
            display_name=str(data.get("display_name") or name),
            mode=str(data.get("mode") or ""),
            api_path=data.get("api_path") or None,
            endpoint_url=data.get("endpoint_url") or None,
            api_key=data.get("api_key") or data.get("api_key_encrypted") or None,
        )

    def to_public_dict(self) -> Dict[str, Any]:
        """Catalog view safe to return to callers (no key material)."""
        return {
            "id": self.id or self.name,
            "name": self.name,
            "display_name": self.display_name or self.name,
            "provider": self.provider,
            "upstream_model_id": self.upstream_model_id,
            "kind": self.kind.value,
            "mode": self.mode,
            "api_path": self.api_path,
            "context_length": self.context_length,
            "max_tokens": self.max_output_tokens,
            "is_available": self.available,
        }


@dataclass(frozen=True)
class ScoredModel:
    entry: ModelCatalogEntry
    score: int

    def to_dict(self) -> Dict[str, Any]:
        out = self.entry.to_public_dict()
        out["score"] = self.score
        return out


@dataclass(frozen=True)
class ResolvedRoute:
    """Everything needed to dispatch one request to its upstream."""

    model: str
    provider: str
    protocol: str
    upstream_model_id: str
    base_url: str
    api_path: str
    api_key: str = field(default="", repr=False)
    auth_header: Optional[str] = None
    auth_prefix: Optional[str] = None
    extra_headers: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    max_tokens_default: Optional[int] = None
    supports_temperature_and_top_p: bool = True
    kind: ModelKind = ModelKind.CHAT

    @property
    def url(self) -> str:
        return self.base_url.rstrip("/") + "/" + self.api_path.lstrip("/")

    def to_public_dict(self, masked_key: str) -> Dict[str, Any]:
        return {
            "model": self.model,
            "provider": self.provider,
            "protocol": self.protocol,
            "upstream_model_id": self.upstream_model_id,
            "base_url": self.base_url,
            "api_path": self.api_path,
            "auth_header": self.auth_header,
            "api_key": masked_key,
            "kind": self.kind.value,
        }
