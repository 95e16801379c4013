"""
Typed views of provider payloads.

Each upstream body is validated once at the adapter boundary. Non-streaming
bodies that do not match the provider's documented shape raise
UpstreamPayloadError; stream frames that do not match raise TranscodeWarning,
which the stream transcoder logs and skips.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from errors import TranscodeWarning, UpstreamPayloadError


def _tokens(v: Any) -> int:
    if isinstance(v, bool):
        return 0
    if isinstance(v, (int, float)):
        return max(0, int(v))
    return 0


def _payload_error(provider: str, reason: str) -> UpstreamPayloadError:
    return UpstreamPayloadError(f"Invalid {provider} response", details=f"{provider}: {reason}")


# ============================================================================
# Finish-reason mapping (shared by streaming and non-streaming paths)
# ============================================================================

def map_openai_finish(reason: Any) -> str:
    if reason == "length":
        return "length"
    if reason == "error":
        return "error"
    return "stop"


def map_anthropic_finish(reason: Any) -> str:
    if reason == "max_tokens":
        return "length"
    return "stop"


def map_gemini_finish(reason: Any) -> str:
    """
    Any present finishReason ends the stream; MAX_TOKENS still reports `length`
    so a truncated stream reads the same as the buffered response.
    """
    if reason == "MAX_TOKENS":
        return "length"
    return "stop"


def map_cohere_finish(reason: Any) -> str:
    r = str(reason or "").upper()
    if r == "MAX_TOKENS":
        return "length"
    if r == "ERROR" or r.startswith("ERROR_"):
        return "error"
    return "stop"


# ============================================================================
# Non-streaming responses
# ============================================================================

@dataclass(frozen=True)
class ProviderReply:
    """What every non-streaming provider body boils down to."""

    content: str
    finish_reason: str
    prompt_tokens: int
    completion_tokens: int


@dataclass(frozen=True)
class OpenAIChatCompletion(ProviderReply):
    @classmethod
    def from_payload(cls, obj: Any) -> OpenAIChatCompletion:
        if not isinstance(obj, dict):
            raise _payload_error("openai", "body is not an object")
        choices = obj.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            raise _payload_error("openai", "missing choices[0]")
        message = choices[0].get("message")
        if not isinstance(message, dict):
            raise _payload_error("openai", "missing choices[0].message")
        content = message.get("content")
        if content is None:
            content = ""
        if not isinstance(content, str):
            raise _payload_error("openai", "choices[0].message.content is not a string")
        usage = obj.get("usage") if isinstance(obj.get("usage"), dict) else {}
        return cls(
            content=content,
            finish_reason=map_openai_finish(choices[0].get("finish_reason")),
            prompt_tokens=_tokens(usage.get("prompt_tokens")),
            completion_tokens=_tokens(usage.get("completion_tokens")),
        )


@dataclass(frozen=True)
class AnthropicMessage(ProviderReply):
    @classmethod
    def from_payload(cls, obj: Any) -> AnthropicMessage:
        if not isinstance(obj, dict):
            raise _payload_error("anthropic", "body is not an object")
        blocks = obj.get("content")
        if not isinstance(blocks, list):
            raise _payload_error("anthropic", "missing content array")
        texts: List[str] = []
        for b in blocks:
            if not isinstance(b, dict):
                raise _payload_error("anthropic", "content block is not an object")
            if b.get("type", "text") == "text":
                t = b.get("text")
                if not isinstance(t, str):
                    raise _payload_error("anthropic", "text block without text")
                texts.append(t)
        usage = obj.get("usage") if isinstance(obj.get("usage"), dict) else {}
        return cls(
            content="".join(texts),
            finish_reason=map_anthropic_finish(obj.get("stop_reason")),
            prompt_tokens=_tokens(usage.get("input_tokens")),
            completion_tokens=_tokens(usage.get("output_tokens")),
        )


def _gemini_first_text(candidate: Dict[str, Any]) -> Optional[str]:
    content = candidate.get("content")
    if not isinstance(content, dict):
        return None
    parts = content.get("parts")
    if not isinstance(parts, list) or not parts or not isinstance(parts[0], dict):
        return None
    text = parts[0].get("text")
    return text if isinstance(text, str) else None


@dataclass(frozen=True)
class GeminiGenerateContent(ProviderReply):
    @classmethod
    def from_payload(cls, obj: Any) -> GeminiGenerateContent:
        if not isinstance(obj, dict):
            raise _payload_error("gemini", "body is not an object")
        candidates = obj.get("candidates")
        if not isinstance(candidates, list) or not candidates or not isinstance(candidates[0], dict):
            raise _payload_error("gemini", "missing candidates[0]")
        text = _gemini_first_text(candidates[0])
        usage = obj.get("usageMetadata") if isinstance(obj.get("usageMetadata"), dict) else {}
        return cls(
            content=text or "",
            finish_reason=map_gemini_finish(candidates[0].get("finishReason")),
            prompt_tokens=_tokens(usage.get("promptTokenCount")),
            completion_tokens=_tokens(usage.get("candidatesTokenCount")),
        )


def _cohere_token_counts(obj: Dict[str, Any]) -> Dict[str, Any]:
    for outer in ("usage", "meta"):
        section = obj.get(outer)
        if not isinstance(section, dict):
            continue
        for inner in ("tokens", "billed_units"):
            counts = section.get(inner)
            if isinstance(counts, dict):
                return counts
    return {}


@dataclass(frozen=True)
class CohereChat(ProviderReply):
    """Cohere chat reply, v1 (`text`) or v2 (`message.content[]`)."""

    @classmethod
    def from_payload(cls, obj: Any) -> CohereChat:
        if not isinstance(obj, dict):
            raise _payload_error("cohere", "body is not an object")
        if isinstance(obj.get("message"), dict):
            parts = obj["message"].get("content")
            if not isinstance(parts, list):
                raise _payload_error("cohere", "message.content is not an array")
            content = "".join(
                p.get("text", "") for p in parts
                if isinstance(p, dict) and p.get("type", "text") == "text" and isinstance(p.get("text", ""), str)
            )
        elif isinstance(obj.get("text"), str):
            content = obj["text"]
        else:
            raise _payload_error("cohere", "neither text nor message.content present")
        counts = _cohere_token_counts(obj)
        return cls(
            content=content,
            finish_reason=map_cohere_finish(obj.get("finish_reason")),
            prompt_tokens=_tokens(counts.get("input_tokens")),
            completion_tokens=_tokens(counts.get("output_tokens")),
        )


@dataclass(frozen=True)
class ImageGeneration(ProviderReply):
    """OpenAI-style images/generations result rendered as a markdown image."""

    @classmethod
    def from_payload(cls, obj: Any) -> ImageGeneration:
        if not isinstance(obj, dict):
            raise _payload_error("images", "body is not an object")
        data = obj.get("data")
        if not isinstance(data, list) or not data or not isinstance(data[0], dict):
            raise _payload_error("images", "missing data[0]")
        first = data[0]
        url = first.get("url")
        if not isinstance(url, str) or not url:
            b64 = first.get("b64_json")
            if not isinstance(b64, str) or not b64:
                raise _payload_error("images", "data[0] has neither url nor b64_json")
            url = f"data:image/png;base64,{b64}"
        revised = first.get("revised_prompt")
        content = f"![Generated image]({url})"
        if isinstance(revised, str) and revised:
            content += f"\n\n*{revised}*"
        return cls(content=content, finish_reason="stop", prompt_tokens=0, completion_tokens=0)


# ============================================================================
# Stream frames
# ============================================================================

@dataclass(frozen=True)
class StreamPiece:
    """Translation of one upstream stream frame."""

    text: str = ""
    finish_reason: Optional[str] = None


def _warn(provider: str, reason: str) -> TranscodeWarning:
    return TranscodeWarning(f"{provider} frame: {reason}")


def openai_stream_piece(obj: Any) -> StreamPiece:
    if not isinstance(obj, dict):
        raise _warn("openai", "not an object")
    if isinstance(obj.get("error"), (dict, str)):
        return StreamPiece(finish_reason="error")
    choices = obj.get("choices")
    if not isinstance(choices, list):
        raise _warn("openai", "missing choices")
    if not choices:
        # usage-only trailer
        return StreamPiece()
    ch = choices[0]
    if not isinstance(ch, dict):
        raise _warn("openai", "choices[0] is not an object")
    delta = ch.get("delta") or {}
    if not isinstance(delta, dict):
        raise _warn("openai", "delta is not an object")
    text = delta.get("content")
    if text is not None and not isinstance(text, str):
        raise _warn("openai", "delta.content is not a string")
    reason = ch.get("finish_reason")
    return StreamPiece(
        text=text or "",
        finish_reason=map_openai_finish(reason) if reason else None,
    )


def anthropic_stream_piece(event: str, obj: Any, pending_stop: Optional[str]) -> StreamPiece:
    """
    Translate one Anthropic SSE event.

    `pending_stop` is the stop_reason carried by an earlier message_delta;
    message_stop reports it.
    """
    if not isinstance(obj, dict):
        raise _warn("anthropic", "not an object")
    kind = obj.get("type") or event
    if kind == "content_block_delta":
        delta = obj.get("delta")
        if not isinstance(delta, dict):
            raise _warn("anthropic", "content_block_delta without delta")
        text = delta.get("text")
        if text is None:
            # input_json_delta and friends carry no text
            return StreamPiece()
        if not isinstance(text, str):
            raise _warn("anthropic", "delta.text is not a string")
        return StreamPiece(text=text)
    if kind == "message_stop":
        return StreamPiece(finish_reason=map_anthropic_finish(pending_stop))
    if kind == "error":
        return StreamPiece(finish_reason="error")
    return StreamPiece()


def anthropic_stop_reason(obj: Any) -> Optional[str]:
    if isinstance(obj, dict) and obj.get("type") == "message_delta":
        delta = obj.get("delta")
        if isinstance(delta, dict) and isinstance(delta.get("stop_reason"), str):
            return delta["stop_reason"]
    return None


def gemini_stream_piece(obj: Any) -> StreamPiece:
    if not isinstance(obj, dict):
        raise _warn("gemini", "not an object")
    if "error" in obj:
        return StreamPiece(finish_reason="error")
    candidates = obj.get("candidates")
    if candidates is None:
        # usage-only or promptFeedback object
        return StreamPiece()
    if not isinstance(candidates, list) or not candidates or not isinstance(candidates[0], dict):
        raise _warn("gemini", "malformed candidates")
    cand = candidates[0]
    reason = cand.get("finishReason")
    return StreamPiece(
        text=_gemini_first_text(cand) or "",
        finish_reason=map_gemini_finish(reason) if reason else None,
    )


def cohere_stream_piece(obj: Any) -> StreamPiece:
    if not isinstance(obj, dict):
        raise _warn("cohere", "not an object")
    kind = obj.get("type") or obj.get("event_type")
    if kind == "text-generation":
        text = obj.get("text")
        if not isinstance(text, str):
            raise _warn("cohere", "text-generation without text")
        return StreamPiece(text=text)
    if kind == "content-delta":
        try:
            text = obj["delta"]["message"]["content"]["text"]
        except (KeyError, TypeError):
            raise _warn("cohere", "content-delta without text") from None
        if not isinstance(text, str):
            raise _warn("cohere", "content-delta text is not a string")
        return StreamPiece(text=text)
    if kind == "stream-end":
        return StreamPiece(finish_reason=map_cohere_finish(obj.get("finish_reason")))
    if kind == "message-end":
        delta = obj.get("delta") if isinstance(obj.get("delta"), dict) else {}
        return StreamPiece(finish_reason=map_cohere_finish(delta.get("finish_reason")))
    if kind == "error":
        return StreamPiece(finish_reason="error")
    return StreamPiece()
