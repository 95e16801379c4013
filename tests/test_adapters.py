"""
Tests for protocol adapters.

Tests cover:
- Provider request shapes built from the canonical request
- Provider response parsing into the canonical response
- Usage arithmetic and typed payload validation
- Streaming / non-streaming equivalence
"""

import json

import pytest

from adapters import ADAPTERS, get_adapter, protocol_for_provider
from errors import UpstreamPayloadError
from models import STREAM_DONE, CanonicalChatRequest, CanonicalStreamChunk, ResolvedRoute


def make_route(protocol="openai", **overrides):
    fields = dict(
        model="canonical",
        provider="prov",
        protocol=protocol,
        upstream_model_id="upstream-id",
        base_url="https://up.example.com/",
        api_path="/v1/endpoint",
        api_key="KEY-123",
    )
    fields.update(overrides)
    return ResolvedRoute(**fields)


def make_request(**overrides):
    body = {
        "model": "canonical",
        "messages": [
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "Hi"},
            {"role": "assistant", "content": "Hello!"},
            {"role": "user", "content": "Draw a cat"},
        ],
    }
    body.update(overrides)
    return CanonicalChatRequest.from_dict(body)


def build(protocol, req=None, route=None, **kw):
    adapter = ADAPTERS[protocol]
    return adapter.build_request(req or make_request(), route or make_route(protocol), **kw)


# ============================================================================
# Request shapes
# ============================================================================

class TestOpenAIRequest:
    """Test OpenAI-compatible pass-through."""

    def test_body_passes_messages_and_params(self):
        up = build("openai", make_request(temperature=0.2, top_p=0.9, max_tokens=100, stop="END"))
        assert up.body == {
            "model": "upstream-id",
            "messages": [
                {"role": "system", "content": "Be brief."},
                {"role": "user", "content": "Hi"},
                {"role": "assistant", "content": "Hello!"},
                {"role": "user", "content": "Draw a cat"},
            ],
            "stream": False,
            "temperature": 0.2,
            "top_p": 0.9,
            "max_tokens": 100,
            "stop": ["END"],
        }
        assert up.url == "https://up.example.com/v1/endpoint"
        assert up.params == {}

    def test_bearer_auth_and_extra_headers(self):
        route = make_route("openai", extra_headers={"X-Org": "acme"})
        up = build("openai", route=route, user_agent="ua/1")
        assert up.headers["Authorization"] == "Bearer KEY-123"
        assert up.headers["X-Org"] == "acme"
        assert up.headers["User-Agent"] == "ua/1"

    def test_custom_auth_header_without_prefix(self):
        route = make_route("openai", auth_header="api-key", auth_prefix="")
        up = build("openai", route=route)
        assert up.headers["api-key"] == "KEY-123"
        assert "Authorization" not in up.headers

    def test_single_sampling_param_when_provider_requires_it(self):
        route = make_route("openai", supports_temperature_and_top_p=False)
        up = build("openai", make_request(temperature=0.5, top_p=0.1), route=route)
        assert up.body["temperature"] == 0.5
        assert "top_p" not in up.body

    def test_stream_flag_and_accept_header(self):
        up = build("openai", make_request(stream=True))
        assert up.body["stream"] is True
        assert up.stream is True
        assert up.headers["Accept"] == "text/event-stream"


class TestAnthropicRequest:
    """Test Anthropic Messages request shape."""

    def test_system_hoisted_and_default_max_tokens(self):
        up = build("anthropic")
        assert up.body["system"] == "Be brief."
        assert [m["role"] for m in up.body["messages"]] == ["user", "assistant", "user"]
        assert up.body["max_tokens"] == 4096
        assert up.body["model"] == "upstream-id"

    def test_max_tokens_precedence(self):
        route = make_route("anthropic", max_tokens_default=2048)
        assert build("anthropic", route=route).body["max_tokens"] == 2048
        assert build("anthropic", make_request(max_tokens=77), route=route).body["max_tokens"] == 77
        assert build("anthropic", default_max_tokens=1000).body["max_tokens"] == 1000

    def test_temperature_wins_over_top_p_and_stop_sequences(self):
        up = build("anthropic", make_request(temperature=0.3, top_p=0.8, stop=["\n\nHuman:"]))
        assert up.body["temperature"] == 0.3
        assert "top_p" not in up.body
        assert up.body["stop_sequences"] == ["\n\nHuman:"]

    def test_top_p_alone_is_sent(self):
        assert build("anthropic", make_request(top_p=0.8)).body["top_p"] == 0.8

    def test_headers(self):
        up = build("anthropic")
        assert up.headers["x-api-key"] == "KEY-123"
        assert up.headers["anthropic-version"] == "2023-06-01"
        assert "Authorization" not in up.headers

    def test_configured_version_header_is_kept(self):
        route = make_route("anthropic", extra_headers={"anthropic-version": "2024-01-01"})
        up = build("anthropic", route=route)
        assert up.headers["anthropic-version"] == "2024-01-01"

    def test_no_system_field_without_system_message(self):
        req = CanonicalChatRequest.from_dict({"model": "m", "messages": [{"role": "user", "content": "x"}]})
        assert "system" not in build("anthropic", req).body


class TestGeminiRequest:
    """Test Gemini generateContent request shape."""

    def test_contents_roles_and_parts(self):
        up = build("gemini")
        assert up.body["contents"] == [
            {"role": "user", "parts": [{"text": "Hi"}]},
            {"role": "model", "parts": [{"text": "Hello!"}]},
            {"role": "user", "parts": [{"text": "Draw a cat"}]},
        ]
        assert up.body["systemInstruction"] == {"parts": [{"text": "Be brief."}]}
        assert "model" not in up.body

    def test_generation_config(self):
        up = build("gemini", make_request(temperature=0.1, top_p=0.5, max_tokens=64, stop=["x"]))
        assert up.body["generationConfig"] == {
            "maxOutputTokens": 64,
            "temperature": 0.1,
            "topP": 0.5,
            "stopSequences": ["x"],
        }

    def test_max_output_tokens_always_present(self):
        assert build("gemini").body["generationConfig"] == {"maxOutputTokens": 4096}

    def test_key_travels_as_query_param_only(self):
        up = build("gemini")
        assert up.params == {"key": "KEY-123"}
        assert "KEY-123" not in up.url
        assert all("KEY-123" not in v for v in up.headers.values())


class TestCohereRequest:
    """Test Cohere chat request shape."""

    def test_body(self):
        up = build("cohere", make_request(top_p=0.7, temperature=0.4, max_tokens=10, stop=["."]))
        assert up.body["model"] == "upstream-id"
        assert up.body["p"] == 0.7
        assert "top_p" not in up.body
        assert up.body["temperature"] == 0.4
        assert up.body["max_tokens"] == 10
        assert up.body["stop_sequences"] == ["."]
        assert up.body["messages"][0] == {"role": "system", "content": "Be brief."}
        assert up.headers["Authorization"] == "Bearer KEY-123"


class TestImageGenerationRequest:
    """Test the image generation adapter."""

    def test_body_uses_last_user_message(self):
        up = build("openai_images", make_request(stream=True))
        assert up.body == {"model": "upstream-id", "prompt": "Draw a cat", "n": 1, "size": "1024x1024"}
        assert up.stream is False


class TestProtocolSelection:
    """Test provider -> protocol derivation."""

    @pytest.mark.parametrize(
        "provider,configured,expected",
        [
            ("anthropic", None, "anthropic"),
            ("Google", None, "gemini"),
            ("gemini", None, "gemini"),
            ("cohere", None, "cohere"),
            ("openai", None, "openai"),
            ("oneai", None, "openai"),
            ("my-proxy", "anthropic", "anthropic"),
            ("my-proxy", "google", "gemini"),
            ("my-proxy", "bogus", "openai"),
        ],
    )
    def test_protocol_for_provider(self, provider, configured, expected):
        assert protocol_for_provider(provider, configured) == expected

    def test_unknown_protocol_falls_back_to_openai(self):
        assert get_adapter("nope") is ADAPTERS["openai"]


# ============================================================================
# Response parsing
# ============================================================================

def parse(protocol, obj):
    raw = obj if isinstance(obj, bytes) else json.dumps(obj).encode("utf-8")
    return ADAPTERS[protocol].parse_response(raw, "chatcmpl-x", "canonical")


OPENAI_BODY = {
    "id": "up",
    "choices": [{"index": 0, "message": {"role": "assistant", "content": "Hello"}, "finish_reason": "length"}],
    "usage": {"prompt_tokens": 5, "completion_tokens": 7, "total_tokens": 999},
}
ANTHROPIC_BODY = {
    "id": "msg",
    "type": "message",
    "content": [{"type": "text", "text": "Hello"}],
    "stop_reason": "end_turn",
    "usage": {"input_tokens": 11, "output_tokens": 3},
}
GEMINI_BODY = {
    "candidates": [{"content": {"parts": [{"text": "Hello"}], "role": "model"}, "finishReason": "MAX_TOKENS"}],
    "usageMetadata": {"promptTokenCount": 4, "candidatesTokenCount": 6, "totalTokenCount": 10},
}
COHERE_V2_BODY = {
    "id": "c",
    "message": {"role": "assistant", "content": [{"type": "text", "text": "Hello"}]},
    "finish_reason": "COMPLETE",
    "usage": {"tokens": {"input_tokens": 2, "output_tokens": 8}},
}
COHERE_V1_BODY = {
    "text": "Hello",
    "finish_reason": "MAX_TOKENS",
    "meta": {"billed_units": {"input_tokens": 3, "output_tokens": 1}},
}


class TestResponseParsing:
    """Test provider body -> canonical response."""

    @pytest.mark.parametrize(
        "protocol,body,finish,prompt,completion",
        [
            ("openai", OPENAI_BODY, "length", 5, 7),
            ("anthropic", ANTHROPIC_BODY, "stop", 11, 3),
            ("gemini", GEMINI_BODY, "length", 4, 6),
            ("cohere", COHERE_V2_BODY, "stop", 2, 8),
            ("cohere", COHERE_V1_BODY, "length", 3, 1),
        ],
    )
    def test_content_finish_and_usage(self, protocol, body, finish, prompt, completion):
        resp = parse(protocol, body)
        assert resp.content == "Hello"
        assert resp.finish_reason == finish
        assert resp.usage.prompt_tokens == prompt
        assert resp.usage.completion_tokens == completion
        assert resp.usage.total_tokens == prompt + completion

    @pytest.mark.parametrize("protocol", ["openai", "anthropic", "gemini", "cohere"])
    def test_usage_defaults_to_zero(self, protocol):
        body = {
            "openai": {"choices": [{"message": {"content": "x"}}]},
            "anthropic": {"content": [{"type": "text", "text": "x"}]},
            "gemini": {"candidates": [{"content": {"parts": [{"text": "x"}]}}]},
            "cohere": {"text": "x"},
        }[protocol]
        usage = parse(protocol, body).to_dict()["usage"]
        assert usage == {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}

    def test_canonical_response_shape(self):
        out = parse("anthropic", ANTHROPIC_BODY).to_dict()
        assert out["object"] == "chat.completion"
        assert out["id"] == "chatcmpl-x"
        assert out["model"] == "canonical"
        assert out["choices"] == [
            {"index": 0, "message": {"role": "assistant", "content": "Hello"}, "finish_reason": "stop"}
        ]
        assert out["usage"]["total_tokens"] == 14

    def test_null_openai_content_is_empty(self):
        assert parse("openai", {"choices": [{"message": {"content": None}}]}).content == ""

    def test_image_url(self):
        resp = parse("openai_images", {"data": [{"url": "https://img/1.png", "revised_prompt": "a cat"}]})
        assert resp.content == "![Generated image](https://img/1.png)\n\n*a cat*"
        assert resp.usage.total_tokens == 0

    def test_image_b64(self):
        resp = parse("openai_images", {"data": [{"b64_json": "AAAA"}]})
        assert resp.content == "![Generated image](data:image/png;base64,AAAA)"

    @pytest.mark.parametrize(
        "protocol,body",
        [
            ("openai", b"not json"),
            ("openai", {"choices": []}),
            ("openai", {"choices": [{"message": {"content": 5}}]}),
            ("anthropic", {"content": "text"}),
            ("anthropic", [1, 2]),
            ("gemini", {"candidates": []}),
            ("cohere", {"unexpected": True}),
            ("openai_images", {"data": [{}]}),
        ],
    )
    def test_malformed_payload_raises_typed_error(self, protocol, body):
        with pytest.raises(UpstreamPayloadError) as ei:
            parse(protocol, body)
        assert ei.value.status_code == 502
        assert ei.value.to_envelope()["error"] == "upstream_payload_invalid"


# ============================================================================
# Streaming / non-streaming equivalence
# ============================================================================

def _sse(obj, event=None):
    head = f"event: {event}\n" if event else ""
    return head + "data: " + json.dumps(obj, ensure_ascii=False) + "\n\n"


TEXT = "Ünïcode, {braces} and \"quotes\" 🚀"
PARTS = ["Ünïcode, ", "{braces} and ", "\"quotes\" 🚀"]

EQUIVALENCE_CASES = {
    "openai": (
        {"choices": [{"message": {"content": TEXT}, "finish_reason": "stop"}]},
        "".join(_sse({"choices": [{"delta": {"content": p}, "finish_reason": None}]}) for p in PARTS)
        + _sse({"choices": [{"delta": {}, "finish_reason": "stop"}]})
        + "data: [DONE]\n\n",
    ),
    "anthropic": (
        {"content": [{"type": "text", "text": TEXT}], "stop_reason": "end_turn"},
        "".join(
            _sse({"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": p}}, "content_block_delta")
            for p in PARTS
        )
        + _sse({"type": "message_delta", "delta": {"stop_reason": "end_turn"}}, "message_delta")
        + _sse({"type": "message_stop"}, "message_stop"),
    ),
    "gemini": (
        {"candidates": [{"content": {"parts": [{"text": TEXT}]}, "finishReason": "STOP"}]},
        "["
        + ",\n".join(
            json.dumps({"candidates": [{"content": {"parts": [{"text": p}]}, **({"finishReason": "STOP"} if i == 2 else {})}]})
            for i, p in enumerate(PARTS)
        )
        + "]",
    ),
    "cohere": (
        {"message": {"content": [{"type": "text", "text": TEXT}]}, "finish_reason": "COMPLETE"},
        "".join(
            _sse({"type": "content-delta", "delta": {"message": {"content": {"text": p}}}}, "content-delta")
            for p in PARTS
        )
        + _sse({"type": "message-end", "delta": {"finish_reason": "COMPLETE"}}, "message-end"),
    ),
}


@pytest.mark.parametrize("protocol", sorted(EQUIVALENCE_CASES))
def test_streaming_matches_non_streaming(protocol):
    body, stream = EQUIVALENCE_CASES[protocol]
    adapter = ADAPTERS[protocol]
    buffered = adapter.parse_response(json.dumps(body).encode("utf-8"), "id", "canonical")

    transcoder = adapter.new_transcoder("id", "canonical")
    raw = stream.encode("utf-8")
    items = []
    for i in range(0, len(raw), 7):
        items.extend(transcoder.feed(raw[i:i + 7]))
    items.extend(transcoder.finish())

    assert items[-1] is STREAM_DONE
    chunks = [i for i in items if isinstance(i, CanonicalStreamChunk)]
    assert "".join(c.delta for c in chunks) == buffered.content == TEXT
    assert chunks[-1].finish_reason == buffered.finish_reason
