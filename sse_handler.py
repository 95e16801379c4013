"""
Stream transcoding: provider byte streams in, canonical chunks out.

Nothing here performs I/O. Decoders cut complete frames from a byte buffer,
translators turn one frame into a StreamPiece, and StreamTranscoder enforces
the ordering contract of the canonical stream:

    delta chunks... -> exactly one finish chunk (empty delta) -> STREAM_DONE
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Iterable, List, Optional, Union

from errors import TranscodeWarning
from models import STREAM_DONE, CanonicalChatResponse, CanonicalStreamChunk, StreamDone
from provider_payloads import (
    StreamPiece,
    anthropic_stop_reason,
    anthropic_stream_piece,
    cohere_stream_piece,
    gemini_stream_piece,
    openai_stream_piece,
)

log = logging.getLogger("model_gateway")
frame_log = logging.getLogger("model_gateway.frames")

StreamItem = Union[CanonicalStreamChunk, StreamDone]

SSE_DONE = b"data: [DONE]\n\n"

MAX_JSON_FRAME_BYTES = 1 << 20

_JSON_WHITESPACE = b" \t\r\n"
_JSON_SEPARATORS = _JSON_WHITESPACE + b",[]"
_LBRACE, _RBRACE, _QUOTE, _BACKSLASH = ord("{"), ord("}"), ord('"'), ord("\\")
_LBRACKET, _RBRACKET, _COLON, _COMMA, _NEWLINE = ord("["), ord("]"), ord(":"), ord(","), ord("\n")


@dataclass(frozen=True)
class Frame:
    """One complete upstream record. `data` is raw bytes, decoded only once complete."""

    event: str
    data: bytes


# ============================================================================
# Frame decoders
# ============================================================================

class SSEFrameDecoder:
    """
    Incremental SSE decoder.

    Bytes are appended to a buffer; `_scan` remembers how far the buffer has
    already been searched for a line break so that a slow trickle of bytes is
    never rescanned. Lines of the current event are kept until the blank line
    that dispatches it.
    """

    def __init__(self) -> None:
        self._buf = bytearray()
        self._scan = 0
        self._event = ""
        self._data: List[bytes] = []

    def feed(self, data: bytes) -> List[Frame]:
        self._buf += data
        frames: List[Frame] = []
        start = 0
        while True:
            nl = self._buf.find(b"\n", max(self._scan, start))
            if nl < 0:
                break
            self._line(bytes(self._buf[start:nl]), frames)
            start = nl + 1
        if start:
            del self._buf[:start]
        self._scan = len(self._buf)
        return frames

    def finish(self) -> List[Frame]:
        frames: List[Frame] = []
        if self._buf:
            self._line(bytes(self._buf), frames)
            self._buf.clear()
            self._scan = 0
        self._dispatch(frames)
        return frames

    def _line(self, line: bytes, frames: List[Frame]) -> None:
        if line.endswith(b"\r"):
            line = line[:-1]
        if not line:
            self._dispatch(frames)
            return
        if line.startswith(b":"):
            return
        field, _, value = line.partition(b":")
        if value.startswith(b" "):
            value = value[1:]
        if field == b"data":
            self._data.append(value)
        elif field == b"event":
            self._event = value.decode("utf-8", errors="replace").strip()

    def _dispatch(self, frames: List[Frame]) -> None:
        if self._data:
            frames.append(Frame(event=self._event, data=b"\n".join(self._data)))
        self._event = ""
        self._data = []


class JSONObjectFrameDecoder:
    """
    Extract top-level JSON objects from NDJSON or a streamed JSON array.

    Scans bytes tracking the container stack, string and escape state.
    Separators between objects (whitespace, commas, array brackets) are skipped.

    A pending object that turns out to be corrupt (a `{` where no value may
    start, a raw line break inside a string, a mismatched closer) is handed
    on as one unparseable frame and scanning resumes at the offending byte.
    A pending object larger than `max_frame_bytes` is handed on the same way
    and the rest of it is discarded without being buffered.
    """

    def __init__(self, max_frame_bytes: int = MAX_JSON_FRAME_BYTES) -> None:
        self._max_frame_bytes = max_frame_bytes
        self._buf = bytearray()
        self._pos = 0
        self._start = -1
        self._stack = bytearray()
        self._last = 0
        self._in_string = False
        self._escape = False
        self._discarding = False

    def feed(self, data: bytes) -> List[Frame]:
        self._buf += data
        frames: List[Frame] = []
        buf = self._buf
        i = self._pos
        n = len(buf)
        while i < n:
            c = buf[i]
            if self._start < 0:
                if c == _LBRACE:
                    self._open(i)
                elif c not in _JSON_SEPARATORS:
                    log.debug("Skipping stray byte outside JSON object: %r", bytes([c]))
            elif self._in_string:
                if c == _NEWLINE:
                    self._corrupt(frames, i, "line break inside string")
                    continue
                if self._escape:
                    self._escape = False
                elif c == _BACKSLASH:
                    self._escape = True
                elif c == _QUOTE:
                    self._in_string = False
                    self._last = c
            elif c in _JSON_WHITESPACE:
                pass
            elif c == _QUOTE:
                self._in_string = True
            elif c == _LBRACE or c == _LBRACKET:
                if not self._value_expected():
                    self._corrupt(frames, i, "unexpected %r" % chr(c))
                    continue
                self._stack.append(c)
                self._last = c
            elif c == _RBRACE or c == _RBRACKET:
                if self._stack[-1] != (_LBRACE if c == _RBRACE else _LBRACKET):
                    self._corrupt(frames, i, "mismatched %r" % chr(c))
                    continue
                self._stack.pop()
                self._last = c
                if not self._stack:
                    if not self._discarding:
                        frames.append(Frame(event="", data=bytes(buf[self._start:i + 1])))
                    self._reset()
            else:
                self._last = c
            i += 1
            if self._start >= 0 and not self._discarding and i - self._start > self._max_frame_bytes:
                log.warning(
                    "JSON object exceeds %d bytes; discarding the rest of it", self._max_frame_bytes
                )
                frames.append(Frame(event="", data=bytes(buf[self._start:i])))
                self._discarding = True

        if self._start < 0 or self._discarding:
            buf.clear()
            self._pos = 0
            if self._discarding:
                self._start = 0
        else:
            del buf[:self._start]
            self._start = 0
            self._pos = len(buf)
        return frames

    def finish(self) -> List[Frame]:
        if self._start >= 0 and self._buf and not self._discarding:
            log.warning("Upstream ended inside a JSON object; dropping %d bytes", len(self._buf))
        self._buf.clear()
        self._pos = 0
        self._reset()
        return []

    def _open(self, i: int) -> None:
        self._start = i
        self._stack = bytearray((_LBRACE,))
        self._last = _LBRACE
        self._in_string = False
        self._escape = False

    def _reset(self) -> None:
        self._start = -1
        self._stack = bytearray()
        self._in_string = False
        self._escape = False
        self._discarding = False

    def _value_expected(self) -> bool:
        if self._stack[-1] == _LBRACE:
            return self._last == _COLON
        return self._last == _LBRACKET or self._last == _COMMA

    def _corrupt(self, frames: List[Frame], i: int, reason: str) -> None:
        # The pending bytes are an unclosed object, so they never parse and
        # the transcoder counts them as one skipped frame.
        log.warning("Resyncing JSON stream after malformed object: %s", reason)
        if not self._discarding:
            frames.append(Frame(event="", data=bytes(self._buf[self._start:i])))
        self._reset()


class AutoFrameDecoder:
    """Pick SSE or JSON-object framing from the first non-whitespace byte."""

    def __init__(self) -> None:
        self._pending = bytearray()
        self._inner: Optional[Union[SSEFrameDecoder, JSONObjectFrameDecoder]] = None

    def feed(self, data: bytes) -> List[Frame]:
        if self._inner is not None:
            return self._inner.feed(data)
        self._pending += data
        head = self._pending.lstrip()
        if not head:
            return []
        if head[:1] in (b"{", b"["):
            self._inner = JSONObjectFrameDecoder()
        else:
            self._inner = SSEFrameDecoder()
        pending = bytes(self._pending)
        self._pending.clear()
        return self._inner.feed(pending)

    def finish(self) -> List[Frame]:
        if self._inner is None:
            self._pending.clear()
            return []
        return self._inner.finish()


FrameDecoder = Union[SSEFrameDecoder, JSONObjectFrameDecoder, AutoFrameDecoder]


# ============================================================================
# Frame translators
# ============================================================================

def _load_json(frame: Frame) -> object:
    try:
        return json.loads(frame.data)
    except (ValueError, UnicodeDecodeError) as e:
        raise TranscodeWarning(f"unparseable frame: {e}") from None


class FrameTranslator:
    """Turn one provider frame into a StreamPiece. Raises TranscodeWarning on garbage."""

    def translate(self, frame: Frame) -> StreamPiece:
        raise NotImplementedError


class OpenAIFrameTranslator(FrameTranslator):
    def translate(self, frame: Frame) -> StreamPiece:
        return openai_stream_piece(_load_json(frame))


class AnthropicFrameTranslator(FrameTranslator):
    def __init__(self) -> None:
        self._stop_reason: Optional[str] = None

    def translate(self, frame: Frame) -> StreamPiece:
        obj = _load_json(frame)
        reason = anthropic_stop_reason(obj)
        if reason:
            self._stop_reason = reason
        return anthropic_stream_piece(frame.event, obj, self._stop_reason)


class GeminiFrameTranslator(FrameTranslator):
    def translate(self, frame: Frame) -> StreamPiece:
        return gemini_stream_piece(_load_json(frame))


class CohereFrameTranslator(FrameTranslator):
    def translate(self, frame: Frame) -> StreamPiece:
        return cohere_stream_piece(_load_json(frame))


def decoder_for(protocol: str) -> FrameDecoder:
    if protocol == "gemini":
        return JSONObjectFrameDecoder()
    if protocol == "cohere":
        return AutoFrameDecoder()
    return SSEFrameDecoder()


def translator_for(protocol: str) -> FrameTranslator:
    if protocol == "anthropic":
        return AnthropicFrameTranslator()
    if protocol == "gemini":
        return GeminiFrameTranslator()
    if protocol == "cohere":
        return CohereFrameTranslator()
    return OpenAIFrameTranslator()


# ============================================================================
# Transcoder
# ============================================================================

class StreamTranscoder:
    """
    Per-connection transcoder from one provider's stream to canonical items.

    feed() may be called with arbitrary byte slices; the emitted item sequence
    depends only on the concatenated bytes, not on how they were split.
    """

    def __init__(
        self,
        protocol: str,
        response_id: str,
        model: str,
        *,
        debug_frames: bool = False,
    ) -> None:
        self.protocol = protocol
        self.response_id = response_id
        self.model = model
        self._decoder = decoder_for(protocol)
        self._translator = translator_for(protocol)
        self._debug_frames = debug_frames
        self.closed = False
        self.finish_reason: Optional[str] = None
        self.skipped_frames = 0

    def feed(self, data: bytes) -> List[StreamItem]:
        if self.closed or not data:
            return []
        return self._consume(self._decoder.feed(data))

    def finish(self) -> List[StreamItem]:
        """Upstream body ended. Always leaves the stream closed."""
        if self.closed:
            return []
        out = self._consume(self._decoder.finish())
        if not self.closed:
            log.warning(
                "Upstream stream ended without finish protocol=%s id=%s model=%s",
                self.protocol,
                self.response_id,
                self.model,
            )
            out.extend(self._close("error"))
        return out

    def abort(self) -> List[StreamItem]:
        """Close with an error finish (timeout, read failure). Partial output stays final."""
        if self.closed:
            return []
        self._decoder = decoder_for(self.protocol)
        return self._close("error")

    def _consume(self, frames: Iterable[Frame]) -> List[StreamItem]:
        out: List[StreamItem] = []
        for frame in frames:
            if self.closed:
                break
            if self._debug_frames:
                frame_log.debug(
                    "frame protocol=%s id=%s event=%s data=%r",
                    self.protocol,
                    self.response_id,
                    frame.event,
                    frame.data[:500],
                )
            if frame.data.strip() == b"[DONE]":
                out.extend(self._close("stop"))
                break
            try:
                piece = self._translator.translate(frame)
            except TranscodeWarning as e:
                self.skipped_frames += 1
                log.warning(
                    "Skipping malformed stream frame protocol=%s id=%s: %s",
                    self.protocol,
                    self.response_id,
                    e,
                )
                continue
            if piece.text:
                out.append(self._chunk(delta=piece.text))
            if piece.finish_reason:
                out.extend(self._close(piece.finish_reason))
        return out

    def _chunk(self, delta: str = "", finish_reason: Optional[str] = None) -> CanonicalStreamChunk:
        return CanonicalStreamChunk(
            id=self.response_id, model=self.model, delta=delta, finish_reason=finish_reason
        )

    def _close(self, reason: str) -> List[StreamItem]:
        self.closed = True
        self.finish_reason = reason
        return [self._chunk(finish_reason=reason), STREAM_DONE]


def replay_response(response: CanonicalChatResponse) -> List[StreamItem]:
    """Canonical stream equivalent of an already buffered response."""
    items: List[StreamItem] = []
    if response.content:
        items.append(CanonicalStreamChunk(id=response.id, model=response.model, delta=response.content))
    items.append(
        CanonicalStreamChunk(id=response.id, model=response.model, finish_reason=response.finish_reason)
    )
    items.append(STREAM_DONE)
    return items


# ============================================================================
# Outbound encoding
# ============================================================================

def encode_sse_chunk(chunk: CanonicalStreamChunk, created: Optional[int] = None) -> bytes:
    payload = json.dumps(chunk.to_dict(created), ensure_ascii=False, separators=(",", ":"))
    return ("data: " + payload + "\n\n").encode("utf-8")


def encode_stream_item(item: StreamItem, created: Optional[int] = None) -> bytes:
    if isinstance(item, StreamDone):
        return SSE_DONE
    return encode_sse_chunk(item, created if created is not None else int(time.time()))
