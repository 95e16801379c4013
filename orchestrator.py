"""
Gateway orchestration: authenticate, resolve, dispatch, then stream or buffer.

Per-request state machine:

    AUTHENTICATING -> RESOLVING -> DISPATCHING -> STREAMING | BUFFERING -> CLOSED

ERRORED is reachable from every non-terminal state. Nothing here retries.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import replace
from enum import Enum
from typing import Any, AsyncGenerator, AsyncIterator, Dict, Iterable, Optional, Tuple, Union

import httpx

from adapters import ProtocolAdapter, get_adapter
from auth import Authenticator
from catalog import CatalogSnapshot, CatalogStore
from config import AppConfig
from errors import (
    GatewayError,
    GatewayTimeoutError,
    InvalidRequestError,
    RequestCancelledError,
    UpstreamError,
    UpstreamUnreachableError,
)
from key_vault import KeyVault
from models import (
    CallerIdentity,
    CanonicalChatRequest,
    CanonicalChatResponse,
    STREAM_DONE,
    ResolvedRoute,
    new_response_id,
)
from resolver import CredentialResolver
from scoring import NO_IMAGE_MODELS_MESSAGE, Intent, select_diverse
from sse_handler import StreamItem, StreamTranscoder, replay_response
from upstream import ClientFactory, UpstreamClient

log = logging.getLogger("model_gateway")

ERROR_LOG_CHARS = 500


class RequestState(str, Enum):
    AUTHENTICATING = "authenticating"
    RESOLVING = "resolving"
    DISPATCHING = "dispatching"
    STREAMING = "streaming"
    BUFFERING = "buffering"
    CLOSED = "closed"
    ERRORED = "errored"


_ALLOWED = {
    RequestState.AUTHENTICATING: {RequestState.RESOLVING},
    RequestState.RESOLVING: {RequestState.DISPATCHING},
    RequestState.DISPATCHING: {RequestState.STREAMING, RequestState.BUFFERING},
    RequestState.STREAMING: {RequestState.CLOSED},
    RequestState.BUFFERING: {RequestState.CLOSED},
}

_TERMINAL = {RequestState.CLOSED, RequestState.ERRORED}


class RequestContext:
    """Lifecycle of one gateway request."""

    def __init__(self, req_id: str) -> None:
        self.req_id = req_id
        self.model = ""
        self.state = RequestState.AUTHENTICATING
        self.error_kind: Optional[str] = None
        self._t0 = time.monotonic()

    @property
    def terminal(self) -> bool:
        return self.state in _TERMINAL

    def transition(self, new: RequestState) -> None:
        if new not in _ALLOWED.get(self.state, set()):
            raise RuntimeError(f"illegal request transition {self.state.value} -> {new.value}")
        log.debug(
            "req_id=%s model=%s state %s -> %s",
            self.req_id,
            self.model,
            self.state.value,
            new.value,
        )
        self.state = new
        if new == RequestState.CLOSED:
            log.info(
                "Request closed req_id=%s model=%s ms=%.1f",
                self.req_id,
                self.model,
                (time.monotonic() - self._t0) * 1000,
            )

    def fail(self, kind: str) -> None:
        if self.terminal:
            return
        log.debug(
            "req_id=%s model=%s state %s -> errored (%s)",
            self.req_id,
            self.model,
            self.state.value,
            kind,
        )
        self.state = RequestState.ERRORED
        self.error_kind = kind


async def _close_upstream(resp: httpx.Response, client: httpx.AsyncClient) -> None:
    with contextlib.suppress(Exception):
        await resp.aclose()
    with contextlib.suppress(Exception):
        await client.aclose()


class UpstreamStream:
    """
    Canonical stream items bound to one open upstream response.

    Exhausting, closing or cancelling the iterator closes the upstream
    connection, including when iteration never started.
    """

    def __init__(
        self,
        items: AsyncGenerator[StreamItem, None],
        resp: httpx.Response,
        client: httpx.AsyncClient,
    ) -> None:
        self._items = items
        self._resp = resp
        self._client = client

    def __aiter__(self) -> UpstreamStream:
        return self

    async def __anext__(self) -> StreamItem:
        try:
            return await self._items.__anext__()
        except StopAsyncIteration:
            await _close_upstream(self._resp, self._client)
            raise
        except BaseException:
            await self.aclose()
            raise

    async def aclose(self) -> None:
        try:
            await self._items.aclose()
        finally:
            await _close_upstream(self._resp, self._client)


ChatResult = Union[CanonicalChatResponse, AsyncIterator[StreamItem]]


class GatewayOrchestrator:
    """Entry point for every gateway operation."""

    def __init__(
        self,
        config: AppConfig,
        *,
        catalog: Optional[CatalogStore] = None,
        client_factory: Optional[ClientFactory] = None,
    ) -> None:
        self._config = config
        self._catalog = catalog or CatalogStore(config)
        self._auth = Authenticator(trust_identity_header=config.trust_identity_header)
        self._resolver = CredentialResolver()
        self._vault = KeyVault(config.vault_key)
        self._upstream = UpstreamClient(config, client_factory=client_factory)

    def request_timeout(self, header_value: Optional[str]) -> float:
        """Per-request deadline in seconds from X-Request-Timeout, clamped to the configured maximum."""
        if header_value is None or not header_value.strip():
            return self._config.request_timeout_s
        try:
            v = float(header_value)
        except ValueError:
            raise InvalidRequestError("Invalid X-Request-Timeout header: expected seconds") from None
        if v <= 0:
            raise InvalidRequestError("Invalid X-Request-Timeout header: must be > 0")
        return min(v, self._config.max_request_timeout_s)

    async def open_session(
        self, authorization: Optional[str], trusted_email: Optional[str]
    ) -> Tuple[CallerIdentity, CatalogSnapshot]:
        snapshot = await self._catalog.snapshot()
        identity = self._auth.authenticate(authorization, trusted_email, snapshot)
        return identity, snapshot

    # ------------------------------------------------------------------
    # Chat completions
    # ------------------------------------------------------------------

    async def chat(
        self,
        body: Any,
        *,
        authorization: Optional[str],
        trusted_email: Optional[str] = None,
        req_id: str,
        timeout_s: Optional[float] = None,
    ) -> ChatResult:
        """
        Run one canonical chat completion.

        Returns the buffered CanonicalChatResponse, or an async iterator of
        canonical stream items when the request asked for streaming. Errors
        before the first streamed byte are raised as GatewayError.
        """
        ctx = RequestContext(req_id)
        timeout = timeout_s if timeout_s is not None else self._config.request_timeout_s
        try:
            identity, snapshot = await self.open_session(authorization, trusted_email)
            req = CanonicalChatRequest.from_dict(body)
            ctx.model = req.model
            ctx.transition(RequestState.RESOLVING)

            route = self._resolver.resolve(identity, req.model, snapshot, stream=req.stream)
            route = replace(
                route,
                api_key=self._vault.reveal(route.api_key, model=route.model, provider=route.provider),
            )
            ctx.transition(RequestState.DISPATCHING)
            return await self._dispatch(ctx, req, route, timeout)
        except GatewayError as e:
            ctx.fail(e.kind)
            log.warning(
                "Request failed req_id=%s model=%s error=%s status=%s",
                req_id,
                ctx.model,
                e.kind,
                e.status_code,
            )
            raise
        except asyncio.CancelledError:
            ctx.fail(RequestCancelledError.kind)
            log.info("Request cancelled req_id=%s model=%s", req_id, ctx.model)
            raise

    async def _dispatch(
        self,
        ctx: RequestContext,
        req: CanonicalChatRequest,
        route: ResolvedRoute,
        timeout_s: float,
    ) -> ChatResult:
        adapter = get_adapter(route.protocol)
        upstream_req = adapter.build_request(
            req,
            route,
            default_max_tokens=self._config.default_max_tokens,
            user_agent=self._config.user_agent,
        )
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_s
        response_id = new_response_id()

        client = self._upstream.create_client(timeout_s)
        resp: Optional[httpx.Response] = None
        handed_off = False
        try:
            try:
                resp = await asyncio.wait_for(
                    self._upstream.send(client, upstream_req, req_id=ctx.req_id, provider=route.provider),
                    timeout=timeout_s,
                )
            except (asyncio.TimeoutError, httpx.TimeoutException):
                raise GatewayTimeoutError(
                    f"Upstream did not respond within {timeout_s:g}s",
                    details=f"provider: {route.provider}",
                ) from None
            except httpx.HTTPError as e:
                log.warning(
                    "Upstream unreachable req_id=%s provider=%s err=%r",
                    ctx.req_id,
                    route.provider,
                    e,
                )
                raise UpstreamUnreachableError(
                    "Upstream unreachable", details=f"provider: {route.provider}: {type(e).__name__}"
                ) from e

            if not (200 <= resp.status_code < 300):
                body = await self._upstream.read_error_body(resp)
                log.warning(
                    "Upstream rejected req_id=%s provider=%s status=%s body=%r",
                    ctx.req_id,
                    route.provider,
                    resp.status_code,
                    body[:ERROR_LOG_CHARS],
                )
                raise UpstreamError(resp.status_code, body, provider=route.provider)

            if req.stream and adapter.supports_upstream_stream:
                ctx.transition(RequestState.STREAMING)
                transcoder = adapter.new_transcoder(
                    response_id, route.model, debug_frames=self._config.debug_stream_frames
                )
                handed_off = True
                return UpstreamStream(self._stream(ctx, resp, transcoder, deadline), resp, client)

            ctx.transition(RequestState.BUFFERING)
            response = await self._buffer(ctx, adapter, resp, response_id, route.model, deadline)
            ctx.transition(RequestState.CLOSED)
            if req.stream:
                return _iterate(replay_response(response))
            return response
        finally:
            if not handed_off:
                if resp is not None:
                    await _close_upstream(resp, client)
                else:
                    with contextlib.suppress(Exception):
                        await client.aclose()

    async def _buffer(
        self,
        ctx: RequestContext,
        adapter: ProtocolAdapter,
        resp: httpx.Response,
        response_id: str,
        model: str,
        deadline: float,
    ) -> CanonicalChatResponse:
        remaining = deadline - asyncio.get_running_loop().time()
        try:
            if remaining <= 0:
                raise asyncio.TimeoutError
            raw = await asyncio.wait_for(resp.aread(), timeout=remaining)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            raise GatewayTimeoutError("Upstream response body timed out") from None
        except httpx.HTTPError as e:
            raise UpstreamUnreachableError(
                "Upstream connection failed while reading response", details=type(e).__name__
            ) from e
        response = adapter.parse_response(raw, response_id, model)
        log.info(
            "Completion req_id=%s model=%s finish=%s prompt_tokens=%d completion_tokens=%d",
            ctx.req_id,
            model,
            response.finish_reason,
            response.usage.prompt_tokens,
            response.usage.completion_tokens,
        )
        return response

    async def _stream(
        self,
        ctx: RequestContext,
        resp: httpx.Response,
        transcoder: StreamTranscoder,
        deadline: float,
    ) -> AsyncGenerator[StreamItem, None]:
        """
        Pull upstream bytes only as fast as the consumer pulls items.

        A deadline or read failure mid-stream ends the stream with an error
        finish chunk; what was already emitted stays final.
        """
        loop = asyncio.get_running_loop()
        chunks = resp.aiter_bytes()
        failure: Optional[str] = None
        try:
            while not transcoder.closed:
                remaining = deadline - loop.time()
                try:
                    if remaining <= 0:
                        raise asyncio.TimeoutError
                    data = await asyncio.wait_for(chunks.__anext__(), timeout=remaining)
                except StopAsyncIteration:
                    break
                except (asyncio.TimeoutError, httpx.TimeoutException):
                    log.warning("Stream deadline exceeded req_id=%s model=%s", ctx.req_id, ctx.model)
                    failure = GatewayTimeoutError.kind
                    break
                except httpx.HTTPError as e:
                    log.warning(
                        "Upstream stream read failed req_id=%s model=%s err=%r",
                        ctx.req_id,
                        ctx.model,
                        e,
                    )
                    failure = UpstreamUnreachableError.kind
                    break
                for item in transcoder.feed(data):
                    yield self._settle(ctx, transcoder, item)

            if failure is not None:
                ctx.fail(failure)
                tail = transcoder.abort()
            else:
                tail = transcoder.finish()
            for item in tail:
                yield self._settle(ctx, transcoder, item)

            if transcoder.skipped_frames:
                log.info(
                    "Stream finished req_id=%s model=%s skipped_frames=%d",
                    ctx.req_id,
                    ctx.model,
                    transcoder.skipped_frames,
                )
        except (asyncio.CancelledError, GeneratorExit):
            if not ctx.terminal:
                ctx.fail(RequestCancelledError.kind)
                log.info("Stream cancelled by client req_id=%s model=%s", ctx.req_id, ctx.model)
            raise

    @staticmethod
    def _settle(ctx: RequestContext, transcoder: StreamTranscoder, item: StreamItem) -> StreamItem:
        """Settle the request state before the closing sentinel goes out."""
        if item is STREAM_DONE and not ctx.terminal:
            if transcoder.finish_reason == "error":
                ctx.fail("upstream_stream_error")
            else:
                ctx.transition(RequestState.CLOSED)
        return item

    # ------------------------------------------------------------------
    # Catalog views
    # ------------------------------------------------------------------

    async def list_models(
        self, authorization: Optional[str], trusted_email: Optional[str] = None
    ) -> Dict[str, Any]:
        identity, snapshot = await self.open_session(authorization, trusted_email)
        data = []
        for m in snapshot.models_for(identity):
            if not m.available:
                continue
            data.append(
                {
                    "id": m.name,
                    "object": "model",
                    "owned_by": m.provider,
                    "name": m.display_name or m.name,
                    "kind": m.kind.value,
                    "context_length": m.context_length,
                    "max_tokens": m.max_output_tokens,
                }
            )
        return {"object": "list", "data": data}

    async def credentials(
        self, authorization: Optional[str], trusted_email: Optional[str] = None
    ) -> Dict[str, Any]:
        identity, snapshot = await self.open_session(authorization, trusted_email)
        return self._resolver.resolve_all(identity, snapshot)

    async def diverse_models(
        self,
        body: Any,
        authorization: Optional[str],
        trusted_email: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Scoring endpoint: `{query_type, limit}` -> provider-diverse scored models."""
        identity, snapshot = await self.open_session(authorization, trusted_email)

        body = body if isinstance(body, dict) else {}
        query_type = body.get("query_type", Intent.CHAT.value)
        intent = Intent.parse(query_type) if isinstance(query_type, str) else None
        if intent is None:
            raise InvalidRequestError(
                "Invalid query_type: expected one of " + ", ".join(i.value for i in Intent)
            )
        limit = body.get("limit", self._config.diverse_default_limit)
        if not isinstance(limit, int) or isinstance(limit, bool) or limit <= 0:
            raise InvalidRequestError("Invalid limit: must be a positive integer")
        limit = min(limit, self._config.diverse_max_limit)

        entitled = snapshot.models_for(identity)
        if not entitled:
            return {"models": [], "message": "no_models"}

        result = select_diverse(entitled, intent, limit, threshold=self._config.score_threshold)
        if result.message == "no_image_models":
            return {
                "models": [],
                "message": "no_image_models",
                "query_type": intent.value,
                "user_message": NO_IMAGE_MODELS_MESSAGE,
            }
        log.info(
            "Diverse selection email=%s intent=%s limit=%d selected=%s",
            identity.email,
            intent.value,
            limit,
            [sm.entry.name for sm in result.models],
        )
        return {
            "query_type": intent.value,
            "total_available": result.total_available,
            "models": [sm.to_dict() for sm in result.models],
        }


async def _iterate(items: Iterable[StreamItem]) -> AsyncIterator[StreamItem]:
    for item in items:
        yield item
