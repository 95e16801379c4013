"""
Model gateway HTTP service.

One canonical chat-completion API in front of OpenAI-compatible, Anthropic,
Gemini and Cohere upstreams, plus the model listing, scoring and credential
resolution endpoints used by the dashboard.
"""

from __future__ import annotations

import contextlib
import json
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse

from config import load_config
from errors import GatewayError, InvalidRequestError
from logger import setup_frame_logging, setup_logging
from models import CanonicalChatResponse
from orchestrator import GatewayOrchestrator
from sse_handler import StreamItem, encode_stream_item
from utils import dump_config, load_env_files

# Load environment
load_env_files()

# Load configuration
config = load_config()
config.validate()

# Initialize logging
log = setup_logging(config.log_path)
setup_frame_logging(config.debug_stream_frames, config.debug_stream_frames_log_path)
dump_config(config)

orchestrator = GatewayOrchestrator(config)

SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Startup/shutdown hooks. The gateway holds no connections between requests."""
    log.info("Model gateway starting port=%s", config.port)
    yield
    log.info("Model gateway stopped")


app = FastAPI(
    title="model-gateway",
    version="0.3.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _get_request_id(request: Request) -> str:
    cached = getattr(request.state, "req_id", None)
    if cached:
        return cached
    req_id = (
        (request.headers.get("x-request-id") or "").strip()
        or (request.headers.get("x-correlation-id") or "").strip()
        or (request.headers.get("x-trace-id") or "").strip()
        or uuid.uuid4().hex
    )
    request.state.req_id = req_id
    return req_id


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_envelope(),
        headers={"x-request-id": _get_request_id(request)},
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    log.exception("Unhandled error req_id=%s path=%s", _get_request_id(request), request.url.path)
    return JSONResponse(
        status_code=500,
        content={"error": "internal_error"},
        headers={"x-request-id": _get_request_id(request)},
    )


async def _read_json_body(request: Request, *, required: bool = True) -> Any:
    """Size-guarded JSON body. Oversized -> 413, malformed -> 400."""
    cl = request.headers.get("content-length")
    if cl:
        try:
            n = int(cl)
        except ValueError:
            raise InvalidRequestError(f"Invalid Content-Length header: {cl!r}") from None
        if n < 0:
            raise InvalidRequestError("Invalid Content-Length: must be non-negative")
        if n > config.max_request_bytes:
            raise InvalidRequestError(
                f"Request too large: {n} bytes (max {config.max_request_bytes})",
                status_code=413,
            )

    raw = await request.body()
    if len(raw) > config.max_request_bytes:
        raise InvalidRequestError(
            f"Request too large: {len(raw)} bytes (max {config.max_request_bytes})",
            status_code=413,
        )
    if not raw.strip():
        if required:
            raise InvalidRequestError("Invalid JSON body: empty")
        return {}
    try:
        body = json.loads(raw)
    except ValueError:
        raise InvalidRequestError("Invalid JSON body") from None
    if not isinstance(body, dict):
        raise InvalidRequestError("Invalid JSON body: expected object")
    return body


async def _sse_body(stream: AsyncIterator[StreamItem], req_id: str) -> AsyncIterator[bytes]:
    created = int(time.time())
    try:
        async for item in stream:
            yield encode_stream_item(item, created)
    finally:
        aclose = getattr(stream, "aclose", None)
        if aclose is not None:
            with contextlib.suppress(Exception):
                await aclose()
        log.debug("SSE response finished req_id=%s", req_id)


@app.get("/healthz")
async def healthz() -> Dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}


@app.get("/v1/models")
async def v1_models(
    request: Request,
    authorization: Optional[str] = Header(default=None),
    x_caller_email: Optional[str] = Header(default=None),
) -> Dict[str, Any]:
    """OpenAI-style list of the caller's available models."""
    _get_request_id(request)
    return await orchestrator.list_models(authorization, x_caller_email)


@app.get("/v1/credentials")
async def v1_credentials(
    request: Request,
    authorization: Optional[str] = Header(default=None),
    x_caller_email: Optional[str] = Header(default=None),
) -> Dict[str, Any]:
    """Per-model resolved routes (keys masked) and the caller's catalog entries."""
    _get_request_id(request)
    return await orchestrator.credentials(authorization, x_caller_email)


@app.post("/v1/models/diverse")
async def v1_models_diverse(
    request: Request,
    authorization: Optional[str] = Header(default=None),
    x_caller_email: Optional[str] = Header(default=None),
) -> Dict[str, Any]:
    """Provider-diverse scored models for a query intent."""
    _get_request_id(request)
    body = await _read_json_body(request, required=False)
    return await orchestrator.diverse_models(body, authorization, x_caller_email)


@app.post("/v1/chat/completions")
async def v1_chat_completions(
    request: Request,
    authorization: Optional[str] = Header(default=None),
    x_caller_email: Optional[str] = Header(default=None),
    x_request_timeout: Optional[str] = Header(default=None),
) -> Response:
    """Handle canonical chat completion requests."""
    req_id = _get_request_id(request)
    body = await _read_json_body(request)
    timeout_s = orchestrator.request_timeout(x_request_timeout)

    client_ip = request.client.host if request.client else "unknown"
    log.info(
        "Incoming chat req_id=%s from=%s model=%r stream=%s",
        req_id,
        client_ip,
        body.get("model"),
        body.get("stream", False),
    )

    result = await orchestrator.chat(
        body,
        authorization=authorization,
        trusted_email=x_caller_email,
        req_id=req_id,
        timeout_s=timeout_s,
    )
    if isinstance(result, CanonicalChatResponse):
        return JSONResponse(content=result.to_dict(), headers={"x-request-id": req_id})

    return StreamingResponse(
        _sse_body(result, req_id),
        media_type="text/event-stream",
        headers={**SSE_HEADERS, "x-request-id": req_id},
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=config.port, reload=False)
