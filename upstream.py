"""Upstream provider HTTP communication."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Optional

import httpx

from adapters import UpstreamRequest
from config import AppConfig

log = logging.getLogger("model_gateway")

ClientFactory = Callable[[float], httpx.AsyncClient]


class UpstreamClient:
    """Send built provider requests. Never retries; status handling belongs to the caller."""

    def __init__(self, config: AppConfig, client_factory: Optional[ClientFactory] = None) -> None:
        self._config = config
        self._client_factory = client_factory

    def get_proxy_url(self) -> str | None:
        """
        Get proxy URL for httpx AsyncClient.

        HTTPS proxy is preferred (provider APIs are HTTPS), then HTTP proxy, else None.
        """
        if self._config.https_proxy:
            log.debug("HTTPS proxy configured: %s", self._config.https_proxy)
            return self._config.https_proxy
        if self._config.http_proxy:
            log.debug("HTTP proxy configured: %s", self._config.http_proxy)
            return self._config.http_proxy
        return None

    def create_client(self, timeout_s: float) -> httpx.AsyncClient:
        """
        One client per gateway request, closed when the request ends.

        Read timeout is left unbounded here; the orchestrator enforces the
        per-request deadline itself so streaming reads can be cut precisely.
        """
        if self._client_factory is not None:
            return self._client_factory(timeout_s)
        return httpx.AsyncClient(
            timeout=httpx.Timeout(
                connect=min(self._config.connect_timeout_s, timeout_s),
                read=None,
                write=timeout_s,
                pool=timeout_s,
            ),
            proxy=self.get_proxy_url(),
        )

    async def send(
        self,
        client: httpx.AsyncClient,
        upstream: UpstreamRequest,
        *,
        req_id: str,
        provider: str,
    ) -> httpx.Response:
        """
        Send the provider request.

        Streaming requests are sent with stream=True so the body is never buffered.
        Query parameters (which may hold the API key) are not logged.
        """
        t0 = time.time()
        req = client.build_request(
            "POST",
            upstream.url,
            headers=upstream.headers,
            params=upstream.params or None,
            json=upstream.body,
        )
        resp = await client.send(req, stream=True)

        dt = (time.time() - t0) * 1000
        log.info(
            "Upstream call req_id=%s provider=%s url=%s status=%s ms=%.1f",
            req_id,
            provider,
            upstream.url,
            resp.status_code,
            dt,
        )
        if not (200 <= resp.status_code < 300):
            log.warning(
                "Upstream error req_id=%s provider=%s status=%s content-type=%s",
                req_id,
                provider,
                resp.status_code,
                resp.headers.get("content-type", ""),
            )
        return resp

    @staticmethod
    async def read_error_body(resp: httpx.Response, timeout_s: float = 5.0) -> str:
        """Best-effort: read the whole error body without risking a hang."""
        try:
            raw = await asyncio.wait_for(resp.aread(), timeout=timeout_s)
        except (asyncio.TimeoutError, httpx.HTTPError):
            return ""
        return raw.decode("utf-8", errors="replace")
