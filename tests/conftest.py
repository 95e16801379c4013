"""
Pytest configuration and shared fixtures.

This file is automatically loaded by pytest and provides:
- Test environment setup (the app loads config at import time)
- The shared catalog snapshot and upstream mocks
"""

import json
import os
import sys
from pathlib import Path
from typing import Callable, List

import httpx
import pytest

# Add parent directory to Python path so tests can import project modules
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

FIXTURES = Path(__file__).parent / "fixtures"
CATALOG_PATH = FIXTURES / "catalog.json"

# Ensure test environment variables are set early enough (during test collection),
# because the app loads config at import time.
os.environ.setdefault("GATEWAY_CATALOG_PATH", str(CATALOG_PATH))
os.environ.setdefault("LOG_LEVEL", "DEBUG")
os.environ.setdefault("LOG_PATH", "/tmp/model_gateway_test.log")
os.environ.setdefault("LOG_COLOR", "false")
os.environ.setdefault("TRUST_IDENTITY_HEADER", "true")
os.environ.setdefault(
    "GATEWAY_VAULT_KEY", "000102030405060708090a0b0c0d0e0f101112131415161718191a1b1c1d1e1f"
)

ALICE = {"Authorization": "Bearer tok-alice"}
BOB = {"Authorization": "Bearer tok-bob"}


@pytest.fixture(scope="session")
def project_root_path():
    """Get project root path."""
    return project_root


@pytest.fixture
def catalog_data() -> dict:
    """A fresh, mutable copy of the fixture snapshot."""
    return json.loads(CATALOG_PATH.read_text(encoding="utf-8"))


@pytest.fixture
def snapshot(catalog_data):
    from catalog import CatalogSnapshot

    return CatalogSnapshot.from_dict(catalog_data)


@pytest.fixture
def alice(snapshot):
    from auth import Authenticator

    return Authenticator().authenticate("Bearer tok-alice", None, snapshot)


class UpstreamRecorder:
    """Collects the requests a MockTransport handler sees and tracks client closes."""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]) -> None:
        self._handler = handler
        self.requests: List[httpx.Request] = []
        self.clients: List[httpx.AsyncClient] = []

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self._handler(request)

    def factory(self, timeout_s: float) -> httpx.AsyncClient:
        client = httpx.AsyncClient(transport=httpx.MockTransport(self.handle))
        self.clients.append(client)
        return client

    @property
    def last_json(self) -> dict:
        return json.loads(self.requests[-1].content)

    @property
    def all_closed(self) -> bool:
        return all(c.is_closed for c in self.clients)


@pytest.fixture
def make_upstream() -> Callable[..., UpstreamRecorder]:
    return UpstreamRecorder


@pytest.fixture
def install_upstream(monkeypatch):
    """Swap the app's orchestrator for one whose upstream is a MockTransport handler."""
    import gateway_service
    from orchestrator import GatewayOrchestrator

    def install(handler: Callable[[httpx.Request], httpx.Response]) -> UpstreamRecorder:
        recorder = UpstreamRecorder(handler)
        monkeypatch.setattr(
            gateway_service,
            "orchestrator",
            GatewayOrchestrator(gateway_service.config, client_factory=recorder.factory),
        )
        return recorder

    return install
