"""
Pytest configuration and fixtures for converse tests.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Callable, Generator
from unittest.mock import patch
from urllib.parse import parse_qs

import httpx
import pytest
from fastapi.testclient import TestClient

from converse.api.app import create_app
from converse.auth import Authenticator
from converse.backend.client import BackendClient
from converse.cache.kv_cache import InMemoryKVCache
from converse.cache.service import CacheService
from converse.config import Settings, clear_settings_cache

BACKEND_URL = "http://backend.test"
INTROSPECT_URL = "http://auth.test/oauth/introspect"
GOOD_TOKEN = "good-token"
AUTH_HEADERS = {"Authorization": f"Bearer {GOOD_TOKEN}"}


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class BackendStub:
    """Answers backend query RPCs from a path -> value table and records calls."""

    def __init__(self) -> None:
        self.values: dict[str, Any] = {
            "user:getCurrent": {"_id": "u1", "name": "Ada"},
        }
        self.calls: list[dict[str, Any]] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        path = payload["path"]
        self.calls.append(
            {
                "path": path,
                "args": payload["args"],
                "authorization": request.headers.get("authorization"),
            }
        )
        if path not in self.values:
            return httpx.Response(
                200, json={"status": "error", "errorMessage": f"No stub for {path}"}
            )
        value = self.values[path]
        if callable(value):
            value = value(payload["args"])
        return httpx.Response(200, json={"status": "success", "value": value})

    def count(self, path: str) -> int:
        return sum(1 for call in self.calls if call["path"] == path)


def introspection_handler(request: httpx.Request) -> httpx.Response:
    """Identity provider stub: only GOOD_TOKEN is active."""
    form = parse_qs(request.content.decode())
    if form.get("token") == [GOOD_TOKEN]:
        return httpx.Response(200, json={"active": True, "sub": "auth|ada"})
    return httpx.Response(200, json={"active": False})


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test outputs."""
    return tmp_path


@pytest.fixture
def mock_env_vars() -> Generator[dict[str, str], None, None]:
    """Provide mock environment variables for testing."""
    env_vars = {
        "BACKEND_URL": BACKEND_URL,
        "BACKEND_DEPLOY_KEY": "prod:deploy-key-1234567890",
        "AUTH_INTROSPECT_URL": INTROSPECT_URL,
        "AUTH_CLIENT_SECRET": "client-secret-abcdef",
        "CACHE_BACKEND": "memory",
        "REDIS_URL": "",
        "WEBHOOK_SECRET": "",
        "CACHE_DIR": ".test_cache",
        "LOG_LEVEL": "DEBUG",
    }

    with patch.dict(os.environ, env_vars, clear=False):
        clear_settings_cache()
        yield env_vars


@pytest.fixture
def mock_settings(mock_env_vars: dict[str, str], temp_dir: Path) -> Generator[Settings, None, None]:
    """Provide a Settings instance with mock configuration.

    Uses temp_dir for the cache directory.
    """
    with patch.dict(os.environ, {"CACHE_DIR": str(temp_dir / "cache")}):
        clear_settings_cache()
        from converse.config import get_settings

        settings = get_settings()
        settings.ensure_directories()
        yield settings
        clear_settings_cache()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_store(clock: FakeClock) -> InMemoryKVCache:
    return InMemoryKVCache(clock=clock)


@pytest.fixture
def cache_service(memory_store: InMemoryKVCache) -> CacheService:
    return CacheService(memory_store)


@pytest.fixture
def backend_stub() -> BackendStub:
    return BackendStub()


@pytest.fixture
def backend_client(backend_stub: BackendStub) -> BackendClient:
    return BackendClient(BACKEND_URL, transport=httpx.MockTransport(backend_stub.handler))


@pytest.fixture
def authenticator() -> Authenticator:
    return Authenticator(INTROSPECT_URL, transport=httpx.MockTransport(introspection_handler))


@pytest.fixture
def make_client(
    mock_settings: Settings,
    backend_client: BackendClient,
    authenticator: Authenticator,
) -> Generator[Callable[..., TestClient], None, None]:
    """Build a TestClient around create_app with injected collaborators."""
    clients: list[TestClient] = []

    def factory(cache: CacheService, settings: Settings | None = None) -> TestClient:
        app = create_app(
            settings or mock_settings,
            cache=cache,
            backend=backend_client,
            authenticator=authenticator,
        )
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client

    yield factory

    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def client(make_client: Callable[..., TestClient], cache_service: CacheService) -> TestClient:
    return make_client(cache_service)


@pytest.fixture(autouse=True)
def reset_settings_cache() -> Generator[None, None, None]:
    """Automatically reset settings cache before and after each test."""
    clear_settings_cache()
    yield
    clear_settings_cache()
