"""Pytest configuration: project importability and shared gateway fixtures."""

from __future__ import annotations

import importlib
import sys
import time
from pathlib import Path
from types import ModuleType
from typing import Any, Awaitable, Callable

import anyio
import httpx
import jwt
import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
ROOT_STR = str(ROOT_DIR)
if ROOT_STR not in sys.path:
    sys.path.insert(0, ROOT_STR)

from src.gateway.providers import ProviderClientFactory  # noqa: E402
from src.gateway.store import RecordStore  # noqa: E402

JWT_SECRET = "test-jwt-secret"
ENCRYPTION_SECRET = "test-encryption-secret"
FALLBACK_KEY = "sk-test-fallback"


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'gateway.db'}"


@pytest.fixture
def gateway_env(tmp_path: Path, database_url: str, monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    env = {
        "GATEWAY_DATABASE_URL": database_url,
        "GATEWAY_JWT_SECRET": JWT_SECRET,
        "GATEWAY_ENCRYPTION_KEY": ENCRYPTION_SECRET,
        "OPENAI_API_KEY": FALLBACK_KEY,
        "GATEWAY_CONFIG_DIR": str(config_dir),
        "GATEWAY_METRICS_DIR": str(tmp_path / "metrics"),
        "GATEWAY_UPGRADE_URL": "https://example.test/pricing",
    }
    for name, value in env.items():
        monkeypatch.setenv(name, value)
    for name in ("GATEWAY_FALLBACK_MODEL", "GATEWAY_FALLBACK_BASE_URL", "GATEWAY_PROVIDER_CACHE_TTL_S"):
        monkeypatch.delenv(name, raising=False)
    return env


@pytest.fixture
def run_store(database_url: str) -> Callable[[Callable[[RecordStore], Awaitable[Any]]], Any]:
    """Run a coroutine against a private store on the test database."""

    def _run(fn: Callable[[RecordStore], Awaitable[Any]]) -> Any:
        async def _main() -> Any:
            store = RecordStore(database_url)
            try:
                await store.create_all()
                return await fn(store)
            finally:
                await store.dispose()

        return anyio.run(_main)

    return _run


def make_token(sub: str, *, role: str | None = None, secret: str = JWT_SECRET, expires_in: int = 3600) -> str:
    claims: dict[str, Any] = {"sub": sub, "exp": int(time.time()) + expires_in}
    if role is not None:
        claims["role"] = role
    return jwt.encode(claims, secret, algorithm="HS256")


def load_server() -> ModuleType:
    module_name = "src.gateway.server"
    sys.modules.pop(module_name, None)
    importlib.invalidate_caches()
    return importlib.import_module(module_name)


@pytest.fixture
def token_for() -> Callable[..., str]:
    return make_token


@pytest.fixture
def server(gateway_env: dict[str, str]) -> ModuleType:
    return load_server()


def install_upstream(server_module: ModuleType, handler: Callable[[httpx.Request], httpx.Response]) -> list[httpx.Request]:
    """Route every upstream call of a loaded server through ``handler``."""
    seen: list[httpx.Request] = []

    def _recording(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    factory = ProviderClientFactory(transport=httpx.MockTransport(_recording))
    server_module.gateway.clients = factory
    server_module.provider_admin.clients = factory
    return seen


@pytest.fixture
def seed_caller(run_store: Callable[..., Any]) -> Callable[..., Any]:
    def _seed(caller_id: str, *, tier: str = "pro", role: str = "user") -> Any:
        return run_store(
            lambda store: store.create_caller(
                f"{caller_id}@example.test", subscription_tier=tier, role=role, caller_id=caller_id
            )
        )

    return _seed
