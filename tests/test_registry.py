import dataclasses
import logging
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update

from src.gateway.config import load_settings
from src.gateway.crypto import CredentialCipher
from src.gateway.registry import ProviderRegistry
from src.gateway.store import ProviderConfigRow, RecordStore


@pytest.fixture
async def store(database_url: str):
    record_store = RecordStore(database_url)
    await record_store.create_all()
    try:
        yield record_store
    finally:
        await record_store.dispose()


@pytest.fixture
def cipher() -> CredentialCipher:
    return CredentialCipher("registry-test-secret")


def _settings(*, fallback_key: str | None = "sk-global"):
    return dataclasses.replace(load_settings(), fallback_api_key=fallback_key, fallback_model="gpt-4o")


async def _add_config(store: RecordStore, cipher: CredentialCipher, name: str, *, primary: bool = True, **extra):
    return await store.create_provider_config(
        name=name,
        endpoint="https://tenant.openai.azure.com",
        deployment_name=f"{name}-deployment",
        api_version="2024-02-01",
        encrypted_api_key=cipher.encrypt(f"key-{name}"),
        is_primary=primary,
        **extra,
    )


@pytest.mark.anyio
async def test_tenant_primary_wins_over_global(store: RecordStore, cipher: CredentialCipher) -> None:
    await _add_config(store, cipher, "tenant", temperature=0.2, max_tokens=256, rate_limit_rpm=30)
    registry = ProviderRegistry(store, cipher, _settings())
    descriptor = await registry.resolve_provider()
    assert descriptor is not None
    assert descriptor.source == "tenant"
    assert descriptor.api_key == "key-tenant"
    assert descriptor.deployment == "tenant-deployment"
    assert descriptor.model == "tenant-deployment"
    assert descriptor.api_version == "2024-02-01"
    assert descriptor.temperature == pytest.approx(0.2)
    assert descriptor.max_tokens == 256
    assert descriptor.rate_limit_rpm == 30
    assert descriptor.is_azure


@pytest.mark.anyio
async def test_global_fallback_when_no_primary(store: RecordStore, cipher: CredentialCipher) -> None:
    await _add_config(store, cipher, "secondary", primary=False)
    registry = ProviderRegistry(store, cipher, _settings())
    descriptor = await registry.resolve_provider()
    assert descriptor is not None
    assert descriptor.source == "global"
    assert descriptor.api_key == "sk-global"
    assert descriptor.model == "gpt-4o"
    assert not descriptor.is_azure


@pytest.mark.anyio
async def test_unconfigured_when_nothing_available(store: RecordStore, cipher: CredentialCipher) -> None:
    registry = ProviderRegistry(store, cipher, _settings(fallback_key=None))
    assert await registry.resolve_provider() is None


@pytest.mark.anyio
async def test_multiple_primaries_pick_latest_and_warn(
    store: RecordStore, cipher: CredentialCipher, caplog: pytest.LogCaptureFixture
) -> None:
    await _add_config(store, cipher, "older")
    newer = await _add_config(store, cipher, "newer", primary=False)
    async with store.engine.begin() as conn:
        await conn.execute(
            update(ProviderConfigRow)
            .where(ProviderConfigRow.id == newer.id)
            .values(
                is_primary=True,
                updated_at=datetime.now(timezone.utc).replace(tzinfo=None) + timedelta(seconds=5),
            )
        )
    registry = ProviderRegistry(store, cipher, _settings())
    with caplog.at_level(logging.WARNING, logger="src.gateway.registry"):
        descriptor = await registry.resolve_provider()
    assert descriptor is not None and descriptor.name == "newer"
    assert any("multiple primary provider configs" in record.getMessage() for record in caplog.records)


@pytest.mark.anyio
async def test_unreadable_key_falls_back_to_global(store: RecordStore, cipher: CredentialCipher) -> None:
    await _add_config(store, CredentialCipher("some-other-secret"), "rotated")
    registry = ProviderRegistry(store, cipher, _settings())
    descriptor = await registry.resolve_provider()
    assert descriptor is not None and descriptor.source == "global"


@pytest.mark.anyio
async def test_resolution_has_no_side_effects(store: RecordStore, cipher: CredentialCipher) -> None:
    config = await _add_config(store, cipher, "tenant")
    registry = ProviderRegistry(store, cipher, _settings())
    await registry.resolve_provider()
    await registry.resolve_provider()
    reloaded = await store.get_provider_config(config.id)
    assert reloaded is not None
    assert reloaded.updated_at == config.updated_at
    assert reloaded.health_status == config.health_status


@pytest.mark.anyio
async def test_cache_serves_until_invalidated(store: RecordStore, cipher: CredentialCipher) -> None:
    registry = ProviderRegistry(store, cipher, _settings(), cache_ttl_s=300)
    first = await registry.resolve_provider()
    assert first is not None and first.source == "global"
    await _add_config(store, cipher, "tenant")
    assert (await registry.resolve_provider()).source == "global"
    registry.invalidate()
    assert (await registry.resolve_provider()).source == "tenant"
