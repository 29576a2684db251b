"""Administrative write path for tenant provider configurations."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.exc import IntegrityError

from .crypto import CredentialCipher, CredentialError
from .errors import Conflict, RecordNotFound
from .providers import HealthReport, ProviderClientFactory, probe_provider
from .registry import ProviderRegistry, descriptor_from_config
from .store import LastActiveConfig, RecordStore
from .types import ProviderConfigCreate, ProviderConfigUpdate

logger = logging.getLogger(__name__)


class ProviderAdmin:
    def __init__(
        self,
        *,
        store: RecordStore,
        cipher: CredentialCipher,
        registry: ProviderRegistry,
        clients: ProviderClientFactory,
    ) -> None:
        self.store = store
        self.cipher = cipher
        self.registry = registry
        self.clients = clients

    async def list_configs(self) -> list[dict[str, Any]]:
        return [config.public_view() for config in await self.store.list_provider_configs()]

    async def create_config(self, body: ProviderConfigCreate) -> dict[str, Any]:
        try:
            record = await self.store.create_provider_config(
                name=body.name,
                endpoint=body.endpoint,
                deployment_name=body.deployment_name,
                api_version=body.api_version,
                encrypted_api_key=self.cipher.encrypt(body.api_key),
                is_primary=body.is_primary,
                is_active=body.is_active,
                max_tokens=body.max_tokens,
                temperature=body.temperature,
                rate_limit_rpm=body.rate_limit_rpm,
                rate_limit_tpd=body.rate_limit_tpd,
            )
        except IntegrityError as exc:
            raise Conflict(f"provider config '{body.name}' already exists") from exc
        self.registry.invalidate()
        return record.public_view()

    async def set_primary(self, config_id: str) -> dict[str, Any]:
        record = await self.store.set_primary(config_id)
        if record is None:
            raise RecordNotFound("Provider configuration not found")
        self.registry.invalidate()
        return record.public_view()

    async def update_config(self, config_id: str, body: ProviderConfigUpdate) -> dict[str, Any]:
        changes = body.changes()
        if "api_key" in changes:
            changes["api_key"] = self.cipher.encrypt(changes["api_key"])
        try:
            record = await self.store.update_provider_config(config_id, **changes)
        except IntegrityError as exc:
            raise Conflict(f"provider config '{body.name}' already exists") from exc
        if record is None:
            raise RecordNotFound("Provider configuration not found")
        self.registry.invalidate()
        return record.public_view()

    async def delete_config(self, config_id: str) -> dict[str, Any]:
        try:
            record = await self.store.delete_provider_config(config_id)
        except LastActiveConfig as exc:
            raise Conflict("Cannot delete the only active configuration") from exc
        if record is None:
            raise RecordNotFound("Provider configuration not found")
        self.registry.invalidate()
        return {"id": record.id, "name": record.name}

    async def test_config(self, config_id: str) -> dict[str, Any]:
        config = await self.store.get_provider_config(config_id)
        if config is None:
            raise RecordNotFound("Provider configuration not found")
        try:
            api_key = self.cipher.decrypt(config.encrypted_api_key)
        except CredentialError as exc:
            logger.warning(f"provider health test skipped id={config.id} error={exc}")
            report = HealthReport(status="unconfigured", latency_ms=0, error=str(exc))
        else:
            client = self.clients.client_for(descriptor_from_config(config, api_key))
            report = await probe_provider(client)
        await self.store.record_health_check(
            config.id, report.status, checked_at=datetime.now(timezone.utc)
        )
        self.registry.invalidate()
        logger.info(
            f"provider health test id={config.id} name={config.name} status={report.status} latency_ms={report.latency_ms}"
        )
        body = report.as_dict()
        body["id"] = config.id
        return body
