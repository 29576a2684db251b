"""Resolution of the effective upstream provider for a request.

An active, primary tenant configuration wins over the process-level
credential. Reads have no side effects; the optional cache is invalidated
explicitly by the admin write path.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Literal

from .config import GatewaySettings
from .crypto import CredentialCipher, CredentialError
from .store import ProviderConfigRecord, RecordStore

logger = logging.getLogger(__name__)

ProviderSource = Literal["tenant", "global"]

AZURE_HOST_SUFFIXES: tuple[str, ...] = (
    "openai.azure.com",
    "openai.azure.us",
    "openai.azure.cn",
    "cognitiveservices.azure.com",
    "cognitiveservices.azure.us",
    "cognitiveservices.azure.cn",
)


@dataclass(frozen=True)
class ProviderDescriptor:
    source: ProviderSource
    name: str
    endpoint: str
    api_key: str
    model: str
    deployment: str | None = None
    api_version: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None
    rate_limit_rpm: int | None = None
    config_id: str | None = None
    health_status: str | None = None
    last_health_check: str | None = None

    @property
    def is_azure(self) -> bool:
        return bool(self.deployment and self.api_version)

    def public_view(self) -> dict[str, object]:
        return {
            "name": self.name,
            "source": self.source,
            "model": self.model,
            "endpoint": self.endpoint,
            "deploymentName": self.deployment,
            "apiVersion": self.api_version,
            "maxTokens": self.max_tokens,
            "temperature": self.temperature,
            "healthStatus": self.health_status,
            "lastHealthCheck": self.last_health_check,
        }


def descriptor_from_config(config: ProviderConfigRecord, api_key: str) -> ProviderDescriptor:
    return ProviderDescriptor(
        source="tenant",
        name=config.name,
        endpoint=config.endpoint,
        api_key=api_key,
        model=config.deployment_name,
        deployment=config.deployment_name,
        api_version=config.api_version,
        max_tokens=config.max_tokens,
        temperature=config.temperature,
        rate_limit_rpm=config.rate_limit_rpm,
        config_id=config.id,
        health_status=config.health_status,
        last_health_check=config.last_health_check.isoformat() if config.last_health_check else None,
    )


class ProviderRegistry:
    def __init__(
        self,
        store: RecordStore,
        cipher: CredentialCipher,
        settings: GatewaySettings,
        *,
        cache_ttl_s: float | None = None,
    ) -> None:
        self.store = store
        self.cipher = cipher
        self.settings = settings
        self.cache_ttl_s = settings.provider_cache_ttl_s if cache_ttl_s is None else cache_ttl_s
        self._cached: tuple[float, ProviderDescriptor | None] | None = None

    def invalidate(self) -> None:
        self._cached = None

    def fallback_descriptor(self) -> ProviderDescriptor | None:
        if not self.settings.fallback_api_key:
            return None
        return ProviderDescriptor(
            source="global",
            name="openai",
            endpoint=self.settings.fallback_base_url,
            api_key=self.settings.fallback_api_key,
            model=self.settings.fallback_model,
        )

    async def resolve_provider(self) -> ProviderDescriptor | None:
        if self.cache_ttl_s > 0 and self._cached is not None:
            stored_at, descriptor = self._cached
            if time.monotonic() - stored_at < self.cache_ttl_s:
                return descriptor
        descriptor = await self._resolve_uncached()
        if self.cache_ttl_s > 0:
            self._cached = (time.monotonic(), descriptor)
        return descriptor

    async def _resolve_uncached(self) -> ProviderDescriptor | None:
        primaries = await self.store.primary_provider_configs()
        if len(primaries) > 1:
            active_ids = ",".join(config.id for config in primaries)
            logger.warning(
                f"multiple primary provider configs ids={active_ids} chosen={primaries[0].id}"
            )
        if primaries:
            chosen = primaries[0]
            try:
                api_key = self.cipher.decrypt(chosen.encrypted_api_key)
            except CredentialError as exc:
                logger.error(f"provider_config key unreadable id={chosen.id} name={chosen.name} error={exc}")
            else:
                return descriptor_from_config(chosen, api_key)
        return self.fallback_descriptor()
