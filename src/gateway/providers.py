from __future__ import annotations

import json
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, List
from urllib.parse import urlparse, urlunparse

import anyio
import httpx

from .errors import UpstreamError, UpstreamTimeout, upstream_error_from_exception
from .rate_limiter import Guard, ProviderGuards
from .registry import AZURE_HOST_SUFFIXES, ProviderDescriptor
from .types import ProviderChatResponse, ProviderStreamChunk, usage_from_payload

logger = logging.getLogger(__name__)

HEALTH_PROBE_MESSAGES: list[dict[str, Any]] = [{"role": "user", "content": "Hello"}]
DEGRADED_LATENCY_MS = 10_000


def _matches_suffix(host: str, suffix: str) -> bool:
    return host == suffix or host.endswith(f".{suffix}")


def is_azure_host(url: str) -> bool:
    hostname = (urlparse(url).hostname or "").lower()
    return any(_matches_suffix(hostname, suffix) for suffix in AZURE_HOST_SUFFIXES)


def _azure_resource_root(endpoint: str) -> str:
    parsed = urlparse(endpoint.strip())
    path = parsed.path or ""
    # admins often paste the full deployment URL
    marker = path.lower().find("/openai")
    if marker >= 0:
        path = path[:marker]
    rebuilt = parsed._replace(path=path.rstrip("/"), query="", fragment="")
    return urlunparse(rebuilt)


def _openai_chat_url(base_url: str) -> str:
    parsed = urlparse(base_url.strip())
    path_segments = [segment for segment in (parsed.path or "").split("/") if segment]
    lowered = [segment.lower() for segment in path_segments]
    if lowered[-2:] == ["chat", "completions"]:
        segments = path_segments
    elif lowered[-1:] == ["chat"]:
        segments = path_segments + ["completions"]
    else:
        segments = list(path_segments)
        hostname = (parsed.hostname or "").lower()
        if not segments and hostname.endswith("openai.com"):
            segments.append("v1")
        segments.extend(["chat", "completions"])
    return urlunparse(parsed._replace(path="/" + "/".join(segments)))


def _error_from_stream_payload(payload: dict[str, Any]) -> UpstreamError | None:
    error_field = payload.get("error")
    if error_field is None:
        return None
    if isinstance(error_field, dict):
        message = error_field.get("message")
        if isinstance(message, str) and message:
            return UpstreamError(message)
    return UpstreamError(str(error_field) or "provider stream error")


class ChatClient:
    """Chat-completions client for one resolved provider.

    Azure deployments are addressed as
    ``{resource}/openai/deployments/{deployment}/chat/completions?api-version=...``
    and authenticated with an ``api-key`` header; everything else is treated
    as an OpenAI-compatible base URL with a bearer token.
    """

    def __init__(
        self,
        descriptor: ProviderDescriptor,
        http: httpx.AsyncClient,
        guards: ProviderGuards | None = None,
        *,
        slot_timeout_s: float = 30.0,
    ) -> None:
        self.descriptor = descriptor
        self.http = http
        self.guards = guards
        self.slot_timeout_s = slot_timeout_s

    @property
    def name(self) -> str:
        return self.descriptor.name

    def _guard(self) -> Guard | None:
        if self.guards is None:
            return None
        return self.guards.get(self.descriptor.name, self.descriptor.rate_limit_rpm)

    @asynccontextmanager
    async def _slot(self) -> AsyncIterator[None]:
        """Hold the provider's rate and concurrency slot for one upstream call.

        Waiting for the slot counts against the same budget as the upstream
        timeout; a caller that cannot get one in time sees ``UpstreamTimeout``.
        """
        guard = self._guard()
        if guard is None:
            yield
            return
        try:
            with anyio.fail_after(self.slot_timeout_s):
                await guard.__aenter__()
        except TimeoutError as exc:
            logger.warning(f"provider slot wait timed out provider={self.name} timeout_s={self.slot_timeout_s}")
            raise UpstreamTimeout("upstream provider is busy, no request slot became free in time") from exc
        try:
            yield
        finally:
            await guard.__aexit__(None, None, None)

    def _build_chat_request(
        self,
        messages: List[dict[str, Any]],
        *,
        model: str,
        temperature: float,
        max_tokens: int,
        stream: bool,
    ) -> tuple[str, dict[str, str], dict[str, str], dict[str, Any]]:
        descriptor = self.descriptor
        headers: dict[str, str] = {"Content-Type": "application/json"}
        params: dict[str, str] = {}
        if descriptor.is_azure:
            root = _azure_resource_root(descriptor.endpoint)
            url = f"{root}/openai/deployments/{descriptor.deployment}/chat/completions"
            params["api-version"] = descriptor.api_version or ""
            headers["api-key"] = descriptor.api_key
        else:
            url = _openai_chat_url(descriptor.endpoint)
            if is_azure_host(url):
                headers["api-key"] = descriptor.api_key
            else:
                headers["Authorization"] = f"Bearer {descriptor.api_key}"
        payload: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "stream": stream,
        }
        if stream and not descriptor.is_azure:
            payload["stream_options"] = {"include_usage": True}
        return url, params, headers, payload

    async def chat(
        self,
        messages: List[dict[str, Any]],
        *,
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> ProviderChatResponse:
        url, params, headers, payload = self._build_chat_request(
            messages, model=model, temperature=temperature, max_tokens=max_tokens, stream=False
        )
        try:
            async with self._slot():
                r = await self.http.post(url, params=params, headers=headers, json=payload)
            r.raise_for_status()
            data = r.json()
        except httpx.HTTPError as exc:
            raise upstream_error_from_exception(exc) from exc
        except ValueError as exc:
            raise UpstreamError("provider returned a non-JSON body") from exc
        if not isinstance(data, dict):
            raise UpstreamError("provider returned an unexpected body")
        stream_error = _error_from_stream_payload(data)
        if stream_error is not None:
            raise stream_error
        raw_choices = data.get("choices") or []
        first_choice = raw_choices[0] if raw_choices and isinstance(raw_choices[0], dict) else {}
        message = first_choice.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        finish_reason = first_choice.get("finish_reason")
        return ProviderChatResponse(
            status_code=r.status_code,
            model=data.get("model") or model,
            content=content if isinstance(content, str) else None,
            finish_reason=finish_reason if isinstance(finish_reason, str) else None,
            usage=usage_from_payload(data.get("usage")),
        )

    @staticmethod
    def _map_stream_payload(payload: dict[str, Any]) -> ProviderStreamChunk | None:
        stream_error = _error_from_stream_payload(payload)
        if stream_error is not None:
            raise stream_error
        delta_content: str | None = None
        finish_reason: str | None = None
        choices = payload.get("choices")
        if isinstance(choices, list):
            for raw_choice in choices:
                if not isinstance(raw_choice, dict):
                    continue
                delta = raw_choice.get("delta")
                if isinstance(delta, dict):
                    text = delta.get("content")
                    if isinstance(text, str) and text and delta_content is None:
                        delta_content = text
                finish = raw_choice.get("finish_reason")
                if isinstance(finish, str) and finish_reason is None:
                    finish_reason = finish
        usage = usage_from_payload(payload.get("usage"))
        if delta_content is None and finish_reason is None and usage is None:
            return None
        return ProviderStreamChunk(
            delta_content=delta_content,
            finish_reason=finish_reason,
            usage=usage,
        )

    async def _iter_sse_payloads(self, response: httpx.Response) -> AsyncIterator[dict[str, Any]]:
        data_lines: list[str] = []
        async for raw_line in response.aiter_lines():
            line = raw_line.strip("\r")
            if line == "":
                if not data_lines:
                    continue
                data_text = "\n".join(data_lines)
                data_lines.clear()
                if data_text == "[DONE]":
                    return
                try:
                    payload_data = json.loads(data_text)
                except json.JSONDecodeError:
                    logger.warning(f"provider={self.name} skipped undecodable stream event")
                    continue
                if isinstance(payload_data, dict):
                    yield payload_data
                continue
            if line.startswith(":"):
                continue
            if line.startswith("data:"):
                data_lines.append(line[5:].lstrip())
        if data_lines:
            data_text = "\n".join(data_lines)
            if data_text and data_text != "[DONE]":
                try:
                    payload_data = json.loads(data_text)
                except json.JSONDecodeError:
                    return
                if isinstance(payload_data, dict):
                    yield payload_data

    async def chat_stream(
        self,
        messages: List[dict[str, Any]],
        *,
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> AsyncIterator[ProviderStreamChunk]:
        url, params, headers, payload = self._build_chat_request(
            messages, model=model, temperature=temperature, max_tokens=max_tokens, stream=True
        )
        async with self._slot():
            try:
                async with self.http.stream(
                    "POST", url, params=params, headers=headers, json=payload
                ) as response:
                    if response.is_error:
                        await response.aread()
                    response.raise_for_status()
                    async for payload_data in self._iter_sse_payloads(response):
                        chunk = self._map_stream_payload(payload_data)
                        if chunk is not None:
                            yield chunk
            except httpx.HTTPError as exc:
                raise upstream_error_from_exception(exc) from exc


@dataclass(frozen=True)
class HealthReport:
    status: str
    latency_ms: int
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"status": self.status, "latency": self.latency_ms}
        if self.error is not None:
            body["error"] = self.error
        return body


async def probe_provider(client: ChatClient) -> HealthReport:
    start = time.perf_counter()
    try:
        await client.chat(
            list(HEALTH_PROBE_MESSAGES),
            model=client.descriptor.model,
            temperature=0,
            max_tokens=5,
        )
    except UpstreamError as exc:
        latency_ms = int((time.perf_counter() - start) * 1000)
        logger.warning(f"provider health probe failed provider={client.name} error={exc.message}")
        return HealthReport(status="unhealthy", latency_ms=latency_ms, error=exc.message)
    latency_ms = int((time.perf_counter() - start) * 1000)
    status = "degraded" if latency_ms > DEGRADED_LATENCY_MS else "healthy"
    return HealthReport(status=status, latency_ms=latency_ms)


def connection_key(descriptor: ProviderDescriptor) -> tuple[Any, ...]:
    """Fields that decide where and how a client talks upstream.

    Health bookkeeping and generation defaults change without needing a new client.
    """
    return (
        descriptor.name,
        descriptor.endpoint,
        descriptor.deployment,
        descriptor.api_version,
        descriptor.api_key,
        descriptor.rate_limit_rpm,
    )


class ProviderClientFactory:
    """Builds chat clients over one shared connection pool."""

    def __init__(
        self,
        *,
        timeout_s: float = 30.0,
        concurrency: int = 16,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.timeout_s = timeout_s
        self.guards = ProviderGuards(concurrency)
        self._transport = transport
        self._http: httpx.AsyncClient | None = None
        self._clients: dict[tuple[Any, ...], ChatClient] = {}

    def _http_client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.timeout_s, transport=self._transport)
        return self._http

    def client_for(self, descriptor: ProviderDescriptor) -> ChatClient:
        key = connection_key(descriptor)
        client = self._clients.get(key)
        if client is None:
            client = ChatClient(descriptor, self._http_client(), self.guards, slot_timeout_s=self.timeout_s)
            self._clients[key] = client
        elif client.descriptor != descriptor:
            client.descriptor = descriptor
        return client

    async def aclose(self) -> None:
        self._clients.clear()
        if self._http is not None:
            await self._http.aclose()
            self._http = None
