import json
from typing import Any, Callable

import anyio
import httpx
import pytest

import src.gateway.rate_limiter as rate_limiter
from src.gateway.errors import UpstreamError, UpstreamTimeout
from src.gateway.providers import (
    ChatClient,
    ProviderClientFactory,
    _azure_resource_root,
    _openai_chat_url,
    is_azure_host,
    probe_provider,
)
from src.gateway.registry import ProviderDescriptor

MESSAGES = [{"role": "user", "content": "ping"}]


def make_descriptor(**overrides: Any) -> ProviderDescriptor:
    fields: dict[str, Any] = {
        "source": "global",
        "name": "openai",
        "endpoint": "https://api.openai.com",
        "api_key": "sk-secret",
        "model": "gpt-4",
    }
    fields.update(overrides)
    return ProviderDescriptor(**fields)


def azure_descriptor(**overrides: Any) -> ProviderDescriptor:
    fields: dict[str, Any] = {
        "source": "tenant",
        "name": "tenant",
        "endpoint": "https://acme.openai.azure.com/openai/deployments/old/chat/completions?api-version=1",
        "api_key": "azure-secret",
        "model": "gpt4-prod",
        "deployment": "gpt4-prod",
        "api_version": "2024-02-01",
    }
    fields.update(overrides)
    return make_descriptor(**fields)


def client_with(
    descriptor: ProviderDescriptor,
    handler: Callable[[httpx.Request], httpx.Response],
) -> tuple[ChatClient, ProviderClientFactory]:
    factory = ProviderClientFactory(transport=httpx.MockTransport(handler))
    return factory.client_for(descriptor), factory


def completion_body(content: str = "ok") -> dict[str, Any]:
    return {
        "model": "gpt-4-0613",
        "choices": [{"message": {"role": "assistant", "content": content}, "finish_reason": "stop"}],
        "usage": {"prompt_tokens": 5, "completion_tokens": 1, "total_tokens": 6},
    }


def sse_body(*events: Any) -> bytes:
    lines = []
    for event in events:
        data = event if isinstance(event, str) else json.dumps(event)
        lines.append(f"data: {data}\n\n")
    return "".join(lines).encode("utf-8")


def test_openai_chat_url_normalization() -> None:
    assert _openai_chat_url("https://api.openai.com") == "https://api.openai.com/v1/chat/completions"
    assert _openai_chat_url("https://api.openai.com/v1") == "https://api.openai.com/v1/chat/completions"
    assert _openai_chat_url("https://proxy.test/openai/chat") == "https://proxy.test/openai/chat/completions"
    assert (
        _openai_chat_url("https://example.ai/OpenAI/deployments/foo/Chat/Completions")
        == "https://example.ai/OpenAI/deployments/foo/Chat/Completions"
    )
    assert _openai_chat_url("http://localhost:8080") == "http://localhost:8080/chat/completions"


def test_azure_resource_root_strips_pasted_paths() -> None:
    assert (
        _azure_resource_root("https://acme.openai.azure.com/openai/deployments/x/chat/completions?api-version=1")
        == "https://acme.openai.azure.com"
    )
    assert _azure_resource_root("https://acme.openai.azure.com/") == "https://acme.openai.azure.com"


def test_is_azure_host() -> None:
    assert is_azure_host("https://acme.openai.azure.com/openai")
    assert is_azure_host("https://acme.cognitiveservices.azure.com")
    assert not is_azure_host("https://api.openai.com")
    assert not is_azure_host("https://openai.azure.com.evil.test")


@pytest.mark.anyio
async def test_azure_chat_request_shape() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=completion_body("hi there"))

    client, factory = client_with(azure_descriptor(), handler)
    try:
        response = await client.chat(MESSAGES, model="gpt4-prod", temperature=0.2, max_tokens=64)
    finally:
        await factory.aclose()

    assert len(seen) == 1
    request = seen[0]
    assert request.url.host == "acme.openai.azure.com"
    assert request.url.path == "/openai/deployments/gpt4-prod/chat/completions"
    assert request.url.params["api-version"] == "2024-02-01"
    assert request.headers["api-key"] == "azure-secret"
    assert "authorization" not in request.headers
    payload = json.loads(request.content)
    assert payload["temperature"] == pytest.approx(0.2)
    assert payload["max_tokens"] == 64
    assert payload["stream"] is False
    assert response.content == "hi there"
    assert response.finish_reason == "stop"
    assert response.usage is not None and response.usage.total_tokens == 6


@pytest.mark.anyio
async def test_openai_chat_uses_bearer_token() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=completion_body())

    client, factory = client_with(make_descriptor(), handler)
    try:
        response = await client.chat(MESSAGES, model="gpt-4", temperature=0.7, max_tokens=10)
    finally:
        await factory.aclose()

    assert str(seen[0].url) == "https://api.openai.com/v1/chat/completions"
    assert seen[0].headers["authorization"] == "Bearer sk-secret"
    assert response.model == "gpt-4-0613"


@pytest.mark.anyio
async def test_chat_without_usage_reports_none() -> None:
    body = completion_body()
    del body["usage"]

    client, factory = client_with(make_descriptor(), lambda request: httpx.Response(200, json=body))
    try:
        response = await client.chat(MESSAGES, model="gpt-4", temperature=0.7, max_tokens=10)
    finally:
        await factory.aclose()
    assert response.usage is None


@pytest.mark.anyio
async def test_rate_limited_upstream_maps_retry_after() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            429,
            headers={"Retry-After": "7"},
            json={"error": {"message": "slow down"}},
        )

    client, factory = client_with(make_descriptor(), handler)
    try:
        with pytest.raises(UpstreamError) as excinfo:
            await client.chat(MESSAGES, model="gpt-4", temperature=0.7, max_tokens=10)
    finally:
        await factory.aclose()
    assert excinfo.value.status_code == 502
    assert excinfo.value.upstream_status == 429
    assert excinfo.value.retry_after == 7
    assert excinfo.value.message == "slow down"


@pytest.mark.anyio
async def test_timeout_maps_to_upstream_timeout() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("too slow", request=request)

    client, factory = client_with(make_descriptor(), handler)
    try:
        with pytest.raises(UpstreamTimeout) as excinfo:
            await client.chat(MESSAGES, model="gpt-4", temperature=0.7, max_tokens=10)
    finally:
        await factory.aclose()
    assert excinfo.value.status_code == 504


@pytest.mark.anyio
async def test_error_body_with_success_status_is_upstream_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"error": {"message": "deployment not found"}})

    client, factory = client_with(make_descriptor(), handler)
    try:
        with pytest.raises(UpstreamError, match="deployment not found"):
            await client.chat(MESSAGES, model="gpt-4", temperature=0.7, max_tokens=10)
    finally:
        await factory.aclose()


@pytest.mark.anyio
async def test_stream_yields_content_and_usage() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            headers={"Content-Type": "text/event-stream"},
            content=sse_body(
                {"choices": [{"delta": {"role": "assistant"}}]},
                {"choices": [{"delta": {"content": "Hel"}}]},
                {"choices": [{"delta": {"content": "lo"}, "finish_reason": "stop"}]},
                {"choices": [], "usage": {"prompt_tokens": 5, "completion_tokens": 2, "total_tokens": 7}},
                "[DONE]",
            ),
        )

    client, factory = client_with(make_descriptor(), handler)
    try:
        chunks = [
            chunk
            async for chunk in client.chat_stream(MESSAGES, model="gpt-4", temperature=0.7, max_tokens=10)
        ]
    finally:
        await factory.aclose()

    payload = json.loads(seen[0].content)
    assert payload["stream"] is True
    assert payload["stream_options"] == {"include_usage": True}
    assert [chunk.delta_content for chunk in chunks if chunk.delta_content] == ["Hel", "lo"]
    assert chunks[-2].finish_reason == "stop"
    assert chunks[-1].usage is not None and chunks[-1].usage.total_tokens == 7
    assert set(chunks[-1].model_dump()) == {"delta_content", "finish_reason", "usage"}


@pytest.mark.anyio
async def test_azure_stream_omits_stream_options() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, content=sse_body({"choices": [{"delta": {"content": "x"}}]}, "[DONE]"))

    client, factory = client_with(azure_descriptor(), handler)
    try:
        chunks = [
            chunk
            async for chunk in client.chat_stream(MESSAGES, model="gpt4-prod", temperature=0.7, max_tokens=10)
        ]
    finally:
        await factory.aclose()
    assert "stream_options" not in json.loads(seen[0].content)
    assert [chunk.delta_content for chunk in chunks] == ["x"]


@pytest.mark.anyio
async def test_stream_error_event_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            content=sse_body(
                {"choices": [{"delta": {"content": "partial"}}]},
                {"error": {"message": "boom"}},
            ),
        )

    client, factory = client_with(make_descriptor(), handler)
    received: list[str] = []
    try:
        with pytest.raises(UpstreamError, match="boom"):
            async for chunk in client.chat_stream(MESSAGES, model="gpt-4", temperature=0.7, max_tokens=10):
                if chunk.delta_content:
                    received.append(chunk.delta_content)
    finally:
        await factory.aclose()
    assert received == ["partial"]


@pytest.mark.anyio
async def test_stream_http_error_reads_body() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"error": {"message": "upstream exploded"}})

    client, factory = client_with(make_descriptor(), handler)
    try:
        with pytest.raises(UpstreamError) as excinfo:
            async for _ in client.chat_stream(MESSAGES, model="gpt-4", temperature=0.7, max_tokens=10):
                pass
    finally:
        await factory.aclose()
    assert excinfo.value.upstream_status == 500
    assert excinfo.value.message == "upstream exploded"


@pytest.mark.anyio
async def test_probe_reports_healthy_and_unhealthy() -> None:
    def ok(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        assert payload["max_tokens"] == 5
        assert payload["messages"] == [{"role": "user", "content": "Hello"}]
        return httpx.Response(200, json=completion_body())

    client, factory = client_with(azure_descriptor(), ok)
    try:
        report = await probe_provider(client)
    finally:
        await factory.aclose()
    assert report.status == "healthy"
    assert "error" not in report.as_dict()

    client, factory = client_with(
        azure_descriptor(), lambda request: httpx.Response(401, json={"error": {"message": "bad key"}})
    )
    try:
        report = await probe_provider(client)
    finally:
        await factory.aclose()
    assert report.status == "unhealthy"
    assert report.as_dict()["error"] == "bad key"


def test_factory_reuses_client_per_connection() -> None:
    factory = ProviderClientFactory()
    descriptor = make_descriptor()
    client = factory.client_for(descriptor)
    assert factory.client_for(descriptor) is client
    assert factory.client_for(azure_descriptor()) is not client

    checked = make_descriptor(health_status="unhealthy", last_health_check="2026-01-01T00:00:00Z")
    assert factory.client_for(checked) is client
    assert client.descriptor == checked
    assert factory.client_for(make_descriptor(max_tokens=64, temperature=0.1)) is client
    assert len(factory._clients) == 2

    assert factory.client_for(make_descriptor(api_key="sk-rotated")) is not client
    assert factory.client_for(make_descriptor(rate_limit_rpm=10)) is not client
    assert len(factory._clients) == 4


def _busy_factory(**overrides: Any) -> tuple[ProviderClientFactory, ChatClient, list[httpx.Request]]:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=completion_body())

    factory = ProviderClientFactory(timeout_s=0.2, concurrency=1, transport=httpx.MockTransport(handler))
    return factory, factory.client_for(make_descriptor(**overrides)), seen


@pytest.mark.anyio
async def test_chat_times_out_waiting_for_busy_slot() -> None:
    factory, client, seen = _busy_factory()
    guard = factory.guards.get(client.descriptor.name, client.descriptor.rate_limit_rpm)
    try:
        with anyio.fail_after(5):
            async with guard:
                with pytest.raises(UpstreamTimeout) as excinfo:
                    await client.chat(MESSAGES, model="gpt-4", temperature=0.7, max_tokens=10)
            response = await client.chat(MESSAGES, model="gpt-4", temperature=0.7, max_tokens=10)
    finally:
        await factory.aclose()

    assert excinfo.value.status_code == 504
    assert response.content == "ok"
    assert len(seen) == 1


@pytest.mark.anyio
async def test_stream_times_out_while_other_stream_holds_slot() -> None:
    factory, client, seen = _busy_factory()
    guard = factory.guards.get(client.descriptor.name, client.descriptor.rate_limit_rpm)
    try:
        with anyio.fail_after(5):
            async with guard:
                with pytest.raises(UpstreamTimeout):
                    async for _ in client.chat_stream(MESSAGES, model="gpt-4", temperature=0.7, max_tokens=10):
                        pass
    finally:
        await factory.aclose()

    assert seen == []
    assert guard.sem.locked() is False


@pytest.mark.anyio
async def test_chat_times_out_when_minute_budget_is_spent(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(rate_limiter.time, "time", lambda: 1_800_000_030.0)
    factory, client, seen = _busy_factory(rate_limit_rpm=1)
    try:
        with anyio.fail_after(5):
            await client.chat(MESSAGES, model="gpt-4", temperature=0.7, max_tokens=10)
            with pytest.raises(UpstreamTimeout):
                await client.chat(MESSAGES, model="gpt-4", temperature=0.7, max_tokens=10)
    finally:
        await factory.aclose()

    assert len(seen) == 1
