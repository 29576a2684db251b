import json
import logging
import uuid
from typing import Any, TypeVar

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ValidationError

from .admin import ProviderAdmin
from .auth import CallerClaim, TokenVerifier, extract_token
from .config import load_config, load_settings
from .crypto import CredentialCipher
from .errors import GatewayError, MalformedRequest
from .gateway import RequestGateway
from .images import ImageNormalizer
from .metrics import MetricsLogger
from .providers import ProviderClientFactory
from .quota import QuotaLedger
from .registry import ProviderRegistry
from .relay import sse_stream
from .store import RecordStore
from .types import AnalyzeImageRequest, ChatRequest, ProviderConfigCreate, ProviderConfigUpdate

logger = logging.getLogger(__name__)

app = FastAPI(title="ai-gateway")

REQUEST_ID_HEADER = "x-gateway-request-id"
PROM_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"

settings = load_settings()
cfg = load_config(settings.config_dir)
store = RecordStore(settings.database_url)
cipher = CredentialCipher(settings.encryption_key)
verifier = TokenVerifier(settings.jwt_secret, settings.jwt_algorithm)
registry = ProviderRegistry(store, cipher, settings)
clients = ProviderClientFactory(
    timeout_s=settings.upstream_timeout_s,
    concurrency=settings.upstream_concurrency,
)
metrics = MetricsLogger(settings.metrics_dir)
gateway = RequestGateway(
    store=store,
    ledger=QuotaLedger(store, cfg),
    registry=registry,
    clients=clients,
    config=cfg,
    normalizer=ImageNormalizer(),
    metrics=metrics,
    upgrade_url=settings.upgrade_url,
)
provider_admin = ProviderAdmin(store=store, cipher=cipher, registry=registry, clients=clients)

if settings.cors_allow_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_allow_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.on_event("startup")
async def _open_store() -> None:
    if settings.create_tables:
        await store.create_all()
    logger.info(f"gateway started tiers={','.join(sorted(cfg.tiers))} config={cfg.source_path or 'defaults'}")


@app.on_event("shutdown")
async def _close_store() -> None:
    await gateway.clients.aclose()
    await store.dispose()


def _request_id(req: Request) -> str:
    req_id = getattr(req.state, "req_id", None)
    if req_id is None:
        req_id = str(uuid.uuid4())
        req.state.req_id = req_id
    return req_id


def _make_response_headers(*, req_id: str) -> dict[str, str]:
    return {REQUEST_ID_HEADER: req_id}


@app.exception_handler(GatewayError)
async def _gateway_error_handler(req: Request, exc: GatewayError) -> JSONResponse:
    req_id = _request_id(req)
    headers = _make_response_headers(req_id=req_id)
    if exc.retry_after is not None:
        headers["Retry-After"] = str(exc.retry_after)
    level = logging.ERROR if exc.status_code >= 500 else logging.INFO
    logger.log(
        level,
        f"request rejected req_id={req_id} path={req.url.path} status={exc.status_code} code={exc.code.value if exc.code else exc.error_type} detail={exc.message}",
    )
    return JSONResponse(exc.to_body(), status_code=exc.status_code, headers=headers)


def _authenticate(req: Request) -> CallerClaim:
    token = extract_token(req.headers.get("authorization"), req.cookies)
    return verifier.verify(token)


ModelT = TypeVar("ModelT", bound=BaseModel)


async def _parse_body(req: Request, model: type[ModelT]) -> ModelT:
    try:
        payload = await req.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise MalformedRequest("request body must be valid JSON") from exc
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        details = exc.errors(include_url=False, include_context=False, include_input=False)
        raise MalformedRequest("invalid request body", details=details) from exc


@app.get("/healthz")
async def healthz() -> dict[str, Any]:
    return {"status": "ok", "tiers": sorted(cfg.tiers)}


@app.post("/ai/chat")
async def ai_chat(req: Request) -> JSONResponse:
    req_id = _request_id(req)
    claim = _authenticate(req)
    body = await _parse_body(req, ChatRequest)
    result = await gateway.chat(claim, body, req_id=req_id)
    return JSONResponse(result, headers=_make_response_headers(req_id=req_id))


@app.post("/ai/chat-stream")
async def ai_chat_stream(req: Request) -> StreamingResponse:
    req_id = _request_id(req)
    claim = _authenticate(req)
    body = await _parse_body(req, ChatRequest)
    relay = await gateway.open_stream(claim, body, req_id=req_id)
    headers = _make_response_headers(req_id=req_id)
    headers["Cache-Control"] = "no-cache"
    return StreamingResponse(
        sse_stream(relay.frames(), req.is_disconnected),
        media_type="text/event-stream",
        headers=headers,
    )


@app.post("/ai/analyze-image")
async def ai_analyze_image(req: Request) -> JSONResponse:
    req_id = _request_id(req)
    claim = _authenticate(req)
    body = await _parse_body(req, AnalyzeImageRequest)
    result = await gateway.analyze_image(claim, body, req_id=req_id)
    return JSONResponse(result, headers=_make_response_headers(req_id=req_id))


@app.get("/ai/quota")
async def ai_quota(req: Request) -> JSONResponse:
    req_id = _request_id(req)
    claim = _authenticate(req)
    status = await gateway.quota(claim)
    return JSONResponse({"quotaStatus": status}, headers=_make_response_headers(req_id=req_id))


@app.get("/ai/config")
async def ai_config(req: Request) -> JSONResponse:
    req_id = _request_id(req)
    claim = _authenticate(req)
    await gateway.load_caller(claim)
    info = await gateway.provider_info()
    return JSONResponse({"provider": info}, headers=_make_response_headers(req_id=req_id))


@app.get("/admin/providers")
async def admin_list_providers(req: Request) -> JSONResponse:
    req_id = _request_id(req)
    await gateway.require_admin(_authenticate(req))
    configs = await provider_admin.list_configs()
    return JSONResponse({"configs": configs}, headers=_make_response_headers(req_id=req_id))


@app.post("/admin/providers")
async def admin_create_provider(req: Request) -> JSONResponse:
    req_id = _request_id(req)
    await gateway.require_admin(_authenticate(req))
    body = await _parse_body(req, ProviderConfigCreate)
    config = await provider_admin.create_config(body)
    return JSONResponse({"config": config}, status_code=201, headers=_make_response_headers(req_id=req_id))


@app.patch("/admin/providers/{config_id}")
async def admin_update_provider(config_id: str, req: Request) -> JSONResponse:
    req_id = _request_id(req)
    await gateway.require_admin(_authenticate(req))
    body = await _parse_body(req, ProviderConfigUpdate)
    config = await provider_admin.update_config(config_id, body)
    return JSONResponse({"config": config}, headers=_make_response_headers(req_id=req_id))


@app.delete("/admin/providers/{config_id}")
async def admin_delete_provider(config_id: str, req: Request) -> JSONResponse:
    req_id = _request_id(req)
    await gateway.require_admin(_authenticate(req))
    deleted = await provider_admin.delete_config(config_id)
    return JSONResponse(
        {"message": "Configuration deleted", "deletedConfig": deleted},
        headers=_make_response_headers(req_id=req_id),
    )


@app.post("/admin/providers/{config_id}/primary")
async def admin_set_primary(config_id: str, req: Request) -> JSONResponse:
    req_id = _request_id(req)
    await gateway.require_admin(_authenticate(req))
    config = await provider_admin.set_primary(config_id)
    return JSONResponse({"config": config}, headers=_make_response_headers(req_id=req_id))


@app.post("/admin/providers/{config_id}/test")
async def admin_test_provider(config_id: str, req: Request) -> JSONResponse:
    req_id = _request_id(req)
    await gateway.require_admin(_authenticate(req))
    report = await provider_admin.test_config(config_id)
    return JSONResponse(report, headers=_make_response_headers(req_id=req_id))


@app.get("/metrics")
async def metrics_endpoint(req: Request) -> Response:
    await gateway.require_admin(_authenticate(req))
    return Response(metrics.render_prometheus(), media_type=PROM_CONTENT_TYPE)

