"""Request gateway: admission, provider dispatch and usage accounting.

Every AI route runs the same admission sequence before any upstream call:
load the caller, gate the tier, check the daily quota, then resolve the
provider. Buffered routes then dispatch, account and persist; the streaming
route hands the admitted request to a :class:`StreamRelay`.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from . import pricing
from .accounting import Accounting, FeatureType, prompt_text
from .auth import CallerClaim
from .config import LoadedConfig, normalize_tier
from .errors import CallerNotFound, Forbidden, GatewayError, ProviderUnconfigured, QuotaExceeded, TierIneligible, UpstreamError
from .images import DecodedImage, ImageNormalizer, attach_image, decode_image_payload
from .metrics import MetricsLogger
from .providers import ProviderClientFactory
from .quota import Allowed, Denied, DenialReason, QuotaLedger, QuotaWindow, quota_status, seconds_until
from .registry import ProviderDescriptor, ProviderRegistry
from .relay import StreamOutcome, StreamRelay
from .store import RecordStore
from .types import AnalysisType, AnalyzeImageRequest, ChatRequest

logger = logging.getLogger(__name__)

DEFAULT_ANALYSIS_PROMPT = "What is in this image?"

ANALYSIS_SYSTEM_PROMPTS: dict[str, str] = {
    "general": "Analyze this image and provide a comprehensive description of what you see.",
    "code": (
        "Analyze this code screenshot. Identify the programming language, explain what the code "
        "does, and suggest any improvements."
    ),
    "design": (
        "Analyze this design/UI screenshot. Comment on the layout, color scheme, typography, "
        "and user experience aspects."
    ),
    "content": (
        "Extract and summarize the text content from this image. Format it clearly and identify "
        "key information."
    ),
}


def analysis_system_prompt(analysis_type: AnalysisType | str) -> str:
    return ANALYSIS_SYSTEM_PROMPTS.get(analysis_type, ANALYSIS_SYSTEM_PROMPTS["general"])


@dataclass(frozen=True)
class CallerContext:
    caller_id: str
    tier: str
    email: str | None
    role: str | None


@dataclass(frozen=True)
class GenerationParams:
    model: str
    temperature: float
    max_tokens: int


def _log_request_event(
    level: int,
    *,
    event: str,
    req_id: str,
    caller_id: str,
    provider: str | None,
    detail: str | None = None,
) -> None:
    provider_value = provider or "unknown"
    message = f"{event} req_id={req_id} caller={caller_id} provider={provider_value}"
    if detail:
        message = f"{message} detail={detail}"
    logger.log(level, message)


class RequestGateway:
    def __init__(
        self,
        *,
        store: RecordStore,
        ledger: QuotaLedger,
        registry: ProviderRegistry,
        clients: ProviderClientFactory,
        config: LoadedConfig,
        normalizer: ImageNormalizer | None = None,
        metrics: MetricsLogger | None = None,
        upgrade_url: str | None = None,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.registry = registry
        self.clients = clients
        self.config = config
        self.normalizer = normalizer or ImageNormalizer()
        self.metrics = metrics
        self.upgrade_url = upgrade_url

    # admission

    async def load_caller(self, claim: CallerClaim) -> CallerContext:
        caller = await self.store.get_caller(claim.caller_id)
        if caller is None:
            raise CallerNotFound("User not found")
        role = caller.role or claim.role
        return CallerContext(
            caller_id=caller.id,
            tier=normalize_tier(caller.subscription_tier, role),
            email=caller.email,
            role=role,
        )

    def _denial_error(self, decision: Denied) -> GatewayError:
        window = decision.window or QuotaWindow()
        status = quota_status(decision.tier, window, decision.limits, decision.reset_at)
        if decision.reason is DenialReason.NO_AI_ACCESS:
            extra: dict[str, Any] = {"quotaStatus": status}
            if self.upgrade_url:
                extra["upgradeUrl"] = self.upgrade_url
            return TierIneligible(
                "AI features require a Pro or Enterprise subscription", extra=extra
            )
        return QuotaExceeded(
            "Daily AI request limit reached",
            retry_after=seconds_until(decision.reset_at),
            extra={"quotaStatus": status},
        )

    async def require_admin(self, claim: CallerClaim) -> CallerContext:
        caller = await self.load_caller(claim)
        if (caller.role or "").lower() != "admin":
            logger.info(f"admin access denied caller={caller.caller_id}")
            raise Forbidden("Admin access required")
        return caller

    async def admit(self, caller: CallerContext) -> Allowed:
        decision = await self.ledger.check(caller.caller_id, caller.tier)
        if isinstance(decision, Denied):
            raise self._denial_error(decision)
        return decision

    async def resolve(self) -> ProviderDescriptor:
        descriptor = await self.registry.resolve_provider()
        if descriptor is None:
            raise ProviderUnconfigured("AI provider is not configured")
        return descriptor

    def generation_params(
        self,
        descriptor: ProviderDescriptor,
        *,
        model_hint: str | None,
        temperature: float | None,
        max_tokens: int | None,
        default_model: str | None = None,
        default_max_tokens: int | None = None,
    ) -> GenerationParams:
        defaults = self.config.defaults
        if descriptor.source == "tenant":
            model = descriptor.model
        else:
            model = model_hint or default_model or descriptor.model
        # tenant overrides win over caller preferences
        resolved_temperature = descriptor.temperature
        if resolved_temperature is None:
            resolved_temperature = temperature if temperature is not None else defaults.temperature
        resolved_max_tokens = descriptor.max_tokens
        if resolved_max_tokens is None:
            resolved_max_tokens = max_tokens or default_max_tokens or defaults.max_tokens
        return GenerationParams(
            model=model,
            temperature=float(resolved_temperature),
            max_tokens=int(resolved_max_tokens),
        )

    # accounting

    async def _persist(self, account: Accounting, caller_id: str, feature: FeatureType, req_id: str) -> None:
        try:
            await self.store.insert_usage(account.to_record(caller_id, feature))
        except (SQLAlchemyError, OSError):
            # soft failure: never surfaced to the caller
            logger.exception(f"usage persist failed req_id={req_id} caller={caller_id} feature={feature}")

    async def _write_metrics(
        self,
        *,
        req_id: str,
        feature: FeatureType,
        caller_id: str,
        provider: str | None,
        model: str | None,
        start: float,
        ok: bool,
        status: int,
        account: Accounting | None = None,
        error: str | None = None,
    ) -> None:
        if self.metrics is None:
            return
        record: dict[str, Any] = {
            "req_id": req_id,
            "ts": time.time(),
            "feature": feature,
            "caller": caller_id,
            "provider": provider,
            "model": model,
            "latency_ms": int((time.perf_counter() - start) * 1000),
            "ok": ok,
            "status": status,
            "input_tokens": account.input_tokens if account else 0,
            "output_tokens": account.output_tokens if account else 0,
            "total_tokens": account.total_tokens if account else 0,
            "cost": pricing.as_number(account.cost) if account else 0.0,
            "estimated": account.estimated if account else False,
            "partial": account.partial if account else False,
        }
        if error is not None:
            record["error"] = error
        try:
            await self.metrics.write(record)
        except OSError:
            logger.exception(f"metrics write failed req_id={req_id}")

    async def _prepare_messages(
        self, messages: list[dict[str, Any]], decoded: DecodedImage | None
    ) -> list[dict[str, Any]]:
        if decoded is None:
            return messages
        normalized = await self.normalizer.normalize_async(decoded)
        return attach_image(messages, normalized.data_url())

    async def _complete(
        self,
        *,
        caller: CallerContext,
        decision: Allowed,
        descriptor: ProviderDescriptor,
        params: GenerationParams,
        messages: list[dict[str, Any]],
        feature: FeatureType,
        req_id: str,
    ) -> tuple[str, Accounting, dict[str, Any]]:
        start = time.perf_counter()
        client = self.clients.client_for(descriptor)
        try:
            response = await client.chat(
                messages,
                model=params.model,
                temperature=params.temperature,
                max_tokens=params.max_tokens,
            )
        except UpstreamError as exc:
            _log_request_event(
                logging.ERROR,
                event=f"{feature} failure",
                req_id=req_id,
                caller_id=caller.caller_id,
                provider=descriptor.name,
                detail=exc.message,
            )
            await self._write_metrics(
                req_id=req_id,
                feature=feature,
                caller_id=caller.caller_id,
                provider=descriptor.name,
                model=params.model,
                start=start,
                ok=False,
                status=exc.status_code,
                error=exc.message,
            )
            raise
        content = response.content or ""
        account = Accounting.from_usage(
            params.model,
            response.usage,
            prompt=prompt_text(messages),
            completion=content,
        )
        await self._persist(account, caller.caller_id, feature, req_id)
        window = decision.window.plus(tokens=account.total_tokens, cost=account.cost)
        status = quota_status(decision.tier, window, decision.limits, decision.reset_at)
        _log_request_event(
            logging.INFO,
            event=f"{feature} success",
            req_id=req_id,
            caller_id=caller.caller_id,
            provider=descriptor.name,
        )
        await self._write_metrics(
            req_id=req_id,
            feature=feature,
            caller_id=caller.caller_id,
            provider=descriptor.name,
            model=params.model,
            start=start,
            ok=True,
            status=200,
            account=account,
        )
        return content, account, status

    # operations

    async def chat(self, claim: CallerClaim, request: ChatRequest, *, req_id: str) -> dict[str, Any]:
        caller = await self.load_caller(claim)
        messages = [message.model_dump(exclude_none=True) for message in request.messages]
        decoded = decode_image_payload(request.image) if request.image else None
        decision = await self.admit(caller)
        descriptor = await self.resolve()
        params = self.generation_params(
            descriptor,
            model_hint=request.model,
            temperature=request.temperature,
            max_tokens=request.max_tokens,
        )
        messages = await self._prepare_messages(messages, decoded)
        content, account, status = await self._complete(
            caller=caller,
            decision=decision,
            descriptor=descriptor,
            params=params,
            messages=messages,
            feature="chat",
            req_id=req_id,
        )
        return {
            "content": content,
            "model": params.model,
            "usage": account.usage_payload(),
            "cost": pricing.as_number(account.cost),
            "quotaStatus": status,
        }

    async def analyze_image(
        self, claim: CallerClaim, request: AnalyzeImageRequest, *, req_id: str
    ) -> dict[str, Any]:
        caller = await self.load_caller(claim)
        decoded = decode_image_payload(request.image)
        decision = await self.admit(caller)
        descriptor = await self.resolve()
        defaults = self.config.defaults
        params = self.generation_params(
            descriptor,
            model_hint=request.model,
            temperature=None,
            max_tokens=request.max_tokens,
            default_model=defaults.analysis_model,
            default_max_tokens=defaults.analysis_max_tokens,
        )
        normalized = await self.normalizer.normalize_async(decoded)
        messages = attach_image(
            [
                {"role": "system", "content": analysis_system_prompt(request.analysis_type)},
                {"role": "user", "content": request.prompt or DEFAULT_ANALYSIS_PROMPT},
            ],
            normalized.data_url(),
        )
        content, account, status = await self._complete(
            caller=caller,
            decision=decision,
            descriptor=descriptor,
            params=params,
            messages=messages,
            feature="image-analysis",
            req_id=req_id,
        )
        return {
            "analysis": content,
            "analysisType": request.analysis_type,
            "model": params.model,
            "usage": account.usage_payload(),
            "cost": pricing.as_number(account.cost),
            "quotaStatus": status,
        }

    async def open_stream(self, claim: CallerClaim, request: ChatRequest, *, req_id: str) -> StreamRelay:
        caller = await self.load_caller(claim)
        messages = [message.model_dump(exclude_none=True) for message in request.messages]
        decoded = decode_image_payload(request.image) if request.image else None
        decision = await self.admit(caller)
        descriptor = await self.resolve()
        params = self.generation_params(
            descriptor,
            model_hint=request.model,
            temperature=request.temperature,
            max_tokens=request.max_tokens,
        )
        messages = await self._prepare_messages(messages, decoded)
        start = time.perf_counter()

        async def finish(account: Accounting | None, outcome: StreamOutcome, error: str | None) -> None:
            if account is not None:
                await self._persist(account, caller.caller_id, "chat-stream", req_id)
            level = logging.INFO if outcome == "completed" else logging.WARNING
            _log_request_event(
                level,
                event=f"chat-stream {outcome}",
                req_id=req_id,
                caller_id=caller.caller_id,
                provider=descriptor.name,
                detail=error,
            )
            await self._write_metrics(
                req_id=req_id,
                feature="chat-stream",
                caller_id=caller.caller_id,
                provider=descriptor.name,
                model=params.model,
                start=start,
                ok=outcome == "completed",
                status=200 if outcome != "failed" else UpstreamError.status_code,
                account=account,
                error=error,
            )

        return StreamRelay(
            caller_id=caller.caller_id,
            decision=decision,
            client=self.clients.client_for(descriptor),
            messages=messages,
            model=params.model,
            temperature=params.temperature,
            max_tokens=params.max_tokens,
            prompt=prompt_text(messages),
            finish=finish,
        )

    async def quota(self, claim: CallerClaim) -> dict[str, Any]:
        caller = await self.load_caller(claim)
        return await self.ledger.status(caller.caller_id, caller.tier)

    async def provider_info(self) -> dict[str, Any]:
        descriptor = await self.resolve()
        return descriptor.public_view()
