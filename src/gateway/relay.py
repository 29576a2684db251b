"""Streaming relay between one upstream chat stream and one caller.

``StreamRelay.frames()`` yields typed frames: one quota frame, the content
deltas in provider order, then exactly one done or error frame. Transport
adapters such as ``sse_stream`` serialize them. Usage is billed once the
frame sequence ends, for completed streams and for streams that delivered
any content before failing or being abandoned by the caller.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Literal, Union

import anyio

from . import pricing
from .accounting import Accounting
from .errors import UpstreamError, upstream_error_from_exception
from .providers import ChatClient
from .quota import Allowed, quota_status

logger = logging.getLogger(__name__)

StreamOutcome = Literal["completed", "failed", "cancelled"]
FinishCallback = Callable[[Union[Accounting, None], StreamOutcome, Union[str, None]], Awaitable[None]]

DONE_SENTINEL = b"data: [DONE]\n\n"


@dataclass(frozen=True)
class QuotaFrame:
    quota_status: dict[str, Any]

    def payload(self) -> dict[str, Any]:
        return {"type": "quota", "quotaStatus": self.quota_status}


@dataclass(frozen=True)
class ContentFrame:
    content: str

    def payload(self) -> dict[str, Any]:
        return {"type": "content", "content": self.content}


@dataclass(frozen=True)
class DoneFrame:
    usage: dict[str, Any]
    cost: float
    quota_status: dict[str, Any]
    finish_reason: str | None = None

    def payload(self) -> dict[str, Any]:
        return {
            "type": "done",
            "usage": self.usage,
            "cost": self.cost,
            "finishReason": self.finish_reason,
            "quotaStatus": self.quota_status,
        }


@dataclass(frozen=True)
class ErrorFrame:
    message: str
    code: str

    def payload(self) -> dict[str, Any]:
        return {"type": "error", "error": self.message, "code": self.code}


Frame = Union[QuotaFrame, ContentFrame, DoneFrame, ErrorFrame]


class StreamRelay:
    def __init__(
        self,
        *,
        caller_id: str,
        decision: Allowed,
        client: ChatClient,
        messages: list[dict[str, Any]],
        model: str,
        temperature: float,
        max_tokens: int,
        prompt: str,
        finish: FinishCallback,
    ) -> None:
        self.caller_id = caller_id
        self.decision = decision
        self.client = client
        self.messages = messages
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.prompt = prompt
        self._finish = finish
        self._consumed = False

    def _status_after(self, account: Accounting) -> dict[str, Any]:
        window = self.decision.window.plus(tokens=account.total_tokens, cost=account.cost)
        return quota_status(self.decision.tier, window, self.decision.limits, self.decision.reset_at)

    async def frames(self) -> AsyncIterator[Frame]:
        if self._consumed:
            raise RuntimeError("stream relay frames can only be consumed once")
        self._consumed = True
        decision = self.decision
        pieces: list[str] = []
        usage = None
        finish_reason: str | None = None
        outcome: StreamOutcome = "cancelled"
        failure: UpstreamError | None = None
        account: Accounting | None = None
        try:
            yield QuotaFrame(quota_status(decision.tier, decision.window, decision.limits, decision.reset_at))
            upstream = self.client.chat_stream(
                self.messages,
                model=self.model,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
            try:
                async for chunk in upstream:
                    if chunk.usage is not None:
                        usage = chunk.usage
                    if chunk.finish_reason is not None:
                        finish_reason = chunk.finish_reason
                    if chunk.delta_content:
                        pieces.append(chunk.delta_content)
                        yield ContentFrame(chunk.delta_content)
                outcome = "completed"
            except UpstreamError as exc:
                failure = exc
                outcome = "failed"
            except Exception as exc:
                logger.exception(f"stream relay upstream fault caller={self.caller_id} provider={self.client.name}")
                failure = upstream_error_from_exception(exc)
                outcome = "failed"
            finally:
                await upstream.aclose()
            if outcome == "completed":
                account = Accounting.from_usage(
                    self.model, usage, prompt=self.prompt, completion="".join(pieces)
                )
                yield DoneFrame(
                    usage=account.usage_payload(),
                    cost=pricing.as_number(account.cost),
                    quota_status=self._status_after(account),
                    finish_reason=finish_reason,
                )
            else:
                yield ErrorFrame(
                    message=failure.message if failure is not None else "stream failed",
                    code=failure.code.value if failure is not None and failure.code else "upstream_error",
                )
        finally:
            if account is None and pieces:
                account = Accounting.from_usage(
                    self.model, usage, prompt=self.prompt, completion="".join(pieces), partial=True
                )
            with anyio.CancelScope(shield=True):
                await self._finish(account, outcome, failure.message if failure is not None else None)


def encode_frame(frame: Frame) -> bytes:
    return f"data: {json.dumps(frame.payload(), ensure_ascii=False)}\n\n".encode("utf-8")


async def sse_stream(
    frames: AsyncIterator[Frame],
    is_disconnected: Callable[[], Awaitable[bool]] | None = None,
) -> AsyncIterator[bytes]:
    """Serialize frames as server-sent events, ``[DONE]`` after a done frame.

    Stops pulling frames as soon as the caller goes away.
    """
    try:
        async for frame in frames:
            if is_disconnected is not None and await is_disconnected():
                logger.info("stream caller disconnected; stopping relay")
                break
            yield encode_frame(frame)
            if isinstance(frame, DoneFrame):
                if is_disconnected is not None and await is_disconnected():
                    break
                yield DONE_SENTINEL
    finally:
        aclose = getattr(frames, "aclose", None)
        if aclose is not None:
            await aclose()
