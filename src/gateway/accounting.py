"""Token accounting shared by the buffered and streaming paths."""

from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable, Literal

from . import pricing
from .store import NewUsageRecord
from .types import ProviderUsage, message_text

FeatureType = Literal["chat", "chat-stream", "image-analysis"]

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def prompt_text(messages: Iterable[dict[str, Any]]) -> str:
    return "".join(message_text(message.get("content")) for message in messages)


@dataclass(frozen=True)
class Accounting:
    model: str
    input_tokens: int
    output_tokens: int
    total_tokens: int
    cost: Decimal
    estimated: bool = False
    partial: bool = False

    @classmethod
    def from_usage(
        cls,
        model: str,
        usage: ProviderUsage | None,
        *,
        prompt: str,
        completion: str,
        partial: bool = False,
    ) -> "Accounting":
        if usage is not None and (usage.prompt_tokens or usage.completion_tokens):
            input_tokens = usage.prompt_tokens
            output_tokens = usage.completion_tokens
            total_tokens = usage.total_tokens or input_tokens + output_tokens
            estimated = False
        else:
            # last resort when the provider reports nothing
            input_tokens = estimate_tokens(prompt)
            output_tokens = estimate_tokens(completion)
            total_tokens = input_tokens + output_tokens
            estimated = True
        return cls(
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=total_tokens,
            cost=pricing.cost(model, input_tokens, output_tokens),
            estimated=estimated,
            partial=partial,
        )

    def usage_payload(self) -> dict[str, Any]:
        return {
            "promptTokens": self.input_tokens,
            "completionTokens": self.output_tokens,
            "totalTokens": self.total_tokens,
            "estimated": self.estimated,
        }

    def to_record(self, caller_id: str, feature_type: FeatureType) -> NewUsageRecord:
        return NewUsageRecord(
            user_id=caller_id,
            model=self.model,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            total_tokens=self.total_tokens,
            cost_units=pricing.to_units(self.cost),
            is_estimated=self.estimated,
            is_partial=self.partial,
            feature_type=feature_type,
        )
