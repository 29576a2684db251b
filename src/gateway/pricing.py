"""Per-model token pricing.

Rates are currency units per 1K tokens. Costs are exact ``Decimal`` values
quantized to ``COST_QUANTUM``; the record store keeps them as an integer
count of that quantum so daily sums never drift.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_EVEN, Decimal
from typing import Mapping

COST_QUANTUM = Decimal("0.0000000001")
_THOUSAND = Decimal(1000)


@dataclass(frozen=True)
class ModelRate:
    input_per_1k: Decimal
    output_per_1k: Decimal


DEFAULT_MODEL = "gpt-4"

MODEL_RATES: Mapping[str, ModelRate] = {
    "gpt-3.5-turbo": ModelRate(Decimal("0.0005"), Decimal("0.0015")),
    "gpt-4": ModelRate(Decimal("0.03"), Decimal("0.06")),
    "gpt-4-turbo": ModelRate(Decimal("0.01"), Decimal("0.03")),
    "gpt-4-vision-preview": ModelRate(Decimal("0.01"), Decimal("0.03")),
    "gpt-4o": ModelRate(Decimal("0.005"), Decimal("0.015")),
    "gpt-4o-mini": ModelRate(Decimal("0.00015"), Decimal("0.0006")),
}

DEFAULT_RATE = MODEL_RATES[DEFAULT_MODEL]


def rate_for(model: str | None) -> ModelRate:
    if not model:
        return DEFAULT_RATE
    return MODEL_RATES.get(model.strip().lower(), DEFAULT_RATE)


def cost(model: str | None, input_tokens: int, output_tokens: int) -> Decimal:
    if input_tokens < 0 or output_tokens < 0:
        raise ValueError("token counts must be non-negative")
    rate = rate_for(model)
    raw = (Decimal(input_tokens) * rate.input_per_1k + Decimal(output_tokens) * rate.output_per_1k) / _THOUSAND
    return raw.quantize(COST_QUANTUM, rounding=ROUND_HALF_EVEN)


def to_units(amount: Decimal) -> int:
    return int((amount / COST_QUANTUM).to_integral_value(rounding=ROUND_HALF_EVEN))


def from_units(units: int | None) -> Decimal:
    if not units:
        return Decimal(0).quantize(COST_QUANTUM)
    return (Decimal(units) * COST_QUANTUM).quantize(COST_QUANTUM)


def as_number(amount: Decimal) -> float:
    # JSON boundary only; arithmetic stays in Decimal
    return float(amount.normalize()) if amount else 0.0
