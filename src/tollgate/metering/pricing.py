"""Per-model token pricing with platform markup.

Rates are the upstream provider's list prices in US dollars per million
tokens. The charged price is ``list price * markup``, rounded up to the next
whole cent per request.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from decimal import ROUND_CEILING, Decimal

CACHE_WRITE_MULTIPLIER = Decimal("1.25")
CACHE_READ_MULTIPLIER = Decimal("0.10")

_MILLION = Decimal(1_000_000)


@dataclass(frozen=True)
class ModelPrice:
    """List price for one model, dollars per 1M tokens."""

    input_per_1m: Decimal
    output_per_1m: Decimal


BASE_PRICES: dict[str, ModelPrice] = {
    "claude-opus-4-6": ModelPrice(Decimal("5"), Decimal("25")),
    "claude-sonnet-4-5": ModelPrice(Decimal("3"), Decimal("15")),
    "claude-haiku-4-5": ModelPrice(Decimal("1"), Decimal("5")),
    # Dated model IDs
    "claude-opus-4-20250514": ModelPrice(Decimal("5"), Decimal("25")),
    "claude-sonnet-4-20250514": ModelPrice(Decimal("3"), Decimal("15")),
    "claude-3-5-haiku-20241022": ModelPrice(Decimal("0.80"), Decimal("4")),
}


def normalize_model(model: str) -> str:
    """Strip an ``anthropic/`` routing prefix and lower-case."""
    if model.startswith("anthropic/"):
        model = model[len("anthropic/"):]
    return model.lower()


def effective_input_tokens(
    input_tokens: int,
    cache_creation_tokens: int = 0,
    cache_read_tokens: int = 0,
) -> int:
    """Input tokens weighted by cache pricing (writes 1.25x, reads 0.10x)."""
    return (
        input_tokens
        + math.ceil(Decimal(cache_creation_tokens) * CACHE_WRITE_MULTIPLIER)
        + math.ceil(Decimal(cache_read_tokens) * CACHE_READ_MULTIPLIER)
    )


class PricingTable:
    """Model price lookup and cost calculation.

    ``cost_cents`` returns ``None`` for models without a price; callers skip
    billing in that case rather than failing the request.
    """

    def __init__(
        self,
        prices: dict[str, ModelPrice] | None = None,
        markup: float = 2.0,
    ) -> None:
        self._prices = dict(BASE_PRICES if prices is None else prices)
        self.markup = Decimal(str(markup))

    def price_for(self, model: str) -> ModelPrice | None:
        return self._prices.get(normalize_model(model))

    def is_priced(self, model: str) -> bool:
        return self.price_for(model) is not None

    def cost_cents(
        self,
        model: str,
        input_tokens: int,
        output_tokens: int,
        cache_creation_tokens: int = 0,
        cache_read_tokens: int = 0,
    ) -> int | None:
        """Charged cost in whole cents, always rounded up."""
        price = self.price_for(model)
        if price is None:
            return None
        eff_in = effective_input_tokens(input_tokens, cache_creation_tokens, cache_read_tokens)
        dollars = (
            Decimal(eff_in) / _MILLION * price.input_per_1m
            + Decimal(output_tokens) / _MILLION * price.output_per_1m
        )
        cents = dollars * self.markup * 100
        return int(cents.to_integral_value(rounding=ROUND_CEILING))

    def supported_models(self) -> list[tuple[str, Decimal, Decimal]]:
        """(model, charged input $/1M, charged output $/1M), sorted by name."""
        return [
            (name, p.input_per_1m * self.markup, p.output_per_1m * self.markup)
            for name, p in sorted(self._prices.items())
        ]

    def cheapest_model(self) -> str | None:
        if not self._prices:
            return None
        return min(
            self._prices,
            key=lambda m: (self._prices[m].input_per_1m + self._prices[m].output_per_1m, m),
        )
