"""Cost calculation over an injected pricing table.

``CostCalculator.calculate`` is pure: it reads a ``PricingTable`` and token
counts, never the network, and echoes the counts and rates it used so a cost
can be audited after the fact.

Usage:
    from aidriver.core.llm.costs import CostCalculator
    from aidriver.core.llm.pricing import PricingTable

    calculator = CostCalculator(PricingTable.default())
    breakdown = calculator.calculate(TokenUsage(1000, 500), "gpt-4o-mini")
    breakdown.total_cost   # 0.00045
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from aidriver.core.errors import ErrorKind, ProviderError
from aidriver.core.llm.models import Message, Response, TokenUsage
from aidriver.core.llm.pricing import PricingTable, PricingUnit

if TYPE_CHECKING:
    from aidriver.core.logging import LoggerProtocol

# Characters per token used for estimates
CHARS_PER_TOKEN = 4

# Share of the input assumed to come back as output when max_tokens is unknown
DEFAULT_OUTPUT_RATIO = 0.5


@dataclass(frozen=True, slots=True)
class CostBreakdown:
    """Cost of one request together with the inputs that produced it.

    Attributes:
        model: Model id the cost was requested for
        pricing_model: Pricing entry actually applied
        matched_by: Lookup strategy ("exact", "prefix", "provider_default")
        input_tokens: Input tokens billed
        output_tokens: Output tokens billed
        total_tokens: input_tokens + output_tokens
        input_rate: Rate per ``unit`` for input
        output_rate: Rate per ``unit`` for output
        unit: Pricing unit of the rates
        currency: Currency of all amounts
        input_cost: Cost of the input side
        output_cost: Cost of the output side
        total_cost: input_cost + output_cost
        estimated: True when token counts were approximated, never for billing
    """

    model: str
    pricing_model: str
    matched_by: str
    input_tokens: int
    output_tokens: int
    total_tokens: int
    input_rate: float
    output_rate: float
    unit: PricingUnit
    currency: str
    input_cost: float
    output_cost: float
    total_cost: float
    estimated: bool = False


def estimate_tokens(text: str) -> int:
    """Rough token count for text: one token per ``CHARS_PER_TOKEN`` characters."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


class CostCalculator:
    """Turns token usage into a ``CostBreakdown`` using a pricing table.

    Args:
        pricing: Table used for every lookup
        precision: Decimal places costs are rounded to
        logger: Optional logger for fallback-pricing notices
        currency: Currency every applied pricing entry must be in
    """

    def __init__(
        self,
        pricing: PricingTable,
        precision: int = 6,
        logger: LoggerProtocol | None = None,
        currency: str = "USD",
    ) -> None:
        self.pricing = pricing
        self.precision = precision
        self.currency = currency.upper()
        self._logger = logger

    def calculate(
        self,
        usage: TokenUsage | Response,
        model: str | None = None,
        provider: str | None = None,
    ) -> CostBreakdown:
        """Cost of a completed request.

        Args:
            usage: Token usage, or a response whose usage/model/provider are used
            model: Model id; required when ``usage`` is a bare ``TokenUsage``
            provider: Provider for the default-pricing fallback

        Raises:
            ProviderError: ``VALIDATION_ERROR`` if no model is known, no pricing
                entry applies, the entry is in another currency, or its unit
                cannot be derived from tokens
        """
        if isinstance(usage, Response):
            model = model or usage.model
            provider = provider or usage.provider
            usage = usage.usage
        if not model:
            raise ProviderError.create(
                ErrorKind.VALIDATION_ERROR,
                "A model id is required to calculate cost from token usage",
                provider=provider or "",
            )
        return self._price(usage, model, provider, estimated=False)

    def estimate(
        self,
        messages: Iterable[Message],
        model: str,
        provider: str | None = None,
        max_tokens: int | None = None,
    ) -> CostBreakdown:
        """Approximate cost of sending ``messages`` before the call is made.

        Input tokens come from character length; output tokens are
        ``max_tokens`` when given, otherwise half the input. The result is
        flagged ``estimated`` and is not suitable for billing reconciliation.
        """
        input_tokens = sum(estimate_tokens(message.text) for message in messages)
        if max_tokens is not None:
            output_tokens = max_tokens
        else:
            output_tokens = int(input_tokens * DEFAULT_OUTPUT_RATIO)
        usage = TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens)
        return self._price(usage, model, provider, estimated=True)

    def _price(
        self, usage: TokenUsage, model: str, provider: str | None, *, estimated: bool
    ) -> CostBreakdown:
        match = self.pricing.resolve(model, provider)
        entry = match.entry
        if entry.currency.upper() != self.currency:
            raise ProviderError.create(
                ErrorKind.VALIDATION_ERROR,
                f"Pricing for '{entry.model}' is in {entry.currency}, costs are tracked in {self.currency}",
                provider=provider or entry.provider or "",
                model=model,
            )

        if match.strategy != "exact" and self._logger is not None:
            self._logger.debug(
                f"Pricing '{model}' with '{entry.model}' ({match.strategy})",
                model=model,
                pricing_model=entry.model,
            )

        if entry.unit.is_token_based:
            input_cost = (usage.input_tokens / entry.unit.multiplier) * entry.input_rate
            output_cost = (usage.output_tokens / entry.unit.multiplier) * entry.output_rate
        elif entry.unit is PricingUnit.PER_REQUEST:
            input_cost = entry.input_rate
            output_cost = 0.0
        else:
            raise ProviderError.create(
                ErrorKind.VALIDATION_ERROR,
                f"Pricing unit '{entry.unit.value}' for '{entry.model}' cannot be "
                "derived from token usage",
                provider=provider or entry.provider or "",
                model=model,
            )

        input_cost = round(input_cost, self.precision)
        output_cost = round(output_cost, self.precision)
        return CostBreakdown(
            model=model,
            pricing_model=entry.model,
            matched_by=match.strategy,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            total_tokens=usage.total_tokens,
            input_rate=entry.input_rate,
            output_rate=entry.output_rate,
            unit=entry.unit,
            currency=entry.currency,
            input_cost=input_cost,
            output_cost=output_cost,
            total_cost=round(input_cost + output_cost, self.precision),
            estimated=estimated,
        )
