"""Tests for cost calculation and pre-send estimates."""

from __future__ import annotations

import pytest

from aidriver.core.errors import ErrorKind, ProviderError
from aidriver.core.llm.costs import CostCalculator, estimate_tokens
from aidriver.core.llm.models import Message, Response, TokenUsage
from aidriver.core.llm.pricing import PricingEntry, PricingTable, PricingUnit

pytestmark = pytest.mark.unit


@pytest.fixture
def calculator() -> CostCalculator:
    return CostCalculator(PricingTable.default())


def test_per_1k_token_math(calculator):
    breakdown = calculator.calculate(TokenUsage(1000, 500), "gpt-4o-mini")

    assert breakdown.input_cost == pytest.approx(0.00015)
    assert breakdown.output_cost == pytest.approx(0.0003)
    assert breakdown.total_cost == pytest.approx(0.00045)
    assert breakdown.unit is PricingUnit.PER_1K_TOKENS
    assert breakdown.matched_by == "exact"
    assert not breakdown.estimated


def test_per_1m_token_math(calculator):
    breakdown = calculator.calculate(TokenUsage(1_000_000, 1_000_000), "claude-sonnet-4-20250514")
    assert breakdown.total_cost == pytest.approx(18.0)
    assert breakdown.pricing_model == "claude-sonnet-4"


def test_breakdown_echoes_counts_and_rates(calculator):
    breakdown = calculator.calculate(TokenUsage(10, 20), "gpt-4")
    assert (breakdown.input_tokens, breakdown.output_tokens, breakdown.total_tokens) == (10, 20, 30)
    assert (breakdown.input_rate, breakdown.output_rate) == (0.03, 0.06)
    assert breakdown.currency == "USD"


def test_cost_is_monotonic_in_tokens(calculator):
    costs = [
        calculator.calculate(TokenUsage(tokens, tokens), "gpt-4o").total_cost
        for tokens in (0, 10, 1_000, 50_000)
    ]
    assert costs == sorted(costs)
    assert costs[0] == 0


def test_response_supplies_model_and_usage(calculator):
    response = Response(content="4", model="gpt-4", provider="openai", usage=TokenUsage(1000, 1000))
    assert calculator.calculate(response).total_cost == pytest.approx(0.09)


def test_bare_usage_without_model_is_rejected(calculator):
    with pytest.raises(ProviderError) as exc_info:
        calculator.calculate(TokenUsage(1, 1))
    assert exc_info.value.kind is ErrorKind.VALIDATION_ERROR


def test_per_request_pricing_ignores_tokens():
    table = PricingTable([PricingEntry("flat", 0.25, 0.0, unit=PricingUnit.PER_REQUEST)])
    breakdown = CostCalculator(table).calculate(TokenUsage(5000, 5000), "flat")
    assert breakdown.total_cost == 0.25


def test_non_token_unit_cannot_be_priced_from_usage():
    table = PricingTable([PricingEntry("tts", 0.01, 0.0, unit=PricingUnit.PER_SECOND)])
    with pytest.raises(ProviderError, match="cannot be derived"):
        CostCalculator(table).calculate(TokenUsage(1, 1), "tts")


def test_precision_rounds_costs():
    breakdown = CostCalculator(PricingTable.default(), precision=2).calculate(TokenUsage(1000, 0), "gpt-4o-mini")
    assert breakdown.total_cost == 0.0


def test_fallback_pricing_is_logged(logger):
    calculator = CostCalculator(PricingTable.default(), logger=logger)
    calculator.calculate(TokenUsage(1, 1), "gpt-4o-mini-audio")
    assert any("prefix" in message for message in logger.messages("debug"))


# =============================================================================
# Estimates
# =============================================================================


def test_estimate_tokens_is_chars_over_four():
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2


def test_estimate_uses_half_the_input_without_max_tokens(calculator):
    breakdown = calculator.estimate([Message.user("x" * 4000)], "gpt-4")
    assert breakdown.input_tokens == 1000
    assert breakdown.output_tokens == 500
    assert breakdown.estimated


def test_estimate_uses_max_tokens_when_given(calculator):
    breakdown = calculator.estimate([Message.user("x" * 400)], "gpt-4", max_tokens=64)
    assert breakdown.output_tokens == 64


def test_entries_in_the_tracked_currency_are_priced():
    table = PricingTable([PricingEntry("m-eur", 0.01, 0.02, currency="EUR")])
    breakdown = CostCalculator(table, currency="eur").calculate(TokenUsage(1000, 1000), "m-eur")
    assert breakdown.currency == "EUR"
    assert breakdown.total_cost == 0.03


def test_entry_in_another_currency_is_rejected():
    calculator = CostCalculator(PricingTable.default(), currency="EUR")
    with pytest.raises(ProviderError, match="is in USD") as exc_info:
        calculator.calculate(TokenUsage(1000, 1000), "gpt-4o-mini")
    assert exc_info.value.kind is ErrorKind.VALIDATION_ERROR
