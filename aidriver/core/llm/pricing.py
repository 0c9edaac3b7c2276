"""Pricing reference data and model-id resolution.

A ``PricingTable`` is plain injected data: drivers receive one at construction
and never reach for a module-level table, so tests can pass their own rates and
applications can swap in a reloaded table with ``with_entries``.

Resolution order for a model id:
    1. exact match on the normalized id
    2. longest base-model prefix (``gpt-4o-mini-audio`` -> ``gpt-4o-mini``)
    3. the provider's default entry

Usage:
    from aidriver.core.llm.pricing import PricingTable

    table = PricingTable.default()
    match = table.resolve("gpt-4-2024-05-13")
    match.entry.model, match.strategy   # ("gpt-4", "exact")
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, replace
from datetime import date
from enum import Enum
from pathlib import Path
from typing import Any

from aidriver.core.errors import ErrorKind, ProviderError
from aidriver.core.llm.utils import detect_provider


class PricingUnit(str, Enum):
    PER_TOKEN = "per_token"
    PER_1K_TOKENS = "1k_tokens"
    PER_1M_TOKENS = "1m_tokens"
    PER_CHARACTER = "per_character"
    PER_1K_CHARACTERS = "1k_characters"
    PER_SECOND = "per_second"
    PER_MINUTE = "per_minute"
    PER_HOUR = "per_hour"
    PER_REQUEST = "per_request"
    PER_IMAGE = "per_image"
    PER_AUDIO_FILE = "per_audio_file"
    PER_MB = "per_mb"
    PER_GB = "per_gb"

    @property
    def multiplier(self) -> float:
        """How many base units one priced unit covers."""
        return _MULTIPLIERS.get(self, 1.0)

    @property
    def is_token_based(self) -> bool:
        return self in (PricingUnit.PER_TOKEN, PricingUnit.PER_1K_TOKENS, PricingUnit.PER_1M_TOKENS)

    @property
    def is_request_based(self) -> bool:
        return self in (PricingUnit.PER_REQUEST, PricingUnit.PER_IMAGE, PricingUnit.PER_AUDIO_FILE)


_MULTIPLIERS = {
    PricingUnit.PER_1K_TOKENS: 1_000.0,
    PricingUnit.PER_1M_TOKENS: 1_000_000.0,
    PricingUnit.PER_1K_CHARACTERS: 1_000.0,
    PricingUnit.PER_MINUTE: 60.0,
    PricingUnit.PER_HOUR: 3_600.0,
    PricingUnit.PER_GB: 1_024.0,
}


class BillingModel(str, Enum):
    PAY_PER_USE = "pay_per_use"
    TIERED = "tiered"
    SUBSCRIPTION = "subscription"
    CREDITS = "credits"
    FREE_TIER = "free_tier"
    ENTERPRISE = "enterprise"


@dataclass(frozen=True, slots=True)
class PricingEntry:
    """Rates for one model.

    Attributes:
        model: Model id the rates apply to (normalized on insertion)
        input_rate: Cost per ``unit`` of input
        output_rate: Cost per ``unit`` of output
        unit: What one rate is charged for
        currency: ISO currency code
        billing_model: Billing category
        effective_date: Date the rates took effect
        provider: Owning provider, used for provider-default fallback
    """

    model: str
    input_rate: float
    output_rate: float
    unit: PricingUnit = PricingUnit.PER_1K_TOKENS
    currency: str = "USD"
    billing_model: BillingModel = BillingModel.PAY_PER_USE
    effective_date: date | None = None
    provider: str | None = None


@dataclass(frozen=True, slots=True)
class PricingMatch:
    entry: PricingEntry
    strategy: str  # "exact", "prefix" or "provider_default"


_DATE_SUFFIX = re.compile(r"-(\d{4}-\d{2}-\d{2}|\d{8})$")
_TAG_SUFFIX = re.compile(r"-(preview|latest|exp)$")
_PREFIX_BOUNDARY = ("-", ".", ":", "@")


def normalize_model_id(model: str) -> str:
    """Canonical pricing key for a model id.

    Lowercases, drops a ``models/`` prefix, a trailing release date and any
    trailing ``-preview``/``-latest``/``-exp`` tags.

    Examples:
        >>> normalize_model_id("GPT-4-2024-05-13")
        'gpt-4'
        >>> normalize_model_id("models/gemini-1.5-pro-latest")
        'gemini-1.5-pro'
    """
    normalized = model.strip().lower()
    if normalized.startswith("models/"):
        normalized = normalized[len("models/"):]
    while True:
        stripped = _TAG_SUFFIX.sub("", _DATE_SUFFIX.sub("", normalized))
        if stripped == normalized:
            return normalized
        normalized = stripped


_EFFECTIVE = date(2025, 8, 1)
_EFFECTIVE_ANTHROPIC = date(2025, 12, 1)


def _entries(
    provider: str, unit: PricingUnit, rates: Mapping[str, tuple[float, float]], effective: date
) -> list[PricingEntry]:
    return [
        PricingEntry(
            model=model,
            input_rate=input_rate,
            output_rate=output_rate,
            unit=unit,
            effective_date=effective,
            provider=provider,
        )
        for model, (input_rate, output_rate) in rates.items()
    ]


# Reference rates. OpenAI is quoted per 1K tokens, the others per 1M tokens.
DEFAULT_PRICING: tuple[PricingEntry, ...] = (
    *_entries("openai", PricingUnit.PER_1K_TOKENS, {
        "gpt-5": (0.00125, 0.01),
        "gpt-4o": (0.0025, 0.01),
        "gpt-4o-mini": (0.00015, 0.0006),
        "gpt-4.1": (0.002, 0.008),
        "gpt-4.1-mini": (0.0004, 0.0016),
        "gpt-4-turbo": (0.01, 0.03),
        "gpt-4": (0.03, 0.06),
        "gpt-4-32k": (0.06, 0.12),
        "gpt-3.5-turbo": (0.0015, 0.002),
        "gpt-3.5-turbo-16k": (0.003, 0.004),
        "o1": (0.015, 0.06),
        "o1-mini": (0.003, 0.012),
        "o3-mini": (0.0011, 0.0044),
    }, _EFFECTIVE),
    *_entries("gemini", PricingUnit.PER_1M_TOKENS, {
        "gemini-2.5-pro": (1.25, 10.00),
        "gemini-2.5-flash": (0.30, 2.50),
        "gemini-2.0-flash": (0.10, 0.40),
        "gemini-1.5-pro": (1.25, 5.00),
        "gemini-1.5-flash": (0.075, 0.30),
        "gemini-pro": (0.50, 1.50),
    }, _EFFECTIVE),
    *_entries("xai", PricingUnit.PER_1M_TOKENS, {
        "grok-beta": (5.00, 15.00),
        "grok-4": (3.00, 15.00),
        "grok-3": (3.00, 15.00),
        "grok-3-mini": (0.30, 0.50),
        "grok-2": (2.00, 10.00),
        "grok-2-mini": (1.00, 5.00),
        "grok-2-vision": (2.00, 10.00),
    }, _EFFECTIVE),
    *_entries("anthropic", PricingUnit.PER_1M_TOKENS, {
        "claude-opus-4-5": (5.00, 25.00),
        "claude-sonnet-4-5": (3.00, 15.00),
        "claude-sonnet-4": (3.00, 15.00),
        "claude-opus-4": (15.00, 75.00),
        "claude-3-5-sonnet": (3.00, 15.00),
        "claude-3-5-haiku": (0.80, 4.00),
        "claude-3-haiku": (0.25, 1.25),
    }, _EFFECTIVE_ANTHROPIC),
    PricingEntry(
        model="mock-model",
        input_rate=0.0,
        output_rate=0.0,
        billing_model=BillingModel.FREE_TIER,
        provider="mock",
    ),
)

DEFAULT_PROVIDER_MODELS: dict[str, str] = {
    "openai": "gpt-3.5-turbo",
    "gemini": "gemini-2.5-flash",
    "xai": "grok-beta",
    "anthropic": "claude-sonnet-4",
    "mock": "mock-model",
}


class PricingTable:
    """Immutable-by-convention lookup of ``PricingEntry`` by model id.

    Args:
        entries: Pricing entries; later entries replace earlier ones with the
            same normalized model id
        provider_defaults: Provider name -> model id whose entry is used when
            nothing more specific matches
    """

    def __init__(
        self,
        entries: Iterable[PricingEntry] = (),
        provider_defaults: Mapping[str, str] | None = None,
    ) -> None:
        self._entries: dict[str, PricingEntry] = {}
        for entry in entries:
            key = normalize_model_id(entry.model)
            self._entries[key] = replace(entry, model=key)
        self._provider_defaults = {
            provider: normalize_model_id(model)
            for provider, model in (provider_defaults or {}).items()
        }
        # Longest keys first so prefix matching finds the most specific base model
        self._by_length = sorted(self._entries, key=len, reverse=True)

    @classmethod
    def default(cls) -> PricingTable:
        """Table built from the bundled reference rates."""
        return cls(DEFAULT_PRICING, DEFAULT_PROVIDER_MODELS)

    def with_entries(self, entries: Iterable[PricingEntry]) -> PricingTable:
        """Return a new table with ``entries`` added or replacing existing ones."""
        return PricingTable([*self._entries.values(), *entries], self._provider_defaults)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, model: object) -> bool:
        return isinstance(model, str) and normalize_model_id(model) in self._entries

    def get(self, model: str) -> PricingEntry | None:
        """Exact lookup on the normalized id."""
        return self._entries.get(normalize_model_id(model))

    def resolve(self, model: str, provider: str | None = None) -> PricingMatch:
        """Find the entry that prices ``model``.

        Args:
            model: Model id as sent to or returned by the backend
            provider: Provider used for the default fallback; detected from
                the model id when omitted

        Raises:
            ProviderError: ``VALIDATION_ERROR`` when no entry applies
        """
        normalized = normalize_model_id(model)

        entry = self._entries.get(normalized)
        if entry is not None:
            return PricingMatch(entry, "exact")

        for key in self._by_length:
            if normalized.startswith(key) and normalized[len(key)] in _PREFIX_BOUNDARY:
                return PricingMatch(self._entries[key], "prefix")

        provider = provider or detect_provider(model)
        default_key = self._provider_defaults.get(provider)
        if default_key is not None and default_key in self._entries:
            return PricingMatch(self._entries[default_key], "provider_default")

        raise ProviderError.create(
            ErrorKind.VALIDATION_ERROR,
            f"No pricing entry for model '{model}'",
            provider=provider,
            model=model,
        )


def load_pricing_table(path: Path | str) -> PricingTable:
    """Load a table from a JSON file.

    Expected shape::

        {
          "provider_defaults": {"openai": "gpt-4o-mini"},
          "entries": [
            {"model": "gpt-4o-mini", "input_rate": 0.00015, "output_rate": 0.0006,
             "unit": "1k_tokens", "currency": "USD", "billing_model": "pay_per_use",
             "effective_date": "2025-08-01", "provider": "openai"}
          ]
        }
    """
    with open(path, "r", encoding="utf-8") as f:
        raw: Any = json.load(f)

    entries = []
    for item in raw.get("entries", []):
        effective = item.get("effective_date")
        entries.append(
            PricingEntry(
                model=item["model"],
                input_rate=float(item["input_rate"]),
                output_rate=float(item["output_rate"]),
                unit=PricingUnit(item.get("unit", PricingUnit.PER_1K_TOKENS.value)),
                currency=item.get("currency", "USD"),
                billing_model=BillingModel(item.get("billing_model", BillingModel.PAY_PER_USE.value)),
                effective_date=date.fromisoformat(effective) if effective else None,
                provider=item.get("provider"),
            )
        )
    return PricingTable(entries, raw.get("provider_defaults"))
