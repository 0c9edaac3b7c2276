"""Pytest configuration and fixtures.

Provides environment isolation, a recording logger test double and driver
fixtures built on the mock adapter. Nothing here touches the network.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any

import pytest

from aidriver.core.config import Settings
from aidriver.core.llm.adapters import MockAdapter
from aidriver.core.llm.driver import Driver
from aidriver.core.llm.pricing import PricingEntry, PricingTable, PricingUnit
from aidriver.core.llm.retry import RetryConfig

# =============================================================================
# Test Doubles
# =============================================================================


@dataclass
class RecordingLogger:
    """Logger test double capturing ``(level, message, fields)`` tuples."""

    records: list[tuple[str, str, dict[str, Any]]] = field(default_factory=list)

    def _log(self, level: str, msg: str, **extra: Any) -> None:
        self.records.append((level, msg, extra))

    def debug(self, msg: str, **extra: Any) -> None:
        self._log("debug", msg, **extra)

    def info(self, msg: str, **extra: Any) -> None:
        self._log("info", msg, **extra)

    def warning(self, msg: str, **extra: Any) -> None:
        self._log("warning", msg, **extra)

    def error(self, msg: str, **extra: Any) -> None:
        self._log("error", msg, **extra)

    def messages(self, level: str) -> list[str]:
        return [msg for lvl, msg, _ in self.records if lvl == level]


class FakeSleep:
    """Records requested delays instead of sleeping."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


# =============================================================================
# Environment Isolation (Autouse)
# =============================================================================


@pytest.fixture(autouse=True)
def isolate_driver_env(monkeypatch, tmp_path):
    """Clear AIDRIVER_* variables and keep .env lookups out of the project root."""
    for key in list(os.environ.keys()):
        if key.startswith("AIDRIVER_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)


# =============================================================================
# Fixtures
# =============================================================================

TEST_MODEL = "m1"


@pytest.fixture
def settings() -> Settings:
    return Settings(
        default_provider="mock",
        openai_api_key="sk-test",
        xai_api_key="xai-test",
        gemini_api_key="gemini-test",
        anthropic_api_key="anthropic-test",
    )


@pytest.fixture
def pricing() -> PricingTable:
    """Default table plus a per-1K entry for the scenario model ``m1``."""
    return PricingTable.default().with_entries(
        [PricingEntry(model=TEST_MODEL, input_rate=0.01, output_rate=0.02, unit=PricingUnit.PER_1K_TOKENS, provider="mock")]
    )


@pytest.fixture
def logger() -> RecordingLogger:
    return RecordingLogger()


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
def adapter() -> MockAdapter:
    return MockAdapter(default_model=TEST_MODEL)


@pytest.fixture
def driver(adapter, pricing, settings, logger, fake_sleep) -> Driver:
    return Driver(
        adapter,
        pricing,
        settings,
        retry=RetryConfig(),
        logger=logger,
        sleep=fake_sleep,
    )
