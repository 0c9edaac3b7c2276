"""Tests for environment-driven settings."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from aidriver.core.config import HARM_CATEGORIES, Settings
from aidriver.core.errors import ErrorKind, ProviderError

pytestmark = pytest.mark.unit


def test_defaults():
    settings = Settings()
    assert settings.default_provider == "openai"
    assert settings.retry_attempts == 3
    assert settings.max_function_rounds == 5
    assert settings.cost_tracking_enabled
    assert set(settings.gemini_safety_settings) == set(HARM_CATEGORIES)


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("AIDRIVER_DEFAULT_PROVIDER", "Gemini")
    monkeypatch.setenv("AIDRIVER_GEMINI_API_KEY", "g-key")
    monkeypatch.setenv("AIDRIVER_RETRY_ATTEMPTS", "5")
    monkeypatch.setenv("AIDRIVER_LOG_LEVEL", "debug")

    settings = Settings()

    assert settings.default_provider == "gemini"
    assert settings.get_api_key("gemini") == "g-key"
    assert settings.retry_attempts == 5
    assert settings.log_level == "DEBUG"


def test_dotenv_file_is_read(tmp_path):
    (tmp_path / ".env").write_text("AIDRIVER_XAI_API_KEY=from-dotenv\n", encoding="utf-8")
    assert Settings().xai_api_key == "from-dotenv"


@pytest.mark.parametrize(
    "overrides",
    [
        {"default_provider": "cohere"},
        {"retry_attempts": 0},
        {"request_timeout": 0},
        {"log_level": "LOUD"},
        {"gemini_safety_settings": {"HARM_CATEGORY_HARASSMENT": "BLOCK_EVERYTHING"}},
    ],
)
def test_invalid_values_are_rejected(overrides):
    with pytest.raises(ValidationError):
        Settings(**overrides)


def test_missing_api_key_is_credential_error():
    with pytest.raises(ProviderError) as exc_info:
        Settings().get_api_key("openai")
    assert exc_info.value.kind is ErrorKind.INVALID_CREDENTIALS
    assert exc_info.value.provider == "openai"


def test_unknown_provider_key_lookup():
    with pytest.raises(ValueError, match="Unknown provider"):
        Settings().get_api_key("cohere")


def test_default_model_for(settings):
    assert settings.default_model_for("anthropic") == "claude-sonnet-4-20250514"
    assert settings.default_model_for("mock") == "mock-model"
