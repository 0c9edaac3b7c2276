"""Backend adapters and the factory that builds them from settings."""

from typing import Any

from aidriver.core.config import SUPPORTED_PROVIDERS, Settings
from aidriver.core.errors import ErrorKind, ProviderError
from aidriver.core.llm.adapters.anthropic import AnthropicAdapter
from aidriver.core.llm.adapters.base import (
    AdapterBase,
    AdapterCapabilities,
    ChatRequest,
    FunctionSpec,
    ModelInfo,
    ProviderAdapter,
    limit_descriptions,
)
from aidriver.core.llm.adapters.gemini import GeminiAdapter
from aidriver.core.llm.adapters.mock import MockAdapter
from aidriver.core.llm.adapters.openai import OpenAIAdapter
from aidriver.core.llm.adapters.xai import XAIAdapter


def create_adapter(provider: str, settings: Settings, **kwargs: Any) -> ProviderAdapter:
    """
    Build the adapter for ``provider`` from settings.

    Args:
        provider: One of ``SUPPORTED_PROVIDERS``
        settings: Source of API keys, endpoints, timeouts and default models
        **kwargs: Passed to the adapter constructor (``logger``, ``http_client``...)

    Raises:
        ProviderError: ``VALIDATION_ERROR`` for an unknown provider,
            ``INVALID_CREDENTIALS`` when its API key is not configured
    """
    provider = provider.lower()
    common = {
        "timeout": settings.request_timeout,
        "connect_timeout": settings.connect_timeout,
    }

    match provider:
        case "openai":
            return OpenAIAdapter(
                settings.get_api_key("openai"),
                base_url=settings.openai_base_url,
                organization=settings.openai_organization,
                project=settings.openai_project,
                default_model=settings.openai_default_model,
                **common,
                **kwargs,
            )
        case "xai":
            return XAIAdapter(
                settings.get_api_key("xai"),
                base_url=settings.xai_base_url,
                default_model=settings.xai_default_model,
                **common,
                **kwargs,
            )
        case "gemini":
            return GeminiAdapter(
                settings.get_api_key("gemini"),
                base_url=settings.gemini_base_url,
                timeout=settings.request_timeout,
                default_model=settings.gemini_default_model,
                safety_settings=settings.gemini_safety_settings,
                **kwargs,
            )
        case "anthropic":
            return AnthropicAdapter(
                settings.get_api_key("anthropic"),
                base_url=settings.anthropic_base_url,
                default_model=settings.anthropic_default_model,
                default_max_tokens=settings.default_max_tokens,
                **common,
                **kwargs,
            )
        case "mock":
            return MockAdapter(**kwargs)
        case _:
            raise ProviderError.create(
                ErrorKind.VALIDATION_ERROR,
                f"Unsupported provider '{provider}'. Must be one of: {', '.join(SUPPORTED_PROVIDERS)}",
                provider=provider,
            )


__all__ = [
    "AdapterBase",
    "AdapterCapabilities",
    "AnthropicAdapter",
    "ChatRequest",
    "FunctionSpec",
    "GeminiAdapter",
    "MockAdapter",
    "ModelInfo",
    "OpenAIAdapter",
    "ProviderAdapter",
    "XAIAdapter",
    "create_adapter",
    "limit_descriptions",
]
