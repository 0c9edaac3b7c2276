"""xAI (Grok) adapter over the OpenAI-compatible endpoint."""

from __future__ import annotations

from typing import Any

from aidriver.core.llm.adapters.base import AdapterCapabilities, ChatRequest, limit_descriptions
from aidriver.core.llm.adapters.openai import OpenAIAdapter

XAI_BASE_URL = "https://api.x.ai/v1"

# Longest function description xAI accepts
DESCRIPTION_LIMIT = 1000

_MODEL_FAMILIES: tuple[tuple[str, int, bool], ...] = (
    ("grok-4", 256_000, True),
    ("grok-3-mini", 131_072, False),
    ("grok-3", 131_072, False),
    ("grok-2-vision", 32_768, True),
    ("grok-2", 131_072, False),
    ("grok-beta", 131_072, False),
    ("grok-vision-beta", 8_192, True),
)


class XAIAdapter(OpenAIAdapter):
    """OpenAI adapter pointed at ``api.x.ai`` with Grok model metadata.

    Function descriptions over ``DESCRIPTION_LIMIT`` characters are cut to fit,
    with a warning per function.
    """

    name = "xai"
    _max_tokens_key = "max_tokens"
    _responses_api = False

    def __init__(self, api_key: str, *, base_url: str | None = None, default_model: str = "grok-beta", **kwargs: Any) -> None:
        super().__init__(api_key, base_url=base_url or XAI_BASE_URL, default_model=default_model, **kwargs)

    def capabilities(self, model: str | None = None) -> AdapterCapabilities:
        model = (model or self.default_model).lower()
        for prefix, context, vision in _MODEL_FAMILIES:
            if model.startswith(prefix):
                return AdapterCapabilities(vision=vision, parallel_calls=True, max_context_length=context)
        return AdapterCapabilities(parallel_calls=True)

    def prepare(self, request: ChatRequest) -> ChatRequest:
        return limit_descriptions(request, DESCRIPTION_LIMIT, provider=self.name, logger=self._logger)

    def is_chat_model(self, model_id: str) -> bool:
        lowered = model_id.lower()
        return lowered.startswith("grok") and "image" not in lowered
