"""Utility functions shared by the driver pipeline."""

from typing import Optional


def detect_provider(model: str, base_url: Optional[str] = None) -> str:
    """
    Detect the provider that serves a model from its naming convention.

    Args:
        model: Model name (e.g., 'gpt-4o', 'grok-beta', 'models/gemini-1.5-pro')
        base_url: Optional API base URL, consulted when the name is ambiguous

    Returns:
        Provider name: 'openai', 'xai', 'gemini', 'anthropic', 'mock' or 'unknown'

    Examples:
        >>> detect_provider("gpt-4o-mini")
        'openai'
        >>> detect_provider("grok-2-vision")
        'xai'
        >>> detect_provider("models/gemini-2.5-flash")
        'gemini'
        >>> detect_provider("llama-3", base_url="https://api.x.ai/v1")
        'xai'
    """
    model_lower = model.lower().removeprefix("models/")

    if model_lower.startswith(("gpt", "o1", "o3", "o4", "chatgpt")):
        return "openai"
    elif model_lower.startswith("grok"):
        return "xai"
    elif model_lower.startswith("gemini"):
        return "gemini"
    elif model_lower.startswith("claude"):
        return "anthropic"
    elif model_lower.startswith("mock"):
        return "mock"

    if base_url:
        base_url_lower = base_url.lower()
        if "x.ai" in base_url_lower:
            return "xai"
        elif "generativelanguage" in base_url_lower or "google" in base_url_lower:
            return "gemini"
        elif "anthropic" in base_url_lower:
            return "anthropic"
        elif "openai" in base_url_lower:
            return "openai"

    return "unknown"
