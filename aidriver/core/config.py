"""Configuration management using Pydantic Settings."""

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

SUPPORTED_PROVIDERS = ("openai", "xai", "gemini", "anthropic", "mock")

HARM_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)

SAFETY_THRESHOLDS = (
    "BLOCK_NONE",
    "BLOCK_ONLY_HIGH",
    "BLOCK_MEDIUM_AND_ABOVE",
    "BLOCK_LOW_AND_ABOVE",
)


class Settings(BaseSettings):
    """Driver settings loaded from environment variables with AIDRIVER_ prefix."""

    model_config = SettingsConfigDict(
        env_prefix="AIDRIVER_", env_file=".env", env_file_encoding="utf-8"
    )

    default_provider: str = "openai"

    # API Keys
    openai_api_key: str | None = None
    xai_api_key: str | None = None
    gemini_api_key: str | None = None
    anthropic_api_key: str | None = None

    # OpenAI account scoping
    openai_organization: str | None = None
    openai_project: str | None = None

    # Endpoints (None means the SDK default)
    openai_base_url: str | None = None
    xai_base_url: str = "https://api.x.ai/v1"
    gemini_base_url: str | None = None
    anthropic_base_url: str | None = None

    # Default models
    openai_default_model: str = "gpt-4o-mini"
    xai_default_model: str = "grok-beta"
    gemini_default_model: str = "gemini-2.5-flash"
    anthropic_default_model: str = "claude-sonnet-4-20250514"

    # Requests
    request_timeout: float = Field(default=30.0, gt=0)
    connect_timeout: float = Field(default=10.0, gt=0)
    default_max_tokens: int = Field(default=1000, ge=1)

    # Retry; exponential backoff delays scale with retry_base_delay (seconds)
    retry_attempts: int = Field(default=3, ge=1, le=10)
    retry_base_delay: float = Field(default=1.0, ge=0.1)

    # Function calling
    max_function_rounds: int = Field(default=5, ge=1, le=50)

    # Gemini content filtering, keyed by harm category
    gemini_safety_settings: dict[str, str] = Field(
        default_factory=lambda: {category: "BLOCK_MEDIUM_AND_ABOVE" for category in HARM_CATEGORIES}
    )

    # Cost tracking
    cost_tracking_enabled: bool = True
    cost_currency: str = "USD"
    cost_precision: int = Field(default=6, ge=0, le=12)
    pricing_file: str | None = None

    # Model list cache, in seconds
    model_cache_ttl: int = Field(default=3600, ge=0)

    # Output
    log_level: str = "INFO"
    log_file: str | None = None

    @field_validator("default_provider")
    @classmethod
    def validate_provider(cls, v: str) -> str:
        """
        Validate that the default provider is one the driver can build.

        Raises:
            ValueError: If the provider name is not supported
        """
        v = v.lower()
        if v not in SUPPORTED_PROVIDERS:
            raise ValueError(
                f"Invalid provider '{v}'. Must be one of: {', '.join(SUPPORTED_PROVIDERS)}"
            )
        return v

    @field_validator("gemini_safety_settings")
    @classmethod
    def validate_safety_settings(cls, v: dict[str, str]) -> dict[str, str]:
        """Reject thresholds Gemini would refuse at request time."""
        for category, threshold in v.items():
            if threshold not in SAFETY_THRESHOLDS:
                raise ValueError(
                    f"Invalid safety threshold '{threshold}' for {category}. "
                    f"Must be one of: {', '.join(SAFETY_THRESHOLDS)}"
                )
        return v

    @field_validator("cost_currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        v = v.upper()
        if len(v) != 3 or not v.isalpha():
            raise ValueError(f"Invalid currency code '{v}'")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        v = v.upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log level '{v}'")
        return v

    def get_api_key(self, provider: str) -> str:
        """
        Get the API key for a specific provider.

        Args:
            provider: The provider name (openai, xai, gemini, anthropic)

        Returns:
            The API key for the provider

        Raises:
            ValueError: If the provider name is not supported
            ProviderError: If the API key is missing for the provider
        """
        from aidriver.core.errors import ErrorKind, ProviderError

        api_key_mapping = {
            "openai": self.openai_api_key,
            "xai": self.xai_api_key,
            "gemini": self.gemini_api_key,
            "anthropic": self.anthropic_api_key,
        }

        if provider not in api_key_mapping:
            valid_providers = ", ".join(sorted(api_key_mapping.keys()))
            raise ValueError(
                f"Unknown provider '{provider}'. Supported providers: {valid_providers}"
            )

        api_key = api_key_mapping[provider]
        if not api_key:
            raise ProviderError.create(
                ErrorKind.INVALID_CREDENTIALS,
                f"API key for provider '{provider}' is not configured",
                provider=provider,
            )

        return api_key

    def default_model_for(self, provider: str) -> str:
        return {
            "openai": self.openai_default_model,
            "xai": self.xai_default_model,
            "gemini": self.gemini_default_model,
            "anthropic": self.anthropic_default_model,
        }.get(provider, "mock-model")
