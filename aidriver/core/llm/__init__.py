"""Multi-provider driver pipeline: models, adapters, retry, streaming and cost."""

from .models import (
    Attachment,
    FinishReason,
    FunctionCallRequest,
    Message,
    Response,
    Role,
    TokenUsage,
)
from .pricing import (
    DEFAULT_PRICING,
    BillingModel,
    PricingEntry,
    PricingMatch,
    PricingTable,
    PricingUnit,
    load_pricing_table,
    normalize_model_id,
)
from .costs import CostBreakdown, CostCalculator, estimate_tokens
from .classifier import ErrorClassifier
from .retry import DEFAULT_POLICIES, RetryConfig, RetryExecutor, RetryPolicy
from .streaming import EventSource, ResponseStream, StreamDecoder
from .adapters import (
    AdapterCapabilities,
    AnthropicAdapter,
    ChatRequest,
    FunctionSpec,
    GeminiAdapter,
    MockAdapter,
    ModelInfo,
    OpenAIAdapter,
    ProviderAdapter,
    XAIAdapter,
    create_adapter,
)
from .orchestrator import FunctionCallingOrchestrator, FunctionExecutor
from .driver import CredentialCheck, Driver, HealthStatus, SyncResult
from .utils import detect_provider

__all__ = [
    # Message / Response model
    "Attachment",
    "FinishReason",
    "FunctionCallRequest",
    "Message",
    "Response",
    "Role",
    "TokenUsage",
    # Pricing and cost
    "BillingModel",
    "CostBreakdown",
    "CostCalculator",
    "DEFAULT_PRICING",
    "PricingEntry",
    "PricingMatch",
    "PricingTable",
    "PricingUnit",
    "estimate_tokens",
    "load_pricing_table",
    "normalize_model_id",
    # Errors and retry
    "DEFAULT_POLICIES",
    "ErrorClassifier",
    "RetryConfig",
    "RetryExecutor",
    "RetryPolicy",
    # Streaming
    "EventSource",
    "ResponseStream",
    "StreamDecoder",
    # Adapters
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
    # Orchestration and façade
    "CredentialCheck",
    "Driver",
    "FunctionCallingOrchestrator",
    "FunctionExecutor",
    "HealthStatus",
    "SyncResult",
    # Utilities
    "detect_provider",
]
