"""
Provider adapters and registry.

Adapters wrap one external generator each: CLI subprocess (claude, codex,
gemini), HTTP (OpenAI-compatible chat completions) or an in-process SDK
client. The registry builds them from configuration and guards each with a
circuit breaker.
"""

from wallbounce.core.providers.base import (
    CostClass,
    InvocationKind,
    ProviderContext,
    ProviderDescriptor,
    ProviderHooks,
    ProviderMetadata,
    ProviderRequest,
    ProviderResult,
    ProviderStatus,
    TokenUsage,
    TrustClass,
)
from wallbounce.core.providers.registry import (
    ProviderRegistry,
    available_adapters,
    register_adapter,
    register_lazy_adapter,
)

__all__ = [
    "CostClass",
    "InvocationKind",
    "ProviderContext",
    "ProviderDescriptor",
    "ProviderHooks",
    "ProviderMetadata",
    "ProviderRegistry",
    "ProviderRequest",
    "ProviderResult",
    "ProviderStatus",
    "TokenUsage",
    "TrustClass",
    "available_adapters",
    "register_adapter",
    "register_lazy_adapter",
]
