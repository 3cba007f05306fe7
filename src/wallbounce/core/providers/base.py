"""
Base provider abstractions for wallbounce.

Every backend (CLI subprocess, in-process SDK, HTTP API) is wrapped in a
ProviderContext so the orchestrator can treat all of them uniformly. The
invocation kind of an adapter is fixed at class level and checked against the
provider's trust class when the registry is built.

Design principles:
- Frozen dataclasses for immutability
- A small closed set of invocation kinds resolved at registry-build time
- Status codes aligned with invocation outcomes
- Error hierarchy for granular exception handling (see wallbounce.core.errors)
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Optional, Sequence

from wallbounce.core.errors import (
    CircuitOpenError,
    ProviderConfigurationError,
    ProviderError,
    ProviderInvocationError,
    ProviderTimeoutError,
    ProviderUnavailableError,
)

logger = logging.getLogger(__name__)


class InvocationKind(Enum):
    """How an adapter reaches its backend."""

    SUBPROCESS = "subprocess"
    SDK = "sdk"
    HTTP = "http"


class TrustClass(Enum):
    """
    Invocation-path policy attached to a provider.

    Values:
        OPEN: May be invoked through any path
        CLI_ONLY: Must only ever be invoked through its CLI subprocess
        INTERNAL_SDK_ONLY: Must only ever be invoked through the in-process SDK
    """

    OPEN = "open"
    CLI_ONLY = "cli_only"
    INTERNAL_SDK_ONLY = "internal_sdk_only"

    def permits(self, kind: InvocationKind) -> bool:
        if self is TrustClass.CLI_ONLY:
            return kind is InvocationKind.SUBPROCESS
        if self is TrustClass.INTERNAL_SDK_ONLY:
            return kind is InvocationKind.SDK
        return True


class CostClass(Enum):
    """Relative cost tier of a provider; also feeds the consensus prior."""

    LOW = "low"
    STANDARD = "standard"
    PREMIUM = "premium"

    @property
    def prior(self) -> float:
        return _COST_CLASS_PRIORS[self]

    @property
    def rate_per_1k_tokens(self) -> float:
        return _COST_CLASS_RATES[self]


_COST_CLASS_PRIORS = {
    CostClass.LOW: 0.8,
    CostClass.STANDARD: 0.9,
    CostClass.PREMIUM: 1.0,
}

# Nominal USD per 1k tokens, used only for the per-invocation estimate.
_COST_CLASS_RATES = {
    CostClass.LOW: 0.0005,
    CostClass.STANDARD: 0.002,
    CostClass.PREMIUM: 0.01,
}


class ProviderStatus(Enum):
    """
    Normalized execution outcomes emitted by providers.

    Values:
        SUCCESS: Operation completed successfully
        TIMEOUT: Operation exceeded time limit
        NOT_FOUND: Provider binary/credentials not available
        INVALID_OUTPUT: Provider returned malformed response
        ERROR: Generic error during execution
    """

    SUCCESS = "success"
    TIMEOUT = "timeout"
    NOT_FOUND = "not_found"
    INVALID_OUTPUT = "invalid_output"
    ERROR = "error"


@dataclass(frozen=True)
class ProviderRequest:
    """
    Normalized request payload for provider execution.

    Attributes:
        prompt: The fully assembled prompt text
        system_prompt: Optional system/instruction prompt
        context: Optional prior output or continuation context
        model: Model override (provider-specific)
        timeout: Seconds the provider may spend (None = provider default)
        temperature: Sampling temperature (None = provider default)
        max_tokens: Maximum output tokens (None = provider default)
        metadata: Arbitrary request metadata (request id, chain step, ...)
    """

    prompt: str
    system_prompt: Optional[str] = None
    context: Optional[str] = None
    model: Optional[str] = None
    timeout: Optional[float] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def full_prompt(self) -> str:
        """Prompt with any context block prepended."""
        if not self.context:
            return self.prompt
        return f"{self.context.strip()}\n\n{self.prompt}"


@dataclass(frozen=True)
class TokenUsage:
    """Token accounting information reported by providers."""

    input_tokens: int = 0
    output_tokens: int = 0
    cached_input_tokens: int = 0
    total_tokens: int = 0

    @property
    def effective_total(self) -> int:
        return self.total_tokens or (self.input_tokens + self.output_tokens)


@dataclass(frozen=True)
class ProviderResult:
    """
    Normalized provider response.

    Attributes:
        content: Final text output
        provider_id: Configured provider identifier
        model_used: Fully-qualified model identifier (e.g., "gemini:pro")
        status: ProviderStatus describing execution outcome
        tokens: Token usage data (if reported by provider)
        duration_ms: Execution duration in milliseconds
        truncated: True when the backend stopped on its length limit
        stderr: Captured stderr/log output for debugging
        raw_payload: Provider-specific metadata
    """

    content: str
    provider_id: str
    model_used: str
    status: ProviderStatus = ProviderStatus.SUCCESS
    tokens: TokenUsage = field(default_factory=TokenUsage)
    duration_ms: Optional[float] = None
    truncated: bool = False
    stderr: Optional[str] = None
    raw_payload: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProviderMetadata:
    """
    Adapter-level metadata shared with the registry.

    Attributes:
        provider_id: Identifier the adapter reports under
        display_name: Human-friendly provider name
        models: Supported model identifiers (empty = any)
        default_model: Model used when no override is supplied
        extra: Arbitrary metadata (cli name, output format, ...)
    """

    provider_id: str
    display_name: Optional[str] = None
    models: Sequence[str] = field(default_factory=tuple)
    default_model: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ProviderDescriptor:
    """
    Registry-owned description of one configured provider.

    Read-only to everything outside the registry.
    """

    provider_id: str
    adapter: str
    invocation_kind: InvocationKind
    trust_class: TrustClass = TrustClass.OPEN
    trust_weight: float = 1.0
    cost_class: CostClass = CostClass.STANDARD
    max_concurrency: int = 2
    priority: int = 100
    tiers: FrozenSet[str] = field(default_factory=frozenset)
    fallback: bool = False
    model: Optional[str] = None
    timeout: Optional[float] = None
    display_name: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.trust_class.permits(self.invocation_kind):
            raise ProviderConfigurationError(
                f"Provider '{self.provider_id}' is {self.trust_class.value} but its "
                f"adapter '{self.adapter}' invokes via {self.invocation_kind.value}"
            )
        if not 0.0 < self.trust_weight <= 1.0:
            raise ProviderConfigurationError(
                f"Provider '{self.provider_id}' trust_weight must be in (0, 1]"
            )
        if self.max_concurrency < 1:
            raise ProviderConfigurationError(
                f"Provider '{self.provider_id}' max_concurrency must be >= 1"
            )

    @property
    def prior(self) -> float:
        """Consensus prior: configured trust weight scaled by cost class."""
        return self.trust_weight * self.cost_class.prior

    def estimate_cost(self, tokens: TokenUsage) -> float:
        return round(tokens.effective_total / 1000.0 * self.cost_class.rate_per_1k_tokens, 6)

    def serves(self, tier: str) -> bool:
        return not self.tiers or tier in self.tiers

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.provider_id,
            "adapter": self.adapter,
            "invocation_kind": self.invocation_kind.value,
            "trust_class": self.trust_class.value,
            "trust_weight": self.trust_weight,
            "cost_class": self.cost_class.value,
            "max_concurrency": self.max_concurrency,
            "priority": self.priority,
            "tiers": sorted(self.tiers),
            "fallback": self.fallback,
            "model": self.model,
        }


BeforeExecuteHook = Callable[[ProviderRequest, ProviderMetadata], None]
AfterResultHook = Callable[[ProviderResult], None]


@dataclass
class ProviderHooks:
    """Optional lifecycle callbacks invoked around every generation."""

    before_execute: Optional[BeforeExecuteHook] = None
    after_result: Optional[AfterResultHook] = None

    def emit_before(self, request: ProviderRequest, metadata: ProviderMetadata) -> None:
        if self.before_execute is not None:
            self.before_execute(request, metadata)

    def emit_after(self, result: ProviderResult) -> None:
        if self.after_result is not None:
            self.after_result(result)


class ProviderContext(ABC):
    """
    Uniform interface wrapping one external generator.

    Subclasses implement ``_execute`` and set ``invocation_kind``. Callers use
    ``generate`` (or the ``invoke`` convenience), which runs hooks, measures
    duration and normalizes unexpected exceptions into ProviderInvocationError.
    """

    invocation_kind: InvocationKind = InvocationKind.SUBPROCESS

    def __init__(self, metadata: ProviderMetadata, hooks: Optional[ProviderHooks] = None):
        self._metadata = metadata
        self._hooks = hooks or ProviderHooks()

    @property
    def metadata(self) -> ProviderMetadata:
        return self._metadata

    @property
    def provider_id(self) -> str:
        return self._metadata.provider_id

    def generate(self, request: ProviderRequest) -> ProviderResult:
        """Execute a request and return a normalized ProviderResult."""
        self._hooks.emit_before(request, self._metadata)
        started = time.perf_counter()
        try:
            result = self._execute(request)
        except ProviderError:
            raise
        except Exception as exc:
            logger.debug("Provider %s raised unexpected error", self.provider_id, exc_info=True)
            raise ProviderInvocationError(
                f"{type(exc).__name__}: {exc}", provider=self.provider_id
            ) from exc

        if result.duration_ms is None:
            result = replace(result, duration_ms=round((time.perf_counter() - started) * 1000, 2))
        self._hooks.emit_after(result)
        return result

    def invoke(
        self,
        prompt: str,
        *,
        context: Optional[str] = None,
        timeout: Optional[float] = None,
        **params: Any,
    ) -> ProviderResult:
        """Convenience wrapper: build a ProviderRequest and generate."""
        return self.generate(ProviderRequest(prompt=prompt, context=context, timeout=timeout, **params))

    @abstractmethod
    def _execute(self, request: ProviderRequest) -> ProviderResult:
        """Perform the backend call. Must raise ProviderError subclasses on failure."""


__all__ = [
    "CircuitOpenError",
    "CostClass",
    "InvocationKind",
    "ProviderConfigurationError",
    "ProviderContext",
    "ProviderDescriptor",
    "ProviderError",
    "ProviderHooks",
    "ProviderInvocationError",
    "ProviderMetadata",
    "ProviderRequest",
    "ProviderResult",
    "ProviderStatus",
    "ProviderTimeoutError",
    "ProviderUnavailableError",
    "TokenUsage",
    "TrustClass",
]
