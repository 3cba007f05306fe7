"""
Shared test doubles.

Scripted provider doubles, registry/descriptor builders and a manual clock so
orchestration tests run without any CLI, network or Redis.
"""

import threading
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from wallbounce.config import WallbounceConfig
from wallbounce.core.errors import ProviderInvocationError, ProviderTimeoutError
from wallbounce.core.providers.base import (
    CostClass,
    InvocationKind,
    ProviderContext,
    ProviderDescriptor,
    ProviderMetadata,
    ProviderRequest,
    ProviderResult,
    TokenUsage,
    TrustClass,
)
from wallbounce.core.providers.registry import ProviderRegistry


# =============================================================================
# Provider doubles
# =============================================================================


class ScriptedProvider(ProviderContext):
    """
    Provider double returning a fixed answer.

    Args:
        provider_id: Provider id the double reports under
        text: Response content
        error: Exception raised instead of answering
        gate: Event the call blocks on before answering (deadline tests)
        truncated: Report the response as length-truncated
    """

    invocation_kind = InvocationKind.SUBPROCESS

    def __init__(
        self,
        provider_id: str,
        text: str = "",
        *,
        error: Optional[Exception] = None,
        gate: Optional[threading.Event] = None,
        truncated: bool = False,
    ):
        super().__init__(ProviderMetadata(provider_id=provider_id))
        self.text = text
        self.error = error
        self.gate = gate
        self.truncated = truncated
        self.requests: List[ProviderRequest] = []
        self._lock = threading.Lock()

    @property
    def calls(self) -> int:
        with self._lock:
            return len(self.requests)

    def _execute(self, request: ProviderRequest) -> ProviderResult:
        with self._lock:
            self.requests.append(request)
        if self.gate is not None:
            self.gate.wait(timeout=5.0)
        if self.error is not None:
            raise self.error
        return ProviderResult(
            content=self.text,
            provider_id=self.provider_id,
            model_used=f"{self.provider_id}:test",
            tokens=TokenUsage(input_tokens=10, output_tokens=20),
            truncated=self.truncated,
        )


class ScriptedSdkProvider(ScriptedProvider):
    invocation_kind = InvocationKind.SDK


class ScriptedHttpProvider(ScriptedProvider):
    invocation_kind = InvocationKind.HTTP


def failing(provider_id: str) -> ScriptedProvider:
    return ScriptedProvider(provider_id, error=ProviderInvocationError("boom", provider=provider_id))


def timing_out(provider_id: str) -> ScriptedProvider:
    return ScriptedProvider(provider_id, error=ProviderTimeoutError("too slow", provider=provider_id))


def make_descriptor(
    provider_id: str,
    *,
    kind: InvocationKind = InvocationKind.SUBPROCESS,
    tiers: Iterable[str] = ("basic", "premium", "critical"),
    priority: int = 100,
    trust_weight: float = 1.0,
    trust_class: TrustClass = TrustClass.OPEN,
    cost_class: CostClass = CostClass.STANDARD,
    fallback: bool = False,
    max_concurrency: int = 2,
) -> ProviderDescriptor:
    return ProviderDescriptor(
        provider_id=provider_id,
        adapter=f"test-{kind.value}",
        invocation_kind=kind,
        trust_class=trust_class,
        trust_weight=trust_weight,
        cost_class=cost_class,
        max_concurrency=max_concurrency,
        priority=priority,
        tiers=frozenset(tiers),
        fallback=fallback,
    )


def build_registry(
    entries: Sequence[Tuple[ProviderDescriptor, ProviderContext]],
    config: Optional[WallbounceConfig] = None,
    **kwargs,
) -> ProviderRegistry:
    return ProviderRegistry(
        list(entries),
        breaker_config=(config or WallbounceConfig()).circuit_breaker,
        **kwargs,
    )


def providers_in_order(adapters: Sequence[ScriptedProvider], **descriptor_kwargs) -> List[Tuple[ProviderDescriptor, ProviderContext]]:
    """Descriptors with ascending priority matching the adapter order."""
    return [
        (make_descriptor(adapter.provider_id, priority=(index + 1) * 10, kind=adapter.invocation_kind, **descriptor_kwargs), adapter)
        for index, adapter in enumerate(adapters)
    ]


# =============================================================================
# Clock
# =============================================================================


class ManualClock:
    """Callable clock advanced explicitly by tests."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


NEAR_IDENTICAL_BASE = (
    "the service should cache responses for five minutes and retry failed "
    "calls with exponential backoff before opening the circuit breaker"
)

NEAR_IDENTICAL: Dict[str, str] = {
    "alpha": NEAR_IDENTICAL_BASE,
    "beta": NEAR_IDENTICAL_BASE + " today",
    "gamma": NEAR_IDENTICAL_BASE + " safely",
}
