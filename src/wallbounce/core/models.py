"""
Value types flowing through the orchestrator and consensus engine.

All of these are frozen dataclasses: a request is created once at the
orchestration boundary, every provider invocation yields one immutable
ProviderInvocationResult, and the consensus engine produces exactly one
ConsensusResult per request.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Sequence, Tuple, Union

from wallbounce.core.context import generate_correlation_id
from wallbounce.core.providers.base import InvocationKind, TokenUsage


class TaskTier(str, Enum):
    """Request quality class controlling provider count and thresholds."""

    BASIC = "basic"
    PREMIUM = "premium"
    CRITICAL = "critical"


class ExecutionMode(str, Enum):
    """Parallel independent opinions or a sequential refinement chain."""

    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"


class InvocationOutcome(str, Enum):
    """Outcome of one provider invocation attempt."""

    SUCCESS = "success"
    TIMEOUT = "timeout"
    ERROR = "error"
    CIRCUIT_OPEN = "circuit_open"


class QualityLevel(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# =============================================================================
# Request
# =============================================================================


@dataclass(frozen=True)
class AnalysisRequest:
    """
    Immutable request handed to ``Orchestrator.execute``.

    Attributes:
        prompt: Natural-language request text
        tier: Task tier (basic | premium | critical)
        session_id: Optional session to continue
        providers: Optional explicit provider allow-list
        deadline: Absolute epoch-seconds deadline (None = orchestrator default)
        mode: Parallel fan-out or sequential chain
        depth: Sequential chain depth (3-5)
        owner: Owner/user tag for session ownership
        invocation_paths: Invocation kinds the caller permits (None = all)
        system_prompt: Optional system prompt passed to every provider
        temperature: Optional sampling temperature
        max_tokens: Optional output token limit
        request_id: Correlation id for logs, events and session turns
    """

    prompt: str
    tier: TaskTier = TaskTier.BASIC
    session_id: Optional[str] = None
    providers: Optional[Tuple[str, ...]] = None
    deadline: Optional[float] = None
    mode: ExecutionMode = ExecutionMode.PARALLEL
    depth: Optional[int] = None
    owner: Optional[str] = None
    invocation_paths: Optional[FrozenSet[InvocationKind]] = None
    system_prompt: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    request_id: str = field(default_factory=generate_correlation_id)
    created_at: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        if not isinstance(self.prompt, str) or not self.prompt.strip():
            raise ValueError("AnalysisRequest.prompt must be a non-empty string")
        object.__setattr__(self, "tier", TaskTier(self.tier))
        object.__setattr__(self, "mode", ExecutionMode(self.mode))
        if self.providers is not None:
            object.__setattr__(self, "providers", tuple(self.providers))
        if self.invocation_paths is not None:
            object.__setattr__(
                self,
                "invocation_paths",
                frozenset(InvocationKind(kind) for kind in self.invocation_paths),
            )

    @classmethod
    def create(
        cls,
        prompt: str,
        *,
        tier: Union[TaskTier, str] = TaskTier.BASIC,
        timeout: Optional[float] = None,
        **kwargs: Any,
    ) -> "AnalysisRequest":
        """Build a request whose deadline is ``timeout`` seconds from now."""
        deadline = time.time() + timeout if timeout is not None else None
        return cls(prompt=prompt, tier=TaskTier(tier), deadline=deadline, **kwargs)

    def parameters(self) -> Dict[str, Any]:
        """Generation parameters that participate in the cache key."""
        return {
            "system_prompt": self.system_prompt,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }


# =============================================================================
# Invocation results
# =============================================================================


@dataclass(frozen=True)
class ProviderInvocationResult:
    """
    Outcome of one provider invocation within a single request.

    Cache hits carry ``cache_hit=True`` and zero latency. Circuit-open skips
    carry outcome CIRCUIT_OPEN and were never sent to the provider.
    """

    provider_id: str
    outcome: InvocationOutcome
    text: str = ""
    latency_ms: float = 0.0
    tokens: TokenUsage = field(default_factory=TokenUsage)
    cost_estimate: float = 0.0
    timestamp: float = field(default_factory=time.time)
    model: Optional[str] = None
    error: Optional[str] = None
    cache_hit: bool = False
    truncated: bool = False
    step: int = 0
    round: int = 0

    @property
    def succeeded(self) -> bool:
        return self.outcome is InvocationOutcome.SUCCESS and bool(self.text.strip())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider_id": self.provider_id,
            "outcome": self.outcome.value,
            "latency_ms": self.latency_ms,
            "tokens": self.tokens.effective_total,
            "cost_estimate": self.cost_estimate,
            "timestamp": self.timestamp,
            "model": self.model,
            "error": self.error,
            "cache_hit": self.cache_hit,
            "truncated": self.truncated,
            "step": self.step,
            "round": self.round,
        }


# =============================================================================
# Consensus
# =============================================================================


@dataclass(frozen=True)
class ProviderContribution:
    """Per-provider scoring inside a ConsensusResult."""

    provider_id: str
    weight: float
    confidence: float
    similarity: float
    outlier: bool = False
    selected: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider_id": self.provider_id,
            "weight": round(self.weight, 4),
            "confidence": round(self.confidence, 4),
            "similarity": round(self.similarity, 4),
            "outlier": self.outlier,
            "selected": self.selected,
        }


@dataclass(frozen=True)
class ConsensusResult:
    """
    The single integrated answer for one request, plus its scoring metadata.

    ``escalated`` is set whenever the quality thresholds were unmet, whether or
    not an escalation round could actually add providers. ``thresholds_met``
    reflects the final scores.
    """

    answer: str
    confidence: float
    agreement: float
    contributions: Tuple[ProviderContribution, ...]
    escalated: bool
    thresholds_met: bool
    quality: QualityLevel = QualityLevel.LOW
    unanimous: bool = False
    reasoning: str = ""
    selected_provider: Optional[str] = None
    aggregator_id: Optional[str] = None
    tier: Optional[TaskTier] = None
    mode: ExecutionMode = ExecutionMode.PARALLEL
    escalation_rounds: int = 0
    invocations: Tuple[ProviderInvocationResult, ...] = ()
    request_id: Optional[str] = None
    session_id: Optional[str] = None
    duration_ms: float = 0.0

    @property
    def providers_used(self) -> Tuple[str, ...]:
        return tuple(contribution.provider_id for contribution in self.contributions)

    @property
    def total_tokens(self) -> int:
        return sum(inv.tokens.effective_total for inv in self.invocations)

    @property
    def total_cost(self) -> float:
        return round(sum(inv.cost_estimate for inv in self.invocations), 6)

    def outcomes(self) -> Dict[str, str]:
        """Last recorded outcome per provider id."""
        return {inv.provider_id: inv.outcome.value for inv in self.invocations}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "session_id": self.session_id,
            "answer": self.answer,
            "confidence": round(self.confidence, 4),
            "agreement": round(self.agreement, 4),
            "quality": self.quality.value,
            "unanimous": self.unanimous,
            "escalated": self.escalated,
            "thresholds_met": self.thresholds_met,
            "escalation_rounds": self.escalation_rounds,
            "tier": self.tier.value if self.tier else None,
            "mode": self.mode.value,
            "selected_provider": self.selected_provider,
            "aggregator_id": self.aggregator_id,
            "reasoning": self.reasoning,
            "contributions": [c.to_dict() for c in self.contributions],
            "invocations": [inv.to_dict() for inv in self.invocations],
            "total_tokens": self.total_tokens,
            "total_cost": self.total_cost,
            "duration_ms": round(self.duration_ms, 2),
        }


def successful(results: Sequence[ProviderInvocationResult]) -> Tuple[ProviderInvocationResult, ...]:
    """Filter to results that can feed the consensus engine."""
    return tuple(result for result in results if result.succeeded)
