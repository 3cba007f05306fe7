"""
wallbounce: multi-provider LLM orchestration and consensus scoring.

Fans a request out to several independent providers (CLI subprocess, SDK or
HTTP), isolates each behind a circuit breaker, and reconciles their answers
into one quality-scored result.

Example:
    >>> from wallbounce import Orchestrator, AnalysisRequest, WallbounceConfig
    >>> config = WallbounceConfig.from_env()
    >>> orchestrator = Orchestrator.from_config(config)
    >>> result = orchestrator.execute(AnalysisRequest.create("Explain CAP", tier="premium"))
    >>> result.confidence
    0.91
"""

from wallbounce.config import WallbounceConfig
from wallbounce.core.errors import (
    ConsensusBelowThresholdError,
    InsufficientProvidersError,
    WallbounceError,
)
from wallbounce.core.models import (
    AnalysisRequest,
    ConsensusResult,
    ExecutionMode,
    InvocationOutcome,
    ProviderInvocationResult,
    TaskTier,
)
from wallbounce.core.orchestrator import Orchestrator

__version__ = "0.4.0"

__all__ = [
    "AnalysisRequest",
    "ConsensusBelowThresholdError",
    "ConsensusResult",
    "ExecutionMode",
    "InsufficientProvidersError",
    "InvocationOutcome",
    "Orchestrator",
    "ProviderInvocationResult",
    "TaskTier",
    "WallbounceConfig",
    "WallbounceError",
    "__version__",
]
