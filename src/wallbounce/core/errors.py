"""
Error taxonomy for wallbounce.

Provider-level errors are raised by adapters and breaker checks and are always
recovered by the orchestrator, which folds them into the per-request result
set. Only request-level errors (InsufficientProvidersError and, when a tier
forbids low-confidence answers, ConsensusBelowThresholdError) reach callers of
``Orchestrator.execute``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional, Sequence

if TYPE_CHECKING:
    from wallbounce.core.models import ConsensusResult, ProviderInvocationResult


class WallbounceError(Exception):
    """Base class for every error raised by wallbounce."""


# =============================================================================
# Provider-level errors (recovered locally)
# =============================================================================


class ProviderError(WallbounceError):
    """Base exception for provider orchestration errors."""

    def __init__(self, message: Optional[str] = None, *, provider: Optional[str] = None):
        self.provider = provider
        super().__init__(message or "Provider error")


class ProviderUnavailableError(ProviderError):
    """Raised when a provider cannot be instantiated (binary missing, credentials absent)."""


class ProviderInvocationError(ProviderError):
    """Raised when a provider invocation fails (non-zero exit, bad payload, HTTP error)."""


class ProviderTimeoutError(ProviderError):
    """Raised when a provider exceeds its allotted deadline."""


class CircuitOpenError(ProviderError):
    """Raised when a provider's circuit breaker refuses an invocation attempt."""

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        provider: Optional[str] = None,
        state: str = "open",
        retry_after: Optional[float] = None,
    ):
        super().__init__(message or f"Circuit open for provider '{provider}'", provider=provider)
        self.state = state
        self.retry_after = retry_after


class ProviderConfigurationError(WallbounceError):
    """Raised when the provider catalog is inconsistent (bad adapter, trust-class violation)."""


# =============================================================================
# Request-level errors (propagate to callers)
# =============================================================================


class InsufficientProvidersError(WallbounceError):
    """Fewer providers than the tier minimum produced a successful response."""

    def __init__(
        self,
        message: str,
        *,
        required: int,
        succeeded: int,
        results: Sequence["ProviderInvocationResult"] = (),
    ):
        super().__init__(message)
        self.required = required
        self.succeeded = succeeded
        self.results = tuple(results)


class ConsensusBelowThresholdError(WallbounceError):
    """Escalation was exhausted and the tier forbids returning a low-confidence result."""

    def __init__(self, message: str, *, result: "ConsensusResult"):
        super().__init__(message)
        self.result = result


# =============================================================================
# Session errors
# =============================================================================


class SessionError(WallbounceError):
    """Base class for session store errors."""


class SessionNotFoundError(SessionError):
    """Raised when a session does not exist or has expired."""

    def __init__(self, session_id: str):
        super().__init__(f"Session '{session_id}' not found or expired")
        self.session_id = session_id


class SessionLimitExceededError(SessionError):
    """Raised when an owner is at the session limit and the policy is to reject."""

    def __init__(self, owner: str, limit: int):
        super().__init__(f"Owner '{owner}' already holds {limit} active sessions")
        self.owner = owner
        self.limit = limit


__all__ = [
    "CircuitOpenError",
    "ConsensusBelowThresholdError",
    "InsufficientProvidersError",
    "ProviderConfigurationError",
    "ProviderError",
    "ProviderInvocationError",
    "ProviderTimeoutError",
    "ProviderUnavailableError",
    "SessionError",
    "SessionLimitExceededError",
    "SessionNotFoundError",
    "WallbounceError",
]
