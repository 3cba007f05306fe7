"""Request context propagation for log correlation.

Every ``Orchestrator.execute`` call runs inside :func:`request_context`, which
sets the correlation id (the request id), the owner tag and the start time as
context variables. Worker threads are handed a copy of the caller's context so
provider log lines carry the same correlation id.

Usage:
    from wallbounce.core.context import request_context, get_correlation_id

    with request_context(correlation_id="req_a1b2c3d4e5f6", owner="alice") as ctx:
        print(ctx.correlation_id)
        print(get_correlation_id())
"""

from __future__ import annotations

import secrets
import time
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any, Dict, Generator, Optional

__all__ = [
    "correlation_id_var",
    "owner_var",
    "start_time_var",
    "RequestContext",
    "generate_correlation_id",
    "request_context",
    "get_correlation_id",
    "get_owner",
    "get_start_time",
    "get_current_context",
]


correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")
"""Correlation ID for the request currently being orchestrated."""

owner_var: ContextVar[str] = ContextVar("owner", default="anonymous")
"""Owner/user tag of the current request."""

start_time_var: ContextVar[float] = ContextVar("start_time", default=0.0)
"""Wall-clock start time of the current request."""


def generate_correlation_id(prefix: str = "req") -> str:
    """Generate a unique correlation ID with optional prefix.

    Format: {prefix}_{12_hex_chars}
    Example: "req_a1b2c3d4e5f6"
    """
    return f"{prefix}_{secrets.token_hex(6)}"


@dataclass
class RequestContext:
    """Snapshot of the current request context.

    Attributes:
        correlation_id: Unique request identifier
        owner: Owner/user tag
        start_time: Request start timestamp
    """

    correlation_id: str = ""
    owner: str = "anonymous"
    start_time: float = field(default_factory=time.time)

    @property
    def elapsed_ms(self) -> float:
        if self.start_time <= 0:
            return 0.0
        return (time.time() - self.start_time) * 1000

    def to_dict(self) -> Dict[str, Any]:
        return {
            "correlation_id": self.correlation_id,
            "owner": self.owner,
            "start_time": self.start_time,
            "elapsed_ms": round(self.elapsed_ms, 2),
        }


@contextmanager
def request_context(
    *,
    correlation_id: Optional[str] = None,
    owner: Optional[str] = None,
) -> Generator[RequestContext, None, None]:
    """Set request context variables for the duration of the with block.

    Args:
        correlation_id: Explicit correlation ID (generated when omitted)
        owner: Owner/user tag (defaults to "anonymous")

    Yields:
        RequestContext describing the active context
    """
    ctx = RequestContext(
        correlation_id=correlation_id or generate_correlation_id(),
        owner=owner or "anonymous",
        start_time=time.time(),
    )
    tokens = (
        correlation_id_var.set(ctx.correlation_id),
        owner_var.set(ctx.owner),
        start_time_var.set(ctx.start_time),
    )
    try:
        yield ctx
    finally:
        correlation_id_var.reset(tokens[0])
        owner_var.reset(tokens[1])
        start_time_var.reset(tokens[2])


def get_correlation_id() -> str:
    """Return the current correlation ID (empty string outside a request)."""
    return correlation_id_var.get()


def get_owner() -> str:
    return owner_var.get()


def get_start_time() -> float:
    return start_time_var.get()


def get_current_context() -> RequestContext:
    """Capture the current context variables as a RequestContext."""
    return RequestContext(
        correlation_id=correlation_id_var.get(),
        owner=owner_var.get(),
        start_time=start_time_var.get(),
    )
