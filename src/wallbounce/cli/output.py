"""JSON output helpers for the wallbounce CLI.

This module is the sole output mechanism for the CLI. Success envelopes go
to stdout, error envelopes to stderr, and errors exit with status 1.

Envelope:
    {"success": bool, "data": {...}, "error": str | null, "meta": {...}}
"""

import json
import sys
from typing import Any, Dict, Mapping, NoReturn, Optional

from wallbounce.core.context import generate_correlation_id, get_correlation_id

RESPONSE_VERSION = "wallbounce-response-v1"


def _meta(extra: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    meta: Dict[str, Any] = {
        "version": RESPONSE_VERSION,
        "request_id": get_correlation_id() or generate_correlation_id("cli"),
    }
    if extra:
        meta.update(extra)
    return meta


def emit(data: Any, *, stream: Any = None) -> None:
    """Emit minified JSON."""
    print(json.dumps(data, separators=(",", ":"), default=str), file=stream or sys.stdout)


def emit_success(data: Any, *, meta: Optional[Mapping[str, Any]] = None) -> None:
    """Emit a success envelope to stdout. Non-dict payloads are wrapped in ``result``."""
    payload = data if isinstance(data, dict) else {"result": data}
    emit({"success": True, "data": payload, "error": None, "meta": _meta(meta)})


def emit_error(
    message: str,
    code: str = "INTERNAL_ERROR",
    *,
    details: Optional[Mapping[str, Any]] = None,
) -> NoReturn:
    """Emit an error envelope to stderr and exit with code 1.

    Args:
        message: Human-readable error description
        code: Error code in SCREAMING_SNAKE_CASE
        details: Optional structured context

    Raises:
        SystemExit: Always exits with code 1.
    """
    envelope = {
        "success": False,
        "data": {"error_code": code, **(dict(details) if details else {})},
        "error": message,
        "meta": _meta(),
    }
    emit(envelope, stream=sys.stderr)
    sys.exit(1)
