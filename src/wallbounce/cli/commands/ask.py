"""Request execution and provider inspection commands."""

import logging
from typing import Optional, Tuple

import click

from wallbounce.cli.config import CLIContext
from wallbounce.cli.output import emit_error, emit_success
from wallbounce.core.errors import (
    ConsensusBelowThresholdError,
    InsufficientProvidersError,
    ProviderConfigurationError,
    SessionError,
    WallbounceError,
)
from wallbounce.core.models import AnalysisRequest, ExecutionMode, TaskTier

logger = logging.getLogger(__name__)


def _context(ctx: click.Context) -> CLIContext:
    return ctx.obj["cli_context"]


@click.command("ask")
@click.argument("prompt")
@click.option(
    "--tier",
    type=click.Choice([tier.value for tier in TaskTier]),
    default=TaskTier.BASIC.value,
    show_default=True,
    help="Task tier controlling provider counts and thresholds.",
)
@click.option(
    "--mode",
    type=click.Choice([mode.value for mode in ExecutionMode]),
    default=None,
    help="Parallel opinions or a sequential refinement chain.",
)
@click.option("--depth", type=int, default=None, help="Sequential chain depth (3-5).")
@click.option("--session", "session_id", default=None, help="Session to continue.")
@click.option("--owner", default=None, help="Owner tag for session ownership.")
@click.option(
    "--provider",
    "providers",
    multiple=True,
    help="Restrict to these provider ids (repeatable).",
)
@click.option("--timeout", type=float, default=None, help="Request deadline in seconds.")
@click.pass_context
def ask_cmd(
    ctx: click.Context,
    prompt: str,
    tier: str,
    mode: Optional[str],
    depth: Optional[int],
    session_id: Optional[str],
    owner: Optional[str],
    providers: Tuple[str, ...],
    timeout: Optional[float],
) -> None:
    """Send PROMPT to several providers and print the integrated answer."""
    cli_ctx = _context(ctx)
    try:
        config = cli_ctx.config
        config.setup_logging()
        orchestrator = cli_ctx.orchestrator
        request = AnalysisRequest.create(
            prompt,
            tier=tier,
            timeout=timeout if timeout is not None else config.orchestrator.default_timeout,
            mode=mode or config.orchestrator.default_mode,
            depth=depth,
            session_id=session_id,
            owner=owner,
            providers=providers or None,
        )
        result = orchestrator.execute(request)
    except InsufficientProvidersError as exc:
        emit_error(
            str(exc),
            "INSUFFICIENT_PROVIDERS",
            details={
                "required": exc.required,
                "succeeded": exc.succeeded,
                "invocations": [r.to_dict() for r in exc.results],
            },
        )
    except ConsensusBelowThresholdError as exc:
        emit_error(str(exc), "CONSENSUS_BELOW_THRESHOLD", details={"result": exc.result.to_dict()})
    except SessionError as exc:
        emit_error(str(exc), "SESSION_ERROR")
    except (ProviderConfigurationError, ValueError) as exc:
        emit_error(str(exc), "CONFIGURATION_ERROR")
    except WallbounceError as exc:
        logger.exception("Request failed")
        emit_error(str(exc), "WALLBOUNCE_ERROR")

    emit_success(result.to_dict(), meta={"request_id": result.request_id})


@click.command("providers")
@click.pass_context
def providers_cmd(ctx: click.Context) -> None:
    """List configured providers with circuit state and availability."""
    cli_ctx = _context(ctx)
    try:
        rows = cli_ctx.orchestrator.registry.describe()
    except (ProviderConfigurationError, ValueError) as exc:
        emit_error(str(exc), "CONFIGURATION_ERROR")
    emit_success({"providers": rows, "count": len(rows)})
