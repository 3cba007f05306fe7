"""Response cache management commands."""

import click

from wallbounce.cli.output import emit_error, emit_success


@click.group("cache")
def cache() -> None:
    """Response cache management."""


@cache.command("stats")
@click.pass_context
def cache_stats_cmd(ctx: click.Context) -> None:
    """Show backend, entry count and hit statistics."""
    cli_ctx = ctx.obj["cli_context"]
    try:
        stats = cli_ctx.cache.stats()
    except ValueError as exc:
        emit_error(str(exc), "CONFIGURATION_ERROR")
    emit_success({"enabled": cli_ctx.config.cache.enabled, **stats})


@cache.command("sweep")
@click.pass_context
def cache_sweep_cmd(ctx: click.Context) -> None:
    """Remove expired entries now."""
    cli_ctx = ctx.obj["cli_context"]
    try:
        removed = cli_ctx.cache.sweep()
    except (ValueError, OSError) as exc:
        emit_error(str(exc), "CACHE_ERROR")
    emit_success({"removed": removed})


@cache.command("clear")
@click.pass_context
def cache_clear_cmd(ctx: click.Context) -> None:
    """Remove every cache entry."""
    cli_ctx = ctx.obj["cli_context"]
    try:
        removed = cli_ctx.cache.clear()
    except (ValueError, OSError) as exc:
        emit_error(str(exc), "CACHE_ERROR")
    emit_success({"removed": removed})
