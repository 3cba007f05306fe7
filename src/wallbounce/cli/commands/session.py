"""Session inspection commands."""

from typing import Optional

import click

from wallbounce.cli.output import emit_error, emit_success
from wallbounce.core.errors import SessionError


@click.group("session")
def session() -> None:
    """Conversation session management."""


@session.command("show")
@click.argument("session_id")
@click.pass_context
def session_show_cmd(ctx: click.Context, session_id: str) -> None:
    """Print a session and its turns."""
    cli_ctx = ctx.obj["cli_context"]
    try:
        record = cli_ctx.sessions.get(session_id)
    except (SessionError, ValueError) as exc:
        emit_error(str(exc), "SESSION_ERROR")
    if record is None:
        emit_error(f"Session '{session_id}' not found or expired", "NOT_FOUND")
    emit_success({"session": record.model_dump(mode="json")})


@session.command("list")
@click.option("--owner", default=None, help="Owner tag (defaults to anonymous).")
@click.pass_context
def session_list_cmd(ctx: click.Context, owner: Optional[str]) -> None:
    """List live sessions of an owner, oldest first."""
    cli_ctx = ctx.obj["cli_context"]
    owner = owner or "anonymous"
    try:
        records = cli_ctx.sessions.list_for_owner(owner)
    except (SessionError, ValueError) as exc:
        emit_error(str(exc), "SESSION_ERROR")
    emit_success(
        {
            "owner": owner,
            "sessions": [
                {
                    "session_id": record.session_id,
                    "conversation_id": record.conversation_id,
                    "turns": len(record.turns),
                    "created_at": record.created_at,
                    "expires_at": record.expires_at,
                }
                for record in records
            ],
        }
    )


@session.command("delete")
@click.argument("session_id")
@click.pass_context
def session_delete_cmd(ctx: click.Context, session_id: str) -> None:
    """Delete a session."""
    cli_ctx = ctx.obj["cli_context"]
    try:
        deleted = cli_ctx.sessions.expire(session_id)
    except (SessionError, ValueError) as exc:
        emit_error(str(exc), "SESSION_ERROR")
    if not deleted:
        emit_error(f"Session '{session_id}' not found", "NOT_FOUND")
    emit_success({"session_id": session_id, "deleted": True})
