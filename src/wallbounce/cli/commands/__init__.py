"""CLI command groups."""

import click

from wallbounce.cli.commands.ask import ask_cmd, providers_cmd
from wallbounce.cli.commands.cache import cache
from wallbounce.cli.commands.session import session


def register_all_commands(group: click.Group) -> None:
    group.add_command(ask_cmd)
    group.add_command(providers_cmd)
    group.add_command(cache)
    group.add_command(session)


__all__ = ["register_all_commands"]
