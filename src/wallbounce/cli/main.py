"""wallbounce CLI entry point.

JSON-only output.
"""

from typing import Optional

import click

from wallbounce.cli.commands import register_all_commands
from wallbounce.cli.config import CLIContext


@click.group()
@click.option(
    "--config",
    "config_file",
    envvar="WALLBOUNCE_CONFIG",
    type=click.Path(exists=False, dir_okay=False),
    help="Path to wallbounce.toml",
)
@click.pass_context
def cli(ctx: click.Context, config_file: Optional[str]) -> None:
    """wallbounce - multi-provider LLM consensus.

    All commands output JSON.
    """
    ctx.ensure_object(dict)
    if "cli_context" not in ctx.obj:
        ctx.obj["cli_context"] = CLIContext(config_file=config_file)


register_all_commands(cli)


if __name__ == "__main__":
    cli()
