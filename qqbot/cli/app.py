"""CLI application: Click-based command hierarchy for the QQ Bot channel.

The main CLI group and global flags. Subcommand modules register
themselves by importing and adding to the group.
"""

from __future__ import annotations

import asyncio
import functools
from pathlib import Path
from typing import Any, Optional

import click

from qqbot import __version__


def async_cmd(func):
    """Decorator to run an async Click command via asyncio.run()."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        return asyncio.run(func(*args, **kwargs))

    return wrapper


def config_path(ctx: click.Context) -> Path:
    """The host config file for this invocation (may not exist yet)."""
    from qqbot.config_file import default_config_path, find_config

    explicit: Optional[Path] = ctx.obj.get("config_path")
    if explicit is not None:
        return explicit
    return find_config() or default_config_path()


@click.group()
@click.option(
    "--config",
    "config_file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to qqbot.toml (default: ./qqbot.toml, then ~/.config/qqbot/qqbot.toml)",
)
@click.option("--json", "json_output", is_flag=True, help="Structured JSON output")
@click.option("--verbose", "-v", is_flag=True, help="Log at INFO level")
@click.option("--debug", is_flag=True, help="Log at DEBUG level")
@click.option("--no-color", is_flag=True, help="Disable ANSI colors")
@click.version_option(__version__, prog_name="qqbot")
@click.pass_context
def cli(
    ctx: click.Context,
    config_file: Optional[Path],
    json_output: bool,
    verbose: bool,
    debug: bool,
    no_color: bool,
) -> None:
    """QQ Bot channel: account setup, messaging and gateway runner."""
    from qqbot.main import configure_logging

    configure_logging("DEBUG" if debug else "INFO" if verbose else None)
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_file
    ctx.obj["json"] = json_output
    ctx.obj["no_color"] = no_color


# ---------------------------------------------------------------------------
# Register subcommand modules
# ---------------------------------------------------------------------------

def _register_subcommands() -> None:
    """Import and register all subcommand groups/commands."""
    from qqbot.cli.accounts import accounts_group
    from qqbot.cli.messaging import run_cmd, send_cmd
    from qqbot.cli.setup_cmd import disable_cmd, init_cmd, setup_cmd

    cli.add_command(accounts_group)
    cli.add_command(setup_cmd)
    cli.add_command(disable_cmd)
    cli.add_command(init_cmd)
    cli.add_command(send_cmd)
    cli.add_command(run_cmd)


_register_subcommands()
