"""Setup commands: setup, disable, init."""

from __future__ import annotations

import click

from qqbot.cli.app import config_path


@click.command("setup")
@click.option("--account", "account_id", default=None, help="Account id (default: default)")
@click.option("--token", default=None, help="Credentials as appId:clientSecret")
@click.option("--token-file", default=None, help="File holding the client secret")
@click.option("--use-env", is_flag=True, help="Use QQBOT_APP_ID / QQBOT_CLIENT_SECRET")
@click.option("--name", default=None, help="Display name for the account")
@click.option("--image-server", "image_server_base_url", default=None, help="Public image server base URL")
@click.pass_context
def setup_cmd(
    ctx: click.Context,
    account_id: str | None,
    token: str | None,
    token_file: str | None,
    use_env: bool,
    name: str | None,
    image_server_base_url: str | None,
) -> None:
    """Add or update a QQ Bot account and enable the channel."""
    from qqbot.config_file import load_config, write_config
    from qqbot.errors import InvalidAccountIdError
    from qqbot.plugin import QQBotChannelPlugin, SetupInput

    setup = SetupInput(
        token=token,
        token_file=token_file,
        use_env=use_env,
        name=name,
        image_server_base_url=image_server_base_url,
    )
    plugin = QQBotChannelPlugin()
    error = plugin.validate_setup_input(setup)
    if error:
        raise click.UsageError(error)

    path = config_path(ctx)
    try:
        updated = plugin.apply_setup(load_config(path), account_id, setup)
    except InvalidAccountIdError as e:
        raise click.BadParameter(str(e), param_hint="--account")
    write_config(path, updated)
    click.echo(f"Saved QQ Bot account {account_id or 'default'} to {path}")


@click.command("disable")
@click.pass_context
def disable_cmd(ctx: click.Context) -> None:
    """Disable the QQ Bot channel (credentials are kept)."""
    from qqbot.accounts import disable_channel
    from qqbot.config_file import load_config, write_config

    path = config_path(ctx)
    if not path.is_file():
        raise click.ClickException(f"No config file at {path}")
    write_config(path, disable_channel(load_config(path)))
    click.echo(f"Disabled QQ Bot channel in {path}")


@click.command("init")
@click.option("--force", is_flag=True, help="Overwrite an existing file")
@click.pass_context
def init_cmd(ctx: click.Context, force: bool) -> None:
    """Write an annotated qqbot.toml template."""
    from qqbot.config_file import generate_template

    path = config_path(ctx)
    if path.exists() and not force:
        raise click.ClickException(f"{path} already exists (use --force to overwrite)")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(generate_template(), encoding="utf-8")
    click.echo(f"Wrote template to {path}")
