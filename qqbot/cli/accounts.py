"""Account commands: list, show."""

from __future__ import annotations

import json as json_mod

import click

from qqbot.cli.app import config_path
from qqbot.cli.formatters import build_table, get_console, yes_no


def _load_host_config(ctx: click.Context) -> dict:
    from qqbot.config_file import load_config

    return load_config(config_path(ctx))


@click.group("accounts")
def accounts_group() -> None:
    """Inspect configured QQ Bot accounts."""
    pass


@accounts_group.command("list")
@click.pass_context
def accounts_list(ctx: click.Context) -> None:
    """List accounts and where their credentials come from."""
    from qqbot.accounts import describe_account, list_account_ids, resolve_account

    cfg = _load_host_config(ctx)
    summaries = [
        describe_account(resolve_account(cfg, account_id))
        for account_id in list_account_ids(cfg)
    ]

    if ctx.obj.get("json"):
        click.echo(json_mod.dumps(summaries, indent=2))
        return

    rows = [
        [
            s["accountId"],
            s["name"] or "-",
            yes_no(s["enabled"]),
            yes_no(s["configured"]),
            s["tokenSource"],
        ]
        for s in summaries
    ]
    console = get_console(no_color=ctx.obj.get("no_color", False))
    console.print(
        build_table(
            "QQ Bot accounts",
            ["Account", "Name", "Enabled", "Configured", "Secret source"],
            rows,
        )
    )


@accounts_group.command("show")
@click.argument("account_id", required=False)
@click.pass_context
def accounts_show(ctx: click.Context, account_id: str | None) -> None:
    """Show one account's resolved settings (secrets masked)."""
    from qqbot.accounts import (
        describe_account,
        resolve_account,
        resolve_default_account_id,
        validate_account_id,
    )
    from qqbot.errors import InvalidAccountIdError

    cfg = _load_host_config(ctx)
    if account_id is None:
        account_id = resolve_default_account_id(cfg)
    try:
        account_id = validate_account_id(account_id)
    except InvalidAccountIdError as e:
        raise click.ClickException(str(e))

    account = resolve_account(cfg, account_id)
    details = describe_account(account)
    details["appId"] = account.app_id
    details["imageServerBaseUrl"] = account.image_server_base_url

    if ctx.obj.get("json"):
        click.echo(json_mod.dumps(details, indent=2))
        return

    console = get_console(no_color=ctx.obj.get("no_color", False))
    console.print(f"[bold]Account {details['accountId']}[/bold]")
    console.print(f"  Name: {details['name'] or '-'}")
    console.print(f"  Enabled: {yes_no(details['enabled'])}")
    console.print(f"  Configured: {yes_no(details['configured'])}")
    console.print(f"  App ID: {details['appId'] or '-'}")
    console.print(f"  Secret source: {details['tokenSource']}")
    console.print(f"  Image server: {details['imageServerBaseUrl'] or '-'}")
