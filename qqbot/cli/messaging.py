"""Messaging commands: send, run."""

from __future__ import annotations

import asyncio
import json as json_mod
import signal

import click

from qqbot.cli.app import async_cmd, config_path
from qqbot.cli.formatters import get_console, status_indicator


@click.command("send")
@click.argument("to")
@click.argument("text")
@click.option("--account", "account_id", default=None, help="Account id (default: first configured)")
@click.option("--reply-to", "reply_to_id", default=None, help="Inbound message id to reply to")
@click.pass_context
@async_cmd
async def send_cmd(
    ctx: click.Context,
    to: str,
    text: str,
    account_id: str | None,
    reply_to_id: str | None,
) -> None:
    """Send TEXT to TO (c2c:<openid>, group:<groupOpenid> or channel:<id>)."""
    from qqbot.accounts import resolve_default_account_id
    from qqbot.config_file import load_config
    from qqbot.plugin import QQBotChannelPlugin

    cfg = load_config(config_path(ctx))
    plugin = QQBotChannelPlugin()
    try:
        outcome = await plugin.send_text(
            cfg,
            to,
            text,
            account_id=account_id or resolve_default_account_id(cfg),
            reply_to_id=reply_to_id,
        )
    finally:
        await plugin.close()

    if ctx.obj.get("json"):
        click.echo(
            json_mod.dumps(
                {
                    "channel": outcome.channel,
                    "messageId": outcome.message_id,
                    "timestamp": outcome.timestamp,
                    "error": outcome.error,
                },
                indent=2,
            )
        )
    elif outcome.ok:
        click.echo(f"Sent message {outcome.message_id}")
    if not outcome.ok:
        raise click.ClickException(f"Send failed: {outcome.error}")


@click.command("run")
@click.option(
    "--account",
    "account_ids",
    multiple=True,
    help="Account id to connect (repeatable; default: every enabled, configured account)",
)
@click.pass_context
@async_cmd
async def run_cmd(ctx: click.Context, account_ids: tuple[str, ...]) -> None:
    """Connect gateway sessions and print inbound messages until interrupted."""
    from qqbot.config_file import load_config
    from qqbot.plugin import QQBotChannelPlugin
    from qqbot.status import SessionStatus
    from qqbot.types import InboundMessage

    console = get_console(no_color=ctx.obj.get("no_color", False))
    cfg = load_config(config_path(ctx))
    plugin = QQBotChannelPlugin()

    ids = list(account_ids) or plugin.list_account_ids(cfg)
    resolved = [plugin.resolve_account(cfg, account_id) for account_id in ids]
    runnable = [a for a in resolved if a.enabled and a.configured]
    for account in resolved:
        if account not in runnable:
            reason = "disabled" if not account.enabled else "not configured"
            console.print(f"[yellow]Skipping {account.account_id}: {reason}[/yellow]")
    if not runnable:
        await plugin.close()
        raise click.ClickException("No enabled, configured QQ Bot account to run")

    async def _on_message(message: InboundMessage) -> None:
        if ctx.obj.get("json"):
            click.echo(
                json_mod.dumps(
                    {
                        "accountId": message.account_id,
                        "event": message.event_type,
                        "messageId": message.message_id,
                        "target": message.target,
                        "sender": message.sender_id,
                        "text": message.text,
                    }
                )
            )
            return
        console.print(f"[bold]{message.account_id}[/bold] {message.target} ({message.sender_id}): {message.text}")

    def _on_status(status: SessionStatus) -> None:
        line = status_indicator(status.state)
        line.append(f"{status.account_id}: {status.state}")
        if status.last_error and status.state == "reconnecting":
            line.append(f" ({status.last_error})", style="dim")
        console.print(line)

    unsubscribe = plugin.statuses.subscribe(_on_status)
    abort = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, abort.set)
        except (NotImplementedError, RuntimeError):
            pass

    try:
        await asyncio.gather(
            *(plugin.start_account(account, abort, on_message=_on_message) for account in runnable)
        )
    finally:
        unsubscribe()
        await plugin.close()
