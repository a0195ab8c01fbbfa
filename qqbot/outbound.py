"""
Outbound text dispatch.

Picks the platform call for a message from two facts: which surface the
target lives on, and whether the message answers an inbound event.

  reply_to_id given  → passive reply (c2c / group / channel), not quota-limited
  no reply_to_id     → proactive send (c2c / group), quota-limited by the
                       platform (4 per recipient per month); channels have no
                       proactive call and fall back to the plain channel send

Expected failures never escape ``send``: they come back as a
``DispatchOutcome`` carrying an error string the host can log or show.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

import aiohttp
import structlog

from qqbot.accounts import ResolvedAccount
from qqbot.api import QQBotAPI
from qqbot.errors import AuthenticationError, NotConfiguredError, QQBotError
from qqbot.targets import Surface, Target, parse_target
from qqbot.token_cache import AccessTokenCache
from qqbot.types import SendResult

logger = structlog.get_logger(__name__)

CHANNEL_NAME = "qqbot"


@dataclass(frozen=True)
class DispatchOutcome:
    """Result of one dispatch: either ``message_id`` or ``error`` is set, never both."""

    message_id: Optional[str] = None
    timestamp: str | int | None = None
    error: Optional[str] = None
    channel: str = CHANNEL_NAME

    def __post_init__(self) -> None:
        if (self.message_id is None) == (self.error is None):
            raise ValueError("DispatchOutcome needs exactly one of message_id or error")

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def sent(cls, result: SendResult) -> "DispatchOutcome":
        return cls(message_id=result.id, timestamp=result.timestamp)

    @classmethod
    def failed(cls, error: str | BaseException) -> "DispatchOutcome":
        if isinstance(error, BaseException):
            error = str(error) or type(error).__name__
        return cls(error=error or "unknown error")


class OutboundDispatcher:
    """Routes outbound text to the correct QQ Bot API call."""

    def __init__(self, api: QQBotAPI, tokens: AccessTokenCache) -> None:
        self._api = api
        self._tokens = tokens

    async def send(
        self,
        account: ResolvedAccount,
        to: str,
        text: str,
        reply_to_id: Optional[str] = None,
    ) -> DispatchOutcome:
        """Send *text* to *to*, replying to *reply_to_id* when given."""
        return await self._dispatch(account, to, text, reply_to_id or None)

    async def send_proactive(self, account: ResolvedAccount, to: str, text: str) -> DispatchOutcome:
        """Always use the proactive path, whatever the caller knows about prior events."""
        return await self._dispatch(account, to, text, None)

    async def _dispatch(
        self,
        account: ResolvedAccount,
        to: str,
        text: str,
        reply_to_id: Optional[str],
    ) -> DispatchOutcome:
        if account is None:
            raise TypeError("send() requires a resolved account")

        logger.debug(
            "outbound.send",
            account_id=account.account_id,
            to=to,
            length=len(text or ""),
            reply_to_id=reply_to_id,
        )

        if not account.configured:
            logger.warning("outbound.not_configured", account_id=account.account_id)
            return DispatchOutcome.failed(NotConfiguredError(account.account_id))

        try:
            target = parse_target(to)
        except QQBotError as e:
            return DispatchOutcome.failed(e)

        try:
            token = await self._tokens.get_token(account.app_id, account.client_secret)
            result = await self._invoke(token.value, target, text, reply_to_id)
        except AuthenticationError as e:
            self._tokens.invalidate(account.app_id, account.client_secret)
            return self._failure(account, target, e)
        except (QQBotError, aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            return self._failure(account, target, e)

        logger.info(
            "outbound.sent",
            account_id=account.account_id,
            surface=target.surface.value,
            passive=reply_to_id is not None,
            message_id=result.id,
        )
        return DispatchOutcome.sent(result)

    async def _invoke(
        self,
        access_token: str,
        target: Target,
        text: str,
        reply_to_id: Optional[str],
    ) -> SendResult:
        if reply_to_id is None:
            if target.surface is Surface.C2C:
                return await self._api.send_proactive_c2c_message(access_token, target.id, text)
            if target.surface is Surface.GROUP:
                return await self._api.send_proactive_group_message(access_token, target.id, text)
            # Channels have no proactive endpoint.
            return await self._api.send_channel_message(access_token, target.id, text)

        if target.surface is Surface.C2C:
            return await self._api.send_c2c_message(access_token, target.id, text, reply_to_id)
        if target.surface is Surface.GROUP:
            return await self._api.send_group_message(access_token, target.id, text, reply_to_id)
        return await self._api.send_channel_message(access_token, target.id, text, reply_to_id)

    @staticmethod
    def _failure(account: ResolvedAccount, target: Target, error: BaseException) -> DispatchOutcome:
        logger.warning(
            "outbound.send_failed",
            account_id=account.account_id,
            surface=target.surface.value,
            error_type=type(error).__name__,
            error=str(error),
        )
        return DispatchOutcome.failed(error)
