"""
QQ Bot open-platform HTTP client.

A thin aiohttp wrapper exposing exactly the calls the channel needs: token
issuance, gateway discovery, passive replies and proactive sends for the three
chat surfaces.  Every failure is mapped onto the ``qqbot.errors`` taxonomy so
callers never have to look at aiohttp exceptions or raw status codes.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import quote

import aiohttp
import structlog

from qqbot.config import QQBotGatewayConfig
from qqbot.errors import APIError, AuthenticationError, QuotaExceededError, TransportError
from qqbot.types import SendResult

logger = structlog.get_logger(__name__)

# Platform error codes that mean "proactive message quota used up".
_QUOTA_ERROR_CODES = frozenset({22009})
_MSG_SEQ_CACHE_SIZE = 1024
_TEXT_MSG_TYPE = 0


@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    expires_in: float


def _auth_header(access_token: str) -> str:
    return f"QQBot {access_token}"


class QQBotAPI:
    """Async client for the QQ Bot REST API.

    The underlying ``aiohttp.ClientSession`` is created lazily and shared by
    all calls (and by gateway sessions for their WebSocket).  Call
    :meth:`close` (or use ``async with``) when done.
    """

    def __init__(
        self,
        config: Optional[QQBotGatewayConfig] = None,
        *,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self._config = config or QQBotGatewayConfig()
        self._session = session
        self._owns_session = session is None
        # Applied per request; the gateway WebSocket shares the session.
        self._timeout = aiohttp.ClientTimeout(total=self._config.request_timeout_seconds)
        # Passive replies to the same inbound message need distinct sequence numbers.
        self._msg_seq: OrderedDict[str, int] = OrderedDict()

    @property
    def config(self) -> QQBotGatewayConfig:
        return self._config

    async def __aenter__(self) -> "QQBotAPI":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _request_json(
        self,
        method: str,
        url: str,
        *,
        access_token: Optional[str] = None,
        payload: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if access_token:
            headers["Authorization"] = _auth_header(access_token)
        try:
            async with self._get_session().request(
                method, url, json=payload, headers=headers, timeout=self._timeout
            ) as resp:
                status = resp.status
                try:
                    body = await resp.json(content_type=None)
                except ValueError:
                    body = {"message": (await resp.text())[:200]}
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            raise TransportError(f"{method} {url} failed: {str(e) or type(e).__name__}") from e

        if not isinstance(body, dict):
            body = {}
        code = body.get("code")
        code = int(code) if isinstance(code, (int, str)) and str(code).lstrip("-").isdigit() else None
        message = str(body.get("message") or body.get("msg") or f"HTTP {status}")

        if status == 401:
            raise AuthenticationError(f"unauthorized: {message}")
        if status == 429 or code in _QUOTA_ERROR_CODES:
            raise QuotaExceededError(f"send quota exceeded: {message}", status=status, code=code)
        if status >= 400:
            raise APIError(f"API error {status}: {message}", status=status, code=code)
        return body

    # ------------------------------------------------------------------
    # Authentication / discovery
    # ------------------------------------------------------------------

    async def get_access_token(self, app_id: str, client_secret: str) -> TokenGrant:
        """Exchange app credentials for a short-lived access token."""
        try:
            body = await self._request_json(
                "POST",
                self._config.token_url,
                payload={"appId": app_id, "clientSecret": client_secret},
            )
        except APIError as e:
            raise AuthenticationError(f"token request rejected: {e}") from e
        token = body.get("access_token")
        if not token:
            raise AuthenticationError(
                f"token request rejected: {body.get('message') or 'no access_token in response'}"
            )
        try:
            expires_in = float(body.get("expires_in", 7200))
        except (TypeError, ValueError):
            expires_in = 7200.0
        logger.debug("api.token_issued", app_id=app_id, expires_in=expires_in)
        return TokenGrant(access_token=str(token), expires_in=expires_in)

    async def get_gateway_url(self, access_token: str) -> str:
        body = await self._request_json(
            "GET", f"{self._config.api_base_url}/gateway", access_token=access_token
        )
        url = body.get("url")
        if not url:
            raise APIError("gateway discovery returned no url")
        return str(url)

    async def ws_connect(self, url: str) -> aiohttp.ClientWebSocketResponse:
        """Open the gateway WebSocket on the shared session; heartbeats are sent by the caller."""
        try:
            return await self._get_session().ws_connect(url, autoping=True, heartbeat=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            raise TransportError(f"gateway connect failed: {str(e) or type(e).__name__}") from e

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    def _next_msg_seq(self, msg_id: str) -> int:
        seq = self._msg_seq.pop(msg_id, 0) + 1
        self._msg_seq[msg_id] = seq
        while len(self._msg_seq) > _MSG_SEQ_CACHE_SIZE:
            self._msg_seq.popitem(last=False)
        return seq

    async def _post_message(
        self,
        access_token: str,
        path: str,
        content: str,
        msg_id: Optional[str],
        *,
        v2: bool = True,
    ) -> SendResult:
        payload: dict[str, Any] = {"content": content}
        if v2:
            payload["msg_type"] = _TEXT_MSG_TYPE
        if msg_id:
            payload["msg_id"] = msg_id
            if v2:
                payload["msg_seq"] = self._next_msg_seq(msg_id)
        body = await self._request_json(
            "POST",
            f"{self._config.api_base_url}{path}",
            access_token=access_token,
            payload=payload,
        )
        message_id = body.get("id")
        if not message_id:
            raise APIError("send succeeded without a message id")
        return SendResult(id=str(message_id), timestamp=body.get("timestamp"))

    async def send_c2c_message(
        self, access_token: str, openid: str, content: str, msg_id: Optional[str] = None
    ) -> SendResult:
        return await self._post_message(
            access_token, f"/v2/users/{quote(openid, safe='')}/messages", content, msg_id
        )

    async def send_group_message(
        self, access_token: str, group_openid: str, content: str, msg_id: Optional[str] = None
    ) -> SendResult:
        return await self._post_message(
            access_token, f"/v2/groups/{quote(group_openid, safe='')}/messages", content, msg_id
        )

    async def send_channel_message(
        self, access_token: str, channel_id: str, content: str, msg_id: Optional[str] = None
    ) -> SendResult:
        return await self._post_message(
            access_token,
            f"/channels/{quote(channel_id, safe='')}/messages",
            content,
            msg_id,
            v2=False,
        )

    async def send_proactive_c2c_message(
        self, access_token: str, openid: str, content: str
    ) -> SendResult:
        """Initiate a direct message (quota-limited by the platform)."""
        return await self.send_c2c_message(access_token, openid, content, None)

    async def send_proactive_group_message(
        self, access_token: str, group_openid: str, content: str
    ) -> SendResult:
        """Initiate a group message (quota-limited by the platform)."""
        return await self.send_group_message(access_token, group_openid, content, None)
