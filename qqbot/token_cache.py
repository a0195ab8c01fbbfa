"""
Access-token cache with per-credential request coalescing.

Tokens are keyed by ``(app_id, client_secret)`` rather than by account id, so
two accounts sharing credentials share one token.  While a refresh for a key
is in flight every other caller for that key awaits the same future, which
keeps issuance to at most one request per key at a time.
"""

from __future__ import annotations

import asyncio
import functools
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

import structlog

from qqbot.api import TokenGrant

logger = structlog.get_logger(__name__)

TokenIssuer = Callable[[str, str], Awaitable[TokenGrant]]
CredentialKey = tuple[str, str]

_DEFAULT_SAFETY_MARGIN: float = 60.0


@dataclass(frozen=True)
class AccessToken:
    value: str = field(repr=False)
    expires_at: float  # time.monotonic() based

    def is_valid(self, now: float, safety_margin: float = 0.0) -> bool:
        return now < self.expires_at - safety_margin


class AccessTokenCache:
    """Caches access tokens and coalesces concurrent refreshes per credential pair."""

    def __init__(
        self,
        issuer: TokenIssuer,
        *,
        safety_margin: float = _DEFAULT_SAFETY_MARGIN,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._issuer = issuer
        self._safety_margin = max(0.0, float(safety_margin))
        self._clock = clock
        self._tokens: dict[CredentialKey, AccessToken] = {}
        self._inflight: dict[CredentialKey, asyncio.Future[AccessToken]] = {}

    def peek(self, app_id: str, client_secret: str) -> Optional[AccessToken]:
        """Return the cached token if it is still usable, without issuing."""
        token = self._tokens.get((app_id, client_secret))
        if token is not None and token.is_valid(self._clock(), self._safety_margin):
            return token
        return None

    async def get_token(self, app_id: str, client_secret: str) -> AccessToken:
        """Return a valid token, issuing a new one only when needed."""
        key = (app_id, client_secret)
        cached = self.peek(app_id, client_secret)
        if cached is not None:
            return cached

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.create_task(self._issue(key), name=f"qqbot-token-{app_id}")
            self._inflight[key] = task
            task.add_done_callback(functools.partial(self._on_issue_done, key))
        # A caller that gives up must not cancel the refresh the others are waiting on.
        return await asyncio.shield(task)

    def _on_issue_done(self, key: CredentialKey, task: asyncio.Task[AccessToken]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled() and task.exception() is not None:
            logger.warning(
                "token_cache.refresh_failed", app_id=key[0], error=str(task.exception())
            )

    async def _issue(self, key: CredentialKey) -> AccessToken:
        app_id, client_secret = key
        started = self._clock()
        grant = await self._issuer(app_id, client_secret)
        token = AccessToken(value=grant.access_token, expires_at=started + grant.expires_in)
        self._tokens[key] = token
        logger.info("token_cache.refreshed", app_id=app_id, expires_in=grant.expires_in)
        return token

    def invalidate(self, app_id: str, client_secret: str) -> None:
        """Forget the token for a credential pair (e.g. after the platform rejected it)."""
        if self._tokens.pop((app_id, client_secret), None) is not None:
            logger.info("token_cache.invalidated", app_id=app_id)

    def clear(self) -> None:
        self._tokens.clear()
