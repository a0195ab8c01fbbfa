"""Error taxonomy for the QQ Bot channel."""

from __future__ import annotations


class QQBotError(Exception):
    """Base class for every expected failure raised inside the channel."""


class NotConfiguredError(QQBotError):
    """The account lacks an app id / client secret pair."""

    def __init__(self, account_id: str = "default") -> None:
        super().__init__("not configured")
        self.account_id = account_id


class InvalidAccountIdError(QQBotError, ValueError):
    """An account id contains characters that are unsafe in config paths."""


class MalformedTargetError(QQBotError, ValueError):
    """A destination string does not parse onto any chat surface."""

    def __init__(self, raw: str, reason: str = "unrecognised target") -> None:
        super().__init__(f"malformed target {raw!r}: {reason}")
        self.raw = raw
        self.reason = reason


class TransportError(QQBotError):
    """Network-level failure talking to the platform (HTTP or gateway socket)."""


class AuthenticationError(TransportError):
    """The platform rejected the credentials or the access token."""


class APIError(TransportError):
    """The platform answered with a non-success status or error code."""

    def __init__(self, message: str, *, status: int | None = None, code: int | None = None) -> None:
        super().__init__(message)
        self.status = status
        self.code = code


class QuotaExceededError(APIError):
    """Proactive send-frequency limit reported by the platform."""
