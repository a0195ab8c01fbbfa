"""
Per-account runtime status.

Each account's gateway session is the only writer of that account's entry;
everything else (host status views, the CLI) only reads snapshots.  Listeners
registered with ``subscribe`` see every update, which turns the session's
state transitions into an observable stream instead of one-shot callbacks.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Any, Callable, Optional

import structlog

from qqbot.accounts import DEFAULT_ACCOUNT_ID, ResolvedAccount, describe_account

logger = structlog.get_logger(__name__)

StatusListener = Callable[["SessionStatus"], Any]


@dataclass(frozen=True)
class SessionStatus:
    account_id: str = DEFAULT_ACCOUNT_ID
    running: bool = False
    connected: bool = False
    last_connected_at: Optional[float] = None  # epoch seconds
    last_error: Optional[str] = None
    state: str = "idle"
    reconnect_attempts: int = 0

    def __post_init__(self) -> None:
        if self.connected and not self.running:
            raise ValueError("a connected session must be running")

    def to_dict(self) -> dict[str, Any]:
        return {
            "accountId": self.account_id,
            "running": self.running,
            "connected": self.connected,
            "lastConnectedAt": self.last_connected_at,
            "lastError": self.last_error,
            "state": self.state,
            "reconnectAttempts": self.reconnect_attempts,
        }


class StatusStore:
    """Process-held status snapshots, one per account."""

    def __init__(self) -> None:
        self._statuses: dict[str, SessionStatus] = {}
        self._listeners: list[StatusListener] = []

    def get(self, account_id: str) -> SessionStatus:
        """Current status, or the default runtime for accounts never started."""
        return self._statuses.get(account_id) or SessionStatus(account_id=account_id)

    def update(self, account_id: str, **changes: Any) -> SessionStatus:
        """Apply *changes* to the account's status and notify listeners."""
        status = dataclasses.replace(self.get(account_id), account_id=account_id, **changes)
        self._statuses[account_id] = status
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception:
                logger.exception("status.listener_failed", account_id=account_id)
        return status

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Register *listener*; returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def snapshot(self) -> dict[str, SessionStatus]:
        return dict(self._statuses)

    def forget(self, account_id: str) -> None:
        self._statuses.pop(account_id, None)


def build_account_snapshot(
    account: Optional[ResolvedAccount],
    status: Optional[SessionStatus],
) -> dict[str, Any]:
    """Merge static account facts and runtime status into one host-facing record."""
    snapshot = describe_account(account)
    runtime = status or SessionStatus(account_id=snapshot["accountId"])
    snapshot.update(
        running=runtime.running,
        connected=runtime.connected,
        lastConnectedAt=runtime.last_connected_at,
        lastError=runtime.last_error,
    )
    return snapshot
