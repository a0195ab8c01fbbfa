"""
Data types shared across the QQ Bot channel modules.

They live here rather than in a specific module to avoid circular imports
between the API client, the dispatcher and the gateway.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from qqbot.targets import Surface


@dataclass(frozen=True)
class SendResult:
    """What the platform returns for a successful send."""

    id: str
    timestamp: str | int | None = None


@dataclass
class InboundMessage:
    """A user message delivered over the gateway, ready for the host.

    ``target`` is a destination string the outbound dispatcher accepts, so a
    reply is ``send(account, msg.target, text, reply_to_id=msg.message_id)``.
    """

    account_id: str
    event_type: str
    message_id: str
    surface: Surface
    target: str
    sender_id: str
    text: str
    timestamp: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)
