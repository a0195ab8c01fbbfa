"""
Destination-address parsing.

Accepted forms (the ``qqbot:`` channel prefix is optional and case-insensitive)::

    c2c:<openid>          direct message
    group:<group_openid>  group chat
    channel:<channel_id>  guild channel
    <32 hex digits>       bare user openid → direct message

Any other non-empty string is treated as a direct-message id unless
``strict=True`` is requested.  The permissive fallback exists for hosts that
still pass bare ids; ``looks_like_id`` only accepts what a strict parse does.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from qqbot.errors import MalformedTargetError

TARGET_HINT = "c2c:<openid> or group:<groupOpenid>"

_CHANNEL_PREFIX_RE = re.compile(r"^qqbot:", re.IGNORECASE)
_BARE_OPENID_RE = re.compile(r"^[A-Fa-f0-9]{32}$")
_WHITESPACE_RE = re.compile(r"\s")


class Surface(str, Enum):
    """The three addressable conversation kinds."""

    C2C = "c2c"
    GROUP = "group"
    CHANNEL = "channel"


_SURFACE_PREFIXES: tuple[tuple[str, Surface], ...] = (
    ("c2c:", Surface.C2C),
    ("group:", Surface.GROUP),
    ("channel:", Surface.CHANNEL),
)


@dataclass(frozen=True)
class Target:
    surface: Surface
    id: str

    def __str__(self) -> str:
        return f"{self.surface.value}:{self.id}"


def normalize_target(raw: str) -> str:
    """Strip the optional ``qqbot:`` prefix, leaving the surface-qualified address."""
    return _CHANNEL_PREFIX_RE.sub("", raw.strip(), count=1)


def parse_target(raw: str, *, strict: bool = False) -> Target:
    """Parse *raw* into a :class:`Target` or raise :class:`MalformedTargetError`."""
    if not isinstance(raw, str):
        raise MalformedTargetError(repr(raw), "target must be a string")
    body = normalize_target(raw)
    if not body:
        raise MalformedTargetError(raw, "empty target")

    for prefix, surface in _SURFACE_PREFIXES:
        if body.startswith(prefix):
            return Target(surface, _check_id(raw, body[len(prefix):]))

    if _BARE_OPENID_RE.match(body):
        return Target(Surface.C2C, body)
    if strict:
        raise MalformedTargetError(raw, f"expected {TARGET_HINT}")
    return Target(Surface.C2C, _check_id(raw, body))


def _check_id(raw: str, target_id: str) -> str:
    if not target_id:
        raise MalformedTargetError(raw, "missing id")
    if _WHITESPACE_RE.search(target_id):
        raise MalformedTargetError(raw, "id contains whitespace")
    return target_id


def looks_like_id(raw: str) -> bool:
    """Non-throwing form of strict :func:`parse_target`."""
    try:
        parse_target(raw, strict=True)
    except MalformedTargetError:
        return False
    return True
