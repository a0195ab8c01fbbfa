"""
Account registry: resolves the effective configuration for one QQ Bot account.

The host stores the channel section under ``cfg["channels"]["qqbot"]``: a
top-level block for the ``"default"`` account plus an optional ``accounts``
map of named override blocks.  Each field of a resolved account is taken from
the first source in ``_FIELD_SOURCES`` that yields a non-empty value:

  1. inline value in the account's own block
  2. environment variable (credential pair / image server, default account only)
  3. secret file referenced by ``appIdFile`` / ``clientSecretFile``

Resolution never mutates its inputs.  ``apply_account_config`` is the only
write path, and it returns a fresh mapping.
"""

from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Mapping, Optional

import structlog

from qqbot.config import QQBotEnv, load_env
from qqbot.errors import InvalidAccountIdError

logger = structlog.get_logger(__name__)

CHANNEL_ID = "qqbot"
DEFAULT_ACCOUNT_ID = "default"

_ACCOUNT_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
_CREDENTIAL_KEYS = ("appId", "clientSecret", "appIdFile", "clientSecretFile")

SecretReader = Callable[[str], Optional[str]]


class SecretSource(str, Enum):
    """Which configuration tier produced the client secret in effect."""

    INLINE = "inline"
    ENV = "env"
    FILE = "file"
    NONE = "none"


@dataclass(frozen=True)
class ResolvedAccount:
    """Effective account configuration, recomputed on every resolution."""

    account_id: str
    enabled: bool
    app_id: Optional[str] = None
    client_secret: Optional[str] = field(default=None, repr=False)
    secret_source: SecretSource = SecretSource.NONE
    name: Optional[str] = None
    image_server_base_url: Optional[str] = None
    config: Mapping[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @property
    def configured(self) -> bool:
        return bool(self.app_id and self.client_secret)


def read_secret_file(path: str) -> Optional[str]:
    """Return the trimmed contents of *path*, or None when missing/unreadable/empty."""
    try:
        text = Path(path).expanduser().read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        logger.debug("accounts.secret_file_unreadable", path=path, error=str(e))
        return None
    return text.strip() or None


def validate_account_id(raw: object) -> str:
    """Caller-side check that an account id is safe to use as a config key."""
    if not isinstance(raw, str) or not _ACCOUNT_ID_RE.match(raw.strip()):
        raise InvalidAccountIdError(f"invalid account id: {raw!r}")
    return raw.strip()


def _normalize_account_id(account_id: Optional[str]) -> str:
    if account_id is None:
        return DEFAULT_ACCOUNT_ID
    cleaned = str(account_id).strip()
    return cleaned or DEFAULT_ACCOUNT_ID


def _clean(value: object) -> Optional[str]:
    if value is None:
        return None
    cleaned = str(value).strip()
    return cleaned or None


def get_channel_section(cfg: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    """Return the ``channels.qqbot`` block of a host config, or an empty mapping."""
    if not isinstance(cfg, Mapping):
        return {}
    channels = cfg.get("channels")
    if not isinstance(channels, Mapping):
        return {}
    section = channels.get(CHANNEL_ID)
    return section if isinstance(section, Mapping) else {}


def _accounts_map(section: Mapping[str, Any]) -> Mapping[str, Any]:
    accounts = section.get("accounts")
    return accounts if isinstance(accounts, Mapping) else {}


def _account_block(section: Mapping[str, Any], account_id: str) -> Mapping[str, Any]:
    if account_id == DEFAULT_ACCOUNT_ID:
        return {k: v for k, v in section.items() if k != "accounts"}
    block = _accounts_map(section).get(account_id)
    return block if isinstance(block, Mapping) else {}


def list_account_ids(
    cfg: Optional[Mapping[str, Any]],
    env: Optional[QQBotEnv] = None,
) -> list[str]:
    """List configured account ids: ``"default"`` first when present, then named accounts.

    ``accounts.default`` is reserved: the default account always lives in the
    channel root, so a block under that key is skipped.
    """
    section = get_channel_section(cfg)
    env = env if env is not None else load_env()
    ids: list[str] = []
    if any(_clean(section.get(key)) for key in _CREDENTIAL_KEYS) or env.has_credentials:
        ids.append(DEFAULT_ACCOUNT_ID)
    for account_id in _accounts_map(section):
        if account_id == DEFAULT_ACCOUNT_ID:
            continue
        if account_id not in ids:
            ids.append(str(account_id))
    return ids or [DEFAULT_ACCOUNT_ID]


def resolve_default_account_id(
    cfg: Optional[Mapping[str, Any]],
    env: Optional[QQBotEnv] = None,
) -> str:
    return list_account_ids(cfg, env)[0]


# ----------------------------------------------------------------------
# Precedence table
# ----------------------------------------------------------------------
#
# Each entry is (tier, lookup).  A lookup receives the account block, the
# environment and the secret reader and returns a value or None.  Env tiers
# only appear in the default account's table.


def _inline(key: str):
    return lambda block, env, read: _clean(block.get(key))


def _from_file(key: str):
    def lookup(block, env, read):
        path = _clean(block.get(key))
        return read(path) if path else None

    return lookup


def _env_pair(attr: str):
    return lambda block, env, read: getattr(env, attr) if env.has_credentials else None


def _env_value(attr: str):
    return lambda block, env, read: _clean(getattr(env, attr))


_FIELD_SOURCES: dict[str, list[tuple[SecretSource, Any]]] = {
    "app_id": [
        (SecretSource.INLINE, _inline("appId")),
        (SecretSource.ENV, _env_pair("app_id")),
        (SecretSource.FILE, _from_file("appIdFile")),
    ],
    "client_secret": [
        (SecretSource.INLINE, _inline("clientSecret")),
        (SecretSource.ENV, _env_pair("client_secret")),
        (SecretSource.FILE, _from_file("clientSecretFile")),
    ],
    "image_server_base_url": [
        (SecretSource.INLINE, _inline("imageServerBaseUrl")),
        (SecretSource.ENV, _env_value("image_server_base_url")),
    ],
}


def _resolve_field(
    name: str,
    block: Mapping[str, Any],
    env: QQBotEnv,
    read: SecretReader,
    *,
    allow_env: bool,
) -> tuple[Optional[str], SecretSource]:
    for tier, lookup in _FIELD_SOURCES[name]:
        if tier is SecretSource.ENV and not allow_env:
            continue
        value = lookup(block, env, read)
        if value:
            return value, tier
    return None, SecretSource.NONE


def resolve_account(
    cfg: Optional[Mapping[str, Any]],
    account_id: Optional[str] = None,
    env: Optional[QQBotEnv] = None,
    read_secret: SecretReader = read_secret_file,
) -> ResolvedAccount:
    """Compute the effective configuration of *account_id* from all layers."""
    account_id = _normalize_account_id(account_id)
    env = env if env is not None else load_env()
    section = get_channel_section(cfg)
    block = _account_block(section, account_id)
    allow_env = account_id == DEFAULT_ACCOUNT_ID

    app_id, _ = _resolve_field("app_id", block, env, read_secret, allow_env=allow_env)
    client_secret, source = _resolve_field(
        "client_secret", block, env, read_secret, allow_env=allow_env
    )
    image_url, _ = _resolve_field(
        "image_server_base_url", block, env, read_secret, allow_env=allow_env
    )

    # Half a credential pair is no credential at all.
    if not (app_id and client_secret):
        if app_id or client_secret:
            logger.debug("accounts.partial_credentials_ignored", account_id=account_id)
        app_id, client_secret, source = None, None, SecretSource.NONE

    channel_enabled = section.get("enabled") is not False
    enabled = channel_enabled and block.get("enabled") is not False

    return ResolvedAccount(
        account_id=account_id,
        enabled=enabled,
        app_id=app_id,
        client_secret=client_secret,
        secret_source=source,
        name=_clean(block.get("name")),
        image_server_base_url=image_url,
        config=copy.deepcopy(dict(block)),
    )


def is_configured(account: Optional[ResolvedAccount]) -> bool:
    return bool(account is not None and account.configured)


def describe_account(account: Optional[ResolvedAccount]) -> dict[str, Any]:
    """Host-facing summary of an account (no secrets)."""
    return {
        "accountId": account.account_id if account else DEFAULT_ACCOUNT_ID,
        "name": account.name if account else None,
        "enabled": account.enabled if account else False,
        "configured": is_configured(account),
        "tokenSource": account.secret_source.value if account else SecretSource.NONE.value,
    }


# ----------------------------------------------------------------------
# Write path
# ----------------------------------------------------------------------


def apply_account_config(
    cfg: Optional[Mapping[str, Any]],
    account_id: Optional[str],
    patch: Mapping[str, Any],
) -> dict[str, Any]:
    """
    Merge *patch* into the account's block and return the new host config.

    Only keys whose value is not None are written; every other key of the
    targeted block, of the channel section, and of the host config is kept.
    The default account writes to the channel root, named accounts write to
    ``accounts[account_id]``.  Applying the same patch twice is a no-op.
    """
    account_id = _normalize_account_id(account_id)
    updates = {k: v for k, v in patch.items() if v is not None and k != "accounts"}

    result: dict[str, Any] = copy.deepcopy(dict(cfg)) if isinstance(cfg, Mapping) else {}
    channels = result.get("channels")
    channels = dict(channels) if isinstance(channels, Mapping) else {}
    section = channels.get(CHANNEL_ID)
    section = dict(section) if isinstance(section, Mapping) else {}

    if account_id == DEFAULT_ACCOUNT_ID:
        section.update(updates)
    else:
        accounts = dict(_accounts_map(section))
        block = accounts.get(account_id)
        block = dict(block) if isinstance(block, Mapping) else {}
        block.update(updates)
        accounts[account_id] = block
        section["accounts"] = accounts

    channels[CHANNEL_ID] = section
    result["channels"] = channels
    logger.debug(
        "accounts.config_applied",
        account_id=account_id,
        fields=sorted(updates),
    )
    return result


def disable_channel(cfg: Optional[Mapping[str, Any]]) -> dict[str, Any]:
    """Turn the whole channel off without touching any credential."""
    return apply_account_config(cfg, DEFAULT_ACCOUNT_ID, {"enabled": False})
