# qqbot/config.py
"""
Configuration sources for the QQ Bot channel.

Two kinds of settings live here, both loaded from environment variables (and an
optional ``.env`` file) and validated with Pydantic:

* ``QQBotEnv``: the credential fallback consulted for the *default* account
  only.  Account resolution receives an instance explicitly, so tests never
  need to touch the real process environment.
* ``QQBotGatewayConfig``: transport tuning: API endpoints, request timeout,
  token safety margin, gateway intents, heartbeat timeout and reconnect
  backoff.

Per-account credentials themselves are *not* settings; they come from the
host's already-parsed configuration mapping (see ``qqbot.accounts``).
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings


# .env lives at the project root, one level above the qqbot/ package.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_ENV_FILE = _PROJECT_ROOT / ".env"

# Gateway intents (bit flags from the QQ Bot open platform).
INTENT_GUILDS = 1 << 0
INTENT_DIRECT_MESSAGE = 1 << 12
INTENT_GROUP_AND_C2C = 1 << 25
INTENT_PUBLIC_GUILD_MESSAGES = 1 << 30
DEFAULT_INTENTS = INTENT_PUBLIC_GUILD_MESSAGES | INTENT_GROUP_AND_C2C

DEFAULT_API_BASE_URL = "https://api.sgroup.qq.com"
SANDBOX_API_BASE_URL = "https://sandbox.api.sgroup.qq.com"
DEFAULT_TOKEN_URL = "https://bots.qq.com/app/getAppAccessToken"


def _strip_or_none(value: object) -> Optional[str]:
    if value is None:
        return None
    cleaned = str(value).strip()
    return cleaned or None


class QQBotEnv(BaseSettings):
    """Environment credential pair and image-server override for the default account."""

    app_id: Optional[str] = Field(None, alias="QQBOT_APP_ID")
    client_secret: Optional[str] = Field(None, alias="QQBOT_CLIENT_SECRET", repr=False)
    image_server_base_url: Optional[str] = Field(None, alias="QQBOT_IMAGE_SERVER_BASE_URL")

    model_config = {
        "env_file": _ENV_FILE,
        "extra": "ignore",
        "populate_by_name": True,
        "env_ignore_empty": True,
    }

    @model_validator(mode="after")
    def strip_values(self) -> "QQBotEnv":
        self.app_id = _strip_or_none(self.app_id)
        self.client_secret = _strip_or_none(self.client_secret)
        self.image_server_base_url = _strip_or_none(self.image_server_base_url)
        return self

    @property
    def has_credentials(self) -> bool:
        """True only when both halves of the credential pair are set."""
        return bool(self.app_id and self.client_secret)


class QQBotGatewayConfig(BaseSettings):
    """Transport tuning shared by the API client, token cache and gateway sessions."""

    api_base_url: Optional[str] = Field(None, alias="QQBOT_API_BASE_URL")
    token_url: str = Field(DEFAULT_TOKEN_URL, alias="QQBOT_TOKEN_URL")
    sandbox: bool = Field(False, alias="QQBOT_SANDBOX")
    request_timeout_seconds: float = Field(15.0, alias="QQBOT_REQUEST_TIMEOUT")
    # Refresh tokens this many seconds before the platform-reported expiry.
    token_safety_margin_seconds: float = Field(60.0, alias="QQBOT_TOKEN_SAFETY_MARGIN")
    intents: int = Field(DEFAULT_INTENTS, alias="QQBOT_INTENTS")
    # 0 = derive from the server's heartbeat interval (2x).
    heartbeat_timeout_seconds: float = Field(0.0, alias="QQBOT_HEARTBEAT_TIMEOUT")
    handshake_timeout_seconds: float = Field(30.0, alias="QQBOT_HANDSHAKE_TIMEOUT")
    reconnect_base_delay: float = Field(1.0, alias="QQBOT_RECONNECT_BASE_DELAY")
    reconnect_max_delay: float = Field(60.0, alias="QQBOT_RECONNECT_MAX_DELAY")
    reconnect_factor: float = Field(2.0, alias="QQBOT_RECONNECT_FACTOR")
    # A connection that stays up this long resets the backoff counter.
    reconnect_reset_after: float = Field(60.0, alias="QQBOT_RECONNECT_RESET_AFTER")

    model_config = {
        "env_file": _ENV_FILE,
        "extra": "ignore",
        "populate_by_name": True,
        "env_ignore_empty": True,
    }

    @model_validator(mode="after")
    def normalize_limits(self) -> "QQBotGatewayConfig":
        self.api_base_url = _strip_or_none(self.api_base_url)
        if self.api_base_url is None:
            self.api_base_url = SANDBOX_API_BASE_URL if self.sandbox else DEFAULT_API_BASE_URL
        self.api_base_url = self.api_base_url.rstrip("/")
        self.token_url = self.token_url.strip()
        self.request_timeout_seconds = max(1.0, float(self.request_timeout_seconds))
        self.token_safety_margin_seconds = max(0.0, float(self.token_safety_margin_seconds))
        self.intents = max(0, int(self.intents))
        self.heartbeat_timeout_seconds = max(0.0, float(self.heartbeat_timeout_seconds))
        self.handshake_timeout_seconds = max(1.0, float(self.handshake_timeout_seconds))
        self.reconnect_base_delay = max(0.0, float(self.reconnect_base_delay))
        self.reconnect_max_delay = max(self.reconnect_base_delay, float(self.reconnect_max_delay))
        self.reconnect_factor = max(1.0, float(self.reconnect_factor))
        self.reconnect_reset_after = max(0.0, float(self.reconnect_reset_after))
        return self


def load_env() -> QQBotEnv:
    """Read the credential environment from the process (and ``.env``)."""
    return QQBotEnv()
