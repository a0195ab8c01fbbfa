"""
Shared fixtures for the QQ Bot channel test suite.

Every test gets a process environment without QQBOT_* credentials so account
resolution only sees what the test passes in explicitly.
"""

from __future__ import annotations

from typing import Any

import pytest

from qqbot.config import QQBotEnv, QQBotGatewayConfig

APP_ID = "102146862"
SECRET = "s3cr3t-value"
OPENID = "0123456789ABCDEF0123456789ABCDEF"


def make_env(**values: Any) -> QQBotEnv:
    """QQBotEnv built only from *values* (never from .env)."""
    defaults: dict[str, Any] = dict(app_id=None, client_secret=None, image_server_base_url=None)
    defaults.update(values)
    return QQBotEnv(_env_file=None, **defaults)


def make_gateway_config(**overrides: Any) -> QQBotGatewayConfig:
    defaults: dict[str, Any] = dict(
        api_base_url="http://api.test",
        token_url="http://api.test/app/getAppAccessToken",
        request_timeout_seconds=5.0,
        handshake_timeout_seconds=2.0,
        reconnect_base_delay=0.0,
        reconnect_max_delay=0.0,
    )
    defaults.update(overrides)
    return QQBotGatewayConfig(_env_file=None, **defaults)


def host_config(section: dict[str, Any] | None = None, **extra: Any) -> dict[str, Any]:
    cfg: dict[str, Any] = {"channels": {"qqbot": section or {}}}
    cfg.update(extra)
    return cfg


# ---------------------------------------------------------------------------
# Environment isolation
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _clean_qqbot_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "QQBOT_APP_ID",
        "QQBOT_CLIENT_SECRET",
        "QQBOT_IMAGE_SERVER_BASE_URL",
        "QQBOT_API_BASE_URL",
        "QQBOT_SANDBOX",
        "QQBOT_INTENTS",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def empty_env() -> QQBotEnv:
    return make_env()


@pytest.fixture()
def gateway_config() -> QQBotGatewayConfig:
    return make_gateway_config()
