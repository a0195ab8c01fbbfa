"""
QQ Bot channel plugin: the set of hooks a chat host calls.

The host owns configuration storage and process lifecycle; this object owns
the shared platform client, the access-token cache, the per-account gateway
sessions and their status.  Every hook is a thin call into the component that
implements it.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Mapping, Optional

import structlog

from qqbot import accounts as registry
from qqbot.api import QQBotAPI
from qqbot.config import QQBotEnv, QQBotGatewayConfig
from qqbot.gateway import GatewayManager, OnMessageCallback
from qqbot.outbound import CHANNEL_NAME, DispatchOutcome, OutboundDispatcher
from qqbot.status import SessionStatus, StatusStore, build_account_snapshot
from qqbot.targets import TARGET_HINT, looks_like_id, normalize_target
from qqbot.token_cache import AccessTokenCache

logger = structlog.get_logger(__name__)

TEXT_CHUNK_LIMIT = 2000


@dataclass(frozen=True)
class ChannelMeta:
    id: str = CHANNEL_NAME
    label: str = "QQ Bot"
    selection_label: str = "QQ Bot"
    docs_path: str = "/docs/channels/qqbot"
    blurb: str = "Connect to QQ via official QQ Bot API"
    order: int = 50


@dataclass(frozen=True)
class ChannelCapabilities:
    chat_types: tuple[str, ...] = ("direct", "group")
    media: bool = False
    reactions: bool = False
    threads: bool = False


@dataclass(frozen=True)
class SetupInput:
    """Arguments of the host's ``channels add`` command."""

    token: Optional[str] = None  # "appId:clientSecret"
    token_file: Optional[str] = None
    use_env: bool = False
    name: Optional[str] = None
    image_server_base_url: Optional[str] = None


@dataclass(frozen=True)
class OnboardingStatus:
    configured: bool
    status_lines: tuple[str, ...]
    selection_hint: str
    quickstart_score: int


def _split_token(token: Optional[str]) -> tuple[Optional[str], Optional[str]]:
    if not token:
        return None, None
    parts = token.strip().split(":")
    if len(parts) != 2 or not parts[0].strip() or not parts[1].strip():
        return None, None
    return parts[0].strip(), parts[1].strip()


class QQBotChannelPlugin:
    """Host-facing hooks for the QQ Bot channel."""

    id = CHANNEL_NAME
    meta = ChannelMeta()
    capabilities = ChannelCapabilities()
    reload_config_prefixes = ("channels.qqbot",)
    text_chunk_limit = TEXT_CHUNK_LIMIT
    target_hint = TARGET_HINT

    def __init__(
        self,
        *,
        gateway_config: Optional[QQBotGatewayConfig] = None,
        env: Optional[QQBotEnv] = None,
        api: Optional[QQBotAPI] = None,
    ) -> None:
        self._env = env
        self.api = api or QQBotAPI(gateway_config)
        self.gateway_config = self.api.config
        self.tokens = AccessTokenCache(
            self.api.get_access_token,
            safety_margin=self.gateway_config.token_safety_margin_seconds,
        )
        self.statuses = StatusStore()
        self.dispatcher = OutboundDispatcher(self.api, self.tokens)
        self.gateways = GatewayManager(
            self.api, self.tokens, self.statuses, config=self.gateway_config
        )

    async def close(self) -> None:
        await self.gateways.stop_all()
        await self.api.close()

    # ------------------------------------------------------------------
    # config
    # ------------------------------------------------------------------

    def list_account_ids(self, cfg: Optional[Mapping[str, Any]]) -> list[str]:
        return registry.list_account_ids(cfg, self._env)

    def resolve_account(
        self, cfg: Optional[Mapping[str, Any]], account_id: Optional[str] = None
    ) -> registry.ResolvedAccount:
        return registry.resolve_account(cfg, account_id, self._env)

    def default_account_id(self) -> str:
        return registry.DEFAULT_ACCOUNT_ID

    def is_configured(self, account: Optional[registry.ResolvedAccount]) -> bool:
        return registry.is_configured(account)

    def describe_account(self, account: Optional[registry.ResolvedAccount]) -> dict[str, Any]:
        return registry.describe_account(account)

    # ------------------------------------------------------------------
    # messaging
    # ------------------------------------------------------------------

    def normalize_target(self, raw: str) -> str:
        return normalize_target(raw)

    def looks_like_id(self, raw: str) -> bool:
        return looks_like_id(raw)

    # ------------------------------------------------------------------
    # setup / onboarding
    # ------------------------------------------------------------------

    def validate_setup_input(self, setup: SetupInput) -> Optional[str]:
        """Return an error message, or None when *setup* is usable."""
        if not setup.token and not setup.token_file and not setup.use_env:
            return "QQBot requires --token (format: appId:clientSecret) or --use-env"
        if setup.token and _split_token(setup.token) == (None, None):
            return "QQBot token must look like appId:clientSecret"
        return None

    def apply_setup(
        self,
        cfg: Optional[Mapping[str, Any]],
        account_id: Optional[str],
        setup: SetupInput,
    ) -> dict[str, Any]:
        """Write the setup input into the account's block and enable it along with the channel."""
        if account_id is not None:
            account_id = registry.validate_account_id(account_id)
        app_id, client_secret = _split_token(setup.token)
        if account_id not in (None, registry.DEFAULT_ACCOUNT_ID):
            cfg = registry.apply_account_config(cfg, registry.DEFAULT_ACCOUNT_ID, {"enabled": True})
        return registry.apply_account_config(
            cfg,
            account_id,
            {
                "enabled": True,
                "appId": app_id,
                "clientSecret": client_secret,
                "clientSecretFile": setup.token_file,
                "name": setup.name,
                "imageServerBaseUrl": setup.image_server_base_url,
            },
        )

    def onboarding_status(self, cfg: Optional[Mapping[str, Any]]) -> OnboardingStatus:
        configured = any(
            self.resolve_account(cfg, account_id).configured
            for account_id in self.list_account_ids(cfg)
        )
        if configured:
            return OnboardingStatus(
                configured=True,
                status_lines=("QQ Bot: configured",),
                selection_hint="configured",
                quickstart_score=1,
            )
        return OnboardingStatus(
            configured=False,
            status_lines=("QQ Bot: needs AppID and ClientSecret",),
            selection_hint="supports QQ group and direct chats",
            quickstart_score=20,
        )

    def disable(self, cfg: Optional[Mapping[str, Any]]) -> dict[str, Any]:
        return registry.disable_channel(cfg)

    # ------------------------------------------------------------------
    # outbound
    # ------------------------------------------------------------------

    async def send_text(
        self,
        cfg: Optional[Mapping[str, Any]],
        to: str,
        text: str,
        account_id: Optional[str] = None,
        reply_to_id: Optional[str] = None,
    ) -> DispatchOutcome:
        account = self.resolve_account(cfg, account_id)
        return await self.dispatcher.send(account, to, text, reply_to_id)

    # ------------------------------------------------------------------
    # gateway / status
    # ------------------------------------------------------------------

    async def start_account(
        self,
        account: registry.ResolvedAccount,
        abort_event: asyncio.Event,
        on_message: Optional[OnMessageCallback] = None,
    ) -> None:
        """Run the account's gateway until *abort_event* is set."""
        log = logger.bind(account_id=account.account_id)
        log.info("plugin.starting_gateway")

        def _on_ready(status: SessionStatus) -> None:
            log.info("plugin.gateway_ready", last_connected_at=status.last_connected_at)

        def _on_error(error: BaseException) -> None:
            log.error("plugin.gateway_error", error=str(error) or type(error).__name__)

        await self.gateways.run_account(
            account,
            abort_event,
            on_message=on_message,
            on_ready=_on_ready,
            on_error=_on_error,
        )

    def get_status(self, account_id: str) -> SessionStatus:
        return self.statuses.get(account_id)

    def build_account_snapshot(
        self,
        account: Optional[registry.ResolvedAccount],
        runtime: Optional[SessionStatus] = None,
    ) -> dict[str, Any]:
        if runtime is None and account is not None:
            runtime = self.statuses.get(account.account_id)
        return build_account_snapshot(account, runtime)
