"""
Gateway session: the long-lived inbound connection for one QQ Bot account.

Lifecycle (strictly sequential per account)::

    IDLE → AUTHENTICATING → CONNECTED ⇄ RECONNECTING → … → CLOSED

* AUTHENTICATING: fetch an access token, discover the gateway URL, open the
  WebSocket, wait for Hello, send Identify (or Resume), wait for READY.
* CONNECTED: heartbeat every ``heartbeat_interval``; any frame counts as a
  liveness signal, silence for ``heartbeat_timeout`` is a failure.
* RECONNECTING: record the error, back off, try again.
* CLOSED: terminal, reached only through ``stop()`` or task cancellation.

Every network wait races against the session's stop event, so a stop is
observed at the next wait point.  The session never raises to its host;
failures land in the StatusStore and drive reconnection.

``GatewayManager`` owns the per-account tasks and guarantees at most one live
session per account id.
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import json
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import aiohttp
import structlog

from qqbot.accounts import ResolvedAccount
from qqbot.api import QQBotAPI
from qqbot.config import QQBotGatewayConfig
from qqbot.errors import AuthenticationError, NotConfiguredError, TransportError
from qqbot.status import SessionStatus, StatusStore
from qqbot.targets import Surface
from qqbot.token_cache import AccessTokenCache
from qqbot.types import InboundMessage

logger = structlog.get_logger(__name__)

OnMessageCallback = Callable[[InboundMessage], Awaitable[None]]
OnReadyCallback = Callable[[SessionStatus], Any]
OnErrorCallback = Callable[[BaseException], Any]

# Gateway opcodes.
OP_DISPATCH = 0
OP_HEARTBEAT = 1
OP_IDENTIFY = 2
OP_RESUME = 6
OP_RECONNECT = 7
OP_INVALID_SESSION = 9
OP_HELLO = 10
OP_HEARTBEAT_ACK = 11

# Close codes after which the session cannot be resumed.
_NO_RESUME_CLOSE_CODES = frozenset({4004, 4006, 4007, 4009})
_INVALID_TOKEN_CLOSE_CODE = 4004

_MENTION_RE = re.compile(r"^\s*<@!?\w+>\s*")


class GatewayState(str, Enum):
    IDLE = "idle"
    AUTHENTICATING = "authenticating"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


class GatewayDisconnect(TransportError):
    """The gateway connection ended; ``resume`` says whether the session survives."""

    def __init__(self, reason: str, *, resume: bool = True, invalidate_token: bool = False) -> None:
        super().__init__(reason)
        self.resume = resume
        self.invalidate_token = invalidate_token


class _Stopped(Exception):
    """Internal: the stop event fired while waiting."""


@dataclass
class BackoffPolicy:
    """Capped exponential backoff without jitter, so delays never decrease until reset."""

    base_delay: float = 1.0
    max_delay: float = 60.0
    factor: float = 2.0
    reset_after: float = 60.0
    attempts: int = 0

    @classmethod
    def from_config(cls, config: QQBotGatewayConfig) -> "BackoffPolicy":
        return cls(
            base_delay=config.reconnect_base_delay,
            max_delay=config.reconnect_max_delay,
            factor=config.reconnect_factor,
            reset_after=config.reconnect_reset_after,
        )

    def next_delay(self) -> float:
        delay = min(self.max_delay, self.base_delay * (self.factor ** self.attempts))
        self.attempts += 1
        return delay

    def record_uptime(self, seconds: float) -> None:
        """A connection that lasted long enough wipes the failure history."""
        if seconds >= self.reset_after:
            self.attempts = 0


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _to_inbound(account_id: str, event_type: str, data: dict[str, Any]) -> Optional[InboundMessage]:
    """Convert a message dispatch into an InboundMessage, or None for other events."""
    author = _as_dict(data.get("author"))
    if event_type == "C2C_MESSAGE_CREATE":
        sender = str(author.get("user_openid") or author.get("id") or "")
        surface, target_id = Surface.C2C, sender
    elif event_type == "GROUP_AT_MESSAGE_CREATE":
        sender = str(author.get("member_openid") or author.get("id") or "")
        surface, target_id = Surface.GROUP, str(data.get("group_openid") or "")
    elif event_type == "AT_MESSAGE_CREATE":
        sender = str(author.get("id") or "")
        surface, target_id = Surface.CHANNEL, str(data.get("channel_id") or "")
    else:
        return None

    message_id = str(data.get("id") or "")
    if not target_id or not message_id:
        logger.debug("gateway.event_missing_ids", event_type=event_type)
        return None
    text = _MENTION_RE.sub("", str(data.get("content") or ""), count=1).strip()
    return InboundMessage(
        account_id=account_id,
        event_type=event_type,
        message_id=message_id,
        surface=surface,
        target=f"{surface.value}:{target_id}",
        sender_id=sender,
        text=text,
        timestamp=data.get("timestamp"),
        raw=data,
    )


async def _invoke_hook(hook: Optional[Callable[..., Any]], *args: Any) -> None:
    if hook is None:
        return
    maybe_awaitable = hook(*args)
    if inspect.isawaitable(maybe_awaitable):
        await maybe_awaitable


class GatewaySession:
    """One account's gateway connection, run as a single asyncio task via :meth:`run`."""

    def __init__(
        self,
        account: ResolvedAccount,
        api: QQBotAPI,
        tokens: AccessTokenCache,
        statuses: StatusStore,
        *,
        config: Optional[QQBotGatewayConfig] = None,
        on_message: Optional[OnMessageCallback] = None,
        on_ready: Optional[OnReadyCallback] = None,
        on_error: Optional[OnErrorCallback] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not account.configured:
            raise NotConfiguredError(account.account_id)
        self._account = account
        self._api = api
        self._tokens = tokens
        self._statuses = statuses
        self._config = config or api.config
        self._on_message = on_message
        self._on_ready = on_ready
        self._on_error = on_error
        self._clock = clock

        self._state = GatewayState.IDLE
        self._stop_event = asyncio.Event()
        self._closed_event = asyncio.Event()
        self._backoff = BackoffPolicy.from_config(self._config)
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._heartbeat_task: Optional[asyncio.Task[None]] = None
        self._handler_tasks: set[asyncio.Task[None]] = set()
        self._connected_since: Optional[float] = None
        # Resume state survives reconnects unless the server invalidates it.
        self._session_id: Optional[str] = None
        self._seq: Optional[int] = None

    @property
    def account_id(self) -> str:
        return self._account.account_id

    @property
    def state(self) -> GatewayState:
        return self._state

    @property
    def status(self) -> SessionStatus:
        return self._statuses.get(self.account_id)

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> None:
        """Request shutdown; observed at the next wait point."""
        self._stop_event.set()

    async def wait_closed(self) -> None:
        await self._closed_event.wait()

    async def close(self) -> None:
        self.stop()
        await self.wait_closed()

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Connect and keep the account connected until stopped."""
        if self._state is not GatewayState.IDLE:
            raise RuntimeError(f"gateway session for {self.account_id} already ran")
        log = logger.bind(account_id=self.account_id)
        log.info("gateway.starting")
        self._publish(running=True, connected=False)
        try:
            while not self._stop_event.is_set():
                self._transition(GatewayState.AUTHENTICATING)
                try:
                    await self._connect_and_serve()
                except _Stopped:
                    break
                except Exception as exc:
                    if self._stop_event.is_set():
                        break
                    await self._handle_failure(exc)
                delay = self._backoff.next_delay()
                log.info("gateway.reconnect_scheduled", delay=delay, attempt=self._backoff.attempts)
                await self._until_stopped(asyncio.sleep(delay))
        except _Stopped:
            pass
        finally:
            await self._shutdown()
            log.info("gateway.closed")

    def _transition(self, state: GatewayState) -> None:
        if state is not self._state:
            logger.debug(
                "gateway.transition",
                account_id=self.account_id,
                from_state=self._state.value,
                to_state=state.value,
            )
        self._state = state
        self._publish()

    def _publish(self, **changes: Any) -> SessionStatus:
        changes.setdefault("state", self._state.value)
        changes.setdefault("reconnect_attempts", self._backoff.attempts)
        return self._statuses.update(self.account_id, **changes)

    async def _handle_failure(self, exc: BaseException) -> None:
        if self._connected_since is not None:
            self._backoff.record_uptime(self._clock() - self._connected_since)
            self._connected_since = None
        if isinstance(exc, AuthenticationError) or getattr(exc, "invalidate_token", False):
            self._tokens.invalidate(self._account.app_id, self._account.client_secret)
        if isinstance(exc, GatewayDisconnect) and not exc.resume:
            self._session_id = None
            self._seq = None

        self._state = GatewayState.RECONNECTING
        message = str(exc) or type(exc).__name__
        self._publish(connected=False, last_error=message)
        logger.warning(
            "gateway.connection_failed",
            account_id=self.account_id,
            error_type=type(exc).__name__,
            error=message,
        )
        try:
            await _invoke_hook(self._on_error, exc)
        except Exception:
            logger.exception("gateway.on_error_hook_failed", account_id=self.account_id)

    async def _mark_connected(self) -> None:
        self._connected_since = self._clock()
        self._state = GatewayState.CONNECTED
        status = self._publish(running=True, connected=True, last_connected_at=time.time())
        logger.info(
            "gateway.connected",
            account_id=self.account_id,
            session_id=self._session_id,
        )
        try:
            await _invoke_hook(self._on_ready, status)
        except Exception:
            logger.exception("gateway.on_ready_hook_failed", account_id=self.account_id)

    async def _shutdown(self) -> None:
        await self._close_connection()
        for task in list(self._handler_tasks):
            task.cancel()
        if self._handler_tasks:
            await asyncio.gather(*self._handler_tasks, return_exceptions=True)
        self._handler_tasks.clear()
        self._connected_since = None
        self._state = GatewayState.CLOSED
        self._publish(running=False, connected=False)
        self._closed_event.set()

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def _connect_and_serve(self) -> None:
        account = self._account
        token = await self._until_stopped(
            self._tokens.get_token(account.app_id, account.client_secret)
        )
        url = await self._until_stopped(self._api.get_gateway_url(token.value))
        self._ws = await self._until_stopped(
            self._api.ws_connect(url), timeout=self._config.handshake_timeout_seconds
        )
        try:
            interval = await self._handshake(token.value)
            await self._mark_connected()
            idle_timeout = self._config.heartbeat_timeout_seconds or interval * 2
            self._heartbeat_task = asyncio.create_task(
                self._heartbeat_loop(interval), name=f"qqbot-heartbeat-{self.account_id}"
            )
            while True:
                payload = await self._receive(idle_timeout)
                await self._handle_payload(payload)
        finally:
            await self._close_connection()

    async def _handshake(self, access_token: str) -> float:
        """Hello → Identify/Resume → READY/RESUMED. Returns the heartbeat interval in seconds."""
        timeout = self._config.handshake_timeout_seconds
        hello = await self._receive(timeout)
        if hello.get("op") != OP_HELLO:
            raise GatewayDisconnect(f"expected hello, got op {hello.get('op')}")
        interval = float(_as_dict(hello.get("d")).get("heartbeat_interval", 41250)) / 1000.0

        auth = f"QQBot {access_token}"
        if self._session_id:
            await self._send(
                {"op": OP_RESUME, "d": {"token": auth, "session_id": self._session_id, "seq": self._seq}}
            )
        else:
            await self._send(
                {
                    "op": OP_IDENTIFY,
                    "d": {"token": auth, "intents": self._config.intents, "shard": [0, 1]},
                }
            )

        while True:
            payload = await self._receive(timeout)
            op = payload.get("op")
            if op == OP_DISPATCH and payload.get("t") in ("READY", "RESUMED"):
                if payload.get("t") == "READY":
                    data = _as_dict(payload.get("d"))
                    self._session_id = data.get("session_id")
                    logger.debug(
                        "gateway.ready",
                        account_id=self.account_id,
                        bot=_as_dict(data.get("user")).get("username"),
                    )
                return max(1.0, interval)
            await self._handle_payload(payload)

    async def _receive(self, timeout: float) -> dict[str, Any]:
        """Next JSON frame from the gateway; any frame counts as liveness."""
        assert self._ws is not None
        while True:
            try:
                msg = await self._until_stopped(self._ws.receive(), timeout=timeout)
            except asyncio.TimeoutError:
                raise GatewayDisconnect(f"no gateway traffic for {timeout:.0f}s") from None

            if msg.type == aiohttp.WSMsgType.TEXT:
                payload = json.loads(msg.data)
                if not isinstance(payload, dict):
                    continue
                if payload.get("s") is not None:
                    self._seq = payload["s"]
                return payload
            if msg.type in (
                aiohttp.WSMsgType.CLOSE,
                aiohttp.WSMsgType.CLOSING,
                aiohttp.WSMsgType.CLOSED,
                aiohttp.WSMsgType.ERROR,
            ):
                code = msg.data if msg.type == aiohttp.WSMsgType.CLOSE else self._ws.close_code
                raise GatewayDisconnect(
                    f"gateway closed (code={code})",
                    resume=code not in _NO_RESUME_CLOSE_CODES,
                    invalidate_token=code == _INVALID_TOKEN_CLOSE_CODE,
                )

    async def _send(self, payload: dict[str, Any]) -> None:
        if self._ws is None or self._ws.closed:
            raise GatewayDisconnect("gateway socket is closed")
        await self._ws.send_str(json.dumps(payload))

    async def _handle_payload(self, payload: dict[str, Any]) -> None:
        op = payload.get("op")
        if op == OP_DISPATCH:
            self._dispatch_event(str(payload.get("t") or ""), payload.get("d") or {})
        elif op == OP_HEARTBEAT:
            await self._send({"op": OP_HEARTBEAT, "d": self._seq})
        elif op == OP_RECONNECT:
            raise GatewayDisconnect("server requested reconnect")
        elif op == OP_INVALID_SESSION:
            raise GatewayDisconnect("invalid session", resume=False, invalidate_token=True)

    async def _heartbeat_loop(self, interval: float) -> None:
        try:
            while True:
                await asyncio.sleep(interval)
                await self._send({"op": OP_HEARTBEAT, "d": self._seq})
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # The receive loop notices the dead socket through its idle timeout.
            logger.debug("gateway.heartbeat_failed", account_id=self.account_id, error=str(e))

    def _dispatch_event(self, event_type: str, data: Any) -> None:
        if not isinstance(data, dict):
            return
        message = _to_inbound(self.account_id, event_type, data)
        if message is None:
            logger.debug("gateway.event_ignored", account_id=self.account_id, event_type=event_type)
            return
        if self._on_message is None:
            return
        task = asyncio.create_task(self._safe_handle(message))
        self._handler_tasks.add(task)
        task.add_done_callback(self._handler_tasks.discard)

    async def _safe_handle(self, message: InboundMessage) -> None:
        try:
            await self._on_message(message)
        except Exception as e:
            logger.error(
                "gateway.message_handler_failed",
                account_id=self.account_id,
                message_id=message.message_id,
                error=str(e),
                exc_info=True,
            )

    async def _close_connection(self) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None
        if self._ws is not None:
            ws, self._ws = self._ws, None
            if not ws.closed:
                try:
                    await ws.close()
                except Exception as e:
                    logger.debug("gateway.socket_close_failed", account_id=self.account_id, error=str(e))

    async def _until_stopped(self, awaitable: Awaitable[Any], timeout: Optional[float] = None) -> Any:
        """Await *awaitable* unless the stop event fires (``_Stopped``) or *timeout* passes."""
        if self._stop_event.is_set():
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise _Stopped()
        work = asyncio.ensure_future(awaitable)
        stopper = asyncio.create_task(self._stop_event.wait())
        try:
            done, _ = await asyncio.wait(
                {work, stopper}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            stopper.cancel()
            if not work.done():
                work.cancel()
                await asyncio.gather(work, return_exceptions=True)
        if work in done:
            return work.result()
        if self._stop_event.is_set():
            raise _Stopped()
        raise asyncio.TimeoutError()


class GatewayManager:
    """Starts, replaces and stops gateway sessions; one live session per account."""

    def __init__(
        self,
        api: QQBotAPI,
        tokens: AccessTokenCache,
        statuses: StatusStore,
        *,
        config: Optional[QQBotGatewayConfig] = None,
    ) -> None:
        self._api = api
        self._tokens = tokens
        self._statuses = statuses
        self._config = config
        self._sessions: dict[str, tuple[GatewaySession, asyncio.Task[None]]] = {}
        self._lock = asyncio.Lock()

    def get(self, account_id: str) -> Optional[GatewaySession]:
        entry = self._sessions.get(account_id)
        return entry[0] if entry else None

    def running_accounts(self) -> list[str]:
        return [account_id for account_id, (_, task) in self._sessions.items() if not task.done()]

    async def start(
        self,
        account: ResolvedAccount,
        *,
        on_message: Optional[OnMessageCallback] = None,
        on_ready: Optional[OnReadyCallback] = None,
        on_error: Optional[OnErrorCallback] = None,
    ) -> GatewaySession:
        """Start *account*'s session, closing any session already running for it."""
        async with self._lock:
            previous = self._sessions.get(account.account_id)
            if previous is not None:
                logger.info("gateway_manager.replacing_session", account_id=account.account_id)
                await self._stop_entry(account.account_id, previous)
            session = GatewaySession(
                account,
                self._api,
                self._tokens,
                self._statuses,
                config=self._config,
                on_message=on_message,
                on_ready=on_ready,
                on_error=on_error,
            )
            task = asyncio.create_task(session.run(), name=f"qqbot-gateway-{account.account_id}")
            task.add_done_callback(functools.partial(self._on_task_done, account.account_id))
            self._sessions[account.account_id] = (session, task)
            return session

    async def stop(self, account_id: str) -> None:
        async with self._lock:
            entry = self._sessions.get(account_id)
            if entry is not None:
                await self._stop_entry(account_id, entry)

    async def stop_all(self) -> None:
        async with self._lock:
            for account_id, entry in list(self._sessions.items()):
                await self._stop_entry(account_id, entry)

    async def run_account(
        self,
        account: ResolvedAccount,
        abort: asyncio.Event,
        **callbacks: Any,
    ) -> None:
        """Run *account*'s gateway until *abort* is set (the host's start hook)."""
        session = await self.start(account, **callbacks)
        abort_waiter = asyncio.create_task(abort.wait())
        closed_waiter = asyncio.create_task(session.wait_closed())
        try:
            await asyncio.wait({abort_waiter, closed_waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            abort_waiter.cancel()
            closed_waiter.cancel()
            async with self._lock:
                entry = self._sessions.get(account.account_id)
                if entry is not None and entry[0] is session:
                    await self._stop_entry(account.account_id, entry)
                else:
                    await session.close()

    async def _stop_entry(
        self, account_id: str, entry: tuple[GatewaySession, asyncio.Task[None]]
    ) -> None:
        session, task = entry
        session.stop()
        try:
            await task
        except asyncio.CancelledError:
            if not task.cancelled():
                raise
        if self._sessions.get(account_id) is entry:
            del self._sessions[account_id]

    def _on_task_done(self, account_id: str, task: asyncio.Task[None]) -> None:
        entry = self._sessions.get(account_id)
        if entry is not None and entry[1] is task:
            del self._sessions[account_id]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "gateway_manager.session_crashed",
                account_id=account_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
