"""Multiplexed streaming connection shared by every subscriber.

One websocket carries all instrument subscriptions.  Each subscriber holds a
reference on the ``SYMBOL:EXCHANGE`` keys it asked for; the wire subscription
is only dropped when the last reference is released.  After authentication
(including after every reconnect) all held keys are subscribed again.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, NamedTuple

import websockets
from pydantic import BaseModel, ValidationError
from websockets.exceptions import ConnectionClosedOK

from ..bus import ListenerRegistry, Subscription
from ..config import Settings, settings
from ..store import make_key
from ..utils.backoff import Backoff
from ..utils.metrics import LISTENER_ERRORS, WS_FAILURES, WS_MESSAGES_DROPPED, WS_RECONNECTS
from .protocol import (
    Authenticate,
    MessageKind,
    Pong,
    ServerMessage,
    Subscribe,
    Unsubscribe,
    WSMode,
    decode_message,
)
from .state import ConnectionState, ConnectionStateMachine

log = logging.getLogger(__name__)

MessageCallback = Callable[[ServerMessage], None]


class Instrument(NamedTuple):
    symbol: str
    exchange: str = "NSE"

    @property
    def key(self) -> str:
        return make_key(self.symbol, self.exchange)


@dataclass
class _Subscriber:
    keys: frozenset[str]
    symbols: frozenset[str]
    callback: MessageCallback
    mode: WSMode

    def matches(self, msg: ServerMessage) -> bool:
        if msg.symbol is None:
            return False
        if msg.exchange:
            return make_key(msg.symbol, msg.exchange) in self.keys
        return msg.symbol in self.symbols


class SubscriptionHandle:
    """Returned by :meth:`ConnectionManager.subscribe`."""

    def __init__(self, manager: "ConnectionManager", sub_id: int) -> None:
        self._manager = manager
        self._id = sub_id

    @property
    def ready_state(self) -> ConnectionState:
        return self._manager.state

    @property
    def closed(self) -> bool:
        return self._id not in self._manager._subscribers

    async def close(self) -> None:
        """Unsubscribe this handle's keys and close the socket if it was the last."""
        await self._manager._release(self._id)

    def force_close(self) -> None:
        """Drop the handle immediately, without unsubscribing on the wire."""
        self._manager._release_now(self._id)


class ConnectionManager:
    def __init__(
        self,
        url: str,
        api_key: str = "",
        *,
        backoff: Backoff | None = None,
        close_grace: float = 0.25,
        connect: Callable[..., Any] | None = None,
        name: str = "shared",
    ) -> None:
        self.url = url
        self.api_key = api_key
        self.name = name
        self.close_grace = close_grace
        self._backoff = backoff or Backoff()
        self._connect = connect
        self._machine = ConnectionStateMachine(name)
        self._subscribers: dict[int, _Subscriber] = {}
        self._ids = itertools.count(1)
        # wire-level subscription bookkeeping, per key
        self._refs: dict[str, int] = {}
        self._modes: dict[str, WSMode] = {}
        self._instruments: dict[str, Instrument] = {}
        self._ws = None
        self._task: asyncio.Task | None = None
        self._closing = False
        self._exhausted = False
        self._exhausted_listeners: ListenerRegistry[ConnectionManager] = ListenerRegistry(
            f"exhausted[{name}]"
        )

    @classmethod
    def from_settings(cls, cfg: Settings | None = None, **kwargs) -> "ConnectionManager":
        cfg = cfg or settings
        backoff = Backoff(
            base_delay=cfg.reconnect_base_delay,
            max_delay=cfg.reconnect_max_delay,
            max_attempts=cfg.reconnect_max_attempts,
        )
        return cls(
            cfg.websocket_url,
            cfg.api_key or "",
            backoff=backoff,
            close_grace=cfg.close_grace_period,
            **kwargs,
        )

    # ------------------------------------------------------------------
    @property
    def state(self) -> ConnectionState:
        return self._machine.state

    @property
    def exhausted(self) -> bool:
        return self._exhausted

    @property
    def subscribed_keys(self) -> dict[str, WSMode]:
        return dict(self._modes)

    def ref_count(self, key: str) -> int:
        return self._refs.get(key, 0)

    def add_state_listener(self, listener: Callable[[tuple[ConnectionState, ConnectionState]], None]) -> Subscription:
        return self._machine.add_listener(listener)

    def on_exhausted(self, listener: Callable[["ConnectionManager"], None]) -> Subscription:
        """Called once the reconnect budget is spent."""
        return self._exhausted_listeners.add(listener)

    # ------------------------------------------------------------------
    async def subscribe(
        self,
        instruments: Iterable[Instrument | tuple[str, str]],
        on_message: MessageCallback,
        mode: WSMode = WSMode.TICK,
    ) -> SubscriptionHandle:
        mode = WSMode(mode)
        insts = list(dict.fromkeys(Instrument(*i) for i in instruments))
        if not insts:
            raise ValueError("at least one instrument is required")

        pending: list[str] = []
        for inst in insts:
            key = inst.key
            self._refs[key] = self._refs.get(key, 0) + 1
            current = self._modes.get(key)
            if current is None or mode > current:
                # a richer mode replaces the existing wire subscription
                self._modes[key] = mode
                self._instruments[key] = inst
                pending.append(key)

        sub_id = next(self._ids)
        self._subscribers[sub_id] = _Subscriber(
            keys=frozenset(i.key for i in insts),
            symbols=frozenset(i.symbol for i in insts),
            callback=on_message,
            mode=mode,
        )

        if self.state is ConnectionState.SUBSCRIBED:
            for key in pending:
                await self._send_subscribe(key)
        else:
            self._ensure_running()
        return SubscriptionHandle(self, sub_id)

    def restart(self) -> None:
        """Reconnect after the retry budget was exhausted."""
        self._backoff.reset()
        self._exhausted = False
        self._ensure_running()

    async def close(self) -> None:
        """Unsubscribe everything and close the socket gracefully."""
        freed = self._forget_all()
        await self._shutdown(freed)

    def force_close(self) -> None:
        self._forget_all()
        self._abort()

    # ------------------------------------------------------------------
    def _forget(self, key: str) -> Instrument:
        self._refs.pop(key, None)
        self._modes.pop(key, None)
        return self._instruments.pop(key)

    def _forget_all(self) -> list[Instrument]:
        self._subscribers.clear()
        return [self._forget(key) for key in list(self._instruments)]

    def _take(self, sub_id: int) -> list[Instrument]:
        """Drop a subscriber and return the instruments nobody references any more."""
        sub = self._subscribers.pop(sub_id, None)
        if sub is None:
            return []
        freed = []
        for key in sub.keys:
            left = self._refs.get(key, 0) - 1
            if left > 0:
                self._refs[key] = left
            else:
                freed.append(self._forget(key))
        return freed

    async def _release(self, sub_id: int) -> None:
        freed = self._take(sub_id)
        if not self._subscribers:
            await self._shutdown(freed)
        elif self.state is ConnectionState.SUBSCRIBED:
            for inst in freed:
                await self._send(Unsubscribe(symbol=inst.symbol, exchange=inst.exchange))

    def _release_now(self, sub_id: int) -> None:
        self._take(sub_id)
        if not self._subscribers:
            self._abort()

    async def _shutdown(self, unsubscribe: list[Instrument]) -> None:
        self._closing = True
        ws = self._ws
        if ws is not None and self.state is ConnectionState.SUBSCRIBED:
            self._machine.transition(ConnectionState.CLOSING)
            for inst in unsubscribe:
                await self._send(Unsubscribe(symbol=inst.symbol, exchange=inst.exchange))
            await asyncio.sleep(self.close_grace)
            with contextlib.suppress(Exception):
                await ws.close()
        task = self._task
        self._abort()
        if task is not None and task is not asyncio.current_task():
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if self._subscribers:
            # someone subscribed while the socket was closing
            self._ensure_running()

    def _abort(self) -> None:
        self._closing = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        self._ws = None
        if self.state is not ConnectionState.DISCONNECTED:
            self._machine.transition(ConnectionState.DISCONNECTED)

    def _owns(self) -> bool:
        # a cancelled task must not touch state owned by its successor
        return self._task is not None and asyncio.current_task() is self._task

    def _ensure_running(self) -> None:
        if self._task is not None and not self._task.done():
            return
        if self._exhausted:
            log.warning("%s: reconnect attempts exhausted; call restart()", self.name)
            return
        self._closing = False
        self._task = asyncio.create_task(self._run(), name=f"ws-{self.name}")

    # ------------------------------------------------------------------
    async def _send(self, message: BaseModel) -> bool:
        ws = self._ws
        if ws is None:
            return False
        try:
            await ws.send(message.model_dump_json())
        except Exception as e:
            log.warning("%s: send failed: %s", self.name, e)
            return False
        return True

    async def _send_subscribe(self, key: str) -> bool:
        inst = self._instruments[key]
        return await self._send(
            Subscribe(symbol=inst.symbol, exchange=inst.exchange, mode=int(self._modes[key]))
        )

    async def _resubscribe_all(self) -> None:
        for key in list(self._modes):
            await self._send_subscribe(key)

    # ------------------------------------------------------------------
    async def _run(self) -> None:
        try:
            while not self._closing and self._subscribers:
                clean = await self._connect_once()
                if self._closing or not self._subscribers:
                    break
                if clean:
                    log.info("%s: server closed the connection", self.name)
                    break
                delay = self._backoff.next_delay()
                if delay is None:
                    self._exhausted = True
                    log.error(
                        "%s: giving up after %d reconnect attempts",
                        self.name, self._backoff.max_attempts,
                    )
                    self._exhausted_listeners.publish(self)
                    break
                WS_RECONNECTS.labels(connection=self.name).inc()
                log.warning(
                    "%s: reconnecting in %.2fs (attempt %d/%d)",
                    self.name, delay, self._backoff.attempt, self._backoff.max_attempts,
                )
                await asyncio.sleep(delay)
        finally:
            if self._owns():
                self._ws = None
                if self.state is not ConnectionState.DISCONNECTED:
                    self._machine.transition(ConnectionState.DISCONNECTED)

    async def _connect_once(self) -> bool:
        """One connection attempt; ``True`` when the server closed cleanly."""
        self._machine.transition(ConnectionState.CONNECTING)
        connect = self._connect or websockets.connect
        clean = False
        try:
            async with connect(self.url, ping_interval=None) as ws:
                self._ws = ws
                self._machine.transition(ConnectionState.AUTHENTICATING)
                await self._send(Authenticate(api_key=self.api_key))
                while True:
                    raw = await ws.recv()
                    if not await self._handle_raw(raw):
                        break
        except asyncio.CancelledError:
            raise
        except ConnectionClosedOK:
            clean = True
        except Exception as e:
            if not self._closing:
                WS_FAILURES.labels(connection=self.name).inc()
                log.warning("%s: websocket error: %s", self.name, e)
        finally:
            if self._owns():
                self._ws = None
                if self.state is not ConnectionState.DISCONNECTED:
                    self._machine.transition(ConnectionState.DISCONNECTED)
        return clean

    async def _handle_raw(self, raw: str | bytes) -> bool:
        """Process one frame; ``False`` ends the attempt (authentication failed)."""
        try:
            msg = decode_message(raw)
        except ValidationError as e:
            WS_MESSAGES_DROPPED.labels(connection=self.name, reason="malformed").inc()
            log.warning("%s: dropping malformed frame: %s", self.name, e.errors()[0]["msg"])
            return True

        kind = msg.kind
        if kind is MessageKind.PING:
            await self._send(Pong())
        elif kind is MessageKind.AUTH_OK:
            if self.state is ConnectionState.AUTHENTICATING:
                self._machine.transition(ConnectionState.SUBSCRIBED)
                self._backoff.reset()
                log.info("%s: authenticated, subscribing %d keys", self.name, len(self._modes))
                await self._resubscribe_all()
        elif kind is MessageKind.AUTH_FAILED or (
            kind is MessageKind.ERROR and self.state is ConnectionState.AUTHENTICATING
        ):
            WS_FAILURES.labels(connection=self.name).inc()
            log.error("%s: authentication failed: %s", self.name, msg.reason)
            return False
        elif kind is MessageKind.ERROR:
            log.error("%s: server error: %s", self.name, msg.reason)
        elif kind in (MessageKind.TICK, MessageKind.QUOTE):
            if self.state is ConnectionState.SUBSCRIBED:
                self._dispatch(msg)
            else:
                WS_MESSAGES_DROPPED.labels(connection=self.name, reason="not_subscribed").inc()
        else:
            WS_MESSAGES_DROPPED.labels(connection=self.name, reason="unknown").inc()
            log.debug("%s: ignoring message type %r", self.name, msg.type)
        return True

    def _dispatch(self, msg: ServerMessage) -> None:
        delivered = False
        for sub in list(self._subscribers.values()):
            if not sub.matches(msg):
                continue
            delivered = True
            try:
                sub.callback(msg)
            except Exception as e:
                LISTENER_ERRORS.labels(registry=self.name).inc()
                log.warning("%s: subscriber callback failed: %s", self.name, e)
        if not delivered:
            WS_MESSAGES_DROPPED.labels(connection=self.name, reason="no_subscriber").inc()
