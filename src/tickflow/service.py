"""Tick data service: live subscriptions feeding the tick store."""

from __future__ import annotations

import logging
from functools import partial
from typing import Callable

from .bus import Subscription
from .config import Settings, settings
from .connection import (
    ConnectionManager,
    ConnectionState,
    MessageKind,
    ServerMessage,
    SubscriptionHandle,
    WSMode,
    tick_from_payload,
    tick_from_quote,
)
from .footprint import FootprintAggregator, tick_stats
from .store import TickStore, make_key
from .types import FootprintData, Tick, TickStats
from .utils.metrics import TICKS_DROPPED

log = logging.getLogger(__name__)

TickCallback = Callable[[Tick], None]


class TickSubscription:
    """Live tick feed for one ``symbol:exchange`` key."""

    def __init__(
        self,
        service: "TickDataService",
        key: str,
        handle: SubscriptionHandle,
        listener: Subscription | None,
        token: object = None,
    ) -> None:
        self.key = key
        self.token = token
        self._service = service
        self._handle = handle
        self._listener = listener

    @property
    def ready_state(self) -> ConnectionState:
        return self._handle.ready_state

    @property
    def closed(self) -> bool:
        return self._handle.closed

    def _detach(self) -> None:
        if self._listener is not None:
            self._listener.unsubscribe()
        self._service._forget(self)

    async def close(self) -> None:
        self._detach()
        await self._handle.close()

    def force_close(self) -> None:
        self._detach()
        self._handle.force_close()


class TickDataService:
    def __init__(
        self,
        connection: ConnectionManager,
        store: TickStore | None = None,
        aggregator: FootprintAggregator | None = None,
        default_exchange: str = "NSE",
    ) -> None:
        self.connection = connection
        self.store = store or TickStore()
        self.aggregator = aggregator or FootprintAggregator()
        self.default_exchange = default_exchange
        self._subscriptions: dict[str, TickSubscription] = {}
        # key -> token of the subscription allowed to write ticks for it
        self._owners: dict[str, object] = {}

    @classmethod
    def from_settings(cls, cfg: Settings | None = None, **kwargs) -> "TickDataService":
        cfg = cfg or settings
        return cls(
            ConnectionManager.from_settings(cfg),
            store=TickStore(cfg.max_ticks_in_memory),
            aggregator=FootprintAggregator(
                imbalance_ratio=cfg.footprint_imbalance_ratio,
                value_area_percent=cfg.footprint_value_area_percent,
            ),
            default_exchange=cfg.default_exchange,
            **kwargs,
        )

    # ------------------------------------------------------------------
    async def subscribe_to_ticks(
        self,
        symbol: str,
        exchange: str | None = None,
        callback: TickCallback | None = None,
        mode: WSMode = WSMode.TICK,
    ) -> TickSubscription:
        """Stream ticks for ``symbol`` into the store.

        A second subscription for the same key replaces the first one.  The
        replacement is registered before the old one is released so the wire
        subscription stays in place.
        """
        exchange = exchange or self.default_exchange
        key = make_key(symbol, exchange)
        self.store.init(key)
        token = object()
        previous_owner = self._owners.get(key)
        self._owners[key] = token
        try:
            handle = await self.connection.subscribe(
                [(symbol, exchange)], partial(self._on_message, key, token), mode
            )
        except BaseException:
            if self._owners.get(key) is token:
                if previous_owner is None:
                    del self._owners[key]
                else:
                    self._owners[key] = previous_owner
            raise
        listener = self.store.add_listener(key, callback) if callback is not None else None
        sub = TickSubscription(self, key, handle, listener, token)
        previous = self._subscriptions.get(key)
        self._subscriptions[key] = sub
        if previous is not None:
            log.info("replacing tick subscription for %s", key)
            await previous.close()
        return sub

    def _forget(self, sub: TickSubscription) -> None:
        if self._subscriptions.get(sub.key) is sub:
            del self._subscriptions[sub.key]
        if self._owners.get(sub.key) is sub.token:
            del self._owners[sub.key]

    def _on_message(self, key: str, token: object, msg: ServerMessage) -> None:
        if self._owners.get(key) is not token:
            # a replaced subscription may still be registered on the connection
            return
        if msg.kind is MessageKind.TICK:
            tick = tick_from_payload(msg.payload)
        else:
            tick = tick_from_quote(msg.payload)
        if tick is None:
            TICKS_DROPPED.labels(reason="unparseable").inc()
            log.debug("could not derive a tick for %s from %s", key, msg.type)
            return
        self.store.add_tick(key, tick)

    # ------------------------------------------------------------------
    def subscription(self, symbol: str, exchange: str | None = None) -> TickSubscription | None:
        return self._subscriptions.get(make_key(symbol, exchange or self.default_exchange))

    def get_ticks_in_range(self, symbol: str, exchange: str, start: int, end: int) -> list[Tick]:
        return self.store.get_ticks_in_range(make_key(symbol, exchange), start, end)

    def get_all_ticks(self, symbol: str, exchange: str) -> list[Tick]:
        return self.store.get_all_ticks(make_key(symbol, exchange))

    def add_tick_listener(self, symbol: str, exchange: str, listener: TickCallback) -> Subscription:
        return self.store.add_listener(make_key(symbol, exchange), listener)

    def clear_tick_data(self, symbol: str, exchange: str) -> None:
        self.store.clear(make_key(symbol, exchange))

    def footprint_for_candle(
        self,
        symbol: str,
        exchange: str,
        start: int,
        end: int,
        tick_size: float | None = None,
    ) -> FootprintData:
        """Footprint of the ticks within a candle given in epoch seconds."""
        ticks = self.get_ticks_in_range(symbol, exchange, start * 1000, end * 1000)
        return self.aggregator.build(start * 1000, ticks, tick_size)

    def tick_stats(self, symbol: str, exchange: str) -> TickStats:
        return tick_stats(self.get_all_ticks(symbol, exchange))

    async def close_all(self) -> None:
        for sub in list(self._subscriptions.values()):
            try:
                await sub.close()
            except Exception as e:
                log.warning("error closing tick subscription %s: %s", sub.key, e)
        self._subscriptions.clear()
        self._owners.clear()

    def force_close_all(self) -> None:
        for sub in list(self._subscriptions.values()):
            sub.force_close()
        self._subscriptions.clear()
        self._owners.clear()
