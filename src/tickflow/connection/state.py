from __future__ import annotations

import logging
from enum import Enum
from typing import Callable

from ..bus import ListenerRegistry, Subscription
from ..utils.metrics import WS_STATE

log = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    SUBSCRIBED = "subscribed"
    CLOSING = "closing"


_S = ConnectionState

TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    _S.DISCONNECTED: frozenset({_S.CONNECTING}),
    _S.CONNECTING: frozenset({_S.AUTHENTICATING, _S.CLOSING, _S.DISCONNECTED}),
    _S.AUTHENTICATING: frozenset({_S.SUBSCRIBED, _S.CLOSING, _S.DISCONNECTED}),
    _S.SUBSCRIBED: frozenset({_S.CLOSING, _S.DISCONNECTED}),
    _S.CLOSING: frozenset({_S.DISCONNECTED}),
}


class InvalidTransition(RuntimeError):
    """Raised when a state change is not allowed by :data:`TRANSITIONS`."""


class ConnectionStateMachine:
    def __init__(self, name: str = "ws") -> None:
        self.name = name
        self._state = ConnectionState.DISCONNECTED
        self._listeners: ListenerRegistry[tuple[ConnectionState, ConnectionState]] = (
            ListenerRegistry(f"state[{name}]")
        )
        WS_STATE.labels(connection=name).set(0)

    @property
    def state(self) -> ConnectionState:
        return self._state

    def can_transition(self, new: ConnectionState) -> bool:
        return new in TRANSITIONS[self._state]

    def transition(self, new: ConnectionState) -> None:
        if not self.can_transition(new):
            raise InvalidTransition(f"{self.name}: {self._state.value} -> {new.value}")
        old, self._state = self._state, new
        WS_STATE.labels(connection=self.name).set(list(ConnectionState).index(new))
        log.debug("%s state %s -> %s", self.name, old.value, new.value)
        self._listeners.publish((old, new))

    def require(self, *states: ConnectionState) -> None:
        if self._state not in states:
            allowed = ", ".join(s.value for s in states)
            raise InvalidTransition(f"{self.name}: in {self._state.value}, expected {allowed}")

    def add_listener(
        self, listener: Callable[[tuple[ConnectionState, ConnectionState]], None]
    ) -> Subscription:
        return self._listeners.add(listener)
