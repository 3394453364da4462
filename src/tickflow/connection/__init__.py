from .manager import ConnectionManager, Instrument, SubscriptionHandle
from .protocol import MessageKind, ServerMessage, WSMode, decode_message, tick_from_payload, tick_from_quote
from .state import ConnectionState, ConnectionStateMachine, InvalidTransition

__all__ = [
    "ConnectionManager",
    "ConnectionState",
    "ConnectionStateMachine",
    "Instrument",
    "InvalidTransition",
    "MessageKind",
    "ServerMessage",
    "SubscriptionHandle",
    "WSMode",
    "decode_message",
    "tick_from_payload",
    "tick_from_quote",
]
