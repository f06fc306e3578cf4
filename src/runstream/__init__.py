"""runstream - run source remotely, stream the output back."""

from runstream.channel import Channel, ConnectionState
from runstream.driver import ClientDriver, OutputEvent
from runstream.errors import (
    AlreadyRunningError,
    NotConnectedError,
    ProtocolError,
    RunstreamError,
    TransportError,
)
from runstream.protocol import Message, MessageKind
from runstream.reconnect import Reconnector
from runstream.session import RunFinished, RunSession, SessionState

__version__ = "0.1.0"

__all__ = [
    "AlreadyRunningError",
    "Channel",
    "ClientDriver",
    "ConnectionState",
    "Message",
    "MessageKind",
    "NotConnectedError",
    "OutputEvent",
    "ProtocolError",
    "Reconnector",
    "RunFinished",
    "RunSession",
    "RunstreamError",
    "SessionState",
    "TransportError",
]
