"""Connection states, errors, statistics and the abstract connection interface."""

from __future__ import annotations

import abc
import enum
from dataclasses import dataclass
from typing import Callable, Optional

MessageCallback = Callable[[bytes], None]
StateCallback = Callable[["ConnectionState"], None]


class ConnectionState(enum.Enum):
    """Lifecycle state of a network connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"
    FAILED = "failed"


class ConnectionType(enum.Enum):
    """Kind of transport behind a connection."""

    LOCAL = "local"
    REMOTE = "remote"


class ErrorCode(enum.Enum):
    """Categories of networking failures."""

    INVALID_PARAMETER = "invalid_parameter"
    CONNECTION_CLOSED = "connection_closed"
    TIMEOUT = "timeout"
    WOULD_BLOCK = "would_block"
    INVALID_MESSAGE = "invalid_message"


class NetworkError(Exception):
    """Raised when a networking operation fails."""

    def __init__(self, code: ErrorCode, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    def __repr__(self) -> str:
        return f"NetworkError({self.code.name}, {self.message!r})"


@dataclass
class ConnectionStats:
    """Traffic counters for one connection; times are milliseconds since the epoch."""

    bytes_sent: int = 0
    bytes_received: int = 0
    messages_sent: int = 0
    messages_received: int = 0
    connect_time: int = 0
    last_activity_time: int = 0


class NetworkConnection(abc.ABC):
    """A connection to a peer that sends and receives whole messages.

    Incoming messages are delivered to ``on_message`` and state changes to
    ``on_state_change``; either may be left as ``None``.
    """

    def __init__(self) -> None:
        self.on_message: Optional[MessageCallback] = None
        self.on_state_change: Optional[StateCallback] = None

    @abc.abstractmethod
    def connect(self) -> None:
        """Open the connection."""

    @abc.abstractmethod
    def disconnect(self) -> None:
        """Close the connection."""

    @abc.abstractmethod
    def send(self, data: bytes) -> None:
        """Send one message reliably."""

    @abc.abstractmethod
    def send_unreliable(self, data: bytes) -> None:
        """Send one message without delivery guarantees where the transport allows it."""

    def try_send(self, data: bytes) -> None:
        """Send without blocking; backends that cannot do so refuse."""
        raise NetworkError(
            ErrorCode.INVALID_PARAMETER, "trySend not supported by this backend"
        )

    @property
    @abc.abstractmethod
    def is_connected(self) -> bool:
        """Whether the connection is currently established."""

    @property
    @abc.abstractmethod
    def state(self) -> ConnectionState:
        """Current lifecycle state."""

    @property
    @abc.abstractmethod
    def connection_type(self) -> ConnectionType:
        """Kind of transport."""

    @property
    @abc.abstractmethod
    def stats(self) -> ConnectionStats:
        """Snapshot of the traffic counters."""

    def _on_message_received(self, data: bytes) -> None:
        callback = self.on_message
        if callback is not None:
            callback(data)

    def _on_state_changed(self, state: ConnectionState) -> None:
        callback = self.on_state_change
        if callback is not None:
            callback(state)