"""Message connection over WebRTC data channels.

The peer-connection machinery is supplied through ``peer_factory``: a callable
that takes a ``WebRTCConfig`` and returns a ``PeerConnection``. Signaling
(descriptions and ICE candidates) is exchanged by the application through
``SignalingCallbacks`` and the ``set_remote_description`` /
``add_remote_candidate`` methods.
"""

from __future__ import annotations

import abc
import enum
import logging
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Callable, List, Optional, Union

from .connection import (
    ConnectionState,
    ConnectionStats,
    ConnectionType,
    ErrorCode,
    NetworkConnection,
    NetworkError,
)

logger = logging.getLogger(__name__)

DEFAULT_DATA_CHANNEL_LABEL = "entropy-data"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class WebRTCConfig:
    """Settings for the underlying peer connection."""

    ice_servers: List[str] = field(default_factory=list)
    proxy_server: str = ""
    bind_address: str = ""
    port_range_begin: int = 0
    port_range_end: int = 0
    enable_ice_tcp: bool = False
    max_message_size: int = 65536


@dataclass
class SignalingCallbacks:
    """Hooks through which locally generated signaling data leaves the connection."""

    on_local_description: Optional[Callable[[str, str], None]] = None
    on_local_candidate: Optional[Callable[[str, str], None]] = None


class PeerState(enum.Enum):
    """State reported by a peer connection."""

    NEW = "new"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"


ChannelMessage = Union[bytes, bytearray, str]


class DataChannel(abc.ABC):
    """One WebRTC data channel.

    Implementations report events by calling the ``on_open``, ``on_closed``,
    ``on_message`` and ``on_error`` attributes when they are set.
    """

    def __init__(
        self, label: str, ordered: bool = True, max_retransmits: Optional[int] = None
    ) -> None:
        self.label = label
        self.ordered = ordered
        self.max_retransmits = max_retransmits
        self.on_open: Optional[Callable[[], None]] = None
        self.on_closed: Optional[Callable[[], None]] = None
        self.on_message: Optional[Callable[[ChannelMessage], None]] = None
        self.on_error: Optional[Callable[[str], None]] = None

    @property
    @abc.abstractmethod
    def is_open(self) -> bool:
        """Whether the channel can carry messages."""

    @property
    @abc.abstractmethod
    def buffered_amount(self) -> int:
        """Bytes queued locally and not yet transmitted."""

    @abc.abstractmethod
    def send(self, data: bytes) -> None:
        """Queue one binary message."""

    @abc.abstractmethod
    def close(self) -> None:
        """Close the channel."""


class PeerConnection(abc.ABC):
    """A WebRTC peer connection.

    Implementations report events by calling ``on_local_description(type, sdp)``,
    ``on_local_candidate(candidate, mid)``, ``on_state_change(PeerState)``,
    ``on_gathering_state_change(state)`` and ``on_data_channel(channel)``.
    """

    def __init__(self, config: WebRTCConfig) -> None:
        self.config = config
        self.on_local_description: Optional[Callable[[str, str], None]] = None
        self.on_local_candidate: Optional[Callable[[str, str], None]] = None
        self.on_state_change: Optional[Callable[[PeerState], None]] = None
        self.on_gathering_state_change: Optional[Callable[[object], None]] = None
        self.on_data_channel: Optional[Callable[[DataChannel], None]] = None

    @abc.abstractmethod
    def create_data_channel(
        self, label: str, ordered: bool = True, max_retransmits: Optional[int] = None
    ) -> DataChannel:
        """Open a data channel towards the remote peer."""

    @abc.abstractmethod
    def set_remote_description(self, sdp_type: str, sdp: str) -> None:
        """Apply the remote session description."""

    @abc.abstractmethod
    def add_remote_candidate(self, candidate: str, mid: str) -> None:
        """Add an ICE candidate received from the remote peer."""

    @abc.abstractmethod
    def close(self) -> None:
        """Close the peer connection."""


PeerFactory = Callable[[WebRTCConfig], PeerConnection]


def _effective_config(config: WebRTCConfig) -> WebRTCConfig:
    """Drop a port range unless both ends are set."""
    if config.port_range_begin > 0 and config.port_range_end > 0:
        return replace(config, ice_servers=list(config.ice_servers))
    return replace(
        config, ice_servers=list(config.ice_servers), port_range_begin=0, port_range_end=0
    )


class WebRTCConnection(NetworkConnection):
    """Connection over a reliable ordered channel plus an unordered, unretransmitted one."""

    def __init__(
        self,
        config: WebRTCConfig,
        signaling_callbacks: Optional[SignalingCallbacks] = None,
        data_channel_label: str = DEFAULT_DATA_CHANNEL_LABEL,
        peer_factory: Optional[PeerFactory] = None,
    ) -> None:
        super().__init__()
        self._config = config
        self._signaling = (
            signaling_callbacks if signaling_callbacks is not None else SignalingCallbacks()
        )
        self._data_channel_label = data_channel_label
        self._unreliable_channel_label = data_channel_label + "-unreliable"
        self._peer_factory = peer_factory

        self._peer: Optional[PeerConnection] = None
        self._channel: Optional[DataChannel] = None
        self._unreliable_channel: Optional[DataChannel] = None

        self._state = ConnectionState.DISCONNECTED
        self._lock = threading.RLock()
        self._stats = ConnectionStats()

    # -- lifecycle -----------------------------------------------------------

    def connect(self) -> None:
        with self._lock:
            if self._state is not ConnectionState.DISCONNECTED:
                raise NetworkError(ErrorCode.INVALID_PARAMETER, "Connection already active")
            try:
                self._state = ConnectionState.CONNECTING
                self._setup_peer_connection()
                self._channel = self._create_channel(self._data_channel_label, True, None)
                self._unreliable_channel = self._create_channel(
                    self._unreliable_channel_label, False, 0
                )
            except Exception as exc:
                self._state = ConnectionState.DISCONNECTED
                self._peer = None
                self._channel = None
                self._unreliable_channel = None
                raise NetworkError(
                    ErrorCode.CONNECTION_CLOSED, f"Failed to create peer connection: {exc}"
                ) from exc

    def disconnect(self) -> None:
        with self._lock:
            if self._state is ConnectionState.DISCONNECTED:
                return
            self._state = ConnectionState.DISCONNECTED

            channel, self._channel = self._channel, None
            if channel is not None:
                channel.close()
            unreliable, self._unreliable_channel = self._unreliable_channel, None
            if unreliable is not None:
                unreliable.close()
            peer, self._peer = self._peer, None
            if peer is not None:
                peer.close()

            self._on_state_changed(ConnectionState.DISCONNECTED)

    # -- sending -------------------------------------------------------------

    def send(self, data: bytes) -> None:
        with self._lock:
            channel = self._require_open_channel()
            self._transmit(channel, data, "Failed to send data")

    def try_send(self, data: bytes) -> None:
        with self._lock:
            channel = self._require_open_channel()
            if channel.buffered_amount > 0:
                raise NetworkError(ErrorCode.WOULD_BLOCK, "WebRTC data channel backpressured")
            self._transmit(channel, data, "Failed to trySend data")

    def send_unreliable(self, data: bytes) -> None:
        with self._lock:
            if self._state is not ConnectionState.CONNECTED:
                raise NetworkError(ErrorCode.CONNECTION_CLOSED, "Connection not established")
            channel = self._unreliable_channel
            if channel is None or not channel.is_open:
                self.send(data)
                return
            self._transmit(channel, data, "Failed to send unreliable data")

    def _require_open_channel(self) -> DataChannel:
        if self._state is not ConnectionState.CONNECTED:
            raise NetworkError(ErrorCode.CONNECTION_CLOSED, "Connection not established")
        channel = self._channel
        if channel is None or not channel.is_open:
            raise NetworkError(ErrorCode.CONNECTION_CLOSED, "Data channel not open")
        return channel

    def _transmit(self, channel: DataChannel, data: bytes, failure: str) -> None:
        payload = bytes(data)
        try:
            channel.send(payload)
        except Exception as exc:
            raise NetworkError(ErrorCode.INVALID_MESSAGE, f"{failure}: {exc}") from exc
        self._stats.bytes_sent += len(payload)
        self._stats.messages_sent += 1
        self._stats.last_activity_time = _now_ms()

    # -- signaling -------------------------------------------------------------

    def set_remote_description(self, sdp_type: str, sdp: str) -> None:
        """Apply a remote description ("offer" or "answer") received via signaling."""
        with self._lock:
            peer = self._require_peer()
            try:
                peer.set_remote_description(sdp_type, sdp)
            except Exception as exc:
                raise NetworkError(
                    ErrorCode.INVALID_MESSAGE, f"Failed to set remote description: {exc}"
                ) from exc

    def add_remote_candidate(self, candidate: str, mid: str) -> None:
        """Add a remote ICE candidate received via signaling."""
        with self._lock:
            peer = self._require_peer()
            try:
                peer.add_remote_candidate(candidate, mid)
            except Exception as exc:
                raise NetworkError(
                    ErrorCode.INVALID_MESSAGE, f"Failed to add remote candidate: {exc}"
                ) from exc

    def is_ready(self) -> bool:
        """Whether a peer connection exists and can take signaling data."""
        return self._peer is not None

    def _require_peer(self) -> PeerConnection:
        peer = self._peer
        if peer is None:
            raise NetworkError(ErrorCode.INVALID_PARAMETER, "Peer connection not initialized")
        return peer

    # -- state and info --------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connection_type(self) -> ConnectionType:
        return ConnectionType.REMOTE

    @property
    def stats(self) -> ConnectionStats:
        with self._lock:
            return replace(self._stats)

    # -- setup -------------------------------------------------------------------

    def _setup_peer_connection(self) -> None:
        if self._peer_factory is None:
            raise RuntimeError("no peer connection factory configured")
        peer = self._peer_factory(_effective_config(self._config))

        def on_local_description(sdp_type: str, sdp: str) -> None:
            callback = self._signaling.on_local_description
            if callback is not None:
                callback(sdp_type, sdp)

        def on_local_candidate(candidate: str, mid: str) -> None:
            callback = self._signaling.on_local_candidate
            if callback is not None:
                callback(candidate, mid)

        peer.on_local_description = on_local_description
        peer.on_local_candidate = on_local_candidate
        peer.on_state_change = self._update_connection_state
        peer.on_gathering_state_change = lambda _state: None
        peer.on_data_channel = self._adopt_remote_channel
        self._peer = peer

    def _create_channel(
        self, label: str, ordered: bool, max_retransmits: Optional[int]
    ) -> DataChannel:
        assert self._peer is not None
        channel = self._peer.create_data_channel(
            label, ordered=ordered, max_retransmits=max_retransmits
        )
        self._attach_channel_callbacks(channel)
        return channel

    def _adopt_remote_channel(self, channel: DataChannel) -> None:
        logger.debug("onDataChannel called: %s", channel.label)
        with self._lock:
            if channel.label == self._data_channel_label:
                self._channel = channel
                self._attach_channel_callbacks(channel)
            elif channel.label == self._unreliable_channel_label:
                self._unreliable_channel = channel
                self._attach_channel_callbacks(channel)

    def _attach_channel_callbacks(self, channel: DataChannel) -> None:
        reliable = channel.label == self._data_channel_label

        def on_open() -> None:
            logger.info("Data channel opened: %s", channel.label)
            if not reliable:
                return
            with self._lock:
                if self._state is not ConnectionState.CONNECTED:
                    self._state = ConnectionState.CONNECTED
                    now = _now_ms()
                    self._stats.connect_time = now
                    self._stats.last_activity_time = now
                    self._on_state_changed(ConnectionState.CONNECTED)

        def on_closed() -> None:
            if not reliable:
                return
            with self._lock:
                if self._state not in (ConnectionState.DISCONNECTED, ConnectionState.FAILED):
                    self._state = ConnectionState.DISCONNECTED
                    self._on_state_changed(ConnectionState.DISCONNECTED)

        def on_message(data: ChannelMessage) -> None:
            message = data.encode("utf-8") if isinstance(data, str) else bytes(data)
            with self._lock:
                self._stats.bytes_received += len(message)
                self._stats.messages_received += 1
                self._stats.last_activity_time = _now_ms()
            self._on_message_received(message)

        channel.on_open = on_open
        channel.on_closed = on_closed
        channel.on_message = on_message
        channel.on_error = lambda _error: None

    def _update_connection_state(self, peer_state: PeerState) -> None:
        with self._lock:
            new_state = self._state
            if peer_state in (PeerState.NEW, PeerState.CONNECTING):
                if self._state is not ConnectionState.CONNECTED:
                    new_state = ConnectionState.CONNECTING
            elif peer_state is PeerState.CONNECTED:
                # The reliable channel opening is what marks the connection usable.
                pass
            elif peer_state in (PeerState.DISCONNECTED, PeerState.CLOSED):
                new_state = ConnectionState.DISCONNECTED
            elif peer_state is PeerState.FAILED:
                new_state = ConnectionState.FAILED

            if new_state is not self._state:
                self._state = new_state
                self._on_state_changed(new_state)