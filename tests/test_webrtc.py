from typing import List, Optional

import pytest

from entropynet.connection import ConnectionState, ConnectionType, ErrorCode, NetworkError
from entropynet.webrtc import (
    DataChannel,
    PeerConnection,
    PeerState,
    SignalingCallbacks,
    WebRTCConfig,
    WebRTCConnection,
)

STUN = "stun:stun.example.com:19302"


class FakeChannel(DataChannel):
    def __init__(self, label, ordered=True, max_retransmits=None):
        super().__init__(label, ordered, max_retransmits)
        self.sent: List[bytes] = []
        self.opened = False
        self.closed = False
        self.buffered = 0
        self.fail = False

    @property
    def is_open(self):
        return self.opened and not self.closed

    @property
    def buffered_amount(self):
        return self.buffered

    def send(self, data):
        if self.fail:
            raise RuntimeError("boom")
        self.sent.append(bytes(data))

    def close(self):
        self.closed = True
        if self.on_closed is not None:
            self.on_closed()

    def open_now(self):
        self.opened = True
        if self.on_open is not None:
            self.on_open()


class FakePeer(PeerConnection):
    def __init__(self, config):
        super().__init__(config)
        self.channels = {}
        self.remote_descriptions = []
        self.candidates = []
        self.closed = False

    def create_data_channel(self, label, ordered=True, max_retransmits=None):
        channel = FakeChannel(label, ordered, max_retransmits)
        self.channels[label] = channel
        return channel

    def set_remote_description(self, sdp_type, sdp):
        if sdp == "bad":
            raise ValueError("unparseable")
        self.remote_descriptions.append((sdp_type, sdp))

    def add_remote_candidate(self, candidate, mid):
        self.candidates.append((candidate, mid))

    def close(self):
        self.closed = True


class Factory:
    def __init__(self):
        self.peers: List[FakePeer] = []

    def __call__(self, config):
        peer = FakePeer(config)
        self.peers.append(peer)
        return peer

    @property
    def peer(self) -> Optional[FakePeer]:
        return self.peers[-1] if self.peers else None


def make(label="entropy-data", config=None, callbacks=None):
    factory = Factory()
    cfg = config if config is not None else WebRTCConfig(ice_servers=[STUN])
    conn = WebRTCConnection(cfg, callbacks or SignalingCallbacks(), label, factory)
    return conn, factory


def make_connected():
    conn, factory = make()
    conn.connect()
    factory.peer.channels["entropy-data"].open_now()
    return conn, factory


def test_create_connection():
    conn, _ = make()
    assert conn.connection_type is ConnectionType.REMOTE
    assert conn.state is ConnectionState.DISCONNECTED
    assert conn.is_connected is False


def test_connect_makes_ready():
    conn, factory = make()
    assert conn.is_ready() is False
    conn.connect()
    assert conn.is_ready() is True
    assert conn.state is ConnectionState.CONNECTING
    assert set(factory.peer.channels) == {"entropy-data", "entropy-data-unreliable"}


def test_channel_reliability_settings():
    conn, factory = make()
    conn.connect()
    reliable = factory.peer.channels["entropy-data"]
    unreliable = factory.peer.channels["entropy-data-unreliable"]
    assert reliable.ordered is True
    assert reliable.max_retransmits is None
    assert unreliable.ordered is False
    assert unreliable.max_retransmits == 0


def test_multiple_connect_fails():
    conn, _ = make()
    conn.connect()
    with pytest.raises(NetworkError) as info:
        conn.connect()
    assert info.value.code is ErrorCode.INVALID_PARAMETER


def test_disconnect():
    conn, factory = make()
    conn.connect()
    conn.disconnect()
    assert conn.state is ConnectionState.DISCONNECTED
    assert factory.peer.closed is True
    assert conn.is_ready() is False


def test_send_before_connect():
    conn, _ = make()
    with pytest.raises(NetworkError) as info:
        conn.send(bytes([1, 2, 3, 4]))
    assert info.value.code is ErrorCode.CONNECTION_CLOSED


def test_state_callback_on_disconnect():
    conn, _ = make()
    received = []
    conn.on_state_change = received.append
    conn.connect()
    conn.disconnect()
    assert received[-1] is ConnectionState.DISCONNECTED


def test_custom_data_channel_label():
    conn, factory = make(label="custom-channel")
    conn.connect()
    assert set(factory.peer.channels) == {"custom-channel", "custom-channel-unreliable"}


def test_multiple_ice_servers_reach_factory():
    servers = [STUN, "stun:stun1.example.com:19302", "stun:stun2.example.com:19302"]
    conn, factory = make(config=WebRTCConfig(ice_servers=servers))
    conn.connect()
    assert factory.peer.config.ice_servers == servers


def test_partial_port_range_is_dropped():
    conn, factory = make(config=WebRTCConfig(port_range_begin=5000, port_range_end=0))
    conn.connect()
    assert factory.peer.config.port_range_begin == 0


def test_set_remote_description_before_connect():
    conn, _ = make()
    with pytest.raises(NetworkError) as info:
        conn.set_remote_description("offer", "fake-sdp")
    assert info.value.code is ErrorCode.INVALID_PARAMETER


def test_add_remote_candidate_before_connect():
    conn, _ = make()
    with pytest.raises(NetworkError) as info:
        conn.add_remote_candidate("fake-candidate", "0")
    assert info.value.code is ErrorCode.INVALID_PARAMETER


def test_signaling_passed_to_peer():
    conn, factory = make()
    conn.connect()
    conn.set_remote_description("answer", "v=0")
    conn.add_remote_candidate("candidate:1", "0")
    assert factory.peer.remote_descriptions == [("answer", "v=0")]
    assert factory.peer.candidates == [("candidate:1", "0")]


def test_bad_remote_description_is_invalid_message():
    conn, _ = make()
    conn.connect()
    with pytest.raises(NetworkError) as info:
        conn.set_remote_description("offer", "bad")
    assert info.value.code is ErrorCode.INVALID_MESSAGE


def test_get_stats_initially_zero():
    conn, _ = make()
    stats = conn.stats
    assert (stats.bytes_sent, stats.bytes_received) == (0, 0)
    assert (stats.messages_sent, stats.messages_received) == (0, 0)


def test_local_signaling_forwarded():
    descriptions, candidates = [], []
    callbacks = SignalingCallbacks(
        on_local_description=lambda t, s: descriptions.append((t, s)),
        on_local_candidate=lambda c, m: candidates.append((c, m)),
    )
    conn, factory = make(callbacks=callbacks)
    conn.connect()
    factory.peer.on_local_description("offer", "v=0")
    factory.peer.on_local_candidate("candidate:2", "0")
    assert descriptions == [("offer", "v=0")]
    assert candidates == [("candidate:2", "0")]


def test_reliable_channel_open_connects():
    conn, factory = make()
    states = []
    conn.on_state_change = states.append
    conn.connect()
    factory.peer.channels["entropy-data"].open_now()
    assert conn.is_connected is True
    assert states == [ConnectionState.CONNECTED]
    assert conn.stats.connect_time > 0


def test_unreliable_open_does_not_connect():
    conn, factory = make()
    conn.connect()
    factory.peer.channels["entropy-data-unreliable"].open_now()
    assert conn.state is ConnectionState.CONNECTING


def test_send_updates_stats():
    conn, factory = make_connected()
    conn.send(b"hello")
    assert factory.peer.channels["entropy-data"].sent == [b"hello"]
    assert conn.stats.bytes_sent == 5
    assert conn.stats.messages_sent == 1


def test_send_failure_is_invalid_message():
    conn, factory = make_connected()
    factory.peer.channels["entropy-data"].fail = True
    with pytest.raises(NetworkError) as info:
        conn.send(b"x")
    assert info.value.code is ErrorCode.INVALID_MESSAGE


def test_try_send_backpressure():
    conn, factory = make_connected()
    factory.peer.channels["entropy-data"].buffered = 10
    with pytest.raises(NetworkError) as info:
        conn.try_send(b"x")
    assert info.value.code is ErrorCode.WOULD_BLOCK


def test_try_send_when_clear():
    conn, factory = make_connected()
    conn.try_send(b"abc")
    assert factory.peer.channels["entropy-data"].sent == [b"abc"]


def test_send_unreliable_falls_back_to_reliable():
    conn, factory = make_connected()
    conn.send_unreliable(b"fallback")
    assert factory.peer.channels["entropy-data"].sent == [b"fallback"]
    assert factory.peer.channels["entropy-data-unreliable"].sent == []


def test_send_unreliable_uses_unreliable_channel():
    conn, factory = make_connected()
    factory.peer.channels["entropy-data-unreliable"].open_now()
    conn.send_unreliable(b"fast")
    assert factory.peer.channels["entropy-data-unreliable"].sent == [b"fast"]


def test_message_receipt_from_text_and_binary():
    conn, factory = make_connected()
    got = []
    conn.on_message = got.append
    channel = factory.peer.channels["entropy-data"]
    channel.on_message("hi")
    channel.on_message(b"\x01\x02")
    assert got == [b"hi", b"\x01\x02"]
    assert conn.stats.messages_received == 2
    assert conn.stats.bytes_received == 4


def test_peer_failure_sets_failed():
    conn, factory = make_connected()
    factory.peer.on_state_change(PeerState.FAILED)
    assert conn.state is ConnectionState.FAILED


def test_peer_connecting_does_not_downgrade_connected():
    conn, factory = make_connected()
    factory.peer.on_state_change(PeerState.CONNECTING)
    assert conn.state is ConnectionState.CONNECTED


def test_reliable_channel_closed_disconnects():
    conn, factory = make_connected()
    factory.peer.channels["entropy-data"].close()
    assert conn.state is ConnectionState.DISCONNECTED


def test_remote_channel_adopted():
    conn, factory = make()
    conn.connect()
    remote = FakeChannel("entropy-data")
    factory.peer.on_data_channel(remote)
    remote.open_now()
    conn.send(b"via-remote")
    assert remote.sent == [b"via-remote"]


def test_connect_without_factory_fails():
    conn = WebRTCConnection(WebRTCConfig(ice_servers=[STUN]))
    with pytest.raises(NetworkError) as info:
        conn.connect()
    assert info.value.code is ErrorCode.CONNECTION_CLOSED
    assert conn.state is ConnectionState.DISCONNECTED