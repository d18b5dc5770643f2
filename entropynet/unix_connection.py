"""Unix domain socket connection carrying length-prefixed messages."""

from __future__ import annotations

import errno
import logging
import os
import select
import socket
import sys
import threading
import time
from dataclasses import dataclass
from typing import Optional

from .connection import (
    ConnectionState,
    ConnectionStats,
    ConnectionType,
    ErrorCode,
    NetworkConnection,
    NetworkError,
)
from .framing import FRAME_HEADER_SIZE, MAX_MESSAGE_SIZE, FrameDecoder, encode_frame

logger = logging.getLogger(__name__)

_RECV_CHUNK = 65536
_SUN_PATH_SIZE = 108 if sys.platform.startswith("linux") else 104
_SEND_FLAGS = getattr(socket, "MSG_NOSIGNAL", 0)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _wait(sock: socket.socket, timeout_ms: int, *, write: bool) -> bool:
    """Wait until ``sock`` is readable (or writable); False on timeout."""
    timeout = None if timeout_ms < 0 else timeout_ms / 1000.0
    if write:
        _, ready, _ = select.select([], [sock], [], timeout)
    else:
        ready, _, _ = select.select([sock], [], [], timeout)
    return bool(ready)


@dataclass
class ConnectionConfig:
    """Tunable limits and timeouts for a Unix socket connection."""

    connect_timeout_ms: int = 5000
    send_poll_timeout_ms: int = 100
    send_max_polls: int = 20
    recv_idle_poll_ms: int = -1
    max_message_size: int = MAX_MESSAGE_SIZE
    socket_send_buf: int = 0
    socket_recv_buf: int = 0


class UnixSocketConnection(NetworkConnection):
    """Reliable, ordered message connection over a Unix domain stream socket."""

    def __init__(self, socket_path: str, config: Optional[ConnectionConfig] = None) -> None:
        super().__init__()
        self._socket_path = socket_path
        self._config = config if config is not None else ConnectionConfig()
        self._sock: Optional[socket.socket] = None
        self._state = ConnectionState.DISCONNECTED
        self._receive_thread: Optional[threading.Thread] = None
        self._should_stop = threading.Event()
        self._send_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self._stats = ConnectionStats()

    @classmethod
    def from_socket(cls, sock: socket.socket, peer_info: str = "accepted") -> "UnixSocketConnection":
        """Wrap an already connected socket and start receiving on it."""
        conn = cls(peer_info)
        sock.setblocking(False)
        sock.set_inheritable(False)
        conn._sock = sock
        conn._state = ConnectionState.CONNECTED
        conn._mark_connected()
        conn._start_receiving()
        return conn

    # -- lifecycle -----------------------------------------------------------

    def connect(self) -> None:
        if self._state is not ConnectionState.DISCONNECTED:
            raise NetworkError(ErrorCode.INVALID_PARAMETER, "Already connected or connecting")

        self._set_state(ConnectionState.CONNECTING)
        logger.info("Connecting to %s", self._socket_path)

        try:
            sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        except OSError as exc:
            self._set_state(ConnectionState.FAILED)
            logger.error("Failed to create socket: %s", exc.strerror)
            raise NetworkError(
                ErrorCode.CONNECTION_CLOSED, f"Failed to create socket: {exc.strerror}"
            ) from exc
        sock.setblocking(False)
        self._sock = sock

        cfg = self._config
        if cfg.socket_send_buf > 0:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_SNDBUF, cfg.socket_send_buf)
        if cfg.socket_recv_buf > 0:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, cfg.socket_recv_buf)

        if len(os.fsencode(self._socket_path)) >= _SUN_PATH_SIZE:
            self._fail_connect(ErrorCode.INVALID_PARAMETER, "Socket path too long")

        err = sock.connect_ex(self._socket_path)
        if err == errno.EINPROGRESS:
            try:
                writable = _wait(sock, cfg.connect_timeout_ms, write=True)
            except OSError as exc:
                self._fail_connect(ErrorCode.CONNECTION_CLOSED, f"Poll failed: {exc.strerror}")
            if not writable:
                logger.warning("Unix socket connect timeout")
                self._fail_connect(ErrorCode.TIMEOUT, "Connection timeout")
            try:
                err = sock.getsockopt(socket.SOL_SOCKET, socket.SO_ERROR)
            except OSError as exc:
                self._fail_connect(
                    ErrorCode.CONNECTION_CLOSED, f"getsockopt failed: {exc.strerror}"
                )
            if err != 0:
                self._fail_connect(
                    ErrorCode.CONNECTION_CLOSED, f"Connection failed: {os.strerror(err)}"
                )
        elif err != 0:
            self._fail_connect(
                ErrorCode.CONNECTION_CLOSED, f"Failed to connect: {os.strerror(err)}"
            )

        self._set_state(ConnectionState.CONNECTED)
        logger.info("Connected to %s", self._socket_path)
        self._mark_connected()
        self._start_receiving()

    def disconnect(self) -> None:
        self._should_stop.set()
        thread = self._receive_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()
            self._receive_thread = None

        if self._state is ConnectionState.DISCONNECTED:
            self._close_socket()
            return

        self._set_state(ConnectionState.DISCONNECTING)
        logger.info("Disconnecting Unix socket")
        self._close_socket()
        self._set_state(ConnectionState.DISCONNECTED)

    def __enter__(self) -> "UnixSocketConnection":
        return self

    def __exit__(self, *args) -> None:
        self.disconnect()

    # -- sending -------------------------------------------------------------

    def send(self, data: bytes) -> None:
        self._send_framed(data)

    def send_unreliable(self, data: bytes) -> None:
        # Unix stream sockets are always reliable.
        self._send_framed(data)

    def try_send(self, data: bytes) -> None:
        # Partial non-blocking writes would corrupt framing without a send queue,
        # so backpressure is always reported.
        self._check_sendable(data)
        raise NetworkError(
            ErrorCode.WOULD_BLOCK,
            "Non-blocking send not yet supported for UnixSocketConnection",
        )

    def _check_sendable(self, data: bytes) -> None:
        if self._state is not ConnectionState.CONNECTED:
            raise NetworkError(ErrorCode.CONNECTION_CLOSED, "Not connected")
        if len(data) > self._config.max_message_size:
            raise NetworkError(ErrorCode.INVALID_PARAMETER, "Message too large")

    def _send_framed(self, data: bytes) -> None:
        self._check_sendable(data)
        frame = encode_frame(bytes(data), self._config.max_message_size)
        with self._send_lock:
            sock = self._sock
            if sock is None:
                raise NetworkError(ErrorCode.CONNECTION_CLOSED, "Not connected")
            self._send_all(
                sock,
                memoryview(frame)[:FRAME_HEADER_SIZE],
                timeout_message="Send timeout (header)",
                failure_prefix="Failed to send frame header",
                poll_prefix="Poll failed during header send",
            )
            self._send_all(
                sock,
                memoryview(frame)[FRAME_HEADER_SIZE:],
                timeout_message="Send timeout",
                failure_prefix="Failed to send data",
                poll_prefix="Poll failed during send",
            )
        with self._stats_lock:
            self._stats.bytes_sent += len(frame)
            self._stats.messages_sent += 1
            self._stats.last_activity_time = _now_ms()

    def _send_all(
        self,
        sock: socket.socket,
        buf: memoryview,
        *,
        timeout_message: str,
        failure_prefix: str,
        poll_prefix: str,
    ) -> None:
        cfg = self._config
        retries = 0
        while buf:
            try:
                sent = sock.send(buf, _SEND_FLAGS)
            except (BlockingIOError, InterruptedError):
                try:
                    writable = _wait(sock, cfg.send_poll_timeout_ms, write=True)
                except (OSError, ValueError) as exc:
                    raise NetworkError(
                        ErrorCode.CONNECTION_CLOSED, f"{poll_prefix}: {exc}"
                    ) from exc
                if not writable:
                    retries += 1
                    if retries > cfg.send_max_polls:
                        logger.warning("Unix socket %s", timeout_message.lower())
                        raise NetworkError(ErrorCode.TIMEOUT, timeout_message)
                continue
            except OSError as exc:
                logger.error("%s: %s", failure_prefix, exc.strerror)
                raise NetworkError(
                    ErrorCode.CONNECTION_CLOSED, f"{failure_prefix}: {exc.strerror}"
                ) from exc
            buf = buf[sent:]
            retries = 0

    # -- receiving -----------------------------------------------------------

    def _start_receiving(self) -> None:
        self._should_stop.clear()
        self._receive_thread = threading.Thread(
            target=self._receive_loop, name="unix-socket-recv", daemon=True
        )
        self._receive_thread.start()

    def _receive_loop(self) -> None:
        sock = self._sock
        if sock is None:
            return
        decoder = FrameDecoder(self._config.max_message_size)
        idle_ms = self._config.recv_idle_poll_ms

        while not self._should_stop.is_set() and self._state is ConnectionState.CONNECTED:
            try:
                chunk = sock.recv(_RECV_CHUNK)
            except (BlockingIOError, InterruptedError):
                if idle_ms >= 0:
                    try:
                        _wait(sock, idle_ms, write=False)
                    except (OSError, ValueError):
                        pass
                else:
                    time.sleep(0.001)
                continue
            except OSError:
                self._set_state(ConnectionState.FAILED)
                return

            if not chunk:
                break

            with self._stats_lock:
                self._stats.bytes_received += len(chunk)
                self._stats.last_activity_time = _now_ms()

            try:
                messages = decoder.feed(chunk)
            except NetworkError:
                self._set_state(ConnectionState.FAILED)
                return

            for message in messages:
                with self._stats_lock:
                    self._stats.messages_received += 1
                self._on_message_received(message)

        if self._state is ConnectionState.CONNECTED:
            self._set_state(ConnectionState.DISCONNECTED)

    # -- state and info --------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connection_type(self) -> ConnectionType:
        return ConnectionType.LOCAL

    @property
    def stats(self) -> ConnectionStats:
        with self._stats_lock:
            s = self._stats
            return ConnectionStats(
                bytes_sent=s.bytes_sent,
                bytes_received=s.bytes_received,
                messages_sent=s.messages_sent,
                messages_received=s.messages_received,
                connect_time=s.connect_time,
                last_activity_time=s.last_activity_time,
            )

    # -- helpers ---------------------------------------------------------------

    def _set_state(self, state: ConnectionState) -> None:
        self._state = state
        self._on_state_changed(state)

    def _mark_connected(self) -> None:
        now = _now_ms()
        with self._stats_lock:
            self._stats.connect_time = now
            self._stats.last_activity_time = now

    def _close_socket(self) -> None:
        sock, self._sock = self._sock, None
        if sock is None:
            return
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        sock.close()

    def _fail_connect(self, code: ErrorCode, message: str) -> None:
        self._close_socket()
        self._set_state(ConnectionState.FAILED)
        logger.error("%s", message)
        raise NetworkError(code, message)