"""Servers that accept local inter-process connections."""

from __future__ import annotations

import abc
import logging
import os
import select
import socket
import sys
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .connection import ErrorCode, NetworkError
from .unix_connection import UnixSocketConnection

logger = logging.getLogger(__name__)

_SUN_PATH_SIZE = 108 if sys.platform.startswith("linux") else 104

AdoptCallback = Callable[[UnixSocketConnection], Any]


@dataclass
class LocalServerConfig:
    """Options for a local server."""

    backlog: int = 128
    accept_poll_interval_ms: int = 500
    chmod_mode: int = -1
    unlink_on_start: bool = True


class LocalServer(abc.ABC):
    """A server that accepts local connections."""

    @abc.abstractmethod
    def listen(self) -> None:
        """Start listening for connections."""

    @abc.abstractmethod
    def accept(self) -> Any:
        """Block until a client connects; None if the server stops first."""

    @abc.abstractmethod
    def close(self) -> None:
        """Stop listening and release the endpoint."""

    @property
    @abc.abstractmethod
    def is_listening(self) -> bool:
        """Whether the server is accepting connections."""


def _unlink_quietly(path: str) -> None:
    try:
        os.unlink(path)
    except OSError:
        pass


class UnixSocketServer(LocalServer):
    """Accepts connections on a Unix domain stream socket.

    Accepted sockets are wrapped in ``UnixSocketConnection``; if ``adopt`` is
    given, ``accept`` returns whatever it makes of that connection.
    """

    def __init__(
        self,
        socket_path: str,
        config: Optional[LocalServerConfig] = None,
        adopt: Optional[AdoptCallback] = None,
    ) -> None:
        self._socket_path = socket_path
        self._config = config if config is not None else LocalServerConfig()
        self._adopt = adopt
        self._sock: Optional[socket.socket] = None
        self._listening = False
        self._lock = threading.Lock()

    @property
    def socket_path(self) -> str:
        return self._socket_path

    def listen(self) -> None:
        with self._lock:
            if self._listening:
                raise NetworkError(ErrorCode.INVALID_PARAMETER, "Already listening")

            cfg = self._config
            if cfg.unlink_on_start:
                _unlink_quietly(self._socket_path)

            try:
                sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            except OSError as exc:
                logger.error("Failed to create server socket: %s", exc.strerror)
                raise NetworkError(
                    ErrorCode.CONNECTION_CLOSED,
                    f"Failed to create server socket: {exc.strerror}",
                ) from exc
            sock.setblocking(False)

            if len(os.fsencode(self._socket_path)) >= _SUN_PATH_SIZE:
                sock.close()
                raise NetworkError(ErrorCode.INVALID_PARAMETER, "Socket path too long")

            try:
                sock.bind(self._socket_path)
            except OSError as exc:
                message = f"Failed to bind socket: {exc.strerror}"
                logger.error("%s", message)
                sock.close()
                raise NetworkError(ErrorCode.CONNECTION_CLOSED, message) from exc

            if cfg.chmod_mode >= 0:
                try:
                    os.chmod(self._socket_path, cfg.chmod_mode)
                except OSError:
                    pass

            try:
                sock.listen(cfg.backlog)
            except OSError as exc:
                message = f"Failed to listen on socket: {exc.strerror}"
                logger.error("%s", message)
                sock.close()
                _unlink_quietly(self._socket_path)
                raise NetworkError(ErrorCode.CONNECTION_CLOSED, message) from exc

            self._sock = sock
            self._listening = True
            logger.info("Unix socket server listening on %s", self._socket_path)

    def accept(self) -> Any:
        """Wait for a client; None if not listening or closed while waiting.

        Raises NetworkError if polling or accepting fails for another reason.
        """
        interval_ms = self._config.accept_poll_interval_ms
        timeout = None if interval_ms < 0 else interval_ms / 1000.0

        while self._listening:
            sock = self._sock
            if sock is None:
                break
            try:
                readable, _, _ = select.select([sock], [], [], timeout)
            except InterruptedError:
                continue
            except (OSError, ValueError) as exc:
                if not self._listening:
                    break
                logger.warning("poll() failed in accept: %s", exc)
                raise NetworkError(
                    ErrorCode.CONNECTION_CLOSED, f"poll() failed in accept: {exc}"
                ) from exc
            if not readable:
                continue

            try:
                client, _ = sock.accept()
            except (BlockingIOError, InterruptedError):
                continue
            except OSError as exc:
                if not self._listening:
                    break
                logger.warning("accept() failed: %s", exc.strerror)
                raise NetworkError(
                    ErrorCode.CONNECTION_CLOSED, f"accept() failed: {exc.strerror}"
                ) from exc

            logger.info("Accepted Unix local connection")
            conn = UnixSocketConnection.from_socket(client, "accepted")
            return self._adopt(conn) if self._adopt is not None else conn

        return None

    def close(self) -> None:
        with self._lock:
            if not self._listening:
                return
            self._listening = False
            sock, self._sock = self._sock, None
            if sock is not None:
                sock.close()
            _unlink_quietly(self._socket_path)
            logger.info("Unix socket server closed: %s", self._socket_path)

    @property
    def is_listening(self) -> bool:
        return self._listening

    def __enter__(self) -> "UnixSocketServer":
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def __repr__(self) -> str:
        listening = "true" if self._listening else "false"
        return f"UnixSocketServer(path={self._socket_path}, listening={listening})"


def create_local_server(
    endpoint: str,
    config: Optional[LocalServerConfig] = None,
    adopt: Optional[AdoptCallback] = None,
) -> LocalServer:
    """Create the local server suited to this platform."""
    if sys.platform == "win32":
        raise RuntimeError("Named pipe server not yet implemented")
    if not hasattr(socket, "AF_UNIX"):
        raise RuntimeError("No local server implementation for this platform")
    return UnixSocketServer(endpoint, config, adopt)