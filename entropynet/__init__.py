"""Framed Unix socket connections and server, and WebRTC data-channel connections."""

__version__ = "0.1.0"
__all__ = ["connection", "framing", "unix_connection", "local_server", "webrtc"]