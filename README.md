# entropynet

entropynet provides message-oriented connections for local inter-process
communication over Unix domain sockets. It also provides a connection that
carries messages over WebRTC data channels through a peer implementation that
you supply. It uses only the standard library.

On a Unix domain socket, every message travels as a frame. A frame is a 4-byte
big-endian length followed by the payload. By default a frame may hold at most
16 MiB.

## Installation

```
pip install entropynet
```

To run the tests:

```
pip install "entropynet[test]"
pytest
```

## Modules

### `entropynet.connection`

This module holds the types that the other modules share:

- `ConnectionState`: `DISCONNECTED`, `CONNECTING`, `CONNECTED`,
  `DISCONNECTING` or `FAILED`.
- `ConnectionType`: `LOCAL` or `REMOTE`.
- `ConnectionStats`: counts bytes and messages sent and received, and records
  `connect_time` and `last_activity_time` in milliseconds since the epoch.
- `NetworkError`: the exception raised by failed operations. Its `code`
  attribute holds an `ErrorCode` and its `message` attribute holds the text.
- `NetworkConnection`: the abstract base class for connections.
  - It has `connect()`, `disconnect()`, `send(data)`, `send_unreliable(data)`
    and `try_send(data)`.
  - It has the properties `is_connected`, `state`, `connection_type` and
    `stats`.
  - Set `on_message` to a callable that takes `bytes`. It is called with each
    incoming message.
  - Set `on_state_change` to a callable that takes a `ConnectionState`. It is
    called on each state change.
  - By default `try_send` raises `INVALID_PARAMETER`.

### `entropynet.framing`

- `encode_frame(payload, max_message_size=16 MiB)` returns the frame for
  `payload`. It raises `INVALID_PARAMETER` if the payload is larger than the
  limit.
- `FrameDecoder(max_message_size)` rebuilds messages from a stream of bytes.
  - `feed(data)` accepts input in pieces of any size. It returns the list of
    messages that the new bytes complete, in order.
  - If a header announces a frame larger than the limit, `feed` resets the
    decoder and raises `INVALID_MESSAGE`.
  - `reset()` discards a partly received frame.

### `entropynet.unix_connection`

`UnixSocketConnection(socket_path, config=None)` is a client connection over a
Unix domain stream socket.

- `connect()` opens the socket and starts a background thread. The thread
  receives frames and passes each complete message to `on_message`.
- If the peer closes the socket, the state becomes `DISCONNECTED`.
- If a receive error occurs, or a frame is larger than the limit, the state
  becomes `FAILED`.
- `UnixSocketConnection.from_socket(sock, peer_info)` wraps a socket that is
  already connected.
- The connection is a context manager. Leaving the block calls `disconnect()`.
- `send_unreliable` behaves the same as `send`.
- The byte counts in `stats` include the 4-byte frame headers.

`ConnectionConfig` sets these options:

- `connect_timeout_ms`
- `send_poll_timeout_ms`
- `send_max_polls`
- `recv_idle_poll_ms`: a negative value makes the idle receive loop sleep for
  1 ms instead of polling.
- `max_message_size`
- `socket_send_buf`
- `socket_recv_buf`

### `entropynet.local_server`

`UnixSocketServer(socket_path, config=None, adopt=None)` listens on a socket
path.

- `accept()` blocks until a client connects. It returns a
  `UnixSocketConnection` for the client, or `adopt(connection)` if you gave an
  `adopt` callable.
- `accept()` returns `None` if the server is not listening, or if it is closed
  while `accept()` waits.
- `close()` stops listening and removes the socket file.
- The server is a context manager. Leaving the block calls `close()`.

`LocalServerConfig` sets these options:

- `backlog`
- `accept_poll_interval_ms`
- `chmod_mode`: if it is 0 or more, the socket file's mode is set to it.
- `unlink_on_start`: removes a stale socket file before the server binds.

`create_local_server(endpoint, config=None, adopt=None)` returns a
`UnixSocketServer`. On Windows it raises `RuntimeError`.

`LocalServer` is the abstract interface that `UnixSocketServer` implements.

### `entropynet.webrtc`

`WebRTCConnection(config, signaling_callbacks=None, data_channel_label="entropy-data", peer_factory=None)`
carries messages over two data channels:

- A reliable, ordered channel with the label you give.
- An unordered channel with no retransmissions, labelled `<label>-unreliable`.

The connection becomes `CONNECTED` when the reliable channel opens.

Sending:

- `send_unreliable` uses the reliable channel when the unreliable channel is
  not open.
- `try_send` raises `WOULD_BLOCK` while the reliable channel has buffered data.

Signalling:

- Local descriptions and ICE candidates go out through `SignalingCallbacks`.
- Remote ones come in through `set_remote_description(sdp_type, sdp)` and
  `add_remote_candidate(candidate, mid)`.
- Before `connect()` has made a peer connection, both methods raise
  `INVALID_PARAMETER`.
- `is_ready()` reports whether a peer connection exists.

You supply the peer. `peer_factory` receives a `WebRTCConfig` and must return a
`PeerConnection`. Your `PeerConnection` and `DataChannel` subclasses report
events by calling the callback attributes that the connection sets on them. The
`PeerState` values of your peer are translated into `ConnectionState`.

## Example: local echo

```python
import threading

from entropynet.local_server import UnixSocketServer
from entropynet.unix_connection import UnixSocketConnection

path = "/tmp/entropynet-demo.sock"
replied = threading.Event()

with UnixSocketServer(path) as server:
    server.listen()

    def serve():
        peer = server.accept()
        if peer is not None:
            peer.on_message = lambda data: peer.send(b"Echo: " + data)

    threading.Thread(target=serve, daemon=True).start()

    with UnixSocketConnection(path) as client:
        def show(data):
            print(data.decode())
            replied.set()

        client.on_message = show
        client.connect()
        client.send(b"ping")
        replied.wait(timeout=2)
```

## Errors

Failed operations raise `NetworkError`. Its `code` is one of these values:

- `CONNECTION_CLOSED`: the connection is not connected, a socket call failed,
  or a peer connection could not be created.
- `INVALID_PARAMETER`: a message is too large, a socket path is too long,
  `connect()` was called twice, or `listen()` was called twice.
- `TIMEOUT`: a connect or a send stalled beyond its configured limits.
- `WOULD_BLOCK`: a non-blocking send cannot go ahead.
- `INVALID_MESSAGE`: a frame header exceeds the limit, or a WebRTC channel or
  peer rejected the data.

On a connected `UnixSocketConnection`, `try_send` always raises `WOULD_BLOCK`
for a message within the size limit, because the connection never writes a
partial frame.

## What this package does not do

- It includes no WebRTC or ICE stack. `WebRTCConnection` needs a
  `peer_factory`. Without one, `connect()` raises `CONNECTION_CLOSED`.
- It includes no local server for Windows named pipes.
- It provides no registry or handle table that tracks many connections at
  once. To track accepted connections, pass an `adopt` callable to the server.
- It has no command-line program.