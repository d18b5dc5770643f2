"""Length-prefixed message framing: a 4-byte big-endian length, then the payload."""

from __future__ import annotations

from typing import List, Optional

from .connection import ErrorCode, NetworkError

FRAME_HEADER_SIZE = 4
MAX_MESSAGE_SIZE = 16 * 1024 * 1024


def encode_frame(payload: bytes, max_message_size: int = MAX_MESSAGE_SIZE) -> bytes:
    """Return ``payload`` preceded by its length as a 4-byte big-endian header."""
    if len(payload) > max_message_size:
        raise NetworkError(ErrorCode.INVALID_PARAMETER, "Message too large")
    return len(payload).to_bytes(FRAME_HEADER_SIZE, "big") + bytes(payload)


class FrameDecoder:
    """Reassembles framed messages from a byte stream that arrives in arbitrary pieces."""

    def __init__(self, max_message_size: int = MAX_MESSAGE_SIZE) -> None:
        self.max_message_size = max_message_size
        self._buffer = bytearray()
        self._expected: Optional[int] = None

    def feed(self, data: bytes) -> List[bytes]:
        """Consume ``data`` and return every message it completes, in order.

        Raises NetworkError if a header announces a message larger than the limit;
        the decoder is reset in that case.
        """
        view = memoryview(bytes(data))
        pos = 0
        messages: List[bytes] = []
        while True:
            if self._expected is None:
                need = FRAME_HEADER_SIZE - len(self._buffer)
                chunk = view[pos:pos + need]
                self._buffer += chunk
                pos += len(chunk)
                if len(self._buffer) < FRAME_HEADER_SIZE:
                    break
                length = int.from_bytes(self._buffer, "big")
                if length > self.max_message_size:
                    self.reset()
                    raise NetworkError(
                        ErrorCode.INVALID_MESSAGE,
                        "Frame length exceeds maximum message size",
                    )
                self._buffer.clear()
                self._expected = length
            else:
                need = self._expected - len(self._buffer)
                chunk = view[pos:pos + need]
                self._buffer += chunk
                pos += len(chunk)
                if len(self._buffer) < self._expected:
                    break
                messages.append(bytes(self._buffer))
                self._buffer.clear()
                self._expected = None
        return messages

    def reset(self) -> None:
        """Discard any partially received frame."""
        self._buffer.clear()
        self._expected = None