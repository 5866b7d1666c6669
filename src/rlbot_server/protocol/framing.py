"""Length-prefixed framing over a byte stream."""

import struct
from typing import List

from ..core.errors import ProtocolDesyncError

# u32 little-endian payload length
LENGTH_PREFIX = struct.Struct("<I")


def frame(payload: bytes) -> bytes:
    """Prefix a payload with its length."""
    return LENGTH_PREFIX.pack(len(payload)) + payload


class FrameBuffer:
    """Reassembles frames from arbitrarily split socket reads.

    Example:
        buffer = FrameBuffer()
        for payload in buffer.feed(sock.recv(4096)):
            handle(payload)
    """

    def __init__(self, max_frame_size: int = 65_536):
        """Initialize frame buffer.

        Args:
            max_frame_size: Largest payload accepted; anything bigger means
                the stream is out of sync
        """
        self.max_frame_size = max_frame_size
        self._buffer = bytearray()

    def __len__(self) -> int:
        """Number of buffered bytes not yet returned as a frame."""
        return len(self._buffer)

    def feed(self, data: bytes) -> List[bytes]:
        """Add received bytes and pop every complete payload.

        Args:
            data: Bytes read from the socket

        Returns:
            Complete payloads in arrival order

        Raises:
            ProtocolDesyncError: If a length prefix exceeds max_frame_size
        """
        self._buffer.extend(data)
        payloads = []

        while len(self._buffer) >= LENGTH_PREFIX.size:
            (length,) = LENGTH_PREFIX.unpack_from(self._buffer)
            if length > self.max_frame_size:
                raise ProtocolDesyncError(
                    f"Frame length {length} exceeds limit {self.max_frame_size}"
                )
            end = LENGTH_PREFIX.size + length
            if len(self._buffer) < end:
                break
            payloads.append(bytes(self._buffer[LENGTH_PREFIX.size:end]))
            del self._buffer[:end]

        return payloads

    def clear(self) -> None:
        self._buffer.clear()
