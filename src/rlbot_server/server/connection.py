"""One engine connection: framed reads and serialized writes."""

import logging
import socket
import threading
from typing import Iterator, Tuple

from ..protocol.framing import FrameBuffer, frame

logger = logging.getLogger(__name__)


class Connection:
    """Socket wrapper shared by the reader thread and dispatch workers.

    Reads happen on one thread only; writes from any thread are serialized
    so replies are never interleaved on the stream.
    """

    RECV_SIZE = 65_536

    def __init__(
        self,
        sock: socket.socket,
        address: Tuple[str, int],
        conn_id: str,
        max_frame_size: int = 65_536,
    ):
        self.sock = sock
        self.address = address
        self.id = conn_id
        self._frames = FrameBuffer(max_frame_size)
        self._send_lock = threading.Lock()
        self._closed = threading.Event()

    def __repr__(self) -> str:
        return f"Connection({self.id}, {self.address[0]}:{self.address[1]})"

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def read_payloads(self) -> Iterator[bytes]:
        """Yield complete payloads until the peer closes the stream.

        Raises:
            ProtocolDesyncError: If the stream cannot be framed
            OSError: On socket failure
        """
        while not self.closed:
            data = self.sock.recv(self.RECV_SIZE)
            if not data:
                if len(self._frames):
                    logger.warning(
                        "%s closed with %d bytes of an incomplete frame", self.id, len(self._frames)
                    )
                return
            yield from self._frames.feed(data)

    def send(self, payload: bytes) -> bool:
        """Write one framed payload.

        Returns:
            False if the connection is closed or the write failed
        """
        if self.closed:
            return False
        data = frame(payload)
        with self._send_lock:
            try:
                self.sock.sendall(data)
            except OSError as e:
                logger.debug("Send on %s failed: %s", self.id, e)
                return False
        return True

    def close(self) -> None:
        """Shut down and close the socket. Safe to call more than once."""
        if self.closed:
            return
        self._closed.set()
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            # Peer already gone
            pass
        self.sock.close()
