"""Frame dispatcher: socket ownership, routing and per-tick deadlines."""

import itertools
import logging
import socket
import threading
import time
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field, fields
from functools import partial
from typing import Dict, List, Optional, Tuple

from ..core.config import ServerConfig
from ..core.errors import BindError, DecodeError, ProtocolDesyncError
from ..core.registry import BotHandle, BotRegistry, PolicyFactory
from ..core.types import NEUTRAL_OUTPUT, ControlOutput, Snapshot
from ..policies import PolicyCatalog, catalog as default_catalog
from ..protocol.codec import AddBot, ControlsMessage, RemoveBot, decode_message, encode_controls
from .connection import Connection

logger = logging.getLogger(__name__)

# Process exit codes
EXIT_OK = 0
EXIT_BIND_FAILURE = 1
EXIT_DESYNC = 2


@dataclass
class DispatchStats:
    """Counters for the lifetime of a dispatcher."""

    frames_received: int = 0
    frames_served: int = 0
    decode_errors: int = 0
    deadline_misses: int = 0
    policy_errors: int = 0
    retired_frames: int = 0
    connections: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def increment(self, name: str, amount: int = 1) -> None:
        with self._lock:
            setattr(self, name, getattr(self, name) + amount)

    def as_dict(self) -> Dict[str, int]:
        with self._lock:
            return {f.name: getattr(self, f.name) for f in fields(self) if not f.name.startswith("_")}


class FrameDispatcher:
    """Serves control outputs to a game engine over TCP.

    One accept loop, one reader thread per connection, and a bounded pool
    of workers that serve ticks. Each bot runs its policy on its own worker
    thread, so a slow bot never delays frames for another index.

    Example:
        dispatcher = FrameDispatcher(config, BotRegistry())
        dispatcher.bind()
        exit_code = dispatcher.serve_forever()
    """

    def __init__(
        self,
        config: ServerConfig,
        registry: BotRegistry,
        catalog: Optional[PolicyCatalog] = None,
    ):
        """Initialize dispatcher.

        Args:
            config: Server configuration
            registry: Bot registry owned by this dispatcher
            catalog: Policy catalog used to resolve bot types
        """
        self.config = config
        self.registry = registry
        self.catalog = catalog or default_catalog
        self.tick_budget = config.effective_tick_budget
        self.stats = DispatchStats()
        self.exit_code = EXIT_OK

        self._sock: Optional[socket.socket] = None
        self._address: Optional[Tuple[str, int]] = None
        self._stop = threading.Event()
        self._pool: Optional[ThreadPoolExecutor] = None
        self._connections: Dict[str, Connection] = {}
        self._readers: List[threading.Thread] = []
        self._conn_lock = threading.Lock()
        self._conn_ids = itertools.count(1)

        # index -> ADD_BOT construction still running on the pool
        self._pending_adds: Dict[int, Future] = {}
        self._pending_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Socket lifecycle
    # ------------------------------------------------------------------

    @property
    def address(self) -> Optional[Tuple[str, int]]:
        """Bound (host, port), or None before bind()."""
        return self._address

    def bind(self) -> Tuple[str, int]:
        """Bind and listen on the configured address.

        Returns:
            The bound (host, port)

        Raises:
            BindError: If the port cannot be bound
        """
        if self._sock is not None:
            return self.address

        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.config.host, self.config.port))
            sock.listen()
        except OSError as e:
            sock.close()
            raise BindError(
                f"Could not bind {self.config.host}:{self.config.port}: {e}"
            ) from e

        sock.settimeout(self.config.accept_timeout)
        self._sock = sock
        host, port = sock.getsockname()[:2]
        self._address = (host, port)
        logger.info(
            "Listening on %s:%d (tick budget %.1fms)", host, port, self.tick_budget * 1000
        )
        return host, port

    def serve_forever(self) -> int:
        """Accept connections until shutdown() or a protocol desync.

        Returns:
            Process exit code
        """
        self.bind()
        self._pool = ThreadPoolExecutor(
            max_workers=self.config.max_workers, thread_name_prefix="dispatch"
        )

        try:
            while not self._stop.is_set():
                try:
                    conn_sock, address = self._sock.accept()
                except socket.timeout:
                    continue
                except OSError as e:
                    if self._stop.is_set():
                        break
                    logger.error("Accept failed: %s", e)
                    time.sleep(self.config.accept_timeout)
                    continue
                self._start_connection(conn_sock, address)
        finally:
            self._teardown()

        return self.exit_code

    def shutdown(self) -> None:
        """Ask serve_forever to stop. Safe to call from a signal handler."""
        self._stop.set()

    def _start_connection(self, conn_sock: socket.socket, address) -> None:
        conn_sock.settimeout(None)
        conn_sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        conn = Connection(
            conn_sock,
            address,
            conn_id=f"conn-{next(self._conn_ids)}",
            max_frame_size=self.config.max_frame_size,
        )
        with self._conn_lock:
            self._connections[conn.id] = conn
        self.stats.increment("connections")

        reader = threading.Thread(
            target=self._handle_connection, args=(conn,), name=f"reader-{conn.id}", daemon=True
        )
        self._readers.append(reader)
        reader.start()

    def _teardown(self) -> None:
        """Stop accepting, drop connections, retire bots, close the socket."""
        self._stop.set()
        deadline = time.monotonic() + self.config.shutdown_grace

        if self._sock is not None:
            self._sock.close()

        with self._conn_lock:
            connections = list(self._connections.values())
        for conn in connections:
            conn.close()

        for reader in self._readers:
            reader.join(timeout=max(0.0, deadline - time.monotonic()))

        retired = self.registry.retire_all()
        if retired:
            logger.info("Retired bots on shutdown: %s", retired)

        if self._pool is not None:
            self._pool.shutdown(wait=False, cancel_futures=True)

        logger.info("Dispatcher stopped: %s", self.stats.as_dict())

    # ------------------------------------------------------------------
    # Reading and routing
    # ------------------------------------------------------------------

    def _handle_connection(self, conn: Connection) -> None:
        """Reader loop for one engine connection."""
        logger.info("Engine connected from %s:%d as %s", conn.address[0], conn.address[1], conn.id)
        try:
            for payload in conn.read_payloads():
                self.stats.increment("frames_received")
                try:
                    message = decode_message(payload)
                except DecodeError as e:
                    self.stats.increment("decode_errors")
                    logger.warning("Dropping malformed frame on %s: %s", conn.id, e)
                    continue
                self._route(conn, message)
        except ProtocolDesyncError as e:
            logger.error("Protocol desynchronized on %s: %s", conn.id, e)
            self.exit_code = EXIT_DESYNC
            self._stop.set()
        except OSError as e:
            if not conn.closed:
                logger.warning("Connection %s lost: %s", conn.id, e)
        finally:
            conn.close()
            with self._conn_lock:
                self._connections.pop(conn.id, None)
            retired = self.registry.retire_owned(conn.id)
            logger.info("Engine %s disconnected; retired bots %s", conn.id, retired)

    def _route(self, conn: Connection, message) -> None:
        if isinstance(message, Snapshot):
            deadline = time.monotonic() + self.tick_budget
            self._submit(self._serve_and_reply, conn, message, deadline)
        elif isinstance(message, AddBot):
            future = self._submit(self._add_bot, conn.id, message)
            if future is not None:
                self._track_add(message.index, future)
        elif isinstance(message, RemoveBot):
            pending = self._pending_add(message.index)
            if pending is None:
                self.registry.retire(message.index)
            else:
                # Retire once the requested construction has finished
                pending.add_done_callback(lambda _: self.registry.retire(message.index))
        elif isinstance(message, ControlsMessage):
            logger.warning("Ignoring controls message sent to the agent on %s", conn.id)

    def _submit(self, fn, *args) -> Optional[Future]:
        """Run fn on the dispatch pool, or inline before serve_forever."""
        if self._pool is None:
            future: Future = Future()
            future.set_result(fn(*args))
            return future
        try:
            return self._pool.submit(fn, *args)
        except RuntimeError:
            # Pool already shut down
            return None

    def _add_bot(self, owner: str, message: AddBot) -> BotHandle:
        handle = self.registry.ensure(
            message.index,
            message.bot_type,
            message.team,
            self.factory_for(message.bot_type),
            owner=owner,
        )
        if handle.bot_type != message.bot_type:
            logger.debug(
                "Index %d already runs %s; ignoring request for %s",
                message.index, handle.bot_type, message.bot_type,
            )
        return handle

    def _track_add(self, index: int, future: Future) -> None:
        with self._pending_lock:
            self._pending_adds[index] = future
        future.add_done_callback(partial(self._untrack_add, index))

    def _untrack_add(self, index: int, future: Future) -> None:
        with self._pending_lock:
            if self._pending_adds.get(index) is future:
                del self._pending_adds[index]

    def _pending_add(self, index: int) -> Optional[Future]:
        with self._pending_lock:
            return self._pending_adds.get(index)

    def _serve_and_reply(self, conn: Connection, snapshot: Snapshot, deadline: float) -> None:
        try:
            output = self.serve_tick(snapshot, owner=conn.id, deadline=deadline)
            if output is None:
                return
            if conn.send(encode_controls(snapshot.player_index, snapshot.frame_number, output)):
                self.stats.increment("frames_served")
        except Exception:
            logger.exception("Failed to serve frame %d for bot %d", snapshot.frame_number, snapshot.player_index)

    # ------------------------------------------------------------------
    # Tick serving
    # ------------------------------------------------------------------

    def factory_for(self, bot_type: str) -> PolicyFactory:
        """Factory that builds the named policy with its configured options.

        Unknown bot types fail inside the factory so the registry records
        the failure like any other construction error.
        """
        options = self.config.options_for(bot_type)

        def factory(index: int):
            return self.catalog.create_factory(bot_type, **options)(index)

        return factory

    def serve_tick(
        self,
        snapshot: Snapshot,
        owner: Optional[str] = None,
        deadline: Optional[float] = None,
    ) -> Optional[ControlOutput]:
        """Compute the reply for one tick before its deadline.

        Args:
            snapshot: Decoded game tick
            owner: Connection id, recorded on implicitly created bots
            deadline: time.monotonic() value by which the reply is due;
                defaults to one tick budget from now

        Returns:
            Clamped controller output, or None when the bot was removed and
            the frame is dropped. Never raises for policy failures.
        """
        if deadline is None:
            deadline = time.monotonic() + self.tick_budget
        index = snapshot.player_index

        handle = self.registry.lookup(index)
        if handle is None or handle.failed:
            pending = self._pending_add(index)
            if pending is not None:
                try:
                    pending.result(timeout=max(0.0, deadline - time.monotonic()))
                except (FutureTimeout, CancelledError):
                    self.stats.increment("deadline_misses")
                    logger.info("Bot %d is still being built; replying with neutral output", index)
                    return NEUTRAL_OUTPUT
                handle = self.registry.lookup(index)

        if handle is None or handle.failed:
            # Unseen index, or a failed build whose back-off may have expired
            me = snapshot.me
            bot_type = handle.bot_type if handle is not None else self.config.default_bot_type
            handle = self.registry.ensure(
                index,
                bot_type,
                me.team if me is not None else 0,
                self.factory_for(bot_type),
                owner=owner,
            )

        if handle.failed:
            self.stats.increment("retired_frames")
            if not handle.retired_warning_logged:
                handle.retired_warning_logged = True
                logger.warning("Bot %d could not be built; replying with neutral output", index)
            return NEUTRAL_OUTPUT

        if not handle.is_live:
            self.stats.increment("retired_frames")
            if not handle.retired_warning_logged:
                handle.retired_warning_logged = True
                logger.warning("Bot %d was removed; dropping its frames", index)
            return None

        return self._invoke(handle, snapshot, deadline)

    def _invoke(self, handle: BotHandle, snapshot: Snapshot, deadline: float) -> ControlOutput:
        if handle.overdue_running():
            logger.debug("Bot %d still busy with an overdue frame; reusing last output", handle.index)
            self.stats.increment("deadline_misses")
            return handle.last_output

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            self.stats.increment("deadline_misses")
            logger.info(
                "Frame %d for bot %d expired before a worker picked it up",
                snapshot.frame_number, handle.index,
            )
            return handle.last_output

        future = handle.submit(snapshot)
        if future is None:
            return NEUTRAL_OUTPUT

        try:
            result = future.result(timeout=remaining)
        except FutureTimeout:
            handle.mark_overdue(future)
            future.add_done_callback(partial(self._discard_late, handle.index, snapshot.frame_number))
            self.stats.increment("deadline_misses")
            logger.info(
                "Bot %d missed the %.1fms deadline on frame %d",
                handle.index, self.tick_budget * 1000, snapshot.frame_number,
            )
            return handle.last_output
        except CancelledError:
            return handle.last_output
        except Exception:
            self.stats.increment("policy_errors")
            logger.exception("Policy for bot %d failed on frame %d", handle.index, snapshot.frame_number)
            return handle.last_output

        try:
            output = ControlOutput.coerce(result)
        except (TypeError, ValueError) as e:
            self.stats.increment("policy_errors")
            logger.error("Bot %d returned unusable output %r: %s", handle.index, result, e)
            return handle.last_output

        handle.record(output)
        return output

    @staticmethod
    def _discard_late(index: int, frame_number: int, future: Future) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.warning("Overdue policy call for bot %d (frame %d) failed: %s", index, frame_number, error)
        else:
            logger.debug("Discarded late output for bot %d (frame %d)", index, frame_number)
