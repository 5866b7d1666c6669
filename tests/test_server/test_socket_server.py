"""End-to-end tests over a real localhost socket."""

import socket
import threading
import time

import pytest

from rlbot_server.core.errors import BindError
from rlbot_server.core.registry import BotRegistry, BotState
from rlbot_server.core.types import NEUTRAL_OUTPUT
from rlbot_server.protocol import encode_add_bot, encode_remove_bot, encode_snapshot, frame
from rlbot_server.protocol.framing import LENGTH_PREFIX
from rlbot_server.server import EXIT_DESYNC, EXIT_OK, FrameDispatcher

from conftest import EngineClient, RecordingPolicy, make_snapshot, wait_for


class RunningServer:
    """Dispatcher serving on a background thread."""

    def __init__(self, dispatcher: FrameDispatcher):
        self.dispatcher = dispatcher
        self.address = dispatcher.bind()
        self.exit_code = None
        self.thread = threading.Thread(target=self._run, daemon=True)
        self.thread.start()

    def _run(self):
        self.exit_code = self.dispatcher.serve_forever()

    def connect(self) -> EngineClient:
        return EngineClient(self.address)

    def stop(self) -> int:
        self.dispatcher.shutdown()
        self.thread.join(timeout=5.0)
        return self.exit_code


@pytest.fixture
def server(server_config, test_catalog):
    """Running server on an ephemeral port."""
    server = RunningServer(FrameDispatcher(server_config, BotRegistry(), catalog=test_catalog))
    yield server
    server.stop()


class TestServing:
    """Tests for the request/response loop."""

    def test_tick_gets_reply(self, server):
        """Test a tick for a new index is answered by its policy."""
        client = server.connect()
        client.send_payload(encode_snapshot(make_snapshot(index=3, frame_number=77)))

        reply = client.recv_controls()

        assert reply.index == 3
        assert reply.frame_number == 77
        assert reply.output == RecordingPolicy.instances[0].output
        assert server.dispatcher.registry.lookup(3).state is BotState.ACTIVE
        client.close()

    def test_frames_split_across_writes(self, server):
        """Test a frame delivered in pieces is reassembled."""
        client = server.connect()
        data = frame(encode_snapshot(make_snapshot(index=0, frame_number=5)))

        for i in range(0, len(data), 7):
            client.send_raw(data[i:i + 7])

        assert client.recv_controls().frame_number == 5
        client.close()

    def test_several_bots_one_connection(self, server):
        """Test interleaved ticks for several indices are all answered."""
        client = server.connect()
        for frame_number in range(1, 4):
            for index in range(3):
                client.send_payload(encode_snapshot(make_snapshot(index=index, frame_number=frame_number)))

        replies = [client.recv_controls() for _ in range(9)]

        assert sorted((r.index, r.frame_number) for r in replies) == [
            (index, frame_number) for index in range(3) for frame_number in range(1, 4)
        ]
        assert len(RecordingPolicy.instances) == 3
        client.close()

    def test_malformed_frame_skipped(self, server):
        """Test a bad frame is dropped and the next good frame is served."""
        client = server.connect()
        client.send_payload(b"\x03\x01garbage")
        client.send_payload(b"")
        client.send_payload(encode_snapshot(make_snapshot(index=0, frame_number=9)))

        assert client.recv_controls().frame_number == 9
        assert server.dispatcher.stats.decode_errors == 2
        client.close()


class TestBotLifecycle:
    """Tests for add/remove messages and connection loss."""

    def test_add_and_remove(self, server):
        """Test explicit add-bot and remove-bot requests."""
        registry = server.dispatcher.registry
        client = server.connect()

        client.send_payload(encode_add_bot(2, 1, "recording"))
        assert wait_for(lambda: 2 in registry)
        assert registry.lookup(2).team == 1

        client.send_payload(encode_remove_bot(2))
        assert wait_for(lambda: RecordingPolicy.instances[0].retire_calls == 1)
        assert 2 not in registry

        # Frames for the removed bot are dropped without a reply
        client.send_payload(encode_snapshot(make_snapshot(index=2, frame_number=3)))
        client.send_payload(encode_snapshot(make_snapshot(index=0, frame_number=4)))
        assert client.recv_controls().index == 0
        assert wait_for(lambda: server.dispatcher.stats.retired_frames == 1)
        client.close()

    def test_disconnect_retires_owned_bots(self, server):
        """Test connection loss retires its bots and the server keeps accepting."""
        registry = server.dispatcher.registry
        first = server.connect()
        first.send_payload(encode_snapshot(make_snapshot(index=0, frame_number=1)))
        first.recv_controls()
        first.close()

        assert wait_for(lambda: RecordingPolicy.instances[0].retire_calls == 1)
        assert 0 not in registry

        second = server.connect()
        second.send_payload(encode_add_bot(0, 0, "recording"))
        second.send_payload(encode_snapshot(make_snapshot(index=0, frame_number=2)))

        reply = second.recv_controls()
        assert reply.frame_number == 2
        assert reply.output == RecordingPolicy.instances[1].output
        second.close()

    def test_reconnect_without_add_bot(self, server):
        """Test a new connection streaming ticks for a used index gets a fresh bot."""
        registry = server.dispatcher.registry
        first = server.connect()
        first.send_payload(encode_snapshot(make_snapshot(index=0, frame_number=1)))
        first.recv_controls()
        first.close()
        assert wait_for(lambda: registry.lookup(0) is None)

        second = server.connect()
        second.send_payload(encode_snapshot(make_snapshot(index=0, frame_number=2)))
        reply = second.recv_controls()

        assert reply.frame_number == 2
        assert len(RecordingPolicy.instances) == 2
        assert reply.output == RecordingPolicy.instances[1].output
        assert registry.lookup(0).state is BotState.ACTIVE
        second.close()

    def test_slow_add_does_not_block_reader(self, server):
        """Test a slow bot construction leaves ticks for other bots on time."""
        registry = server.dispatcher.registry
        client = server.connect()
        client.send_payload(encode_snapshot(make_snapshot(index=0, frame_number=1)))
        client.recv_controls()

        start = time.monotonic()
        client.send_payload(encode_add_bot(5, 1, "slow_start"))
        client.send_payload(encode_snapshot(make_snapshot(index=0, frame_number=2)))
        reply = client.recv_controls()

        assert reply.index == 0
        assert reply.frame_number == 2
        assert time.monotonic() - start < 0.3
        assert wait_for(lambda: 5 in registry)
        assert registry.lookup(5).bot_type == "slow_start"
        client.close()

    def test_tick_during_add_keeps_requested_type(self, server):
        """Test a tick arriving mid-construction does not build the default bot."""
        registry = server.dispatcher.registry
        client = server.connect()
        client.send_payload(encode_add_bot(5, 1, "slow_start"))
        client.send_payload(encode_snapshot(make_snapshot(index=5, frame_number=1)))

        reply = client.recv_controls()

        assert reply.index == 5
        assert reply.output == NEUTRAL_OUTPUT
        assert wait_for(lambda: 5 in registry)
        assert registry.lookup(5).bot_type == "slow_start"
        assert RecordingPolicy.instances == []
        client.close()


class TestQueuedTicks:
    """Tests for ticks waiting on a saturated worker pool."""

    def test_deadline_counts_from_arrival(self, server_config, test_catalog):
        """Test ticks queued behind slow bots are still answered within one budget."""
        server_config.max_workers = 1
        server_config.tick_budget = 0.1
        server_config.policy_options = {"recording": {"delay": 1.0}}
        server = RunningServer(FrameDispatcher(server_config, BotRegistry(), catalog=test_catalog))
        client = server.connect()
        try:
            start = time.monotonic()
            for index in range(4):
                client.send_payload(encode_snapshot(make_snapshot(index=index, frame_number=1)))

            replies, latencies = [], []
            for _ in range(4):
                replies.append(client.recv_controls())
                latencies.append(time.monotonic() - start)
        finally:
            client.close()
            server.stop()

        assert sorted(reply.index for reply in replies) == [0, 1, 2, 3]
        assert all(reply.output == NEUTRAL_OUTPUT for reply in replies)
        # Serial waiting would put the last reply near 0.4s
        assert max(latencies) < 0.3
        assert server.dispatcher.stats.deadline_misses == 4


class TestServerLifecycle:
    """Tests for startup and shutdown."""

    def test_bind_failure(self, server_config, test_catalog):
        """Test binding a port in use raises BindError."""
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        blocker.bind(("127.0.0.1", 0))
        blocker.listen()
        server_config.port = blocker.getsockname()[1]

        dispatcher = FrameDispatcher(server_config, BotRegistry(), catalog=test_catalog)
        try:
            with pytest.raises(BindError):
                dispatcher.bind()
        finally:
            blocker.close()

    def test_clean_shutdown(self, server_config, test_catalog):
        """Test shutdown retires every bot and exits with code 0."""
        server = RunningServer(FrameDispatcher(server_config, BotRegistry(), catalog=test_catalog))
        client = server.connect()
        client.send_payload(encode_snapshot(make_snapshot(index=1, frame_number=1)))
        client.recv_controls()

        assert server.stop() == EXIT_OK
        assert not server.thread.is_alive()
        assert RecordingPolicy.instances[0].retire_calls == 1
        assert len(server.dispatcher.registry) == 0
        client.close()

    def test_desync_exits_nonzero(self, server_config, test_catalog):
        """Test an impossible frame length stops the server with the desync code."""
        server = RunningServer(FrameDispatcher(server_config, BotRegistry(), catalog=test_catalog))
        client = server.connect()
        client.send_raw(LENGTH_PREFIX.pack(server_config.max_frame_size + 1))

        server.thread.join(timeout=5.0)

        assert not server.thread.is_alive()
        assert server.exit_code == EXIT_DESYNC
        client.close()
