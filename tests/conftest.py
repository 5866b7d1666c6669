"""Pytest fixtures for testing."""

import socket
import threading
import time

import pytest

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from rlbot_server.core.config import ServerConfig
from rlbot_server.core.registry import BotRegistry
from rlbot_server.core.types import CarState, ControlOutput, Physics, Snapshot
from rlbot_server.policies import BotPolicy, PolicyCatalog
from rlbot_server.protocol import FrameBuffer, decode_controls, frame


class RecordingPolicy(BotPolicy):
    """Test policy that counts calls and can be slowed down."""

    instances = []
    lock = threading.Lock()

    def __init__(self, index: int, delay: float = 0.0, output: ControlOutput = None):
        super().__init__(index)
        self.delay = delay
        self.output = output or ControlOutput(throttle=0.5, steer=-0.25)
        self.calls = 0
        self.retire_calls = 0
        with RecordingPolicy.lock:
            RecordingPolicy.instances.append(self)

    def process_input(self, snapshot):
        self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        return self.output

    def retire(self):
        self.retire_calls += 1


class FailingPolicy(BotPolicy):
    """Test policy whose constructor always raises."""

    def __init__(self, index: int):
        raise RuntimeError("model file missing")

    def process_input(self, snapshot):
        raise AssertionError("never constructed")


class SlowStartPolicy(BotPolicy):
    """Test policy with a slow constructor, like a large checkpoint load."""

    def __init__(self, index: int, startup: float = 0.5):
        time.sleep(startup)
        super().__init__(index)

    def process_input(self, snapshot):
        return ControlOutput(boost=True)


@pytest.fixture(autouse=True)
def reset_recording_policy():
    """Forget RecordingPolicy instances between tests."""
    RecordingPolicy.instances = []
    yield
    RecordingPolicy.instances = []


@pytest.fixture
def test_catalog():
    """Policy catalog with the test policies registered."""
    catalog = PolicyCatalog()
    catalog.register("recording")(RecordingPolicy)
    catalog.register("failing")(FailingPolicy)
    catalog.register("slow_start")(SlowStartPolicy)
    return catalog


@pytest.fixture
def server_config():
    """Server configuration on an ephemeral port with a 50ms tick budget."""
    return ServerConfig(
        port=0,
        tick_budget=0.05,
        accept_timeout=0.05,
        max_workers=4,
        default_bot_type="recording",
        shutdown_grace=1.0,
    )


@pytest.fixture
def registry():
    """Empty bot registry."""
    registry = BotRegistry(retry_backoff=5.0, retry_max=60.0)
    yield registry
    registry.retire_all()


def make_car(x=0.0, y=0.0, yaw=0.0, team=0, boost=33.0, **flags) -> CarState:
    """Build a car at (x, y) facing yaw."""
    return CarState(
        physics=Physics(location=(x, y, 17.0), rotation=(0.0, yaw, 0.0)),
        team=team,
        boost=boost,
        **flags,
    )


def make_snapshot(index=0, frame_number=1, cars=None, ball=(0.0, 0.0, 92.75), **kwargs) -> Snapshot:
    """Build a snapshot addressed to index."""
    if cars is None:
        cars = [make_car(team=i % 2) for i in range(max(2, index + 1))]
    return Snapshot(
        frame_number=frame_number,
        player_index=index,
        ball=Physics(location=ball),
        cars=tuple(cars),
        **kwargs,
    )


@pytest.fixture
def snapshot():
    """A two-car snapshot addressed to index 0."""
    return make_snapshot(index=0, frame_number=10)


class EngineClient:
    """Minimal engine side of the protocol for socket tests."""

    def __init__(self, address, timeout: float = 2.0):
        self.sock = socket.create_connection(address, timeout=timeout)
        self.frames = FrameBuffer()
        self._pending = []

    def send_payload(self, payload: bytes) -> None:
        self.sock.sendall(frame(payload))

    def send_raw(self, data: bytes) -> None:
        self.sock.sendall(data)

    def recv_controls(self):
        """Block until one CONTROLS reply arrives."""
        while not self._pending:
            data = self.sock.recv(4096)
            if not data:
                raise ConnectionError("server closed the connection")
            self._pending.extend(self.frames.feed(data))
        return decode_controls(self._pending.pop(0))

    def close(self) -> None:
        self.sock.close()


def wait_for(condition, timeout: float = 2.0, interval: float = 0.01) -> bool:
    """Poll until condition() is true or the timeout passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(interval)
    return condition()
