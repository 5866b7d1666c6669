"""Type definitions for game snapshots and controller output."""

import math
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Tuple

import numpy as np
from numpy.typing import NDArray


# Controller axes in wire order
AXES: Tuple[str, ...] = ("steer", "throttle", "pitch", "yaw", "roll")
BUTTONS: Tuple[str, ...] = ("jump", "boost", "handbrake", "use_item")


def _vector(values: Any) -> NDArray[np.float32]:
    """Build a read-only float32 3-vector."""
    array = np.array(values, dtype=np.float32).reshape(3)
    array.setflags(write=False)
    return array


def clamp_axis(value: Any) -> float:
    """Clamp a controller axis to [-1, 1] at float32 precision.

    NaN maps to 0.0.
    """
    value = float(value)
    if math.isnan(value):
        return 0.0
    return float(np.float32(min(1.0, max(-1.0, value))))


@dataclass(frozen=True, eq=False)
class Physics:
    """Physical state of a car or the ball."""

    location: NDArray[np.float32] = field(default_factory=lambda: _vector((0, 0, 0)))  # x, y, z
    rotation: NDArray[np.float32] = field(default_factory=lambda: _vector((0, 0, 0)))  # pitch, yaw, roll
    velocity: NDArray[np.float32] = field(default_factory=lambda: _vector((0, 0, 0)))
    angular_velocity: NDArray[np.float32] = field(default_factory=lambda: _vector((0, 0, 0)))

    def __post_init__(self):
        for name in ("location", "rotation", "velocity", "angular_velocity"):
            object.__setattr__(self, name, _vector(getattr(self, name)))

    def __eq__(self, other):
        if not isinstance(other, Physics):
            return NotImplemented
        return all(
            np.array_equal(getattr(self, name), getattr(other, name))
            for name in ("location", "rotation", "velocity", "angular_velocity")
        )

    __hash__ = None

    @classmethod
    def from_flat(cls, values) -> "Physics":
        """Build from 12 floats: location, rotation, velocity, angular velocity."""
        if len(values) != 12:
            raise ValueError(f"Expected 12 physics values, got {len(values)}")
        return cls(
            location=values[0:3],
            rotation=values[3:6],
            velocity=values[6:9],
            angular_velocity=values[9:12],
        )

    def to_flat(self) -> Tuple[float, ...]:
        """Inverse of from_flat."""
        return tuple(
            float(v)
            for v in np.concatenate(
                [self.location, self.rotation, self.velocity, self.angular_velocity]
            )
        )


@dataclass(frozen=True)
class CarState:
    """State of a car in the snapshot."""

    physics: Physics = field(default_factory=Physics)
    team: int = 0  # 0 = blue, 1 = orange
    boost: float = 0.0  # 0-100
    has_wheel_contact: bool = False
    jumped: bool = False
    double_jumped: bool = False
    is_demolished: bool = False
    is_super_sonic: bool = False


@dataclass(frozen=True)
class Snapshot:
    """Decoded per-tick game state addressed to one player index."""

    frame_number: int
    player_index: int
    game_seconds: float = 0.0
    round_active: bool = False
    kickoff_pause: bool = False
    match_ended: bool = False
    ball: Physics = field(default_factory=Physics)
    cars: Tuple[CarState, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "cars", tuple(self.cars))

    @property
    def me(self) -> Optional[CarState]:
        """The car this snapshot is addressed to, if it is in play."""
        if 0 <= self.player_index < len(self.cars):
            return self.cars[self.player_index]
        return None


@dataclass(frozen=True)
class ControlOutput:
    """Controller input returned to the game for one tick.

    Axes are clamped to [-1, 1] on construction.
    """

    steer: float = 0.0
    throttle: float = 0.0
    pitch: float = 0.0
    yaw: float = 0.0
    roll: float = 0.0
    jump: bool = False
    boost: bool = False
    handbrake: bool = False
    use_item: bool = False

    def __post_init__(self):
        for name in AXES:
            object.__setattr__(self, name, clamp_axis(getattr(self, name)))
        for name in BUTTONS:
            object.__setattr__(self, name, bool(getattr(self, name)))

    @classmethod
    def neutral(cls) -> "ControlOutput":
        """Safe no-op output: all axes zero, no buttons held."""
        return NEUTRAL_OUTPUT

    @classmethod
    def from_array(cls, values) -> "ControlOutput":
        """Build from [steer, throttle, pitch, yaw, roll, jump, boost, handbrake(, use_item)]."""
        values = np.asarray(values, dtype=np.float64).reshape(-1)
        if values.shape[0] not in (8, 9):
            raise ValueError(f"Expected 8 or 9 control values, got {values.shape[0]}")
        axes = {name: values[i] for i, name in enumerate(AXES)}
        buttons = {name: values[5 + i] > 0.5 for i, name in enumerate(BUTTONS[: values.shape[0] - 5])}
        return cls(**axes, **buttons)

    @classmethod
    def coerce(cls, value: Any) -> "ControlOutput":
        """Turn whatever a policy returned into a clamped ControlOutput.

        None becomes the neutral output.
        """
        if value is None:
            return NEUTRAL_OUTPUT
        if isinstance(value, ControlOutput):
            return value
        if isinstance(value, Mapping):
            known = {k: v for k, v in value.items() if k in AXES or k in BUTTONS}
            return cls(**known)
        return cls.from_array(value)

    def to_array(self) -> NDArray[np.float32]:
        """Convert to numpy array in from_array order."""
        return np.array(
            [getattr(self, name) for name in AXES] + [float(getattr(self, name)) for name in BUTTONS],
            dtype=np.float32,
        )


NEUTRAL_OUTPUT = ControlOutput()
