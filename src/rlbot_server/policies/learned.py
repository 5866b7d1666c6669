"""Policy backed by a trained PyTorch model."""

import logging
from pathlib import Path
from typing import List, Optional, Union

import numpy as np
import torch

from ..core.types import CarState, ControlOutput, Physics, Snapshot
from .base import BotPolicy
from .catalog import catalog

logger = logging.getLogger(__name__)


# Model output order
MODEL_CONTROLS = ("throttle", "steer", "pitch", "yaw", "roll", "jump", "boost", "handbrake")


class ObservationBuilder:
    """Builds the flat observation vector a model is trained on.

    Layout: self car (19) + ball (15) + 5 other cars (14 each) = 104.
    Positions are normalized by field size and mirrored for the orange team
    so both teams see the game from the blue side.
    """

    FIELD = np.array([4096.0, 5120.0, 2048.0], dtype=np.float32)
    MAX_SPEED = 2300.0
    MAX_ANG_VEL = 5.5
    MAX_OTHERS = 5

    SELF_DIM = 19
    BALL_DIM = 15
    OTHER_DIM = 14

    @property
    def obs_dim(self) -> int:
        return self.SELF_DIM + self.BALL_DIM + self.MAX_OTHERS * self.OTHER_DIM

    @staticmethod
    def _flip(vector: np.ndarray, flip: bool) -> np.ndarray:
        if not flip:
            return vector
        return vector * np.array([-1.0, -1.0, 1.0], dtype=np.float32)

    @staticmethod
    def _sin_cos(rotation: np.ndarray, flip: bool) -> List[float]:
        pitch, yaw, roll = (float(v) for v in rotation)
        if flip:
            yaw += np.pi
        return [
            np.sin(pitch), np.cos(pitch),
            np.sin(yaw), np.cos(yaw),
            np.sin(roll), np.cos(roll),
        ]

    def build(self, snapshot: Snapshot) -> np.ndarray:
        """Build observation for the snapshot's target car.

        Returns zeros when the target car is not in play.
        """
        me = snapshot.me
        if me is None:
            return np.zeros(self.obs_dim, dtype=np.float32)

        flip = me.team == 1
        obs = np.concatenate([
            self._car_obs(me, flip),
            self._ball_obs(snapshot.ball, me.physics, flip),
            self._others_obs(snapshot, me, flip),
        ])
        return obs.astype(np.float32)

    def _car_obs(self, car: CarState, flip: bool) -> np.ndarray:
        """Self car: position, velocity, angular velocity, rotation, status (19)."""
        physics = car.physics
        return np.array([
            *self._flip(physics.location / self.FIELD, flip),
            *self._flip(physics.velocity / self.MAX_SPEED, flip),
            *self._flip(physics.angular_velocity / self.MAX_ANG_VEL, flip),
            *self._sin_cos(physics.rotation, flip),
            car.boost / 100.0,
            float(car.has_wheel_contact),
            float(not car.double_jumped),
            float(car.is_demolished),
        ], dtype=np.float32)

    def _ball_obs(self, ball: Physics, car: Physics, flip: bool) -> np.ndarray:
        """Ball: absolute state and state relative to the car (15)."""
        return np.array([
            *self._flip(ball.location / self.FIELD, flip),
            *self._flip(ball.velocity / self.MAX_SPEED, flip),
            *self._flip(ball.angular_velocity / self.MAX_ANG_VEL, flip),
            *self._flip((ball.location - car.location) / self.FIELD, flip),
            *self._flip((ball.velocity - car.velocity) / self.MAX_SPEED, flip),
        ], dtype=np.float32)

    def _others_obs(self, snapshot: Snapshot, me: CarState, flip: bool) -> np.ndarray:
        """Other cars, teammates first, padded to MAX_OTHERS (5 * 14)."""
        teammates = []
        opponents = []

        for i, car in enumerate(snapshot.cars):
            if i == snapshot.player_index:
                continue
            car_obs = self._other_car_obs(car, me, flip)
            if car.team == me.team:
                teammates.append(car_obs)
            else:
                opponents.append(car_obs)

        others = (teammates + opponents)[:self.MAX_OTHERS]
        while len(others) < self.MAX_OTHERS:
            others.append(np.zeros(self.OTHER_DIM, dtype=np.float32))

        return np.concatenate(others)

    def _other_car_obs(self, car: CarState, me: CarState, flip: bool) -> np.ndarray:
        physics = car.physics
        return np.array([
            *self._flip((physics.location - me.physics.location) / self.FIELD, flip),
            *self._flip((physics.velocity - me.physics.velocity) / self.MAX_SPEED, flip),
            *self._sin_cos(physics.rotation, flip),
            car.boost / 100.0,
            float(car.team == me.team),
        ], dtype=np.float32)


@catalog.register("torch")
class TorchPolicy(BotPolicy):
    """Runs a trained TorchScript model.

    The model maps a (1, 104) observation to 8 outputs in MODEL_CONTROLS
    order. Axes pass through tanh; buttons are held when their output is
    positive. The action is repeated for tick_skip ticks, as in training.
    """

    def __init__(
        self,
        index: int,
        checkpoint_path: Optional[Union[str, Path]] = None,
        model: Optional[torch.nn.Module] = None,
        device: str = "cpu",
        tick_skip: int = 8,
    ):
        """Initialize torch policy.

        Args:
            index: Player index
            checkpoint_path: TorchScript file to load
            model: Already constructed module (takes precedence)
            device: PyTorch device ('cpu' recommended)
            tick_skip: Ticks to repeat each computed action
        """
        super().__init__(index)
        self.device = torch.device(device)
        self.tick_skip = max(1, int(tick_skip))

        if model is None:
            if checkpoint_path is None:
                raise ValueError("TorchPolicy needs a checkpoint_path or a model")
            checkpoint_path = Path(checkpoint_path)
            if not checkpoint_path.exists():
                raise FileNotFoundError(f"No checkpoint found at {checkpoint_path}")
            model = torch.jit.load(str(checkpoint_path), map_location=self.device)
            logger.info("Loaded model from %s for bot %d", checkpoint_path, index)

        self.model = model.to(self.device)
        self.model.eval()
        self.obs_builder = ObservationBuilder()

        # Action caching
        self._tick_count = 0
        self._cached_controls: Optional[ControlOutput] = None

    def process_input(self, snapshot: Snapshot) -> ControlOutput:
        # Use cached controls if within tick skip
        if self._tick_count < self.tick_skip and self._cached_controls is not None:
            self._tick_count += 1
            return self._cached_controls

        obs = self.obs_builder.build(snapshot)

        with torch.no_grad():
            obs_tensor = torch.from_numpy(obs).unsqueeze(0).to(self.device)
            raw = self.model(obs_tensor)

        controls = self.outputs_to_controls(raw.reshape(-1).cpu().numpy())

        self._cached_controls = controls
        self._tick_count = 1

        return controls

    @staticmethod
    def outputs_to_controls(values: np.ndarray) -> ControlOutput:
        """Convert 8 raw model outputs to controller input."""
        if values.shape[0] < len(MODEL_CONTROLS):
            raise ValueError(
                f"Model produced {values.shape[0]} outputs, expected {len(MODEL_CONTROLS)}"
            )
        axes = np.tanh(values[:5])
        fields = {name: float(axes[i]) for i, name in enumerate(MODEL_CONTROLS[:5])}
        fields.update({name: bool(values[5 + i] > 0) for i, name in enumerate(MODEL_CONTROLS[5:])})
        return ControlOutput(**fields)

    def reset_cache(self) -> None:
        """Drop the cached action (e.g. after a goal reset)."""
        self._tick_count = 0
        self._cached_controls = None

    def retire(self) -> None:
        self.reset_cache()
        logger.info("Retiring torch bot %d", self.index)
