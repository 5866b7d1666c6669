"""Scripted ball-chasing policy."""

import numpy as np

from ..core.types import NEUTRAL_OUTPUT, ControlOutput, Snapshot
from .base import BotPolicy
from .catalog import catalog


def angle_to_target(car_location, car_yaw: float, target) -> float:
    """Signed angle from the car's heading to a target, in (-pi, pi].

    Positive means the target is on the side that positive steer turns
    toward (positive yaw rotation).
    """
    delta = np.asarray(target, dtype=np.float64)[:2] - np.asarray(car_location, dtype=np.float64)[:2]
    target_yaw = np.arctan2(delta[1], delta[0])
    angle = target_yaw - car_yaw
    return float((angle + np.pi) % (2 * np.pi) - np.pi)


@catalog.register("ball_chase")
class BallChasePolicy(BotPolicy):
    """Steers at the ball and boosts on long straight approaches."""

    def __init__(
        self,
        index: int,
        steer_gain: float = 2.5,
        boost_distance: float = 1500.0,
        boost_angle: float = 0.3,
        handbrake_angle: float = 2.0,
    ):
        """Initialize policy.

        Args:
            index: Player index
            steer_gain: Steer per radian of heading error
            boost_distance: Minimum ball distance (uu) for boosting
            boost_angle: Maximum heading error (rad) for boosting
            handbrake_angle: Heading error (rad) above which to powerslide
        """
        super().__init__(index)
        self.steer_gain = steer_gain
        self.boost_distance = boost_distance
        self.boost_angle = boost_angle
        self.handbrake_angle = handbrake_angle

    def process_input(self, snapshot: Snapshot) -> ControlOutput:
        me = snapshot.me
        if me is None or me.is_demolished:
            return NEUTRAL_OUTPUT

        car = me.physics
        ball = snapshot.ball.location

        angle = angle_to_target(car.location, float(car.rotation[1]), ball)
        distance = float(np.linalg.norm(ball[:2] - car.location[:2]))

        return ControlOutput(
            steer=self.steer_gain * angle,
            throttle=1.0,
            boost=(
                distance > self.boost_distance
                and abs(angle) < self.boost_angle
                and me.boost > 0
                and me.has_wheel_contact
            ),
            handbrake=abs(angle) > self.handbrake_angle and me.has_wheel_contact,
        )
