from __future__ import annotations

"""Rigid-body state transition: kinematic step plus Wiener process noise."""

import math

import numpy as np
from scipy.spatial.transform import Rotation

from .errors import InvalidTimestepError
from .model import TransitionModel
from .pose import ANGULAR_VELOCITY, LINEAR_VELOCITY, ORIENTATION, POSITION, StateLayout, retract


def check_timestep(dt: float) -> float:
    try:
        value = float(dt)
    except (TypeError, ValueError) as exc:
        raise InvalidTimestepError(f"timestep must be a number, got {dt!r}") from exc
    if not math.isfinite(value) or value <= 0.0:
        raise InvalidTimestepError(f"timestep must be finite and > 0, got {dt!r}")
    return value


class ObjectTransitionModel(TransitionModel):
    """Constant-velocity (12-D) or constant-pose (6-D) motion of one rigid object.

    With velocity the pose integrates the current velocity over ``dt`` and the
    velocity is damped by ``velocity_factor``. Process noise is diagonal in the
    tangent space, each variance growing linearly with ``dt``.
    """

    def __init__(
        self,
        *,
        with_velocity: bool = True,
        linear_sigma: float = 0.002,
        angular_sigma: float = 0.01,
        linear_velocity_sigma: float = 0.01,
        angular_velocity_sigma: float = 0.05,
        velocity_factor: float = 0.8,
    ) -> None:
        self._layout = StateLayout(with_velocity=with_velocity)
        self._velocity_factor = float(velocity_factor)
        stds = [linear_sigma] * 3 + [angular_sigma] * 3
        if with_velocity:
            stds += [linear_velocity_sigma] * 3 + [angular_velocity_sigma] * 3
        self._variance_rate = np.square(np.asarray(stds, dtype=np.float64))

    @property
    def layout(self) -> StateLayout:
        return self._layout

    @property
    def dimension(self) -> int:
        return self._layout.dimension

    def propagate(self, states: np.ndarray, dt: float) -> np.ndarray:
        dt = check_timestep(dt)
        states = np.atleast_2d(np.asarray(states, dtype=np.float64))
        if states.shape[1] != self.dimension:
            raise ValueError(f"expected states of dimension {self.dimension}, got {states.shape[1]}")
        if not self._layout.with_velocity:
            return np.array(states, copy=True)

        propagated = np.array(states, copy=True)
        propagated[:, POSITION] += states[:, LINEAR_VELOCITY] * dt
        rotations = Rotation.from_rotvec(states[:, ANGULAR_VELOCITY] * dt) * Rotation.from_rotvec(
            states[:, ORIENTATION]
        )
        propagated[:, ORIENTATION] = rotations.as_rotvec()
        propagated[:, LINEAR_VELOCITY] *= self._velocity_factor
        propagated[:, ANGULAR_VELOCITY] *= self._velocity_factor
        return propagated

    def noise_covariance(self, dt: float) -> np.ndarray:
        return np.diag(self._variance_rate * check_timestep(dt))

    def predict(self, state: np.ndarray, dt: float, rng: np.random.Generator | None = None) -> np.ndarray:
        """Propagate one state; adds sampled process noise when ``rng`` is given."""
        propagated = self.propagate(state, dt)[0]
        if rng is None:
            return propagated
        noise = rng.normal(0.0, 1.0, size=self.dimension) * np.sqrt(self._variance_rate * dt)
        return retract(propagated, noise[None, :])[0]
