from __future__ import annotations

"""Rigid-body state layout and on-manifold helpers.

A state row is ``[px, py, pz, rx, ry, rz]`` optionally followed by
``[vx, vy, vz, wx, wy, wz]``. The orientation is a rotation vector; offsets
(sigma points, covariance) live in the tangent space and act on the left:
``R = exp(delta) * R_mean``.
"""

from dataclasses import dataclass

import numpy as np
from scipy.spatial.transform import Rotation

POSITION = slice(0, 3)
ORIENTATION = slice(3, 6)
LINEAR_VELOCITY = slice(6, 9)
ANGULAR_VELOCITY = slice(9, 12)


@dataclass(frozen=True)
class StateLayout:
    with_velocity: bool = True

    @property
    def dimension(self) -> int:
        return 12 if self.with_velocity else 6

    def make_state(
        self,
        position: tuple[float, float, float],
        orientation: tuple[float, float, float] = (0.0, 0.0, 0.0),
        linear_velocity: tuple[float, float, float] = (0.0, 0.0, 0.0),
        angular_velocity: tuple[float, float, float] = (0.0, 0.0, 0.0),
    ) -> np.ndarray:
        parts = [position, orientation]
        if self.with_velocity:
            parts += [linear_velocity, angular_velocity]
        return np.concatenate([np.asarray(part, dtype=np.float64) for part in parts])


def retract(mean: np.ndarray, deltas: np.ndarray) -> np.ndarray:
    """Apply tangent offsets (N, n) to a single state, returning N states."""
    mean = np.asarray(mean, dtype=np.float64)
    deltas = np.atleast_2d(np.asarray(deltas, dtype=np.float64))
    states = mean[None, :] + deltas
    rotations = Rotation.from_rotvec(deltas[:, ORIENTATION]) * Rotation.from_rotvec(mean[ORIENTATION])
    states[:, ORIENTATION] = rotations.as_rotvec()
    return states


def local(reference: np.ndarray, states: np.ndarray) -> np.ndarray:
    """Tangent offsets of N states relative to ``reference``; inverse of :func:`retract`."""
    reference = np.asarray(reference, dtype=np.float64)
    states = np.atleast_2d(np.asarray(states, dtype=np.float64))
    deltas = states - reference[None, :]
    relative = Rotation.from_rotvec(states[:, ORIENTATION]) * Rotation.from_rotvec(reference[ORIENTATION]).inv()
    deltas[:, ORIENTATION] = relative.as_rotvec()
    return deltas


def pose_arrays(states: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Rotation matrices (N, 3, 3) and translations (N, 3) of object-to-reference poses."""
    states = np.atleast_2d(np.asarray(states, dtype=np.float64))
    rotations = Rotation.from_rotvec(states[:, ORIENTATION]).as_matrix().reshape(-1, 3, 3)
    return rotations, np.array(states[:, POSITION])


def quaternion_xyzw(orientation: np.ndarray) -> tuple[float, float, float, float]:
    quat = Rotation.from_rotvec(np.asarray(orientation, dtype=np.float64)).as_quat()
    return (float(quat[0]), float(quat[1]), float(quat[2]), float(quat[3]))


def rotation_angle_between(a: np.ndarray, b: np.ndarray) -> float:
    """Geodesic angle (rad) between two rotation vectors."""
    relative = Rotation.from_rotvec(np.asarray(a, dtype=np.float64)) * Rotation.from_rotvec(
        np.asarray(b, dtype=np.float64)
    ).inv()
    return float(relative.magnitude())
