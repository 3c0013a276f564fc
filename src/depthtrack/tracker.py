from __future__ import annotations

"""Object tracker facade: raw depth frames in, pose estimates out."""

from typing import Callable, Sequence

import numpy as np

from .errors import DimensionMismatchError
from .gaussian_filter import RobustGaussianFilter
from .model import CameraData, Gaussian, PoseEstimate
from .pose import ANGULAR_VELOCITY, LINEAR_VELOCITY, ORIENTATION, POSITION, quaternion_xyzw

BeliefFactory = Callable[[Sequence[float], Sequence[float]], Gaussian]


def prepare_depth_image(image: np.ndarray, camera: CameraData, *, depth_scale: float = 0.001) -> np.ndarray:
    """Convert one sensor image to metres at the filter's resolution.

    Integer images are raw sensor units scaled by ``depth_scale``; a zero
    reading means "no return" and becomes NaN.
    """
    array = np.asarray(image)
    if np.issubdtype(array.dtype, np.integer):
        depth = array.astype(np.float64) * depth_scale
        depth[array == 0] = np.nan
    else:
        depth = array.astype(np.float64, copy=True)

    factor = camera.downsampling_factor
    if factor > 1:
        height, width = camera.resolution
        depth = depth[::factor, ::factor][:height, :width]
    return depth


def pose_estimate(belief: Gaussian) -> PoseEstimate:
    mean = belief.mean

    def triple(values: np.ndarray) -> tuple[float, float, float]:
        return (float(values[0]), float(values[1]), float(values[2]))

    with_velocity = mean.shape[0] >= 12
    return PoseEstimate(
        position=triple(mean[POSITION]),
        orientation=triple(mean[ORIENTATION]),
        quaternion=quaternion_xyzw(mean[ORIENTATION]),
        linear_velocity=triple(mean[LINEAR_VELOCITY]) if with_velocity else None,
        angular_velocity=triple(mean[ANGULAR_VELOCITY]) if with_velocity else None,
        covariance=np.array(belief.covariance, copy=True),
    )


class ObjectTracker:
    def __init__(
        self,
        gaussian_filter: RobustGaussianFilter,
        cameras: Sequence[CameraData],
        *,
        belief_factory: BeliefFactory,
    ) -> None:
        self._filter = gaussian_filter
        self._cameras = tuple(cameras)
        self._belief_factory = belief_factory

    @property
    def filter(self) -> RobustGaussianFilter:
        return self._filter

    @property
    def cameras(self) -> tuple[CameraData, ...]:
        return self._cameras

    def initialize(
        self,
        position: Sequence[float],
        orientation: Sequence[float] = (0.0, 0.0, 0.0),
    ) -> PoseEstimate:
        belief = self._belief_factory(position, orientation)
        return pose_estimate(self._filter.initialize(belief.mean, belief.covariance))

    def track(
        self,
        depth_images: Sequence[np.ndarray],
        dt: float,
        *,
        depth_scale: float = 0.001,
    ) -> PoseEstimate:
        if len(depth_images) != len(self._cameras):
            raise DimensionMismatchError(
                f"expected {len(self._cameras)} depth images, got {len(depth_images)}"
            )
        frames = [
            prepare_depth_image(image, camera, depth_scale=depth_scale)
            for image, camera in zip(depth_images, self._cameras)
        ]
        return pose_estimate(self._filter.step(frames, dt))

    def estimate(self) -> PoseEstimate:
        return pose_estimate(self._filter.belief)
