from __future__ import annotations

"""Shared data model and component interfaces for depth-based object tracking."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Sequence

import numpy as np

from .errors import DimensionMismatchError


@dataclass(frozen=True)
class CameraIntrinsics:
    width_px: int
    height_px: int
    fx_px: float
    fy_px: float
    cx_px: float
    cy_px: float

    def scaled(self, factor: int) -> "CameraIntrinsics":
        """Intrinsics of the image obtained by keeping every ``factor``-th pixel."""
        if factor == 1:
            return self
        return CameraIntrinsics(
            width_px=self.width_px // factor,
            height_px=self.height_px // factor,
            fx_px=self.fx_px / factor,
            fy_px=self.fy_px / factor,
            cx_px=self.cx_px / factor,
            cy_px=self.cy_px / factor,
        )


@dataclass(frozen=True)
class CameraPose:
    """Reference-to-camera extrinsics: x_cam = R * x_ref + t."""

    rotation: tuple[tuple[float, float, float], tuple[float, float, float], tuple[float, float, float]]
    translation: tuple[float, float, float]

    @staticmethod
    def identity() -> "CameraPose":
        return CameraPose(
            rotation=((1.0, 0.0, 0.0), (0.0, 1.0, 0.0), (0.0, 0.0, 1.0)),
            translation=(0.0, 0.0, 0.0),
        )

    def as_arrays(self) -> tuple[np.ndarray, np.ndarray]:
        return (
            np.asarray(self.rotation, dtype=np.float64),
            np.asarray(self.translation, dtype=np.float64),
        )


@dataclass(frozen=True)
class CameraData:
    """Calibration of one depth sensor. The first sensor usually defines the reference frame."""

    intrinsics: CameraIntrinsics
    pose: CameraPose = field(default_factory=CameraPose.identity)
    frame_id: str = "camera"
    downsampling_factor: int = 1

    @property
    def render_intrinsics(self) -> CameraIntrinsics:
        return self.intrinsics.scaled(self.downsampling_factor)

    @property
    def resolution(self) -> tuple[int, int]:
        """(height, width) of the images the filter consumes."""
        intrinsics = self.render_intrinsics
        return (intrinsics.height_px, intrinsics.width_px)


@dataclass(frozen=True)
class ObjectModel:
    """Triangle mesh of the tracked rigid object, expressed in the object frame."""

    name: str
    vertices: np.ndarray
    triangles: np.ndarray

    def __post_init__(self) -> None:
        vertices = np.array(self.vertices, dtype=np.float64)
        triangles = np.array(self.triangles, dtype=np.int64).reshape(-1, 3)
        if vertices.ndim != 2 or vertices.shape[1] != 3:
            raise ValueError("object model vertices must be Nx3")
        if triangles.size and (triangles.min() < 0 or triangles.max() >= len(vertices)):
            raise ValueError(f"object model '{self.name}' has out-of-range triangle indices")
        vertices.flags.writeable = False
        triangles.flags.writeable = False
        object.__setattr__(self, "vertices", vertices)
        object.__setattr__(self, "triangles", triangles)

    @property
    def centroid(self) -> np.ndarray:
        return self.vertices.mean(axis=0)


@dataclass(frozen=True)
class Gaussian:
    """Belief state: mean on the state manifold, covariance in its tangent space."""

    mean: np.ndarray
    covariance: np.ndarray

    @property
    def dimension(self) -> int:
        return int(self.mean.shape[0])


@dataclass(frozen=True)
class PixelMeasurement:
    """Valid pixels of one sensor frame and their per-state predictions.

    ``predicted``, ``variance`` and ``responsibility`` are (N, m) for N states
    and m valid pixels: the centre and variance of the active mixture
    component, and the posterior probability that the reading came from it
    rather than the uniform tail.
    """

    observed: np.ndarray
    predicted: np.ndarray
    variance: np.ndarray
    responsibility: np.ndarray

    @property
    def pixel_count(self) -> int:
        return int(self.observed.shape[0])


@dataclass(frozen=True)
class PoseEstimate:
    position: tuple[float, float, float]
    orientation: tuple[float, float, float]
    quaternion: tuple[float, float, float, float]
    linear_velocity: tuple[float, float, float] | None
    angular_velocity: tuple[float, float, float] | None
    covariance: np.ndarray


class DepthRenderer(ABC):
    @property
    @abstractmethod
    def backend_name(self) -> str:
        """Backend identifier, e.g. 'numpy' or 'torch'."""

    @property
    @abstractmethod
    def camera_count(self) -> int:
        """Number of cameras the renderer was built for."""

    @abstractmethod
    def resolution(self, sensor_index: int) -> tuple[int, int]:
        """(height, width) rendered for one sensor."""

    @abstractmethod
    def render(self, rotations: np.ndarray, translations: np.ndarray, sensor_index: int):
        """Depth images (N, H, W) of the object at N reference-frame poses; background is +inf."""


class TransitionModel(ABC):
    @property
    @abstractmethod
    def dimension(self) -> int:
        """State dimension the model operates on."""

    @abstractmethod
    def propagate(self, states: np.ndarray, dt: float) -> np.ndarray:
        """Deterministic kinematic step applied to each row of ``states``."""

    @abstractmethod
    def noise_covariance(self, dt: float) -> np.ndarray:
        """Tangent-space process noise covariance accumulated over ``dt``."""


class ObservationModel(ABC):
    """Render-and-compare likelihood over one or more depth sensors."""

    @property
    @abstractmethod
    def sensors(self) -> int:
        """Number of depth streams fused per update."""

    @property
    @abstractmethod
    def backend_name(self) -> str:
        """Rendering backend identifier."""

    @abstractmethod
    def render(self, states: np.ndarray, sensor_index: int):
        """Depth images (N, H, W) for N states as seen by one sensor."""

    @abstractmethod
    def evaluate_likelihood(self, rendered, observed: np.ndarray) -> np.ndarray:
        """Summed per-pixel log-likelihood of ``observed`` for each rendered image."""

    @abstractmethod
    def measure(self, rendered, observed: np.ndarray) -> PixelMeasurement:
        """Per-pixel predictions of ``observed`` for each rendered image, restricted to valid pixels."""

    @abstractmethod
    def resolution(self, sensor_index: int) -> tuple[int, int]:
        """(height, width) expected from one sensor."""

    def check_observations(self, observations: Sequence[np.ndarray]) -> list[np.ndarray]:
        frames = [np.asarray(observation, dtype=np.float64) for observation in observations]
        if len(frames) != self.sensors:
            raise DimensionMismatchError(
                f"expected {self.sensors} observation streams, got {len(frames)}"
            )
        for sensor_index, frame in enumerate(frames):
            expected = self.resolution(sensor_index)
            if frame.shape != expected:
                raise DimensionMismatchError(
                    f"sensor {sensor_index}: observed depth shape {frame.shape} != rendered {expected}"
                )
        return frames

    def log_likelihoods(self, states: np.ndarray, observations: Sequence[np.ndarray]) -> np.ndarray:
        """Log-likelihood of a multi-sensor observation for each state, fused additively."""
        frames = self.check_observations(observations)
        states = np.atleast_2d(np.asarray(states, dtype=np.float64))
        total = np.zeros(len(states), dtype=np.float64)
        for sensor_index, observed in enumerate(frames):
            rendered = self.render(states, sensor_index)
            total += np.asarray(self.evaluate_likelihood(rendered, observed), dtype=np.float64)
        return total

    def pixel_measurements(
        self, states: np.ndarray, observations: Sequence[np.ndarray]
    ) -> list[PixelMeasurement]:
        """One :class:`PixelMeasurement` per sensor for the given states."""
        frames = self.check_observations(observations)
        states = np.atleast_2d(np.asarray(states, dtype=np.float64))
        return [
            self.measure(self.render(states, sensor_index), observed)
            for sensor_index, observed in enumerate(frames)
        ]
