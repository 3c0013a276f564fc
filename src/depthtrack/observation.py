from __future__ import annotations

"""Robust render-and-compare observation model.

Each valid pixel is scored under a three-component mixture:

* foreground: Gaussian around the rendered depth (``fg_noise_std``),
* background/occlusion: Gaussian around ``bg_depth`` (``bg_noise_std``),
* tail: uniform on ``[uniform_tail_min, uniform_tail_max]`` with weight ``tail_weight``.

A pixel rendered as object uses the foreground component unless the reading
lies in front of the rendered surface by more than ``occlusion_threshold``
foreground standard deviations; then it is treated as occluded and scored by
the background component. Invalid readings (non-finite, non-positive or
outside the tail support) contribute a constant, so they never favour one
pose over another.
"""

import logging
import math
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import numpy as np

from .config import ObservationParameters
from .errors import DimensionMismatchError
from .model import DepthRenderer, ObservationModel, PixelMeasurement
from .pose import pose_arrays
from .render import TorchDepthRenderer, _require_torch

logger = logging.getLogger("depthtrack.observation")

_MIN_NOISE_STD = 1e-6
_HALF_LOG_TWO_PI = 0.5 * math.log(2.0 * math.pi)


def _normalize_worker_count(worker_count: int) -> int:
    if worker_count > 0:
        return int(worker_count)
    return max(1, int(os.cpu_count() or 1))


class RobustPixelModel:
    def __init__(
        self,
        *,
        bg_depth: float,
        fg_noise_std: float,
        bg_noise_std: float,
        tail_weight: float,
        uniform_tail_min: float,
        uniform_tail_max: float,
        occlusion_threshold: float = 3.0,
    ) -> None:
        if not uniform_tail_max > uniform_tail_min:
            raise ValueError("uniform_tail_max must be greater than uniform_tail_min")
        self.bg_depth = float(bg_depth)
        self.fg_noise_std = max(_MIN_NOISE_STD, float(fg_noise_std))
        self.bg_noise_std = max(_MIN_NOISE_STD, float(bg_noise_std))
        self.tail_weight = float(tail_weight)
        self.uniform_tail_min = float(uniform_tail_min)
        self.uniform_tail_max = float(uniform_tail_max)
        self.occlusion_threshold = float(occlusion_threshold)

        log_range = math.log(self.uniform_tail_max - self.uniform_tail_min)
        self.log_body_weight = math.log1p(-self.tail_weight) if self.tail_weight < 1.0 else -math.inf
        self.log_tail_density = math.log(self.tail_weight) - log_range if self.tail_weight > 0.0 else -math.inf
        self.log_invalid_density = -log_range

    @classmethod
    def from_parameters(cls, params: ObservationParameters) -> "RobustPixelModel":
        return cls(
            bg_depth=params.bg_depth,
            fg_noise_std=params.fg_noise_std,
            bg_noise_std=params.bg_noise_std,
            tail_weight=params.tail_weight,
            uniform_tail_min=params.uniform_tail_min,
            uniform_tail_max=params.uniform_tail_max,
            occlusion_threshold=params.occlusion_threshold,
        )

    @property
    def floor_density(self) -> float:
        """Lower bound of the per-pixel likelihood of any reading."""
        return self.tail_weight / (self.uniform_tail_max - self.uniform_tail_min)

    def valid_mask(self, observed: np.ndarray) -> np.ndarray:
        observed = np.asarray(observed, dtype=np.float64)
        with np.errstate(invalid="ignore"):
            return (
                np.isfinite(observed)
                & (observed > 0.0)
                & (observed >= self.uniform_tail_min)
                & (observed <= self.uniform_tail_max)
            )

    def _components(
        self, rendered: np.ndarray, observed: np.ndarray
    ) -> tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
        """Validity, substituted reading, and centre/std of the active Gaussian component."""
        valid = self.valid_mask(observed)
        safe_observed = np.where(valid, observed, self.bg_depth)

        foreground = np.isfinite(rendered)
        with np.errstate(invalid="ignore"):
            occluded = foreground & (
                safe_observed < rendered - self.occlusion_threshold * self.fg_noise_std
            )
        use_foreground = foreground & ~occluded
        center = np.where(use_foreground, rendered, self.bg_depth)
        std = np.where(use_foreground, self.fg_noise_std, self.bg_noise_std)
        return valid, safe_observed, center, std

    def _log_body(self, safe_observed: np.ndarray, center: np.ndarray, std: np.ndarray) -> np.ndarray:
        log_gauss = -0.5 * np.square((safe_observed - center) / std) - np.log(std) - _HALF_LOG_TWO_PI
        return self.log_body_weight + log_gauss

    def log_density(self, rendered: np.ndarray, observed: np.ndarray) -> np.ndarray:
        """Per-pixel log-likelihood; ``rendered`` is +inf where no object is drawn."""
        rendered = np.asarray(rendered, dtype=np.float64)
        observed = np.asarray(observed, dtype=np.float64)
        valid, safe_observed, center, std = self._components(rendered, observed)
        log_mix = np.logaddexp(self._log_body(safe_observed, center, std), self.log_tail_density)
        return np.where(valid, log_mix, self.log_invalid_density)

    def measurement(self, rendered: np.ndarray, observed: np.ndarray) -> PixelMeasurement:
        """Active-component predictions of the valid pixels of ``observed``.

        ``rendered`` is (N, H, W) or a single (H, W) image. Invalid readings are
        dropped, so a frame without valid pixels yields empty arrays.
        """
        rendered = np.asarray(rendered, dtype=np.float64)
        observed = np.asarray(observed, dtype=np.float64)
        _check_rendered_shape(rendered.shape, observed.shape)
        if rendered.ndim == 2:
            rendered = rendered[None]
        count = rendered.shape[0]

        valid, safe_observed, center, std = self._components(rendered, observed)
        log_body = self._log_body(safe_observed, center, std)
        with np.errstate(invalid="ignore"):
            responsibility = np.exp(log_body - np.logaddexp(log_body, self.log_tail_density))
        responsibility = np.nan_to_num(responsibility, nan=0.0)

        keep = valid.reshape(-1)
        return PixelMeasurement(
            observed=safe_observed.reshape(-1)[keep],
            predicted=center.reshape(count, -1)[:, keep],
            variance=np.square(std).reshape(count, -1)[:, keep],
            responsibility=responsibility.reshape(count, -1)[:, keep],
        )


def _check_rendered_shape(rendered_shape: tuple[int, ...], observed_shape: tuple[int, ...]) -> None:
    if len(rendered_shape) not in (2, 3) or tuple(rendered_shape[-2:]) != tuple(observed_shape):
        raise DimensionMismatchError(
            f"rendered depth shape {tuple(rendered_shape)} does not match observed {tuple(observed_shape)}"
        )


class CpuObservationModel(ObservationModel):
    def __init__(
        self,
        renderer: DepthRenderer,
        pixel_model: RobustPixelModel,
        *,
        workers: int = 1,
    ) -> None:
        self._renderer = renderer
        self._pixel_model = pixel_model
        self._workers = _normalize_worker_count(workers)
        if self._workers > 1:
            logger.debug(f"CPU observation model renders sigma points on {self._workers} threads")

    @property
    def sensors(self) -> int:
        return self._renderer.camera_count

    @property
    def backend_name(self) -> str:
        return self._renderer.backend_name

    @property
    def pixel_model(self) -> RobustPixelModel:
        return self._pixel_model

    def resolution(self, sensor_index: int) -> tuple[int, int]:
        return self._renderer.resolution(sensor_index)

    def render(self, states: np.ndarray, sensor_index: int) -> np.ndarray:
        rotations, translations = pose_arrays(states)
        if self._workers <= 1 or len(rotations) <= 1:
            return self._renderer.render(rotations, translations, sensor_index)

        def _render_one(index: int) -> np.ndarray:
            return self._renderer.render(
                rotations[index : index + 1],
                translations[index : index + 1],
                sensor_index,
            )[0]

        # map() keeps sigma-point order regardless of completion order
        with ThreadPoolExecutor(max_workers=min(self._workers, len(rotations))) as executor:
            return np.stack(list(executor.map(_render_one, range(len(rotations)))))

    def evaluate_likelihood(self, rendered: np.ndarray, observed: np.ndarray) -> np.ndarray | float:
        rendered = np.asarray(rendered, dtype=np.float64)
        observed = np.asarray(observed, dtype=np.float64)
        _check_rendered_shape(rendered.shape, observed.shape)
        per_pixel = self._pixel_model.log_density(rendered, observed)
        summed = per_pixel.sum(axis=(-2, -1))
        if rendered.ndim == 2:
            return float(summed)
        return summed

    def measure(self, rendered: np.ndarray, observed: np.ndarray) -> PixelMeasurement:
        return self._pixel_model.measurement(rendered, observed)


class GpuObservationModel(ObservationModel):
    """Renders and scores all sigma points on the torch device of ``renderer``."""

    def __init__(self, renderer: TorchDepthRenderer, pixel_model: RobustPixelModel) -> None:
        self._torch: Any = _require_torch()
        self._renderer = renderer
        self._pixel_model = pixel_model

    @property
    def sensors(self) -> int:
        return self._renderer.camera_count

    @property
    def backend_name(self) -> str:
        return self._renderer.backend_name

    @property
    def pixel_model(self) -> RobustPixelModel:
        return self._pixel_model

    def resolution(self, sensor_index: int) -> tuple[int, int]:
        return self._renderer.resolution(sensor_index)

    def render(self, states: np.ndarray, sensor_index: int) -> Any:
        rotations, translations = pose_arrays(states)
        return self._renderer.render_tensor(rotations, translations, sensor_index)

    def evaluate_likelihood(self, rendered: Any, observed: np.ndarray) -> np.ndarray | float:
        torch = self._torch
        model = self._pixel_model
        device = self._renderer.device
        rendered_t = torch.as_tensor(rendered, dtype=torch.float32, device=device)
        observed_t = torch.as_tensor(np.asarray(observed, dtype=np.float32), device=device)
        _check_rendered_shape(tuple(rendered_t.shape), tuple(observed_t.shape))

        valid = (
            torch.isfinite(observed_t)
            & (observed_t > 0.0)
            & (observed_t >= model.uniform_tail_min)
            & (observed_t <= model.uniform_tail_max)
        )
        safe_observed = torch.where(valid, observed_t, torch.full_like(observed_t, model.bg_depth))
        foreground = torch.isfinite(rendered_t)
        occluded = foreground & (safe_observed < rendered_t - model.occlusion_threshold * model.fg_noise_std)
        use_foreground = foreground & ~occluded

        center = torch.where(use_foreground, rendered_t, torch.full_like(rendered_t, model.bg_depth))
        std = torch.where(
            use_foreground,
            torch.full_like(rendered_t, model.fg_noise_std),
            torch.full_like(rendered_t, model.bg_noise_std),
        )
        log_gauss = -0.5 * ((safe_observed - center) / std) ** 2 - torch.log(std) - _HALF_LOG_TWO_PI
        log_mix = torch.logaddexp(
            model.log_body_weight + log_gauss,
            torch.full_like(log_gauss, model.log_tail_density),
        )
        per_pixel = torch.where(valid, log_mix, torch.full_like(log_mix, model.log_invalid_density))
        summed = per_pixel.double().sum(dim=(-2, -1)).detach().cpu().numpy()
        if rendered_t.ndim == 2:
            return float(summed)
        return summed

    def measure(self, rendered: Any, observed: np.ndarray) -> PixelMeasurement:
        torch = self._torch
        if torch.is_tensor(rendered):
            rendered = rendered.detach().double().cpu().numpy()
        return self._pixel_model.measurement(rendered, observed)
