from __future__ import annotations

"""Robust Gaussian filter: sigma-point predict and statistically linearised update."""

import logging
from enum import Enum
from typing import Sequence

import numpy as np

from .errors import (
    DegenerateCovarianceError,
    DimensionMismatchError,
    FilterStateError,
    InvalidParameterError,
)
from .model import Gaussian, ObservationModel, TransitionModel
from .pose import local, retract
from .quadrature import UnscentedQuadrature, ensure_positive_semidefinite, reconstruct_gaussian
from .transition import check_timestep

logger = logging.getLogger("depthtrack.filter")

_MIN_RESPONSIBILITY = 1e-12


class FilterStatus(Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    PREDICTING = "predicting"
    UPDATING = "updating"
    FAILED = "failed"


class RobustGaussianFilter:
    """Recursive estimator owning the belief over one object's state.

    ``predict`` pushes sigma points of the belief through the transition model
    and adds process noise. ``update`` renders the same sigma points, turns
    central differences of the predicted pixels into a linear measurement model
    and fuses it with the prior in information form. Each pixel is weighted by
    the robust mixture: readings the tail explains better than the active
    component, and pixels whose prediction is strongly non-linear (silhouettes),
    barely move the belief. Directions the frame does not observe keep their
    prior covariance. Calls are synchronous; a failed call
    leaves the previous belief in place, except for a degenerate covariance,
    which moves the filter to ``FAILED`` until :meth:`initialize` is called.
    """

    def __init__(
        self,
        *,
        transition_model: TransitionModel,
        observation_model: ObservationModel,
        quadrature: UnscentedQuadrature,
        update_rate: float = 1.0,
        belief: Gaussian | None = None,
    ) -> None:
        if not 0.0 < update_rate <= 1.0:
            raise InvalidParameterError("update_rate", "must satisfy 0 < update_rate <= 1")
        self._transition_model = transition_model
        self._observation_model = observation_model
        self._quadrature = quadrature
        self._update_rate = float(update_rate)
        self._belief: Gaussian | None = None
        self._status = FilterStatus.UNINITIALIZED
        if belief is not None:
            self.initialize(belief.mean, belief.covariance)

    @property
    def status(self) -> FilterStatus:
        return self._status

    @property
    def belief(self) -> Gaussian:
        if self._belief is None:
            raise FilterStateError("filter has no belief; call initialize() first")
        return self._belief

    @property
    def dimension(self) -> int:
        return self._transition_model.dimension

    @property
    def transition_model(self) -> TransitionModel:
        return self._transition_model

    @property
    def observation_model(self) -> ObservationModel:
        return self._observation_model

    @property
    def quadrature(self) -> UnscentedQuadrature:
        return self._quadrature

    @property
    def update_rate(self) -> float:
        return self._update_rate

    def initialize(self, mean: np.ndarray, covariance: np.ndarray) -> Gaussian:
        mean = np.array(mean, dtype=np.float64).reshape(-1)
        covariance = np.array(covariance, dtype=np.float64)
        n = self.dimension
        if mean.shape != (n,) or covariance.shape != (n, n):
            raise DimensionMismatchError(
                f"belief must have mean ({n},) and covariance ({n}, {n}); "
                f"got {mean.shape} and {covariance.shape}"
            )
        if not np.all(np.isfinite(mean)):
            raise InvalidParameterError("mean", "belief mean must be finite")
        self._belief = Gaussian(mean=mean, covariance=covariance)
        self._status = FilterStatus.READY
        return self._belief

    def _require_ready(self) -> Gaussian:
        if self._status is FilterStatus.FAILED:
            raise FilterStateError("filter failed on a degenerate covariance; reinitialize tracking")
        if self._status is not FilterStatus.READY or self._belief is None:
            raise FilterStateError(f"filter is {self._status.value}; expected ready")
        return self._belief

    def _run(self, status: FilterStatus, step, *args) -> Gaussian:
        self._status = status
        try:
            posterior = step(*args)
        except DegenerateCovarianceError:
            self._status = FilterStatus.FAILED
            raise
        except Exception:
            self._status = FilterStatus.READY
            raise
        self._belief = posterior
        self._status = FilterStatus.READY
        return posterior

    def predict(self, dt: float) -> Gaussian:
        prior = self._require_ready()
        dt = check_timestep(dt)
        return self._run(FilterStatus.PREDICTING, self._predicted, prior, dt)

    def update(self, observations: Sequence[np.ndarray]) -> Gaussian:
        prior = self._require_ready()
        frames = self._observation_model.check_observations(observations)
        return self._run(FilterStatus.UPDATING, self._updated, prior, frames)

    def step(self, observations: Sequence[np.ndarray], dt: float) -> Gaussian:
        """One full cycle: predict over ``dt`` then update with one multi-sensor frame."""
        self._require_ready()
        check_timestep(dt)
        self._observation_model.check_observations(observations)
        self.predict(dt)
        return self.update(observations)

    def _predicted(self, prior: Gaussian, dt: float) -> Gaussian:
        sigma = self._quadrature.sigma_points(np.zeros(self.dimension), prior.covariance)
        states = retract(prior.mean, sigma.points)
        propagated = self._transition_model.propagate(states, dt)

        # propagated centre point is the linearisation reference
        center = propagated[0]
        offsets = local(center, propagated)
        mean_offset, covariance = reconstruct_gaussian(
            offsets, sigma.mean_weights, sigma.covariance_weights
        )
        mean = retract(center, mean_offset[None, :])[0]
        covariance = ensure_positive_semidefinite(
            covariance + self._transition_model.noise_covariance(dt)
        )
        return Gaussian(mean=mean, covariance=covariance)

    def _updated(self, prior: Gaussian, frames: list[np.ndarray]) -> Gaussian:
        n = self.dimension
        sigma = self._quadrature.sigma_points(np.zeros(n), prior.covariance)
        states = retract(prior.mean, sigma.points)
        measurements = self._observation_model.pixel_measurements(states, frames)

        # rows s_k of the prior square root: P = sum_k s_k s_k^T
        spread = self._quadrature.spread(n)
        directions = sigma.points[1 : n + 1] / spread
        averaging = np.clip(sigma.mean_weights, 0.0, None)
        averaging = averaging / averaging.sum()

        # information and innovation in whitened coordinates, where the prior is N(0, I)
        information = np.eye(n)
        innovation = np.zeros(n)
        pixel_count = 0
        for measurement in measurements:
            if measurement.pixel_count == 0:
                continue
            predicted = measurement.predicted
            center = predicted[0]
            plus, minus = predicted[1 : n + 1], predicted[n + 1 :]
            slopes = (plus - minus) / (2.0 * spread)
            curvature = np.sum(np.square(0.5 * (plus + minus) - center), axis=0)

            responsibility = np.maximum(averaging @ measurement.responsibility, _MIN_RESPONSIBILITY)
            noise = (averaging @ measurement.variance / responsibility + curvature) / self._update_rate
            weighted = slopes / noise[None, :]
            information += weighted @ slopes.T
            innovation += weighted @ (measurement.observed - center)
            pixel_count += measurement.pixel_count

        if pixel_count == 0:
            logger.debug("update: no valid pixels; belief unchanged")
            return prior
        if not (np.all(np.isfinite(information)) and np.all(np.isfinite(innovation))):
            raise DegenerateCovarianceError("update produced a non-finite information matrix")

        try:
            solved = np.linalg.solve(information, np.column_stack([innovation, directions]))
        except np.linalg.LinAlgError as exc:
            raise DegenerateCovarianceError(f"update information matrix is singular: {exc}") from exc

        offset = directions.T @ solved[:, 0]
        covariance = ensure_positive_semidefinite(directions.T @ solved[:, 1:])
        mean = retract(prior.mean, offset[None, :])[0]

        if logger.isEnabledFor(logging.DEBUG):
            gain = float(np.trace(information)) - n
            logger.debug(f"update: {pixel_count} valid pixels, whitened information gain {gain:.3g}")
        return Gaussian(mean=mean, covariance=covariance)
