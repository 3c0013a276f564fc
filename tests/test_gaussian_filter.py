from __future__ import annotations

import math

import numpy as np
import pytest

from depthtrack.errors import (
    DegenerateCovarianceError,
    DimensionMismatchError,
    FilterStateError,
    InvalidParameterError,
    InvalidTimestepError,
)
from depthtrack.gaussian_filter import FilterStatus, RobustGaussianFilter
from depthtrack.model import CameraData, CameraIntrinsics, DepthRenderer, Gaussian
from depthtrack.object_model import box_object_model
from depthtrack.observation import CpuObservationModel, RobustPixelModel
from depthtrack.pose import pose_arrays
from depthtrack.quadrature import UnscentedQuadrature
from depthtrack.render import NumpyDepthRenderer
from depthtrack.transition import ObjectTransitionModel

# with alpha = 1.2 and n = 6 the sigma points sit at +-sqrt(8.64) standard deviations
_Z_SIGMA = 0.1 / math.sqrt(8.64)


class _PlaneRenderer(DepthRenderer):
    """Every pixel sees the object at the state's z translation."""

    def __init__(self, cameras: int = 1, shape: tuple[int, int] = (4, 4)) -> None:
        self._cameras = cameras
        self._shape = shape

    @property
    def backend_name(self) -> str:
        return "plane"

    @property
    def camera_count(self) -> int:
        return self._cameras

    def resolution(self, sensor_index: int) -> tuple[int, int]:
        return self._shape

    def render(self, rotations, translations, sensor_index):
        z = np.asarray(translations, dtype=np.float64).reshape(-1, 3)[:, 2]
        return np.broadcast_to(z[:, None, None], (len(z), *self._shape)).copy()


def _plane_filter(cameras: int = 1, *, update_rate: float = 1.0) -> RobustGaussianFilter:
    pixel_model = RobustPixelModel(
        bg_depth=5.0,
        fg_noise_std=0.1,
        bg_noise_std=0.5,
        tail_weight=0.1,
        uniform_tail_min=0.0,
        uniform_tail_max=10.0,
    )
    gaussian_filter = RobustGaussianFilter(
        transition_model=ObjectTransitionModel(with_velocity=False, linear_sigma=0.01, angular_sigma=0.01),
        observation_model=CpuObservationModel(_PlaneRenderer(cameras), pixel_model),
        quadrature=UnscentedQuadrature(alpha=1.2),
        update_rate=update_rate,
    )
    variances = np.full(6, 1e-6)
    variances[2] = _Z_SIGMA**2
    gaussian_filter.initialize(np.asarray([0.0, 0.0, 1.0, 0.0, 0.0, 0.0]), np.diag(variances))
    return gaussian_filter


def _camera() -> CameraData:
    return CameraData(
        intrinsics=CameraIntrinsics(width_px=32, height_px=24, fx_px=40.0, fy_px=40.0, cx_px=15.5, cy_px=11.5)
    )


def _perfect_frame(renderer: NumpyDepthRenderer, state: np.ndarray, bg_depth: float) -> np.ndarray:
    rotations, translations = pose_arrays(state[None, :])
    depth = renderer.render(rotations, translations, 0)[0]
    return np.where(np.isfinite(depth), depth, bg_depth)


def test_uninitialized_filter_refuses_to_run() -> None:
    gaussian_filter = RobustGaussianFilter(
        transition_model=ObjectTransitionModel(with_velocity=False),
        observation_model=CpuObservationModel(
            _PlaneRenderer(),
            RobustPixelModel(
                bg_depth=5.0,
                fg_noise_std=0.1,
                bg_noise_std=0.5,
                tail_weight=0.1,
                uniform_tail_min=0.0,
                uniform_tail_max=10.0,
            ),
        ),
        quadrature=UnscentedQuadrature(),
    )
    assert gaussian_filter.status is FilterStatus.UNINITIALIZED
    with pytest.raises(FilterStateError):
        _ = gaussian_filter.belief
    with pytest.raises(FilterStateError):
        gaussian_filter.predict(0.1)


def test_initialize_checks_dimensions() -> None:
    gaussian_filter = _plane_filter()
    with pytest.raises(DimensionMismatchError):
        gaussian_filter.initialize(np.zeros(12), np.eye(12))
    assert gaussian_filter.status is FilterStatus.READY


def test_update_moves_towards_observed_depth() -> None:
    gaussian_filter = _plane_filter()
    prior = gaussian_filter.belief

    posterior = gaussian_filter.update([np.full((4, 4), 1.1)])
    assert gaussian_filter.status is FilterStatus.READY
    # pulled most of the way from the prior (1.0) to the reading (1.1)
    assert 1.05 < posterior.mean[2] < 1.1
    assert posterior.covariance[2, 2] < prior.covariance[2, 2]
    np.testing.assert_allclose(posterior.mean[[0, 1, 3, 4, 5]], 0.0, atol=1e-9)


def test_second_sensor_contributes_to_update() -> None:
    first = np.full((4, 4), 1.1)
    second = np.full((4, 4), np.nan)
    second[2, 1] = 0.95

    single = _plane_filter(cameras=1).update([first])
    fused = _plane_filter(cameras=2).update([first, second])
    blind = _plane_filter(cameras=2).update([first, np.full((4, 4), np.nan)])

    assert fused.mean[2] > 1.05
    assert fused.mean[2] < single.mean[2] - 1e-4
    np.testing.assert_allclose(blind.mean, single.mean, atol=1e-10)
    np.testing.assert_allclose(blind.covariance, single.covariance, atol=1e-10)


def test_update_rate_tempers_the_correction() -> None:
    full = _plane_filter(update_rate=1.0).update([np.full((4, 4), 1.1)])
    half = _plane_filter(update_rate=0.5).update([np.full((4, 4), 1.1)])
    assert 1.0 < half.mean[2] < full.mean[2] - 0.005


def test_all_invalid_frame_leaves_belief_unchanged() -> None:
    gaussian_filter = _plane_filter()
    predicted = gaussian_filter.predict(0.1)
    posterior = gaussian_filter.update([np.full((4, 4), np.nan)])
    np.testing.assert_allclose(posterior.mean, predicted.mean, atol=1e-12)
    np.testing.assert_allclose(posterior.covariance, predicted.covariance, atol=1e-12)


def test_perfect_frame_keeps_mean_and_shrinks_covariance() -> None:
    renderer = NumpyDepthRenderer(box_object_model((0.2, 0.2, 0.2)), [_camera()])
    pixel_model = RobustPixelModel(
        bg_depth=5.0,
        fg_noise_std=0.005,
        bg_noise_std=0.5,
        tail_weight=0.05,
        uniform_tail_min=0.0,
        uniform_tail_max=10.0,
    )
    mean = np.asarray([0.0, 0.0, 1.0, 0.0, 0.0, 0.0])
    covariance = np.diag([0.02**2] * 3 + [0.1**2] * 3)
    gaussian_filter = RobustGaussianFilter(
        transition_model=ObjectTransitionModel(with_velocity=False),
        observation_model=CpuObservationModel(renderer, pixel_model),
        quadrature=UnscentedQuadrature(alpha=1.2),
        belief=Gaussian(mean=mean, covariance=covariance),
    )

    posterior = gaussian_filter.update([_perfect_frame(renderer, mean, pixel_model.bg_depth)])
    np.testing.assert_allclose(posterior.mean, mean, atol=1e-6)
    assert np.trace(posterior.covariance) < np.trace(covariance)


def test_predict_propagates_constant_velocity_belief() -> None:
    transition = ObjectTransitionModel(with_velocity=True, linear_sigma=0.01, velocity_factor=0.8)
    gaussian_filter = RobustGaussianFilter(
        transition_model=transition,
        observation_model=CpuObservationModel(
            _PlaneRenderer(),
            RobustPixelModel(
                bg_depth=5.0,
                fg_noise_std=0.1,
                bg_noise_std=0.5,
                tail_weight=0.1,
                uniform_tail_min=0.0,
                uniform_tail_max=10.0,
            ),
        ),
        quadrature=UnscentedQuadrature(alpha=1.2),
    )
    mean = transition.layout.make_state((0.0, 0.0, 1.0), linear_velocity=(0.3, 0.0, 0.0))
    gaussian_filter.initialize(mean, np.eye(12) * 1e-4)

    predicted = gaussian_filter.predict(0.1)
    np.testing.assert_allclose(predicted.mean[0:3], [0.03, 0.0, 1.0], atol=1e-12)
    np.testing.assert_allclose(predicted.mean[6:9], [0.24, 0.0, 0.0], atol=1e-12)
    # linear part is exact: P_pp + dt^2 P_vv + q dt
    assert predicted.covariance[0, 0] == pytest.approx(1e-4 + 0.01 * 1e-4 + 0.01**2 * 0.1, rel=1e-9)
    assert predicted.covariance[0, 6] == pytest.approx(0.8 * 0.1 * 1e-4, rel=1e-9)
    assert np.linalg.eigvalsh(predicted.covariance).min() >= -1e-12


def test_invalid_timestep_leaves_belief_untouched() -> None:
    gaussian_filter = _plane_filter()
    before = gaussian_filter.belief
    with pytest.raises(InvalidTimestepError):
        gaussian_filter.predict(0.0)
    with pytest.raises(InvalidTimestepError):
        gaussian_filter.step([np.full((4, 4), 1.0)], -1.0)
    assert gaussian_filter.belief is before
    assert gaussian_filter.status is FilterStatus.READY


def test_observation_mismatch_leaves_belief_untouched() -> None:
    gaussian_filter = _plane_filter(cameras=2)
    before = gaussian_filter.belief
    with pytest.raises(DimensionMismatchError):
        gaussian_filter.update([np.full((4, 4), 1.0)])
    with pytest.raises(DimensionMismatchError):
        gaussian_filter.step([np.full((4, 4), 1.0), np.full((5, 4), 1.0)], 0.1)
    assert gaussian_filter.belief is before
    assert gaussian_filter.status is FilterStatus.READY


def test_degenerate_covariance_fails_filter_until_reinitialized() -> None:
    gaussian_filter = _plane_filter()
    gaussian_filter.initialize(np.asarray([0.0, 0.0, 1.0, 0.0, 0.0, 0.0]), -np.eye(6))
    with pytest.raises(DegenerateCovarianceError):
        gaussian_filter.predict(0.1)
    assert gaussian_filter.status is FilterStatus.FAILED
    with pytest.raises(FilterStateError):
        gaussian_filter.update([np.full((4, 4), 1.0)])

    gaussian_filter.initialize(np.asarray([0.0, 0.0, 1.0, 0.0, 0.0, 0.0]), np.eye(6) * 1e-4)
    assert gaussian_filter.status is FilterStatus.READY
    gaussian_filter.step([np.full((4, 4), 1.0)], 0.1)
    assert gaussian_filter.status is FilterStatus.READY


def test_update_rate_out_of_range_is_rejected() -> None:
    with pytest.raises(InvalidParameterError) as excinfo:
        _plane_filter(update_rate=0.0)
    assert excinfo.value.field == "update_rate"


def test_non_finite_mean_is_rejected() -> None:
    gaussian_filter = _plane_filter()
    before = gaussian_filter.belief
    with pytest.raises(InvalidParameterError) as excinfo:
        gaussian_filter.initialize(np.asarray([0.0, 0.0, np.nan, 0.0, 0.0, 0.0]), np.eye(6) * 1e-4)
    assert excinfo.value.field == "mean"
    assert gaussian_filter.belief is before


def _plane_tracking_filter(with_velocity: bool, fg_noise_std: float = 0.001) -> RobustGaussianFilter:
    pixel_model = RobustPixelModel(
        bg_depth=5.0,
        fg_noise_std=fg_noise_std,
        bg_noise_std=0.5,
        tail_weight=0.1,
        uniform_tail_min=0.0,
        uniform_tail_max=10.0,
    )
    return RobustGaussianFilter(
        transition_model=ObjectTransitionModel(with_velocity=with_velocity, linear_sigma=0.01, angular_sigma=0.01),
        observation_model=CpuObservationModel(_PlaneRenderer(), pixel_model),
        quadrature=UnscentedQuadrature(alpha=1.2),
    )


@pytest.mark.parametrize("with_velocity", [False, True])
def test_update_keeps_prior_variance_of_unobserved_dimensions(with_velocity: bool) -> None:
    gaussian_filter = _plane_tracking_filter(with_velocity)
    n = gaussian_filter.dimension
    mean = np.zeros(n)
    mean[2] = 1.0
    # an isotropic prior lets the eigen-directions mix observed and unobserved axes
    gaussian_filter.initialize(mean, np.eye(n) * 1e-4)

    predicted = gaussian_filter.predict(1.0 / 30.0)
    posterior = gaussian_filter.update([np.full((4, 4), 1.0)])

    # the plane only reveals z
    assert posterior.covariance[2, 2] < 0.05 * predicted.covariance[2, 2]
    for index in (0, 1):
        assert posterior.covariance[index, index] == pytest.approx(predicted.covariance[index, index], rel=1e-9)
    for index in (3, 4, 5):
        assert posterior.covariance[index, index] == pytest.approx(predicted.covariance[index, index], rel=1e-6)
    if with_velocity:
        for index in (6, 7):
            assert posterior.covariance[index, index] == pytest.approx(
                predicted.covariance[index, index], rel=1e-9
            )
        np.testing.assert_allclose(
            posterior.covariance[0:2, 6:8], predicted.covariance[0:2, 6:8], rtol=1e-9, atol=1e-18
        )
        # z velocity is learnt through its correlation with z
        assert posterior.covariance[8, 8] < predicted.covariance[8, 8]
    np.testing.assert_allclose(posterior.mean, predicted.mean, atol=1e-12)


def test_unobserved_variance_stays_stable_over_many_steps() -> None:
    gaussian_filter = _plane_tracking_filter(with_velocity=True)
    mean = np.zeros(12)
    mean[2] = 1.0
    gaussian_filter.initialize(mean, np.eye(12) * 1e-4)

    dt = 1.0 / 30.0
    expected = 1e-4
    for _ in range(30):
        belief = gaussian_filter.step([np.full((4, 4), 1.0)], dt)
        # x velocity is never observed: damping plus process noise only
        expected = 0.8**2 * expected + 0.01**2 * dt
        assert belief.covariance[6, 6] == pytest.approx(expected, rel=1e-6)


@pytest.mark.parametrize("with_velocity", [False, True])
def test_covariance_stays_symmetric_positive_semidefinite(with_velocity: bool) -> None:
    rng = np.random.default_rng(7)
    gaussian_filter = _plane_tracking_filter(with_velocity, fg_noise_std=0.01)
    n = gaussian_filter.dimension
    mean = np.zeros(n)
    mean[2] = 1.0

    for _ in range(20):
        factor = rng.normal(0.0, 0.01, size=(n, n))
        covariance = factor @ factor.T + 1e-8 * np.eye(n)
        covariance = 0.5 * (covariance + covariance.T)
        gaussian_filter.initialize(mean, covariance)

        observed = np.full((4, 4), 1.0 + rng.normal(0.0, 0.02))
        observed[0, 0] = np.nan
        for belief in (gaussian_filter.predict(1.0 / 30.0), gaussian_filter.update([observed])):
            assert np.array_equal(belief.covariance, belief.covariance.T)
            assert np.linalg.eigvalsh(belief.covariance).min() >= -1e-12
            assert np.all(np.isfinite(belief.mean))
