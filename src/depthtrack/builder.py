from __future__ import annotations

"""Assembles a ready-to-run robust Gaussian filter from validated parameters."""

import logging
from typing import Callable, Sequence

import numpy as np

from .config import ObjectTransitionParameters, ObservationParameters, TrackerParameters, validate_parameters
from .errors import InvalidParameterError, UnsupportedBackendError
from .gaussian_filter import RobustGaussianFilter
from .model import CameraData, DepthRenderer, Gaussian, ObjectModel, ObservationModel
from .object_model import ObjectResourceIdentifier, load_object_model
from .observation import CpuObservationModel, GpuObservationModel, RobustPixelModel
from .pose import StateLayout
from .quadrature import UnscentedQuadrature
from .render import NumpyDepthRenderer, TorchDepthRenderer, gpu_backend_available
from .tracker import ObjectTracker
from .transition import ObjectTransitionModel

logger = logging.getLogger("depthtrack.builder")

ObjectLoader = Callable[[ObjectResourceIdentifier], ObjectModel]


def _camera_tuple(camera_data: CameraData | Sequence[CameraData], sensors: int) -> tuple[CameraData, ...]:
    if isinstance(camera_data, CameraData):
        # one calibration shared by every stream
        return (camera_data,) * sensors
    cameras = tuple(camera_data)
    if len(cameras) != sensors:
        raise InvalidParameterError(
            "observation.sensors",
            f"{sensors} sensors configured but {len(cameras)} camera calibrations supplied",
        )
    for camera in cameras:
        if not isinstance(camera, CameraData):
            raise InvalidParameterError("camera_data", f"expected CameraData, got {type(camera).__name__}")
    return cameras


class RobustGaussianFilterBuilder:
    """Builds the filter and its owned sub-components in dependency order.

    Construction fails fast: parameter validation, object resolution and the
    GPU capability check all raise before anything is returned.
    """

    def __init__(
        self,
        parameters: TrackerParameters,
        camera_data: CameraData | Sequence[CameraData],
        *,
        gpu_available: bool | None = None,
        object_loader: ObjectLoader | None = None,
    ) -> None:
        self._parameters = parameters
        self._camera_data = camera_data
        self._gpu_available = gpu_available
        self._object_loader = object_loader or load_object_model

    def build(self) -> RobustGaussianFilter:
        param = validate_parameters(self._parameters)
        cameras = _camera_tuple(self._camera_data, param.observation.sensors)

        object_model = self.create_object_model(param.ori)
        transition_model = self.create_object_transition_model(param.object_transition)
        use_gpu = self.select_backend(param.observation)
        renderer = self.create_renderer(object_model, cameras, use_gpu=use_gpu)
        observation_model = self.create_obsrv_model(renderer, param.observation)
        return self.create_filter(param, transition_model, observation_model)

    def create_object_model(self, ori: ObjectResourceIdentifier) -> ObjectModel:
        return self._object_loader(ori)

    def create_object_transition_model(self, param: ObjectTransitionParameters) -> ObjectTransitionModel:
        return ObjectTransitionModel(
            with_velocity=param.model == "constant_velocity",
            linear_sigma=param.linear_sigma,
            angular_sigma=param.angular_sigma,
            linear_velocity_sigma=param.linear_velocity_sigma,
            angular_velocity_sigma=param.angular_velocity_sigma,
            velocity_factor=param.velocity_factor,
        )

    def select_backend(self, param: ObservationParameters) -> bool:
        if not param.use_gpu:
            return False
        available = gpu_backend_available() if self._gpu_available is None else self._gpu_available
        if not available:
            raise UnsupportedBackendError(
                "GPU observation model requested but the torch CUDA backend is not available"
            )
        return True

    def create_renderer(
        self,
        object_model: ObjectModel,
        cameras: Sequence[CameraData],
        *,
        use_gpu: bool,
    ) -> DepthRenderer:
        if use_gpu:
            return TorchDepthRenderer(object_model, cameras)
        return NumpyDepthRenderer(object_model, cameras)

    def create_obsrv_model(self, renderer: DepthRenderer, param: ObservationParameters) -> ObservationModel:
        pixel_model = RobustPixelModel.from_parameters(param)
        if isinstance(renderer, TorchDepthRenderer):
            model: ObservationModel = GpuObservationModel(renderer, pixel_model)
        else:
            model = CpuObservationModel(renderer, pixel_model, workers=param.workers)
        logger.info(f"Observation model: backend={model.backend_name} sensors={model.sensors}")
        return model

    def create_filter(
        self,
        param: TrackerParameters,
        transition_model: ObjectTransitionModel,
        observation_model: ObservationModel,
    ) -> RobustGaussianFilter:
        return RobustGaussianFilter(
            transition_model=transition_model,
            observation_model=observation_model,
            quadrature=UnscentedQuadrature(alpha=param.ut_alpha),
            update_rate=param.update_rate,
            belief=initial_belief(param, transition_model.layout),
        )


def initial_belief(
    param: TrackerParameters,
    layout: StateLayout,
    *,
    position: Sequence[float] | None = None,
    orientation: Sequence[float] | None = None,
) -> Gaussian:
    mean = layout.make_state(
        tuple(position if position is not None else param.initial_position),
        tuple(orientation if orientation is not None else param.initial_orientation),
    )
    stds = [param.initial_linear_sigma] * 3 + [param.initial_angular_sigma] * 3
    if layout.with_velocity:
        stds += [param.initial_velocity_sigma] * 6
    return Gaussian(mean=mean, covariance=np.diag(np.square(np.asarray(stds, dtype=np.float64))))


def build_filter(
    parameters: TrackerParameters,
    camera_data: CameraData | Sequence[CameraData],
    **kwargs,
) -> RobustGaussianFilter:
    return RobustGaussianFilterBuilder(parameters, camera_data, **kwargs).build()


def build_tracker(
    parameters: TrackerParameters,
    camera_data: CameraData | Sequence[CameraData],
    **kwargs,
) -> ObjectTracker:
    if not isinstance(camera_data, CameraData):
        camera_data = tuple(camera_data)
    gaussian_filter = build_filter(parameters, camera_data, **kwargs)
    cameras = _camera_tuple(camera_data, parameters.observation.sensors)
    return ObjectTracker(
        gaussian_filter,
        cameras,
        belief_factory=lambda position, orientation: initial_belief(
            parameters,
            StateLayout(with_velocity=gaussian_filter.dimension == 12),
            position=position,
            orientation=orientation,
        ),
    )
