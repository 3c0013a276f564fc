"""depthtrack -- Robust Gaussian filtering of rigid object pose from depth images.

Core modules:
  - model:            Data model (CameraData, ObjectModel, Gaussian, PoseEstimate, interfaces)
  - config:           Tracker parameters, validation and JSON loading
  - pose:             State layout and on-manifold retract/local helpers
  - quadrature:       Unscented sigma points and Gaussian reconstruction
  - render:           Numpy (CPU) and torch (GPU) depth renderers
  - observation:      Robust per-pixel mixture likelihood over depth sensors
  - transition:       Constant-velocity / constant-pose object motion
  - gaussian_filter:  Sigma-point predict and statistically linearised robust update
  - builder:          Parameter-driven assembly of filter and tracker
  - tracker:          Depth frames in, pose estimates out
"""

from .builder import RobustGaussianFilterBuilder, build_filter, build_tracker, initial_belief
from .config import (
    ObjectTransitionParameters,
    ObservationParameters,
    TrackerParameters,
    load_parameters,
    parameters_from_mapping,
    parameters_to_dict,
    validate_parameters,
)
from .errors import (
    DegenerateCovarianceError,
    DimensionMismatchError,
    FilterStateError,
    InvalidParameterError,
    InvalidTimestepError,
    ResourceNotFoundError,
    TrackingError,
    UnsupportedBackendError,
)
from .gaussian_filter import FilterStatus, RobustGaussianFilter
from .model import (
    CameraData,
    CameraIntrinsics,
    CameraPose,
    DepthRenderer,
    Gaussian,
    ObjectModel,
    ObservationModel,
    PixelMeasurement,
    PoseEstimate,
    TransitionModel,
)
from .object_model import ObjectResourceIdentifier, box_object_model, load_object_model, write_ascii_ply
from .observation import CpuObservationModel, GpuObservationModel, RobustPixelModel
from .pose import StateLayout, local, retract
from .quadrature import UnscentedQuadrature, reconstruct_gaussian, sigma_points
from .render import NumpyDepthRenderer, TorchDepthRenderer, gpu_backend_available
from .tracker import ObjectTracker
from .transition import ObjectTransitionModel

__all__ = [
    # model
    "CameraData",
    "CameraIntrinsics",
    "CameraPose",
    "DepthRenderer",
    "Gaussian",
    "ObjectModel",
    "ObservationModel",
    "PixelMeasurement",
    "PoseEstimate",
    "TransitionModel",
    # errors
    "DegenerateCovarianceError",
    "DimensionMismatchError",
    "FilterStateError",
    "InvalidParameterError",
    "InvalidTimestepError",
    "ResourceNotFoundError",
    "TrackingError",
    "UnsupportedBackendError",
    # config
    "ObjectTransitionParameters",
    "ObservationParameters",
    "TrackerParameters",
    "load_parameters",
    "parameters_from_mapping",
    "parameters_to_dict",
    "validate_parameters",
    # filter
    "CpuObservationModel",
    "FilterStatus",
    "GpuObservationModel",
    "NumpyDepthRenderer",
    "ObjectResourceIdentifier",
    "ObjectTracker",
    "ObjectTransitionModel",
    "RobustGaussianFilter",
    "RobustGaussianFilterBuilder",
    "RobustPixelModel",
    "StateLayout",
    "TorchDepthRenderer",
    "UnscentedQuadrature",
    "box_object_model",
    "build_filter",
    "build_tracker",
    "gpu_backend_available",
    "initial_belief",
    "load_object_model",
    "local",
    "reconstruct_gaussian",
    "retract",
    "sigma_points",
    "write_ascii_ply",
]
