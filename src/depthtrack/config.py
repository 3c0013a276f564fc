from __future__ import annotations

"""Tracker parameters: frozen dataclasses, validation and JSON loading."""

import json
import math
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Mapping

from .errors import InvalidParameterError
from .object_model import ObjectResourceIdentifier

TRANSITION_MODELS = ("constant_velocity", "constant_pose")


@dataclass(frozen=True)
class ObservationParameters:
    bg_depth: float = 7.0
    fg_noise_std: float = 0.01
    bg_noise_std: float = 1.0
    tail_weight: float = 0.01
    uniform_tail_min: float = 0.0
    uniform_tail_max: float = 7.0
    sensors: int = 1
    occlusion_threshold: float = 3.0
    use_gpu: bool = False
    workers: int = 1


@dataclass(frozen=True)
class ObjectTransitionParameters:
    model: str = "constant_velocity"
    linear_sigma: float = 0.002
    angular_sigma: float = 0.01
    linear_velocity_sigma: float = 0.01
    angular_velocity_sigma: float = 0.05
    velocity_factor: float = 0.8


@dataclass(frozen=True)
class TrackerParameters:
    ori: ObjectResourceIdentifier
    ut_alpha: float = 1.2
    update_rate: float = 1.0
    observation: ObservationParameters = field(default_factory=ObservationParameters)
    object_transition: ObjectTransitionParameters = field(default_factory=ObjectTransitionParameters)
    initial_position: tuple[float, float, float] = (0.0, 0.0, 1.0)
    initial_orientation: tuple[float, float, float] = (0.0, 0.0, 0.0)
    initial_linear_sigma: float = 0.01
    initial_angular_sigma: float = 0.05
    initial_velocity_sigma: float = 0.0


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _require(condition: bool, name: str, message: str) -> None:
    if not condition:
        raise InvalidParameterError(name, message)


def _check_vector3(value: Any, name: str) -> None:
    _require(
        isinstance(value, (tuple, list)) and len(value) == 3 and all(_is_number(v) for v in value),
        name,
        "must be three finite numbers",
    )


def validate_parameters(params: TrackerParameters) -> TrackerParameters:
    """Check every range constraint once; raises InvalidParameterError naming the field."""
    _require(_is_number(params.ut_alpha) and params.ut_alpha > 0.0, "ut_alpha", "must be > 0")
    _require(
        _is_number(params.update_rate) and 0.0 < params.update_rate <= 1.0,
        "update_rate",
        "must satisfy 0 < update_rate <= 1",
    )

    obs = params.observation
    _require(_is_number(obs.bg_depth) and obs.bg_depth > 0.0, "observation.bg_depth", "must be > 0")
    _require(
        _is_number(obs.fg_noise_std) and obs.fg_noise_std >= 0.0,
        "observation.fg_noise_std",
        "must be >= 0",
    )
    _require(
        _is_number(obs.bg_noise_std) and obs.bg_noise_std >= 0.0,
        "observation.bg_noise_std",
        "must be >= 0",
    )
    _require(
        _is_number(obs.tail_weight) and 0.0 <= obs.tail_weight <= 1.0,
        "observation.tail_weight",
        "must satisfy 0 <= tail_weight <= 1",
    )
    _require(_is_number(obs.uniform_tail_min), "observation.uniform_tail_min", "must be finite")
    _require(
        _is_number(obs.uniform_tail_max) and obs.uniform_tail_max > obs.uniform_tail_min,
        "observation.uniform_tail_max",
        "must be greater than uniform_tail_min",
    )
    _require(
        isinstance(obs.sensors, int) and not isinstance(obs.sensors, bool) and obs.sensors >= 1,
        "observation.sensors",
        "must be an integer >= 1",
    )
    _require(
        _is_number(obs.occlusion_threshold) and obs.occlusion_threshold > 0.0,
        "observation.occlusion_threshold",
        "must be > 0",
    )
    _require(isinstance(obs.use_gpu, bool), "observation.use_gpu", "must be a boolean")
    _require(isinstance(obs.workers, int) and not isinstance(obs.workers, bool), "observation.workers", "must be an integer")

    transition = params.object_transition
    _require(
        transition.model in TRANSITION_MODELS,
        "object_transition.model",
        f"must be one of: {', '.join(TRANSITION_MODELS)}",
    )
    for name in ("linear_sigma", "angular_sigma", "linear_velocity_sigma", "angular_velocity_sigma"):
        value = getattr(transition, name)
        _require(_is_number(value) and value >= 0.0, f"object_transition.{name}", "must be >= 0")
    _require(
        _is_number(transition.velocity_factor) and 0.0 <= transition.velocity_factor <= 1.0,
        "object_transition.velocity_factor",
        "must satisfy 0 <= velocity_factor <= 1",
    )

    _require(isinstance(params.ori, ObjectResourceIdentifier), "ori", "must be an ObjectResourceIdentifier")
    _require(bool(params.ori.mesh), "ori", "mesh name is empty")

    _check_vector3(params.initial_position, "initial_position")
    _check_vector3(params.initial_orientation, "initial_orientation")
    for name in ("initial_linear_sigma", "initial_angular_sigma", "initial_velocity_sigma"):
        value = getattr(params, name)
        _require(_is_number(value) and value >= 0.0, name, "must be >= 0")
    return params


def _build_dataclass(cls: type, mapping: Mapping[str, Any], prefix: str) -> Any:
    if not isinstance(mapping, Mapping):
        raise InvalidParameterError(prefix.rstrip(".") or "parameters", "must be a mapping")

    known = {f.name: f for f in fields(cls)}
    kwargs: dict[str, Any] = {}
    for key, value in mapping.items():
        if key not in known:
            raise InvalidParameterError(f"{prefix}{key}", "unknown parameter")
        nested = _NESTED.get((cls, key))
        if nested is not None:
            kwargs[key] = _build_dataclass(nested, value, f"{prefix}{key}.")
        elif isinstance(value, list):
            kwargs[key] = tuple(value)
        else:
            kwargs[key] = value
    try:
        return cls(**kwargs)
    except TypeError as exc:
        raise InvalidParameterError(prefix.rstrip(".") or "parameters", str(exc)) from exc


_NESTED: dict[tuple[type, str], type] = {
    (TrackerParameters, "ori"): ObjectResourceIdentifier,
    (TrackerParameters, "observation"): ObservationParameters,
    (TrackerParameters, "object_transition"): ObjectTransitionParameters,
}


def parameters_from_mapping(mapping: Mapping[str, Any]) -> TrackerParameters:
    """Build (not yet validated) parameters from nested dictionaries."""
    return _build_dataclass(TrackerParameters, mapping, "")


def parameters_to_dict(params: TrackerParameters) -> dict[str, Any]:
    def convert(value: Any) -> Any:
        if is_dataclass(value):
            return {f.name: convert(getattr(value, f.name)) for f in fields(value)}
        if isinstance(value, tuple):
            return list(value)
        return value

    return convert(params)


def load_parameters(path: str | Path) -> TrackerParameters:
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Tracker config not found: {config_path}")
    payload = json.loads(config_path.read_text(encoding="utf-8"))
    return parameters_from_mapping(payload)
