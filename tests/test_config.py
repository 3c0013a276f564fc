from __future__ import annotations

import json
from dataclasses import replace

import pytest

from depthtrack.config import (
    ObjectTransitionParameters,
    ObservationParameters,
    TrackerParameters,
    load_parameters,
    parameters_from_mapping,
    parameters_to_dict,
    validate_parameters,
)
from depthtrack.errors import InvalidParameterError, TrackingError
from depthtrack.object_model import ObjectResourceIdentifier


def _params(**overrides) -> TrackerParameters:
    base = TrackerParameters(ori=ObjectResourceIdentifier(directory="/meshes", mesh="box.ply"))
    return replace(base, **overrides)


def test_default_parameters_validate() -> None:
    params = _params()
    assert validate_parameters(params) is params
    assert params.ut_alpha > 1.0
    assert params.observation.sensors == 1
    assert params.object_transition.model == "constant_velocity"


@pytest.mark.parametrize(
    ("params", "field"),
    [
        (_params(update_rate=0.0), "update_rate"),
        (_params(update_rate=1.5), "update_rate"),
        (_params(ut_alpha=0.0), "ut_alpha"),
        (_params(observation=ObservationParameters(tail_weight=1.5)), "observation.tail_weight"),
        (_params(observation=ObservationParameters(tail_weight=-0.1)), "observation.tail_weight"),
        (_params(observation=ObservationParameters(sensors=0)), "observation.sensors"),
        (_params(observation=ObservationParameters(fg_noise_std=-1.0)), "observation.fg_noise_std"),
        (
            _params(observation=ObservationParameters(uniform_tail_min=2.0, uniform_tail_max=1.0)),
            "observation.uniform_tail_max",
        ),
        (_params(observation=ObservationParameters(bg_depth=float("nan"))), "observation.bg_depth"),
        (_params(object_transition=ObjectTransitionParameters(model="brownian")), "object_transition.model"),
        (
            _params(object_transition=ObjectTransitionParameters(velocity_factor=1.5)),
            "object_transition.velocity_factor",
        ),
        (
            _params(object_transition=ObjectTransitionParameters(linear_sigma=-0.1)),
            "object_transition.linear_sigma",
        ),
        (_params(ori=ObjectResourceIdentifier(directory="/meshes", mesh="")), "ori"),
        (_params(initial_position=(0.0, 1.0)), "initial_position"),
    ],
)
def test_validate_parameters_names_offending_field(params: TrackerParameters, field: str) -> None:
    with pytest.raises(InvalidParameterError) as excinfo:
        validate_parameters(params)
    assert excinfo.value.field == field
    assert isinstance(excinfo.value, TrackingError)
    assert isinstance(excinfo.value, ValueError)


def test_parameters_from_mapping_builds_nested_dataclasses() -> None:
    params = parameters_from_mapping(
        {
            "ori": {"directory": "/meshes", "mesh": "mug.obj"},
            "ut_alpha": 1.5,
            "observation": {"sensors": 2, "tail_weight": 0.05},
            "object_transition": {"model": "constant_pose"},
            "initial_position": [0.1, 0.2, 0.9],
        }
    )
    assert params.ori.name == "mug"
    assert params.ut_alpha == 1.5
    assert params.observation.sensors == 2
    assert params.observation.tail_weight == 0.05
    assert params.observation.bg_depth == ObservationParameters().bg_depth
    assert params.object_transition.model == "constant_pose"
    assert params.initial_position == (0.1, 0.2, 0.9)
    validate_parameters(params)


def test_parameters_from_mapping_rejects_unknown_keys() -> None:
    with pytest.raises(InvalidParameterError) as excinfo:
        parameters_from_mapping({"ori": {"mesh": "box.ply"}, "observation": {"fov": 1.0}})
    assert excinfo.value.field == "observation.fov"


def test_load_parameters_reads_json(tmp_path) -> None:
    params = _params(update_rate=0.5, observation=ObservationParameters(sensors=2))
    path = tmp_path / "tracker.json"
    path.write_text(json.dumps(parameters_to_dict(params)), encoding="utf-8")

    loaded = load_parameters(path)
    assert loaded == params


def test_load_parameters_missing_file(tmp_path) -> None:
    with pytest.raises(FileNotFoundError):
        load_parameters(tmp_path / "missing.json")
