from __future__ import annotations

"""Object model loading: resource identifiers and mesh readers."""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import numpy as np

from .errors import InvalidParameterError, ResourceNotFoundError
from .model import ObjectModel

logger = logging.getLogger("depthtrack.object_model")


@dataclass(frozen=True)
class ObjectResourceIdentifier:
    """Names the mesh of the tracked object: ``directory / mesh``."""

    directory: str = ""
    mesh: str = ""

    @property
    def path(self) -> Path:
        return Path(self.directory).expanduser() / self.mesh

    @property
    def name(self) -> str:
        return Path(self.mesh).stem


def _require_open3d() -> Any:
    try:
        import open3d as o3d
    except ImportError as exc:  # pragma: no cover
        raise ImportError("open3d is required for this mesh format. Install `open3d`.") from exc
    return o3d


def _fan_triangulate(polygon: list[int]) -> list[tuple[int, int, int]]:
    return [(polygon[0], polygon[i], polygon[i + 1]) for i in range(1, len(polygon) - 1)]


def read_ascii_ply_mesh(path: Path) -> tuple[np.ndarray, np.ndarray]:
    fmt = ""
    elements: list[tuple[str, int, list[str]]] = []
    header_end_offset = 0
    with path.open("rb") as f:
        while True:
            line = f.readline()
            if not line:
                raise ValueError(f"Invalid PLY header in {path}")
            stripped = line.decode("ascii", errors="replace").strip()
            if stripped.startswith("format "):
                tokens = stripped.split()
                if len(tokens) >= 2:
                    fmt = tokens[1].strip()
            elif stripped.startswith("element "):
                tokens = stripped.split()
                if len(tokens) >= 3:
                    elements.append((tokens[1], int(tokens[2]), []))
            elif stripped.startswith("property ") and elements:
                elements[-1][2].append(stripped.split()[-1])
            elif stripped == "end_header":
                header_end_offset = f.tell()
                break

    if fmt.lower() != "ascii":
        raise ValueError(f"Unsupported PLY format '{fmt}' for {path}; expected ascii")

    vertices: list[tuple[float, float, float]] = []
    triangles: list[tuple[int, int, int]] = []
    with path.open("rb") as f:
        f.seek(header_end_offset)
        for element_name, count, properties in elements:
            for _ in range(count):
                parts = f.readline().decode("utf-8", errors="replace").split()
                if element_name == "vertex":
                    try:
                        vertices.append(
                            (
                                float(parts[properties.index("x")]),
                                float(parts[properties.index("y")]),
                                float(parts[properties.index("z")]),
                            )
                        )
                    except (ValueError, IndexError) as exc:
                        raise ValueError(f"PLY file {path} has a malformed vertex row") from exc
                elif element_name == "face" and parts:
                    # list property: leading count, then indices
                    polygon_size = int(parts[0])
                    polygon = [int(value) for value in parts[1 : 1 + polygon_size]]
                    triangles.extend(_fan_triangulate(polygon))
    return np.asarray(vertices, dtype=np.float64), np.asarray(triangles, dtype=np.int64)


def _read_with_open3d(path: Path) -> tuple[np.ndarray, np.ndarray]:
    o3d = _require_open3d()
    mesh = o3d.io.read_triangle_mesh(str(path))
    return (
        np.asarray(mesh.vertices, dtype=np.float64),
        np.asarray(mesh.triangles, dtype=np.int64),
    )


def _is_ascii_ply(path: Path) -> bool:
    with path.open("rb") as f:
        for _ in range(4):
            line = f.readline().decode("ascii", errors="replace").strip()
            if line.startswith("format "):
                return "ascii" in line
    return False


def load_object_model(ori: ObjectResourceIdentifier) -> ObjectModel:
    path = ori.path
    if not path.is_file():
        raise ResourceNotFoundError(f"Could not resolve object resource '{ori.mesh}' (looked for {path})")

    try:
        if path.suffix.lower() == ".ply" and _is_ascii_ply(path):
            vertices, triangles = read_ascii_ply_mesh(path)
        else:
            vertices, triangles = _read_with_open3d(path)
        if len(vertices) == 0 or len(triangles) == 0:
            raise ValueError("mesh has no triangles")
        model = ObjectModel(name=ori.name, vertices=vertices, triangles=triangles)
    except ValueError as exc:
        raise InvalidParameterError("ori", f"could not read object mesh {path}: {exc}") from exc

    logger.info(f"Loaded object model '{model.name}': {len(vertices)} vertices, {len(triangles)} triangles")
    return model


def box_object_model(size_xyz: tuple[float, float, float], *, name: str = "box") -> ObjectModel:
    """Axis-aligned box centred at the object origin, outward-facing triangles."""
    hx, hy, hz = (0.5 * float(value) for value in size_xyz)
    vertices = np.asarray(
        [
            (-hx, -hy, -hz),
            (hx, -hy, -hz),
            (hx, hy, -hz),
            (-hx, hy, -hz),
            (-hx, -hy, hz),
            (hx, -hy, hz),
            (hx, hy, hz),
            (-hx, hy, hz),
        ],
        dtype=np.float64,
    )
    quads = [(0, 3, 2, 1), (4, 5, 6, 7), (0, 1, 5, 4), (2, 3, 7, 6), (1, 2, 6, 5), (0, 4, 7, 3)]
    triangles = [tri for quad in quads for tri in _fan_triangulate(list(quad))]
    return ObjectModel(name=name, vertices=vertices, triangles=np.asarray(triangles, dtype=np.int64))


def write_ascii_ply(model: ObjectModel, path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    lines = [
        "ply",
        "format ascii 1.0",
        f"comment depthtrack object {model.name}",
        f"element vertex {len(model.vertices)}",
        "property float x",
        "property float y",
        "property float z",
        f"element face {len(model.triangles)}",
        "property list uchar int vertex_indices",
        "end_header",
    ]
    lines += [f"{x:.9g} {y:.9g} {z:.9g}" for x, y, z in model.vertices.tolist()]
    lines += [f"3 {a} {b} {c}" for a, b, c in model.triangles.tolist()]
    path.write_text("\n".join(lines) + "\n", encoding="ascii")
    return path
