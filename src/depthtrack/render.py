from __future__ import annotations

"""Depth rendering of a rigid triangle mesh with numpy (CPU) and torch (GPU) backends."""

import math
from typing import Any, Sequence

import numpy as np

from .model import CameraData, DepthRenderer, ObjectModel

_NEAR_PLANE_M = 1e-3
_INSIDE_EPS = 1e-9


def _require_torch() -> Any:
    try:
        import torch
    except ImportError as exc:
        raise ImportError("torch is required for the GPU rendering backend") from exc
    return torch


def gpu_backend_available() -> bool:
    """Whether the torch GPU rendering backend can run in this installation."""
    try:
        import torch
    except ImportError:
        return False
    return bool(torch.cuda.is_available())


def _rasterize_numpy(
    points_camera: np.ndarray,
    triangles: np.ndarray,
    camera: CameraData,
) -> np.ndarray:
    intr = camera.render_intrinsics
    height, width = camera.resolution
    depth = np.full((height, width), np.inf, dtype=np.float64)

    z = points_camera[:, 2]
    safe_z = np.where(z > _NEAR_PLANE_M, z, 1.0)
    u = intr.fx_px * points_camera[:, 0] / safe_z + intr.cx_px
    v = intr.fy_px * points_camera[:, 1] / safe_z + intr.cy_px

    # triangles crossing the near plane are skipped
    visible = np.all(z[triangles] > _NEAR_PLANE_M, axis=1)
    for index in np.flatnonzero(visible):
        i0, i1, i2 = triangles[index]
        u0, u1, u2 = u[i0], u[i1], u[i2]
        v0, v1, v2 = v[i0], v[i1], v[i2]
        area = (u1 - u0) * (v2 - v0) - (u2 - u0) * (v1 - v0)
        if abs(area) < 1e-12:
            continue

        col_min = max(0, math.ceil(min(u0, u1, u2)))
        col_max = min(width - 1, math.floor(max(u0, u1, u2)))
        row_min = max(0, math.ceil(min(v0, v1, v2)))
        row_max = min(height - 1, math.floor(max(v0, v1, v2)))
        if col_min > col_max or row_min > row_max:
            continue

        pu, pv = np.meshgrid(
            np.arange(col_min, col_max + 1, dtype=np.float64),
            np.arange(row_min, row_max + 1, dtype=np.float64),
        )
        w0 = ((u2 - u1) * (pv - v1) - (v2 - v1) * (pu - u1)) / area
        w1 = ((u0 - u2) * (pv - v2) - (v0 - v2) * (pu - u2)) / area
        w2 = 1.0 - w0 - w1
        inside = (w0 >= -_INSIDE_EPS) & (w1 >= -_INSIDE_EPS) & (w2 >= -_INSIDE_EPS)
        if not inside.any():
            continue

        # perspective-correct depth: 1/z is affine in screen space
        inv_z = w0 / z[i0] + w1 / z[i1] + w2 / z[i2]
        with np.errstate(divide="ignore", invalid="ignore"):
            candidate = np.where(inside, 1.0 / inv_z, np.inf)
        region = depth[row_min : row_max + 1, col_min : col_max + 1]
        np.minimum(region, candidate, out=region)
    return depth


class NumpyDepthRenderer(DepthRenderer):
    """Z-buffer rasteriser on the CPU. Read-only after construction."""

    def __init__(self, object_model: ObjectModel, cameras: Sequence[CameraData]) -> None:
        if not cameras:
            raise ValueError("renderer needs at least one camera")
        self._object_model = object_model
        self._cameras = tuple(cameras)
        self._extrinsics = tuple(camera.pose.as_arrays() for camera in self._cameras)

    @property
    def backend_name(self) -> str:
        return "numpy"

    @property
    def object_model(self) -> ObjectModel:
        return self._object_model

    @property
    def camera_count(self) -> int:
        return len(self._cameras)

    def resolution(self, sensor_index: int) -> tuple[int, int]:
        return self._cameras[sensor_index].resolution

    def render(self, rotations: np.ndarray, translations: np.ndarray, sensor_index: int) -> np.ndarray:
        rotations = np.asarray(rotations, dtype=np.float64).reshape(-1, 3, 3)
        translations = np.asarray(translations, dtype=np.float64).reshape(-1, 3)
        camera = self._cameras[sensor_index]
        cam_rotation, cam_translation = self._extrinsics[sensor_index]
        vertices = self._object_model.vertices

        images = np.empty((len(rotations), *camera.resolution), dtype=np.float64)
        for index, (rotation, translation) in enumerate(zip(rotations, translations, strict=True)):
            points_ref = vertices @ rotation.T + translation[None, :]
            points_camera = points_ref @ cam_rotation.T + cam_translation[None, :]
            images[index] = _rasterize_numpy(points_camera, self._object_model.triangles, camera)
        return images


class TorchDepthRenderer(DepthRenderer):
    """Batched rasteriser on a torch device; all poses of a call are rendered together."""

    def __init__(
        self,
        object_model: ObjectModel,
        cameras: Sequence[CameraData],
        *,
        device: str | None = None,
        triangle_chunk: int = 64,
    ) -> None:
        if not cameras:
            raise ValueError("renderer needs at least one camera")
        torch = _require_torch()
        self._torch: Any = torch
        self._device = torch.device(device or ("cuda" if torch.cuda.is_available() else "cpu"))
        self._dtype = torch.float32
        self._object_model = object_model
        self._cameras = tuple(cameras)
        self._triangle_chunk = max(1, int(triangle_chunk))
        self._vertices = torch.as_tensor(object_model.vertices, dtype=self._dtype, device=self._device)
        self._triangles = torch.as_tensor(object_model.triangles, dtype=torch.long, device=self._device)
        self._extrinsics = []
        self._pixel_grids = []
        for camera in self._cameras:
            rotation, translation = camera.pose.as_arrays()
            self._extrinsics.append(
                (
                    torch.as_tensor(rotation, dtype=self._dtype, device=self._device),
                    torch.as_tensor(translation, dtype=self._dtype, device=self._device),
                )
            )
            height, width = camera.resolution
            rows = torch.arange(height, dtype=self._dtype, device=self._device)
            cols = torch.arange(width, dtype=self._dtype, device=self._device)
            pv, pu = torch.meshgrid(rows, cols, indexing="ij")
            self._pixel_grids.append((pu, pv))

    @property
    def backend_name(self) -> str:
        return "torch"

    @property
    def device(self) -> Any:
        return self._device

    @property
    def camera_count(self) -> int:
        return len(self._cameras)

    def resolution(self, sensor_index: int) -> tuple[int, int]:
        return self._cameras[sensor_index].resolution

    def render_tensor(self, rotations: np.ndarray, translations: np.ndarray, sensor_index: int) -> Any:
        torch = self._torch
        rot = torch.as_tensor(np.asarray(rotations).reshape(-1, 3, 3), dtype=self._dtype, device=self._device)
        trans = torch.as_tensor(np.asarray(translations).reshape(-1, 3), dtype=self._dtype, device=self._device)
        cam_rotation, cam_translation = self._extrinsics[sensor_index]
        intr = self._cameras[sensor_index].render_intrinsics
        pu, pv = self._pixel_grids[sensor_index]
        height, width = self._cameras[sensor_index].resolution

        points = torch.einsum("nij,vj->nvi", rot, self._vertices) + trans[:, None, :]
        points = points @ cam_rotation.T + cam_translation
        z = points[..., 2]
        safe_z = torch.where(z > _NEAR_PLANE_M, z, torch.ones_like(z))
        u = intr.fx_px * points[..., 0] / safe_z + intr.cx_px
        v = intr.fy_px * points[..., 1] / safe_z + intr.cy_px

        depth = torch.full((rot.shape[0], height, width), math.inf, dtype=self._dtype, device=self._device)
        for start in range(0, self._triangles.shape[0], self._triangle_chunk):
            tri = self._triangles[start : start + self._triangle_chunk]
            tu, tv, tz = u[:, tri], v[:, tri], z[:, tri]  # (N, C, 3)
            u0, u1, u2 = (tu[..., k, None, None] for k in range(3))
            v0, v1, v2 = (tv[..., k, None, None] for k in range(3))
            z0, z1, z2 = (tz[..., k, None, None] for k in range(3))
            area = (u1 - u0) * (v2 - v0) - (u2 - u0) * (v1 - v0)
            valid = (area.abs() > 1e-12) & (tz > _NEAR_PLANE_M).all(dim=-1)[..., None, None]
            area = torch.where(valid, area, torch.ones_like(area))

            w0 = ((u2 - u1) * (pv - v1) - (v2 - v1) * (pu - u1)) / area
            w1 = ((u0 - u2) * (pv - v2) - (v0 - v2) * (pu - u2)) / area
            w2 = 1.0 - w0 - w1
            inside = valid & (w0 >= -_INSIDE_EPS) & (w1 >= -_INSIDE_EPS) & (w2 >= -_INSIDE_EPS)
            inv_z = w0 / z0.clamp_min(_NEAR_PLANE_M) + w1 / z1.clamp_min(_NEAR_PLANE_M) + w2 / z2.clamp_min(_NEAR_PLANE_M)
            candidate = torch.where(inside, 1.0 / inv_z, torch.full_like(inv_z, math.inf))
            depth = torch.minimum(depth, candidate.amin(dim=1))
        return depth

    def render(self, rotations: np.ndarray, translations: np.ndarray, sensor_index: int) -> np.ndarray:
        tensor = self.render_tensor(rotations, translations, sensor_index)
        return tensor.detach().cpu().numpy().astype(np.float64, copy=False)
