"""
Camera & Projection Model
=========================

Pinhole cameras with world-to-camera extrinsics ``X_cam = R @ X_world + t``.

All functions accept scalars or numpy arrays for pixel coordinates and
depths and broadcast over them. Whenever a ``factor`` is given, the
intrinsics are scaled by it (``fx, fy, cx, cy`` all multiplied), which is how
a depth field stored at a reduced resolution is interpreted.
"""

from dataclasses import dataclass, field, replace
from typing import Tuple

import numpy as np


@dataclass(frozen=True)
class Camera:
    """
    Calibrated pinhole camera.

    Attributes:
        R: (3, 3) world-to-camera rotation
        t: (3,) world-to-camera translation
        K: (3, 3) intrinsic matrix
        width: Image width in pixels
        height: Image height in pixels
        depth_min: Lower bound of the valid depth range
        depth_max: Upper bound of the valid depth range
    """
    R: np.ndarray = field(default_factory=lambda: np.eye(3, dtype=np.float64))
    t: np.ndarray = field(default_factory=lambda: np.zeros(3, dtype=np.float64))
    K: np.ndarray = field(default_factory=lambda: np.eye(3, dtype=np.float64))
    width: int = 0
    height: int = 0
    depth_min: float = 0.0
    depth_max: float = 0.0

    @property
    def fx(self) -> float:
        return float(self.K[0, 0])

    @property
    def fy(self) -> float:
        return float(self.K[1, 1])

    @property
    def cx(self) -> float:
        return float(self.K[0, 2])

    @property
    def cy(self) -> float:
        return float(self.K[1, 2])

    @property
    def center(self) -> np.ndarray:
        """Camera center in world coordinates"""
        return -self.R.T @ self.t

    def with_size(self, width: int, height: int) -> 'Camera':
        """Same calibration, different recorded image size (no intrinsic change)"""
        return replace(self, width=int(width), height=int(height))

    def rescale(self, new_width: int, new_height: int) -> 'Camera':
        """
        Camera for the same view resampled to ``new_width x new_height``.

        Focal lengths and principal point scale with the resize factor of
        their axis. Rotation, translation and depth range are unchanged.
        """
        if self.width <= 0 or self.height <= 0:
            raise ValueError("Cannot rescale a camera without a recorded image size")

        scale_x = new_width / float(self.width)
        scale_y = new_height / float(self.height)

        K = self.K.astype(np.float64).copy()
        K[0, 0] *= scale_x
        K[0, 2] *= scale_x
        K[1, 1] *= scale_y
        K[1, 2] *= scale_y
        return replace(self, K=K, width=int(new_width), height=int(new_height))

    def to_array(self) -> np.ndarray:
        """
        Flat float32 record ``[R(9), t(3), K(9), width, height, depth_min, depth_max]``.

        This is the per-camera layout of the contiguous device camera array.
        """
        return np.concatenate([
            np.asarray(self.R, dtype=np.float32).ravel(),
            np.asarray(self.t, dtype=np.float32).ravel(),
            np.asarray(self.K, dtype=np.float32).ravel(),
            np.array([self.width, self.height, self.depth_min, self.depth_max], dtype=np.float32),
        ])


CAMERA_RECORD_SIZE = 25


def backproject_to_ref(x, y, depth, camera: Camera, factor: float = 1.0) -> np.ndarray:
    """
    Back-project pixels into the camera frame.

    Returns:
        (..., 3) points
    """
    x = np.asarray(x, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    depth = np.asarray(depth, dtype=np.float64)

    X = depth * (x - camera.cx * factor) / (camera.fx * factor)
    Y = depth * (y - camera.cy * factor) / (camera.fy * factor)
    return np.stack(np.broadcast_arrays(X, Y, depth), axis=-1)


def backproject_to_world(x, y, depth, camera: Camera) -> np.ndarray:
    """Back-project pixels into world coordinates, (..., 3)"""
    points_cam = backproject_to_ref(x, y, depth, camera)
    # R^T (X_cam - t), written row-wise for broadcasting
    return (points_cam - np.asarray(camera.t, dtype=np.float64)) @ np.asarray(camera.R, dtype=np.float64)


def project(points_world: np.ndarray, camera: Camera) -> Tuple[np.ndarray, np.ndarray]:
    """
    Project world points into a camera.

    Args:
        points_world: (..., 3) world points

    Returns:
        pixels: (..., 2) pixel coordinates
        depth: (...,) projective depth
    """
    points_world = np.asarray(points_world, dtype=np.float64)
    points_cam = points_world @ np.asarray(camera.R, dtype=np.float64).T + np.asarray(camera.t, dtype=np.float64)
    homogeneous = points_cam @ np.asarray(camera.K, dtype=np.float64).T
    depth = homogeneous[..., 2]
    with np.errstate(divide='ignore', invalid='ignore'):
        pixels = homogeneous[..., :2] / depth[..., None]
    return pixels, depth


def depth_from_plane(plane, x, y, camera: Camera, factor: float = 1.0):
    """
    Depth at pixel (x, y) of the plane ``n·X + d = 0`` given in the camera frame.

    Args:
        plane: (..., 4) plane equations (nx, ny, nz, d)
    """
    plane = np.asarray(plane, dtype=np.float64)
    x = np.asarray(x, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)

    fx = camera.fx * factor
    denominator = ((x - camera.cx * factor) * plane[..., 0]
                   + (camera.fx / camera.fy) * (y - camera.cy * factor) * plane[..., 1]
                   + fx * plane[..., 2])
    with np.errstate(divide='ignore', invalid='ignore'):
        return -plane[..., 3] * fx / denominator


def distance_to_origin(x, y, depth, normal, camera: Camera, factor: float = 1.0):
    """
    Plane offset ``d`` of the plane with ``normal`` through the back-projection
    of pixel (x, y) at ``depth``.
    """
    normal = np.asarray(normal, dtype=np.float64)
    points = backproject_to_ref(x, y, depth, camera, factor)
    return -np.sum(normal[..., :3] * points, axis=-1)


def planes_from_depth_normals(depth: np.ndarray, normals: np.ndarray,
                              camera: Camera, factor: float = 1.0) -> np.ndarray:
    """
    Convert (H, W) depth and (H, W, 3) normal fields into (H, W, 4) plane equations.
    """
    height, width = depth.shape
    ys, xs = np.mgrid[0:height, 0:width]
    planes = np.empty((height, width, 4), dtype=np.float32)
    planes[..., :3] = normals
    planes[..., 3] = distance_to_origin(xs, ys, depth, normals, camera, factor)
    return planes


def depths_from_planes(planes: np.ndarray, camera: Camera, factor: float = 1.0) -> np.ndarray:
    """Per-pixel depth of an (H, W, 4) plane field"""
    height, width = planes.shape[:2]
    ys, xs = np.mgrid[0:height, 0:width]
    return depth_from_plane(planes, xs, ys, camera, factor).astype(np.float32)


def normal_to_world(plane, camera: Camera) -> np.ndarray:
    """Rotate the normal of a camera-frame plane into world coordinates (d kept)"""
    plane = np.asarray(plane, dtype=np.float64)
    out = plane.copy()
    out[..., :3] = plane[..., :3] @ np.asarray(camera.R, dtype=np.float64)
    return out


def normal_to_ref(plane, camera: Camera) -> np.ndarray:
    """Rotate the normal of a world-frame plane into the camera frame (d kept)"""
    plane = np.asarray(plane, dtype=np.float64)
    out = plane.copy()
    out[..., :3] = plane[..., :3] @ np.asarray(camera.R, dtype=np.float64).T
    return out


def angle_between(v1, v2) -> float:
    """Angle in radians between two unit vectors; 0 when rounding pushes the dot product past 1"""
    dot = float(np.dot(np.asarray(v1, dtype=np.float64), np.asarray(v2, dtype=np.float64)))
    return float(np.arccos(np.clip(dot, -1.0, 1.0)))
