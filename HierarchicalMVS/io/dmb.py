"""
Binary depth/normal/cost matrices (``.dmb``).

Format:
    - type (int32), always 1 (float32 payload)
    - height (int32)
    - width (int32)
    - channels (int32), 1 for depth/cost/confidence, 3 for normals
    - data (float32 array of size height * width * channels, channels interleaved per pixel)

Readers return ``None`` for a missing, mistyped or truncated file; callers
decide whether that is fatal.
"""

from pathlib import Path
from typing import Optional, Union

import numpy as np

from ..logger import get_logger

DMB_TYPE_FLOAT = 1

logger = get_logger("io")


def read_dmb(filepath: Union[str, Path]) -> Optional[np.ndarray]:
    """
    Read a binary matrix.

    Returns:
        (H, W) array for single-channel files, (H, W, C) otherwise, or None on failure
    """
    filepath = Path(filepath)
    if not filepath.exists():
        logger.error(f"Matrix file not found: {filepath}")
        return None

    with open(filepath, 'rb') as f:
        header = np.fromfile(f, dtype='<i4', count=4)
        if header.size != 4:
            logger.error(f"Truncated header in {filepath}")
            return None

        dmb_type, height, width, channels = (int(v) for v in header)
        if dmb_type != DMB_TYPE_FLOAT:
            logger.error(f"Unsupported matrix type {dmb_type} in {filepath}")
            return None
        if height < 0 or width < 0 or channels <= 0:
            logger.error(f"Invalid matrix dimensions {height}x{width}x{channels} in {filepath}")
            return None

        num_elements = height * width * channels
        data = np.fromfile(f, dtype='<f4', count=num_elements)

    if data.size != num_elements:
        logger.error(f"Truncated payload in {filepath}: {data.size}/{num_elements} floats")
        return None

    if channels == 1:
        return data.reshape((height, width)).astype(np.float32)
    return data.reshape((height, width, channels)).astype(np.float32)


def write_dmb(filepath: Union[str, Path], matrix: np.ndarray):
    """
    Write a (H, W) or (H, W, C) float matrix.
    """
    matrix = np.asarray(matrix)
    if matrix.ndim == 2:
        height, width = matrix.shape
        channels = 1
    elif matrix.ndim == 3:
        height, width, channels = matrix.shape
    else:
        raise ValueError(f"Expected a 2D or 3D matrix, got shape {matrix.shape}")

    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)

    header = np.array([DMB_TYPE_FLOAT, height, width, channels], dtype='<i4')
    with open(filepath, 'wb') as f:
        header.tofile(f)
        np.ascontiguousarray(matrix, dtype='<f4').tofile(f)


def read_depth_dmb(filepath: Union[str, Path]) -> Optional[np.ndarray]:
    """Read a single-channel map (depth, cost, confidence)"""
    data = read_dmb(filepath)
    if data is not None and data.ndim != 2:
        logger.error(f"Expected a single-channel map in {filepath}, got shape {data.shape}")
        return None
    return data


def read_normal_dmb(filepath: Union[str, Path]) -> Optional[np.ndarray]:
    """Read a 3-channel normal map"""
    data = read_dmb(filepath)
    if data is not None and (data.ndim != 3 or data.shape[2] != 3):
        logger.error(f"Expected a 3-channel normal map in {filepath}, got shape {data.shape}")
        return None
    return data


def write_depth_dmb(filepath: Union[str, Path], depth: np.ndarray):
    if np.asarray(depth).ndim != 2:
        raise ValueError(f"Depth map must be 2D, got shape {np.asarray(depth).shape}")
    write_dmb(filepath, depth)


def write_normal_dmb(filepath: Union[str, Path], normals: np.ndarray):
    normals = np.asarray(normals)
    if normals.ndim != 3 or normals.shape[2] != 3:
        raise ValueError(f"Normal map must be (H, W, 3), got shape {normals.shape}")
    write_dmb(filepath, normals)
