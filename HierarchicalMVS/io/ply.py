"""
PLY point-cloud export.

Binary little-endian PLY with an ASCII header. Vertex records are
``x y z [nx ny nz] red green blue``. Colors are taken from BGR-ordered
arrays (OpenCV layout) and written in RGB order. Points with a non-finite or
out-of-range coordinate are written as the origin so the vertex count always
matches the input.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Optional, Tuple, Union

import numpy as np

from ..core.camera import Camera, backproject_to_world, normal_to_world
from ..logger import get_logger

logger = get_logger("io")

FLT_MAX = float(np.finfo(np.float32).max)


def _vertex_dtype(with_normals: bool) -> np.dtype:
    fields = [('x', '<f4'), ('y', '<f4'), ('z', '<f4')]
    if with_normals:
        fields += [('nx', '<f4'), ('ny', '<f4'), ('nz', '<f4')]
    fields += [('red', 'u1'), ('green', 'u1'), ('blue', 'u1')]
    return np.dtype(fields)


def _ply_header(num_vertices: int, with_normals: bool) -> bytes:
    lines = [
        "ply",
        "format binary_little_endian 1.0",
        f"element vertex {num_vertices}",
        "property float x",
        "property float y",
        "property float z",
    ]
    if with_normals:
        lines += ["property float nx", "property float ny", "property float nz"]
    lines += [
        "property uchar red",
        "property uchar green",
        "property uchar blue",
        "end_header",
    ]
    return ("\n".join(lines) + "\n").encode('ascii')


def _encode_chunk(points: np.ndarray, colors_bgr: np.ndarray,
                  normals: Optional[np.ndarray]) -> bytes:
    records = np.zeros(len(points), dtype=_vertex_dtype(normals is not None))

    coords = points.astype(np.float64)
    in_range = np.all(np.isfinite(coords) & (np.abs(coords) < FLT_MAX), axis=1)
    coords = np.where(in_range[:, None], coords, 0.0).astype(np.float32)
    records['x'], records['y'], records['z'] = coords[:, 0], coords[:, 1], coords[:, 2]

    if normals is not None:
        records['nx'], records['ny'], records['nz'] = normals[:, 0], normals[:, 1], normals[:, 2]

    colors = np.clip(colors_bgr, 0, 255).astype(np.uint8)
    records['red'] = colors[:, 2]
    records['green'] = colors[:, 1]
    records['blue'] = colors[:, 0]
    return records.tobytes()


def export_point_cloud(ply_path: Union[str, Path], points: np.ndarray, colors_bgr: np.ndarray,
                       normals: Optional[np.ndarray] = None, num_workers: int = 4,
                       chunk_size: int = 65536) -> int:
    """
    Write a colored point cloud.

    Args:
        ply_path: Output file
        points: (N, 3) coordinates
        colors_bgr: (N, 3) colors in blue, green, red order
        normals: Optional (N, 3) normals
        num_workers: Threads encoding vertex chunks
        chunk_size: Vertices per chunk

    Returns:
        Number of vertices written

    Raises:
        ValueError: If the per-point arrays differ in length
        Any error raised while encoding or writing a chunk, after every
        worker has finished; the file then holds only the chunks before it
    """
    points = np.asarray(points).reshape(-1, 3)
    colors_bgr = np.asarray(colors_bgr).reshape(-1, 3)
    if normals is not None:
        normals = np.asarray(normals, dtype=np.float32).reshape(-1, 3)
        if len(normals) != len(points):
            raise ValueError(f"{len(points)} points but {len(normals)} normals")
    if len(colors_bgr) != len(points):
        raise ValueError(f"{len(points)} points but {len(colors_bgr)} colors")

    ply_path = Path(ply_path)
    ply_path.parent.mkdir(parents=True, exist_ok=True)
    logger.info(f"Storing {len(points)} 3D points to {ply_path}")

    chunk_size = max(1, chunk_size)
    starts = list(range(0, len(points), chunk_size))
    next_chunk = [0]
    turn = threading.Condition()
    aborted = threading.Event()

    with open(ply_path, 'wb') as f:
        f.write(_ply_header(len(points), normals is not None))

        def encode_and_write(chunk_idx: int):
            payload = None
            try:
                start = starts[chunk_idx]
                stop = start + chunk_size
                payload = _encode_chunk(points[start:stop], colors_bgr[start:stop],
                                        normals[start:stop] if normals is not None else None)
            finally:
                # Critical section: chunks reach the stream whole and in order.
                # The turn always advances; nothing is written after a failed chunk.
                with turn:
                    turn.wait_for(lambda: next_chunk[0] == chunk_idx)
                    try:
                        if payload is None or aborted.is_set():
                            aborted.set()
                        else:
                            f.write(payload)
                    except Exception:
                        aborted.set()
                        raise
                    finally:
                        next_chunk[0] += 1
                        turn.notify_all()

        with ThreadPoolExecutor(max_workers=max(1, num_workers)) as executor:
            for future in [executor.submit(encode_and_write, i) for i in range(len(starts))]:
                future.result()

    return len(points)


def read_point_cloud(ply_path: Union[str, Path]) -> np.ndarray:
    """
    Read a PLY written by ``export_point_cloud``.

    Returns:
        Structured array with the vertex properties as fields
    """
    with open(ply_path, 'rb') as f:
        header_lines = []
        while True:
            line = f.readline()
            if not line:
                raise ValueError(f"Unterminated PLY header in {ply_path}")
            line = line.decode('ascii').strip()
            header_lines.append(line)
            if line == "end_header":
                break
        payload = f.read()

    num_vertices = 0
    with_normals = False
    for line in header_lines:
        parts = line.split()
        if parts[:2] == ["element", "vertex"]:
            num_vertices = int(parts[2])
        elif parts == ["property", "float", "nx"]:
            with_normals = True

    return np.frombuffer(payload, dtype=_vertex_dtype(with_normals), count=num_vertices)


def depth_map_to_point_cloud(depth: np.ndarray, camera: Camera,
                             color_image: Optional[np.ndarray] = None,
                             normals: Optional[np.ndarray] = None,
                             depth_range: Optional[Tuple[float, float]] = None):
    """
    Back-project a reference depth map into world points.

    Args:
        depth: (H, W) depth map
        camera: Camera the depth map was computed for
        color_image: Optional (H, W, 3) BGR image, gray when omitted
        normals: Optional (H, W, 3) camera-frame normals, rotated into the world frame
        depth_range: Optional (min, max) filter

    Returns:
        points (N, 3), colors_bgr (N, 3), normals (N, 3) or None
    """
    height, width = depth.shape
    ys, xs = np.mgrid[0:height, 0:width]
    valid = np.isfinite(depth) & (depth > 0)
    if depth_range is not None:
        valid &= (depth >= depth_range[0]) & (depth <= depth_range[1])

    points = backproject_to_world(xs[valid], ys[valid], depth[valid], camera)
    if color_image is not None:
        colors = color_image[valid].reshape(-1, 3)
    else:
        colors = np.full((len(points), 3), 128, dtype=np.uint8)

    world_normals = None
    if normals is not None:
        planes = np.zeros((int(valid.sum()), 4))
        planes[:, :3] = normals[valid]
        world_normals = normal_to_world(planes, camera)[:, :3].astype(np.float32)

    return points, colors, world_normals
