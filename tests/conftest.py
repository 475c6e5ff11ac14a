"""
Shared fixtures: a small synthetic scene, a dense folder on disk and an
allocation-tracking arena.
"""

import cv2
import numpy as np
import pytest

from HierarchicalMVS.config import MVSConfig
from HierarchicalMVS.core.camera import Camera
from HierarchicalMVS.core.structures import Problem
from HierarchicalMVS.device.allocator import DeviceArena
from HierarchicalMVS.io.dmb import write_depth_dmb, write_normal_dmb
from HierarchicalMVS.io.loader import ProblemInputs, write_camera

WIDTH = 40
HEIGHT = 30
SCENE_DEPTH = 5.0
NUM_VIEWS = 3


def make_camera(width=WIDTH, height=HEIGHT, tx=0.0) -> Camera:
    K = np.array([[50.0, 0.0, width / 2.0],
                  [0.0, 50.0, height / 2.0],
                  [0.0, 0.0, 1.0]])
    return Camera(R=np.eye(3), t=np.array([tx, 0.0, 0.0]), K=K,
                  width=width, height=height, depth_min=1.0, depth_max=10.0)


def make_image(seed, width=WIDTH, height=HEIGHT) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return rng.uniform(0, 255, (height, width)).astype(np.float32)


def write_results(folder, width, height, depth=SCENE_DEPTH, cost=0.5, confidence=0.8):
    """Persist a fronto-parallel result (normal facing the camera) into a results folder"""
    normals = np.zeros((height, width, 3), dtype=np.float32)
    normals[..., 2] = -1.0
    depths = np.full((height, width), depth, dtype=np.float32)
    write_depth_dmb(folder / "depths.dmb", depths)
    write_depth_dmb(folder / "depths_geom.dmb", depths)
    write_normal_dmb(folder / "normals.dmb", normals)
    write_depth_dmb(folder / "costs.dmb", np.full((height, width), cost, dtype=np.float32))
    write_depth_dmb(folder / "confidence.dmb", np.full((height, width), confidence, dtype=np.float32))


class TrackingArena(DeviceArena):
    """Arena recording every tensor it hands out and takes back, optionally failing one allocation"""

    def __init__(self, device='cpu', name='tracking', fail_at=None):
        super().__init__(device, name)
        self.fail_at = fail_at
        self.allocated = []
        self.released = []

    def _allocate_tensor(self, shape, dtype):
        if self.fail_at is not None and len(self.allocated) == self.fail_at:
            raise RuntimeError("CUDA out of memory (simulated)")
        tensor = super()._allocate_tensor(shape, dtype)
        self.allocated.append(tuple(shape))
        return tensor

    def _release_tensor(self, buffer):
        self.released.append(buffer.name)
        super()._release_tensor(buffer)


@pytest.fixture
def camera():
    return make_camera()


@pytest.fixture
def config():
    return MVSConfig(device='cpu', verbose=False)


@pytest.fixture
def tracking_arena():
    return TrackingArena()


@pytest.fixture
def problem():
    return Problem(ref_image_id=0, src_image_ids=[1, 2])


@pytest.fixture
def problem_inputs(problem):
    images = [make_image(i) for i in range(NUM_VIEWS)]
    cameras = [make_camera(tx=-0.1 * i) for i in range(NUM_VIEWS)]
    return ProblemInputs(problem=problem, images=images, cameras=cameras)


@pytest.fixture
def dense_folder(tmp_path):
    """
    Dense folder with three views, a pair list and full-resolution results
    (depth, geometric depth, normals, costs, confidence) for every view.
    """
    for image_id in range(NUM_VIEWS):
        image = make_image(image_id).astype(np.uint8)
        (tmp_path / "images").mkdir(exist_ok=True)
        cv2.imwrite(str(tmp_path / "images" / f"{image_id:08d}.jpg"), image)
        write_camera(tmp_path / "cams" / f"{image_id:08d}_cam.txt", make_camera(tx=-0.1 * image_id))

        folder = tmp_path / "mvs_results" / f"{image_id:08d}"
        write_results(folder, WIDTH, HEIGHT)

    (tmp_path / "pair.txt").write_text(
        "3\n"
        "0\n2 1 1.0 2 0.5\n"
        "1\n2 0 1.0 2 0.5\n"
        "2\n2 0 1.0 1 0.5\n"
    )
    return tmp_path
