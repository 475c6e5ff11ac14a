"""
Image and Camera Loading
========================

Reads the dense-folder layout used by the reconstruction::

    dense_folder/
        images/00000000.jpg
        cams/00000000_cam.txt
        pair.txt
        <results_dirname>/00000000/{depths,depths_geom,normals,costs,confidence}.dmb
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import cv2
import numpy as np

from ..core.camera import Camera
from ..core.structures import Problem
from ..logger import get_logger

logger = get_logger("io")


def read_camera(cam_path: Union[str, Path]) -> Camera:
    """
    Read a camera text file.

    Layout (whitespace separated)::

        extrinsic
        R00 R01 R02 t0
        R10 R11 R12 t1
        R20 R21 R22 t2
        0 0 0 1
        intrinsic
        K00 K01 K02
        K10 K11 K12
        K20 K21 K22
        depth_min interval depth_num depth_max

    Width and height are not stored in the file and are set by the caller.
    """
    tokens = Path(cam_path).read_text().split()
    if len(tokens) < 31:
        raise ValueError(f"Camera file {cam_path} is truncated ({len(tokens)} tokens)")

    # tokens[0] is the extrinsic marker
    extrinsic = np.array([float(v) for v in tokens[1:13]]).reshape(3, 4)
    # tokens[13:17] is the unused homogeneous row, tokens[17] the intrinsic marker
    K = np.array([float(v) for v in tokens[18:27]]).reshape(3, 3)
    depth_min = float(tokens[27])
    depth_max = float(tokens[30])

    return Camera(R=extrinsic[:, :3].copy(), t=extrinsic[:, 3].copy(), K=K,
                  depth_min=depth_min, depth_max=depth_max)


def write_camera(cam_path: Union[str, Path], camera: Camera, interval: float = 0.0,
                 depth_num: int = 192):
    """Write a camera in the layout ``read_camera`` expects"""
    cam_path = Path(cam_path)
    cam_path.parent.mkdir(parents=True, exist_ok=True)
    lines = ["extrinsic"]
    for i in range(3):
        lines.append(" ".join(f"{v:.9g}" for v in list(camera.R[i]) + [camera.t[i]]))
    lines.append("0 0 0 1")
    lines.append("")
    lines.append("intrinsic")
    for i in range(3):
        lines.append(" ".join(f"{v:.9g}" for v in camera.K[i]))
    lines.append("")
    lines.append(f"{camera.depth_min:.9g} {interval:.9g} {depth_num} {camera.depth_max:.9g}")
    cam_path.write_text("\n".join(lines) + "\n")


def read_pair_file(pair_path: Union[str, Path], max_image_size: int = 3200,
                   max_source_views: Optional[int] = None) -> List[Problem]:
    """
    Read a view-selection file.

    Layout::

        N
        ref_id
        k src_id score src_id score ...
        ...

    Returns:
        One Problem per reference view, in file order
    """
    tokens = Path(pair_path).read_text().split()
    if not tokens:
        return []

    num_views = int(tokens[0])
    problems = []
    pos = 1
    for _ in range(num_views):
        ref_id = int(tokens[pos])
        num_src = int(tokens[pos + 1])
        pos += 2
        src_ids = []
        for _ in range(num_src):
            src_id = int(tokens[pos])
            score = float(tokens[pos + 1])
            pos += 2
            if score <= 0:
                continue
            src_ids.append(src_id)
        if max_source_views is not None:
            src_ids = src_ids[:max_source_views]
        problems.append(Problem(ref_image_id=ref_id, src_image_ids=src_ids,
                                max_image_size=max_image_size))
    return problems


def rescale_to_max_size(image: np.ndarray, camera: Camera,
                        max_image_size: int) -> Tuple[np.ndarray, Camera]:
    """
    Downscale an image (and its camera) so its longer side fits ``max_image_size``.

    Images that already fit are returned unchanged.
    """
    rows, cols = image.shape[:2]
    if cols <= max_image_size and rows <= max_image_size:
        return image, camera

    factor = min(max_image_size / float(cols), max_image_size / float(rows))
    new_cols = int(round(cols * factor))
    new_rows = int(round(rows * factor))

    scaled = cv2.resize(image, (new_cols, new_rows), interpolation=cv2.INTER_LINEAR)
    return scaled, camera.rescale(new_cols, new_rows)


def rescale_to_match(image: np.ndarray, camera: Camera,
                     target_shape: Tuple[int, int]) -> Tuple[np.ndarray, Camera]:
    """
    Resample an image (and its camera) to ``target_shape`` = (rows, cols),
    typically the shape of a depth map computed at another level.
    """
    rows, cols = target_shape
    if image.shape[0] == rows and image.shape[1] == cols:
        return image.copy(), camera
    scaled = cv2.resize(image, (cols, rows), interpolation=cv2.INTER_LINEAR)
    return scaled, camera.rescale(cols, rows)


@dataclass
class ProblemInputs:
    """
    Images and cameras of one problem, reference first.

    Attributes:
        problem: The problem these inputs belong to
        images: float32 grayscale images
        cameras: Matching cameras, ``cameras[0]`` is the reference
        color_image: Optional BGR reference image for point-cloud colors
    """
    problem: Problem
    images: List[np.ndarray] = field(default_factory=list)
    cameras: List[Camera] = field(default_factory=list)
    color_image: Optional[np.ndarray] = None

    @property
    def reference_image(self) -> np.ndarray:
        return self.images[0]

    @property
    def reference_camera(self) -> Camera:
        return self.cameras[0]

    @property
    def num_images(self) -> int:
        return len(self.images)


class ImageCameraLoader:
    """
    Loads images and cameras of a problem from a dense folder.
    """

    def __init__(self, dense_folder: Union[str, Path], results_dirname: str = 'mvs_results',
                 image_extension: str = '.jpg'):
        self.dense_folder = Path(dense_folder)
        self.results_dirname = results_dirname
        self.image_extension = image_extension

    def image_path(self, image_id: int) -> Path:
        return self.dense_folder / "images" / f"{image_id:08d}{self.image_extension}"

    def camera_path(self, image_id: int) -> Path:
        return self.dense_folder / "cams" / f"{image_id:08d}_cam.txt"

    def results_folder(self, image_id: int) -> Path:
        return self.dense_folder / self.results_dirname / f"{image_id:08d}"

    def pair_path(self) -> Path:
        return self.dense_folder / "pair.txt"

    def load_problems(self, max_image_size: int = 3200) -> List[Problem]:
        return read_pair_file(self.pair_path(), max_image_size=max_image_size)

    def load_image(self, image_id: int, color: bool = False) -> np.ndarray:
        path = self.image_path(image_id)
        flag = cv2.IMREAD_COLOR if color else cv2.IMREAD_GRAYSCALE
        image = cv2.imread(str(path), flag)
        if image is None:
            raise FileNotFoundError(f"Could not read image: {path}")
        return image

    def load_camera(self, image_id: int) -> Camera:
        return read_camera(self.camera_path(image_id))

    def load(self, problem: Problem, max_sizes: Optional[Dict[int, int]] = None,
             load_color: bool = False) -> ProblemInputs:
        """
        Load and rescale every view of a problem.

        Args:
            problem: Problem to load
            max_sizes: Optional per-view max image size (defaults to problem.max_image_size)
            load_color: Also keep the BGR reference image for point-cloud export
        """
        inputs = ProblemInputs(problem=problem)

        for image_id in problem.image_ids:
            gray = self.load_image(image_id).astype(np.float32)
            camera = self.load_camera(image_id).with_size(gray.shape[1], gray.shape[0])

            max_size = problem.max_image_size
            if max_sizes is not None and image_id in max_sizes:
                max_size = max_sizes[image_id]

            gray, camera = rescale_to_max_size(gray, camera, max_size)
            inputs.images.append(gray)
            inputs.cameras.append(camera)

        if load_color:
            color = self.load_image(problem.ref_image_id, color=True)
            reference = inputs.reference_image
            if color.shape[:2] != reference.shape[:2]:
                color = cv2.resize(color, (reference.shape[1], reference.shape[0]),
                                   interpolation=cv2.INTER_LINEAR)
            inputs.color_image = color

        logger.info(f"Loaded problem {problem.ref_image_id}: {inputs.num_images} images, "
                    f"reference {inputs.reference_image.shape[1]}x{inputs.reference_image.shape[0]}")
        return inputs
