"""
Hierarchical MVS Pipeline
=========================

Runs reconstruction problems one at a time:

    load -> workspace -> [planar prior] -> cost evaluator -> synchronize -> persist

Every workspace is released before the next problem starts.
"""

import time
from pathlib import Path
from typing import Dict, List, Optional, Union

import cv2
import numpy as np

from .algorithms.planar_prior import PlanarPriorFitter
from .algorithms.support_points import SupportPointSelector
from .algorithms.upsampling import JointBilateralUpsampler
from .config import MVSConfig
from .core.camera import depths_from_planes
from .core.structures import ModeFlags, PriorField, Problem, Resolution
from .device.allocator import DeviceArena, resolve_device
from .device.evaluator import CostEvaluator
from .device.workspace import Workspace
from .io.dmb import read_depth_dmb, read_normal_dmb, write_depth_dmb, write_normal_dmb
from .io.loader import ImageCameraLoader
from .io.ply import depth_map_to_point_cloud, export_point_cloud
from .logger import configure_from_config, get_logger, problem_logger


class HierarchicalMVSPipeline:
    """
    Per-problem orchestration around an external cost evaluator.
    """

    def __init__(self, evaluator: CostEvaluator, dense_folder: Union[str, Path],
                 config: Optional[MVSConfig] = None,
                 arena_factory=None):
        """
        Initialize pipeline.

        Args:
            evaluator: Accelerator routine refining the hypotheses
            dense_folder: Folder with images/, cams/, pair.txt and the results folder
            config: Configuration object. If None, uses defaults.
            arena_factory: Callable (device, name) -> DeviceArena, for custom allocators
        """
        self.config = config or MVSConfig()
        self.evaluator = evaluator
        self.loader = ImageCameraLoader(dense_folder, results_dirname=self.config.results_dirname)
        self.device = resolve_device(self.config.device)
        self._arena_factory = arena_factory or (lambda dev, name: DeviceArena(dev, name))

        configure_from_config(self.config)
        self.logger = get_logger("pipeline")

        self.upsampler = JointBilateralUpsampler(self.config.jbu, device=self.device,
                                                 arena_factory=self._arena_factory)
        self.selector = SupportPointSelector(self.config.support_points)

        self.stats = {
            'problems': 0,
            'processing_time': {},
        }
        self.logger.info(f"Pipeline initialized on {self.device} with evaluator "
                         f"{self.evaluator.get_info().get('name')}")

    # ------------------------------------------------------------------

    def run(self, problems: Optional[List[Problem]] = None,
            flags: Optional[ModeFlags] = None) -> List[Dict]:
        """Process problems sequentially (all problems from pair.txt by default)"""
        if problems is None:
            problems = self.loader.load_problems(self.config.max_image_size)
        return [self.process_problem(problem, flags) for problem in problems]

    def process_problem(self, problem: Problem, flags: Optional[ModeFlags] = None,
                        prior_factor: Optional[float] = None) -> Dict:
        """
        Reconstruct one problem and persist its depth, normal and cost maps.

        Args:
            problem: Problem to process
            flags: Operating modes. If None, uses config.modes.
            prior_factor: Resolution of the persisted maps used for the planar prior,
                          relative to the reference image. If None, inferred
                          from the persisted maps.

        Returns:
            Dictionary with the result folder and timing
        """
        flags = flags if flags is not None else self.config.modes
        start = time.time()
        log = problem_logger("pipeline", problem.ref_image_id)
        log.info(f"Processing ({flags}) with {len(problem.src_image_ids)} source views")

        inputs = self.loader.load(problem, load_color=True)
        arena = self._arena_factory(self.device, f"workspace-{problem.ref_image_id}")

        with Workspace.initialize(inputs, flags, self.config, self.loader, arena,
                                  upsampler=self.upsampler) as workspace:
            if flags.prior_consistency:
                prior = self.build_planar_prior(workspace, prior_factor)
                workspace.set_planar_prior(prior)

            self.evaluator.evaluate(workspace)
            workspace.synchronize()

            planes = workspace.plane_hypotheses()
            costs = workspace.costs()
            camera = workspace.reference_camera

        depth = depths_from_planes(planes, camera)
        normals = planes[..., :3].copy()
        folder = self.loader.results_folder(problem.ref_image_id)
        depth_name = "depths_geom.dmb" if flags.geometric_consistency else "depths.dmb"
        write_depth_dmb(folder / depth_name, depth)
        write_normal_dmb(folder / "normals.dmb", normals)
        write_depth_dmb(folder / "costs.dmb", costs)

        elapsed = time.time() - start
        self.stats['problems'] += 1
        self.stats['processing_time'][problem.ref_image_id] = elapsed
        log.info(f"✓ Done in {elapsed:.2f}s -> {folder}")

        return {
            'ref_image_id': problem.ref_image_id,
            'results_folder': str(folder),
            'depth_file': depth_name,
            'resolution': Resolution.of(depth),
            'time': elapsed,
        }

    # ------------------------------------------------------------------

    def build_planar_prior(self, workspace: Workspace, factor: Optional[float] = None) -> PriorField:
        """
        Planar prior for the workspace's reference view from its persisted results.

        Reads ``costs.dmb``, ``confidence.dmb`` and ``depths.dmb`` (at ``factor``
        times the reference resolution, inferred from the maps when None),
        selects support points, fits the prior and grows it to full resolution
        when needed. The edge map and confidences are uploaded to the
        workspace on the way.
        """
        problem = workspace.inputs.problem
        folder = self.loader.results_folder(problem.ref_image_id)

        fields = {}
        for name in ("costs", "confidence", "depths"):
            data = read_depth_dmb(folder / f"{name}.dmb")
            if data is None:
                raise RuntimeError(f"Problem {problem.ref_image_id}: planar prior needs {folder / (name + '.dmb')}")
            fields[name] = data

        field_res = Resolution.of(fields['costs'])
        if factor is None:
            factor = field_res.width / float(workspace.width)
        problem_logger("pipeline", problem.ref_image_id).debug(
            f"Planar prior from {field_res} maps (factor {factor:g})")

        confidences = fields['confidence']
        if field_res != workspace.resolution:
            confidences = cv2.resize(confidences, (workspace.width, workspace.height),
                                     interpolation=cv2.INTER_NEAREST)
        workspace.set_texture_information(self.texture_map(workspace.reference_image, workspace.resolution),
                                          confidences)

        texture = self.texture_map(workspace.reference_image, field_res)
        points = self.selector.select(fields['costs'], fields['confidence'], texture,
                                      reference=workspace.resolution, factor=factor)

        fitter = PlanarPriorFitter(workspace.reference_camera, self.config.planar_prior)
        prior = fitter.estimate(points, fields['depths'], factor)
        if prior.resolution != workspace.resolution:
            prior = fitter.grow_prior(prior, workspace.reference_image, self.upsampler, factor)
        return prior

    @staticmethod
    def texture_map(image: np.ndarray, resolution: Resolution) -> np.ndarray:
        """Binary texture-presence map (Canny edges) at ``resolution``"""
        gray = np.clip(image, 0, 255).astype(np.uint8)
        if Resolution.of(gray) != resolution:
            gray = cv2.resize(gray, (resolution.width, resolution.height), interpolation=cv2.INTER_AREA)
        edges = cv2.Canny(gray, 50, 150)
        return (edges > 0).astype(np.float32)

    def export_problem(self, problem: Problem, ply_path: Union[str, Path],
                       flags: Optional[ModeFlags] = None) -> int:
        """
        Export the persisted depth map of a problem as a colored point cloud.

        Returns:
            Number of vertices written
        """
        flags = flags if flags is not None else self.config.modes
        folder = self.loader.results_folder(problem.ref_image_id)
        depth_name = "depths_geom.dmb" if flags.geometric_consistency else "depths.dmb"
        depth = read_depth_dmb(folder / depth_name)
        if depth is None:
            raise RuntimeError(f"No depth map for problem {problem.ref_image_id} in {folder}")

        normals = None
        if self.config.export_normals:
            normals = read_normal_dmb(folder / "normals.dmb")

        inputs = self.loader.load(problem, load_color=True)
        camera = inputs.reference_camera
        color = inputs.color_image
        if Resolution.of(depth) != Resolution.of(inputs.reference_image):
            camera = camera.rescale(depth.shape[1], depth.shape[0])
            color = cv2.resize(color, (depth.shape[1], depth.shape[0]), interpolation=cv2.INTER_LINEAR)

        low, high = self.config.depth_range_scale
        points, colors, world_normals = depth_map_to_point_cloud(
            depth, camera, color, normals,
            depth_range=(camera.depth_min * low, camera.depth_max * high),
        )
        return export_point_cloud(ply_path, points, colors, world_normals)
