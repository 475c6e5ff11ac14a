"""
Accelerator Workspace
=====================

Device-resident state of one reconstruction problem.

The workspace is an ordered ledger of capability stages. Each stage owns the
arena entries it acquired and releases them as a unit:

    photometric            image samplers, camera array, plane/cost buffers,
                           random state, selected views, depth scratch
    geometric_consistency  depth-map samplers of every view, seeded hypotheses
    hierarchy              coarse-level plane buffer, upsampled seed
    prior_consistency      prior-plane buffer, plane-id mask, edge map,
                           texture-presence map, confidences

Stages are acquired in this order and released in reverse; releasing a
stage that was never acquired is a no-op. The photometric stage is the
baseline every other stage reads from; it is released last, once no other
stage is live. Inside a stage samplers are released before the arrays they
read.

Host mirrors of the plane, cost and texture buffers are only refreshed by
``synchronize()``; accessors never touch the device.
"""

from collections import OrderedDict
from typing import Dict, List, NamedTuple, Optional

import numpy as np
import torch

from ..config import MVSConfig
from ..core.camera import CAMERA_RECORD_SIZE, Camera, planes_from_depth_normals
from ..core.structures import ModeFlags, PriorField, Resolution
from ..io.dmb import read_depth_dmb, read_normal_dmb
from ..io.loader import ImageCameraLoader, ProblemInputs
from ..logger import get_logger
from .allocator import DeviceAllocationError, DeviceArena, DeviceBuffer, Sampler

logger = get_logger("workspace")

STAGE_PHOTOMETRIC = 'photometric'
STAGE_GEOMETRIC = 'geometric_consistency'
STAGE_HIERARCHY = 'hierarchy'
STAGE_PRIOR = 'prior_consistency'

STAGE_ORDER = (STAGE_PHOTOMETRIC, STAGE_GEOMETRIC, STAGE_HIERARCHY, STAGE_PRIOR)


class DepthRange(NamedTuple):
    min: float
    max: float


def nearest_coarse_indices(full: Resolution, coarse: Resolution):
    """
    Row and column of the nearest coarse pixel for every full-resolution pixel.

    Raises:
        ValueError: If the coarse level is larger than the full one, or an
            index would fall outside it
    """
    if coarse.width > full.width or coarse.height > full.height:
        raise ValueError(f"Coarse level {coarse} is larger than {full}")
    ys, xs = np.mgrid[0:full.height, 0:full.width]
    src_y = ys * coarse.height // full.height
    src_x = xs * coarse.width // full.width
    if src_y.max() >= coarse.height or src_x.max() >= coarse.width:
        raise ValueError(f"Nearest coarse pixel falls outside the coarse level {coarse}")
    return src_y, src_x


class Workspace:
    """
    Device buffers and samplers of one reference image and its source views.

    Usage:
        with Workspace.initialize(inputs, ModeFlags(hierarchy=True), config, loader) as ws:
            evaluator.evaluate(ws)
            ws.synchronize()
            plane = ws.plane_at(0)
    """

    def __init__(self, inputs: ProblemInputs, flags: Optional[ModeFlags] = None,
                 config: Optional[MVSConfig] = None,
                 loader: Optional[ImageCameraLoader] = None,
                 arena: Optional[DeviceArena] = None,
                 upsampler=None,
                 seed: int = 0):
        """
        Args:
            inputs: Images and cameras, index 0 is the reference
            flags: Operating modes. If None, uses config.modes.
            config: Configuration object. If None, uses defaults.
            loader: Locates persisted per-view results (geometric/hierarchy modes)
            arena: Device arena to allocate from
            upsampler: JointBilateralUpsampler for hierarchical seeding
            seed: Seed of the per-pixel random state
        """
        self.config = config or MVSConfig()
        self.flags = flags if flags is not None else self.config.modes
        self.inputs = inputs
        self.loader = loader
        if arena is None:
            arena = DeviceArena(self.config.device, name=f"workspace-{inputs.problem.ref_image_id}")
        self.arena = arena
        self.seed = seed
        self._upsampler = upsampler

        self._validate_inputs()

        self.resolution = Resolution.of(inputs.reference_image)
        low, high = self.config.depth_range_scale
        ref = inputs.reference_camera
        self._depth_range = DepthRange(ref.depth_min * low, ref.depth_max * high)

        # Hierarchy bookkeeping, explicit rather than inferred from buffer shapes
        self.upsample = False
        self.scaled_resolution: Optional[Resolution] = None

        self._ledger: 'OrderedDict[str, List[str]]' = OrderedDict()
        self._planes_host = np.zeros(self.resolution.shape + (4,), dtype=np.float32)
        self._costs_host = np.zeros(self.resolution.shape, dtype=np.float32)
        self._prior_planes_host: Optional[np.ndarray] = None
        self._plane_masks_host: Optional[np.ndarray] = None
        self._texture_host: Optional[np.ndarray] = None
        self._confidences_host: Optional[np.ndarray] = None

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def initialize(cls, inputs: ProblemInputs, flags: Optional[ModeFlags] = None,
                   config: Optional[MVSConfig] = None,
                   loader: Optional[ImageCameraLoader] = None,
                   arena: Optional[DeviceArena] = None,
                   upsampler=None, seed: int = 0) -> 'Workspace':
        """
        Allocate and populate every buffer required by ``flags``.

        Raises:
            DeviceAllocationError: If any device allocation fails. Everything
                acquired so far is released first; the failure is not retried.
            RuntimeError: If persisted results required by a mode are missing or malformed
        """
        workspace = cls(inputs, flags, config, loader, arena, upsampler, seed)
        workspace.acquire()
        return workspace

    def _validate_inputs(self):
        images, cameras = self.inputs.images, self.inputs.cameras
        if not images:
            raise ValueError("A problem needs at least the reference image")
        if len(images) != len(cameras):
            raise ValueError(f"{len(images)} images but {len(cameras)} cameras")

        for idx, (image, camera) in enumerate(zip(images, cameras)):
            if image.ndim != 2:
                raise ValueError(f"Image {idx} must be a single-channel intensity grid, got {image.shape}")
            if (camera.width, camera.height) != (image.shape[1], image.shape[0]):
                role = "reference camera (index 0)" if idx == 0 else f"camera {idx}"
                raise ValueError(
                    f"{role} is {camera.width}x{camera.height} but its image is "
                    f"{image.shape[1]}x{image.shape[0]}"
                )

        if (self.flags.geometric_consistency or self.flags.hierarchy) and self.loader is None:
            raise ValueError("Geometric consistency and hierarchy modes need a loader for persisted results")

    def _stage_enabled(self, stage: str) -> bool:
        return stage == STAGE_PHOTOMETRIC or getattr(self.flags, stage)

    def acquire(self):
        """Acquire every enabled stage in order, rolling back on failure"""
        logger.info(f"Initializing workspace for problem {self.inputs.problem.ref_image_id} "
                    f"({self.flags}) at {self.resolution} on {self.arena.device}")
        acquirers = {
            STAGE_PHOTOMETRIC: self._acquire_photometric,
            STAGE_GEOMETRIC: self._acquire_geometric,
            STAGE_HIERARCHY: self._acquire_hierarchy,
            STAGE_PRIOR: self._acquire_prior,
        }
        try:
            for stage in STAGE_ORDER:
                if self._stage_enabled(stage) and stage not in self._ledger:
                    self._ledger[stage] = []
                    acquirers[stage]()
        except DeviceAllocationError:
            logger.critical(f"Workspace initialization failed on {self.arena.device}; "
                            f"releasing {len(self.arena)} partially acquired entries")
            self.close()
            raise
        except Exception:
            self.close()
            raise

        logger.info(f"✓ Workspace ready: {len(self.arena)} live entries, "
                    f"{self.arena.stats['bytes_live'] / 1e6:.1f} MB")

    # ------------------------------------------------------------------
    # Stage helpers
    # ------------------------------------------------------------------

    def _alloc(self, stage: str, name: str, shape, dtype=torch.float32,
               resolution: Optional[Resolution] = None) -> DeviceBuffer:
        buffer = self.arena.allocate(name, shape, dtype, resolution)
        self._ledger[stage].append(name)
        return buffer

    def _upload(self, stage: str, name: str, array: np.ndarray,
                resolution: Optional[Resolution] = None, dtype=torch.float32) -> DeviceBuffer:
        buffer = self.arena.upload(name, array, resolution, dtype)
        self._ledger[stage].append(name)
        return buffer

    def _bind(self, stage: str, name: str, source: str) -> Sampler:
        sampler = self.arena.bind_sampler(name, source, self.config.address_mode)
        self._ledger[stage].append(name)
        return sampler

    def _read_required(self, reader, path) -> np.ndarray:
        data = reader(path)
        if data is None:
            raise RuntimeError(f"Problem {self.inputs.problem.ref_image_id}: missing or malformed {path}")
        return data

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _acquire_photometric(self):
        stage = STAGE_PHOTOMETRIC
        res = self.resolution

        for idx, image in enumerate(self.inputs.images):
            self._upload(stage, f'array:image:{idx}', image.astype(np.float32), Resolution.of(image))
            self._bind(stage, f'sampler:image:{idx}', f'array:image:{idx}')

        records = np.stack([camera.to_array() for camera in self.inputs.cameras])
        self._upload(stage, 'cameras', records)

        self._alloc(stage, 'plane_hypotheses', res.shape + (4,), torch.float32, res)
        self._alloc(stage, 'costs', res.shape, torch.float32, res)
        self._alloc(stage, 'pre_costs', res.shape, torch.float32, res)
        rand_states = self._alloc(stage, 'rand_states', res.shape, torch.int64, res)
        self._alloc(stage, 'selected_views', res.shape, torch.int32, res)
        self._alloc(stage, 'depths', res.shape, torch.float32, res)

        generator = torch.Generator(device='cpu').manual_seed(self.seed)
        rand_states.tensor.copy_(torch.randint(0, 2 ** 62, res.shape, generator=generator))

    def _acquire_geometric(self):
        stage = STAGE_GEOMETRIC
        problem = self.inputs.problem
        suffix = "depths_geom.dmb" if self.flags.multi_geometry else "depths.dmb"

        for idx, image_id in enumerate(problem.image_ids):
            path = self.loader.results_folder(image_id) / suffix
            depth = self._read_required(read_depth_dmb, path)
            self._upload(stage, f'array:depth:{idx}', depth, Resolution.of(depth))
            self._bind(stage, f'sampler:depth:{idx}', f'array:depth:{idx}')

        folder = self.loader.results_folder(problem.ref_image_id)
        ref_depth = self._read_required(read_depth_dmb, folder / suffix)
        ref_normals = self._read_required(read_normal_dmb, folder / "normals.dmb")
        ref_costs = self._read_required(read_depth_dmb, folder / "costs.dmb")
        for name, field in (('depth', ref_depth), ('normals', ref_normals), ('costs', ref_costs)):
            if Resolution.of(field) != self.resolution:
                raise RuntimeError(f"Persisted reference {name} is {Resolution.of(field)}, "
                                   f"workspace is {self.resolution}")

        planes = planes_from_depth_normals(ref_depth, ref_normals, self.inputs.reference_camera)
        self._write_hypotheses(planes, ref_costs)
        logger.info(f"Geometric consistency: {problem.num_images} depth samplers bound, hypotheses seeded from {suffix}")

    def _acquire_hierarchy(self):
        stage = STAGE_HIERARCHY
        problem = self.inputs.problem
        camera = self.inputs.reference_camera
        folder = self.loader.results_folder(problem.ref_image_id)

        coarse_depth = self._read_required(read_depth_dmb, folder / "depths.dmb")
        coarse_normals = self._read_required(read_normal_dmb, folder / "normals.dmb")
        coarse_costs = self._read_required(read_depth_dmb, folder / "costs.dmb")
        coarse = Resolution.of(coarse_depth)
        if Resolution.of(coarse_normals) != coarse or Resolution.of(coarse_costs) != coarse:
            raise RuntimeError(f"Coarse depth/normal/cost resolutions differ in {folder}")
        if coarse.width > self.resolution.width or coarse.height > self.resolution.height:
            raise RuntimeError(f"Coarse level {coarse} is larger than the reference {self.resolution}")

        self.scaled_resolution = coarse
        self.upsample = coarse != self.resolution
        factor = coarse.width / float(self.resolution.width)
        if self.upsample:
            logger.info(f"Hierarchy: coarse level {coarse} differs from reference {self.resolution}, upsampling")

        coarse_planes = planes_from_depth_normals(coarse_depth, coarse_normals, camera, factor)
        scaled = self._alloc(stage, 'scaled_plane_hypotheses', coarse.shape + (4,), torch.float32, coarse)
        scaled.upload(coarse_planes)

        if self.upsample:
            upsampler = self._get_upsampler()
            result = upsampler.run(self.inputs.reference_image, coarse_depth, coarse_normals)
            full_planes = planes_from_depth_normals(result.depth, result.normals, camera)
        else:
            full_planes = coarse_planes

        # Previous costs come from the nearest coarse pixel
        src_y, src_x = nearest_coarse_indices(self.resolution, coarse)
        pre_costs = coarse_costs[src_y, src_x]

        self._write_hypotheses(full_planes, None)
        pre = self.arena.buffer('pre_costs')
        pre.check_resolution(self.resolution)
        pre.upload(pre_costs)

    def _acquire_prior(self):
        stage = STAGE_PRIOR
        res = self.resolution
        self._alloc(stage, 'prior_planes', res.shape + (4,), torch.float32, res)
        self._alloc(stage, 'plane_masks', res.shape, torch.int32, res)
        self._alloc(stage, 'canny', res.shape, torch.int32, res)
        self._alloc(stage, 'texture', res.shape, torch.float32, res)
        self._alloc(stage, 'confidences', res.shape, torch.float32, res)
        self._prior_planes_host = np.zeros(res.shape + (4,), dtype=np.float32)
        self._plane_masks_host = np.zeros(res.shape, dtype=np.uint32)
        self._texture_host = np.zeros(res.shape, dtype=np.float32)
        self._confidences_host = np.zeros(res.shape, dtype=np.float32)

    def _get_upsampler(self):
        if self._upsampler is None:
            from ..algorithms.upsampling import JointBilateralUpsampler
            self._upsampler = JointBilateralUpsampler(self.config.jbu, device=self.arena.device)
        return self._upsampler

    # ------------------------------------------------------------------
    # Population
    # ------------------------------------------------------------------

    def _write_hypotheses(self, planes: np.ndarray, costs: Optional[np.ndarray]):
        planes_buf = self.arena.buffer('plane_hypotheses')
        planes_buf.check_resolution(Resolution.of(planes))
        planes_buf.upload(planes.astype(np.float32))
        self._planes_host = planes.astype(np.float32).copy()

        if costs is not None:
            costs_buf = self.arena.buffer('costs')
            costs_buf.check_resolution(Resolution.of(costs))
            costs_buf.upload(costs.astype(np.float32))
            self._costs_host = costs.astype(np.float32).copy()

    def reload_hypotheses(self, depths: np.ndarray, normals: np.ndarray, costs: np.ndarray):
        """Replace the current hypotheses with depth/normal/cost fields at the reference resolution"""
        planes = planes_from_depth_normals(depths, normals, self.inputs.reference_camera)
        self._write_hypotheses(planes, costs)

    def set_planar_prior(self, prior: PriorField):
        """
        Upload a dense planar prior.

        Raises:
            RuntimeError: If the workspace was not initialized with prior consistency
            ValueError: If the prior is not at the reference resolution
        """
        if STAGE_PRIOR not in self._ledger:
            raise RuntimeError("Planar prior buffers are not allocated; enable prior_consistency")
        if prior.resolution != self.resolution:
            raise ValueError(f"Prior field is {prior.resolution}, workspace is {self.resolution}")

        self.arena.buffer('prior_planes').upload(prior.planes.astype(np.float32))
        self.arena.buffer('plane_masks').upload(prior.mask.astype(np.int64))
        self._prior_planes_host = prior.planes.astype(np.float32).copy()
        self._plane_masks_host = prior.mask.astype(np.uint32).copy()
        logger.info(f"Planar prior uploaded, coverage {prior.coverage:.1%}")

    def set_texture_information(self, edges: np.ndarray, confidences: np.ndarray):
        """
        Upload the edge map and per-pixel confidences read by prior-regularized
        propagation. The texture-presence map starts out as the binary edge map.

        Args:
            edges: (H, W) edge map, nonzero on edges
            confidences: (H, W) confidences at the reference resolution

        Raises:
            RuntimeError: If the workspace was not initialized with prior consistency
            ValueError: If either field is not at the reference resolution
        """
        if STAGE_PRIOR not in self._ledger:
            raise RuntimeError("Texture buffers are not allocated; enable prior_consistency")
        for name, field in (('edge map', edges), ('confidences', confidences)):
            if Resolution.of(field) != self.resolution:
                raise ValueError(f"{name} is {Resolution.of(field)}, workspace is {self.resolution}")

        texture = (edges > 0).astype(np.float32)
        self.arena.buffer('canny').upload(texture.astype(np.int64))
        self.arena.buffer('texture').upload(texture)
        self.arena.buffer('confidences').upload(confidences.astype(np.float32))
        self._texture_host = texture
        self._confidences_host = confidences.astype(np.float32).copy()
        logger.debug(f"Texture information uploaded, {texture.mean():.1%} edge pixels")

    def synchronize(self):
        """Wait for the device and refresh the host mirrors of planes, costs and texture"""
        self.arena.synchronize()
        self._planes_host = self.arena.buffer('plane_hypotheses').download()
        self._costs_host = self.arena.buffer('costs').download()
        if STAGE_PRIOR in self._ledger:
            self._texture_host = self.arena.buffer('texture').download()

    # ------------------------------------------------------------------
    # Accessors (host mirrors only)
    # ------------------------------------------------------------------

    @property
    def width(self) -> int:
        return self.resolution.width

    @property
    def height(self) -> int:
        return self.resolution.height

    @property
    def scaled_width(self) -> Optional[int]:
        return self.scaled_resolution.width if self.scaled_resolution is not None else None

    @property
    def scaled_height(self) -> Optional[int]:
        return self.scaled_resolution.height if self.scaled_resolution is not None else None

    @property
    def depth_range(self) -> DepthRange:
        return self._depth_range

    @property
    def num_images(self) -> int:
        return self.inputs.num_images

    @property
    def reference_image(self) -> np.ndarray:
        return self.inputs.reference_image

    @property
    def reference_camera(self) -> Camera:
        return self.inputs.reference_camera

    def plane_at(self, index: int) -> np.ndarray:
        """Plane hypothesis of the pixel with row-major ``index``"""
        return self._planes_host.reshape(-1, 4)[index].copy()

    def cost_at(self, index: int) -> float:
        return float(self._costs_host.reshape(-1)[index])

    def plane_hypotheses(self) -> np.ndarray:
        return self._planes_host.copy()

    def costs(self) -> np.ndarray:
        return self._costs_host.copy()

    def prior_field(self) -> Optional[PriorField]:
        if self._prior_planes_host is None:
            return None
        return PriorField(planes=self._prior_planes_host.copy(), mask=self._plane_masks_host.copy())

    def texture_at(self, index: int) -> float:
        """Texture-presence value of the pixel with row-major ``index``"""
        if self._texture_host is None:
            raise RuntimeError("Texture information is not allocated; enable prior_consistency")
        return float(self._texture_host.reshape(-1)[index])

    def confidences(self) -> Optional[np.ndarray]:
        return self._confidences_host.copy() if self._confidences_host is not None else None

    def buffer(self, name: str) -> DeviceBuffer:
        """Device buffer for the cost evaluator"""
        return self.arena.buffer(name)

    def sampler(self, name: str) -> Sampler:
        return self.arena.sampler(name)

    def image_samplers(self) -> List[Sampler]:
        return [self.arena.sampler(f'sampler:image:{i}') for i in range(self.num_images)]

    def depth_samplers(self) -> List[Sampler]:
        if STAGE_GEOMETRIC not in self._ledger:
            return []
        return [self.arena.sampler(f'sampler:depth:{i}') for i in range(self.num_images)]

    def live_stages(self) -> List[str]:
        return list(self._ledger.keys())

    def live_buffers(self) -> Dict[str, List[str]]:
        return {stage: list(names) for stage, names in self._ledger.items()}

    @staticmethod
    def camera_records(records: torch.Tensor) -> torch.Tensor:
        """View of the device camera array as (N, record) rows"""
        return records.view(-1, CAMERA_RECORD_SIZE)

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    def release_stage(self, stage: str):
        """Release one stage; a stage that is not live is left alone"""
        names = self._ledger.pop(stage, None)
        if names is None:
            return
        self.arena.free_many(names)
        if stage == STAGE_PRIOR:
            self._prior_planes_host = None
            self._plane_masks_host = None
            self._texture_host = None
            self._confidences_host = None
        elif stage == STAGE_HIERARCHY:
            self.upsample = False
            self.scaled_resolution = None
        logger.debug(f"Released stage {stage} ({len(names)} entries)")

    def release(self, flags: Optional[ModeFlags] = None):
        """
        Release the buffers of the given modes.

        The baseline buffers go with them once no other stage is live, so
        releasing a subset of the initialized modes leaves the rest usable.
        Idempotent: modes that were never initialized, or already released,
        are skipped.
        """
        flags = flags if flags is not None else self.flags
        for stage in reversed(STAGE_ORDER):
            if stage != STAGE_PHOTOMETRIC and getattr(flags, stage):
                self.release_stage(stage)
        if list(self._ledger) == [STAGE_PHOTOMETRIC]:
            self.release_stage(STAGE_PHOTOMETRIC)

    def close(self):
        """Release every stage still live, regardless of mode"""
        for stage in reversed(list(self._ledger.keys())):
            self.release_stage(stage)

    def __enter__(self) -> 'Workspace':
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
