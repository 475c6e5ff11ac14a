"""
Joint Bilateral Upsampling
==========================

Edge-aware upsampling of a coarse depth (and optionally normal) field to the
resolution of a guide image.

Based on:
    - Kopf et al., "Joint Bilateral Upsampling", SIGGRAPH 2007

Each full-resolution pixel averages the coarse samples of a
``(2r+1) x (2r+1)`` neighbourhood around its coarse location, weighted by
spatial proximity (in coarse pixels) and by the similarity of the guide
intensity at the pixel and at the neighbour's full-resolution position.
Where the weights vanish the result is taken from the nearest coarse sample
instead; the fallback is reported per pixel.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Tuple, Union

import numpy as np
import torch

from ..config import JBUConfig
from ..core.structures import Resolution
from ..device.allocator import DeviceArena, resolve_device
from ..io.dmb import write_depth_dmb
from ..logger import get_logger

logger = get_logger("upsampling")


@dataclass
class JBUParameters:
    """Parameter block uploaded next to the textures of one upsampling run"""
    height: int
    width: int
    s_height: int
    s_width: int
    scale: int
    radius: int
    sigma_spatial: float
    sigma_range: float

    def to_array(self) -> np.ndarray:
        return np.array([self.height, self.width, self.s_height, self.s_width, self.scale,
                         self.radius, self.sigma_spatial, self.sigma_range], dtype=np.float32)


@dataclass
class UpsampleResult:
    """
    Output of one upsampling run.

    Attributes:
        depth: (H, W) depth field
        normals: (H, W, 3) unit normals, None for the depth-only variant
        fallback_mask: (H, W) True where the nearest coarse sample was used
        scale: Integer scale factor between the guide and the coarse field
        upsampled: False when the scale was 1 and the input was returned unchanged
    """
    depth: np.ndarray
    normals: Optional[np.ndarray]
    fallback_mask: np.ndarray
    scale: int
    upsampled: bool

    @property
    def num_fallback(self) -> int:
        return int(np.count_nonzero(self.fallback_mask))


def infer_scale(guide_shape: Tuple[int, ...], coarse_shape: Tuple[int, ...]) -> int:
    """
    Integer scale between a guide image and a coarse field.

    Raises:
        ValueError: If the coarse field is larger than the guide
    """
    rows, cols = guide_shape[:2]
    s_rows, s_cols = coarse_shape[:2]
    if s_rows <= 0 or s_cols <= 0:
        raise ValueError(f"Empty coarse field {coarse_shape}")
    if s_rows > rows or s_cols > cols:
        raise ValueError(f"Coarse field {s_cols}x{s_rows} is larger than the guide {cols}x{rows}")
    return max(1, int(round(max(rows / float(s_rows), cols / float(s_cols)))))


class JointBilateralUpsampler:
    """
    Upsamples coarse depth/normal fields guided by a full-resolution image.

    All device resources of a run (guide and coarse samplers, output buffers,
    parameter block) live in a private arena released when ``run`` returns
    or raises.
    """

    def __init__(self, config: Optional[JBUConfig] = None,
                 device: Union[str, torch.device] = 'auto',
                 arena_factory: Optional[Callable[[torch.device, str], DeviceArena]] = None):
        """
        Args:
            config: Kernel parameters. If None, uses defaults.
            device: Device to run on
            arena_factory: Builds the per-run arena, ``DeviceArena`` by default
        """
        self.config = config or JBUConfig()
        self.device = resolve_device(device)
        self._arena_factory = arena_factory or (lambda dev, name: DeviceArena(dev, name))

    def run(self, guide: np.ndarray, coarse_depth: np.ndarray,
            coarse_normals: Optional[np.ndarray] = None) -> UpsampleResult:
        """
        Upsample ``coarse_depth`` (and ``coarse_normals``) to the guide resolution.

        Args:
            guide: (H, W) full-resolution intensity image
            coarse_depth: (h, w) depth field, h <= H and w <= W
            coarse_normals: Optional (h, w, 3) normal field

        Returns:
            UpsampleResult. With a scale of 1 the inputs are returned unchanged.
        """
        if guide.ndim != 2:
            raise ValueError(f"Guide must be a single-channel image, got shape {guide.shape}")
        if coarse_normals is not None and coarse_normals.shape[:2] != coarse_depth.shape[:2]:
            raise ValueError(f"Normal field {coarse_normals.shape} does not match depth {coarse_depth.shape}")

        arena = self._arena_factory(self.device, "jbu")
        with arena.scope():
            scale = infer_scale(guide.shape, coarse_depth.shape)
            if scale == 1:
                logger.info("Guide and coarse field share a resolution, nothing to upsample")
                return UpsampleResult(depth=coarse_depth, normals=coarse_normals,
                                      fallback_mask=np.zeros(coarse_depth.shape[:2], dtype=bool),
                                      scale=1, upsampled=False)

            full_res = Resolution.of(guide)
            coarse_res = Resolution.of(coarse_depth)
            params = JBUParameters(
                height=full_res.height, width=full_res.width,
                s_height=coarse_res.height, s_width=coarse_res.width,
                scale=scale, radius=self.config.radius,
                sigma_spatial=self.config.sigma_spatial, sigma_range=self.config.sigma_range,
            )
            logger.info(f"Upsampling {coarse_res} -> {full_res} (scale {scale}, "
                        f"{'depth+normal' if coarse_normals is not None else 'depth'})")

            arena.upload('params', params.to_array())
            arena.upload('array:guide', guide.astype(np.float32), full_res)
            arena.upload('array:coarse_depth', coarse_depth.astype(np.float32), coarse_res)
            guide_tex = arena.bind_sampler('sampler:guide', 'array:guide', address_mode='clamp')
            depth_tex = arena.bind_sampler('sampler:coarse_depth', 'array:coarse_depth', address_mode='clamp')
            normal_tex = None
            if coarse_normals is not None:
                arena.upload('array:coarse_normals', coarse_normals.astype(np.float32), coarse_res)
                normal_tex = arena.bind_sampler('sampler:coarse_normals', 'array:coarse_normals',
                                                address_mode='clamp')

            depth_out = arena.allocate('depth_out', full_res.shape, torch.float32, full_res)
            fallback_out = arena.allocate('fallback_out', full_res.shape, torch.bool, full_res)
            normal_out = None
            if coarse_normals is not None:
                normal_out = arena.allocate('normal_out', full_res.shape + (3,), torch.float32, full_res)

            self._dispatch(params, guide_tex, depth_tex, normal_tex, depth_out, normal_out, fallback_out)
            arena.synchronize()

            result = UpsampleResult(
                depth=depth_out.download(),
                normals=normal_out.download() if normal_out is not None else None,
                fallback_mask=fallback_out.download(),
                scale=scale,
                upsampled=True,
            )

        if result.num_fallback:
            logger.debug(f"{result.num_fallback} pixels fell back to the nearest coarse sample")
        return result

    def _dispatch(self, params: JBUParameters, guide_tex, depth_tex, normal_tex,
                  depth_out, normal_out, fallback_out):
        """One logical thread per full-resolution pixel"""
        device = self.device
        ys, xs = torch.meshgrid(torch.arange(params.height, device=device),
                                torch.arange(params.width, device=device), indexing='ij')
        o_x = xs.to(torch.float32) / params.scale
        o_y = ys.to(torch.float32) / params.scale
        base_x = torch.floor(o_x).long()
        base_y = torch.floor(o_y).long()

        reference = guide_tex.fetch(xs, ys)
        two_sigma_s2 = 2.0 * params.sigma_spatial ** 2
        two_sigma_r2 = 2.0 * params.sigma_range ** 2

        weight_sum = torch.zeros_like(o_x)
        depth_acc = torch.zeros_like(o_x)
        normal_acc = torch.zeros(o_x.shape + (3,), device=device) if normal_tex is not None else None

        for dy in range(-params.radius, params.radius + 1):
            for dx in range(-params.radius, params.radius + 1):
                src_x = (base_x + dx).clamp(0, params.s_width - 1)
                src_y = (base_y + dy).clamp(0, params.s_height - 1)

                depth = depth_tex.fetch(src_x, src_y)
                usable = torch.isfinite(depth) & (depth > 0)

                spatial = (o_x - src_x) ** 2 + (o_y - src_y) ** 2
                guide_src = guide_tex.fetch(src_x * params.scale, src_y * params.scale)
                intensity = (reference - guide_src) ** 2
                weight = torch.exp(-spatial / two_sigma_s2) * torch.exp(-intensity / two_sigma_r2)
                weight = torch.where(usable, weight, torch.zeros_like(weight))

                weight_sum += weight
                depth_acc += weight * torch.where(usable, depth, torch.zeros_like(depth))
                if normal_acc is not None:
                    normal = normal_tex.fetch(src_x, src_y)
                    normal = torch.where(usable.unsqueeze(-1), normal, torch.zeros_like(normal))
                    normal_acc += weight.unsqueeze(-1) * normal

        # Explicit validity branch: an empty weight sum is never divided through
        valid = weight_sum > 0
        safe_sum = torch.where(valid, weight_sum, torch.ones_like(weight_sum))
        depth_interp = depth_acc / safe_sum
        valid &= torch.isfinite(depth_interp)

        normal_interp = None
        if normal_acc is not None:
            normal_interp = normal_acc / safe_sum.unsqueeze(-1)
            norm = torch.linalg.norm(normal_interp, dim=-1)
            valid &= torch.isfinite(norm) & (norm > 0)
            normal_interp = normal_interp / torch.where(valid, norm, torch.ones_like(norm)).unsqueeze(-1)

        nearest_x = torch.div(xs, params.scale, rounding_mode='floor').clamp(0, params.s_width - 1)
        nearest_y = torch.div(ys, params.scale, rounding_mode='floor').clamp(0, params.s_height - 1)
        nearest_depth = depth_tex.fetch(nearest_x, nearest_y)
        nearest_depth = torch.where(torch.isfinite(nearest_depth), nearest_depth,
                                    torch.zeros_like(nearest_depth))

        depth_out.tensor.copy_(torch.where(valid, depth_interp, nearest_depth))
        fallback_out.tensor.copy_(~valid)
        if normal_out is not None:
            nearest_normal = normal_tex.fetch(nearest_x, nearest_y)
            nearest_normal = torch.where(torch.isfinite(nearest_normal), nearest_normal,
                                         torch.zeros_like(nearest_normal))
            normal_out.tensor.copy_(torch.where(valid.unsqueeze(-1), normal_interp, nearest_normal))


def upsample_to_results(guide: np.ndarray, coarse_depth: np.ndarray,
                        results_folder: Union[str, Path],
                        upsampler: Optional[JointBilateralUpsampler] = None) -> UpsampleResult:
    """
    Upsample a coarse depth map and store it as ``depths.dmb`` in a results folder.

    Nothing is written when guide and depth already share a resolution.
    """
    upsampler = upsampler or JointBilateralUpsampler()
    result = upsampler.run(guide, coarse_depth)
    if result.upsampled:
        depth_path = Path(results_folder) / "depths.dmb"
        write_depth_dmb(depth_path, result.depth)
        logger.info(f"✓ Upsampled depth saved to {depth_path}")
    return result
