"""
Planar Prior Estimation
=======================

Builds a dense planar prior from sparse support points:

    1. Delaunay triangulation of the support points (cv2.Subdiv2D)
    2. One exact plane per triangle through its three back-projected vertices
    3. A plane-id mask filled with each triangle's 1-based id (0 = no prior)
    4. Rasterization of the fitted planes into a per-pixel prior field

Planes are expressed in the reference camera frame as ``(nx, ny, nz, d)``
with a unit normal and ``d >= 0``.
"""

from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np

from ..config import PlanarPriorConfig
from ..core.camera import (
    Camera,
    backproject_to_ref,
    depth_from_plane,
    depths_from_planes,
    distance_to_origin,
    planes_from_depth_normals,
)
from ..core.structures import PlaneFit, PriorField, Resolution, SupportPoint, Triangle
from ..logger import get_logger
from .upsampling import JointBilateralUpsampler

logger = get_logger("planar_prior")

Bounds = Tuple[int, int, int, int]


def _inside(point: Tuple[int, int], bounds: Bounds) -> bool:
    x, y, width, height = bounds
    return x <= point[0] < x + width and y <= point[1] < y + height


def triangulate(bounds: Bounds, points: Sequence) -> List[Triangle]:
    """
    Delaunay triangulation of support points.

    Args:
        bounds: (x, y, width, height) rectangle containing the points
        points: SupportPoints or (x, y) pairs

    Returns:
        Triangles whose three vertices all lie inside ``bounds``. The
        subdivision's virtual outer vertices never appear in the result.
        An empty point set gives an empty list.
    """
    if len(points) == 0:
        return []

    coords = [(int(p[0]), int(p[1])) for p in points]
    inside = [c for c in coords if _inside(c, bounds)]
    if len(inside) != len(coords):
        logger.warning(f"Ignoring {len(coords) - len(inside)} support points outside {bounds}")
    if not inside:
        return []

    subdiv = cv2.Subdiv2D(tuple(int(v) for v in bounds))
    for x, y in inside:
        subdiv.insert((float(x), float(y)))

    triangles = []
    for tri in subdiv.getTriangleList():
        triangle = Triangle((int(tri[0]), int(tri[1])),
                            (int(tri[2]), int(tri[3])),
                            (int(tri[4]), int(tri[5])))
        if all(_inside(v, bounds) for v in triangle.vertices()):
            triangles.append(triangle)
    return triangles


class PlanarPriorFitter:
    """
    Fits and rasterizes planar priors for one reference camera.
    """

    def __init__(self, camera: Camera, config: Optional[PlanarPriorConfig] = None):
        """
        Args:
            camera: Reference camera at full resolution
            config: Fitting parameters. If None, uses defaults.
        """
        self.camera = camera
        self.config = config or PlanarPriorConfig()

    # ------------------------------------------------------------------
    # Plane fitting
    # ------------------------------------------------------------------

    def fit_plane(self, triangle: Triangle, depths: np.ndarray, factor: float = 1.0) -> PlaneFit:
        """
        Exact plane through the three back-projected vertices of ``triangle``.

        Args:
            triangle: Pixel triangle in ``depths`` coordinates
            depths: (h, w) depth field the vertices index into
            factor: Resolution of ``depths`` relative to the camera

        Returns:
            PlaneFit, invalid for collinear/duplicate vertices or unusable depths
        """
        height, width = depths.shape[:2]
        rows = []
        for x, y in triangle.vertices():
            if not (0 <= x < width and 0 <= y < height):
                return PlaneFit.invalid(f"vertex ({x}, {y}) outside {width}x{height} depth field")
            depth = float(depths[y, x])
            if not np.isfinite(depth) or depth <= 0:
                return PlaneFit.invalid(f"unusable depth {depth} at ({x}, {y})")
            point = backproject_to_ref(x, y, depth, self.camera, factor)
            rows.append([point[0], point[1], point[2], 1.0])

        A = np.array(rows, dtype=np.float64)
        _, singular_values, vt = np.linalg.svd(A)
        eps = self.config.degenerate_eps

        # Three non-collinear points give a rank-3 system with a 1D null space
        if singular_values[2] <= eps * singular_values[0]:
            return PlaneFit.invalid("collinear or duplicate vertices")

        solution = vt[-1]
        norm = float(np.linalg.norm(solution[:3]))
        if not np.isfinite(norm) or norm < eps:
            return PlaneFit.invalid(f"normal magnitude {norm:.3g} below {eps:.1g}")

        if solution[3] < 0:
            norm = -norm
        plane = (solution / norm).astype(np.float32)
        return PlaneFit(plane=plane, valid=True)

    def fit_planes(self, triangles: Sequence[Triangle], depths: np.ndarray,
                   factor: float = 1.0) -> List[PlaneFit]:
        fits = [self.fit_plane(t, depths, factor) for t in triangles]
        num_invalid = sum(1 for f in fits if not f.valid)
        if num_invalid:
            logger.debug(f"{num_invalid}/{len(fits)} triangles gave degenerate planes")
        return fits

    # ------------------------------------------------------------------
    # Dense prior field
    # ------------------------------------------------------------------

    @staticmethod
    def build_plane_mask(triangles: Sequence[Triangle], fits: Sequence[PlaneFit],
                         resolution: Resolution) -> np.ndarray:
        """
        Fill every triangle with a valid plane with its 1-based id.

        Returns:
            (H, W) uint32 mask, 0 where no triangle with a valid plane covers the pixel
        """
        if len(triangles) != len(fits):
            raise ValueError(f"{len(triangles)} triangles but {len(fits)} plane fits")

        canvas = np.zeros(resolution.shape, dtype=np.int32)
        for idx, (triangle, fit) in enumerate(zip(triangles, fits)):
            if fit.valid:
                cv2.fillConvexPoly(canvas, triangle.as_array(), idx + 1)
        return canvas.astype(np.uint32)

    @staticmethod
    def rasterize(mask: np.ndarray, fits: Sequence[PlaneFit]) -> PriorField:
        """
        Copy each pixel's plane into a dense prior field.

        Args:
            mask: (H, W) 1-based plane ids, 0 = no prior
            fits: Fitted planes; id k refers to ``fits[k - 1]``

        Returns:
            PriorField whose mask is cleared wherever the referenced plane is invalid

        Raises:
            ValueError: If the mask references a plane id beyond ``fits``
        """
        ids = np.asarray(mask).astype(np.int64)
        if ids.size and ids.max() > len(fits):
            raise ValueError(f"Mask references plane {int(ids.max())}, only {len(fits)} planes given")
        if ids.size and ids.min() < 0:
            raise ValueError("Mask contains negative plane ids")

        table = np.zeros((len(fits) + 1, 4), dtype=np.float32)
        usable = np.zeros(len(fits) + 1, dtype=bool)
        for idx, fit in enumerate(fits):
            if fit.valid:
                table[idx + 1] = fit.plane
                usable[idx + 1] = True

        planes = table[ids]
        effective = np.where(usable[ids], ids, 0).astype(np.uint32)
        return PriorField(planes=planes, mask=effective)

    def estimate(self, support_points: Sequence[SupportPoint], depths: np.ndarray,
                 factor: float = 1.0) -> PriorField:
        """
        Full chain: triangulate, fit, build the mask and rasterize, all at the
        resolution of ``depths``.
        """
        resolution = Resolution.of(depths)
        triangles = triangulate((0, 0, resolution.width, resolution.height), support_points)
        fits = self.fit_planes(triangles, depths, factor)
        mask = self.build_plane_mask(triangles, fits, resolution)
        prior = self.rasterize(mask, fits)
        logger.info(f"Planar prior: {len(support_points)} support points, {len(triangles)} triangles, "
                    f"{sum(1 for f in fits if f.valid)} valid planes, coverage {prior.coverage:.1%}")
        return prior

    def grow_prior(self, coarse: PriorField, guide: np.ndarray,
                   upsampler: Optional[JointBilateralUpsampler] = None,
                   factor: Optional[float] = None) -> PriorField:
        """
        Lift a coarse prior field to the guide resolution.

        The coarse planes are turned into depth and normal fields, upsampled
        with the depth+normal joint bilateral filter, and converted back into
        planes with the full-resolution intrinsics.

        Args:
            coarse: Prior field at a reduced resolution
            guide: Full-resolution reference image
            upsampler: Upsampler to use
            factor: Coarse resolution relative to the camera; inferred from the
                    guide width when omitted
        """
        upsampler = upsampler or JointBilateralUpsampler()
        full = Resolution.of(guide)
        if coarse.resolution == full:
            return coarse
        if factor is None:
            factor = coarse.resolution.width / float(full.width)

        has_prior = coarse.mask > 0
        coarse_depth = np.where(has_prior, depths_from_planes(coarse.planes, self.camera, factor), 0.0)
        coarse_depth = np.where(np.isfinite(coarse_depth) & (coarse_depth > 0), coarse_depth, 0.0)
        coarse_normals = coarse.planes[..., :3]

        result = upsampler.run(guide, coarse_depth.astype(np.float32), coarse_normals)

        ys, xs = np.mgrid[0:full.height, 0:full.width]
        src_y = np.minimum(ys // result.scale, coarse.resolution.height - 1)
        src_x = np.minimum(xs // result.scale, coarse.resolution.width - 1)
        mask = coarse.mask[src_y, src_x]
        mask = np.where(result.depth > 0, mask, 0).astype(np.uint32)

        planes = planes_from_depth_normals(result.depth, result.normals, self.camera)
        planes[mask == 0] = 0.0
        logger.info(f"Grew planar prior {coarse.resolution} -> {full}")
        return PriorField(planes=planes, mask=mask)

    # ------------------------------------------------------------------
    # Conversions at this fitter's camera
    # ------------------------------------------------------------------

    def depth_from_plane(self, plane, x, y, factor: float = 1.0):
        return depth_from_plane(plane, x, y, self.camera, factor)

    def distance_to_origin(self, x, y, depth, normal, factor: float = 1.0):
        return distance_to_origin(x, y, depth, normal, self.camera, factor)
