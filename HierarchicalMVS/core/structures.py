"""
Core data structures shared by the workspace, the upsampler and the
planar-prior fitter.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, List, NamedTuple, Tuple

import numpy as np


@dataclass(frozen=True)
class ModeFlags:
    """
    Independent capability flags of a reconstruction problem.

    The flags compose freely; any subset may be active at once.

    Attributes:
        geometric_consistency: Sample previously computed depth maps of all views
        hierarchy: Seed from a coarser pyramid level
        prior_consistency: Regularize with a planar prior field
        multi_geometry: In geometric mode, read ``depths_geom.dmb`` instead of ``depths.dmb``
    """
    geometric_consistency: bool = False
    hierarchy: bool = False
    prior_consistency: bool = False
    multi_geometry: bool = False

    def active(self) -> List[str]:
        """Names of the active capabilities, in acquisition order"""
        names = []
        if self.geometric_consistency:
            names.append('geometric_consistency')
        if self.hierarchy:
            names.append('hierarchy')
        if self.prior_consistency:
            names.append('prior_consistency')
        return names

    def __str__(self):
        active = self.active()
        return '+'.join(active) if active else 'photometric'


class Resolution(NamedTuple):
    """Width/height tag carried by every per-pixel buffer"""
    width: int
    height: int

    @property
    def num_pixels(self) -> int:
        return self.width * self.height

    @property
    def shape(self) -> Tuple[int, int]:
        """numpy/torch (rows, cols) shape"""
        return (self.height, self.width)

    def scaled(self, factor: float) -> 'Resolution':
        return Resolution(int(self.width * factor), int(self.height * factor))

    @classmethod
    def of(cls, array) -> 'Resolution':
        """Resolution of a (H, W[, C]) array or tensor"""
        return cls(int(array.shape[1]), int(array.shape[0]))

    def __str__(self):
        return f"{self.width}x{self.height}"


class SupportPointKind(Enum):
    """Which of the two per-cell running minima selected a support point"""
    TEXTURED = "textured"
    TEXTURELESS = "textureless"

    def __str__(self):
        return self.value


class SupportPoint(NamedTuple):
    """
    Sparse anchor pixel selected for planar-prior fitting.

    Attributes:
        x: Column
        y: Row
        kind: Selection category
        cell_textured: Whether any pixel of its grid cell showed texture
    """
    x: int
    y: int
    kind: SupportPointKind = SupportPointKind.TEXTURELESS
    cell_textured: bool = False


class Triangle(NamedTuple):
    """Three pixel vertices, each an (x, y) tuple"""
    pt1: Tuple[int, int]
    pt2: Tuple[int, int]
    pt3: Tuple[int, int]

    def vertices(self) -> Iterator[Tuple[int, int]]:
        yield self.pt1
        yield self.pt2
        yield self.pt3

    def as_array(self) -> np.ndarray:
        """(3, 2) int32 vertex array, the layout cv2 polygon routines expect"""
        return np.array([self.pt1, self.pt2, self.pt3], dtype=np.int32)


@dataclass
class PlaneFit:
    """
    Result of fitting a plane through three back-projected points.

    Attributes:
        plane: (nx, ny, nz, d) with unit normal and d >= 0; zeros when invalid
        valid: False for degenerate input (collinear/duplicate vertices, bad depths)
        reason: Why the fit was rejected
    """
    plane: np.ndarray = field(default_factory=lambda: np.zeros(4, dtype=np.float32))
    valid: bool = False
    reason: str = ""

    def __bool__(self) -> bool:
        return self.valid

    @classmethod
    def invalid(cls, reason: str) -> 'PlaneFit':
        return cls(plane=np.zeros(4, dtype=np.float32), valid=False, reason=reason)


@dataclass
class PriorField:
    """
    Dense per-pixel planar prior.

    Attributes:
        planes: (H, W, 4) float32 plane equations, zero where there is no prior
        mask: (H, W) uint32 1-based plane ids, 0 means "no prior"
    """
    planes: np.ndarray
    mask: np.ndarray

    @property
    def resolution(self) -> Resolution:
        return Resolution.of(self.mask)

    @property
    def coverage(self) -> float:
        """Fraction of pixels carrying a prior"""
        if self.mask.size == 0:
            return 0.0
        return float(np.count_nonzero(self.mask)) / self.mask.size


@dataclass
class Problem:
    """
    One reconstruction problem: a reference view and its source views.

    Attributes:
        ref_image_id: Id of the reference image
        src_image_ids: Ids of the source images, best first
        max_image_size: Longest allowed image side at the current pyramid level
    """
    ref_image_id: int
    src_image_ids: List[int] = field(default_factory=list)
    max_image_size: int = 3200

    @property
    def image_ids(self) -> List[int]:
        """All view ids, reference first"""
        return [self.ref_image_id] + list(self.src_image_ids)

    @property
    def num_images(self) -> int:
        return 1 + len(self.src_image_ids)
