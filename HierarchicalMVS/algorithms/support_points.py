"""
Support-Point Selection
=======================

Picks sparse, reliable anchor pixels for planar-prior fitting.

The field is cut into square cells. Every cell keeps two running minima over
its pixels with a valid cost and a defined confidence:

    textured score    = cost + texture_penalty - confidence
    textureless score = cost - confidence

and contributes each minimum whose score is below the threshold, so a cell
yields zero, one or two points. Cells are visited column block by column
block, pixels inside a cell column by column; ties keep the first pixel
visited.
"""

from typing import List, Optional

import numpy as np

from ..config import SupportPointConfig
from ..core.structures import Resolution, SupportPoint, SupportPointKind
from ..logger import get_logger

logger = get_logger("support_points")


class SupportPointSelector:
    """Grid-based, threshold-gated support-point selection"""

    def __init__(self, config: Optional[SupportPointConfig] = None):
        self.config = config or SupportPointConfig()
        if self.config.cell_size <= 0:
            raise ValueError(f"cell_size must be positive, got {self.config.cell_size}")

    def select(self, costs: np.ndarray, confidences: np.ndarray, texture: np.ndarray,
               reference: Optional[Resolution] = None, factor: float = 1.0) -> List[SupportPoint]:
        """
        Select support points.

        Args:
            costs: (H, W) photometric costs, ``>= invalid_cost`` means no valid cost
            confidences: (H, W) confidence values
            texture: (H, W) texture-presence map, ``> texture_threshold`` means textured
            reference: Reference image resolution; when given, the fields must be
                       at ``reference`` scaled by ``factor``
            factor: Resolution of the fields relative to the reference image

        Returns:
            Support points in deterministic visiting order
        """
        if costs.shape != confidences.shape or costs.shape != texture.shape:
            raise ValueError(
                f"Field shapes differ: costs {costs.shape}, confidences {confidences.shape}, texture {texture.shape}"
            )
        if reference is not None:
            expected = reference.scaled(factor)
            if Resolution.of(costs) != expected:
                raise ValueError(f"Fields are {Resolution.of(costs)}, expected {expected} (factor {factor})")

        cfg = self.config
        cell = cfg.cell_size
        height, width = costs.shape
        if height == 0 or width == 0:
            return []

        rows_blocks = -(-height // cell)
        col_blocks = -(-width // cell)
        pad = ((0, rows_blocks * cell - height), (0, col_blocks * cell - width))

        costs = np.pad(costs.astype(np.float64), pad, constant_values=np.inf)
        confidences = np.pad(confidences.astype(np.float64), pad, constant_values=0.0)
        texture = np.pad(texture.astype(np.float64), pad, constant_values=0.0)

        # NaN confidences never win a cell
        valid = (costs < cfg.invalid_cost) & ~np.isnan(confidences)
        score_textured = np.where(valid, costs + cfg.texture_penalty - confidences, np.inf)
        score_textureless = np.where(valid, costs - confidences, np.inf)

        def by_cell(field: np.ndarray) -> np.ndarray:
            # (row block, row in cell, col block, col in cell) -> (col block, row block, col in cell, row in cell)
            blocks = field.reshape(rows_blocks, cell, col_blocks, cell).transpose(2, 0, 3, 1)
            return blocks.reshape(col_blocks, rows_blocks, cell * cell)

        cells_textured = by_cell(score_textured)
        cells_textureless = by_cell(score_textureless)
        cell_has_texture = (by_cell(texture) > cfg.texture_threshold).any(axis=-1)

        best_textured = cells_textured.argmin(axis=-1)
        best_textureless = cells_textureless.argmin(axis=-1)
        min_textured = np.take_along_axis(cells_textured, best_textured[..., None], axis=-1)[..., 0]
        min_textureless = np.take_along_axis(cells_textureless, best_textureless[..., None], axis=-1)[..., 0]

        keep_textured = min_textured < cfg.score_threshold
        keep_textureless = min_textureless < cfg.score_threshold

        points = []
        for cb, rb in zip(*np.nonzero(keep_textured | keep_textureless)):
            textured = bool(cell_has_texture[cb, rb])
            for keep, best, kind in ((keep_textured, best_textured, SupportPointKind.TEXTURED),
                                     (keep_textureless, best_textureless, SupportPointKind.TEXTURELESS)):
                if keep[cb, rb]:
                    offset = int(best[cb, rb])
                    x = int(cb) * cell + offset // cell
                    y = int(rb) * cell + offset % cell
                    points.append(SupportPoint(x=x, y=y, kind=kind, cell_textured=textured))

        logger.info(f"Selected {len(points)} support points from {col_blocks * rows_blocks} cells")
        return points


def select_support_points(costs: np.ndarray, confidences: np.ndarray, texture: np.ndarray,
                          config: Optional[SupportPointConfig] = None) -> List[SupportPoint]:
    """Convenience wrapper around ``SupportPointSelector.select``"""
    return SupportPointSelector(config).select(costs, confidences, texture)
