"""Support-point selection"""

import numpy as np
import pytest

from HierarchicalMVS.algorithms.support_points import SupportPointSelector, select_support_points
from HierarchicalMVS.config import SupportPointConfig
from HierarchicalMVS.core.structures import Resolution, SupportPointKind


def _fields(shape, cost=0.5, confidence=0.8, texture=0.0):
    return (np.full(shape, cost, dtype=np.float32),
            np.full(shape, confidence, dtype=np.float32),
            np.full(shape, texture, dtype=np.float32))


def test_uniform_invalid_field_gives_no_points():
    costs, confidences, texture = _fields((30, 40), cost=2.0, confidence=1.0)
    assert select_support_points(costs, confidences, texture) == []


def test_uniform_poor_field_gives_no_points():
    costs, confidences, texture = _fields((30, 40), cost=1.0, confidence=0.0)
    assert SupportPointSelector().select(costs, confidences, texture) == []


def test_selection_is_deterministic():
    rng = np.random.default_rng(3)
    costs = rng.uniform(0, 2.5, (33, 47)).astype(np.float32)
    confidences = rng.uniform(0, 1, (33, 47)).astype(np.float32)
    texture = (rng.uniform(0, 1, (33, 47)) > 0.7).astype(np.float32)

    selector = SupportPointSelector()
    first = selector.select(costs, confidences, texture)
    second = selector.select(costs.copy(), confidences.copy(), texture.copy())

    assert len(first) > 0
    assert first == second
    for point in first:
        assert 0 <= point.x < 47 and 0 <= point.y < 33
        assert costs[point.y, point.x] < 2.0


def test_textured_candidate_precedes_textureless():
    costs, confidences, texture = _fields((5, 5), confidence=0.0)
    confidences[2, 1] = 0.75
    texture[4, 4] = 1.0

    points = SupportPointSelector().select(costs, confidences, texture)

    assert [p.kind for p in points] == [SupportPointKind.TEXTURED, SupportPointKind.TEXTURELESS]
    assert all((p.x, p.y) == (1, 2) for p in points)
    assert all(p.cell_textured for p in points)


def test_only_textureless_candidate_below_threshold():
    costs, confidences, texture = _fields((5, 5), confidence=0.0)
    confidences[3, 3] = 0.5

    points = SupportPointSelector().select(costs, confidences, texture)

    assert len(points) == 1
    assert points[0].kind == SupportPointKind.TEXTURELESS
    assert (points[0].x, points[0].y) == (3, 3)
    assert not points[0].cell_textured


def test_ties_keep_first_pixel_in_column_order():
    costs, confidences, texture = _fields((5, 5), confidence=0.0)
    # (x=3, y=0) and (x=0, y=3) tie; column 0 is visited first
    confidences[0, 3] = 0.9
    confidences[3, 0] = 0.9

    points = SupportPointSelector().select(costs, confidences, texture)
    assert {(p.x, p.y) for p in points} == {(0, 3)}


def test_nan_confidence_is_skipped_not_fatal():
    costs, confidences, texture = _fields((5, 5))
    confidences[0, 0] = np.nan

    points = SupportPointSelector().select(costs, confidences, texture)

    assert len(points) == 2
    # The NaN pixel is the first visited; the next one in column order wins
    assert all((p.x, p.y) == (0, 1) for p in points)


def test_cells_visited_column_blocks_outer():
    costs, confidences, texture = _fields((10, 10))
    points = SupportPointSelector().select(costs, confidences, texture)

    cells = [(p.x, p.y) for p in points[::2]]
    assert cells == [(0, 0), (0, 5), (5, 0), (5, 5)]
    assert len(points) == 8


def test_partial_cells_at_the_border():
    costs, confidences, texture = _fields((7, 7), cost=2.0)
    costs[6, 6] = 0.0
    points = SupportPointSelector(SupportPointConfig(cell_size=5)).select(costs, confidences, texture)
    assert {(p.x, p.y) for p in points} == {(6, 6)}


def test_fields_must_match_reference_factor():
    costs, confidences, texture = _fields((15, 20))
    selector = SupportPointSelector()

    points = selector.select(costs, confidences, texture, reference=Resolution(40, 30), factor=0.5)
    assert points

    with pytest.raises(ValueError):
        selector.select(costs, confidences, texture, reference=Resolution(40, 30), factor=1.0)
    with pytest.raises(ValueError):
        selector.select(costs, confidences[:-1], texture)


def test_invalid_cell_size():
    with pytest.raises(ValueError):
        SupportPointSelector(SupportPointConfig(cell_size=0))
