"""Joint bilateral upsampling"""

import numpy as np
import pytest

from HierarchicalMVS.algorithms.upsampling import JointBilateralUpsampler, infer_scale, upsample_to_results
from HierarchicalMVS.config import JBUConfig
from HierarchicalMVS.io.dmb import read_depth_dmb

from conftest import HEIGHT, WIDTH, TrackingArena, make_image


@pytest.fixture
def arenas():
    return []


@pytest.fixture
def upsampler(arenas):
    def factory(device, name):
        arena = TrackingArena(device, name)
        arenas.append(arena)
        return arena
    return JointBilateralUpsampler(JBUConfig(), device='cpu', arena_factory=factory)


def test_infer_scale():
    assert infer_scale((30, 40), (30, 40)) == 1
    assert infer_scale((30, 40), (15, 20)) == 2
    assert infer_scale((31, 40), (15, 20)) == 2
    assert infer_scale((300, 400), (75, 100)) == 4
    with pytest.raises(ValueError):
        infer_scale((30, 40), (31, 40))
    with pytest.raises(ValueError):
        infer_scale((30, 40), (0, 40))


def test_scale_one_returns_input_unchanged(upsampler):
    depth = np.random.default_rng(0).uniform(1, 5, (HEIGHT, WIDTH)).astype(np.float32)
    result = upsampler.run(make_image(0), depth)

    assert not result.upsampled
    assert result.scale == 1
    assert result.depth is depth
    assert result.num_fallback == 0


def test_constant_field_stays_constant(upsampler, arenas):
    coarse = np.full((HEIGHT // 2, WIDTH // 2), 3.0, dtype=np.float32)
    result = upsampler.run(make_image(1), coarse)

    assert result.upsampled
    assert result.scale == 2
    assert result.depth.shape == (HEIGHT, WIDTH)
    np.testing.assert_allclose(result.depth, 3.0, rtol=1e-5)
    assert result.num_fallback == 0
    assert all(len(arena) == 0 for arena in arenas)


@pytest.fixture
def sharp_upsampler(arenas):
    def factory(device, name):
        arena = TrackingArena(device, name)
        arenas.append(arena)
        return arena

    # Tiny range sigma: most guide differences drive the weights to zero
    return JointBilateralUpsampler(JBUConfig(radius=2, sigma_spatial=0.5, sigma_range=1e-3),
                                   device='cpu', arena_factory=factory)


def _checker_guide():
    guide = np.zeros((HEIGHT, WIDTH), dtype=np.float32)
    guide[::2, ::2] = 255.0
    return guide


def _partly_missing_depth():
    coarse = np.full((HEIGHT // 2, WIDTH // 2), 2.0, dtype=np.float32)
    coarse[:, :10] = np.nan
    coarse[0, 15] = 0.0
    return coarse


def test_both_branches_without_nan(sharp_upsampler, arenas):
    result = sharp_upsampler.run(_checker_guide(), _partly_missing_depth())

    assert np.all(np.isfinite(result.depth))
    assert result.fallback_mask.any()
    assert (~result.fallback_mask).any()
    # Interpolated pixels only see the valid coarse value
    np.testing.assert_allclose(result.depth[~result.fallback_mask], 2.0, rtol=1e-5)
    # Far inside the NaN block the nearest sample is NaN and is replaced by 0
    assert result.fallback_mask[:, :12].all()
    assert np.all(result.depth[:, :12] == 0.0)
    assert all(len(arena) == 0 for arena in arenas)


def test_depth_normal_fallback_takes_nearest_coarse_normal(sharp_upsampler, arenas):
    coarse_depth = _partly_missing_depth()
    coarse_normals = np.zeros(coarse_depth.shape + (3,), dtype=np.float32)
    coarse_normals[..., 2] = -1.0
    coarse_normals[:, :5] = [1.0, 0.0, 0.0]
    coarse_normals[:, 5:10] = np.nan

    result = sharp_upsampler.run(_checker_guide(), coarse_depth, coarse_normals)

    assert np.all(np.isfinite(result.normals))
    assert result.fallback_mask[:, :12].all()
    # Fallback pixels copy the nearest coarse normal, non-finite ones become zero
    np.testing.assert_array_equal(result.normals[:, :10], np.broadcast_to([1.0, 0.0, 0.0], (HEIGHT, 10, 3)))
    np.testing.assert_array_equal(result.normals[:, 10:12], 0.0)
    # Interpolated pixels only average usable samples
    np.testing.assert_allclose(result.normals[~result.fallback_mask], [[0.0, 0.0, -1.0]], atol=1e-6)
    assert all(len(arena) == 0 for arena in arenas)


def test_depth_normal_variant_renormalizes(upsampler):
    coarse_depth = np.full((HEIGHT // 2, WIDTH // 2), 4.0, dtype=np.float32)
    coarse_normals = np.zeros((HEIGHT // 2, WIDTH // 2, 3), dtype=np.float32)
    coarse_normals[..., 2] = -1.0
    coarse_normals[:, WIDTH // 4:, 0] = 1.0

    result = upsampler.run(make_image(2), coarse_depth, coarse_normals)

    assert result.normals.shape == (HEIGHT, WIDTH, 3)
    norms = np.linalg.norm(result.normals, axis=-1)
    np.testing.assert_allclose(norms, 1.0, rtol=1e-5)
    assert np.all(result.normals[..., 2] < 0)


def test_arena_released_when_run_fails(upsampler, arenas):
    with pytest.raises(ValueError):
        upsampler.run(np.zeros((10, 10), dtype=np.float32), np.ones((20, 20), dtype=np.float32))
    assert len(arenas) == 1
    assert len(arenas[0]) == 0


def test_rejects_color_guide(upsampler):
    with pytest.raises(ValueError):
        upsampler.run(np.zeros((10, 10, 3), dtype=np.float32), np.ones((5, 5), dtype=np.float32))


def test_upsample_to_results_writes_depth(tmp_path, upsampler):
    coarse = np.full((HEIGHT // 2, WIDTH // 2), 6.0, dtype=np.float32)
    result = upsample_to_results(make_image(3), coarse, tmp_path, upsampler)

    stored = read_depth_dmb(tmp_path / "depths.dmb")
    assert stored.shape == (HEIGHT, WIDTH)
    np.testing.assert_array_equal(stored, result.depth)
