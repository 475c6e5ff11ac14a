"""End-to-end orchestration with a fake cost evaluator"""

import numpy as np
import pytest

from HierarchicalMVS.core.structures import ModeFlags, Problem, Resolution
from HierarchicalMVS.device.evaluator import CostEvaluator
from HierarchicalMVS.io.dmb import read_depth_dmb, read_normal_dmb
from HierarchicalMVS.io.ply import read_point_cloud
from HierarchicalMVS.pipeline import HierarchicalMVSPipeline

from conftest import HEIGHT, WIDTH, TrackingArena, write_results

RESULT_DEPTH = 4.0
RESULT_COST = 0.3


class FakeEvaluator(CostEvaluator):
    """Writes a fronto-parallel plane and a constant cost into every pixel"""

    def __init__(self):
        self.calls = []

    def evaluate(self, workspace):
        planes = workspace.buffer('plane_hypotheses').tensor
        planes[..., 0:2] = 0.0
        planes[..., 2] = -1.0
        planes[..., 3] = RESULT_DEPTH
        workspace.buffer('costs').tensor.fill_(RESULT_COST)

        prior = workspace.prior_field()
        self.calls.append({
            'stages': workspace.live_stages(),
            'prior_coverage': prior.coverage if prior is not None else None,
            'confidences': workspace.confidences(),
            'texture': workspace.buffer('texture').download() if prior is not None else None,
        })

    def get_info(self):
        return {'name': 'fake'}


@pytest.fixture
def arenas():
    return []


@pytest.fixture
def pipeline(dense_folder, config, arenas):
    def factory(device, name):
        arena = TrackingArena(device, name)
        arenas.append(arena)
        return arena
    return HierarchicalMVSPipeline(FakeEvaluator(), dense_folder, config, arena_factory=factory)


def test_photometric_problem_persists_results(pipeline, dense_folder, arenas):
    result = pipeline.process_problem(Problem(0, [1, 2]), ModeFlags())

    folder = dense_folder / "mvs_results" / "00000000"
    assert result['results_folder'] == str(folder)
    assert result['depth_file'] == "depths.dmb"

    depth = read_depth_dmb(folder / "depths.dmb")
    assert depth.shape == (HEIGHT, WIDTH)
    np.testing.assert_allclose(depth, RESULT_DEPTH, rtol=1e-5)
    np.testing.assert_allclose(read_normal_dmb(folder / "normals.dmb")[..., 2], -1.0)
    np.testing.assert_allclose(read_depth_dmb(folder / "costs.dmb"), RESULT_COST, rtol=1e-6)

    assert pipeline.evaluator.calls[0]['stages'] == ['photometric']
    assert all(len(arena) == 0 for arena in arenas)
    assert pipeline.stats['problems'] == 1


def test_geometric_problem_writes_geometric_depth(pipeline, dense_folder):
    result = pipeline.process_problem(Problem(1, [0, 2]), ModeFlags(geometric_consistency=True))
    assert result['depth_file'] == "depths_geom.dmb"
    depth = read_depth_dmb(dense_folder / "mvs_results" / "00000001" / "depths_geom.dmb")
    np.testing.assert_allclose(depth, RESULT_DEPTH, rtol=1e-5)


def test_prior_problem_uploads_planar_prior(pipeline):
    pipeline.process_problem(Problem(0, [1, 2]), ModeFlags())
    pipeline.process_problem(Problem(0, [1, 2]), ModeFlags(prior_consistency=True))

    call = pipeline.evaluator.calls[-1]
    assert call['stages'] == ['photometric', 'prior_consistency']
    assert call['prior_coverage'] > 0.5

    # Edge map and confidences reach the device alongside the prior
    np.testing.assert_allclose(call['confidences'], 0.8)
    assert set(np.unique(call['texture'])) <= {0.0, 1.0}
    assert call['texture'].shape == (HEIGHT, WIDTH)


def test_hierarchy_and_prior_compose_in_run(pipeline, dense_folder, arenas):
    folder = dense_folder / "mvs_results" / "00000000"
    write_results(folder, WIDTH // 2, HEIGHT // 2, depth=RESULT_DEPTH, confidence=0.6)

    results = pipeline.run([Problem(0, [1, 2])], ModeFlags(hierarchy=True, prior_consistency=True))

    assert results[0]['resolution'] == Resolution(WIDTH, HEIGHT)
    call = pipeline.evaluator.calls[-1]
    assert call['stages'] == ['photometric', 'hierarchy', 'prior_consistency']
    assert call['prior_coverage'] > 0.3
    assert call['confidences'].shape == (HEIGHT, WIDTH)
    np.testing.assert_allclose(call['confidences'], 0.6)
    assert all(len(arena) == 0 for arena in arenas)


def test_prior_problem_without_confidence_fails_cleanly(pipeline, dense_folder, arenas):
    (dense_folder / "mvs_results" / "00000000" / "confidence.dmb").unlink()

    with pytest.raises(RuntimeError, match="confidence"):
        pipeline.process_problem(Problem(0, [1, 2]), ModeFlags(prior_consistency=True))
    assert all(len(arena) == 0 for arena in arenas)


def test_run_processes_every_problem(pipeline):
    results = pipeline.run(flags=ModeFlags())
    assert [r['ref_image_id'] for r in results] == [0, 1, 2]
    assert set(pipeline.stats['processing_time']) == {0, 1, 2}


def test_export_problem(pipeline, dense_folder, tmp_path):
    problem = Problem(0, [1, 2])
    pipeline.process_problem(problem, ModeFlags())

    count = pipeline.export_problem(problem, tmp_path / "cloud.ply", ModeFlags())
    assert count == HEIGHT * WIDTH

    vertices = read_point_cloud(tmp_path / "cloud.ply")
    assert len(vertices) == count
    assert 'nx' in vertices.dtype.names
    np.testing.assert_allclose(vertices['z'], RESULT_DEPTH, rtol=1e-5)


def test_export_without_results(pipeline, tmp_path):
    with pytest.raises(RuntimeError):
        pipeline.export_problem(Problem(7, []), tmp_path / "cloud.ply", ModeFlags())


def test_texture_map_is_binary():
    image = np.zeros((HEIGHT, WIDTH), dtype=np.float32)
    image[:, WIDTH // 2:] = 255.0
    texture = HierarchicalMVSPipeline.texture_map(image, Resolution(WIDTH // 2, HEIGHT // 2))
    assert texture.shape == (HEIGHT // 2, WIDTH // 2)
    assert set(np.unique(texture)) <= {0.0, 1.0}
    assert texture.any()
