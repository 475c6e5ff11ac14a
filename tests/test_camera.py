"""Camera model and plane/depth conversions"""

import numpy as np
import pytest

from HierarchicalMVS.core.camera import (
    CAMERA_RECORD_SIZE,
    Camera,
    angle_between,
    backproject_to_ref,
    backproject_to_world,
    depth_from_plane,
    depths_from_planes,
    distance_to_origin,
    normal_to_ref,
    normal_to_world,
    planes_from_depth_normals,
    project,
)

from conftest import HEIGHT, WIDTH, make_camera


def _rotation(angle):
    c, s = np.cos(angle), np.sin(angle)
    return np.array([[c, 0.0, s], [0.0, 1.0, 0.0], [-s, 0.0, c]])


@pytest.mark.parametrize("factor", [1.0, 0.5])
def test_plane_depth_round_trip(camera, factor):
    rng = np.random.default_rng(0)
    xs = rng.uniform(0, WIDTH * factor, 50)
    ys = rng.uniform(0, HEIGHT * factor, 50)
    depths = rng.uniform(1.0, 10.0, 50)

    normals = rng.normal(size=(50, 3))
    normals[:, 2] = -np.abs(normals[:, 2]) - 1.0
    normals /= np.linalg.norm(normals, axis=1, keepdims=True)

    d = distance_to_origin(xs, ys, depths, normals, camera, factor)
    planes = np.concatenate([normals, d[:, None]], axis=1)

    recovered = depth_from_plane(planes, xs, ys, camera, factor)
    np.testing.assert_allclose(recovered, depths, rtol=1e-9)


def test_fronto_parallel_plane_depth(camera):
    plane = np.array([0.0, 0.0, -1.0, 4.0])
    assert depth_from_plane(plane, 3, 7, camera) == pytest.approx(4.0)
    assert distance_to_origin(3, 7, 4.0, plane[:3], camera) == pytest.approx(4.0)


def test_planes_from_depth_normals_round_trip(camera):
    depth = np.random.default_rng(1).uniform(2.0, 6.0, (HEIGHT, WIDTH)).astype(np.float32)
    normals = np.zeros((HEIGHT, WIDTH, 3), dtype=np.float32)
    normals[..., 2] = -1.0

    planes = planes_from_depth_normals(depth, normals, camera)
    assert planes.shape == (HEIGHT, WIDTH, 4)
    np.testing.assert_allclose(depths_from_planes(planes, camera), depth, rtol=1e-5)


def test_rescale_scales_intrinsics_per_axis(camera):
    scaled = camera.rescale(20, 10)
    assert scaled.fx == pytest.approx(camera.fx * 0.5)
    assert scaled.cx == pytest.approx(camera.cx * 0.5)
    assert scaled.fy == pytest.approx(camera.fy / 3.0)
    assert scaled.cy == pytest.approx(camera.cy / 3.0)
    assert (scaled.width, scaled.height) == (20, 10)
    np.testing.assert_array_equal(scaled.R, camera.R)
    assert scaled.depth_max == camera.depth_max
    # The original camera is untouched
    assert camera.width == WIDTH


def test_rescale_needs_recorded_size():
    with pytest.raises(ValueError):
        Camera().rescale(10, 10)


def test_project_inverts_backprojection():
    camera = Camera(R=_rotation(0.3), t=np.array([0.2, -0.1, 0.5]), K=make_camera().K,
                    width=WIDTH, height=HEIGHT, depth_min=1.0, depth_max=10.0)
    xs = np.array([0.0, 10.5, 39.0])
    ys = np.array([0.0, 20.25, 29.0])
    depths = np.array([2.0, 3.5, 9.0])

    points = backproject_to_world(xs, ys, depths, camera)
    pixels, projected_depth = project(points, camera)

    np.testing.assert_allclose(pixels[:, 0], xs, atol=1e-9)
    np.testing.assert_allclose(pixels[:, 1], ys, atol=1e-9)
    np.testing.assert_allclose(projected_depth, depths, atol=1e-9)


def test_backproject_with_factor(camera):
    point = backproject_to_ref(camera.cx * 0.5 + 5, camera.cy * 0.5, 2.0, camera, factor=0.5)
    assert point[0] == pytest.approx(2.0 * 5 / (camera.fx * 0.5))
    assert point[1] == pytest.approx(0.0)
    assert point[2] == pytest.approx(2.0)


def test_normal_frame_conversions_are_inverse():
    camera = Camera(R=_rotation(0.7), K=make_camera().K, width=WIDTH, height=HEIGHT)
    plane = np.array([0.0, 0.6, -0.8, 3.0])
    world = normal_to_world(plane, camera)
    assert world[3] == 3.0
    np.testing.assert_allclose(normal_to_ref(world, camera), plane, atol=1e-12)


def test_angle_between_clamps_rounding():
    v = np.array([1.0, 0.0, 0.0])
    assert angle_between(v, v * (1 + 1e-12)) == 0.0
    assert angle_between(v, np.array([0.0, 1.0, 0.0])) == pytest.approx(np.pi / 2)


def test_camera_record_layout(camera):
    record = camera.to_array()
    assert record.shape == (CAMERA_RECORD_SIZE,)
    assert record.dtype == np.float32
    assert record[12] == pytest.approx(camera.fx)
    assert list(record[21:]) == [WIDTH, HEIGHT, camera.depth_min, camera.depth_max]
