import jax.numpy as jnp
import pytest

from hybrid_isam.core.keys import P
from hybrid_isam.geometry.math3d import project, projection_matrix
from hybrid_isam.geometry.triangulation import (
    Camera,
    TriangulationParameters,
    TriangulationStatus,
    landmark_prior_factor,
    triangulate_dlt,
    triangulate_point3,
    triangulate_safe,
)

K = jnp.array([[500.0, 0.0, 320.0], [0.0, 500.0, 240.0], [0.0, 0.0, 1.0]])
POINT = jnp.array([0.5, 0.2, 5.0])


def _stereo(point=POINT):
    """Two cameras looking down +z with a 1 m baseline along x."""
    cameras = [
        Camera(K, jnp.zeros(6)),
        Camera(K, jnp.array([1.0, 0.0, 0.0, 0.0, 0.0, 0.0])),
    ]
    measurements = [project(c.K, c.pose, point) for c in cameras]
    return cameras, measurements


def test_dlt_recovers_the_point():
    cameras, measurements = _stereo()
    projections = [projection_matrix(c.K, c.pose) for c in cameras]
    point, rank = triangulate_dlt(projections, measurements)
    assert rank >= 3
    assert jnp.allclose(point, POINT, atol=1e-6)


def test_valid_triangulation():
    cameras, measurements = _stereo()
    result = triangulate_safe(cameras, measurements)
    assert result.valid
    assert result.status is TriangulationStatus.VALID
    assert jnp.allclose(result.point, POINT, atol=1e-6)


def test_rotated_cameras_with_refinement():
    cameras = [
        Camera(K, jnp.array([0.0, 0.0, 0.0, 0.0, 0.05, 0.0])),
        Camera(K, jnp.array([1.0, 0.2, 0.0, 0.02, -0.05, 0.0])),
        Camera(K, jnp.array([0.5, -0.5, 0.5, 0.0, 0.0, 0.1])),
    ]
    measurements = [project(c.K, c.pose, POINT) for c in cameras]
    result = triangulate_point3(cameras, measurements, optimize=True)
    assert result.valid
    assert jnp.allclose(result.point, POINT, atol=1e-5)


def test_single_view_is_degenerate():
    cameras, measurements = _stereo()
    result = triangulate_safe(cameras[:1], measurements[:1])
    assert result.is_degenerate
    assert result.point is None


def test_coincident_cameras_are_degenerate():
    """The same camera twice gives a rank-2 system."""
    cameras, measurements = _stereo()
    result = triangulate_safe([cameras[0], cameras[0]], [measurements[0], measurements[0]])
    assert result.is_degenerate


def test_point_behind_camera():
    behind = jnp.array([0.5, 0.2, -5.0])
    cameras, measurements = _stereo(behind)
    result = triangulate_safe(cameras, measurements)
    assert result.is_behind_camera
    assert not result.valid


def test_distance_threshold():
    cameras, measurements = _stereo()
    params = TriangulationParameters(landmark_distance_threshold=1.0)
    assert triangulate_safe(cameras, measurements, params).is_degenerate
    params = TriangulationParameters(landmark_distance_threshold=10.0)
    assert triangulate_safe(cameras, measurements, params).valid


def test_outlier_rejection():
    """A vertical offset cannot be explained by a horizontal baseline."""
    cameras, measurements = _stereo()
    noisy = [measurements[0], measurements[1] + jnp.array([0.0, 20.0])]
    params = TriangulationParameters(dynamic_outlier_rejection_threshold=1.0)
    assert triangulate_safe(cameras, noisy, params).is_degenerate
    assert triangulate_safe(cameras, measurements, params).valid


def test_match_dispatches_on_status():
    cameras, measurements = _stereo()
    handlers = dict(
        valid=lambda p: "valid",
        degenerate=lambda: "degenerate",
        behind_camera=lambda: "behind",
    )
    assert triangulate_safe(cameras, measurements).match(**handlers) == "valid"
    assert triangulate_safe(cameras[:1], measurements[:1]).match(**handlers) == "degenerate"


def test_landmark_prior_factor():
    cameras, measurements = _stereo()
    result = triangulate_safe(cameras, measurements)
    factor = landmark_prior_factor(result, P(0), 0.1)
    assert factor.keys == (P(0),)
    assert factor.error({P(0): POINT}) == pytest.approx(0.0, abs=1e-8)

    around = POINT + jnp.array([0.1, 0.0, 0.0])
    delta_factor = landmark_prior_factor(result, P(0), 0.1, linearization_point=around)
    assert delta_factor.error({P(0): POINT - around}) == pytest.approx(0.0, abs=1e-8)

    with pytest.raises(ValueError):
        landmark_prior_factor(triangulate_safe(cameras[:1], measurements[:1]), P(0), 0.1)
