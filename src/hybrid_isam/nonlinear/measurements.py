# Copyright (c) 2025.
# This file is part of hybrid-isam, released under the MIT License.
"""
Residual models for nonlinear factors.

Each function implements a residual

    r(x; params) ∈ ℝᵏ

where ``x`` is the concatenation of the factor's variable values in key
order. Residuals are unweighted; the noise model (per-row standard
deviations) lives on :class:`~hybrid_isam.nonlinear.factor_graph.NonlinearFactor`,
which whitens them before linearization.

Factor types are mapped to these functions by name through
``HybridNonlinearFactorGraph.register_residual``; the defaults registered by
every graph are listed in :data:`DEFAULT_RESIDUALS`.

1. Vector-space factors
    • ``prior_residual``:     r = x − target
    • ``between_residual``:   r = (x_j − x_i) − measurement

   The switching-system scenario is built from these two: a motion mode
   selects the ``measurement`` of a between factor.

2. SE(3) factors on 6D poses ``[t, w]``
    • ``between_pose_residual``:   r = (a⁻¹ ∘ b) − measurement
    • ``landmark_residual``:       r = R_aᵀ (l − t_a) − measurement

3. Camera factors
    • ``projection_residual``:     r = π(K, pose, point) − measurement

When adding a new factor type:

    1. Implement ``def my_residual(x, params) -> jnp.ndarray`` here.
    2. Register it: ``graph.register_residual("my_type", my_residual)``.
"""

from __future__ import annotations

from typing import Dict

from hybrid_isam.core.jax_init import jnp
from hybrid_isam.geometry.math3d import between_pose, project, world_to_camera


def prior_residual(x: jnp.ndarray, params: Dict[str, jnp.ndarray]) -> jnp.ndarray:
    """
    Prior on a single variable:
        residual = x - target
    Works for any vector dimension.
    """
    return x - jnp.asarray(params["target"])


def between_residual(x: jnp.ndarray, params: Dict[str, jnp.ndarray]) -> jnp.ndarray:
    """
    Relative measurement between two vector variables of equal dimension:

        x = [x_i, x_j]
        residual = (x_j - x_i) - measurement
    """
    dim = x.shape[0] // 2
    return (x[dim:] - x[:dim]) - jnp.asarray(params["measurement"])


def between_pose_residual(x: jnp.ndarray, params: Dict[str, jnp.ndarray]) -> jnp.ndarray:
    """SE(3) odometry: the relative pose of two stacked 6D poses minus the measurement."""
    if x.shape[0] != 12:
        raise ValueError("between_pose_residual expects two 6D poses stacked")
    return between_pose(x[:6], x[6:]) - jnp.asarray(params["measurement"])


def landmark_residual(x: jnp.ndarray, params: Dict[str, jnp.ndarray]) -> jnp.ndarray:
    """
    A landmark observed in the frame of a pose.

    x: [pose(6), landmark(3)]
    params["measurement"]: landmark position in the pose frame.
    """
    return world_to_camera(x[:6], x[6:9]) - jnp.asarray(params["measurement"])


def projection_residual(x: jnp.ndarray, params: Dict[str, jnp.ndarray]) -> jnp.ndarray:
    """
    Reprojection error of a point in a calibrated camera.

    x: [pose(6), point(3)]
    params["K"]: 3x3 calibration; params["measurement"]: pixel (2,).
    """
    return project(params["K"], x[:6], x[6:9]) - jnp.asarray(params["measurement"])


DEFAULT_RESIDUALS = {
    "prior": prior_residual,
    "between": between_residual,
    "between_pose": between_pose_residual,
    "landmark": landmark_residual,
    "projection": projection_residual,
}
