# Copyright (c) 2025.
# This file is part of hybrid-isam, released under the MIT License.
"""
SO(3)/SE(3) helpers for camera poses.

Poses are 6-vectors ``[tx, ty, tz, wx, wy, wz]``: the translation of the
camera in the world frame followed by its rotation vector (axis-angle), so
that ``world_T_camera = (so3_exp(w), t)``. Everything is written with
``jax.numpy`` and stays differentiable, which the nonlinear layer relies on
when it linearizes projection residuals with ``jax.jacobian``.

Key Functions
-------------
so3_exp(w), so3_log(R)
    Rodrigues' formula and its inverse, with small-angle branches.

between_pose(a, b)
    ``a⁻¹ ∘ b`` on 6-vectors, the residual of a between measurement.

world_to_camera(pose, point)
    Express a world point in the camera frame.

projection_matrix(K, pose)
    The 3×4 matrix ``K [Rᵀ | −Rᵀ t]`` used by linear triangulation.
"""

from __future__ import annotations

from typing import Tuple

from hybrid_isam.core.jax_init import jax, jnp


def split_pose(v: jnp.ndarray) -> Tuple[jnp.ndarray, jnp.ndarray]:
    """Translation and rotation vector of a 6D pose."""
    v = jnp.asarray(v)
    return v[0:3], v[3:6]


def hat(v: jnp.ndarray) -> jnp.ndarray:
    """so(3) hat operator: R^3 -> 3x3 skew-symmetric matrix."""
    x, y, z = v[0], v[1], v[2]
    return jnp.array(
        [
            [0.0, -z, y],
            [z, 0.0, -x],
            [-y, x, 0.0],
        ]
    )


def vee(W: jnp.ndarray) -> jnp.ndarray:
    """Inverse of :func:`hat`, averaging the antisymmetric part."""
    return jnp.array([
        W[2, 1] - W[1, 2],
        W[0, 2] - W[2, 0],
        W[1, 0] - W[0, 1],
    ]) / 2.0


def so3_exp(w: jnp.ndarray) -> jnp.ndarray:
    """Rotation matrix of a rotation vector (first order below 1e-5 rad)."""
    w = jnp.asarray(w)
    theta = jnp.linalg.norm(w)
    I = jnp.eye(3)

    def small_angle() -> jnp.ndarray:
        return I + hat(w)

    def normal_angle() -> jnp.ndarray:
        K = hat(w / theta)
        return I + jnp.sin(theta) * K + (1.0 - jnp.cos(theta)) * (K @ K)

    return jax.lax.cond(theta < 1e-5, small_angle, normal_angle)


def so3_log(R: jnp.ndarray) -> jnp.ndarray:
    """Rotation vector of a rotation matrix; the trace is clamped into range."""
    R = jnp.asarray(R)
    cos_theta = jnp.clip((jnp.trace(R) - 1.0) / 2.0, -1.0, 1.0)
    theta = jnp.arccos(cos_theta)

    def small_angle(_) -> jnp.ndarray:
        return vee(R - jnp.eye(3, dtype=R.dtype))

    def general(_) -> jnp.ndarray:
        factor = theta / (2.0 * jnp.sin(theta) + 1e-12)
        return factor * vee(R - R.T)

    return jax.lax.cond(theta < 1e-5, small_angle, general, operand=None)


def pose_rotation(pose: jnp.ndarray) -> jnp.ndarray:
    return so3_exp(split_pose(pose)[1])


def between_pose(a: jnp.ndarray, b: jnp.ndarray) -> jnp.ndarray:
    """``a⁻¹ ∘ b`` for 6D poses: the pose of ``b`` seen from ``a``."""
    Ra = pose_rotation(a)
    Rb = pose_rotation(b)
    ta, tb = split_pose(a)[0], split_pose(b)[0]
    return jnp.concatenate([Ra.T @ (tb - ta), so3_log(Ra.T @ Rb)])


def world_to_camera(pose: jnp.ndarray, point: jnp.ndarray) -> jnp.ndarray:
    """Coordinates of a world point in the frame of the camera at ``pose``."""
    t, _ = split_pose(pose)
    return pose_rotation(pose).T @ (jnp.asarray(point) - t)


def projection_matrix(K: jnp.ndarray, pose: jnp.ndarray) -> jnp.ndarray:
    """3×4 projection ``K [Rᵀ | −Rᵀ t]`` of a camera at ``pose``."""
    t, _ = split_pose(pose)
    Rt = pose_rotation(pose).T
    return jnp.asarray(K) @ jnp.concatenate([Rt, (-Rt @ t)[:, None]], axis=1)


def project(K: jnp.ndarray, pose: jnp.ndarray, point: jnp.ndarray) -> jnp.ndarray:
    """Pixel coordinates of a world point; no cheirality check."""
    p = jnp.asarray(K) @ world_to_camera(pose, point)
    return p[:2] / p[2]
