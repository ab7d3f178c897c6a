# Copyright (c) 2025.
# This file is part of hybrid-isam, released under the MIT License.
"""
Triangulation of 3D points from calibrated views.

This is a source of factors for the hybrid engine, not part of it. Failure
is reported through :class:`TriangulationResult`, a tagged result with three
states:

    VALID          a point was found and passed all checks
    DEGENERATE     too few views, rank-deficient DLT system (parallel or
                   rotation-only cameras), point too far away, or average
                   reprojection error above the outlier threshold
    BEHIND_CAMERA  the point lies behind at least one camera

Nothing in this module raises for geometric degeneracy; callers dispatch on
the status, e.g. with :meth:`TriangulationResult.match`. A valid result is
turned into a Gaussian factor for the hybrid engine with
:func:`landmark_prior_factor`.

Cameras are ``(K, pose)`` pairs with a 3×3 calibration and a 6D
``world_T_camera`` pose (see :mod:`hybrid_isam.geometry.math3d`).
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Callable, NamedTuple, Optional, Sequence, Tuple

from hybrid_isam.core.jax_init import jnp
from hybrid_isam.core.keys import Key
from hybrid_isam.inference.gaussian import GaussianFactor
from hybrid_isam.nonlinear.solvers import LMConfig, levenberg_marquardt

from .math3d import project, projection_matrix, world_to_camera

logger = logging.getLogger(__name__)


class Camera(NamedTuple):
    K: jnp.ndarray
    pose: jnp.ndarray


@dataclass
class TriangulationParameters:
    rank_tol: float = 1.0                           # singular values below this count as rank loss
    enable_epi: bool = False                        # refine the DLT point with LM
    landmark_distance_threshold: float = -1.0       # > 0: farther points are degenerate
    dynamic_outlier_rejection_threshold: float = -1.0  # > 0: max mean reprojection error


class TriangulationStatus(enum.Enum):
    VALID = "valid"
    DEGENERATE = "degenerate"
    BEHIND_CAMERA = "behind_camera"


@dataclass(frozen=True)
class TriangulationResult:
    status: TriangulationStatus
    point: Optional[jnp.ndarray] = None

    @classmethod
    def valid_point(cls, point) -> "TriangulationResult":
        return cls(TriangulationStatus.VALID, jnp.asarray(point, dtype=jnp.float64))

    @classmethod
    def degenerate(cls) -> "TriangulationResult":
        return cls(TriangulationStatus.DEGENERATE)

    @classmethod
    def behind_camera(cls) -> "TriangulationResult":
        return cls(TriangulationStatus.BEHIND_CAMERA)

    @property
    def valid(self) -> bool:
        return self.status is TriangulationStatus.VALID

    @property
    def is_degenerate(self) -> bool:
        return self.status is TriangulationStatus.DEGENERATE

    @property
    def is_behind_camera(self) -> bool:
        return self.status is TriangulationStatus.BEHIND_CAMERA

    def match(
        self,
        valid: Callable[[jnp.ndarray], object],
        degenerate: Callable[[], object],
        behind_camera: Callable[[], object],
    ):
        """Call the handler for this status; every status must be handled."""
        if self.status is TriangulationStatus.VALID:
            return valid(self.point)
        if self.status is TriangulationStatus.DEGENERATE:
            return degenerate()
        return behind_camera()


def triangulate_dlt(
    projections: Sequence[jnp.ndarray],
    measurements: Sequence[jnp.ndarray],
    rank_tol: float = 1e-9,
) -> Tuple[Optional[jnp.ndarray], int]:
    """Linear (DLT) triangulation.

    Stacks ``u P_3 − P_1`` and ``v P_3 − P_2`` for every view and takes the
    right singular vector of the smallest singular value.

    Returns:
        The point (``None`` when the numerical rank is below 3) and the rank.
    """
    rows = []
    for P, z in zip(projections, measurements):
        P = jnp.asarray(P)
        u, v = float(z[0]), float(z[1])
        rows.append(u * P[2] - P[0])
        rows.append(v * P[2] - P[1])
    A = jnp.stack(rows)
    _, s, vt = jnp.linalg.svd(A, full_matrices=True)
    rank = int(jnp.sum(s > rank_tol))
    if rank < 3:
        return None, rank
    X = vt[-1]
    return X[:3] / X[3], rank


def _in_front(cameras: Sequence[Camera], point: jnp.ndarray) -> bool:
    return all(float(world_to_camera(c.pose, point)[2]) > 0.0 for c in cameras)


def refine_point(
    cameras: Sequence[Camera],
    measurements: Sequence[jnp.ndarray],
    initial: jnp.ndarray,
    cfg: Optional[LMConfig] = None,
) -> jnp.ndarray:
    """Minimize the reprojection error over the point with Levenberg-Marquardt."""
    zs = [jnp.asarray(z, dtype=jnp.float64) for z in measurements]

    def residual(p: jnp.ndarray) -> jnp.ndarray:
        return jnp.concatenate([project(c.K, c.pose, p) - z for c, z in zip(cameras, zs)])

    return levenberg_marquardt(residual, initial, cfg or LMConfig())


def triangulate_point3(
    cameras: Sequence[Camera],
    measurements: Sequence[jnp.ndarray],
    rank_tol: float = 1e-9,
    optimize: bool = False,
) -> TriangulationResult:
    """DLT triangulation, optional LM refinement, then a cheirality check."""
    if len(cameras) < 2 or len(cameras) != len(measurements):
        return TriangulationResult.degenerate()
    projections = [projection_matrix(c.K, c.pose) for c in cameras]
    point, rank = triangulate_dlt(projections, measurements, rank_tol)
    if point is None:
        logger.debug("DLT rank %d < 3, triangulation degenerate", rank)
        return TriangulationResult.degenerate()
    if optimize:
        point = refine_point(cameras, measurements, point)
    if not _in_front(cameras, point):
        return TriangulationResult.behind_camera()
    return TriangulationResult.valid_point(point)


def triangulate_safe(
    cameras: Sequence[Camera],
    measurements: Sequence[jnp.ndarray],
    params: Optional[TriangulationParameters] = None,
) -> TriangulationResult:
    """Triangulate and reject far-away points and reprojection outliers."""
    params = params or TriangulationParameters()
    result = triangulate_point3(cameras, measurements, params.rank_tol, params.enable_epi)
    if not result.valid:
        return result
    point = result.point
    total_error = 0.0
    for camera, z in zip(cameras, measurements):
        if params.landmark_distance_threshold > 0:
            distance = float(jnp.linalg.norm(camera.pose[:3] - point))
            if distance > params.landmark_distance_threshold:
                return TriangulationResult.degenerate()
        if params.dynamic_outlier_rejection_threshold > 0:
            total_error += float(jnp.linalg.norm(project(camera.K, camera.pose, point) - jnp.asarray(z)))
    if (
        params.dynamic_outlier_rejection_threshold > 0
        and total_error / len(cameras) > params.dynamic_outlier_rejection_threshold
    ):
        return TriangulationResult.degenerate()
    return result


def landmark_prior_factor(
    result: TriangulationResult,
    key: Key,
    sigma: float,
    linearization_point: Optional[jnp.ndarray] = None,
) -> GaussianFactor:
    """Gaussian factor on the delta of ``key`` pulling it to the triangulated point.

    Raises:
        ValueError: if ``result`` is not valid.
    """
    if not result.valid:
        raise ValueError(f"Cannot build a factor from a {result.status.value} triangulation")
    target = result.point
    if linearization_point is not None:
        target = target - jnp.asarray(linearization_point)
    return GaussianFactor.from_sigmas([key], [jnp.eye(3)], target, sigma)
