# Copyright (c) 2025.
# This file is part of hybrid-isam, released under the MIT License.
"""
Least-squares solvers for explicit nonlinear refinement.

The hybrid engine itself only ever works on linearized problems. These
solvers are used when a caller asks for nonlinear refinement of a fixed
discrete assignment (``HybridNonlinearFactorGraph.refine``) and by the
triangulation collaborator to polish a linear estimate.

Both operate on a flat residual function ``r(x): R^n -> R^m`` and obtain
``J = dr/dx`` with ``jax.jacobian``.

GNConfig / gauss_newton
    Damped Gauss-Newton with a fixed damping term and a clamp on the step
    norm, stopping early once the step is negligible. Cheap and predictable
    for well-initialized problems.

LMConfig / levenberg_marquardt
    Levenberg-Marquardt with multiplicative damping updates: a step is only
    accepted if it lowers ``‖r‖²``, otherwise the damping grows and the step
    is retried.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from hybrid_isam.core.jax_init import jax, jnp

logger = logging.getLogger(__name__)

ResidualFn = Callable[[jnp.ndarray], jnp.ndarray]


@dataclass
class GNConfig:
    max_iters: int = 20
    damping: float = 1e-3        # added to the diagonal of JᵀJ
    max_step_norm: float = 1.0   # longer steps are shortened to this norm
    step_tol: float = 1e-10      # stop once the applied step is shorter than this


def gauss_newton(residual_fn: ResidualFn, x0: jnp.ndarray, cfg: GNConfig) -> jnp.ndarray:
    """Damped Gauss-Newton on r(x), stopping on a negligible step.

    Every iteration solves ``(JᵀJ + damping·I) δ = Jᵀr`` and moves to
    ``x - δ``, shortened to ``max_step_norm`` if needed. Unlike
    :func:`levenberg_marquardt` the step is never rejected, so the cost may
    rise on a badly initialized problem.
    """
    J_fn = jax.jacobian(residual_fn)
    x = jnp.asarray(x0, dtype=jnp.float64)
    eye = jnp.eye(x.shape[0])

    for it in range(cfg.max_iters):
        r = residual_fn(x)
        J = J_fn(x)
        delta = jnp.linalg.solve(J.T @ J + cfg.damping * eye, J.T @ r)
        norm = float(jnp.linalg.norm(delta))
        if norm > cfg.max_step_norm:
            delta = delta * (cfg.max_step_norm / norm)
            norm = cfg.max_step_norm
        x = x - delta
        if norm < cfg.step_tol:
            logger.debug("GN converged after %d iterations (cost %.3e)", it + 1, float(r @ r))
            return x
    logger.debug("GN reached max_iters=%d without converging", cfg.max_iters)
    return x


@dataclass
class LMConfig:
    max_iters: int = 50
    initial_lambda: float = 1e-3
    lambda_factor: float = 10.0
    max_lambda: float = 1e10
    abs_tol: float = 1e-12       # stop once ‖r‖² changes less than this
    rel_tol: float = 1e-10


def levenberg_marquardt(residual_fn: ResidualFn, x0: jnp.ndarray, cfg: LMConfig) -> jnp.ndarray:
    """Levenberg-Marquardt on r(x), scaling the damping by diag(JᵀJ)."""
    J_fn = jax.jacobian(residual_fn)
    x = jnp.asarray(x0, dtype=jnp.float64)
    r = residual_fn(x)
    cost = float(r @ r)
    lam = cfg.initial_lambda

    for it in range(cfg.max_iters):
        J = J_fn(x)
        H = J.T @ J
        g = J.T @ r
        diag = jnp.diag(jnp.maximum(jnp.diag(H), 1e-12))
        improved = False
        while lam <= cfg.max_lambda:
            delta = jnp.linalg.solve(H + lam * diag, g)
            x_new = x - delta
            r_new = residual_fn(x_new)
            cost_new = float(r_new @ r_new)
            if cost_new < cost:
                improved = True
                break
            lam *= cfg.lambda_factor
        if not improved:
            logger.debug("LM stopped at iteration %d: no decrease (cost %.3e)", it, cost)
            break
        change = cost - cost_new
        x, r, cost = x_new, r_new, cost_new
        lam = max(lam / cfg.lambda_factor, 1e-12)
        if change < cfg.abs_tol or change < cfg.rel_tol * cost:
            break
    return x
