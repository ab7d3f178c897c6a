# Copyright (c) 2025.
# This file is part of hybrid-isam, released under the MIT License.
"""
Switching-system scenario: a 1-D robot whose motion mode is unknown.

Between consecutive continuous states ``X(k)`` and ``X(k+1)`` a discrete
mode ``M(k)`` selects the motion model: *still* (offset 0) or *moving*
(offset 1). The graph contains

    • a prior ``X(1) = 0`` (sigma ``prior_sigma``),
    • one motion mixture per step, ``X(k+1) − X(k) ∈ {0, 1}``
      (sigma ``between_sigma``),
    • a position measurement on every ``X(k)``, ``k ≥ 2`` (sigma 0.1),
    • a Markov chain over the modes: ``P(M(1)) = 1/1`` and
      ``P(M(k+1) | M(k)) = 1/2 3/2``.

Measurements follow the ground truth ``x_1 = 0, x_{k+1} = x_k + mode_k``;
without explicit modes every step is *moving*, so ``x_k = k − 1``. The
linearization point is ``X(k) = k``, so the exact solution under the
ground-truth modes is a delta of ``x_k − k`` (−1 everywhere by default).

Used by the tests and benchmarks::

    s = Switching(4)
    bn = s.linearized_graph.eliminate_sequential()
    tree = HybridGaussianISAM()
    for batch in s.batches():
        tree.update(batch)
"""

from __future__ import annotations

from typing import List, Optional, Sequence

from hybrid_isam.core.jax_init import jnp
from hybrid_isam.core.keys import DiscreteKey, M, X
from hybrid_isam.core.values import VectorValues
from hybrid_isam.hybrid.factor_graph import HybridGaussianFactorGraph
from hybrid_isam.inference.discrete import DiscreteConditional
from hybrid_isam.nonlinear.factor_graph import (
    HybridNonlinearFactorGraph,
    MixtureFactor,
    NonlinearFactor,
    chain_keys,
)

MEASUREMENT_SIGMA = 0.1


class Switching:
    """Builds the nonlinear and linearized switching chain over ``K`` states."""

    def __init__(
        self,
        K: int,
        between_sigma: float = 1.0,
        prior_sigma: float = 0.1,
        modes: Optional[Sequence[int]] = None,
    ) -> None:
        if K < 2:
            raise ValueError("A switching chain needs at least two states")
        if modes is None:
            modes = [1] * (K - 1)
        if len(modes) != K - 1:
            raise ValueError(f"Expected {K - 1} modes, got {len(modes)}")
        self.K = K
        self.modes = [int(m) for m in modes]
        self.mode_keys = [DiscreteKey(M(k), 2) for k in range(1, K)]

        truth = [0.0]
        for mode in self.modes:
            truth.append(truth[-1] + mode)
        self.ground_truth = VectorValues({X(k): truth[k - 1] for k in range(1, K + 1)})
        self.linearization_point = VectorValues({X(k): float(k) for k in range(1, K + 1)})

        # Factors grouped by the step that introduces them, for incremental use.
        self._steps: List[list] = [[] for _ in range(K - 1)]
        self._steps[0].append(NonlinearFactor("prior", (X(1),), {"target": jnp.zeros(1)}, prior_sigma))
        for k, (xk, xk1) in enumerate(chain_keys([X(i) for i in range(1, K + 1)]), start=1):
            step = self._steps[k - 1]
            components = [
                NonlinearFactor("between", (xk, xk1), {"measurement": jnp.array([offset])}, between_sigma)
                for offset in (0.0, 1.0)
            ]
            step.append(MixtureFactor((xk, xk1), (self.mode_keys[k - 1],), components))
            step.append(
                NonlinearFactor(
                    "prior", (xk1,), {"target": jnp.array([truth[k]])}, MEASUREMENT_SIGMA
                )
            )
            if k == 1:
                step.append(DiscreteConditional.from_signature(self.mode_keys[0], [], "1/1"))
            else:
                step.append(
                    DiscreteConditional.from_signature(
                        self.mode_keys[k - 1], [self.mode_keys[k - 2]], "1/2 3/2"
                    )
                )

        self.nonlinear_graph = HybridNonlinearFactorGraph()
        for step in self._steps:
            for factor in step:
                self.nonlinear_graph.push_back(factor)
        self.linearized_graph = self.nonlinear_graph.linearize(self.linearization_point)

    def continuous_ordering(self) -> List:
        return [X(k) for k in range(1, self.K + 1)]

    def batches(self, size: int = 1) -> List[HybridGaussianFactorGraph]:
        """Linearized factors split into increments of ``size`` time steps."""
        if size < 1:
            raise ValueError("Batch size must be at least 1")
        result = []
        for start in range(0, len(self._steps), size):
            step_graph = HybridNonlinearFactorGraph(residual_fns=self.nonlinear_graph.residual_fns)
            for step in self._steps[start:start + size]:
                for factor in step:
                    step_graph.push_back(factor)
            result.append(step_graph.linearize(self.linearization_point))
        return result
