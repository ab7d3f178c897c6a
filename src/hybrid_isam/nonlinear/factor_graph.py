# Copyright (c) 2025.
# This file is part of hybrid-isam, released under the MIT License.
"""
Nonlinear hybrid factor graph.

Factors here are residual functions ``r(x; params)`` selected by a type
name, as in :mod:`hybrid_isam.nonlinear.measurements`. The graph turns them
into the linear objects the hybrid engine works with:

    linearize(values)
        Every :class:`NonlinearFactor` becomes a :class:`GaussianFactor` with
        Jacobians from ``jax.jacobian``; every :class:`MixtureFactor` becomes
        a :class:`GaussianMixtureFactor`; discrete factors pass through. The
        result is a :class:`HybridGaussianFactorGraph` over *deltas* from
        ``values``.

    refine(values, assignment, cfg)
        Explicit nonlinear refinement for a fixed discrete assignment: the
        chosen branches are fused into one residual ``r(x)`` over the packed
        state and handed to Levenberg-Marquardt or Gauss-Newton.

State packing
-------------
Variables are packed in ascending key order into one flat vector; the index
maps each key to ``(start, dim)``. All variables are treated as vectors, so
deltas are applied additively (:func:`retract`).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from hybrid_isam.core.jax_init import jax, jnp
from hybrid_isam.core.keys import DiscreteKey, Key
from hybrid_isam.core.values import VectorValues
from hybrid_isam.hybrid.factor_graph import HybridGaussianFactorGraph
from hybrid_isam.inference.discrete import DiscreteFactor, _as_discrete_keys, assignments
from hybrid_isam.inference.gaussian import GaussianFactor
from hybrid_isam.inference.mixture import GaussianMixtureFactor

from .measurements import DEFAULT_RESIDUALS
from .solvers import GNConfig, LMConfig, gauss_newton, levenberg_marquardt

ResidualFn = Callable[[jnp.ndarray, Dict[str, Any]], jnp.ndarray]
StateIndex = Dict[Key, Tuple[int, int]]


@dataclass
class NonlinearFactor:
    """Residual of type ``type`` over ``keys``, whitened by ``sigmas``."""
    type: str
    keys: Tuple[Key, ...]
    params: Dict[str, Any]
    sigmas: Any = 1.0

    @property
    def continuous_keys(self) -> Tuple[Key, ...]:
        return tuple(self.keys)

    @property
    def discrete_keys(self) -> tuple:
        return ()


@dataclass
class MixtureFactor:
    """Nonlinear factors over the same keys, one per discrete assignment (row-major)."""
    continuous_keys: Tuple[Key, ...]
    discrete_keys: Tuple[DiscreteKey, ...]
    components: List[Optional[NonlinearFactor]]

    def __post_init__(self) -> None:
        self.continuous_keys = tuple(self.continuous_keys)
        self.discrete_keys = _as_discrete_keys(self.discrete_keys)
        expected = len(list(assignments(self.discrete_keys)))
        if len(self.components) != expected:
            raise ValueError(f"Expected {expected} components, got {len(self.components)}")

    @property
    def keys(self) -> Tuple[Key, ...]:
        return self.continuous_keys + tuple(k for k, _ in self.discrete_keys)

    def component(self, assignment: Mapping[Key, int]) -> Optional[NonlinearFactor]:
        index = dict(zip(assignments(self.discrete_keys), self.components))
        return index[tuple(int(assignment[k]) for k, _ in self.discrete_keys)]


NonlinearHybridFactor = Union[NonlinearFactor, MixtureFactor, DiscreteFactor]


def retract(values: Mapping[Key, jnp.ndarray], delta: Mapping[Key, jnp.ndarray]) -> VectorValues:
    """``values + delta`` for every key of ``values`` (missing deltas count as zero)."""
    result = VectorValues(values)
    for key, d in delta.items():
        if key in result:
            result[key] = result[key] + d
    return result


@dataclass
class HybridNonlinearFactorGraph:
    """
    Nonlinear factors, mixtures of nonlinear factors and discrete factors.

    - factors: list of factors in insertion order
    - residual_fns: mapping factor.type -> callable that computes residuals
    """
    factors: List[NonlinearHybridFactor] = field(default_factory=list)
    residual_fns: Dict[str, ResidualFn] = field(default_factory=lambda: dict(DEFAULT_RESIDUALS))

    def push_back(self, factor: NonlinearHybridFactor) -> None:
        self.factors.append(factor)

    add_factor = push_back

    def register_residual(self, factor_type: str, fn: ResidualFn) -> None:
        self.residual_fns[factor_type] = fn

    def __len__(self) -> int:
        return len(self.factors)

    def keys(self):
        return {k for f in self.factors for k in f.keys}

    # --- Residual evaluation ---

    def _residual_fn(self, factor: NonlinearFactor) -> ResidualFn:
        fn = self.residual_fns.get(factor.type)
        if fn is None:
            raise ValueError(f"No residual fn registered for factor type '{factor.type}'")
        return fn

    def whitened_residual(self, factor: NonlinearFactor, values: Mapping[Key, jnp.ndarray]) -> jnp.ndarray:
        x = jnp.concatenate([jnp.atleast_1d(values[k]) for k in factor.keys])
        r = self._residual_fn(factor)(x, factor.params)
        return jnp.reshape(r, (-1,)) / jnp.asarray(factor.sigmas)

    def error(self, values: Mapping[Key, jnp.ndarray], assignment: Mapping[Key, int]) -> float:
        """½ Σ ‖whitened residual‖² of the branches selected by ``assignment``."""
        total = 0.0
        for factor in self._chosen(assignment):
            r = self.whitened_residual(factor, values)
            total += 0.5 * float(r @ r)
        return total

    # --- Linearization ---

    def linearize_factor(self, factor: NonlinearFactor, values: Mapping[Key, jnp.ndarray]) -> GaussianFactor:
        """First-order expansion ``r(x0 + δ) ≈ r(x0) + J δ`` as a Gaussian factor on δ."""
        fn = self._residual_fn(factor)
        blocks_in = [jnp.atleast_1d(jnp.asarray(values[k], dtype=jnp.float64)) for k in factor.keys]
        x0 = jnp.concatenate(blocks_in)
        r = jnp.reshape(fn(x0, factor.params), (-1,))
        J = jax.jacobian(lambda x: jnp.reshape(fn(x, factor.params), (-1,)))(x0)
        blocks = []
        offset = 0
        for v in blocks_in:
            blocks.append(J[:, offset:offset + v.shape[0]])
            offset += v.shape[0]
        return GaussianFactor.from_sigmas(factor.keys, blocks, -r, factor.sigmas)

    def linearize(self, values: Mapping[Key, jnp.ndarray]) -> HybridGaussianFactorGraph:
        graph = HybridGaussianFactorGraph()
        for f in self.factors:
            if isinstance(f, DiscreteFactor):
                graph.push_back(f)
            elif isinstance(f, MixtureFactor):
                linear = [
                    self.linearize_factor(c, values) if c is not None else None
                    for c in f.components
                ]
                graph.push_back(GaussianMixtureFactor.from_list(f.continuous_keys, f.discrete_keys, linear))
            else:
                graph.push_back(self.linearize_factor(f, values))
        return graph

    # --- Packed state and refinement ---

    @staticmethod
    def build_state_index(values: Mapping[Key, jnp.ndarray]) -> StateIndex:
        index: StateIndex = {}
        offset = 0
        for key in sorted(values):
            dim = int(jnp.atleast_1d(values[key]).shape[0])
            index[key] = (offset, dim)
            offset += dim
        return index

    @staticmethod
    def pack_state(values: Mapping[Key, jnp.ndarray], index: StateIndex) -> jnp.ndarray:
        return jnp.concatenate([jnp.atleast_1d(jnp.asarray(values[k], dtype=jnp.float64)) for k in index])

    @staticmethod
    def unpack_state(x: jnp.ndarray, index: StateIndex) -> VectorValues:
        return VectorValues({key: x[start:start + dim] for key, (start, dim) in index.items()})

    def _chosen(self, assignment: Mapping[Key, int]) -> List[NonlinearFactor]:
        chosen = []
        for f in self.factors:
            if isinstance(f, MixtureFactor):
                c = f.component(assignment)
                if c is not None:
                    chosen.append(c)
            elif isinstance(f, NonlinearFactor):
                chosen.append(f)
        return chosen

    def build_residual_function(self, index: StateIndex, assignment: Mapping[Key, int]):
        """
        Returns a JIT-able function r(x) -> whitened residual vector for the
        branches selected by ``assignment``, where x is the packed state.
        """
        factors = tuple(self._chosen(assignment))
        fns = tuple(self._residual_fn(f) for f in factors)

        def residual(x: jnp.ndarray) -> jnp.ndarray:
            res_list = []
            for factor, fn in zip(factors, fns):
                stacked = jnp.concatenate(
                    [x[index[k][0]:index[k][0] + index[k][1]] for k in factor.keys]
                )
                r = jnp.reshape(fn(stacked, factor.params), (-1,))
                res_list.append(r / jnp.asarray(factor.sigmas))
            if not res_list:
                return jnp.zeros((0,), dtype=x.dtype)
            return jnp.concatenate(res_list)

        return jax.jit(residual)

    def refine(
        self,
        values: Mapping[Key, jnp.ndarray],
        assignment: Mapping[Key, int],
        cfg: Optional[Union[LMConfig, GNConfig]] = None,
    ) -> VectorValues:
        """Nonlinear least squares for the branches selected by ``assignment``."""
        cfg = cfg or LMConfig()
        index = self.build_state_index(values)
        residual = self.build_residual_function(index, assignment)
        x0 = self.pack_state(values, index)
        if isinstance(cfg, GNConfig):
            x = gauss_newton(residual, x0, cfg)
        else:
            x = levenberg_marquardt(residual, x0, cfg)
        return self.unpack_state(x, index)


def chain_keys(keys: Sequence[Key]) -> List[Tuple[Key, Key]]:
    """Consecutive pairs of ``keys``, for building odometry chains."""
    return list(zip(keys[:-1], keys[1:]))
