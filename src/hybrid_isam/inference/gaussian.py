# Copyright (c) 2025.
# This file is part of hybrid-isam, released under the MIT License.
"""
Linear-Gaussian factors, conditionals and Bayes nets.

GaussianFactor
    A whitened linear measurement

        φ(x) = exp( log_scale − ½ ‖ Σ_k A_k x_k − b ‖² )

    The explicit ``log_scale`` is what makes hybrid elimination exact: when
    the same continuous variable is eliminated once per discrete assignment,
    the leftover constants differ between assignments and must be carried
    into the discrete part of the problem.

GaussianConditional
    A normalized conditional density p(x_f | x_s) in square-root form,

        R x_f + S x_s = d     (unit noise, R upper triangular)

GaussianBayesNet
    An ordered list of conditionals, solved by back-substitution.

eliminate_gaussian
    The dense elimination primitive. All touching factors are stacked into
    ``[A | b]`` with the frontal columns first, reduced with a Householder QR
    (``jnp.linalg.qr``) and split into the frontal conditional and the
    separator factor. The split is exact:

        joint(x_f, x_s) = p(x_f | x_s) · separator(x_s)

    because the separator absorbs ``(d_f/2)·log 2π − log|det R_ff|`` plus the
    residual that no variable can explain.
"""

from __future__ import annotations

import math
from typing import Dict, Iterable, List, Mapping, Sequence, Tuple

from jax.scipy.linalg import solve_triangular

from hybrid_isam.core.errors import UnderconstrainedError
from hybrid_isam.core.jax_init import jnp
from hybrid_isam.core.keys import Key, key_to_str
from hybrid_isam.core.values import VectorValues

LOG_2PI = math.log(2.0 * math.pi)


def _split_columns(matrix: jnp.ndarray, dims: Sequence[int]) -> Tuple[jnp.ndarray, ...]:
    blocks = []
    offset = 0
    for d in dims:
        blocks.append(matrix[:, offset:offset + d])
        offset += d
    return tuple(blocks)


class GaussianFactor:
    """Whitened linear factor over continuous keys with a log-scale constant."""

    def __init__(
        self,
        keys: Sequence[Key],
        blocks: Sequence,
        b,
        log_scale: float = 0.0,
    ) -> None:
        self.continuous_keys = tuple(Key(int(k)) for k in keys)
        if len(set(self.continuous_keys)) != len(self.continuous_keys):
            raise ValueError("Duplicate keys in Gaussian factor")
        if len(blocks) != len(self.continuous_keys):
            raise ValueError("Need exactly one Jacobian block per key")
        self.b = jnp.reshape(jnp.asarray(b, dtype=jnp.float64), (-1,))
        rows = self.b.shape[0]
        checked = []
        for key, A in zip(self.continuous_keys, blocks):
            A = jnp.asarray(A, dtype=jnp.float64)
            if A.ndim != 2:
                A = jnp.reshape(A, (rows, -1))
            if A.shape[0] != rows:
                raise ValueError(
                    f"Block for {key_to_str(key)} has {A.shape[0]} rows, expected {rows}"
                )
            checked.append(A)
        self.blocks = tuple(checked)
        self.log_scale = float(log_scale)

    @staticmethod
    def from_sigmas(
        keys: Sequence[Key],
        blocks: Sequence,
        b,
        sigmas,
        normalized: bool = True,
    ) -> "GaussianFactor":
        """Whiten ``A x − b`` with per-row standard deviations.

        With ``normalized`` the factor is a proper density in the residual,
        i.e. it carries ``−Σ log σ − (m/2) log 2π``. Components of a mixture
        with different noise levels must be normalized to compare fairly.
        """
        b = jnp.reshape(jnp.asarray(b, dtype=jnp.float64), (-1,))
        m = b.shape[0]
        sigmas = jnp.broadcast_to(jnp.asarray(sigmas, dtype=jnp.float64), (m,))
        whitened = []
        for A in blocks:
            A = jnp.asarray(A, dtype=jnp.float64)
            if A.ndim != 2:
                A = jnp.reshape(A, (m, -1))
            whitened.append(A / sigmas[:, None])
        log_scale = 0.0
        if normalized:
            log_scale = -float(jnp.sum(jnp.log(sigmas))) - 0.5 * m * LOG_2PI
        return GaussianFactor(keys, whitened, b / sigmas, log_scale)

    @property
    def keys(self) -> Tuple[Key, ...]:
        return self.continuous_keys

    @property
    def discrete_keys(self) -> tuple:
        return ()

    @property
    def rows(self) -> int:
        return int(self.b.shape[0])

    def dims(self) -> Dict[Key, int]:
        return {k: int(A.shape[1]) for k, A in zip(self.continuous_keys, self.blocks)}

    def residual(self, values: Mapping[Key, jnp.ndarray]) -> jnp.ndarray:
        r = -self.b
        for key, A in zip(self.continuous_keys, self.blocks):
            r = r + A @ jnp.asarray(values[key])
        return r

    def error(self, values: Mapping[Key, jnp.ndarray]) -> float:
        r = self.residual(values)
        return 0.5 * float(r @ r)

    def log_value(self, values: Mapping[Key, jnp.ndarray]) -> float:
        return self.log_scale - self.error(values)

    def equals(self, other, tol: float = 1e-9) -> bool:
        if not isinstance(other, GaussianFactor):
            return False
        if self.continuous_keys != other.continuous_keys or self.b.shape != other.b.shape:
            return False
        if abs(self.log_scale - other.log_scale) > tol:
            return False
        if not bool(jnp.allclose(self.b, other.b, atol=tol, rtol=0.0)):
            return False
        return all(
            A.shape == B.shape and bool(jnp.allclose(A, B, atol=tol, rtol=0.0))
            for A, B in zip(self.blocks, other.blocks)
        )

    def __repr__(self) -> str:
        names = ", ".join(key_to_str(k) for k in self.continuous_keys)
        return f"GaussianFactor({names}; rows={self.rows})"


class GaussianConditional:
    """Normalized Gaussian conditional p(frontals | parents) in square-root form."""

    def __init__(
        self,
        frontals: Sequence[Key],
        parents: Sequence[Key],
        R,
        S: Sequence,
        d,
        frontal_dims: Sequence[int],
    ) -> None:
        self.frontals = tuple(Key(int(k)) for k in frontals)
        self.parents = tuple(Key(int(k)) for k in parents)
        self.R = jnp.asarray(R, dtype=jnp.float64)
        self.S = tuple(jnp.asarray(Sj, dtype=jnp.float64) for Sj in S)
        self.d = jnp.reshape(jnp.asarray(d, dtype=jnp.float64), (-1,))
        self.frontal_dims = tuple(int(n) for n in frontal_dims)
        if len(self.S) != len(self.parents):
            raise ValueError("Need exactly one S block per parent")
        if sum(self.frontal_dims) != self.R.shape[0]:
            raise ValueError("Frontal dimensions do not match R")

    @staticmethod
    def from_mean_and_stddev(
        key: Key,
        mean,
        sigma: float,
        parents: Sequence[Tuple[Key, jnp.ndarray]] = (),
    ) -> "GaussianConditional":
        """p(x | y_1..y_n) = N(Σ A_j y_j + mean, σ² I)."""
        mean = jnp.atleast_1d(jnp.asarray(mean, dtype=jnp.float64))
        n = mean.shape[0]
        R = jnp.eye(n) / sigma
        S = [-jnp.reshape(jnp.asarray(A, dtype=jnp.float64), (n, -1)) / sigma for _, A in parents]
        return GaussianConditional([key], [k for k, _ in parents], R, S, mean / sigma, [n])

    @property
    def frontal_keys(self) -> Tuple[Key, ...]:
        return self.frontals

    @property
    def parent_keys(self) -> Tuple[Key, ...]:
        return self.parents

    @property
    def keys(self) -> Tuple[Key, ...]:
        return self.frontals + self.parents

    def dims(self) -> Dict[Key, int]:
        dims = dict(zip(self.frontals, self.frontal_dims))
        dims.update({k: int(Sj.shape[1]) for k, Sj in zip(self.parents, self.S)})
        return dims

    def log_normalization_constant(self) -> float:
        log_det = float(jnp.sum(jnp.log(jnp.abs(jnp.diag(self.R)))))
        return log_det - 0.5 * self.R.shape[0] * LOG_2PI

    def _rhs(self, values: Mapping[Key, jnp.ndarray]) -> jnp.ndarray:
        rhs = self.d
        for key, Sj in zip(self.parents, self.S):
            if key not in values:
                raise ValueError(f"Parent {key_to_str(key)} has not been solved")
            rhs = rhs - Sj @ jnp.asarray(values[key])
        return rhs

    def solve(self, values: Mapping[Key, jnp.ndarray]) -> VectorValues:
        """Back-substitute the frontal variables given solved parents."""
        x = solve_triangular(self.R, self._rhs(values), lower=False)
        solution = VectorValues()
        offset = 0
        for key, n in zip(self.frontals, self.frontal_dims):
            solution[key] = x[offset:offset + n]
            offset += n
        return solution

    def error(self, values: Mapping[Key, jnp.ndarray]) -> float:
        x_f = jnp.concatenate([jnp.asarray(values[k]) for k in self.frontals])
        r = self.R @ x_f - self._rhs(values)
        return 0.5 * float(r @ r)

    def log_density(self, values: Mapping[Key, jnp.ndarray]) -> float:
        return self.log_normalization_constant() - self.error(values)

    def to_factor(self) -> GaussianFactor:
        blocks = list(_split_columns(self.R, self.frontal_dims)) + list(self.S)
        return GaussianFactor(self.keys, blocks, self.d, self.log_normalization_constant())

    def equals(self, other, tol: float = 1e-9) -> bool:
        if not isinstance(other, GaussianConditional):
            return False
        if (self.frontals, self.parents, self.frontal_dims) != (other.frontals, other.parents, other.frontal_dims):
            return False
        pairs = [(self.R, other.R), (self.d, other.d)] + list(zip(self.S, other.S))
        return all(
            A.shape == B.shape and bool(jnp.allclose(A, B, atol=tol, rtol=0.0))
            for A, B in pairs
        )

    def __repr__(self) -> str:
        front = ", ".join(key_to_str(k) for k in self.frontals)
        if not self.parents:
            return f"GaussianConditional(p({front}))"
        par = ", ".join(key_to_str(k) for k in self.parents)
        return f"GaussianConditional(p({front} | {par}))"


class GaussianBayesNet:
    """Ordered Gaussian conditionals; later entries never depend on earlier frontals."""

    def __init__(self, conditionals: Iterable[GaussianConditional] = ()) -> None:
        self.conditionals: List[GaussianConditional] = list(conditionals)

    def push_back(self, conditional: GaussianConditional) -> None:
        self.conditionals.append(conditional)

    def __len__(self) -> int:
        return len(self.conditionals)

    def __getitem__(self, i: int) -> GaussianConditional:
        return self.conditionals[i]

    def __iter__(self):
        return iter(self.conditionals)

    def optimize(self) -> VectorValues:
        """Back-substitution from the last conditional to the first."""
        solution = VectorValues()
        for conditional in reversed(self.conditionals):
            solution.update(conditional.solve(solution))
        return solution

    def log_density(self, values: Mapping[Key, jnp.ndarray]) -> float:
        return sum(c.log_density(values) for c in self.conditionals)

    def equals(self, other: "GaussianBayesNet", tol: float = 1e-9) -> bool:
        return len(self) == len(other) and all(
            a.equals(b, tol) for a, b in zip(self.conditionals, other.conditionals)
        )


def eliminate_gaussian(
    factors: Sequence[GaussianFactor],
    frontal_keys: Sequence[Key],
    rank_tol: float = 1e-9,
) -> Tuple[GaussianConditional, GaussianFactor]:
    """Eliminate ``frontal_keys`` from the product of ``factors``.

    Returns:
        The conditional on the frontals given the separator, and the factor
        left on the separator. The separator factor may have no keys, in
        which case it is a pure constant (``log_value({})``).

    Raises:
        UnderconstrainedError: if a frontal variable is absent or the stacked
            system is rank-deficient in the frontal columns.
    """
    dims: Dict[Key, int] = {}
    separator: List[Key] = []
    frontal_set = set(frontal_keys)
    for f in factors:
        for key, n in f.dims().items():
            if dims.setdefault(key, n) != n:
                raise ValueError(f"Inconsistent dimension for {key_to_str(key)}")
            if key not in frontal_set and key not in separator:
                separator.append(key)
    for key in frontal_keys:
        if key not in dims:
            raise UnderconstrainedError(key, f"No factor constrains {key_to_str(key)}")
    # Sorted so that every branch of a mixture gets the same parent layout.
    separator.sort()

    columns = list(frontal_keys) + separator
    col_dims = [dims[k] for k in columns]
    n = sum(col_dims)
    n_f = sum(dims[k] for k in frontal_keys)

    rows = []
    for f in factors:
        lookup = dict(zip(f.keys, f.blocks))
        row = [lookup.get(k, jnp.zeros((f.rows, dims[k]))) for k in columns]
        row.append(f.b[:, None])
        rows.append(jnp.concatenate(row, axis=1))
    Ab = jnp.concatenate(rows, axis=0) if rows else jnp.zeros((0, n + 1))

    # The row count caps the rank, so any frontal column past it is free.
    offsets = [sum(dims[k] for k in frontal_keys[:i]) for i in range(len(frontal_keys))]

    def _owner(column: int) -> Key:
        owner = frontal_keys[0]
        for key, start in zip(frontal_keys, offsets):
            if column >= start:
                owner = key
        return owner

    if Ab.shape[0] < n_f:
        raise UnderconstrainedError(_owner(Ab.shape[0]))

    R = jnp.linalg.qr(Ab, mode="r")
    diag = jnp.diag(R[:n_f, :n_f])
    weak = jnp.nonzero(jnp.abs(diag) < rank_tol)[0]
    if weak.size:
        raise UnderconstrainedError(_owner(int(weak[0])))

    top = R[:n_f] * jnp.sign(diag)[:, None]
    blocks = _split_columns(top[:, :n], col_dims)
    conditional = GaussianConditional(
        frontal_keys,
        separator,
        top[:, :n_f],
        blocks[len(frontal_keys):],
        top[:, n],
        [dims[k] for k in frontal_keys],
    )

    rest = R[n_f:]
    sep_blocks = _split_columns(rest[:, n_f:n], [dims[k] for k in separator])
    log_scale = (
        sum(f.log_scale for f in factors)
        + 0.5 * n_f * LOG_2PI
        - float(jnp.sum(jnp.log(jnp.abs(diag))))
    )
    return conditional, GaussianFactor(separator, sep_blocks, rest[:, n], log_scale)
