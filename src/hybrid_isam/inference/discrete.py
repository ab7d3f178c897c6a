# Copyright (c) 2025.
# This file is part of hybrid-isam, released under the MIT License.
"""
Discrete factors and conditionals.

A discrete factor is a non-negative table over the cartesian product of the
cardinalities of its keys (axis ``i`` of the table belongs to ``keys[i]``).
A discrete conditional is a table normalized over its frontal axes, so that
for every parent assignment the frontal entries sum to one.

These are the discrete half of the hybrid engine: elimination of continuous
variables turns mixture factors into discrete tables of normalization
constants, which are then eliminated with ordinary sum-product here. The MAP
assignment is recovered with exact max-product elimination
(:func:`max_product_assignment`), not by greedy per-conditional argmax.

Dense and sparse tables
-----------------------
A table is either a dense ``jnp`` array or a mapping from assignment tuples
to values. The mapping form is stored sparsely: only non-zero entries are
kept and an absent assignment has value zero. Once hypotheses have been
pruned, the tables that span many mode variables hold a handful of
assignments out of an exponential number, and the sparse form keeps both
memory and the table algebra proportional to that handful.

Products involving a sparse table are computed as a join over non-zero
entries and stay sparse; products of dense tables stay dense. ``table``
always returns the dense array, expanding a sparse factor if needed.

Signature strings
-----------------
Conditionals can be written with compact signature strings::

    DiscreteConditional.from_signature(A, [], "99/1")        # P(A)
    DiscreteConditional.from_signature(B, [A], "1/2 3/2")    # P(B | A)

Rows are separated by spaces, one row per parent assignment, enumerated
row-major over the parents (the first parent varies slowest). Entries are
relative weights separated by ``/`` and are normalized per row.
"""

from __future__ import annotations

import itertools
import math
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from hybrid_isam.core.errors import MissingAssignmentError
from hybrid_isam.core.jax_init import jnp
from hybrid_isam.core.keys import DiscreteKey, Key, key_to_str
from hybrid_isam.core.values import DiscreteValues

Entries = Dict[Tuple[int, ...], float]


def _as_discrete_keys(keys: Iterable) -> Tuple[DiscreteKey, ...]:
    return tuple(DiscreteKey(Key(int(k)), int(c)) for k, c in keys)


def assignments(keys: Sequence[DiscreteKey]) -> Iterable[Tuple[int, ...]]:
    """Enumerate all joint assignments of ``keys`` in row-major order."""
    return itertools.product(*(range(card) for _, card in keys))


def _sparse_entries(table: Mapping, shape: Tuple[int, ...]) -> Entries:
    entries: Entries = {}
    for assignment, value in table.items():
        assignment = tuple(int(i) for i in assignment)
        if len(assignment) != len(shape) or any(
            not 0 <= i < card for i, card in zip(assignment, shape)
        ):
            raise ValueError(f"Assignment {assignment} does not fit cardinalities {shape}")
        value = float(value)
        if value < 0.0:
            raise ValueError(f"Negative table entry {value} at {assignment}")
        if value > 0.0:
            entries[assignment] = value
    return entries


class DiscreteFactor:
    """Non-negative table over a set of discrete keys, stored dense or sparse."""

    def __init__(self, keys: Sequence[DiscreteKey], table) -> None:
        self.discrete_keys = _as_discrete_keys(keys)
        if len({k for k, _ in self.discrete_keys}) != len(self.discrete_keys):
            raise ValueError("Duplicate keys in discrete factor")
        shape = tuple(card for _, card in self.discrete_keys)
        if isinstance(table, Mapping):
            self._entries: Optional[Entries] = _sparse_entries(table, shape)
            self._table = None
            return
        table = jnp.asarray(table, dtype=jnp.float64)
        if table.size != math.prod(shape):
            raise ValueError(
                f"Table of size {table.size} does not match cardinalities {shape}"
            )
        self._entries = None
        self._table = jnp.reshape(table, shape)

    # --- Storage ---

    @property
    def is_sparse(self) -> bool:
        return self._entries is not None

    @property
    def shape(self) -> Tuple[int, ...]:
        return tuple(card for _, card in self.discrete_keys)

    @property
    def table(self) -> jnp.ndarray:
        """Dense table; a sparse factor is expanded to the full product of cardinalities."""
        if self._table is not None:
            return self._table
        shape = self.shape
        flat = [0.0] * math.prod(shape)
        for assignment, value in self._entries.items():
            index = 0
            for i, card in zip(assignment, shape):
                index = index * card + i
            flat[index] = value
        return jnp.reshape(jnp.asarray(flat, dtype=jnp.float64), shape)

    def entries(self) -> Entries:
        """Non-zero entries keyed by assignment tuple (in key order)."""
        if self._entries is not None:
            return dict(self._entries)
        if self._table.ndim == 0:
            value = float(self._table)
            return {(): value} if value > 0.0 else {}
        index = jnp.nonzero(self._table)
        values = self._table[index].tolist()
        rows = zip(*(axis.tolist() for axis in index))
        return {tuple(int(i) for i in row): float(v) for row, v in zip(rows, values)}

    def nnz(self) -> int:
        """Number of assignments with non-zero value."""
        if self._entries is not None:
            return len(self._entries)
        return int(jnp.count_nonzero(self._table))

    # --- Factor interface ---

    @property
    def keys(self) -> Tuple[Key, ...]:
        return tuple(k for k, _ in self.discrete_keys)

    @property
    def continuous_keys(self) -> Tuple[Key, ...]:
        return ()

    def _index(self, assignment: Mapping[Key, int]) -> Tuple[int, ...]:
        missing = [k for k in self.keys if k not in assignment]
        if missing:
            raise MissingAssignmentError(missing)
        return tuple(int(assignment[k]) for k in self.keys)

    def __call__(self, assignment: Mapping[Key, int]) -> float:
        index = self._index(assignment)
        if self._entries is not None:
            return self._entries.get(index, 0.0)
        return float(self._table[index])

    def log_value(self, assignment: Mapping[Key, int]) -> float:
        value = self(assignment)
        return math.log(value) if value > 0.0 else -math.inf

    # --- Table algebra ---

    def _expanded(self, target: Sequence[DiscreteKey]) -> jnp.ndarray:
        """Table transposed and reshaped so it broadcasts against ``target``."""
        position = {k: i for i, (k, _) in enumerate(target)}
        perm = sorted(range(len(self.discrete_keys)), key=lambda i: position[self.discrete_keys[i].key])
        table = jnp.transpose(self._table, perm) if perm else self._table
        shape = [1] * len(target)
        for k, card in self.discrete_keys:
            shape[position[k]] = card
        return jnp.reshape(table, shape)

    def _join(self, other: "DiscreteFactor") -> Entries:
        """Non-zero entries of the product over ``self.keys + other-only keys``."""
        mine = self.keys
        shared = [k for k in other.keys if k in mine]
        own_shared = [mine.index(k) for k in shared]
        other_shared = [other.keys.index(k) for k in shared]
        other_only = [i for i, k in enumerate(other.keys) if k not in mine]
        groups: Dict[Tuple[int, ...], List[Tuple[Tuple[int, ...], float]]] = {}
        for assignment, value in other.entries().items():
            groups.setdefault(tuple(assignment[i] for i in other_shared), []).append(
                (tuple(assignment[i] for i in other_only), value)
            )
        result: Entries = {}
        for assignment, value in self.entries().items():
            for rest, other_value in groups.get(tuple(assignment[i] for i in own_shared), ()):
                result[assignment + rest] = value * other_value
        return result

    def multiply(self, other: "DiscreteFactor") -> "DiscreteFactor":
        union = list(self.discrete_keys)
        seen = set(self.keys)
        for dk in other.discrete_keys:
            if dk.key not in seen:
                union.append(dk)
                seen.add(dk.key)
        if self.is_sparse or other.is_sparse:
            return DiscreteFactor(union, self._join(other))
        table = self._expanded(union) * other._expanded(union)
        return DiscreteFactor(union, jnp.broadcast_to(table, tuple(c for _, c in union)))

    def __mul__(self, other: "DiscreteFactor") -> "DiscreteFactor":
        return self.multiply(other)

    @staticmethod
    def product(factors: Iterable["DiscreteFactor"]) -> "DiscreteFactor":
        """Product of ``factors``; keys appear in order of first occurrence."""
        factors = list(factors)
        union: List[DiscreteKey] = []
        seen = set()
        for f in factors:
            for dk in f.discrete_keys:
                if dk.key not in seen:
                    union.append(dk)
                    seen.add(dk.key)
        result = DiscreteFactor((), 1.0)
        # Sparse tables first, so the running product never densifies.
        for f in sorted(factors, key=lambda f: not f.is_sparse):
            result = result.multiply(f)
        return result.reordered(union)

    def _reduce(
        self,
        keys: Iterable[Key],
        dense_op,
        combine: Callable[[float, float], float],
    ) -> "DiscreteFactor":
        remove = set(keys)
        axes = tuple(i for i, k in enumerate(self.keys) if k in remove)
        kept = [dk for dk in self.discrete_keys if dk.key not in remove]
        if not axes:
            return self
        if self._entries is None:
            return DiscreteFactor(kept, dense_op(self._table, axis=axes))
        positions = [i for i, k in enumerate(self.keys) if k not in remove]
        reduced: Entries = {}
        for assignment, value in self._entries.items():
            index = tuple(assignment[i] for i in positions)
            reduced[index] = combine(reduced.get(index, 0.0), value)
        return DiscreteFactor(kept, reduced)

    def sum_out(self, keys: Iterable[Key]) -> "DiscreteFactor":
        return self._reduce(keys, jnp.sum, lambda a, b: a + b)

    def max_out(self, keys: Iterable[Key]) -> "DiscreteFactor":
        return self._reduce(keys, jnp.max, max)

    def restrict(self, assignment: Mapping[Key, int]) -> "DiscreteFactor":
        """Fix the assigned keys and return the table over the others."""
        kept = [dk for dk in self.discrete_keys if dk.key not in assignment]
        if self._entries is None:
            index = tuple(
                int(assignment[k]) if k in assignment else slice(None) for k in self.keys
            )
            return DiscreteFactor(kept, self._table[index] if index else self._table)
        fixed = [(i, int(assignment[k])) for i, k in enumerate(self.keys) if k in assignment]
        free = [i for i, k in enumerate(self.keys) if k not in assignment]
        return DiscreteFactor(
            kept,
            {
                tuple(a[i] for i in free): v
                for a, v in self._entries.items()
                if all(a[i] == value for i, value in fixed)
            },
        )

    def normalize(self) -> "DiscreteFactor":
        if self._entries is None:
            total = jnp.sum(self._table)
            if float(total) <= 0.0:
                return self
            return DiscreteFactor(self.discrete_keys, self._table / total)
        total = sum(self._entries.values())
        if total <= 0.0:
            return self
        return DiscreteFactor(self.discrete_keys, {a: v / total for a, v in self._entries.items()})

    def scaled_to_max(self) -> "DiscreteFactor":
        """Rescale so the largest entry is one; keeps long products in range."""
        if self._entries is not None:
            peak = max(self._entries.values(), default=0.0)
            if peak <= 0.0:
                return self
            return DiscreteFactor(self.discrete_keys, {a: v / peak for a, v in self._entries.items()})
        peak = jnp.max(self._table) if self._table.size else 1.0
        if float(peak) <= 0.0:
            return self
        return DiscreteFactor(self.discrete_keys, self._table / peak)

    def max_entry(self) -> Tuple[Tuple[int, ...], float]:
        """Largest entry and its assignment; among ties the lowest assignment wins."""
        if self._entries is not None:
            if not self._entries:
                return tuple(0 for _ in self.keys), 0.0
            return min(self._entries.items(), key=lambda item: (-item[1], item[0]))
        if self._table.ndim == 0:
            return (), float(self._table)
        flat = jnp.reshape(self._table, (-1,))
        position = int(jnp.argmax(flat))
        index = jnp.unravel_index(position, self._table.shape)
        return tuple(int(i) for i in index), float(flat[position])

    def reordered(self, keys: Sequence[DiscreteKey]) -> "DiscreteFactor":
        """The same factor with its keys in the order of ``keys`` (same key set)."""
        keys = _as_discrete_keys(keys)
        if set(self.keys) != {k for k, _ in keys}:
            raise ValueError("Key sets differ")
        if keys == self.discrete_keys:
            return self
        if self._entries is None:
            return DiscreteFactor(keys, jnp.broadcast_to(self._expanded(keys), tuple(c for _, c in keys)))
        positions = [self.keys.index(k) for k, _ in keys]
        return DiscreteFactor(
            keys, {tuple(a[i] for i in positions): v for a, v in self._entries.items()}
        )

    def aligned_table(self, keys: Sequence[DiscreteKey]) -> jnp.ndarray:
        """Dense table with axes permuted into the order of ``keys`` (same key set)."""
        return self.reordered(keys).table

    def equals(self, other: "DiscreteFactor", tol: float = 1e-9) -> bool:
        if not isinstance(other, DiscreteFactor) or set(self.discrete_keys) != set(other.discrete_keys):
            return False
        if not (self.is_sparse or other.is_sparse):
            return bool(jnp.allclose(self._table, other.aligned_table(self.discrete_keys), atol=tol, rtol=0.0))
        mine = self.entries()
        theirs = other.reordered(self.discrete_keys).entries()
        return all(
            abs(mine.get(a, 0.0) - theirs.get(a, 0.0)) <= tol for a in set(mine) | set(theirs)
        )

    def __repr__(self) -> str:
        names = ", ".join(key_to_str(k) for k in self.keys)
        return f"{type(self).__name__}({names})"


class DiscreteConditional(DiscreteFactor):
    """P(frontals | parents) stored as a table over ``frontals + parents``."""

    def __init__(
        self,
        frontals: Sequence[DiscreteKey],
        parents: Sequence[DiscreteKey],
        table,
    ) -> None:
        frontals = _as_discrete_keys(frontals)
        parents = _as_discrete_keys(parents)
        super().__init__(frontals + parents, table)
        self.nr_frontals = len(frontals)

    @staticmethod
    def from_factor(factor: DiscreteFactor, frontal_keys: Sequence[Key]) -> "DiscreteConditional":
        """Normalize a joint factor over the frontal keys.

        Parent assignments whose frontal entries are all zero stay all-zero,
        which marks them as infeasible rather than producing NaNs. A sparse
        factor gives a sparse conditional.
        """
        frontal_set = set(frontal_keys)
        by_key = {dk.key: dk for dk in factor.discrete_keys}
        frontals = [by_key[k] for k in frontal_keys]
        parents = [dk for dk in factor.discrete_keys if dk.key not in frontal_set]
        if factor.is_sparse:
            entries = factor.reordered(frontals + parents).entries()
            n = len(frontals)
            totals: Entries = {}
            for a, v in entries.items():
                totals[a[n:]] = totals.get(a[n:], 0.0) + v
            return DiscreteConditional(
                frontals, parents, {a: v / totals[a[n:]] for a, v in entries.items()}
            )
        table = factor.aligned_table(frontals + parents)
        axes = tuple(range(len(frontals)))
        total = jnp.sum(table, axis=axes, keepdims=True)
        safe = jnp.where(total > 0.0, total, 1.0)
        return DiscreteConditional(frontals, parents, jnp.where(total > 0.0, table / safe, 0.0))

    @staticmethod
    def from_signature(
        key: DiscreteKey,
        parents: Sequence[DiscreteKey],
        signature: str,
    ) -> "DiscreteConditional":
        key = DiscreteKey(Key(int(key[0])), int(key[1]))
        parents = _as_discrete_keys(parents)
        rows = signature.split()
        n_rows = math.prod(card for _, card in parents)
        if len(rows) != n_rows:
            raise ValueError(
                f"Signature '{signature}' has {len(rows)} rows, expected {n_rows}"
            )
        values: List[List[float]] = []
        for row in rows:
            entries = [float(v) for v in row.split("/")]
            if len(entries) != key.cardinality:
                raise ValueError(
                    f"Signature row '{row}' has {len(entries)} entries, expected {key.cardinality}"
                )
            total = sum(entries)
            if total <= 0.0:
                raise ValueError(f"Signature row '{row}' has no positive weight")
            values.append([v / total for v in entries])
        table = jnp.asarray(values, dtype=jnp.float64)
        table = jnp.reshape(table, tuple(c for _, c in parents) + (key.cardinality,))
        table = jnp.moveaxis(table, -1, 0)
        return DiscreteConditional([key], parents, table)

    @property
    def frontals(self) -> Tuple[DiscreteKey, ...]:
        return self.discrete_keys[: self.nr_frontals]

    @property
    def parents(self) -> Tuple[DiscreteKey, ...]:
        return self.discrete_keys[self.nr_frontals:]

    @property
    def frontal_keys(self) -> Tuple[Key, ...]:
        return tuple(k for k, _ in self.frontals)

    @property
    def parent_keys(self) -> Tuple[Key, ...]:
        return tuple(k for k, _ in self.parents)

    def probability(self, assignment: Mapping[Key, int]) -> float:
        return self(assignment)

    def log_probability(self, assignment: Mapping[Key, int]) -> float:
        return self.log_value(assignment)

    def argmax(self, parent_assignment: Optional[Mapping[Key, int]] = None) -> DiscreteValues:
        """Most probable frontal values for a given parent assignment."""
        parent_assignment = parent_assignment or {}
        missing = [k for k in self.parent_keys if k not in parent_assignment]
        if missing:
            raise MissingAssignmentError(missing)
        sliced = self.restrict({k: parent_assignment[k] for k in self.parent_keys})
        index, _ = sliced.max_entry()
        return DiscreteValues({k: int(i) for k, i in zip(sliced.keys, index)})

    def to_factor(self) -> DiscreteFactor:
        return DiscreteFactor(self.discrete_keys, self.entries() if self.is_sparse else self.table)

    def equals(self, other, tol: float = 1e-9) -> bool:
        return (
            isinstance(other, DiscreteConditional)
            and self.frontals == other.frontals
            and self.parents == other.parents
            and super().equals(other, tol)
        )

    def __repr__(self) -> str:
        front = ", ".join(key_to_str(k) for k in self.frontal_keys)
        if not self.parents:
            return f"DiscreteConditional(P({front}))"
        par = ", ".join(key_to_str(k) for k in self.parent_keys)
        return f"DiscreteConditional(P({front} | {par}))"


def max_product_assignment(
    factors: Sequence[DiscreteFactor],
    ordering: Optional[Sequence[Key]] = None,
) -> Tuple[DiscreteValues, float]:
    """Exact joint argmax of a product of discrete factors.

    Keys are maxed out one at a time in ``ordering`` (sorted keys by
    default); the assignment is then recovered by back-substitution in
    reverse order. Among equal maxima the lowest value index wins.

    Returns:
        The maximizing assignment and the *log* of the (unnormalized)
        product at that assignment, summed factor by factor so that long
        products do not underflow. ``-inf`` means every assignment is
        infeasible.
    """
    all_keys = sorted({k for f in factors for k in f.keys})
    if ordering is None:
        ordering = all_keys
    missing = set(all_keys) - set(ordering)
    if missing:
        raise ValueError(f"Ordering misses discrete keys {sorted(missing)}")

    working: List[DiscreteFactor] = list(factors)
    trace: List[Tuple[Key, DiscreteFactor]] = []
    for key in ordering:
        touching = [f for f in working if key in f.keys]
        if not touching:
            continue
        working = [f for f in working if key not in f.keys]
        joint = DiscreteFactor.product(touching)
        trace.append((key, joint))
        reduced = joint.max_out([key])
        if reduced.discrete_keys:
            working.append(reduced.scaled_to_max())

    result = DiscreteValues()
    for key, joint in reversed(trace):
        index, _ = joint.restrict(result).max_entry()
        result[key] = int(index[0])

    return result, math.fsum(f.log_value(result) for f in factors)


def discrete_joint(factors: Sequence[DiscreteFactor]) -> DiscreteFactor:
    """Product of factors with keys sorted ascending, for leaf enumeration."""
    joint = DiscreteFactor.product(factors)
    return joint.reordered(sorted(joint.discrete_keys))
