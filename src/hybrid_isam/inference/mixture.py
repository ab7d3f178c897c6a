# Copyright (c) 2025.
# This file is part of hybrid-isam, released under the MIT License.
"""
Gaussian mixture factors and conditionals.

A mixture is a family of Gaussian objects indexed by an assignment to a set
of discrete keys. Components are stored sparsely in a dict keyed by the
assignment tuple, taken in the order of ``discrete_keys``. An assignment
that is absent from the dict (or was given as ``None``) is a pruned branch
with density zero, so a heavily pruned mixture costs memory proportional to
its surviving branches only.

GaussianMixtureFactor
    What a switching measurement linearizes to: one Gaussian factor per mode,
    all over the same continuous keys.

GaussianMixtureConditional
    What eliminating a continuous variable from mixture factors produces:
    one normalized Gaussian conditional per discrete assignment, all with the
    same frontals and continuous parents.
"""

from __future__ import annotations

from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from hybrid_isam.core.errors import InfeasibleAssignmentError, MissingAssignmentError
from hybrid_isam.core.keys import DiscreteKey, Key, key_to_str
from hybrid_isam.core.values import HybridValues

from .discrete import DiscreteConditional, DiscreteFactor, _as_discrete_keys, assignments
from .gaussian import GaussianConditional, GaussianFactor

Assignment = Tuple[int, ...]


def _branch_index(discrete_keys: Sequence[DiscreteKey], assignment: Mapping[Key, int]) -> Assignment:
    missing = [k for k, _ in discrete_keys if k not in assignment]
    if missing:
        raise MissingAssignmentError(missing)
    return tuple(int(assignment[k]) for k, _ in discrete_keys)


def _present_branches(discrete_keys, branches: Mapping) -> Dict[Assignment, object]:
    """Drop pruned (``None``) branches and validate the assignment tuples."""
    cards = [card for _, card in discrete_keys]
    present = {}
    for a, value in branches.items():
        a = tuple(int(i) for i in a)
        if len(a) != len(cards) or any(not 0 <= i < card for i, card in zip(a, cards)):
            raise ValueError(f"Branch {a} does not fit the discrete keys")
        if value is not None:
            present[a] = value
    return present


def feasible_branches(
    discrete_keys: Sequence[DiscreteKey],
    mixtures: Sequence,
) -> List[Assignment]:
    """Assignments of ``discrete_keys`` on which every mixture has a branch.

    ``mixtures`` may hold anything with ``discrete_keys`` and ``branches()``.

    The stored branches of the mixtures are joined on their shared keys, so
    the work is proportional to the surviving branches rather than to the
    full product of cardinalities. Keys that no mixture depends on range
    over all their values. The result is sorted (row-major order).
    """
    discrete_keys = _as_discrete_keys(discrete_keys)
    rows: List[Dict[Key, int]] = [{}]
    for mixture in mixtures:
        mixture_keys = [k for k, _ in mixture.discrete_keys]
        joined = []
        for row in rows:
            for a in mixture.branches():
                if all(row.get(k, i) == i for k, i in zip(mixture_keys, a)):
                    merged = dict(row)
                    merged.update(zip(mixture_keys, a))
                    joined.append(merged)
        rows = joined
        if not rows:
            return []
    covered = {k for row in rows[:1] for k in row}
    free = [dk for dk in discrete_keys if dk.key not in covered]
    result = set()
    for row in rows:
        for rest in assignments(free):
            full = dict(row)
            full.update(zip((k for k, _ in free), rest))
            result.add(tuple(full[k] for k, _ in discrete_keys))
    return sorted(result)


class GaussianMixtureFactor:
    """Gaussian factors over the same continuous keys, selected by discrete keys."""

    def __init__(
        self,
        keys: Sequence[Key],
        discrete_keys: Sequence[DiscreteKey],
        components: Mapping[Assignment, Optional[GaussianFactor]],
    ) -> None:
        self.continuous_keys = tuple(Key(int(k)) for k in keys)
        self.discrete_keys = _as_discrete_keys(discrete_keys)
        self.components: Dict[Assignment, GaussianFactor] = _present_branches(
            self.discrete_keys, components
        )
        for f in self.components.values():
            if set(f.keys) != set(self.continuous_keys):
                raise ValueError("Mixture components must share the continuous keys")

    @staticmethod
    def from_list(
        keys: Sequence[Key],
        discrete_keys: Sequence[DiscreteKey],
        factors: Sequence[Optional[GaussianFactor]],
    ) -> "GaussianMixtureFactor":
        """Components listed in row-major order of the discrete assignments."""
        discrete_keys = _as_discrete_keys(discrete_keys)
        branches = list(assignments(discrete_keys))
        if len(branches) != len(factors):
            raise ValueError(f"Expected {len(branches)} components, got {len(factors)}")
        return GaussianMixtureFactor(keys, discrete_keys, dict(zip(branches, factors)))

    @property
    def keys(self) -> Tuple[Key, ...]:
        return self.continuous_keys + tuple(k for k, _ in self.discrete_keys)

    def branches(self) -> List[Assignment]:
        return sorted(self.components)

    def dims(self) -> Dict[Key, int]:
        for f in self.components.values():
            return f.dims()
        return {}

    def component(self, assignment: Mapping[Key, int]) -> Optional[GaussianFactor]:
        """Factor for the assignment, or ``None`` if that branch is pruned."""
        return self.components.get(_branch_index(self.discrete_keys, assignment))

    def log_value(self, values: HybridValues) -> float:
        f = self.component(values.discrete())
        if f is None:
            return -float("inf")
        return f.log_value(values.continuous())

    def equals(self, other, tol: float = 1e-9) -> bool:
        if not isinstance(other, GaussianMixtureFactor):
            return False
        if (self.continuous_keys, self.discrete_keys) != (other.continuous_keys, other.discrete_keys):
            return False
        if set(self.components) != set(other.components):
            return False
        return all(f.equals(other.components[a], tol) for a, f in self.components.items())

    def __repr__(self) -> str:
        cont = ", ".join(key_to_str(k) for k in self.continuous_keys)
        disc = ", ".join(key_to_str(k) for k, _ in self.discrete_keys)
        return f"GaussianMixtureFactor({cont}; {disc})"


class GaussianMixtureConditional:
    """p(frontals | continuous parents, discrete parents) as one Gaussian per branch."""

    def __init__(
        self,
        frontals: Sequence[Key],
        parents: Sequence[Key],
        discrete_parents: Sequence[DiscreteKey],
        conditionals: Mapping[Assignment, Optional[GaussianConditional]],
        dims: Optional[Mapping[Key, int]] = None,
    ) -> None:
        self.frontals = tuple(Key(int(k)) for k in frontals)
        self.parents = tuple(Key(int(k)) for k in parents)
        self.discrete_parents = _as_discrete_keys(discrete_parents)
        self.conditionals: Dict[Assignment, GaussianConditional] = _present_branches(
            self.discrete_parents, conditionals
        )
        for c in self.conditionals.values():
            if c.frontals != self.frontals or c.parents != self.parents:
                raise ValueError("Mixture branches must share frontals and parents")
        if dims is None:
            if not self.conditionals:
                raise ValueError("Dimensions are required when every branch is pruned")
            dims = next(iter(self.conditionals.values())).dims()
        self._dims = dict(dims)

    @staticmethod
    def from_list(
        frontals: Sequence[Key],
        parents: Sequence[Key],
        discrete_parents: Sequence[DiscreteKey],
        conditionals: Sequence[Optional[GaussianConditional]],
    ) -> "GaussianMixtureConditional":
        discrete_parents = _as_discrete_keys(discrete_parents)
        branches = list(assignments(discrete_parents))
        if len(branches) != len(conditionals):
            raise ValueError(f"Expected {len(branches)} branches, got {len(conditionals)}")
        return GaussianMixtureConditional(
            frontals, parents, discrete_parents, dict(zip(branches, conditionals))
        )

    @property
    def frontal_keys(self) -> Tuple[Key, ...]:
        return self.frontals

    @property
    def parent_keys(self) -> Tuple[Key, ...]:
        return self.parents + tuple(k for k, _ in self.discrete_parents)

    @property
    def keys(self) -> Tuple[Key, ...]:
        return self.frontal_keys + self.parent_keys

    def branches(self) -> List[Assignment]:
        return sorted(self.conditionals)

    def dims(self) -> Dict[Key, int]:
        return dict(self._dims)

    def nr_feasible(self) -> int:
        return len(self.conditionals)

    def choose(self, assignment: Mapping[Key, int]) -> GaussianConditional:
        """Select the Gaussian branch for a discrete assignment.

        Raises:
            MissingAssignmentError: if a discrete parent has no value.
            InfeasibleAssignmentError: if the selected branch was pruned.
        """
        index = _branch_index(self.discrete_parents, assignment)
        conditional = self.conditionals.get(index)
        if conditional is None:
            raise InfeasibleAssignmentError(
                f"Branch {index} of {self!r} has been pruned"
            )
        return conditional

    def feasibility_factor(self) -> DiscreteFactor:
        """Sparse indicator over the discrete parents: 1 where a branch survives."""
        return DiscreteFactor(self.discrete_parents, {a: 1.0 for a in self.conditionals})

    def prune(self, keep: Callable[[Assignment], bool]) -> "GaussianMixtureConditional":
        """Copy with every branch for which ``keep`` is false removed."""
        return GaussianMixtureConditional(
            self.frontals,
            self.parents,
            self.discrete_parents,
            {a: c for a, c in self.conditionals.items() if keep(a)},
            self._dims,
        )

    def log_density(self, values: HybridValues) -> float:
        index = _branch_index(self.discrete_parents, values.discrete())
        conditional = self.conditionals.get(index)
        if conditional is None:
            return -float("inf")
        return conditional.log_density(values.continuous())

    def to_factor(self) -> GaussianMixtureFactor:
        return GaussianMixtureFactor(
            self.frontals + self.parents,
            self.discrete_parents,
            {a: c.to_factor() for a, c in self.conditionals.items()},
        )

    def equals(self, other, tol: float = 1e-9) -> bool:
        if not isinstance(other, GaussianMixtureConditional):
            return False
        if (self.frontals, self.parents, self.discrete_parents) != (
            other.frontals, other.parents, other.discrete_parents
        ):
            return False
        if set(self.conditionals) != set(other.conditionals):
            return False
        return all(c.equals(other.conditionals[a], tol) for a, c in self.conditionals.items())

    def __repr__(self) -> str:
        front = ", ".join(key_to_str(k) for k in self.frontals)
        par = ", ".join(key_to_str(k) for k in self.parent_keys)
        return f"GaussianMixtureConditional(p({front} | {par}))"


# Anything a hybrid elimination step can produce.
HybridConditional = Union[DiscreteConditional, GaussianConditional, GaussianMixtureConditional]
