# Copyright (c) 2025.
# This file is part of hybrid-isam, released under the MIT License.
"""
Hybrid Bayes net: the output of sequential hybrid elimination.

An ordered list of discrete, Gaussian and Gaussian-mixture conditionals in
elimination order, so no conditional depends on a variable eliminated
before it. Typical use::

    bn = graph.eliminate_sequential()
    solution = bn.optimize()                 # HybridValues (exact MAP)
    delta = bn.optimize(solution.discrete()) # VectorValues for fixed modes
    gbn = bn.choose(solution.discrete())     # GaussianBayesNet

Nets can also be written by hand, e.g. with :meth:`add_discrete` for
signature-string priors. They pickle like any other Python object.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from hybrid_isam.core.keys import DiscreteKey, Key
from hybrid_isam.core.values import DiscreteValues, HybridValues
from hybrid_isam.inference.discrete import DiscreteConditional
from hybrid_isam.inference.gaussian import GaussianBayesNet
from hybrid_isam.inference.mixture import GaussianMixtureConditional, HybridConditional

from . import conditionals as ops
from .pruning import prune_conditionals


class HybridBayesNet:
    """Ordered product of hybrid conditionals."""

    def __init__(self, conditionals: Iterable[HybridConditional] = ()) -> None:
        self.conditionals: List[HybridConditional] = list(conditionals)

    def push_back(self, conditional: HybridConditional) -> None:
        self.conditionals.append(conditional)

    def add_discrete(
        self,
        key: DiscreteKey,
        signature: str,
        parents: Sequence[DiscreteKey] = (),
    ) -> DiscreteConditional:
        """Append ``P(key | parents)`` given as a signature string such as ``"1/2 3/2"``."""
        conditional = DiscreteConditional.from_signature(key, parents, signature)
        self.push_back(conditional)
        return conditional

    def __len__(self) -> int:
        return len(self.conditionals)

    def __iter__(self):
        return iter(self.conditionals)

    def __getitem__(self, i: int) -> HybridConditional:
        return self.conditionals[i]

    def at(self, i: int) -> HybridConditional:
        return self.conditionals[i]

    def at_discrete(self, i: int) -> DiscreteConditional:
        c = self.conditionals[i]
        if not isinstance(c, DiscreteConditional):
            raise TypeError(f"Conditional {i} is {type(c).__name__}, not DiscreteConditional")
        return c

    def at_mixture(self, i: int) -> GaussianMixtureConditional:
        c = self.conditionals[i]
        if not isinstance(c, GaussianMixtureConditional):
            raise TypeError(f"Conditional {i} is {type(c).__name__}, not GaussianMixtureConditional")
        return c

    def discrete_keys(self) -> List[DiscreteKey]:
        found: Dict[Key, DiscreteKey] = {}
        for c in self.conditionals:
            if isinstance(c, DiscreteConditional):
                found.update({dk.key: dk for dk in c.discrete_keys})
            elif isinstance(c, GaussianMixtureConditional):
                found.update({dk.key: dk for dk in c.discrete_parents})
        return [found[k] for k in sorted(found)]

    def choose(self, assignment: Mapping[Key, int]) -> GaussianBayesNet:
        """Select the Gaussian branch of every mixture; discrete conditionals are dropped.

        Raises:
            MissingAssignmentError: if a mixture's discrete parent is unassigned.
            InfeasibleAssignmentError: if the assignment selects a pruned branch.
        """
        return ops.choose(self.conditionals, assignment)

    def map_assignment(self) -> DiscreteValues:
        """Exact discrete MAP by max-product over the discrete part of the net."""
        return ops.map_assignment(self.conditionals)

    def optimize(self, assignment: Optional[Mapping[Key, int]] = None):
        """Hybrid MAP, or back-substitution under a caller-supplied assignment.

        Returns:
            ``HybridValues`` when called without an assignment, otherwise the
            ``VectorValues`` of ``choose(assignment).optimize()``.
        """
        if assignment is not None:
            return self.choose(assignment).optimize()
        mpe = self.map_assignment()
        return HybridValues(self.choose(mpe).optimize(), mpe)

    def log_density(self, values: HybridValues) -> float:
        return sum(ops.log_density(c, values) for c in self.conditionals)

    def prune(self, max_leaves: int) -> "HybridBayesNet":
        """Copy with at most ``max_leaves`` discrete hypotheses.

        All discrete conditionals are replaced by one joint conditional over
        the surviving leaves, appended at the end of the net.
        """
        others, joint = prune_conditionals(self.conditionals, max_leaves)
        return HybridBayesNet(others if joint is None else others + [joint])

    def equals(self, other: "HybridBayesNet", tol: float = 1e-9) -> bool:
        if not isinstance(other, HybridBayesNet) or len(self) != len(other):
            return False
        return all(
            type(a) is type(b) and a.equals(b, tol)
            for a, b in zip(self.conditionals, other.conditionals)
        )

    def __repr__(self) -> str:
        body = "\n".join(f"  {i}: {c!r}" for i, c in enumerate(self.conditionals))
        return f"HybridBayesNet(\n{body}\n)"
