# Copyright (c) 2025.
# This file is part of hybrid-isam, released under the MIT License.
"""
Hybrid Gaussian factor graph.

An unordered collection of linear(ized) factors of three kinds:

* :class:`DiscreteFactor` / :class:`DiscreteConditional` over discrete keys,
* :class:`GaussianFactor` over continuous keys,
* :class:`GaussianMixtureFactor`, Gaussian factors selected by discrete keys.

It is the input of every elimination::

    graph = HybridGaussianFactorGraph()
    graph.push_back(prior)
    graph.push_back(mixture)
    bn = graph.eliminate_sequential()      # HybridBayesNet
    tree = graph.eliminate_multifrontal()  # HybridBayesTree

Without an explicit ordering both use :meth:`hybrid_ordering`.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

from hybrid_isam.core.config import EliminationConfig
from hybrid_isam.core.errors import OrderingError
from hybrid_isam.core.keys import DiscreteKey, Key, Ordering, key_to_str
from hybrid_isam.core.values import HybridValues
from hybrid_isam.inference.discrete import DiscreteFactor
from hybrid_isam.inference.gaussian import GaussianFactor
from hybrid_isam.inference.mixture import GaussianMixtureFactor

from .bayes_net import HybridBayesNet
from .bayes_tree import HybridBayesTree
from .elimination import (
    EliminateFn,
    eliminate_hybrid,
    eliminate_multifrontal,
    eliminate_partial_sequential,
)
from .ordering import hybrid_ordering, key_partition, min_degree_ordering

HybridFactor = Union[DiscreteFactor, GaussianFactor, GaussianMixtureFactor]


def factor_log_value(factor: HybridFactor, values: HybridValues) -> float:
    if isinstance(factor, DiscreteFactor):
        return factor.log_value(values.discrete())
    if isinstance(factor, GaussianMixtureFactor):
        return factor.log_value(values)
    if isinstance(factor, GaussianFactor):
        return factor.log_value(values.continuous())
    raise TypeError(f"Not a hybrid factor: {factor!r}")


class HybridGaussianFactorGraph:
    """Collection of discrete, Gaussian and mixture factors."""

    def __init__(self, factors: Iterable[HybridFactor] = ()) -> None:
        self.factors: List[HybridFactor] = []
        self.push_back(factors)

    def push_back(self, factor) -> None:
        """Add one factor, or every factor of an iterable (including another graph)."""
        if isinstance(factor, (DiscreteFactor, GaussianFactor, GaussianMixtureFactor)):
            self.factors.append(factor)
            return
        for f in factor:
            self.push_back(f)

    add = push_back

    def __len__(self) -> int:
        return len(self.factors)

    def __iter__(self):
        return iter(self.factors)

    def __getitem__(self, i: int) -> HybridFactor:
        return self.factors[i]

    def keys(self) -> Set[Key]:
        return {k for f in self.factors for k in f.keys}

    def continuous_keys(self) -> Dict[Key, int]:
        """Continuous keys and their dimensions."""
        dims: Dict[Key, int] = {}
        for f in self.factors:
            if not isinstance(f, DiscreteFactor):
                dims.update(f.dims())
        return dims

    def discrete_keys(self) -> List[DiscreteKey]:
        found: Dict[Key, DiscreteKey] = {}
        for f in self.factors:
            found.update({dk.key: dk for dk in f.discrete_keys})
        return [found[k] for k in sorted(found)]

    def log_value(self, values: HybridValues) -> float:
        """Unnormalized log density of a full hybrid assignment."""
        return sum(factor_log_value(f, values) for f in self.factors)

    def hybrid_ordering(self) -> Ordering:
        return hybrid_ordering(self.factors)

    def min_degree_ordering(self) -> Ordering:
        return min_degree_ordering(self.factors)

    # --- Elimination ---

    def eliminate_partial_sequential(
        self,
        ordering: Sequence[Key],
        config: Optional[EliminationConfig] = None,
        eliminate: EliminateFn = eliminate_hybrid,
    ) -> Tuple[HybridBayesNet, "HybridGaussianFactorGraph"]:
        conditionals, remaining = eliminate_partial_sequential(
            self.factors, ordering, config, eliminate
        )
        return HybridBayesNet(conditionals), HybridGaussianFactorGraph(remaining)

    def eliminate_sequential(
        self,
        ordering: Optional[Sequence[Key]] = None,
        config: Optional[EliminationConfig] = None,
        eliminate: EliminateFn = eliminate_hybrid,
    ) -> HybridBayesNet:
        """Eliminate every variable into a :class:`HybridBayesNet`.

        Raises:
            OrderingError: if ``ordering`` leaves variables uneliminated.
        """
        if ordering is None:
            ordering = self.hybrid_ordering()
        leftover = self.keys() - set(ordering)
        if leftover:
            names = ", ".join(key_to_str(k) for k in sorted(leftover))
            raise OrderingError(f"Ordering does not cover keys {names}")
        bn, _ = self.eliminate_partial_sequential(ordering, config, eliminate)
        return bn

    def eliminate_multifrontal(
        self,
        ordering: Optional[Sequence[Key]] = None,
        config: Optional[EliminationConfig] = None,
        eliminate: EliminateFn = eliminate_hybrid,
    ) -> HybridBayesTree:
        if ordering is None:
            ordering = self.hybrid_ordering()
        cliques, roots = eliminate_multifrontal(self.factors, ordering, config, eliminate)
        return HybridBayesTree(cliques, roots)

    def __repr__(self) -> str:
        continuous, discrete = key_partition(self.factors)
        return (
            f"HybridGaussianFactorGraph({len(self)} factors, "
            f"{len(continuous)} continuous, {len(discrete)} discrete keys)"
        )
