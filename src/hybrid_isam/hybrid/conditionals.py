# Copyright (c) 2025.
# This file is part of hybrid-isam, released under the MIT License.
"""
Operations shared by every container of hybrid conditionals.

A hybrid Bayes net and a hybrid Bayes tree differ only in how they arrange
their conditionals; the queries (discrete MAP, choosing a Gaussian Bayes net,
evaluating a log density) work on any sequence of conditionals ordered so
that parents come after their children. Both containers delegate here.
"""

from __future__ import annotations

import math
from typing import Iterable, List, Mapping, Optional, Sequence

from hybrid_isam.core.errors import NoFeasibleAssignmentError
from hybrid_isam.core.keys import Key
from hybrid_isam.core.values import DiscreteValues, HybridValues
from hybrid_isam.inference.discrete import (
    DiscreteConditional,
    DiscreteFactor,
    max_product_assignment,
)
from hybrid_isam.inference.gaussian import GaussianBayesNet, GaussianConditional
from hybrid_isam.inference.mixture import GaussianMixtureConditional, HybridConditional


def discrete_factors(conditionals: Iterable[HybridConditional]) -> List[DiscreteFactor]:
    """Discrete conditionals plus the branch-feasibility table of every mixture.

    Multiplying these gives the (unnormalized) weight of every joint discrete
    assignment; an assignment that reaches a pruned branch gets weight zero.
    """
    factors: List[DiscreteFactor] = []
    for c in conditionals:
        if isinstance(c, DiscreteConditional):
            factors.append(c)
        elif isinstance(c, GaussianMixtureConditional):
            factors.append(c.feasibility_factor())
    return factors


def map_assignment(
    conditionals: Sequence[HybridConditional],
    ordering: Optional[Sequence[Key]] = None,
) -> DiscreteValues:
    """Exact most probable discrete assignment of a set of conditionals.

    Raises:
        NoFeasibleAssignmentError: if every assignment has zero weight.
    """
    factors = discrete_factors(conditionals)
    if not factors:
        return DiscreteValues()
    if ordering is not None:
        ordering = list(ordering)
        seen = set(ordering)
        ordering += sorted({k for f in factors for k in f.keys} - seen)
    assignment, value = max_product_assignment(factors, ordering)
    if value == -math.inf:
        raise NoFeasibleAssignmentError("Every discrete assignment has been pruned")
    return assignment


def choose(
    conditionals: Iterable[HybridConditional],
    assignment: Mapping[Key, int],
) -> GaussianBayesNet:
    """Gaussian Bayes net selected by a discrete assignment; discrete conditionals are dropped."""
    net = GaussianBayesNet()
    for c in conditionals:
        if isinstance(c, GaussianMixtureConditional):
            net.push_back(c.choose(assignment))
        elif isinstance(c, GaussianConditional):
            net.push_back(c)
    return net


def log_density(conditional: HybridConditional, values: HybridValues) -> float:
    if isinstance(conditional, DiscreteConditional):
        return conditional.log_probability(values.discrete())
    if isinstance(conditional, GaussianMixtureConditional):
        return conditional.log_density(values)
    if isinstance(conditional, GaussianConditional):
        return conditional.log_density(values.continuous())
    raise TypeError(f"Not a hybrid conditional: {conditional!r}")
