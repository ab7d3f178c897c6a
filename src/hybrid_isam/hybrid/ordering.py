# Copyright (c) 2025.
# This file is part of hybrid-isam, released under the MIT License.
"""
Elimination orderings for hybrid factor graphs.

A hybrid ordering must place every continuous key before any discrete key
that a Gaussian or mixture factor touches, since a discrete variable can only
be summed out once all the Gaussians it selects have been eliminated. Both
helpers here respect that by ordering the continuous group first.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Set

from hybrid_isam.core.keys import Key, Ordering


def key_partition(factors: Iterable) -> tuple:
    """Split the keys of ``factors`` into (continuous, discrete) sets."""
    continuous: Set[Key] = set()
    discrete: Set[Key] = set()
    for f in factors:
        continuous.update(f.continuous_keys)
        discrete.update(k for k, _ in f.discrete_keys)
    clash = continuous & discrete
    if clash:
        raise ValueError(f"Keys used both as continuous and discrete: {sorted(clash)}")
    return continuous, discrete


def hybrid_ordering(factors: Iterable) -> Ordering:
    """Continuous keys in ascending order, then discrete keys in ascending order."""
    continuous, discrete = key_partition(factors)
    return sorted(continuous) + sorted(discrete)


def _min_degree(group: Set[Key], adjacency: Dict[Key, Set[Key]]) -> List[Key]:
    order: List[Key] = []
    remaining = set(group)
    while remaining:
        # Lowest key wins among equal degrees.
        key = min(remaining, key=lambda k: (len(adjacency[k]), k))
        neighbours = adjacency.pop(key)
        for n in neighbours:
            adjacency[n].discard(key)
            adjacency[n].update(neighbours - {n})
        remaining.discard(key)
        order.append(key)
    return order


def min_degree_ordering(factors: Iterable) -> Ordering:
    """Greedy minimum-degree inside the continuous group, then the discrete one."""
    factors = list(factors)
    continuous, discrete = key_partition(factors)
    adjacency: Dict[Key, Set[Key]] = {k: set() for k in continuous | discrete}
    for f in factors:
        keys = set(f.keys)
        for k in keys:
            adjacency[k].update(keys - {k})
    return _min_degree(continuous, adjacency) + _min_degree(discrete, adjacency)
