# Copyright (c) 2025.
# This file is part of hybrid-isam, released under the MIT License.
"""
Bounding the number of discrete hypotheses.

Every joint assignment of the discrete variables is a *leaf*. Its weight is
the product of all discrete conditionals, times zero if the assignment
reaches a pruned mixture branch. Pruning keeps the ``max_leaves`` heaviest
leaves and removes everything else:

* all discrete conditionals are replaced by one joint conditional over every
  discrete key, holding exactly the kept leaves with their weights
  renormalized (a sparse table),
* mixture branches whose assignment agrees with no kept leaf are dropped.

Masking each discrete conditional separately is not equivalent: the product
of masked factors contains every combination of their surviving rows, which
re-introduces leaves that were never kept and reweights the kept ones. The
single joint table is the only exact representation of the kept set.

Ties are broken on the assignment tuple, taken in ascending key order: the
lexicographically lower assignment ranks first. Leaves of weight zero are
never kept, so pruning can only shrink the hypothesis set.

Pruning is lossy and never happens implicitly; callers invoke it through
``HybridBayesNet.prune``, ``HybridBayesTree.prune`` or the ISAM controller.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence, Set, Tuple

from hybrid_isam.core.keys import DiscreteKey, Key
from hybrid_isam.inference.discrete import DiscreteConditional, DiscreteFactor, discrete_joint
from hybrid_isam.inference.mixture import GaussianMixtureConditional, HybridConditional

from .conditionals import discrete_factors

logger = logging.getLogger(__name__)

Leaf = Tuple[int, ...]


def leaf_table(conditionals: Sequence[HybridConditional]) -> Optional[DiscreteFactor]:
    """Joint leaf weights over all discrete keys, keys in ascending order."""
    factors = discrete_factors(conditionals)
    if not factors:
        return None
    return discrete_joint(factors)


def count_leaves(conditionals: Sequence[HybridConditional]) -> int:
    """Number of discrete assignments with non-zero weight."""
    joint = leaf_table(conditionals)
    if joint is None:
        return 0
    return joint.nnz()


def select_leaves(joint: DiscreteFactor, max_leaves: int) -> List[Leaf]:
    """The ``max_leaves`` heaviest non-zero leaves, heaviest first."""
    if max_leaves < 1:
        raise ValueError(f"max_leaves must be at least 1, got {max_leaves}")
    ranked = sorted(joint.entries().items(), key=lambda item: (-item[1], item[0]))
    return [leaf for leaf, _ in ranked[:max_leaves]]


def _projections(kept: Sequence[Leaf], keys: Sequence[DiscreteKey], position: Dict[Key, int]) -> Set[Leaf]:
    return {tuple(leaf[position[k]] for k, _ in keys) for leaf in kept}


def prune_conditionals(
    conditionals: Sequence[HybridConditional],
    max_leaves: int,
) -> Tuple[List[HybridConditional], Optional[DiscreteConditional]]:
    """Prune a set of conditionals down to ``max_leaves`` discrete leaves.

    Args:
        conditionals: Conditionals of a Bayes net or Bayes tree.
        max_leaves: Number of discrete leaves to keep (at least 1).

    Returns:
        ``(others, joint)``: the non-discrete conditionals in their original
        order, with mixtures pruned, and the sparse joint conditional over
        all discrete keys that replaces every discrete conditional. ``joint``
        is ``None`` when there are no discrete variables. The inputs are not
        modified.
    """
    if max_leaves < 1:
        raise ValueError(f"max_leaves must be at least 1, got {max_leaves}")
    joint = leaf_table(conditionals)
    if joint is None:
        return list(conditionals), None

    keys = joint.discrete_keys
    position = {k: i for i, (k, _) in enumerate(keys)}
    weights = joint.entries()
    kept = select_leaves(joint, max_leaves)
    logger.debug("Pruning %d discrete leaves down to %d", len(weights), len(kept))

    others: List[HybridConditional] = []
    for c in conditionals:
        if isinstance(c, GaussianMixtureConditional):
            allowed = _projections(kept, c.discrete_parents, position)
            others.append(c.prune(lambda a, allowed=allowed: a in allowed))
        elif not isinstance(c, DiscreteConditional):
            others.append(c)

    total = sum(weights[leaf] for leaf in kept)
    merged = DiscreteConditional(keys, (), {leaf: weights[leaf] / total for leaf in kept})
    return others, merged
