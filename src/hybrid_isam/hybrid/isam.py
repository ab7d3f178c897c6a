# Copyright (c) 2025.
# This file is part of hybrid-isam, released under the MIT License.
"""
Incremental updates of a hybrid Bayes tree.

``update(tree, new_factors)`` re-eliminates only the part of the tree that
the new factors touch:

1. Every clique on the path from a touched key to its root is removed
   (``HybridBayesTree.remove_top``). Running intersection guarantees that
   no other clique depends on the touched keys.
2. The removed conditionals are turned back into factors and joined with
   the new factors. Each subtree hanging off the removed region (an
   *orphan*) is represented by an :class:`OrphanFactor` over its separator.
3. This small graph is eliminated multifrontally, by default with the hybrid
   ordering (continuous keys, then discrete keys).
4. The new cliques and the adopted orphans are grafted into a new tree
   generation. The input tree is left untouched.

The controller :class:`HybridGaussianISAM` keeps the current tree and also
exposes pruning. Both steps check the running-intersection property
afterwards unless disabled in :class:`ISAMConfig`.
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Sequence

from hybrid_isam.core.config import ISAMConfig
from hybrid_isam.core.errors import OrderingError
from hybrid_isam.core.keys import Key, key_to_str

from .bayes_tree import HybridBayesTree
from .elimination import EliminateFn, OrphanFactor, eliminate_hybrid, eliminate_multifrontal
from .ordering import hybrid_ordering

logger = logging.getLogger(__name__)


def update(
    tree: HybridBayesTree,
    new_factors: Iterable,
    ordering: Optional[Sequence[Key]] = None,
    config: Optional[ISAMConfig] = None,
    eliminate: EliminateFn = eliminate_hybrid,
) -> HybridBayesTree:
    """Return a new tree with ``new_factors`` incorporated.

    Args:
        tree: Current Bayes tree (possibly empty).
        new_factors: Factors to add.
        ordering: Optional ordering of the re-eliminated keys. Keys outside
            the affected region are ignored; missing keys raise.
        config: Elimination settings and invariant checking.
        eliminate: Elimination step, :func:`eliminate_hybrid` by default.

    Raises:
        OrderingError: if ``ordering`` misses an affected key.
        StructuralInvariantError: if the result violates running intersection.
    """
    config = config or ISAMConfig()
    new_factors = [f for f in new_factors if f.keys]
    touched = {k for f in new_factors for k in f.keys}
    conditionals, orphans, removed = tree.remove_top(sorted(touched))

    factors: List = [c.to_factor() for c in conditionals] + new_factors
    orphan_roots: List[int] = []
    for cid in orphans:
        placeholder = OrphanFactor.from_conditional(cid, tree[cid].conditional)
        if placeholder.keys:
            factors.append(placeholder)
        else:
            orphan_roots.append(cid)

    if ordering is None:
        ordering = hybrid_ordering(factors)
    else:
        involved = {k for f in factors for k in f.keys}
        ordering = [k for k in ordering if k in involved]
        missing = involved - set(ordering)
        if missing:
            names = ", ".join(key_to_str(k) for k in sorted(missing))
            raise OrderingError(f"Ordering does not cover affected keys {names}")

    new_cliques, new_roots = eliminate_multifrontal(
        factors, ordering, config.elimination, eliminate, first_id=tree.next_id
    )
    logger.debug(
        "ISAM update: %d new factors, removed %d cliques, %d orphans, %d new cliques",
        len(new_factors), len(removed), len(orphans), len(new_cliques),
    )
    result = tree.graft(removed, new_cliques, list(new_roots) + orphan_roots)
    if config.check_invariants:
        result.check_running_intersection()
    return result


class HybridGaussianISAM:
    """Holds a hybrid Bayes tree and updates it batch by batch."""

    def __init__(
        self,
        config: Optional[ISAMConfig] = None,
        eliminate: EliminateFn = eliminate_hybrid,
        tree: Optional[HybridBayesTree] = None,
    ) -> None:
        self.config = config or ISAMConfig()
        self.eliminate = eliminate
        self.tree = tree if tree is not None else HybridBayesTree()

    def update(self, new_factors: Iterable, ordering: Optional[Sequence[Key]] = None) -> HybridBayesTree:
        self.tree = update(self.tree, new_factors, ordering, self.config, self.eliminate)
        return self.tree

    def prune(self, max_leaves: int) -> HybridBayesTree:
        self.tree = self.tree.prune(max_leaves)
        if self.config.check_invariants:
            self.tree.check_running_intersection()
        return self.tree

    def optimize(self, assignment=None):
        return self.tree.optimize(assignment)

    def __len__(self) -> int:
        return len(self.tree)
