# Copyright (c) 2025.
# This file is part of hybrid-isam, released under the MIT License.
"""
Hybrid Bayes tree.

The tree is an arena of :class:`Clique` records indexed by integer id. A
clique owns one (possibly multifrontal) conditional; its separator is the
conditional's parent keys. Parent and child relations are stored as ids, so
a tree is an immutable snapshot: incremental updates build the next
generation with :meth:`HybridBayesTree.graft`, sharing every untouched
clique record with the previous one.

Conditionals are listed in post-order (children before parents), which is a
valid elimination order; solving walks the reverse of it, top-down from the
roots.

Structural invariant
--------------------
Running intersection: every key appears as a frontal in exactly one clique,
and every separator key of a clique appears in its parent clique. Together
these make the cliques holding any key a connected path ending in the
clique where it is frontal. :meth:`check_running_intersection` verifies this
and raises :class:`StructuralInvariantError` otherwise.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from hybrid_isam.core.errors import StructuralInvariantError
from hybrid_isam.core.keys import DiscreteKey, Key, key_to_str
from hybrid_isam.core.values import DiscreteValues, HybridValues
from hybrid_isam.inference.discrete import DiscreteConditional
from hybrid_isam.inference.gaussian import GaussianBayesNet
from hybrid_isam.inference.mixture import GaussianMixtureConditional, HybridConditional

from . import conditionals as ops
from .pruning import prune_conditionals

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Clique:
    id: int
    conditional: HybridConditional
    parent: Optional[int] = None
    children: Tuple[int, ...] = ()

    @property
    def frontal_keys(self) -> Tuple[Key, ...]:
        return tuple(self.conditional.frontal_keys)

    @property
    def separator(self) -> Tuple[Key, ...]:
        return tuple(self.conditional.parent_keys)

    @property
    def keys(self) -> Tuple[Key, ...]:
        return self.frontal_keys + self.separator


class HybridBayesTree:
    """Tree of cliques produced by multifrontal hybrid elimination."""

    def __init__(
        self,
        cliques: Optional[Mapping[int, Clique]] = None,
        roots: Sequence[int] = (),
        next_id: Optional[int] = None,
    ) -> None:
        self.cliques: Dict[int, Clique] = dict(cliques or {})
        self.roots: Tuple[int, ...] = tuple(roots)
        if next_id is None:
            next_id = max(self.cliques, default=-1) + 1
        self.next_id = next_id
        self.nodes: Dict[Key, int] = {
            key: cid for cid, clique in self.cliques.items() for key in clique.frontal_keys
        }

    def __len__(self) -> int:
        return len(self.cliques)

    def __getitem__(self, clique_id: int) -> Clique:
        return self.cliques[clique_id]

    def clique_for(self, key: Key) -> Clique:
        """The clique in which ``key`` is a frontal variable."""
        return self.cliques[self.nodes[key]]

    def keys(self) -> Set[Key]:
        return set(self.nodes)

    def discrete_keys(self) -> List[DiscreteKey]:
        found: Dict[Key, DiscreteKey] = {}
        for c in self.conditionals():
            if isinstance(c, DiscreteConditional):
                found.update({dk.key: dk for dk in c.discrete_keys})
            elif isinstance(c, GaussianMixtureConditional):
                found.update({dk.key: dk for dk in c.discrete_parents})
        return [found[k] for k in sorted(found)]

    # --- Traversal ---

    def postorder(self) -> List[int]:
        """Clique ids with every child before its parent."""
        order: List[int] = []
        stack = [(root, False) for root in reversed(self.roots)]
        while stack:
            cid, expanded = stack.pop()
            if expanded:
                order.append(cid)
                continue
            stack.append((cid, True))
            stack.extend((child, False) for child in reversed(self.cliques[cid].children))
        return order

    def conditionals(self) -> List[HybridConditional]:
        return [self.cliques[cid].conditional for cid in self.postorder()]

    # --- Queries ---

    def map_assignment(self) -> DiscreteValues:
        """Most probable discrete assignment, recovered top-down from the roots."""
        order = [
            k
            for cid in self.postorder()
            if isinstance(self.cliques[cid].conditional, DiscreteConditional)
            for k in self.cliques[cid].frontal_keys
        ]
        return ops.map_assignment(self.conditionals(), order)

    def choose(self, assignment: Mapping[Key, int]) -> GaussianBayesNet:
        return ops.choose(self.conditionals(), assignment)

    def optimize(self, assignment: Optional[Mapping[Key, int]] = None):
        """MAP solution, or the continuous solution for a fixed assignment.

        Without an argument returns a :class:`HybridValues` holding the exact
        discrete MAP and the continuous back-substitution under it. With an
        assignment returns only the :class:`VectorValues`.
        """
        if assignment is not None:
            return self.choose(assignment).optimize()
        mpe = self.map_assignment()
        return HybridValues(self.choose(mpe).optimize(), mpe)

    def log_density(self, values: HybridValues) -> float:
        return sum(ops.log_density(c, values) for c in self.conditionals())

    def prune(self, max_leaves: int) -> "HybridBayesTree":
        """Copy keeping only the ``max_leaves`` most probable discrete leaves.

        Every discrete clique is replaced by a single new root clique that
        holds the joint of the kept leaves. Cliques that hung off a discrete
        clique are re-parented to it, which keeps the running intersection
        property since their separators are purely discrete. Continuous
        cliques keep their ids with their mixtures pruned.
        """
        order = self.postorder()
        others, joint = prune_conditionals([self.cliques[cid].conditional for cid in order], max_leaves)
        if joint is None:
            return HybridBayesTree(self.cliques, self.roots, self.next_id)

        discrete = {cid for cid in order if isinstance(self.cliques[cid].conditional, DiscreteConditional)}
        root_id = self.next_id
        cliques: Dict[int, Clique] = {}
        adopted: List[int] = []
        for cid, conditional in zip((cid for cid in order if cid not in discrete), others):
            clique = self.cliques[cid]
            parent = clique.parent
            if parent in discrete:
                parent = root_id
                adopted.append(cid)
            children = tuple(c for c in clique.children if c not in discrete)
            cliques[cid] = replace(clique, conditional=conditional, parent=parent, children=children)
        cliques[root_id] = Clique(root_id, joint, None, tuple(adopted))
        roots = [r for r in self.roots if r not in discrete] + [root_id]
        logger.debug(
            "Pruned tree: %d discrete cliques merged into root %d with %d leaves",
            len(discrete), root_id, joint.nnz(),
        )
        return HybridBayesTree(cliques, roots, root_id + 1)

    # --- Structure ---

    def check_running_intersection(self) -> None:
        frontal_owner: Dict[Key, int] = {}
        for cid, clique in self.cliques.items():
            if clique.id != cid:
                raise StructuralInvariantError(f"Clique {clique.id} stored under id {cid}")
            for key in clique.frontal_keys:
                if key in frontal_owner:
                    raise StructuralInvariantError(
                        f"{key_to_str(key)} is frontal in cliques {frontal_owner[key]} and {cid}"
                    )
                frontal_owner[key] = cid
            for child in clique.children:
                if child not in self.cliques or self.cliques[child].parent != cid:
                    raise StructuralInvariantError(f"Clique {cid} lists {child} as a stray child")
            if clique.parent is None:
                if cid not in self.roots:
                    raise StructuralInvariantError(f"Parentless clique {cid} is not a root")
                if clique.separator:
                    raise StructuralInvariantError(f"Root clique {cid} has a separator")
                continue
            parent = self.cliques.get(clique.parent)
            if parent is None or cid not in parent.children:
                raise StructuralInvariantError(f"Clique {cid} is detached from parent {clique.parent}")
            missing = set(clique.separator) - set(parent.keys)
            if missing:
                names = ", ".join(key_to_str(k) for k in sorted(missing))
                raise StructuralInvariantError(
                    f"Separator keys {names} of clique {cid} are absent from its parent {parent.id}"
                )
        if set(self.roots) - set(self.cliques):
            raise StructuralInvariantError("Root ids refer to missing cliques")

    def remove_top(self, keys: Iterable[Key]) -> Tuple[List[HybridConditional], List[int], Set[int]]:
        """Locate the cliques on the paths from ``keys`` to their roots.

        Nothing is mutated; the caller builds the next generation with
        :meth:`graft`.

        Returns:
            The conditionals of the removed cliques, the ids of the orphaned
            subtrees hanging off them, and the set of removed ids.
        """
        removed: Set[int] = set()
        for key in keys:
            cid = self.nodes.get(key)
            while cid is not None and cid not in removed:
                removed.add(cid)
                cid = self.cliques[cid].parent
        conditionals = [self.cliques[cid].conditional for cid in sorted(removed)]
        orphans = sorted(
            child
            for cid in removed
            for child in self.cliques[cid].children
            if child not in removed
        )
        return conditionals, orphans, removed

    def graft(
        self,
        removed: Set[int],
        new_cliques: Mapping[int, Clique],
        new_roots: Sequence[int],
    ) -> "HybridBayesTree":
        """Next generation: drop ``removed``, add ``new_cliques`` and re-parent orphans.

        Orphans are the children of new cliques that are not themselves new;
        an orphan listed in ``new_roots`` becomes a root.
        """
        cliques = {cid: c for cid, c in self.cliques.items() if cid not in removed}
        cliques.update(new_cliques)
        for clique in new_cliques.values():
            for child in clique.children:
                if child not in new_cliques:
                    cliques[child] = replace(cliques[child], parent=clique.id)
        for root in new_roots:
            if root not in new_cliques:
                cliques[root] = replace(cliques[root], parent=None)
        roots = [r for r in self.roots if r not in removed] + list(new_roots)
        next_id = max([self.next_id] + [cid + 1 for cid in new_cliques])
        logger.debug(
            "Grafted %d new cliques over %d removed; tree has %d cliques",
            len(new_cliques), len(removed), len(cliques),
        )
        return HybridBayesTree(cliques, roots, next_id)

    def equals(self, other: "HybridBayesTree", tol: float = 1e-9) -> bool:
        """Structural equality: same cliques, conditionals and parent links."""
        if not isinstance(other, HybridBayesTree) or len(self) != len(other):
            return False

        def parent_frontals(tree, clique):
            return None if clique.parent is None else tree.cliques[clique.parent].frontal_keys

        by_frontals = {c.frontal_keys: c for c in other.cliques.values()}
        for clique in self.cliques.values():
            match = by_frontals.get(clique.frontal_keys)
            if match is None or type(match.conditional) is not type(clique.conditional):
                return False
            if not clique.conditional.equals(match.conditional, tol):
                return False
            if parent_frontals(self, clique) != parent_frontals(other, match):
                return False
        return True

    def __repr__(self) -> str:
        lines = [f"HybridBayesTree({len(self)} cliques)"]

        def describe(cid: int, depth: int) -> None:
            clique = self.cliques[cid]
            lines.append("  " * (depth + 1) + repr(clique.conditional))
            for child in clique.children:
                describe(child, depth + 1)

        for root in self.roots:
            describe(root, 0)
        return "\n".join(lines)
