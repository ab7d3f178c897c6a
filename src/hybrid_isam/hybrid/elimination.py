# Copyright (c) 2025.
# This file is part of hybrid-isam, released under the MIT License.
"""
Hybrid variable elimination.

This module is the engine behind ``HybridGaussianFactorGraph.eliminate_*``
and the incremental update. It has three layers:

eliminate_hybrid(factors, frontal_keys, config)
    One elimination step. Takes the factors touching ``frontal_keys`` and
    returns ``(conditional, separator_factor)``:

    * discrete frontals: sum-product on the table product, giving a
      :class:`DiscreteConditional` and a discrete separator table;
    * continuous frontals, no discrete keys involved: dense QR elimination,
      giving a :class:`GaussianConditional` and a Gaussian separator;
    * continuous frontals with mixture factors: one QR elimination *per
      assignment* of the discrete keys involved, giving a
      :class:`GaussianMixtureConditional`. The per-branch separators form a
      :class:`GaussianMixtureFactor`, or, once no continuous key is left, a
      :class:`DiscreteFactor` of the per-branch normalization constants.
      That table is what keeps the discrete posterior exact.

    Any callable with this signature can be plugged into the sequential,
    multifrontal and incremental drivers.

eliminate_partial_sequential(factors, ordering, ...)
    One key at a time, giving a list of conditionals and the factors that
    remain once the ordering is exhausted.

eliminate_multifrontal(factors, ordering, ...)
    Symbolic elimination, junction tree construction, then one elimination
    step per clique, children before parents. Returns the cliques of a Bayes
    tree.

Ordering rules
--------------
A discrete key may only be eliminated once no Gaussian or mixture factor
depends on it, and a single step never mixes continuous and discrete
frontals. Both violations raise :class:`OrderingError`.
"""

from __future__ import annotations

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from hybrid_isam.core.config import EliminationConfig
from hybrid_isam.core.errors import OrderingError, UnderconstrainedError
from hybrid_isam.core.jax_init import jnp
from hybrid_isam.core.keys import DiscreteKey, Key, key_to_str
from hybrid_isam.inference.discrete import DiscreteConditional, DiscreteFactor, assignments
from hybrid_isam.inference.gaussian import GaussianFactor, eliminate_gaussian
from hybrid_isam.inference.mixture import (
    GaussianMixtureConditional,
    GaussianMixtureFactor,
    HybridConditional,
    feasible_branches,
)

from .bayes_tree import Clique
from .ordering import key_partition

logger = logging.getLogger(__name__)

EliminateFn = Callable[..., Tuple[HybridConditional, Optional[object]]]


@dataclass(frozen=True)
class OrphanFactor:
    """Placeholder for a detached subtree during an incremental update.

    It carries no information, only the orphan's separator: zero rows over
    the continuous separator keys and a unit table over the discrete ones.
    Eliminating it forces the consuming clique to contain the whole
    separator, and that clique adopts the orphan as a child.

    An orphan mixture also records which of its branches survive pruning,
    so that the consuming clique only enumerates those assignments.
    """

    clique_id: int
    dims: Tuple[Tuple[Key, int], ...] = ()
    discrete_keys: Tuple[DiscreteKey, ...] = ()
    feasible: Optional[Tuple[Tuple[int, ...], ...]] = None

    @staticmethod
    def from_conditional(clique_id: int, conditional: HybridConditional) -> "OrphanFactor":
        if isinstance(conditional, DiscreteConditional):
            return OrphanFactor(clique_id, (), tuple(conditional.parents))
        dims = conditional.dims()
        continuous = tuple((k, dims[k]) for k in conditional.parents)
        if isinstance(conditional, GaussianMixtureConditional):
            return OrphanFactor(
                clique_id, continuous, conditional.discrete_parents, tuple(conditional.branches())
            )
        return OrphanFactor(clique_id, continuous)

    @property
    def continuous_keys(self) -> Tuple[Key, ...]:
        return tuple(k for k, _ in self.dims)

    @property
    def keys(self) -> Tuple[Key, ...]:
        return self.continuous_keys + tuple(k for k, _ in self.discrete_keys)

    def branches(self) -> List[Tuple[int, ...]]:
        if self.feasible is None:
            return list(assignments(self.discrete_keys))
        return list(self.feasible)

    def as_gaussian(self) -> GaussianFactor:
        return GaussianFactor(
            self.continuous_keys, [jnp.zeros((0, n)) for _, n in self.dims], jnp.zeros((0,))
        )

    def as_discrete(self, present: Sequence[Key] = ()) -> DiscreteFactor:
        """Unit table over the separator keys not already in ``present``."""
        missing = [dk for dk in self.discrete_keys if dk.key not in present]
        shape = tuple(c for _, c in missing)
        return DiscreteFactor(missing, jnp.ones(shape))


# --------------------------------------------------------------------------
# Single elimination step
# --------------------------------------------------------------------------


def _eliminate_discrete(factors: Sequence, frontal_keys: Sequence[Key]):
    tables: List[DiscreteFactor] = []
    orphans: List[OrphanFactor] = []
    for f in factors:
        if isinstance(f, OrphanFactor) and not f.continuous_keys:
            orphans.append(f)
        elif isinstance(f, DiscreteFactor):
            tables.append(f)
        else:
            names = ", ".join(key_to_str(k) for k in frontal_keys)
            raise OrderingError(
                f"Cannot eliminate discrete {names}: {f!r} still depends on continuous variables"
            )
    joint = DiscreteFactor.product(tables)
    # Orphans only widen the joint to their separator; a unit table over keys
    # already present would just densify it.
    for orphan in orphans:
        joint = joint * orphan.as_discrete(joint.keys)
    for key in frontal_keys:
        if key not in joint.keys:
            raise UnderconstrainedError(key, f"No factor constrains {key_to_str(key)}")
    conditional = DiscreteConditional.from_factor(joint, frontal_keys)
    separator = joint.sum_out(frontal_keys)
    return conditional, (separator.scaled_to_max() if separator.discrete_keys else None)


def _eliminate_continuous(factors: Sequence, frontal_keys: Sequence[Key], config: EliminationConfig):
    gaussians: List[GaussianFactor] = []
    mixtures: List[GaussianMixtureFactor] = []
    orphans: List[OrphanFactor] = []
    involved: Dict[Key, DiscreteKey] = {}
    for f in factors:
        if isinstance(f, OrphanFactor):
            gaussians.append(f.as_gaussian())
            orphans.append(f)
            involved.update({dk.key: dk for dk in f.discrete_keys})
        elif isinstance(f, GaussianMixtureFactor):
            mixtures.append(f)
            involved.update({dk.key: dk for dk in f.discrete_keys})
        elif isinstance(f, GaussianFactor):
            gaussians.append(f)
        else:
            names = ", ".join(key_to_str(k) for k in frontal_keys)
            raise OrderingError(f"{f!r} does not belong in the elimination of {names}")

    if not involved:
        conditional, separator = eliminate_gaussian(gaussians, frontal_keys, config.rank_tol)
        return conditional, (separator if separator.keys else None)

    discrete_keys = [involved[k] for k in sorted(involved)]
    dims: Dict[Key, int] = {}
    for f in gaussians + mixtures:
        dims.update(f.dims())
    frontal_set = set(frontal_keys)
    parents = sorted(
        {k for f in gaussians + mixtures for k in f.continuous_keys} - frontal_set
    )

    def eliminate_branch(values: Tuple[int, ...]):
        assignment = dict(zip((k for k, _ in discrete_keys), values))
        branch = list(gaussians) + [mixture.component(assignment) for mixture in mixtures]
        return eliminate_gaussian(branch, frontal_keys, config.rank_tol)

    branches = feasible_branches(discrete_keys, mixtures + [o for o in orphans if o.discrete_keys])
    if config.max_workers > 1 and len(branches) > 1:
        with ThreadPoolExecutor(max_workers=config.max_workers) as executor:
            results = list(executor.map(eliminate_branch, branches))
    else:
        results = [eliminate_branch(a) for a in branches]

    logger.debug(
        "Eliminated %s over %d of %d discrete branches",
        ", ".join(key_to_str(k) for k in frontal_keys),
        len(branches),
        math.prod(c for _, c in discrete_keys),
    )

    conditional = GaussianMixtureConditional(
        frontal_keys,
        parents,
        discrete_keys,
        {a: r[0] for a, r in zip(branches, results)},
        {k: dims[k] for k in list(frontal_keys) + parents},
    )
    if parents:
        separator = GaussianMixtureFactor(
            parents,
            discrete_keys,
            {a: r[1] for a, r in zip(branches, results)},
        )
        return conditional, separator

    # Only the discrete keys are left: the per-branch constants become a
    # sparse table over the feasible branches.
    log_weights = [r[1].log_value({}) for r in results]
    peak = max(log_weights, default=-math.inf)
    table = {a: math.exp(w - peak) for a, w in zip(branches, log_weights) if w > -math.inf}
    return conditional, DiscreteFactor(discrete_keys, table)


def eliminate_hybrid(
    factors: Sequence,
    frontal_keys: Sequence[Key],
    config: Optional[EliminationConfig] = None,
):
    """Eliminate ``frontal_keys`` from the product of ``factors``.

    Args:
        factors: Every factor touching at least one frontal key.
        frontal_keys: Keys to eliminate jointly; all continuous or all discrete.
        config: Rank tolerance and branch parallelism.

    Returns:
        ``(conditional, separator)``; ``separator`` is ``None`` when nothing
        but a constant is left.

    Raises:
        OrderingError: frontals of both kinds, or a discrete frontal that a
            Gaussian factor still depends on.
        UnderconstrainedError: a frontal is unconstrained or rank-deficient.
    """
    config = config or EliminationConfig()
    frontal_keys = list(frontal_keys)
    continuous, discrete = key_partition(factors)
    frontal_set = set(frontal_keys)
    if frontal_set & continuous and frontal_set & discrete:
        raise OrderingError(
            "Cannot eliminate continuous and discrete variables in one step: "
            + ", ".join(key_to_str(k) for k in frontal_keys)
        )
    if frontal_set & discrete:
        return _eliminate_discrete(factors, frontal_keys)
    return _eliminate_continuous(factors, frontal_keys, config)


# --------------------------------------------------------------------------
# Sequential elimination
# --------------------------------------------------------------------------


def _check_ordering(ordering: Sequence[Key]) -> List[Key]:
    ordering = list(ordering)
    if len(set(ordering)) != len(ordering):
        raise OrderingError("Ordering lists a key more than once")
    return ordering


def eliminate_partial_sequential(
    factors: Sequence,
    ordering: Sequence[Key],
    config: Optional[EliminationConfig] = None,
    eliminate: EliminateFn = eliminate_hybrid,
) -> Tuple[List[HybridConditional], List]:
    """Eliminate the keys of ``ordering`` one at a time.

    Returns:
        The conditionals in elimination order and the factors left over,
        which involve only keys outside ``ordering``.
    """
    config = config or EliminationConfig()
    working = [f for f in factors if f.keys]
    conditionals: List[HybridConditional] = []
    for key in _check_ordering(ordering):
        touching = [f for f in working if key in f.keys]
        if not touching:
            raise UnderconstrainedError(key, f"No factor involves {key_to_str(key)}")
        working = [f for f in working if key not in f.keys]
        conditional, separator = eliminate(touching, [key], config)
        conditionals.append(conditional)
        if separator is not None:
            working.append(separator)
    return conditionals, working


# --------------------------------------------------------------------------
# Multifrontal elimination
# --------------------------------------------------------------------------


@dataclass
class JunctionClique:
    frontals: List[Key]
    parent: Optional[int] = None
    factors: List = field(default_factory=list)


def junction_tree(
    factors: Sequence,
    ordering: Sequence[Key],
    merge_discrete_root: bool = True,
) -> List[JunctionClique]:
    """Cluster the symbolic elimination tree of ``factors`` into cliques.

    The clique list is in elimination order (children before parents) and
    ``parent`` indexes into it. Every factor is attached to the clique of its
    earliest-eliminated key.
    """
    ordering = _check_ordering(ordering)
    continuous, discrete = key_partition(factors)
    position = {k: i for i, k in enumerate(ordering)}
    missing = (continuous | discrete) - set(position)
    if missing:
        names = ", ".join(key_to_str(k) for k in sorted(missing))
        raise OrderingError(f"Ordering does not cover keys {names}")
    for key in ordering:
        if key not in continuous and key not in discrete:
            raise UnderconstrainedError(key, f"No factor involves {key_to_str(key)}")

    keyed = [f for f in factors if f.keys]
    buckets: Dict[Key, List[Set[Key]]] = {k: [] for k in ordering}
    for f in keyed:
        buckets[min(f.keys, key=position.__getitem__)].append(set(f.keys))

    separators: Dict[Key, Set[Key]] = {}
    parent: Dict[Key, Key] = {}
    children: Dict[Key, List[Key]] = {k: [] for k in ordering}
    for v in ordering:
        joint = set().union(*buckets[v]) - {v}
        separators[v] = joint
        if joint:
            p = min(joint, key=position.__getitem__)
            parent[v] = p
            children[p].append(v)
            buckets[p].append(joint)

    trailing: Set[Key] = set()
    if merge_discrete_root:
        for key in reversed(ordering):
            if key not in discrete:
                break
            trailing.add(key)

    members: Dict[int, List[Key]] = {}
    clique_of: Dict[Key, int] = {}
    next_clique = 0
    root_clique: Optional[int] = None
    for v in ordering:
        if v in trailing:
            if root_clique is None:
                root_clique = next_clique
                members[root_clique] = []
                next_clique += 1
            members[root_clique].append(v)
            clique_of[v] = root_clique
            continue
        kind = v in discrete
        target: Optional[int] = None
        for c in children[v]:
            if (c in discrete) != kind or len(separators[c]) != len(separators[v]) + 1:
                continue
            cid = clique_of[c]
            if target is None:
                target = cid
            elif cid != target:
                for k in members.pop(cid):
                    clique_of[k] = target
                    members[target].append(k)
        if target is None:
            target = next_clique
            members[target] = []
            next_clique += 1
        members[target].append(v)
        clique_of[v] = target

    # Children end before their parent starts, so sorting by last frontal
    # gives a valid bottom-up order.
    ids = sorted(members, key=lambda cid: max(position[k] for k in members[cid]))
    index = {cid: i for i, cid in enumerate(ids)}
    cliques: List[JunctionClique] = []
    for cid in ids:
        frontals = sorted(members[cid], key=position.__getitem__)
        last = frontals[-1]
        up = index[clique_of[parent[last]]] if last in parent else None
        cliques.append(JunctionClique(frontals, up))
    for f in keyed:
        earliest = min(f.keys, key=position.__getitem__)
        cliques[index[clique_of[earliest]]].factors.append(f)
    return cliques


def eliminate_multifrontal(
    factors: Sequence,
    ordering: Sequence[Key],
    config: Optional[EliminationConfig] = None,
    eliminate: EliminateFn = eliminate_hybrid,
    first_id: int = 0,
) -> Tuple[Dict[int, Clique], List[int]]:
    """Eliminate into Bayes tree cliques.

    Clique ids are allocated from ``first_id`` upwards. A clique that consumes
    an :class:`OrphanFactor` lists the orphan's id among its children; the
    caller owns the orphan records and re-parents them.

    Returns:
        The new cliques by id, and the ids of the root cliques (orphans whose
        separator is empty are not included).
    """
    config = config or EliminationConfig()
    structure = junction_tree(factors, ordering, config.merge_discrete_root)
    incoming: List[List] = [[] for _ in structure]
    kids: List[List[int]] = [[] for _ in structure]
    records: Dict[int, Clique] = {}
    roots: List[int] = []
    for i, jc in enumerate(structure):
        conditional, separator = eliminate(jc.factors + incoming[i], jc.frontals, config)
        orphans = [f.clique_id for f in jc.factors if isinstance(f, OrphanFactor)]
        cid = first_id + i
        parent_id = None if jc.parent is None else first_id + jc.parent
        records[cid] = Clique(cid, conditional, parent_id, tuple(kids[i] + orphans))
        if jc.parent is None:
            roots.append(cid)
        else:
            kids[jc.parent].append(cid)
            if separator is not None:
                incoming[jc.parent].append(separator)
    logger.debug("Multifrontal elimination produced %d cliques, %d roots", len(records), len(roots))
    return records, roots
