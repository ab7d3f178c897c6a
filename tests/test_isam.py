import jax.numpy as jnp
import pytest

from hybrid_isam.core.config import EliminationConfig, ISAMConfig
from hybrid_isam.core.errors import OrderingError
from hybrid_isam.core.keys import DiscreteKey, M, X
from hybrid_isam.core.values import HybridValues
from hybrid_isam.hybrid.bayes_tree import HybridBayesTree
from hybrid_isam.hybrid.isam import HybridGaussianISAM, update
from hybrid_isam.hybrid.pruning import count_leaves
from hybrid_isam.inference.discrete import DiscreteConditional, DiscreteFactor
from hybrid_isam.inference.mixture import GaussianMixtureConditional
from hybrid_isam.slam.switching import Switching


def _incremental(s, size=1, config=None):
    isam = HybridGaussianISAM(config)
    for batch in s.batches(size):
        isam.update(batch)
    return isam


def test_single_update_equals_batch_elimination():
    s = Switching(3)
    isam = HybridGaussianISAM()
    isam.update(s.linearized_graph)
    batch = s.linearized_graph.eliminate_multifrontal()
    assert isam.tree.equals(batch)


@pytest.mark.parametrize("size", [1, 2])
def test_incremental_matches_batch(size):
    """Adding the chain step by step gives the batch posterior."""
    s = Switching(5)
    isam = _incremental(s, size)
    batch = s.linearized_graph.eliminate_multifrontal()

    assert isam.tree.keys() == batch.keys()
    assert isam.optimize().equals(batch.optimize(), tol=1e-6)
    values = HybridValues(
        {X(k): jnp.array([0.2 * k]) for k in range(1, 6)},
        {M(1): 1, M(2): 0, M(3): 1, M(4): 1},
    )
    assert isam.tree.log_density(values) == pytest.approx(batch.log_density(values), abs=1e-6)


def test_every_generation_satisfies_running_intersection():
    s = Switching(5)
    isam = HybridGaussianISAM()
    sizes = []
    for batch in s.batches():
        tree = isam.update(batch)
        tree.check_running_intersection()
        sizes.append(len(tree))
    assert sizes[-1] == len(isam)


def test_update_leaves_the_previous_tree_untouched():
    s = Switching(4)
    batches = s.batches()
    first = update(HybridBayesTree(), batches[0])
    snapshot = dict(first.cliques)
    second = update(first, batches[1])
    assert first.cliques == snapshot
    assert second is not first
    assert second.next_id > first.next_id
    first.check_running_intersection()


def test_untouched_subtrees_are_shared_between_generations():
    s = Switching(6)
    batches = s.batches()
    tree = HybridBayesTree()
    for batch in batches[:-1]:
        tree = update(tree, batch)
    newer = update(tree, batches[-1])
    # The first state is far from the new factors and keeps its clique.
    assert newer.clique_for(X(1)) is tree.clique_for(X(1))


def test_custom_ordering():
    s = Switching(3)
    batches = s.batches()
    tree = update(HybridBayesTree(), batches[0])
    ordering = [X(3), X(2), X(1), M(2), M(1)]
    custom = update(tree, batches[1], ordering)
    custom.check_running_intersection()
    reference = s.linearized_graph.eliminate_multifrontal()
    assert custom.optimize().equals(reference.optimize(), tol=1e-6)


def test_incomplete_custom_ordering_raises():
    s = Switching(3)
    batches = s.batches()
    tree = update(HybridBayesTree(), batches[0])
    with pytest.raises(OrderingError):
        update(tree, batches[1], [X(2), X(3), M(2)])


def test_prune_bounds_the_hypotheses():
    s = Switching(5)
    isam = _incremental(s)
    before = isam.tree
    best = before.map_assignment()
    isam.prune(2)
    assert count_leaves(isam.tree.conditionals()) <= 2
    assert count_leaves(before.conditionals()) == 16
    assert isam.tree.map_assignment() == best


def test_prune_merges_separate_discrete_roots():
    """
    Independent P(M1) = P(M9) = 6/4 live in two root cliques. Leaves:
    (0,0)=.36, (0,1)=.24, (1,0)=.24, (1,1)=.16. Keeping three must drop
    (1,1), which masking each root on its own cannot express.
    """
    m1, m9 = DiscreteKey(M(1), 2), DiscreteKey(M(9), 2)
    isam = HybridGaussianISAM()
    isam.update([DiscreteFactor([m1], [0.6, 0.4])])
    isam.update([DiscreteFactor([m9], [0.6, 0.4])])
    assert len(isam.tree.roots) == 2
    assert count_leaves(isam.tree.conditionals()) == 4

    isam.prune(3)
    assert count_leaves(isam.tree.conditionals()) == 3
    assert len(isam.tree.roots) == 1
    root = isam.tree[isam.tree.roots[0]].conditional
    assert root.probability({M(1): 1, M(9): 1}) == 0.0
    assert root.probability({M(1): 0, M(9): 0}) == pytest.approx(0.36 / 0.84)
    assert isam.tree.map_assignment() == {M(1): 0, M(9): 0}

    # Evidence for M9 = 1 reorders the survivors but cannot revive (1,1).
    isam.update([DiscreteFactor([m9], [0.1, 0.9])])
    assert count_leaves(isam.tree.conditionals()) == 3
    assert isam.tree.map_assignment() == {M(1): 0, M(9): 1}


def test_repeated_pruning_keeps_the_tree_sparse():
    s = Switching(8)
    isam = HybridGaussianISAM()
    for batch in s.batches():
        isam.update(batch)
        isam.prune(4)
        for conditional in isam.tree.conditionals():
            if isinstance(conditional, GaussianMixtureConditional):
                assert conditional.nr_feasible() <= 4
        assert count_leaves(isam.tree.conditionals()) <= 4
    roots = [isam.tree[r].conditional for r in isam.tree.roots]
    discrete_roots = [c for c in roots if isinstance(c, DiscreteConditional)]
    assert len(discrete_roots) == 1
    assert discrete_roots[0].is_sparse
    assert discrete_roots[0].nnz() <= 4
    assert set(isam.optimize().discrete()) == {M(k) for k in range(1, 8)}


def test_update_after_prune():
    """Pruned branches stay pruned after later updates."""
    s = Switching(5)
    batches = s.batches()
    isam = HybridGaussianISAM()
    for batch in batches[:-1]:
        isam.update(batch)
    isam.prune(2)
    isam.update(batches[-1])
    assert count_leaves(isam.tree.conditionals()) <= 4
    solution = isam.optimize()
    assert set(solution.discrete()) == {M(k) for k in range(1, 5)}


def test_parallel_branches_match_serial():
    s = Switching(4)
    serial = _incremental(s)
    parallel = _incremental(s, config=ISAMConfig(EliminationConfig(max_workers=3)))
    assert parallel.tree.equals(serial.tree)


def test_empty_update_is_a_no_op():
    s = Switching(3)
    isam = _incremental(s)
    before = isam.tree
    after = isam.update([])
    assert after.equals(before)
