import pickle

import jax.numpy as jnp
import pytest

from hybrid_isam.core.errors import InfeasibleAssignmentError, MissingAssignmentError, NoFeasibleAssignmentError
from hybrid_isam.core.keys import DiscreteKey, M, X
from hybrid_isam.core.values import HybridValues
from hybrid_isam.hybrid.bayes_net import HybridBayesNet
from hybrid_isam.hybrid.pruning import count_leaves, leaf_table
from hybrid_isam.inference.discrete import DiscreteConditional, assignments
from hybrid_isam.inference.gaussian import GaussianConditional
from hybrid_isam.inference.mixture import GaussianMixtureConditional
from hybrid_isam.slam.switching import Switching

ASIA = DiscreteKey(0, 2)


def test_creation_with_signature():
    bn = HybridBayesNet()
    bn.add_discrete(ASIA, "99/1")
    expected = DiscreteConditional.from_signature(ASIA, [], "99/1")
    assert bn.at_discrete(0).equals(expected)
    assert bn.discrete_keys() == [ASIA]
    with pytest.raises(TypeError):
        bn.at_mixture(0)


def test_choose_selects_one_branch_per_mixture():
    """Eliminating only the continuous keys leaves one mixture per state."""
    s = Switching(4)
    bn, remaining = s.linearized_graph.eliminate_partial_sequential(s.continuous_ordering())
    assert len(bn) == 4
    assert len(remaining) > 0

    assignment = {M(1): 1, M(2): 1, M(3): 0}
    gbn = bn.choose(assignment)
    assert len(gbn) == 4
    for i in range(4):
        assert gbn[i].equals(bn.at_mixture(i).choose(assignment))


def test_choose_needs_every_mode():
    s = Switching(3)
    bn = s.linearized_graph.eliminate_sequential()
    with pytest.raises(MissingAssignmentError):
        bn.choose({M(1): 0})


def test_optimize_for_a_given_assignment():
    """All modes 'moving' matches the measurements exactly: x_k = k - 1, delta = -1."""
    s = Switching(4)
    bn = s.linearized_graph.eliminate_sequential()
    delta = bn.optimize({M(1): 1, M(2): 1, M(3): 1})
    for k in range(1, 5):
        assert float(delta[X(k)][0]) == pytest.approx(-1.0, abs=1e-6)


def test_choose_then_solve_equals_optimize_with_assignment():
    s = Switching(4)
    bn = s.linearized_graph.eliminate_sequential()
    assignment = {M(1): 0, M(2): 1, M(3): 0}
    assert bn.choose(assignment).optimize().equals(bn.optimize(assignment))


@pytest.mark.parametrize("modes", [(1, 0, 1), (0, 1, 1), (1, 1, 0), (0, 0, 0)])
def test_map_recovers_ground_truth_modes(modes):
    """With tight motion models the evidence picks the true mode sequence."""
    s = Switching(4, between_sigma=0.1, modes=modes)
    bn = s.linearized_graph.eliminate_sequential()
    solution = bn.optimize()
    assert solution.discrete() == {M(k): m for k, m in enumerate(modes, start=1)}
    for key, value in s.ground_truth.items():
        expected = value - s.linearization_point[key]
        assert jnp.allclose(solution.continuous()[key], expected, atol=1e-6)


# Exact optimum of the default four-state chain: the mode prior outweighs
# the evidence for M(2), so the MAP is not the ground truth (1, 1, 1).
SWITCHING4_MODES = {M(1): 1, M(2): 0, M(3): 1}
SWITCHING4_DELTA = {X(1): -0.999904, X(2): -0.99029, X(3): -1.00971, X(4): -1.0001}


def test_optimize_sequential_matches_reference_solution():
    s = Switching(4)
    graph = s.linearized_graph
    delta = graph.eliminate_sequential(graph.hybrid_ordering()).optimize()
    assert delta.discrete() == SWITCHING4_MODES
    for key, expected in SWITCHING4_DELTA.items():
        assert float(delta.continuous()[key][0]) == pytest.approx(expected, abs=1e-5)


def test_optimize_multifrontal_matches_reference_solution():
    s = Switching(4)
    graph = s.linearized_graph
    delta = graph.eliminate_multifrontal(graph.hybrid_ordering()).optimize()
    assert delta.discrete() == SWITCHING4_MODES
    for key, expected in SWITCHING4_DELTA.items():
        assert float(delta.continuous()[key][0]) == pytest.approx(expected, abs=1e-5)


def test_map_is_the_heaviest_leaf():
    """Compare max-product against brute-force enumeration of all leaves."""
    s = Switching(4)
    bn = s.linearized_graph.eliminate_sequential()
    joint = leaf_table(bn.conditionals)
    leaves = list(assignments(joint.discrete_keys))
    weights = jnp.reshape(joint.table, (-1,))
    best = leaves[int(jnp.argmax(weights))]
    expected = {k: v for (k, _), v in zip(joint.discrete_keys, best)}
    assert bn.map_assignment() == expected
    assert float(jnp.sum(weights)) == pytest.approx(1.0)


def test_log_density_is_normalized_over_modes():
    s = Switching(3)
    bn = s.linearized_graph.eliminate_sequential()
    # The discrete part alone is a distribution over the four mode pairs.
    total = 0.0
    for m1 in (0, 1):
        for m2 in (0, 1):
            assignment = {M(1): m1, M(2): m2}
            total += jnp.exp(sum(
                c.log_probability(assignment) for c in bn if isinstance(c, DiscreteConditional)
            ))
    assert float(total) == pytest.approx(1.0)

    values = HybridValues(bn.optimize({M(1): 1, M(2): 1}), {M(1): 1, M(2): 1})
    assert jnp.isfinite(bn.log_density(values))


def test_multifrontal_optimize_matches_sequential():
    s = Switching(4)
    bn = s.linearized_graph.eliminate_sequential()
    tree = s.linearized_graph.eliminate_multifrontal()
    assert tree.optimize().equals(bn.optimize(), tol=1e-6)


def test_pickle_round_trip():
    s = Switching(3)
    bn = s.linearized_graph.eliminate_sequential()
    restored = pickle.loads(pickle.dumps(bn))
    assert restored.equals(bn)
    assert restored.optimize().equals(bn.optimize())


def test_equals_detects_differences():
    s = Switching(3)
    bn = s.linearized_graph.eliminate_sequential()
    other = Switching(3, between_sigma=0.5).linearized_graph.eliminate_sequential()
    assert bn.equals(bn)
    assert not bn.equals(other)
    assert not bn.equals(HybridBayesNet(bn.conditionals[:-1]))


def test_prune_keeps_the_map_and_merges_discrete_conditionals():
    s = Switching(4)
    bn = s.linearized_graph.eliminate_sequential()
    assert count_leaves(bn.conditionals) == 8

    pruned = bn.prune(2)
    assert count_leaves(pruned.conditionals) == 2
    discrete = [c for c in pruned if isinstance(c, DiscreteConditional)]
    assert len(discrete) == 1
    assert pruned[len(pruned) - 1] is discrete[0]
    assert pruned.map_assignment() == bn.map_assignment()
    assert pruned.optimize().equals(bn.optimize(), tol=1e-9)
    # The input net is untouched.
    assert count_leaves(bn.conditionals) == 8


def test_pruned_branch_cannot_be_chosen():
    s = Switching(3)
    bn = s.linearized_graph.eliminate_sequential().prune(1)
    mpe = bn.map_assignment()
    other = {k: 1 - v for k, v in mpe.items()}
    with pytest.raises(InfeasibleAssignmentError):
        bn.choose(other)


def test_all_infeasible_net_raises():
    still = GaussianConditional.from_mean_and_stddev(X(1), [0.0], 1.0)
    mixture = GaussianMixtureConditional.from_list([X(1)], [], [DiscreteKey(M(1), 2)], [still, still])
    bn = HybridBayesNet([mixture.prune(lambda assignment: False)])
    with pytest.raises(NoFeasibleAssignmentError):
        bn.optimize()
