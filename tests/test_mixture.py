import jax.numpy as jnp
import pytest

from hybrid_isam.core.errors import InfeasibleAssignmentError, MissingAssignmentError
from hybrid_isam.core.keys import DiscreteKey, M, X
from hybrid_isam.core.values import HybridValues
from hybrid_isam.inference.gaussian import GaussianConditional, GaussianFactor
from hybrid_isam.inference.mixture import (
    GaussianMixtureConditional,
    GaussianMixtureFactor,
    feasible_branches,
)

MODE = DiscreteKey(M(1), 2)


def _motion_mixture():
    """x2 - x1 = 0 (still) or 1 (moving), sigma 1."""
    components = [
        GaussianFactor.from_sigmas([X(1), X(2)], [-jnp.eye(1), jnp.eye(1)], [offset], 1.0)
        for offset in (0.0, 1.0)
    ]
    return GaussianMixtureFactor.from_list([X(1), X(2)], [MODE], components)


def _conditional_mixture(pruned=False):
    still = GaussianConditional.from_mean_and_stddev(X(1), [0.0], 1.0)
    moving = GaussianConditional.from_mean_and_stddev(X(1), [1.0], 1.0)
    return GaussianMixtureConditional.from_list(
        [X(1)], [], [MODE], [still, None if pruned else moving]
    )


def test_mixture_factor_selects_component():
    mixture = _motion_mixture()
    assert mixture.keys == (X(1), X(2), M(1))
    assert mixture.dims() == {X(1): 1, X(2): 1}
    values = {X(1): jnp.array([0.0]), X(2): jnp.array([1.0])}
    moving = mixture.component({M(1): 1})
    still = mixture.component({M(1): 0})
    assert moving.error(values) == pytest.approx(0.0)
    assert still.error(values) == pytest.approx(0.5)
    assert mixture.log_value(HybridValues(values, {M(1): 1})) > mixture.log_value(
        HybridValues(values, {M(1): 0})
    )


def test_mixture_factor_validates_branches():
    still = GaussianFactor.from_sigmas([X(1)], [jnp.eye(1)], [0.0], 1.0)
    with pytest.raises(ValueError):
        GaussianMixtureFactor.from_list([X(1)], [MODE], [still])
    with pytest.raises(ValueError):
        GaussianMixtureFactor([X(1)], [MODE], {(2,): still})
    with pytest.raises(ValueError):
        GaussianMixtureFactor([X(1)], [MODE], {(0, 1): still})


def test_absent_branches_are_pruned():
    still = GaussianFactor.from_sigmas([X(1)], [jnp.eye(1)], [0.0], 1.0)
    sparse = GaussianMixtureFactor([X(1)], [MODE], {(0,): still})
    assert sparse.branches() == [(0,)]
    assert sparse.component({M(1): 1}) is None
    assert sparse.equals(GaussianMixtureFactor.from_list([X(1)], [MODE], [still, None]))
    assert sparse.log_value(HybridValues({X(1): [0.0]}, {M(1): 1})) == float("-inf")


def test_mixture_factor_missing_mode_raises():
    with pytest.raises(MissingAssignmentError):
        _motion_mixture().component({})


def test_choose_and_errors():
    mixture = _conditional_mixture(pruned=True)
    assert mixture.frontal_keys == (X(1),)
    assert mixture.parent_keys == (M(1),)
    assert mixture.nr_feasible() == 1
    assert mixture.choose({M(1): 0}).equals(
        GaussianConditional.from_mean_and_stddev(X(1), [0.0], 1.0)
    )
    with pytest.raises(InfeasibleAssignmentError):
        mixture.choose({M(1): 1})
    with pytest.raises(MissingAssignmentError):
        mixture.choose({})


def test_feasibility_factor_marks_pruned_branches():
    table = _conditional_mixture(pruned=True).feasibility_factor().table
    assert jnp.allclose(table, jnp.array([1.0, 0.0]))
    table = _conditional_mixture().feasibility_factor().table
    assert jnp.allclose(table, jnp.array([1.0, 1.0]))


def test_prune_returns_a_copy():
    mixture = _conditional_mixture()
    pruned = mixture.prune(lambda assignment: assignment == (1,))
    assert pruned.nr_feasible() == 1
    assert mixture.nr_feasible() == 2
    assert (0,) not in pruned.conditionals
    assert pruned.branches() == [(1,)]
    assert pruned.dims() == {X(1): 1}


def test_fully_pruned_mixture_keeps_dims():
    mixture = _conditional_mixture().prune(lambda assignment: False)
    assert mixture.nr_feasible() == 0
    assert mixture.dims() == {X(1): 1}
    values = HybridValues({X(1): [0.0]}, {M(1): 0})
    assert mixture.log_density(values) == float("-inf")


def test_to_factor_matches_log_density():
    mixture = _conditional_mixture()
    factor = mixture.to_factor()
    for mode in (0, 1):
        values = HybridValues({X(1): [0.25]}, {M(1): mode})
        assert factor.log_value(values) == pytest.approx(mixture.log_density(values))


def test_equals():
    assert _conditional_mixture().equals(_conditional_mixture())
    assert not _conditional_mixture().equals(_conditional_mixture(pruned=True))
    assert _motion_mixture().equals(_motion_mixture())


def test_feasible_branches_join_surviving_components():
    """Two mixtures sharing M(2): only the branches both keep are enumerated."""
    m1, m2, m3 = (DiscreteKey(M(k), 2) for k in (1, 2, 3))
    still = GaussianFactor.from_sigmas([X(1)], [jnp.eye(1)], [0.0], 1.0)
    first = GaussianMixtureFactor([X(1)], [m1, m2], {(0, 0): still, (1, 1): still})
    second = GaussianMixtureFactor([X(1)], [m2], {(1,): still})
    assert feasible_branches([m1, m2], [first, second]) == [(1, 1)]
    # M(3) is touched by no mixture and ranges freely.
    assert feasible_branches([m1, m2, m3], [first, second]) == [(1, 1, 0), (1, 1, 1)]
    assert feasible_branches([m2], [second, GaussianMixtureFactor([X(1)], [m2], {})]) == []
