import math

import jax.numpy as jnp
import pytest

from hybrid_isam.core.errors import MissingAssignmentError
from hybrid_isam.core.keys import DiscreteKey, M
from hybrid_isam.inference.discrete import (
    DiscreteConditional,
    DiscreteFactor,
    discrete_joint,
    max_product_assignment,
)

A = DiscreteKey(M(1), 2)
B = DiscreteKey(M(2), 2)


def test_signature_prior():
    """P(A) = 99/1 normalizes to 0.99 / 0.01."""
    p = DiscreteConditional.from_signature(A, [], "99/1")
    assert p.probability({M(1): 0}) == pytest.approx(0.99)
    assert p.probability({M(1): 1}) == pytest.approx(0.01)
    assert p.frontal_keys == (M(1),)
    assert p.parent_keys == ()


def test_signature_rows_follow_parent_assignments():
    """
    P(B | A) = "1/2 3/2":
        A = 0 -> (1/3, 2/3)
        A = 1 -> (3/5, 2/5)
    """
    p = DiscreteConditional.from_signature(B, [A], "1/2 3/2")
    assert p.probability({M(2): 1, M(1): 0}) == pytest.approx(2.0 / 3.0)
    assert p.probability({M(2): 0, M(1): 1}) == pytest.approx(0.6)
    assert p.argmax({M(1): 1}) == {M(2): 0}
    assert p.argmax({M(1): 0}) == {M(2): 1}


def test_signature_validation():
    with pytest.raises(ValueError):
        DiscreteConditional.from_signature(B, [A], "1/2")
    with pytest.raises(ValueError):
        DiscreteConditional.from_signature(A, [], "1/2/3")
    with pytest.raises(ValueError):
        DiscreteConditional.from_signature(A, [], "0/0")


def test_missing_assignment_raises():
    f = DiscreteFactor([A, B], [1.0, 2.0, 3.0, 4.0])
    with pytest.raises(MissingAssignmentError):
        f({M(1): 0})
    with pytest.raises(KeyError):
        f({M(2): 0})


def test_multiply_sum_out_restrict():
    fa = DiscreteFactor([A], [1.0, 2.0])
    fab = DiscreteFactor([B, A], [[1.0, 2.0], [3.0, 4.0]])
    prod = fa * fab
    assert set(prod.keys) == {M(1), M(2)}
    assert prod({M(1): 1, M(2): 0}) == pytest.approx(4.0)
    assert prod({M(1): 1, M(2): 1}) == pytest.approx(8.0)

    marginal = prod.sum_out([M(2)])
    assert marginal.keys == (M(1),)
    assert marginal({M(1): 0}) == pytest.approx(4.0)
    assert marginal({M(1): 1}) == pytest.approx(12.0)

    sliced = fab.restrict({M(1): 1})
    assert sliced.keys == (M(2),)
    assert jnp.allclose(sliced.table, jnp.array([2.0, 4.0]))

    assert prod.max_out([M(2)])({M(1): 1}) == pytest.approx(8.0)
    assert float(jnp.sum(prod.normalize().table)) == pytest.approx(1.0)


def test_from_factor_normalizes_per_parent_and_keeps_zero_rows():
    joint = DiscreteFactor([A, B], [[1.0, 0.0], [3.0, 0.0]])
    p = DiscreteConditional.from_factor(joint, [M(1)])
    assert p.probability({M(1): 0, M(2): 0}) == pytest.approx(0.25)
    assert p.probability({M(1): 1, M(2): 0}) == pytest.approx(0.75)
    # B = 1 has no mass at all and stays infeasible.
    assert p.probability({M(1): 0, M(2): 1}) == 0.0
    assert p.log_probability({M(1): 0, M(2): 1}) == float("-inf")
    assert not bool(jnp.any(jnp.isnan(p.table)))


def test_max_product_is_exact_not_greedy():
    """
    P(A) = 0.6 / 0.4, P(B | A=0) = 0.5 / 0.5, P(B | A=1) = 1 / 0.

    Joint: (0,0)=0.3, (0,1)=0.3, (1,0)=0.4. A greedy argmax on P(A) picks
    A=0, the exact MAP is A=1, B=0.
    """
    pa = DiscreteConditional.from_signature(A, [], "6/4")
    pba = DiscreteConditional.from_signature(B, [A], "1/1 1/0")
    assignment, value = max_product_assignment([pa, pba])
    assert assignment == {M(1): 1, M(2): 0}
    assert value == pytest.approx(math.log(0.4))

    # Elimination order does not change the answer.
    assignment, _ = max_product_assignment([pa, pba], [M(2), M(1)])
    assert assignment == {M(1): 1, M(2): 0}


def test_max_product_tie_break_prefers_lowest_index():
    uniform = DiscreteFactor([A, B], jnp.ones((2, 2)))
    assignment, value = max_product_assignment([uniform])
    assert assignment == {M(1): 0, M(2): 0}
    assert value == pytest.approx(0.0)


def test_max_product_reports_minus_infinity_for_infeasible_product():
    zero = DiscreteFactor([A], [0.0, 0.0])
    _, value = max_product_assignment([zero])
    assert value == float("-inf")


def test_max_product_value_does_not_underflow_on_long_products():
    """0.1 ** 400 is far below the float range; the log value stays exact."""
    priors = [
        DiscreteConditional.from_signature(DiscreteKey(M(k), 2), [], "9/1")
        for k in range(1, 401)
    ]
    assignment, value = max_product_assignment(priors)
    assert all(v == 0 for v in assignment.values())
    assert value == pytest.approx(400 * math.log(0.9))
    assert math.isfinite(value)

    # Forcing the unlikely value everywhere is still feasible, just improbable.
    unlikely = priors + [
        DiscreteFactor([DiscreteKey(M(k), 2)], [0.0, 1.0]) for k in range(1, 401)
    ]
    assignment, value = max_product_assignment(unlikely)
    assert all(v == 1 for v in assignment.values())
    assert value == pytest.approx(400 * math.log(0.1))


def test_discrete_joint_sorts_keys():
    f = DiscreteFactor([B, A], [[1.0, 2.0], [3.0, 4.0]])
    joint = discrete_joint([f])
    assert joint.keys == (M(1), M(2))
    assert joint({M(1): 1, M(2): 0}) == pytest.approx(2.0)
    assert joint.equals(f)


def test_conditional_equals_and_to_factor():
    p = DiscreteConditional.from_signature(B, [A], "1/2 3/2")
    q = DiscreteConditional.from_signature(B, [A], "1/2 3/2")
    r = DiscreteConditional.from_signature(B, [A], "1/1 3/2")
    assert p.equals(q)
    assert not p.equals(r)
    f = p.to_factor()
    assert type(f) is DiscreteFactor
    assert f({M(1): 1, M(2): 1}) == pytest.approx(0.4)


def test_sparse_table_stores_only_non_zero_entries():
    f = DiscreteFactor([A, B], {(0, 1): 2.0, (1, 1): 0.0, (1, 0): 3.0})
    assert f.is_sparse
    assert f.nnz() == 2
    assert f.entries() == {(0, 1): 2.0, (1, 0): 3.0}
    assert f({M(1): 1, M(2): 1}) == 0.0
    assert jnp.allclose(f.table, jnp.array([[0.0, 2.0], [3.0, 0.0]]))
    assert f.equals(DiscreteFactor([A, B], [[0.0, 2.0], [3.0, 0.0]]))

    with pytest.raises(ValueError):
        DiscreteFactor([A, B], {(0, 2): 1.0})
    with pytest.raises(ValueError):
        DiscreteFactor([A, B], {(0,): 1.0})


def test_sparse_algebra_matches_dense():
    sparse = DiscreteFactor([B, A], {(0, 0): 1.0, (1, 1): 4.0})
    dense = DiscreteFactor([B, A], [[1.0, 0.0], [0.0, 4.0]])
    prior = DiscreteFactor([A], [1.0, 2.0])

    prod = sparse * prior
    assert prod.is_sparse
    assert prod.equals(dense * prior)
    assert prod.sum_out([M(2)]).equals((dense * prior).sum_out([M(2)]))
    assert prod.max_out([M(1)]).equals((dense * prior).max_out([M(1)]))
    assert sparse.restrict({M(1): 1}).equals(dense.restrict({M(1): 1}))
    assert sparse.normalize().equals(dense.normalize())
    assert sparse.reordered([A, B]).entries() == {(0, 0): 1.0, (1, 1): 4.0}
    assert sparse.max_entry() == ((1, 1), 4.0)


def test_sparse_product_never_enumerates_the_full_table():
    """Twenty binary keys have a million assignments; the product keeps two."""
    keys = [DiscreteKey(M(k), 2) for k in range(1, 21)]
    both = DiscreteFactor(keys, {tuple([0] * 20): 0.75, tuple([1] * 20): 0.25})
    prior = DiscreteFactor([keys[0]], [0.5, 0.5])
    joint = DiscreteFactor.product([prior, both])
    assert joint.is_sparse
    assert joint.nnz() == 2
    assert joint.keys == tuple(k for k, _ in keys)
    p = DiscreteConditional.from_factor(joint, [k for k, _ in keys[1:]])
    assert p.is_sparse
    assert p.probability({k: 1 for k, _ in keys}) == pytest.approx(1.0)


def test_sparse_conditional_argmax():
    p = DiscreteConditional([B], [A], {(1, 0): 1.0, (0, 1): 0.25, (1, 1): 0.75})
    assert p.argmax({M(1): 0}) == {M(2): 1}
    assert p.argmax({M(1): 1}) == {M(2): 1}
    assert type(p.to_factor()) is DiscreteFactor
    assert p.to_factor().is_sparse
