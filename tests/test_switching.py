import pytest

from hybrid_isam.core.keys import M, X
from hybrid_isam.inference.discrete import DiscreteConditional
from hybrid_isam.slam.switching import Switching


def test_graph_layout():
    """1 prior + per step (mixture, measurement, mode conditional)."""
    s = Switching(4)
    assert len(s.nonlinear_graph) == 1 + 3 * 3
    assert len(s.linearized_graph) == len(s.nonlinear_graph)
    assert s.linearized_graph.keys() == {X(k) for k in range(1, 5)} | {M(k) for k in range(1, 4)}
    discrete = [f for f in s.linearized_graph if isinstance(f, DiscreteConditional)]
    assert [c.frontal_keys for c in discrete] == [(M(1),), (M(2),), (M(3),)]
    assert discrete[1].parent_keys == (M(1),)


def test_ground_truth_follows_the_modes():
    s = Switching(4, modes=[1, 0, 1])
    truth = [float(s.ground_truth[X(k)][0]) for k in range(1, 5)]
    assert truth == [0.0, 1.0, 1.0, 2.0]
    assert float(s.linearization_point[X(3)][0]) == 3.0
    assert Switching(3).modes == [1, 1]


def test_batches_partition_the_graph():
    s = Switching(5)
    for size in (1, 2, 4):
        batches = s.batches(size)
        assert len(batches) == -(-4 // size)
        assert sum(len(b) for b in batches) == len(s.linearized_graph)


def test_invalid_arguments():
    with pytest.raises(ValueError):
        Switching(1)
    with pytest.raises(ValueError):
        Switching(3, modes=[1])
    with pytest.raises(ValueError):
        Switching(3).batches(0)
