# Copyright (c) 2025.
# This file is part of hybrid-isam, released under the MIT License.
"""
Containers for solutions of hybrid problems.

DiscreteValues
    A (possibly partial) discrete assignment ``key -> index``.

VectorValues
    A continuous solution ``key -> 1-D array``. In the linear setting these
    are *deltas* with respect to a linearization point.

HybridValues
    The pair of both, as returned by ``optimize()`` on a Bayes net or Bayes
    tree. Access goes through ``.continuous()`` and ``.discrete()``.
"""

from __future__ import annotations

from typing import Dict, Mapping, Optional, Union

from .jax_init import jnp
from .keys import Key, key_to_str


class DiscreteValues(Dict[Key, int]):
    """Assignment of discrete keys to value indices."""

    def restrict(self, keys) -> "DiscreteValues":
        return DiscreteValues({k: self[k] for k in keys if k in self})

    def __repr__(self) -> str:
        body = ", ".join(f"{key_to_str(k)}: {v}" for k, v in sorted(self.items()))
        return f"DiscreteValues({{{body}}})"


class VectorValues(Dict[Key, jnp.ndarray]):
    """Assignment of continuous keys to vectors."""

    def __init__(self, data: Optional[Mapping[Key, jnp.ndarray]] = None) -> None:
        super().__init__()
        for key, value in (data or {}).items():
            self[key] = value

    def __setitem__(self, key: Key, value) -> None:
        super().__setitem__(key, jnp.atleast_1d(jnp.asarray(value, dtype=jnp.float64)))

    def dims(self) -> Dict[Key, int]:
        return {k: int(v.shape[0]) for k, v in self.items()}

    def equals(self, other: "VectorValues", tol: float = 1e-9) -> bool:
        if set(self.keys()) != set(other.keys()):
            return False
        for key, value in self.items():
            if value.shape != other[key].shape:
                return False
            if not bool(jnp.allclose(value, other[key], atol=tol, rtol=0.0)):
                return False
        return True

    def __repr__(self) -> str:
        body = ", ".join(f"{key_to_str(k)}: {v.tolist()}" for k, v in sorted(self.items()))
        return f"VectorValues({{{body}}})"


class HybridValues:
    """A full hybrid solution: continuous vectors plus a discrete assignment."""

    def __init__(
        self,
        continuous: Optional[Mapping[Key, jnp.ndarray]] = None,
        discrete: Optional[Mapping[Key, int]] = None,
    ) -> None:
        self._continuous = VectorValues(continuous)
        self._discrete = DiscreteValues(discrete or {})

    def continuous(self) -> VectorValues:
        return self._continuous

    def discrete(self) -> DiscreteValues:
        return self._discrete

    def at(self, key: Key) -> Union[jnp.ndarray, int]:
        if key in self._continuous:
            return self._continuous[key]
        return self._discrete[key]

    def equals(self, other: "HybridValues", tol: float = 1e-9) -> bool:
        return (
            dict(self._discrete) == dict(other.discrete())
            and self._continuous.equals(other.continuous(), tol)
        )

    def __repr__(self) -> str:
        return f"HybridValues({self._continuous!r}, {self._discrete!r})"
