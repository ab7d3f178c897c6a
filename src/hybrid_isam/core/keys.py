# Copyright (c) 2025.
# This file is part of hybrid-isam, released under the MIT License.
"""
Variable keys for hybrid factor graphs.

Every unknown in a hybrid problem is identified by an integer key. Continuous
variables (poses, landmarks) carry their dimension implicitly through the
Jacobian blocks of the factors that touch them; discrete variables (modes,
data-association hypotheses) are described by a :class:`DiscreteKey`, which
pairs the key with its cardinality.

Keys are usually built from a character and an index with :func:`symbol`,
so that ``X(3)`` (third pose) and ``M(3)`` (third mode) never collide::

    from hybrid_isam.core.keys import X, M, DiscreteKey

    x3 = X(3)
    m3 = DiscreteKey(M(3), 2)

The character lives in the top byte of the 64-bit key and the index in the
remaining 56 bits.
"""

from __future__ import annotations

from functools import partial
from typing import List, NamedTuple, NewType

Key = NewType("Key", int)
Ordering = List[Key]

_CHAR_BITS = 8
_INDEX_BITS = 64 - _CHAR_BITS
_INDEX_MASK = (1 << _INDEX_BITS) - 1


class DiscreteKey(NamedTuple):
    """A discrete variable: its key and the number of values it can take."""
    key: Key
    cardinality: int


def symbol(char: str, index: int) -> Key:
    """Pack a single character and a non-negative index into a key."""
    if len(char) != 1:
        raise ValueError(f"Symbol character must be a single character, got '{char}'")
    if index < 0 or index > _INDEX_MASK:
        raise ValueError(f"Symbol index {index} out of range")
    return Key((ord(char) << _INDEX_BITS) | index)


def symbol_char(key: int) -> str:
    return chr(key >> _INDEX_BITS)


def symbol_index(key: int) -> int:
    return key & _INDEX_MASK


def key_to_str(key: int) -> str:
    """Human-readable form: ``x3`` for symbol keys, the plain integer otherwise."""
    c = key >> _INDEX_BITS
    if 0 < c < 128 and chr(c).isalpha():
        return f"{chr(c)}{key & _INDEX_MASK}"
    return str(key)


# Shorthands for the variable families used throughout the tests.
X = partial(symbol, "x")  # continuous poses
M = partial(symbol, "m")  # discrete modes
L = partial(symbol, "l")  # landmarks
P = partial(symbol, "p")  # triangulated points
