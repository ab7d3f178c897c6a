# Copyright (c) 2025.
# This file is part of hybrid-isam, released under the MIT License.
"""
Exception hierarchy for hybrid inference.

Elimination, incremental update and pruning are fail-fast: structural
problems are raised to the caller and never retried internally. Discrete
infeasibility during optimization is handled by excluding branches, and only
surfaces as :class:`NoFeasibleAssignmentError` when nothing feasible is left.
"""

from __future__ import annotations

from typing import Iterable, Optional


class HybridInferenceError(Exception):
    """Base class for all errors raised by the hybrid inference engine."""


class UnderconstrainedError(HybridInferenceError):
    """The joint factor of an elimination step is rank-deficient or empty."""

    def __init__(self, key: int, message: Optional[str] = None) -> None:
        self.key = key
        super().__init__(message or f"Variable {key} is underconstrained")


class OrderingError(HybridInferenceError, ValueError):
    """The elimination ordering cannot be applied to the factor graph."""


class MissingAssignmentError(HybridInferenceError, KeyError):
    """A discrete assignment lacks a value for a required discrete key."""

    def __init__(self, missing: Iterable[int]) -> None:
        self.missing = tuple(missing)
        super().__init__(f"No value assigned to discrete keys {list(self.missing)}")

    def __str__(self) -> str:
        return str(self.args[0])


class StructuralInvariantError(HybridInferenceError):
    """The running-intersection property of a Bayes tree is violated."""


class InfeasibleAssignmentError(HybridInferenceError):
    """The requested discrete assignment selects a pruned branch."""


class NoFeasibleAssignmentError(InfeasibleAssignmentError):
    """Every discrete assignment has zero probability."""
