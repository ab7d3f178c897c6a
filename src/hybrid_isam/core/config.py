# Copyright (c) 2025.
# This file is part of hybrid-isam, released under the MIT License.
"""
Configuration objects for elimination and incremental updates.

Settings are plain dataclasses passed explicitly into the engine, in the
same manner as the solver configs in :mod:`hybrid_isam.nonlinear.solvers`.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class EliminationConfig:
    rank_tol: float = 1e-9           # |R_ii| below this is treated as rank loss
    merge_discrete_root: bool = True  # one root clique for trailing discrete keys
    max_workers: int = 1             # >1 eliminates discrete branches on a thread pool


@dataclass
class ISAMConfig:
    elimination: EliminationConfig = field(default_factory=EliminationConfig)
    check_invariants: bool = True
