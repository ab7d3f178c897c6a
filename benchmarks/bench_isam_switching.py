# Copyright (c) 2025.
# This file is part of hybrid-isam, released under the MIT License.

import time

from hybrid_isam.core.config import EliminationConfig, ISAMConfig
from hybrid_isam.hybrid.isam import HybridGaussianISAM
from hybrid_isam.slam.switching import Switching


def run_batch(K: int, max_workers: int = 1):
    """
    Batch baseline: linearize the whole switching chain and eliminate it
    multifrontally in one go.
    """
    s = Switching(K)
    cfg = EliminationConfig(max_workers=max_workers)

    t0 = time.time()
    tree = s.linearized_graph.eliminate_multifrontal(config=cfg)
    solution = tree.optimize()
    t1 = time.time()

    print(f"[batch]       K = {K:3d}, cliques = {len(tree):3d}, {1000.0 * (t1 - t0):9.2f} ms")
    return solution


def run_incremental(K: int, max_leaves: int = 0, max_workers: int = 1):
    """
    Incremental: one ISAM update per time step, optionally pruning the
    discrete hypotheses to ``max_leaves`` after every step.

    Without pruning the root clique holds all 2^(K-1) mode sequences, so
    this is the configuration where pruning pays off.
    """
    s = Switching(K)
    isam = HybridGaussianISAM(ISAMConfig(EliminationConfig(max_workers=max_workers)))

    t0 = time.time()
    for batch in s.batches():
        isam.update(batch)
        if max_leaves > 0:
            isam.prune(max_leaves)
    solution = isam.optimize()
    t1 = time.time()

    label = f"prune={max_leaves}" if max_leaves > 0 else "no pruning"
    print(f"[incremental] K = {K:3d}, {label:11s}, {1000.0 * (t1 - t0):9.2f} ms")
    return solution


if __name__ == "__main__":
    # Example:
    #   PYTHONPATH=src python3 benchmarks/bench_isam_switching.py
    print("=== Hybrid ISAM on the switching chain ===")
    for K in (4, 6, 8):
        run_batch(K)
        run_incremental(K)
        run_incremental(K, max_leaves=4)
    run_incremental(8, max_leaves=4, max_workers=4)
