# Copyright (c) 2025.
# This file is part of hybrid-isam, released under the MIT License.
"""
Single point of JAX initialization for hybrid-isam.

Elimination compares normalization constants across discrete assignments and
checks QR diagonals against a rank tolerance, both of which need double
precision. This module switches x64 on once at import time; every numeric
module imports ``jax`` and ``jnp`` from here instead of importing JAX
directly.

Usage::

    from hybrid_isam.core.jax_init import jax, jnp
"""

from __future__ import annotations

import jax
import jax.numpy as jnp

jax.config.update("jax_enable_x64", True)

__all__ = ["jax", "jnp"]
