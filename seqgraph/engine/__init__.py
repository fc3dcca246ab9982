"""The execution engine allows creating, training and evaluating computation graphs.

Modules:
    atomic: Atomic counters.
    compileflags: Common definitions of flags influencing the engine.
    errors: Error taxonomy.
    layout: Minibatch layout and masking.
    pool: Transient buffer pool.
    frontend: Graph construction and manipulation frontend.
    numpybackend: NumPy-specific backend
"""

# SPDX-License-Identifier: Apache-2.0
