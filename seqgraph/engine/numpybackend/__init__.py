"""The NumPy backend evaluates execution plans forward and backward.

Modules:
    operators: Kernels of the node kinds.
    executor: Forward and backward sweeps.
"""

# SPDX-License-Identifier: Apache-2.0
