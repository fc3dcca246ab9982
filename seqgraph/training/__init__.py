"""Training utilities for seqgraph networks.

Plain SGD driven by a `seqgraph.data.SequenceEnumerator`.
"""

# SPDX-License-Identifier: Apache-2.0

from .sgd import EpochSummary, SGDTrainer

__all__ = [
    "EpochSummary",
    "SGDTrainer",
]
