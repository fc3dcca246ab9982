"""The seqgraph package implements a computation graph engine for sequence models."""

from .engine.frontend.network import Network
from .engine.layout import FrameRange, MinibatchLayout
from .training import SGDTrainer

__all__ = [
    "FrameRange",
    "MinibatchLayout",
    "Network",
    "SGDTrainer",
]
