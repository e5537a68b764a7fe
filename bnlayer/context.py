"""
Execution context passed to every forward/backward call
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np


@dataclass
class ExecutionContext:
    """
    Per-call state handed over by the network executor

    Args:
        input: Input tensor, read only by standalone layers
        delta: Upstream error buffer, written by standalone layers in backward
        train: Training flag; None falls back to the layer's own flag
        adversarial: Normalize with rolling statistics even while training
        try_fix_nan: Sanitize NaN/Inf in parameters and gradients after the call
        current_subdivision: Index of the mini-batch within the optimizer step
        subdivisions: Number of mini-batches per optimizer step
    """
    input: Optional[np.ndarray] = None
    delta: Optional[np.ndarray] = None
    train: Optional[bool] = None
    adversarial: bool = False
    try_fix_nan: bool = False
    current_subdivision: int = 0
    subdivisions: int = 1

    @property
    def minibatch_index(self) -> int:
        return self.current_subdivision + 1
