"""
Backend interface shared by the CPU and accelerated paths
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from ..context import ExecutionContext

if TYPE_CHECKING:
    from ..layers.batchnorm import BatchNormLayer


class Backend(ABC):
    """
    Compute strategy behind a batch normalization layer

    A backend owns the math of forward, backward and update; the layer owns
    the buffers and the seams with the surrounding network (input copy,
    upstream delta copy, shape checks). ``ctx.train`` is always resolved to a
    bool by the layer before a backend sees it.

    Args:
        rolling_decay: Weight kept by the rolling statistics on each training call
    """

    name = 'base'

    def __init__(self, rolling_decay: float):
        if not 0. <= rolling_decay < 1.:
            raise ValueError(f"rolling_decay must be in [0, 1), got {rolling_decay}")
        self.rolling_decay = rolling_decay

    @property
    def keeps_normalized(self) -> bool:
        """Whether the layer must allocate ``saved_normalized`` for this backend"""
        return True

    def configure(self, layer: 'BatchNormLayer'):
        """(Re)build any per-layer descriptors after construction or resize"""

    @abstractmethod
    def forward(self, layer: 'BatchNormLayer', ctx: ExecutionContext):
        """Normalize ``layer.output`` in place and apply scale and bias"""

    @abstractmethod
    def backward(self, layer: 'BatchNormLayer', ctx: ExecutionContext):
        """Accumulate parameter gradients and turn ``layer.delta`` into the input gradient"""

    @abstractmethod
    def update(self, layer: 'BatchNormLayer', batch: int,
               learning_rate: float, momentum: float):
        """Momentum SGD step on scale and bias"""

    def extra_repr(self) -> str:
        return f'rolling_decay={self.rolling_decay}'

    def __repr__(self) -> str:
        return f'{self.__class__.__name__}({self.extra_repr()})'
