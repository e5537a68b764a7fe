"""
Compute backends for the batch normalization layer
"""

from .base import Backend
from .cpu import CPUBackend
from .accelerated import AcceleratedBackend, DeviceContext, TensorDescriptor
from .selector import make_backend

__all__ = [
    'Backend',
    'CPUBackend',
    'AcceleratedBackend',
    'DeviceContext',
    'TensorDescriptor',
    'make_backend',
]
