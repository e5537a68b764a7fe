"""
Backend selection by name
"""

from typing import Literal, Optional

import torch

from .accelerated import AcceleratedBackend, DeviceContext
from .base import Backend
from .cpu import CPUBackend


BackendName = Literal['cpu', 'accelerated', 'auto']


def make_backend(name: BackendName = 'cpu',
                 device_context: Optional[DeviceContext] = None,
                 **kwargs) -> Backend:
    """
    Create a backend by name

    Args:
        name: 'cpu', 'accelerated', or 'auto' (accelerated when CUDA is
            available; otherwise cpu, ignoring ``device_context`` and ``fused``)
        device_context: Device for the accelerated backend
        **kwargs: Forwarded to the backend constructor (rolling_decay, fused)

    Returns:
        Backend instance
    """
    if name == 'auto':
        if torch.cuda.is_available():
            name = 'accelerated'
        else:
            name = 'cpu'
            # Options only the accelerated backend understands
            device_context = None
            kwargs.pop('fused', None)

    if name == 'cpu':
        if device_context is not None:
            raise ValueError("The cpu backend does not take a device context")
        return CPUBackend(**kwargs)
    elif name == 'accelerated':
        return AcceleratedBackend(device_context=device_context, **kwargs)
    else:
        raise ValueError(f"Unknown backend: {name}")
