# bnlayer/__init__.py
"""
bnlayer
Spatial batch normalization compute layer with explicit forward, backward
and update passes on interchangeable CPU and accelerated backends
"""

from .context import ExecutionContext
from .errors import BatchNormError, AllocationFailure, ShapeMismatch, NumericalInstability
from .layers.batchnorm import BatchNormLayer
from .backends import CPUBackend, AcceleratedBackend, DeviceContext, make_backend
from .training.trainer import Trainer
from .datasets.synthetic import SyntheticActivations

__version__ = '0.1.0'

__all__ = [
    'ExecutionContext',
    'BatchNormError',
    'AllocationFailure',
    'ShapeMismatch',
    'NumericalInstability',
    'BatchNormLayer',
    'CPUBackend',
    'AcceleratedBackend',
    'DeviceContext',
    'make_backend',
    'Trainer',
    'SyntheticActivations',
]
