# bnlayer/layers/__init__.py
"""
Layers
"""

from .batchnorm import BatchNormLayer, allocate_buffer, LAYER_TYPES

__all__ = ['BatchNormLayer', 'allocate_buffer', 'LAYER_TYPES']
