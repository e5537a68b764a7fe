"""
Numpy kernels for the CPU batch normalization path
"""

from .statistics import (
    mean_cpu,
    variance_cpu,
    update_rolling,
    cumulative_statistics
)

from .normalization import (
    normalize_cpu,
    scale_bias,
    add_bias,
    backward_scale_cpu,
    backward_bias,
    mean_delta_cpu,
    variance_delta_cpu,
    normalize_delta_cpu
)

__all__ = [
    'mean_cpu',
    'variance_cpu',
    'update_rolling',
    'cumulative_statistics',
    'normalize_cpu',
    'scale_bias',
    'add_bias',
    'backward_scale_cpu',
    'backward_bias',
    'mean_delta_cpu',
    'variance_delta_cpu',
    'normalize_delta_cpu',
]
