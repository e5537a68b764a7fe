# bnlayer/utils/__init__.py
"""
Utility functions for batch normalization layers
"""

from .numerics import fix_nan_and_inf, check_finite

from .analysis import (
    channel_moments,
    gradient_check,
    compare_backends
)

from .visualization import (
    plot_rolling_statistics,
    plot_training_curves,
    plot_backend_parity
)

__all__ = [
    'fix_nan_and_inf',
    'check_finite',
    'channel_moments',
    'gradient_check',
    'compare_backends',
    'plot_rolling_statistics',
    'plot_training_curves',
    'plot_backend_parity'
]
