"""
NaN/Inf sanitation hooks for parameter, statistic and gradient arrays
"""

from typing import Dict

import numpy as np

from ..errors import NumericalInstability


def fix_nan_and_inf(values: np.ndarray) -> int:
    """
    Replace NaN/Inf entries in place

    A non-finite entry at index i becomes 1 / (i + 1), which keeps the
    replacements small and distinct.

    Args:
        values: Flat array to sanitize

    Returns:
        Number of replaced entries
    """
    bad = ~np.isfinite(values)
    count = int(bad.sum())
    if count:
        index = np.flatnonzero(bad)
        values[index] = 1. / (index + 1.)
    return count


def check_finite(arrays: Dict[str, np.ndarray]):
    """
    Raise if any named array holds NaN or Inf

    Raises:
        NumericalInstability: Naming the first offending array
    """
    for name, values in arrays.items():
        if values is not None and not np.all(np.isfinite(values)):
            raise NumericalInstability(f"Non-finite values in {name}")
