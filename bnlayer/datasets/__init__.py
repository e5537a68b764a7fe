# bnlayer/datasets/__init__.py
"""
Datasets for batch normalization experiments
"""

from .synthetic import SyntheticActivations

__all__ = [
    'SyntheticActivations',
]
