"""
Error types raised by the batch normalization layer
"""


class BatchNormError(Exception):
    """Base class for batch normalization layer errors"""


class AllocationFailure(BatchNormError, MemoryError):
    """A layer buffer could not be allocated (construction or resize)"""


class ShapeMismatch(BatchNormError, ValueError):
    """A caller supplied tensor does not match the layer geometry"""


class NumericalInstability(BatchNormError, ArithmeticError):
    """NaN or Inf found in a parameter, statistic or gradient array"""
