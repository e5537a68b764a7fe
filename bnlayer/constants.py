"""
Numerical constants shared by the CPU and accelerated paths
"""

# Added to the variance before a square root or power: sqrt(var + eps)
VARIANCE_EPSILON = 1e-5

# Added after the square root: sqrt(var) + eps
STDDEV_EPSILON = 1e-5

# Weight kept by the rolling statistics on each training call
CPU_ROLLING_DECAY = 0.9
ACCELERATED_ROLLING_DECAY = 0.99
