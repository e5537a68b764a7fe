"""
Normalization, affine and gradient kernels for the CPU path

Every kernel here consumes and produces the same flat buffer (in place).
"""

import numpy as np

from ..constants import STDDEV_EPSILON, VARIANCE_EPSILON


def _channels_view(x: np.ndarray, batch: int, filters: int, spatial: int) -> np.ndarray:
    return x.reshape(batch, filters, spatial)


def _per_channel(values: np.ndarray) -> np.ndarray:
    return values[None, :, None]


def normalize_cpu(x: np.ndarray, mean: np.ndarray, variance: np.ndarray,
                  batch: int, filters: int, spatial: int) -> np.ndarray:
    """x = (x - mean) / (sqrt(variance) + eps), in place"""
    view = _channels_view(x, batch, filters, spatial)
    view -= _per_channel(mean)
    view /= _per_channel(np.sqrt(variance) + STDDEV_EPSILON)
    return x


def scale_bias(x: np.ndarray, scales: np.ndarray,
               batch: int, filters: int, spatial: int) -> np.ndarray:
    """x *= scales[c], in place"""
    view = _channels_view(x, batch, filters, spatial)
    view *= _per_channel(scales)
    return x


def add_bias(x: np.ndarray, biases: np.ndarray,
             batch: int, filters: int, spatial: int) -> np.ndarray:
    """x += biases[c], in place"""
    view = _channels_view(x, batch, filters, spatial)
    view += _per_channel(biases)
    return x


def backward_scale_cpu(x_norm: np.ndarray, delta: np.ndarray,
                       batch: int, filters: int, spatial: int,
                       scale_updates: np.ndarray) -> np.ndarray:
    """
    Accumulate the scale gradient: scale_updates[c] += sum(delta * x_norm)

    Args:
        x_norm: Normalized, not yet scaled forward output
        delta: Error w.r.t. the layer output (not rescaled yet)
        batch: Number of samples
        filters: Number of channels
        spatial: Height * width
        scale_updates: Scale gradient accumulator

    Returns:
        The ``scale_updates`` array
    """
    products = _channels_view(delta, batch, filters, spatial) * \
        _channels_view(x_norm, batch, filters, spatial)
    scale_updates += products.sum(axis=(0, 2))
    return scale_updates


def backward_bias(bias_updates: np.ndarray, delta: np.ndarray,
                  batch: int, filters: int, spatial: int) -> np.ndarray:
    """Accumulate the bias gradient: bias_updates[c] += sum(delta)"""
    bias_updates += _channels_view(delta, batch, filters, spatial).sum(axis=(0, 2))
    return bias_updates


def mean_delta_cpu(delta: np.ndarray, variance: np.ndarray,
                   batch: int, filters: int, spatial: int,
                   mean_delta: np.ndarray) -> np.ndarray:
    """
    Gradient w.r.t. the batch mean

    mean_delta[c] = sum(delta) * (-1 / sqrt(variance + eps))

    The general derivation adds variance_delta * sum(-2 * (x - mean)) / N.
    That term is left out: the variance gradient is still zero when this
    kernel runs, and sum(x - mean) vanishes for the batch mean anyway.
    """
    sums = _channels_view(delta, batch, filters, spatial).sum(axis=(0, 2))
    mean_delta[:] = sums * (-1. / np.sqrt(variance + VARIANCE_EPSILON))
    return mean_delta


def variance_delta_cpu(x: np.ndarray, delta: np.ndarray, mean: np.ndarray,
                       variance: np.ndarray, batch: int, filters: int, spatial: int,
                       variance_delta: np.ndarray) -> np.ndarray:
    """variance_delta[c] = -0.5 * sum(delta * (x - mean)) * (variance + eps)^-1.5"""
    centered = _channels_view(x, batch, filters, spatial) - _per_channel(mean)
    sums = (_channels_view(delta, batch, filters, spatial) * centered).sum(axis=(0, 2))
    variance_delta[:] = sums * -.5 * np.power(variance + VARIANCE_EPSILON, -1.5)
    return variance_delta


def normalize_delta_cpu(x: np.ndarray, mean: np.ndarray, variance: np.ndarray,
                        mean_delta: np.ndarray, variance_delta: np.ndarray,
                        batch: int, filters: int, spatial: int,
                        delta: np.ndarray) -> np.ndarray:
    """
    Gradient w.r.t. the layer input, overwriting ``delta``

    delta = delta / (sqrt(variance) + eps)
            + variance_delta * 2 * (x - mean) / N
            + mean_delta / N

    with N = batch * spatial. The first term adds eps after the square root,
    matching ``normalize_cpu``.
    """
    count = spatial * batch
    view = _channels_view(delta, batch, filters, spatial)
    centered = _channels_view(x, batch, filters, spatial) - _per_channel(mean)

    view /= _per_channel(np.sqrt(variance) + STDDEV_EPSILON)
    view += _per_channel(variance_delta) * 2. * centered / count
    view += _per_channel(mean_delta) / count
    return delta
