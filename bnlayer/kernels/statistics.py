"""
Per-channel statistics over the batch and spatial extent

All kernels take flat NCHW buffers and write their results into
caller-owned arrays of length ``filters``.
"""

import numpy as np


def _channels_view(x: np.ndarray, batch: int, filters: int, spatial: int) -> np.ndarray:
    return x.reshape(batch, filters, spatial)


def mean_cpu(x: np.ndarray, batch: int, filters: int, spatial: int,
             mean: np.ndarray) -> np.ndarray:
    """
    Per-channel mean: mean[c] = sum(x[b, c, s]) / (batch * spatial)

    Args:
        x: Flat activation buffer
        batch: Number of samples
        filters: Number of channels
        spatial: Height * width
        mean: Output array of length filters

    Returns:
        The ``mean`` array
    """
    view = _channels_view(x, batch, filters, spatial)
    mean[:] = view.sum(axis=(0, 2)) / (batch * spatial)
    return mean


def variance_cpu(x: np.ndarray, mean: np.ndarray, batch: int, filters: int,
                 spatial: int, variance: np.ndarray) -> np.ndarray:
    """
    Biased (population) variance per channel, no Bessel correction

    Args:
        x: Flat activation buffer
        mean: Per-channel mean produced by ``mean_cpu``
        batch: Number of samples
        filters: Number of channels
        spatial: Height * width
        variance: Output array of length filters

    Returns:
        The ``variance`` array
    """
    view = _channels_view(x, batch, filters, spatial)
    centered = view - mean[None, :, None]
    variance[:] = np.square(centered).sum(axis=(0, 2)) / (batch * spatial)
    return variance


def update_rolling(rolling: np.ndarray, batch_stat: np.ndarray, decay: float) -> np.ndarray:
    """rolling = decay * rolling + (1 - decay) * batch_stat, in place"""
    rolling *= decay
    rolling += (1. - decay) * batch_stat
    return rolling


def cumulative_statistics(x: np.ndarray,
                          mean: np.ndarray,
                          batch: int,
                          filters: int,
                          spatial: int,
                          minibatch_index: int,
                          m_avg: np.ndarray,
                          v_avg: np.ndarray,
                          variance: np.ndarray,
                          rolling_mean: np.ndarray,
                          rolling_variance: np.ndarray,
                          rolling_alpha: float) -> None:
    """
    Cumulative (cross mini-batch) statistics for one optimizer step

    The mean and the mean of squares are averaged over the subdivisions seen
    so far with weight 1/minibatch_index, so the last subdivision of a step
    normalizes with statistics of the whole step. ``mean`` must hold the
    current batch mean on entry and holds the cumulative mean on exit.

    Args:
        x: Flat activation buffer
        mean: Current batch mean, overwritten with the cumulative mean
        batch: Number of samples
        filters: Number of channels
        spatial: Height * width
        minibatch_index: 1-based index of the subdivision within the step
        m_avg: Running average of batch means across subdivisions
        v_avg: Running average of batch mean squares across subdivisions
        variance: Output cumulative variance
        rolling_mean: Rolling mean, updated in place
        rolling_variance: Rolling variance, updated in place
        rolling_alpha: Weight of the new statistic in the rolling update
    """
    if minibatch_index < 1:
        raise ValueError(f"minibatch_index must be >= 1, got {minibatch_index}")

    view = _channels_view(x, batch, filters, spatial)
    mean_square = np.square(view).sum(axis=(0, 2)) / (batch * spatial)

    alpha_cbn = 1. / minibatch_index
    m_avg *= (1. - alpha_cbn)
    m_avg += alpha_cbn * mean
    v_avg *= (1. - alpha_cbn)
    v_avg += alpha_cbn * mean_square

    mean[:] = m_avg
    np.maximum(v_avg - m_avg * m_avg, 0., out=variance)

    update_rolling(rolling_mean, mean, 1. - rolling_alpha)
    update_rolling(rolling_variance, variance, 1. - rolling_alpha)
