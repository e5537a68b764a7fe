"""
Reference CPU backend built on the numpy kernels
"""

from typing import TYPE_CHECKING

import numpy as np

from ..constants import CPU_ROLLING_DECAY, VARIANCE_EPSILON
from ..context import ExecutionContext
from ..kernels import (
    mean_cpu,
    variance_cpu,
    update_rolling,
    cumulative_statistics,
    normalize_cpu,
    scale_bias,
    add_bias,
    backward_scale_cpu,
    backward_bias,
    mean_delta_cpu,
    variance_delta_cpu,
    normalize_delta_cpu
)
from .base import Backend

if TYPE_CHECKING:
    from ..layers.batchnorm import BatchNormLayer


class CPUBackend(Backend):
    """
    Step-by-step reference implementation

    Normalization divides by sqrt(variance) + eps; every stage works in place
    on the layer buffers.

    Args:
        rolling_decay: Weight kept by the rolling statistics (0.9 by default)
    """

    name = 'cpu'

    def __init__(self, rolling_decay: float = CPU_ROLLING_DECAY):
        super().__init__(rolling_decay)

    def forward(self, layer: 'BatchNormLayer', ctx: ExecutionContext):
        batch, filters, spatial = layer.stat_shape()

        if ctx.train and not ctx.adversarial:
            np.copyto(layer.saved_input, layer.output)
            mean_cpu(layer.output, batch, filters, spatial, layer.mean)

            if layer.cumulative:
                cumulative_statistics(
                    layer.output, layer.mean, batch, filters, spatial,
                    ctx.minibatch_index, layer.m_cbn_avg, layer.v_cbn_avg,
                    layer.variance, layer.rolling_mean, layer.rolling_variance,
                    rolling_alpha=1. - self.rolling_decay
                )
            else:
                variance_cpu(layer.output, layer.mean, batch, filters, spatial, layer.variance)
                update_rolling(layer.rolling_mean, layer.mean, self.rolling_decay)
                update_rolling(layer.rolling_variance, layer.variance, self.rolling_decay)

            normalize_cpu(layer.output, layer.mean, layer.variance, batch, filters, spatial)
            np.copyto(layer.saved_normalized, layer.output)
        else:
            normalize_cpu(layer.output, layer.rolling_mean, layer.rolling_variance,
                          batch, filters, spatial)

        scale_bias(layer.output, layer.scales, batch, filters, spatial)
        add_bias(layer.output, layer.biases, batch, filters, spatial)

    def backward(self, layer: 'BatchNormLayer', ctx: ExecutionContext):
        batch, filters, spatial = layer.stat_shape()

        if ctx.adversarial:
            inv_std = 1. / np.sqrt(layer.rolling_variance + VARIANCE_EPSILON)
            scale_bias(layer.delta, inv_std, batch, filters, spatial)
            scale_bias(layer.delta, layer.scales, batch, filters, spatial)
            return

        if not ctx.train:
            layer.mean[:] = layer.rolling_mean
            layer.variance[:] = layer.rolling_variance

        backward_scale_cpu(layer.saved_normalized, layer.delta,
                           batch, filters, spatial, layer.scale_grad)
        backward_bias(layer.bias_grad, layer.delta, batch, filters, spatial)

        # delta now holds the error w.r.t. the normalized value
        scale_bias(layer.delta, layer.scales, batch, filters, spatial)

        mean_delta_cpu(layer.delta, layer.variance,
                       batch, filters, spatial, layer.mean_grad)
        variance_delta_cpu(layer.saved_input, layer.delta, layer.mean, layer.variance,
                           batch, filters, spatial, layer.variance_grad)
        normalize_delta_cpu(layer.saved_input, layer.mean, layer.variance,
                            layer.mean_grad, layer.variance_grad,
                            batch, filters, spatial, layer.delta)

    def update(self, layer: 'BatchNormLayer', batch: int,
               learning_rate: float, momentum: float):
        step = learning_rate / batch

        layer.biases += step * layer.bias_grad
        layer.bias_grad *= momentum

        layer.scales += step * layer.scale_grad
        layer.scale_grad *= momentum
