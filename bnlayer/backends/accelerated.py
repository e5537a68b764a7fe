"""
Accelerated backend built on torch tensor ops
"""

import weakref
from dataclasses import dataclass
from typing import TYPE_CHECKING, NamedTuple, Optional, Tuple, Union

import numpy as np
import torch

from ..constants import ACCELERATED_ROLLING_DECAY, VARIANCE_EPSILON
from ..context import ExecutionContext
from ..errors import BatchNormError
from .base import Backend

if TYPE_CHECKING:
    from ..layers.batchnorm import BatchNormLayer


@dataclass
class DeviceContext:
    """
    Device handle injected into the accelerated backend

    Args:
        device: Torch device the math runs on
        dtype: Torch dtype used on the device
    """
    device: Union[str, torch.device] = 'cpu'
    dtype: torch.dtype = torch.float32

    def __post_init__(self):
        self.device = torch.device(self.device)

    @classmethod
    def default(cls) -> 'DeviceContext':
        """CUDA when available, CPU otherwise"""
        return cls('cuda' if torch.cuda.is_available() else 'cpu')

    def tensor(self, array: np.ndarray) -> torch.Tensor:
        return torch.as_tensor(array, dtype=self.dtype, device=self.device)

    def synchronize(self):
        if self.device.type == 'cuda':
            torch.cuda.synchronize(self.device)


class TensorDescriptor(NamedTuple):
    """Shape a layer's activations are viewed with on the device"""
    batch: int
    channels: int
    spatial: int

    @property
    def numel(self) -> int:
        return self.batch * self.channels * self.spatial


class AcceleratedBackend(Backend):
    """
    Fused normalize + scale + bias on a torch device

    The reciprocal standard deviation rsqrt(variance + eps) is computed once
    per channel and multiplied in, rather than dividing every element by
    sqrt(variance) + eps as the CPU path does.

    With ``fused=True`` the normalized activations are not kept after forward;
    backward recomputes them from the saved input and differentiates the
    fused transform with autograd.

    Every call copies the host buffers to the device and the results back
    before returning.

    Args:
        device_context: Device to run on (``DeviceContext.default()`` if None)
        rolling_decay: Weight kept by the rolling statistics (0.99 by default)
        fused: Recompute the normalized tensor in backward instead of saving it
    """

    name = 'accelerated'

    def __init__(self,
                 device_context: Optional[DeviceContext] = None,
                 rolling_decay: float = ACCELERATED_ROLLING_DECAY,
                 fused: bool = False):
        super().__init__(rolling_decay)
        self.device_context = device_context or DeviceContext.default()
        self.fused = fused
        self._descriptors = weakref.WeakKeyDictionary()

    @property
    def keeps_normalized(self) -> bool:
        return not self.fused

    def configure(self, layer: 'BatchNormLayer'):
        self._descriptors[layer] = TensorDescriptor(*layer.stat_shape())

    def descriptor(self, layer: 'BatchNormLayer') -> TensorDescriptor:
        desc = self._descriptors.get(layer)
        if desc is None:
            raise BatchNormError("Layer was not configured for the accelerated backend")
        if desc.numel != layer.output.size:
            raise BatchNormError(
                f"Stale tensor descriptor {tuple(desc)} for a buffer of "
                f"{layer.output.size} elements; resize the layer through resize()"
            )
        return desc

    def _load(self, array: np.ndarray, desc: Optional[TensorDescriptor] = None) -> torch.Tensor:
        tensor = self.device_context.tensor(array)
        if desc is not None:
            tensor = tensor.view(desc.batch, desc.channels, desc.spatial)
        return tensor

    @staticmethod
    def _store(array: np.ndarray, tensor: torch.Tensor):
        host = tensor.detach().reshape(-1).cpu().numpy()
        np.copyto(array, host.reshape(array.shape), casting='same_kind')

    @staticmethod
    def _per_channel(values: torch.Tensor) -> torch.Tensor:
        return values.view(1, -1, 1)

    def _batch_statistics(self, layer: 'BatchNormLayer', x: torch.Tensor,
                          ctx: ExecutionContext) -> Tuple[torch.Tensor, torch.Tensor]:
        mean = x.mean(dim=(0, 2))
        rolling_mean = self._load(layer.rolling_mean)
        rolling_variance = self._load(layer.rolling_variance)

        if layer.cumulative:
            alpha_cbn = 1. / ctx.minibatch_index
            m_avg = self._load(layer.m_cbn_avg) * (1. - alpha_cbn) + alpha_cbn * mean
            v_avg = self._load(layer.v_cbn_avg) * (1. - alpha_cbn) + \
                alpha_cbn * x.square().mean(dim=(0, 2))
            mean = m_avg
            variance = (v_avg - m_avg * m_avg).clamp(min=0.)
            self._store(layer.m_cbn_avg, m_avg)
            self._store(layer.v_cbn_avg, v_avg)
        else:
            variance = (x - self._per_channel(mean)).square().mean(dim=(0, 2))

        keep = self.rolling_decay
        self._store(layer.rolling_mean, rolling_mean * keep + mean * (1. - keep))
        self._store(layer.rolling_variance, rolling_variance * keep + variance * (1. - keep))
        self._store(layer.mean, mean)
        self._store(layer.variance, variance)
        return mean, variance

    def forward(self, layer: 'BatchNormLayer', ctx: ExecutionContext):
        desc = self.descriptor(layer)
        training = ctx.train and not ctx.adversarial

        with torch.no_grad():
            x = self._load(layer.output, desc)
            scales = self._load(layer.scales)
            biases = self._load(layer.biases)

            if training:
                np.copyto(layer.saved_input, layer.output)
                mean, variance = self._batch_statistics(layer, x, ctx)
            else:
                mean = self._load(layer.rolling_mean)
                variance = self._load(layer.rolling_variance)

            inv_std = torch.rsqrt(variance + VARIANCE_EPSILON)

            if training and self.keeps_normalized:
                normalized = (x - self._per_channel(mean)) * self._per_channel(inv_std)
                self._store(layer.saved_normalized, normalized)
                y = torch.addcmul(self._per_channel(biases), normalized, self._per_channel(scales))
            else:
                factor = scales * inv_std
                shift = biases - mean * factor
                y = torch.addcmul(self._per_channel(shift), x, self._per_channel(factor))

            self._store(layer.output, y)

        self.device_context.synchronize()

    def backward(self, layer: 'BatchNormLayer', ctx: ExecutionContext):
        desc = self.descriptor(layer)

        if ctx.adversarial:
            with torch.no_grad():
                delta = self._load(layer.delta, desc)
                inv_std = torch.rsqrt(self._load(layer.rolling_variance) + VARIANCE_EPSILON)
                factor = self._load(layer.scales) * inv_std
                self._store(layer.delta, delta * self._per_channel(factor))
            self.device_context.synchronize()
            return

        if not ctx.train:
            layer.mean[:] = layer.rolling_mean
            layer.variance[:] = layer.rolling_variance

        if self.fused:
            self._backward_fused(layer, ctx, desc)
        else:
            with torch.no_grad():
                self._backward_steps(layer, desc)

        self.device_context.synchronize()

    def _backward_steps(self, layer: 'BatchNormLayer', desc: TensorDescriptor):
        delta = self._load(layer.delta, desc)
        x = self._load(layer.saved_input, desc)
        x_norm = self._load(layer.saved_normalized, desc)
        scales = self._load(layer.scales)
        mean = self._load(layer.mean)
        variance = self._load(layer.variance)
        count = desc.batch * desc.spatial

        scale_grad = self._load(layer.scale_grad) + (delta * x_norm).sum(dim=(0, 2))
        bias_grad = self._load(layer.bias_grad) + delta.sum(dim=(0, 2))

        delta = delta * self._per_channel(scales)

        inv_std = torch.rsqrt(variance + VARIANCE_EPSILON)
        centered = x - self._per_channel(mean)
        mean_grad = -delta.sum(dim=(0, 2)) * inv_std
        variance_grad = -.5 * (delta * centered).sum(dim=(0, 2)) * \
            (variance + VARIANCE_EPSILON).pow(-1.5)

        delta = delta * self._per_channel(inv_std) \
            + self._per_channel(variance_grad) * 2. * centered / count \
            + self._per_channel(mean_grad) / count

        self._store(layer.scale_grad, scale_grad)
        self._store(layer.bias_grad, bias_grad)
        self._store(layer.mean_grad, mean_grad)
        self._store(layer.variance_grad, variance_grad)
        self._store(layer.delta, delta)

    def _backward_fused(self, layer: 'BatchNormLayer', ctx: ExecutionContext,
                        desc: TensorDescriptor):
        with torch.no_grad():
            grad_output = self._load(layer.delta, desc).clone()

        with torch.enable_grad():
            x = self._load(layer.saved_input, desc).detach().clone().requires_grad_()
            scales = self._load(layer.scales).detach().clone().requires_grad_()
            biases = self._load(layer.biases).detach().clone().requires_grad_()

            if ctx.train and not layer.cumulative:
                mean = x.mean(dim=(0, 2))
                variance = (x - self._per_channel(mean)).square().mean(dim=(0, 2))
            else:
                mean = self._load(layer.mean)
                variance = self._load(layer.variance)

            inv_std = torch.rsqrt(variance + VARIANCE_EPSILON)
            normalized = (x - self._per_channel(mean)) * self._per_channel(inv_std)
            y = torch.addcmul(self._per_channel(biases), normalized, self._per_channel(scales))

            dx, dscale, dbias = torch.autograd.grad(
                y, (x, scales, biases), grad_outputs=grad_output
            )

        with torch.no_grad():
            self._store(layer.scale_grad, self._load(layer.scale_grad) + dscale)
            self._store(layer.bias_grad, self._load(layer.bias_grad) + dbias)
            self._store(layer.delta, dx)

    def update(self, layer: 'BatchNormLayer', batch: int,
               learning_rate: float, momentum: float):
        step = learning_rate / batch

        with torch.no_grad():
            for param, grad in ((layer.biases, layer.bias_grad),
                                (layer.scales, layer.scale_grad)):
                param_t = self._load(param)
                grad_t = self._load(grad)
                self._store(param, param_t + step * grad_t)
                self._store(grad, grad_t * momentum)

        self.device_context.synchronize()

    def extra_repr(self) -> str:
        return (f'device={self.device_context.device}, '
                f'rolling_decay={self.rolling_decay}, fused={self.fused}')
