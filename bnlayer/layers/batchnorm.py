"""
Batch Normalization Layer
"""

import sys
from dataclasses import replace
from typing import List, Literal, Optional, Sequence, Tuple

import numpy as np
import torch

from ..backends import Backend, CPUBackend
from ..context import ExecutionContext
from ..errors import AllocationFailure, ShapeMismatch
from ..utils.numerics import fix_nan_and_inf


LayerType = Literal['batchnorm', 'connected', 'convolutional']

LAYER_TYPES = ('batchnorm', 'connected', 'convolutional')


def allocate_buffer(size: int, dtype=np.float32, fill: float = 0.) -> np.ndarray:
    """
    Allocate a flat float buffer

    Raises:
        AllocationFailure: If the size is not positive or memory runs out
    """
    if size <= 0:
        raise AllocationFailure(f"Cannot allocate a buffer of {size} elements")
    try:
        return np.full(size, fill, dtype=dtype)
    except MemoryError as e:
        raise AllocationFailure(f"Out of memory allocating {size} elements") from e


def _numel(tensor) -> int:
    if isinstance(tensor, torch.Tensor):
        return tensor.numel()
    return np.asarray(tensor).size


def _to_host(tensor) -> np.ndarray:
    """Flat numpy view (or copy, for device tensors) of an array or tensor"""
    if isinstance(tensor, torch.Tensor):
        return tensor.detach().cpu().numpy().reshape(-1)
    return np.asarray(tensor).reshape(-1)


def _write_back(target, values: np.ndarray):
    """Copy a flat host buffer into an upstream array or tensor of any shape"""
    if isinstance(target, torch.Tensor):
        with torch.no_grad():
            target.copy_(torch.from_numpy(values).view(target.shape))
    else:
        target[...] = values.reshape(np.shape(target))


class BatchNormLayer:
    """
    Spatial batch normalization over NCHW activations

    Statistics are computed per channel over the batch and spatial extent.
    The layer owns every buffer; the math runs on a backend chosen at
    construction.

    Args:
        batch: Number of samples per forward call
        width: Spatial width
        height: Spatial height
        channels: Number of channels (fixed for the layer's lifetime)
        train: Default training flag, overridable per call
        layer_type: 'batchnorm' for a standalone layer, or the kind of host
            layer ('connected', 'convolutional') the normalization is fused into
        backend: Compute backend (``CPUBackend()`` if None)
        dtype: Float dtype of all host buffers
        cumulative: Use cumulative statistics across subdivisions
        learning_rate_scale: Per-layer multiplier on the learning rate
        verbose: Print a construction banner to stderr
    """

    def __init__(self,
                 batch: int,
                 width: int,
                 height: int,
                 channels: int,
                 train: bool = True,
                 layer_type: LayerType = 'batchnorm',
                 backend: Optional[Backend] = None,
                 dtype=np.float32,
                 cumulative: bool = False,
                 learning_rate_scale: float = 1.0,
                 verbose: bool = False):

        for name, value in (('batch', batch), ('width', width),
                            ('height', height), ('channels', channels)):
            if value <= 0:
                raise ValueError(f"{name} must be positive, got {value}")
        if layer_type not in LAYER_TYPES:
            raise ValueError(f"Unknown layer type: {layer_type}")
        if layer_type == 'connected' and (width, height) != (1, 1):
            raise ValueError("A connected host has no spatial extent; use width=height=1")

        if verbose:
            print(f"Batch Normalization Layer: {width} x {height} x {channels} image",
                  file=sys.stderr)

        self.type = layer_type
        self.batch = batch
        self.train = train
        self.cumulative = cumulative
        self.learning_rate_scale = learning_rate_scale
        self.dtype = np.dtype(dtype)

        self.h = self.out_h = height
        self.w = self.out_w = width
        self.c = self.out_c = channels
        self.n = channels
        self.inputs = self.outputs = width * height * channels

        self.backend = backend if backend is not None else CPUBackend()

        # Learned parameters and their accumulated gradients
        self.scales = allocate_buffer(channels, self.dtype, fill=1.)
        self.biases = allocate_buffer(channels, self.dtype)
        self.scale_grad = allocate_buffer(channels, self.dtype)
        self.bias_grad = allocate_buffer(channels, self.dtype)

        # Batch and rolling statistics
        self.mean = allocate_buffer(channels, self.dtype)
        self.variance = allocate_buffer(channels, self.dtype)
        self.rolling_mean = allocate_buffer(channels, self.dtype)
        self.rolling_variance = allocate_buffer(channels, self.dtype)

        # Backward scratch
        self.mean_grad = allocate_buffer(channels, self.dtype)
        self.variance_grad = allocate_buffer(channels, self.dtype)

        # Cross-subdivision averages for cumulative statistics
        self.m_cbn_avg = allocate_buffer(channels, self.dtype)
        self.v_cbn_avg = allocate_buffer(channels, self.dtype)

        self._allocate_activations()
        self.backend.configure(self)

    def _allocate_activations(self):
        size = self.batch * self.outputs
        self.output = allocate_buffer(size, self.dtype)
        self.delta = allocate_buffer(size, self.dtype)
        self.saved_input = allocate_buffer(size, self.dtype)
        if self.backend.keeps_normalized:
            self.saved_normalized = allocate_buffer(size, self.dtype)
        else:
            self.saved_normalized = None

    def stat_shape(self) -> Tuple[int, int, int]:
        """
        (batch, channels, spatial) the statistics are computed over

        A connected host is treated as ``outputs`` channels of 1x1.
        """
        if self.type == 'connected':
            return self.batch, self.outputs, 1
        return self.batch, self.out_c, self.out_h * self.out_w

    def _resolve(self, ctx: Optional[ExecutionContext]) -> ExecutionContext:
        ctx = ctx if ctx is not None else ExecutionContext()
        return replace(ctx, train=self.train if ctx.train is None else bool(ctx.train))

    def _check_size(self, tensor, name: str):
        expected = self.batch * self.outputs
        size = _numel(tensor)
        if size != expected:
            raise ShapeMismatch(
                f"{name} has {size} elements, layer expects "
                f"{self.batch} x {self.outputs} = {expected}"
            )

    def forward(self, ctx: Optional[ExecutionContext] = None) -> np.ndarray:
        """
        Forward pass

        A standalone layer copies ``ctx.input`` into ``output`` first; a fused
        layer normalizes whatever its host left in ``output``.

        Args:
            ctx: Execution context

        Returns:
            The ``output`` buffer
        """
        ctx = self._resolve(ctx)

        if self.type == 'batchnorm':
            if ctx.input is None:
                raise ShapeMismatch("A standalone batchnorm layer needs ctx.input")
            self._check_size(ctx.input, 'input')
            np.copyto(self.output, _to_host(ctx.input), casting='same_kind')

        self.backend.forward(self, ctx)

        if ctx.try_fix_nan and ctx.train:
            for values in (self.scales, self.biases, self.mean, self.variance,
                           self.rolling_mean, self.rolling_variance):
                fix_nan_and_inf(values)

        return self.output

    def backward(self, ctx: Optional[ExecutionContext] = None) -> np.ndarray:
        """
        Backward pass

        ``delta`` must hold the error w.r.t. this layer's output. On return it
        holds the error w.r.t. the layer input, and a standalone layer also
        copies it into ``ctx.delta`` when one is given.

        Args:
            ctx: Execution context

        Returns:
            The ``delta`` buffer
        """
        ctx = self._resolve(ctx)

        upstream = ctx.delta if self.type == 'batchnorm' else None
        if upstream is not None:
            self._check_size(upstream, 'delta')

        self.backend.backward(self, ctx)

        if ctx.try_fix_nan:
            fix_nan_and_inf(self.scale_grad)
            fix_nan_and_inf(self.bias_grad)

        if upstream is not None:
            _write_back(upstream, self.delta)

        return self.delta

    def update(self,
               batch: int,
               learning_rate: float,
               momentum: float,
               decay: float = 0.0,
               loss_scale: float = 1.0):
        """
        Momentum SGD on scale and bias

        Args:
            batch: Batch size the accumulated gradients were summed over
            learning_rate: Base learning rate
            momentum: Factor the gradient accumulators are decayed by
            decay: Weight decay, not applied to normalization parameters
            loss_scale: Loss scaling factor the gradients carry
        """
        if batch <= 0:
            raise ValueError(f"batch must be positive, got {batch}")
        learning_rate = learning_rate * self.learning_rate_scale / loss_scale
        self.backend.update(self, batch, learning_rate, momentum)

    def resize(self, width: int, height: int):
        """
        Reallocate the activation buffers for a new spatial size

        Parameters, gradients and statistics are kept; activation contents
        are not preserved.
        """
        if width <= 0 or height <= 0:
            raise ValueError(f"Invalid spatial size {width} x {height}")
        if self.type == 'connected' and (width, height) != (1, 1):
            raise ValueError("A connected host has no spatial extent to resize")

        self.w = self.out_w = width
        self.h = self.out_h = height
        self.inputs = self.outputs = width * height * self.c

        self._allocate_activations()
        self.backend.configure(self)

    def parameter_blobs(self) -> List[np.ndarray]:
        """Persisted arrays in storage order: biases, scales, rolling mean, rolling variance"""
        return [self.biases, self.scales, self.rolling_mean, self.rolling_variance]

    def load_parameter_blobs(self, blobs: Sequence[np.ndarray]):
        """
        Copy persisted arrays back into the layer

        Args:
            blobs: Arrays in ``parameter_blobs`` order
        """
        if len(blobs) != 4:
            raise ShapeMismatch(f"Expected 4 parameter blobs, got {len(blobs)}")
        for blob in blobs:
            if np.size(blob) != self.c:
                raise ShapeMismatch(f"Parameter blob of {np.size(blob)} elements, expected {self.c}")
        if np.any(np.asarray(blobs[3]) < 0):
            raise ValueError("Rolling variance must be non-negative")

        for target, blob in zip(self.parameter_blobs(), blobs):
            np.copyto(target, np.asarray(blob).reshape(-1), casting='same_kind')

    def save_weights(self, path: str):
        """Write the parameter blobs as raw little-endian float32"""
        data = np.concatenate([blob.astype('<f4') for blob in self.parameter_blobs()])
        data.tofile(path)

    def load_weights(self, path: str):
        """Read parameter blobs written by ``save_weights``"""
        data = np.fromfile(path, dtype='<f4')
        if data.size != 4 * self.c:
            raise ShapeMismatch(f"Weight file holds {data.size} values, expected {4 * self.c}")
        self.load_parameter_blobs(np.split(data, 4))

    def extra_repr(self) -> str:
        return (f'type={self.type}, batch={self.batch}, '
                f'shape={self.w}x{self.h}x{self.c}, train={self.train}, '
                f'backend={self.backend!r}')

    def __repr__(self) -> str:
        return f'BatchNormLayer({self.extra_repr()})'
