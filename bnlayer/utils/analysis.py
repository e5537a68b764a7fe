"""
Analysis utilities for batch normalization layers
"""

from typing import TYPE_CHECKING, Any, Dict, Optional

import numpy as np

from ..context import ExecutionContext

if TYPE_CHECKING:
    from ..layers.batchnorm import BatchNormLayer


def _forward_train(layer: 'BatchNormLayer', x: np.ndarray) -> np.ndarray:
    if layer.type == 'batchnorm':
        return layer.forward(ExecutionContext(input=x, train=True))
    layer.output[:] = np.asarray(x).reshape(-1)
    return layer.forward(ExecutionContext(train=True))


def _snapshot(layer: 'BatchNormLayer') -> Dict[str, np.ndarray]:
    names = ['rolling_mean', 'rolling_variance', 'scale_grad', 'bias_grad',
             'm_cbn_avg', 'v_cbn_avg']
    return {name: getattr(layer, name).copy() for name in names}


def _restore(layer: 'BatchNormLayer', snapshot: Dict[str, np.ndarray]):
    for name, values in snapshot.items():
        getattr(layer, name)[:] = values


def channel_moments(layer: 'BatchNormLayer',
                    normalized: Optional[np.ndarray] = None) -> Dict[str, Any]:
    """
    Per-channel moments of the normalized (pre-affine) activations

    After a training forward every channel should sum to ~0 and have a mean
    square of ~1.

    Args:
        layer: Layer after a training forward
        normalized: Normalized activations (``layer.saved_normalized`` if None)

    Returns:
        Dictionary of per-channel sums, mean squares and their worst deviations
    """
    if normalized is None:
        normalized = layer.saved_normalized
    if normalized is None:
        raise ValueError("Layer backend does not keep normalized activations")

    batch, channels, spatial = layer.stat_shape()
    view = np.asarray(normalized, dtype=np.float64).reshape(batch, channels, spatial)

    sums = view.sum(axis=(0, 2))
    mean_squares = np.square(view).sum(axis=(0, 2)) / (batch * spatial)

    return {
        'channel_sums': sums,
        'channel_mean_squares': mean_squares,
        'max_abs_sum': float(np.abs(sums).max()),
        'max_mean_square_error': float(np.abs(mean_squares - 1.).max()),
    }


def gradient_check(layer: 'BatchNormLayer',
                   x: np.ndarray,
                   weights: np.ndarray,
                   step: float = 1e-4,
                   num_checks: Optional[int] = None,
                   seed: int = 0) -> Dict[str, Any]:
    """
    Compare the analytic input gradient against central finite differences

    The scalar loss is sum(weights * output). Rolling statistics and gradient
    accumulators are restored afterwards.

    Args:
        layer: Layer to check
        x: Input batch
        weights: Loss weights, same size as the output
        step: Finite difference step
        num_checks: Number of input elements to perturb (all if None)
        seed: Seed for picking the elements

    Returns:
        Dictionary with analytic and numerical derivatives and error metrics
    """
    snapshot = _snapshot(layer)
    x = np.asarray(x, dtype=np.float64).reshape(-1).copy()
    weights = np.asarray(weights, dtype=np.float64).reshape(-1)

    _forward_train(layer, x)
    layer.delta[:] = weights
    layer.backward(ExecutionContext(train=True))
    analytic_full = layer.delta.astype(np.float64).copy()

    if num_checks is None or num_checks >= x.size:
        indices = np.arange(x.size)
    else:
        indices = np.random.default_rng(seed).choice(x.size, size=num_checks, replace=False)

    numerical = np.empty(len(indices))
    for k, i in enumerate(indices):
        original = x[i]
        x[i] = original + step
        loss_plus = float(np.dot(weights, _forward_train(layer, x)))
        x[i] = original - step
        loss_minus = float(np.dot(weights, _forward_train(layer, x)))
        x[i] = original
        numerical[k] = (loss_plus - loss_minus) / (2 * step)

    _restore(layer, snapshot)

    analytic = analytic_full[indices]
    abs_error = np.abs(analytic - numerical)
    scale = np.maximum(np.abs(analytic), np.abs(numerical))
    rel_error = abs_error / np.maximum(scale, 1e-8)

    return {
        'indices': indices,
        'analytic': analytic,
        'numerical': numerical,
        'max_abs_error': float(abs_error.max()),
        'max_rel_error': float(rel_error.max()),
        'mean_abs_error': float(abs_error.mean()),
    }


def compare_backends(reference: 'BatchNormLayer',
                     candidate: 'BatchNormLayer',
                     x: np.ndarray,
                     delta: np.ndarray) -> Dict[str, Any]:
    """
    Run one training forward/backward through two layers and report differences

    The candidate receives the reference's parameters and gradient
    accumulators first, so both start from the same state. Rolling statistics
    are not compared since backends may use different decays.

    Args:
        reference: Layer on the reference backend
        candidate: Layer with the same geometry on another backend
        x: Input batch
        delta: Error w.r.t. the output

    Returns:
        Dictionary of maximum absolute differences and per-channel output gaps
    """
    if reference.stat_shape() != candidate.stat_shape():
        raise ValueError(f"Geometry mismatch: {reference.stat_shape()} vs {candidate.stat_shape()}")

    for name in ('scales', 'biases', 'scale_grad', 'bias_grad'):
        getattr(candidate, name)[:] = getattr(reference, name)

    results = {}
    outputs = []
    for layer in (reference, candidate):
        out = _forward_train(layer, x).astype(np.float64).copy()
        outputs.append(out)
        layer.delta[:] = np.asarray(delta).reshape(-1)
        layer.backward(ExecutionContext(train=True))

    batch, channels, spatial = reference.stat_shape()
    output_gap = np.abs(outputs[0] - outputs[1]).reshape(batch, channels, spatial)

    results['max_output_diff'] = float(output_gap.max())
    results['channel_output_diff'] = output_gap.max(axis=(0, 2))
    for name in ('mean', 'variance', 'scale_grad', 'bias_grad', 'delta'):
        diff = np.abs(getattr(reference, name).astype(np.float64) -
                      getattr(candidate, name).astype(np.float64))
        results[f'max_{name}_diff'] = float(diff.max())

    ref_delta = np.abs(reference.delta.astype(np.float64))
    results['relative_delta_diff'] = results['max_delta_diff'] / (float(ref_delta.max()) + 1e-8)

    return results
