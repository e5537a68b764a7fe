"""
Unit tests for the numpy statistics and normalization kernels
"""

import pytest
import numpy as np

# Add parent directory to path for imports
import sys
import os
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from bnlayer.constants import STDDEV_EPSILON, VARIANCE_EPSILON
from bnlayer.kernels import (
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


def random_activations(batch, channels, spatial, seed=0):
    rng = np.random.default_rng(seed)
    offsets = np.arange(channels)[None, :, None] - 1.0
    x = rng.standard_normal((batch, channels, spatial)) * 1.5 + offsets
    return x.reshape(-1)


class TestStatistics:
    """Test per-channel statistics"""

    def test_mean(self):
        """Mean is taken over batch and spatial positions per channel"""
        x = random_activations(4, 3, 5)
        mean = np.zeros(3)
        mean_cpu(x, 4, 3, 5, mean)

        expected = x.reshape(4, 3, 5).mean(axis=(0, 2))
        np.testing.assert_allclose(mean, expected, rtol=1e-12)

    def test_variance_is_biased(self):
        """Variance divides by batch * spatial, no Bessel correction"""
        x = random_activations(4, 3, 5)
        mean = np.zeros(3)
        variance = np.zeros(3)
        mean_cpu(x, 4, 3, 5, mean)
        variance_cpu(x, mean, 4, 3, 5, variance)

        view = x.reshape(4, 3, 5).transpose(1, 0, 2).reshape(3, -1)
        np.testing.assert_allclose(variance, view.var(axis=1, ddof=0), rtol=1e-12)
        assert not np.allclose(variance, view.var(axis=1, ddof=1))

    def test_writes_into_given_arrays(self):
        """Kernels fill caller-owned arrays"""
        x = random_activations(2, 2, 3)
        mean = np.zeros(2)
        result = mean_cpu(x, 2, 2, 3, mean)
        assert result is mean

    def test_update_rolling(self):
        """rolling = decay * rolling + (1 - decay) * stat"""
        rolling = np.array([1.0, 2.0])
        update_rolling(rolling, np.array([3.0, 0.0]), 0.9)
        np.testing.assert_allclose(rolling, [0.9 + 0.3, 1.8])

    @pytest.mark.parametrize("decay", [0.9, 0.99])
    def test_rolling_converges_geometrically(self, decay):
        """Under a constant statistic the gap shrinks by ``decay`` every step"""
        rolling = np.zeros(2)
        target = np.array([4.0, -2.0])
        gaps = []
        for _ in range(30):
            update_rolling(rolling, target, decay)
            gaps.append(np.abs(rolling - target))

        for before, after in zip(gaps[:-1], gaps[1:]):
            np.testing.assert_allclose(after, before * decay, rtol=1e-9)


class TestCumulativeStatistics:
    """Test statistics averaged across subdivisions"""

    def _run(self, batches, rolling_alpha=0.1):
        channels = 2
        spatial = 3
        batch = 4
        m_avg = np.zeros(channels)
        v_avg = np.zeros(channels)
        mean = np.zeros(channels)
        variance = np.zeros(channels)
        rolling_mean = np.zeros(channels)
        rolling_variance = np.zeros(channels)

        for index, x in enumerate(batches, start=1):
            mean_cpu(x, batch, channels, spatial, mean)
            cumulative_statistics(x, mean, batch, channels, spatial, index,
                                  m_avg, v_avg, variance,
                                  rolling_mean, rolling_variance, rolling_alpha)
        return mean, variance, rolling_mean, rolling_variance

    def test_first_subdivision_matches_batch_statistics(self):
        """With one subdivision the statistics are the plain batch ones"""
        x = random_activations(4, 2, 3, seed=1)
        mean, variance, rolling_mean, rolling_variance = self._run([x])

        view = x.reshape(4, 2, 3)
        np.testing.assert_allclose(mean, view.mean(axis=(0, 2)), atol=1e-10)
        np.testing.assert_allclose(variance, view.var(axis=(0, 2)), atol=1e-10)
        np.testing.assert_allclose(rolling_mean, 0.1 * mean, atol=1e-10)
        np.testing.assert_allclose(rolling_variance, 0.1 * variance, atol=1e-10)

    def test_two_subdivisions_match_combined_batch(self):
        """After two equal subdivisions the statistics cover both batches"""
        x1 = random_activations(4, 2, 3, seed=2)
        x2 = random_activations(4, 2, 3, seed=3) + 0.5
        mean, variance, _, _ = self._run([x1, x2])

        combined = np.concatenate([x1.reshape(4, 2, 3), x2.reshape(4, 2, 3)])
        np.testing.assert_allclose(mean, combined.mean(axis=(0, 2)), atol=1e-10)
        np.testing.assert_allclose(variance, combined.var(axis=(0, 2)), atol=1e-10)

    def test_variance_never_negative(self):
        """Constant activations give zero variance, not a rounding negative"""
        x = np.full(4 * 2 * 3, 0.1)
        _, variance, _, rolling_variance = self._run([x, x])
        assert np.all(variance >= 0)
        assert np.all(rolling_variance >= 0)

    def test_invalid_minibatch_index(self):
        """Subdivision indices are 1-based"""
        x = random_activations(4, 2, 3)
        buffers = [np.zeros(2) for _ in range(6)]
        with pytest.raises(ValueError):
            cumulative_statistics(x, buffers[0], 4, 2, 3, 0, *buffers[1:], 0.1)


class TestForwardKernels:
    """Test in-place normalization and affine kernels"""

    def test_normalize_adds_epsilon_after_sqrt(self):
        """x = (x - mean) / (sqrt(var) + eps)"""
        x = np.array([1.0, 3.0, 5.0, 9.0])
        mean = np.array([2.0, 7.0])
        variance = np.array([4.0, 16.0])
        # batch=2, channels=2, spatial=1 -> layout [b0c0, b0c1, b1c0, b1c1]
        normalize_cpu(x, mean, variance, 2, 2, 1)

        expected = [(1 - 2) / (2 + STDDEV_EPSILON), (3 - 7) / (4 + STDDEV_EPSILON),
                    (5 - 2) / (2 + STDDEV_EPSILON), (9 - 7) / (4 + STDDEV_EPSILON)]
        np.testing.assert_allclose(x, expected, rtol=1e-12)

    def test_normalize_is_in_place(self):
        """The same buffer is consumed and produced"""
        x = random_activations(2, 2, 2)
        result = normalize_cpu(x, np.zeros(2), np.ones(2), 2, 2, 2)
        assert result is x

    def test_scale_then_bias(self):
        """Per-channel scale and bias broadcast over batch and spatial"""
        x = np.ones(2 * 3 * 2)
        scale_bias(x, np.array([1.0, 2.0, 3.0]), 2, 3, 2)
        add_bias(x, np.array([0.5, 0.0, -1.0]), 2, 3, 2)

        expected = np.tile(np.repeat([1.5, 2.0, 2.0], 2), 2)
        np.testing.assert_allclose(x, expected)


class TestGradientKernels:
    """Test the backward kernels"""

    def test_backward_scale_accumulates(self):
        """scale_updates += sum(delta * x_norm)"""
        x_norm = random_activations(2, 2, 3, seed=4)
        delta = random_activations(2, 2, 3, seed=5)
        updates = np.array([1.0, -1.0])
        backward_scale_cpu(x_norm, delta, 2, 2, 3, updates)

        products = (x_norm * delta).reshape(2, 2, 3).sum(axis=(0, 2))
        np.testing.assert_allclose(updates, products + [1.0, -1.0])

    def test_backward_bias_accumulates(self):
        """bias_updates += sum(delta)"""
        delta = np.ones(2 * 2 * 3)
        updates = np.array([0.5, 0.0])
        backward_bias(updates, delta, 2, 2, 3)
        np.testing.assert_allclose(updates, [6.5, 6.0])

    def test_mean_delta_formula(self):
        """mean_delta = sum(delta) * -1 / sqrt(var + eps), no variance cross-term"""
        delta = random_activations(3, 2, 2, seed=6)
        variance = np.array([0.5, 2.0])
        mean_delta = np.zeros(2)
        mean_delta_cpu(delta, variance, 3, 2, 2, mean_delta)

        sums = delta.reshape(3, 2, 2).sum(axis=(0, 2))
        expected = sums * (-1. / np.sqrt(variance + VARIANCE_EPSILON))
        np.testing.assert_allclose(mean_delta, expected, rtol=1e-12)

    def test_variance_delta_formula(self):
        """variance_delta = -0.5 * sum(delta * (x - mean)) * (var + eps)^-1.5"""
        x = random_activations(3, 2, 2, seed=7)
        delta = random_activations(3, 2, 2, seed=8)
        mean = np.array([0.1, -0.2])
        variance = np.array([1.5, 0.25])
        variance_delta = np.zeros(2)
        variance_delta_cpu(x, delta, mean, variance, 3, 2, 2, variance_delta)

        centered = x.reshape(3, 2, 2) - mean[None, :, None]
        sums = (delta.reshape(3, 2, 2) * centered).sum(axis=(0, 2))
        expected = -0.5 * sums * (variance + VARIANCE_EPSILON) ** -1.5
        np.testing.assert_allclose(variance_delta, expected, rtol=1e-12)

    def test_normalize_delta_formula(self):
        """Input gradient combines the three terms with both epsilon placements"""
        batch, channels, spatial = 2, 2, 3
        x = random_activations(batch, channels, spatial, seed=9)
        delta = random_activations(batch, channels, spatial, seed=10)
        mean = np.array([0.3, -0.4])
        variance = np.array([0.8, 1.7])
        mean_delta = np.array([0.2, -0.1])
        variance_delta = np.array([-0.05, 0.3])

        expected = delta.reshape(batch, channels, spatial).copy()
        centered = x.reshape(batch, channels, spatial) - mean[None, :, None]
        count = batch * spatial
        expected = expected / (np.sqrt(variance) + STDDEV_EPSILON)[None, :, None] \
            + variance_delta[None, :, None] * 2 * centered / count \
            + mean_delta[None, :, None] / count

        normalize_delta_cpu(x, mean, variance, mean_delta, variance_delta,
                            batch, channels, spatial, delta)
        np.testing.assert_allclose(delta, expected.reshape(-1), rtol=1e-12)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
