"""
Synthetic NCHW activations with known per-channel statistics
"""

import torch
from torch.utils.data import Dataset
import numpy as np
from typing import Optional, Sequence, Tuple


class SyntheticActivations(Dataset):
    """
    Activation maps drawn per channel from N(mean_c, std_c^2)

    Each sample comes with an affine target
    target = target_scale_c * (x - mean_c) / std_c + target_bias_c,
    so a batch normalization layer trained on it should learn
    scale -> target_scales, bias -> target_biases, and rolling statistics
    close to (channel_means, channel_stds^2).

    Args:
        num_samples: Number of samples
        channels: Number of channels
        height: Spatial height
        width: Spatial width
        channel_means: Per-channel means (random in [-2, 2] if None)
        channel_stds: Per-channel standard deviations (random in [0.5, 2] if None)
        target_scales: Per-channel target scales (random in [0.5, 1.5] if None)
        target_biases: Per-channel target biases (random in [-1, 1] if None)
        seed: Random seed
    """

    def __init__(self,
                 num_samples: int,
                 channels: int,
                 height: int,
                 width: int,
                 channel_means: Optional[Sequence[float]] = None,
                 channel_stds: Optional[Sequence[float]] = None,
                 target_scales: Optional[Sequence[float]] = None,
                 target_biases: Optional[Sequence[float]] = None,
                 seed: int = 0):

        rng = np.random.default_rng(seed)

        self.channel_means = self._per_channel(channel_means, channels, rng, -2., 2.)
        self.channel_stds = self._per_channel(channel_stds, channels, rng, .5, 2.)
        self.target_scales = self._per_channel(target_scales, channels, rng, .5, 1.5)
        self.target_biases = self._per_channel(target_biases, channels, rng, -1., 1.)

        if np.any(self.channel_stds <= 0):
            raise ValueError("channel_stds must be positive")

        shape = (num_samples, channels, height, width)
        noise = rng.standard_normal(shape)
        inputs = noise * self._broadcast(self.channel_stds) + self._broadcast(self.channel_means)
        targets = noise * self._broadcast(self.target_scales) + self._broadcast(self.target_biases)

        self.inputs = inputs.astype(np.float32)
        self.targets = targets.astype(np.float32)

    @staticmethod
    def _per_channel(values, channels, rng, low, high) -> np.ndarray:
        if values is None:
            return rng.uniform(low, high, size=channels)
        values = np.asarray(values, dtype=np.float64)
        if values.shape != (channels,):
            raise ValueError(f"Expected {channels} per-channel values, got shape {values.shape}")
        return values

    @staticmethod
    def _broadcast(values: np.ndarray) -> np.ndarray:
        return values[None, :, None, None]

    @property
    def channel_variances(self) -> np.ndarray:
        return self.channel_stds ** 2

    def __len__(self) -> int:
        return len(self.inputs)

    def __getitem__(self, idx: int) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Get one sample

        Args:
            idx: Index

        Returns:
            Tuple of (activation, target), each (channels, height, width)
        """
        return torch.from_numpy(self.inputs[idx]), torch.from_numpy(self.targets[idx])
