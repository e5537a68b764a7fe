"""
Training utilities for batch normalization layers
"""

from dataclasses import replace
from typing import Dict, List, Optional

import numpy as np
import torch
from torch.utils.data import DataLoader
from tqdm import tqdm

from ..context import ExecutionContext
from ..layers.batchnorm import BatchNormLayer


class Trainer:
    """
    Drives one layer through forward / backward / update per mini-batch

    The loss is 0.5 * mean((target - output)^2). Following the layer's
    convention, ``delta`` is set to target - output, the negative gradient,
    and ``update`` adds the accumulated gradients.

    Args:
        layer: Layer to train
        learning_rate: Learning rate
        momentum: Gradient accumulator decay
        decay: Weight decay passed through to ``update``
        subdivisions: Mini-batches per optimizer step; a trailing partial
            step is applied at the end of the epoch
        try_fix_nan: Sanitize NaN/Inf after every call
    """

    def __init__(self,
                 layer: BatchNormLayer,
                 learning_rate: float = 0.01,
                 momentum: float = 0.9,
                 decay: float = 0.0005,
                 subdivisions: int = 1,
                 try_fix_nan: bool = False):

        if subdivisions < 1:
            raise ValueError(f"subdivisions must be >= 1, got {subdivisions}")

        self.layer = layer
        self.learning_rate = learning_rate
        self.momentum = momentum
        self.decay = decay
        self.subdivisions = subdivisions
        self.try_fix_nan = try_fix_nan

        self.history = {
            'train_loss': [],
            'val_loss': [],
            'rolling_mean': [],
            'rolling_variance': []
        }

    @staticmethod
    def _to_numpy(tensor) -> np.ndarray:
        if isinstance(tensor, torch.Tensor):
            return tensor.detach().cpu().numpy()
        return np.asarray(tensor)

    def _forward(self, x: np.ndarray, ctx: ExecutionContext) -> np.ndarray:
        if self.layer.type == 'batchnorm':
            return self.layer.forward(replace(ctx, input=x))
        # Fused: the host layer's result is already in the output buffer
        self.layer.output[:] = x.reshape(-1)
        return self.layer.forward(ctx)

    def _step(self, num_minibatches: int):
        self.layer.update(self.layer.batch * num_minibatches,
                          self.learning_rate, self.momentum, self.decay)

    def train_epoch(self,
                    train_loader: DataLoader,
                    epoch: int,
                    verbose: bool = True) -> Dict[str, float]:
        """
        Train for one epoch

        Args:
            train_loader: Loader yielding (activation, target) batches of
                exactly ``layer.batch`` samples
            epoch: Current epoch number
            verbose: Whether to show progress bar

        Returns:
            Dictionary of metrics for this epoch
        """
        running_loss = 0.0
        num_batches = 0
        pending = 0

        loader = tqdm(train_loader, desc=f'Epoch {epoch}') if verbose else train_loader

        for batch_idx, (data, targets) in enumerate(loader):
            x = self._to_numpy(data)
            target = self._to_numpy(targets).reshape(-1)

            subdivision = batch_idx % self.subdivisions
            ctx = ExecutionContext(
                train=True,
                try_fix_nan=self.try_fix_nan,
                current_subdivision=subdivision,
                subdivisions=self.subdivisions
            )

            # Forward pass
            output = self._forward(x, ctx)
            error = target - output
            loss = 0.5 * float(np.mean(np.square(error)))

            # Backward pass
            self.layer.delta[:] = error
            self.layer.backward(ctx)
            pending += 1

            if subdivision == self.subdivisions - 1:
                self._step(pending)
                pending = 0

            # Statistics
            running_loss += loss
            num_batches += 1
            self.history['rolling_mean'].append(self.layer.rolling_mean.copy())
            self.history['rolling_variance'].append(self.layer.rolling_variance.copy())

            if verbose and batch_idx % 10 == 0:
                loader.set_postfix({'loss': running_loss / num_batches})

        # Leftover subdivisions of an incomplete step
        if pending:
            self._step(pending)

        epoch_loss = running_loss / max(num_batches, 1)

        return {'loss': epoch_loss}

    def validate(self,
                 val_loader: DataLoader,
                 verbose: bool = True) -> Dict[str, float]:
        """
        Validate in inference mode (rolling statistics)

        Args:
            val_loader: Validation data loader
            verbose: Whether to show progress

        Returns:
            Dictionary of validation metrics
        """
        running_loss = 0.0
        num_batches = 0

        loader = tqdm(val_loader, desc='Validation') if verbose else val_loader

        for data, targets in loader:
            x = self._to_numpy(data)
            target = self._to_numpy(targets).reshape(-1)

            output = self._forward(x, ExecutionContext(train=False))
            running_loss += 0.5 * float(np.mean(np.square(target - output)))
            num_batches += 1

        return {'loss': running_loss / max(num_batches, 1)}

    def train(self,
              train_loader: DataLoader,
              val_loader: Optional[DataLoader] = None,
              num_epochs: int = 10,
              verbose: bool = True) -> Dict[str, List]:
        """
        Full training loop

        Args:
            train_loader: Training data loader
            val_loader: Validation data loader
            num_epochs: Number of epochs to train
            verbose: Whether to show progress

        Returns:
            Training history dictionary
        """
        for epoch in range(num_epochs):
            train_metrics = self.train_epoch(train_loader, epoch + 1, verbose)
            self.history['train_loss'].append(train_metrics['loss'])

            if val_loader is not None:
                val_metrics = self.validate(val_loader, verbose)
                self.history['val_loss'].append(val_metrics['loss'])

                if verbose:
                    print(f"Epoch {epoch+1}/{num_epochs}: "
                          f"Train Loss: {train_metrics['loss']:.4f}, "
                          f"Val Loss: {val_metrics['loss']:.4f}")
            elif verbose:
                print(f"Epoch {epoch+1}/{num_epochs}: "
                      f"Train Loss: {train_metrics['loss']:.4f}")

        return self.history
