"""
Training script for a batch normalization layer on synthetic activations
"""

import os
import sys
import argparse
from typing import List, Optional

import numpy as np
import torch
from torch.utils.data import DataLoader
import matplotlib.pyplot as plt

# Add parent directory to path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from bnlayer.layers.batchnorm import BatchNormLayer
from bnlayer.backends import make_backend, DeviceContext
from bnlayer.datasets.synthetic import SyntheticActivations
from bnlayer.training.trainer import Trainer
from bnlayer.utils.analysis import compare_backends
from bnlayer.utils.visualization import (
    plot_rolling_statistics,
    plot_training_curves,
    plot_backend_parity
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Train a batch normalization layer on synthetic data')

    # Layer arguments
    parser.add_argument('--channels', type=int, default=4,
                        help='Number of channels')
    parser.add_argument('--height', type=int, default=8,
                        help='Spatial height')
    parser.add_argument('--width', type=int, default=8,
                        help='Spatial width')
    parser.add_argument('--backend', choices=['cpu', 'accelerated', 'auto'], default='cpu',
                        help='Compute backend')
    parser.add_argument('--fused', action='store_true',
                        help='Recompute normalized activations in backward (accelerated only)')
    parser.add_argument('--rolling_decay', type=float, default=None,
                        help='Override the backend rolling statistics decay')
    parser.add_argument('--cumulative', action='store_true',
                        help='Use cumulative statistics across subdivisions')

    # Training arguments
    parser.add_argument('--epochs', type=int, default=10,
                        help='Number of training epochs')
    parser.add_argument('--batch_size', type=int, default=16,
                        help='Batch size')
    parser.add_argument('--subdivisions', type=int, default=1,
                        help='Mini-batches per optimizer step')
    parser.add_argument('--lr', type=float, default=0.01,
                        help='Learning rate')
    parser.add_argument('--momentum', type=float, default=0.9,
                        help='Momentum')
    parser.add_argument('--decay', type=float, default=0.0005,
                        help='Weight decay (unused by normalization parameters)')
    parser.add_argument('--try_fix_nan', action='store_true',
                        help='Sanitize NaN/Inf after every call')

    # Data arguments
    parser.add_argument('--num_samples', type=int, default=1024,
                        help='Number of training samples')
    parser.add_argument('--seed', type=int, default=0,
                        help='Random seed')

    # Output arguments
    parser.add_argument('--output_dir', type=str, default='./outputs',
                        help='Directory for outputs')
    parser.add_argument('--save_weights', action='store_true',
                        help='Save trained parameters')
    parser.add_argument('--visualize', action='store_true',
                        help='Generate visualizations')
    parser.add_argument('--compare', action='store_true',
                        help='Report parity between the cpu and accelerated backends')
    parser.add_argument('--quiet', action='store_true',
                        help='Minimal output')

    return parser


def make_layer(args, backend_name: str, fused: bool = False) -> BatchNormLayer:
    kwargs = {}
    if args.rolling_decay is not None:
        kwargs['rolling_decay'] = args.rolling_decay
    if backend_name != 'cpu':
        kwargs['fused'] = fused

    backend = make_backend(backend_name, **kwargs)
    return BatchNormLayer(
        batch=args.batch_size,
        width=args.width,
        height=args.height,
        channels=args.channels,
        backend=backend,
        cumulative=args.cumulative,
        verbose=not args.quiet
    )


def main(argv: Optional[List[str]] = None):
    args = build_parser().parse_args(argv)
    verbose = not args.quiet

    os.makedirs(args.output_dir, exist_ok=True)
    torch.manual_seed(args.seed)

    # Data
    train_set = SyntheticActivations(args.num_samples, args.channels, args.height,
                                     args.width, seed=args.seed)
    val_set = SyntheticActivations(
        max(args.num_samples // 4, args.batch_size), args.channels, args.height, args.width,
        channel_means=train_set.channel_means,
        channel_stds=train_set.channel_stds,
        target_scales=train_set.target_scales,
        target_biases=train_set.target_biases,
        seed=args.seed + 1
    )
    train_loader = DataLoader(train_set, batch_size=args.batch_size, shuffle=True, drop_last=True)
    val_loader = DataLoader(val_set, batch_size=args.batch_size, shuffle=False, drop_last=True)

    # Layer
    layer = make_layer(args, args.backend, args.fused)
    if verbose:
        print(f"Layer: {layer!r}")

    trainer = Trainer(
        layer,
        learning_rate=args.lr,
        momentum=args.momentum,
        decay=args.decay,
        subdivisions=args.subdivisions,
        try_fix_nan=args.try_fix_nan
    )

    print("\n" + "="*60)
    print("Training Batch Normalization Layer...")
    print("="*60)
    history = trainer.train(train_loader, val_loader, num_epochs=args.epochs, verbose=verbose)

    print("\n" + "="*60)
    print("Learned Parameters")
    print("="*60)
    print(f"Scales:           {np.round(layer.scales, 4)}")
    print(f"Target scales:    {np.round(train_set.target_scales, 4)}")
    print(f"Biases:           {np.round(layer.biases, 4)}")
    print(f"Target biases:    {np.round(train_set.target_biases, 4)}")
    print(f"Rolling mean:     {np.round(layer.rolling_mean, 4)}")
    print(f"True mean:        {np.round(train_set.channel_means, 4)}")
    print(f"Rolling variance: {np.round(layer.rolling_variance, 4)}")
    print(f"True variance:    {np.round(train_set.channel_variances, 4)}")

    parity = None
    if args.compare:
        print("\n" + "="*60)
        print("Backend Parity")
        print("="*60)
        reference = make_layer(args, 'cpu')
        candidate = make_layer(args, 'accelerated', args.fused)
        reference.load_parameter_blobs(layer.parameter_blobs())
        x, _ = next(iter(val_loader))
        x = x.numpy()
        delta = np.random.default_rng(args.seed).standard_normal(x.size).astype(np.float32)
        parity = compare_backends(reference, candidate, x, delta)
        print(f"Max output diff:  {parity['max_output_diff']:.3e}")
        print(f"Max delta diff:   {parity['max_delta_diff']:.3e}")
        print(f"Max scale grad diff: {parity['max_scale_grad_diff']:.3e}")
        print(f"Max bias grad diff:  {parity['max_bias_grad_diff']:.3e}")

    if args.visualize:
        fig = plot_training_curves({args.backend: history})
        fig.savefig(os.path.join(args.output_dir, 'training_curves.png'))
        plt.close(fig)

        fig = plot_rolling_statistics(history, train_set.channel_means, train_set.channel_variances)
        fig.savefig(os.path.join(args.output_dir, 'rolling_statistics.png'))
        plt.close(fig)

        if parity is not None:
            fig = plot_backend_parity(parity)
            fig.savefig(os.path.join(args.output_dir, 'backend_parity.png'))
            plt.close(fig)

        print(f"Visualizations saved to {args.output_dir}")

    if args.save_weights:
        path = os.path.join(args.output_dir, 'batchnorm.weights')
        layer.save_weights(path)
        print(f"Weights saved to {path}")

    return history


if __name__ == "__main__":
    main()
