"""
Visualization utilities for batch normalization training runs
"""

import numpy as np
import matplotlib.pyplot as plt
import seaborn as sns
from typing import Dict, List, Optional, Sequence, Tuple, Any


def plot_rolling_statistics(
    rolling_history: Dict[str, List[np.ndarray]],
    true_mean: Optional[Sequence[float]] = None,
    true_variance: Optional[Sequence[float]] = None,
    figsize: Tuple[int, int] = (12, 4)
) -> plt.Figure:
    """
    Plot per-channel rolling mean and variance over training steps

    Args:
        rolling_history: Dictionary with 'rolling_mean' and 'rolling_variance'
            lists, one array per recorded step
        true_mean: Ground truth channel means drawn as dashed lines
        true_variance: Ground truth channel variances drawn as dashed lines
        figsize: Figure size

    Returns:
        Matplotlib figure
    """
    fig, axes = plt.subplots(1, 2, figsize=figsize)
    palette = sns.color_palette('tab10')

    panels = [
        ('rolling_mean', 'Rolling Mean', true_mean),
        ('rolling_variance', 'Rolling Variance', true_variance),
    ]

    for ax, (key, title, truth) in zip(axes, panels):
        values = np.array(rolling_history[key])
        steps = np.arange(1, len(values) + 1)

        for c in range(values.shape[1]):
            color = palette[c % len(palette)]
            ax.plot(steps, values[:, c], color=color, label=f'channel {c}')
            if truth is not None:
                ax.axhline(truth[c], color=color, linestyle='--', alpha=0.6)

        ax.set_title(title)
        ax.set_xlabel('Step')
        ax.grid(True, alpha=0.3)

    axes[0].legend(loc='best', fontsize='small')
    plt.tight_layout()

    return fig


def plot_training_curves(
    histories: Dict[str, Dict[str, List[float]]],
    metrics: List[str] = ['train_loss', 'val_loss'],
    figsize: Optional[Tuple[int, int]] = None
) -> plt.Figure:
    """
    Plot training curves for one or more runs

    Args:
        histories: Dictionary mapping run names to trainer histories
        metrics: Metrics to plot
        figsize: Figure size

    Returns:
        Matplotlib figure
    """
    if figsize is None:
        figsize = (6 * len(metrics), 4)

    fig, axes = plt.subplots(1, len(metrics), figsize=figsize)
    if len(metrics) == 1:
        axes = [axes]

    for metric, ax in zip(metrics, axes):
        for run_name, history in histories.items():
            if history.get(metric):
                epochs = range(1, len(history[metric]) + 1)
                ax.plot(epochs, history[metric], label=run_name, marker='o')

        ax.set_xlabel('Epoch')
        ax.set_ylabel(metric.replace('_', ' ').title())
        ax.set_title(metric.replace('_', ' ').title())
        ax.legend()
        ax.grid(True, alpha=0.3)

    plt.tight_layout()
    return fig


def plot_backend_parity(
    parity: Dict[str, Any],
    figsize: Tuple[int, int] = (10, 3)
) -> plt.Figure:
    """
    Heatmap of the per-channel output gap between two backends

    Args:
        parity: Result of ``compare_backends``
        figsize: Figure size

    Returns:
        Matplotlib figure
    """
    gaps = np.asarray(parity['channel_output_diff'])[None, :]

    fig, ax = plt.subplots(figsize=figsize)
    sns.heatmap(gaps, ax=ax, cmap='viridis', annot=gaps.shape[1] <= 16, fmt='.1e',
                cbar_kws={'label': 'max |output diff|'})
    ax.set_xlabel('Channel')
    ax.set_yticks([])
    ax.set_title(f"Backend parity (max delta diff {parity['max_delta_diff']:.2e})")
    plt.tight_layout()

    return fig
