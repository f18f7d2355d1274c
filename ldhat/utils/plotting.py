"""
Plotting
========

Figures for composite-likelihood curves, sliding-window estimates and
block-search rate maps. Figures are written straight to file with the
non-interactive Agg backend.
"""

from pathlib import Path
from typing import TYPE_CHECKING, Optional, Union

import matplotlib
matplotlib.use('Agg')  # Use non-interactive backend for file output
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

if TYPE_CHECKING:
    from ldhat.samplers.rjmcmc import BlockSearchResult

PathLike = Union[str, Path]


def plot_likelihood_curve(grid, curve, output_path: PathLike,
                          title: str = 'Composite likelihood',
                          rho_hat: Optional[float] = None):
    """Composite log-likelihood against rho, with the maximum marked."""
    curve = np.asarray(curve, dtype=float)
    finite = np.isfinite(curve)
    plt.figure(figsize=(6, 4))
    plt.plot(np.asarray(grid)[finite], curve[finite], 'b-')
    if rho_hat is not None:
        plt.axvline(rho_hat, color='r', linestyle='--', label=f'rho = {rho_hat:g}')
        plt.legend(loc='lower right')
    plt.xlabel('rho')
    plt.ylabel('Composite log-likelihood')
    plt.title(title)
    plt.grid(True, alpha=0.3)
    plt.tight_layout()
    plt.savefig(output_path, dpi=300, bbox_inches='tight')
    plt.close()


def plot_window_estimates(frame: pd.DataFrame, output_path: PathLike,
                          title: str = 'Sliding-window estimates'):
    """Per-unit rate of every window drawn as a horizontal segment."""
    plt.figure(figsize=(7, 3))
    for row in frame.itertuples(index=False):
        plt.hlines(row.rate, row.start_pos, row.end_pos, colors='b')
    plt.xlabel('Position')
    plt.ylabel('Rate per unit length')
    plt.title(title)
    plt.grid(True, alpha=0.3)
    plt.tight_layout()
    plt.savefig(output_path, dpi=300, bbox_inches='tight')
    plt.close()


def plot_rate_map(result: 'BlockSearchResult', positions, output_path: PathLike,
                  title: str = 'Recombination rate map'):
    """Posterior mean and 95% band of the per-interval rate, step-wise."""
    positions = np.asarray(positions, dtype=float)
    edges = positions[:result.mean_rates.size + 1]
    low, _, high = result.rate_quantiles

    fig, (ax_rate, ax_cp) = plt.subplots(2, 1, figsize=(7, 5), sharex=True,
                                         gridspec_kw={'height_ratios': [3, 1]})
    ax_rate.stairs(result.mean_rates, edges, color='b', label='Posterior mean')
    ax_rate.stairs(high, edges, baseline=low, fill=True, color='b', alpha=0.2,
                   label='95% interval')
    ax_rate.set_ylabel('Rate per unit length')
    ax_rate.set_title(title)
    ax_rate.legend(loc='upper right', fontsize='small')
    ax_rate.grid(True, alpha=0.3)

    if result.changepoints.size:
        ax_cp.vlines(edges[1:-1], 0, result.changepoints, colors='k', linewidth=0.8)
    ax_cp.set_xlabel('Position')
    ax_cp.set_ylabel('P(boundary)')
    ax_cp.set_ylim(0, 1)
    ax_cp.grid(True, alpha=0.3)

    fig.tight_layout()
    fig.savefig(output_path, dpi=300, bbox_inches='tight')
    plt.close(fig)
