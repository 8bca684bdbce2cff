"""
Visualization Functions
=======================

Figures for the equivalence report:

- Score agreement scatter (SEM latent score vs fixed effect + BLUP)
- Variance component bars (truth / SEM / mixed model)
- Item distributions with the implied normal density
- Replication score correlation histogram
- SEM path diagram (semopy.semplot, needs the graphviz executable)
"""

from pathlib import Path
from typing import Dict, Mapping, Optional, Sequence, Tuple

import graphviz
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import semopy
from scipy import stats

from lmmsem.models.results import FittedResult, score_columns
from lmmsem.simulation.latent_simulator import LatentSpec
from lmmsem.utils.logging_config import get_logger

logger = get_logger(__name__)


def _save(fig, save_path: Optional[Path]) -> None:
    plt.tight_layout()
    if save_path:
        save_path = Path(save_path)
        save_path.parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(save_path, dpi=300, bbox_inches='tight')
        print(f"  Saved: {save_path}")


def plot_score_agreement(first: FittedResult,
                         second: FittedResult,
                         factors: Optional[Sequence[str]] = None,
                         figsize: Tuple[int, int] = None,
                         save_path: Path = None):
    """
    Scatter of per-unit predictions of two fits, one panel per factor.

    Args:
        first: Result on the x axis (e.g. SEM)
        second: Result on the y axis (e.g. mixed model)
        factors: Factors to plot (default: all of first)
        figsize: Figure size (default scales with the number of factors)
        save_path: Path to save figure (optional)

    Returns:
        matplotlib Figure object
    """
    factors = list(factors) if factors is not None else first.factors
    x_scores = score_columns(first.scores, factors)
    y_scores = score_columns(second.scores, factors).loc[x_scores.index]

    if figsize is None:
        figsize = (5 * len(factors), 5)
    fig, axes = plt.subplots(1, len(factors), figsize=figsize, squeeze=False)

    for ax, factor in zip(axes[0], factors):
        x = x_scores[factor].to_numpy()
        y = y_scores[factor].to_numpy()
        r = np.corrcoef(x, y)[0, 1]

        ax.scatter(x, y, s=8, alpha=0.4, color='tab:blue')
        lo = min(x.min(), y.min())
        hi = max(x.max(), y.max())
        ax.plot([lo, hi], [lo, hi], color='gray', linestyle='--', linewidth=1)
        ax.set_xlabel(f"{first.model_name} score")
        ax.set_ylabel(f"{second.model_name} fixed effect + BLUP")
        ax.set_title(f"{factor} (r = {r:.4f})")
        ax.set_aspect('equal', adjustable='datalim')

    _save(fig, save_path)
    return fig


def plot_variance_components(results: Sequence[FittedResult],
                             truth: Optional[Mapping[str, float]] = None,
                             figsize: Tuple[int, int] = (10, 5),
                             title: str = "Variance components",
                             save_path: Path = None):
    """
    Grouped bars of variance components per model (and the truth).

    Returns:
        matplotlib Figure object
    """
    names = list(results[0].variance_components())
    series: Dict[str, np.ndarray] = {}
    if truth is not None:
        series['truth'] = np.array([truth.get(n, np.nan) for n in names])
    for result in results:
        series[result.model_name] = np.array([result.get(n) for n in names])

    fig, ax = plt.subplots(figsize=figsize)
    x = np.arange(len(names))
    width = 0.8 / len(series)
    colors = plt.cm.tab10.colors

    for i, (label, values) in enumerate(series.items()):
        color = 'lightgray' if label == 'truth' else colors[i % len(colors)]
        ax.bar(x + (i - (len(series) - 1) / 2) * width, values, width,
               label=label, color=color, edgecolor='black', linewidth=0.5)

    ax.set_xticks(x)
    ax.set_xticklabels(names, rotation=30, ha='right')
    ax.set_ylabel('Estimate')
    ax.set_title(title)
    ax.axhline(0, color='black', linewidth=0.5)
    ax.legend()

    _save(fig, save_path)
    return fig


def plot_item_distributions(wide: pd.DataFrame,
                            spec: Optional[LatentSpec] = None,
                            bins: int = 40,
                            figsize: Tuple[int, int] = None,
                            save_path: Path = None):
    """
    Histogram of each item with a normal density overlay.

    The overlay uses the implied mean and variance when a LatentSpec is
    given, otherwise a normal fitted to the column.

    Returns:
        matplotlib Figure object
    """
    items = list(spec.item_names) if spec is not None else list(wide.columns)
    if figsize is None:
        figsize = (4 * len(items), 4)
    fig, axes = plt.subplots(1, len(items), figsize=figsize, squeeze=False)

    if spec is not None:
        means = spec.implied_means()
        sds = np.sqrt(spec.implied_variances())

    for ax, item in zip(axes[0], items):
        values = wide[item].to_numpy()
        ax.hist(values, bins=bins, density=True, alpha=0.6, color='tab:blue',
                edgecolor='white')
        if spec is not None:
            loc, scale = means[item], sds[item]
            label = 'implied'
        else:
            loc, scale = stats.norm.fit(values)
            label = 'fitted'
        grid = np.linspace(values.min(), values.max(), 200)
        ax.plot(grid, stats.norm.pdf(grid, loc, scale), color='tab:red',
                linewidth=2, label=f"N({loc:.2f}, {scale ** 2:.2f}) {label}")
        ax.set_title(f"{item} (var = {values.var(ddof=1):.2f})")
        ax.set_xlabel(item)
        ax.legend(fontsize=8)

    axes[0][0].set_ylabel('Density')
    _save(fig, save_path)
    return fig


def plot_replication_correlations(correlations: pd.DataFrame,
                                  threshold: float = 0.99,
                                  figsize: Tuple[int, int] = (8, 5),
                                  save_path: Path = None):
    """Histogram of per-replication score correlations, one series per factor."""
    fig, ax = plt.subplots(figsize=figsize)
    for factor in correlations.columns:
        values = correlations[factor].dropna()
        ax.hist(values, bins=20, alpha=0.6, label=factor, edgecolor='white')
    ax.axvline(threshold, color='tab:red', linestyle='--', linewidth=1,
               label=f"threshold {threshold}")
    ax.set_xlabel('Score correlation (SEM vs LMM)')
    ax.set_ylabel('Replications')
    ax.legend()

    _save(fig, save_path)
    return fig


def plot_path_diagram(sem_result: FittedResult, save_path: Path) -> Optional[Path]:
    """
    Path diagram of a fitted semopy model with estimates on the arrows.

    The DOT source is always kept next to the image as ``<name>.dot``.
    Without the graphviz ``dot`` executable only the source is written.

    Returns:
        Path of the rendered image, or None if it could not be rendered
    """
    if sem_result.raw is None:
        raise ValueError(f"{sem_result.model_name} carries no fitted semopy model")
    save_path = Path(save_path)
    save_path.parent.mkdir(parents=True, exist_ok=True)
    source = save_path.with_suffix('')
    dot_path = save_path.with_suffix('.dot')

    rendered = True
    try:
        semopy.semplot(sem_result.raw, str(save_path), plot_covs=True)
    except graphviz.ExecutableNotFound:
        logger.warning("graphviz 'dot' executable not found - "
                       f"path diagram written as DOT source only ({dot_path})")
        rendered = False
    if source.exists():
        source.replace(dot_path)

    if not rendered:
        return None
    print(f"  Saved: {save_path}")
    return save_path


def close_all() -> None:
    """Release figure memory after a batch of plots."""
    plt.close('all')
