"""
Report figures for the genomic workflows.
"""

from pathlib import Path
from typing import Dict

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd


def _save(fig, output_file: Path) -> Path:
    output_file.parent.mkdir(parents=True, exist_ok=True)
    fig.tight_layout()
    fig.savefig(output_file, dpi=150)
    plt.close(fig)
    return output_file


def plot_barcode_ranks(
    ranks: pd.DataFrame,
    knee: float,
    inflection: float,
    output_file: Path,
    is_cell: pd.Series = None
) -> Path:
    """Log-log barcode rank curve with knee and inflection lines."""
    ranks = ranks[ranks["total"] > 0].sort_values("rank")

    fig, ax = plt.subplots(figsize=(6, 5))
    if is_cell is not None:
        called = is_cell.reindex(ranks.index).fillna(False).astype(bool)
        ax.scatter(ranks.loc[~called, "rank"], ranks.loc[~called, "total"], s=2, c="grey", label="empty")
        ax.scatter(ranks.loc[called, "rank"], ranks.loc[called, "total"], s=2, c="black", label="cell")
        ax.legend(loc="lower left", markerscale=4)
    else:
        ax.scatter(ranks["rank"], ranks["total"], s=2, c="black")
    ax.axhline(knee, color="dodgerblue", linestyle="--", label="knee")
    ax.axhline(inflection, color="forestgreen", linestyle="--", label="inflection")
    ax.set_xscale("log")
    ax.set_yscale("log")
    ax.set_xlabel("Rank")
    ax.set_ylabel("Total UMI count")
    return _save(fig, output_file)


def plot_umap(coordinates: np.ndarray, clusters: pd.Series, output_file: Path) -> Path:
    """UMAP embedding coloured by cluster."""
    fig, ax = plt.subplots(figsize=(6, 5))
    labels = clusters.astype(str).to_numpy()
    cmap = plt.get_cmap("tab20")
    for i, label in enumerate(sorted(set(labels), key=lambda c: (len(c), c))):
        mask = labels == label
        ax.scatter(coordinates[mask, 0], coordinates[mask, 1], s=4, color=cmap(i % 20), label=label)
    ax.set_xlabel("UMAP1")
    ax.set_ylabel("UMAP2")
    ax.legend(title="cluster", bbox_to_anchor=(1.02, 1), loc="upper left", markerscale=3, fontsize="small")
    return _save(fig, output_file)


def plot_location_counts(location_counts: Dict[str, int], output_file: Path) -> Path:
    """Bar chart of variants per location category."""
    fig, ax = plt.subplots(figsize=(6, 4))
    names = list(location_counts)
    ax.bar(names, [location_counts[n] for n in names], color="steelblue")
    ax.set_ylabel("Variants")
    ax.tick_params(axis="x", labelrotation=45)
    return _save(fig, output_file)


def plot_ma(tested: pd.DataFrame, output_file: Path, fdr: float = 0.05) -> Path:
    """Window abundance against log fold change, significant windows highlighted."""
    fig, ax = plt.subplots(figsize=(6, 5))
    significant = tested["fdr"] <= fdr
    ax.scatter(tested.loc[~significant, "abundance"], tested.loc[~significant, "log_fc"], s=3, c="grey")
    ax.scatter(tested.loc[significant, "abundance"], tested.loc[significant, "log_fc"], s=3, c="red")
    ax.axhline(0, color="black", linewidth=0.8)
    ax.set_xlabel("Average log2 CPM")
    ax.set_ylabel("log2 fold change")
    return _save(fig, output_file)
