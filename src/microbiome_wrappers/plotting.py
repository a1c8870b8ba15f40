import os
from pathlib import Path
from typing import Optional

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

from microbiome_wrappers.aggregation import AggregatedResult
from microbiome_wrappers.diversity_analysis import significance_stars


def plot_replicate_statistics(
    aggregated: AggregatedResult, output_file: str, title: str
) -> None:
    """
    Plot the per-replicate test statistics and p-values of a repeated rarefaction run.

    Parameters:
    aggregated (AggregatedResult): Output of run_multiple_rarefaction.
    output_file (str): Path of the image to write.
    title (str): Figure title, e.g. the metric and grouping column.
    """

    # Skip if output file already exists
    if os.path.exists(output_file):
        print(f"Output file {output_file} already exists. Skipping plot.")
        return

    replicates_df = aggregated.replicates

    # Create the output directory if it doesn't exist
    Path(os.path.dirname(output_file) or ".").mkdir(parents=True, exist_ok=True)

    fig, (ax_stat, ax_p) = plt.subplots(1, 2, figsize=(12, 6))

    # Jitter so overlapping replicates stay visible
    rng = np.random.default_rng(0)
    jitter = rng.uniform(-0.08, 0.08, size=len(replicates_df))

    for ax, column, label in [
        (ax_stat, "statistic", "Test statistic"),
        (ax_p, "p_value", "P-value"),
    ]:
        ax.boxplot(replicates_df[column], widths=0.4, showfliers=False)
        ax.scatter(
            1 + jitter,
            replicates_df[column],
            color="steelblue",
            alpha=0.7,
            zorder=3,
        )
        ax.set_xticks([1])
        ax.set_xticklabels([f"{aggregated.n_replicates} replicates"], fontsize=12)
        ax.set_ylabel(label, fontsize=14)
        ax.grid(visible=True, axis="y", linestyle="--", linewidth=0.5)

    ax_stat.set_title(
        f"Median {aggregated.statistic_median:.3g} (IQR {aggregated.statistic_iqr:.3g})",
        fontsize=12,
    )

    ax_p.axhline(0.05, color="red", linestyle="--", linewidth=1, label="p = 0.05")
    ax_p.set_ylim(0, 1)
    ax_p.set_title(
        f"ACAT p = {aggregated.acat_p_value:.3g} "
        f"({significance_stars(aggregated.acat_p_value)}); "
        f"median p = {aggregated.p_value_median:.3g}",
        fontsize=12,
    )
    ax_p.legend(loc="upper right", fontsize=10)

    fig.suptitle(title, fontsize=16)

    # Save the figure
    plt.savefig(output_file, bbox_inches="tight")
    plt.close(fig)
    print(f"Replicate plot saved to {output_file}")


def effect_labels(
    plot_df: pd.DataFrame, feature_labels: Optional[pd.Series] = None
) -> pd.Series:
    """Y-axis labels for a forest plot, with taxon names where they are known."""
    labels = plot_df["feature_id"].astype(str)

    if feature_labels is not None:
        taxa = plot_df["feature_id"].map(feature_labels)
        named = taxa.notna() & (taxa != plot_df["feature_id"])
        labels = labels.where(~named, taxa.astype(str) + " [" + labels + "]")

    # Include the term when more than one term was tested
    if plot_df["term"].nunique() > 1:
        labels = labels + " (" + plot_df["term"].astype(str) + ")"

    return labels


def plot_daa_effects(
    standardized: pd.DataFrame,
    output_file: str,
    title: str,
    top_n: int = 20,
    alpha: float = 0.05,
    feature_labels: Optional[pd.Series] = None,
) -> None:
    """
    Forest plot of the top differentially abundant features.

    Parameters:
    standardized (pd.DataFrame): Output of standardize_daa_results.
    output_file (str): Path of the image to write.
    title (str): Figure title.
    top_n (int): Number of features with the smallest q-values to show.
    alpha (float): Significance level used to colour the features.
    feature_labels (pd.Series, optional): Taxon names indexed by feature id,
        e.g. from lowest_rank_label.
    """

    # Skip if output file already exists
    if os.path.exists(output_file):
        print(f"Output file {output_file} already exists. Skipping plot.")
        return

    plot_df = (
        standardized.dropna(subset=["effect"])
        .sort_values("q_value", na_position="last", kind="stable")
        .head(top_n)
        .iloc[::-1]
        .reset_index(drop=True)
    )

    if plot_df.empty:
        print(f"No features with an effect estimate to plot for {title}.")
        return

    labels = effect_labels(plot_df, feature_labels)

    significant = plot_df["q_value"] < alpha
    colors = np.where(significant, "firebrick", "grey")

    # Create the output directory if it doesn't exist
    Path(os.path.dirname(output_file) or ".").mkdir(parents=True, exist_ok=True)

    fig, ax = plt.subplots(figsize=(10, max(4, 0.35 * len(plot_df) + 1.5)))

    y = np.arange(len(plot_df))
    has_bounds = plot_df["lower"].notna() & plot_df["upper"].notna()

    ax.hlines(
        y[has_bounds],
        plot_df.loc[has_bounds, "lower"],
        plot_df.loc[has_bounds, "upper"],
        color=colors[has_bounds.to_numpy()],
        linewidth=2,
    )
    ax.scatter(plot_df["effect"], y, color=colors, zorder=3)
    ax.axvline(0, color="black", linestyle="--", linewidth=1)

    # Stars next to the significant features
    for i, row in plot_df.iterrows():
        if pd.notna(row["q_value"]) and row["q_value"] < alpha:
            x = row["upper"] if pd.notna(row["upper"]) else row["effect"]
            ax.annotate(
                significance_stars(row["q_value"]),
                (x, i),
                xytext=(4, -4),
                textcoords="offset points",
                fontsize=10,
            )

    ax.set_yticks(y)
    ax.set_yticklabels(labels, fontsize=10)
    ax.set_xlabel("Effect size (95% interval)", fontsize=14)
    ax.set_title(title, fontsize=16)
    ax.grid(visible=True, axis="x", linestyle="--", linewidth=0.5)

    # Save the figure
    plt.savefig(output_file, bbox_inches="tight")
    plt.close(fig)
    print(f"Effect plot saved to {output_file}")
