import os
import warnings
from itertools import combinations
from typing import List, Optional

import biom  # type: ignore
import numpy as np
import pandas as pd
import scipy.stats  # type: ignore
from skbio.diversity import alpha  # type: ignore

from microbiome_wrappers.config import (
    ALPHA_METRICS,
    LowDepthPolicy,
    RarefactionConfig,
)
from microbiome_wrappers.errors import ConfigurationError, DataError


def depth_filtering(
    table: pd.DataFrame,
    depth_threshold: int,
    policy: LowDepthPolicy = LowDepthPolicy.EXCLUDE,
) -> pd.DataFrame:
    """
    Remove samples with read depth below threshold.

    Args:
        table (pd.DataFrame): Samples as rows, features as columns.
        depth_threshold (int): Minimum number of reads a sample needs.
        policy (LowDepthPolicy): EXCLUDE drops low-depth samples with a warning,
            ERROR raises instead.

    Returns:
        pd.DataFrame: Table restricted to samples with enough reads.

    Raises:
        DataError: If the policy is ERROR and a sample is too shallow, or if no
            sample reaches the threshold.
    """
    sample_depths = table.sum(axis=1)
    too_shallow = sample_depths[sample_depths < depth_threshold]

    if not too_shallow.empty:
        details = ", ".join(f"{s} ({int(d)} reads)" for s, d in too_shallow.items())
        if policy == LowDepthPolicy.ERROR:
            raise DataError(
                f"Samples below rarefaction depth {depth_threshold}: {details}",
                sample_ids=too_shallow.index.tolist(),
            )
        warnings.warn(
            f"Excluding {len(too_shallow)} sample(s) below rarefaction depth "
            f"{depth_threshold}: {details}"
        )

    kept = table.loc[sample_depths >= depth_threshold]

    if kept.empty:
        raise DataError(
            f"No samples reach the rarefaction depth of {depth_threshold} reads.",
            sample_ids=too_shallow.index.tolist(),
        )

    return kept


def replicate_seeds(seed: int, n_replicates: int) -> List[int]:
    """
    Derive one independent seed per replicate from a base seed.

    The seeds come from ``numpy.random.SeedSequence.spawn`` so replicate ``i``
    always gets the same stream, whatever order or worker it runs on. Seeds are
    kept to 31 bits so R's ``set.seed`` accepts them too.
    """
    children = np.random.SeedSequence(seed).spawn(n_replicates)
    return [int(child.generate_state(1, dtype=np.uint32)[0] >> 1) for child in children]


def rarefy_df(
    df: pd.DataFrame,
    sampling_depth: Optional[int] = None,
    with_replacement: bool = False,
    random_seed: int = 1088,
    low_depth_policy: LowDepthPolicy = LowDepthPolicy.EXCLUDE,
) -> pd.DataFrame:
    """
    Rarefy a pandas DataFrame to a specified sampling depth using the BIOM format.

    Parameters
    ----------
    df : pd.DataFrame
        Input DataFrame with samples as rows and features as columns.
        The DataFrame should contain non-negative integer counts.

    sampling_depth : int, optional
        Rarefaction depth. If None, automatically set to the minimum sample sum.

    with_replacement : bool, default False
        Perform rarefaction sampling with or without replacement.

    random_seed : int, default 1088
        Seed for random number generation to ensure reproducibility.

    low_depth_policy : LowDepthPolicy, default EXCLUDE
        Whether samples below the sampling depth are dropped or rejected.

    Returns
    -------
    pd.DataFrame
        The rarefied DataFrame. Every retained sample sums to ``sampling_depth``
        and all input feature ids are kept, even when they drop to zero.
    """
    if sampling_depth is None:
        # Get the minimum sample sum for rarefaction depth from the DataFrame
        sampling_depth = int(df.sum(axis=1).min())
    else:
        sampling_depth = int(sampling_depth)

    kept_df = depth_filtering(df, sampling_depth, low_depth_policy)

    sample_ids = kept_df.index.astype(str)
    feature_ids = kept_df.columns.astype(str)

    # biom expects observations as rows
    biom_table = biom.Table(
        kept_df.T.values,
        observation_ids=feature_ids,
        sample_ids=sample_ids,
    )

    rarefied_biom_table = biom_table.subsample(
        sampling_depth,
        axis="sample",
        by_id=False,
        with_replacement=with_replacement,
        seed=random_seed,
    )

    rarefied_df = pd.DataFrame(
        rarefied_biom_table.matrix_data.toarray().T,
        index=rarefied_biom_table.ids(axis="sample"),
        columns=rarefied_biom_table.ids(axis="observation"),
    )

    # Features that lost all reads are dropped by biom; put them back as zeros
    rarefied_df = rarefied_df.reindex(
        index=sample_ids, columns=feature_ids, fill_value=0
    ).astype(np.int64)
    rarefied_df.index = kept_df.index
    rarefied_df.columns = kept_df.columns

    return rarefied_df


def multiple_rarefaction(
    table: pd.DataFrame, config: RarefactionConfig
) -> List[pd.DataFrame]:
    """
    Rarefy a table ``config.n_replicates`` times, each with its own seed.

    Args:
        table (pd.DataFrame): Samples as rows, features as columns.
        config (RarefactionConfig): Depth, replicate count, seed and low-depth policy.

    Returns:
        List[pd.DataFrame]: One rarefied table per replicate, in replicate order.
    """
    depth = config.depth
    if depth is None:
        depth = int(table.sum(axis=1).min())

    # Apply the low-depth policy once so exclusions are reported once
    kept = depth_filtering(table, depth, config.low_depth_policy)

    print(
        f"Rarefying {kept.shape[0]} samples to {depth} reads, "
        f"{config.n_replicates} times."
    )

    return [
        rarefy_df(
            kept,
            sampling_depth=depth,
            with_replacement=config.with_replacement,
            random_seed=seed,
        )
        for seed in replicate_seeds(config.seed, config.n_replicates)
    ]


def _alpha_value(counts: np.ndarray, metric: str) -> float:
    if metric == "observed_features":
        return float(np.count_nonzero(counts))
    if metric == "shannon":
        return float(alpha.shannon(counts, base=2))
    if metric == "simpson":
        return float(alpha.simpson(counts))
    if metric == "dominance":
        return float(alpha.dominance(counts))
    if metric == "chao1":
        return float(alpha.chao1(counts))
    raise ConfigurationError(
        f"Invalid alpha diversity metric: {metric}. "
        f"Valid options: {', '.join(ALPHA_METRICS)}"
    )


def calculate_alpha_diversity(
    table: pd.DataFrame, metrics: Optional[List[str]] = None
) -> pd.DataFrame:
    """Calculates alpha diversity metrics for each sample.

    Args:
        table (pd.DataFrame): Rarefied table, samples as rows and features as columns.
        metrics (list, optional): Metrics to compute. Defaults to all supported metrics.

    Returns:
        pd.DataFrame: One row per sample, one column per metric.
    """
    if metrics is None:
        metrics = ALPHA_METRICS

    for metric in metrics:
        if metric not in ALPHA_METRICS:
            raise ConfigurationError(
                f"Invalid alpha diversity metric: {metric}. "
                f"Valid options: {', '.join(ALPHA_METRICS)}"
            )

    alpha_diversity_metrics: dict[str, list] = {metric: [] for metric in metrics}

    for sample in table.index:
        counts = table.loc[sample].to_numpy(dtype=np.int64)
        for metric in metrics:
            alpha_diversity_metrics[metric].append(_alpha_value(counts, metric))

    alpha_diversity_df = pd.DataFrame(alpha_diversity_metrics, index=table.index)

    return alpha_diversity_df


def alpha_diversity_group_test(
    values: pd.Series,
    metadata: pd.DataFrame,
    group_column: str,
    block_column: Optional[str] = None,
) -> tuple[float, float]:
    """
    Compare one alpha diversity metric between the groups of a metadata column.

    Two groups are compared with a Mann-Whitney U test, more than two with a
    Kruskal-Wallis H test. With a block column (e.g. patient id) the two groups
    are compared with a paired Wilcoxon signed-rank test on the blocks seen in
    both groups.

    Args:
        values (pd.Series): Metric values indexed by sample id.
        metadata (pd.DataFrame): Metadata indexed by sample id.
        group_column (str): Column defining the groups.
        block_column (str, optional): Column pairing samples across groups.

    Returns:
        tuple[float, float]: Test statistic and p-value.
    """
    merged_df = pd.DataFrame(
        {"value": values, "group": metadata.loc[values.index, group_column]}
    ).dropna(subset=["group"])

    groups = list(pd.unique(merged_df["group"]))
    if len(groups) < 2:
        raise DataError(
            f"Expected at least 2 groups in '{group_column}', found {len(groups)}."
        )

    if block_column:
        if len(groups) != 2:
            raise ConfigurationError(
                f"Paired comparisons need exactly 2 groups in '{group_column}', "
                f"found {len(groups)}."
            )
        merged_df["block"] = metadata.loc[merged_df.index, block_column]

        # Pivot so each row = block, columns = group values
        paired_df = merged_df.pivot_table(
            index="block", columns="group", values="value"
        ).dropna(subset=groups)

        if paired_df.shape[0] < 1:
            raise DataError(
                f"No '{block_column}' block has samples in both '{groups[0]}' and '{groups[1]}'."
            )

        stat, p_value = scipy.stats.wilcoxon(
            paired_df[groups[0]], paired_df[groups[1]], alternative="two-sided"
        )
    elif len(groups) == 2:
        stat, p_value = scipy.stats.mannwhitneyu(
            merged_df.loc[merged_df["group"] == groups[0], "value"],
            merged_df.loc[merged_df["group"] == groups[1], "value"],
            alternative="two-sided",
        )
    else:
        stat, p_value = scipy.stats.kruskal(
            *[merged_df.loc[merged_df["group"] == g, "value"] for g in groups]
        )

    return float(stat), float(p_value)


def significance_stars(p: float) -> str:
    if p < 0.0001:
        return "****"
    if p < 0.001:
        return "***"
    if p < 0.01:
        return "**"
    if p < 0.05:
        return "*"
    return "ns"


def unpaired_alpha_diversity_calculations(
    alpha_diversity_df: pd.DataFrame,
    metadata_df: pd.DataFrame,
    primary_variable: str,
    output_file: Optional[str] = None,
) -> pd.DataFrame:
    """Perform mannwhitneyu between every pair of groups for each alpha diversity metric.

    Args:
        alpha_diversity_df (pd.DataFrame): Alpha diversity metrics indexed by sample id.
        metadata_df (pd.DataFrame): Sample metadata indexed by sample id.
        primary_variable (str): The column in metadata_df to group by.
        output_file (str, optional): Path to write out the results as csv.

    Returns:
        pd.DataFrame: Pairwise comparison results with z-score scaled differences.
    """
    results_list = []

    merged_df = alpha_diversity_df.join(metadata_df[[primary_variable]], how="inner")

    groups = merged_df[primary_variable].dropna().unique()

    for g1, g2 in combinations(groups, 2):
        comparison = f"{g1}_vs_{g2}"

        for metric in alpha_diversity_df.columns:
            group1_values = merged_df.loc[merged_df[primary_variable] == g1, metric]
            group2_values = merged_df.loc[merged_df[primary_variable] == g2, metric]

            stat, p_value = scipy.stats.mannwhitneyu(
                group1_values, group2_values, alternative="two-sided"
            )

            # Calculate z-score standardized difference
            pooled_std = pd.concat([group1_values, group2_values]).std()
            raw_median_diff = group1_values.median() - group2_values.median()
            zscore_diff = raw_median_diff / pooled_std if pooled_std else 0.0

            if raw_median_diff > 0:
                relative_change = f"up in {g1}"
            elif raw_median_diff < 0:
                relative_change = f"up in {g2}"
            else:
                relative_change = "no change"

            results_list.append(
                {
                    "group1": g1,
                    "group2": g2,
                    "comparison": comparison,
                    "metric": metric,
                    "n_group1": len(group1_values),
                    "n_group2": len(group2_values),
                    "relative_change": relative_change,
                    "U-statistic": stat,
                    "p-value": p_value,
                    "median_diff": raw_median_diff,
                    "zscore_diff": zscore_diff,
                }
            )

    results_df = pd.DataFrame(results_list)

    if not results_df.empty:
        results_df["significance"] = results_df["p-value"].apply(significance_stars)

    if output_file is not None:
        os.makedirs(os.path.dirname(output_file) or ".", exist_ok=True)
        results_df.to_csv(output_file, index=False)
        print(f"Pairwise alpha diversity results saved to {output_file}")

    return results_df
