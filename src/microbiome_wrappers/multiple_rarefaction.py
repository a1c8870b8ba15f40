import multiprocessing as mp
from dataclasses import replace
from functools import partial
from typing import Tuple, Union

import pandas as pd

from microbiome_wrappers.aggregation import (
    AggregatedResult,
    ReplicateResult,
    aggregate_replicate_results,
)
from microbiome_wrappers.beta_diversity_analysis import (
    calculate_distance_matrix,
    perform_permanova,
)
from microbiome_wrappers.config import (
    AlphaDiversityConfig,
    DistanceTestConfig,
    RarefactionConfig,
    validate_columns,
)
from microbiome_wrappers.diversity_analysis import (
    alpha_diversity_group_test,
    calculate_alpha_diversity,
    depth_filtering,
    rarefy_df,
    replicate_seeds,
)
from microbiome_wrappers.errors import ConfigurationError, ReplicateError
from microbiome_wrappers.processing import align_samples

AnalysisConfig = Union[AlphaDiversityConfig, DistanceTestConfig]


def run_replicate(
    task: Tuple[int, int],
    table: pd.DataFrame,
    metadata: pd.DataFrame,
    rarefaction: RarefactionConfig,
    analysis: AnalysisConfig,
) -> ReplicateResult:
    """
    Rarefy once and compute the replicate's statistic.

    Args:
        task (tuple): Replicate index and the seed derived for it.
        table (pd.DataFrame): Samples as rows, already restricted to samples deep enough.
        metadata (pd.DataFrame): Metadata for the same samples.
        rarefaction (RarefactionConfig): Rarefaction parameters with the depth resolved.
        analysis: Alpha diversity or distance test configuration.

    Returns:
        ReplicateResult: Statistic and p-value of this replicate.

    Raises:
        ReplicateError: Wrapping any failure, with the replicate index.
    """
    index, seed = task

    try:
        rarefied_df = rarefy_df(
            table,
            sampling_depth=rarefaction.depth,
            with_replacement=rarefaction.with_replacement,
            random_seed=seed,
            low_depth_policy=rarefaction.low_depth_policy,
        )

        if isinstance(analysis, AlphaDiversityConfig):
            values = calculate_alpha_diversity(rarefied_df, [analysis.metric])[
                analysis.metric
            ]
            statistic, p_value = alpha_diversity_group_test(
                values, metadata, analysis.group_column, analysis.block_column
            )
            return ReplicateResult(
                replicate=index,
                seed=seed,
                statistic=statistic,
                p_value=p_value,
                n_samples=rarefied_df.shape[0],
                sample_values=values,
            )

        distance_matrix = calculate_distance_matrix(
            rarefied_df, analysis.metric, pseudocount=analysis.pseudocount
        )
        permanova_results = perform_permanova(
            distance_matrix, metadata, analysis, seed=seed
        )
        return ReplicateResult(
            replicate=index,
            seed=seed,
            statistic=permanova_results["pseudo_F"],
            p_value=permanova_results["p_value"],
            n_samples=permanova_results["sample_size"],
        )
    except Exception as e:
        raise ReplicateError(index, f"{type(e).__name__}: {e}") from e


def run_multiple_rarefaction(
    table: pd.DataFrame,
    metadata: pd.DataFrame,
    rarefaction: RarefactionConfig,
    analysis: AnalysisConfig,
    n_workers: int = 1,
) -> AggregatedResult:
    """
    Repeat an analysis over independently rarefied tables and aggregate the results.

    Every replicate gets its own seed derived from ``rarefaction.seed``, so the
    aggregated output is the same for any number of workers. R-backed PERMANOVA
    (multi-term formulas or strata) should be run with ``n_workers=1``.

    Args:
        table (pd.DataFrame): Samples as rows, features as columns.
        metadata (pd.DataFrame): Metadata indexed by sample id.
        rarefaction (RarefactionConfig): Depth, replicate count, seed and low-depth policy.
        analysis: ``AlphaDiversityConfig`` or ``DistanceTestConfig``.
        n_workers (int): Number of worker processes.

    Returns:
        AggregatedResult: Medians, IQR and ACAT p-value over all replicates.
    """
    if not isinstance(analysis, (AlphaDiversityConfig, DistanceTestConfig)):
        raise ConfigurationError(
            f"Unknown analysis configuration: {type(analysis).__name__}. "
            "Expected AlphaDiversityConfig or DistanceTestConfig."
        )

    # Fail on missing columns before any rarefaction
    validate_columns(analysis, metadata)

    if isinstance(analysis, AlphaDiversityConfig) and analysis.block_column:
        n_groups = metadata[analysis.group_column].dropna().nunique()
        if n_groups != 2:
            raise ConfigurationError(
                f"Paired comparisons need exactly 2 groups in "
                f"'{analysis.group_column}', found {n_groups}."
            )

    table, metadata = align_samples(table, metadata)

    depth = rarefaction.depth
    if depth is None:
        depth = int(table.sum(axis=1).min())

    kept_df = depth_filtering(table, depth, rarefaction.low_depth_policy)
    metadata = metadata.loc[kept_df.index]

    seeds = replicate_seeds(rarefaction.seed, rarefaction.n_replicates)
    tasks = list(enumerate(seeds))

    print(
        f"Running {len(tasks)} rarefaction replicates at depth {depth} "
        f"on {kept_df.shape[0]} samples with {n_workers} worker(s)..."
    )

    worker_func = partial(
        run_replicate,
        table=kept_df,
        metadata=metadata,
        rarefaction=replace(rarefaction, depth=depth),
        analysis=analysis,
    )

    if n_workers <= 1:
        results = [worker_func(task) for task in tasks]
    else:
        with mp.Pool(processes=n_workers) as pool:
            results = list(pool.imap(worker_func, tasks))

    aggregated = aggregate_replicate_results(results)

    print(
        f"✅ Finished {aggregated.n_replicates} replicates: "
        f"median statistic {aggregated.statistic_median:.4g}, "
        f"ACAT p-value {aggregated.acat_p_value:.4g}"
    )

    return aggregated
