import os
from itertools import combinations
from typing import Optional

import pandas as pd
from pandas.api.types import is_bool_dtype, is_numeric_dtype
from scipy.spatial.distance import pdist, squareform  # type: ignore
from skbio import DistanceMatrix  # type: ignore
from skbio.diversity import beta_diversity  # type: ignore
from skbio.stats.composition import clr  # type: ignore
from skbio.stats.distance import permanova  # type: ignore
from statsmodels.stats.multitest import multipletests  # type: ignore

from microbiome_wrappers.config import (
    DISTANCE_METRIC_ALIASES,
    DISTANCE_METRICS,
    DistanceTestConfig,
    validate_columns,
)
from microbiome_wrappers.errors import ConfigurationError, DataError


def calculate_distance_matrix(
    table: pd.DataFrame,
    metric: str,
    pseudocount: float = 1.0,
) -> DistanceMatrix:
    """Calculate a sample distance matrix from a (rarefied) feature table.

    Args:
        table (pd.DataFrame): Samples as rows, features as columns.
        metric (str): euclidean, braycurtis, jaccard, manhattan or aitchison.
        pseudocount (float): Added to every count before the CLR transform of the
            Aitchison distance. Ignored by the other metrics.

    Returns:
        DistanceMatrix: Pairwise distances between samples.
    """
    metric = DISTANCE_METRIC_ALIASES.get(metric.lower(), metric.lower())
    ids = [str(sample) for sample in table.index]

    if metric == "aitchison":
        # Aitchison distance = Euclidean distance between CLR-transformed samples
        clr_values = clr(table.to_numpy(dtype=float) + pseudocount)
        return DistanceMatrix(squareform(pdist(clr_values, metric="euclidean")), ids)

    if metric == "jaccard":
        # Presence/absence so that shared non-zero counts are not treated as differences
        counts = (table.to_numpy() > 0).astype(int)
    else:
        counts = table.to_numpy()

    if metric == "manhattan":
        metric = "cityblock"
    elif metric not in DISTANCE_METRICS:
        raise ConfigurationError(
            f"Invalid distance metric: {metric}. "
            f"Valid options: {', '.join(DISTANCE_METRICS)}"
        )

    return beta_diversity(metric=metric, counts=counts, ids=ids)


def _grouping_metadata(
    distance_matrix: DistanceMatrix, metadata: pd.DataFrame
) -> pd.DataFrame:
    metadata = metadata.copy()
    metadata.index = metadata.index.astype(str)

    missing = [sample for sample in distance_matrix.ids if sample not in metadata.index]
    if missing:
        raise DataError(
            f"Samples missing from metadata: {', '.join(missing)}", sample_ids=missing
        )

    return metadata.loc[list(distance_matrix.ids)]


def permanova_engine(config: DistanceTestConfig, metadata: pd.DataFrame) -> str:
    """Return "skbio" or "vegan" for a distance test on the given metadata.

    scikit-bio tests a single grouping column without strata. Strata, several
    terms and numeric covariates go to vegan, which fits numeric terms as
    continuous in every formula.
    """
    terms = config.terms
    if len(terms) != 1 or config.strata or terms[0] not in metadata.columns:
        return "vegan"

    column = metadata[terms[0]]
    if is_numeric_dtype(column) and not is_bool_dtype(column):
        return "vegan"

    return "skbio"


def perform_permanova(
    distance_matrix: DistanceMatrix,
    metadata: pd.DataFrame,
    config: DistanceTestConfig,
    seed: Optional[int] = None,
) -> dict:
    """Run PERMANOVA for the formula of a distance test configuration.

    A single categorical term without strata is tested with scikit-bio. Formulas
    with several terms, numeric terms, or designs where permutations must stay
    within blocks are passed to vegan's ``adonis2`` through rpy2.

    Args:
        distance_matrix (DistanceMatrix): Distances between samples.
        metadata (pd.DataFrame): Metadata indexed by sample id.
        config (DistanceTestConfig): Formula, strata and number of permutations.
        seed (int, optional): Seed for the permutations.

    Returns:
        dict: ``pseudo_F``, ``p_value``, ``permutations``, ``sample_size``,
            ``test_statistic_name`` and ``engine``.
    """
    validate_columns(config, metadata)

    grouping_df = _grouping_metadata(distance_matrix, metadata)

    # Samples with missing values in any model column cannot be permuted
    complete = grouping_df[config.required_columns()].notna().all(axis=1)
    if not complete.all():
        grouping_df = grouping_df.loc[complete]
        distance_matrix = distance_matrix.filter(grouping_df.index.tolist())

    terms = config.terms

    if permanova_engine(config, grouping_df) == "skbio":
        results = permanova(
            distance_matrix,
            grouping_df,
            column=terms[0],
            permutations=config.permutations,
            seed=seed,
        )
        return {
            "pseudo_F": float(results["test statistic"]),
            "p_value": float(results["p-value"]),
            "test_statistic_name": results["test statistic name"],
            "permutations": int(results["number of permutations"]),
            "sample_size": int(results["sample size"]),
            "engine": "skbio",
        }

    results_df = perform_permanova_with_vegan(
        grouping_df,
        distance_matrix.to_data_frame(),
        terms,
        strata=config.strata,
        permutations=config.permutations,
        seed=seed,
    )

    # The first term is the variable of interest
    first_term = results_df.iloc[0]
    return {
        "pseudo_F": float(first_term["f"]),
        "p_value": float(first_term["p_value"]),
        "test_statistic_name": "pseudo-F",
        "permutations": int(config.permutations),
        "sample_size": int(distance_matrix.shape[0]),
        "engine": "vegan",
    }


def perform_permanova_with_vegan(
    metadata: pd.DataFrame,
    distance_df: pd.DataFrame,
    terms: list,
    strata: Optional[str] = None,
    permutations: int = 999,
    seed: Optional[int] = None,
) -> pd.DataFrame:
    """Performs PERMANOVA with vegan's adonis2, one row per formula term.

    Args:
        metadata (pd.DataFrame): Metadata rows in the same order as the distance matrix.
        distance_df (pd.DataFrame): Square distance matrix.
        terms (list): Formula terms, tested sequentially (``by = "terms"``).
        strata (str, optional): Column whose levels restrict permutations to within blocks.
        permutations (int): Number of permutations.
        seed (int, optional): Seed passed to R's ``set.seed``.

    Returns:
        pd.DataFrame: Columns term, df, sum_of_sqs, r2, f and p_value.
    """
    # rpy2 starts an embedded R session, so only import it when vegan is needed
    from microbiome_wrappers.r_bridge import run_r_script

    outputs = run_r_script(
        "permanova_adonis2.R",
        inputs={
            "metadata_df": metadata,
            "distance_df": distance_df,
            "formula_rhs": " + ".join(terms),
            "strata_variable": strata,
            "permutations": int(permutations),
            "seed": seed,
        },
        outputs=["results_df"],
    )

    results_df = outputs["results_df"]
    print(f"PERMANOVA (adonis2) results:\n{results_df}")

    return results_df


def pairwise_permanova(
    distance_matrix: DistanceMatrix,
    metadata: pd.DataFrame,
    group_column: str,
    permutations: int = 999,
    seed: Optional[int] = None,
    output_file: Optional[str] = None,
) -> pd.DataFrame:
    """Performs PERMANOVA between every pair of groups.

    Args:
        distance_matrix (DistanceMatrix): Distances between samples.
        metadata (pd.DataFrame): Metadata indexed by sample id.
        group_column (str): Column defining the groups.
        permutations (int): Number of permutations per comparison.
        seed (int, optional): Seed for the permutations.
        output_file (str, optional): Path to write the results as csv.

    Returns:
        pd.DataFrame: One row per pair with pseudo-F, p-value and Holm-adjusted p-value.
    """
    if group_column not in metadata.columns:
        raise ConfigurationError(f"Metadata has no column '{group_column}'.")

    grouping_df = _grouping_metadata(distance_matrix, metadata)
    groups = grouping_df[group_column].dropna().unique()

    results_list = []
    for g1, g2 in combinations(groups, 2):
        pair_ids = grouping_df.index[grouping_df[group_column].isin([g1, g2])].tolist()
        pair_dm = distance_matrix.filter(pair_ids)

        results = permanova(
            pair_dm,
            grouping_df.loc[pair_ids],
            column=group_column,
            permutations=permutations,
            seed=seed,
        )

        results_list.append(
            {
                "group1": g1,
                "group2": g2,
                "comparison": f"{g1}_vs_{g2}",
                "sample_size": int(results["sample size"]),
                "pseudo_F": float(results["test statistic"]),
                "p_value": float(results["p-value"]),
            }
        )

    results_df = pd.DataFrame(results_list)
    if not results_df.empty:
        results_df["p_adj"] = multipletests(results_df["p_value"], method="holm")[1]

    if output_file is not None:
        os.makedirs(os.path.dirname(output_file) or ".", exist_ok=True)
        results_df.to_csv(output_file, index=False)
        print(f"Pairwise PERMANOVA results saved to {output_file}")

    return results_df
