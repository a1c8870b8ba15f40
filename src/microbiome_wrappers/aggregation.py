"""
Combine per-replicate statistics from repeated rarefaction.

Each replicate yields one test statistic and one p-value. They are summarised
by their medians and the interquartile range of the statistic, and the
p-values are combined into a single one with the Aggregated Cauchy Association
Test (ACAT; Liu & Xie, 2020), which stays valid under arbitrary dependence
between the replicates.
"""

import math
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

import numpy as np
import pandas as pd
import scipy.stats  # type: ignore

from microbiome_wrappers.errors import AggregationError

EPSILON = np.finfo(float).eps

# Below this p-value tan((0.5 - p) * pi) is replaced by its asymptote 1 / (p * pi)
SMALL_P = 1e-15

# Above this statistic the Cauchy survival function is replaced by 1 / (t * pi)
LARGE_STATISTIC = 1e15


@dataclass
class ReplicateResult:
    """Statistic and p-value of one rarefied replicate."""

    replicate: int
    seed: int
    statistic: float
    p_value: float
    n_samples: int
    sample_values: Optional[pd.Series] = None


@dataclass
class AggregatedResult:
    """Summary of all replicates of one analysis."""

    statistic_median: float
    statistic_iqr: float
    p_value_median: float
    acat_p_value: float
    n_replicates: int
    replicates: pd.DataFrame = field(repr=False)
    sample_summary: Optional[pd.DataFrame] = field(default=None, repr=False)

    def to_series(self) -> pd.Series:
        return pd.Series(
            {
                "statistic_median": self.statistic_median,
                "statistic_iqr": self.statistic_iqr,
                "p_value_median": self.p_value_median,
                "acat_p_value": self.acat_p_value,
                "n_replicates": self.n_replicates,
            }
        )


def acat(
    p_values: Iterable[float],
    weights: Optional[Iterable[float]] = None,
    labels: Optional[List] = None,
    normalize_weights: bool = True,
) -> float:
    """
    Combine p-values with the Aggregated Cauchy Association Test.

    Each p-value is mapped to ``tan((0.5 - p) * pi)``, the weighted sum is
    taken, and the sum is converted back with the standard Cauchy survival
    function. Weights are normalised to sum to one, so equal weights give back
    ``p0`` when every input equals ``p0``. With ``normalize_weights=False`` the
    weights are used as given (all 1 by default), which is the plain sum of
    the Cauchy statistics.

    Args:
        p_values: P-values in [0, 1]. Exact 0 and 1 are clamped to machine epsilon.
        weights: Non-negative weights, one per p-value. Defaults to equal weights.
        labels: Names used in error messages, e.g. replicate indices.
        normalize_weights: Scale the weights to sum to one.

    Returns:
        float: Combined p-value.

    Raises:
        AggregationError: If there are no p-values or one is NaN or outside [0, 1].
    """
    p = np.asarray(list(p_values), dtype=float)

    if p.size == 0:
        raise AggregationError("Cannot combine an empty collection of p-values.")

    if labels is None:
        labels = list(range(p.size))

    for label, value in zip(labels, p):
        if not np.isfinite(value) or value < 0 or value > 1:
            raise AggregationError(
                f"Replicate {label} has an invalid p-value ({value}); "
                "p-values must lie in [0, 1]."
            )

    if weights is None:
        w = np.ones(p.size)
    else:
        w = np.asarray(list(weights), dtype=float)
        if w.shape != p.shape:
            raise AggregationError(
                f"Got {w.size} weights for {p.size} p-values."
            )
        if (w < 0).any() or not np.isfinite(w).all() or w.sum() <= 0:
            raise AggregationError("Weights must be non-negative with a positive sum.")

    if normalize_weights:
        w = w / w.sum()

    p = np.clip(p, EPSILON, 1.0 - EPSILON)

    small = p < SMALL_P
    t = np.empty_like(p)
    t[~small] = np.tan((0.5 - p[~small]) * np.pi)
    t[small] = 1.0 / (p[small] * np.pi)

    # fsum is exactly rounded, so the result does not depend on input order
    statistic = math.fsum(w * t)

    if statistic > LARGE_STATISTIC:
        return float((1.0 / statistic) / np.pi)

    combined = float(scipy.stats.cauchy.sf(statistic))

    return min(combined, 1.0 - EPSILON)


def aggregate_replicate_results(results: List[ReplicateResult]) -> AggregatedResult:
    """
    Summarise the replicates of one analysis.

    Args:
        results: One result per replicate, in any order.

    Returns:
        AggregatedResult: Median and IQR of the statistic, median p-value and the
            ACAT combined p-value.
    """
    if not results:
        raise AggregationError("Cannot aggregate an empty collection of replicates.")

    results = sorted(results, key=lambda result: result.replicate)

    replicates_df = pd.DataFrame(
        [
            {
                "replicate": result.replicate,
                "seed": result.seed,
                "statistic": result.statistic,
                "p_value": result.p_value,
                "n_samples": result.n_samples,
            }
            for result in results
        ]
    )

    bad_statistics = replicates_df.loc[
        ~np.isfinite(replicates_df["statistic"].astype(float)), "replicate"
    ]
    if not bad_statistics.empty:
        raise AggregationError(
            f"Replicate {bad_statistics.iloc[0]} produced a non-finite test statistic."
        )

    acat_p_value = acat(
        replicates_df["p_value"], labels=replicates_df["replicate"].tolist()
    )

    q25, q75 = np.percentile(replicates_df["statistic"], [25, 75])

    return AggregatedResult(
        statistic_median=float(replicates_df["statistic"].median()),
        statistic_iqr=float(q75 - q25),
        p_value_median=float(replicates_df["p_value"].median()),
        acat_p_value=acat_p_value,
        n_replicates=len(results),
        replicates=replicates_df,
        sample_summary=summarise_sample_values(results),
    )


def summarise_sample_values(results: List[ReplicateResult]) -> Optional[pd.DataFrame]:
    """Median and IQR of each sample's value (e.g. alpha diversity) across replicates."""
    series = {
        result.replicate: result.sample_values
        for result in results
        if result.sample_values is not None
    }
    if not series:
        return None

    values_df = pd.DataFrame(series)

    summary_df = pd.DataFrame(
        {
            "median": values_df.median(axis=1),
            "iqr": values_df.quantile(0.75, axis=1) - values_df.quantile(0.25, axis=1),
            "n_replicates": values_df.notna().sum(axis=1),
        }
    )
    summary_df.index.name = "sample_id"

    return summary_df
