"""
Result containers and table formatting for differential abundance engines.

Results are tagged with the kind of analysis that produced them, so callers
pick the table they want by ``ResultKind`` instead of by name lookups on the
raw R output.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, Optional, Union

import numpy as np
import pandas as pd

from microbiome_wrappers.errors import ConfigurationError

# Normal quantile for 95% confidence bounds from a standard error
Z_95 = 1.959963984540054

STANDARD_COLUMNS = [
    "feature_id",
    "term",
    "effect",
    "lower",
    "upper",
    "p_value",
    "q_value",
]


class ResultKind(Enum):
    PRIMARY = "primary"
    GLOBAL = "global"
    PAIRWISE = "pairwise"
    DUNNETT = "dunnett"
    TREND = "trend"

    @property
    def caption(self) -> str:
        return {
            ResultKind.PRIMARY: "ANCOM-BC2 Primary Analysis",
            ResultKind.GLOBAL: "ANCOM-BC2 Global Test",
            ResultKind.PAIRWISE: "ANCOM-BC2 Pairwise Comparison",
            ResultKind.DUNNETT: "ANCOM-BC2 Dunnett's Test",
            ResultKind.TREND: "ANCOM-BC2 Trend Analysis",
        }[self]


MULTI_GROUP_KINDS = [
    ResultKind.GLOBAL,
    ResultKind.PAIRWISE,
    ResultKind.DUNNETT,
    ResultKind.TREND,
]


def parse_analysis(name: Union[str, ResultKind]) -> ResultKind:
    """Map an analysis name (global, pairwise, dunnett, trend) to its ResultKind."""
    if isinstance(name, ResultKind) and name in MULTI_GROUP_KINDS:
        return name
    for kind in MULTI_GROUP_KINDS:
        if name == kind.value:
            return kind
    raise ConfigurationError(
        f"Invalid analysis: {getattr(name, 'value', name)}. "
        f"Valid options: {', '.join(kind.value for kind in MULTI_GROUP_KINDS)}"
    )


@dataclass
class DifferentialAbundanceResult:
    """One result table from a differential abundance engine."""

    engine: str
    kind: ResultKind
    table: pd.DataFrame = field(repr=False)

    @property
    def caption(self) -> str:
        if self.engine == "ancombc2":
            return self.kind.caption
        return f"{self.engine.upper()} {self.kind.value.capitalize()} Analysis"


@dataclass
class AncomBC2Results:
    """ANCOM-BC2 tables keyed by the analysis that produced them."""

    tables: Dict[ResultKind, pd.DataFrame] = field(repr=False)

    def get(self, kind: Union[str, ResultKind]) -> DifferentialAbundanceResult:
        if not isinstance(kind, ResultKind):
            if kind == ResultKind.PRIMARY.value:
                kind = ResultKind.PRIMARY
            else:
                kind = parse_analysis(kind)
        if kind not in self.tables:
            raise ConfigurationError(
                f"ANCOM-BC2 {kind.value} results are not available; "
                f"enable the {kind.value} analysis in AncomBC2Config."
            )
        return DifferentialAbundanceResult("ancombc2", kind, self.tables[kind])

    @property
    def primary(self) -> DifferentialAbundanceResult:
        return self.get(ResultKind.PRIMARY)

    @property
    def available(self) -> list:
        return [kind for kind in ResultKind if kind in self.tables]


def _is_numeric_column(series: pd.Series) -> bool:
    return pd.api.types.is_numeric_dtype(series) and not pd.api.types.is_bool_dtype(
        series
    )


def round_significant(df: pd.DataFrame, digits: int = 3) -> pd.DataFrame:
    """
    Round every numeric column to a number of significant digits, like R's ``signif``.

    Zeros, NaN and infinite values are left unchanged. Boolean columns are not
    numeric here.
    """
    df = df.copy()

    for col in df.columns:
        if not _is_numeric_column(df[col]):
            continue

        values = df[col].to_numpy(dtype=float)
        finite = np.isfinite(values) & (values != 0)

        magnitude = np.zeros_like(values)
        magnitude[finite] = np.floor(np.log10(np.abs(values[finite])))
        factor = 10.0 ** (digits - 1 - magnitude)

        rounded = values.copy()
        rounded[finite] = np.round(values[finite] * factor[finite]) / factor[finite]
        df[col] = rounded

    return df


def process_table(
    df: pd.DataFrame, caption: str, as_html: bool = False, digits: int = 3
) -> Union[pd.DataFrame, str]:
    """Round numeric columns and optionally render the table as scrollable HTML."""
    df = round_significant(df, digits=digits)

    if not as_html:
        return df

    numeric_cols = [col for col in df.columns if _is_numeric_column(df[col])]

    return (
        df.style.set_caption(caption)
        .format("{:." + str(digits) + "g}", subset=numeric_cols, na_rep="NA")
        .set_table_attributes('style="display:block; overflow-x:auto"')
        .to_html()
    )


def display_ancombc2_results(
    results: AncomBC2Results,
    analyses: Optional[Iterable[Union[str, ResultKind]]] = None,
    html: bool = True,
) -> Dict[str, Union[pd.DataFrame, str]]:
    """
    Present ANCOM-BC2 results as HTML tables or rounded data frames.

    Args:
        results (AncomBC2Results): Output of ``run_ancombc2``.
        analyses (list, optional): Extra tables to include: 'global', 'pairwise',
            'dunnett' and/or 'trend'. The primary analysis is always included.
        html (bool): Return HTML strings instead of data frames.

    Returns:
        dict: Table name ('primary', 'global', ...) to HTML string or DataFrame.

    Example:
        >>> tabs = display_ancombc2_results(output, analyses=["global", "pairwise"])
        >>> tabs["primary"]
    """
    kinds = [parse_analysis(name) for name in (analyses or [])]

    out = {}
    primary = results.primary
    out[ResultKind.PRIMARY.value] = process_table(
        primary.table, primary.caption, as_html=html
    )

    for kind in kinds:
        result = results.get(kind)
        out[kind.value] = process_table(result.table, result.caption, as_html=html)

    return out


def _column(table: pd.DataFrame, name: str) -> np.ndarray:
    if name in table.columns:
        return table[name].to_numpy(dtype=float)
    return np.full(len(table), np.nan)


def _standardize_ancombc2(table: pd.DataFrame) -> pd.DataFrame:
    feature_col = "taxon" if "taxon" in table.columns else None
    if feature_col:
        features = table[feature_col]
    else:
        features = pd.Series(table.index, index=table.index)

    terms = [
        col[len("lfc_"):]
        for col in table.columns
        if col.startswith("lfc_") and col != "lfc_(Intercept)"
    ]

    frames = []
    for term in terms:
        effect = table[f"lfc_{term}"].astype(float)
        se = _column(table, f"se_{term}")
        frames.append(
            pd.DataFrame(
                {
                    "feature_id": features.astype(str).values,
                    "term": term,
                    "effect": effect.values,
                    "lower": (effect - Z_95 * se).values,
                    "upper": (effect + Z_95 * se).values,
                    "p_value": _column(table, f"p_{term}"),
                    "q_value": _column(table, f"q_{term}"),
                }
            )
        )

    if not frames:
        return pd.DataFrame(columns=STANDARD_COLUMNS)
    return pd.concat(frames, ignore_index=True)


def _standardize_aldex2(table: pd.DataFrame) -> pd.DataFrame:
    features = table["feature_id"] if "feature_id" in table.columns else table.index

    if "we.ep" in table.columns or "kw.ep" in table.columns:
        if "we.ep" in table.columns:
            p_col, q_col = "we.ep", "we.eBH"
        else:
            p_col, q_col = "kw.ep", "kw.eBH"
        return pd.DataFrame(
            {
                "feature_id": np.asarray(features).astype(str),
                "term": "condition",
                "effect": _column(table, "effect"),
                "lower": _column(table, "effect.low"),
                "upper": _column(table, "effect.high"),
                "p_value": table[p_col].values,
                "q_value": table[q_col].values,
            }
        ).reset_index(drop=True)

    # aldex.glm names its columns "model.<term> Estimate", "model.<term> Pr(>|t|)"
    frames = []
    for col in table.columns:
        match = re.match(r"^model\.(.+) Estimate$", col)
        if not match or match.group(1) == "(Intercept)":
            continue
        term = match.group(1)
        effect = table[col].astype(float)
        se = table[f"model.{term} Std. Error"].astype(float)
        frames.append(
            pd.DataFrame(
                {
                    "feature_id": np.asarray(features).astype(str),
                    "term": term,
                    "effect": effect.values,
                    "lower": (effect - Z_95 * se).values,
                    "upper": (effect + Z_95 * se).values,
                    "p_value": table[f"model.{term} Pr(>|t|)"].values,
                    "q_value": table[f"model.{term} Pr(>|t|).BH"].values,
                }
            )
        )

    if not frames:
        return pd.DataFrame(columns=STANDARD_COLUMNS)
    return pd.concat(frames, ignore_index=True)


def _standardize_maaslin2(table: pd.DataFrame) -> pd.DataFrame:
    effect = table["coef"].astype(float)
    se = table["stderr"].astype(float)

    # Continuous variables repeat their name in 'value'
    term = np.where(
        table["metadata"].astype(str) == table["value"].astype(str),
        table["metadata"].astype(str),
        table["metadata"].astype(str) + table["value"].astype(str),
    )

    return pd.DataFrame(
        {
            "feature_id": table["feature"].astype(str).values,
            "term": term,
            "effect": effect.values,
            "lower": (effect - Z_95 * se).values,
            "upper": (effect + Z_95 * se).values,
            "p_value": table["pval"].values,
            "q_value": table["qval"].values,
        }
    )


def standardize_daa_results(result: DifferentialAbundanceResult) -> pd.DataFrame:
    """
    Reshape an engine's primary table into one long format.

    Args:
        result (DifferentialAbundanceResult): Primary result of ANCOM-BC2,
            ALDEx2 or Maaslin2.

    Returns:
        pd.DataFrame: Columns feature_id, term, effect, lower, upper, p_value and
            q_value, sorted by q_value. Bounds are 95% intervals (effect +/- 1.96 SE)
            except for ALDEx2 two-group tests, which report their own effect interval.
    """
    if result.kind != ResultKind.PRIMARY:
        raise ConfigurationError(
            f"Only primary results can be standardized, got {result.kind.value}."
        )

    standardizers = {
        "ancombc2": _standardize_ancombc2,
        "aldex2": _standardize_aldex2,
        "maaslin2": _standardize_maaslin2,
    }
    if result.engine not in standardizers:
        raise ConfigurationError(
            f"Unknown differential abundance engine: {result.engine}"
        )

    standardized_df = standardizers[result.engine](result.table)

    return standardized_df[STANDARD_COLUMNS].sort_values(
        "q_value", na_position="last", kind="stable"
    ).reset_index(drop=True)
