"""
Configuration records for each analysis type.

Every record is validated once when it is created, so the analysis functions
can assume well-formed parameters. Metadata column checks need the metadata
table and are done with ``validate_columns`` before any computation starts.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

import pandas as pd

from microbiome_wrappers.errors import ConfigurationError

ALPHA_METRICS = ["observed_features", "shannon", "simpson", "dominance", "chao1"]

DISTANCE_METRICS = ["euclidean", "braycurtis", "jaccard", "manhattan", "aitchison"]

# Alternative spellings mapped onto the canonical metric names
DISTANCE_METRIC_ALIASES = {
    "bray-curtis": "braycurtis",
    "bray_curtis": "braycurtis",
    "bray": "braycurtis",
    "cityblock": "manhattan",
}

P_ADJUST_METHODS = [
    "holm",
    "hochberg",
    "hommel",
    "bonferroni",
    "BH",
    "BY",
    "fdr",
    "none",
]

ALDEX2_TESTS = ["t", "kw", "glm"]


class LowDepthPolicy(Enum):
    """What to do with samples whose depth is below the rarefaction depth."""

    EXCLUDE = "exclude"
    ERROR = "error"


def parse_formula(formula: str) -> List[str]:
    """
    Split a right-hand-side model formula into its terms.

    Args:
        formula (str): Formula such as ``"~ Diagnosis + Age"`` or a bare column name.

    Returns:
        List[str]: Terms in the order they appear, e.g. ``["Diagnosis", "Age"]``.
    """
    if formula is None or not str(formula).strip():
        raise ConfigurationError("Formula must not be empty.")

    rhs = str(formula).split("~")[-1]
    terms = [term.strip() for term in rhs.split("+") if term.strip()]

    if not terms:
        raise ConfigurationError(f"Formula '{formula}' has no terms.")

    return terms


def formula_columns(formula: str) -> List[str]:
    """Return the metadata columns referenced by a formula, including interaction terms."""
    columns = []
    for term in parse_formula(formula):
        # Random-effect terms look like (Timepoint | SubjectID)
        for name in re.split(r"[*:|()]", term):
            name = name.strip()
            if name and name != "1" and name not in columns:
                columns.append(name)
    return columns


def _check_p_adjust(method: str) -> None:
    if method not in P_ADJUST_METHODS:
        raise ConfigurationError(
            f"Invalid p-value adjustment method: {method}. "
            f"Valid options: {', '.join(P_ADJUST_METHODS)}"
        )


@dataclass(frozen=True)
class RarefactionConfig:
    """
    Parameters for repeated rarefaction.

    Args:
        depth (int, optional): Reads drawn per sample. If None, the minimum sample depth is used.
        n_replicates (int): Number of independent rarefied tables.
        seed (int): Base seed; each replicate gets its own derived seed.
        with_replacement (bool): Sample with replacement instead of without.
        low_depth_policy (LowDepthPolicy): Exclude or reject samples below depth.
    """

    depth: Optional[int] = None
    n_replicates: int = 10
    seed: int = 1088
    with_replacement: bool = False
    low_depth_policy: LowDepthPolicy = LowDepthPolicy.EXCLUDE

    def __post_init__(self):
        if self.depth is not None and int(self.depth) <= 0:
            raise ConfigurationError(
                f"Rarefaction depth must be positive, got {self.depth}."
            )
        if int(self.n_replicates) < 1:
            raise ConfigurationError(
                f"Number of replicates must be at least 1, got {self.n_replicates}."
            )
        if self.seed is None or int(self.seed) < 0:
            raise ConfigurationError("Seed must be a non-negative integer.")
        if not isinstance(self.low_depth_policy, LowDepthPolicy):
            try:
                object.__setattr__(
                    self, "low_depth_policy", LowDepthPolicy(self.low_depth_policy)
                )
            except ValueError:
                raise ConfigurationError(
                    f"Invalid low depth policy: {self.low_depth_policy}. "
                    "Valid options: exclude, error"
                ) from None

    def required_columns(self) -> List[str]:
        return []


@dataclass(frozen=True)
class AlphaDiversityConfig:
    """Alpha diversity index and the metadata column defining the groups to compare."""

    metric: str
    group_column: str
    block_column: Optional[str] = None

    def __post_init__(self):
        if self.metric not in ALPHA_METRICS:
            raise ConfigurationError(
                f"Invalid alpha diversity metric: {self.metric}. "
                f"Valid options: {', '.join(ALPHA_METRICS)}"
            )
        if not self.group_column:
            raise ConfigurationError("A grouping column is required.")

    def required_columns(self) -> List[str]:
        columns = [self.group_column]
        if self.block_column:
            columns.append(self.block_column)
        return columns


@dataclass(frozen=True)
class DistanceTestConfig:
    """
    PERMANOVA parameters.

    Args:
        metric (str): Distance metric (euclidean, braycurtis, jaccard, manhattan or aitchison).
        formula (str): Grouping formula, e.g. ``"~ Diagnosis"`` or ``"~ Diagnosis + Age"``.
        strata (str, optional): Metadata column restricting permutations to within blocks.
        permutations (int): Number of permutations.
        pseudocount (float): Added to every count before the Aitchison log-ratio transform.
    """

    metric: str
    formula: str
    strata: Optional[str] = None
    permutations: int = 999
    pseudocount: float = 1.0

    def __post_init__(self):
        metric = DISTANCE_METRIC_ALIASES.get(
            str(self.metric).lower(), str(self.metric).lower()
        )
        if metric not in DISTANCE_METRICS:
            raise ConfigurationError(
                f"Invalid distance metric: {self.metric}. "
                f"Valid options: {', '.join(DISTANCE_METRICS)}"
            )
        object.__setattr__(self, "metric", metric)

        # Raises on an empty formula
        parse_formula(self.formula)

        if int(self.permutations) < 1:
            raise ConfigurationError(
                f"Number of permutations must be at least 1, got {self.permutations}."
            )
        if self.pseudocount <= 0:
            raise ConfigurationError(
                f"Pseudocount must be positive, got {self.pseudocount}."
            )

    @property
    def terms(self) -> List[str]:
        return parse_formula(self.formula)

    def required_columns(self) -> List[str]:
        columns = formula_columns(self.formula)
        if self.strata and self.strata not in columns:
            columns.append(self.strata)
        return columns


@dataclass(frozen=True)
class AncomBC2Config:
    """
    ANCOM-BC2 parameters.

    The multi-group tests (global, pairwise, dunnett, trend) need a
    ``grouping_variable``.
    """

    # Model formula parameters
    fixed_terms: str
    random_terms: Optional[str] = None
    grouping_variable: Optional[str] = None

    # General parameters
    n_cores: int = 1
    verbose: bool = False
    seed: int = 1088

    # Preprocessing parameters
    taxonomy_level: Optional[str] = None
    prevalence_cutoff: float = 0.1
    library_size_cutoff: int = 1000

    # Structural zeros parameters
    structural_zero: bool = True
    lower_bound: bool = True

    # Statistical parameters
    p_adj_method: str = "holm"
    alpha: float = 0.05
    iter: int = 10
    bootstrap: int = 100

    # Multi-group test parameters
    global_test: bool = False
    pairwise: bool = False
    dunnett: bool = False
    trend: bool = False

    # Pseudocount sensitivity analysis parameters
    pseudo_sens: bool = True
    s0_perc: float = 0.05

    def __post_init__(self):
        parse_formula(self.fixed_terms)
        _check_p_adjust(self.p_adj_method)

        if not 0 <= self.prevalence_cutoff <= 1:
            raise ConfigurationError(
                f"Prevalence cut-off must be between 0 and 1, got {self.prevalence_cutoff}."
            )
        if self.library_size_cutoff < 0:
            raise ConfigurationError("Library size cut-off must be non-negative.")
        if not 0 < self.alpha < 1:
            raise ConfigurationError(f"Alpha must be in (0, 1), got {self.alpha}.")
        if self.iter < 1 or self.bootstrap < 1 or self.n_cores < 1:
            raise ConfigurationError(
                "Iterations, bootstrap samples and cores must be at least 1."
            )
        if not 0 < self.s0_perc < 1:
            raise ConfigurationError(f"s0_perc must be in (0, 1), got {self.s0_perc}.")

        multi_group = self.global_test or self.pairwise or self.dunnett or self.trend
        if multi_group and not self.grouping_variable:
            raise ConfigurationError(
                "Global, pairwise, Dunnett's and trend tests require a grouping_variable."
            )

    def required_columns(self) -> List[str]:
        columns = formula_columns(self.fixed_terms)
        if self.random_terms:
            columns += [
                c for c in formula_columns(self.random_terms) if c not in columns
            ]
        if self.grouping_variable and self.grouping_variable not in columns:
            columns.append(self.grouping_variable)
        return columns


@dataclass(frozen=True)
class Aldex2Config:
    """ALDEx2 parameters. ``test="glm"`` fits ``fixed_effects`` instead of a two/multi-group test."""

    condition: Optional[str] = None
    mc_samples: int = 128
    test: str = "t"
    denom: str = "all"
    fixed_effects: Optional[str] = None
    seed: int = 1088

    def __post_init__(self):
        if self.test not in ALDEX2_TESTS:
            raise ConfigurationError(
                f"Invalid ALDEx2 test: {self.test}. Valid options: {', '.join(ALDEX2_TESTS)}"
            )
        if self.test == "glm":
            if not self.fixed_effects:
                raise ConfigurationError("The ALDEx2 glm test requires fixed_effects.")
            parse_formula(self.fixed_effects)
        elif not self.condition:
            raise ConfigurationError(
                f"The ALDEx2 {self.test} test requires a condition column."
            )
        if self.mc_samples < 1:
            raise ConfigurationError("mc_samples must be at least 1.")
        if self.denom not in ("all", "iqlr", "zero", "lvha"):
            raise ConfigurationError(
                f"Invalid ALDEx2 denominator: {self.denom}. "
                "Valid options: all, iqlr, zero, lvha"
            )

    def required_columns(self) -> List[str]:
        if self.test == "glm":
            return formula_columns(self.fixed_effects)
        return [self.condition]


@dataclass(frozen=True)
class Maaslin2Config:
    """Maaslin2 parameters. ``reference`` entries look like ``"Diagnosis,Healthy"``."""

    fixed_effects: List[str]
    random_effects: List[str] = field(default_factory=list)
    reference: List[str] = field(default_factory=list)
    min_abundance: float = 0.0
    min_prevalence: float = 0.1
    normalization: str = "TSS"
    transform: str = "LOG"
    analysis_method: str = "LM"
    correction: str = "BH"
    max_significance: float = 0.25
    cores: int = 1
    output_dir: Optional[str] = None

    def __post_init__(self):
        if isinstance(self.fixed_effects, str):
            object.__setattr__(self, "fixed_effects", [self.fixed_effects])
        if isinstance(self.random_effects, str):
            object.__setattr__(self, "random_effects", [self.random_effects])
        if isinstance(self.reference, str):
            object.__setattr__(self, "reference", [self.reference])

        if not self.fixed_effects:
            raise ConfigurationError("Maaslin2 requires at least one fixed effect.")
        _check_p_adjust(self.correction)
        if not 0 <= self.min_prevalence <= 1:
            raise ConfigurationError(
                f"Minimum prevalence must be between 0 and 1, got {self.min_prevalence}."
            )
        if not 0 < self.max_significance <= 1:
            raise ConfigurationError(
                f"max_significance must be in (0, 1], got {self.max_significance}."
            )
        if self.normalization not in ("TSS", "CLR", "CSS", "NONE", "TMM"):
            raise ConfigurationError(
                f"Invalid Maaslin2 normalization: {self.normalization}."
            )
        if self.transform not in ("LOG", "LOGIT", "AST", "NONE"):
            raise ConfigurationError(f"Invalid Maaslin2 transform: {self.transform}.")
        if self.analysis_method not in ("LM", "CPLM", "NEGBIN", "ZINB"):
            raise ConfigurationError(
                f"Invalid Maaslin2 analysis method: {self.analysis_method}."
            )

    def required_columns(self) -> List[str]:
        return list(self.fixed_effects) + [
            c for c in self.random_effects if c not in self.fixed_effects
        ]


def validate_columns(config, metadata: pd.DataFrame) -> None:
    """
    Check that every metadata column referenced by a configuration record exists.

    Args:
        config: Any configuration record with a ``required_columns`` method.
        metadata (pd.DataFrame): Sample metadata.

    Raises:
        ConfigurationError: If a referenced column is not in the metadata.
    """
    missing = [c for c in config.required_columns() if c not in metadata.columns]
    if missing:
        raise ConfigurationError(
            f"Metadata is missing column(s) referenced by {type(config).__name__}: "
            f"{', '.join(missing)}. Available columns: {', '.join(map(str, metadata.columns))}"
        )
