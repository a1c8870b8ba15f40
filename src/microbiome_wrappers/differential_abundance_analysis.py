import os
import tempfile
from typing import Optional

import pandas as pd

from microbiome_wrappers.config import (
    Aldex2Config,
    AncomBC2Config,
    Maaslin2Config,
    parse_formula,
    validate_columns,
)
from microbiome_wrappers.daa_results import (
    AncomBC2Results,
    DifferentialAbundanceResult,
    ResultKind,
    standardize_daa_results,
)
from microbiome_wrappers.errors import ConfigurationError
from microbiome_wrappers.processing import align_samples, create_taxa_tables
from microbiome_wrappers.r_bridge import run_r_script

ANCOMBC2_OUTPUTS = {
    ResultKind.PRIMARY: "res_primary",
    ResultKind.GLOBAL: "res_global",
    ResultKind.PAIRWISE: "res_pairwise",
    ResultKind.DUNNETT: "res_dunnett",
    ResultKind.TREND: "res_trend",
}


def _formula(formula: str) -> str:
    return "~ " + " + ".join(parse_formula(formula))


def _prepare_inputs(
    table: pd.DataFrame, metadata: pd.DataFrame, config
) -> tuple[pd.DataFrame, pd.DataFrame]:
    # Check the configuration against the metadata before anything is sent to R
    validate_columns(config, metadata)
    table, metadata = align_samples(table, metadata)

    # Drop samples with missing values in any model column
    columns = config.required_columns()
    complete = metadata[columns].notna().all(axis=1)
    if not complete.all():
        print(
            f"Dropping {int((~complete).sum())} sample(s) with missing values in "
            f"{', '.join(columns)}."
        )
    return table.loc[complete], metadata.loc[complete]


def run_ancombc2(
    table: pd.DataFrame,
    metadata: pd.DataFrame,
    config: AncomBC2Config,
    taxonomy_df: Optional[pd.DataFrame] = None,
) -> AncomBC2Results:
    """
    Run ANCOM-BC2 on a count table.

    Args:
        table (pd.DataFrame): Samples as rows, features as columns (raw counts, not rarefied).
        metadata (pd.DataFrame): Metadata indexed by sample id.
        config (AncomBC2Config): ANCOM-BC2 parameters.
        taxonomy_df (pd.DataFrame, optional): Reformatted taxonomy, required when
            ``config.taxonomy_level`` is set.

    Returns:
        AncomBC2Results: The primary table plus each multi-group test that was enabled.
    """
    table, metadata = _prepare_inputs(table, metadata, config)

    if config.taxonomy_level:
        if taxonomy_df is None:
            raise ConfigurationError(
                f"A taxonomy table is needed to test at the {config.taxonomy_level} level."
            )
        table = create_taxa_tables(table, taxonomy_df, config.taxonomy_level)

    print(
        f"Running ANCOM-BC2 on {table.shape[0]} samples and {table.shape[1]} features "
        f"with formula '{_formula(config.fixed_terms)}'"
    )

    outputs = run_r_script(
        "ancombc2.R",
        inputs={
            "counts_df": table.T,
            "metadata_df": metadata,
            "fix_formula": " + ".join(parse_formula(config.fixed_terms)),
            "rand_formula": config.random_terms,
            "grouping_variable": config.grouping_variable,
            "n_cores": config.n_cores,
            "seed": config.seed,
            "verbose": config.verbose,
            "prevalence_cutoff": float(config.prevalence_cutoff),
            "library_size_cutoff": float(config.library_size_cutoff),
            "structural_zero": config.structural_zero,
            "lower_bound": config.lower_bound,
            "p_adj_method": config.p_adj_method,
            "alpha": float(config.alpha),
            "iter": config.iter,
            "bootstrap": config.bootstrap,
            "global_test": config.global_test,
            "pairwise": config.pairwise,
            "dunnett": config.dunnett,
            "trend": config.trend,
            "pseudo_sens": config.pseudo_sens,
            "s0_perc": float(config.s0_perc),
        },
        outputs=list(ANCOMBC2_OUTPUTS.values()),
    )

    tables = {
        kind: outputs[name]
        for kind, name in ANCOMBC2_OUTPUTS.items()
        if outputs[name] is not None
    }

    print(
        "✅ ANCOM-BC2 finished: "
        + ", ".join(kind.value for kind in ResultKind if kind in tables)
    )

    return AncomBC2Results(tables)


def run_aldex2(
    table: pd.DataFrame,
    metadata: pd.DataFrame,
    config: Aldex2Config,
) -> DifferentialAbundanceResult:
    """
    Run ALDEx2 on a count table.

    Args:
        table (pd.DataFrame): Samples as rows, features as columns.
        metadata (pd.DataFrame): Metadata indexed by sample id.
        config (Aldex2Config): ALDEx2 parameters.

    Returns:
        DifferentialAbundanceResult: Per-feature ALDEx2 output.
    """
    table, metadata = _prepare_inputs(table, metadata, config)

    if config.test != "glm" and metadata[config.condition].nunique() < 2:
        raise ConfigurationError(
            f"Expected at least 2 groups in '{config.condition}', "
            f"found {metadata[config.condition].nunique()}."
        )

    print(f"Running ALDEx2 ({config.test} test) on {table.shape[0]} samples")

    outputs = run_r_script(
        "aldex2.R",
        inputs={
            "counts_df": table.T,
            "metadata_df": metadata,
            "condition": config.condition,
            "fixed_effects": _formula(config.fixed_effects)
            if config.fixed_effects
            else None,
            "mc_samples": config.mc_samples,
            "test": config.test,
            "denom": config.denom,
            "seed": config.seed,
        },
        outputs=["results_df"],
    )

    return DifferentialAbundanceResult(
        "aldex2", ResultKind.PRIMARY, outputs["results_df"]
    )


def run_maaslin2(
    table: pd.DataFrame,
    metadata: pd.DataFrame,
    config: Maaslin2Config,
) -> DifferentialAbundanceResult:
    """
    Run Maaslin2 on a count table.

    Maaslin2 always writes its own output files; they go to ``config.output_dir``
    or a temporary directory. Its plots are disabled.

    Args:
        table (pd.DataFrame): Samples as rows, features as columns.
        metadata (pd.DataFrame): Metadata indexed by sample id.
        config (Maaslin2Config): Maaslin2 parameters.

    Returns:
        DifferentialAbundanceResult: Maaslin2's ``results`` table.
    """
    table, metadata = _prepare_inputs(table, metadata, config)

    output_dir = config.output_dir or tempfile.mkdtemp(prefix="maaslin2_")
    os.makedirs(output_dir, exist_ok=True)

    print(
        f"Running Maaslin2 with fixed effects {', '.join(config.fixed_effects)}; "
        f"output in {output_dir}"
    )

    outputs = run_r_script(
        "maaslin2.R",
        inputs={
            "features_df": table,
            "metadata_df": metadata,
            "output_dir": output_dir,
            "fixed_effects": list(config.fixed_effects),
            "random_effects": list(config.random_effects)
            if config.random_effects
            else None,
            "reference": ";".join(config.reference) if config.reference else None,
            "min_abundance": float(config.min_abundance),
            "min_prevalence": float(config.min_prevalence),
            "normalization": config.normalization,
            "transform": config.transform,
            "analysis_method": config.analysis_method,
            "correction": config.correction,
            "max_significance": float(config.max_significance),
            "cores": config.cores,
        },
        outputs=["results_df"],
    )

    return DifferentialAbundanceResult(
        "maaslin2", ResultKind.PRIMARY, outputs["results_df"]
    )


def save_daa_results(
    result: DifferentialAbundanceResult,
    output_file: str,
    alpha: float = 0.05,
) -> tuple[pd.DataFrame, pd.DataFrame]:
    """
    Write an engine's standardized results and the significant subset as CSV.

    The filtered table goes next to ``output_file`` with a ``_filtered`` suffix.

    Returns:
        tuple[pd.DataFrame, pd.DataFrame]: Full and filtered standardized results.
    """
    results_df = standardize_daa_results(result)
    results_filtered_df = results_df[results_df["q_value"] < alpha]

    filtered_output_file = output_file.replace(".csv", "_filtered.csv")

    # Create the directory if it doesn't exist
    os.makedirs(os.path.dirname(output_file) or ".", exist_ok=True)
    results_df.to_csv(output_file, index=False)
    results_filtered_df.to_csv(filtered_output_file, index=False)
    print(f"Results saved to {output_file} and {filtered_output_file}")

    return results_df, results_filtered_df
