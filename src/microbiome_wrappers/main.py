import argparse
import os
import sys
from typing import List, Optional

import pandas as pd

from microbiome_wrappers.aggregation import AggregatedResult
from microbiome_wrappers.beta_diversity_analysis import (
    calculate_distance_matrix,
    pairwise_permanova,
    permanova_engine,
)
from microbiome_wrappers.config import (
    ALPHA_METRICS,
    DISTANCE_METRICS,
    Aldex2Config,
    AlphaDiversityConfig,
    AncomBC2Config,
    DistanceTestConfig,
    LowDepthPolicy,
    Maaslin2Config,
    RarefactionConfig,
)
from microbiome_wrappers.daa_results import display_ancombc2_results
from microbiome_wrappers.diversity_analysis import (
    calculate_alpha_diversity,
    rarefy_df,
    replicate_seeds,
    unpaired_alpha_diversity_calculations,
)
from microbiome_wrappers.errors import MicrobiomeWrapperError
from microbiome_wrappers.multiple_rarefaction import run_multiple_rarefaction
from microbiome_wrappers.plotting import plot_daa_effects, plot_replicate_statistics
from microbiome_wrappers.processing import (
    align_samples,
    load_feature_table,
    load_metadata,
    lowest_rank_label,
    reformat_taxonomy,
)

DAA_ENGINES = ["ancombc2", "aldex2", "maaslin2"]

FEATURE_TABLE_NAMES = ["feature_table.biom", "feature_table.tsv", "feature_table.csv"]


# Function to parse input arguments
def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Repeated rarefaction diversity testing and differential abundance wrappers."
    )
    parser.add_argument(
        "-t", "--threads", type=int, required=True, help="Number of threads to use"
    )
    parser.add_argument(
        "-d", "--directory", type=str, required=True, help="Directory to work with"
    )
    parser.add_argument(
        "--depth",
        type=int,
        default=None,
        help="Rarefaction depth (default: minimum sample depth)",
    )
    parser.add_argument(
        "--replicates", type=int, default=10, help="Number of rarefaction replicates"
    )
    parser.add_argument("--seed", type=int, default=1088, help="Base random seed")
    parser.add_argument(
        "--group", type=str, required=True, help="Metadata column to compare"
    )
    parser.add_argument(
        "--strata",
        type=str,
        default=None,
        help="Metadata column for blocked permutations / paired tests",
    )
    parser.add_argument(
        "--distance",
        nargs="+",
        default=["braycurtis", "aitchison"],
        help=f"Distance metrics ({', '.join(DISTANCE_METRICS)})",
    )
    parser.add_argument(
        "--alpha-metric",
        nargs="+",
        default=["shannon", "observed_features"],
        choices=ALPHA_METRICS,
        help="Alpha diversity metrics",
    )
    parser.add_argument(
        "--daa",
        nargs="*",
        default=[],
        choices=DAA_ENGINES,
        help="Differential abundance engines to run",
    )
    parser.add_argument(
        "--low-depth-policy",
        type=str,
        default=LowDepthPolicy.EXCLUDE.value,
        choices=[policy.value for policy in LowDepthPolicy],
        help="Exclude samples below the rarefaction depth or stop with an error",
    )
    return parser.parse_args(argv)


def find_feature_table(wor_dir: str) -> str:
    """Return the first feature table found under WORKDIR/tables."""
    for name in FEATURE_TABLE_NAMES:
        path = os.path.join(wor_dir, "tables", name)
        if os.path.exists(path):
            return path
    raise FileNotFoundError(
        f"No feature table found in {os.path.join(wor_dir, 'tables')}; "
        f"expected one of {', '.join(FEATURE_TABLE_NAMES)}"
    )


def save_aggregated_result(
    aggregated: AggregatedResult, output_dir: str, title: str
) -> None:
    """Write the replicate table, the summary, the per-sample summary and the replicate plot."""
    os.makedirs(output_dir, exist_ok=True)

    aggregated.replicates.to_csv(
        os.path.join(output_dir, "replicates.csv"), index=False
    )
    aggregated.to_series().to_frame("value").to_csv(
        os.path.join(output_dir, "summary.csv"), index_label="quantity"
    )
    if aggregated.sample_summary is not None:
        aggregated.sample_summary.to_csv(os.path.join(output_dir, "sample_summary.csv"))

    plot_replicate_statistics(
        aggregated, os.path.join(output_dir, "replicates.png"), title
    )


def run_pairwise_comparisons(
    table: pd.DataFrame,
    metadata: pd.DataFrame,
    rarefaction: RarefactionConfig,
    group: str,
    alpha_metrics: List[str],
    distance_metrics: List[str],
    output_dir: str,
) -> None:
    """Pairwise alpha diversity and PERMANOVA tables on a single rarefied table."""
    table, metadata = align_samples(table, metadata)

    rarefied_df = rarefy_df(
        table,
        sampling_depth=rarefaction.depth,
        with_replacement=rarefaction.with_replacement,
        random_seed=replicate_seeds(rarefaction.seed, 1)[0],
        low_depth_policy=rarefaction.low_depth_policy,
    )
    metadata = metadata.loc[rarefied_df.index]

    alpha_file = os.path.join(output_dir, "alpha_diversity_pairwise.csv")
    if os.path.exists(alpha_file):
        print(f"Output file {alpha_file} already exists. Skipping.")
    else:
        alpha_diversity_df = calculate_alpha_diversity(rarefied_df, alpha_metrics)
        unpaired_alpha_diversity_calculations(
            alpha_diversity_df, metadata, group, output_file=alpha_file
        )

    for metric in distance_metrics:
        distance_matrix = calculate_distance_matrix(rarefied_df, metric)
        permanova_file = os.path.join(output_dir, f"permanova_pairwise_{metric}.csv")
        if os.path.exists(permanova_file):
            print(f"Output file {permanova_file} already exists. Skipping.")
            continue

        pairwise_permanova(
            distance_matrix,
            metadata,
            group,
            seed=rarefaction.seed,
            output_file=permanova_file,
        )


def run_daa_engine(
    engine: str,
    table: pd.DataFrame,
    metadata: pd.DataFrame,
    group: str,
    threads: int,
    daa_dir: str,
    taxonomy_df: Optional[pd.DataFrame] = None,
) -> None:
    """Run one differential abundance engine with defaults suited to a single grouping column."""
    # R is only initialised when a differential abundance engine is requested
    from microbiome_wrappers.differential_abundance_analysis import (
        run_aldex2,
        run_ancombc2,
        run_maaslin2,
        save_daa_results,
    )

    engine_dir = os.path.join(daa_dir, engine)
    results_file = os.path.join(engine_dir, "results.csv")

    if os.path.exists(results_file):
        print(f"Output file {results_file} already exists. Skipping {engine}.")
        return

    multi_group = metadata[group].nunique() > 2

    if engine == "ancombc2":
        config = AncomBC2Config(
            fixed_terms=group,
            grouping_variable=group if multi_group else None,
            global_test=multi_group,
            pairwise=multi_group,
            n_cores=threads,
            taxonomy_level="genus" if taxonomy_df is not None else None,
        )
        ancombc2_results = run_ancombc2(table, metadata, config, taxonomy_df)
        result = ancombc2_results.primary

        # HTML tables of every analysis that was run
        tables = display_ancombc2_results(
            ancombc2_results,
            analyses=[kind.value for kind in ancombc2_results.available[1:]],
            html=True,
        )
        os.makedirs(engine_dir, exist_ok=True)
        for name, html_table in tables.items():
            with open(os.path.join(engine_dir, f"{name}.html"), "w") as f:
                f.write(html_table)
    elif engine == "aldex2":
        config = Aldex2Config(condition=group, test="kw" if multi_group else "t")
        result = run_aldex2(table, metadata, config)
    else:
        config = Maaslin2Config(
            fixed_effects=[group],
            cores=threads,
            output_dir=os.path.join(engine_dir, "maaslin2_output"),
        )
        result = run_maaslin2(table, metadata, config)

    results_df, _ = save_daa_results(result, results_file)

    feature_labels = None
    if taxonomy_df is not None:
        feature_labels = lowest_rank_label(taxonomy_df)

    plot_daa_effects(
        results_df,
        os.path.join(engine_dir, "effects.png"),
        title=f"{engine.upper()}: {group}",
        feature_labels=feature_labels,
    )


def main(argv: Optional[List[str]] = None):
    # Parse the arguments using the parse_arguments function
    args = parse_arguments(argv)
    threads, wor_dir = args.threads, args.directory

    print(f"Number of threads: {threads}")
    print(f"Working directory: {wor_dir}")

    results_dir = os.path.join(wor_dir, "results")

    try:
        ###############################################################################
        # 1 Load data
        ###############################################################################

        table_df = load_feature_table(find_feature_table(wor_dir))
        metadata_df = load_metadata(os.path.join(wor_dir, "metadata", "metadata.csv"))

        taxonomy_file = os.path.join(wor_dir, "tables", "taxonomy.csv")
        taxonomy_df = None
        if os.path.exists(taxonomy_file):
            taxonomy_df = reformat_taxonomy(pd.read_csv(taxonomy_file, index_col=0))

        rarefaction = RarefactionConfig(
            depth=args.depth,
            n_replicates=args.replicates,
            seed=args.seed,
            low_depth_policy=args.low_depth_policy,
        )

        ###############################################################################
        # 2 Alpha diversity over rarefaction replicates
        ###############################################################################

        for metric in args.alpha_metric:
            output_dir = os.path.join(results_dir, "alpha_diversity", metric)
            if os.path.exists(os.path.join(output_dir, "summary.csv")):
                print(f"Alpha diversity results for {metric} already exist. Skipping.")
                continue

            analysis = AlphaDiversityConfig(
                metric=metric, group_column=args.group, block_column=args.strata
            )
            aggregated = run_multiple_rarefaction(
                table_df, metadata_df, rarefaction, analysis, n_workers=threads
            )
            save_aggregated_result(aggregated, output_dir, f"{metric} by {args.group}")

        ###############################################################################
        # 3 PERMANOVA over rarefaction replicates
        ###############################################################################

        for metric in args.distance:
            analysis = DistanceTestConfig(
                metric=metric, formula=f"~ {args.group}", strata=args.strata
            )
            output_dir = os.path.join(results_dir, "beta_diversity", analysis.metric)
            if os.path.exists(os.path.join(output_dir, "summary.csv")):
                print(
                    f"PERMANOVA results for {analysis.metric} already exist. Skipping."
                )
                continue

            # PERMANOVA through vegan runs in embedded R, which is kept in one process
            if permanova_engine(analysis, metadata_df) == "vegan":
                n_workers = 1
            else:
                n_workers = threads

            aggregated = run_multiple_rarefaction(
                table_df, metadata_df, rarefaction, analysis, n_workers=n_workers
            )
            save_aggregated_result(
                aggregated, output_dir, f"PERMANOVA ({analysis.metric}) by {args.group}"
            )

        ###############################################################################
        # 4 Pairwise group comparisons on one rarefied table
        ###############################################################################

        run_pairwise_comparisons(
            table_df,
            metadata_df,
            rarefaction,
            args.group,
            args.alpha_metric,
            args.distance,
            os.path.join(results_dir, "pairwise"),
        )

        ###############################################################################
        # 5 Differential abundance on the unrarefied table
        ###############################################################################

        daa_dir = os.path.join(results_dir, "differential_abundance")
        for engine in args.daa:
            run_daa_engine(
                engine,
                table_df,
                metadata_df,
                args.group,
                threads,
                daa_dir,
                taxonomy_df=taxonomy_df,
            )

    except (MicrobiomeWrapperError, FileNotFoundError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    print("Finished.")


if __name__ == "__main__":
    main()
