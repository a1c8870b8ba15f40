import os
import warnings
from typing import Optional

import biom  # type: ignore
import numpy as np
import pandas as pd

from microbiome_wrappers.errors import DataError

TAXONOMIC_RANKS = ["domain", "phylum", "class", "order", "family", "genus", "species"]


def _read_delimited(path: str, **kwargs) -> pd.DataFrame:
    sep = "\t" if path.endswith((".tsv", ".txt")) else ","
    return pd.read_csv(path, sep=sep, **kwargs)


def check_counts(table: pd.DataFrame) -> pd.DataFrame:
    """
    Check that a feature table holds non-negative integer counts and cast it to int.

    Args:
        table (pd.DataFrame): Samples as rows, features as columns.

    Returns:
        pd.DataFrame: The table with an integer dtype.

    Raises:
        DataError: If the table has missing, negative or fractional values.
    """
    values = table.to_numpy(dtype=float)

    bad_rows = np.isnan(values).any(axis=1) | (values < 0).any(axis=1)
    bad_rows |= (np.mod(values, 1) != 0).any(axis=1)
    if bad_rows.any():
        bad_samples = table.index[bad_rows].tolist()
        raise DataError(
            f"Feature table must contain non-negative integer counts; "
            f"offending samples: {', '.join(map(str, bad_samples))}",
            sample_ids=bad_samples,
        )

    return table.astype(np.int64)


def load_feature_table(path: str, samples_as_rows: bool = False) -> pd.DataFrame:
    """
    Read a feature table and return it with samples as rows and features as columns.

    CSV and TSV files are read with the first column as the index. By default they
    are assumed to be in QIIME orientation (features as rows) and are transposed.
    BIOM files are always read as observations x samples.

    Args:
        path (str): Path to a .csv, .tsv or .biom file.
        samples_as_rows (bool): Set if the delimited file already has samples as rows.

    Returns:
        pd.DataFrame: Integer count table (samples x features).
    """
    print(f"Loading feature table from {path}...")

    if path.endswith(".biom"):
        biom_table = biom.load_table(path)
        table = biom_table.to_dataframe(dense=True).T
    else:
        table = _read_delimited(path, index_col=0)
        if not samples_as_rows:
            table = table.T

    table.index = table.index.astype(str)
    table.columns = table.columns.astype(str)
    table.index.name = "sample_id"

    if table.index.duplicated().any():
        duplicated = table.index[table.index.duplicated()].unique().tolist()
        raise DataError(
            f"Duplicate sample ids in feature table: {', '.join(duplicated)}",
            sample_ids=duplicated,
        )

    table = check_counts(table)

    print(f"Data loaded: {table.shape[0]} samples and {table.shape[1]} features.")

    return table


def load_metadata(path: str, sample_id_column: Optional[str] = None) -> pd.DataFrame:
    """
    Read sample metadata, indexed by sample id.

    Args:
        path (str): Path to a .csv or .tsv file.
        sample_id_column (str, optional): Column holding sample ids. Defaults to the first column.

    Returns:
        pd.DataFrame: Metadata indexed by ``sample_id``.
    """
    metadata_df = _read_delimited(path)

    if sample_id_column is None:
        sample_id_column = metadata_df.columns[0]

    if sample_id_column not in metadata_df.columns:
        raise DataError(f"Sample id column '{sample_id_column}' not found in {path}.")

    metadata_df[sample_id_column] = metadata_df[sample_id_column].astype(str)

    duplicated = metadata_df.loc[
        metadata_df[sample_id_column].duplicated(), sample_id_column
    ].unique()
    if len(duplicated):
        raise DataError(
            f"Duplicate sample ids in metadata: {', '.join(duplicated)}",
            sample_ids=duplicated,
        )

    metadata_df = metadata_df.set_index(sample_id_column)
    metadata_df.index.name = "sample_id"

    return metadata_df


def align_samples(
    table: pd.DataFrame, metadata: pd.DataFrame
) -> tuple[pd.DataFrame, pd.DataFrame]:
    """
    Join the feature table and metadata one-to-one on sample id.

    Samples found in only one of the two tables are reported and dropped.

    Args:
        table (pd.DataFrame): Samples as rows, features as columns.
        metadata (pd.DataFrame): Metadata indexed by sample id.

    Returns:
        tuple[pd.DataFrame, pd.DataFrame]: Table and metadata restricted to the shared
            samples, both in the table's sample order.

    Raises:
        DataError: On duplicate sample ids or if no samples are shared.
    """
    for name, df in (("feature table", table), ("metadata", metadata)):
        if df.index.duplicated().any():
            duplicated = df.index[df.index.duplicated()].unique().tolist()
            raise DataError(
                f"Duplicate sample ids in {name}: {', '.join(map(str, duplicated))}",
                sample_ids=duplicated,
            )

    metadata_ids = set(metadata.index)
    table_ids = set(table.index)

    missing_metadata = [s for s in table.index if s not in metadata_ids]
    missing_counts = [s for s in metadata.index if s not in table_ids]

    for sample in missing_metadata:
        warnings.warn(f"Sample {sample} has counts but no metadata; dropping it.")
    for sample in missing_counts:
        warnings.warn(f"Sample {sample} has metadata but no counts; dropping it.")

    shared = [s for s in table.index if s in metadata_ids]
    if not shared:
        raise DataError(
            "Feature table and metadata share no sample ids.",
            sample_ids=missing_metadata + missing_counts,
        )

    return table.loc[shared].copy(), metadata.loc[shared].copy()


def reformat_taxonomy(taxonomy_df: pd.DataFrame) -> pd.DataFrame:
    """
    Reformat the taxonomy DataFrame to split taxonomic ranks into separate columns.

    Args:
        taxonomy_df (pd.DataFrame): DataFrame with a ``Taxon`` column such as
            ``"d__Bacteria; p__Bacillota; ...; s__"``.

    Returns:
        pd.DataFrame: Copy of the input with one cleaned column per taxonomic rank.
    """
    taxonomy_df = taxonomy_df.copy()

    # Split 'Taxon' column into separate columns, padding missing lower ranks
    split_df = taxonomy_df["Taxon"].astype(str).str.split(";", expand=True)
    split_df = split_df.reindex(columns=range(len(TAXONOMIC_RANKS))).fillna("")
    split_df.columns = TAXONOMIC_RANKS
    split_df.index = taxonomy_df.index

    for col in TAXONOMIC_RANKS:
        cleaned = split_df[col].str.strip()
        cleaned = cleaned.replace(
            r"^[dkpcofgs]__$", "unclassified", regex=True
        )
        cleaned = cleaned.fillna(value="unclassified")
        cleaned = cleaned.replace(to_replace=["None", "", "nan"], value="unclassified")
        cleaned = cleaned.replace(r"^[dkpcofgs]__", "", regex=True)
        cleaned = cleaned.replace(to_replace="Unassigned", value="unclassified")
        taxonomy_df[col] = cleaned

    return taxonomy_df


def lowest_rank_label(taxonomy_df: pd.DataFrame) -> pd.Series:
    """Lowest classified rank name per feature, or 'unclassified'."""
    ranks = [rank for rank in TAXONOMIC_RANKS if rank in taxonomy_df.columns]

    return taxonomy_df.apply(
        lambda row: next(
            (
                row[rank]
                for rank in reversed(ranks)
                if pd.notna(row[rank]) and row[rank] != "unclassified"
            ),
            "unclassified",
        ),
        axis=1,
    )


def create_taxa_tables(
    table: pd.DataFrame,
    taxonomy_df: pd.DataFrame,
    rank: str,
    output_file: Optional[str] = None,
) -> pd.DataFrame:
    """
    Sum feature counts by taxonomic rank.

    Args:
        table (pd.DataFrame): Samples as rows, features as columns.
        taxonomy_df (pd.DataFrame): Reformatted taxonomy indexed by feature id.
        rank (str): The taxonomic rank to collapse to, e.g. 'genus'.
        output_file (str, optional): Path to save the taxa table as CSV.

    Returns:
        pd.DataFrame: Samples as rows, taxa as columns.
    """
    if rank not in taxonomy_df.columns:
        raise DataError(
            f"Taxonomy has no '{rank}' column. Available: {', '.join(taxonomy_df.columns)}"
        )

    # Features without a taxonomy entry are kept as unclassified
    feature_rank = (
        taxonomy_df[rank].reindex(table.columns).fillna("unclassified").astype(str)
    )

    taxa_table_df = table.T.groupby(feature_rank.values).sum().T
    taxa_table_df.index.name = table.index.name

    if output_file is not None:
        os.makedirs(os.path.dirname(output_file) or ".", exist_ok=True)
        taxa_table_df.to_csv(output_file)
        print(f"Taxa table saved to: {output_file}")

    return taxa_table_df


def prevalence_filtering(
    table: pd.DataFrame, prevalence_threshold: float
) -> pd.DataFrame:
    """
    Remove features present in fewer than ``prevalence_threshold`` percent of samples.

    Args:
        table (pd.DataFrame): Samples as rows, features as columns.
        prevalence_threshold (float): Minimum prevalence percentage (0-100).

    Returns:
        pd.DataFrame: Filtered table containing only features meeting the threshold.

    Example:
        >>> # Keep features present in >=10% of samples
        >>> filtered_table = prevalence_filtering(table, 10.0)
    """
    feature_prevalence = (table > 0).sum(axis=0) / table.shape[0] * 100

    print(f"Number of features before filtering: {table.shape[1]}")

    filtered_df = table.loc[:, feature_prevalence >= prevalence_threshold]

    print(f"Number of features after filtering: {filtered_df.shape[1]}")

    return filtered_df
