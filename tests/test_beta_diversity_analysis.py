import unittest

import numpy as np
import pandas as pd
from skbio.stats.composition import clr
from statsmodels.stats.multitest import multipletests

from microbiome_wrappers.beta_diversity_analysis import (
    calculate_distance_matrix,
    pairwise_permanova,
    permanova_engine,
    perform_permanova,
)
from microbiome_wrappers.config import DistanceTestConfig
from microbiome_wrappers.errors import ConfigurationError


def r_packages_available(*packages):
    try:
        from rpy2.robjects.packages import isinstalled
    except Exception:
        return False
    return all(isinstalled(package) for package in packages)


def make_clustered_table(n_per_group=8, n_groups=2, seed=0):
    """Counts whose composition differs strongly between groups."""
    rng = np.random.default_rng(seed)
    n_features = 10
    rows, groups = [], []
    for g in range(n_groups):
        proportions = np.full(n_features, 1.0)
        proportions[g * 3 : g * 3 + 3] = 20.0
        proportions /= proportions.sum()
        for _ in range(n_per_group):
            rows.append(rng.multinomial(1000, proportions))
            groups.append(f"G{g}")
    samples = [f"S{i}" for i in range(len(rows))]
    table = pd.DataFrame(
        np.vstack(rows), index=samples, columns=[f"ASV{j}" for j in range(n_features)]
    )
    metadata = pd.DataFrame(
        {"group": groups, "patient": [f"P{i % n_per_group}" for i in range(len(rows))]},
        index=samples,
    )
    return table, metadata


class TestDistanceMatrix(unittest.TestCase):
    def setUp(self):
        self.table = pd.DataFrame(
            {"ASV1": [1, 2, 0], "ASV2": [0, 5, 4], "ASV3": [3, 0, 4]},
            index=["A", "B", "C"],
        )

    def test_euclidean(self):
        dm = calculate_distance_matrix(self.table, "euclidean")
        self.assertAlmostEqual(dm["A", "B"], np.sqrt(1 + 25 + 9))
        self.assertEqual(list(dm.ids), ["A", "B", "C"])

    def test_manhattan_and_alias(self):
        dm = calculate_distance_matrix(self.table, "manhattan")
        self.assertAlmostEqual(dm["A", "B"], 1 + 5 + 3)
        alias_dm = calculate_distance_matrix(self.table, "cityblock")
        np.testing.assert_allclose(dm.data, alias_dm.data)

    def test_braycurtis(self):
        dm = calculate_distance_matrix(self.table, "bray-curtis")
        # sum |a - b| / sum (a + b)
        self.assertAlmostEqual(dm["A", "B"], 9 / 11)

    def test_jaccard_uses_presence(self):
        dm = calculate_distance_matrix(self.table, "jaccard")
        # A = {ASV1, ASV3}, B = {ASV1, ASV2}
        self.assertAlmostEqual(dm["A", "B"], 2 / 3)

    def test_aitchison(self):
        dm = calculate_distance_matrix(self.table, "aitchison", pseudocount=0.5)
        clr_values = clr(self.table.to_numpy(dtype=float) + 0.5)
        self.assertAlmostEqual(
            dm["A", "C"], float(np.linalg.norm(clr_values[0] - clr_values[2]))
        )
        np.testing.assert_allclose(np.diag(dm.data), 0.0)

    def test_unknown_metric(self):
        with self.assertRaises(ConfigurationError):
            calculate_distance_matrix(self.table, "unifrac")


class TestPermanova(unittest.TestCase):
    def setUp(self):
        self.table, self.metadata = make_clustered_table()
        self.dm = calculate_distance_matrix(self.table, "braycurtis")

    def test_single_term_uses_skbio(self):
        config = DistanceTestConfig(metric="braycurtis", formula="~ group", permutations=99)
        results = perform_permanova(self.dm, self.metadata, config, seed=1)

        self.assertEqual(results["engine"], "skbio")
        self.assertEqual(results["sample_size"], 16)
        self.assertGreater(results["pseudo_F"], 1)
        self.assertAlmostEqual(results["p_value"], 0.01)

    def test_same_seed_same_p_value(self):
        config = DistanceTestConfig(metric="braycurtis", formula="group", permutations=99)
        # Shuffle the metadata so that the groups are not separated
        shuffled = self.metadata.copy()
        shuffled["group"] = np.random.default_rng(5).permutation(shuffled["group"].values)

        first = perform_permanova(self.dm, shuffled, config, seed=11)
        second = perform_permanova(self.dm, shuffled, config, seed=11)
        self.assertEqual(first["p_value"], second["p_value"])

    def test_samples_with_missing_group_are_dropped(self):
        metadata = self.metadata.copy()
        metadata.loc["S0", "group"] = np.nan
        config = DistanceTestConfig(metric="braycurtis", formula="group", permutations=9)

        results = perform_permanova(self.dm, metadata, config, seed=1)
        self.assertEqual(results["sample_size"], 15)

    def test_missing_column(self):
        config = DistanceTestConfig(metric="braycurtis", formula="~ Diagnosis")
        with self.assertRaisesRegex(ConfigurationError, "Diagnosis"):
            perform_permanova(self.dm, self.metadata, config)

    @unittest.skipUnless(r_packages_available("vegan", "permute"), "vegan not installed")
    def test_strata_use_vegan(self):
        config = DistanceTestConfig(
            metric="braycurtis", formula="~ group", strata="patient", permutations=99
        )
        results = perform_permanova(self.dm, self.metadata, config, seed=1)

        self.assertEqual(results["engine"], "vegan")
        self.assertGreater(results["pseudo_F"], 1)
        self.assertLessEqual(results["p_value"], 0.05)

    @unittest.skipUnless(r_packages_available("vegan", "permute"), "vegan not installed")
    def test_numeric_single_term_uses_vegan(self):
        metadata = self.metadata.copy()
        metadata["age"] = np.linspace(20, 75, len(metadata))
        config = DistanceTestConfig(metric="braycurtis", formula="~ age", permutations=99)

        results = perform_permanova(self.dm, metadata, config, seed=1)

        self.assertEqual(results["engine"], "vegan")
        self.assertEqual(results["sample_size"], 16)
        self.assertTrue(0 < results["p_value"] <= 1)


class TestPermanovaEngine(unittest.TestCase):
    def setUp(self):
        self.metadata = pd.DataFrame(
            {
                "group": ["A", "B", "A", "B"],
                "age": [20.0, 35.0, 51.0, 75.0],
                "smoker": [True, False, True, False],
                "patient": ["P1", "P1", "P2", "P2"],
            },
            index=["S1", "S2", "S3", "S4"],
        )

    def test_single_categorical_term_uses_skbio(self):
        for formula in ["~ group", "smoker"]:
            config = DistanceTestConfig(metric="braycurtis", formula=formula)
            self.assertEqual(permanova_engine(config, self.metadata), "skbio")

    def test_numeric_term_uses_vegan(self):
        config = DistanceTestConfig(metric="braycurtis", formula="~ age")
        self.assertEqual(permanova_engine(config, self.metadata), "vegan")

    def test_strata_and_several_terms_use_vegan(self):
        stratified = DistanceTestConfig(
            metric="braycurtis", formula="~ group", strata="patient"
        )
        two_terms = DistanceTestConfig(metric="braycurtis", formula="~ group + age")
        self.assertEqual(permanova_engine(stratified, self.metadata), "vegan")
        self.assertEqual(permanova_engine(two_terms, self.metadata), "vegan")


class TestPairwisePermanova(unittest.TestCase):
    def test_one_row_per_pair(self):
        table, metadata = make_clustered_table(n_per_group=6, n_groups=3)
        dm = calculate_distance_matrix(table, "braycurtis")

        results_df = pairwise_permanova(dm, metadata, "group", permutations=99, seed=3)

        self.assertEqual(len(results_df), 3)
        self.assertEqual(
            results_df["comparison"].tolist(), ["G0_vs_G1", "G0_vs_G2", "G1_vs_G2"]
        )
        self.assertTrue((results_df["sample_size"] == 12).all())
        self.assertTrue((results_df["p_adj"] >= results_df["p_value"]).all())

    def test_missing_group_column(self):
        table, metadata = make_clustered_table()
        dm = calculate_distance_matrix(table, "euclidean")
        with self.assertRaises(ConfigurationError):
            pairwise_permanova(dm, metadata, "Diagnosis")

    def test_p_values_are_holm_adjusted(self):
        table, metadata = make_clustered_table(n_per_group=5, n_groups=3, seed=4)
        dm = calculate_distance_matrix(table, "braycurtis")

        results_df = pairwise_permanova(dm, metadata, "group", permutations=49, seed=8)

        np.testing.assert_allclose(
            results_df["p_adj"],
            multipletests(results_df["p_value"], method="holm")[1],
        )
        self.assertTrue((results_df["p_adj"] <= 1.0).all())


if __name__ == "__main__":
    unittest.main()
