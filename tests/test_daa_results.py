import unittest

import numpy as np
import pandas as pd

from microbiome_wrappers.daa_results import (
    AncomBC2Results,
    DifferentialAbundanceResult,
    ResultKind,
    display_ancombc2_results,
    parse_analysis,
    process_table,
    round_significant,
    standardize_daa_results,
)
from microbiome_wrappers.errors import ConfigurationError


def make_ancombc2_primary():
    return pd.DataFrame(
        {
            "taxon": ["Streptococcus", "Prevotella", "Veillonella"],
            "lfc_(Intercept)": [0.1, 0.2, 0.3],
            "lfc_DiagnosisBO": [1.23456, -0.5, 0.01],
            "se_DiagnosisBO": [0.2, 0.1, 0.5],
            "p_DiagnosisBO": [0.001, 0.02, 0.9],
            "q_DiagnosisBO": [0.003, 0.03, 0.9],
            "diff_DiagnosisBO": [True, True, False],
        }
    )


class TestResultKinds(unittest.TestCase):
    def test_parse_analysis(self):
        self.assertEqual(parse_analysis("pairwise"), ResultKind.PAIRWISE)
        self.assertEqual(parse_analysis(ResultKind.TREND), ResultKind.TREND)

    def test_invalid_analysis(self):
        with self.assertRaises(ConfigurationError) as context:
            parse_analysis("primary2")
        self.assertEqual(
            str(context.exception),
            "Invalid analysis: primary2. Valid options: global, pairwise, dunnett, trend",
        )

    def test_captions(self):
        self.assertEqual(ResultKind.DUNNETT.caption, "ANCOM-BC2 Dunnett's Test")
        result = DifferentialAbundanceResult("aldex2", ResultKind.PRIMARY, pd.DataFrame())
        self.assertEqual(result.caption, "ALDEX2 Primary Analysis")


class TestRounding(unittest.TestCase):
    def test_round_significant(self):
        df = pd.DataFrame(
            {
                "x": [1.23456, 0.000123456, 123456.0, 0.0, np.nan],
                "name": ["a", "b", "c", "d", "e"],
                "flag": [True, False, True, False, True],
            }
        )
        rounded_df = round_significant(df, digits=3)

        np.testing.assert_allclose(
            rounded_df["x"].to_numpy()[:4], [1.23, 0.000123, 123000.0, 0.0]
        )
        self.assertTrue(np.isnan(rounded_df["x"].iloc[4]))
        self.assertEqual(rounded_df["name"].tolist(), df["name"].tolist())
        self.assertEqual(rounded_df["flag"].tolist(), df["flag"].tolist())
        # Input is left untouched
        self.assertEqual(df["x"].iloc[0], 1.23456)

    def test_process_table_html(self):
        html = process_table(make_ancombc2_primary(), "ANCOM-BC2 Primary Analysis", as_html=True)
        self.assertIsInstance(html, str)
        self.assertIn("ANCOM-BC2 Primary Analysis", html)
        self.assertIn("overflow-x:auto", html)
        self.assertIn("1.23", html)


class TestDisplayAncombc2Results(unittest.TestCase):
    def setUp(self):
        self.results = AncomBC2Results(
            {
                ResultKind.PRIMARY: make_ancombc2_primary(),
                ResultKind.GLOBAL: pd.DataFrame(
                    {"taxon": ["Streptococcus"], "W": [12.3456], "p_val": [0.0012]}
                ),
            }
        )

    def test_primary_is_always_included(self):
        tables = display_ancombc2_results(self.results, html=False)
        self.assertEqual(list(tables), ["primary"])
        self.assertAlmostEqual(tables["primary"]["lfc_DiagnosisBO"].iloc[0], 1.23)

    def test_requested_analyses(self):
        tables = display_ancombc2_results(self.results, analyses=["global"], html=True)
        self.assertEqual(list(tables), ["primary", "global"])
        self.assertIn("ANCOM-BC2 Global Test", tables["global"])

    def test_analysis_not_run(self):
        with self.assertRaisesRegex(ConfigurationError, "pairwise"):
            display_ancombc2_results(self.results, analyses=["pairwise"])

    def test_invalid_analysis(self):
        with self.assertRaisesRegex(ConfigurationError, "Invalid analysis: lfc"):
            display_ancombc2_results(self.results, analyses=["lfc"])

    def test_available(self):
        self.assertEqual(self.results.available, [ResultKind.PRIMARY, ResultKind.GLOBAL])


class TestStandardizeDaaResults(unittest.TestCase):
    def test_ancombc2(self):
        result = AncomBC2Results({ResultKind.PRIMARY: make_ancombc2_primary()}).primary
        standardized_df = standardize_daa_results(result)

        self.assertEqual(
            list(standardized_df.columns),
            ["feature_id", "term", "effect", "lower", "upper", "p_value", "q_value"],
        )
        self.assertEqual(len(standardized_df), 3)
        self.assertEqual(set(standardized_df["term"]), {"DiagnosisBO"})
        self.assertEqual(standardized_df["feature_id"].iloc[0], "Streptococcus")
        self.assertAlmostEqual(standardized_df["lower"].iloc[0], 1.23456 - 1.959964 * 0.2, places=5)
        self.assertTrue(standardized_df["q_value"].is_monotonic_increasing)

    def test_aldex2_two_groups(self):
        table = pd.DataFrame(
            {
                "feature_id": ["ASV1", "ASV2"],
                "effect": [1.5, -0.2],
                "effect.low": [0.5, -1.0],
                "effect.high": [2.5, 0.6],
                "we.ep": [0.01, 0.6],
                "we.eBH": [0.02, 0.6],
            }
        )
        standardized_df = standardize_daa_results(
            DifferentialAbundanceResult("aldex2", ResultKind.PRIMARY, table)
        )

        self.assertEqual(standardized_df["feature_id"].tolist(), ["ASV1", "ASV2"])
        self.assertEqual(standardized_df["lower"].tolist(), [0.5, -1.0])
        self.assertEqual(standardized_df["q_value"].tolist(), [0.02, 0.6])

    def test_aldex2_kruskal_wallis_has_no_effect(self):
        table = pd.DataFrame(
            {"feature_id": ["ASV1"], "kw.ep": [0.04], "kw.eBH": [0.08]}
        )
        standardized_df = standardize_daa_results(
            DifferentialAbundanceResult("aldex2", ResultKind.PRIMARY, table)
        )
        self.assertTrue(np.isnan(standardized_df["effect"].iloc[0]))
        self.assertEqual(standardized_df["p_value"].iloc[0], 0.04)

    def test_aldex2_glm(self):
        table = pd.DataFrame(
            {
                "feature_id": ["ASV1", "ASV2"],
                "model.(Intercept) Estimate": [0.0, 0.0],
                "model.groupB Estimate": [2.0, 0.1],
                "model.groupB Std. Error": [0.5, 0.5],
                "model.groupB Pr(>|t|)": [0.001, 0.8],
                "model.groupB Pr(>|t|).BH": [0.002, 0.8],
            }
        )
        standardized_df = standardize_daa_results(
            DifferentialAbundanceResult("aldex2", ResultKind.PRIMARY, table)
        )

        self.assertEqual(standardized_df["term"].unique().tolist(), ["groupB"])
        self.assertAlmostEqual(standardized_df["upper"].iloc[0], 2.0 + 1.959964 * 0.5, places=5)

    def test_maaslin2(self):
        table = pd.DataFrame(
            {
                "feature": ["ASV2", "ASV1"],
                "metadata": ["Diagnosis", "Age"],
                "value": ["BO", "Age"],
                "coef": [1.0, 0.2],
                "stderr": [0.1, 0.3],
                "pval": [0.01, 0.5],
                "qval": [0.2, 0.04],
            }
        )
        standardized_df = standardize_daa_results(
            DifferentialAbundanceResult("maaslin2", ResultKind.PRIMARY, table)
        )

        # Sorted by q-value
        self.assertEqual(standardized_df["feature_id"].tolist(), ["ASV1", "ASV2"])
        self.assertEqual(standardized_df["term"].tolist(), ["Age", "DiagnosisBO"])

    def test_only_primary_results(self):
        result = DifferentialAbundanceResult("ancombc2", ResultKind.GLOBAL, pd.DataFrame())
        with self.assertRaises(ConfigurationError):
            standardize_daa_results(result)

    def test_unknown_engine(self):
        result = DifferentialAbundanceResult("linda", ResultKind.PRIMARY, pd.DataFrame())
        with self.assertRaises(ConfigurationError):
            standardize_daa_results(result)


if __name__ == "__main__":
    unittest.main()
