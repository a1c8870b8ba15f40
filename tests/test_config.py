import unittest

import pandas as pd

from microbiome_wrappers.config import (
    Aldex2Config,
    AlphaDiversityConfig,
    AncomBC2Config,
    DistanceTestConfig,
    LowDepthPolicy,
    Maaslin2Config,
    RarefactionConfig,
    formula_columns,
    parse_formula,
    validate_columns,
)
from microbiome_wrappers.errors import ConfigurationError


class TestFormula(unittest.TestCase):
    def test_parse_formula(self):
        self.assertEqual(parse_formula("~ Diagnosis + Age"), ["Diagnosis", "Age"])
        self.assertEqual(parse_formula("Diagnosis"), ["Diagnosis"])

    def test_empty_formula(self):
        with self.assertRaises(ConfigurationError):
            parse_formula("")
        with self.assertRaises(ConfigurationError):
            parse_formula("~ ")

    def test_formula_columns(self):
        self.assertEqual(formula_columns("~ Diagnosis * Sex + Age"), ["Diagnosis", "Sex", "Age"])
        self.assertEqual(formula_columns("(1 | Patient)"), ["Patient"])
        self.assertEqual(formula_columns("(Timepoint | SubjectID)"), ["Timepoint", "SubjectID"])


class TestRarefactionConfig(unittest.TestCase):
    def test_defaults(self):
        config = RarefactionConfig()
        self.assertIsNone(config.depth)
        self.assertEqual(config.n_replicates, 10)
        self.assertEqual(config.low_depth_policy, LowDepthPolicy.EXCLUDE)

    def test_policy_from_string(self):
        config = RarefactionConfig(low_depth_policy="error")
        self.assertEqual(config.low_depth_policy, LowDepthPolicy.ERROR)

    def test_invalid_values(self):
        with self.assertRaises(ConfigurationError):
            RarefactionConfig(depth=0)
        with self.assertRaises(ConfigurationError):
            RarefactionConfig(n_replicates=0)
        with self.assertRaises(ConfigurationError):
            RarefactionConfig(seed=-1)
        with self.assertRaisesRegex(ConfigurationError, "low depth policy"):
            RarefactionConfig(low_depth_policy="keep")


class TestAnalysisConfigs(unittest.TestCase):
    def test_alpha_metric_is_checked(self):
        with self.assertRaisesRegex(ConfigurationError, "Invalid alpha diversity metric"):
            AlphaDiversityConfig(metric="faith_pd", group_column="group")

    def test_alpha_required_columns(self):
        config = AlphaDiversityConfig("shannon", "group", block_column="patient")
        self.assertEqual(config.required_columns(), ["group", "patient"])

    def test_distance_metric_aliases(self):
        self.assertEqual(DistanceTestConfig("Bray-Curtis", "group").metric, "braycurtis")
        self.assertEqual(DistanceTestConfig("cityblock", "group").metric, "manhattan")
        with self.assertRaises(ConfigurationError):
            DistanceTestConfig("unifrac", "group")

    def test_distance_required_columns(self):
        config = DistanceTestConfig("aitchison", "~ Diagnosis + Age", strata="patient")
        self.assertEqual(config.terms, ["Diagnosis", "Age"])
        self.assertEqual(config.required_columns(), ["Diagnosis", "Age", "patient"])

    def test_distance_invalid_values(self):
        with self.assertRaises(ConfigurationError):
            DistanceTestConfig("euclidean", "group", permutations=0)
        with self.assertRaises(ConfigurationError):
            DistanceTestConfig("aitchison", "group", pseudocount=0)

    def test_ancombc2_multi_group_needs_grouping_variable(self):
        with self.assertRaisesRegex(ConfigurationError, "grouping_variable"):
            AncomBC2Config(fixed_terms="Diagnosis", pairwise=True)

        config = AncomBC2Config(
            fixed_terms="Diagnosis + Age",
            random_terms="(1 | Patient)",
            grouping_variable="Diagnosis",
            global_test=True,
        )
        self.assertEqual(config.required_columns(), ["Diagnosis", "Age", "Patient"])

    def test_ancombc2_p_adjust_method(self):
        with self.assertRaises(ConfigurationError):
            AncomBC2Config(fixed_terms="Diagnosis", p_adj_method="storey")

    def test_aldex2(self):
        self.assertEqual(Aldex2Config(condition="group").required_columns(), ["group"])
        glm = Aldex2Config(test="glm", fixed_effects="~ group + age")
        self.assertEqual(glm.required_columns(), ["group", "age"])

        with self.assertRaises(ConfigurationError):
            Aldex2Config(test="glm")
        with self.assertRaises(ConfigurationError):
            Aldex2Config(test="t")
        with self.assertRaises(ConfigurationError):
            Aldex2Config(condition="group", test="wilcox")

    def test_maaslin2_strings_become_lists(self):
        config = Maaslin2Config(fixed_effects="Diagnosis", random_effects="Patient")
        self.assertEqual(config.fixed_effects, ["Diagnosis"])
        self.assertEqual(config.required_columns(), ["Diagnosis", "Patient"])

        with self.assertRaises(ConfigurationError):
            Maaslin2Config(fixed_effects=[])
        with self.assertRaises(ConfigurationError):
            Maaslin2Config(fixed_effects=["Diagnosis"], normalization="RAREFY")


class TestValidateColumns(unittest.TestCase):
    def test_missing_column_is_named(self):
        metadata = pd.DataFrame({"group": ["A", "B"]}, index=["S1", "S2"])
        config = DistanceTestConfig("euclidean", "~ group + Age")

        with self.assertRaisesRegex(ConfigurationError, "Age") as context:
            validate_columns(config, metadata)
        self.assertIn("Available columns: group", str(context.exception))

    def test_present_columns_pass(self):
        metadata = pd.DataFrame({"group": ["A", "B"]}, index=["S1", "S2"])
        validate_columns(AlphaDiversityConfig("shannon", "group"), metadata)


if __name__ == "__main__":
    unittest.main()
