import unittest

import pandas as pd


def rpy2_available():
    try:
        import rpy2.robjects  # noqa: F401
    except Exception:
        return False
    return True


@unittest.skipUnless(rpy2_available(), "rpy2 or R not available")
class TestRBridge(unittest.TestCase):
    def test_scalars_and_lists(self):
        from microbiome_wrappers.r_bridge import from_r, to_r

        self.assertEqual(from_r(to_r(3)), [3])
        self.assertEqual(from_r(to_r(True)), [True])
        self.assertEqual(from_r(to_r([0.5, 1.5])), [0.5, 1.5])
        self.assertEqual(from_r(to_r(["a", "b"])), ["a", "b"])
        self.assertIsNone(from_r(to_r(None)))

    def test_data_frame(self):
        from microbiome_wrappers.r_bridge import from_r, to_r

        df = pd.DataFrame({"x": [1.0, 2.0], "y": ["a", "b"]}, index=["S1", "S2"])
        converted_df = from_r(to_r(df))

        self.assertEqual(list(converted_df.index), ["S1", "S2"])
        self.assertEqual(converted_df["y"].tolist(), ["a", "b"])

    def test_missing_script(self):
        from microbiome_wrappers.r_bridge import r_script_path

        with self.assertRaises(FileNotFoundError):
            r_script_path("does_not_exist.R")
        self.assertTrue(r_script_path("permanova_adonis2.R").endswith("permanova_adonis2.R"))


if __name__ == "__main__":
    unittest.main()
