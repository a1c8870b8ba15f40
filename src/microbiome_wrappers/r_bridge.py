import numbers
import os
import warnings

import numpy as np
import pandas as pd
import rpy2.robjects as ro  # type: ignore
from rpy2.robjects import pandas2ri  # type: ignore
from rpy2.robjects.conversion import localconverter  # type: ignore

R_SCRIPT_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "R")


def r_script_path(script_name: str) -> str:
    """Absolute path of an R script shipped with the package."""
    path = os.path.join(R_SCRIPT_DIR, script_name)
    if not os.path.exists(path):
        raise FileNotFoundError(f"R script not found: {path}")
    return path


def to_r(value):
    """Convert a python value for assignment in the R global environment."""
    if value is None:
        return ro.NULL
    if isinstance(value, pd.DataFrame):
        with localconverter(ro.default_converter + pandas2ri.converter):
            return ro.conversion.py2rpy(value)
    if not isinstance(value, (list, tuple, np.ndarray)):
        value = [value]

    if all(isinstance(v, (bool, np.bool_)) for v in value):
        return ro.BoolVector([bool(v) for v in value])
    if all(isinstance(v, numbers.Integral) for v in value):
        return ro.IntVector([int(v) for v in value])
    if all(isinstance(v, numbers.Real) for v in value):
        return ro.FloatVector([float(v) for v in value])
    return ro.StrVector([str(v) for v in value])


def from_r(r_object):
    """Convert an R object back to python: data frames to pandas, vectors to lists."""
    if isinstance(r_object, type(ro.NULL)):
        return None
    if isinstance(r_object, ro.vectors.DataFrame):
        with localconverter(ro.default_converter + pandas2ri.converter):
            return ro.conversion.rpy2py(r_object)
    return list(r_object)


def run_r_script(script_name: str, inputs: dict, outputs: list) -> dict:
    """
    Run one of the package's R scripts.

    The inputs are assigned in R's global environment under their dictionary
    keys, the script is evaluated, and the requested output variables are read
    back and converted.

    Args:
        script_name (str): File name in the package's R directory.
        inputs (dict): Variable name to python value (DataFrame, scalar, list or None).
        outputs (list): Names of R variables to return.

    Returns:
        dict: Output variable name to converted value.
    """
    # Suppress FutureWarning from rpy2
    with warnings.catch_warnings():
        warnings.filterwarnings("ignore", category=FutureWarning)
        for name, value in inputs.items():
            ro.globalenv[name] = to_r(value)

    with open(r_script_path(script_name), "r") as file:
        r_code = file.read()

    # Run the R code
    ro.r(r_code)

    results = {}
    with warnings.catch_warnings():
        warnings.filterwarnings("ignore", category=FutureWarning)
        for name in outputs:
            results[name] = from_r(ro.globalenv[name])

    return results
