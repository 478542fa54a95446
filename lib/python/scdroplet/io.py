#!/usr/bin/env python
#
# Copyright (c) 2024 10X Genomics, Inc. All rights reserved.
#

"""Reading and writing of tables and summaries.

The json standard does not permit encoding NaN, but Python will still happily
do it. Summaries are sanitized first: non-finite floats become strings and
numpy scalars and arrays become native values.
"""

from __future__ import annotations

import dataclasses
import json
import math
import os
from pathlib import PurePath
from typing import Any

import numpy as np
import pandas as pd

NAN_STRING = "NaN"
POS_INF_STRING = "inf"
NEG_INF_STRING = "-inf"


def desanitize_value(x):
    """Converts back a special numeric value encoded by json_sanitize."""
    if x == NAN_STRING:
        return float("nan")
    elif x == POS_INF_STRING:
        return float("inf")
    elif x == NEG_INF_STRING:
        return float("-inf")
    return x


def _sanitize_scalar(data):
    if isinstance(data, (bool, np.bool_)):
        return bool(data)
    elif isinstance(data, bytes):
        return data.decode()
    elif isinstance(data, PurePath):
        return str(data)
    elif isinstance(data, np.integer):
        return int(data)
    elif isinstance(data, (float, np.floating)):
        if math.isnan(data):
            return NAN_STRING
        elif data == float("inf"):
            return POS_INF_STRING
        elif data == float("-inf"):
            return NEG_INF_STRING
        return float(data)
    elif data is pd.NA:
        return None
    return data


def json_sanitize(data) -> Any:
    """Convert nested data into a form that will correctly serialize to json."""
    if data is None or isinstance(data, (str, int)) and not isinstance(data, bool):
        return data
    if isinstance(data, pd.DataFrame):
        return json_sanitize(data.to_dict(orient="index"))
    if isinstance(data, pd.Series):
        return json_sanitize(data.to_dict())
    if dataclasses.is_dataclass(data) and not isinstance(data, type):
        data = {f.name: getattr(data, f.name) for f in dataclasses.fields(data)}
    if isinstance(data, dict):
        return {str(k): json_sanitize(v) for k, v in data.items()}
    if isinstance(data, np.ndarray) and data.shape == ():
        return _sanitize_scalar(data.item())
    if isinstance(data, (list, tuple, np.ndarray)):
        return [json_sanitize(item) for item in data]
    return _sanitize_scalar(data)


def safe_jsonify(data, pretty: bool = False) -> str:
    """Dump an object to a string as json, after sanitizing it."""
    kwargs = {"indent": 4, "sort_keys": True, "separators": (",", ": ")} if pretty else {}
    return json.dumps(json_sanitize(data), allow_nan=False, **kwargs)


def write_json(data, filename) -> None:
    with open(filename, "w") as f:
        f.write(safe_jsonify(data, pretty=True))
        f.write("\n")


def write_csv(df: pd.DataFrame, filename, index_label: str | None = None) -> None:
    """Write a result table, with its index as the first column."""
    df.to_csv(filename, index=True, index_label=index_label or df.index.name)


def read_two_column_csv(filename, value_name: str, numeric: bool = False) -> pd.Series:
    """Read a key,value CSV file with a header into a Series indexed by the first column."""
    df = pd.read_csv(filename, dtype=str)
    if df.shape[1] < 2:
        raise ValueError(f"{filename} must have at least two columns")
    values = df.iloc[:, 1]
    if numeric:
        values = pd.to_numeric(values)
    return pd.Series(values.to_numpy(), index=pd.Index(df.iloc[:, 0]), name=value_name)


def makedirs(path) -> None:
    os.makedirs(path, exist_ok=True)
