#!/usr/bin/env python
#
# Copyright (c) 2024 10X Genomics, Inc. All rights reserved.
#
"""Per-cell quality-control metrics and MAD-based outlier filters."""

from __future__ import annotations

from collections.abc import Iterable, Mapping

import numpy as np
import pandas as pd
import scipy.stats as sp_stats

import scdroplet.stats as sd_stats
from scdroplet.matrix import CountMatrix

OUTLIER_TYPES = ["both", "lower", "higher"]
DEFAULT_NMADS = 3.0

SUM_COL = "sum"
DETECTED_COL = "detected"
DISCARD_COL = "discard"
LOW_LIB_SIZE_COL = "low_lib_size"
LOW_N_FEATURES_COL = "low_n_features"


def _thresholds(values: np.ndarray, nmads: float, min_diff: float | None) -> tuple[float, float]:
    finite = values[np.isfinite(values)]
    if len(finite) == 0:
        return np.nan, np.nan
    center = np.median(finite)
    offset = nmads * sp_stats.median_abs_deviation(finite, scale="normal")
    if min_diff is not None:
        offset = max(offset, min_diff)
    return center - offset, center + offset


def is_outlier(
    values,
    nmads: float = DEFAULT_NMADS,
    type: str = "both",  # pylint: disable=redefined-builtin
    log: bool = False,
    min_diff: float | None = None,
    batch=None,
) -> pd.Series:
    """Flag values more than nmads median absolute deviations from the median.

    The MAD is scaled to be consistent with the standard deviation of a normal
    distribution. min_diff is a floor on the distance between the median and
    each threshold, on the (possibly log) scale of the test; it keeps a
    near-zero MAD from flagging ordinary values.

    Args:
        values: Metric per cell (array-like or Series)
        nmads: Number of MADs from the median
        type: "both", "lower" or "higher" outliers
        log: Test log2(1 + value) instead of value
        min_diff: Minimum distance of a threshold from the median
        batch: Optional per-cell batch labels; thresholds are computed per batch

    Returns:
        Boolean Series; attrs["thresholds"] holds the lower and higher bound of
        each batch on the original scale.
    """
    if type not in OUTLIER_TYPES:
        raise ValueError(f"type must be one of {OUTLIER_TYPES}, got {type!r}")
    index = values.index if isinstance(values, pd.Series) else None
    raw = np.asarray(values, dtype=float)
    metric = np.log2(1 + raw) if log else raw

    batch = np.zeros(len(raw), dtype=int) if batch is None else np.asarray(batch)
    if len(batch) != len(raw):
        raise ValueError("batch must have one entry per value")

    outlier = np.zeros(len(raw), dtype=bool)
    bounds = {}
    for group in pd.unique(batch):
        members = batch == group
        low, high = _thresholds(metric[members], nmads, min_diff)
        if type in ("both", "lower"):
            outlier[members] |= metric[members] < low
        else:
            low = -np.inf
        if type in ("both", "higher"):
            outlier[members] |= metric[members] > high
        else:
            high = np.inf
        if log:
            low, high = 2.0**low - 1, 2.0**high - 1
        bounds[group] = (low, high)

    result = pd.Series(outlier, index=index)
    result.attrs["thresholds"] = pd.DataFrame.from_dict(
        bounds, orient="index", columns=["lower", "higher"]
    )
    return result


def _subset_indices(matrix: CountMatrix, subset) -> np.ndarray:
    subset = list(subset)
    if len(subset) == 0:
        return np.zeros(0, dtype=np.intp)
    if isinstance(subset[0], str):
        return np.asarray(matrix.feature_ids_to_ints(subset), dtype=np.intp)
    subset = np.asarray(subset)
    if subset.dtype == bool:
        return np.flatnonzero(subset)
    return subset.astype(np.intp)


def per_cell_qc_metrics(
    matrix: CountMatrix, subsets: Mapping[str, Iterable] | None = None
) -> pd.DataFrame:
    """Library size, detected features and per-subset totals for every barcode.

    Args:
        matrix: Feature-barcode count matrix
        subsets: Named feature sets (ids, indices or boolean masks), e.g. mitochondrial genes

    Returns:
        DataFrame indexed by barcode with sum, detected, and for each subset
        subsets_<name>_sum, subsets_<name>_detected and subsets_<name>_percent.
    """
    totals = matrix.get_counts_per_bc()
    metrics = pd.DataFrame(
        {SUM_COL: totals, DETECTED_COL: matrix.get_numbers_per_bc()},
        index=pd.Index(matrix.bcs, name="barcode"),
    )
    for name, subset in (subsets or {}).items():
        sub = matrix.select_features(_subset_indices(matrix, subset))
        sub_totals = sub.get_counts_per_bc()
        metrics[f"subsets_{name}_sum"] = sub_totals
        metrics[f"subsets_{name}_detected"] = sub.get_numbers_per_bc()
        metrics[f"subsets_{name}_percent"] = [
            100.0 * sd_stats.robust_divide(a, b) for a, b in zip(sub_totals, totals)
        ]
    return metrics


def quick_per_cell_qc(
    metrics: pd.DataFrame,
    percent_subsets: Iterable[str] = (),
    nmads: float = DEFAULT_NMADS,
    min_diff: float | None = None,
    batch=None,
) -> pd.DataFrame:
    """Outlier-based filters on the output of per_cell_qc_metrics.

    Low library sizes and low numbers of detected features are tested on the
    log scale; each named subset percentage is tested for high outliers.
    """
    filters = pd.DataFrame(index=metrics.index)
    filters[LOW_LIB_SIZE_COL] = is_outlier(
        metrics[SUM_COL], nmads, "lower", log=True, min_diff=min_diff, batch=batch
    )
    filters[LOW_N_FEATURES_COL] = is_outlier(
        metrics[DETECTED_COL], nmads, "lower", log=True, min_diff=min_diff, batch=batch
    )
    for name in percent_subsets:
        column = name if name in metrics.columns else f"subsets_{name}_percent"
        filters[f"high_{name}_percent"] = is_outlier(
            metrics[column], nmads, "higher", min_diff=min_diff, batch=batch
        )
    filters[DISCARD_COL] = filters.any(axis=1)
    return filters
