#!/usr/bin/env python
#
# Copyright (c) 2024 10X Genomics, Inc. All rights reserved.
#

"""Knee and inflection points of the barcode rank curve."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import pandas as pd
from scipy import interpolate

from scdroplet.ambient import DEFAULT_LOWER

# Highest-ranked barcodes skipped when searching for the curve bounds
DEFAULT_EXCLUDE_FROM = 50

TOTAL_COL = "Total"
RANK_COL = "Rank"


@dataclass
class BarcodeRanks:
    table: pd.DataFrame  # Total and Rank per barcode, in the input barcode order
    knee: float
    inflection: float
    lower: int


def get_spline_num_knots(n):
    """Heuristic number of spline knots for n unique input points."""
    if n < 50:
        return int(n)
    a1 = np.log2(50)
    a2 = np.log2(100)
    a3 = np.log2(140)
    a4 = np.log2(200)
    if n < 200:
        return int(2 ** (a1 + (a2 - a1) * (n - 50) / 150))
    if n < 800:
        return int(2 ** (a2 + (a3 - a2) * (n - 200) / 600))
    if n < 3200:
        return int(2 ** (a3 + (a4 - a3) * (n - 800) / 2400))
    return int(200 + (n - 3200) ** (0.2))


def _run_ranks(totals: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Unique totals in descending order and the average rank of each run of ties."""
    values, lengths = np.unique(totals, return_counts=True)
    values, lengths = values[::-1], lengths[::-1]
    ranks = np.cumsum(lengths) - (lengths - 1) / 2.0
    return values, ranks


def _curve_bounds(log_rank: np.ndarray, log_total: np.ndarray, exclude_from: int) -> tuple[int, int]:
    """Indices of the plateau edge and the steepest drop of the log-log curve."""
    d1n = np.diff(log_total) / np.diff(log_rank)
    skip = min(len(d1n) - 1, int(np.sum(log_rank <= np.log10(exclude_from))))
    d1n = d1n[skip:]
    right = int(np.argmin(d1n))
    left = int(np.argmax(d1n[: right + 1]))
    return left + skip, right + skip


def _fit_spline(x: np.ndarray, y: np.ndarray):
    """Smoothing spline of the curve with a reduced number of knots for large inputs."""
    k = min(3, len(x) - 1)
    spline = interpolate.UnivariateSpline(x=x, y=y, k=k, s=0, check_finite=True)
    if len(x) > 50:
        num_knots = get_spline_num_knots(len(x))
        orig_knots = spline.get_knots()
        if num_knots < len(orig_knots):
            knots = [
                orig_knots[i] for i in np.linspace(1, len(orig_knots) - 2, num_knots - 2, dtype=int)
            ]
            spline = interpolate.LSQUnivariateSpline(x=x, y=y, t=knots, k=k, check_finite=True)
    return spline


def barcode_ranks(
    umis_per_bc,
    bcs=None,
    lower: int = DEFAULT_LOWER,
    exclude_from: int = DEFAULT_EXCLUDE_FROM,
) -> BarcodeRanks:
    """Rank barcodes by total count and locate the knee and inflection points.

    The inflection point is the steepest drop of log10(total) against log10(rank);
    the knee is the point of maximum curvature of a spline fitted between the
    plateau and the inflection. Only totals above lower are considered, and the
    exclude_from highest ranks are skipped when looking for the plateau.

    Returns NaN knee and inflection when fewer than three distinct totals exceed lower.
    """
    totals = np.asarray(umis_per_bc)
    ranks = pd.Series(totals).rank(ascending=False, method="average").to_numpy()
    table = pd.DataFrame({TOTAL_COL: totals, RANK_COL: ranks}, index=bcs)

    values, run_ranks = _run_ranks(totals)
    keep = values > lower
    if np.sum(keep) < 3:
        return BarcodeRanks(table=table, knee=np.nan, inflection=np.nan, lower=lower)

    log_total = np.log10(values[keep].astype(float))
    log_rank = np.log10(run_ranks[keep])
    left, right = _curve_bounds(log_rank, log_total, exclude_from)
    inflection = 10 ** log_total[right]

    x = log_rank[left : right + 1]
    y = log_total[left : right + 1]
    if len(x) < 4:
        knee = 10 ** y[0]
    else:
        spline = _fit_spline(x, y)
        d1 = spline(x, 1)
        d2 = spline(x, 2)
        curvature = d2 / (1 + d1**2) ** 1.5
        knee = 10 ** y[int(np.argmax(curvature))]

    return BarcodeRanks(table=table, knee=float(knee), inflection=float(inflection), lower=lower)
