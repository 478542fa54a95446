#!/usr/bin/env python
#
# Copyright (c) 2024 10X Genomics, Inc. All rights reserved.
#

"""Demultiplexing of cell hashing experiments.

Each barcode is assigned to the tag with the largest ambient-adjusted count,
and flagged as a doublet when its second tag is well above the ambient level
or as a confident singlet when the best tag clearly dominates the second.
"""

from __future__ import annotations

import logging
from typing import NamedTuple

import numpy as np
import pandas as pd
from sklearn import mixture

from scdroplet import qc
from scdroplet.exceptions import AmbiguousBimodalEstimateError
from scdroplet.matrix import CountMatrix

DEFAULT_PSEUDO_COUNT = 5.0

TOTAL_COL = "Total"
BEST_COL = "Best"
SECOND_COL = "Second"
LOGFC_COL = "LogFC"
LOGFC2_COL = "LogFC2"
DOUBLET_COL = "Doublet"
CONFIDENT_COL = "Confident"


class DemuxResult(NamedTuple):
    table: pd.DataFrame  # One row per barcode
    ambient: pd.Series  # Ambient level of each tag

    @property
    def singlets(self) -> pd.Series:
        """Best tag of the confidently assigned barcodes."""
        return self.table.loc[self.table[CONFIDENT_COL], BEST_COL]


def _two_component_fit(values: np.ndarray, label) -> tuple[np.ndarray, int]:
    """Component of each value under a two-component Gaussian mixture, and the lower component."""
    if len(values) < 2:
        raise AmbiguousBimodalEstimateError(label, f"only {len(values)} cells")
    if len(np.unique(values)) < 2:
        raise AmbiguousBimodalEstimateError(label, "all cells have the same count")
    gmm = mixture.GaussianMixture(n_components=2, n_init=10, covariance_type="tied", random_state=0)
    gmm.fit(values.reshape(-1, 1))
    components = gmm.predict(values.reshape(-1, 1))
    if len(np.unique(components)) < 2:
        raise AmbiguousBimodalEstimateError(label, "every cell falls in one mixture component")
    return components, int(np.argmin(gmm.means_.ravel()))


def estimate_tag_ambient(tag_matrix: CountMatrix) -> pd.Series:
    """Ambient level of each tag: the mean count of the cells in its lower mode.

    Modes are found by a two-component Gaussian mixture on log10(1 + count).
    """
    counts = tag_matrix.to_dense()
    levels = []
    for i, tag in enumerate(tag_matrix.feature_ids):
        tag_counts = counts[i, :].astype(float)
        components, background = _two_component_fit(np.log10(1 + tag_counts), tag)
        levels.append(tag_counts[components == background].mean())
        logging.info("Ambient level of tag %s: %.2f", tag, levels[-1])
    return pd.Series(levels, index=pd.Index(tag_matrix.feature_ids, name="tag"), name="ambient")


def _ambient_series(tag_matrix: CountMatrix, ambient) -> pd.Series:
    if ambient is None:
        return estimate_tag_ambient(tag_matrix)
    if isinstance(ambient, (dict, pd.Series)):
        values = [float(ambient.get(tag, 0.0)) for tag in tag_matrix.feature_ids]
    else:
        values = np.asarray(ambient, dtype=float)
    values = np.asarray(values, dtype=float)
    if values.shape != (tag_matrix.features_dim,):
        raise ValueError(f"Got {len(values)} ambient levels for {tag_matrix.features_dim} tags")
    if np.any(values < 0) or not np.all(np.isfinite(values)):
        raise ValueError("Ambient levels must be finite and non-negative")
    return pd.Series(values, index=pd.Index(tag_matrix.feature_ids, name="tag"), name="ambient")


def ambient_scaling(counts: np.ndarray, ambient: np.ndarray) -> np.ndarray:
    """Per-cell multiple of the ambient profile explaining the background tags.

    Args:
        counts: cells x tags count array
        ambient: ambient level of each tag

    Returns:
        The median of count / ambient over all tags but the two largest of each
        cell, or the smallest ratio when there are fewer than three tags. Tags
        with no ambient level are ignored; cells without any usable tag get 0.
    """
    with np.errstate(divide="ignore", invalid="ignore"):
        ratios = np.where(ambient > 0, counts / ambient, np.nan)
    if counts.shape[1] < 3:
        usable = ratios
        reduce = np.nanmin
    else:
        top_two = np.argsort(-counts, axis=1, kind="stable")[:, :2]
        usable = ratios.copy()
        np.put_along_axis(usable, top_two, np.nan, axis=1)
        reduce = np.nanmedian
    scale = np.zeros(counts.shape[0])
    has_ratio = np.any(~np.isnan(usable), axis=1)
    if has_ratio.any():
        scale[has_ratio] = reduce(usable[has_ratio], axis=1)
    return scale


def _mixture_doublets(logfc2: np.ndarray) -> np.ndarray:
    components, background = _two_component_fit(logfc2, LOGFC2_COL)
    return components != background


def hashed_drops(
    tag_matrix: CountMatrix,
    ambient=None,
    pseudo_count: float = DEFAULT_PSEUDO_COUNT,
    constant_ambient: bool = False,
    doublet_nmads: float = 3.0,
    doublet_min: float = 2.0,
    doublet_mixture: bool = False,
    confident_nmads: float | None = None,
    confident_min: float = 2.0,
    min_diff: float | None = None,
) -> DemuxResult:
    """Assign each barcode of a hash tag count matrix to a sample.

    Args:
        tag_matrix: Tags (features) x cell barcodes
        ambient: Ambient level per tag (array or mapping by tag); estimated if None
        pseudo_count: Added to counts before taking log fold changes
        constant_ambient: Use one ambient scale, the median over cells, for every cell
        doublet_nmads: MADs above the median LogFC2 for a doublet
        doublet_min: Minimum LogFC2 of a doublet
        doublet_mixture: Split LogFC2 with a two-component mixture instead of MADs
        confident_nmads: If set, singlets whose LogFC is more than this many MADs
            below the median are not confident
        confident_min: Minimum LogFC of a confident singlet
        min_diff: Minimum distance between the median and the MAD thresholds

    Returns:
        DemuxResult with Total, Best, Second, LogFC, LogFC2, Doublet and Confident
        per barcode, and the ambient level of each tag.
    """
    if tag_matrix.features_dim < 2:
        raise ValueError("Demultiplexing needs at least two tags")
    ambient_s = _ambient_series(tag_matrix, ambient)
    ambient_v = ambient_s.to_numpy()
    counts = tag_matrix.to_dense().T.astype(float)
    cells = np.arange(counts.shape[0])

    scale = ambient_scaling(counts, ambient_v)
    if constant_ambient:
        scale = np.full_like(scale, np.median(scale))
    expected = scale[:, np.newaxis] * ambient_v[np.newaxis, :]
    adjusted = np.maximum(counts - expected, 0.0)

    order = np.argsort(-adjusted, axis=1, kind="stable")
    best, second = order[:, 0], order[:, 1]
    logfc = np.log2((adjusted[cells, best] + pseudo_count) / (adjusted[cells, second] + pseudo_count))
    logfc2 = np.log2((counts[cells, second] + pseudo_count) / (expected[cells, second] + pseudo_count))

    if doublet_mixture:
        high = _mixture_doublets(logfc2)
    else:
        high = qc.is_outlier(logfc2, nmads=doublet_nmads, type="higher", min_diff=min_diff).to_numpy()
    doublet = high & (logfc2 >= doublet_min)

    confident = ~doublet & (logfc >= confident_min)
    singlets = np.flatnonzero(~doublet)
    if confident_nmads is not None and len(singlets):
        low = qc.is_outlier(
            logfc[singlets], nmads=confident_nmads, type="lower", min_diff=min_diff
        ).to_numpy()
        confident[singlets[low]] = False

    tags = tag_matrix.feature_ids
    table = pd.DataFrame(
        {
            TOTAL_COL: counts.sum(axis=1).astype(np.int64),
            BEST_COL: tags[best],
            SECOND_COL: tags[second],
            LOGFC_COL: logfc,
            LOGFC2_COL: logfc2,
            DOUBLET_COL: doublet,
            CONFIDENT_COL: confident,
        },
        index=pd.Index(tag_matrix.bcs, name="barcode"),
    )
    logging.info(
        "%d barcodes: %d doublets, %d confident singlets",
        len(table),
        int(doublet.sum()),
        int(confident.sum()),
    )
    return DemuxResult(table=table, ambient=ambient_s)
