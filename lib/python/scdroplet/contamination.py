#!/usr/bin/env python
#
# Copyright (c) 2024 10X Genomics, Inc. All rights reserved.
#

"""Removal of ambient contamination at cluster level.

For every cluster the largest multiple of the ambient profile that fits under
the cluster's mean expression is taken as its contamination. Each cell's
counts are then remapped from the negative binomial implied by the original
cluster mean to the one implied by the decontaminated mean, so that cells keep
their relative position within the cluster.
"""

from __future__ import annotations

import logging
from collections.abc import Hashable, Mapping, Sequence
from typing import NamedTuple, Protocol

import numpy as np
import pandas as pd
import scipy.sparse as sp_sparse
import scipy.stats as sp_stats

from scdroplet.ambient import AmbientProfile
from scdroplet.exceptions import DegenerateClusterError
from scdroplet.matrix import CountMatrix

DEFAULT_DISPERSION = 0.1
DEFAULT_MIN_CLUSTER_SIZE = 10

N_CELLS_COL = "n_cells"
SCALE_COL = "scale"
CONTAMINATION_COL = "contamination"


class ClusterAssignment(Protocol):
    """Anything that maps a barcode to its cluster label."""

    def __getitem__(self, barcode: str) -> Hashable: ...


class ContaminationResult(NamedTuple):
    matrix: CountMatrix  # Decontaminated counts, same shape and labels as the input
    clusters: pd.DataFrame  # n_cells, scale and contamination per cluster


def resolve_cluster_labels(
    matrix: CountMatrix, clusters: ClusterAssignment | Sequence
) -> np.ndarray:
    """Cluster label of each barcode of the matrix, in column order."""
    if isinstance(clusters, (Mapping, pd.Series)):
        try:
            labels = [clusters[bc] for bc in matrix.bcs]
        except KeyError as e:
            raise ValueError(f"Barcode {e.args[0]!r} has no cluster assignment") from None
        return np.asarray(labels, dtype=object)
    labels = np.asarray(list(clusters), dtype=object)
    if len(labels) != matrix.bcs_dim:
        raise ValueError(f"Got {len(labels)} cluster labels for {matrix.bcs_dim} barcodes")
    return labels


def _ambient_vector(matrix: CountMatrix, ambient) -> np.ndarray:
    if isinstance(ambient, AmbientProfile):
        vec = ambient.full_proportions(matrix.features_dim)
    elif isinstance(ambient, (Mapping, pd.Series)):
        vec = np.array([float(ambient.get(fid, 0.0)) for fid in matrix.feature_ids])
    else:
        vec = np.asarray(ambient, dtype=float)
    if vec.shape != (matrix.features_dim,):
        raise ValueError(f"Ambient profile has {len(vec)} entries for {matrix.features_dim} features")
    if np.any(vec < 0) or vec.sum() <= 0:
        raise ValueError("Ambient profile must be non-negative with a positive sum")
    return vec / vec.sum()


def maximum_ambience(mean_counts: np.ndarray, ambient: np.ndarray) -> float:
    """Largest scale such that mean_counts - scale * ambient stays non-negative."""
    positive = ambient > 0
    if not positive.any():
        return 0.0
    return float(np.min(mean_counts[positive] / ambient[positive]))


def quantile_remap(counts, old_mean, new_mean, dispersion: float = DEFAULT_DISPERSION) -> np.ndarray:
    """Map counts between negative binomials with the same dispersion and different means.

    The mid-point of the discrete CDF at each count under the old mean is
    inverted under the new mean.
    """
    counts = np.asarray(counts, dtype=float)
    size = 1.0 / dispersion
    old_p = size / (size + np.asarray(old_mean, dtype=float))
    new_mean = np.asarray(new_mean, dtype=float)
    new_p = size / (size + new_mean)
    mid = 0.5 * (
        sp_stats.nbinom.cdf(counts - 1, size, old_p) + sp_stats.nbinom.cdf(counts, size, old_p)
    )
    # A smaller mean never maps a count upwards; this also caps ppf(1) = inf
    remapped = np.minimum(sp_stats.nbinom.ppf(mid, size, new_p), counts)
    return np.where(new_mean > 0, remapped, 0.0)


def _check_cluster(label, n_cells, cluster_total, min_cluster_size, on_small_cluster):
    if n_cells < min_cluster_size:
        msg = f"only {n_cells} cells (minimum {min_cluster_size})"
        if on_small_cluster == "raise":
            raise DegenerateClusterError(label, msg)
        logging.warning("Contamination estimate for cluster %r is unreliable: %s", label, msg)
    if cluster_total == 0:
        raise DegenerateClusterError(label, "all member cells have zero counts")


def remove_ambience(
    matrix: CountMatrix,
    ambient,
    clusters: ClusterAssignment | Sequence,
    *,
    dispersion: float = DEFAULT_DISPERSION,
    min_cluster_size: int = DEFAULT_MIN_CLUSTER_SIZE,
    on_small_cluster: str = "raise",
) -> ContaminationResult:
    """Remove the estimated ambient contribution from every cluster of cells.

    Args:
        matrix: Counts of called cells, with the same features as the ambient profile
        ambient: AmbientProfile, or abundance per feature (array or mapping by feature id)
        clusters: Cluster label per barcode (mapping by barcode, or aligned sequence)
        dispersion: Negative binomial dispersion shared by all genes
        min_cluster_size: Clusters with fewer cells are degenerate
        on_small_cluster: "raise" a DegenerateClusterError or "warn" and proceed

    Returns:
        ContaminationResult with a matrix of the input's shape
    """
    labels = resolve_cluster_labels(matrix, clusters)
    ambient_p = _ambient_vector(matrix, ambient)
    m = matrix.m
    totals = matrix.get_counts_per_bc().astype(float)

    entry_cols = np.repeat(np.arange(matrix.bcs_dim), np.diff(m.indptr))
    entry_rows = m.indices
    new_data = m.data.astype(float)

    summary = {}
    for label in pd.unique(labels):
        cells = np.flatnonzero(labels == label)
        cluster_total = totals[cells].sum()
        _check_cluster(label, len(cells), cluster_total, min_cluster_size, on_small_cluster)

        mean_counts = np.asarray(m[:, cells].sum(axis=1)).ravel() / len(cells)
        scale = maximum_ambience(mean_counts, ambient_p)
        removed = scale * ambient_p
        corrected = np.maximum(mean_counts - removed, 0.0)
        contamination = scale / mean_counts.sum()
        summary[label] = (len(cells), scale, contamination)
        logging.info(
            "Cluster %r: %d cells, contamination %.4f", label, len(cells), contamination
        )
        if scale <= 0:
            continue

        size_factors = np.zeros(matrix.bcs_dim)
        size_factors[cells] = totals[cells] / totals[cells].mean()
        affected = (removed > 0) & (mean_counts > 0)
        in_cluster = np.zeros(matrix.bcs_dim, dtype=bool)
        in_cluster[cells] = True
        entries = np.flatnonzero(in_cluster[entry_cols] & affected[entry_rows])
        if len(entries) == 0:
            continue
        sf = size_factors[entry_cols[entries]]
        rows = entry_rows[entries]
        new_data[entries] = quantile_remap(
            m.data[entries], sf * mean_counts[rows], sf * corrected[rows], dispersion
        )

    corrected_m = sp_sparse.csc_matrix(
        (new_data, m.indices.copy(), m.indptr.copy()), shape=m.shape
    )
    corrected_m.eliminate_zeros()
    clusters_df = pd.DataFrame.from_dict(
        summary, orient="index", columns=[N_CELLS_COL, SCALE_COL, CONTAMINATION_COL]
    )
    clusters_df.index.name = "cluster"
    return ContaminationResult(matrix=matrix.with_counts(corrected_m), clusters=clusters_df)
