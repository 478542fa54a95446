#!/usr/bin/env python
#
# Copyright (c) 2024 10X Genomics, Inc. All rights reserved.
#

"""Estimation of the ambient RNA profile from presumed-empty barcodes."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from scdroplet import sgt
from scdroplet.exceptions import InsufficientAmbientDataError
from scdroplet.matrix import CountMatrix

# Barcodes at or below this total are assumed to be empty droplets
DEFAULT_LOWER = 100


@dataclass(frozen=True)
class AmbientProfile:
    """Probability of each evaluated feature in the ambient pool.

    Attributes:
        proportions: probabilities over eval_features, summing to 1
        eval_features: indices into the matrix features covered by the profile
        ambient_bcs: barcode indices pooled to build the profile (empty if supplied)
        lower: barcodes with totals at or below this were not tested
    """

    proportions: np.ndarray
    eval_features: np.ndarray
    ambient_bcs: np.ndarray
    lower: int

    @property
    def logp(self) -> np.ndarray:
        with np.errstate(divide="ignore"):
            return np.log(self.proportions)

    def full_proportions(self, features_dim: int) -> np.ndarray:
        """The profile spread over all features, with zeros outside eval_features."""
        full = np.zeros(features_dim, dtype=float)
        full[self.eval_features] = self.proportions
        return full


def compute_lower(umis_per_bc: np.ndarray, lower: int = DEFAULT_LOWER, by_rank: int | None = None) -> int:
    """The total at or below which barcodes are assumed empty.

    With by_rank=N, this is the total of the (N+1)-th largest barcode, so the top
    N barcodes are never pooled.
    """
    if by_rank is None:
        return int(lower)
    if by_rank < 0:
        raise ValueError("by_rank must be non-negative")
    if by_rank >= len(umis_per_bc):
        raise InsufficientAmbientDataError(
            f"by_rank={by_rank} excludes all {len(umis_per_bc)} barcodes"
        )
    return int(np.sort(umis_per_bc)[::-1][by_rank])


def get_ambient_bcs(umis_per_bc: np.ndarray, lower: int, by_rank: int | None = None) -> np.ndarray:
    """Indices of non-zero barcodes at or below lower, excluding the by_rank top barcodes."""
    candidates = (umis_per_bc <= lower) & (umis_per_bc > 0)
    if by_rank is not None and by_rank > 0:
        top = np.argsort(umis_per_bc, kind="stable")[::-1][:by_rank]
        candidates[top] = False
    return np.flatnonzero(candidates)


def _smooth_profile(counts: np.ndarray) -> np.ndarray:
    """Good-Turing proportions; unseen features share the unobserved mass equally."""
    observed = np.flatnonzero(counts)
    try:
        p_smoothed, p0 = sgt.sgt_proportions(counts[observed])
    except sgt.SimpleGoodTuringError as e:
        raise InsufficientAmbientDataError(f"Cannot smooth ambient profile: {e}") from e

    n0 = len(counts) - len(observed)
    profile = np.zeros(len(counts), dtype=float)
    profile[observed] = p_smoothed
    if n0 == 0:
        profile /= profile.sum()
    else:
        profile[counts == 0] = p0 / n0
    return profile


def estimate_ambient_profile(
    matrix: CountMatrix,
    lower: int = DEFAULT_LOWER,
    by_rank: int | None = None,
    good_turing: bool = True,
) -> AmbientProfile:
    """Estimate an ambient RNA profile from barcodes assumed to be empty.

    Args:
        matrix: Full feature-barcode matrix, including empty droplets
        lower: Barcodes with totals at or below this are pooled
        by_rank: If set, pool everything below the by_rank largest barcodes instead
        good_turing: Smooth the pooled counts so every evaluated feature has p > 0

    Returns:
        AmbientProfile over the features that are non-zero anywhere in the matrix
    """
    umis_per_bc = matrix.get_counts_per_bc()
    lower = compute_lower(umis_per_bc, lower, by_rank)
    ambient_bcs = get_ambient_bcs(umis_per_bc, lower, by_rank)
    logging.info("Pooling %d barcodes with totals <= %d as ambient", len(ambient_bcs), lower)
    if len(ambient_bcs) == 0:
        raise InsufficientAmbientDataError(
            f"No barcodes with a non-zero total at or below lower={lower}"
        )

    eval_features = np.flatnonzero(matrix.get_counts_per_feature())
    pooled = np.asarray(matrix.m[eval_features, :][:, ambient_bcs].sum(axis=1)).ravel()
    if pooled.sum() == 0:
        raise InsufficientAmbientDataError("Ambient barcodes contain no counts")

    if good_turing:
        proportions = _smooth_profile(pooled.astype(np.int64))
    else:
        proportions = pooled / pooled.sum()

    assert np.isclose(proportions.sum(), 1.0)
    return AmbientProfile(
        proportions=proportions,
        eval_features=eval_features,
        ambient_bcs=ambient_bcs,
        lower=lower,
    )


def profile_from_values(
    matrix: CountMatrix, values, lower: int = DEFAULT_LOWER
) -> AmbientProfile:
    """Wrap an externally supplied ambient profile over all features of the matrix.

    Args:
        matrix: The matrix the profile applies to
        values: Non-negative abundance per feature (a mapping by feature id or an
            array aligned with the matrix features); renormalized to sum to 1
        lower: Barcodes at or below this total are still excluded from testing
    """
    if isinstance(values, dict) or hasattr(values, "reindex"):
        lookup = dict(values.items())
        values = [lookup.get(fid, 0.0) for fid in matrix.feature_ids]
    values = np.asarray(values, dtype=float)
    if values.shape != (matrix.features_dim,):
        raise ValueError(
            f"Ambient profile has {len(values)} entries for {matrix.features_dim} features"
        )
    if np.any(values < 0) or not np.all(np.isfinite(values)):
        raise ValueError("Ambient profile must be finite and non-negative")
    if values.sum() <= 0:
        raise InsufficientAmbientDataError("Supplied ambient profile sums to zero")
    return AmbientProfile(
        proportions=values / values.sum(),
        eval_features=np.arange(matrix.features_dim),
        ambient_bcs=np.zeros(0, dtype=np.intp),
        lower=int(lower),
    )
