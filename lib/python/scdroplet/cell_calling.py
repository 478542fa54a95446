#!/usr/bin/env python
#
# Copyright (c) 2024 10X Genomics, Inc. All rights reserved.
#

"""Functions for calling cell-associated barcodes against the ambient profile."""

from __future__ import annotations

import logging
from typing import NamedTuple

import numpy as np
import pandas as pd
import scipy.stats as sp_stats

import scdroplet.stats as sd_stats
from scdroplet.ambient import (
    AmbientProfile,
    compute_lower,
    estimate_ambient_profile,
    profile_from_values,
)
from scdroplet.barcode_ranks import barcode_ranks
from scdroplet.config import PipelineConfig
from scdroplet.exceptions import InsufficientAmbientDataError
from scdroplet.matrix import CountMatrix

# Default number of background simulations to make
NUM_SIMS = 10000

# Maximum adjusted p-value to call a barcode as non-ambient
DEFAULT_FDR = 0.001

TOTAL_COL = "Total"
LOGPROB_COL = "LogProb"
PVALUE_COL = "PValue"
LIMITED_COL = "Limited"
FDR_COL = "FDR"
IS_CELL_COL = "IsCell"

NULL_HISTOGRAM_BINS = 20


class EmptyDropsResult(NamedTuple):
    table: pd.DataFrame  # One row per barcode (Total, LogProb, PValue, Limited, FDR, IsCell)
    profile: AmbientProfile  # Ambient profile the barcodes were tested against
    alpha: float | None  # Dirichlet overdispersion, None for the multinomial test
    retain: float | None  # Total at or above which barcodes were always called

    @property
    def cell_bcs(self) -> list[str]:
        return self.table.index[self.table[IS_CELL_COL]].tolist()


class NullDiagnostics(NamedTuple):
    pvalues: pd.Series  # Monte Carlo p-values of the presumed-empty barcodes
    histogram: pd.DataFrame  # Counts of those p-values over equal-width bins of [0, 1]
    ks_statistic: float  # Kolmogorov-Smirnov distance from U(0, 1)
    ks_pvalue: float


def _resolve_retain(retain, umis_per_bc, lower) -> float | None:
    if retain is None:
        return None
    if retain == "knee":
        knee = barcode_ranks(umis_per_bc, lower=lower).knee
        logging.info("Retaining barcodes at or above the knee (%s)", knee)
        return None if np.isnan(knee) else knee
    return float(retain)


def _dirichlet_alpha(matrix: CountMatrix, profile: AmbientProfile, alpha):
    if np.any(profile.proportions <= 0):
        raise ValueError("The Dirichlet-multinomial test needs a strictly positive ambient profile")
    if alpha is None:
        if len(profile.ambient_bcs) == 0:
            raise InsufficientAmbientDataError(
                "Cannot estimate overdispersion without ambient barcodes; supply alpha"
            )
        ambient_mat = matrix.m[profile.eval_features, :][:, profile.ambient_bcs]
        alpha = sd_stats.estimate_dirichlet_overdispersion(ambient_mat, profile.proportions)
    return float(alpha)


def _observed_loglk(eval_mat, profile: AmbientProfile, totals, alpha):
    if alpha is None:
        return sd_stats.eval_multinomial_loglikelihoods(eval_mat, profile.logp, totals)
    return sd_stats.eval_dirichlet_multinomial_loglikelihoods(
        eval_mat, alpha * profile.proportions, totals
    )


def _monte_carlo_pvalues(matrix, profile, bc_indices, iterations, seed, alpha, n_workers, chunk_size):
    totals = matrix.get_counts_per_bc()[bc_indices]
    eval_mat = matrix.m[profile.eval_features, :][:, bc_indices]
    obs_loglk = _observed_loglk(eval_mat, profile, totals, alpha)
    num_at_most = sd_stats.count_simulated_at_most(
        profile.proportions,
        totals,
        obs_loglk,
        num_sims=iterations,
        seed=seed,
        alpha=None if alpha is None else alpha * profile.proportions,
        chunk_size=chunk_size,
        n_workers=n_workers,
    )
    pvalues, limited = sd_stats.compute_ambient_pvalues(num_at_most, iterations)
    return obs_loglk, pvalues, limited


def test_empty_drops(
    matrix: CountMatrix,
    profile: AmbientProfile,
    *,
    iterations: int = NUM_SIMS,
    seed: int = 0,
    method: str = "multinomial",
    alpha: float | None = None,
    retain: int | str | None = None,
    n_workers: int = 1,
    chunk_size: int = sd_stats.SIM_CHUNK_SIZE,
) -> EmptyDropsResult:
    """Test every barcode above profile.lower for deviation from the ambient profile.

    The statistic is the (Dirichlet-)multinomial log-likelihood of the barcode's
    counts under the ambient profile; the p-value is the fraction of simulated
    ambient barcodes of the same total with a likelihood at most as large, with
    a floor of 1 / (iterations + 1). Barcodes at or below profile.lower are not
    tested and get NaN p-values.

    Args:
      matrix: Full expression matrix
      profile: Ambient profile, including the lower threshold
      iterations: Number of Monte Carlo simulations
      seed: Seed for the simulation streams
      method: Either "multinomial" or "dirichlet"
      alpha: Dirichlet overdispersion; estimated from the ambient barcodes if None
      retain: Barcodes with totals at or above this (or the "knee") get p-value 0
      n_workers: Threads used for the simulations
      chunk_size: Simulations per random stream

    Returns:
      EmptyDropsResult without FDR or calls (see adjust_fdr and call_cells)
    """
    assert method in ["dirichlet", "multinomial"]
    umis_per_bc = matrix.get_counts_per_bc()
    tested = np.flatnonzero((umis_per_bc > profile.lower) & (umis_per_bc > 0))
    logging.info(
        "Testing %d of %d barcodes with totals above %d",
        len(tested),
        matrix.bcs_dim,
        profile.lower,
    )

    if method == "dirichlet":
        alpha = _dirichlet_alpha(matrix, profile, alpha)
    else:
        alpha = None

    obs_loglk, pvalues, limited = _monte_carlo_pvalues(
        matrix, profile, tested, iterations, seed, alpha, n_workers, chunk_size
    )

    retain_total = _resolve_retain(retain, umis_per_bc, profile.lower)
    if retain_total is not None:
        pvalues[umis_per_bc[tested] >= retain_total] = 0.0

    table = pd.DataFrame(
        {
            TOTAL_COL: umis_per_bc,
            LOGPROB_COL: np.nan,
            PVALUE_COL: np.nan,
            LIMITED_COL: pd.array([pd.NA] * matrix.bcs_dim, dtype="boolean"),
        },
        index=pd.Index(matrix.bcs, name="barcode"),
    )
    table.iloc[tested, table.columns.get_loc(LOGPROB_COL)] = obs_loglk
    table.iloc[tested, table.columns.get_loc(PVALUE_COL)] = pvalues
    table.iloc[tested, table.columns.get_loc(LIMITED_COL)] = limited

    if len(tested):
        logging.info("Limited p-values: %d of %d", int(limited.sum()), len(tested))
    return EmptyDropsResult(table=table, profile=profile, alpha=alpha, retain=retain_total)


# pytest should not collect the function above as a test
test_empty_drops.__test__ = False


def adjust_fdr(result: EmptyDropsResult) -> EmptyDropsResult:
    """Add Benjamini-Hochberg adjusted p-values over the tested barcodes only."""
    table = result.table.copy()
    table[FDR_COL] = sd_stats.adjust_pvalue_bh(table[PVALUE_COL].to_numpy())
    return result._replace(table=table)


def call_cells(result: EmptyDropsResult, fdr_threshold: float = DEFAULT_FDR) -> EmptyDropsResult:
    """Call barcodes with FDR at or below the threshold as cells."""
    if FDR_COL not in result.table.columns:
        result = adjust_fdr(result)
    table = result.table.copy()
    table[IS_CELL_COL] = (table[FDR_COL] <= fdr_threshold).fillna(False).astype(bool)
    logging.info(
        "Non-ambient barcodes at FDR %s: %d", fdr_threshold, int(table[IS_CELL_COL].sum())
    )
    return result._replace(table=table)


def ambient_null_diagnostics(
    matrix: CountMatrix,
    profile: AmbientProfile,
    *,
    iterations: int = NUM_SIMS,
    seed: int = 0,
    alpha: float | None = None,
    n_workers: int = 1,
    bins: int = NULL_HISTOGRAM_BINS,
) -> NullDiagnostics:
    """P-values of the presumed-empty barcodes, to check the calibration of the null.

    A well-specified ambient model gives approximately uniform p-values here.
    These barcodes never enter the FDR computation.
    """
    umis_per_bc = matrix.get_counts_per_bc()
    empty = np.flatnonzero((umis_per_bc > 0) & (umis_per_bc <= profile.lower))
    if len(empty) == 0:
        raise InsufficientAmbientDataError("No presumed-empty barcodes with non-zero totals")

    _, pvalues, _ = _monte_carlo_pvalues(
        matrix, profile, empty, iterations, seed, alpha, n_workers, sd_stats.SIM_CHUNK_SIZE
    )
    counts, edges = np.histogram(pvalues, bins=bins, range=(0.0, 1.0))
    histogram = pd.DataFrame({"lower": edges[:-1], "upper": edges[1:], "count": counts})
    ks = sp_stats.kstest(pvalues, "uniform")
    logging.info("Ambient p-value KS statistic: %.4f (p = %.3g)", ks.statistic, ks.pvalue)
    return NullDiagnostics(
        pvalues=pd.Series(pvalues, index=matrix.bcs[empty], name=PVALUE_COL),
        histogram=histogram,
        ks_statistic=float(ks.statistic),
        ks_pvalue=float(ks.pvalue),
    )


def get_ambient_profile(matrix: CountMatrix, config: PipelineConfig) -> AmbientProfile:
    """The supplied ambient profile if any, else one estimated from the matrix."""
    if config.ambient_profile is not None:
        umis_per_bc = matrix.get_counts_per_bc()
        lower = compute_lower(umis_per_bc, config.lower, config.by_rank)
        return profile_from_values(matrix, config.ambient_profile, lower=lower)
    return estimate_ambient_profile(
        matrix, lower=config.lower, by_rank=config.by_rank, good_turing=config.good_turing
    )


def empty_drops(matrix: CountMatrix, config: PipelineConfig | None = None) -> EmptyDropsResult:
    """Estimate the ambient profile, test every barcode against it and call cells."""
    if config is None:
        config = PipelineConfig()
    profile = get_ambient_profile(matrix, config)
    result = test_empty_drops(
        matrix,
        profile,
        iterations=config.iterations,
        seed=config.seed,
        method=config.method,
        alpha=config.alpha,
        retain=config.retain,
        n_workers=config.n_workers,
    )
    return call_cells(adjust_fdr(result), config.fdr_threshold)
