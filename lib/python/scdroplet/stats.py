#!/usr/bin/env python
#
# Copyright (c) 2024 10X Genomics, Inc. All rights reserved.
#
"""Likelihoods, Monte Carlo simulation and p-value helpers for ambient testing."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor

import numpy as np
from scipy import optimize
from scipy.special import betaln, gammaln

# Number of simulations drawn from one generator
SIM_CHUNK_SIZE = 1000

# Search bounds for the Dirichlet overdispersion parameter
ALPHA_BOUNDS = (0.001, 10000.0)


def robust_divide(a, b) -> float:
    """Handles 0 division and conversion to floats automatically."""
    a = float(a)
    b = float(b)
    if b == 0:
        return float("NaN")
    return a / b


def incremental_counts_from_sample(sample_draws: np.ndarray) -> np.ndarray:
    """Number of times each draw's feature has been seen, up to and including that draw.

    Turns [1, 1, 2, 1, 0, 2, 1, 3] into [1, 2, 1, 3, 1, 2, 4, 1].
    """
    n = len(sample_draws)
    if n == 0:
        return np.zeros(0, dtype=np.int64)
    order = np.argsort(sample_draws, kind="stable")
    sorted_draws = sample_draws[order]
    is_start = np.concatenate(([True], sorted_draws[1:] != sorted_draws[:-1]))
    group_start = np.maximum.accumulate(np.where(is_start, np.arange(n), 0))
    inc_counts = np.empty(n, dtype=np.int64)
    inc_counts[order] = np.arange(n) - group_start + 1
    return inc_counts


def eval_multinomial_loglikelihoods(matrix, logp: np.ndarray, n=None) -> np.ndarray:
    """Computes the multinomial log-likelihood for many barcodes.

    For a barcode with count x_i of feature i:
    l = log(gamma(sum_i(x_i) + 1)) - sum_i(log(gamma(x_i + 1))) + sum_i(log(p_i) * x_i)

    Zero counts do not contribute, so only the stored entries of the sparse
    columns are visited.

    Args:
      matrix (scipy.sparse.csc_matrix): Matrix of counts (feature x barcode)
      logp (np.ndarray(float)): log of the multinomial probability of each feature
      n (np.ndarray(int), optional): Precomputed total count per barcode

    Returns:
      loglk (np.ndarray(float)): Log-likelihood for each barcode
    """
    num_bcs = matrix.shape[1]
    loglk = np.zeros(num_bcs, dtype=float)
    if n is None:
        n = np.asarray(matrix.sum(axis=0)).ravel()

    consts = gammaln(np.asarray(n, dtype=float) + 1)
    with np.errstate(invalid="ignore"):
        for i in range(num_bcs):
            start, end = matrix.indptr[i], matrix.indptr[i + 1]
            row = matrix.data[start:end]
            short_logp = logp[matrix.indices[start:end]]
            loglk[i] = consts[i] - gammaln(row + 1).sum() + (row * short_logp).sum()
    return loglk


def eval_dirichlet_multinomial_loglikelihoods(matrix, alpha: np.ndarray, n=None) -> np.ndarray:
    """Computes the Dirichlet-multinomial log-likelihood for many barcodes.

    l = log(n) + log(beta(sum_i(a_i), n)) - sum_i(log(x_i)) - sum_i(log(beta(a_i, x_i)))
    where the sums run over the non-zero x_i.
    """
    num_bcs = matrix.shape[1]
    loglk = np.zeros(num_bcs, dtype=float)
    if n is None:
        n = np.asarray(matrix.sum(axis=0)).ravel()
    n = np.asarray(n, dtype=float)
    consts = np.log(n) + betaln(np.sum(alpha), n)
    for i in range(num_bcs):
        start, end = matrix.indptr[i], matrix.indptr[i + 1]
        row = matrix.data[start:end]
        short_alpha = alpha[matrix.indices[start:end]]
        loglk[i] = consts[i] - np.log(row).sum() - betaln(short_alpha, row).sum()
    return loglk


def eval_multinomial_loglikelihood_cumulative(sample_draws, logp) -> np.ndarray:
    """Multinomial log-likelihood of the first k draws, for every k.

    With R_i the number of times draw i's feature has been seen so far, each
    draw adds log(i) - log(R_i) + log(p_i).
    """
    marginal_counts = incremental_counts_from_sample(sample_draws)
    nvals = np.arange(1, len(sample_draws) + 1)
    return np.cumsum(np.log(nvals) - np.log(marginal_counts) + logp[sample_draws])


def eval_dirichlet_multinomial_loglikelihood_cumulative(sample_draws, alpha) -> np.ndarray:
    """Dirichlet-multinomial log-likelihood of the first k draws, for every k.

    Each draw adds log(i) - log(R_i) - log(i + sum(a) - 1) + log(R_i + a_i - 1).
    """
    marginal_counts = incremental_counts_from_sample(sample_draws)
    nvals = np.arange(1, len(sample_draws) + 1)
    alpha_0 = np.sum(alpha)
    loglk = (
        np.log(nvals)
        - np.log(marginal_counts)
        - np.log(nvals + alpha_0 - 1)
        + np.log((marginal_counts - 1) + alpha[sample_draws])
    )
    return np.cumsum(loglk)


def estimate_dirichlet_overdispersion(matrix, p: np.ndarray) -> float:
    """Best-fit scaling of the ambient profile for a Dirichlet-multinomial model.

    Args:
      matrix (scipy.sparse.csc_matrix): Counts of the ambient barcodes (feature x barcode)
      p (np.ndarray(float)): The ambient probability of each feature

    Returns:
      alpha (float): Overdispersion maximizing the ambient log-likelihood
    """
    umis_per_bc = np.asarray(matrix.sum(axis=0)).ravel()
    keep = np.flatnonzero(umis_per_bc)
    matrix = matrix[:, keep]
    umis_per_bc = umis_per_bc[keep]

    def neg_loglk(alpha):
        return -np.sum(eval_dirichlet_multinomial_loglikelihoods(matrix, alpha * p, umis_per_bc))

    result = optimize.minimize_scalar(neg_loglk, bounds=ALPHA_BOUNDS, method="bounded")
    if not result.success:
        raise ValueError(f"Could not find valid alpha: {result.message}")
    logging.info("Alpha = %s maximizes the likelihood of the ambient barcodes", result.x)
    return float(result.x)


def spawn_generators(seed: int, num: int) -> list[np.random.Generator]:
    """Independent generators; the k-th one depends only on (seed, k)."""
    return [np.random.default_rng(s) for s in np.random.SeedSequence(seed).spawn(num)]


def draw_multinomial_sample(rng: np.random.Generator, num_draws: int, p_cumulative) -> np.ndarray:
    """Feature indices of num_draws multinomial draws.

    Uniform numbers are mapped through the cumulative probabilities; side="right"
    never lands on a feature with zero probability.
    """
    return np.searchsorted(p_cumulative, rng.random(size=num_draws), side="right")


def _count_at_most(sim_loglk, distinct_idx, obs_loglk) -> np.ndarray:
    """For each barcode, the number of simulated values <= its observed value."""
    counts = np.zeros(len(obs_loglk), dtype=np.int64)
    if len(obs_loglk) == 0:
        return counts
    sorted_sims = np.sort(sim_loglk, axis=1)
    order = np.argsort(distinct_idx, kind="stable")
    group_starts = np.flatnonzero(np.diff(distinct_idx[order])) + 1
    for members in np.split(order, group_starts):
        row = distinct_idx[members[0]]
        counts[members] = np.searchsorted(sorted_sims[row], obs_loglk[members], side="right")
    return counts


def _simulate_chunk(rng, num_sims, p, distinct_n, distinct_idx, obs_loglk, alpha):
    max_n = int(distinct_n[-1])
    loglk = np.zeros((len(distinct_n), num_sims), dtype=float)
    if alpha is None:
        p_cumulative = np.cumsum(p)
        p_cumulative /= p_cumulative[-1]
        with np.errstate(divide="ignore"):
            logp = np.log(p)
        for i in range(num_sims):
            draw = draw_multinomial_sample(rng, max_n, p_cumulative)
            loglk[:, i] = eval_multinomial_loglikelihood_cumulative(draw, logp)[distinct_n - 1]
    else:
        for i in range(num_sims):
            probs = rng.dirichlet(alpha)
            draw = draw_multinomial_sample(rng, max_n, np.cumsum(probs) / np.sum(probs))
            loglk[:, i] = eval_dirichlet_multinomial_loglikelihood_cumulative(draw, alpha)[
                distinct_n - 1
            ]
    return _count_at_most(loglk, distinct_idx, obs_loglk)


def count_simulated_at_most(
    p: np.ndarray,
    umis_per_bc: np.ndarray,
    obs_loglk: np.ndarray,
    num_sims: int,
    seed: int,
    alpha: np.ndarray | None = None,
    chunk_size: int = SIM_CHUNK_SIZE,
    n_workers: int = 1,
) -> np.ndarray:
    """Monte Carlo count of simulated ambient log-likelihoods at or below the observed ones.

    Each simulation makes a single draw of size max(umis_per_bc) and reads
    the statistic for every smaller total off the cumulative log-likelihood,
    so the samples within one simulation are not independent across totals.

    Simulations are split into chunks of chunk_size, chunk k drawing from
    spawn_generators(seed, ...)[k]; the result does not depend on n_workers.

    Args:
      p (np.ndarray(float)): Ambient probability of each feature
      umis_per_bc (np.ndarray(int)): Total count of each tested barcode
      obs_loglk (np.ndarray(float)): Observed log-likelihood of each tested barcode
      num_sims (int): Number of simulations
      seed (int): Seed of the simulation streams
      alpha (np.ndarray(float), optional): Dirichlet parameters; multinomial if None
      chunk_size (int): Simulations per generator
      n_workers (int): Threads used to run the chunks

    Returns:
      counts (np.ndarray(int)): Per barcode, simulations with log-likelihood <= observed
    """
    umis_per_bc = np.asarray(umis_per_bc, dtype=np.int64)
    assert len(umis_per_bc) == len(obs_loglk)
    if len(umis_per_bc) == 0 or num_sims == 0:
        return np.zeros(len(umis_per_bc), dtype=np.int64)
    assert np.all(umis_per_bc > 0)

    distinct_n, distinct_idx = np.unique(umis_per_bc, return_inverse=True)
    chunk_sizes = [min(chunk_size, num_sims - start) for start in range(0, num_sims, chunk_size)]
    rngs = spawn_generators(seed, len(chunk_sizes))
    logging.info(
        "Simulating %d draws up to %d counts in %d chunks",
        num_sims,
        distinct_n[-1],
        len(chunk_sizes),
    )

    def run(k):
        return _simulate_chunk(
            rngs[k], chunk_sizes[k], p, distinct_n, distinct_idx.ravel(), obs_loglk, alpha
        )

    if n_workers > 1:
        with ThreadPoolExecutor(max_workers=n_workers) as pool:
            per_chunk = list(pool.map(run, range(len(chunk_sizes))))
    else:
        per_chunk = [run(k) for k in range(len(chunk_sizes))]
    return np.sum(per_chunk, axis=0)


def compute_ambient_pvalues(num_at_most: np.ndarray, num_sims: int) -> tuple[np.ndarray, np.ndarray]:
    """Monte Carlo p-values and their Limited flags.

    Args:
      num_at_most (np.ndarray(int)): Simulations at least as extreme as each barcode
      num_sims (int): Number of simulations

    Returns:
      pvalues (np.ndarray(float)): (1 + num_at_most) / (1 + num_sims)
      limited (np.ndarray(bool)): True where no simulation was as extreme
    """
    num_at_most = np.asarray(num_at_most)
    pvalues = (1.0 + num_at_most) / (1.0 + num_sims)
    return pvalues, num_at_most == 0


def adjust_pvalue_bh(p) -> np.ndarray:
    """Multiple testing correction of p-values using the Benjamini-Hochberg procedure.

    NaN entries are not counted as tests and stay NaN.
    """
    p = np.asarray(p, dtype=float)
    qvalues = np.full(len(p), np.nan)
    tested = np.flatnonzero(~np.isnan(p))
    if len(tested) == 0:
        return qvalues
    sub = p[tested]
    descending = np.argsort(sub, kind="stable")[::-1]
    # q = p * N / k where p = p-value, N = # tests, k = p-value rank
    scale = float(len(sub)) / np.arange(len(sub), 0, -1)
    qual = np.minimum(1, np.minimum.accumulate(scale * sub[descending]))
    qvalues[tested[descending]] = qual
    return qvalues
