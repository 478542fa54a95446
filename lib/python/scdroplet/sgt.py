#!/usr/bin/env python
#
# Copyright (c) 2024 10X Genomics, Inc. All rights reserved.
#

"""Simple Good-Turing frequency smoothing.

Follows::

  William A. Gale & Geoffrey Sampson (1995) Good-turing frequency estimation without tears,
  Journal of Quantitative Linguistics, 2:3, 217-237, DOI: 10.1080/09296179508590051
"""

from __future__ import annotations

import logging

import numpy as np
import scipy.stats as sp_stats

# Minimum number of distinct frequency classes needed to fit the log-log line
MIN_FREQUENCY_CLASSES = 10

# Critical value for switching from Turing to linear Good-Turing estimates
SWITCH_CONFIDENCE = 1.96


class SimpleGoodTuringError(Exception):
    pass


def _smoothed_nr(r: np.ndarray, nr: np.ndarray) -> np.ndarray:
    """Averages each n_r over the gap to its neighbouring non-empty classes (Z_r)."""
    prev_r = np.concatenate(([0.0], r[:-1]))
    next_r = np.concatenate((r[1:], [2.0 * r[-1] - prev_r[-1]]))
    return 2.0 * nr / (next_r - prev_r)


def good_turing_rstar(r: np.ndarray, nr: np.ndarray) -> tuple[np.ndarray, float]:
    """Compute the adjusted frequencies r* for each observed frequency class.

    Args:
      r (np.ndarray(int)): Sorted distinct non-zero frequencies
      nr (np.ndarray(int)): Number of items observed with each frequency

    Returns:
      (rstar, p0): adjusted frequencies, and the total probability of unseen items
    """
    r = r.astype(float)
    nr = nr.astype(float)
    total = np.sum(r * nr)
    p0 = nr[0] / total if r[0] == 1 else 0.0

    slope, intercept, _, _, _ = sp_stats.linregress(np.log(r), np.log(_smoothed_nr(r, nr)))
    if slope >= -1:
        # r* = r (the MLE) when the fitted line is too flat
        logging.info("Good-Turing slope %.3f is not below -1; using MLE for smoothed counts", slope)
        slope = -1.0
    lgt = r * np.power(1.0 + 1.0 / r, 1.0 + slope)

    rstar = np.empty(len(r))
    use_turing = True
    for i in range(len(r)):
        has_next = i + 1 < len(r) and r[i + 1] == r[i] + 1
        if use_turing and has_next:
            turing = (r[i] + 1) * nr[i + 1] / nr[i]
            spread = SWITCH_CONFIDENCE * np.sqrt(
                (r[i] + 1) ** 2 * nr[i + 1] / nr[i] ** 2 * (1 + nr[i + 1] / nr[i])
            )
            if abs(turing - lgt[i]) > spread:
                rstar[i] = turing
                continue
        use_turing = False
        rstar[i] = lgt[i]
    return rstar, p0


def sgt_proportions(frequencies: np.ndarray) -> tuple[np.ndarray, float]:
    """Smoothed proportions for a vector of non-zero item frequencies.

    Args:
      frequencies (np.array(int)): Nonzero frequencies of items

    Returns:
        pstar (np.array[float]): The adjusted proportion of each item
        p0 (float): The total probability of unobserved items
    """
    frequencies = np.asarray(frequencies, dtype=np.int64)
    if len(frequencies) == 0:
        raise ValueError("Input frequency vector is empty")
    if np.any(frequencies <= 0):
        raise ValueError("Frequencies must be greater than zero")

    freqfreqs = np.bincount(frequencies)
    r = np.flatnonzero(freqfreqs)
    if len(r) < MIN_FREQUENCY_CLASSES:
        raise SimpleGoodTuringError(
            "Too few non-zero frequency classes (%d < %d)" % (len(r), MIN_FREQUENCY_CLASSES)
        )

    rstar, p0 = good_turing_rstar(r, freqfreqs[r])
    rstar_by_freq = np.zeros(len(freqfreqs))
    rstar_by_freq[r] = rstar
    pstar = (1.0 - p0) * rstar_by_freq[frequencies] / np.sum(freqfreqs[r] * rstar)

    assert np.isclose(p0 + pstar.sum(), 1.0)
    return pstar, p0
