#!/usr/bin/env python
#
# Copyright (c) 2024 10X Genomics, Inc. All rights reserved.
#

"""Removal of molecules swapped between samples sequenced together.

A molecule is a unique (barcode, umi, feature) combination. When the same
molecule shows up in several multiplexed samples, it is attributed to the
sample holding most of its reads and every other copy is a swapping artifact.
"""

from __future__ import annotations

import logging
from typing import NamedTuple

import numpy as np
import pandas as pd
import scipy.sparse as sp_sparse

from scdroplet.matrix import CountMatrix

DEFAULT_MIN_FRAC = 0.9

SAMPLE_COL = "sample"
BARCODE_COL = "barcode"
UMI_COL = "umi"
FEATURE_COL = "feature"
READS_COL = "reads"
MOLECULE_KEY = [BARCODE_COL, UMI_COL, FEATURE_COL]

MOLECULES_COL = "molecules"
KEPT_COL = "kept"
SWAPPED_COL = "swapped"
SWAPPED_FRAC_COL = "swapped_frac"


class SwappedDropsResult(NamedTuple):
    cleaned: dict[str, CountMatrix]  # Per sample, molecules attributed to it
    swapped: dict[str, CountMatrix]  # Per sample, molecules attributed elsewhere
    summary: pd.DataFrame  # molecules, kept, swapped, swapped_frac per sample


def _check_molecules(molecules: pd.DataFrame):
    missing = [c for c in [SAMPLE_COL, *MOLECULE_KEY, READS_COL] if c not in molecules.columns]
    if missing:
        raise ValueError(f"Molecule table is missing columns: {missing}")
    if (molecules[READS_COL] < 0).any():
        raise ValueError("Read counts must be non-negative")


def _sample_matrix(copies: pd.DataFrame, features: pd.Index, bcs: pd.Index) -> CountMatrix:
    rows = features.get_indexer(copies[FEATURE_COL])
    cols = bcs.get_indexer(copies[BARCODE_COL])
    m = sp_sparse.coo_matrix(
        (np.ones(len(copies), dtype=np.int64), (rows, cols)), shape=(len(features), len(bcs))
    )
    return CountMatrix(features, bcs, m.tocsc())


def swapped_drops(molecules: pd.DataFrame, min_frac: float = DEFAULT_MIN_FRAC) -> SwappedDropsResult:
    """Split each sample's molecules into those it owns and swapped copies.

    Args:
        molecules: One row per molecule copy with sample, barcode, umi, feature
            and reads columns; duplicate rows have their reads summed
        min_frac: Minimum fraction of a molecule's reads for a sample to own it.
            Molecules with no such sample are swapped in every sample.

    Returns:
        SwappedDropsResult; all matrices share the sorted feature axis, and each
        sample's two matrices share its sorted barcodes.
    """
    if not 0.5 < min_frac <= 1:
        raise ValueError(f"min_frac must be in (0.5, 1], got {min_frac}")
    _check_molecules(molecules)

    copies = molecules.groupby([*MOLECULE_KEY, SAMPLE_COL], sort=False, as_index=False)[
        READS_COL
    ].sum()
    grouped = copies.groupby(MOLECULE_KEY, sort=False)[READS_COL]
    total_reads = grouped.transform("sum")
    with np.errstate(divide="ignore", invalid="ignore"):
        frac = copies[READS_COL] / total_reads
    copies["owned"] = (frac >= min_frac).fillna(False)

    features = pd.Index(np.sort(copies[FEATURE_COL].astype(str).unique()))
    copies[FEATURE_COL] = copies[FEATURE_COL].astype(str)
    copies[BARCODE_COL] = copies[BARCODE_COL].astype(str)

    cleaned, swapped, summary = {}, {}, {}
    for sample, sample_copies in copies.groupby(SAMPLE_COL, sort=True):
        bcs = pd.Index(np.sort(sample_copies[BARCODE_COL].unique()))
        owned = sample_copies["owned"].to_numpy()
        cleaned[sample] = _sample_matrix(sample_copies[owned], features, bcs)
        swapped[sample] = _sample_matrix(sample_copies[~owned], features, bcs)
        n_swapped = int((~owned).sum())
        summary[sample] = (len(sample_copies), int(owned.sum()), n_swapped, n_swapped / len(sample_copies))
        logging.info(
            "Sample %s: %d of %d molecules swapped", sample, n_swapped, len(sample_copies)
        )

    summary_df = pd.DataFrame.from_dict(
        summary, orient="index", columns=[MOLECULES_COL, KEPT_COL, SWAPPED_COL, SWAPPED_FRAC_COL]
    )
    summary_df.index.name = SAMPLE_COL
    return SwappedDropsResult(cleaned=cleaned, swapped=swapped, summary=summary_df)
