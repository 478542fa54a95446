#
# Copyright (c) 2024 10X Genomics, Inc. All rights reserved.
#
"""Shared helpers for the scdroplet unit tests."""

from __future__ import annotations

import shutil
import tempfile
import unittest

import numpy as np

from scdroplet.matrix import CountMatrix


class UnitTestBase(unittest.TestCase):
    """Test case with a scratch directory removed after each test."""

    def setUp(self):
        self.tmp_dir = tempfile.mkdtemp(prefix="scdroplet_test_")

    def tearDown(self):
        shutil.rmtree(self.tmp_dir, ignore_errors=True)

    def assertArrayEqual(self, a, b):  # pylint: disable=invalid-name
        np.testing.assert_array_equal(a, b)


def simulate_droplets(
    seed: int = 0,
    n_genes: int = 200,
    n_empty: int = 2000,
    n_cells: int = 100,
    empty_range: tuple[int, int] = (5, 100),
    cell_range: tuple[int, int] = (500, 2000),
    ambient_alpha: float = 1.0,
    ambient_frac: float = 0.0,
):
    """Empty droplets drawn from one ambient profile and cells from another.

    ambient_alpha is the Dirichlet concentration of the ambient profile; each
    cell draws ambient_frac of its counts from the ambient profile.

    Returns:
        (matrix, ambient_p, is_cell): barcodes are empties first, then cells
    """
    rng = np.random.default_rng(seed)
    ambient_p = rng.dirichlet(np.full(n_genes, ambient_alpha))
    cell_p = rng.dirichlet(np.full(n_genes, 0.3))
    empty_totals = rng.integers(empty_range[0], empty_range[1] + 1, size=n_empty)
    cell_totals = rng.integers(cell_range[0], cell_range[1] + 1, size=n_cells)
    empties = np.array([rng.multinomial(n, ambient_p) for n in empty_totals], dtype=np.int64)
    n_ambient = np.round(ambient_frac * cell_totals).astype(np.int64)
    cells = np.array(
        [rng.multinomial(n - k, cell_p) for n, k in zip(cell_totals, n_ambient)], dtype=np.int64
    )
    if ambient_frac > 0:
        cells += np.array([rng.multinomial(k, ambient_p) for k in n_ambient], dtype=np.int64)
    empties = empties.reshape(-1, n_genes).T
    cells = cells.reshape(-1, n_genes).T
    counts = np.hstack([empties, cells])
    is_cell = np.concatenate([np.zeros(n_empty, dtype=bool), np.ones(n_cells, dtype=bool)])
    bcs = [f"EMPTY{i}" for i in range(n_empty)] + [f"CELL{i}" for i in range(n_cells)]
    genes = [f"G{i}" for i in range(n_genes)]
    return CountMatrix.from_dense(counts, genes, bcs), ambient_p, is_cell


def simulate_hashing(
    seed: int = 0,
    n_tags: int = 5,
    n_cells: int = 300,
    signal_range: tuple[int, int] = (150, 250),
    ambient_mean: float = 3.0,
    n_doublets: int = 0,
):
    """Hash tag counts with one dominant tag per cell, plus optional doublets.

    Returns:
        (tag_matrix, dominant): dominant tag index per cell, -1 for doublets
    """
    rng = np.random.default_rng(seed)
    n = n_cells + n_doublets
    counts = rng.poisson(ambient_mean, size=(n_tags, n))
    dominant = np.arange(n) % n_tags
    signal = rng.integers(signal_range[0], signal_range[1] + 1, size=n)
    counts[dominant, np.arange(n)] += signal
    for j in range(n_cells, n):
        other = (dominant[j] + 1) % n_tags
        counts[other, j] += rng.integers(signal_range[0], signal_range[1] + 1)
        dominant[j] = -1
    tags = [f"TAG{i}" for i in range(n_tags)]
    bcs = [f"BC{i}" for i in range(n)]
    return CountMatrix.from_dense(counts, tags, bcs), dominant
