#!/usr/bin/env python
#
# Copyright (c) 2024 10X Genomics, Inc. All rights reserved.
#
# Unit tests for scdroplet.barcode_ranks
#

from __future__ import annotations

import numpy as np

import scdroplet.barcode_ranks as sd_ranks
import scdroplet.test as sd_test


class TestBarcodeRanks(sd_test.UnitTestBase):
    def test_knee_and_inflection(self):
        rng = np.random.default_rng(0)
        cells = rng.integers(3000, 6000, size=500)
        empties = rng.integers(1, 300, size=5000)
        totals = np.concatenate([cells, empties])
        ranks = sd_ranks.barcode_ranks(totals)
        # The steepest drop is between the smallest cell and the largest empty droplet
        self.assertAlmostEqual(ranks.inflection, cells.min(), places=6)
        self.assertGreaterEqual(ranks.knee, ranks.inflection)
        self.assertLessEqual(ranks.knee, cells.max() + 1e-6)
        self.assertEqual(ranks.lower, 100)

    def test_rank_table(self):
        totals = np.array([10, 300, 300, 50])
        ranks = sd_ranks.barcode_ranks(totals, bcs=["a", "b", "c", "d"])
        self.assertArrayEqual(ranks.table[sd_ranks.RANK_COL].to_numpy(), [4, 1.5, 1.5, 3])
        self.assertEqual(list(ranks.table.index), ["a", "b", "c", "d"])
        self.assertArrayEqual(ranks.table[sd_ranks.TOTAL_COL].to_numpy(), totals)

    def test_too_few_totals(self):
        ranks = sd_ranks.barcode_ranks(np.array([500, 500, 300, 20, 10]), lower=100)
        self.assertTrue(np.isnan(ranks.knee))
        self.assertTrue(np.isnan(ranks.inflection))

    def test_run_ranks(self):
        values, ranks = sd_ranks._run_ranks(np.array([5, 7, 7, 7, 2]))
        self.assertArrayEqual(values, [7, 5, 2])
        self.assertArrayEqual(ranks, [2, 4, 5])

    def test_spline_knots(self):
        self.assertEqual(sd_ranks.get_spline_num_knots(20), 20)
        self.assertLess(sd_ranks.get_spline_num_knots(10000), 300)
