#!/usr/bin/env python
#
# Copyright (c) 2024 10X Genomics, Inc. All rights reserved.
#
# Unit tests for scdroplet.qc
#

from __future__ import annotations

import numpy as np
import pandas as pd

import scdroplet.qc as sd_qc
import scdroplet.test as sd_test
from scdroplet.matrix import CountMatrix


class TestIsOutlier(sd_test.UnitTestBase):
    def test_both_sides(self):
        values = np.array([10, 11, 9, 10, 12, 8, 10, 100])
        self.assertArrayEqual(sd_qc.is_outlier(values).to_numpy(), [False] * 7 + [True])
        self.assertFalse(sd_qc.is_outlier(values, type="lower").any())
        self.assertTrue(sd_qc.is_outlier(values, type="higher").iloc[-1])

        thresholds = sd_qc.is_outlier(values, type="higher").attrs["thresholds"]
        self.assertEqual(thresholds.iloc[0]["lower"], -np.inf)
        self.assertAlmostEqual(thresholds.iloc[0]["higher"], 10 + 3 * 1.4826, places=3)

    def test_min_diff(self):
        values = np.array([10, 10, 10, 10, 11])
        self.assertTrue(sd_qc.is_outlier(values).iloc[-1])
        self.assertFalse(sd_qc.is_outlier(values, min_diff=2).any())

    def test_batch(self):
        values = np.array([10, 11, 9, 10, 12, 50, 100, 101, 99, 100, 102, 101])
        batch = ["A"] * 6 + ["B"] * 6
        outliers = sd_qc.is_outlier(values, batch=batch)
        self.assertArrayEqual(outliers.to_numpy(), [False] * 5 + [True] + [False] * 6)
        thresholds = outliers.attrs["thresholds"]
        self.assertEqual(list(thresholds.index), ["A", "B"])
        self.assertAlmostEqual(thresholds.loc["A", "higher"], 10.5 + 3 * 1.4826, places=3)

        with self.assertRaises(ValueError):
            sd_qc.is_outlier(values, batch=["A"])

    def test_log_scale(self):
        values = pd.Series([100, 110, 90, 105, 95, 1], index=[f"c{i}" for i in range(6)])
        outliers = sd_qc.is_outlier(values, type="lower", log=True)
        self.assertEqual(list(outliers.index), list(values.index))
        self.assertEqual(outliers[outliers].index.tolist(), ["c5"])
        lower = outliers.attrs["thresholds"].iloc[0]["lower"]
        self.assertTrue(1 < lower < 90)

    def test_invalid_type(self):
        with self.assertRaises(ValueError):
            sd_qc.is_outlier([1, 2, 3], type="upper")


class TestPerCellQc(sd_test.UnitTestBase):
    def test_metrics(self):
        counts = np.array([[1, 0, 5], [1, 0, 0], [8, 4, 0], [0, 6, 0]])
        matrix = CountMatrix.from_dense(counts, ["MT-1", "MT-2", "G1", "G2"], ["a", "b", "c"])
        metrics = sd_qc.per_cell_qc_metrics(
            matrix, subsets={"mito": ["MT-1", "MT-2"], "g": [False, False, True, True]}
        )
        self.assertEqual(list(metrics.index), ["a", "b", "c"])
        self.assertArrayEqual(metrics[sd_qc.SUM_COL], [10, 10, 5])
        self.assertArrayEqual(metrics[sd_qc.DETECTED_COL], [3, 2, 1])
        self.assertArrayEqual(metrics["subsets_mito_sum"], [2, 0, 5])
        self.assertArrayEqual(metrics["subsets_mito_detected"], [2, 0, 1])
        np.testing.assert_allclose(metrics["subsets_mito_percent"], [20.0, 0.0, 100.0])
        self.assertArrayEqual(metrics["subsets_g_sum"], [8, 10, 0])

    def test_quick_per_cell_qc(self):
        metrics = pd.DataFrame(
            {
                sd_qc.SUM_COL: [1000, 1100, 900, 1050, 950] * 4,
                sd_qc.DETECTED_COL: [500, 520, 480, 510, 490] * 4,
                "subsets_mito_percent": [5.0, 6.0, 4.0, 5.0, 6.0] * 4,
            },
            index=[f"c{i}" for i in range(20)],
        )
        metrics.iloc[0, 0] = 10
        metrics.iloc[0, 1] = 8
        metrics.iloc[3, 2] = 60.0
        filters = sd_qc.quick_per_cell_qc(metrics, percent_subsets=["mito"])
        self.assertEqual(
            list(filters.columns),
            [sd_qc.LOW_LIB_SIZE_COL, sd_qc.LOW_N_FEATURES_COL, "high_mito_percent", sd_qc.DISCARD_COL],
        )
        self.assertEqual(filters[filters[sd_qc.DISCARD_COL]].index.tolist(), ["c0", "c3"])
        self.assertTrue(filters.loc["c0", sd_qc.LOW_LIB_SIZE_COL])
        self.assertTrue(filters.loc["c0", sd_qc.LOW_N_FEATURES_COL])
        self.assertTrue(filters.loc["c3", "high_mito_percent"])
