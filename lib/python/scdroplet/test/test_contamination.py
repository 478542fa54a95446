#!/usr/bin/env python
#
# Copyright (c) 2024 10X Genomics, Inc. All rights reserved.
#
# Unit tests for scdroplet.contamination
#

from __future__ import annotations

import numpy as np
import pandas as pd

import scdroplet.contamination as sd_contam
import scdroplet.test as sd_test
from scdroplet.ambient import profile_from_values
from scdroplet.exceptions import DegenerateClusterError
from scdroplet.matrix import CountMatrix

N_AMBIENT_GENES = 10
N_SIGNAL_GENES = 10


def _contaminated_clusters(seed=0, n_per_cluster=200, ambient_per_cell=50, signal_per_cell=450):
    """Two clusters: A carries ambient counts on the first genes, B never expresses gene 0.

    Returns:
        (matrix, ambient, labels)
    """
    rng = np.random.default_rng(seed)
    n_genes = N_AMBIENT_GENES + N_SIGNAL_GENES
    ambient = np.zeros(n_genes)
    ambient[:N_AMBIENT_GENES] = 1.0 / N_AMBIENT_GENES

    signal_p = np.zeros(n_genes)
    signal_p[N_AMBIENT_GENES:] = 1.0 / N_SIGNAL_GENES
    cluster_a = np.array(
        [
            rng.multinomial(ambient_per_cell, ambient) + rng.multinomial(signal_per_cell, signal_p)
            for _ in range(n_per_cluster)
        ]
    ).T

    b_p = np.zeros(n_genes)
    b_p[1:] = 1.0 / (n_genes - 1)
    cluster_b = np.array([rng.multinomial(300, b_p) for _ in range(n_per_cluster)]).T

    counts = np.hstack([cluster_a, cluster_b])
    labels = ["A"] * n_per_cluster + ["B"] * n_per_cluster
    bcs = [f"BC{i}" for i in range(counts.shape[1])]
    return CountMatrix.from_dense(counts, None, bcs), ambient, labels


class TestRemoveAmbience(sd_test.UnitTestBase):
    def setUp(self):
        super().setUp()
        self.matrix, self.ambient, self.labels = _contaminated_clusters()

    def test_contamination_estimate(self):
        result = sd_contam.remove_ambience(self.matrix, self.ambient, self.labels)
        clusters = result.clusters
        self.assertEqual(list(clusters.index), ["A", "B"])
        self.assertEqual(clusters.loc["A", sd_contam.N_CELLS_COL], 200)
        self.assertAlmostEqual(clusters.loc["A", sd_contam.CONTAMINATION_COL], 0.1, delta=0.02)
        self.assertEqual(clusters.loc["B", sd_contam.SCALE_COL], 0.0)
        self.assertEqual(clusters.loc["B", sd_contam.CONTAMINATION_COL], 0.0)

    def test_zero_contamination_passes_through(self):
        result = sd_contam.remove_ambience(self.matrix, self.ambient, self.labels)
        b_cells = np.flatnonzero(np.array(self.labels) == "B")
        before = self.matrix.select_barcodes(b_cells)
        after = result.matrix.select_barcodes(b_cells)
        self.assertEqual(before, after)

    def test_counts_are_only_reduced(self):
        result = sd_contam.remove_ambience(self.matrix, self.ambient, self.labels)
        corrected = result.matrix
        self.assertEqual(corrected.get_shape(), self.matrix.get_shape())
        self.assertArrayEqual(corrected.bcs, self.matrix.bcs)
        self.assertArrayEqual(corrected.feature_ids, self.matrix.feature_ids)
        diff = self.matrix.to_dense() - corrected.to_dense()
        self.assertTrue(np.all(diff >= 0))
        # Signal genes carry no ambient and are untouched
        self.assertTrue(np.all(diff[N_AMBIENT_GENES:, :] == 0))
        a_cells = np.flatnonzero(np.array(self.labels) == "A")
        removed = diff[:, a_cells].sum() / self.matrix.to_dense()[:, a_cells].sum()
        self.assertGreater(removed, 0.03)
        self.assertLess(removed, 0.15)

    def test_input_is_not_modified(self):
        before = self.matrix.to_dense().copy()
        sd_contam.remove_ambience(self.matrix, self.ambient, self.labels)
        self.assertArrayEqual(self.matrix.to_dense(), before)

    def test_cluster_assignment_forms(self):
        by_list = sd_contam.remove_ambience(self.matrix, self.ambient, self.labels)
        mapping = dict(zip(self.matrix.bcs, self.labels))
        by_dict = sd_contam.remove_ambience(self.matrix, self.ambient, mapping)
        by_series = sd_contam.remove_ambience(
            self.matrix, self.ambient, pd.Series(mapping).iloc[::-1]
        )
        self.assertEqual(by_list.matrix, by_dict.matrix)
        self.assertEqual(by_list.matrix, by_series.matrix)

        del mapping[self.matrix.bcs[0]]
        with self.assertRaises(ValueError):
            sd_contam.remove_ambience(self.matrix, self.ambient, mapping)
        with self.assertRaises(ValueError):
            sd_contam.remove_ambience(self.matrix, self.ambient, self.labels[:-1])

    def test_ambient_profile_object(self):
        profile = profile_from_values(self.matrix, self.ambient)
        from_profile = sd_contam.remove_ambience(self.matrix, profile, self.labels)
        from_array = sd_contam.remove_ambience(self.matrix, self.ambient, self.labels)
        self.assertEqual(from_profile.matrix, from_array.matrix)

    def test_small_cluster(self):
        labels = list(self.labels)
        labels[0] = "tiny"
        with self.assertRaises(DegenerateClusterError) as ctx:
            sd_contam.remove_ambience(self.matrix, self.ambient, labels)
        self.assertEqual(ctx.exception.cluster, "tiny")

        with self.assertLogs(level="WARNING"):
            result = sd_contam.remove_ambience(
                self.matrix, self.ambient, labels, on_small_cluster="warn"
            )
        self.assertEqual(result.clusters.loc["tiny", sd_contam.N_CELLS_COL], 1)

    def test_all_zero_cluster(self):
        counts = np.hstack([self.matrix.to_dense(), np.zeros((self.matrix.features_dim, 10), int)])
        matrix = CountMatrix.from_dense(counts)
        labels = list(self.labels) + ["empty"] * 10
        with self.assertRaises(DegenerateClusterError):
            sd_contam.remove_ambience(matrix, self.ambient, labels)


class TestQuantileRemap(sd_test.UnitTestBase):
    def test_identity_when_means_match(self):
        counts = np.array([0, 1, 2, 5, 10, 15])
        mean = np.full(len(counts), 6.0)
        self.assertArrayEqual(sd_contam.quantile_remap(counts, mean, mean), counts)

    def test_smaller_mean_never_increases(self):
        counts = np.arange(0, 50)
        remapped = sd_contam.quantile_remap(counts, np.full(50, 10.0), np.full(50, 7.0))
        self.assertTrue(np.all(remapped <= counts))
        self.assertTrue(np.all(np.diff(remapped) >= 0))
        self.assertEqual(remapped[0], 0)

    def test_zero_mean(self):
        remapped = sd_contam.quantile_remap(np.array([3, 8]), np.array([5.0, 5.0]), np.zeros(2))
        self.assertArrayEqual(remapped, [0, 0])

    def test_maximum_ambience(self):
        mean = np.array([2.0, 10.0, 0.5])
        ambient = np.array([0.5, 0.5, 0.0])
        self.assertEqual(sd_contam.maximum_ambience(mean, ambient), 4.0)
        self.assertEqual(sd_contam.maximum_ambience(mean, np.zeros(3)), 0.0)
