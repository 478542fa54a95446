#!/usr/bin/env python
#
# Copyright (c) 2024 10X Genomics, Inc. All rights reserved.
#
# Unit tests for scdroplet.matrix
#

from __future__ import annotations

import os

import h5py
import numpy as np
import pandas as pd
import scipy.sparse as sp_sparse

import scdroplet.matrix as sd_matrix
import scdroplet.stats as sd_stats
import scdroplet.test as sd_test
from scdroplet.exceptions import MatrixFormatError
from scdroplet.matrix import CountMatrix


def _small_matrix():
    counts = np.array([[1, 0, 3], [0, 0, 2], [4, 5, 0]])
    return CountMatrix.from_dense(counts, ["g1", "g2", "g3"], ["a", "b", "c"])


class TestCountMatrix(sd_test.UnitTestBase):
    def test_sums(self):
        matrix = _small_matrix()
        self.assertEqual(matrix.get_shape(), (3, 3))
        self.assertArrayEqual(matrix.get_counts_per_bc(), [5, 5, 5])
        self.assertArrayEqual(matrix.get_counts_per_feature(), [4, 2, 9])
        self.assertArrayEqual(matrix.get_numbers_per_bc(), [2, 1, 2])
        self.assertEqual(matrix.get_num_nonzero(), 5)

    def test_explicit_zeros_are_dropped(self):
        stored = sp_sparse.csc_matrix((np.array([0, 3]), (np.array([0, 1]), np.array([0, 0]))), shape=(2, 1))
        self.assertEqual(stored.nnz, 2)
        matrix = CountMatrix(["g1", "g2"], ["a"], stored)
        self.assertEqual(matrix.get_num_nonzero(), 1)
        self.assertArrayEqual(matrix.get_numbers_per_bc(), [1])
        # An absent gene with zero ambient probability leaves the likelihood finite
        loglk = sd_stats.eval_multinomial_loglikelihoods(matrix.m, np.array([-np.inf, 0.0]))
        self.assertEqual(loglk[0], 0.0)

    def test_default_labels(self):
        matrix = CountMatrix(None, None, np.zeros((2, 3)))
        self.assertEqual(list(matrix.bcs), ["BC0", "BC1", "BC2"])
        self.assertEqual(list(matrix.feature_ids), ["F0", "F1"])

    def test_rejects_invalid_counts(self):
        with self.assertRaises(MatrixFormatError):
            CountMatrix.from_dense([[1, -1]])
        with self.assertRaises(MatrixFormatError):
            CountMatrix.from_dense([[1.5, 2]])
        with self.assertRaises(MatrixFormatError):
            CountMatrix(["g1"], ["a"], np.ones((1, 2)))

    def test_selection_returns_new_matrix(self):
        matrix = _small_matrix()
        sub = matrix.select_barcodes_by_seq(["c", "a"])
        self.assertEqual(list(sub.bcs), ["c", "a"])
        self.assertArrayEqual(sub.to_dense(), [[3, 1], [2, 0], [0, 4]])
        self.assertArrayEqual(matrix.get_counts_per_bc(), [5, 5, 5])

        genes = matrix.select_features_by_ids(["g3"])
        self.assertArrayEqual(genes.to_dense(), [[4, 5, 0]])
        with self.assertRaises(KeyError):
            matrix.select_barcodes_by_seq(["zzz"])

    def test_labels_are_read_only(self):
        matrix = _small_matrix()
        with self.assertRaises(ValueError):
            matrix.bcs[0] = "x"

    def test_dataframe_conversion(self):
        matrix = _small_matrix()
        df = matrix.to_dataframe()
        self.assertEqual(df.loc["g3", "b"], 5)
        self.assertEqual(CountMatrix.from_dataframe(df), matrix)

    def test_with_counts_checks_shape(self):
        matrix = _small_matrix()
        with self.assertRaises(MatrixFormatError):
            matrix.with_counts(np.zeros((2, 2)))

    def test_h5_round_trip(self):
        matrix = _small_matrix()
        path = os.path.join(self.tmp_dir, "matrix.h5")
        matrix.save_h5_file(path)
        self.assertEqual(sd_matrix.load_matrix(path), matrix)

    def test_load_h5_rejects_foreign_files(self):
        path = os.path.join(self.tmp_dir, "other.h5")
        with h5py.File(path, "w") as f:
            f.create_dataset("x", data=np.arange(3))
        with self.assertRaises(MatrixFormatError):
            CountMatrix.load_h5_file(path)

    def test_mtx_directory(self):
        matrix = _small_matrix()
        mtx_dir = os.path.join(self.tmp_dir, "mtx")
        sd_matrix.save_mtx(matrix, mtx_dir)
        loaded = sd_matrix.load_matrix(mtx_dir)
        self.assertEqual(loaded, matrix)

        os.remove(os.path.join(mtx_dir, "barcodes.tsv"))
        unlabeled = sd_matrix.load_mtx(mtx_dir)
        self.assertEqual(list(unlabeled.bcs), ["BC0", "BC1", "BC2"])

    def test_missing_mtx(self):
        with self.assertRaises(MatrixFormatError):
            sd_matrix.load_mtx(os.path.join(self.tmp_dir, "nothing"))

    def test_sum_sparse_matrix(self):
        matrix = _small_matrix()
        self.assertArrayEqual(sd_matrix.sum_sparse_matrix(matrix.m, axis=1), [4, 2, 9])
        self.assertIsInstance(matrix.to_dataframe(), pd.DataFrame)
