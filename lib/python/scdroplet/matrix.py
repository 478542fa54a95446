#!/usr/bin/env python3
#
# Copyright (c) 2024 10X Genomics, Inc. All rights reserved.
#
"""Immutable feature-barcode count matrix."""

from __future__ import annotations

import os
import pathlib
from collections.abc import Iterable, Sequence

import h5py as h5
import numpy as np
import pandas as pd
import scipy.io as sp_io
import scipy.sparse as sp_sparse

from scdroplet.exceptions import MatrixFormatError

HDF5_COMPRESSION = "gzip"
# Number of elements per chunk. Here, 1 MiB / (12 bytes)
HDF5_CHUNK_SIZE = 80000

DEFAULT_DATA_DTYPE = "int64"

MATRIX_H5_FILETYPE = "scdroplet_matrix"
MATRIX_H5_VERSION = 1
FILETYPE_KEY = "filetype"
VERSION_KEY = "version"

MATRIX = "matrix"
H5_DATA_ATTR = "data"
H5_INDICES_ATTR = "indices"
H5_INDPTR_ATTR = "indptr"
H5_SHAPE_ATTR = "shape"
H5_BCS_ATTR = "barcodes"
H5_FEATURE_IDS_ATTR = "features"

MTX_FILENAME = "matrix.mtx"
BARCODES_TSV = "barcodes.tsv"
FEATURES_TSV = "features.tsv"


def sum_sparse_matrix(matrix, axis: int = 0) -> np.ndarray:
    """Sum a sparse matrix along an axis."""
    axis_sum = np.asarray(matrix.sum(axis=axis))
    max_dim = np.prod(axis_sum.shape)
    return axis_sum.reshape((max_dim,))


def _as_str_array(values: Iterable) -> np.ndarray:
    arr = np.array([v.decode() if isinstance(v, bytes) else str(v) for v in values], dtype=object)
    arr.flags.writeable = False
    return arr


class CountMatrix:
    """Features (rows) x barcodes (columns) matrix of non-negative integer counts.

    The underlying csc matrix is never modified after construction; every
    selection returns a new CountMatrix.
    """

    def __init__(
        self,
        feature_ids: Sequence[str] | None,
        bcs: Sequence[str] | None,
        matrix,
    ):
        m = sp_sparse.csc_matrix(matrix)
        if m.nnz and (m.data < 0).any():
            raise MatrixFormatError("Count matrix contains negative entries")
        if m.nnz and not np.all(np.mod(m.data, 1) == 0):
            raise MatrixFormatError("Count matrix contains non-integer entries")
        m = m.astype(DEFAULT_DATA_DTYPE)
        m.sum_duplicates()
        m.eliminate_zeros()
        m.sort_indices()
        self.m: sp_sparse.csc_matrix = m
        self.features_dim, self.bcs_dim = m.shape

        if bcs is None:
            bcs = [f"BC{i}" for i in range(self.bcs_dim)]
        if feature_ids is None:
            feature_ids = [f"F{i}" for i in range(self.features_dim)]
        self.bcs = _as_str_array(bcs)
        self.feature_ids = _as_str_array(feature_ids)
        if len(self.bcs) != self.bcs_dim:
            raise MatrixFormatError(
                f"Got {len(self.bcs)} barcodes for a matrix with {self.bcs_dim} columns"
            )
        if len(self.feature_ids) != self.features_dim:
            raise MatrixFormatError(
                f"Got {len(self.feature_ids)} features for a matrix with {self.features_dim} rows"
            )

    @classmethod
    def from_dense(cls, counts, feature_ids=None, bcs=None) -> CountMatrix:
        return cls(feature_ids, bcs, sp_sparse.csc_matrix(np.asarray(counts)))

    @classmethod
    def from_dataframe(cls, df: pd.DataFrame) -> CountMatrix:
        """Build from a dense DataFrame with features as the index and barcodes as columns."""
        return cls(list(df.index), list(df.columns), sp_sparse.csc_matrix(df.to_numpy()))

    def get_shape(self) -> tuple[int, int]:
        return self.m.shape

    def get_num_nonzero(self) -> int:
        return self.m.nnz

    def get_counts_per_bc(self) -> np.ndarray:
        return sum_sparse_matrix(self.m, axis=0)

    def get_counts_per_feature(self) -> np.ndarray:
        return sum_sparse_matrix(self.m, axis=1)

    def get_numbers_per_bc(self) -> np.ndarray:
        """Number of distinct features detected per barcode."""
        return np.diff(self.m.indptr)

    def bcs_to_ints(self, bcs: Iterable[str]) -> list[int]:
        lookup = {bc: i for i, bc in enumerate(self.bcs)}
        try:
            return [lookup[bc] for bc in bcs]
        except KeyError as e:
            raise KeyError(f"Barcode not found in matrix: {e.args[0]}") from None

    def feature_ids_to_ints(self, feature_ids: Iterable[str]) -> list[int]:
        lookup = {fid: i for i, fid in enumerate(self.feature_ids)}
        try:
            return [lookup[fid] for fid in feature_ids]
        except KeyError as e:
            raise KeyError(f"Feature not found in matrix: {e.args[0]}") from None

    def select_barcodes(self, indices: Sequence[int] | np.ndarray) -> CountMatrix:
        """Select a subset of barcodes and return the resulting CountMatrix."""
        indices = np.asarray(indices, dtype=np.intp)
        return CountMatrix(self.feature_ids, self.bcs[indices], self.m[:, indices])

    def select_barcodes_by_seq(self, barcode_seqs: Iterable[str]) -> CountMatrix:
        return self.select_barcodes(self.bcs_to_ints(barcode_seqs))

    def select_features(self, indices: Sequence[int] | np.ndarray) -> CountMatrix:
        """Select a subset of features and return the resulting CountMatrix."""
        indices = np.asarray(indices, dtype=np.intp)
        return CountMatrix(self.feature_ids[indices], self.bcs, self.m[indices, :])

    def select_features_by_ids(self, feature_ids: Iterable[str]) -> CountMatrix:
        return self.select_features(self.feature_ids_to_ints(feature_ids))

    def with_counts(self, matrix) -> CountMatrix:
        """Return a matrix with the same labels but new counts."""
        if matrix.shape != self.m.shape:
            raise MatrixFormatError(f"Shape mismatch: {matrix.shape} != {self.m.shape}")
        return CountMatrix(self.feature_ids, self.bcs, matrix)

    def to_dense(self) -> np.ndarray:
        return self.m.toarray()

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame(self.to_dense(), index=self.feature_ids, columns=self.bcs)

    def __eq__(self, other):
        if not isinstance(other, CountMatrix):
            return NotImplemented
        return (
            self.m.shape == other.m.shape
            and np.array_equal(self.bcs, other.bcs)
            and np.array_equal(self.feature_ids, other.feature_ids)
            and (self.m != other.m).nnz == 0
        )

    def __repr__(self):
        return f"CountMatrix({self.features_dim} features x {self.bcs_dim} barcodes, nnz={self.m.nnz})"

    def save_h5_file(self, filename) -> None:
        """Save this matrix to an HDF5 file."""
        with h5.File(filename, "w") as f:
            f.attrs[FILETYPE_KEY] = MATRIX_H5_FILETYPE
            f.attrs[VERSION_KEY] = MATRIX_H5_VERSION
            self.save_h5_group(f.create_group(MATRIX))

    def save_h5_group(self, group: h5.Group) -> None:
        str_dtype = h5.string_dtype()
        group.create_dataset(H5_BCS_ATTR, data=list(self.bcs), dtype=str_dtype)
        group.create_dataset(H5_FEATURE_IDS_ATTR, data=list(self.feature_ids), dtype=str_dtype)
        group.create_dataset(H5_SHAPE_ATTR, data=np.array(self.m.shape, dtype=np.int64))
        for attr in (H5_DATA_ATTR, H5_INDICES_ATTR, H5_INDPTR_ATTR):
            arr = np.asarray(getattr(self.m, attr), dtype=np.int64)
            group.create_dataset(
                attr,
                data=arr,
                chunks=(min(HDF5_CHUNK_SIZE, max(len(arr), 1)),),
                maxshape=(None,),
                compression=HDF5_COMPRESSION,
                shuffle=True,
            )

    @classmethod
    def load_h5_file(cls, filename) -> CountMatrix:
        with h5.File(filename, "r") as f:
            if f.attrs.get(FILETYPE_KEY) != MATRIX_H5_FILETYPE or MATRIX not in f:
                raise MatrixFormatError(f"{filename} is not a scdroplet matrix file")
            return cls.load(f[MATRIX])

    @classmethod
    def load(cls, group: h5.Group) -> CountMatrix:
        """Load from an HDF5 group."""
        shape = tuple(group[H5_SHAPE_ATTR][:])
        indptr = group[H5_INDPTR_ATTR][:]
        # Check to make sure indptr increases monotonically (to catch overflow bugs)
        if not np.all(np.diff(indptr) >= 0):
            raise MatrixFormatError("Corrupt matrix: indptr is not monotonic")
        matrix = sp_sparse.csc_matrix(
            (group[H5_DATA_ATTR][:], group[H5_INDICES_ATTR][:], indptr), shape=shape
        )
        bcs = [x.decode() if isinstance(x, bytes) else x for x in group[H5_BCS_ATTR][:]]
        feature_ids = [
            x.decode() if isinstance(x, bytes) else x for x in group[H5_FEATURE_IDS_ATTR][:]
        ]
        return cls(feature_ids, bcs, matrix)


def _read_names(path: pathlib.Path) -> list[str] | None:
    if not path.exists():
        return None
    names = pd.read_csv(path, sep="\t", header=None, usecols=[0], dtype=str)
    return names[0].tolist()


def load_mtx(mtx_dir) -> CountMatrix:
    """Load a Matrix Market directory with optional barcodes.tsv and features.tsv lists."""
    mtx_dir = pathlib.Path(mtx_dir)
    matrix_fn = mtx_dir / MTX_FILENAME
    if not matrix_fn.exists():
        raise MatrixFormatError(f"Not a valid path to a Matrix Market directory: '{mtx_dir!s}'")
    matrix = sp_io.mmread(matrix_fn)
    return CountMatrix(
        _read_names(mtx_dir / FEATURES_TSV),
        _read_names(mtx_dir / BARCODES_TSV),
        matrix,
    )


def save_mtx(matrix: CountMatrix, mtx_dir) -> None:
    os.makedirs(mtx_dir, exist_ok=True)
    mtx_dir = pathlib.Path(mtx_dir)
    sp_io.mmwrite(mtx_dir / MTX_FILENAME, matrix.m)
    pd.Series(matrix.bcs).to_csv(mtx_dir / BARCODES_TSV, sep="\t", header=False, index=False)
    pd.Series(matrix.feature_ids).to_csv(
        mtx_dir / FEATURES_TSV, sep="\t", header=False, index=False
    )


def load_matrix(path) -> CountMatrix:
    """Load either an .h5 matrix file or a Matrix Market directory."""
    path = str(path)
    if path.endswith(".h5"):
        return CountMatrix.load_h5_file(path)
    return load_mtx(path)
