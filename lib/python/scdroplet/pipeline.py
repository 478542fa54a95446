#!/usr/bin/env python
#
# Copyright (c) 2024 10X Genomics, Inc. All rights reserved.
#

"""End-to-end run: call cells and flag QC outliers, then optionally decontaminate and demultiplex them."""

from __future__ import annotations

import logging
import os
from typing import NamedTuple

import numpy as np
import pandas as pd

from scdroplet import cell_calling, io, qc
from scdroplet.barcode_ranks import barcode_ranks
from scdroplet.config import PipelineConfig
from scdroplet.contamination import ContaminationResult, remove_ambience
from scdroplet.demux import CONFIDENT_COL, DOUBLET_COL, DemuxResult, hashed_drops
from scdroplet.matrix import CountMatrix

EMPTY_DROPS_CSV = "empty_drops.csv"
SUMMARY_JSON = "summary.json"
CELLS_H5 = "cells.h5"
DECONTAMINATED_H5 = "decontaminated.h5"
CONTAMINATION_CSV = "contamination.csv"
DEMUX_CSV = "demux.csv"
QC_CSV = "qc.csv"


class PipelineResult(NamedTuple):
    empty_drops: cell_calling.EmptyDropsResult
    cells: CountMatrix  # Columns of the input matrix called as cells
    qc: pd.DataFrame  # QC metrics and outlier filters of the called cells
    contamination: ContaminationResult | None
    demux: DemuxResult | None


def run_pipeline(
    matrix: CountMatrix,
    config: PipelineConfig | None = None,
    tag_matrix: CountMatrix | None = None,
) -> PipelineResult:
    """Call cells, flag QC outliers among them and run the optional steps enabled by the config.

    Ambient removal runs when config.cluster_assignment is set, and must cover
    every called cell. Demultiplexing runs on the called cells present in
    tag_matrix when one is given.
    """
    if config is None:
        config = PipelineConfig()
    ed_result = cell_calling.empty_drops(matrix, config)
    cells = matrix.select_barcodes(np.flatnonzero(ed_result.table[cell_calling.IS_CELL_COL]))
    qc_table = run_qc(cells, config)

    contamination = None
    if config.cluster_assignment is not None:
        contamination = remove_ambience(
            cells,
            ed_result.profile.full_proportions(matrix.features_dim),
            config.cluster_assignment,
            dispersion=config.dispersion,
            min_cluster_size=config.min_cluster_size,
            on_small_cluster=config.on_small_cluster,
        )

    demux = None
    if tag_matrix is not None:
        in_tags = set(tag_matrix.bcs)
        called = [bc for bc in cells.bcs if bc in in_tags]
        logging.info("Demultiplexing %d of %d called cells with tag counts", len(called), cells.bcs_dim)
        demux = run_demux(tag_matrix.select_barcodes_by_seq(called), config)

    return PipelineResult(
        empty_drops=ed_result,
        cells=cells,
        qc=qc_table,
        contamination=contamination,
        demux=demux,
    )


def run_qc(cells: CountMatrix, config: PipelineConfig) -> pd.DataFrame:
    """QC metrics of the called cells joined with their outlier filters.

    Features whose id starts with config.mito_prefix form the "mito" subset,
    tested for a high percentage.
    """
    subsets = {}
    if config.mito_prefix:
        mito = [fid for fid in cells.feature_ids if fid.startswith(config.mito_prefix)]
        if mito:
            subsets["mito"] = mito
    metrics = qc.per_cell_qc_metrics(cells, subsets)
    filters = qc.quick_per_cell_qc(
        metrics, percent_subsets=list(subsets), nmads=config.qc_nmads, min_diff=config.min_diff
    )
    logging.info("QC flags %d of %d called cells", int(filters[qc.DISCARD_COL].sum()), cells.bcs_dim)
    return metrics.join(filters)


def run_demux(tag_matrix: CountMatrix, config: PipelineConfig) -> DemuxResult:
    return hashed_drops(
        tag_matrix,
        ambient=config.ambient_tags,
        pseudo_count=config.pseudo_count,
        constant_ambient=config.constant_ambient,
        doublet_nmads=config.doublet_nmads,
        doublet_min=config.doublet_min,
        doublet_mixture=config.doublet_mixture,
        confident_nmads=config.confident_nmads,
        confident_min=config.confident_min,
        min_diff=config.min_diff,
    )


def summarize(result: PipelineResult) -> dict:
    """Summary metrics of a run."""
    table = result.empty_drops.table
    tested = table[cell_calling.PVALUE_COL].notna()
    ranks = barcode_ranks(table[cell_calling.TOTAL_COL].to_numpy(), lower=result.empty_drops.profile.lower)
    summary = {
        "num_barcodes": len(table),
        "num_tested": int(tested.sum()),
        "num_limited": int(table[cell_calling.LIMITED_COL].fillna(False).sum()),
        "num_cells": int(table[cell_calling.IS_CELL_COL].sum()),
        "lower": result.empty_drops.profile.lower,
        "num_ambient_barcodes": len(result.empty_drops.profile.ambient_bcs),
        "alpha": result.empty_drops.alpha,
        "retain": result.empty_drops.retain,
        "knee": ranks.knee,
        "inflection": ranks.inflection,
        "num_qc_discard": int(result.qc[qc.DISCARD_COL].sum()),
    }
    if result.contamination is not None:
        summary["contamination"] = result.contamination.clusters
    if result.demux is not None:
        demux_table = result.demux.table
        summary["num_doublets"] = int(demux_table[DOUBLET_COL].sum())
        summary["num_confident_singlets"] = int(demux_table[CONFIDENT_COL].sum())
        summary["ambient_tags"] = result.demux.ambient
    return summary


def write_outputs(result: PipelineResult, out_dir) -> None:
    io.makedirs(out_dir)
    io.write_csv(result.empty_drops.table, os.path.join(out_dir, EMPTY_DROPS_CSV))
    result.cells.save_h5_file(os.path.join(out_dir, CELLS_H5))
    io.write_csv(result.qc, os.path.join(out_dir, QC_CSV))
    if result.contamination is not None:
        result.contamination.matrix.save_h5_file(os.path.join(out_dir, DECONTAMINATED_H5))
        io.write_csv(result.contamination.clusters, os.path.join(out_dir, CONTAMINATION_CSV))
    if result.demux is not None:
        io.write_csv(result.demux.table, os.path.join(out_dir, DEMUX_CSV))
    io.write_json(summarize(result), os.path.join(out_dir, SUMMARY_JSON))
    logging.info("Wrote outputs to %s", out_dir)
