#!/usr/bin/env python3
#
# Copyright (c) 2024 10X Genomics, Inc. All rights reserved.
#

"""Command line tool for calling cells, demultiplexing and barcode rank statistics.

Usage:
    scdroplet call-cells <input_path> <output_dir> [options] [--clusters=CSV] [--tags=PATH]
    scdroplet demux <tag_path> <output_csv> [--config=JSON] [--ambient=CSV] [--min-diff=F] [--doublet-mixture] [--verbose]
    scdroplet ranks <input_path> <output_csv> [--lower=N] [--verbose]
    scdroplet -h | --help | --version

Arguments:
    input_path          Path to a feature-barcode matrix. Can be either an
                            .h5 matrix file or a Matrix Market directory
                            (matrix.mtx, barcodes.tsv, features.tsv).
    output_dir          Directory for the result tables and summary.
    tag_path            Path to a hash tag count matrix (tags as features).
    output_csv          Output CSV file.

Options:
    --config=JSON       Options file; command line values take precedence.
    --lower=N           Barcodes at or below this total are assumed empty.
    --by-rank=N         Assume everything below the N largest barcodes is empty.
    --iterations=N      Number of Monte Carlo simulations.
    --seed=N            Seed of the simulations.
    --fdr=F             FDR threshold for calling cells.
    --workers=N         Threads used for the simulations.
    --clusters=CSV      barcode,cluster file; enables ambient removal.
    --tags=PATH         Hash tag count matrix; demultiplexes the called cells.
    --ambient=CSV       tag,level file with known ambient tag levels.
    --min-diff=F        Minimum distance of the outlier thresholds from the median.
    --doublet-mixture   Call doublets with a two-component mixture on LogFC2.
    -v --verbose        Log progress.
    -h --help           Show this message.
    --version           Show version.
"""

from __future__ import annotations

import logging
import os
import sys

import docopt

import scdroplet
from scdroplet import io
from scdroplet.barcode_ranks import barcode_ranks
from scdroplet.config import PipelineConfig
from scdroplet.exceptions import ScdropletError
from scdroplet.matrix import load_matrix
from scdroplet.pipeline import run_demux, run_pipeline, write_outputs


def _parse_args(argv=None):
    return docopt.docopt(__doc__, argv=argv, version=f"scdroplet {scdroplet.__version__}")


def get_input_path(path: str) -> str:
    if not os.path.exists(path):
        sys.exit(f"Input file does not exist: {path}")
    if not os.access(path, os.R_OK):
        sys.exit(f"Input file path {path} does not have read permissions")
    return path


def get_output_path(path: str) -> str:
    dirname = os.path.dirname(os.path.abspath(path))
    if not os.path.isdir(dirname):
        if not os.path.exists(dirname):
            sys.exit(f"Output directory does not exist: {dirname}")
        sys.exit(f"Please provide a directory, not a file: {dirname}")
    return path


def _optional(args, key, convert):
    value = args.get(key)
    return None if value is None else convert(value)


def _load_config(args) -> PipelineConfig:
    if args.get("--config"):
        config = PipelineConfig.load_json(get_input_path(args["--config"]))
    else:
        config = PipelineConfig()
    return config.replace(
        lower=_optional(args, "--lower", int),
        by_rank=_optional(args, "--by-rank", int),
        iterations=_optional(args, "--iterations", int),
        seed=_optional(args, "--seed", int),
        fdr_threshold=_optional(args, "--fdr", float),
        n_workers=_optional(args, "--workers", int),
        min_diff=_optional(args, "--min-diff", float),
        doublet_mixture=True if args.get("--doublet-mixture") else None,
    )


def call_cells_main(args) -> None:
    config = _load_config(args)
    if args["--clusters"]:
        clusters = io.read_two_column_csv(get_input_path(args["--clusters"]), "cluster")
        config = config.replace(cluster_assignment=clusters)
    matrix = load_matrix(get_input_path(args["<input_path>"]))
    tag_matrix = load_matrix(get_input_path(args["--tags"])) if args["--tags"] else None
    result = run_pipeline(matrix, config, tag_matrix=tag_matrix)
    write_outputs(result, args["<output_dir>"])


def demux_main(args) -> None:
    config = _load_config(args)
    if args["--ambient"]:
        ambient = io.read_two_column_csv(get_input_path(args["--ambient"]), "ambient", numeric=True)
        config = config.replace(ambient_tags=ambient)
    tag_matrix = load_matrix(get_input_path(args["<tag_path>"]))
    result = run_demux(tag_matrix, config)
    io.write_csv(result.table, get_output_path(args["<output_csv>"]))


def ranks_main(args) -> None:
    matrix = load_matrix(get_input_path(args["<input_path>"]))
    lower = _optional(args, "--lower", int)
    ranks = barcode_ranks(
        matrix.get_counts_per_bc(),
        bcs=matrix.bcs,
        lower=PipelineConfig().lower if lower is None else lower,
    )
    io.write_csv(ranks.table, get_output_path(args["<output_csv>"]), index_label="barcode")
    logging.info("Knee: %s, inflection: %s", ranks.knee, ranks.inflection)


def main(argv=None):
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.INFO if args["--verbose"] else logging.WARNING,
        format="%(asctime)s %(levelname)s %(message)s",
    )
    try:
        if args["call-cells"]:
            call_cells_main(args)
        elif args["demux"]:
            demux_main(args)
        elif args["ranks"]:
            ranks_main(args)
    except ScdropletError as e:
        sys.exit(str(e))


if __name__ == "__main__":
    main()
