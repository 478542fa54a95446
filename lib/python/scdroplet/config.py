#!/usr/bin/env python
#
# Copyright (c) 2024 10X Genomics, Inc. All rights reserved.
#
"""Options recognized by the cell calling, decontamination and demultiplexing steps."""

from __future__ import annotations

import dataclasses
import json
from collections.abc import Mapping
from typing import Any

from scdroplet.exceptions import ConfigError

SUPPORTED_METHODS = ["multinomial", "dirichlet"]
SMALL_CLUSTER_POLICIES = ["raise", "warn"]


@dataclasses.dataclass
class PipelineConfig:
    # pylint: disable=too-many-instance-attributes
    lower: int = 100
    by_rank: int | None = None
    fdr_threshold: float = 0.001
    iterations: int = 10000
    seed: int = 0
    method: str = "multinomial"
    alpha: float | None = None
    retain: int | str | None = None
    good_turing: bool = True
    n_workers: int = 1
    min_diff: float | None = None
    # barcode -> cluster label
    cluster_assignment: Mapping[str, Any] | None = None
    # feature id -> abundance, or a list aligned with the matrix features
    ambient_profile: Any = None
    dispersion: float = 0.1
    min_cluster_size: int = 10
    on_small_cluster: str = "raise"
    # hash tag demultiplexing
    ambient_tags: Any = None
    pseudo_count: float = 5.0
    constant_ambient: bool = False
    doublet_nmads: float = 3.0
    doublet_min: float = 2.0
    doublet_mixture: bool = False
    confident_nmads: float | None = None
    confident_min: float = 2.0
    # per-cell QC of the called cells
    qc_nmads: float = 3.0
    mito_prefix: str | None = "MT-"

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        if self.lower < 0:
            raise ConfigError(f"lower must be non-negative, got {self.lower}")
        if self.by_rank is not None and self.by_rank < 0:
            raise ConfigError(f"by_rank must be non-negative, got {self.by_rank}")
        if not 0 < self.fdr_threshold <= 1:
            raise ConfigError(f"fdr_threshold must be in (0, 1], got {self.fdr_threshold}")
        if self.iterations < 1:
            raise ConfigError(f"iterations must be positive, got {self.iterations}")
        if self.method not in SUPPORTED_METHODS:
            raise ConfigError(f"Unsupported method {self.method!r}: use one of {SUPPORTED_METHODS}")
        if self.alpha is not None and self.alpha <= 0:
            raise ConfigError(f"alpha must be positive, got {self.alpha}")
        if isinstance(self.retain, str) and self.retain != "knee":
            raise ConfigError(f"retain must be a count or 'knee', got {self.retain!r}")
        if self.n_workers < 1:
            raise ConfigError(f"n_workers must be at least 1, got {self.n_workers}")
        if self.min_diff is not None and self.min_diff < 0:
            raise ConfigError(f"min_diff must be non-negative, got {self.min_diff}")
        if self.dispersion <= 0:
            raise ConfigError(f"dispersion must be positive, got {self.dispersion}")
        if self.on_small_cluster not in SMALL_CLUSTER_POLICIES:
            raise ConfigError(
                f"on_small_cluster must be one of {SMALL_CLUSTER_POLICIES}, got {self.on_small_cluster!r}"
            )
        if self.pseudo_count <= 0:
            raise ConfigError(f"pseudo_count must be positive, got {self.pseudo_count}")
        if self.confident_nmads is not None and self.confident_nmads <= 0:
            raise ConfigError(f"confident_nmads must be positive, got {self.confident_nmads}")
        if self.qc_nmads <= 0:
            raise ConfigError(f"qc_nmads must be positive, got {self.qc_nmads}")

    @classmethod
    def from_dict(cls, values: Mapping[str, Any]) -> PipelineConfig:
        """Build a config, rejecting unknown keys. Dotted names such as "fdr.threshold" are accepted."""
        known = {f.name for f in dataclasses.fields(cls)}
        kwargs = {}
        for key, value in values.items():
            name = key.replace(".", "_")
            if name not in known:
                raise ConfigError(f"Unknown configuration option: {key!r}")
            kwargs[name] = value
        try:
            return cls(**kwargs)
        except TypeError as e:
            raise ConfigError(str(e)) from e

    @classmethod
    def load_json(cls, filename) -> PipelineConfig:
        try:
            with open(filename) as f:
                values = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in {filename}: {e}") from e
        if not isinstance(values, dict):
            raise ConfigError(f"{filename} must contain a JSON object")
        return cls.from_dict(values)

    def replace(self, **changes) -> PipelineConfig:
        """Copy with some options overridden; None values are ignored."""
        return dataclasses.replace(self, **{k: v for k, v in changes.items() if v is not None})
