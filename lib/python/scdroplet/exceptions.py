#!/usr/bin/env python
#
# Copyright (c) 2024 10X Genomics, Inc. All rights reserved.
#
# Exception classes
#


class ScdropletError(Exception):
    """Base class for errors that should be reported to the caller verbatim."""


class InsufficientAmbientDataError(ScdropletError):
    """Too few presumed-empty barcodes (or counts) to estimate an ambient profile."""


class DegenerateClusterError(ScdropletError):
    """A cluster is too small or has no counts to estimate its contamination."""

    def __init__(self, cluster, reason: str):
        super().__init__(f"Cluster {cluster!r}: {reason}")
        self.cluster = cluster
        self.reason = reason


class AmbiguousBimodalEstimateError(ScdropletError):
    """The ambient and signal modes of a tag's counts could not be separated."""

    def __init__(self, tag, reason: str):
        super().__init__(f"Cannot estimate ambient level for tag {tag!r}: {reason}")
        self.tag = tag
        self.reason = reason


class ConfigError(ScdropletError):
    pass


class MatrixFormatError(ScdropletError):
    pass
