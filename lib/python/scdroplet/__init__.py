#
# Copyright (c) 2024 10X Genomics, Inc. All rights reserved.
#
"""Empty droplet calling, ambient RNA removal and hash tag demultiplexing."""

__version__ = "1.0.0"
