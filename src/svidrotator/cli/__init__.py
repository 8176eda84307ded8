# Copyright (c) SVID-Rotator Contributors. All rights reserved.
# Licensed under the MIT License.
"""Command line interface for svid-rotator."""

from .main import app

__all__ = ["app"]
