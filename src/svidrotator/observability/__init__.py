# Copyright (c) SVID-Rotator Contributors. All rights reserved.
# Licensed under the MIT License.
"""
Observability for svid-rotator.

Prometheus metrics for rotation signals, restarts and the active
certificate's expiry.
"""

from .metrics import RotationMetrics, start_metrics_server

__all__ = ["RotationMetrics", "start_metrics_server"]
