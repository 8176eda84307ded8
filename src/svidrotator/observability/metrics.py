# Copyright (c) SVID-Rotator Contributors. All rights reserved.
# Licensed under the MIT License.
"""Prometheus metrics for credential rotation.

Provides ``RotationMetrics``, a facade over the counters and gauges that
describe how rotations are detected and applied.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge
from prometheus_client import start_http_server as _start_http_server

RESTART_OUTCOMES = ("success", "load_failed", "bind_failed")


class RotationMetrics:
    """Prometheus metrics for one rotating service.

    Metrics exposed:

    * ``svid_rotation_events_total``: debounced rotation signals received
    * ``svid_restarts_total``: restart attempts, labelled by ``outcome``
    * ``svid_credential_load_failures_total``: failed credential loads
    * ``svid_listener_generation``: number of listeners brought up so far
    * ``svid_certificate_expiry_timestamp_seconds``: notAfter of the active leaf

    Each instance owns a fresh ``CollectorRegistry`` unless one is passed,
    so several services (and tests) can coexist in one process.

    Args:
        registry: Registry to register the metrics in.
        prefix: Metric name prefix.  Defaults to ``svid``.
    """

    def __init__(
        self,
        registry: Optional[CollectorRegistry] = None,
        prefix: str = "svid",
    ) -> None:
        self.registry = registry if registry is not None else CollectorRegistry()

        self.rotation_events_total = Counter(
            f"{prefix}_rotation_events_total",
            "Debounced credential rotation signals",
            registry=self.registry,
        )
        self.restarts_total = Counter(
            f"{prefix}_restarts_total",
            "Listener restart attempts",
            ["outcome"],
            registry=self.registry,
        )
        self.credential_load_failures_total = Counter(
            f"{prefix}_credential_load_failures_total",
            "Credential loads that failed",
            registry=self.registry,
        )
        self.listener_generation = Gauge(
            f"{prefix}_listener_generation",
            "Generation number of the active listener",
            registry=self.registry,
        )
        self.certificate_expiry = Gauge(
            f"{prefix}_certificate_expiry_timestamp_seconds",
            "notAfter of the active leaf certificate (unix time)",
            registry=self.registry,
        )

    # ------------------------------------------------------------------
    # Recording helpers
    # ------------------------------------------------------------------

    def record_rotation_event(self) -> None:
        self.rotation_events_total.inc()

    def record_restart(self, outcome: str) -> None:
        """Increment the restart counter.

        Args:
            outcome: One of ``success``, ``load_failed`` or ``bind_failed``.

        Raises:
            ValueError: If *outcome* is not a known outcome label.
        """
        if outcome not in RESTART_OUTCOMES:
            raise ValueError(f"Unknown restart outcome: {outcome}")
        self.restarts_total.labels(outcome=outcome).inc()

    def record_load_failure(self) -> None:
        self.credential_load_failures_total.inc()

    def record_listener(self, generation: int, not_valid_after: Optional[datetime]) -> None:
        self.listener_generation.set(generation)
        if not_valid_after is not None:
            self.certificate_expiry.set(not_valid_after.timestamp())

    def sample(self, name: str, labels: Optional[dict[str, str]] = None) -> float:
        """Return the current value of a sample, 0.0 if it was never recorded."""
        value = self.registry.get_sample_value(name, labels or {})
        return value if value is not None else 0.0


def start_metrics_server(metrics: RotationMetrics, port: int, addr: str = "0.0.0.0") -> None:
    """Expose *metrics* over HTTP for Prometheus scraping."""
    _start_http_server(port, addr=addr, registry=metrics.registry)
