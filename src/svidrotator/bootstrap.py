# Copyright (c) SVID-Rotator Contributors. All rights reserved.
# Licensed under the MIT License.
"""
Service Bootstrap

Wires the credential store, rotation watcher and lifecycle manager into a
running service:

- the watcher starts first, so credentials that appear later are noticed
- the listener starts only once an initial load succeeds; until then the
  load is retried at a fixed interval and the port stays closed
- every rotation signal triggers one restart
- a restart that fails to bind is retried a bounded number of times with
  exponential backoff; a failed reload waits for the next rotation
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from svidrotator.config import ServiceConfig
from svidrotator.credentials import CredentialStore
from svidrotator.exceptions import BindError, LifecycleError
from svidrotator.observability.metrics import RotationMetrics
from svidrotator.server import RestartOutcome, ServiceLifecycleManager
from svidrotator.watcher import RotationWatcher

logger = logging.getLogger(__name__)


class ServiceRunner:
    """Runs one service with rotating mTLS credentials.

    Args:
        config: Service configuration.
        store: Credential source shared with the lifecycle manager.
        metrics: Metrics sink shared with the lifecycle manager.
        manager: Lifecycle manager; built from the other arguments if omitted.
        watcher_factory: Callable building the rotation watcher.
    """

    def __init__(
        self,
        config: ServiceConfig,
        store: Optional[CredentialStore] = None,
        metrics: Optional[RotationMetrics] = None,
        manager: Optional[ServiceLifecycleManager] = None,
        watcher_factory: Callable[..., RotationWatcher] = RotationWatcher,
    ) -> None:
        self.config = config
        self.metrics = metrics or RotationMetrics()
        self.store = store or CredentialStore(config.paths, timeout_seconds=config.load_timeout_seconds)
        self.manager = manager or ServiceLifecycleManager(config, store=self.store, metrics=self.metrics)
        self.watcher: Optional[RotationWatcher] = None
        self._watcher_factory = watcher_factory

        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._retry_timer: Optional[threading.Timer] = None
        self._bind_retries = 0
        self._bootstrap_thread: Optional[threading.Thread] = None

    def __enter__(self) -> "ServiceRunner":
        return self.start()

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._stop.is_set()

    def start(self) -> "ServiceRunner":
        """Start watching, then bring the listener up or keep retrying in the background."""
        self.watcher = self._watcher_factory(
            self.config.paths,
            self.on_rotation,
            debounce_seconds=self.config.debounce_seconds,
        )
        self.watcher.start()

        if not self._try_initial_start():
            self._bootstrap_thread = threading.Thread(
                target=self._bootstrap_loop,
                name=f"{self.config.name}-bootstrap",
                daemon=True,
            )
            self._bootstrap_thread.start()
        return self

    def on_rotation(self) -> None:
        """Rotation callback handed to the watcher."""
        if self._stop.is_set():
            return
        self.metrics.record_rotation_event()
        with self._lock:
            self._cancel_retry()
            self._bind_retries = 0
        self._restart()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until :meth:`close` is called; returns False on timeout."""
        return self._stop.wait(timeout)

    def close(self) -> None:
        """Stop watching, cancel pending retries and close the listener."""
        if self._stop.is_set():
            return
        self._stop.set()
        with self._lock:
            self._cancel_retry()
        if self.watcher is not None:
            self.watcher.close()
        self.manager.close()
        thread = self._bootstrap_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.config.shutdown_timeout_seconds)
        logger.info("%s stopped", self.config.name)

    # ------------------------------------------------------------------
    # Initial start
    # ------------------------------------------------------------------

    def _try_initial_start(self) -> bool:
        if self.manager.is_serving:
            return True

        result = self.store.load()
        if not result.ok:
            self.metrics.record_load_failure()
            logger.error("Error loading credentials: %s", result.error)
            logger.info("Retrying in %g seconds...", self.config.retry_interval_seconds)
            return False

        try:
            self.manager.create_server(result.unwrap()).start()
        except LifecycleError:
            # a rotation brought the listener up first, or we are closing
            return self.manager.is_serving or self.manager.closed
        except BindError as exc:
            logger.error("Could not start %s: %s", self.config.name, exc)
            logger.info("Retrying in %g seconds...", self.config.retry_interval_seconds)
            return False
        return True

    def _bootstrap_loop(self) -> None:
        while not self._stop.wait(self.config.retry_interval_seconds):
            if self._try_initial_start():
                return

    # ------------------------------------------------------------------
    # Restarts
    # ------------------------------------------------------------------

    def _restart(self) -> None:
        if self._stop.is_set():
            return
        outcome = self.manager.try_restart()
        if outcome is RestartOutcome.BIND_FAILED:
            self._schedule_bind_retry()
        elif outcome is RestartOutcome.SUCCESS:
            with self._lock:
                self._bind_retries = 0

    def _schedule_bind_retry(self) -> None:
        limit = self.config.bind_retry_limit
        with self._lock:
            if self._stop.is_set():
                return
            if self._bind_retries >= limit:
                logger.error(
                    "Giving up on restart after %d bind retries; waiting for the next rotation",
                    self._bind_retries,
                )
                return
            delay = self.config.bind_retry_backoff_seconds * (2 ** self._bind_retries)
            self._bind_retries += 1
            attempt = self._bind_retries
            self._cancel_retry()
            timer = threading.Timer(delay, self._restart)
            timer.daemon = True
            self._retry_timer = timer
            timer.start()
        logger.warning("Retrying restart in %.1fs (attempt %d/%d)", delay, attempt, limit)

    def _cancel_retry(self) -> None:
        if self._retry_timer is not None:
            self._retry_timer.cancel()
            self._retry_timer = None
