# Copyright (c) SVID-Rotator Contributors. All rights reserved.
# Licensed under the MIT License.
"""
Service Lifecycle

Owns the TLS-terminated listener of a FastAPI application and swaps its
credentials at runtime.

Each listener is a uvicorn server running on its own thread over a socket
bound here. On restart a replacement listener is bound to the same port
(``SO_REUSEPORT``) and only once it reports started is the previous one
closed. Platforms without port reuse fall back to close-then-rebind, which
leaves a short window where connections are refused.
"""

from __future__ import annotations

import logging
import socket
import ssl
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Iterable, Optional

import uvicorn
from fastapi import FastAPI

from svidrotator.config import Route, ServiceConfig
from svidrotator.credentials import Credentials, CredentialStore
from svidrotator.exceptions import BindError, LifecycleError
from svidrotator.observability.metrics import RotationMetrics
from svidrotator.tls import build_server_context

logger = logging.getLogger(__name__)


def build_app(routes: Iterable[Route], title: str = "service") -> FastAPI:
    """Register the route table on a fresh FastAPI router, in order."""
    app = FastAPI(title=title, docs_url=None, redoc_url=None, openapi_url=None)
    for route in routes:
        app.add_api_route(route.path, route.handler, methods=[route.method])
    return app


class _TLSContextConfig(uvicorn.Config):
    """uvicorn config that serves a prebuilt ``SSLContext``.

    uvicorn only knows how to build a context from file paths; the SVID
    material lives in memory.
    """

    def __init__(self, app: Any, ssl_context: ssl.SSLContext, **kwargs: Any) -> None:
        super().__init__(app, **kwargs)
        self._ssl_context = ssl_context

    def load(self) -> None:
        super().load()
        self.ssl = self._ssl_context


class Listener:
    """A single bound TLS socket and the uvicorn server accepting on it.

    Args:
        app: ASGI application to serve.
        credentials: Material for the server-side TLS context.
        host: Address to bind.
        port: Port to bind; 0 picks an ephemeral port.
        reuse_port: Set ``SO_REUSEPORT`` so a replacement can bind alongside.
        name: Label used in thread names and logs.
    """

    def __init__(
        self,
        app: Any,
        credentials: Credentials,
        host: str,
        port: int,
        reuse_port: bool = True,
        name: str = "service",
    ) -> None:
        self.app = app
        self.credentials = credentials
        self.host = host
        self.reuse_port = reuse_port
        self.name = name
        self._port = port
        self._ssl_context: Optional[ssl.SSLContext] = None
        self._socket: Optional[socket.socket] = None
        self._server: Optional[uvicorn.Server] = None
        self._thread: Optional[threading.Thread] = None
        self._stopped = False

    @property
    def port(self) -> int:
        """Requested port until bound, then the port actually bound."""
        return self._port

    @property
    def bound(self) -> bool:
        return self._socket is not None

    def prepare(self) -> None:
        """Build the TLS context without touching the network."""
        if self._ssl_context is None:
            self._ssl_context = build_server_context(self.credentials)

    def bind(self) -> None:
        """Build the TLS context and bind the listening socket.

        Raises:
            BindError: If the TLS material is rejected or the port cannot be bound.
        """
        self.prepare()
        family = socket.AF_INET6 if ":" in self.host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            if self.reuse_port:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
            sock.bind((self.host, self._port))
            sock.listen(2048)
        except OSError as exc:
            sock.close()
            raise BindError(f"cannot bind {self.host}:{self._port}: {exc}") from exc
        self._port = sock.getsockname()[1]
        self._socket = sock

    def serve(self, timeout: float = 10.0, shutdown_timeout: float = 5.0) -> None:
        """Start accepting on the bound socket and wait until the server is up.

        Raises:
            BindError: If the server exits or does not start within *timeout*.
        """
        if self._socket is None or self._ssl_context is None:
            raise LifecycleError("bind() must be called before serve()")

        config = _TLSContextConfig(
            self.app,
            self._ssl_context,
            host=self.host,
            port=self.port,
            lifespan="off",
            log_config=None,
            timeout_graceful_shutdown=max(1, int(shutdown_timeout)),
        )
        server = uvicorn.Server(config)
        thread = threading.Thread(
            target=server.run,
            kwargs={"sockets": [self._socket]},
            name=f"{self.name}-listener-{self.port}",
            daemon=True,
        )
        self._server = server
        self._thread = thread
        thread.start()

        deadline = time.monotonic() + timeout
        while not server.started:
            if not thread.is_alive():
                self._release_socket()
                raise BindError(f"server on port {self.port} exited during startup")
            if time.monotonic() >= deadline:
                self.stop(timeout=shutdown_timeout)
                raise BindError(f"server on port {self.port} did not start within {timeout}s")
            time.sleep(0.01)

    def stop(self, timeout: float = 5.0) -> None:
        """Stop accepting connections and release the socket. Idempotent."""
        if self._stopped:
            return
        self._stopped = True
        server, thread = self._server, self._thread
        if server is not None and thread is not None:
            server.should_exit = True
            thread.join(timeout)
            if thread.is_alive():
                server.force_exit = True
                thread.join(timeout)
        self._release_socket()

    def _release_socket(self) -> None:
        if self._socket is not None:
            sock, self._socket = self._socket, None
            try:
                sock.close()
            except OSError:
                pass


@dataclass
class ListenerState:
    """The active credentials together with the listener serving them."""

    credentials: Credentials
    listener: Listener
    generation: int
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class RestartOutcome(str, Enum):
    SUCCESS = "success"
    LOAD_FAILED = "load_failed"
    BIND_FAILED = "bind_failed"
    SKIPPED = "skipped"
    QUEUED = "queued"


class ServiceLifecycleManager:
    """Creates, starts, restarts and closes the TLS listener of one service.

    The active :class:`ListenerState` is the only shared mutable state. It is
    replaced by a single reference assignment under ``_lock`` and only after
    the replacement listener is serving; a failed reload or bind leaves the
    previous listener untouched. At most one restart runs at a time; signals
    that arrive meanwhile collapse into one follow-up restart.

    Args:
        config: Service configuration (routes, address, credential paths, timeouts).
        store: Credential source; defaults to a store over ``config.paths``.
        metrics: Metrics sink; defaults to a private registry.
        listener_factory: Callable building a :class:`Listener` (injectable for tests).
    """

    def __init__(
        self,
        config: ServiceConfig,
        store: Optional[CredentialStore] = None,
        metrics: Optional[RotationMetrics] = None,
        listener_factory: Callable[..., Listener] = Listener,
    ) -> None:
        self.config = config
        self.store = store or CredentialStore(config.paths, timeout_seconds=config.load_timeout_seconds)
        self.metrics = metrics or RotationMetrics()
        self.app = build_app(config.routes, title=config.name)
        self._listener_factory = listener_factory

        self._lock = threading.Lock()
        self._op_lock = threading.Lock()
        self._active: Optional[ListenerState] = None
        self._prepared: Optional[Listener] = None
        self._port = config.port
        self._generation = 0
        self._restart_running = False
        self._restart_pending = False
        self._closed = False
        self.last_restart_outcome: Optional[RestartOutcome] = None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def active(self) -> Optional[ListenerState]:
        return self._active

    @property
    def is_serving(self) -> bool:
        return self._active is not None

    @property
    def port(self) -> int:
        """Port every listener binds; resolved after the first bind when 0."""
        return self._port

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create_server(self, credentials: Credentials) -> "ServiceLifecycleManager":
        """Prepare a listener for *credentials* without accepting connections.

        Raises:
            BindError: If the TLS stack rejects the material.
            LifecycleError: If the manager is closed.
        """
        listener = self._new_listener(credentials)
        listener.prepare()
        with self._lock:
            if self._closed:
                raise LifecycleError("manager is closed")
            self._prepared = listener
        return self

    def start(self) -> "ServiceLifecycleManager":
        """Bind the prepared listener and begin accepting connections.

        Raises:
            LifecycleError: If no listener was prepared or one is already active.
            BindError: If the port cannot be bound or the server fails to start.
        """
        with self._op_lock:
            with self._lock:
                if self._closed:
                    raise LifecycleError("manager is closed")
                if self._active is not None:
                    raise LifecycleError("server already started")
                listener, self._prepared = self._prepared, None
            if listener is None:
                raise LifecycleError("create_server() must be called before start()")
            self._swap_in(self._launch(listener))
        return self

    def restart(self) -> "ServiceLifecycleManager":
        """Reload credentials and swap them onto a new listener.

        Never raises for load or bind failures: they are logged and the
        current listener (if any) stays authoritative until the next signal.
        """
        self.try_restart()
        return self

    def try_restart(self) -> RestartOutcome:
        """Like :meth:`restart`, but return the outcome produced by this call.

        Returns ``QUEUED`` when another restart is already running; that
        restart runs once more and owns the result.
        """
        with self._lock:
            if self._closed:
                self.last_restart_outcome = RestartOutcome.SKIPPED
                return RestartOutcome.SKIPPED
            if self._restart_running:
                self._restart_pending = True
                logger.debug("Restart already in progress; queued one more")
                return RestartOutcome.QUEUED
            self._restart_running = True

        outcome = RestartOutcome.SKIPPED
        try:
            while True:
                with self._op_lock:
                    outcome = self.last_restart_outcome = self._restart_once()
                with self._lock:
                    if not self._restart_pending or self._closed:
                        break
                    self._restart_pending = False
        finally:
            with self._lock:
                self._restart_running = False
                self._restart_pending = False
        return outcome

    def close(self, callback: Optional[Callable[[], Any]] = None) -> None:
        """Stop accepting connections, release the socket, then call *callback*."""
        with self._lock:
            self._closed = True
            self._restart_pending = False
            active, self._active = self._active, None
            self._prepared = None

        if active is not None:
            active.listener.stop(timeout=self.config.shutdown_timeout_seconds)
            logger.info("%s listener on port %d closed", self.config.name, active.listener.port)
        if callback is not None:
            callback()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _new_listener(self, credentials: Credentials) -> Listener:
        return self._listener_factory(
            self.app,
            credentials,
            host=self.config.host,
            port=self._port,
            reuse_port=self.config.reuse_port,
            name=self.config.name,
        )

    def _launch(self, listener: Listener) -> ListenerState:
        listener.bind()
        listener.serve(
            timeout=self.config.bind_timeout_seconds,
            shutdown_timeout=self.config.shutdown_timeout_seconds,
        )
        if self._port == 0:
            self._port = listener.port
        self._generation += 1
        return ListenerState(
            credentials=listener.credentials,
            listener=listener,
            generation=self._generation,
        )

    def _swap_in(self, state: ListenerState) -> Optional[ListenerState]:
        """Make *state* active and return the previous state.

        If the manager was closed meanwhile the new listener is stopped instead.
        """
        with self._lock:
            if self._closed:
                closed = True
                previous = None
            else:
                closed = False
                previous, self._active = self._active, state

        if closed:
            state.listener.stop(timeout=self.config.shutdown_timeout_seconds)
            return None

        logger.info(
            "%s listening on %s:%d (generation %d, credentials %s)",
            self.config.name,
            self.config.host,
            state.listener.port,
            state.generation,
            state.credentials.fingerprint(),
        )
        self.metrics.record_listener(state.generation, state.credentials.not_valid_after())
        return previous

    def _restart_once(self) -> RestartOutcome:
        if self._closed:
            return RestartOutcome.SKIPPED

        result = self.store.load()
        if not result.ok:
            logger.error("Restart skipped, could not reload credentials: %s", result.error)
            self.metrics.record_load_failure()
            self.metrics.record_restart(RestartOutcome.LOAD_FAILED.value)
            self._report_expired_active()
            return RestartOutcome.LOAD_FAILED

        credentials = result.unwrap()
        previous = self._active
        if previous is not None and not self.config.reuse_port:
            return self._close_then_rebind(previous, credentials)

        try:
            state = self._launch(self._new_listener(credentials))
        except BindError as exc:
            logger.error("Restart failed, keeping the current listener: %s", exc)
            self.metrics.record_restart(RestartOutcome.BIND_FAILED.value)
            self._report_expired_active()
            return RestartOutcome.BIND_FAILED

        replaced = self._swap_in(state)
        if replaced is not None:
            replaced.listener.stop(timeout=self.config.shutdown_timeout_seconds)
            logger.info("Retired listener generation %d", replaced.generation)
        self.metrics.record_restart(RestartOutcome.SUCCESS.value)
        return RestartOutcome.SUCCESS

    def _close_then_rebind(self, previous: ListenerState, credentials: Credentials) -> RestartOutcome:
        previous.listener.stop(timeout=self.config.shutdown_timeout_seconds)
        try:
            state = self._launch(self._new_listener(credentials))
        except BindError as exc:
            logger.error("Restart failed, rebinding previous credentials: %s", exc)
            self.metrics.record_restart(RestartOutcome.BIND_FAILED.value)
            try:
                self._swap_in(self._launch(self._new_listener(previous.credentials)))
            except BindError as rollback_exc:
                with self._lock:
                    if self._active is previous:
                        self._active = None
                logger.critical("Could not restore the previous listener: %s", rollback_exc)
            return RestartOutcome.BIND_FAILED

        self._swap_in(state)
        self.metrics.record_restart(RestartOutcome.SUCCESS.value)
        return RestartOutcome.SUCCESS

    def _report_expired_active(self) -> None:
        active = self._active
        if active is not None and active.credentials.is_expired():
            logger.error(
                "Active certificate expired at %s and could not be replaced",
                active.credentials.not_valid_after(),
            )
