# Copyright (c) SVID-Rotator Contributors. All rights reserved.
# Licensed under the MIT License.
"""
Rotation Watcher

Translates filesystem churn around the SVID files into a debounced
"credentials changed" signal.

The identity agent rotates the certificate, key and bundle independently,
usually by atomic rename, so a single logical rotation shows up as a burst
of raw events. Every relevant event re-arms one single-shot timer and the
callback only runs once the burst has been quiet for the debounce interval.

Before the agent has written anything the watcher observes the containing
directory instead (AWAITING_FILES) and switches to the exact files
(WATCHING_FILES) once all three exist. First appearance counts as a
rotation.

Watches are always placed on directories and filtered by path: an inotify
watch on the file itself would be lost on the first atomic rename.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

from watchdog.events import (
    EVENT_TYPE_CLOSED,
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from svidrotator.config import CredentialPaths
from svidrotator.exceptions import WatchError

logger = logging.getLogger(__name__)

# Reads of the credential files themselves produce opened/closed_no_write
# events; those must never count as a change.
CHANGE_EVENTS = frozenset({EVENT_TYPE_CREATED, EVENT_TYPE_MODIFIED, EVENT_TYPE_MOVED, EVENT_TYPE_CLOSED})

# A fallback watch further above the SVID directory than this is logged.
MAX_AWAIT_LEVELS = 1


class WatchState(str, Enum):
    """Lifecycle state of a :class:`RotationWatcher`."""

    AWAITING_FILES = "awaiting_files"
    WATCHING_FILES = "watching_files"
    CLOSED = "closed"


@dataclass(frozen=True)
class WatchTarget:
    """What the watcher is currently subscribed to.

    In WATCHING_FILES mode ``files`` holds the exact paths that count as a
    change. In AWAITING_FILES mode ``directories`` are observed and
    ``expected`` lists the basenames whose joint presence ends the wait.
    """

    mode: WatchState
    directories: tuple[str, ...]
    files: frozenset[str] = field(default_factory=frozenset)
    expected: frozenset[str] = field(default_factory=frozenset)
    recursive: bool = False


def _nearest_existing(directory: str) -> tuple[str, int]:
    """Return the closest existing ancestor of *directory* and how many levels up it is."""
    path = Path(directory)
    levels = 0
    while not path.is_dir() and path != path.parent:
        path = path.parent
        levels += 1
    return str(path), levels


def _event_paths(event: FileSystemEvent) -> set[str]:
    paths = {os.path.abspath(os.fsdecode(event.src_path))}
    dest = getattr(event, "dest_path", "")
    if dest:
        paths.add(os.path.abspath(os.fsdecode(dest)))
    return paths


class _EventForwarder(FileSystemEventHandler):
    def __init__(self, watcher: "RotationWatcher") -> None:
        super().__init__()
        self._watcher = watcher

    def on_any_event(self, event: FileSystemEvent) -> None:
        self._watcher.handle_event(event)


class RotationWatcher:
    """Debounced rotation signal for the three SVID files.

    Observer calls (schedule/unschedule/stop) are never made while holding
    ``_lock``: watchdog dispatches events with its own lock held, and
    :meth:`handle_event` then takes ``_lock``.

    Args:
        paths: Credential file locations to observe.
        on_rotation: Zero-argument callback invoked once per logical rotation.
        debounce_seconds: Quiet period that ends a burst of raw events.
        observer_factory: Factory for the watchdog observer (injectable for tests).
    """

    def __init__(
        self,
        paths: CredentialPaths,
        on_rotation: Callable[[], Any],
        debounce_seconds: float = 0.5,
        observer_factory: Callable[[], Any] = Observer,
    ) -> None:
        self._paths = paths
        self._on_rotation = on_rotation
        self._debounce_seconds = debounce_seconds
        self._observer_factory = observer_factory

        self._files = frozenset(paths.absolute())
        self._handler = _EventForwarder(self)
        self._lock = threading.RLock()
        self._observer: Any = None
        self._watches: list[Any] = []
        self._timer: Optional[threading.Timer] = None
        self._signals = 0

        if paths.all_exist():
            self._target = self._files_target()
        else:
            self._target = self._awaiting_target()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> WatchState:
        return self._target.mode

    @property
    def target(self) -> WatchTarget:
        return self._target

    @property
    def signals_fired(self) -> int:
        """Number of rotation callbacks dispatched so far."""
        return self._signals

    def start(self) -> "RotationWatcher":
        """Subscribe to the current target and begin observing."""
        with self._lock:
            if self.state is WatchState.CLOSED:
                raise WatchError("watcher is closed")
            if self._observer is not None:
                return self
            observer = self._observer = self._observer_factory()
            target = self._target

        watches = self._schedule(observer, target)
        observer.start()
        with self._lock:
            if self._observer is observer:
                self._watches.extend(watches)
        logger.info("Watching SVID files (%s): %s", target.mode.value, ", ".join(target.directories))

        # Files may have appeared between construction and subscription.
        self._check_awaiting()
        return self

    def close(self) -> None:
        """Release the watch handles. Idempotent; no callback fires afterwards."""
        with self._lock:
            if self.state is WatchState.CLOSED:
                return
            self._target = WatchTarget(mode=WatchState.CLOSED, directories=())
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            observer, self._observer = self._observer, None
            self._watches = []

        if observer is not None:
            observer.stop()
            if observer is not threading.current_thread():
                observer.join(timeout=5)
        logger.info("Rotation watcher closed")

    def handle_event(self, event: FileSystemEvent) -> None:
        """Feed one raw filesystem event into the state machine."""
        if event.is_directory and event.event_type == EVENT_TYPE_DELETED:
            self._on_directory_deleted(os.path.abspath(os.fsdecode(event.src_path)))
            return

        if self.state is WatchState.AWAITING_FILES:
            if event.event_type in CHANGE_EVENTS:
                self._check_awaiting()
            return

        touched = _event_paths(event) & self._files
        if not touched:
            return
        with self._lock:
            if self.state is not WatchState.WATCHING_FILES:
                return
            if event.event_type == EVENT_TYPE_DELETED:
                logger.debug("SVID file removed: %s", ", ".join(sorted(touched)))
            elif event.event_type in CHANGE_EVENTS:
                logger.debug("SVID file %s: %s", event.event_type, ", ".join(sorted(touched)))
                self._arm_timer()

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def _files_target(self) -> WatchTarget:
        return WatchTarget(
            mode=WatchState.WATCHING_FILES,
            directories=tuple(self._paths.directories()),
            files=self._files,
        )

    def _awaiting_target(self) -> WatchTarget:
        directories: list[str] = []
        recursive = False
        for directory in self._paths.directories():
            existing, levels = _nearest_existing(directory)
            if levels:
                recursive = True
            if levels > MAX_AWAIT_LEVELS:
                logger.warning(
                    "%s does not exist; watching %s recursively (%d levels up) until it appears",
                    directory,
                    existing,
                    levels,
                )
            if existing not in directories:
                directories.append(existing)
        return WatchTarget(
            mode=WatchState.AWAITING_FILES,
            directories=tuple(directories),
            expected=frozenset(self._paths.basenames()),
            recursive=recursive,
        )

    def _check_awaiting(self) -> None:
        with self._lock:
            if self.state is not WatchState.AWAITING_FILES or not self._paths.all_exist():
                return
            logger.info("All SVID files present; switching to file watch")
            self._target = self._files_target()
            # first appearance is a rotation the caller must act on
            self._arm_timer()
        self._resubscribe()

    def _on_directory_deleted(self, directory: str) -> None:
        with self._lock:
            if self.state is WatchState.CLOSED or directory not in self._target.directories:
                return
            logger.warning(
                "%s; waiting for the identity agent to recreate it",
                WatchError(f"watched directory removed: {directory}"),
            )
            self._target = self._awaiting_target()
        self._resubscribe()

    def _resubscribe(self) -> None:
        with self._lock:
            observer = self._observer
            old, self._watches = self._watches, []
            target = self._target
        if observer is None:
            return

        for watch in old:
            try:
                observer.unschedule(watch)
            except (KeyError, OSError) as exc:
                logger.debug("Ignoring unschedule failure: %s", exc)

        watches = self._schedule(observer, target)
        with self._lock:
            if self._observer is observer and self._target is target:
                self._watches.extend(watches)
                return
        # closed or re-targeted meanwhile
        for watch in watches:
            try:
                observer.unschedule(watch)
            except (KeyError, OSError):
                pass

    def _schedule(self, observer: Any, target: WatchTarget) -> list[Any]:
        watches = []
        for directory in target.directories:
            try:
                watches.append(observer.schedule(self._handler, directory, recursive=target.recursive))
            except OSError as exc:
                logger.warning("%s", WatchError(f"cannot watch {directory}: {exc}"))
        if target.directories and not watches:
            logger.error("No SVID directory could be watched; rotations will be missed")
        return watches

    # ------------------------------------------------------------------
    # Debounce
    # ------------------------------------------------------------------

    def _arm_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        timer = threading.Timer(self._debounce_seconds, self._fire)
        timer.daemon = True
        self._timer = timer
        timer.start()

    def _fire(self) -> None:
        with self._lock:
            # a newer event may have superseded this timer
            if self.state is WatchState.CLOSED or self._timer is not threading.current_thread():
                return
            self._timer = None
            self._signals += 1

        logger.info("SVID rotation detected")
        try:
            self._on_rotation()
        except Exception:
            logger.exception("Rotation callback failed")
