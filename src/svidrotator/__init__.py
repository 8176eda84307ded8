# Copyright (c) SVID-Rotator Contributors. All rights reserved.
# Licensed under the MIT License.
"""
svid-rotator - continuously valid mutual-TLS identity for a service

Loads the X.509-SVID written by a workload-identity agent, watches it for
rotation and swaps the new material onto a live TLS listener without a
process restart.

Version: 1.0.0
"""

__version__ = "1.0.0"

from .config import CredentialPaths, Route, ServiceConfig
from .credentials import Credentials, CredentialStore, LoadResult
from .watcher import RotationWatcher, WatchState, WatchTarget
from .server import (
    Listener,
    ListenerState,
    RestartOutcome,
    ServiceLifecycleManager,
    build_app,
)
from .bootstrap import ServiceRunner

# Exceptions
from .exceptions import (
    SVIDRotatorError,
    CredentialLoadError,
    BindError,
    WatchError,
    LifecycleError,
    ConfigError,
)

__all__ = [
    "__version__",
    "CredentialPaths",
    "Route",
    "ServiceConfig",
    "Credentials",
    "CredentialStore",
    "LoadResult",
    "RotationWatcher",
    "WatchState",
    "WatchTarget",
    "Listener",
    "ListenerState",
    "RestartOutcome",
    "ServiceLifecycleManager",
    "build_app",
    "ServiceRunner",
    "SVIDRotatorError",
    "CredentialLoadError",
    "BindError",
    "WatchError",
    "LifecycleError",
    "ConfigError",
]
