# Copyright (c) SVID-Rotator Contributors. All rights reserved.
# Licensed under the MIT License.
"""Centralized exception hierarchy for svid-rotator.

All svid-rotator exceptions inherit from SVIDRotatorError, enabling
consistent error handling across the credential store, the rotation
watcher and the service lifecycle manager.
"""

from __future__ import annotations

from typing import Optional


class SVIDRotatorError(Exception):
    """Base exception for all svid-rotator errors."""


class CredentialLoadError(SVIDRotatorError):
    """A credential file could not be acquired (missing, unreadable or empty)."""

    def __init__(
        self,
        message: str,
        *,
        path: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.path = path
        self.cause = cause


class BindError(SVIDRotatorError):
    """Socket bind, TLS context construction or server start failed."""


class WatchError(SVIDRotatorError):
    """The filesystem watch mechanism reported a failure."""


class LifecycleError(SVIDRotatorError):
    """A lifecycle method was called in a state that does not allow it."""


class ConfigError(SVIDRotatorError, ValueError):
    """Configuration is invalid."""


__all__ = [
    "SVIDRotatorError",
    "CredentialLoadError",
    "BindError",
    "WatchError",
    "LifecycleError",
    "ConfigError",
]
