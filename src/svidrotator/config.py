# Copyright (c) SVID-Rotator Contributors. All rights reserved.
# Licensed under the MIT License.
"""
Service Configuration

Explicit configuration objects for the credential paths written by the
workload-identity agent and for the TLS-terminated service that consumes
them. Every value can be overridden through the environment.
"""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from svidrotator.exceptions import ConfigError

DEFAULT_SVID_DIR = "/run/spire/x509svid"
DEFAULT_CERT_PATH = f"{DEFAULT_SVID_DIR}/svid.0.pem"
DEFAULT_KEY_PATH = f"{DEFAULT_SVID_DIR}/svid.0.key"
DEFAULT_BUNDLE_PATH = f"{DEFAULT_SVID_DIR}/bundle.0.pem"

CERT_PATH_ENV_VAR = "SVID_CERT_PATH"
KEY_PATH_ENV_VAR = "SVID_KEY_PATH"
BUNDLE_PATH_ENV_VAR = "SVID_BUNDLE_PATH"

DEFAULT_PORT = 3000
HTTP_METHODS = ("GET", "POST", "PUT", "DELETE")


def _to_bool(value: str, field_name: str) -> bool:
    lowered = value.strip().lower()
    if lowered in {"true", "1", "yes", "on"}:
        return True
    if lowered in {"false", "0", "no", "off"}:
        return False
    raise ConfigError(f"{field_name} must be a boolean, got {value!r}")


@dataclass(frozen=True)
class Route:
    """A single entry of the application's route table.

    The handler is opaque to the lifecycle manager; it is registered on
    the router verbatim.
    """

    method: str
    path: str
    handler: Callable[..., Any]

    def __post_init__(self) -> None:
        method = self.method.upper()
        if method not in HTTP_METHODS:
            raise ConfigError(
                f"Unsupported route method {self.method!r}; expected one of {HTTP_METHODS}"
            )
        if not self.path.startswith("/"):
            raise ConfigError(f"Route path must start with '/': {self.path!r}")
        object.__setattr__(self, "method", method)


class CredentialPaths(BaseModel):
    """Locations of the three files written by the identity agent.

    Attributes:
        cert: Path to the leaf certificate (SVID) PEM file.
        key: Path to the private key PEM file.
        bundle: Path to the trust bundle PEM file.
    """

    model_config = ConfigDict(frozen=True)

    cert: str = Field(default=DEFAULT_CERT_PATH, description="SVID certificate PEM path")
    key: str = Field(default=DEFAULT_KEY_PATH, description="SVID private key PEM path")
    bundle: str = Field(default=DEFAULT_BUNDLE_PATH, description="Trust bundle PEM path")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "CredentialPaths":
        env = os.environ if environ is None else environ
        return cls(
            cert=env.get(CERT_PATH_ENV_VAR) or DEFAULT_CERT_PATH,
            key=env.get(KEY_PATH_ENV_VAR) or DEFAULT_KEY_PATH,
            bundle=env.get(BUNDLE_PATH_ENV_VAR) or DEFAULT_BUNDLE_PATH,
        )

    def all(self) -> tuple[str, str, str]:
        """Return the paths in load order: cert, key, bundle."""
        return (self.cert, self.key, self.bundle)

    def absolute(self) -> tuple[str, str, str]:
        return tuple(os.path.abspath(p) for p in self.all())  # type: ignore[return-value]

    def directories(self) -> list[str]:
        """Distinct parent directories of the three files, in load order."""
        seen: list[str] = []
        for path in self.absolute():
            parent = str(Path(path).parent)
            if parent not in seen:
                seen.append(parent)
        return seen

    def basenames(self) -> set[str]:
        return {Path(p).name for p in self.all()}

    def all_exist(self) -> bool:
        return all(os.path.isfile(p) for p in self.all())


class ServiceConfig(BaseModel):
    """Configuration for a TLS-terminated service with rotating credentials.

    Constructed once at process start and handed to the lifecycle manager;
    there is no process-wide router or configuration singleton.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str = Field(default="service", description="Service name used in logs")
    host: str = Field(default="0.0.0.0", description="Listen address")
    port: int = Field(default=DEFAULT_PORT, ge=0, le=65535, description="Listen port (0 = ephemeral)")
    paths: CredentialPaths = Field(default_factory=CredentialPaths)
    routes: tuple[Route, ...] = Field(default=(), description="Ordered route table")

    debounce_seconds: float = Field(default=0.5, ge=0)
    load_timeout_seconds: float = Field(default=5.0, gt=0)
    retry_interval_seconds: float = Field(default=5.0, gt=0)
    bind_timeout_seconds: float = Field(default=10.0, gt=0)
    shutdown_timeout_seconds: float = Field(default=5.0, gt=0)
    bind_retry_limit: int = Field(default=3, ge=0)
    bind_retry_backoff_seconds: float = Field(default=1.0, gt=0)
    reuse_port: bool = Field(
        default_factory=lambda: hasattr(socket, "SO_REUSEPORT"),
        description="Bind the replacement listener before closing the old one",
    )

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        defaults: Optional[Mapping[str, Any]] = None,
        **overrides: Any,
    ) -> "ServiceConfig":
        """Build a config from environment variables.

        Precedence, lowest first: field defaults, *defaults*, the
        environment, keyword overrides (None values are ignored).

        Raises:
            ConfigError: If an environment value cannot be parsed or is out of range.
        """
        env = os.environ if environ is None else environ
        values: dict[str, Any] = dict(defaults or {})
        values["paths"] = CredentialPaths.from_env(env)

        for field_name, var, caster in _ENV_FIELDS:
            raw = env.get(var)
            if raw is None or raw == "":
                continue
            try:
                values[field_name] = caster(raw, var)
            except ValueError as exc:
                if isinstance(exc, ConfigError):
                    raise
                raise ConfigError(f"Invalid value for {var}: {raw!r}") from exc

        values.update({k: v for k, v in overrides.items() if v is not None})
        try:
            return cls(**values)
        except ValidationError as exc:
            raise ConfigError(str(exc)) from exc


def _str(raw: str, _var: str) -> str:
    return raw


def _int(raw: str, _var: str) -> int:
    return int(raw)


def _float(raw: str, _var: str) -> float:
    return float(raw)


_ENV_FIELDS: tuple[tuple[str, str, Callable[[str, str], Any]], ...] = (
    ("name", "SVID_SERVICE_NAME", _str),
    ("host", "HOST", _str),
    ("port", "PORT", _int),
    ("debounce_seconds", "SVID_DEBOUNCE_SECONDS", _float),
    ("load_timeout_seconds", "SVID_LOAD_TIMEOUT_SECONDS", _float),
    ("retry_interval_seconds", "SVID_RETRY_INTERVAL_SECONDS", _float),
    ("bind_timeout_seconds", "SVID_BIND_TIMEOUT_SECONDS", _float),
    ("shutdown_timeout_seconds", "SVID_SHUTDOWN_TIMEOUT_SECONDS", _float),
    ("bind_retry_limit", "SVID_BIND_RETRY_LIMIT", _int),
    ("bind_retry_backoff_seconds", "SVID_BIND_RETRY_BACKOFF_SECONDS", _float),
    ("reuse_port", "SVID_REUSE_PORT", _to_bool),
)
