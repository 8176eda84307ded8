# Copyright (c) SVID-Rotator Contributors. All rights reserved.
# Licensed under the MIT License.
"""
Credential Store

Acquires the X.509-SVID material (leaf certificate, private key and trust
bundle) written by the workload-identity agent. Loading is strictly file
acquisition: structural validation of the certificate and key is left to
the TLS stack at bind time.
"""

from __future__ import annotations

import hashlib
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from cryptography import x509
from pydantic import BaseModel, ConfigDict, Field

from svidrotator.config import CredentialPaths
from svidrotator.exceptions import CredentialLoadError


class Credentials(BaseModel):
    """An immutable snapshot of the SVID material.

    A rotation always produces a new Credentials value; an existing one is
    never mutated. Mutual authentication is a fixed policy, so the client
    certificate flags are read-only properties rather than fields.
    """

    model_config = ConfigDict(frozen=True)

    cert: bytes = Field(..., description="PEM-encoded leaf certificate (and chain)")
    key: bytes = Field(..., description="PEM-encoded private key")
    trust_bundle: bytes = Field(..., description="PEM-encoded CA certificates")

    @property
    def require_client_cert(self) -> bool:
        return True

    @property
    def verify_client_cert(self) -> bool:
        return True

    def fingerprint(self) -> str:
        """Short SHA-256 digest over all three components, for logs."""
        digest = hashlib.sha256()
        for part in (self.cert, self.key, self.trust_bundle):
            digest.update(hashlib.sha256(part).digest())
        return digest.hexdigest()[:16]

    def leaf_certificate(self) -> Optional[x509.Certificate]:
        """Parse the first certificate of ``cert``; None if it is not valid PEM."""
        try:
            certs = x509.load_pem_x509_certificates(self.cert)
        except ValueError:
            return None
        return certs[0] if certs else None

    def not_valid_after(self) -> Optional[datetime]:
        leaf = self.leaf_certificate()
        if leaf is None:
            return None
        return leaf.not_valid_after_utc

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Return True if the leaf certificate is past its notAfter time.

        Unparseable material is reported as not expired; this is a
        diagnostic, not a validation step.
        """
        expiry = self.not_valid_after()
        if expiry is None:
            return False
        current = now or datetime.now(expiry.tzinfo)
        return current >= expiry


@dataclass(frozen=True)
class LoadResult:
    """Outcome of a credential load: exactly one of credentials or error is set."""

    credentials: Optional[Credentials] = None
    error: Optional[CredentialLoadError] = None

    @property
    def ok(self) -> bool:
        return self.credentials is not None

    def unwrap(self) -> Credentials:
        if self.credentials is None:
            raise self.error or CredentialLoadError("credentials not loaded")
        return self.credentials


def _read_file(path: str) -> bytes:
    try:
        data = Path(path).read_bytes()
    except OSError as exc:
        raise CredentialLoadError(
            f"cannot read {path}: {exc.strerror or exc}", path=path, cause=exc
        ) from exc
    if not data:
        raise CredentialLoadError(f"{path} is empty", path=path)
    return data


def read_credentials(paths: CredentialPaths) -> Credentials:
    """Read cert, key and bundle in that order.

    Raises:
        CredentialLoadError: On the first file that is missing, unreadable or empty.
    """
    cert = _read_file(paths.cert)
    key = _read_file(paths.key)
    bundle = _read_file(paths.bundle)
    return Credentials(cert=cert, key=key, trust_bundle=bundle)


class CredentialStore:
    """Loads credentials from a fixed set of paths.

    The store neither retries nor logs; callers decide what a failed load
    means. Reads run on a worker thread so a stuck mount cannot stall the
    caller for longer than ``timeout_seconds``.

    Args:
        paths: File locations; defaults to the environment-derived paths.
        timeout_seconds: Upper bound on one load, or None to read inline.
    """

    def __init__(
        self,
        paths: Optional[CredentialPaths] = None,
        timeout_seconds: Optional[float] = 5.0,
    ) -> None:
        self.paths = paths or CredentialPaths.from_env()
        self.timeout_seconds = timeout_seconds

    def load(self, paths: Optional[CredentialPaths] = None) -> LoadResult:
        target = paths or self.paths
        try:
            if self.timeout_seconds is None:
                return LoadResult(credentials=read_credentials(target))
            return LoadResult(credentials=self._load_with_timeout(target))
        except CredentialLoadError as exc:
            return LoadResult(error=exc)

    def _load_with_timeout(self, paths: CredentialPaths) -> Credentials:
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="svid-load")
        try:
            future = executor.submit(read_credentials, paths)
            try:
                return future.result(timeout=self.timeout_seconds)
            except FutureTimeoutError as exc:
                raise CredentialLoadError(
                    f"timed out after {self.timeout_seconds}s reading credentials",
                    cause=exc,
                ) from exc
        finally:
            executor.shutdown(wait=False)
