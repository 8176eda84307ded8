# Copyright (c) SVID-Rotator Contributors. All rights reserved.
# Licensed under the MIT License.
"""
Mutual TLS Contexts

Builds server- and client-side ``ssl.SSLContext`` objects from an in-memory
:class:`~svidrotator.credentials.Credentials` snapshot. The three components
are always applied together to a fresh context.
"""

from __future__ import annotations

import os
import ssl
import tempfile

from svidrotator.credentials import Credentials
from svidrotator.exceptions import BindError


def _load_cert_chain(ctx: ssl.SSLContext, credentials: Credentials) -> None:
    # load_cert_chain only accepts file paths
    cert_file = key_file = None
    try:
        with tempfile.NamedTemporaryFile(delete=False, suffix=".pem", mode="wb") as cf:
            cf.write(credentials.cert)
            cert_file = cf.name
        with tempfile.NamedTemporaryFile(delete=False, suffix=".key", mode="wb") as kf:
            kf.write(credentials.key)
            key_file = kf.name
        ctx.load_cert_chain(cert_file, key_file)
    finally:
        if cert_file:
            os.unlink(cert_file)
        if key_file:
            os.unlink(key_file)


def _load_trust_bundle(ctx: ssl.SSLContext, credentials: Credentials) -> None:
    ctx.load_verify_locations(cadata=credentials.trust_bundle.decode("ascii"))


def build_server_context(credentials: Credentials) -> ssl.SSLContext:
    """Create a server context that requires and verifies client certificates.

    Raises:
        BindError: If the certificate, key or bundle is rejected by the TLS stack.
    """
    try:
        ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        ctx.minimum_version = ssl.TLSVersion.TLSv1_2
        _load_cert_chain(ctx, credentials)
        _load_trust_bundle(ctx, credentials)
    except (ssl.SSLError, OSError, ValueError) as exc:
        raise BindError(f"Invalid TLS material: {exc}") from exc

    if credentials.require_client_cert and credentials.verify_client_cert:
        ctx.verify_mode = ssl.CERT_REQUIRED
    return ctx


def build_client_context(
    credentials: Credentials,
    check_hostname: bool = False,
) -> ssl.SSLContext:
    """Create a client context presenting the SVID and trusting the bundle.

    Args:
        credentials: Material to present and trust.
        check_hostname: SVIDs name workloads by SPIFFE URI SAN rather than
            DNS name, so hostname checks are opt-in.

    Raises:
        BindError: If the TLS stack rejects the material.
    """
    try:
        ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        ctx.minimum_version = ssl.TLSVersion.TLSv1_2
        _load_cert_chain(ctx, credentials)
        _load_trust_bundle(ctx, credentials)
    except (ssl.SSLError, OSError, ValueError) as exc:
        raise BindError(f"Invalid TLS material: {exc}") from exc

    ctx.check_hostname = check_hostname
    ctx.verify_mode = ssl.CERT_REQUIRED
    return ctx
