# Copyright (c) SVID-Rotator Contributors. All rights reserved.
# Licensed under the MIT License.
"""
Ping service.

``/ping`` calls the pong service over mutual TLS. Credentials are pulled
from the store on every request, so the client side picks up a rotation
as soon as the files change.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Callable, Mapping, Optional

import httpx
from fastapi.responses import PlainTextResponse

from svidrotator.config import Route, ServiceConfig
from svidrotator.credentials import CredentialStore
from svidrotator.exceptions import BindError
from svidrotator.tls import build_client_context

logger = logging.getLogger(__name__)

DEFAULT_PORT = 3000
DEFAULT_PONG_URL = "https://pong-service:3001/pong"
PONG_URL_ENV_VAR = "PONG_SERVICE_URL"


def health() -> PlainTextResponse:
    return PlainTextResponse("Ping service is healthy")


def routes(
    store: CredentialStore,
    pong_url: Optional[str] = None,
    timeout: float = 5.0,
    client_factory: Callable[..., httpx.Client] = httpx.Client,
) -> tuple[Route, ...]:
    """Build the ping route table.

    Args:
        store: Source of the client credentials for the pong call.
        pong_url: Pong endpoint; defaults to ``$PONG_SERVICE_URL``.
        timeout: Timeout for the pong call in seconds.
        client_factory: httpx client constructor (injectable for tests).
    """
    url = pong_url or os.environ.get(PONG_URL_ENV_VAR, DEFAULT_PONG_URL)

    def ping() -> PlainTextResponse:
        result = store.load()
        if not result.ok:
            logger.error("Cannot ping, credentials unavailable: %s", result.error)
            return PlainTextResponse("Server credentials not available", status_code=500)

        try:
            ctx = build_client_context(result.unwrap())
            with client_factory(verify=ctx, timeout=timeout) as client:
                response = client.get(url)
                response.raise_for_status()
        except (httpx.HTTPError, BindError) as exc:
            logger.error("Error communicating with pong service at %s: %s", url, exc)
            return PlainTextResponse("Error communicating with pong service", status_code=500)

        return PlainTextResponse(f"Ping sent, received: {response.text}")

    return (
        Route("GET", "/ping", ping),
        Route("GET", "/health", health),
    )


def build_config(
    environ: Optional[Mapping[str, str]] = None,
    store: Optional[CredentialStore] = None,
    **overrides: Any,
) -> ServiceConfig:
    env = os.environ if environ is None else environ
    base = ServiceConfig.from_env(env, defaults={"name": "ping-service", "port": DEFAULT_PORT}, **overrides)
    store = store or CredentialStore(base.paths, timeout_seconds=base.load_timeout_seconds)
    return ServiceConfig.from_env(
        env,
        defaults={"name": "ping-service", "port": DEFAULT_PORT},
        routes=routes(store, pong_url=env.get(PONG_URL_ENV_VAR)),
        **overrides,
    )
