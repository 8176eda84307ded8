# Copyright (c) SVID-Rotator Contributors. All rights reserved.
# Licensed under the MIT License.
"""Pong service: answers ``/pong`` for mTLS-authenticated callers."""

from __future__ import annotations

from typing import Any, Mapping, Optional

from fastapi.responses import PlainTextResponse

from svidrotator.config import Route, ServiceConfig

DEFAULT_PORT = 3001


def pong() -> PlainTextResponse:
    return PlainTextResponse("pong")


def health() -> PlainTextResponse:
    return PlainTextResponse("Pong service is healthy")


def routes() -> tuple[Route, ...]:
    return (
        Route("GET", "/pong", pong),
        Route("GET", "/health", health),
    )


def build_config(environ: Optional[Mapping[str, str]] = None, **overrides: Any) -> ServiceConfig:
    return ServiceConfig.from_env(
        environ,
        defaults={"name": "pong-service", "port": DEFAULT_PORT},
        routes=routes(),
        **overrides,
    )
