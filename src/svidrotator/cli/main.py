# Copyright (c) SVID-Rotator Contributors. All rights reserved.
# Licensed under the MIT License.
"""
svid-rotator CLI

Commands:
- serve: run a reference service with rotating mTLS credentials
- check: load the SVID files once and report what was found
"""

from __future__ import annotations

import json
import logging
import os
import signal
import sys
from typing import Optional

import click
from rich import box
from rich.console import Console
from rich.table import Table

from svidrotator import __version__
from svidrotator.bootstrap import ServiceRunner
from svidrotator.config import CredentialPaths
from svidrotator.credentials import CredentialStore, Credentials
from svidrotator.exceptions import ConfigError
from svidrotator.observability.metrics import RotationMetrics, start_metrics_server
from svidrotator.services import SERVICES

console = Console()
logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"


def _configure_logging(level: str) -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


def _format_expiry(credentials: Credentials) -> str:
    expiry = credentials.not_valid_after()
    if expiry is None:
        return "N/A"
    suffix = " (expired)" if credentials.is_expired() else ""
    return expiry.strftime("%Y-%m-%d %H:%M:%S UTC") + suffix


def _leaf_subject(credentials: Credentials) -> str:
    leaf = credentials.leaf_certificate()
    return leaf.subject.rfc4514_string() if leaf is not None else "N/A"


@click.group()
@click.version_option(__version__, prog_name="svid-rotator")
def app() -> None:
    """svid-rotator - keep an mTLS service on its latest SVID."""


@app.command()
@click.argument("service", type=click.Choice(sorted(SERVICES)))
@click.option("--host", default=None, help="Listen address (default: $HOST or 0.0.0.0)")
@click.option("--port", type=int, default=None, help="Listen port (default: $PORT or the service default)")
@click.option("--metrics-port", type=int, default=None, help="Expose Prometheus metrics on this port")
@click.option(
    "--log-level",
    default=lambda: os.environ.get("SVID_LOG_LEVEL", "INFO"),
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    show_default="INFO",
)
def serve(
    service: str,
    host: Optional[str],
    port: Optional[int],
    metrics_port: Optional[int],
    log_level: str,
) -> None:
    """Run SERVICE until SIGINT or SIGTERM."""
    _configure_logging(log_level)
    try:
        config = SERVICES[service].build_config(None, host=host, port=port)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc

    metrics = RotationMetrics()
    if metrics_port is not None:
        start_metrics_server(metrics, metrics_port)
        logger.info("Metrics available on port %d", metrics_port)

    runner = ServiceRunner(config, metrics=metrics)

    def _shutdown(signum: int, _frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        runner.close()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    runner.start()
    # wake periodically so signal handlers get a chance to run
    while not runner.wait(timeout=1.0):
        pass


@app.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def check(as_json: bool) -> None:
    """Load the SVID files from the configured paths and report on them."""
    paths = CredentialPaths.from_env()
    result = CredentialStore(paths).load()

    if as_json:
        payload: dict[str, object] = {
            "paths": {"cert": paths.cert, "key": paths.key, "bundle": paths.bundle},
            "ok": result.ok,
        }
        if result.ok:
            creds = result.unwrap()
            expiry = creds.not_valid_after()
            payload.update({
                "subject": _leaf_subject(creds),
                "not_valid_after": expiry.isoformat() if expiry else None,
                "expired": creds.is_expired(),
                "fingerprint": creds.fingerprint(),
            })
        else:
            payload["error"] = str(result.error)
        click.echo(json.dumps(payload, indent=2))
        if not result.ok:
            sys.exit(1)
        return

    if not result.ok:
        console.print(f"[bold red]Error loading credentials:[/bold red] {result.error}")
        sys.exit(1)

    creds = result.unwrap()
    table = Table(title="SVID Credentials", box=box.ROUNDED)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Certificate", f"{paths.cert} ({len(creds.cert)} bytes)")
    table.add_row("Key", f"{paths.key} ({len(creds.key)} bytes)")
    table.add_row("Bundle", f"{paths.bundle} ({len(creds.trust_bundle)} bytes)")
    table.add_row("Subject", _leaf_subject(creds))
    table.add_row("Expires", _format_expiry(creds))
    table.add_row("Fingerprint", creds.fingerprint())
    console.print(table)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
