"""studioflow command-line interface."""

from __future__ import annotations

import json
import logging
import sys

import click

from studioflow import __version__
from studioflow.config import STUDIO_PLUGIN_PORT

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str) -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


@click.group()
@click.version_option(version=__version__, prog_name="studioflow")
def app() -> None:
    """studioflow CLI - drive Roblox Studio from natural-language prompts."""


@app.command()
@click.option("--host", default=None, help="Interface to bind (defaults to config, 127.0.0.1).")
@click.option("--port", type=int, default=None, help=f"Port to bind (defaults to config, {STUDIO_PLUGIN_PORT}).")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=str),
    default=None,
    help="YAML configuration file.",
)
@click.option(
    "--log-level",
    default="info",
    envvar="STUDIOFLOW_LOG_LEVEL",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    show_default=True,
    help="Logging level.",
)
def serve(host: str | None, port: int | None, config_path: str | None, log_level: str) -> None:
    """Run the orchestration server the Studio plugin polls."""
    import uvicorn

    from studioflow.config import load_config
    from studioflow.errors import ConfigError
    from studioflow.gateway import GeminiGateway
    from studioflow.orchestrator import Orchestrator
    from studioflow.server import create_app
    from studioflow.telemetry import LoggingEventSink

    configure_logging(log_level)
    try:
        config = load_config(config_path, overrides={"host": host, "port": port})
    except ConfigError as e:
        click.echo(f"✗ {e.detail}", err=True)
        sys.exit(1)

    gateway = GeminiGateway(config.gemini_model, timeout_s=config.gemini_timeout_s)
    orchestrator = Orchestrator(gateway, config=config, telemetry=LoggingEventSink())
    server_config = uvicorn.Config(
        create_app(orchestrator),
        host=config.host,
        port=config.port,
        log_level=log_level.lower(),
    )
    click.echo(f"studioflow listening on http://{config.host}:{config.port}")
    uvicorn.Server(server_config).run()


@app.command()
@click.argument("text")
@click.option("--session", "session_id", default=None, help="Session id to continue (a new one is minted if omitted).")
@click.option(
    "--url",
    default=f"http://127.0.0.1:{STUDIO_PLUGIN_PORT}",
    show_default=True,
    help="Base URL of a running studioflow server.",
)
@click.option("--wait", is_flag=True, help="Wait for the first plan and print the session snapshot.")
@click.option("--supersede", is_flag=True, help="Replace the session's in-flight plan.")
@click.option("--timeout", type=float, default=120.0, show_default=True, help="HTTP timeout in seconds.")
def prompt(text: str, session_id: str | None, url: str, wait: bool, supersede: bool, timeout: float) -> None:
    """Send TEXT as a prompt to a running server."""
    import httpx

    body: dict[str, object] = {"prompt": text, "supersede": supersede, "wait": wait}
    if session_id:
        body["session_id"] = session_id
    try:
        response = httpx.post(url.rstrip("/") + "/prompt", json=body, timeout=timeout)
    except httpx.HTTPError as e:
        click.echo(f"✗ Could not reach {url}: {e}", err=True)
        sys.exit(1)

    try:
        payload = response.json()
    except ValueError:
        payload = {"detail": response.text}
    if response.status_code >= 400:
        click.echo(f"✗ {payload.get('title', 'Request failed')}: {payload.get('detail', '')}", err=True)
        sys.exit(1)
    click.echo(json.dumps(payload, indent=2))


__all__ = ["app", "configure_logging"]
