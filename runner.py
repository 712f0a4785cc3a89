"""
CLI entrypoint for Gateway Keeper.
"""
import asyncio
from pathlib import Path
from typing import Optional

import typer

from client.gateway_client import GatewayClient
from client.visualizer import Visualizer
from shared.client_utils import discover_gateway_url
from shared.config import load_settings, settings
from shared.errors import DiscoveryError
from shared.logging import configure_logging

app = typer.Typer(help="Gateway Keeper CLI")


@app.command()
def server():
    """Start the local dev gateway using Uvicorn."""
    import uvicorn
    typer.echo(f"Starting dev gateway on port {settings.PORT}...")
    uvicorn.run("server.main:app", host="0.0.0.0", port=settings.PORT, log_level=settings.LOG_LEVEL.lower())


@app.command()
def connect(
    duration: float = typer.Option(60.0, help="Seconds to keep the session alive"),
    config: Optional[Path] = typer.Option(None, help="Legacy JSON config file with an authTok entry"),
    dashboard: bool = typer.Option(True, help="Show the Rich dashboard instead of plain logs"),
    dev: bool = typer.Option(False, "--dev", help="Discover against the local dev gateway"),
):
    """Open a gateway session and keep it alive for --duration seconds."""
    cfg = load_settings(config)
    if dev:
        cfg = cfg.model_copy(update={"DISCOVERY_URL": f"http://127.0.0.1:{cfg.PORT}/api/gateway"})
    configure_logging("WARNING" if dashboard else cfg.LOG_LEVEL)
    if not cfg.TOKEN:
        typer.echo("No token configured (GATEWAY_TOKEN or authTok in the config file).")
        raise typer.Exit(1)

    client = GatewayClient(cfg, client_id="cli")
    runner = Visualizer(client).run(duration) if dashboard else client.run(duration)
    try:
        asyncio.run(runner)
    except DiscoveryError as e:
        typer.echo(f"Discovery failed: {e}")
        raise typer.Exit(1)
    except KeyboardInterrupt:
        pass


@app.command()
def discover(config: Optional[Path] = typer.Option(None, help="Legacy JSON config file")):
    """Run only the discovery call and print the gateway URL."""
    cfg = load_settings(config)
    configure_logging(cfg.LOG_LEVEL)
    try:
        url = asyncio.run(discover_gateway_url(cfg))
    except DiscoveryError as e:
        typer.echo(f"Discovery failed: {e}")
        raise typer.Exit(1)
    typer.echo(url)


@app.command()
def stats():
    """Query the dev gateway for live connection stats."""
    import httpx
    resp = httpx.get(f"http://127.0.0.1:{settings.PORT}/stats")
    typer.echo(resp.json())


if __name__ == "__main__":
    app()
