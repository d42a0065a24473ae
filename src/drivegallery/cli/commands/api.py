"""CLI commands for running the media proxy."""

from __future__ import annotations

from typing import Any

import typer

api_app = typer.Typer(
    name="api",
    help="Media proxy server commands",
    no_args_is_help=True,
)

_APP_PATH = "drivegallery.api.main:app"


@api_app.command()
def start(
    port: int = typer.Option(8000, "--port", "-p", help="Port to run the server on"),
    host: str = typer.Option("127.0.0.1", "--host", help="Interface to bind"),
    production: bool = typer.Option(
        False, "--production", help="Run behind a CDN or reverse proxy"
    ),
) -> None:
    """
    Start the drivegallery media proxy.

    Development mode (default): auto-reload, info logging.
    Production mode: one worker, warning logging, and X-Forwarded-For
    trusted so request logs show the visitor address. The media cache
    lives in process memory; extra workers would each keep their own.

    Examples:
        drivegallery api start
        drivegallery api start --port 3000
        drivegallery api start --production --host 0.0.0.0
    """
    import uvicorn

    options: dict[str, Any] = {"host": host, "port": port}
    if production:
        options.update(
            workers=1,
            log_level="warning",
            proxy_headers=True,
            forwarded_allow_ips="*",
        )
    else:
        options.update(reload=True, log_level="info")

    uvicorn.run(_APP_PATH, **options)
