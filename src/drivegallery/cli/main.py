"""
Main CLI entry point for drivegallery.
"""

from __future__ import annotations

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from drivegallery import __version__
from drivegallery.cli.commands.api import api_app
from drivegallery.cli.commands.cache import app as cache_app
from drivegallery.config.settings import settings

console = Console()

app = typer.Typer(
    name="drivegallery",
    help="Caching proxy and downloader for Google Drive image galleries",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

app.add_typer(api_app, name="api", help="Run the media proxy")
app.add_typer(cache_app, name="cache", help="Warm or clear the proxy cache")


@app.command()
def version() -> None:
    """Show version information."""
    console.print(
        Panel(
            f"[bold blue]drivegallery[/bold blue] v{__version__}",
            title="Version",
            border_style="blue",
        )
    )


@app.command()
def status() -> None:
    """Show which settings are configured (secrets are never printed)."""

    def flag(ok: bool) -> str:
        return "[green]✓ set[/green]" if ok else "[red]✗ missing[/red]"

    table = Table(title="drivegallery configuration", show_header=False)
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    table.add_row("Service account", flag(settings.has_service_account))
    table.add_row("Drive folder", flag(bool(settings.google_drive_folder_id)))
    table.add_row("Revalidate secret", flag(bool(settings.revalidate_secret)))
    table.add_row("Proxy URL", settings.gallery_base_url)
    table.add_row(
        "Cache",
        f"{settings.cache_max_entries} entries, "
        f"{settings.max_cacheable_bytes // (1024 * 1024)} MiB max object",
    )
    table.add_row(
        "Downloads",
        f"{settings.download_max_concurrent} at a time, "
        f"{settings.download_request_delay}s apart, "
        f"{settings.download_max_retries} retries",
    )
    console.print(table)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    version: bool = typer.Option(
        False, "--version", "-v", help="Show version and exit"
    ),
) -> None:
    """
    drivegallery - serve a Google Drive folder as a cached image gallery.
    """
    if version:
        console.print(f"drivegallery v{__version__}")
        raise typer.Exit(code=0)

    if ctx.invoked_subcommand is None:
        console.print(
            "[yellow]Use 'drivegallery --help' for available commands[/yellow]"
        )
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
