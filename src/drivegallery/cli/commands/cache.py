"""
CLI commands for the gallery media cache.

``drivegallery cache warm`` lists the configured Drive folder and pulls
each image through a running proxy with the download scheduler, so the
proxy's in-process cache (and any CDN in front of it) is populated before
real visitors arrive. ``drivegallery cache clear`` calls the manual
revalidation endpoint.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Optional
from urllib.parse import quote, urlencode

import httpx
import typer
from pydantic import BaseModel
from rich.console import Console
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from drivegallery.config.settings import Settings, settings
from drivegallery.exceptions import APIError
from drivegallery.services.download_scheduler import (
    DownloadedMedia,
    DownloadError,
    DownloadScheduler,
)
from drivegallery.services.drive_client import (
    GoogleDriveClient,
    build_service_account_credentials,
)
from drivegallery.services.interfaces import ObjectStoreInterface
from drivegallery.services.models import ObjectMetadata

console = Console()

IMAGE_FILTER = "mimeType contains 'image/'"

app = typer.Typer(
    name="cache",
    help="Manage the gallery media cache.",
    no_args_is_help=True,
)


class WarmResult(BaseModel):
    """Result of a cache-warming run.

    Attributes
    ----------
    downloaded : int
        Images fetched from Drive by the proxy (cache MISS or BYPASS).
    cached : int
        Images the proxy already had (cache HIT).
    failed : int
        Images that could not be fetched.
    total : int
        Images processed.
    total_bytes : int
        Bytes received.
    """

    downloaded: int = 0
    cached: int = 0
    failed: int = 0
    total: int = 0
    total_bytes: int = 0


def proxy_url(
    base_url: str, item: ObjectMetadata, *, thumbnail: bool = False
) -> str:
    """Build the proxy address for a Drive object.

    Examples
    --------
    >>> proxy_url("http://localhost:8000", ObjectMetadata(id="1AbC", name="a.jpg"))
    'http://localhost:8000/api/drive-image/1AbC?name=a.jpg'
    """
    params: dict[str, str] = {}
    if thumbnail:
        params["thumb"] = "1"
        if item.thumbnail_url:
            params["url"] = item.thumbnail_url
    if item.name:
        params["name"] = item.name
    url = f"{base_url.rstrip('/')}/api/drive-image/{quote(item.id, safe='')}"
    return f"{url}?{urlencode(params)}" if params else url


async def collect_objects(
    store: ObjectStoreInterface, folder_id: str, limit: int | None = None
) -> list[ObjectMetadata]:
    """Page through a folder's images, newest first, up to ``limit``."""
    objects: list[ObjectMetadata] = []
    page_token: str | None = None
    while True:
        page = await store.list_objects(folder_id, IMAGE_FILTER, page_token)
        objects.extend(page.objects)
        if limit is not None and len(objects) >= limit:
            return objects[:limit]
        if not page.next_page_token:
            return objects
        page_token = page.next_page_token


async def warm_objects(
    scheduler: DownloadScheduler,
    objects: list[ObjectMetadata],
    base_url: str,
    *,
    thumbnails: bool = False,
    progress: Progress | None = None,
) -> tuple[WarmResult, list[tuple[str, DownloadError]]]:
    """Pull every object through the proxy and tally the outcome.

    Parameters
    ----------
    scheduler : DownloadScheduler
        A started scheduler.
    objects : list[ObjectMetadata]
        Drive objects to fetch.
    base_url : str
        Proxy base URL.
    thumbnails : bool
        Fetch thumbnails instead of originals.
    progress : Progress | None
        Rich progress display to advance as items finish.

    Returns
    -------
    tuple[WarmResult, list[tuple[str, DownloadError]]]
        Totals and the failures with their object ids.
    """
    result = WarmResult(total=len(objects))
    failures: list[tuple[str, DownloadError]] = []
    bar = progress.add_task("Images", total=len(objects)) if progress else None

    def advance() -> None:
        if progress is not None and bar is not None:
            progress.update(
                bar,
                advance=1,
                description=(
                    f"Images ({result.downloaded} fetched, "
                    f"{result.cached} cached, {result.failed} failed)"
                ),
            )

    def on_complete(media: DownloadedMedia) -> None:
        if media.cache_status == "HIT":
            result.cached += 1
        else:
            result.downloaded += 1
        result.total_bytes += len(media.content)
        advance()

    def make_on_error(object_id: str) -> Callable[[DownloadError], None]:
        def on_error(error: DownloadError) -> None:
            result.failed += 1
            failures.append((object_id, error))
            advance()

        return on_error

    for item in objects:
        scheduler.enqueue(
            item.id,
            proxy_url(base_url, item, thumbnail=thumbnails),
            on_complete=on_complete,
            on_error=make_on_error(item.id),
        )

    await scheduler.join()
    return result, failures


@app.command(name="warm")
def warm(
    limit: Optional[int] = typer.Option(
        None,
        "--limit",
        "-l",
        help="Maximum number of images to fetch",
    ),
    thumbnails: bool = typer.Option(
        False,
        "--thumbnails",
        help="Warm thumbnails instead of originals",
    ),
    delay: Optional[float] = typer.Option(
        None,
        "--delay",
        "-d",
        help="Seconds between requests (default from settings)",
    ),
    base_url: Optional[str] = typer.Option(
        None,
        "--base-url",
        help="Proxy base URL (default from settings)",
    ),
) -> None:
    """
    Pull the gallery's images through the proxy to populate its cache.

    Requests go out one at a time with a pause between them; throttled
    requests are retried with exponential backoff.

    Examples:
        drivegallery cache warm
        drivegallery cache warm --thumbnails --limit 50
        drivegallery cache warm --base-url https://gallery.example.com
    """
    if limit is not None and limit <= 0:
        console.print("[red]Error: --limit must be a positive integer[/red]")
        raise typer.Exit(code=2)

    if delay is not None and delay < 0:
        console.print("[red]Error: --delay must be non-negative[/red]")
        raise typer.Exit(code=2)

    if not settings.has_service_account or not settings.google_drive_folder_id:
        console.print(
            "[red]Error: GOOGLE_SERVICE_ACCOUNT_EMAIL, "
            "GOOGLE_SERVICE_ACCOUNT_PRIVATE_KEY and GOOGLE_DRIVE_FOLDER_ID "
            "must be set[/red]"
        )
        raise typer.Exit(code=2)

    try:
        result, failures = asyncio.run(
            _warm_async(
                settings,
                limit=limit,
                thumbnails=thumbnails,
                delay=delay,
                base_url=base_url or settings.gallery_base_url,
            )
        )
    except KeyboardInterrupt:
        console.print("\n[yellow]Cache warming interrupted by user[/yellow]")
        raise typer.Exit(code=130)
    except APIError as exc:
        console.print(f"[red]Error listing Drive folder: {exc.message}[/red]")
        raise typer.Exit(code=1)

    _display_summary(result, failures)
    if result.failed:
        raise typer.Exit(code=1)


async def _warm_async(
    app_settings: Settings,
    *,
    limit: int | None,
    thumbnails: bool,
    delay: float | None,
    base_url: str,
) -> tuple[WarmResult, list[tuple[str, DownloadError]]]:
    credentials = build_service_account_credentials(
        app_settings.google_service_account_email,
        app_settings.google_service_account_private_key,
    )
    store = GoogleDriveClient(
        credentials,
        base_url=app_settings.drive_api_base_url,
        timeout=app_settings.upstream_timeout,
    )
    try:
        objects = await collect_objects(
            store, app_settings.google_drive_folder_id, limit
        )
    finally:
        await store.aclose()

    if not objects:
        console.print("[yellow]No images found in the configured folder[/yellow]")
        return WarmResult(), []

    console.print(f"[cyan]Warming {len(objects)} image(s) via {base_url}...[/cyan]")

    overrides = {"request_delay": delay} if delay is not None else {}
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
        console=console,
    ) as progress:
        async with DownloadScheduler.from_settings(app_settings, **overrides) as scheduler:
            return await warm_objects(
                scheduler,
                objects,
                base_url,
                thumbnails=thumbnails,
                progress=progress,
            )


def _display_summary(
    result: WarmResult, failures: list[tuple[str, DownloadError]]
) -> None:
    """Display a summary table of warming results."""
    console.print()

    table = Table(title="Cache Warm Summary")
    table.add_column("Fetched", style="green", justify="right")
    table.add_column("Cached", style="blue", justify="right")
    table.add_column("Failed", style="red", justify="right")
    table.add_column("Total", style="bold", justify="right")
    table.add_column("MB", justify="right")
    table.add_row(
        str(result.downloaded),
        str(result.cached),
        str(result.failed),
        str(result.total),
        f"{result.total_bytes / (1024 * 1024):.1f}",
    )
    console.print(table)

    for object_id, error in failures:
        status = f" (HTTP {error.status_code})" if error.status_code else ""
        console.print(
            f"  [red]✗[/red] {object_id}: {error.reason.value}{status} "
            f"after {error.attempts} attempt(s)"
        )


@app.command(name="clear")
def clear(
    secret: Optional[str] = typer.Option(
        None,
        "--secret",
        help="Revalidation secret (default from REVALIDATE_SECRET)",
    ),
    base_url: Optional[str] = typer.Option(
        None,
        "--base-url",
        help="Proxy base URL (default from settings)",
    ),
) -> None:
    """
    Invalidate the proxy's media cache.

    Examples:
        drivegallery cache clear
        drivegallery cache clear --base-url https://gallery.example.com
    """
    target = (base_url or settings.gallery_base_url).rstrip("/")
    try:
        response = httpx.get(
            f"{target}/api/revalidate",
            params={"secret": secret or settings.revalidate_secret},
            timeout=settings.upstream_timeout,
        )
    except httpx.HTTPError as exc:
        console.print(f"[red]Error: could not reach {target}: {exc}[/red]")
        raise typer.Exit(code=1)

    if response.status_code == 401:
        console.print("[red]Error: revalidation secret rejected[/red]")
        raise typer.Exit(code=1)
    if response.status_code != 200:
        console.print(
            f"[red]Error: revalidation failed with HTTP {response.status_code}[/red]"
        )
        raise typer.Exit(code=1)

    console.print(f"[green]✓[/green] {response.json().get('message', 'Cache cleared')}")
