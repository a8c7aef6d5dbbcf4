"""CLI for running the API server and scanning videos.

Scans started without ``--url`` run in this process and block until they
finish. With ``--url`` the request goes to a running server instead.
"""

import asyncio

import click
import httpx

from surfacescan import database
from surfacescan.config import settings
from surfacescan.errors import VideoNotFound
from surfacescan.logging_config import setup_logging
from surfacescan.schemas.video import DetectedSurface
from surfacescan.services.poller import HttpStatusReader, PollOutcome, ScanPoller, StoreStatusReader
from surfacescan.services.result_store import ResultStore
from surfacescan.services.scan_scheduler import ScanJob, build_scan_scheduler


def _echo_surfaces(surfaces: list[DetectedSurface]) -> None:
    for s in surfaces:
        box = s.bounding_box
        click.echo(
            f"  {s.timestamp:7.1f}s  {s.surface_type:<10} {s.confidence:.2f}  "
            f"box=({box.x:.2f}, {box.y:.2f}, {box.width:.2f}, {box.height:.2f})"
        )


def _echo_outcome(outcome: PollOutcome) -> None:
    if outcome.cancelled:
        click.echo(f"Video {outcome.video_id}: polling cancelled (last status: {outcome.status})")
    elif outcome.timed_out:
        click.echo(f"Video {outcome.video_id}: gave up after {outcome.polls} polls (last status: {outcome.status})")
    else:
        click.echo(f"Video {outcome.video_id}: {outcome.status}")
        _echo_surfaces(outcome.surfaces)


def _echo_job(job: ScanJob) -> None:
    line = f"Video {job.video_id}: {job.status} ({job.state.value}, {job.retry_count} retries)"
    if job.error:
        line += f" - {job.error}"
    click.echo(line)


async def _run_scans(video_id: int | None = None, limit: int = 0) -> list[ScanJob]:
    """Run scans in-process and wait for all of them."""
    scheduler = build_scan_scheduler(session_factory=database.async_session_maker)
    try:
        if video_id is not None:
            job, _ = await scheduler.request_scan(video_id)
            jobs = [job]
        else:
            jobs = await scheduler.request_batch_scan(limit)
        for job in jobs:
            await job.wait()
        return jobs
    finally:
        await scheduler.shutdown()


def _post(url: str, path: str, params: dict | None = None) -> dict:
    try:
        response = httpx.post(f"{url.rstrip('/')}{path}", params=params, timeout=30.0)
    except httpx.HTTPError as e:
        raise click.ClickException(f"Request to {url} failed: {e}")
    if response.status_code == 404:
        raise click.ClickException(response.json().get("detail", "Not found"))
    if response.is_error:
        raise click.ClickException(f"{path} returned HTTP {response.status_code}")
    return response.json()


async def _poll(video_id: int, url: str | None) -> PollOutcome:
    if url is None:
        poller = ScanPoller.from_settings(StoreStatusReader(database.async_session_maker))
        return await poller.wait_for_terminal(video_id)

    async with HttpStatusReader(url.rstrip("/")) as reader:
        poller = ScanPoller.from_settings(reader)
        return await poller.wait_for_terminal(video_id)


@click.group()
@click.option("--log-level", default=None, help="Override LOG_LEVEL")
def cli(log_level: str | None):
    """Surface scan pipeline: detect product-placement surfaces in videos."""
    setup_logging(log_level or settings.log_level)


@cli.command()
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", default=8000, type=int, help="Bind port")
@click.option("--reload", is_flag=True, help="Reload on code changes")
def serve(host: str, port: int, reload: bool):
    """Run the API server."""
    import uvicorn

    uvicorn.run("surfacescan.main:app", host=host, port=port, reload=reload)


@cli.command("init-db")
def init_db_command():
    """Create database tables."""
    asyncio.run(database.init_db(database.engine))
    click.echo("Database initialized")


@cli.command("add-video")
@click.argument("source_ref")
@click.option("--title", default="", help="Video title")
@click.option("--priority", default=0, type=int, help="Priority score, higher scans first")
def add_video(source_ref: str, title: str, priority: int):
    """Register a video (local path or URL) in Pending Scan status."""

    async def _add():
        async with database.async_session_maker() as session:
            return await ResultStore(session).create_video(source_ref, title=title, priority_score=priority)

    video = asyncio.run(_add())
    click.echo(f"Video {video.id} added ({video.status})")


@cli.command()
@click.argument("video_id", type=int)
@click.option("--url", default=None, help="Submit to a running server instead of scanning in-process")
@click.option("--wait", is_flag=True, help="With --url, poll the server until the scan finishes")
def scan(video_id: int, url: str | None, wait: bool):
    """Scan one video for placement surfaces."""
    if url:
        body = _post(url, f"/video-scan/{video_id}")
        if body["jobStarted"]:
            click.echo(f"Scan started for video {video_id}")
        else:
            click.echo(f"Scan already running for video {video_id}")
        if wait:
            _echo_outcome(asyncio.run(_poll(video_id, url)))
        return

    try:
        jobs = asyncio.run(_run_scans(video_id=video_id))
    except VideoNotFound as e:
        raise click.ClickException(str(e))

    for job in jobs:
        _echo_job(job)

    outcome = asyncio.run(_poll(video_id, None))
    _echo_surfaces(outcome.surfaces)


@cli.command()
@click.option("--limit", required=True, type=click.IntRange(min=1), help="Maximum videos to scan")
@click.option("--url", default=None, help="Submit to a running server instead of scanning in-process")
def batch(limit: int, url: str | None):
    """Scan the highest-priority videos in Pending Scan status."""
    if url:
        body = _post(url, "/video-scan/batch", params={"limit": limit})
        click.echo(f"Enqueued {body['enqueued']} scans")
        return

    jobs = asyncio.run(_run_scans(limit=limit))
    click.echo(f"Scanned {len(jobs)} videos")
    for job in jobs:
        _echo_job(job)


@cli.command()
@click.argument("video_id", type=int)
@click.option("--url", default=None, help="Read from a running server instead of the database")
def status(video_id: int, url: str | None):
    """Show a video's scan status and visible surfaces."""

    async def _read():
        if url is None:
            reader = StoreStatusReader(database.async_session_maker)
            return await reader.read_status(video_id), await reader.read_surfaces(video_id)
        async with HttpStatusReader(url.rstrip("/")) as reader:
            return await reader.read_status(video_id), await reader.read_surfaces(video_id)

    try:
        scan_status, surfaces = asyncio.run(_read())
    except VideoNotFound as e:
        raise click.ClickException(str(e))

    click.echo(f"Video {video_id}: {scan_status}")
    _echo_surfaces(surfaces)


@cli.command()
@click.argument("video_id", type=int)
@click.option("--url", required=True, help="Base URL of the running server")
def watch(video_id: int, url: str):
    """Poll a server until the video's scan reaches a terminal status."""
    try:
        outcome = asyncio.run(_poll(video_id, url))
    except VideoNotFound as e:
        raise click.ClickException(str(e))
    _echo_outcome(outcome)


if __name__ == "__main__":
    cli()
