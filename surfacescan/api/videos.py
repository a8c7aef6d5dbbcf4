"""Video and surface read API endpoints."""

from functools import lru_cache
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import FileResponse
from sqlalchemy.ext.asyncio import AsyncSession

from surfacescan.config import Settings, settings
from surfacescan.database import get_db
from surfacescan.errors import VideoNotFound
from surfacescan.schemas.video import DetectedSurface, SurfaceList, Video, VideoCreate
from surfacescan.services.frame_store import FrameStore, is_frame_filename
from surfacescan.services.result_store import (
    DataSource,
    FixtureSurfaceSource,
    ResultStore,
    SurfaceSource,
    make_surface_source,
)

router = APIRouter(prefix="/video", tags=["videos"])


def get_settings() -> Settings:
    """Dependency returning the active settings."""
    return settings


@lru_cache
def _fixture_source(path: str | None) -> FixtureSurfaceSource:
    return FixtureSurfaceSource(path)


async def get_surface_source(
    db: Annotated[AsyncSession, Depends(get_db)],
    config: Annotated[Settings, Depends(get_settings)],
) -> SurfaceSource:
    """Dependency selecting the read path from the configured data source."""
    if DataSource(config.data_source) == DataSource.FIXTURE:
        return _fixture_source(config.fixture_path)
    return make_surface_source(DataSource.LIVE, session=db)


def _not_found(video_id: int) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Video with id {video_id} not found",
    )


@router.post("", response_model=Video, status_code=status.HTTP_201_CREATED)
async def create_video(
    video: VideoCreate,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> Video:
    """Register a video in Pending Scan status."""
    db_video = await ResultStore(db).create_video(
        source_ref=video.source_ref,
        title=video.title,
        priority_score=video.priority_score,
        duration_seconds=video.duration_seconds,
    )
    return Video.model_validate(db_video)


@router.get("/{video_id}", response_model=Video)
async def get_video(
    video_id: int,
    source: Annotated[SurfaceSource, Depends(get_surface_source)],
) -> Video:
    """Get a video and its scan status. Pollers read this until the status is terminal."""
    try:
        video = await source.get_video(video_id)
    except VideoNotFound:
        raise _not_found(video_id)
    return Video.model_validate(video)


@router.get("/{video_id}/surfaces", response_model=SurfaceList)
async def list_surfaces(
    video_id: int,
    source: Annotated[SurfaceSource, Depends(get_surface_source)],
) -> SurfaceList:
    """List a video's surfaces in chronological order.

    Returns an empty list (not an error) until a scan has finished with Ready status.
    """
    try:
        rows = await source.list_surfaces(video_id)
    except VideoNotFound:
        raise _not_found(video_id)

    surfaces = [DetectedSurface.from_model(row) for row in rows]
    return SurfaceList(surfaces=surfaces, count=len(surfaces))


@router.get("/{video_id}/frames/{filename}")
async def get_frame(
    video_id: int,
    filename: str,
    config: Annotated[Settings, Depends(get_settings)],
) -> FileResponse:
    """Serve a stored frame image of a detected surface."""
    if not is_frame_filename(filename):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Frame not found")

    path = FrameStore(config.frame_storage_path).frame_path(video_id, filename)
    if not path.is_file():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Frame not found")

    return FileResponse(path, media_type="image/jpeg", filename=filename)
