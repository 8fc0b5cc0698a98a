"""
Playlists router: listing, sync control, status, discovery and duplication.
"""
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel
from sqlalchemy import select

from database import get_session
from exceptions import ConfigurationError, PersistenceError
from models import Playlist, SourceGroup
from playlist_duplicator import duplicate_playlist
from task_engine import get_engine, playlist_job_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/playlists", tags=["Playlists"])


class DuplicateRequest(BaseModel):
    name: Optional[str] = None
    with_sync: bool = False


def _get_playlist_or_404(session, playlist_id: int) -> Playlist:
    playlist = session.get(Playlist, playlist_id)
    if playlist is None:
        raise HTTPException(status_code=404, detail="Playlist not found")
    return playlist


@router.get("")
async def list_playlists():
    """List all playlists with their sync state."""
    session = get_session()
    try:
        playlists = session.scalars(select(Playlist).order_by(Playlist.name)).all()
        return [p.to_dict() for p in playlists]
    finally:
        session.close()


@router.get("/{playlist_id}")
async def get_playlist(playlist_id: int):
    session = get_session()
    try:
        return _get_playlist_or_404(session, playlist_id).to_dict()
    finally:
        session.close()


@router.get("/{playlist_id}/status")
async def get_playlist_status(playlist_id: int):
    """Live sync state, polled by the UI while a sync runs."""
    session = get_session()
    try:
        playlist = _get_playlist_or_404(session, playlist_id)
        return {
            "id": playlist.id,
            "status": playlist.status,
            "progress": playlist.progress,
            "series_progress": playlist.series_progress,
            "processing": playlist.processing,
            "errors": playlist.errors,
            "synced": playlist.to_dict()["synced"],
            "sync_time": playlist.sync_time,
            "running": get_engine().is_job_running(playlist_job_id(playlist_id)),
        }
    finally:
        session.close()


@router.post("/{playlist_id}/sync")
async def sync_playlist_now(playlist_id: int, force: bool = False):
    """Start a sync in the background."""
    session = get_session()
    try:
        _get_playlist_or_404(session, playlist_id)
    finally:
        session.close()

    started = await get_engine().submit_sync(playlist_id, force=force)
    if not started:
        raise HTTPException(status_code=409, detail="Playlist is already syncing")
    logger.info("[PLAYLISTS] Sync requested for playlist %s (force=%s)", playlist_id, force)
    return {"status": "started", "playlist_id": playlist_id}


@router.post("/{playlist_id}/cancel")
async def cancel_playlist_sync(playlist_id: int):
    """Stop a running sync at its next checkpoint."""
    if not get_engine().cancel_job(playlist_job_id(playlist_id)):
        raise HTTPException(status_code=409, detail="Playlist is not syncing")
    return {"status": "cancelling", "playlist_id": playlist_id}


@router.get("/{playlist_id}/groups")
async def get_discovered_groups(playlist_id: int):
    """Group labels seen in the source, imported or not."""
    session = get_session()
    try:
        _get_playlist_or_404(session, playlist_id)
        names = session.scalars(
            select(SourceGroup.name).where(SourceGroup.playlist_id == playlist_id).order_by(SourceGroup.id)
        ).all()
        return {"playlist_id": playlist_id, "groups": list(names)}
    finally:
        session.close()


@router.post("/{playlist_id}/duplicate")
async def duplicate(playlist_id: int, request: DuplicateRequest):
    """Copy a playlist with everything it owns."""
    try:
        return duplicate_playlist(playlist_id, name=request.name, with_sync=request.with_sync)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except PersistenceError as e:
        logger.error("[PLAYLISTS] Duplicate of playlist %s failed: %s", playlist_id, e)
        raise HTTPException(status_code=500, detail="Failed to duplicate playlist")
