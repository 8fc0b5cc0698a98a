"""
EPG router: channel to EPG mapping runs.
"""
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel
from sqlalchemy import select

from database import get_session
from models import Epg, EpgMap
from task_engine import epg_job_id, get_engine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/epg", tags=["EPG"])


class MapSettings(BaseModel):
    exclude_prefixes: list[str] = []
    use_regex: bool = False


class MapRequest(BaseModel):
    playlist_id: Optional[int] = None
    channel_ids: Optional[list[int]] = None
    override: bool = False
    recurring: bool = False
    settings: MapSettings = MapSettings()


@router.post("/{epg_id}/map")
async def map_channels(epg_id: int, request: MapRequest):
    """Start an EPG mapping run in the background."""
    session = get_session()
    try:
        if session.get(Epg, epg_id) is None:
            raise HTTPException(status_code=404, detail="EPG not found")
    finally:
        session.close()

    started = await get_engine().submit_mapping(
        epg_id,
        playlist_id=request.playlist_id,
        channel_ids=request.channel_ids,
        force=request.override,
        recurring=request.recurring,
        settings=request.settings.model_dump(),
    )
    if not started:
        raise HTTPException(status_code=409, detail="A mapping for this EPG is already running")
    logger.info("[EPG] Mapping requested for EPG %s (playlist=%s)", epg_id, request.playlist_id)
    return {"status": "started", "job_id": epg_job_id(epg_id, request.playlist_id)}


@router.get("/maps")
async def list_maps(epg_id: Optional[int] = None):
    session = get_session()
    try:
        stmt = select(EpgMap).order_by(EpgMap.id.desc())
        if epg_id is not None:
            stmt = stmt.where(EpgMap.epg_id == epg_id)
        return [m.to_dict() for m in session.scalars(stmt).all()]
    finally:
        session.close()


@router.get("/maps/{map_id}")
async def get_map(map_id: int):
    session = get_session()
    try:
        epg_map = session.get(EpgMap, map_id)
        if epg_map is None:
            raise HTTPException(status_code=404, detail="EPG map not found")
        return epg_map.to_dict()
    finally:
        session.close()
