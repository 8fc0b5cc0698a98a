"""
EPG mapping runs.

Links playlist channels to EPG channels in bounded batches, chained the same
way as a playlist import:

    match (writes WorkItems) -> MapChunkStage x N -> MapCompleteStage

The EpgMap record carries the run's status and progress through a
SyncStateMachine (no sync-completed signal; that belongs to playlists).
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

import notifications
from batch_orchestrator import (
    CancellationToken,
    ChainResult,
    ChunkWriter,
    PipelineContext,
    Stage,
    StageChain,
    delete_work_items,
    iter_work_item_id_batches,
    load_work_items,
)
from config import ImportSettings, get_settings
from database import get_session
from epg_matcher import EpgMatcher, EpgNameResolver
from exceptions import ConfigurationError
from models import Channel, Epg, EpgMap
from sync_state import SyncStateMachine

logger = logging.getLogger(__name__)

MAP_PROGRESS_START = 20
MAP_PROGRESS_END = 99
CHANNEL_PAGE_SIZE = 500


@dataclass
class MappingOutcome:
    """What a mapping run did."""
    map_id: Optional[int]
    status: str
    channel_count: int = 0
    mapped_count: int = 0
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "map_id": self.map_id,
            "status": self.status,
            "channel_count": self.channel_count,
            "mapped_count": self.mapped_count,
            "error": self.error,
        }


class MapChunkStage(Stage):
    """Write the epg_channel_id links held by a set of WorkItems."""

    name = "map_chunk"

    def __init__(self, item_ids: list[int], batch_count: int):
        self.item_ids = list(item_ids)
        self.batch_count = max(1, batch_count)

    async def run(self, ctx: PipelineContext) -> None:
        session = ctx.session
        items = load_work_items(session, self.item_ids)
        mapped = 0
        for item in items:
            ctx.token.raise_if_cancelled()
            for link in item.get_payload():
                session.execute(
                    update(Channel)
                    .where(Channel.id == link["channel_id"])
                    .values(epg_channel_id=link["epg_channel_id"])
                )
                mapped += 1
            session.delete(item)
        session.commit()

        done = ctx.values.get("items_applied", 0) + len(items)
        ctx.values["items_applied"] = done
        ctx.values["mapped"] = ctx.values.get("mapped", 0) + mapped
        span = MAP_PROGRESS_END - MAP_PROGRESS_START
        ctx.state.set_progress(MAP_PROGRESS_START + span * done / self.batch_count)


class MapCompleteStage(Stage):
    """Record the matched count and finish the run."""

    name = "map_complete"

    async def run(self, ctx: PipelineContext) -> None:
        epg_map: EpgMap = ctx.state.record
        mapped = ctx.values.get("mapped", 0)
        epg_map.mapped_count = mapped
        epg_map.current_mapped_count = mapped
        epg_map.channel_count = ctx.values.get("channel_count", 0)
        ctx.state.complete()
        logger.info(f"[EPG] Mapping {epg_map.id} completed: {mapped}/{epg_map.channel_count} channels linked")
        notifications.notify(
            epg_map.user_id,
            notifications.SUCCESS,
            "EPG Mapping Completed",
            f"\"{epg_map.name}\" mapped {mapped} of {epg_map.channel_count} channels "
            f"in {round(epg_map.sync_time or 0, 2)} seconds.",
            source="epg_map",
            source_id=str(epg_map.id),
        )


def _channel_query(epg_map: EpgMap, channel_ids: Optional[list[int]], force: bool):
    stmt = select(Channel).where(Channel.is_vod.is_(False))
    if epg_map.playlist_id is not None:
        stmt = stmt.where(Channel.playlist_id == epg_map.playlist_id)
    if channel_ids:
        stmt = stmt.where(Channel.id.in_(channel_ids))
    if not force:
        stmt = stmt.where(Channel.epg_channel_id.is_(None))
    return stmt


def _get_or_create_map(
    session: Session,
    epg: Epg,
    playlist_id: Optional[int],
    force: bool,
    recurring: bool,
    epg_map_id: Optional[int],
    map_settings: Optional[dict],
) -> EpgMap:
    if epg_map_id is not None:
        epg_map = session.get(EpgMap, epg_map_id)
        if epg_map is None:
            raise ConfigurationError(f"EPG map {epg_map_id} not found")
        return epg_map

    epg_map = EpgMap(
        name=f"{epg.name} mapping",
        epg_id=epg.id,
        playlist_id=playlist_id,
        user_id=epg.user_id,
        override=force,
        recurring=recurring,
    )
    epg_map.set_settings(map_settings or {})
    session.add(epg_map)
    session.commit()
    return epg_map


async def map_playlist_channels_to_epg(
    epg_id: int,
    playlist_id: Optional[int] = None,
    channel_ids: Optional[list[int]] = None,
    force: bool = False,
    recurring: bool = False,
    epg_map_id: Optional[int] = None,
    settings: Optional[dict] = None,
    token: Optional[CancellationToken] = None,
    import_settings: Optional[ImportSettings] = None,
    name_resolver: Optional[EpgNameResolver] = None,
) -> MappingOutcome:
    """
    Run one EPG mapping pass.

    When epg_map_id is given the existing map is re-run and its own override
    flag and settings apply. Otherwise a new EpgMap is created.

    Raises:
        ConfigurationError: unknown EPG or map, before anything is written.
    """
    import_settings = import_settings or get_settings()
    token = token or CancellationToken()
    session = get_session()
    try:
        epg = session.get(Epg, epg_id)
        if epg is None:
            raise ConfigurationError(f"EPG {epg_id} not found")
        epg_map = _get_or_create_map(session, epg, playlist_id, force, recurring, epg_map_id, settings)
        force = epg_map.override
        map_settings = epg_map.get_settings()

        state = SyncStateMachine(
            session, epg_map, stamp_field="mapped_at", fire_signal=False, notification_source="epg_map"
        )
        if not state.begin():
            return MappingOutcome(map_id=epg_map.id, status=epg_map.status)

        batch_no = str(uuid.uuid4())
        epg_map.uuid = batch_no
        session.commit()
        ctx = PipelineContext(session=session, state=state, batch_no=batch_no, settings=import_settings, token=token)

        async def on_failure(error: Exception) -> None:
            session.rollback()
            delete_work_items(session, batch_no)
            state.fail(str(error))

        try:
            chain = await _prepare_chain(ctx, epg_map, channel_ids, force, map_settings, on_failure, name_resolver)
        except Exception as e:
            logger.exception(f"[EPG] Mapping {epg_map.id} failed while matching: {e}")
            await on_failure(e)
            return MappingOutcome(map_id=epg_map.id, status=epg_map.status, error=str(e))

        result: ChainResult = await chain.run(ctx)
        return MappingOutcome(
            map_id=epg_map.id,
            status=epg_map.status,
            channel_count=ctx.values.get("channel_count", 0),
            mapped_count=ctx.values.get("mapped", 0),
            error=result.error,
        )
    finally:
        session.close()


async def _prepare_chain(ctx, epg_map, channel_ids, force, map_settings, on_failure, name_resolver) -> StageChain:
    session = ctx.session
    state = ctx.state
    state.set_progress(2)

    stmt = _channel_query(epg_map, channel_ids, force)
    total = session.scalar(select(func.count()).select_from(stmt.subquery())) or 0
    epg_map.total_channel_count = total
    session.commit()
    ctx.values["channel_count"] = total
    state.set_progress(MAP_PROGRESS_START)

    matcher = EpgMatcher(
        session,
        epg_map.epg_id,
        exclude_prefixes=map_settings.get("exclude_prefixes") or [],
        use_regex=bool(map_settings.get("use_regex")),
        threshold=ctx.settings.epg_auto_match_threshold,
        name_resolver=name_resolver,
    )
    writer = ChunkWriter(session, ctx.batch_no, ctx.settings.map_chunk_size, title="EPG mapping")
    channel_ids_to_match = list(session.scalars(stmt.with_only_columns(Channel.id).order_by(Channel.id)))
    found = 0
    for start in range(0, len(channel_ids_to_match), CHANNEL_PAGE_SIZE):
        await asyncio.sleep(0)
        ctx.token.raise_if_cancelled()
        page = channel_ids_to_match[start:start + CHANNEL_PAGE_SIZE]
        for channel in session.scalars(select(Channel).where(Channel.id.in_(page)).order_by(Channel.id)).all():
            ctx.token.raise_if_cancelled()
            result = matcher.find_match(channel)
            if result is None:
                continue
            found += 1
            writer.add(
                epg_map.epg_id,
                {"channel_id": channel.id, "epg_channel_id": result.epg_channel_id},
                {"epg_id": epg_map.epg_id},
            )
    writer.close()
    epg_map.current_mapped_count = found
    session.commit()
    logger.info(f"[EPG] Mapping {epg_map.id}: {found} of {total} channels matched")

    id_batches = list(iter_work_item_id_batches(session, ctx.batch_no, ctx.settings.map_chunk_size))
    chain = StageChain(on_failure=on_failure, label="EPG-MAP")
    item_count = sum(len(ids) for ids in id_batches)
    chain.extend([MapChunkStage(ids, item_count) for ids in id_batches])
    chain.add(MapCompleteStage())
    return chain
