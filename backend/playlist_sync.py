"""
Playlist sync pipeline.

One run of sync_playlist():

    gate -> fetch (M3U file or Xtream API) -> decode -> normalize
         -> group upsert + WorkItem chunks -> source groups / categories
         -> [preprocess: stop, groups discovered]
         -> StageChain: backup, apply chunks, complete, series

Every error, before or inside the chain, goes through the same failure
path: the playlist is marked failed with the error message, progress 100,
processing cleared, and the sync-completed signal fires.
"""
import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import notifications
from batch_orchestrator import (
    CancellationToken,
    ChunkWriter,
    PipelineContext,
    StageChain,
    delete_work_items,
    iter_work_item_id_batches,
)
from channel_normalizer import ChannelNormalizer, IncludeFilter
from config import ImportSettings, get_settings
from database import get_session
from exceptions import ConfigurationError
from group_resolver import GroupCategoryResolver, discover_groups
from import_stages import (
    ApplyChunkStage,
    BackupStage,
    ImportCompleteStage,
    SeriesChunkStage,
    SeriesCompleteStage,
)
from models import Playlist
from playlist_decoder import M3UPlaylistDecoder, PlaylistDecoder, XtreamPlaylistDecoder
from source_fetcher import SourceFetcher
from storage import LocalStorage, get_storage
from sync_state import SyncStateMachine
from xtream_client import LIVE, SERIES, VOD, XtreamClient, XtreamCredentials

logger = logging.getLogger(__name__)

# Parse warnings quoted in the end-of-run notification
MAX_WARNINGS_IN_NOTIFICATION = 5
# Decoded entries between event loop yields
YIELD_EVERY = 500


@dataclass
class SyncOutcome:
    """What a sync run did."""
    playlist_id: int
    status: str
    batch_no: Optional[str] = None
    skipped: bool = False
    preprocessed: bool = False
    channels: int = 0
    work_items: int = 0
    groups_discovered: list[str] = field(default_factory=list)
    warnings: int = 0
    max_items_hit: bool = False
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "playlist_id": self.playlist_id,
            "status": self.status,
            "batch_no": self.batch_no,
            "skipped": self.skipped,
            "preprocessed": self.preprocessed,
            "channels": self.channels,
            "work_items": self.work_items,
            "groups_discovered": self.groups_discovered,
            "warnings": self.warnings,
            "max_items_hit": self.max_items_hit,
            "error": self.error,
        }


def _filters(prefs: dict) -> tuple[IncludeFilter, IncludeFilter]:
    use_regex = bool(prefs.get("use_regex"))
    groups = IncludeFilter(
        selected=list(prefs.get("selected_groups") or []),
        prefixes=list(prefs.get("included_group_prefixes") or []),
        use_regex=use_regex,
    )
    categories = IncludeFilter(
        selected=list(prefs.get("selected_categories") or []),
        prefixes=list(prefs.get("included_category_prefixes") or []),
        use_regex=use_regex,
    )
    return groups, categories


async def sync_playlist(
    playlist_id: int,
    force: bool = False,
    is_new: bool = False,
    token: Optional[CancellationToken] = None,
    settings: Optional[ImportSettings] = None,
    storage: Optional[LocalStorage] = None,
    backup_hook: Optional[Callable[[], Any]] = None,
) -> SyncOutcome:
    """
    Sync one playlist from its source.

    Args:
        playlist_id: Playlist to sync
        force: Run even if the playlist is processing or has auto sync off
        is_new: First sync after creation (skips the backup stage)
        token: Cancellation token for this run

    Raises:
        ConfigurationError: the playlist does not exist (nothing is written).
    """
    settings = settings or get_settings()
    storage = storage or get_storage()
    token = token or CancellationToken()

    session = get_session()
    try:
        playlist = session.get(Playlist, playlist_id)
        if playlist is None:
            raise ConfigurationError(f"Playlist {playlist_id} not found")

        state = SyncStateMachine(session, playlist)
        if not state.begin(force=force):
            return SyncOutcome(playlist_id=playlist_id, status=playlist.status, skipped=True)

        batch_no = str(uuid.uuid4())
        outcome = SyncOutcome(playlist_id=playlist_id, status=playlist.status, batch_no=batch_no)
        ctx = PipelineContext(session=session, state=state, batch_no=batch_no, settings=settings, token=token)
        logger.info(f"[SYNC] Syncing playlist {playlist.id} \"{playlist.name}\" (batch {batch_no})")

        async def on_failure(error: Exception) -> None:
            session.rollback()
            delete_work_items(session, batch_no)
            state.fail(str(error))

        fetcher = SourceFetcher.for_playlist(playlist, settings, storage)
        try:
            try:
                chain = await _prepare_import(ctx, playlist, fetcher, is_new, outcome, on_failure, backup_hook)
            except Exception as e:
                logger.exception(f"[SYNC] Playlist {playlist.id} failed before import: {e}")
                await on_failure(e)
                outcome.status = playlist.status
                outcome.error = str(e)
                return outcome

            if chain is not None:
                result = await chain.run(ctx)
                outcome.error = result.error
        finally:
            await fetcher.close()

        outcome.status = playlist.status
        return outcome
    finally:
        session.close()


async def _prepare_import(
    ctx: PipelineContext,
    playlist: Playlist,
    fetcher: SourceFetcher,
    is_new: bool,
    outcome: SyncOutcome,
    on_failure,
    backup_hook,
) -> Optional[StageChain]:
    """Fetch, decode and chunk the source. Returns None when the run ends in preprocessing."""
    session, state, settings, token = ctx.session, ctx.state, ctx.settings, ctx.token
    prefs = playlist.get_import_prefs()
    preprocess = bool(prefs.get("preprocess"))
    group_filter, category_filter = _filters(prefs)
    # Preprocessing with nothing selected yet: only discover the groups
    discovery_only = preprocess and group_filter.is_empty

    client: Optional[XtreamClient] = None
    series_categories: list[dict] = []
    if playlist.xtream:
        decoder, client, series_categories = await _fetch_xtream(ctx, playlist, fetcher)
    else:
        path = await fetcher.fetch_playlist_file(playlist, token=token)
        state.set_progress(5)
        decoder = M3UPlaylistDecoder(path, max_line_length=settings.max_line_length)
    state.set_progress(10)

    normalizer = ChannelNormalizer(
        playlist_id=playlist.id,
        user_id=playlist.user_id,
        batch_no=ctx.batch_no,
        auto_sort=playlist.auto_sort,
        enabled=playlist.enable_channels,
        ignored_file_types=prefs.get("ignored_file_types") or [],
        preprocess=preprocess,
        include_filter=group_filter,
        max_items=settings.max_channels,
    )
    resolver = GroupCategoryResolver(session, playlist.id, ctx.batch_no, playlist.user_id, playlist.auto_sort)

    if discovery_only:
        for count, _ in enumerate(normalizer.normalize(decoder), 1):
            token.raise_if_cancelled()
            if count % YIELD_EVERY == 0:
                await asyncio.sleep(0)
    else:
        writer = ChunkWriter(session, ctx.batch_no, settings.chunk_size)
        for count, record in enumerate(normalizer.normalize(decoder), 1):
            token.raise_if_cancelled()
            group = resolver.resolve_group(record["group"])
            writer.add(
                group.id,
                record,
                {"group_id": group.id, "group_name": group.name_internal, "playlist_id": playlist.id},
            )
            if count % YIELD_EVERY == 0:
                await asyncio.sleep(0)
        outcome.work_items = writer.close()
    state.set_progress(15)

    outcome.channels = normalizer.yielded
    outcome.max_items_hit = normalizer.max_items_hit
    outcome.groups_discovered = discover_groups(decoder.groups_seen)
    resolver.upsert_source_groups(outcome.groups_discovered)
    if series_categories:
        resolver.upsert_categories(series_categories)
    _report_warnings(playlist, decoder)
    outcome.warnings = len(decoder.warnings)

    if discovery_only:
        state.complete()
        outcome.preprocessed = True
        notifications.notify(
            playlist.user_id,
            notifications.SUCCESS,
            "Playlist Preprocessing Completed",
            f"\"{playlist.name}\" has been preprocessed: {len(outcome.groups_discovered)} groups found. "
            "Select the groups to import and sync again.",
            source="playlist",
            source_id=str(playlist.id),
        )
        logger.info(f"[SYNC] Playlist {playlist.id} preprocessed ({len(outcome.groups_discovered)} groups)")
        return None

    chain = StageChain(on_failure=on_failure, label="PLAYLIST-SYNC")
    if not is_new and playlist.backup_before_sync:
        chain.add(BackupStage(backup_hook))

    id_batches = list(iter_work_item_id_batches(session, ctx.batch_no, settings.jobs_per_stage))
    item_count = sum(len(ids) for ids in id_batches)
    chain.extend([ApplyChunkStage(ids, item_count, playlist.auto_sort) for ids in id_batches])
    chain.add(ImportCompleteStage(max_items_hit=normalizer.max_items_hit, is_new=is_new))

    if client is not None and series_categories:
        included = [
            category for category in series_categories
            if category_filter.matches(category.get("category_name") or "")
        ]
        if included:
            import_episodes = bool(prefs.get("import_series_episodes"))
            chain.extend([
                SeriesChunkStage(client, category, len(included), index, import_episodes)
                for index, category in enumerate(included)
            ])
            chain.add(SeriesCompleteStage())

    logger.info(
        f"[SYNC] Playlist {playlist.id}: {normalizer.yielded} channels in {outcome.work_items} work items, "
        f"{len(chain)} stages"
    )
    return chain


async def _fetch_xtream(
    ctx: PipelineContext, playlist: Playlist, fetcher: SourceFetcher
) -> tuple[PlaylistDecoder, XtreamClient, list[dict]]:
    state, token = ctx.state, ctx.token
    credentials = XtreamCredentials.from_playlist(playlist)
    client = XtreamClient(fetcher, credentials, ctx.settings)

    state.set_progress(3)
    user_info = await client.get_user_info()
    playlist.xtream_status = json.dumps(user_info)
    ctx.session.commit()
    state.advance(3)

    live_path = vod_path = None
    live_categories: list[dict] = []
    vod_categories: list[dict] = []
    series_categories: list[dict] = []
    if credentials.wants(LIVE):
        live_categories = await client.get_live_categories()
        state.advance(3)
        live_path = await client.download_live_streams(f"{playlist.folder_path}/live_streams.json", token)
        state.advance(3)
    if credentials.wants(VOD):
        vod_categories = await client.get_vod_categories()
        state.advance(3)
        vod_path = await client.download_vod_streams(f"{playlist.folder_path}/vod_streams.json", token)
        state.advance(3)
    if credentials.wants(SERIES):
        series_categories = await client.get_series_categories()
        state.advance(3)
    state.advance(5)

    decoder = XtreamPlaylistDecoder(
        credentials,
        live_streams_path=live_path,
        live_categories=live_categories,
        vod_streams_path=vod_path,
        vod_categories=vod_categories,
    )
    return decoder, client, series_categories


def _report_warnings(playlist: Playlist, decoder: PlaylistDecoder) -> None:
    warnings = decoder.warnings
    if not warnings:
        return
    logger.warning(f"[SYNC] Playlist {playlist.id}: {len(warnings)} lines could not be parsed")
    quoted = "; ".join(str(w) for w in warnings[:MAX_WARNINGS_IN_NOTIFICATION])
    more = len(warnings) - MAX_WARNINGS_IN_NOTIFICATION
    if more > 0:
        quoted += f" (and {more} more)"
    notifications.notify(
        playlist.user_id,
        notifications.WARNING,
        f"\"{playlist.name}\" has lines that could not be parsed",
        f"{len(warnings)} lines were skipped: {quoted}",
        source="playlist",
        source_id=str(playlist.id),
    )

