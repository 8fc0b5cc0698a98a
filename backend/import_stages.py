"""
Playlist import stages.

The stages a sync chains after its WorkItems are written:

    [BackupStage] -> ApplyChunkStage x N -> ImportCompleteStage
        -> [SeriesChunkStage x M -> SeriesCompleteStage]
"""
import asyncio
import logging
import shutil
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy import delete, func, select, or_
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError

import notifications
from batch_orchestrator import PipelineContext, Stage, load_work_items
from config import CONFIG_DIR
from exceptions import PersistenceError
from models import Category, Channel, Episode, Group, Playlist, Season, Series, WorkItem

logger = logging.getLogger(__name__)

# Progress window covered by the apply stages (decode/chunking ends at 15)
APPLY_PROGRESS_START = 15
APPLY_PROGRESS_END = 99

# Channel columns written from source data on every import
CHANNEL_SOURCE_COLUMNS = (
    "title", "name", "url", "logo_internal", "group", "group_internal", "group_id",
    "stream_id", "station_id", "lang", "country", "channel", "shift", "catchup",
    "catchup_source", "tvg_shift", "extvlcopt", "kodidrop", "container_extension",
    "format", "year", "rating", "rating_5based", "import_batch_no",
)
# Only set when a channel is first created; afterwards owned by the admin
CHANNEL_INSERT_ONLY_COLUMNS = ("playlist_id", "user_id", "source_id", "is_vod", "enabled", "sort")


def create_database_backup() -> str:
    """Copy the SQLite database file into CONFIG_DIR/backups."""
    from database import DB_FILE

    backup_dir = CONFIG_DIR / "backups"
    backup_dir.mkdir(parents=True, exist_ok=True)
    target = backup_dir / f"playlists-{datetime.utcnow().strftime('%Y%m%d-%H%M%S')}.db"
    shutil.copyfile(DB_FILE, target)
    return str(target)


class BackupStage(Stage):
    """
    Create a backup before existing data is touched.

    A failed backup is reported to the user but does not stop the sync.
    """

    name = "backup"

    def __init__(self, backup_hook: Optional[Callable[[], Any]] = None):
        self.backup_hook = backup_hook or create_database_backup

    async def run(self, ctx: PipelineContext) -> None:
        playlist = ctx.state.record
        try:
            result = self.backup_hook()
            if asyncio.iscoroutine(result):
                result = await result
            logger.info(f"[BACKUP] Backup created before syncing playlist {playlist.id}: {result}")
            notifications.notify(playlist.user_id, notifications.SUCCESS, "Backup created", "Backup created successfully")
        except Exception as e:
            logger.error(f"[BACKUP] Failed to create backup: {e}")
            notifications.notify(
                playlist.user_id,
                notifications.DANGER,
                "Backup create failed",
                f"Backup create failed: {e}"[:500],
            )


def _dedupe_rows(rows: list[dict]) -> list[dict]:
    """Keep the last row per identity key; one INSERT cannot touch a row twice."""
    by_key: dict[tuple, dict] = {}
    for row in rows:
        by_key[(row["playlist_id"], row["source_id"], row["is_vod"])] = row
    return list(by_key.values())


def upsert_channels(session, rows: list[dict]) -> int:
    """Insert new channels and refresh source fields of existing ones."""
    rows = _dedupe_rows(rows)
    if not rows:
        return 0
    stmt = sqlite_insert(Channel).values(rows)
    update_columns = {column: stmt.excluded[column] for column in CHANNEL_SOURCE_COLUMNS}
    if "sort" in rows[0]:
        update_columns["sort"] = stmt.excluded["sort"]
    update_columns["new"] = False
    update_columns["updated_at"] = datetime.utcnow()
    stmt = stmt.on_conflict_do_update(
        index_elements=["playlist_id", "source_id", "is_vod"],
        set_=update_columns,
    )
    session.execute(stmt)
    return len(rows)


def _channel_row(entry: dict, group_id: Optional[int], auto_sort: bool) -> dict:
    row = {column: entry.get(column) for column in CHANNEL_SOURCE_COLUMNS if column != "group_id"}
    row["group_id"] = group_id
    for column in CHANNEL_INSERT_ONLY_COLUMNS:
        if column == "sort" and not auto_sort:
            continue
        row[column] = entry.get(column)
    row["name"] = row["name"] or ""
    row["group"] = row["group"] or ""
    row["group_internal"] = row["group_internal"] or ""
    row["shift"] = row["shift"] or 0
    row["is_vod"] = bool(row["is_vod"])
    row["enabled"] = bool(row["enabled"])
    row["new"] = True
    return row


class ApplyChunkStage(Stage):
    """Apply a bounded set of WorkItems: upsert their channels, then delete them."""

    name = "apply_chunk"

    def __init__(self, item_ids: list[int], batch_count: int, auto_sort: bool = False):
        self.item_ids = list(item_ids)
        self.batch_count = max(1, batch_count)
        self.auto_sort = auto_sort

    async def run(self, ctx: PipelineContext) -> None:
        session = ctx.session
        items = load_work_items(session, self.item_ids)
        applied = 0
        try:
            for item in items:
                ctx.token.raise_if_cancelled()
                group_id = item.get_variables().get("group_id")
                rows = [_channel_row(entry, group_id, self.auto_sort) for entry in item.get_payload()]
                applied += upsert_channels(session, rows)
                session.delete(item)
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Failed to apply channel chunk: {e}") from e

        done = ctx.values.get("items_applied", 0) + len(items)
        ctx.values["items_applied"] = done
        ctx.values["channels_applied"] = ctx.values.get("channels_applied", 0) + applied
        span = APPLY_PROGRESS_END - APPLY_PROGRESS_START
        ctx.state.set_progress(APPLY_PROGRESS_START + span * done / self.batch_count)
        logger.debug(f"[IMPORT] Applied {applied} channels from {len(items)} work items ({done}/{self.batch_count})")


class ImportCompleteStage(Stage):
    """
    Reconcile and finish the channel import.

    Channels and non-custom groups not stamped with this run's batch number
    are no longer in the source and are removed. Then the playlist is marked
    completed, which fires the sync-completed signal.
    """

    name = "import_complete"

    def __init__(self, max_items_hit: bool = False, is_new: bool = False):
        self.max_items_hit = max_items_hit
        self.is_new = is_new

    async def run(self, ctx: PipelineContext) -> None:
        session = ctx.session
        playlist: Playlist = ctx.state.record
        batch_no = ctx.batch_no

        stale_channels = session.execute(
            delete(Channel).where(
                Channel.playlist_id == playlist.id,
                or_(Channel.import_batch_no.is_(None), Channel.import_batch_no != batch_no),
            )
        ).rowcount or 0
        stale_groups = session.execute(
            delete(Group).where(
                Group.playlist_id == playlist.id,
                Group.custom.is_(False),
                or_(Group.import_batch_no.is_(None), Group.import_batch_no != batch_no),
            )
        ).rowcount or 0
        session.execute(delete(WorkItem).where(WorkItem.batch_no == batch_no))
        session.commit()

        new_channels = session.scalar(
            select(func.count(Channel.id)).where(
                Channel.playlist_id == playlist.id,
                Channel.import_batch_no == batch_no,
                Channel.new.is_(True),
            )
        ) or 0
        ctx.values["channels_removed"] = stale_channels
        ctx.values["groups_removed"] = stale_groups
        ctx.values["channels_new"] = new_channels

        ctx.state.complete()
        logger.info(
            f"[IMPORT] Playlist {playlist.id} synced: {new_channels} new, "
            f"{stale_channels} channels and {stale_groups} groups removed"
        )

        if self.max_items_hit:
            notifications.notify(
                playlist.user_id,
                notifications.WARNING,
                f"\"{playlist.name}\" has reached the maximum number of channels",
                "Some channels were not imported because the configured channel limit was reached.",
                source="playlist",
                source_id=str(playlist.id),
            )
        notifications.notify(
            playlist.user_id,
            notifications.SUCCESS,
            "Playlist Synced",
            f"\"{playlist.name}\" has been synced successfully. "
            f"Import completed in {round(playlist.sync_time or 0, 2)} seconds.",
            source="playlist",
            source_id=str(playlist.id),
        )


class SeriesChunkStage(Stage):
    """Import the series of one provider category (and optionally their episodes)."""

    name = "series_chunk"

    def __init__(self, client, category: dict, category_count: int, index: int, import_episodes: bool = False):
        self.client = client
        self.category = category
        self.category_count = max(1, category_count)
        self.index = index
        self.import_episodes = import_episodes

    async def run(self, ctx: PipelineContext) -> None:
        playlist: Playlist = ctx.state.record
        source_category_id = str(self.category.get("category_id"))

        # Provider calls finish before the first write; all sessions share one connection
        items = await self.client.get_series(source_category_id)
        fetched: list[tuple[dict, Optional[dict]]] = []
        for item in items:
            ctx.token.raise_if_cancelled()
            series_id = item.get("series_id")
            if series_id is None:
                continue
            info = await self.client.get_series_info(series_id) if self.import_episodes else None
            fetched.append((item, info))

        session = ctx.session
        category = session.scalars(
            select(Category).where(
                Category.playlist_id == playlist.id,
                Category.source_category_id == source_category_id,
            )
        ).first()
        for item, info in fetched:
            series = self._upsert_series(session, playlist, category, source_category_id, item, ctx.batch_no)
            if info is not None:
                self._upsert_episodes(session, playlist, series, category, info, ctx.batch_no)
        session.commit()
        imported = len(fetched)

        ctx.values["series_imported"] = ctx.values.get("series_imported", 0) + imported
        ctx.state.set_series_progress((self.index + 1) / self.category_count * 100)
        logger.debug(f"[SERIES] Imported {imported} series for category {self.category.get('category_name')}")

    @staticmethod
    def _upsert_series(session, playlist, category, source_category_id, item, batch_no) -> Series:
        values = {
            "playlist_id": playlist.id,
            "user_id": playlist.user_id,
            "category_id": category.id if category else None,
            "source_series_id": str(item.get("series_id")),
            "source_category_id": source_category_id,
            "name": item.get("name") or "",
            "cover": item.get("cover"),
            "plot": item.get("plot"),
            "genre": item.get("genre"),
            "release_date": item.get("releaseDate") or item.get("release_date"),
            "rating": str(item["rating"]) if item.get("rating") is not None else None,
            "enabled": playlist.enable_channels,
            "new": True,
            "import_batch_no": batch_no,
        }
        stmt = sqlite_insert(Series).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["playlist_id", "source_series_id"],
            set_={
                "category_id": stmt.excluded.category_id,
                "source_category_id": stmt.excluded.source_category_id,
                "name": stmt.excluded.name,
                "cover": stmt.excluded.cover,
                "plot": stmt.excluded.plot,
                "genre": stmt.excluded.genre,
                "release_date": stmt.excluded.release_date,
                "rating": stmt.excluded.rating,
                "import_batch_no": stmt.excluded.import_batch_no,
                "new": False,
            },
        )
        session.execute(stmt)
        return session.scalars(
            select(Series).where(
                Series.playlist_id == playlist.id,
                Series.source_series_id == values["source_series_id"],
            )
        ).one()

    def _upsert_episodes(self, session, playlist, series, category, info: dict, batch_no) -> None:
        episodes_by_season = info.get("episodes") or {}
        if not isinstance(episodes_by_season, dict):
            return
        for season_key, episodes in episodes_by_season.items():
            season = _get_or_create(
                session,
                Season,
                {"series_id": series.id, "source_season_id": str(season_key)},
                playlist_id=playlist.id,
                category_id=category.id if category else None,
                season_number=_int(season_key),
                name=f"Season {season_key}",
            )
            season.import_batch_no = batch_no
            for episode in episodes or []:
                episode_id = episode.get("id")
                if episode_id is None:
                    continue
                extension = episode.get("container_extension")
                row = _get_or_create(
                    session,
                    Episode,
                    {"season_id": season.id, "source_episode_id": str(episode_id)},
                    playlist_id=playlist.id,
                    series_id=series.id,
                )
                row.title = episode.get("title")
                row.episode_num = _int(episode.get("episode_num"))
                row.container_extension = extension
                row.url = self.client.credentials.episode_url(episode_id, extension)
                row.import_batch_no = batch_no


def _int(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return None


def _get_or_create(session, model, keys: dict, **defaults):
    instance = session.scalars(select(model).filter_by(**keys)).first()
    if instance is None:
        instance = model(**keys, **defaults)
        session.add(instance)
        session.flush()
    return instance


class SeriesCompleteStage(Stage):
    """Finish the series import."""

    name = "series_complete"

    async def run(self, ctx: PipelineContext) -> None:
        playlist: Playlist = ctx.state.record
        ctx.state.set_series_progress(100)
        imported = ctx.values.get("series_imported", 0)
        logger.info(f"[SERIES] Playlist {playlist.id}: {imported} series imported")
        notifications.notify(
            playlist.user_id,
            notifications.SUCCESS,
            "Series Sync Completed",
            f"Series for \"{playlist.name}\" have been synced successfully ({imported} series).",
            source="playlist",
            source_id=str(playlist.id),
        )
