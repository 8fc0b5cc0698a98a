"""
Playlist duplication.

Copies a playlist and everything it owns (groups, channels, failovers,
categories, series, seasons, episodes, discovered source groups) in one
transaction. Parent references are rewired through old-id -> new-id maps,
so the copy never points back into the original's rows.
"""
import logging
import uuid
from pathlib import PurePosixPath
from typing import Optional

from sqlalchemy import inspect, select
from sqlalchemy.exc import SQLAlchemyError

import notifications
from database import get_session
from exceptions import ConfigurationError, PersistenceError
from models import (
    Category,
    Channel,
    ChannelFailover,
    Episode,
    Group,
    Playlist,
    Season,
    Series,
    SourceGroup,
)
from storage import LocalStorage, get_storage
from sync_state import SyncStatus

logger = logging.getLogger(__name__)

# Never copied from the original row
_SKIPPED_COLUMNS = {"id", "created_at", "updated_at"}
# Sync state of the copy starts fresh
_RESET_STATE = {
    "status": SyncStatus.IDLE.value,
    "progress": 0,
    "series_progress": 0,
    "processing": False,
    "errors": None,
    "synced": None,
    "sync_time": None,
}


def _clone(instance, **overrides):
    """New, unsaved instance with the same column values (minus the primary key)."""
    mapper = inspect(type(instance))
    values = {
        column.key: getattr(instance, column.key)
        for column in mapper.column_attrs
        if column.key not in _SKIPPED_COLUMNS
    }
    values.update(overrides)
    return type(instance)(**values)


def duplicate_playlist(
    playlist_id: int,
    name: Optional[str] = None,
    with_sync: bool = False,
    storage: Optional[LocalStorage] = None,
) -> dict:
    """
    Duplicate a playlist.

    Args:
        playlist_id: Playlist to copy
        name: Name of the copy (defaults to "<name> (Copy)")
        with_sync: Link the copy to the original as its child

    Returns:
        The new playlist as a dict.

    Raises:
        ConfigurationError: unknown playlist, or with_sync on a playlist that
            is itself a child. Raised before anything is written.
        PersistenceError: the copy could not be stored; nothing is kept.
    """
    storage = storage or get_storage()
    session = get_session()
    try:
        source = session.get(Playlist, playlist_id)
        if source is None:
            raise ConfigurationError(f"Playlist {playlist_id} not found")
        if with_sync and source.parent_id is not None:
            raise ConfigurationError(
                f"\"{source.name}\" is already linked to a parent playlist and cannot be duplicated with sync"
            )

        copied_file: Optional[str] = None
        try:
            clone = _clone(
                source,
                uuid=str(uuid.uuid4()),
                name=name or f"{source.name} (Copy)",
                parent_id=source.id if with_sync else None,
                **_RESET_STATE,
            )
            session.add(clone)
            session.flush()

            if source.uploads and storage.exists(source.uploads):
                target = f"{clone.folder_path}/{PurePosixPath(source.uploads).name}"
                if storage.copy(source.uploads, target):
                    copied_file = target
                    clone.uploads = target

            counts = _copy_children(session, source, clone)
            session.commit()
        except Exception as e:
            session.rollback()
            if copied_file:
                storage.delete(copied_file)
                storage.delete_directory(PurePosixPath(copied_file).parent)
            logger.exception(f"[DUPLICATE] Failed to duplicate playlist {playlist_id}: {e}")
            notifications.notify(
                source.user_id,
                notifications.DANGER,
                f"Error duplicating \"{source.name}\"",
                str(e)[:500],
                source="playlist",
                source_id=str(playlist_id),
            )
            if isinstance(e, SQLAlchemyError):
                raise PersistenceError(f"Failed to duplicate playlist: {e}") from e
            raise

        logger.info(f"[DUPLICATE] Playlist {source.id} duplicated as {clone.id}: {counts}")
        notifications.notify(
            clone.user_id,
            notifications.SUCCESS,
            "Playlist Duplicated",
            f"\"{source.name}\" has been duplicated as \"{clone.name}\".",
            source="playlist",
            source_id=str(clone.id),
        )
        return clone.to_dict()
    finally:
        session.close()


def _copy_children(session, source: Playlist, clone: Playlist) -> dict:
    """Copy every row owned by source onto clone. Returns per-table counts."""
    group_map: dict[int, int] = {}
    for group in session.scalars(select(Group).where(Group.playlist_id == source.id).order_by(Group.id)).all():
        copy = _clone(group, playlist_id=clone.id)
        session.add(copy)
        session.flush()
        group_map[group.id] = copy.id

    # Grouped and ungrouped channels alike
    channel_map: dict[int, int] = {}
    for channel in session.scalars(select(Channel).where(Channel.playlist_id == source.id).order_by(Channel.id)).all():
        copy = _clone(
            channel,
            playlist_id=clone.id,
            group_id=group_map.get(channel.group_id),
            source_id=channel.source_id or f"ch-{channel.id}",
        )
        session.add(copy)
        session.flush()
        channel_map[channel.id] = copy.id

    failovers = 0
    if channel_map:
        stmt = select(ChannelFailover).where(ChannelFailover.channel_id.in_(list(channel_map))).order_by(ChannelFailover.id)
        for failover in session.scalars(stmt).all():
            session.add(ChannelFailover(
                channel_id=channel_map[failover.channel_id],
                # Failovers into other playlists keep pointing at the same channel
                channel_failover_id=channel_map.get(failover.channel_failover_id, failover.channel_failover_id),
                sort=failover.sort,
            ))
            failovers += 1

    category_map: dict[int, int] = {}
    for category in session.scalars(select(Category).where(Category.playlist_id == source.id).order_by(Category.id)).all():
        copy = _clone(
            category,
            playlist_id=clone.id,
            source_category_id=category.source_category_id or f"cat-{category.id}",
        )
        session.add(copy)
        session.flush()
        category_map[category.id] = copy.id

    # Categorized and uncategorized series alike
    series_map: dict[int, int] = {}
    for series in session.scalars(select(Series).where(Series.playlist_id == source.id).order_by(Series.id)).all():
        copy = _clone(
            series,
            playlist_id=clone.id,
            category_id=category_map.get(series.category_id),
            source_series_id=series.source_series_id or f"series-{series.id}",
        )
        session.add(copy)
        session.flush()
        series_map[series.id] = copy.id

    season_map: dict[int, int] = {}
    for season in session.scalars(select(Season).where(Season.playlist_id == source.id).order_by(Season.id)).all():
        copy = _clone(
            season,
            playlist_id=clone.id,
            series_id=series_map[season.series_id],
            category_id=category_map.get(season.category_id),
            source_season_id=season.source_season_id or f"season-{season.id}",
        )
        session.add(copy)
        session.flush()
        season_map[season.id] = copy.id

    episodes = 0
    for episode in session.scalars(select(Episode).where(Episode.playlist_id == source.id).order_by(Episode.id)).all():
        session.add(_clone(
            episode,
            playlist_id=clone.id,
            series_id=series_map[episode.series_id],
            season_id=season_map[episode.season_id],
            source_episode_id=episode.source_episode_id or f"ep-{episode.id}",
        ))
        episodes += 1

    source_groups = 0
    for source_group in session.scalars(select(SourceGroup).where(SourceGroup.playlist_id == source.id)).all():
        session.add(_clone(source_group, playlist_id=clone.id))
        source_groups += 1

    session.flush()
    return {
        "groups": len(group_map),
        "channels": len(channel_map),
        "failovers": failovers,
        "categories": len(category_map),
        "series": len(series_map),
        "seasons": len(season_map),
        "episodes": episodes,
        "source_groups": source_groups,
    }
