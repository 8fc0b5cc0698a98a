"""
Playlist Sync Task.

Scheduled task that syncs every auto-sync playlist whose last sync is older
than the configured interval. Playlists are synced one after another; a
failed playlist is recorded and the task moves on.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import or_, select

from config import get_settings
from database import get_session
from exceptions import ConfigurationError
from models import Playlist
from playlist_sync import sync_playlist
from task_registry import register_task
from task_scheduler import ScheduleConfig, ScheduleType, TaskResult, TaskScheduler

logger = logging.getLogger(__name__)


def find_due_playlists(now: Optional[datetime] = None, interval_hours: Optional[int] = None) -> list[int]:
    """Ids of auto-sync playlists that are idle and due."""
    now = now or datetime.utcnow()
    if interval_hours is None:
        interval_hours = get_settings().auto_sync_interval_hours
    cutoff = now - timedelta(hours=interval_hours)
    session = get_session()
    try:
        stmt = (
            select(Playlist.id)
            .where(
                Playlist.auto_sync.is_(True),
                Playlist.processing.is_(False),
                or_(Playlist.synced.is_(None), Playlist.synced <= cutoff),
            )
            .order_by(Playlist.id)
        )
        return list(session.scalars(stmt))
    finally:
        session.close()


@register_task
class PlaylistSyncTask(TaskScheduler):
    """Sync playlists that are due for an automatic refresh."""

    task_id = "playlist_sync"
    task_name = "Playlist Sync"
    task_description = "Re-import auto-sync playlists from their sources"

    def __init__(self, schedule_config: Optional[ScheduleConfig] = None):
        if schedule_config is None:
            schedule_config = ScheduleConfig(
                schedule_type=ScheduleType.INTERVAL,
                interval_seconds=get_settings().sync_check_interval,
            )
        super().__init__(schedule_config)

    async def execute(self) -> TaskResult:
        started_at = datetime.utcnow()
        self._set_progress(status="finding_playlists")

        playlist_ids = find_due_playlists()
        if not playlist_ids:
            return TaskResult(
                success=True,
                message="No playlists due for sync",
                started_at=started_at,
                completed_at=datetime.utcnow(),
                total_items=0,
            )

        self._set_progress(total=len(playlist_ids), current=0, status="syncing")
        synced = []
        errors = []

        for i, playlist_id in enumerate(playlist_ids):
            if self._cancel_requested:
                break
            self._set_progress(current=i + 1, current_item=f"Playlist {playlist_id}")

            try:
                outcome = await sync_playlist(playlist_id, token=self._token)
            except ConfigurationError as e:
                logger.warning(f"[{self.task_id}] Playlist {playlist_id} skipped: {e}")
                errors.append(f"Playlist {playlist_id}: {e}")
                self._increment_progress(failed_count=1)
                continue
            if outcome.skipped:
                self._increment_progress(skipped_count=1)
            elif outcome.error:
                errors.append(f"Playlist {playlist_id}: {outcome.error}")
                self._increment_progress(failed_count=1)
            else:
                synced.append(playlist_id)
                self._increment_progress(success_count=1)

        progress = self._progress
        logger.info(
            f"[{self.task_id}] {progress.success_count} synced, {progress.failed_count} failed, "
            f"{progress.skipped_count} skipped"
        )
        return TaskResult(
            success=progress.failed_count == 0,
            message=f"Synced {progress.success_count} playlists"
                    + (f", {progress.failed_count} failed" if progress.failed_count else ""),
            started_at=started_at,
            completed_at=datetime.utcnow(),
            total_items=len(playlist_ids),
            success_count=progress.success_count,
            failed_count=progress.failed_count,
            skipped_count=progress.skipped_count,
            details={"synced": synced, "errors": errors},
        )
