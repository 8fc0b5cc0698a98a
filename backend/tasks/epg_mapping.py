"""
EPG Mapping Task.

Scheduled task that re-runs every recurring EPG map, so channels added by
later syncs get linked without user action.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select

from config import get_settings
from database import get_session
from epg_mapping import map_playlist_channels_to_epg
from exceptions import ConfigurationError
from models import EpgMap
from sync_state import SyncStatus
from task_registry import register_task
from task_scheduler import ScheduleConfig, ScheduleType, TaskResult, TaskScheduler

logger = logging.getLogger(__name__)


@register_task
class EpgMappingTask(TaskScheduler):
    """Re-run recurring EPG maps."""

    task_id = "epg_mapping"
    task_name = "EPG Mapping"
    task_description = "Link new channels to EPG channels for recurring maps"

    def __init__(self, schedule_config: Optional[ScheduleConfig] = None):
        if schedule_config is None:
            schedule_config = ScheduleConfig(
                schedule_type=ScheduleType.INTERVAL,
                interval_seconds=get_settings().epg_map_interval,
            )
        super().__init__(schedule_config)

    async def execute(self) -> TaskResult:
        started_at = datetime.utcnow()
        session = get_session()
        try:
            maps = session.execute(
                select(EpgMap.id, EpgMap.epg_id).where(
                    EpgMap.recurring.is_(True),
                    EpgMap.processing.is_(False),
                ).order_by(EpgMap.id)
            ).all()
        finally:
            session.close()

        self._set_progress(total=len(maps), current=0, status="mapping")
        mapped = 0
        errors = []
        for i, row in enumerate(maps):
            if self._cancel_requested:
                break
            self._set_progress(current=i + 1, current_item=f"EPG map {row.id}")
            try:
                outcome = await map_playlist_channels_to_epg(row.epg_id, epg_map_id=row.id, token=self._token)
            except ConfigurationError as e:
                logger.warning(f"[{self.task_id}] EPG map {row.id} skipped: {e}")
                errors.append(f"EPG map {row.id}: {e}")
                self._increment_progress(failed_count=1)
                continue
            if outcome.status == SyncStatus.FAILED.value:
                errors.append(f"EPG map {row.id}: {outcome.error}")
                self._increment_progress(failed_count=1)
            else:
                mapped += outcome.mapped_count
                self._increment_progress(success_count=1)

        logger.info(f"[{self.task_id}] {len(maps)} maps re-run, {mapped} channels linked")
        return TaskResult(
            success=not errors,
            message=f"Re-ran {len(maps)} EPG maps, {mapped} channels linked",
            started_at=started_at,
            completed_at=datetime.utcnow(),
            total_items=len(maps),
            success_count=self._progress.success_count,
            failed_count=self._progress.failed_count,
            details={"errors": errors},
        )
