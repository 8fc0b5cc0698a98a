"""
Sync State Machine.

Governs the status/progress/processing fields of a playlist (or an EPG
mapping run) through one pipeline run:

    idle -> processing -> {completed, failed}

processing is kept separate from status so a UI can tell "currently
running" apart from the last terminal status. Progress only moves forward
within a run and is always 100 once a terminal state is reached, whether
the run succeeded or not.
"""
import logging
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy.orm import Session

import notifications

logger = logging.getLogger(__name__)


class SyncStatus(str, Enum):
    """Lifecycle status of a sync or mapping run."""
    IDLE = "idle"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = (SyncStatus.COMPLETED, SyncStatus.FAILED)


class SyncStateMachine:
    """
    Drives the sync state of one record for one run.

    The record must expose status, progress, processing and errors columns
    (Playlist and EpgMap both do). Every transition is committed right away
    so other sessions observe progress while the run is in flight.
    """

    def __init__(
        self,
        session: Session,
        record,
        stamp_field: Optional[str] = "synced",
        fire_signal: bool = True,
        notification_source: str = "playlist",
    ):
        self._session = session
        self.record = record
        self._stamp_field = stamp_field
        self._fire_signal = fire_signal
        self._notification_source = notification_source
        self._started_at: Optional[datetime] = None
        self._signalled: Optional[SyncStatus] = None

    # -------------------------------------------------------------------------
    # State accessors
    # -------------------------------------------------------------------------

    @property
    def status(self) -> SyncStatus:
        return SyncStatus(self.record.status)

    @property
    def progress(self) -> float:
        return self.record.progress or 0

    @property
    def processing(self) -> bool:
        return bool(self.record.processing)

    @property
    def started_at(self) -> Optional[datetime]:
        return self._started_at

    @property
    def elapsed_seconds(self) -> float:
        if not self._started_at:
            return 0.0
        return (datetime.utcnow() - self._started_at).total_seconds()

    @property
    def label(self) -> str:
        return f"{self._notification_source} {self.record.id}"

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def can_begin(self, force: bool = False) -> bool:
        """Check the sync gate without changing any state."""
        if force:
            return True
        if self.record.processing:
            logger.info(f"[SYNC] {self.label} is already processing, skipping")
            return False
        stamp = getattr(self.record, self._stamp_field, None) if self._stamp_field else None
        if not getattr(self.record, "auto_sync", True) and stamp:
            logger.info(f"[SYNC] {self.label} has auto sync disabled and was synced before, skipping")
            return False
        return True

    def begin(self, force: bool = False) -> bool:
        """
        Enter the processing state.

        Returns:
            False (and leaves the record untouched) when the gate rejects the run.
        """
        if not self.can_begin(force):
            return False

        self._started_at = datetime.utcnow()
        self._signalled = None
        self.record.processing = True
        self.record.status = SyncStatus.PROCESSING.value
        self.record.errors = None
        self.record.progress = 0
        if hasattr(self.record, "series_progress"):
            self.record.series_progress = 0
        self._session.commit()
        logger.info(f"[SYNC] {self.label} processing started")
        return True

    def set_progress(self, value: float) -> float:
        """Advance progress to value. Never moves backwards, never exceeds 100."""
        value = min(100.0, float(value))
        if value > self.progress:
            self.record.progress = value
            self._session.commit()
        return self.progress

    def advance(self, delta: float) -> float:
        return self.set_progress(self.progress + delta)

    def set_series_progress(self, value: float) -> None:
        value = min(100.0, float(value))
        if value > (self.record.series_progress or 0):
            self.record.series_progress = value
            self._session.commit()

    def complete(self, sync_time: Optional[float] = None) -> None:
        """Transition to completed."""
        self._finish(SyncStatus.COMPLETED, None, sync_time)
        logger.info(f"[SYNC] {self.label} completed in {self.record.sync_time or 0:.2f}s")

    def fail(self, error: str, notify: bool = True) -> None:
        """
        Transition to failed, record the error and tell the owner.

        The notification is best effort; the state change is not.
        """
        logger.error(f"[SYNC] Error processing \"{self.record.name}\": {error}")
        if notify:
            notifications.notify(
                getattr(self.record, "user_id", None),
                notifications.DANGER,
                f"Error processing \"{self.record.name}\"",
                error,
                source=self._notification_source,
                source_id=str(self.record.id),
            )
        self._finish(SyncStatus.FAILED, error, None)

    def _finish(self, status: SyncStatus, error: Optional[str], sync_time: Optional[float]) -> None:
        now = datetime.utcnow()
        self.record.status = status.value
        self.record.processing = False
        self.record.progress = 100
        self.record.errors = error
        if hasattr(self.record, "sync_time"):
            self.record.sync_time = sync_time if sync_time is not None else self.elapsed_seconds
        if self._stamp_field:
            setattr(self.record, self._stamp_field, now)
        self._session.commit()

        # One signal per distinct terminal state reached in this run
        if self._fire_signal and self._signalled != status:
            self._signalled = status
            notifications.fire_sync_completed(self.record.id)
