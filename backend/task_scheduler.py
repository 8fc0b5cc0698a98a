"""
Task Scheduler Framework.

Provides an abstract base class for background tasks with support for:
- Interval-based scheduling (every N seconds)
- Task lifecycle management (start, cancel, enable, disable)
- Progress tracking and status reporting
- In-memory run history
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from batch_orchestrator import CancellationToken

logger = logging.getLogger(__name__)


class TaskStatus(str, Enum):
    """Status of a scheduled task."""
    IDLE = "idle"
    RUNNING = "running"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    FAILED = "failed"


class ScheduleType(str, Enum):
    """Type of schedule for a task."""
    INTERVAL = "interval"  # Run every N seconds
    MANUAL = "manual"  # Only run on demand


@dataclass
class TaskProgress:
    """Progress information for a running task."""
    total: int = 0
    current: int = 0
    status: str = "idle"
    current_item: str = ""
    success_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    started_at: Optional[datetime] = None

    @property
    def percentage(self) -> float:
        """Get completion percentage (0-100)."""
        if self.total == 0:
            return 0.0
        return (self.current / self.total) * 100.0

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "total": self.total,
            "current": self.current,
            "percentage": round(self.percentage, 1),
            "status": self.status,
            "current_item": self.current_item,
            "success_count": self.success_count,
            "failed_count": self.failed_count,
            "skipped_count": self.skipped_count,
            "started_at": self.started_at.isoformat() + "Z" if self.started_at else None,
        }


@dataclass
class TaskResult:
    """Result of a task execution."""
    success: bool
    message: str = ""
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    total_items: int = 0
    success_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    error: Optional[str] = None
    details: dict = field(default_factory=dict)

    @property
    def duration_seconds(self) -> Optional[float]:
        """Get execution duration in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "success": self.success,
            "message": self.message,
            "started_at": self.started_at.isoformat() + "Z" if self.started_at else None,
            "completed_at": self.completed_at.isoformat() + "Z" if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "total_items": self.total_items,
            "success_count": self.success_count,
            "failed_count": self.failed_count,
            "skipped_count": self.skipped_count,
            "error": self.error,
            "details": self.details,
        }


@dataclass
class ScheduleConfig:
    """Configuration for task scheduling."""
    schedule_type: ScheduleType = ScheduleType.MANUAL
    interval_seconds: int = 0

    def to_dict(self) -> dict:
        return {
            "schedule_type": self.schedule_type.value,
            "interval_seconds": self.interval_seconds,
        }


class TaskScheduler(ABC):
    """
    Abstract base class for scheduled tasks.

    Subclasses must implement:
    - task_id: Unique identifier for the task type
    - task_name: Human-readable name for the task
    - execute(): The actual task logic

    Optional overrides:
    - validate_config(): Validate task configuration
    - on_start(): Called when task starts running
    - on_complete(): Called when task completes successfully
    - on_error(): Called when task fails
    - on_cancel(): Called when task is cancelled
    """

    # Subclasses must define these
    task_id: str = ""
    task_name: str = ""
    task_description: str = ""

    def __init__(self, schedule_config: Optional[ScheduleConfig] = None):
        """Initialize the task scheduler."""
        self.schedule_config = schedule_config or ScheduleConfig()
        self._status = TaskStatus.IDLE
        self._progress = TaskProgress()
        self._cancel_requested = False
        self._token = CancellationToken()
        self._last_run: Optional[datetime] = None
        self._next_run: Optional[datetime] = None
        self._history: list[TaskResult] = []
        self._max_history = 50
        self._enabled = True
        if self.schedule_config.schedule_type != ScheduleType.MANUAL:
            self._calculate_next_run()

    # -------------------------------------------------------------------------
    # Abstract methods (must be implemented by subclasses)
    # -------------------------------------------------------------------------

    @abstractmethod
    async def execute(self) -> TaskResult:
        """
        Execute the task logic.

        Should periodically check self._cancel_requested and exit early if
        True, and hand self._token to any pipeline it starts.

        Returns:
            TaskResult with execution outcome.
        """
        pass

    # -------------------------------------------------------------------------
    # Status and Progress
    # -------------------------------------------------------------------------

    @property
    def status(self) -> TaskStatus:
        """Get current task status."""
        return self._status

    @property
    def progress(self) -> TaskProgress:
        """Get current task progress."""
        return self._progress

    @property
    def last_run(self) -> Optional[datetime]:
        return self._last_run

    @property
    def next_run(self) -> Optional[datetime]:
        return self._next_run

    @property
    def history(self) -> list[TaskResult]:
        return list(self._history)

    def is_due(self, now: Optional[datetime] = None) -> bool:
        """Whether an enabled, scheduled task should start now."""
        if not self._enabled or self._next_run is None:
            return False
        return self._next_run <= (now or datetime.utcnow())

    def get_status_dict(self) -> dict:
        """Get full status as dictionary for API responses."""
        return {
            "task_id": self.task_id,
            "task_name": self.task_name,
            "task_description": self.task_description,
            "status": self._status.value,
            "enabled": self._enabled,
            "progress": self._progress.to_dict(),
            "schedule": self.schedule_config.to_dict(),
            "last_run": self._last_run.isoformat() + "Z" if self._last_run else None,
            "next_run": self._next_run.isoformat() + "Z" if self._next_run else None,
        }

    # -------------------------------------------------------------------------
    # Progress Tracking (for use by subclasses)
    # -------------------------------------------------------------------------

    def _reset_progress(self):
        """Reset progress tracking for a new run."""
        self._progress = TaskProgress()
        self._cancel_requested = False
        self._token = CancellationToken()

    def _set_progress(
        self,
        total: Optional[int] = None,
        current: Optional[int] = None,
        status: Optional[str] = None,
        current_item: Optional[str] = None,
        success_count: Optional[int] = None,
        failed_count: Optional[int] = None,
        skipped_count: Optional[int] = None,
    ):
        """Update progress values. Only provided values are updated."""
        if total is not None:
            self._progress.total = total
        if current is not None:
            self._progress.current = current
        if status is not None:
            self._progress.status = status
        if current_item is not None:
            self._progress.current_item = current_item
        if success_count is not None:
            self._progress.success_count = success_count
        if failed_count is not None:
            self._progress.failed_count = failed_count
        if skipped_count is not None:
            self._progress.skipped_count = skipped_count

    def _increment_progress(
        self,
        current: int = 0,
        success_count: int = 0,
        failed_count: int = 0,
        skipped_count: int = 0,
    ):
        """Increment progress counters."""
        self._progress.current += current
        self._progress.success_count += success_count
        self._progress.failed_count += failed_count
        self._progress.skipped_count += skipped_count

    # -------------------------------------------------------------------------
    # Lifecycle Hooks (optional for subclasses to override)
    # -------------------------------------------------------------------------

    async def validate_config(self) -> tuple[bool, str]:
        """
        Validate task configuration before execution.

        Returns:
            Tuple of (is_valid, error_message). error_message is empty if valid.
        """
        return True, ""

    async def on_start(self):
        """Called when task starts running. Override for setup logic."""
        pass

    async def on_complete(self, result: TaskResult):
        """Called when task completes successfully. Override for cleanup logic."""
        pass

    async def on_error(self, error: Exception, result: TaskResult):
        """Called when task fails with an error. Override for error handling."""
        pass

    async def on_cancel(self):
        """Called when task is cancelled. Override for cancellation cleanup."""
        pass

    # -------------------------------------------------------------------------
    # Task Execution
    # -------------------------------------------------------------------------

    async def run(self) -> TaskResult:
        """
        Run the task immediately.

        This is the main entry point for task execution. It handles:
        - Status management
        - Progress tracking
        - History recording
        - Error handling
        - Lifecycle hooks

        Returns:
            TaskResult with execution outcome.
        """
        if self._status == TaskStatus.RUNNING:
            return TaskResult(
                success=False,
                message="Task is already running",
                error="ALREADY_RUNNING",
            )

        # Validate configuration
        is_valid, error_msg = await self.validate_config()
        if not is_valid:
            return TaskResult(
                success=False,
                message=f"Configuration validation failed: {error_msg}",
                error="CONFIG_INVALID",
            )

        # Initialize for this run
        self._reset_progress()
        self._status = TaskStatus.RUNNING
        self._progress.started_at = datetime.utcnow()
        self._progress.status = "starting"

        result = TaskResult(
            success=False,
            started_at=datetime.utcnow(),
        )

        try:
            logger.info(f"[{self.task_id}] Starting task: {self.task_name}")
            await self.on_start()

            result = await self.execute()
            result.started_at = self._progress.started_at
            result.completed_at = datetime.utcnow()

            if self._cancel_requested:
                self._status = TaskStatus.CANCELLED
                result.success = False
                result.message = "Task was cancelled"
                result.error = "CANCELLED"
                await self.on_cancel()
                logger.info(f"[{self.task_id}] Task cancelled")
            elif result.success:
                self._status = TaskStatus.COMPLETED
                await self.on_complete(result)
                logger.info(f"[{self.task_id}] Task completed successfully: {result.message}")
            else:
                self._status = TaskStatus.FAILED
                logger.warning(f"[{self.task_id}] Task failed: {result.message}")

        except Exception as e:
            self._status = TaskStatus.FAILED
            result.success = False
            result.message = f"Task failed with error: {str(e)}"
            result.error = str(e)
            result.completed_at = datetime.utcnow()
            logger.exception(f"[{self.task_id}] Task error: {e}")
            await self.on_error(e, result)
        finally:
            self._add_to_history(result)
            self._last_run = result.completed_at or datetime.utcnow()
            self._progress.status = "completed" if result.success else "failed"

            if self._enabled and self.schedule_config.schedule_type != ScheduleType.MANUAL:
                self._calculate_next_run()

            if self._status in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED):
                self._status = TaskStatus.IDLE

        return result

    def cancel(self) -> dict:
        """
        Request cancellation of the running task.

        Sets the cancel flag and trips the cancellation token, so a sync or
        mapping chain started by the task stops at its next checkpoint.

        Returns:
            Status dict with cancellation result.
        """
        if self._status != TaskStatus.RUNNING:
            return {
                "status": "not_running",
                "message": "Task is not currently running",
            }

        logger.info(f"[{self.task_id}] Cancellation requested")
        self._cancel_requested = True
        self._token.cancel(f"{self.task_name} was cancelled")
        self._progress.status = "cancelling"

        return {
            "status": "cancelling",
            "message": "Cancellation requested",
        }

    def enable(self):
        """Enable the task for scheduled execution."""
        self._enabled = True
        logger.info(f"[{self.task_id}] Task enabled")
        if self.schedule_config.schedule_type != ScheduleType.MANUAL:
            self._calculate_next_run()

    def disable(self):
        """Disable the task (will not run on schedule)."""
        self._enabled = False
        self._next_run = None
        logger.info(f"[{self.task_id}] Task disabled")

    # -------------------------------------------------------------------------
    # Schedule Calculation
    # -------------------------------------------------------------------------

    def _calculate_next_run(self):
        """Calculate the next scheduled run time."""
        if self.schedule_config.schedule_type == ScheduleType.INTERVAL and self.schedule_config.interval_seconds > 0:
            self._next_run = datetime.utcnow() + timedelta(seconds=self.schedule_config.interval_seconds)
        else:
            self._next_run = None

    def get_seconds_until_next_run(self) -> Optional[int]:
        """Get seconds until the next scheduled run."""
        if not self._next_run:
            return None

        now = datetime.utcnow()
        delta = (self._next_run - now).total_seconds()
        return max(0, int(delta))

    # -------------------------------------------------------------------------
    # History Management
    # -------------------------------------------------------------------------

    def _add_to_history(self, result: TaskResult):
        """Add a result to history, maintaining max size."""
        self._history.insert(0, result)
        if len(self._history) > self._max_history:
            self._history = self._history[:self._max_history]

    def get_history_dicts(self) -> list[dict]:
        """Get history as list of dictionaries."""
        return [r.to_dict() for r in self._history]

    def update_schedule(self, schedule_config: ScheduleConfig):
        """Update the schedule configuration."""
        self.schedule_config = schedule_config
        if self._enabled:
            self._calculate_next_run()
        logger.info(f"[{self.task_id}] Schedule updated: {schedule_config.to_dict()}")
