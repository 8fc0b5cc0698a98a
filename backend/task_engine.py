"""
Task Execution Engine.

Background service that manages and executes tasks:
- Runs a scheduler loop to check for due tasks
- Executes tasks based on their schedules
- Enforces concurrent task limits
- Runs ad-hoc playlist syncs and EPG mappings submitted by the API, so
  different playlists proceed in parallel and one playlist never runs twice
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from batch_orchestrator import CancellationToken
from task_registry import get_registry
from task_scheduler import TaskResult

logger = logging.getLogger(__name__)

# Configuration
DEFAULT_CHECK_INTERVAL = 60  # Check for due tasks every 60 seconds
MAX_CONCURRENT_TASKS = 3  # Maximum scheduled tasks running simultaneously


def playlist_job_id(playlist_id: int) -> str:
    return f"playlist:{playlist_id}"


def epg_job_id(epg_id: int, playlist_id: Optional[int] = None) -> str:
    return f"epg:{epg_id}:{playlist_id or 'all'}"


class TaskEngine:
    """
    Background execution engine for scheduled tasks and ad-hoc jobs.
    """

    def __init__(
        self,
        check_interval: int = DEFAULT_CHECK_INTERVAL,
        max_concurrent: int = MAX_CONCURRENT_TASKS,
    ):
        self.check_interval = check_interval
        self.max_concurrent = max_concurrent
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._active_tasks: set[str] = set()  # Currently running task IDs
        self._jobs: dict[str, tuple[asyncio.Task, CancellationToken]] = {}  # Ad-hoc jobs by job id
        self._lock = asyncio.Lock()

    async def start(self) -> None:
        """Start the task execution engine."""
        if self._running:
            logger.warning("Task engine already running")
            return

        logger.info("Starting task execution engine")
        self._running = True
        self._task = asyncio.create_task(self._scheduler_loop())
        logger.info(f"Task engine started (check_interval={self.check_interval}s, max_concurrent={self.max_concurrent})")

    async def stop(self) -> None:
        """Stop the task execution engine."""
        if not self._running:
            return

        logger.info("Stopping task execution engine")
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        # Ask running jobs to stop at their next checkpoint
        for _task, token in list(self._jobs.values()):
            token.cancel("Server is shutting down")

        # Wait for active work to complete (with timeout)
        if self._active_tasks or self._jobs:
            logger.info(f"Waiting for {len(self._active_tasks) + len(self._jobs)} active tasks to complete...")
            timeout = 30
            start = datetime.utcnow()
            while (self._active_tasks or self._jobs) and (datetime.utcnow() - start).total_seconds() < timeout:
                await asyncio.sleep(1)

        logger.info("Task engine stopped")

    @property
    def active_job_ids(self) -> list[str]:
        return list(self._jobs)

    async def _scheduler_loop(self) -> None:
        """Main scheduler loop - checks for due tasks and executes them."""
        logger.info("Scheduler loop started")

        # Initial wait for system to stabilize
        try:
            await asyncio.sleep(5)
        except asyncio.CancelledError:
            return

        while self._running:
            try:
                await self._check_and_run_due_tasks()
            except Exception as e:
                logger.exception(f"Error in scheduler loop: {e}")

            try:
                await asyncio.sleep(self.check_interval)
            except asyncio.CancelledError:
                break

        logger.info("Scheduler loop stopped")

    async def _check_and_run_due_tasks(self) -> None:
        """Start every registered task whose schedule is due."""
        registry = get_registry()
        now = datetime.utcnow()

        for task_id in registry.list_task_ids():
            if len(self._active_tasks) >= self.max_concurrent:
                logger.debug(f"Max concurrent tasks reached ({self.max_concurrent}), skipping check")
                break

            if task_id in self._active_tasks:
                continue

            instance = registry.get_task_instance(task_id)
            if not instance or not instance.is_due(now):
                continue

            logger.info(f"Task {task_id} is due, scheduling execution")
            asyncio.create_task(self._execute_task(task_id, triggered_by="scheduled"))

    async def _execute_task(self, task_id: str, triggered_by: str = "manual") -> Optional[TaskResult]:
        """
        Execute a registered task.

        Args:
            task_id: ID of task to execute
            triggered_by: Who triggered the task ("scheduled", "manual", "api")

        Returns:
            TaskResult or None if task not found
        """
        registry = get_registry()
        instance = registry.get_task_instance(task_id)

        if not instance:
            logger.error(f"Task {task_id} not found")
            return None

        async with self._lock:
            if task_id in self._active_tasks:
                logger.warning(f"Task {task_id} is already running")
                return TaskResult(
                    success=False,
                    message="Task is already running",
                    error="ALREADY_RUNNING",
                )
            self._active_tasks.add(task_id)

        try:
            logger.info(f"[{task_id}] Starting task execution (triggered_by={triggered_by})")
            return await instance.run()
        except Exception as e:
            logger.exception(f"[{task_id}] Task execution failed: {e}")
            return TaskResult(
                success=False,
                message=f"Task execution failed: {str(e)}",
                error=str(e),
                started_at=datetime.utcnow(),
                completed_at=datetime.utcnow(),
            )
        finally:
            async with self._lock:
                self._active_tasks.discard(task_id)

    async def run_task(self, task_id: str) -> Optional[TaskResult]:
        """Manually run a registered task (API entry point)."""
        return await self._execute_task(task_id, triggered_by="manual")

    async def cancel_task(self, task_id: str) -> dict:
        """Cancel a running registered task."""
        instance = get_registry().get_task_instance(task_id)

        if not instance:
            return {"status": "not_found", "message": f"Task {task_id} not found"}

        if task_id not in self._active_tasks:
            return {"status": "not_running", "message": f"Task {task_id} is not running"}

        return instance.cancel()

    # -------------------------------------------------------------------------
    # Ad-hoc jobs
    # -------------------------------------------------------------------------

    async def submit(self, job_id: str, factory: Callable[[CancellationToken], Awaitable[Any]]) -> bool:
        """
        Start a job in the background unless one with the same id is running.

        Returns:
            False if a job with this id is already in flight.
        """
        async with self._lock:
            if job_id in self._jobs:
                logger.info(f"Job {job_id} is already running")
                return False
            token = CancellationToken()
            task = asyncio.create_task(self._run_job(job_id, factory, token))
            self._jobs[job_id] = (task, token)
        return True

    async def _run_job(self, job_id: str, factory, token: CancellationToken) -> Any:
        try:
            return await factory(token)
        except Exception as e:
            logger.exception(f"Job {job_id} failed: {e}")
            return None
        finally:
            async with self._lock:
                self._jobs.pop(job_id, None)

    async def submit_sync(self, playlist_id: int, force: bool = False, is_new: bool = False) -> bool:
        """Sync a playlist in the background."""
        from playlist_sync import sync_playlist

        return await self.submit(
            playlist_job_id(playlist_id),
            lambda token: sync_playlist(playlist_id, force=force, is_new=is_new, token=token),
        )

    async def submit_mapping(self, epg_id: int, playlist_id: Optional[int] = None, **kwargs) -> bool:
        """Run an EPG mapping in the background."""
        from epg_mapping import map_playlist_channels_to_epg

        return await self.submit(
            epg_job_id(epg_id, playlist_id),
            lambda token: map_playlist_channels_to_epg(epg_id, playlist_id=playlist_id, token=token, **kwargs),
        )

    def cancel_job(self, job_id: str, reason: str = "Sync was cancelled") -> bool:
        """Trip the cancellation token of a running job."""
        job = self._jobs.get(job_id)
        if job is None:
            return False
        job[1].cancel(reason)
        logger.info(f"Cancellation requested for job {job_id}")
        return True

    def is_job_running(self, job_id: str) -> bool:
        return job_id in self._jobs

    def get_status(self) -> dict:
        """Get engine status."""
        registry = get_registry()
        return {
            "running": self._running,
            "check_interval": self.check_interval,
            "max_concurrent": self.max_concurrent,
            "active_tasks": list(self._active_tasks),
            "active_task_count": len(self._active_tasks),
            "active_jobs": list(self._jobs),
            "registered_task_count": len(registry.list_task_ids()),
        }


# Global engine instance
_engine: Optional[TaskEngine] = None


def get_engine() -> TaskEngine:
    """Get the global task engine instance."""
    global _engine
    if _engine is None:
        _engine = TaskEngine()
    return _engine


def reset_engine() -> None:
    """Drop the global engine (tests)."""
    global _engine
    _engine = None


async def start_engine() -> None:
    """Start the global task engine."""
    await get_engine().start()


async def stop_engine() -> None:
    """Stop the global task engine."""
    await get_engine().stop()
