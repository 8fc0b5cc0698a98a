"""
Tasks router: background engine status and scheduled task control.
"""
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from task_engine import get_engine
from task_registry import get_registry
from task_scheduler import ScheduleConfig, ScheduleType

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/tasks", tags=["Tasks"])


class TaskUpdateRequest(BaseModel):
    enabled: Optional[bool] = None
    interval_seconds: Optional[int] = Field(default=None, ge=0)


def _get_task(task_id: str):
    instance = get_registry().get_task_instance(task_id)
    if instance is None:
        raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
    return instance


def _task_detail(instance) -> dict:
    return {
        **instance.get_status_dict(),
        "seconds_until_next_run": instance.get_seconds_until_next_run(),
        "history": instance.get_history_dicts(),
    }


@router.get("")
async def list_tasks():
    """Background engine and scheduled task status."""
    return {
        "engine": get_engine().get_status(),
        "tasks": get_registry().get_all_task_statuses(),
    }


@router.get("/{task_id}")
async def get_task(task_id: str):
    return _task_detail(_get_task(task_id))


@router.patch("/{task_id}")
async def update_task(task_id: str, request: TaskUpdateRequest):
    """Enable/disable a task or change its interval (0 = manual only)."""
    instance = _get_task(task_id)
    if request.interval_seconds is not None:
        schedule_type = ScheduleType.INTERVAL if request.interval_seconds > 0 else ScheduleType.MANUAL
        instance.update_schedule(ScheduleConfig(schedule_type=schedule_type, interval_seconds=request.interval_seconds))
    if request.enabled is True:
        instance.enable()
    elif request.enabled is False:
        instance.disable()
    logger.info("[TASKS] Task %s updated", task_id)
    return _task_detail(instance)


@router.post("/{task_id}/run")
async def run_task(task_id: str):
    """Run a task now and return its result."""
    _get_task(task_id)
    result = await get_engine().run_task(task_id)
    if result.error == "ALREADY_RUNNING":
        raise HTTPException(status_code=409, detail="Task is already running")
    return result.to_dict()


@router.post("/{task_id}/cancel")
async def cancel_task(task_id: str):
    _get_task(task_id)
    result = await get_engine().cancel_task(task_id)
    if result["status"] == "not_running":
        raise HTTPException(status_code=409, detail=result["message"])
    return result
