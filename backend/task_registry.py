"""
Task Registry System.

Central registry of background task types:
- Task registration and discovery
- Lazy, single instance per task id
"""
import logging
from typing import Optional, Type

from task_scheduler import TaskScheduler

logger = logging.getLogger(__name__)


class TaskRegistry:
    """
    Central registry for all scheduled task types.

    Tasks are registered by their task_id and can be looked up at runtime.
    """

    def __init__(self):
        self._tasks: dict[str, Type[TaskScheduler]] = {}
        self._instances: dict[str, TaskScheduler] = {}

    def register(self, task_class: Type[TaskScheduler]) -> None:
        """
        Register a task class with the registry.

        Args:
            task_class: A TaskScheduler subclass to register
        """
        if not task_class.task_id:
            raise ValueError(f"Task class {task_class.__name__} has no task_id defined")

        if task_class.task_id in self._tasks:
            logger.warning(f"Task {task_class.task_id} already registered, replacing")

        self._tasks[task_class.task_id] = task_class
        self._instances.pop(task_class.task_id, None)
        logger.debug(f"Registered task: {task_class.task_id} ({task_class.task_name})")

    def unregister(self, task_id: str) -> bool:
        if task_id in self._tasks:
            del self._tasks[task_id]
            self._instances.pop(task_id, None)
            logger.debug(f"Unregistered task: {task_id}")
            return True
        return False

    def get_task_class(self, task_id: str) -> Optional[Type[TaskScheduler]]:
        """Get a registered task class by ID."""
        return self._tasks.get(task_id)

    def get_task_instance(self, task_id: str) -> Optional[TaskScheduler]:
        """Get a task instance by ID (creates if needed)."""
        if task_id not in self._instances and task_id in self._tasks:
            self._instances[task_id] = self._tasks[task_id]()
        return self._instances.get(task_id)

    def list_task_ids(self) -> list[str]:
        return list(self._tasks)

    def is_registered(self, task_id: str) -> bool:
        return task_id in self._tasks

    def get_all_task_statuses(self) -> list[dict]:
        """Status of every registered task (instantiating as needed)."""
        statuses = []
        for task_id in self._tasks:
            instance = self.get_task_instance(task_id)
            if instance:
                statuses.append(instance.get_status_dict())
        return statuses


# Global registry instance
_registry: Optional[TaskRegistry] = None


def get_registry() -> TaskRegistry:
    """Get the global task registry instance."""
    global _registry
    if _registry is None:
        _registry = TaskRegistry()
    return _registry


def register_task(task_class: Type[TaskScheduler]) -> Type[TaskScheduler]:
    """
    Decorator to register a task class with the global registry.

    Usage:
        @register_task
        class MyTask(TaskScheduler):
            task_id = "my_task"
            ...
    """
    get_registry().register(task_class)
    return task_class
