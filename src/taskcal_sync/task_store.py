"""Local task store seam."""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List

from .models import SyncOperation, Task, TaskChange

logger = logging.getLogger(__name__)


class TaskStore(ABC):
    """Source of the user's tasks and sink for changes coming from calendars."""

    @abstractmethod
    async def list_tasks(self, user_id: str) -> List[Task]:
        """Return every task of ``user_id``, including unscheduled ones."""
        pass

    @abstractmethod
    async def apply_changes(self, user_id: str, changes: List[TaskChange]) -> None:
        """Apply changes produced by a sync pass."""
        pass


def apply_change(tasks: Dict[str, Task], change: TaskChange) -> None:
    """Apply one change to a task map in place.

    Updates of unknown tasks and deletes of missing tasks are ignored.
    """
    if change.operation == SyncOperation.CREATE:
        tasks[change.task_id] = Task(id=change.task_id, **change.fields)
    elif change.operation == SyncOperation.UPDATE:
        current = tasks.get(change.task_id)
        if current is None:
            logger.warning(f"Ignoring update of unknown task {change.task_id}")
            return
        data = current.model_dump()
        data.update(change.fields)
        tasks[change.task_id] = Task(**data)
    elif change.operation == SyncOperation.DELETE:
        tasks.pop(change.task_id, None)


class JsonFileTaskStore(TaskStore):
    """Task store backed by a JSON file mapping user ids to task lists."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    def _read(self) -> Dict[str, List[dict]]:
        if not self.path.exists():
            return {}
        with open(self.path, 'r') as f:
            content = f.read().strip()
        return json.loads(content) if content else {}

    def _write(self, data: Dict[str, List[dict]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + '.tmp')
        with open(tmp_path, 'w') as f:
            json.dump(data, f, indent=2)
        tmp_path.replace(self.path)

    async def list_tasks(self, user_id: str) -> List[Task]:
        async with self._lock:
            data = self._read()
        return [Task(**item) for item in data.get(user_id, [])]

    async def apply_changes(self, user_id: str, changes: List[TaskChange]) -> None:
        if not changes:
            return
        async with self._lock:
            data = self._read()
            tasks = {item['id']: Task(**item) for item in data.get(user_id, [])}
            for change in changes:
                apply_change(tasks, change)
            data[user_id] = [task.model_dump(mode='json') for task in tasks.values()]
            self._write(data)
        logger.info(f"Applied {len(changes)} task changes for {user_id}")
