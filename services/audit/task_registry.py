"""
Background task list shared by the pipeline and audit workers.

Tasks are plain dicts persisted as one JSON list in the key/value store, so
the list survives restarts when Redis is configured. Removing a task only
forgets it; work already running is not interrupted.
"""

import logging
import threading
import time
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from core.cache import KeyValueStore, kv_store

logger = logging.getLogger(__name__)

TASKS_KEY = "tasks"

TASK_TYPES = ("upload", "parse", "classify", "extract", "audit")
TASK_STATUSES = ("pending", "running", "completed", "failed")
TERMINAL_STATUSES = ("completed", "failed")

# Display names for task types
TASK_TYPE_NAMES = {
    "upload": "文件上传",
    "parse": "文档解析",
    "classify": "智能分拣",
    "extract": "信息提取",
    "audit": "智能审计",
}


class TaskNotFoundError(Exception):
    pass


def generate_task_id() -> str:
    return f"task-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


class TaskRegistry:
    def __init__(self, store: Optional[KeyValueStore] = None, key: str = TASKS_KEY):
        self._store = store if store is not None else kv_store
        self._key = key
        self._lock = threading.RLock()

    def _load(self) -> List[Dict[str, Any]]:
        return self._store.get_json(self._key) or []

    def _save(self, tasks: List[Dict[str, Any]]) -> None:
        self._store.set_json(self._key, tasks)

    def list_tasks(self) -> List[Dict[str, Any]]:
        """All tasks, newest first."""
        with self._lock:
            return self._load()

    def get(self, task_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return next((t for t in self._load() if t["id"] == task_id), None)

    def add(
        self,
        project_id: str,
        project_name: str,
        task_type: str,
        status: str = "running",
        message: str = "",
        progress: int = 0,
        **extra: Any,
    ) -> str:
        if task_type not in TASK_TYPES:
            raise ValueError(f"Unknown task type: {task_type}")
        if status not in TASK_STATUSES:
            raise ValueError(f"Unknown task status: {status}")

        task = {
            "id": generate_task_id(),
            "projectId": project_id,
            "projectName": project_name,
            "type": task_type,
            "status": status,
            "progress": progress,
            "message": message,
            "createdAt": datetime.now().isoformat(),
            "completedAt": None,
            "error": None,
            "retryCount": 0,
        }
        task.update(extra)

        with self._lock:
            tasks = self._load()
            tasks.insert(0, task)
            self._save(tasks)

        logger.info(f"Task {task['id']} added: {task_type} for project {project_id}")
        return task["id"]

    def update(self, task_id: str, **updates: Any) -> Optional[Dict[str, Any]]:
        """Merge updates into a task; completed/failed stamps completedAt. Unknown ids are ignored."""
        with self._lock:
            tasks = self._load()
            for task in tasks:
                if task["id"] == task_id:
                    task.update(updates)
                    if updates.get("status") in TERMINAL_STATUSES:
                        task["completedAt"] = datetime.now().isoformat()
                    self._save(tasks)
                    return task
        logger.debug(f"Update for unknown task {task_id} ignored")
        return None

    def remove(self, task_id: str) -> bool:
        with self._lock:
            tasks = self._load()
            remaining = [t for t in tasks if t["id"] != task_id]
            self._save(remaining)
            return len(remaining) != len(tasks)

    def remove_project_tasks(self, project_id: str) -> int:
        with self._lock:
            tasks = self._load()
            remaining = [t for t in tasks if t["projectId"] != project_id]
            self._save(remaining)
            return len(tasks) - len(remaining)

    def clear_completed(self) -> int:
        with self._lock:
            tasks = self._load()
            remaining = [t for t in tasks if t["status"] != "completed"]
            self._save(remaining)
            return len(tasks) - len(remaining)

    def get_project_tasks(self, project_id: str) -> List[Dict[str, Any]]:
        return [t for t in self.list_tasks() if t["projectId"] == project_id]

    def retry(self, task_id: str) -> Dict[str, Any]:
        """
        Mark a task as waiting for retry. The caller re-runs the actual work.

        Raises:
            TaskNotFoundError: no task with this id
        """
        with self._lock:
            tasks = self._load()
            for task in tasks:
                if task["id"] == task_id:
                    task.update(
                        status="pending",
                        progress=0,
                        message="等待重试...",
                        error=None,
                        completedAt=None,
                        retryCount=(task.get("retryCount") or 0) + 1,
                        createdAt=datetime.now().isoformat(),
                    )
                    self._save(tasks)
                    return task
        raise TaskNotFoundError(task_id)

    def stats(self) -> Dict[str, int]:
        tasks = self.list_tasks()
        return {
            "running": sum(1 for t in tasks if t["status"] in ("running", "pending")),
            "completed": sum(1 for t in tasks if t["status"] == "completed"),
            "failed": sum(1 for t in tasks if t["status"] == "failed"),
        }

    def cleanup_orphans(self, project_ids: Iterable[str]) -> int:
        """Drop tasks whose project no longer exists."""
        existing = set(project_ids)
        with self._lock:
            tasks = self._load()
            remaining = [t for t in tasks if t["projectId"] in existing]
            removed = len(tasks) - len(remaining)
            if removed:
                self._save(remaining)
                logger.info(f"Removed {removed} orphan task(s)")
            return removed


# Global instance
task_registry = TaskRegistry()
