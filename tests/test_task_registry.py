from datetime import datetime

import pytest

from core.cache import KEY_PREFIX, KeyValueStore
from services.audit.task_registry import TaskNotFoundError, TaskRegistry


class TestTaskRegistry:

    def test_add_inserts_newest_first(self, tasks):
        first = tasks.add("p1", "项目一", "upload")
        second = tasks.add("p1", "项目一", "extract", status="pending", fileName="a.pdf")

        listed = tasks.list_tasks()
        assert [t["id"] for t in listed] == [second, first]
        assert listed[0]["fileName"] == "a.pdf"
        assert listed[0]["retryCount"] == 0

    def test_add_rejects_unknown_type_and_status(self, tasks):
        with pytest.raises(ValueError):
            tasks.add("p1", "x", "render")
        with pytest.raises(ValueError):
            tasks.add("p1", "x", "upload", status="paused")

    def test_update_stamps_completion(self, tasks):
        task_id = tasks.add("p1", "x", "classify")
        task = tasks.update(task_id, progress=50)
        assert task["completedAt"] is None

        task = tasks.update(task_id, status="failed", error="boom")
        assert task["completedAt"] is not None
        assert task["error"] == "boom"

    def test_update_unknown_task_is_ignored(self, tasks):
        assert tasks.update("task-missing", status="completed") is None

    def test_remove_and_project_tasks(self, tasks):
        a = tasks.add("p1", "x", "upload")
        tasks.add("p2", "y", "upload")
        tasks.add("p1", "x", "audit")

        assert tasks.remove(a) is True
        assert tasks.remove(a) is False
        assert len(tasks.get_project_tasks("p1")) == 1
        assert tasks.remove_project_tasks("p1") == 1
        assert [t["projectId"] for t in tasks.list_tasks()] == ["p2"]

    def test_clear_completed(self, tasks):
        done = tasks.add("p1", "x", "upload")
        tasks.add("p1", "x", "upload")
        tasks.update(done, status="completed")
        assert tasks.clear_completed() == 1
        assert tasks.get(done) is None

    def test_retry(self, tasks):
        task_id = tasks.add("p1", "x", "extract")
        tasks.update(task_id, status="failed", error="timeout")

        task = tasks.retry(task_id)
        assert task["status"] == "pending"
        assert task["error"] is None
        assert task["completedAt"] is None
        assert task["retryCount"] == 1
        assert tasks.retry(task_id)["retryCount"] == 2

        with pytest.raises(TaskNotFoundError):
            tasks.retry("task-missing")

    def test_stats(self, tasks):
        a = tasks.add("p1", "x", "upload")
        b = tasks.add("p1", "x", "upload", status="pending")
        c = tasks.add("p1", "x", "upload")
        tasks.update(a, status="completed")
        tasks.update(c, status="failed")
        assert tasks.stats() == {"running": 1, "completed": 1, "failed": 1}
        assert tasks.get(b)["status"] == "pending"

    def test_cleanup_orphans(self, tasks):
        tasks.add("p1", "x", "upload")
        tasks.add("gone", "y", "upload")
        assert tasks.cleanup_orphans(["p1"]) == 1
        assert [t["projectId"] for t in tasks.list_tasks()] == ["p1"]

    def test_tasks_persist_through_store(self, store):
        task_id = TaskRegistry(store=store).add("p1", "x", "audit", message="running")
        reloaded = TaskRegistry(store=store)
        assert reloaded.get(task_id)["message"] == "running"


class TestKeyValueStore:

    def test_ttl_expiry(self):
        store = KeyValueStore(use_redis=False)
        store.set_json("k", {"a": 1}, ttl=60)
        assert store.get_json("k") == {"a": 1}

        store._expires_at[KEY_PREFIX + "k"] = datetime(2000, 1, 1)
        assert store.get_json("k") is None

    def test_clear_prefix(self):
        store = KeyValueStore(use_redis=False)
        store.set_json("datahub:a", 1)
        store.set_json("datahub:b", 2)
        store.set_json("tasks", [])
        store.clear_prefix("datahub:")
        assert store.get_json("datahub:a") is None
        assert store.get_json("tasks") == []
