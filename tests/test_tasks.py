"""Tests for task management operations."""

import tempfile
from pathlib import Path

import pytest

from agent_team.core import projects as projects_mod
from agent_team.core import tasks as tasks_mod
from agent_team.db.engine import init_db


@pytest.fixture
def db():
    """Create a temporary SQLite database for testing."""
    with tempfile.TemporaryDirectory() as tmp:
        db_path = Path(tmp) / "test.db"
        conn = init_db(db_path)
        projects_mod.create_project(conn, "test", "Test Project")
        yield conn
        conn.close()


class TestSlugify:
    def test_basic(self):
        assert tasks_mod.slugify("Hello World") == "hello-world"

    def test_special_chars(self):
        assert tasks_mod.slugify("Auth: Login & Signup!") == "auth-login-signup"

    def test_multiple_spaces(self):
        assert tasks_mod.slugify("  too   many   spaces  ") == "too-many-spaces"

    def test_truncation(self):
        assert len(tasks_mod.slugify("a" * 100)) <= 60

    def test_empty_falls_back(self):
        assert tasks_mod.slugify("!!!") == "task"


class TestTaskCRUD:
    def test_create_task(self, db):
        task = tasks_mod.create_task(db, "Build login page", "test", owner="frontend", priority="p1")
        assert task.id == "build-login-page"
        assert task.status == "backlog"
        assert task.owner == "frontend"
        assert task.priority == "P1"
        assert task.started_at is None

    def test_create_duplicate_gets_suffix(self, db):
        t1 = tasks_mod.create_task(db, "Build login page", "test")
        t2 = tasks_mod.create_task(db, "Build login page", "test")
        assert t1.id == "build-login-page"
        assert t2.id == "build-login-page-2"

    def test_create_rejects_empty_title(self, db):
        with pytest.raises(ValueError):
            tasks_mod.create_task(db, "   ", "test")

    def test_create_rejects_bad_priority(self, db):
        with pytest.raises(ValueError):
            tasks_mod.create_task(db, "Task", "test", priority="P9")

    def test_create_in_unknown_project_creates_it(self, db):
        tasks_mod.create_task(db, "Task", "brand-new")
        assert projects_mod.get_project(db, "brand-new") is not None

    def test_default_project_exists(self, db):
        task = tasks_mod.create_task(db, "Task")
        assert task.project_id == "default"

    def test_get_nonexistent_task(self, db):
        assert tasks_mod.get_task(db, "nonexistent") is None

    def test_list_orders_by_priority_then_creation(self, db):
        tasks_mod.create_task(db, "No priority", "test")
        tasks_mod.create_task(db, "Later", "test", priority="P2")
        tasks_mod.create_task(db, "Urgent", "test", priority="P0")
        tasks_mod.create_task(db, "Also urgent", "test", priority="P0")
        ids = [t.id for t in tasks_mod.list_tasks(db, "test")]
        assert ids == ["urgent", "also-urgent", "later", "no-priority"]

    def test_list_by_status(self, db):
        tasks_mod.create_task(db, "Task A", "test")
        tasks_mod.create_task(db, "Task B", "test")
        tasks_mod.transition_task(db, "task-a", "ready")
        ready = tasks_mod.list_tasks(db, "test", status="ready")
        assert [t.id for t in ready] == ["task-a"]

    def test_delete_task(self, db):
        tasks_mod.create_task(db, "Temp task", "test")
        assert tasks_mod.delete_task(db, "temp-task") is True
        assert tasks_mod.get_task(db, "temp-task") is None
        assert tasks_mod.get_task_events(db, "temp-task") == []

    def test_delete_nonexistent(self, db):
        assert tasks_mod.delete_task(db, "nope") is False


class TestUpdateTask:
    def test_update_fields(self, db):
        tasks_mod.create_task(db, "Task", "test")
        task = tasks_mod.update_task(db, "task", description="Details", owner="backend")
        assert task.description == "Details"
        assert task.owner == "backend"

    def test_update_missing_returns_none(self, db):
        assert tasks_mod.update_task(db, "missing", title="x") is None

    def test_update_unknown_field(self, db):
        tasks_mod.create_task(db, "Task", "test")
        with pytest.raises(ValueError):
            tasks_mod.update_task(db, "task", color="red")

    def test_update_invalid_status(self, db):
        tasks_mod.create_task(db, "Task", "test")
        with pytest.raises(ValueError):
            tasks_mod.update_task(db, "task", status="todo")

    def test_update_is_permissive_about_lifecycle(self, db):
        tasks_mod.create_task(db, "Task", "test")
        task = tasks_mod.update_task(db, "task", status="done")
        assert task.status == "done"


class TestTransitions:
    def test_can_transition(self):
        assert tasks_mod.can_transition("backlog", "ready")
        assert tasks_mod.can_transition("in_progress", "backlog")
        assert tasks_mod.can_transition("pr_created", "done")
        assert tasks_mod.can_transition("done", "done")
        assert not tasks_mod.can_transition("backlog", "done")
        assert not tasks_mod.can_transition("done", "backlog")

    def test_full_lifecycle_stamps_times(self, db):
        tasks_mod.create_task(db, "Task", "test", owner="backend")
        tasks_mod.transition_task(db, "task", "ready")
        started = tasks_mod.transition_task(db, "task", "in_progress")
        assert started.started_at is not None
        assert started.completed_at is None
        done = tasks_mod.transition_task(db, "task", "done", output="All good")
        assert done.completed_at is not None
        assert done.output == "All good"

    def test_skipping_states_is_rejected(self, db):
        tasks_mod.create_task(db, "Task", "test", owner="backend")
        with pytest.raises(tasks_mod.InvalidTransition):
            tasks_mod.transition_task(db, "task", "done")

    def test_start_requires_owner(self, db):
        tasks_mod.create_task(db, "Task", "test")
        tasks_mod.transition_task(db, "task", "ready")
        with pytest.raises(tasks_mod.InvalidTransition):
            tasks_mod.transition_task(db, "task", "in_progress")

    def test_owner_can_be_assigned_while_starting(self, db):
        tasks_mod.create_task(db, "Task", "test")
        tasks_mod.transition_task(db, "task", "ready")
        task = tasks_mod.transition_task(db, "task", "in_progress", owner="qa")
        assert task.owner == "qa"
        assert task.status == "in_progress"

    def test_error_recovery_to_backlog(self, db):
        tasks_mod.create_task(db, "Task", "test", owner="backend")
        tasks_mod.transition_task(db, "task", "ready")
        tasks_mod.transition_task(db, "task", "in_progress")
        task = tasks_mod.transition_task(db, "task", "backlog", output="Error: boom")
        assert task.status == "backlog"
        assert task.output == "Error: boom"

    def test_transition_missing_returns_none(self, db):
        assert tasks_mod.transition_task(db, "missing", "ready") is None

    def test_invalid_status_value(self, db):
        tasks_mod.create_task(db, "Task", "test")
        with pytest.raises(ValueError):
            tasks_mod.transition_task(db, "task", "todo")


class TestEventsAndStats:
    def test_events_recorded(self, db):
        tasks_mod.create_task(db, "Task", "test")
        tasks_mod.transition_task(db, "task", "ready", owner="backend")
        events = tasks_mod.get_task_events(db, "task")
        kinds = [e.event_type for e in events]
        assert kinds == ["created", "status_changed", "owner_changed"]
        assert events[1].old_value == "backlog"
        assert events[1].new_value == "ready"

    def test_task_stats(self, db):
        tasks_mod.create_task(db, "A", "test")
        tasks_mod.create_task(db, "B", "test")
        tasks_mod.transition_task(db, "a", "ready")
        stats = tasks_mod.task_stats(db, "test")
        assert stats["total"] == 2
        assert stats["by_status"]["ready"] == 1
        assert stats["by_status"]["backlog"] == 1
        assert stats["by_status"]["done"] == 0


class TestProjects:
    def test_duplicate_id_rejected(self, db):
        with pytest.raises(ValueError, match="already exists"):
            projects_mod.create_project(db, "test", "Again")

    def test_list_oldest_first(self, db):
        projects_mod.create_project(db, "shop", "Shop", slack_channel="C1")
        ids = [p.id for p in projects_mod.list_projects(db)]
        assert ids == ["default", "test", "shop"]
        assert projects_mod.get_project(db, "shop").slack_channel == "C1"

    def test_ensure_project(self, db):
        created = projects_mod.ensure_project(db, "side")
        assert created.name == "side"
        assert projects_mod.ensure_project(db, "side").created_at == created.created_at
