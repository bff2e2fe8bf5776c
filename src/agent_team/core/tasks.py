"""Task store operations and the task lifecycle state machine."""

import re
import sqlite3
from datetime import datetime

from agent_team.core.projects import DEFAULT_PROJECT_ID, ensure_project
from agent_team.db.models import TASK_PRIORITIES, TASK_STATUSES, Task, TaskEvent

# backlog -> ready -> in_progress -> {done | pr_created -> done}
# in_progress -> backlog is the error-recovery edge.
TRANSITIONS: dict[str, frozenset[str]] = {
    "backlog": frozenset({"ready"}),
    "ready": frozenset({"in_progress", "backlog"}),
    "in_progress": frozenset({"done", "pr_created", "backlog"}),
    "pr_created": frozenset({"done"}),
    "done": frozenset(),
}

UPDATABLE_FIELDS = (
    "title",
    "description",
    "status",
    "owner",
    "priority",
    "output",
    "started_at",
    "completed_at",
)

_PRIORITY_ORDER = """
    CASE priority WHEN 'P0' THEN 0 WHEN 'P1' THEN 1 WHEN 'P2' THEN 2 ELSE 3 END
"""


class InvalidTransition(ValueError):
    """Raised when a status change is not allowed by the lifecycle."""


def slugify(title: str) -> str:
    """Convert a title to a URL-friendly slug."""
    slug = title.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")[:60] or "task"


def _unique_id(db: sqlite3.Connection, base_slug: str) -> str:
    """Generate a unique task ID from a slug, appending a number if needed."""
    existing = db.execute("SELECT id FROM tasks WHERE id = ?", (base_slug,)).fetchone()
    if not existing:
        return base_slug

    i = 2
    while True:
        candidate = f"{base_slug}-{i}"
        existing = db.execute("SELECT id FROM tasks WHERE id = ?", (candidate,)).fetchone()
        if not existing:
            return candidate
        i += 1


def normalize_priority(priority: str | None) -> str | None:
    """Return a valid priority label or None (lowest)."""
    if priority is None:
        return None
    value = str(priority).strip().upper()
    return value if value in TASK_PRIORITIES else None


def can_transition(old_status: str, new_status: str) -> bool:
    if old_status == new_status:
        return True
    return new_status in TRANSITIONS.get(old_status, frozenset())


def create_task(
    db: sqlite3.Connection,
    title: str,
    project_id: str = DEFAULT_PROJECT_ID,
    description: str = "",
    owner: str | None = None,
    priority: str | None = None,
) -> Task:
    """Create a new task in the backlog."""
    title = title.strip()
    if not title:
        raise ValueError("Task title must not be empty")
    if priority is not None and normalize_priority(priority) is None:
        raise ValueError(f"Invalid priority: {priority}")

    ensure_project(db, project_id)
    task_id = _unique_id(db, slugify(title))

    db.execute(
        """INSERT INTO tasks (id, project_id, title, description, owner, priority)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (task_id, project_id, title, description or "", owner, normalize_priority(priority)),
    )
    _log_event(db, task_id, "created", None, "backlog")
    db.commit()
    return get_task(db, task_id)


def get_task(db: sqlite3.Connection, task_id: str) -> Task | None:
    row = db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if not row:
        return None
    return _row_to_task(row)


def list_tasks(
    db: sqlite3.Connection,
    project_id: str = DEFAULT_PROJECT_ID,
    status: str | None = None,
) -> list[Task]:
    """List a project's tasks ordered by priority, then creation time."""
    query = "SELECT * FROM tasks WHERE project_id = ?"
    params: list = [project_id]

    if status:
        query += " AND status = ?"
        params.append(status)

    query += f" ORDER BY {_PRIORITY_ORDER}, created_at ASC, rowid ASC"
    rows = db.execute(query, params).fetchall()
    return [_row_to_task(r) for r in rows]


def update_task(db: sqlite3.Connection, task_id: str, **fields) -> Task | None:
    """Apply a partial update. Returns the updated task, or None if missing.

    This is the permissive store write: status changes are recorded but not
    checked against the lifecycle. Use transition_task for checked moves.
    """
    task = get_task(db, task_id)
    if not task:
        return None

    unknown = set(fields) - set(UPDATABLE_FIELDS)
    if unknown:
        raise ValueError(f"Unknown task fields: {', '.join(sorted(unknown))}")

    if "status" in fields and fields["status"] not in TASK_STATUSES:
        raise ValueError(f"Invalid status: {fields['status']}")
    if "priority" in fields and fields["priority"] is not None:
        priority = normalize_priority(fields["priority"])
        if priority is None:
            raise ValueError(f"Invalid priority: {fields['priority']}")
        fields["priority"] = priority

    updates = {}
    for key, value in fields.items():
        if isinstance(value, datetime):
            value = value.isoformat()
        updates[key] = value

    if not updates:
        return task

    set_parts = [f"{k} = ?" for k in updates]
    set_parts.append("updated_at = datetime('now')")
    values = list(updates.values()) + [task_id]
    db.execute(f"UPDATE tasks SET {', '.join(set_parts)} WHERE id = ?", values)

    if "status" in updates and updates["status"] != task.status:
        _log_event(db, task_id, "status_changed", task.status, updates["status"])
    if "owner" in updates and updates["owner"] != task.owner:
        _log_event(db, task_id, "owner_changed", task.owner, updates["owner"])
    if "priority" in updates and updates["priority"] != task.priority:
        _log_event(db, task_id, "priority_changed", task.priority, updates["priority"])

    db.commit()
    return get_task(db, task_id)


def transition_task(
    db: sqlite3.Connection,
    task_id: str,
    status: str,
    **fields,
) -> Task | None:
    """Move a task along the lifecycle, stamping start/completion times.

    Raises InvalidTransition for edges the lifecycle does not allow, and
    for moves into in_progress when the task has no owner.
    """
    task = get_task(db, task_id)
    if not task:
        return None
    if status not in TASK_STATUSES:
        raise ValueError(f"Invalid status: {status}")
    if not can_transition(task.status, status):
        raise InvalidTransition(f"Cannot move task '{task_id}' from {task.status} to {status}")

    owner = fields.get("owner", task.owner)
    if status == "in_progress" and not owner:
        raise InvalidTransition(f"Task '{task_id}' has no owner and cannot be started")

    now = datetime.now()
    if status == "in_progress" and "started_at" not in fields:
        fields["started_at"] = now
    if status == "done" and task.status != "done" and "completed_at" not in fields:
        fields["completed_at"] = now

    return update_task(db, task_id, status=status, **fields)


def delete_task(db: sqlite3.Connection, task_id: str) -> bool:
    task = get_task(db, task_id)
    if not task:
        return False
    db.execute("DELETE FROM task_events WHERE task_id = ?", (task_id,))
    db.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
    db.commit()
    return True


def get_task_events(db: sqlite3.Connection, task_id: str) -> list[TaskEvent]:
    """Get the event history for a task."""
    rows = db.execute(
        "SELECT * FROM task_events WHERE task_id = ? ORDER BY created_at, id",
        (task_id,),
    ).fetchall()
    return [
        TaskEvent(
            id=r["id"],
            task_id=r["task_id"],
            event_type=r["event_type"],
            old_value=r["old_value"],
            new_value=r["new_value"],
            created_at=_parse_dt(r["created_at"]),
        )
        for r in rows
    ]


def task_stats(db: sqlite3.Connection, project_id: str = DEFAULT_PROJECT_ID) -> dict:
    """Count a project's tasks by status."""
    by_status = {status: 0 for status in TASK_STATUSES}
    rows = db.execute(
        "SELECT status, COUNT(*) AS n FROM tasks WHERE project_id = ? GROUP BY status",
        (project_id,),
    ).fetchall()
    for row in rows:
        by_status[row["status"]] = row["n"]
    return {"total": sum(by_status.values()), "by_status": by_status}


def _log_event(
    db: sqlite3.Connection,
    task_id: str,
    event_type: str,
    old_value: str | None,
    new_value: str | None,
):
    db.execute(
        "INSERT INTO task_events (task_id, event_type, old_value, new_value) VALUES (?, ?, ?, ?)",
        (task_id, event_type, old_value, new_value),
    )


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        project_id=row["project_id"],
        title=row["title"],
        description=row["description"] or "",
        status=row["status"],
        owner=row["owner"],
        priority=row["priority"],
        output=row["output"],
        started_at=_parse_dt(row["started_at"]),
        completed_at=_parse_dt(row["completed_at"]),
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
