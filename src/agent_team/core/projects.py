"""Projects: named task boards. Every task belongs to exactly one."""

import sqlite3
from datetime import datetime

from agent_team.db.models import Project

DEFAULT_PROJECT_ID = "default"


def create_project(
    db: sqlite3.Connection,
    project_id: str,
    name: str,
    description: str = "",
    slack_channel: str | None = None,
) -> Project:
    """Create a board. Raises ValueError if the id is taken."""
    try:
        db.execute(
            "INSERT INTO projects (id, name, description, slack_channel) VALUES (?, ?, ?, ?)",
            (project_id, name, description, slack_channel),
        )
    except sqlite3.IntegrityError as e:
        raise ValueError(f"Project already exists: {project_id}") from e
    db.commit()
    return get_project(db, project_id)


def get_project(db: sqlite3.Connection, project_id: str) -> Project | None:
    row = db.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
    return _project_from_row(row) if row else None


def list_projects(db: sqlite3.Connection) -> list[Project]:
    """Oldest first, so the default board leads."""
    rows = db.execute("SELECT * FROM projects ORDER BY created_at, rowid").fetchall()
    return [_project_from_row(r) for r in rows]


def ensure_project(db: sqlite3.Connection, project_id: str) -> Project:
    """Return the board, creating a bare one named after its id if missing."""
    project = get_project(db, project_id)
    if project is None:
        name = "Default Project" if project_id == DEFAULT_PROJECT_ID else project_id
        project = create_project(db, project_id, name)
    return project


def _project_from_row(row: sqlite3.Row) -> Project:
    created, updated = row["created_at"], row["updated_at"]
    return Project(
        id=row["id"],
        name=row["name"],
        description=row["description"] or "",
        slack_channel=row["slack_channel"],
        created_at=datetime.fromisoformat(created) if created else None,
        updated_at=datetime.fromisoformat(updated) if updated else None,
    )
