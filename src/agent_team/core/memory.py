"""Shared team memory: notes agents leave for each other.

Two stores implement the same small interface. ``SqliteMemory`` keeps notes
in the local database with full-text search; ``Mem0Memory`` talks to the
Mem0 REST API. ``MemoryService`` sits in front of either and never raises:
memory is context, and missing context is an empty string.
"""

import json
import logging
import re
import sqlite3
from datetime import datetime
from typing import Protocol

import httpx

from agent_team.db.models import Note

logger = logging.getLogger(__name__)

MEM0_API_BASE = "https://api.mem0.ai/v1"


class SharedMemory(Protocol):
    async def search(self, query: str, scope: str | None = None, limit: int = 10) -> list[Note]: ...

    async def add(self, text: str, scope: str, metadata: dict | None = None) -> None: ...

    async def recent(self, scope: str | None = None, limit: int = 20) -> list[Note]: ...


def _fts_query(text: str) -> str | None:
    """Turn free text into an FTS5 query that matches any of its words."""
    words = re.findall(r"\w+", text.lower())
    if not words:
        return None
    unique = list(dict.fromkeys(words))[:16]
    return " OR ".join(f'"{w}"' for w in unique)


class SqliteMemory:
    """Notes stored in the ``notes`` table, searched through ``notes_fts``."""

    def __init__(self, db: sqlite3.Connection):
        self.db = db

    async def add(self, text: str, scope: str, metadata: dict | None = None) -> None:
        self.db.execute(
            "INSERT INTO notes (text, scope, metadata) VALUES (?, ?, ?)",
            (text, scope, json.dumps(metadata or {})),
        )
        self.db.commit()

    async def search(self, query: str, scope: str | None = None, limit: int = 10) -> list[Note]:
        match = _fts_query(query)
        if match is None:
            return []
        sql = """
            SELECT n.* FROM notes n
            JOIN notes_fts fts ON n.id = fts.rowid
            WHERE notes_fts MATCH ?
        """
        params: list = [match]
        if scope is not None:
            sql += " AND n.scope = ?"
            params.append(scope)
        sql += " ORDER BY rank LIMIT ?"
        params.append(limit)
        rows = self.db.execute(sql, params).fetchall()
        return [_row_to_note(r) for r in rows]

    async def recent(self, scope: str | None = None, limit: int = 20) -> list[Note]:
        sql = "SELECT * FROM notes"
        params: list = []
        if scope is not None:
            sql += " WHERE scope = ?"
            params.append(scope)
        sql += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)
        rows = self.db.execute(sql, params).fetchall()
        return [_row_to_note(r) for r in rows]


class Mem0Memory:
    """Mem0 hosted memory. Scopes map to Mem0 user ids."""

    def __init__(
        self,
        api_key: str,
        base_url: str = MEM0_API_BASE,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._headers = {
            "Authorization": f"Token {api_key}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, **kwargs) -> dict | list:
        response = await self._client.request(
            method, f"{self.base_url}{path}", headers=self._headers, **kwargs
        )
        response.raise_for_status()
        return response.json()

    async def add(self, text: str, scope: str, metadata: dict | None = None) -> None:
        await self._request(
            "POST",
            "/memories/",
            json={
                "messages": [{"role": "user", "content": text}],
                "user_id": scope,
                "metadata": metadata or {},
            },
        )

    async def search(self, query: str, scope: str | None = None, limit: int = 10) -> list[Note]:
        body: dict = {"query": query, "limit": limit}
        if scope is not None:
            body["user_id"] = scope
        data = await self._request("POST", "/memories/search/", json=body)
        return _mem0_notes(data)

    async def recent(self, scope: str | None = None, limit: int = 20) -> list[Note]:
        params: dict = {"limit": limit}
        if scope is not None:
            params["user_id"] = scope
        data = await self._request("GET", "/memories/", params=params)
        return _mem0_notes(data)

    async def aclose(self):
        await self._client.aclose()


def _mem0_notes(data) -> list[Note]:
    results = data.get("results") if isinstance(data, dict) else data
    if not isinstance(results, list):
        return []
    notes = []
    for item in results:
        if not isinstance(item, dict) or "memory" not in item:
            continue
        notes.append(
            Note(
                id=item.get("id"),
                text=item["memory"],
                scope=item.get("user_id"),
                metadata=item.get("metadata") or {},
            )
        )
    return notes


class MemoryService:
    """Best-effort facade over a SharedMemory store."""

    def __init__(self, store: SharedMemory | None, project: str = "ai-team"):
        self.store = store
        self.project = project

    @property
    def enabled(self) -> bool:
        return self.store is not None

    def scope_for(self, agent_name: str | None = None) -> str:
        return f"{self.project}_{agent_name}" if agent_name else self.project

    async def remember(self, text: str, agent_name: str, metadata: dict | None = None) -> bool:
        if not self.store:
            return False
        meta = {
            "agent": agent_name,
            "project": self.project,
            "timestamp": datetime.now().isoformat(),
            **(metadata or {}),
        }
        try:
            await self.store.add(text, self.scope_for(agent_name), meta)
            return True
        except Exception:
            logger.exception("Failed to add memory for %s", agent_name)
            return False

    async def search(self, query: str, agent_name: str | None = None, limit: int = 10) -> list[Note]:
        if not self.store:
            return []
        scope = self.scope_for(agent_name) if agent_name else None
        try:
            return await self.store.search(query, scope, limit)
        except Exception:
            logger.exception("Memory search failed")
            return []

    async def recent_notes(self, agent_name: str | None = None, limit: int = 20) -> list[Note]:
        if not self.store:
            return []
        scope = self.scope_for(agent_name) if agent_name else None
        try:
            return await self.store.recent(scope, limit)
        except Exception:
            logger.exception("Failed to load recent memories")
            return []

    async def get_task_context(self, agent_name: str, task: str) -> str:
        """Relevant and recent notes for a task, rendered as a prompt section."""
        relevant = await self.search(task, limit=5)
        own = await self.recent_notes(agent_name, limit=5)

        seen = set()
        lines = []
        for note in relevant + own:
            key = note.id if note.id is not None else note.text
            if key in seen:
                continue
            seen.add(key)
            lines.append(f"- {note.text}")

        if not lines:
            return ""
        return "\n## Relevant Memories\n" + "\n".join(lines)

    async def record_task_completion(
        self,
        agent_name: str,
        task_id: str,
        task_title: str,
        output: str,
        learnings: list[str] | None = None,
    ):
        summary = f'Completed task "{task_title}": {output[:200]}'
        await self.remember(
            summary,
            agent_name,
            {"type": "task_completion", "task_id": task_id, "task_title": task_title},
        )
        for learning in learnings or []:
            await self.remember(
                f"Learning: {learning}",
                agent_name,
                {"type": "learning", "task_id": task_id},
            )


def _row_to_note(row: sqlite3.Row) -> Note:
    try:
        metadata = json.loads(row["metadata"] or "{}")
    except json.JSONDecodeError:
        metadata = {}
    return Note(
        id=row["id"],
        text=row["text"],
        scope=row["scope"],
        metadata=metadata,
        created_at=_parse_dt(row["created_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)
