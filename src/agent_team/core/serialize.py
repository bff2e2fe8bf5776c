"""JSON-ready dict conversions shared by the web API, MCP server and CLI."""

from datetime import datetime


def _iso(val: datetime | None) -> str | None:
    return val.isoformat() if val else None


def task_to_dict(t) -> dict:
    return {
        "id": t.id,
        "project_id": t.project_id,
        "title": t.title,
        "description": t.description,
        "status": t.status,
        "owner": t.owner,
        "priority": t.priority,
        "output": t.output,
        "started_at": _iso(t.started_at),
        "completed_at": _iso(t.completed_at),
        "created_at": _iso(t.created_at),
        "updated_at": _iso(t.updated_at),
    }


def event_to_dict(e) -> dict:
    return {
        "id": e.id,
        "event_type": e.event_type,
        "old_value": e.old_value,
        "new_value": e.new_value,
        "created_at": _iso(e.created_at),
    }


def performance_to_dict(p) -> dict:
    return {
        "tasks_completed": p.tasks_completed,
        "tasks_successful": p.tasks_successful,
        "success_rate": round(p.success_rate, 4),
        "avg_execution_time": p.avg_execution_time,
        "last_active": _iso(p.last_active),
        "learnings": list(p.learnings),
        "improvements": list(p.improvements),
    }


def agent_to_dict(a, include_prompt: bool = False) -> dict:
    d = {
        "id": a.id,
        "name": a.name,
        "description": a.description,
        "role": a.role,
        "capabilities": list(a.capabilities),
        "tools": list(a.tools),
        "created_by": a.created_by,
        "parent_agent": a.parent_agent,
        "version": a.version,
        "created_at": _iso(a.created_at),
        "updated_at": _iso(a.updated_at),
        "performance": performance_to_dict(a.performance),
    }
    if include_prompt:
        d["system_prompt"] = a.system_prompt
    return d


def skill_to_dict(s) -> dict:
    return {
        "id": s.id,
        "name": s.name,
        "description": s.description,
        "prompt": s.prompt,
        "created_by": s.created_by,
        "created_at": _iso(s.created_at),
    }


def rule_to_dict(r) -> dict:
    return {
        "id": r.id,
        "name": r.name,
        "description": r.description,
        "trigger": r.trigger,
        "action": r.action,
        "conditions": [
            {"metric": c.metric, "operator": c.operator, "value": c.value}
            for c in r.conditions
        ],
        "priority": r.priority,
        "auto_apply": r.auto_apply,
    }


def evaluation_to_dict(e) -> dict:
    return {
        "rule_id": e.rule_id,
        "triggered": e.triggered,
        "action": e.action,
        "reason": e.reason,
        "priority": e.priority,
        "auto_apply": e.auto_apply,
    }


def pattern_to_dict(p) -> dict:
    return {
        "pattern": p.pattern,
        "domain": p.domain,
        "occurrences": p.occurrences,
        "examples": list(p.examples),
        "first_seen": _iso(p.first_seen),
        "last_seen": _iso(p.last_seen),
    }


def note_to_dict(n) -> dict:
    return {
        "id": n.id,
        "text": n.text,
        "scope": n.scope,
        "metadata": n.metadata,
        "created_at": _iso(n.created_at),
    }
