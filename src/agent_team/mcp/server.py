"""MCP server exposing the agent team's board and orchestration tools."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from mcp.server.fastmcp import Context, FastMCP

from agent_team.config import get_config
from agent_team.core import tasks as tasks_mod
from agent_team.core.serialize import (
    agent_to_dict,
    event_to_dict,
    note_to_dict,
    pattern_to_dict,
    performance_to_dict,
    rule_to_dict,
    task_to_dict,
)
from agent_team.integrations.claude import BackendError
from agent_team.runtime import Runtime, build_runtime


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[Runtime]:
    """Build the runtime on startup, drain continuations and close on shutdown."""
    runtime = build_runtime(get_config())
    await runtime.start()
    try:
        yield runtime
    finally:
        await runtime.orchestrator.wait_for_continuations()
        await runtime.close()


mcp = FastMCP("agent-team", lifespan=app_lifespan)


def _rt(ctx: Context) -> Runtime:
    """Extract the Runtime from MCP Context."""
    return ctx.request_context.lifespan_context


# ── Task Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
def create_task(
    ctx: Context,
    title: str,
    project: str = "default",
    description: str = "",
    owner: str | None = None,
    priority: str | None = None,
) -> dict:
    """Create a task in the backlog. Priority is P0 (highest), P1 or P2; omit for lowest."""
    try:
        task = tasks_mod.create_task(_rt(ctx).db, title, project, description, owner, priority)
    except ValueError as e:
        return {"error": str(e)}
    return task_to_dict(task)


@mcp.tool()
def list_tasks(ctx: Context, project: str = "default", status: str | None = None) -> list[dict]:
    """List a project's tasks by priority, optionally filtered by status."""
    tasks = tasks_mod.list_tasks(_rt(ctx).db, project, status=status)
    return [task_to_dict(t) for t in tasks]


@mcp.tool()
def get_task(ctx: Context, task_id: str) -> dict:
    """Get a task with its event history."""
    db = _rt(ctx).db
    task = tasks_mod.get_task(db, task_id)
    if not task:
        return {"error": f"Task not found: {task_id}"}
    d = task_to_dict(task)
    d["events"] = [event_to_dict(e) for e in tasks_mod.get_task_events(db, task_id)]
    return d


@mcp.tool()
def update_task(
    ctx: Context,
    task_id: str,
    status: str | None = None,
    owner: str | None = None,
    priority: str | None = None,
    title: str | None = None,
    description: str | None = None,
) -> dict:
    """Update a task. Status changes follow backlog -> ready -> in_progress -> pr_created/done."""
    db = _rt(ctx).db
    fields = {
        k: v for k, v in
        {"owner": owner, "priority": priority, "title": title, "description": description}.items()
        if v is not None
    }
    try:
        if status:
            task = tasks_mod.transition_task(db, task_id, status, **fields)
        else:
            task = tasks_mod.update_task(db, task_id, **fields)
    except ValueError as e:
        return {"error": str(e)}
    if not task:
        return {"error": f"Task not found: {task_id}"}
    return task_to_dict(task)


# ── Orchestration Tools ───────────────────────────────────────────────────────


@mcp.tool()
async def run_task(ctx: Context, agent: str, task: str) -> dict:
    """Run an agent on a free-text task and return its output."""
    try:
        output = await _rt(ctx).orchestrator.run_task(agent, task)
    except BackendError as e:
        return {"error": str(e)}
    return {"agent": agent, "output": output}


@mcp.tool()
async def sprint_check(ctx: Context) -> dict:
    """Start the highest-priority ready task with its owner and run it to completion."""
    try:
        result = await _rt(ctx).orchestrator.run_sprint_check()
    except (BackendError, ValueError) as e:
        return {"error": str(e)}
    return {"result": result}


@mcp.tool()
async def daily_standup(ctx: Context) -> dict:
    """Have the planner agent run the daily standup."""
    try:
        output = await _rt(ctx).orchestrator.run_daily_standup()
    except BackendError as e:
        return {"error": str(e)}
    return {"output": output}


# ── Team Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
def list_agents(ctx: Context) -> list[dict]:
    """List the team's worker agents."""
    return [agent_to_dict(a) for a in _rt(ctx).registry.list_agents()]


@mcp.tool()
def agent_performance(ctx: Context, agent: str) -> dict:
    """Performance record and improvement suggestions for an agent."""
    orchestrator = _rt(ctx).orchestrator
    perf = orchestrator.get_performance(agent)
    if perf is None:
        return {"error": f"Agent not found: {agent}"}
    summary = orchestrator.get_improvement_summary(agent)
    return {
        "performance": performance_to_dict(perf),
        "suggestions": summary.suggestions,
        "insights": summary.performance_insights,
    }


@mcp.tool()
def list_rules(ctx: Context) -> list[dict]:
    """List the self-improvement rules."""
    return [rule_to_dict(r) for r in _rt(ctx).orchestrator.list_rules()]


@mcp.tool()
def list_patterns(ctx: Context) -> list[dict]:
    """List task patterns seen since the server started."""
    return [pattern_to_dict(p) for p in _rt(ctx).orchestrator.list_patterns()]


@mcp.tool()
async def search_memory(ctx: Context, query: str, agent: str | None = None, limit: int = 10) -> list[dict]:
    """Search the team's shared memory, optionally within one agent's notes."""
    notes = await _rt(ctx).memory.search(query, agent_name=agent, limit=limit)
    return [note_to_dict(n) for n in notes]
