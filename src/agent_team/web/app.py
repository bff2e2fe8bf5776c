"""JSON API for the task board, the agent team and orchestration triggers."""

import json
import logging
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette
from starlette.background import BackgroundTask
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from agent_team.config import get_config
from agent_team.core import tasks as tasks_mod
from agent_team.core.serialize import (
    agent_to_dict,
    evaluation_to_dict,
    event_to_dict,
    pattern_to_dict,
    performance_to_dict,
    rule_to_dict,
    skill_to_dict,
    task_to_dict,
)
from agent_team.integrations.claude import BackendError
from agent_team.runtime import Runtime, build_runtime

logger = logging.getLogger(__name__)


def _runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


async def _json_body(request: Request) -> dict | None:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return body if isinstance(body, dict) else None


def _non_string_field(body: dict, keys: tuple[str, ...]) -> str | None:
    for key in keys:
        if body.get(key) is not None and not isinstance(body[key], str):
            return key
    return None


# ── Tasks ─────────────────────────────────────────────────────────────────────


async def api_health(request: Request):
    rt = _runtime(request)
    return JSONResponse({"status": "ok", "backend": rt.backend.status()})


async def api_project_tasks(request: Request):
    rt = _runtime(request)
    project_id = request.path_params["project_id"]

    if request.method == "POST":
        body = await _json_body(request)
        if body is None or not body.get("title"):
            return _error("title is required", 400)
        bad = _non_string_field(body, ("title", "description", "owner", "priority"))
        if bad:
            return _error(f"{bad} must be a string", 400)
        try:
            task = tasks_mod.create_task(
                rt.db,
                body["title"],
                project_id=project_id,
                description=body.get("description") or "",
                owner=body.get("owner"),
                priority=body.get("priority"),
            )
        except ValueError as e:
            return _error(str(e), 400)
        return JSONResponse(task_to_dict(task), status_code=201)

    status_filter = request.query_params.get("status")
    tasks = tasks_mod.list_tasks(rt.db, project_id, status=status_filter)
    return JSONResponse([task_to_dict(t) for t in tasks])


async def _execute_in_background(rt: Runtime, task_id: str):
    try:
        await rt.orchestrator.execute_task(task_id)
    except Exception:
        logger.exception("Background execution of task %s failed", task_id)


async def api_task(request: Request):
    rt = _runtime(request)
    task_id = request.path_params["task_id"]
    task = tasks_mod.get_task(rt.db, task_id)
    if not task:
        return _error("Task not found", 404)

    if request.method == "DELETE":
        tasks_mod.delete_task(rt.db, task_id)
        return JSONResponse({"deleted": task_id})

    if request.method == "PATCH":
        body = await _json_body(request)
        if body is None:
            return _error("Invalid JSON body", 400)
        bad = _non_string_field(body, ("title", "description", "owner", "priority", "status"))
        if bad:
            return _error(f"{bad} must be a string", 400)
        fields = {k: v for k, v in body.items() if k in ("title", "description", "owner", "priority")}
        status = body.get("status")
        previous_status = task.status
        try:
            if status and status != task.status:
                task = tasks_mod.transition_task(rt.db, task_id, status, **fields)
            elif fields:
                task = tasks_mod.update_task(rt.db, task_id, **fields)
        except tasks_mod.InvalidTransition as e:
            return _error(str(e), 409)
        except ValueError as e:
            return _error(str(e), 400)

        background = None
        if previous_status != "ready" and task.status == "ready" and task.owner:
            background = BackgroundTask(_execute_in_background, rt, task.id)
        return JSONResponse(task_to_dict(task), background=background)

    td = task_to_dict(task)
    td["events"] = [event_to_dict(e) for e in tasks_mod.get_task_events(rt.db, task_id)]
    return JSONResponse(td)


# ── Agents and skills ─────────────────────────────────────────────────────────


async def api_agents(request: Request):
    rt = _runtime(request)
    if request.method == "POST":
        body = await _json_body(request)
        if body is None or not body.get("name"):
            return _error("name is required", 400)
        try:
            agent = rt.registry.create_agent(
                name=body["name"],
                description=body.get("description") or "",
                role=body.get("role") or "specialist",
                capabilities=body.get("capabilities") or [],
                tools=body.get("tools") or [],
                system_prompt=body.get("system_prompt") or "",
                created_by=body.get("created_by") or "api",
            )
        except ValueError as e:
            return _error(str(e), 400)
        return JSONResponse(agent_to_dict(agent, include_prompt=True), status_code=201)

    return JSONResponse([agent_to_dict(a) for a in rt.registry.list_agents()])


async def api_agent(request: Request):
    rt = _runtime(request)
    agent = rt.registry.get_agent(request.path_params["agent_id"])
    if not agent:
        return _error("Agent not found", 404)
    return JSONResponse(agent_to_dict(agent, include_prompt=True))


async def api_agent_performance(request: Request):
    rt = _runtime(request)
    perf = rt.orchestrator.get_performance(request.path_params["agent_id"])
    if perf is None:
        return _error("Agent not found", 404)
    return JSONResponse(performance_to_dict(perf))


async def api_agent_improvements(request: Request):
    rt = _runtime(request)
    agent_id = request.path_params["agent_id"]
    if not rt.registry.get_agent(agent_id):
        return _error("Agent not found", 404)
    summary = rt.orchestrator.get_improvement_summary(agent_id)
    return JSONResponse({
        "triggered_rules": [evaluation_to_dict(e) for e in summary.triggered_rules],
        "suggestions": summary.suggestions,
        "performance_insights": summary.performance_insights,
    })


async def api_agent_evolve(request: Request):
    rt = _runtime(request)
    body = await _json_body(request)
    if body is None or not isinstance(body.get("improvements"), list) or not body["improvements"]:
        return _error("improvements must be a non-empty list", 400)
    evolved = rt.registry.evolve_agent(
        request.path_params["agent_id"],
        [str(i) for i in body["improvements"]],
        body.get("evolved_by") or "api",
    )
    if evolved is None:
        return _error("Agent not found", 404)
    return JSONResponse(agent_to_dict(evolved, include_prompt=True), status_code=201)


async def api_skills(request: Request):
    rt = _runtime(request)
    if request.method == "POST":
        body = await _json_body(request)
        if body is None or not all(body.get(k) for k in ("name", "description", "prompt")):
            return _error("name, description and prompt are required", 400)
        skill = rt.registry.create_skill(
            body["name"], body["description"], body["prompt"], body.get("created_by") or "api"
        )
        return JSONResponse(skill_to_dict(skill), status_code=201)
    return JSONResponse([skill_to_dict(s) for s in rt.registry.list_skills()])


async def api_rules(request: Request):
    rt = _runtime(request)
    return JSONResponse([rule_to_dict(r) for r in rt.orchestrator.list_rules()])


async def api_patterns(request: Request):
    rt = _runtime(request)
    return JSONResponse([pattern_to_dict(p) for p in rt.orchestrator.list_patterns()])


async def api_pool(request: Request):
    rt = _runtime(request)
    return JSONResponse(rt.backend.status())


# ── Orchestration ─────────────────────────────────────────────────────────────


async def api_run_agent(request: Request):
    rt = _runtime(request)
    body = await _json_body(request)
    if body is None or not body.get("agent") or not body.get("task"):
        return _error("agent and task are required", 400)
    try:
        output = await rt.orchestrator.run_task(body["agent"], body["task"])
    except BackendError as e:
        return _error(str(e), 502)
    return JSONResponse({"agent": body["agent"], "output": output})


async def api_sprint_check(request: Request):
    rt = _runtime(request)
    try:
        result = await rt.orchestrator.run_sprint_check()
    except BackendError as e:
        return _error(str(e), 502)
    except tasks_mod.InvalidTransition as e:
        return _error(str(e), 409)
    return JSONResponse({"result": result})


async def api_daily_standup(request: Request):
    rt = _runtime(request)
    try:
        output = await rt.orchestrator.run_daily_standup()
    except BackendError as e:
        return _error(str(e), 502)
    return JSONResponse({"output": output})


# ── App ───────────────────────────────────────────────────────────────────────


def create_app(runtime: Runtime) -> Starlette:
    @asynccontextmanager
    async def lifespan(app: Starlette):
        await runtime.start()
        try:
            yield
        finally:
            await runtime.orchestrator.wait_for_continuations()
            await runtime.close()

    routes = [
        Route("/api/health", api_health),
        Route("/api/projects/{project_id}/tasks", api_project_tasks, methods=["GET", "POST"]),
        Route("/api/tasks/{task_id}", api_task, methods=["GET", "PATCH", "DELETE"]),
        Route("/api/agents", api_agents, methods=["GET", "POST"]),
        Route("/api/agents/{agent_id}", api_agent),
        Route("/api/agents/{agent_id}/performance", api_agent_performance),
        Route("/api/agents/{agent_id}/improvements", api_agent_improvements),
        Route("/api/agents/{agent_id}/evolve", api_agent_evolve, methods=["POST"]),
        Route("/api/skills", api_skills, methods=["GET", "POST"]),
        Route("/api/rules", api_rules),
        Route("/api/patterns", api_patterns),
        Route("/api/pool", api_pool),
        Route("/api/run-agent", api_run_agent, methods=["POST"]),
        Route("/api/sprint-check", api_sprint_check, methods=["POST"]),
        Route("/api/daily-standup", api_daily_standup, methods=["POST"]),
    ]
    app = Starlette(routes=routes, lifespan=lifespan)
    app.state.runtime = runtime
    return app


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app(build_runtime(get_config()))
    uvicorn.run(app, host=host, port=port)
