"""CLI entry point for the agent team orchestrator."""

import asyncio
import json
import logging
import sys

import click

from agent_team.config import get_config
from agent_team.core import projects as projects_mod
from agent_team.core import tasks as tasks_mod
from agent_team.core.registry import AgentRegistry
from agent_team.core.rules import RuleEngine
from agent_team.core.serialize import agent_to_dict, performance_to_dict, task_to_dict
from agent_team.db.engine import get_db
from agent_team.integrations import slack as slack_mod
from agent_team.integrations.claude import BackendError
from agent_team.runtime import build_memory, build_runtime


def _get_db():
    config = get_config()
    return get_db(config.db_path)


def _registry() -> AgentRegistry:
    config = get_config()
    return AgentRegistry(config.agents_dir, config.commands_dir, model=config.model)


async def _orchestrate(action):
    """Run ``action(orchestrator)`` inside a started runtime, then drain follow-ups."""
    runtime = build_runtime(get_config())
    await runtime.start()
    try:
        result = await action(runtime.orchestrator)
        await runtime.orchestrator.wait_for_continuations()
        return result
    finally:
        await runtime.close()


@click.group()
def main():
    """ato - Agent Team Orchestrator CLI"""
    config = get_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Project Commands ──────────────────────────────────────────────────────────


@main.group("project")
def project_group():
    """Manage projects (task boards)."""
    pass


@project_group.command("add")
@click.argument("project_id")
@click.option("--name", default=None, help="Display name (defaults to the id)")
@click.option("--description", "-d", default="", help="Project description")
@click.option("--slack-channel", default=None, help="Default Slack channel")
def project_add(project_id, name, description, slack_channel):
    """Create a project."""
    with _get_db() as db:
        try:
            project = projects_mod.create_project(db, project_id, name or project_id, description, slack_channel)
        except ValueError as e:
            click.echo(str(e), err=True)
            sys.exit(1)
        click.echo(f"Created project: {project.id}")


@project_group.command("list")
def project_list():
    """List projects with their task counts."""
    with _get_db() as db:
        for project in projects_mod.list_projects(db):
            stats = tasks_mod.task_stats(db, project.id)
            done = stats["by_status"]["done"]
            click.echo(f"  {project.id}: {project.name} ({done}/{stats['total']} done)")


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage tasks."""
    pass


@task_group.command("add")
@click.argument("title")
@click.option("--project", default="default", help="Project ID")
@click.option("--description", "-d", default="", help="Task description")
@click.option("--owner", "-o", default=None, help="Agent that owns the task")
@click.option("--priority", "-p", default=None, help="P0 (highest), P1 or P2")
def task_add(title, project, description, owner, priority):
    """Create a new task in the backlog."""
    with _get_db() as db:
        try:
            task = tasks_mod.create_task(db, title, project, description, owner, priority)
        except ValueError as e:
            click.echo(str(e), err=True)
            sys.exit(1)
        click.echo(f"Created task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Priority: {task.priority or '-'}")
        click.echo(f"  Status: {task.status}")
        if task.owner:
            click.echo(f"  Owner: {task.owner}")


@task_group.command("list")
@click.option("--project", default="default", help="Project ID")
@click.option("--status", default=None, help="Filter by status")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(project, status, json_output):
    """List tasks by priority."""
    with _get_db() as db:
        tasks = tasks_mod.list_tasks(db, project, status=status)

        if json_output:
            click.echo(json.dumps([task_to_dict(t) for t in tasks], indent=2))
            return

        if not tasks:
            click.echo("No tasks found.")
            return

        status_icons = {
            "backlog": "○",
            "ready": "◎",
            "in_progress": "●",
            "pr_created": "◐",
            "done": "✓",
        }
        for task in tasks:
            icon = status_icons.get(task.status, "?")
            owner = f" @{task.owner}" if task.owner else ""
            click.echo(f"  {icon} {task.priority or '--'} {task.id}: {task.title} ({task.status}){owner}")


@task_group.command("show")
@click.argument("task_id")
def task_show(task_id):
    """Show task details."""
    with _get_db() as db:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)

        click.echo(f"Task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Priority: {task.priority or '-'}")
        click.echo(f"  Status: {task.status}")
        click.echo(f"  Project: {task.project_id}")
        if task.owner:
            click.echo(f"  Owner: {task.owner}")
        if task.description:
            click.echo(f"  Description: {task.description}")
        if task.started_at:
            click.echo(f"  Started: {task.started_at}")
        if task.completed_at:
            click.echo(f"  Completed: {task.completed_at}")
        if task.output:
            click.echo(f"  Output: {task.output[:500]}")

        events = tasks_mod.get_task_events(db, task_id)
        if events:
            click.echo(f"  History:")
            for e in events:
                click.echo(f"    [{e.created_at}] {e.event_type}: {e.old_value} -> {e.new_value}")


@task_group.command("move")
@click.argument("task_id")
@click.argument("status", type=click.Choice(["backlog", "ready", "in_progress", "pr_created", "done"]))
@click.option("--owner", "-o", default=None, help="Assign an owner while moving")
@click.option("--notify", default=None, help="Slack channel to notify")
def task_move(task_id, status, owner, notify):
    """Move a task to another lifecycle status."""
    config = get_config()
    fields = {"owner": owner} if owner else {}
    with _get_db() as db:
        try:
            task = tasks_mod.transition_task(db, task_id, status, **fields)
        except ValueError as e:
            click.echo(str(e), err=True)
            sys.exit(1)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)
        click.echo(f"Task '{task_id}' is now {task.status}")

        if notify:
            try:
                blocks = slack_mod.format_task_notification(task.id, task.title, task.status, task.owner)
                slack_mod.send_message(
                    config.slack_bot_token,
                    notify,
                    f"Task update: {task.title}",
                    blocks,
                )
                click.echo(f"  Slack notification sent to {notify}")
            except slack_mod.SlackError as e:
                click.echo(f"  Slack notification failed: {e}", err=True)


@task_group.command("delete")
@click.argument("task_id")
def task_delete(task_id):
    """Delete a task."""
    with _get_db() as db:
        if not tasks_mod.delete_task(db, task_id):
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)
        click.echo(f"Deleted task: {task_id}")


# ── Agent Commands ────────────────────────────────────────────────────────────


@main.group("agent")
def agent_group():
    """Manage the agent team."""
    pass


@agent_group.command("list")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def agent_list(json_output):
    """List agents."""
    agents = _registry().list_agents()
    if json_output:
        click.echo(json.dumps([agent_to_dict(a) for a in agents], indent=2))
        return
    if not agents:
        click.echo("No agents found.")
        return
    for agent in agents:
        perf = agent.performance
        click.echo(
            f"  {agent.id} ({agent.role}, v{agent.version}): {agent.description} "
            f"[{perf.tasks_completed} tasks, {perf.success_rate:.0%} success]"
        )


@agent_group.command("show")
@click.argument("agent_id")
def agent_show(agent_id):
    """Show an agent's definition."""
    agent = _registry().get_agent(agent_id)
    if not agent:
        click.echo(f"Agent not found: {agent_id}", err=True)
        sys.exit(1)
    click.echo(f"Agent: {agent.id}")
    click.echo(f"  Name: {agent.name}")
    click.echo(f"  Role: {agent.role}")
    click.echo(f"  Version: {agent.version}")
    if agent.description:
        click.echo(f"  Description: {agent.description}")
    if agent.capabilities:
        click.echo(f"  Capabilities: {', '.join(agent.capabilities)}")
    if agent.tools:
        click.echo(f"  Tools: {', '.join(agent.tools)}")
    if agent.parent_agent:
        click.echo(f"  Evolved from: {agent.parent_agent}")
    if agent.system_prompt:
        click.echo("")
        click.echo(agent.system_prompt)


@agent_group.command("create")
@click.argument("name")
@click.option("--description", "-d", default="", help="What the agent does")
@click.option("--role", type=click.Choice(["manager", "specialist", "support"]), default="specialist")
@click.option("--capability", "-c", "capabilities", multiple=True, help="Capability (repeatable)")
@click.option("--tool", "-t", "tools", multiple=True, help="Permitted tool (repeatable)")
@click.option("--prompt", default=None, help="System prompt (defaults to a generated one)")
def agent_create(name, description, role, capabilities, tools, prompt):
    """Create a new agent."""
    agent = _registry().create_agent(
        name=name,
        description=description,
        role=role,
        capabilities=list(capabilities),
        tools=list(tools),
        system_prompt=prompt or f"You are the {name} agent.\n\n{description}",
        created_by="cli",
    )
    click.echo(f"Created agent: {agent.id} ({agent.role})")


@agent_group.command("evolve")
@click.argument("agent_id")
@click.option("--improvement", "-i", "improvements", multiple=True, required=True, help="Improvement (repeatable)")
def agent_evolve(agent_id, improvements):
    """Create the next version of an agent with improvements."""
    evolved = _registry().evolve_agent(agent_id, list(improvements), "cli")
    if not evolved:
        click.echo(f"Agent not found: {agent_id}", err=True)
        sys.exit(1)
    click.echo(f"Evolved {agent_id} -> {evolved.id}")


@agent_group.command("perf")
@click.argument("agent_id")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def agent_perf(agent_id, json_output):
    """Show an agent's performance and improvement suggestions."""
    registry = _registry()
    agent = registry.get_agent(agent_id)
    if not agent:
        click.echo(f"Agent not found: {agent_id}", err=True)
        sys.exit(1)

    suggestions = registry.suggest_improvements(agent_id)
    if json_output:
        data = performance_to_dict(agent.performance)
        data["suggestions"] = suggestions
        click.echo(json.dumps(data, indent=2))
        return

    for line in registry.performance_insights(agent_id):
        click.echo(f"  {line}")
    for learning in agent.performance.learnings:
        click.echo(f"  Learning: {learning}")
    for suggestion in suggestions:
        click.echo(f"  Suggestion: {suggestion}")


# ── Skill Commands ────────────────────────────────────────────────────────────


@main.group("skill")
def skill_group():
    """Manage reusable skills."""
    pass


@skill_group.command("list")
def skill_list():
    """List skills."""
    skills = _registry().list_skills()
    if not skills:
        click.echo("No skills found.")
        return
    for skill in skills:
        click.echo(f"  {skill.id}: {skill.description}")


@skill_group.command("add")
@click.argument("name")
@click.option("--description", "-d", required=True, help="What the skill does")
@click.option("--prompt", required=True, help="The skill prompt")
def skill_add(name, description, prompt):
    """Create a skill command."""
    skill = _registry().create_skill(name, description, prompt, "cli")
    click.echo(f"Created skill: {skill.id}")


# ── Rules ─────────────────────────────────────────────────────────────────────


@main.command("rules")
def rules_command():
    """List self-improvement rules."""
    for rule in RuleEngine().list_rules():
        conditions = " and ".join(f"{c.metric} {c.operator} {c.value}" for c in rule.conditions)
        mode = "auto" if rule.auto_apply else "manual"
        click.echo(f"  [{rule.priority}] {rule.id} ({rule.action}, {mode}): {conditions}")


# ── Memory Commands ───────────────────────────────────────────────────────────


@main.group("memory")
def memory_group():
    """Shared team memory."""
    pass


@memory_group.command("add")
@click.argument("text")
@click.option("--agent", "-a", required=True, help="Agent the note belongs to")
def memory_add(text, agent):
    """Store a note in shared memory."""
    config = get_config()
    with _get_db() as db:
        service = build_memory(config, db)
        if not asyncio.run(service.remember(text, agent, {"type": "note"})):
            click.echo("Failed to store memory", err=True)
            sys.exit(1)
        click.echo(f"Stored memory for {agent}")


@memory_group.command("search")
@click.argument("query")
@click.option("--agent", "-a", default=None, help="Only this agent's notes")
@click.option("--limit", default=10, type=int)
def memory_search(query, agent, limit):
    """Search shared memory."""
    config = get_config()
    with _get_db() as db:
        service = build_memory(config, db)
        notes = asyncio.run(service.search(query, agent_name=agent, limit=limit))
        if not notes:
            click.echo("No memories found.")
            return
        for note in notes:
            click.echo(f"  [{note.scope}] {note.text}")


# ── Orchestration Commands ────────────────────────────────────────────────────


@main.command("run")
@click.argument("agent")
@click.argument("task")
def run_command(agent, task):
    """Run an agent on a task and print its output."""
    try:
        output = asyncio.run(_orchestrate(lambda o: o.run_task(agent, task)))
    except BackendError as e:
        click.echo(f"Agent failed: {e}", err=True)
        sys.exit(1)
    click.echo(output)


@main.command("sprint-check")
def sprint_check_command():
    """Run the highest-priority ready task with its owner."""
    try:
        result = asyncio.run(_orchestrate(lambda o: o.run_sprint_check()))
    except (BackendError, ValueError) as e:
        click.echo(f"Sprint check failed: {e}", err=True)
        sys.exit(1)
    click.echo(result)


@main.command("standup")
def standup_command():
    """Run the daily standup with the planner agent."""
    try:
        output = asyncio.run(_orchestrate(lambda o: o.run_daily_standup()))
    except BackendError as e:
        click.echo(f"Standup failed: {e}", err=True)
        sys.exit(1)
    click.echo(output)


# ── Slack Commands ────────────────────────────────────────────────────────────


@main.group("slack")
def slack_group():
    """Slack integration commands."""
    pass


@slack_group.command("send")
@click.argument("channel")
@click.argument("message")
def slack_send(channel, message):
    """Send a message to a Slack channel."""
    config = get_config()
    try:
        result = slack_mod.send_message(config.slack_bot_token, channel, message)
        click.echo(f"Message sent to {result.channel} (ts: {result.ts})")
    except slack_mod.SlackError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@slack_group.command("channel")
@click.argument("name")
@click.option("--private", is_flag=True, help="Create a private channel")
def slack_channel(name, private):
    """Create a Slack channel, or look up the existing one."""
    config = get_config()
    try:
        channel = slack_mod.create_channel(config.slack_bot_token, name, is_private=private)
    except slack_mod.SlackError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo(f"Channel #{channel.name} ({channel.id})")


@slack_group.command("status")
@click.option("--project", default="default", help="Project ID")
@click.option("--channel", default=None, help="Slack channel (uses project default if not set)")
def slack_status(project, channel):
    """Post a project status update to Slack."""
    config = get_config()
    with _get_db() as db:
        if not channel:
            proj = projects_mod.get_project(db, project)
            channel = (proj.slack_channel if proj else None) or config.slack_channel
        if not channel:
            click.echo("No channel specified and no default channel for project.", err=True)
            sys.exit(1)

        stats = tasks_mod.task_stats(db, project)
        blocks = slack_mod.format_status_update(project, stats["by_status"])
        try:
            result = slack_mod.send_message(
                config.slack_bot_token, channel, f"Status: {project}", blocks
            )
            click.echo(f"Status posted to {result.channel}")
        except slack_mod.SlackError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)


# ── Servers ───────────────────────────────────────────────────────────────────


@main.command("serve")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def serve_command(host, port):
    """Start the JSON API server."""
    from agent_team.web.app import run_server

    click.echo(f"Starting API at http://{host}:{port}")
    run_server(host=host, port=port)


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from agent_team.mcp.server import mcp
    from agent_team.mcp import prompts  # noqa: F401 - registers prompts

    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
