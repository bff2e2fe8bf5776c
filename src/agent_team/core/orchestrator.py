"""Task orchestrator: runs worker agents on tasks and plans what comes next.

``run_task`` is the primary path: build the agent's prompt, make one
backend call, record the outcome. Follow-up planning runs afterwards as a
tracked continuation whose failures are captured in ``continuation_errors``
instead of being raised.
"""

import asyncio
import logging
import sqlite3
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable

from agent_team.core.classifier import Classifier
from agent_team.core.memory import MemoryService
from agent_team.core.outcome import (
    classify_success,
    extract_learnings,
    parse_agent_request,
    parse_json_object,
    parse_skill_request,
)
from agent_team.core.patterns import PatternTracker
from agent_team.core.projects import DEFAULT_PROJECT_ID
from agent_team.core.registry import AgentRegistry
from agent_team.core.rules import RuleContext, RuleEngine
from agent_team.core.tasks import (
    InvalidTransition,
    create_task,
    get_task,
    list_tasks,
    normalize_priority,
    transition_task,
)
from agent_team.db.models import PatternRecord, Performance, Rule, RuleEvaluation, Task
from agent_team.integrations.claude import ExecutionBackend

logger = logging.getLogger(__name__)

PROJECT_CONTEXT_FILES = ("CLAUDE.md", "docs/status.md", "docs/sprint.md")
NEW_AGENT_TOOLS = ["Read", "Write", "Grep", "Glob"]
STANDUP_TASK = "Conduct daily standup: review progress, identify blockers, plan today's priorities"
MAX_TASK_OUTPUT = 10_000


@dataclass
class TaskContext:
    task_id: str | None = None
    previous_output: str | None = None
    files: list[str] = field(default_factory=list)
    follow_up_depth: int = 0


@dataclass
class ContinuationError:
    label: str
    error: BaseException
    occurred_at: datetime = field(default_factory=datetime.now)


@dataclass
class ImprovementSummary:
    triggered_rules: list[RuleEvaluation]
    suggestions: list[str]
    performance_insights: list[str]


class Orchestrator:
    def __init__(
        self,
        db: sqlite3.Connection,
        registry: AgentRegistry,
        rules: RuleEngine,
        patterns: PatternTracker,
        classifier: Classifier,
        memory: MemoryService,
        backend: ExecutionBackend,
        repo_path: Path | None = None,
        on_notification: Callable[[str], Awaitable[None]] | None = None,
        terminal_agents: tuple[str, ...] = ("pm", "eng-lead"),
        planner_agent: str = "pm",
        project_id: str = DEFAULT_PROJECT_ID,
        model: str | None = None,
        timeout: float | None = None,
        planning_timeout: float | None = None,
        max_output_tokens: int | None = None,
        follow_up_delay: float = 1.0,
        plan_follow_ups: bool = True,
        max_follow_up_depth: int = 5,
        max_continuation_errors: int = 50,
    ):
        self.db = db
        self.registry = registry
        self.rules = rules
        self.patterns = patterns
        self.classifier = classifier
        self.memory = memory
        self.backend = backend
        self.repo_path = Path(repo_path) if repo_path else Path.cwd()
        self.on_notification = on_notification
        self.terminal_agents = set(terminal_agents)
        self.planner_agent = planner_agent
        self.project_id = project_id
        self.model = model
        self.timeout = timeout
        self.planning_timeout = planning_timeout
        self.max_output_tokens = max_output_tokens
        self.follow_up_delay = follow_up_delay
        self.plan_follow_ups = plan_follow_ups
        self.max_follow_up_depth = max_follow_up_depth
        self.continuation_errors: deque[ContinuationError] = deque(maxlen=max_continuation_errors)
        self._continuations: set[asyncio.Task] = set()

    # ── Context loading ─────────────────────────────────────────────────────

    def load_agent_definition(self, agent_name: str) -> str:
        agent = self.registry.get_agent(agent_name)
        if agent and agent.system_prompt:
            return agent.system_prompt

        path = self.repo_path / ".claude" / "agents" / f"{agent_name}.md"
        if path.is_file():
            return path.read_text(encoding="utf-8")

        return (
            f"You are the {agent_name} agent.\n\n"
            "Follow the task delegation rule: decompose complex tasks and delegate to specialists.\n"
            "Update docs/status.md when you complete work.\n"
            "Create handoffs in docs/handoffs/ when passing work to other agents."
        )

    def load_project_context(self) -> str:
        parts = []
        for name in PROJECT_CONTEXT_FILES:
            path = self.repo_path / name
            if not path.is_file():
                continue
            try:
                parts.append(f"\n\n--- {name} ---\n{path.read_text(encoding='utf-8')}")
            except OSError:
                logger.warning("Could not read project file %s", path)
        return "".join(parts)

    def _team_list(self) -> str:
        return "\n".join(
            f"- {a.id} ({a.role}): {a.description}" for a in self.registry.list_agents()
        )

    def _task_metrics(self, agent_name: str, task: str) -> tuple[str, dict]:
        domain = self.classifier.detect_domain(task)
        match = self.classifier.extract_pattern(task)
        pattern_occurrence = 0
        existing_skill = 0
        if match:
            record = self.patterns.track(match.pattern, match.domain, task)
            pattern_occurrence = record.occurrences
            existing_skill = int(self.registry.get_skill(match.pattern) is not None)

        owned = [
            t for t in list_tasks(self.db, self.project_id)
            if t.owner == agent_name and t.status in ("backlog", "ready")
        ]
        delegates = [
            a for a in self.registry.list_agents()
            if a.id != agent_name and a.role == "specialist"
        ]
        metrics = {
            "domain_task_count": self.patterns.domain_count(domain),
            "pattern_occurrence": pattern_occurrence,
            "existing_specialist": int(self.registry.has_specialist_for(domain)),
            "existing_skill": existing_skill,
            "pending_tasks": len(owned),
            "available_delegates": len(delegates),
            "task_started": 1,
        }
        return domain, metrics

    def build_prompt(
        self,
        agent_name: str,
        task: str,
        memory_context: str,
        suggestions: list[str],
        instructions: str,
        context: TaskContext | None = None,
    ) -> str:
        sections = [
            f"## Current Project Context\n{self.load_project_context()}\n{memory_context}",
            f"## Available Team Members\n{self._team_list()}",
            f"## Your Task\n{task}",
        ]
        if context and context.previous_output:
            sections.append(f"## Previous Output\n{context.previous_output}")
        if context and context.files:
            sections.append("## Relevant Files\n" + "\n".join(f"- {f}" for f in context.files))

        sections.append(
            "## Instructions\n\n"
            "### BEFORE Starting (Required)\n"
            "1. **Read the docs first** - Review these files to understand current state:\n"
            "   - `docs/status.md` - Current sprint progress and blockers\n"
            "   - `docs/sprint.md` - Sprint goals and story details\n"
            "   - `docs/handoffs/` - Any relevant handoffs from other agents\n\n"
            "### During Task\n"
            "2. Analyze the task and break it down if needed\n"
            "3. Execute the work or delegate to other agents\n"
            "4. Create handoffs in `docs/handoffs/` if passing work to others\n\n"
            "### AFTER Completing (Required)\n"
            "5. **Update the docs** with your changes:\n"
            "   - Update `docs/status.md` with your progress\n"
            "   - Create a handoff file if next agent needs context\n"
            "6. Report your results clearly\n"
            '7. List 1-3 key learnings in a "## Learnings" section'
        )
        if instructions:
            sections.append(instructions)
        if suggestions:
            sections.append(
                "## Self-Improvement Suggestions\n"
                "Based on current patterns and performance, consider:\n"
                + "\n".join(f"- {s}" for s in suggestions)
            )
        sections.append("Output your actions and results in a structured format.")
        return "\n\n".join(sections)

    # ── Running agents ──────────────────────────────────────────────────────

    async def run_task(self, agent_name: str, task: str, context: TaskContext | None = None) -> str:
        """Run one agent on one task and record the outcome.

        Backend failures propagate as BackendError. Everything after the
        backend call (memory, notifications, follow-up planning) is best-effort.
        """
        logger.info("Running %s agent", agent_name)
        start = time.monotonic()

        agent_def = self.load_agent_definition(agent_name)
        memory_context = await self.memory.get_task_context(agent_name, task)
        can_create_agents = self.registry.can_perform(agent_name, "create_agent")
        can_create_skills = self.registry.can_perform(agent_name, "create_skill")

        domain, metrics = self._task_metrics(agent_name, task)
        evaluations = self.rules.evaluate(
            RuleContext(
                agent=self.registry.get_agent(agent_name),
                task_type=task.split(" ")[0] if task else None,
                task_domain=domain,
                metrics=metrics,
            )
        )
        suggestions = [e.reason for e in evaluations if not e.auto_apply]
        auto = [e.rule_id for e in evaluations if e.auto_apply]
        if auto:
            logger.debug("Auto-apply rules triggered for %s: %s", agent_name, ", ".join(auto))

        prompt = self.build_prompt(
            agent_name,
            task,
            memory_context,
            suggestions,
            self.registry.self_improvement_instructions(can_create_agents, can_create_skills),
            context,
        )
        output = await self.backend.invoke(
            prompt,
            agent_name=agent_name,
            system_prompt=agent_def,
            model=self.model,
            timeout=self.timeout,
            max_output_tokens=self.max_output_tokens,
        )
        execution_time = time.monotonic() - start

        await self._process_requests(agent_name, output, can_create_agents, can_create_skills)

        learnings = extract_learnings(output)
        success = classify_success(output)
        self.registry.record_task_completion(agent_name, success, execution_time, learnings)
        await self.memory.record_task_completion(
            agent_name,
            context.task_id if context and context.task_id else "unknown",
            task[:100],
            output,
            learnings,
        )
        await self._notify(f"Agent *{agent_name}* completed task:\n{task}\n\n{output[:500]}...")
        logger.info("%s finished in %.1fs (success=%s)", agent_name, execution_time, success)

        if self.plan_follow_ups and agent_name not in self.terminal_agents:
            self._spawn_continuation(
                f"plan after {agent_name}",
                self.plan_next_tasks(task, agent_name, output, context.follow_up_depth if context else 0),
            )
        return output

    async def _process_requests(self, agent_name: str, output: str, can_create_agents: bool, can_create_skills: bool):
        if can_create_agents:
            request = parse_agent_request(output)
            if request:
                try:
                    agent = self.registry.create_agent(
                        name=request.name,
                        description=request.description,
                        role=request.role,
                        capabilities=request.capabilities,
                        tools=list(NEW_AGENT_TOOLS),
                        system_prompt=f"You are the {request.name} agent.\n\n{request.description}",
                        created_by=agent_name,
                    )
                except ValueError:
                    logger.exception("Failed to create agent requested by %s", agent_name)
                else:
                    await self._notify(f"New Agent Created: {agent.name} ({agent.role}) by {agent_name}")

        if can_create_skills:
            request = parse_skill_request(output)
            if request:
                try:
                    skill = self.registry.create_skill(request.name, request.description, request.prompt, agent_name)
                except ValueError:
                    logger.exception("Failed to create skill requested by %s", agent_name)
                else:
                    await self._notify(f"New Skill Created: {skill.name} by {agent_name}")

    async def _notify(self, message: str):
        if not self.on_notification:
            return
        try:
            await self.on_notification(message)
        except Exception:
            logger.exception("Notification failed")

    # ── Planning ────────────────────────────────────────────────────────────

    def _board_snapshot(self) -> str:
        tasks = list_tasks(self.db, self.project_id)
        if not tasks:
            return "No tasks on the board"
        return "\n".join(
            f"- [{t.status}] {t.title} ({t.owner or 'unassigned'}, {t.priority or 'no priority'}) id={t.id}"
            for t in tasks
        )

    async def plan_next_tasks(
        self,
        completed_task: str,
        completed_by: str,
        output: str,
        follow_up_depth: int = 0,
    ) -> list[Task]:
        """Ask the planner what comes next and apply its JSON decision.

        A follow-up run is scheduled only while the chain of planner-triggered
        runs is shorter than max_follow_up_depth.
        """
        logger.info("%s planning next tasks", self.planner_agent)

        notes = await self.memory.recent_notes(None, limit=10)
        memory_context = "\n".join(f"- {n.text}" for n in notes) if notes else "No recent memories"

        prompt = (
            "You are the Product Manager for the AI team. "
            "A task just completed and you need to plan what happens next.\n\n"
            "## Completed Task\n"
            f"**Task**: {completed_task}\n"
            f"**Completed by**: {completed_by}\n"
            f"**Result summary**: {output[:1000]}\n\n"
            f"## Current Task Board\n{self._board_snapshot()}\n\n"
            f"## Recent Team Activity\n{memory_context}\n\n"
            f"## Project Context\n{self.load_project_context()}\n\n"
            "## Your Job\n"
            "1. Analyze what was completed and what should come next\n"
            "2. Consider dependencies - what tasks are now unblocked?\n"
            "3. Identify any new tasks that should be created\n\n"
            "Return a JSON object with:\n"
            "{\n"
            '  "analysis": "Brief analysis of the completed work",\n'
            '  "readyTaskIds": ["task_id1", "task_id2"],\n'
            '  "newTasks": [\n'
            '    {"title": "Task title", "description": "Details", "owner": "agent_name", "priority": "P0|P1|P2"}\n'
            "  ],\n"
            '  "nextWorker": "agent_name",\n'
            '  "nextTaskText": "task description"\n'
            "}\n\n"
            "Only return the JSON, no other text."
        )
        response = await self.backend.invoke(
            prompt,
            agent_name=self.planner_agent,
            model=self.model,
            timeout=self.planning_timeout,
            max_output_tokens=self.max_output_tokens,
        )

        plan = parse_json_object(response)
        if plan is None:
            logger.warning("Planner returned no parseable JSON plan")
            return []
        if plan.get("analysis"):
            logger.info("Planner analysis: %s", plan["analysis"])

        for task_id in _as_list(plan.get("readyTaskIds", plan.get("readyTasks"))):
            if not isinstance(task_id, str):
                continue
            try:
                moved = transition_task(self.db, task_id, "ready")
            except InvalidTransition as e:
                logger.warning("Skipping ready mark: %s", e)
                continue
            if moved is None:
                logger.warning("Planner referenced unknown task %s", task_id)
            else:
                logger.info("Marked task %s as ready", task_id)

        created = []
        for item in _as_list(plan.get("newTasks")):
            if not isinstance(item, dict) or not item.get("title"):
                logger.warning("Skipping malformed new task: %r", item)
                continue
            owner = item.get("owner")
            try:
                task = create_task(
                    self.db,
                    str(item["title"]),
                    project_id=self.project_id,
                    description=str(item.get("description") or ""),
                    owner=str(owner) if owner else None,
                    priority=normalize_priority(item.get("priority")),
                )
            except ValueError as e:
                logger.warning("Could not create planned task: %s", e)
                continue
            created.append(task)
            logger.info("Created new task: %s", task.title)

        next_worker = plan.get("nextWorker", plan.get("nextAgent"))
        next_text = plan.get("nextTaskText", plan.get("nextTask"))
        if isinstance(next_worker, str) and next_worker and isinstance(next_text, str) and next_text:
            if follow_up_depth >= self.max_follow_up_depth:
                logger.warning(
                    "Follow-up chain reached depth %d; not triggering %s", follow_up_depth, next_worker
                )
            else:
                logger.info("Triggering %s for: %s", next_worker, next_text)
                self._spawn_continuation(
                    f"follow-up {next_worker}",
                    self._delayed_run(next_worker, next_text, follow_up_depth + 1),
                )
        return created

    async def _delayed_run(self, agent_name: str, task: str, depth: int):
        await asyncio.sleep(self.follow_up_delay)
        await self.run_task(agent_name, task, TaskContext(follow_up_depth=depth))

    # ── Continuations ───────────────────────────────────────────────────────

    def _spawn_continuation(self, label: str, coro: Awaitable):
        task = asyncio.get_running_loop().create_task(self._guard(label, coro))
        self._continuations.add(task)
        task.add_done_callback(self._continuations.discard)

    async def _guard(self, label: str, coro: Awaitable):
        try:
            await coro
        except Exception as e:
            self.continuation_errors.append(ContinuationError(label=label, error=e))
            logger.exception("Continuation '%s' failed", label)

    @property
    def pending_continuations(self) -> int:
        return len(self._continuations)

    async def wait_for_continuations(self):
        """Wait until every continuation, including ones spawned meanwhile, has finished."""
        while self._continuations:
            await asyncio.gather(*list(self._continuations))

    # ── Board operations ────────────────────────────────────────────────────

    async def execute_task(self, task_id: str) -> Task:
        """Run a board task through in_progress to done, or back to backlog on error.

        Raises InvalidTransition if the task cannot be started, and re-raises
        execution errors after recording them on the task.
        """
        task = get_task(self.db, task_id)
        if task is None:
            raise LookupError(f"Task not found: {task_id}")

        transition_task(self.db, task.id, "in_progress")
        text = f"{task.title}: {task.description}" if task.description else task.title
        try:
            output = await self.run_task(task.owner, text, TaskContext(task_id=task.id))
        except Exception as e:
            transition_task(self.db, task.id, "backlog", output=f"Error: {e}")
            raise
        return transition_task(self.db, task.id, "done", output=output[:MAX_TASK_OUTPUT])

    async def run_sprint_check(self) -> str:
        logger.info("Running sprint check")
        ready = list_tasks(self.db, self.project_id, status="ready")
        if not ready:
            return "No ready tasks found"

        next_task = ready[0]
        if not next_task.owner:
            return "Next task has no owner assigned"

        logger.info("Starting task: %s with %s", next_task.title, next_task.owner)
        await self.execute_task(next_task.id)
        return f"Completed: {next_task.title}"

    async def run_daily_standup(self) -> str:
        logger.info("Running daily standup")
        return await self.run_task(self.planner_agent, STANDUP_TASK)

    # ── Read accessors ──────────────────────────────────────────────────────

    def list_rules(self) -> list[Rule]:
        return self.rules.list_rules()

    def list_patterns(self) -> list[PatternRecord]:
        return self.patterns.list()

    def get_performance(self, agent_name: str) -> Performance | None:
        agent = self.registry.get_agent(agent_name)
        return agent.performance if agent else None

    def get_improvement_summary(self, agent_name: str) -> ImprovementSummary:
        agent = self.registry.get_agent(agent_name)
        if agent is None:
            return ImprovementSummary([], [], [])

        triggered = self.rules.evaluate(RuleContext(agent=agent))
        suggestions = [e.reason for e in triggered]
        for suggestion in self.registry.suggest_improvements(agent_name):
            if suggestion not in suggestions:
                suggestions.append(suggestion)
        return ImprovementSummary(
            triggered_rules=triggered,
            suggestions=suggestions,
            performance_insights=self.registry.performance_insights(agent_name),
        )


def _as_list(value) -> list:
    return value if isinstance(value, list) else []
