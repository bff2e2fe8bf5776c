"""Data models for the agent team orchestrator."""

from dataclasses import dataclass, field
from datetime import datetime

TASK_STATUSES = ("backlog", "ready", "in_progress", "pr_created", "done")
TASK_PRIORITIES = ("P0", "P1", "P2")
AGENT_ROLES = ("manager", "specialist", "support")

MAX_LEARNINGS = 20


@dataclass
class Project:
    id: str
    name: str
    description: str = ""
    slack_channel: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Task:
    id: str
    project_id: str
    title: str
    description: str = ""
    status: str = "backlog"
    owner: str | None = None
    priority: str | None = None
    output: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class TaskEvent:
    id: int | None = None
    task_id: str = ""
    event_type: str = ""
    old_value: str | None = None
    new_value: str | None = None
    created_at: datetime | None = None


@dataclass
class Note:
    id: str | int | None = None
    text: str = ""
    scope: str | None = None
    metadata: dict = field(default_factory=dict)
    created_at: datetime | None = None


@dataclass
class Performance:
    tasks_completed: int = 0
    tasks_successful: int = 0
    avg_execution_time: float = 0.0
    last_active: datetime | None = None
    learnings: list[str] = field(default_factory=list)
    improvements: list[str] = field(default_factory=list)

    @property
    def success_rate(self) -> float:
        return self.tasks_successful / max(self.tasks_completed, 1)

    def record(self, success: bool, execution_time: float, learnings: list[str] | None = None):
        """Fold one finished task into the counters and the running mean."""
        self.tasks_completed += 1
        if success:
            self.tasks_successful += 1
        self.avg_execution_time += (execution_time - self.avg_execution_time) / self.tasks_completed
        self.last_active = datetime.now()
        if learnings:
            self.learnings = (self.learnings + list(learnings))[-MAX_LEARNINGS:]


@dataclass
class WorkerIdentity:
    id: str
    name: str
    description: str = ""
    role: str = "specialist"
    capabilities: list[str] = field(default_factory=list)
    tools: list[str] = field(default_factory=list)
    system_prompt: str = ""
    created_by: str | None = None
    parent_agent: str | None = None
    version: int = 1
    created_at: datetime | None = None
    updated_at: datetime | None = None
    performance: Performance = field(default_factory=Performance)


@dataclass
class Role:
    id: str
    name: str
    description: str
    responsibilities: list[str] = field(default_factory=list)
    can_create_agents: bool = False
    can_create_skills: bool = False
    can_modify_others: bool = False


@dataclass
class Skill:
    id: str
    name: str
    description: str
    prompt: str
    created_by: str
    created_at: datetime | None = None


@dataclass
class PatternRecord:
    pattern: str
    domain: str
    occurrences: int = 0
    examples: list[str] = field(default_factory=list)
    first_seen: datetime | None = None
    last_seen: datetime | None = None


@dataclass(frozen=True)
class RuleCondition:
    metric: str
    operator: str
    value: float | int | str


@dataclass(frozen=True)
class Rule:
    id: str
    name: str
    description: str
    trigger: str
    action: str
    conditions: tuple[RuleCondition, ...] = ()
    priority: str = "medium"
    auto_apply: bool = False


@dataclass(frozen=True)
class RuleEvaluation:
    rule_id: str
    triggered: bool
    action: str
    reason: str
    priority: str
    auto_apply: bool
