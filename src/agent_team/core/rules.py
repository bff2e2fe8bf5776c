"""Rule engine for self-improvement: declarative conditions over live metrics.

A rule triggers when every one of its conditions holds against the metrics
snapshot. The engine only reports; callers decide what to do with a
triggered rule (surface it in a prompt, create a skill, and so on).
"""

import logging
import operator
from dataclasses import dataclass, field
from numbers import Real

from agent_team.db.models import Rule, RuleCondition, RuleEvaluation, WorkerIdentity

logger = logging.getLogger(__name__)

_NUMERIC_OPERATORS = {
    "gt": operator.gt,
    "lt": operator.lt,
    "gte": operator.ge,
    "lte": operator.le,
}

OPERATORS = (*_NUMERIC_OPERATORS, "eq")

DEFAULT_RULES: tuple[Rule, ...] = (
    Rule(
        id="create-specialist-on-repeated-domain",
        name="Create Specialist for Repeated Domain",
        description="Create a new specialist agent when tasks in a specific domain appear 5+ times",
        trigger="pattern",
        action="create_agent",
        conditions=(
            RuleCondition("domain_task_count", "gte", 5),
            RuleCondition("existing_specialist", "eq", 0),
        ),
        priority="medium",
        auto_apply=False,
    ),
    Rule(
        id="create-skill-on-repetition",
        name="Create Skill for Repeated Pattern",
        description="Create a reusable skill when a task pattern appears 3+ times",
        trigger="pattern",
        action="create_skill",
        conditions=(
            RuleCondition("pattern_occurrence", "gte", 3),
            RuleCondition("existing_skill", "eq", 0),
        ),
        priority="low",
        auto_apply=True,
    ),
    Rule(
        id="evolve-on-low-success",
        name="Evolve Agent on Low Success Rate",
        description="Suggest evolution when success rate drops below 80% after 10+ tasks",
        trigger="performance",
        action="evolve",
        conditions=(
            RuleCondition("success_rate", "lt", 0.8),
            RuleCondition("tasks_completed", "gte", 10),
        ),
        priority="high",
        auto_apply=False,
    ),
    Rule(
        id="suggest-delegation",
        name="Suggest Task Delegation",
        description="Suggest delegating tasks when an agent is overloaded",
        trigger="threshold",
        action="suggest",
        conditions=(
            RuleCondition("pending_tasks", "gte", 5),
            RuleCondition("available_delegates", "gte", 1),
        ),
        priority="medium",
        auto_apply=True,
    ),
    Rule(
        id="docs-read-before-task",
        name="Read Docs Before Task",
        description="Agent must read relevant docs before starting any task",
        trigger="threshold",
        action="suggest",
        conditions=(RuleCondition("task_started", "eq", 1),),
        priority="critical",
        auto_apply=True,
    ),
    Rule(
        id="docs-update-after-task",
        name="Update Docs After Task",
        description="Agent must update status.md and relevant docs after completing any task",
        trigger="threshold",
        action="suggest",
        conditions=(RuleCondition("task_completed", "eq", 1),),
        priority="critical",
        auto_apply=True,
    ),
)


@dataclass
class RuleContext:
    agent: WorkerIdentity | None = None
    task_type: str | None = None
    task_domain: str | None = None
    metrics: dict = field(default_factory=dict)


def _is_number(value) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool)


def check_condition(condition: RuleCondition, metrics: dict) -> bool:
    """Evaluate one condition. Missing metrics and type mismatches are False."""
    if condition.metric not in metrics:
        return False
    value = metrics[condition.metric]
    expected = condition.value

    if condition.operator in _NUMERIC_OPERATORS:
        if not (_is_number(value) and _is_number(expected)):
            return False
        return _NUMERIC_OPERATORS[condition.operator](value, expected)

    if condition.operator == "eq":
        if _is_number(value) and _is_number(expected):
            return value == expected
        if type(value) is not type(expected):
            return False
        return value == expected

    return False


def build_metrics(context: RuleContext) -> dict:
    """Explicit metrics plus values derived from the worker identity."""
    metrics = dict(context.metrics)
    if context.task_domain is not None:
        metrics.setdefault("task_domain", context.task_domain)
    if context.task_type is not None:
        metrics.setdefault("task_type", context.task_type)

    agent = context.agent
    if agent is not None:
        perf = agent.performance
        metrics["success_rate"] = perf.success_rate
        metrics["tasks_completed"] = perf.tasks_completed
        metrics["avg_execution_time"] = perf.avg_execution_time
        metrics["learnings_count"] = len(perf.learnings)
        metrics["agent_role"] = agent.role
    return metrics


class RuleEngine:
    """Registry of rules keyed by id, evaluated against metric snapshots."""

    def __init__(self, rules: tuple[Rule, ...] | list[Rule] = DEFAULT_RULES):
        self._rules: dict[str, Rule] = {}
        for rule in rules:
            self._rules[rule.id] = rule
        logger.info("Loaded %d self-improvement rules", len(self._rules))

    def list_rules(self) -> list[Rule]:
        return list(self._rules.values())

    def get_rule(self, rule_id: str) -> Rule | None:
        return self._rules.get(rule_id)

    def add_rule(self, rule: Rule) -> Rule:
        """Add a rule, replacing any existing rule with the same id."""
        for condition in rule.conditions:
            if condition.operator not in OPERATORS:
                raise ValueError(f"Unsupported operator '{condition.operator}' in rule {rule.id}")
        self._rules[rule.id] = rule
        logger.info("Added/updated rule: %s", rule.name)
        return rule

    def evaluate(self, context: RuleContext) -> list[RuleEvaluation]:
        """Return the rules whose conditions all hold, in registration order."""
        metrics = build_metrics(context)
        evaluations = []
        for rule in self._rules.values():
            if all(check_condition(c, metrics) for c in rule.conditions):
                evaluations.append(
                    RuleEvaluation(
                        rule_id=rule.id,
                        triggered=True,
                        action=rule.action,
                        reason=rule.description,
                        priority=rule.priority,
                        auto_apply=rule.auto_apply,
                    )
                )
        return evaluations
