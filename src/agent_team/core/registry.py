"""Worker registry: identities, roles, skills, and performance tracking.

Identities are kept in memory and mirrored to ``<repo>/.claude/agents/<id>.md``
files (YAML frontmatter plus the system prompt as body) so a team survives
restarts and can be edited by hand. Skills are mirrored to
``<repo>/.claude/commands/<id>.md``. File writes are best-effort.
"""

import logging
import re
from dataclasses import asdict
from datetime import datetime
from pathlib import Path

import yaml

from agent_team.db.models import AGENT_ROLES, Performance, Role, Skill, WorkerIdentity

logger = logging.getLogger(__name__)

DEFAULT_ROLES: tuple[Role, ...] = (
    Role(
        id="manager",
        name="Manager",
        description="Manages other agents and can create new agents",
        responsibilities=["planning", "delegation", "review", "decision-making"],
        can_create_agents=True,
        can_create_skills=True,
        can_modify_others=True,
    ),
    Role(
        id="specialist",
        name="Specialist",
        description="Expert in specific domain, can suggest improvements",
        responsibilities=["implementation", "expertise", "quality"],
        can_create_agents=False,
        can_create_skills=True,
        can_modify_others=False,
    ),
    Role(
        id="support",
        name="Support",
        description="Assists other agents",
        responsibilities=["assistance", "documentation", "testing"],
        can_create_agents=False,
        can_create_skills=False,
        can_modify_others=False,
    ),
)

ACTIONS = {
    "create_agent": "can_create_agents",
    "create_skill": "can_create_skills",
    "modify_others": "can_modify_others",
}

UPDATABLE_FIELDS = {
    "name", "description", "role", "capabilities", "tools",
    "system_prompt", "parent_agent", "performance",
}

_FRONTMATTER_RE = re.compile(r"^---\s*\n(.*?)\n---\s*\n?(.*)$", re.DOTALL)


def agent_id_for(name: str) -> str:
    """Lower-case the name and replace every non-alphanumeric with '-'."""
    return re.sub(r"[^a-z0-9]", "-", name.lower())


# ── File format ─────────────────────────────────────────────────────────────


def parse_agent_file(agent_id: str, content: str) -> WorkerIdentity:
    """Parse an agent markdown file. Files without frontmatter are all prompt."""
    match = _FRONTMATTER_RE.match(content)
    if not match:
        return WorkerIdentity(id=agent_id, name=agent_id, system_prompt=content.strip())

    try:
        meta = yaml.safe_load(match.group(1)) or {}
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML frontmatter in agent {agent_id}: {e}")
    if not isinstance(meta, dict):
        raise ValueError(f"Frontmatter of agent {agent_id} must be a mapping")

    role = str(meta.get("role") or "specialist").strip()
    if role not in AGENT_ROLES:
        role = "specialist"

    return WorkerIdentity(
        id=agent_id,
        name=str(meta.get("name") or agent_id),
        description=str(meta.get("description") or ""),
        role=role,
        capabilities=_as_list(meta.get("capabilities")),
        tools=_as_list(meta.get("tools")),
        system_prompt=match.group(2).strip(),
        created_by=meta.get("createdBy"),
        parent_agent=meta.get("parentAgent"),
        version=int(meta.get("version") or 1),
        created_at=_as_dt(meta.get("createdAt")),
        updated_at=_as_dt(meta.get("updatedAt")),
        performance=_performance_from(meta.get("performance")),
    )


def render_agent_file(agent: WorkerIdentity, model: str = "sonnet") -> str:
    meta = {
        "name": agent.name,
        "description": agent.description,
        "tools": ", ".join(agent.tools),
        "model": model,
        "role": agent.role,
        "version": agent.version,
        "createdBy": agent.created_by or "system",
    }
    if agent.parent_agent:
        meta["parentAgent"] = agent.parent_agent
    if agent.capabilities:
        meta["capabilities"] = list(agent.capabilities)
    if agent.created_at:
        meta["createdAt"] = agent.created_at.isoformat()
    if agent.updated_at:
        meta["updatedAt"] = agent.updated_at.isoformat()

    perf = asdict(agent.performance)
    perf["last_active"] = agent.performance.last_active.isoformat() if agent.performance.last_active else None
    meta["performance"] = perf

    frontmatter = yaml.safe_dump(meta, sort_keys=False, allow_unicode=True).strip()
    return f"---\n{frontmatter}\n---\n\n{agent.system_prompt}\n"


def _as_list(value) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(item) for item in value]


def _as_dt(value) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _performance_from(data) -> Performance:
    if not isinstance(data, dict):
        return Performance()
    return Performance(
        tasks_completed=int(data.get("tasks_completed") or 0),
        tasks_successful=int(data.get("tasks_successful") or 0),
        avg_execution_time=float(data.get("avg_execution_time") or 0.0),
        last_active=_as_dt(data.get("last_active")),
        learnings=_as_list(data.get("learnings")),
        improvements=_as_list(data.get("improvements")),
    )


def _parse_skill_file(skill_id: str, content: str) -> Skill:
    blocks = content.strip().split("\n\n", 2)
    name = blocks[0].lstrip("#").strip() or skill_id
    description = blocks[1].strip() if len(blocks) > 1 else ""
    prompt = blocks[2].strip() if len(blocks) > 2 else ""
    return Skill(id=skill_id, name=name, description=description, prompt=prompt, created_by="file")


# ── Registry ────────────────────────────────────────────────────────────────


class AgentRegistry:
    """In-memory registry of worker identities, optionally file-backed."""

    def __init__(
        self,
        agents_dir: Path | None = None,
        commands_dir: Path | None = None,
        model: str = "sonnet",
    ):
        self.agents_dir = Path(agents_dir) if agents_dir else None
        self.commands_dir = Path(commands_dir) if commands_dir else None
        self.model = model
        self._agents: dict[str, WorkerIdentity] = {}
        self._skills: dict[str, Skill] = {}
        self._roles: dict[str, Role] = {role.id: role for role in DEFAULT_ROLES}
        self._load_agents()
        self._load_skills()

    def _load_agents(self):
        if not self.agents_dir or not self.agents_dir.is_dir():
            return
        for path in sorted(self.agents_dir.glob("*.md")):
            try:
                agent = parse_agent_file(path.stem, path.read_text(encoding="utf-8"))
            except (OSError, ValueError):
                logger.exception("Skipping unreadable agent file %s", path)
                continue
            self._agents[agent.id] = agent
        logger.info("Loaded %d agents from %s", len(self._agents), self.agents_dir)

    def _load_skills(self):
        if not self.commands_dir or not self.commands_dir.is_dir():
            return
        for path in sorted(self.commands_dir.glob("*.md")):
            try:
                skill = _parse_skill_file(path.stem, path.read_text(encoding="utf-8"))
            except OSError:
                logger.exception("Skipping unreadable skill file %s", path)
                continue
            self._skills[skill.id] = skill

    def _write_agent(self, agent: WorkerIdentity):
        if not self.agents_dir:
            return
        try:
            self.agents_dir.mkdir(parents=True, exist_ok=True)
            path = self.agents_dir / f"{agent.id}.md"
            path.write_text(render_agent_file(agent, self.model), encoding="utf-8")
        except OSError:
            logger.exception("Failed to write agent file: %s", agent.id)

    # ── Identities ──────────────────────────────────────────────────────────

    def get_agent(self, agent_id: str) -> WorkerIdentity | None:
        return self._agents.get(agent_id)

    def list_agents(self) -> list[WorkerIdentity]:
        return list(self._agents.values())

    def create_agent(
        self,
        name: str,
        description: str = "",
        role: str = "specialist",
        capabilities: list[str] | None = None,
        tools: list[str] | None = None,
        system_prompt: str = "",
        created_by: str = "system",
        parent_agent: str | None = None,
    ) -> WorkerIdentity:
        """Create (or replace) the identity whose id derives from ``name``."""
        if not name or not name.strip():
            raise ValueError("Agent name must not be empty")
        if role not in AGENT_ROLES:
            raise ValueError(f"Invalid role: {role}. Must be one of {AGENT_ROLES}")

        now = datetime.now()
        agent = WorkerIdentity(
            id=agent_id_for(name),
            name=name,
            description=description,
            role=role,
            capabilities=list(capabilities or []),
            tools=list(tools or []),
            system_prompt=system_prompt,
            created_by=created_by,
            parent_agent=parent_agent,
            version=1,
            created_at=now,
            updated_at=now,
            performance=Performance(last_active=now),
        )
        self._agents[agent.id] = agent
        self._write_agent(agent)
        logger.info("Created agent: %s by %s", agent.name, created_by)
        return agent

    def update_agent(self, agent_id: str, updated_by: str = "system", **fields) -> WorkerIdentity | None:
        """Apply field updates and bump the version. Returns None if unknown."""
        agent = self._agents.get(agent_id)
        if agent is None:
            return None

        invalid = set(fields) - UPDATABLE_FIELDS
        if invalid:
            raise ValueError(f"Cannot update fields: {invalid}")
        if "role" in fields and fields["role"] not in AGENT_ROLES:
            raise ValueError(f"Invalid role: {fields['role']}. Must be one of {AGENT_ROLES}")

        for key, value in fields.items():
            setattr(agent, key, value)
        agent.version += 1
        agent.updated_at = datetime.now()
        self._write_agent(agent)
        logger.info("Updated agent: %s (v%d) by %s", agent_id, agent.version, updated_by)
        return agent

    def delete_agent(self, agent_id: str) -> bool:
        agent = self._agents.pop(agent_id, None)
        if agent is None:
            return False
        if self.agents_dir:
            try:
                (self.agents_dir / f"{agent_id}.md").unlink(missing_ok=True)
            except OSError:
                logger.exception("Failed to remove agent file: %s", agent_id)
        logger.info("Deleted agent: %s", agent_id)
        return True

    # ── Performance ─────────────────────────────────────────────────────────

    def record_task_completion(
        self,
        agent_id: str,
        success: bool,
        execution_time: float,
        learnings: list[str] | None = None,
    ) -> WorkerIdentity | None:
        """Fold a finished task into the identity's performance. Unknown ids are ignored."""
        agent = self._agents.get(agent_id)
        if agent is None:
            return None
        perf = agent.performance
        perf.record(success, execution_time, learnings)
        return self.update_agent(agent_id, "system", performance=perf)

    def suggest_improvements(self, agent_id: str) -> list[str]:
        agent = self._agents.get(agent_id)
        if agent is None:
            return []

        perf = agent.performance
        suggestions = []
        if perf.success_rate < 0.8 and perf.tasks_completed > 5:
            suggestions.append(
                f"Success rate is {round(perf.success_rate * 100)}%. Consider reviewing failure patterns."
            )
        if perf.avg_execution_time > 60:
            suggestions.append(
                f"Average execution time is {round(perf.avg_execution_time)}s. Consider optimization."
            )
        if len(perf.learnings) > 10:
            suggestions.append(
                "Agent has accumulated significant learnings. Consider creating a specialized sub-agent."
            )
        return suggestions

    def evolve_agent(self, parent_id: str, improvements: list[str], evolved_by: str) -> WorkerIdentity | None:
        """Create the next version of an identity carrying the given improvements."""
        parent = self._agents.get(parent_id)
        if parent is None:
            return None

        next_version = parent.version + 1
        bullets = "\n".join(f"- {i}" for i in improvements)
        evolved = self.create_agent(
            name=f"{parent.name} v{next_version}",
            description=f"{parent.description} (Evolved: {', '.join(improvements)})",
            role=parent.role,
            capabilities=parent.capabilities + list(improvements),
            tools=list(parent.tools),
            system_prompt=f"{parent.system_prompt}\n\n## Improvements (v{next_version})\n{bullets}",
            created_by=evolved_by,
            parent_agent=parent_id,
        )

        perf = parent.performance
        perf.improvements.append(f"Evolved to {evolved.id} on {datetime.now().isoformat()}")
        self.update_agent(parent_id, "system", performance=perf)
        logger.info("Evolved %s -> %s by %s", parent_id, evolved.id, evolved_by)
        return evolved

    # ── Roles and skills ────────────────────────────────────────────────────

    def get_role(self, role_id: str) -> Role | None:
        return self._roles.get(role_id)

    def list_roles(self) -> list[Role]:
        return list(self._roles.values())

    def can_perform(self, agent_id: str, action: str) -> bool:
        """Whether the identity's role permits ``create_agent``, ``create_skill`` or ``modify_others``."""
        agent = self._agents.get(agent_id)
        if agent is None:
            return False
        role = self.get_role(agent.role)
        attr = ACTIONS.get(action)
        if role is None or attr is None:
            return False
        return getattr(role, attr)

    def create_skill(self, name: str, description: str, prompt: str, created_by: str) -> Skill:
        if not name or not name.strip():
            raise ValueError("Skill name must not be empty")
        skill = Skill(
            id=agent_id_for(name),
            name=name,
            description=description,
            prompt=prompt,
            created_by=created_by,
            created_at=datetime.now(),
        )
        self._skills[skill.id] = skill

        if self.commands_dir:
            try:
                self.commands_dir.mkdir(parents=True, exist_ok=True)
                (self.commands_dir / f"{skill.id}.md").write_text(
                    f"# {name}\n\n{description}\n\n{prompt}", encoding="utf-8"
                )
            except OSError:
                logger.exception("Failed to write skill file: %s", skill.id)

        logger.info("Created skill: %s by %s", name, created_by)
        return skill

    def get_skill(self, skill_id: str) -> Skill | None:
        return self._skills.get(skill_id)

    def list_skills(self) -> list[Skill]:
        return list(self._skills.values())

    def has_specialist_for(self, domain: str) -> bool:
        """True if some specialist lists the domain among its capabilities or in its id."""
        domain = domain.lower()
        for agent in self._agents.values():
            if agent.role != "specialist":
                continue
            if domain in agent.id or any(domain == c.lower() for c in agent.capabilities):
                return True
        return False

    # ── Prompt helpers ──────────────────────────────────────────────────────

    def self_improvement_instructions(self, can_create_agents: bool, can_create_skills: bool) -> str:
        if not can_create_agents and not can_create_skills:
            return ""

        parts = ["## Self-Improvement Capabilities\n"]
        if can_create_skills:
            parts.append(
                "### Creating Skills\n"
                "When you notice a task pattern appearing frequently, you can create a reusable skill.\n"
                "Include in your output:\n"
                "```\n"
                "## New Skill Request\n"
                "Name: [skill-name]\n"
                "Description: [what it does]\n"
                "Prompt: [the skill prompt]\n"
                "```\n"
            )
        if can_create_agents:
            parts.append(
                "### Creating New Agents\n"
                "As a manager, you can request new agent creation.\n"
                "Include in your output:\n"
                "```\n"
                "## New Agent Request\n"
                "Name: [agent-name]\n"
                "Role: [specialist/support]\n"
                "Description: [agent's purpose]\n"
                "Capabilities: [list of capabilities]\n"
                "Tools: [required tools]\n"
                "Reason: [why this agent is needed]\n"
                "```\n"
            )
        return "\n".join(parts)

    def performance_insights(self, agent_id: str) -> list[str]:
        agent = self._agents.get(agent_id)
        if agent is None:
            return []
        perf = agent.performance
        return [
            f"Tasks completed: {perf.tasks_completed}",
            f"Success rate: {round(perf.success_rate * 100)}%",
            f"Avg execution time: {round(perf.avg_execution_time)}s",
        ]
