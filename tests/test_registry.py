"""Tests for the worker registry and its agent files."""

import tempfile
from pathlib import Path

import pytest

from agent_team.core.registry import AgentRegistry, agent_id_for, parse_agent_file, render_agent_file
from agent_team.db.models import Performance


@pytest.fixture
def dirs():
    with tempfile.TemporaryDirectory() as tmp:
        root = Path(tmp)
        yield root / ".claude" / "agents", root / ".claude" / "commands"


@pytest.fixture
def registry(dirs):
    agents_dir, commands_dir = dirs
    return AgentRegistry(agents_dir, commands_dir)


class TestAgentFiles:
    def test_agent_id_for(self):
        assert agent_id_for("Payments Specialist v2") == "payments-specialist-v2"

    def test_plain_markdown_is_all_prompt(self):
        agent = parse_agent_file("pm", "You are the PM.\n")
        assert agent.id == "pm"
        assert agent.role == "specialist"
        assert agent.system_prompt == "You are the PM."

    def test_frontmatter(self):
        content = (
            "---\n"
            "name: eng-lead\n"
            "description: Leads engineering\n"
            "tools: Read, Write, Bash\n"
            "role: manager\n"
            "version: 3\n"
            "capabilities:\n"
            "  - review\n"
            "  - planning\n"
            "---\n\n"
            "You lead the engineers.\n"
        )
        agent = parse_agent_file("eng-lead", content)
        assert agent.name == "eng-lead"
        assert agent.role == "manager"
        assert agent.version == 3
        assert agent.tools == ["Read", "Write", "Bash"]
        assert agent.capabilities == ["review", "planning"]
        assert agent.system_prompt == "You lead the engineers."

    def test_invalid_yaml(self):
        with pytest.raises(ValueError):
            parse_agent_file("bad", "---\nname: [unclosed\n---\nbody")

    def test_render_then_parse_keeps_performance(self, registry):
        agent = registry.create_agent("qa", "Tests things", capabilities=["testing"], system_prompt="Test it.")
        agent.performance = Performance(tasks_completed=4, tasks_successful=3, learnings=["Use fixtures"])
        parsed = parse_agent_file("qa", render_agent_file(agent))
        assert parsed.performance.tasks_completed == 4
        assert parsed.performance.tasks_successful == 3
        assert parsed.performance.learnings == ["Use fixtures"]
        assert parsed.created_by == "system"


class TestIdentities:
    def test_create_and_reload(self, dirs):
        agents_dir, commands_dir = dirs
        registry = AgentRegistry(agents_dir, commands_dir)
        registry.create_agent("Frontend Dev", "Builds UI", tools=["Read"], system_prompt="Build UI.")
        assert (agents_dir / "frontend-dev.md").is_file()

        reloaded = AgentRegistry(agents_dir, commands_dir)
        agent = reloaded.get_agent("frontend-dev")
        assert agent.name == "Frontend Dev"
        assert agent.tools == ["Read"]
        assert agent.system_prompt == "Build UI."

    def test_create_validates(self, registry):
        with pytest.raises(ValueError):
            registry.create_agent("")
        with pytest.raises(ValueError):
            registry.create_agent("x", role="boss")

    def test_create_same_name_replaces(self, registry):
        registry.create_agent("qa", "first")
        registry.create_agent("qa", "second")
        assert len(registry.list_agents()) == 1
        assert registry.get_agent("qa").description == "second"

    def test_update_bumps_version(self, registry):
        registry.create_agent("qa", "Tests things")
        agent = registry.update_agent("qa", "pm", description="Tests everything")
        assert agent.version == 2
        assert agent.description == "Tests everything"

    def test_update_rejects_unknown_fields(self, registry):
        registry.create_agent("qa")
        with pytest.raises(ValueError):
            registry.update_agent("qa", version=9)

    def test_update_unknown_agent(self, registry):
        assert registry.update_agent("ghost", description="x") is None

    def test_delete(self, registry, dirs):
        agents_dir, _ = dirs
        registry.create_agent("qa")
        assert registry.delete_agent("qa") is True
        assert not (agents_dir / "qa.md").exists()
        assert registry.delete_agent("qa") is False

    def test_without_directories(self):
        registry = AgentRegistry()
        registry.create_agent("qa")
        registry.create_skill("lint", "Run lint", "Run the linter", "qa")
        assert registry.get_agent("qa") is not None
        assert registry.get_skill("lint") is not None


class TestPerformance:
    def test_incremental_mean(self, registry):
        registry.create_agent("qa")
        for success, seconds in ((True, 10.0), (False, 20.0), (True, 30.0)):
            registry.record_task_completion("qa", success, seconds)
        perf = registry.get_agent("qa").performance
        assert perf.tasks_completed == 3
        assert perf.tasks_successful == 2
        assert perf.avg_execution_time == pytest.approx(20.0)

    def test_learnings_capped(self, registry):
        registry.create_agent("qa")
        for i in range(25):
            registry.record_task_completion("qa", True, 1.0, [f"learning {i}"])
        learnings = registry.get_agent("qa").performance.learnings
        assert len(learnings) == 20
        assert learnings[-1] == "learning 24"

    def test_unknown_agent_ignored(self, registry):
        assert registry.record_task_completion("ghost", True, 1.0) is None

    def test_suggestions(self, registry):
        agent = registry.create_agent("qa")
        agent.performance = Performance(
            tasks_completed=10,
            tasks_successful=5,
            avg_execution_time=90.0,
            learnings=[f"l{i}" for i in range(11)],
        )
        suggestions = registry.suggest_improvements("qa")
        assert suggestions[0] == "Success rate is 50%. Consider reviewing failure patterns."
        assert suggestions[1] == "Average execution time is 90s. Consider optimization."
        assert "specialized sub-agent" in suggestions[2]

    def test_insights(self, registry):
        registry.create_agent("qa")
        registry.record_task_completion("qa", True, 12.4)
        assert registry.performance_insights("qa") == [
            "Tasks completed: 1",
            "Success rate: 100%",
            "Avg execution time: 12s",
        ]

    def test_evolve(self, registry):
        registry.create_agent("backend", "Builds APIs", capabilities=["api"], system_prompt="Build APIs.")
        evolved = registry.evolve_agent("backend", ["caching"], "eng-lead")
        assert evolved.id == "backend-v2"
        assert evolved.parent_agent == "backend"
        assert evolved.capabilities == ["api", "caching"]
        assert "## Improvements (v2)\n- caching" in evolved.system_prompt
        parent = registry.get_agent("backend")
        assert parent.performance.improvements[0].startswith("Evolved to backend-v2")
        assert registry.evolve_agent("ghost", ["x"], "pm") is None


class TestRolesAndSkills:
    def test_permissions_by_role(self, registry):
        registry.create_agent("pm", role="manager")
        registry.create_agent("backend", role="specialist")
        registry.create_agent("docs", role="support")
        assert registry.can_perform("pm", "create_agent")
        assert not registry.can_perform("backend", "create_agent")
        assert registry.can_perform("backend", "create_skill")
        assert not registry.can_perform("docs", "create_skill")
        assert not registry.can_perform("pm", "launch_rockets")
        assert not registry.can_perform("ghost", "create_skill")

    def test_skill_file_round_trip(self, dirs):
        agents_dir, commands_dir = dirs
        registry = AgentRegistry(agents_dir, commands_dir)
        registry.create_skill("Add Endpoint", "Scaffold an endpoint", "Create the route.", "backend")
        assert (commands_dir / "add-endpoint.md").read_text() == "# Add Endpoint\n\nScaffold an endpoint\n\nCreate the route."

        skill = AgentRegistry(agents_dir, commands_dir).get_skill("add-endpoint")
        assert skill.name == "Add Endpoint"
        assert skill.description == "Scaffold an endpoint"
        assert skill.prompt == "Create the route."

    def test_has_specialist_for(self, registry):
        registry.create_agent("api-dev", role="specialist")
        registry.create_agent("data", role="specialist", capabilities=["Database"])
        registry.create_agent("frontend-lead", role="manager")
        assert registry.has_specialist_for("api")
        assert registry.has_specialist_for("database")
        assert not registry.has_specialist_for("frontend")

    def test_self_improvement_instructions(self, registry):
        assert registry.self_improvement_instructions(False, False) == ""
        skills_only = registry.self_improvement_instructions(False, True)
        assert "## New Skill Request" in skills_only
        assert "## New Agent Request" not in skills_only
        both = registry.self_improvement_instructions(True, True)
        assert "## New Agent Request" in both
