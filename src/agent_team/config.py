"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path


def _parse_bool(val: str) -> bool:
    return val.strip().lower() in {"1", "true", "yes", "on"}


def _parse_list(val: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in val.split(",") if item.strip())


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".agent_team" / "team.db")
    repo_path: Path = field(default_factory=lambda: Path.cwd())
    slack_bot_token: str | None = None
    slack_channel: str | None = None
    backend: str = "cli"
    claude_command: str = "claude"
    model: str = "sonnet"
    permission_mode: str = "acceptEdits"
    timeout: float = 300.0
    planning_timeout: float = 120.0
    max_output_tokens: int = 4096
    pool_size: int = 2
    pool_ready_timeout: float = 30.0
    pool_respawn_delay: float = 1.0
    mem0_api_key: str | None = None
    memory_project: str = "ai-team"
    terminal_agents: tuple[str, ...] = ("pm", "eng-lead")
    planner_agent: str = "pm"
    auto_plan: bool = True
    log_level: str = "INFO"

    @property
    def agents_dir(self) -> Path:
        return self.repo_path / ".claude" / "agents"

    @property
    def commands_dir(self) -> Path:
        return self.repo_path / ".claude" / "commands"

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("ATO_DB_PATH"):
            config.db_path = Path(db)

        if repo := os.environ.get("ATO_REPO_PATH"):
            config.repo_path = Path(repo)

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")
        config.slack_channel = os.environ.get("ATO_SLACK_CHANNEL")
        config.mem0_api_key = os.environ.get("MEM0_API_KEY")

        if backend := os.environ.get("ATO_BACKEND"):
            if backend not in ("cli", "pool", "session"):
                raise ValueError(f"Unknown backend: {backend}")
            config.backend = backend

        if command := os.environ.get("ATO_CLAUDE_COMMAND"):
            config.claude_command = command

        if model := os.environ.get("ATO_MODEL"):
            config.model = model

        if mode := os.environ.get("ATO_PERMISSION_MODE"):
            config.permission_mode = mode

        if timeout := os.environ.get("ATO_TIMEOUT"):
            config.timeout = float(timeout)

        if planning_timeout := os.environ.get("ATO_PLANNING_TIMEOUT"):
            config.planning_timeout = float(planning_timeout)

        if max_tokens := os.environ.get("ATO_MAX_OUTPUT_TOKENS"):
            config.max_output_tokens = int(max_tokens)

        if pool_size := os.environ.get("ATO_POOL_SIZE"):
            config.pool_size = max(1, int(pool_size))

        if ready_timeout := os.environ.get("ATO_POOL_READY_TIMEOUT"):
            config.pool_ready_timeout = float(ready_timeout)

        if respawn_delay := os.environ.get("ATO_POOL_RESPAWN_DELAY"):
            config.pool_respawn_delay = float(respawn_delay)

        if memory_project := os.environ.get("ATO_MEMORY_PROJECT"):
            config.memory_project = memory_project

        if terminal := os.environ.get("ATO_TERMINAL_AGENTS"):
            config.terminal_agents = _parse_list(terminal)

        if planner := os.environ.get("ATO_PLANNER_AGENT"):
            config.planner_agent = planner

        if auto_plan := os.environ.get("ATO_AUTO_PLAN"):
            config.auto_plan = _parse_bool(auto_plan)

        if level := os.environ.get("ATO_LOG_LEVEL"):
            config.log_level = level.upper()

        return config


def get_config() -> Config:
    return Config.from_env()
