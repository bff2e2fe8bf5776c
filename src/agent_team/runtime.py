"""Wiring: one explicit handle of each component, built from Config."""

import logging
import sqlite3
from dataclasses import dataclass
from functools import partial

from agent_team.config import Config
from agent_team.core.classifier import KeywordClassifier
from agent_team.core.memory import Mem0Memory, MemoryService, SqliteMemory
from agent_team.core.orchestrator import Orchestrator
from agent_team.core.patterns import PatternTracker
from agent_team.core.pool import WorkerPool
from agent_team.core.registry import AgentRegistry
from agent_team.core.rules import RuleEngine
from agent_team.core.sessions import AgentSessionManager
from agent_team.db.engine import init_db
from agent_team.integrations.claude import (
    ClaudeCliBackend,
    ClaudeRunner,
    ExecutionBackend,
    PooledBackend,
    SessionBackend,
    spawn_claude_session,
)
from agent_team.integrations.slack import SlackNotifier

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    config: Config
    db: sqlite3.Connection
    registry: AgentRegistry
    rules: RuleEngine
    patterns: PatternTracker
    memory: MemoryService
    backend: ExecutionBackend
    orchestrator: Orchestrator

    async def start(self):
        await self.backend.start()

    async def close(self):
        await self.backend.shutdown()
        store = self.memory.store
        if isinstance(store, Mem0Memory):
            await store.aclose()
        self.db.close()


def build_backend(config: Config) -> ExecutionBackend:
    spawner = partial(
        spawn_claude_session,
        command=config.claude_command,
        model=config.model,
        permission_mode=config.permission_mode,
        cwd=config.repo_path,
        max_output_tokens=config.max_output_tokens,
    )
    if config.backend == "pool":
        pool = WorkerPool(
            size=config.pool_size,
            spawner=spawner,
            ready_timeout=config.pool_ready_timeout,
            respawn_delay=config.pool_respawn_delay,
            default_timeout=config.timeout,
        )
        return PooledBackend(pool)
    if config.backend == "session":
        return SessionBackend(AgentSessionManager(spawner=spawner, default_timeout=config.timeout))

    runner = ClaudeRunner(
        command=config.claude_command,
        model=config.model,
        permission_mode=config.permission_mode,
        cwd=config.repo_path,
        timeout=config.timeout,
        max_output_tokens=config.max_output_tokens,
    )
    return ClaudeCliBackend(runner)


def build_memory(config: Config, db: sqlite3.Connection) -> MemoryService:
    if config.mem0_api_key:
        store = Mem0Memory(config.mem0_api_key)
    else:
        store = SqliteMemory(db)
    return MemoryService(store, project=config.memory_project)


def build_runtime(
    config: Config,
    db: sqlite3.Connection | None = None,
    backend: ExecutionBackend | None = None,
) -> Runtime:
    """Build a runtime. ``db`` and ``backend`` may be injected for tests."""
    if db is None:
        db = init_db(config.db_path)
    registry = AgentRegistry(config.agents_dir, config.commands_dir, model=config.model)
    rules = RuleEngine()
    patterns = PatternTracker()
    memory = build_memory(config, db)
    if backend is None:
        backend = build_backend(config)

    notifier = None
    if config.slack_bot_token and config.slack_channel:
        notifier = SlackNotifier(config.slack_bot_token, config.slack_channel)

    orchestrator = Orchestrator(
        db=db,
        registry=registry,
        rules=rules,
        patterns=patterns,
        classifier=KeywordClassifier(),
        memory=memory,
        backend=backend,
        repo_path=config.repo_path,
        on_notification=notifier,
        terminal_agents=config.terminal_agents,
        planner_agent=config.planner_agent,
        model=config.model,
        timeout=config.timeout,
        planning_timeout=config.planning_timeout,
        max_output_tokens=config.max_output_tokens,
        plan_follow_ups=config.auto_plan,
    )
    logger.info("Runtime ready (backend=%s, memory=%s)", config.backend, type(memory.store).__name__)
    return Runtime(
        config=config,
        db=db,
        registry=registry,
        rules=rules,
        patterns=patterns,
        memory=memory,
        backend=backend,
        orchestrator=orchestrator,
    )
