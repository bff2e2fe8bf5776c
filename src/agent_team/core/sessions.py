"""Persistent interactive sessions, one per worker identity.

Each agent keeps its own long-running CLI process started with the agent's
instructions as system prompt. A session that exits is restarted after a
fixed backoff unless the manager is shutting down.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from typing import Any, Awaitable, Callable

from agent_team.integrations.claude import spawn_claude_session

logger = logging.getLogger(__name__)

READ_CHUNK = 4096


class SessionUnavailable(LookupError):
    """Raised when a task is sent to an agent without a usable session."""


@dataclass
class AgentSession:
    agent_name: str
    process: Any
    system_prompt: str
    ready: bool = False
    busy: bool = False
    response: str = ""
    created_at: datetime = field(default_factory=datetime.now)
    pending: asyncio.Future | None = None
    settle: asyncio.TimerHandle | None = None
    readers: list[asyncio.Task] = field(default_factory=list)


def looks_finished(response: str, min_length: int = 100) -> bool:
    if not response:
        return False
    return "\n\n" in response or response.endswith("```\n") or len(response) > min_length


class AgentSessionManager:
    def __init__(
        self,
        spawner: Callable[..., Awaitable[Any]] = spawn_claude_session,
        start_timeout: float = 60.0,
        restart_delay: float = 2.0,
        settle_delay: float = 1.0,
        default_timeout: float = 300.0,
        min_response_length: int = 100,
    ):
        self.spawner = spawner
        self.start_timeout = start_timeout
        self.restart_delay = restart_delay
        self.settle_delay = settle_delay
        self.default_timeout = default_timeout
        self.min_response_length = min_response_length
        self._sessions: dict[str, AgentSession] = {}
        self._shutting_down = False
        self._restart_handles: dict[str, asyncio.TimerHandle] = {}
        self._starting: dict[str, asyncio.Task] = {}
        self._background: set[asyncio.Task] = set()

    async def start_session(self, agent_name: str, system_prompt: str) -> bool:
        """Start a session and wait for its first output. Returns False on failure.

        Concurrent calls for one agent share a single start attempt.
        """
        if agent_name in self._sessions:
            logger.info("Agent %s already has a session", agent_name)
            return True
        if self._shutting_down:
            return False

        starting = self._starting.get(agent_name)
        if starting is None:
            starting = asyncio.get_running_loop().create_task(self._start(agent_name, system_prompt))
            self._starting[agent_name] = starting
            starting.add_done_callback(partial(self._start_done, agent_name))
        try:
            return await asyncio.shield(starting)
        except asyncio.CancelledError:
            if starting.cancelled():
                return False
            raise

    def _start_done(self, agent_name: str, task: asyncio.Task):
        if self._starting.get(agent_name) is task:
            del self._starting[agent_name]

    async def _start(self, agent_name: str, system_prompt: str) -> bool:
        logger.info("Starting session for agent: %s", agent_name)
        try:
            process = await self.spawner(system_prompt=system_prompt)
        except OSError as e:
            logger.error("Agent %s session could not be spawned: %s", agent_name, e)
            return False

        try:
            first = await asyncio.wait_for(process.stdout.read(READ_CHUNK), self.start_timeout)
        except asyncio.TimeoutError:
            logger.error("Agent %s failed to start", agent_name)
            _kill(process)
            return False
        except asyncio.CancelledError:
            _kill(process)
            raise
        if not first:
            logger.error("Agent %s exited during startup", agent_name)
            return False
        if self._shutting_down:
            _terminate(process)
            return False

        handle = self._restart_handles.pop(agent_name, None)
        if handle is not None:
            handle.cancel()
        session = AgentSession(agent_name=agent_name, process=process, system_prompt=system_prompt, ready=True)
        self._sessions[agent_name] = session
        session.readers = [
            asyncio.create_task(self._read_stdout(session)),
            asyncio.create_task(self._read_stderr(session)),
        ]
        logger.info("Agent %s session ready", agent_name)
        return True

    async def send_task(self, agent_name: str, task: str, timeout: float | None = None) -> str:
        """Write a task to the agent's session and wait for the response."""
        session = self._sessions.get(agent_name)
        if session is None or not session.ready:
            raise SessionUnavailable(f"Agent {agent_name} session not available")
        if session.busy:
            raise SessionUnavailable(f"Agent {agent_name} session is busy")

        loop = asyncio.get_running_loop()
        session.busy = True
        session.response = ""
        session.pending = loop.create_future()
        logger.info("Sending task to %s: %s", agent_name, task[:50])
        try:
            session.process.stdin.write((task + "\n").encode())
            return await asyncio.wait_for(session.pending, timeout or self.default_timeout)
        except asyncio.TimeoutError:
            raise asyncio.TimeoutError(f"Task timeout for agent {agent_name}") from None
        finally:
            if session.settle is not None:
                session.settle.cancel()
                session.settle = None
            session.pending = None
            session.busy = False

    def has_session(self, agent_name: str) -> bool:
        session = self._sessions.get(agent_name)
        return session is not None and session.ready

    def status(self) -> dict[str, dict]:
        return {
            name: {"ready": s.ready, "busy": s.busy}
            for name, s in self._sessions.items()
        }

    async def shutdown(self):
        self._shutting_down = True
        logger.info("Shutting down all agent sessions")
        for handle in self._restart_handles.values():
            handle.cancel()
        self._restart_handles.clear()
        for task in [*self._background, *self._starting.values()]:
            task.cancel()

        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            logger.info("Stopping %s", session.agent_name)
            if session.pending is not None and not session.pending.done():
                session.pending.set_exception(SessionUnavailable(f"Agent {session.agent_name} session stopped"))
            _terminate(session.process)
            for reader in session.readers:
                reader.cancel()

    # ── Process I/O ─────────────────────────────────────────────────────────

    async def _read_stdout(self, session: AgentSession):
        while True:
            chunk = await session.process.stdout.read(READ_CHUNK)
            if not chunk:
                break
            self._on_output(session, chunk.decode(errors="replace"))
        code = await session.process.wait()
        self._on_exit(session, code)

    async def _read_stderr(self, session: AgentSession):
        while True:
            line = await session.process.stderr.readline()
            if not line:
                break
            logger.warning("%s stderr: %s", session.agent_name, line.decode(errors="replace").rstrip())

    def _on_output(self, session: AgentSession, text: str):
        if session.pending is None:
            return
        session.response += text
        # Resolve only once output has been quiet for settle_delay.
        if session.settle is not None:
            session.settle.cancel()
            session.settle = None
        if looks_finished(session.response, self.min_response_length):
            loop = asyncio.get_running_loop()
            session.settle = loop.call_later(self.settle_delay, self._resolve, session)

    def _resolve(self, session: AgentSession):
        session.settle = None
        if session.pending is not None and not session.pending.done():
            session.pending.set_result(session.response.strip())

    def _on_exit(self, session: AgentSession, code: int | None):
        logger.info("Agent %s exited with code %s", session.agent_name, code)
        session.ready = False
        if session.pending is not None and not session.pending.done():
            session.pending.set_exception(SessionUnavailable(f"Agent {session.agent_name} session exited"))
        if self._sessions.get(session.agent_name) is not session:
            return
        del self._sessions[session.agent_name]

        if self._shutting_down:
            return
        logger.info("Restarting agent %s in %.0fs", session.agent_name, self.restart_delay)
        previous = self._restart_handles.pop(session.agent_name, None)
        if previous is not None:
            previous.cancel()
        loop = asyncio.get_running_loop()
        self._restart_handles[session.agent_name] = loop.call_later(
            self.restart_delay,
            partial(self._schedule_restart, session.agent_name, session.system_prompt),
        )

    def _schedule_restart(self, agent_name: str, system_prompt: str):
        self._restart_handles.pop(agent_name, None)
        if self._shutting_down:
            return
        task = asyncio.get_running_loop().create_task(self.start_session(agent_name, system_prompt))
        self._background.add(task)
        task.add_done_callback(self._background.discard)


def _terminate(process):
    try:
        process.terminate()
    except ProcessLookupError:
        pass


def _kill(process):
    try:
        process.kill()
    except ProcessLookupError:
        pass
