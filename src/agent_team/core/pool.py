"""Worker pool: a fixed set of pre-spawned interactive Claude sessions.

Work is dispatched to the first free session in creation order, otherwise it
waits in a FIFO queue. Completion is detected heuristically from the
accumulated stdout (a prompt-return marker or enough text). All state is
touched only from the event loop; no locks.
"""

import asyncio
import itertools
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable

from agent_team.integrations.claude import spawn_claude_session

logger = logging.getLogger(__name__)

COMPLETION_MARKERS = ("\n> ", "╭─")
READ_CHUNK = 4096


class SessionStartError(Exception):
    """Raised when a backend session does not become ready."""


@dataclass
class PoolResult:
    success: bool
    output: str
    error: str | None = None
    session_id: str | None = None


@dataclass
class _Submission:
    prompt: str
    timeout: float
    future: asyncio.Future
    agent_name: str | None = None
    timer: asyncio.TimerHandle | None = None


@dataclass
class PooledSession:
    id: str
    process: Any
    busy: bool = False
    agent_name: str | None = None
    created_at: datetime = field(default_factory=datetime.now)
    buffer: str = ""
    current: _Submission | None = None
    readers: list[asyncio.Task] = field(default_factory=list)


def is_response_complete(
    buffer: str,
    markers: tuple[str, ...] = COMPLETION_MARKERS,
    min_length: int = 100,
) -> bool:
    return any(m in buffer for m in markers) or len(buffer.strip()) >= min_length


class WorkerPool:
    def __init__(
        self,
        size: int = 2,
        spawner: Callable[[], Awaitable[Any]] = spawn_claude_session,
        ready_timeout: float = 30.0,
        respawn_delay: float = 1.0,
        default_timeout: float = 300.0,
        min_response_length: int = 100,
        completion_markers: tuple[str, ...] = COMPLETION_MARKERS,
    ):
        if size < 1:
            raise ValueError("Pool size must be at least 1")
        self.size = size
        self.spawner = spawner
        self.ready_timeout = ready_timeout
        self.respawn_delay = respawn_delay
        self.default_timeout = default_timeout
        self.min_response_length = min_response_length
        self.completion_markers = completion_markers

        self._sessions: dict[str, PooledSession] = {}
        self._queue: deque[_Submission] = deque()
        self._shutting_down = False
        self._ids = itertools.count()
        self._pending_spawns = 0
        self._respawn_handles: set[asyncio.TimerHandle] = set()
        self._background: set[asyncio.Task] = set()

    @property
    def sessions(self) -> list[PooledSession]:
        return list(self._sessions.values())

    # ── Lifecycle ───────────────────────────────────────────────────────────

    async def initialize(self):
        """Spawn sessions concurrently. Failed spawns are logged; the pool may end up smaller."""
        self._shutting_down = False
        ids = [f"pool-{next(self._ids)}" for _ in range(self.size - len(self._sessions))]
        logger.info("Initializing pool with %d sessions", len(ids))

        results = await asyncio.gather(*(self._spawn(i) for i in ids), return_exceptions=True)
        for session_id, result in zip(ids, results):
            if isinstance(result, BaseException):
                logger.error("Session %s failed to start: %s", session_id, result)
        logger.info("Pool ready with %d sessions", len(self._sessions))
        self._fail_queue_if_dead()

    async def _spawn(self, session_id: str) -> PooledSession:
        try:
            process = await self.spawner()
        except OSError as e:
            raise SessionStartError(f"Session {session_id} could not be spawned: {e}") from e

        try:
            first = await asyncio.wait_for(process.stdout.read(READ_CHUNK), self.ready_timeout)
        except asyncio.TimeoutError:
            _kill(process)
            raise SessionStartError(f"Session {session_id} failed to initialize")
        if not first:
            raise SessionStartError(f"Session {session_id} exited during startup")

        if self._shutting_down:
            _terminate(process)
            raise SessionStartError(f"Pool shut down while {session_id} was starting")

        session = PooledSession(id=session_id, process=process)
        self._sessions[session_id] = session
        session.readers = [
            asyncio.create_task(self._read_stdout(session)),
            asyncio.create_task(self._read_stderr(session)),
        ]
        logger.info("Session %s ready", session_id)
        self._process_queue()
        return session

    async def shutdown(self):
        """Terminate every session and drop queued work without resolving it."""
        self._shutting_down = True
        logger.info("Shutting down pool")

        for handle in self._respawn_handles:
            handle.cancel()
        # Cancelled handles never reach _start_respawn.
        self._pending_spawns -= len(self._respawn_handles)
        self._respawn_handles.clear()
        for task in list(self._background):
            task.cancel()

        sessions = list(self._sessions.values())
        self._sessions.clear()
        self._queue.clear()
        for session in sessions:
            if session.current is not None:
                self._finish(session, PoolResult(False, session.buffer, "Pool shut down", session.id))
            _terminate(session.process)
            for reader in session.readers:
                reader.cancel()

    def status(self) -> dict:
        sessions = list(self._sessions.values())
        busy = sum(1 for s in sessions if s.busy)
        return {
            "total": len(sessions),
            "available": len(sessions) - busy,
            "busy": busy,
            "queued": len(self._queue),
        }

    # ── Submission ──────────────────────────────────────────────────────────

    async def submit(self, prompt: str, timeout: float | None = None, agent_name: str | None = None) -> PoolResult:
        if self._shutting_down:
            return PoolResult(False, "", "Pool is shut down")
        if self._is_dead():
            return PoolResult(False, "", "No sessions available")

        loop = asyncio.get_running_loop()
        submission = _Submission(
            prompt=prompt,
            timeout=timeout or self.default_timeout,
            future=loop.create_future(),
            agent_name=agent_name,
        )
        session = self._free_session()
        if session is not None:
            self._dispatch(session, submission)
        else:
            self._queue.append(submission)
            logger.info("Task queued, %d in queue", len(self._queue))
        return await submission.future

    def _is_dead(self) -> bool:
        """No live session and none on the way: queued work would never run."""
        return not self._sessions and self._pending_spawns <= 0

    def _fail_queue_if_dead(self):
        if not self._is_dead() or not self._queue:
            return
        logger.error("Pool has no sessions; failing %d queued submissions", len(self._queue))
        while self._queue:
            submission = self._queue.popleft()
            if not submission.future.done():
                submission.future.set_result(PoolResult(False, "", "No sessions available"))

    def _free_session(self) -> PooledSession | None:
        for session in self._sessions.values():
            if not session.busy:
                return session
        return None

    def _dispatch(self, session: PooledSession, submission: _Submission):
        loop = asyncio.get_running_loop()
        session.busy = True
        session.current = submission
        session.agent_name = submission.agent_name
        session.buffer = ""
        submission.timer = loop.call_later(submission.timeout, self._on_timeout, session, submission)
        try:
            session.process.stdin.write((submission.prompt + "\n").encode())
        except (OSError, RuntimeError) as e:
            logger.error("Failed to write to session %s: %s", session.id, e)
            self._finish(session, PoolResult(False, "", str(e), session.id))

    def _process_queue(self):
        while self._queue:
            session = self._free_session()
            if session is None:
                return
            submission = self._queue.popleft()
            if submission.future.done():
                continue
            self._dispatch(session, submission)

    def _finish(self, session: PooledSession, result: PoolResult):
        submission = session.current
        session.current = None
        session.busy = False
        session.buffer = ""
        if submission is None:
            return
        if submission.timer is not None:
            submission.timer.cancel()
        if not submission.future.done():
            submission.future.set_result(result)
        if not self._shutting_down:
            self._process_queue()

    def _on_timeout(self, session: PooledSession, submission: _Submission):
        if session.current is not submission:
            return
        logger.warning("Submission on session %s timed out after %.0fs", session.id, submission.timeout)
        self._finish(session, PoolResult(False, session.buffer, "Timeout exceeded", session.id))

    # ── Process I/O ─────────────────────────────────────────────────────────

    async def _read_stdout(self, session: PooledSession):
        while True:
            chunk = await session.process.stdout.read(READ_CHUNK)
            if not chunk:
                break
            self._on_output(session, chunk.decode(errors="replace"))
        code = await session.process.wait()
        self._on_exit(session, code)

    async def _read_stderr(self, session: PooledSession):
        while True:
            line = await session.process.stderr.readline()
            if not line:
                break
            logger.warning("Session %s stderr: %s", session.id, line.decode(errors="replace").rstrip())

    def _on_output(self, session: PooledSession, text: str):
        if session.current is None:
            return
        session.buffer += text
        if is_response_complete(session.buffer, self.completion_markers, self.min_response_length):
            self._finish(session, PoolResult(True, session.buffer.strip(), None, session.id))

    def _on_exit(self, session: PooledSession, code: int | None):
        logger.info("Session %s exited with code %s", session.id, code)
        if self._sessions.get(session.id) is session:
            del self._sessions[session.id]

        if session.current is not None:
            self._finish(session, PoolResult(False, session.buffer, "Session exited", session.id))

        if self._shutting_down:
            return
        if len(self._sessions) + self._pending_spawns < self.size:
            self._pending_spawns += 1
            loop = asyncio.get_running_loop()
            handle = loop.call_later(self.respawn_delay, self._start_respawn)
            self._respawn_handles.add(handle)

    def _start_respawn(self):
        loop = asyncio.get_running_loop()
        now = loop.time()
        self._respawn_handles = {h for h in self._respawn_handles if h.when() > now}
        task = loop.create_task(self._respawn())
        self._background.add(task)
        # A done callback also runs for a task cancelled before its first step.
        task.add_done_callback(self._respawn_done)

    def _respawn_done(self, task: asyncio.Task):
        self._background.discard(task)
        self._pending_spawns -= 1
        if not self._shutting_down:
            self._fail_queue_if_dead()

    async def _respawn(self):
        if self._shutting_down:
            return
        session_id = f"pool-{next(self._ids)}"
        logger.info("Respawning session %s", session_id)
        try:
            await self._spawn(session_id)
        except SessionStartError:
            logger.exception("Respawn failed")


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
