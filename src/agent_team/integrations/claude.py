"""Claude Code CLI subprocess wrappers and execution backends."""

import asyncio
import logging
import os
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)

ANSI_RE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")


class BackendError(Exception):
    """Raised when the execution backend fails to produce a result."""


@dataclass
class BackendResult:
    success: bool
    output: str
    error: str | None = None
    returncode: int | None = None
    duration: float = 0.0


def clean_output(text: str) -> str:
    """Strip ANSI escape codes and carriage returns from terminal output."""
    return ANSI_RE.sub("", text).replace("\r", "").strip()


def _child_env(max_output_tokens: int | None = None) -> dict[str, str]:
    env = dict(os.environ)
    env["CI"] = "true"
    if max_output_tokens:
        env["CLAUDE_CODE_MAX_OUTPUT_TOKENS"] = str(max_output_tokens)
    return env


def build_command(
    command: str = "claude",
    prompt: str | None = None,
    model: str | None = None,
    system_prompt: str | None = None,
    permission_mode: str | None = None,
) -> list[str]:
    """Build a Claude CLI argv. With a prompt the CLI runs in print mode."""
    cmd = [command]
    if prompt is not None:
        cmd += ["-p", prompt]
    if model:
        cmd += ["--model", model]
    if system_prompt:
        cmd += ["--system-prompt", system_prompt]
    if permission_mode:
        cmd += ["--permission-mode", permission_mode]
    return cmd


class ClaudeRunner:
    """One-shot ``claude -p`` invocations."""

    def __init__(
        self,
        command: str = "claude",
        model: str = "sonnet",
        permission_mode: str | None = "acceptEdits",
        cwd: str | Path | None = None,
        timeout: float = 300.0,
        max_output_tokens: int | None = None,
    ):
        self.command = command
        self.model = model
        self.permission_mode = permission_mode
        self.cwd = cwd
        self.timeout = timeout
        self.max_output_tokens = max_output_tokens

    async def run(
        self,
        prompt: str,
        model: str | None = None,
        system_prompt: str | None = None,
        timeout: float | None = None,
        max_output_tokens: int | None = None,
    ) -> BackendResult:
        """Run the CLI once. Never raises; failures come back as ``success=False``."""
        cmd = build_command(
            self.command,
            prompt=prompt,
            model=model or self.model,
            system_prompt=system_prompt,
            permission_mode=self.permission_mode,
        )
        timeout = timeout or self.timeout
        logger.info("Running %s with model %s (prompt length %d)", self.command, model or self.model, len(prompt))

        start = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd,
                env=_child_env(max_output_tokens or self.max_output_tokens),
            )
        except OSError as e:
            logger.error("Failed to spawn %s: %s", self.command, e)
            return BackendResult(success=False, output="", error=str(e), duration=time.monotonic() - start)

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.warning("%s timed out after %.0fs", self.command, timeout)
            return BackendResult(
                success=False,
                output="",
                error="Timeout exceeded",
                returncode=proc.returncode,
                duration=time.monotonic() - start,
            )

        duration = time.monotonic() - start
        output = clean_output(stdout.decode(errors="replace"))
        err_text = clean_output(stderr.decode(errors="replace"))

        if proc.returncode == 0:
            logger.info("%s succeeded in %.1fs, output length %d", self.command, duration, len(output))
            return BackendResult(success=True, output=output, returncode=0, duration=duration)

        logger.error("%s failed with code %s: %s", self.command, proc.returncode, err_text[:500])
        return BackendResult(
            success=False,
            output=output,
            error=err_text or output or f"Process exited with code {proc.returncode}",
            returncode=proc.returncode,
            duration=duration,
        )

    async def invoke(self, prompt: str, **kwargs) -> str:
        """Run the CLI and return its output. Raises BackendError on failure."""
        result = await self.run(prompt, **kwargs)
        if not result.success:
            raise BackendError(result.error or "Claude Code execution failed")
        return result.output


async def spawn_claude_session(
    command: str = "claude",
    model: str | None = "sonnet",
    system_prompt: str | None = None,
    permission_mode: str | None = "acceptEdits",
    cwd: str | Path | None = None,
    max_output_tokens: int | None = None,
) -> asyncio.subprocess.Process:
    """Launch an interactive CLI process with piped stdin/stdout/stderr."""
    cmd = build_command(command, model=model, system_prompt=system_prompt, permission_mode=permission_mode)
    return await asyncio.create_subprocess_exec(
        *cmd,
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
        env=_child_env(max_output_tokens),
    )


# ── Execution backends ──────────────────────────────────────────────────────


class ExecutionBackend(Protocol):
    async def invoke(
        self,
        prompt: str,
        agent_name: str | None = None,
        system_prompt: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
        max_output_tokens: int | None = None,
    ) -> str: ...

    def status(self) -> dict: ...

    async def start(self) -> None: ...

    async def shutdown(self) -> None: ...


def _with_instructions(system_prompt: str | None, prompt: str) -> str:
    if not system_prompt:
        return prompt
    return f"{system_prompt}\n\n{prompt}"


class ClaudeCliBackend:
    """A fresh ``claude -p`` process per call."""

    name = "cli"

    def __init__(self, runner: ClaudeRunner):
        self.runner = runner

    async def invoke(
        self,
        prompt: str,
        agent_name: str | None = None,
        system_prompt: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
        max_output_tokens: int | None = None,
    ) -> str:
        return await self.runner.invoke(
            _with_instructions(system_prompt, prompt),
            model=model,
            timeout=timeout,
            max_output_tokens=max_output_tokens,
        )

    def status(self) -> dict:
        return {"backend": self.name}

    async def start(self):
        pass

    async def shutdown(self):
        pass


class PooledBackend:
    """Submits work to a WorkerPool of pre-spawned sessions."""

    name = "pool"

    def __init__(self, pool):
        self.pool = pool

    async def invoke(
        self,
        prompt: str,
        agent_name: str | None = None,
        system_prompt: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
        max_output_tokens: int | None = None,
    ) -> str:
        result = await self.pool.submit(
            _with_instructions(system_prompt, prompt),
            timeout=timeout,
            agent_name=agent_name,
        )
        if not result.success:
            raise BackendError(result.error or "Pool submission failed")
        return clean_output(result.output)

    def status(self) -> dict:
        return {"backend": self.name, **self.pool.status()}

    async def start(self):
        await self.pool.initialize()

    async def shutdown(self):
        await self.pool.shutdown()


class SessionBackend:
    """One persistent session per worker identity, started on first use."""

    name = "session"

    def __init__(self, manager):
        self.manager = manager

    async def invoke(
        self,
        prompt: str,
        agent_name: str | None = None,
        system_prompt: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
        max_output_tokens: int | None = None,
    ) -> str:
        if not agent_name:
            raise BackendError("Session backend requires an agent name")
        if not self.manager.has_session(agent_name):
            started = await self.manager.start_session(agent_name, system_prompt or "")
            if not started:
                raise BackendError(f"Agent {agent_name} session could not be started")
        try:
            output = await self.manager.send_task(agent_name, prompt, timeout=timeout)
        except (asyncio.TimeoutError, LookupError) as e:
            raise BackendError(str(e)) from e
        return clean_output(output)

    def status(self) -> dict:
        return {"backend": self.name, "sessions": self.manager.status()}

    async def start(self):
        pass

    async def shutdown(self):
        await self.manager.shutdown()
