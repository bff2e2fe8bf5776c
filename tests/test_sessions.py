"""Tests for persistent per-agent sessions."""

import asyncio

import pytest

from agent_team.core.sessions import AgentSessionManager, SessionUnavailable, looks_finished
from fakes import Spawner


def _manager(spawner, **kwargs):
    kwargs.setdefault("start_timeout", 0.5)
    kwargs.setdefault("restart_delay", 0.01)
    kwargs.setdefault("settle_delay", 0.01)
    return AgentSessionManager(spawner=spawner, **kwargs)


def paragraph_responder(process, prompt):
    process.respond(f"Working on {prompt.strip()}.\n\nDone.")


class TestLooksFinished:
    def test_heuristics(self):
        assert looks_finished("one\n\ntwo")
        assert looks_finished("code:\n```\n")
        assert looks_finished("z" * 101)
        assert not looks_finished("z" * 100)
        assert not looks_finished("")


class TestStartSession:
    def test_start_passes_system_prompt(self):
        async def scenario():
            spawner = Spawner()
            manager = _manager(spawner)
            started = await manager.start_session("qa", "You are QA")
            again = await manager.start_session("qa", "ignored")
            has = manager.has_session("qa")
            status = manager.status()
            await manager.shutdown()
            return spawner, started, again, has, status

        spawner, started, again, has, status = asyncio.run(scenario())
        assert started and again and has
        assert spawner.calls == [{"system_prompt": "You are QA"}]
        assert status == {"qa": {"ready": True, "busy": False}}

    def test_silent_process_fails_to_start(self):
        async def scenario():
            spawner = Spawner(banner=None)
            manager = _manager(spawner, start_timeout=0.05)
            return spawner, await manager.start_session("qa", "You are QA"), manager.has_session("qa")

        spawner, started, has = asyncio.run(scenario())
        assert not started
        assert not has
        assert spawner.processes[0].killed

    def test_spawn_error(self):
        async def broken(**kwargs):
            raise FileNotFoundError("claude")

        assert asyncio.run(_manager(broken).start_session("qa", "")) is False


class TestSendTask:
    def test_response_after_settle(self):
        async def scenario():
            spawner = Spawner(responder=paragraph_responder)
            manager = _manager(spawner)
            await manager.start_session("qa", "You are QA")
            output = await manager.send_task("qa", "run the suite")
            await manager.shutdown()
            return spawner, output

        spawner, output = asyncio.run(scenario())
        assert output == "Working on run the suite.\n\nDone."
        assert spawner.processes[0].stdin.writes == ["run the suite\n"]

    def test_unknown_agent(self):
        with pytest.raises(SessionUnavailable):
            asyncio.run(_manager(Spawner()).send_task("ghost", "hello"))

    def test_busy_session_rejects_second_task(self):
        async def scenario():
            spawner = Spawner()
            manager = _manager(spawner)
            await manager.start_session("qa", "You are QA")
            first = asyncio.create_task(manager.send_task("qa", "one"))
            await asyncio.sleep(0.01)
            with pytest.raises(SessionUnavailable):
                await manager.send_task("qa", "two")
            spawner.processes[0].respond("Finished one.\n\n")
            result = await first
            await manager.shutdown()
            return result

        assert asyncio.run(scenario()) == "Finished one."

    def test_timeout(self):
        async def scenario():
            manager = _manager(Spawner())
            await manager.start_session("qa", "You are QA")
            try:
                with pytest.raises(asyncio.TimeoutError, match="Task timeout for agent qa"):
                    await manager.send_task("qa", "slow", timeout=0.05)
                return manager.status()["qa"]
            finally:
                await manager.shutdown()

        assert asyncio.run(scenario()) == {"ready": True, "busy": False}


class TestRestart:
    def test_exit_fails_pending_and_restarts(self):
        async def scenario():
            spawner = Spawner()
            manager = _manager(spawner)
            await manager.start_session("qa", "You are QA")
            pending = asyncio.create_task(manager.send_task("qa", "work"))
            await asyncio.sleep(0.01)
            spawner.processes[0].exit(1)
            with pytest.raises(SessionUnavailable):
                await pending
            gone = manager.has_session("qa")
            await asyncio.sleep(0.1)
            back = manager.has_session("qa")
            await manager.shutdown()
            return spawner, gone, back

        spawner, gone, back = asyncio.run(scenario())
        assert not gone
        assert back
        assert spawner.calls == [{"system_prompt": "You are QA"}, {"system_prompt": "You are QA"}]

    def test_shutdown_fails_pending_without_restart(self):
        async def scenario():
            spawner = Spawner()
            manager = _manager(spawner)
            await manager.start_session("qa", "You are QA")
            pending = asyncio.create_task(manager.send_task("qa", "work"))
            await asyncio.sleep(0.01)
            await manager.shutdown()
            with pytest.raises(SessionUnavailable):
                await pending
            await asyncio.sleep(0.05)
            return spawner, manager.status()

        spawner, status = asyncio.run(scenario())
        assert status == {}
        assert len(spawner.processes) == 1
        assert spawner.processes[0].terminated


class TestConcurrentStart:
    def test_overlapping_starts_share_one_process(self):
        async def scenario():
            spawner = Spawner()
            manager = _manager(spawner)
            results = await asyncio.gather(
                manager.start_session("qa", "You are QA"),
                manager.start_session("qa", "You are QA"),
            )
            await manager.shutdown()
            return spawner, results

        spawner, results = asyncio.run(scenario())
        assert results == [True, True]
        assert len(spawner.processes) == 1
        assert spawner.processes[0].terminated

    def test_exit_of_unregistered_process_is_not_restarted(self):
        async def scenario():
            spawner = Spawner()
            manager = _manager(spawner)
            await manager.start_session("qa", "You are QA")
            stale = manager._sessions.pop("qa")
            stale.process.exit(1)
            await asyncio.sleep(0.1)
            return spawner, manager.status()

        spawner, status = asyncio.run(scenario())
        assert len(spawner.processes) == 1
        assert status == {}


class TestSettleAndRestartBookkeeping:
    def test_settle_waits_for_output_to_go_quiet(self):
        async def scenario():
            spawner = Spawner()
            manager = _manager(spawner, settle_delay=0.1)
            await manager.start_session("qa", "You are QA")
            process = spawner.processes[0]
            pending = asyncio.create_task(manager.send_task("qa", "work"))
            await asyncio.sleep(0.01)
            process.respond("Part one.\n\n")
            await asyncio.sleep(0.06)
            process.respond("Part two.")
            await asyncio.sleep(0.06)
            early = pending.done()
            result = await pending
            await manager.shutdown()
            return early, result

        early, result = asyncio.run(scenario())
        assert not early
        assert result == "Part one.\n\nPart two."

    def test_restart_handles_are_dropped_once_fired(self):
        async def scenario():
            spawner = Spawner()
            manager = _manager(spawner, restart_delay=0.05)
            await manager.start_session("qa", "You are QA")
            spawner.processes[0].exit(1)
            await asyncio.sleep(0.01)
            scheduled = dict(manager._restart_handles)
            await asyncio.sleep(0.2)
            remaining = dict(manager._restart_handles)
            restarted = manager.has_session("qa")
            await manager.shutdown()
            return scheduled, remaining, restarted

        scheduled, remaining, restarted = asyncio.run(scenario())
        assert list(scheduled) == ["qa"]
        assert remaining == {}
        assert restarted
