"""Tests for the worker pool of interactive sessions."""

import asyncio

from agent_team.core.pool import WorkerPool, is_response_complete
from fakes import Spawner, echo_responder

LONG_ANSWER = "x" * 120


def _pool(spawner, **kwargs):
    kwargs.setdefault("size", 2)
    kwargs.setdefault("ready_timeout", 0.5)
    kwargs.setdefault("respawn_delay", 0.01)
    return WorkerPool(spawner=spawner, **kwargs)


class TestCompletion:
    def test_marker(self):
        assert is_response_complete("done\n> ")
        assert is_response_complete("╭─ box")

    def test_length(self):
        assert is_response_complete("y" * 100)
        assert not is_response_complete("short answer")
        assert not is_response_complete("   " * 50)


class TestLifecycle:
    def test_initialize_spawns_sessions(self):
        async def scenario():
            spawner = Spawner()
            pool = _pool(spawner, size=3)
            await pool.initialize()
            status = pool.status()
            ids = [s.id for s in pool.sessions]
            await pool.shutdown()
            return spawner, status, ids

        spawner, status, ids = asyncio.run(scenario())
        assert status == {"total": 3, "available": 3, "busy": 0, "queued": 0}
        assert ids == ["pool-0", "pool-1", "pool-2"]
        assert all(p.terminated for p in spawner.processes)

    def test_session_that_never_speaks_is_killed(self):
        async def scenario():
            spawner = Spawner(banner=None)
            pool = _pool(spawner, size=1, ready_timeout=0.05)
            await pool.initialize()
            return spawner, pool.status()

        spawner, status = asyncio.run(scenario())
        assert status["total"] == 0
        assert spawner.processes[0].killed

    def test_spawn_oserror_leaves_smaller_pool(self):
        calls = []

        async def flaky_spawner():
            calls.append(1)
            if len(calls) == 1:
                raise FileNotFoundError("claude")
            return await Spawner()()

        async def scenario():
            pool = _pool(flaky_spawner, size=2)
            await pool.initialize()
            total = pool.status()["total"]
            await pool.shutdown()
            return total

        assert asyncio.run(scenario()) == 1

    def test_submit_after_shutdown(self):
        async def scenario():
            pool = _pool(Spawner(responder=echo_responder), size=1)
            await pool.initialize()
            await pool.shutdown()
            return await pool.submit("late")

        result = asyncio.run(scenario())
        assert not result.success
        assert result.error == "Pool is shut down"


class TestSubmission:
    def test_submit_returns_output(self):
        async def scenario():
            spawner = Spawner(responder=echo_responder)
            pool = _pool(spawner)
            await pool.initialize()
            result = await pool.submit("write the tests", agent_name="qa")
            status = pool.status()
            await pool.shutdown()
            return spawner, result, status

        spawner, result, status = asyncio.run(scenario())
        assert result.success
        assert "Answer to: write the tests" in result.output
        assert result.session_id == "pool-0"
        assert spawner.processes[0].stdin.writes == ["write the tests\n"]
        assert status["available"] == 2

    def test_excess_work_is_queued_and_dispatched_fifo(self):
        async def scenario():
            spawner = Spawner()
            pool = _pool(spawner)
            await pool.initialize()
            first, second = spawner.processes

            t1 = asyncio.create_task(pool.submit("one"))
            t2 = asyncio.create_task(pool.submit("two"))
            t3 = asyncio.create_task(pool.submit("three"))
            await asyncio.sleep(0.01)
            busy_status = pool.status()
            writes_before = (list(first.stdin.writes), list(second.stdin.writes))

            second.respond(LONG_ANSWER)
            r2 = await t2
            writes_after = list(second.stdin.writes)

            first.respond(LONG_ANSWER)
            second.respond(LONG_ANSWER)
            r1, r3 = await asyncio.gather(t1, t3)
            await pool.shutdown()
            return busy_status, writes_before, r2, writes_after, r1, r3

        busy_status, writes_before, r2, writes_after, r1, r3 = asyncio.run(scenario())
        assert busy_status == {"total": 2, "available": 0, "busy": 2, "queued": 1}
        assert writes_before == (["one\n"], ["two\n"])
        assert r2.success and r2.session_id == "pool-1"
        assert writes_after == ["two\n", "three\n"]
        assert r1.session_id == "pool-0"
        assert r3.session_id == "pool-1"

    def test_partial_output_keeps_waiting(self):
        async def scenario():
            spawner = Spawner()
            pool = _pool(spawner, size=1)
            await pool.initialize()
            task = asyncio.create_task(pool.submit("go"))
            await asyncio.sleep(0.01)
            spawner.processes[0].respond("thinking...")
            await asyncio.sleep(0.01)
            done_early = task.done()
            spawner.processes[0].respond(" finished\n> ")
            result = await task
            await pool.shutdown()
            return done_early, result

        done_early, result = asyncio.run(scenario())
        assert not done_early
        assert result.output.startswith("thinking... finished")

    def test_timeout_fails_submission_but_keeps_session(self):
        async def scenario():
            spawner = Spawner()
            pool = _pool(spawner, size=1)
            await pool.initialize()
            result = await pool.submit("slow", timeout=0.05)
            status = pool.status()
            await pool.shutdown()
            return spawner, result, status

        spawner, result, status = asyncio.run(scenario())
        assert not result.success
        assert result.error == "Timeout exceeded"
        assert status == {"total": 1, "available": 1, "busy": 0, "queued": 0}
        assert spawner.processes[0].returncode is not None  # terminated by shutdown only
        assert not spawner.processes[0].killed

    def test_stderr_does_not_complete_work(self):
        async def scenario():
            spawner = Spawner()
            pool = _pool(spawner, size=1)
            await pool.initialize()
            task = asyncio.create_task(pool.submit("go"))
            await asyncio.sleep(0.01)
            spawner.processes[0].complain("warning: slow network\n")
            await asyncio.sleep(0.01)
            pending = not task.done()
            spawner.processes[0].respond("ok\n> ")
            result = await task
            await pool.shutdown()
            return pending, result

        pending, result = asyncio.run(scenario())
        assert pending
        assert result.success


class TestCrashRecovery:
    def test_exit_fails_inflight_and_respawns(self):
        async def scenario():
            spawner = Spawner()
            pool = _pool(spawner, size=2)
            await pool.initialize()
            task = asyncio.create_task(pool.submit("doomed"))
            await asyncio.sleep(0.01)
            spawner.processes[0].respond("half an answer")
            spawner.processes[0].exit(1)
            result = await task
            await asyncio.sleep(0.1)
            status = pool.status()
            ids = [s.id for s in pool.sessions]
            await pool.shutdown()
            return spawner, result, status, ids

        spawner, result, status, ids = asyncio.run(scenario())
        assert not result.success
        assert result.error == "Session exited"
        assert result.output == "half an answer"
        assert status["total"] == 2
        assert len(spawner.processes) == 3
        assert ids == ["pool-1", "pool-2"]

    def test_queued_work_survives_crash(self):
        async def scenario():
            spawner = Spawner()
            pool = _pool(spawner, size=1)
            await pool.initialize()
            t1 = asyncio.create_task(pool.submit("first"))
            t2 = asyncio.create_task(pool.submit("second"))
            await asyncio.sleep(0.01)
            spawner.processes[0].exit(1)
            r1 = await t1
            await asyncio.sleep(0.1)
            replacement = spawner.processes[1]
            replacement.respond(LONG_ANSWER)
            r2 = await t2
            await pool.shutdown()
            return r1, r2, replacement

        r1, r2, replacement = asyncio.run(scenario())
        assert r1.error == "Session exited"
        assert r2.success
        assert replacement.stdin.writes == ["second\n"]

    def test_shutdown_fails_inflight_and_stops_respawn(self):
        async def scenario():
            spawner = Spawner()
            pool = _pool(spawner, size=1)
            await pool.initialize()
            task = asyncio.create_task(pool.submit("work"))
            await asyncio.sleep(0.01)
            await pool.shutdown()
            result = await task
            await asyncio.sleep(0.05)
            return spawner, result, pool.status()

        spawner, result, status = asyncio.run(scenario())
        assert result.error == "Pool shut down"
        assert status["total"] == 0
        assert len(spawner.processes) == 1


class TestDeadPool:
    def test_submit_fails_fast_when_no_session_started(self):
        async def broken_spawner():
            raise FileNotFoundError("claude")

        async def scenario():
            pool = _pool(broken_spawner, size=2)
            await pool.initialize()
            result = await asyncio.wait_for(pool.submit("work", timeout=0.1), 1)
            return result, pool.status()

        result, status = asyncio.run(scenario())
        assert not result.success
        assert result.error == "No sessions available"
        assert status == {"total": 0, "available": 0, "busy": 0, "queued": 0}

    def test_queued_work_fails_when_respawn_fails(self):
        calls = []

        async def one_shot_spawner():
            calls.append(1)
            if len(calls) > 1:
                raise FileNotFoundError("claude")
            return await spawner()

        spawner = Spawner()

        async def scenario():
            pool = _pool(one_shot_spawner, size=1)
            await pool.initialize()
            t1 = asyncio.create_task(pool.submit("first"))
            t2 = asyncio.create_task(pool.submit("second"))
            await asyncio.sleep(0.01)
            spawner.processes[0].exit(1)
            r1 = await t1
            r2 = await asyncio.wait_for(t2, 1)
            return r1, r2, pool.status()

        r1, r2, status = asyncio.run(scenario())
        assert r1.error == "Session exited"
        assert r2.error == "No sessions available"
        assert status["queued"] == 0

    def test_shutdown_during_respawn_delay_resets_pending_count(self):
        async def scenario():
            spawner = Spawner()
            pool = _pool(spawner, size=1, respawn_delay=10)
            await pool.initialize()
            spawner.processes[0].exit(1)
            await asyncio.sleep(0.01)
            pending = pool._pending_spawns
            await pool.shutdown()
            return pending, pool._pending_spawns

        assert asyncio.run(scenario()) == (1, 0)


class TestFifoHandOff:
    def test_first_free_session_takes_the_queued_prompt(self):
        async def scenario():
            spawner = Spawner()
            pool = _pool(spawner, size=2)
            await pool.initialize()
            first, second = spawner.processes

            t1 = asyncio.create_task(pool.submit("one"))
            t2 = asyncio.create_task(pool.submit("two"))
            t3 = asyncio.create_task(pool.submit("three"))
            await asyncio.sleep(0.01)

            first.respond(LONG_ANSWER)
            r1 = await t1
            await asyncio.sleep(0)
            writes = (list(first.stdin.writes), list(second.stdin.writes))

            first.respond(LONG_ANSWER)
            second.respond(LONG_ANSWER)
            r2, r3 = await asyncio.gather(t2, t3)
            await pool.shutdown()
            return r1, writes, r2, r3

        r1, writes, r2, r3 = asyncio.run(scenario())
        assert r1.session_id == "pool-0"
        assert writes == (["one\n", "three\n"], ["two\n"])
        assert r2.session_id == "pool-1"
        assert r3.session_id == "pool-0"
