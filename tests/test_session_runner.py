"""Countdown, auto-save and submission tests for live sessions.

One session second is shrunk to a millisecond so a full countdown runs in
well under a second of wall-clock time.
"""

from __future__ import annotations

import asyncio

import pytest

import exam_session as es
from backend import BackendError
from session_runner import SessionForbidden, SessionManager, SessionNotFound, SessionRunner

TICK = 0.001


def make_session(duration=1, auto_save_interval=0, n=3, session_id="42"):
    questions = [
        es.question_from_backend(
            {"id": i, "question": f"Q{i}", "options": {"A": "x", "B": "y"}, "correct_answer": "A"}, i
        )
        for i in range(1, n + 1)
    ]
    settings = es.TestSettings(auto_save_interval=auto_save_interval)
    return es.TestSession(session_id, "1", "Mock", questions, duration, settings=settings)


async def wait_for(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


class TestCountdown:
    def test_expiry_auto_submits_and_syncs(self, backend):
        async def scenario():
            manager = SessionManager(second=TICK)
            session = make_session(duration=1)
            manager.register(session, backend, "tok")
            manager.start(session.id, "1")
            session.answer("1-A")
            await wait_for(lambda: backend.calls_to("POST", "/api/v1/tests/complete-session"))
            await manager.close_all()
            return session

        session = asyncio.run(scenario())
        assert session.status == es.SUBMITTED
        assert session.time_remaining == 0
        assert session.result.is_auto_submit is True

        saved = backend.calls_to("POST", "/api/v1/tests/submit-answer")
        assert [c["json"] for c in saved] == [
            {"session_id": 42, "question_id": "1", "selected_answer": "A"}
        ]
        completed = backend.calls_to("POST", "/api/v1/tests/complete-session")[0]
        assert completed["token"] == "tok"
        assert completed["json"] == {
            "session_id": 42, "score": 1.0, "correct_answers": 1,
            "total_questions": 3, "time_taken": 60,
        }

    def test_countdown_holds_while_paused(self):
        async def scenario():
            session = make_session(duration=1)
            submitted = []

            async def submit(auto):
                submitted.append(auto)

            async def save():
                return {}

            runner = SessionRunner(session, save, submit, second=TICK)
            session.start()
            session.pause()
            runner.start()
            await asyncio.sleep(0.1)
            remaining = session.time_remaining
            await runner.stop()
            return remaining, submitted

        remaining, submitted = asyncio.run(scenario())
        assert remaining == 60
        assert submitted == []

    def test_late_wake_ups_still_count_elapsed_time(self):
        async def scenario():
            session = make_session(duration=1)
            now = [0.0]
            wakes = []

            async def stalled_sleep(delay):
                # each wake-up comes five session seconds after the last
                now[0] += 5 * delay
                wakes.append(delay)
                if len(wakes) >= 3:
                    await asyncio.Event().wait()
                await asyncio.sleep(0)

            async def noop(*args):
                return {}

            runner = SessionRunner(session, noop, noop, second=1.0,
                                   sleep=stalled_sleep, clock=lambda: now[0])
            session.start()
            runner.start()
            await wait_for(lambda: len(wakes) >= 3)
            remaining = session.time_remaining
            await runner.stop()
            return remaining

        assert asyncio.run(scenario()) == 50


class TestAutoSave:
    def test_keeps_saving_while_paused(self):
        async def scenario():
            session = make_session(duration=30, auto_save_interval=1)
            saves = []

            async def save():
                saves.append(session.status)
                return {}

            async def submit(auto):
                pass

            runner = SessionRunner(session, save, submit, second=TICK)
            session.start()
            session.answer("1-A")
            session.pause()
            runner.start()
            await wait_for(lambda: len(saves) >= 2)
            session.resume()
            await wait_for(lambda: es.IN_PROGRESS in saves)
            await runner.stop()
            return saves

        saves = asyncio.run(scenario())
        assert saves[0] == es.PAUSED
        assert es.IN_PROGRESS in saves

    def test_paused_answers_reach_the_backend(self, backend):
        async def scenario():
            manager = SessionManager(second=TICK)
            session = make_session(duration=30, auto_save_interval=1)
            manager.register(session, backend, "tok")
            manager.start(session.id, "1")
            session.answer("2-B", question_id="2")
            session.pause()
            await wait_for(lambda: backend.calls_to("POST", "/api/v1/tests/submit-answer"))
            status = session.status
            await manager.close_all()
            return status

        assert asyncio.run(scenario()) == es.PAUSED
        saved = backend.calls_to("POST", "/api/v1/tests/submit-answer")
        assert saved[0]["json"] == {"session_id": 42, "question_id": "2", "selected_answer": "B"}

    def test_failures_do_not_stop_the_loop(self):
        async def scenario():
            session = make_session(duration=30, auto_save_interval=1)
            attempts = []

            async def save():
                attempts.append(1)
                if len(attempts) == 1:
                    raise BackendError(502, "Failed to save progress")
                return {}

            async def submit(auto):
                pass

            runner = SessionRunner(session, save, submit, second=TICK)
            session.start()
            runner.start()
            await wait_for(lambda: len(attempts) >= 3)
            running = runner.running
            await runner.stop()
            return running

        assert asyncio.run(scenario()) is True

    def test_zero_interval_disables_auto_save(self):
        async def scenario():
            session = make_session(duration=30, auto_save_interval=0)

            async def noop(*args):
                return {}

            runner = SessionRunner(session, noop, noop, second=TICK)
            session.start()
            runner.start()
            count = len(runner._tasks)
            await runner.stop()
            return count

        assert asyncio.run(scenario()) == 1


class TestManager:
    def test_save_pushes_pending_answers(self, backend):
        async def scenario():
            manager = SessionManager(second=TICK)
            session = make_session(duration=30)
            manager.register(session, backend, "tok")
            manager.start(session.id, "1")
            session.answer("1-B")
            session.answer("2-A", question_id="2")
            first = await manager.save(session.id, "1")
            second = await manager.save(session.id, "1")
            await manager.close_all()
            return first, second

        first, second = asyncio.run(scenario())
        assert first["saved"] == 2
        assert first["pending"] == 0
        assert second["saved"] == 0
        assert len(backend.calls_to("POST", "/api/v1/tests/submit-answer")) == 2

    def test_concurrent_submits_complete_once(self, backend):
        async def scenario():
            manager = SessionManager(second=TICK)
            session = make_session(duration=30)
            manager.register(session, backend, "tok")
            manager.start(session.id, "1")
            results = await asyncio.gather(
                manager.submit(session.id, "1"),
                manager.submit(session.id, auto=True),
            )
            await manager.close_all()
            return results

        first, second = asyncio.run(scenario())
        assert first == second
        assert first.is_auto_submit is False
        assert len(backend.calls_to("POST", "/api/v1/tests/complete-session")) == 1

    def test_failed_sync_is_retried_on_next_submit(self, backend):
        backend.responses[("POST", "/api/v1/tests/complete-session")] = BackendError(
            503, "Failed to submit test"
        )

        async def scenario():
            manager = SessionManager(second=TICK)
            session = make_session(duration=30)
            manager.register(session, backend, "tok")
            manager.start(session.id, "1")
            with pytest.raises(BackendError):
                await manager.submit(session.id, "1")
            assert session.status == es.SUBMITTED
            backend.responses.pop(("POST", "/api/v1/tests/complete-session"))
            result = await manager.submit(session.id, "1")
            await manager.close_all()
            return result

        result = asyncio.run(scenario())
        assert result.unattempted == 3
        assert len(backend.calls_to("POST", "/api/v1/tests/complete-session")) == 2

    def test_ownership_and_lookup(self, backend):
        manager = SessionManager()
        session = make_session()
        manager.register(session, backend, "tok")
        assert manager.get("42", "1") is session
        with pytest.raises(SessionForbidden):
            manager.get("42", "2")
        with pytest.raises(SessionNotFound):
            manager.get("7")

    def test_discard_removes_session(self, backend):
        async def scenario():
            manager = SessionManager(second=TICK)
            session = make_session(duration=30)
            manager.register(session, backend, "tok")
            manager.start(session.id, "1")
            await manager.discard(session.id, "1")
            return manager

        manager = asyncio.run(scenario())
        assert len(manager) == 0


class TestRetention:
    def test_submitted_sessions_are_evicted_after_retention(self, backend):
        now = [0.0]

        async def scenario():
            manager = SessionManager(second=TICK, retention=60, clock=lambda: now[0])
            for n in range(50):
                session = make_session(duration=30, session_id=str(n))
                manager.register(session, backend, "tok")
                manager.start(session.id, "1")
                await manager.submit(session.id, "1")
            now[0] = 59
            early = manager.evict_expired()
            now[0] = 61
            evicted = manager.evict_expired()
            await manager.close_all()
            return early, evicted, len(manager)

        early, evicted, remaining = asyncio.run(scenario())
        assert early == 0
        assert evicted == 50
        assert remaining == 0

    def test_never_started_sessions_expire(self, backend):
        now = [0.0]

        async def scenario():
            manager = SessionManager(second=TICK, unstarted_ttl=30, clock=lambda: now[0])
            idle = make_session(duration=30, session_id="1")
            live = make_session(duration=30, session_id="2")
            manager.register(idle, backend, "tok")
            manager.register(live, backend, "tok")
            manager.start(live.id, "1")
            now[0] = 31
            evicted = manager.evict_expired()
            with pytest.raises(SessionNotFound):
                manager.get("1")
            still_live = manager.get("2") is live
            await manager.close_all()
            return evicted, still_live

        assert asyncio.run(scenario()) == (1, True)

    def test_registering_sweeps_expired_sessions(self, backend):
        now = [0.0]
        manager = SessionManager(unstarted_ttl=30, clock=lambda: now[0])
        manager.register(make_session(session_id="1"), backend, "tok")
        now[0] = 45
        manager.register(make_session(session_id="2"), backend, "tok")
        assert len(manager) == 1

    def test_reaper_runs_until_close(self, backend):
        async def scenario():
            manager = SessionManager(unstarted_ttl=0)
            manager.register(make_session(session_id="1"), backend, "tok")
            manager.start_reaper(interval=TICK)
            await wait_for(lambda: len(manager) == 0)
            await manager.close_all()
            return manager._reaper

        assert asyncio.run(scenario()) is None
