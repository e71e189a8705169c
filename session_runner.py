"""
Live test sessions: countdown + auto-save tasks and the per-process registry.

Each registered session gets a SessionRunner owning two asyncio tasks:

  countdown – takes elapsed seconds (measured on a monotonic clock) off the
              session while it is in progress and auto-submits it when the
              clock reaches zero.
  auto-save – every ``settings.auto_save_interval`` seconds pushes answers
              changed since the last save, paused or not.  Runs independently
              of the countdown; failures are logged and the loop keeps going.

Submission is serialised per session with an asyncio.Lock, so a user submit
racing the auto-submit completes the session exactly once.

Submitted sessions stay in the registry for ``retention`` seconds so the
result page can be reloaded; after that the backend's stored result is the
source of truth.  Sessions that are never started expire after
``unstarted_ttl`` seconds.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from backend import BackendClient, BackendError
from config import SESSION_RETENTION_SECONDS, SESSION_SWEEP_INTERVAL, UNSTARTED_SESSION_TTL
from exam_session import NOT_STARTED, SUBMITTED, SessionError, TestResult, TestSession

LOGGER = logging.getLogger("hp_portal.sessions")


class SessionNotFound(SessionError):
    status_code = 404


class SessionForbidden(SessionError):
    status_code = 403


class SessionRunner:
    def __init__(
        self,
        session: TestSession,
        save: Callable[[], Awaitable[dict]],
        submit: Callable[[bool], Awaitable[TestResult]],
        second: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """``second`` is the wall-clock length of one session second."""
        self.session = session
        self._save   = save
        self._submit = submit
        self._second = second
        self._sleep  = sleep
        self._clock  = clock
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks.append(asyncio.create_task(self._countdown()))
        if self.session.settings.auto_save_interval > 0:
            self._tasks.append(asyncio.create_task(self._autosave()))

    async def stop(self) -> None:
        current = asyncio.current_task()
        pending = [t for t in self._tasks if t is not current and not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _countdown(self) -> None:
        last  = self._clock()
        carry = 0.0
        while self.session.status != SUBMITTED:
            await self._sleep(self._second)
            now = self._clock()
            # A late wake-up carries all the time that really passed.
            carry += (now - last) / self._second
            last = now
            elapsed = int(carry)
            if elapsed < 1:
                continue
            carry -= elapsed
            if self.session.tick(elapsed):
                LOGGER.info("session %s: time is up, auto-submitting", self.session.id)
                try:
                    await self._submit(True)
                except (BackendError, SessionError) as exc:
                    LOGGER.warning("session %s: auto-submit failed: %s", self.session.id, exc)
                return

    async def _autosave(self) -> None:
        interval = self.session.settings.auto_save_interval * self._second
        while self.session.status != SUBMITTED:
            await self._sleep(interval)
            if self.session.status == SUBMITTED:
                return
            try:
                await self._save()
            except BackendError as exc:
                LOGGER.warning("session %s: auto-save failed: %s", self.session.id, exc.message)


class _Entry:
    def __init__(self, session: TestSession, backend: BackendClient, token: str, created_at: float):
        self.session    = session
        self.backend    = backend
        self.token      = token
        self.lock       = asyncio.Lock()
        self.runner: Optional[SessionRunner] = None
        self.synced     = False
        self.created_at = created_at
        self.closed_at: Optional[float] = None


class SessionManager:
    """Registry of live sessions, keyed by the backend's session id."""

    def __init__(
        self,
        second: float = 1.0,
        retention: float = SESSION_RETENTION_SECONDS,
        unstarted_ttl: float = UNSTARTED_SESSION_TTL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.retention     = retention
        self.unstarted_ttl = unstarted_ttl
        self._second  = second
        self._clock   = clock
        self._entries: dict[str, _Entry] = {}
        self._reaper: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._entries)

    def register(self, session: TestSession, backend: BackendClient, token: str) -> TestSession:
        self.evict_expired()
        entry = _Entry(session, backend, token, self._clock())
        entry.runner = SessionRunner(
            session,
            save=lambda: self.save(session.id),
            submit=lambda auto: self.submit(session.id, auto=auto),
            second=self._second,
        )
        self._entries[session.id] = entry
        LOGGER.info("session %s registered for user %s (%d questions)",
                    session.id, session.user_id, session.total_questions)
        return session

    def get(self, session_id: str, user_id: Optional[str] = None) -> TestSession:
        return self._entry(session_id, user_id).session

    def start(self, session_id: str, user_id: Optional[str] = None) -> TestSession:
        entry = self._entry(session_id, user_id)
        entry.session.start()
        entry.runner.start()
        return entry.session

    async def save(self, session_id: str, user_id: Optional[str] = None) -> dict:
        entry = self._entry(session_id, user_id)
        async with entry.lock:
            entry.session.sync_question_time()
            saved = await self._push_answers(entry)
        return {
            "saved":    saved,
            "pending":  len(entry.session.pending_answers()),
            "saved_at": datetime.now(timezone.utc).replace(microsecond=0).isoformat(),
        }

    async def submit(
        self,
        session_id: str,
        user_id: Optional[str] = None,
        auto: bool = False,
    ) -> TestResult:
        """Submit once; later calls return the stored result and retry the upstream sync."""
        entry = self._entry(session_id, user_id)
        async with entry.lock:
            session = entry.session
            if session.status != SUBMITTED:
                session.submit(auto=auto)
                entry.closed_at = self._clock()
                LOGGER.info("session %s submitted (auto=%s, score=%s)",
                            session.id, auto, session.result.obtained_marks)
            await entry.runner.stop()
            if not entry.synced:
                await self._push_answers(entry)
                await self._complete(entry)
                entry.synced = True
            return session.result

    async def discard(self, session_id: str, user_id: Optional[str] = None) -> None:
        entry = self._entry(session_id, user_id)
        await entry.runner.stop()
        self._entries.pop(session_id, None)
        LOGGER.info("session %s discarded", session_id)

    async def close_all(self) -> None:
        if self._reaper is not None:
            self._reaper.cancel()
            await asyncio.gather(self._reaper, return_exceptions=True)
            self._reaper = None
        for entry in list(self._entries.values()):
            await entry.runner.stop()
        self._entries.clear()

    # ── Retention ─────────────────────────────

    def evict_expired(self) -> int:
        """Drop submitted sessions past ``retention`` and never-started ones past ``unstarted_ttl``."""
        now = self._clock()
        stale = [sid for sid, entry in self._entries.items() if self._is_stale(entry, now)]
        for sid in stale:
            entry = self._entries.pop(sid)
            if entry.session.status == SUBMITTED and not entry.synced:
                LOGGER.warning("session %s evicted before its result reached the backend", sid)
        if stale:
            LOGGER.info("evicted %d expired session(s), %d live", len(stale), len(self._entries))
        return len(stale)

    def start_reaper(self, interval: float = SESSION_SWEEP_INTERVAL) -> None:
        if self._reaper is None:
            self._reaper = asyncio.create_task(self._reap(interval))

    async def _reap(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.evict_expired()

    def _is_stale(self, entry: _Entry, now: float) -> bool:
        # Submitted and never-started sessions have no running tasks.
        if entry.lock.locked():
            return False
        status = entry.session.status
        if status == SUBMITTED:
            return entry.closed_at is not None and now - entry.closed_at >= self.retention
        if status == NOT_STARTED:
            return now - entry.created_at >= self.unstarted_ttl
        return False

    # ── Internals ─────────────────────────────

    def _entry(self, session_id: str, user_id: Optional[str]) -> _Entry:
        entry = self._entries.get(str(session_id))
        if entry is None:
            raise SessionNotFound("Test session not found.")
        if user_id is not None and entry.session.user_id != str(user_id):
            raise SessionForbidden("Forbidden.")
        return entry

    async def _push_answers(self, entry: _Entry) -> int:
        saved = 0
        for item in entry.session.pending_answers():
            await entry.backend.post(
                "/api/v1/tests/submit-answer",
                token=entry.token,
                action="save progress",
                json={"session_id": _backend_id(entry.session.id), **item},
            )
            entry.session.mark_saved([item])
            saved += 1
        return saved

    async def _complete(self, entry: _Entry) -> None:
        session = entry.session
        result  = session.result
        await entry.backend.post(
            "/api/v1/tests/complete-session",
            token=entry.token,
            action="submit test",
            json={
                "session_id":      _backend_id(session.id),
                "score":           result.obtained_marks,
                "correct_answers": result.correct_answers,
                "total_questions": session.total_questions,
                "time_taken":      session.time_taken_seconds,
            },
        )


def _backend_id(session_id: str):
    return int(session_id) if session_id.isdigit() else session_id
