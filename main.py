"""
HP Exam Portal – FastAPI gateway

Sits between the portal UI and the HP exam REST backend:

  /api/test-sessions          timed mock tests (state, timers, scoring)
  /api/study-materials        study-library browser
  /api/analytics              student performance charts and backend feeds
  /api/admin/...              content scraping, content analysis, exams,
                              materials, system analytics

Test sessions live in this process (see session_runner.py); everything else
is forwarded to the backend with the caller's bearer token.
"""

import logging
from typing import Literal, Optional, Union

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

import analytics
import content_analysis
import exams
import materials
import scraping
from auth import get_current_user
from backend import BackendClient, BackendError, get_backend
from config import LOG_LEVEL, PORT
from exam_session import (
    SUBMITTED, InvalidTransition, SessionError, TestSession, TestSettings,
    question_from_backend,
)
from filters import as_list
from session_runner import SessionManager, SessionNotFound

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
LOGGER = logging.getLogger("hp_portal.api")

# ──────────────────────────────────────────────
# App setup
# ──────────────────────────────────────────────

app = FastAPI(title="HP Exam Portal")

app.include_router(scraping.router)
app.include_router(content_analysis.router)
app.include_router(exams.router)
app.include_router(materials.router)
app.include_router(materials.admin_router)
app.include_router(analytics.router)
app.include_router(analytics.admin_router)


@app.on_event("startup")
async def on_startup():
    app.state.backend  = BackendClient()
    app.state.sessions = SessionManager()
    app.state.sessions.start_reaper()
    LOGGER.info("portal started")


@app.on_event("shutdown")
async def on_shutdown():
    await app.state.sessions.close_all()
    await app.state.backend.aclose()


@app.exception_handler(BackendError)
async def backend_error_handler(request: Request, exc: BackendError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message, "detail": exc.detail},
    )


@app.exception_handler(SessionError)
async def session_error_handler(request: Request, exc: SessionError):
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc)})


def get_sessions(request: Request) -> SessionManager:
    return request.app.state.sessions


# ──────────────────────────────────────────────
# Pydantic request models
# ──────────────────────────────────────────────

class CreateSessionRequest(BaseModel):
    exam_id: Union[int, str]
    subject_id: Union[int, str]
    title: str = "Mock Test"
    description: str = ""
    exam_category: str = ""
    subject: Optional[str] = None
    duration: int = Field(60, gt=0)            # minutes
    question_limit: Optional[int] = Field(None, gt=0)
    marks_per_question: float = 1.0
    negative_marks: float = 0.0
    negative_marking_enabled: bool = True
    allow_review: bool = True
    allow_question_navigation: bool = True
    settings: TestSettings = TestSettings()
    start: bool = False


class AnswerRequest(BaseModel):
    option_id: str
    question_id: Optional[str] = None


class QuestionRequest(BaseModel):
    question_id: Optional[str] = None


class NavigateRequest(BaseModel):
    action: Literal["next", "previous", "direct"]
    index: Optional[int] = None


class KeyRequest(BaseModel):
    key: str
    ctrl: bool = False
    meta: bool = False
    in_text_input: bool = False


# ──────────────────────────────────────────────
# Routes
# ──────────────────────────────────────────────

@app.get("/health")
async def health(sessions: SessionManager = Depends(get_sessions)):
    return {"status": "ok", "live_sessions": len(sessions)}


# ── Test session API ──────────────────────────

@app.post("/api/test-sessions")
async def api_create_session(
    body: CreateSessionRequest,
    current_user: dict = Depends(get_current_user),
    backend: BackendClient = Depends(get_backend),
    sessions: SessionManager = Depends(get_sessions),
):
    """Load the question set, open a backend session, and register it locally."""
    token = current_user["token"]
    raw = await backend.get(
        f"/api/v1/tests/questions/{body.exam_id}/{body.subject_id}",
        token=token,
        action="load questions",
        params={"limit": body.question_limit},
    )
    rows = as_list(raw, "questions")
    if body.question_limit:
        rows = rows[:body.question_limit]
    if not rows:
        raise HTTPException(status_code=404, detail="No questions available for this test.")

    questions = [
        question_from_backend(row, num, body.marks_per_question, body.negative_marks)
        for num, row in enumerate(rows, start=1)
    ]
    created = await backend.post(
        "/api/v1/tests/create-session",
        token=token,
        action="create test session",
        json={
            "exam_type":       body.exam_category or str(body.exam_id),
            "subject":         body.subject or str(body.subject_id),
            "total_questions": len(questions),
        },
    )
    session_id = created.get("id") if isinstance(created, dict) else None
    if session_id is None:
        raise BackendError(502, "Failed to create test session", "Backend returned no session id.")

    session = TestSession(
        str(session_id),
        current_user["user_id"],
        body.title,
        questions,
        body.duration,
        test_id=f"{body.exam_id}/{body.subject_id}",
        exam_category=body.exam_category,
        subject=body.subject,
        description=body.description,
        settings=body.settings,
        negative_marking_enabled=body.negative_marking_enabled,
        allow_review=body.allow_review,
        allow_question_navigation=body.allow_question_navigation,
    )
    sessions.register(session, backend, token)
    if body.start:
        sessions.start(session.id, current_user["user_id"])
    return session.view()


@app.get("/api/test-sessions/{session_id}")
async def api_get_session(
    session_id: str,
    current_user: dict = Depends(get_current_user),
    sessions: SessionManager = Depends(get_sessions),
):
    return sessions.get(session_id, current_user["user_id"]).view()


@app.post("/api/test-sessions/{session_id}/start")
async def api_start_session(
    session_id: str,
    current_user: dict = Depends(get_current_user),
    sessions: SessionManager = Depends(get_sessions),
):
    return sessions.start(session_id, current_user["user_id"]).view()


@app.post("/api/test-sessions/{session_id}/pause")
async def api_pause_session(
    session_id: str,
    current_user: dict = Depends(get_current_user),
    sessions: SessionManager = Depends(get_sessions),
):
    session = sessions.get(session_id, current_user["user_id"])
    session.pause()
    return session.view()


@app.post("/api/test-sessions/{session_id}/resume")
async def api_resume_session(
    session_id: str,
    current_user: dict = Depends(get_current_user),
    sessions: SessionManager = Depends(get_sessions),
):
    session = sessions.get(session_id, current_user["user_id"])
    session.resume()
    return session.view()


@app.post("/api/test-sessions/{session_id}/answer")
async def api_answer(
    session_id: str,
    body: AnswerRequest,
    current_user: dict = Depends(get_current_user),
    sessions: SessionManager = Depends(get_sessions),
):
    session = sessions.get(session_id, current_user["user_id"])
    response = session.answer(body.option_id, body.question_id)
    return {"response": response.model_dump(), "progress": session.progress().model_dump()}


@app.post("/api/test-sessions/{session_id}/clear")
async def api_clear_answer(
    session_id: str,
    body: QuestionRequest,
    current_user: dict = Depends(get_current_user),
    sessions: SessionManager = Depends(get_sessions),
):
    session = sessions.get(session_id, current_user["user_id"])
    response = session.clear_answer(body.question_id)
    return {"response": response.model_dump(), "progress": session.progress().model_dump()}


@app.post("/api/test-sessions/{session_id}/review")
async def api_toggle_review(
    session_id: str,
    body: QuestionRequest,
    current_user: dict = Depends(get_current_user),
    sessions: SessionManager = Depends(get_sessions),
):
    session = sessions.get(session_id, current_user["user_id"])
    marked = session.toggle_review(body.question_id)
    return {"is_marked_for_review": marked, "progress": session.progress().model_dump()}


@app.post("/api/test-sessions/{session_id}/navigate")
async def api_navigate(
    session_id: str,
    body: NavigateRequest,
    current_user: dict = Depends(get_current_user),
    sessions: SessionManager = Depends(get_sessions),
):
    session = sessions.get(session_id, current_user["user_id"])
    if body.action == "next":
        moved = session.next_question()
    elif body.action == "previous":
        moved = session.previous_question()
    else:
        if body.index is None:
            raise HTTPException(status_code=400, detail="index is required for direct navigation.")
        session.navigate(body.index)
        moved = True
    return {"moved": moved, "session": session.view()}


@app.post("/api/test-sessions/{session_id}/keys")
async def api_key_press(
    session_id: str,
    body: KeyRequest,
    current_user: dict = Depends(get_current_user),
    sessions: SessionManager = Depends(get_sessions),
):
    session = sessions.get(session_id, current_user["user_id"])
    action = session.handle_key(body.key, body.ctrl, body.meta, body.in_text_input)
    saved = None
    if action == "save":
        saved = await sessions.save(session_id, current_user["user_id"])
    return {"action": action, "save": saved, "session": session.view()}


@app.post("/api/test-sessions/{session_id}/save")
async def api_save_progress(
    session_id: str,
    current_user: dict = Depends(get_current_user),
    sessions: SessionManager = Depends(get_sessions),
):
    return await sessions.save(session_id, current_user["user_id"])


@app.post("/api/test-sessions/{session_id}/submit")
async def api_submit_session(
    session_id: str,
    current_user: dict = Depends(get_current_user),
    sessions: SessionManager = Depends(get_sessions),
):
    """Submit and score the test.

    A second submit returns the stored result; if the first one failed to
    reach the backend, the second retries the upstream sync.
    """
    result = await sessions.submit(session_id, current_user["user_id"])
    return {"result": result.model_dump(), "session": sessions.get(session_id).view()}


@app.get("/api/test-sessions/{session_id}/result")
async def api_session_result(
    session_id: str,
    current_user: dict = Depends(get_current_user),
    backend: BackendClient = Depends(get_backend),
    sessions: SessionManager = Depends(get_sessions),
):
    """Full result while the session is retained here, the backend's stored result after."""
    try:
        session = sessions.get(session_id, current_user["user_id"])
    except SessionNotFound:
        stored = await _stored_result(backend, current_user["token"], session_id)
        return {"result": stored, "source": "backend"}
    if session.status != SUBMITTED:
        raise InvalidTransition("Results are available once the test is submitted.")
    return {
        "result":    session.result.model_dump(),
        "questions": [session.question_view(q) for q in session.questions],
        "responses": [r.model_dump() for r in session.responses],
    }


@app.delete("/api/test-sessions/{session_id}")
async def api_discard_session(
    session_id: str,
    current_user: dict = Depends(get_current_user),
    sessions: SessionManager = Depends(get_sessions),
):
    await sessions.discard(session_id, current_user["user_id"])
    return {"ok": True}


async def _stored_result(backend: BackendClient, token: str, session_id: str):
    return await backend.get(f"/api/v1/tests/results/{session_id}", token=token,
                             action="fetch test results")


@app.get("/api/test-results/{session_id}")
async def api_backend_result(
    session_id: str,
    current_user: dict = Depends(get_current_user),
    backend: BackendClient = Depends(get_backend),
):
    """Stored result of a completed session, as recorded by the backend."""
    return await _stored_result(backend, current_user["token"], session_id)


# ──────────────────────────────────────────────
# Local dev entry-point
# ──────────────────────────────────────────────

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=PORT)
