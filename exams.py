"""
Exam management admin (the /admin/tests dashboard).
"""

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, field_validator

from auth import require_admin
from backend import BackendClient, BackendError, get_backend
from filters import as_list, field_equals, split_csv, text_matches

LOGGER = logging.getLogger("hp_portal.exams")

router = APIRouter(prefix="/api/admin/exams")

EXAMS = "/api/v1/admin/exams"

EXAM_CATEGORIES = [
    "HPPSC", "HPSSC", "HPTET", "HPBOSE", "JBT", "TGT", "PGT", "Clerk",
    "Constable", "Forest Guard", "JE", "Patwari", "Allied Services", "General",
]

FIXTURE_EXAM_STATS = {
    "total_exams":         156,
    "active_exams":        142,
    "total_attempts":      28567,
    "avg_completion_rate": 78.5,
}


def filter_exams(
    exams: list[dict],
    search: Optional[str] = None,
    category: Optional[str] = None,
    status: Optional[str] = None,
    subject: Optional[str] = None,
    difficulty: Optional[str] = None,
) -> list[dict]:
    return [
        e for e in exams
        if text_matches(search, e.get("title"), e.get("description"), e.get("tags"))
        and field_equals(e, "category", category)
        and field_equals(e, "status", status)
        and field_equals(e, "subject", subject)
        and field_equals(e, "difficulty", difficulty)
    ]


class ExamRequest(BaseModel):
    title: str
    description: str = ""
    subject: str
    category: str
    difficulty: Literal["beginner", "intermediate", "advanced"] = "beginner"
    duration: int = 60
    total_questions: int = 50
    passing_score: int = 40
    status: Literal["active", "inactive", "draft"] = "draft"
    is_public: bool = True
    tags: list[str] = []

    @field_validator("tags", mode="before")
    @classmethod
    def _tags(cls, value):
        return split_csv(value)

    @field_validator("title", "subject", "category")
    @classmethod
    def _required(cls, value: str):
        if not value.strip():
            raise ValueError("must not be blank")
        return value.strip()


class ExamStatusRequest(BaseModel):
    status: Literal["active", "inactive"]


@router.get("")
async def api_list_exams(
    skip: int = 0,
    limit: int = 100,
    search: str = "",
    subject: str = "all",
    difficulty: str = "all",
    status: str = "all",
    category: str = "all",
    admin: dict = Depends(require_admin),
    backend: BackendClient = Depends(get_backend),
):
    params = {
        "skip":       skip,
        "limit":      limit,
        "search":     search,
        "subject":    None if subject == "all" else subject,
        "difficulty": None if difficulty == "all" else difficulty,
        "status":     None if status == "all" else status,
        "category":   None if category == "all" else category,
    }
    data = await backend.get(EXAMS, token=admin["token"], action="fetch exams", params=params)
    exams = as_list(data, "exams")
    filtered = filter_exams(exams, search, category, status, subject, difficulty)
    return {"exams": filtered, "total": len(exams), "count": len(filtered)}


@router.get("/stats")
async def api_exam_stats(
    admin: dict = Depends(require_admin),
    backend: BackendClient = Depends(get_backend),
):
    try:
        return await backend.get(f"{EXAMS}/stats", token=admin["token"], action="load exam stats")
    except BackendError:
        LOGGER.info("exam stats unavailable upstream, serving fixture stats")
        return {**FIXTURE_EXAM_STATS, "source": "fixture"}


@router.get("/categories")
async def api_exam_categories(admin: dict = Depends(require_admin)):
    return EXAM_CATEGORIES


@router.post("")
async def api_create_exam(
    body: ExamRequest,
    admin: dict = Depends(require_admin),
    backend: BackendClient = Depends(get_backend),
):
    exam = await backend.post(EXAMS, token=admin["token"], action="create exam",
                              json=body.model_dump())
    LOGGER.info("exam %r created by %s", body.title, admin["email"])
    return exam


@router.put("/{exam_id}")
async def api_update_exam(
    exam_id: str,
    body: ExamRequest,
    admin: dict = Depends(require_admin),
    backend: BackendClient = Depends(get_backend),
):
    return await backend.put(f"{EXAMS}/{exam_id}", token=admin["token"], action="update exam",
                             json=body.model_dump())


@router.delete("/{exam_id}")
async def api_delete_exam(
    exam_id: str,
    admin: dict = Depends(require_admin),
    backend: BackendClient = Depends(get_backend),
):
    await backend.delete(f"{EXAMS}/{exam_id}", token=admin["token"], action="delete exam")
    return {"message": "Exam deleted successfully"}


@router.post("/{exam_id}/activate")
async def api_activate_exam(
    exam_id: str,
    admin: dict = Depends(require_admin),
    backend: BackendClient = Depends(get_backend),
):
    return await backend.post(f"{EXAMS}/{exam_id}/activate", token=admin["token"],
                              action="activate exam")


@router.patch("/{exam_id}/status")
async def api_set_exam_status(
    exam_id: str,
    body: ExamStatusRequest,
    admin: dict = Depends(require_admin),
    backend: BackendClient = Depends(get_backend),
):
    result = await backend.patch(f"{EXAMS}/{exam_id}/status", token=admin["token"],
                                 action="update exam status", json={"status": body.status})
    verb = "activated" if body.status == "active" else "deactivated"
    return {"ok": True, "message": f"Exam {verb} successfully", "result": result}
