"""
materials.py – study-library browser and the admin materials dashboard

Public browser (``/api/study-materials``): forwards server-side filters to the
backend's study library, then re-filters, sorts and pages the result locally so
the UI can infinite-scroll with ``next_offset``.

Admin dashboard (``/api/admin/materials``): list/create/update/delete and the
stats card.  Uploaded PDFs are opened with pdfplumber before forwarding so the
admin sees a page count and a text preview straight away.
"""

import logging
import math
import os
import tempfile
from datetime import datetime
from typing import Optional

import pdfplumber
from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile
from fastapi.concurrency import run_in_threadpool

from auth import get_optional_user, require_admin
from backend import BackendClient, BackendError, get_backend
from config import UPLOAD_PREVIEW_CHARS
from filters import as_list, field_equals, is_unset, paginate, parse_timestamp, text_matches

LOGGER = logging.getLogger("hp_portal.materials")

router = APIRouter(prefix="/api/study-materials")
admin_router = APIRouter(prefix="/api/admin/materials")

LIBRARY   = "/api/v1/study-library"
MATERIALS = "/api/v1/admin/materials"

SORT_FIELDS = {
    "newest":    "created_at",
    "popular":   "view_count",
    "downloads": "download_count",
    "rating":    "rating_average",
    "title":     "title",
}

EMPTY_LIBRARY_STATS = {
    "total_materials":        0,
    "total_previous_papers":  0,
    "total_mock_test_series": 0,
    "total_answer_keys":      0,
    "materials_by_exam":      [],
    "materials_by_type":      [],
    "latest_additions":       [],
}

FIXTURE_MATERIAL_STATS = {
    "total_materials":     487,
    "published_materials": 423,
    "pending_materials":   64,
    "subjects_covered":    12,
    "total_views":         73250,
    "total_downloads":     21890,
    "materials_by_subject": [
        {"subject": "General Knowledge", "count": 89},
        {"subject": "Himachal Pradesh",  "count": 67},
        {"subject": "Current Affairs",   "count": 78},
        {"subject": "Mathematics",       "count": 45},
        {"subject": "English",           "count": 56},
        {"subject": "Hindi",             "count": 34},
        {"subject": "History",           "count": 42},
        {"subject": "Geography",         "count": 38},
        {"subject": "Polity",            "count": 25},
        {"subject": "Economics",         "count": 13},
    ],
    "materials_by_type": [
        {"type": "Question Papers", "count": 234},
        {"type": "Study Notes",     "count": 156},
        {"type": "Current Affairs", "count": 67},
        {"type": "Mock Tests",      "count": 30},
    ],
    "recent_uploads":    23,
    "analysis_progress": 87.5,
}

# (label, share of total, value used when the share rounds down to zero)
_SUBJECT_SHARES = [
    ("General Knowledge", 0.30, 50),
    ("Himachal Pradesh",  0.25, 40),
    ("Current Affairs",   0.20, 30),
    ("Mathematics",       0.15, 25),
    ("English",           0.10, 20),
]
_TYPE_SHARES = [
    ("Question Papers", 0.60, 80),
    ("Study Notes",     0.25, 35),
    ("Current Affairs", 0.15, 21),
]


# ──────────────────────────────────────────────
# Browser helpers
# ──────────────────────────────────────────────

def _same(item: dict, field: str, wanted) -> bool:
    return is_unset(wanted) or str(item.get(field)) == str(wanted)


def filter_materials(
    items: list[dict],
    *,
    exam_id=None,
    subject_id=None,
    material_type: Optional[str] = None,
    difficulty_level: Optional[str] = None,
    language: Optional[str] = None,
    year: Optional[int] = None,
    search: Optional[str] = None,
    min_rating: Optional[float] = None,
    featured_only: bool = False,
    premium_only: bool = False,
) -> list[dict]:
    out = []
    for m in items:
        if not (_same(m, "exam_id", exam_id) and _same(m, "subject_id", subject_id)):
            continue
        if not (field_equals(m, "material_type", material_type)
                and field_equals(m, "difficulty_level", difficulty_level)
                and field_equals(m, "language", language)):
            continue
        if year is not None and m.get("year") != year:
            continue
        if not text_matches(search, m.get("title"), m.get("description"),
                            m.get("exam_name"), m.get("subject_name"), m.get("topic_name")):
            continue
        if min_rating is not None and float(m.get("rating_average") or 0) < min_rating:
            continue
        if featured_only and not m.get("is_featured"):
            continue
        if premium_only and not m.get("is_premium"):
            continue
        out.append(m)
    return out


def sort_materials(items: list[dict], sort_by: str = "newest", direction: str = "desc") -> list[dict]:
    field = SORT_FIELDS.get(sort_by, "created_at")
    if field == "created_at":
        def key(m):
            ts = parse_timestamp(m.get("created_at"))
            return ts.replace(tzinfo=None) if ts else datetime.min
    elif field == "title":
        def key(m):
            return str(m.get("title") or "").lower()
    else:
        def key(m):
            return float(m.get(field) or 0)
    return sorted(items, key=key, reverse=(direction != "asc"))


# ──────────────────────────────────────────────
# Admin helpers
# ──────────────────────────────────────────────

def filter_admin_materials(
    items: list[dict],
    search: Optional[str] = None,
    subject: Optional[str] = None,
    type_: Optional[str] = None,
    status: Optional[str] = None,
) -> list[dict]:
    return [
        m for m in items
        if text_matches(search, m.get("title"), m.get("description"), m.get("tags"))
        and field_equals(m, "subject", subject)
        and field_equals(m, "type", type_)
        and field_equals(m, "status", status)
    ]


def material_stats_from_analysis(raw: dict) -> dict:
    """Map the content library's analysis counters onto the materials stats card."""
    total      = int(raw.get("total_content") or 0)
    unanalyzed = int(raw.get("unanalyzed_content") or 0)
    return {
        "total_materials":     total,
        "published_materials": int(raw.get("valuable_content") or 0),
        "pending_materials":   unanalyzed,
        "draft_materials":     math.floor(unanalyzed * 0.3),
        "subjects_covered":    len(_SUBJECT_SHARES),
        "total_views":         total * 150,
        "total_downloads":     total * 45,
        "avg_rating":          4.2,
        "materials_by_subject": [
            {"subject": name, "count": math.floor(total * share) or floor}
            for name, share, floor in _SUBJECT_SHARES
        ],
        "materials_by_type": [
            {"type": name, "count": math.floor(total * share) or floor}
            for name, share, floor in _TYPE_SHARES
        ],
        "recent_uploads":    math.floor(total * 0.1) or 12,
        "analysis_progress": raw.get("analysis_percentage") or 0,
    }


def inspect_pdf(data: bytes, preview_chars: int = UPLOAD_PREVIEW_CHARS) -> dict:
    """Page count and the first *preview_chars* of extracted text."""
    with tempfile.NamedTemporaryFile(delete=False, suffix=".pdf") as tmp:
        tmp.write(data)
        tmp_path = tmp.name

    try:
        with pdfplumber.open(tmp_path) as pdf:
            page_count = len(pdf.pages)
            text = ""
            for page in pdf.pages:
                text += (page.extract_text() or "") + "\n"
                if len(text) >= preview_chars:
                    break
    finally:
        os.unlink(tmp_path)

    return {"page_count": page_count, "preview": text.strip()[:preview_chars]}


async def _material_form(
    title: str,
    description: str,
    subject: str,
    topic: str,
    difficulty: str,
    type_: str,
    status: str,
    tags: str,
    file: Optional[UploadFile],
) -> tuple[dict, Optional[dict], Optional[dict]]:
    """Build the multipart payload; returns ``(fields, files, pdf_info)``."""
    fields = {
        "title":       title,
        "description": description,
        "subject":     subject,
        "topic":       topic,
        "difficulty":  difficulty,
        "type":        type_,
        "status":      status,
        "tags":        tags,
    }
    if file is None or not file.filename:
        return fields, None, None

    content = await file.read()
    pdf_info = None
    if file.filename.lower().endswith(".pdf"):
        try:
            pdf_info = await run_in_threadpool(inspect_pdf, content)
        except Exception as exc:
            raise HTTPException(status_code=400, detail=f"PDF read error: {exc}") from exc
        fields["page_count"] = str(pdf_info["page_count"])

    files = {"file": (file.filename, content, file.content_type or "application/octet-stream")}
    return fields, files, pdf_info


# ──────────────────────────────────────────────
# Study-library browser routes
# ──────────────────────────────────────────────

@router.get("")
async def api_browse_materials(
    exam_id: Optional[int] = None,
    subject_id: Optional[int] = None,
    material_type: str = "",
    difficulty_level: str = "",
    language: str = "",
    year: Optional[int] = None,
    search: str = "",
    min_rating: Optional[float] = None,
    featured_only: bool = False,
    premium_only: bool = False,
    sort_by: str = "newest",
    sort_direction: str = "desc",
    offset: int = Query(0, ge=0),
    limit: int = Query(12, ge=1, le=100),
    user: Optional[dict] = Depends(get_optional_user),
    backend: BackendClient = Depends(get_backend),
):
    server_filters = {
        "exam_id":          exam_id,
        "subject_id":       subject_id,
        "material_type":    None if is_unset(material_type) else material_type,
        "difficulty_level": None if is_unset(difficulty_level) else difficulty_level,
        "language":         None if is_unset(language) else language,
        "year":             year,
        "search":           search,
    }
    data = await backend.get(
        f"{LIBRARY}/materials",
        token=user["token"] if user else None,
        action="fetch study materials",
        params=server_filters,
    )
    items = filter_materials(
        as_list(data, "materials"),
        **server_filters,
        min_rating=min_rating,
        featured_only=featured_only,
        premium_only=premium_only,
    )
    return paginate(sort_materials(items, sort_by, sort_direction), offset, limit)


@router.get("/stats")
async def api_library_stats(
    user: Optional[dict] = Depends(get_optional_user),
    backend: BackendClient = Depends(get_backend),
):
    try:
        return await backend.get(f"{LIBRARY}/stats", token=user["token"] if user else None,
                                 action="fetch study library stats")
    except BackendError:
        LOGGER.info("study library stats unavailable, serving empty stats")
        return dict(EMPTY_LIBRARY_STATS)


@router.get("/previous-papers")
async def api_previous_papers(
    exam_id: Optional[int] = None,
    user: Optional[dict] = Depends(get_optional_user),
    backend: BackendClient = Depends(get_backend),
):
    data = await backend.get(f"{LIBRARY}/previous-papers", token=user["token"] if user else None,
                             action="fetch previous papers", params={"exam_id": exam_id})
    return as_list(data, "materials", "papers")


@router.get("/{material_id}")
async def api_get_material(
    material_id: str,
    user: Optional[dict] = Depends(get_optional_user),
    backend: BackendClient = Depends(get_backend),
):
    return await backend.get(f"{LIBRARY}/materials/{material_id}",
                             token=user["token"] if user else None, action="fetch material")


@router.post("/{material_id}/download")
async def api_download_material(
    material_id: str,
    user: Optional[dict] = Depends(get_optional_user),
    backend: BackendClient = Depends(get_backend),
):
    return await backend.post(f"{LIBRARY}/materials/{material_id}/download",
                              token=user["token"] if user else None, action="download material")


# ──────────────────────────────────────────────
# Admin routes
# ──────────────────────────────────────────────

@admin_router.get("")
async def api_admin_list_materials(
    skip: int = 0,
    limit: int = 100,
    search: str = "",
    subject: str = "all",
    type: str = "all",
    status: str = "all",
    admin: dict = Depends(require_admin),
    backend: BackendClient = Depends(get_backend),
):
    params = {
        "skip":    skip,
        "limit":   limit,
        "search":  search,
        "subject": None if is_unset(subject) else subject,
        "type":    None if is_unset(type) else type,
        "status":  None if is_unset(status) else status,
    }
    data = await backend.get(MATERIALS, token=admin["token"], action="fetch materials", params=params)
    items = as_list(data, "materials")
    filtered = filter_admin_materials(items, search, subject, type, status)
    return {"materials": filtered, "total": len(items), "count": len(filtered)}


@admin_router.get("/stats")
async def api_admin_material_stats(
    admin: dict = Depends(require_admin),
    backend: BackendClient = Depends(get_backend),
):
    try:
        raw = await backend.get("/api/v1/content-library/analysis-stats", token=admin["token"],
                                action="fetch materials stats")
    except BackendError:
        LOGGER.info("content library stats unavailable, serving fixture stats")
        return {**FIXTURE_MATERIAL_STATS, "source": "fixture"}
    return material_stats_from_analysis(raw if isinstance(raw, dict) else {})


@admin_router.post("")
async def api_admin_create_material(
    title: str = Form(...),
    description: str = Form(""),
    subject: str = Form(...),
    topic: str = Form(""),
    difficulty: str = Form("beginner"),
    type: str = Form("notes"),
    status: str = Form("draft"),
    tags: str = Form(""),
    file: Optional[UploadFile] = File(None),
    admin: dict = Depends(require_admin),
    backend: BackendClient = Depends(get_backend),
):
    fields, files, pdf_info = await _material_form(
        title, description, subject, topic, difficulty, type, status, tags, file,
    )
    material = await backend.post(MATERIALS, token=admin["token"], action="create material",
                                  data=fields, files=files)
    LOGGER.info("material %r uploaded by %s", title, admin["email"])
    return {"material": material, "pdf": pdf_info}


@admin_router.put("/{material_id}")
async def api_admin_update_material(
    material_id: str,
    title: str = Form(...),
    description: str = Form(""),
    subject: str = Form(...),
    topic: str = Form(""),
    difficulty: str = Form("beginner"),
    type: str = Form("notes"),
    status: str = Form("draft"),
    tags: str = Form(""),
    file: Optional[UploadFile] = File(None),
    admin: dict = Depends(require_admin),
    backend: BackendClient = Depends(get_backend),
):
    fields, files, pdf_info = await _material_form(
        title, description, subject, topic, difficulty, type, status, tags, file,
    )
    material = await backend.put(f"{MATERIALS}/{material_id}", token=admin["token"],
                                 action="update material", data=fields, files=files)
    return {"material": material, "pdf": pdf_info}


@admin_router.delete("/{material_id}")
async def api_admin_delete_material(
    material_id: str,
    admin: dict = Depends(require_admin),
    backend: BackendClient = Depends(get_backend),
):
    await backend.delete(f"{MATERIALS}/{material_id}", token=admin["token"],
                         action="delete material")
    return {"message": "Material deleted successfully"}
