"""
Content analysis admin: review scraped content, trigger (upstream) AI
analysis, edit or delete items, and export a filtered selection as JSON.
"""

import json
import logging
from datetime import date, datetime, timedelta
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
from pydantic import BaseModel

from auth import require_admin
from backend import BackendClient, get_backend
from filters import as_list, as_utc, count_by, parse_timestamp, text_matches

LOGGER = logging.getLogger("hp_portal.content_analysis")

router = APIRouter(prefix="/api/admin/content-analysis")

ANALYSIS = "/api/v1/admin/content-analysis"


class ContentFilter(BaseModel):
    quality_score_min: float = 0
    quality_score_max: float = 100
    content_type: list[str] = []
    source_type: list[str] = []
    is_valuable: Optional[bool] = None
    has_questions: Optional[bool] = None
    has_answers: Optional[bool] = None
    has_pdfs: Optional[bool] = None
    search_term: str = ""
    date_start: Optional[str] = None
    date_end: Optional[str] = None


def _flag_matches(wanted: Optional[bool], actual: Any) -> bool:
    return wanted is None or bool(actual) == wanted


def _range_end(value: Optional[str]) -> Optional[datetime]:
    """Upper bound of the scraped-at range; a bare date covers that whole day."""
    end = parse_timestamp(value)
    if end is not None and len(str(value).strip()) == 10:
        end += timedelta(days=1) - timedelta(microseconds=1)
    return end


def apply_content_filter(items: list[dict], flt: ContentFilter) -> list[dict]:
    start = parse_timestamp(flt.date_start)
    end   = _range_end(flt.date_end)

    def keep(item: dict) -> bool:
        score = float(item.get("quality_score") or 0)
        if score < flt.quality_score_min or score > flt.quality_score_max:
            return False
        if flt.content_type and item.get("content_type") not in flt.content_type:
            return False
        if flt.source_type and item.get("source_type") not in flt.source_type:
            return False
        if not _flag_matches(flt.is_valuable, item.get("is_valuable")):
            return False
        if not text_matches(flt.search_term, item.get("title"), item.get("content")):
            return False
        meta = item.get("content_metadata") or {}
        if not _flag_matches(flt.has_questions, meta.get("has_questions")):
            return False
        if not _flag_matches(flt.has_answers, meta.get("has_answers")):
            return False
        if not _flag_matches(flt.has_pdfs, meta.get("has_pdfs")):
            return False
        if start or end:
            scraped = parse_timestamp(item.get("scraped_at"))
            if scraped is None:
                return False
            scraped = as_utc(scraped)
            if start and scraped < as_utc(start):
                return False
            if end and scraped > as_utc(end):
                return False
        return True

    return [item for item in items if keep(item)]


def content_stats(items: list[dict]) -> dict:
    scores = [float(i.get("quality_score") or 0) for i in items]
    return {
        "total_content":     len(items),
        "valuable_content":  sum(1 for i in items if i.get("is_valuable")),
        "spam_content":      sum(
            1 for i in items if (i.get("content_metadata") or {}).get("spam_indicators")
        ),
        "avg_quality_score": round(sum(scores) / len(scores), 2) if scores else 0,
        "content_types":     count_by(items, "content_type"),
        "source_breakdown":  count_by(items, "source_name"),
    }


def _content_filter(
    quality_score_min: float = 0,
    quality_score_max: float = 100,
    content_type: list[str] = Query([]),
    source_type: list[str] = Query([]),
    is_valuable: Optional[bool] = None,
    has_questions: Optional[bool] = None,
    has_answers: Optional[bool] = None,
    has_pdfs: Optional[bool] = None,
    search_term: str = "",
    date_start: Optional[str] = None,
    date_end: Optional[str] = None,
) -> ContentFilter:
    return ContentFilter(
        quality_score_min=quality_score_min,
        quality_score_max=quality_score_max,
        content_type=content_type,
        source_type=source_type,
        is_valuable=is_valuable,
        has_questions=has_questions,
        has_answers=has_answers,
        has_pdfs=has_pdfs,
        search_term=search_term,
        date_start=date_start,
        date_end=date_end,
    )


async def _load_content(backend: BackendClient, token: str) -> list[dict]:
    data = await backend.get(f"{ANALYSIS}/scraped-content", token=token,
                             action="fetch scraped content")
    return as_list(data, "content")


# ──────────────────────────────────────────────
# Pydantic request models
# ──────────────────────────────────────────────

class AnalyzeRequest(BaseModel):
    content_id: str


class BulkAnalyzeRequest(BaseModel):
    content_ids: list[str] = []
    filters: Optional[ContentFilter] = None


class UpdateContentRequest(BaseModel):
    content_id: str
    updates: dict


class DeleteContentRequest(BaseModel):
    content_id: str


class ExportRequest(BaseModel):
    content_ids: list[str] = []
    filters: Optional[ContentFilter] = None
    format: str = "json"


# ──────────────────────────────────────────────
# Routes
# ──────────────────────────────────────────────

@router.get("/scraped-content")
async def api_scraped_content(
    flt: ContentFilter = Depends(_content_filter),
    admin: dict = Depends(require_admin),
    backend: BackendClient = Depends(get_backend),
):
    items = await _load_content(backend, admin["token"])
    filtered = apply_content_filter(items, flt)
    return {
        "content":  filtered,
        "total":    len(items),
        "filtered": len(filtered),
        "stats":    content_stats(items),
    }


@router.post("/ai-analyze")
async def api_ai_analyze(
    body: AnalyzeRequest,
    admin: dict = Depends(require_admin),
    backend: BackendClient = Depends(get_backend),
):
    return await backend.post(f"{ANALYSIS}/ai-analyze", token=admin["token"],
                              action="analyze content", json={"content_id": body.content_id})


@router.post("/bulk-ai-analyze")
async def api_bulk_ai_analyze(
    body: BulkAnalyzeRequest,
    admin: dict = Depends(require_admin),
    backend: BackendClient = Depends(get_backend),
):
    """Analyse the given ids, or every item passing ``filters`` when none are given."""
    ids = body.content_ids
    if not ids:
        items = await _load_content(backend, admin["token"])
        ids = [str(i.get("id")) for i in apply_content_filter(items, body.filters or ContentFilter())]
    if not ids:
        return {"ok": True, "queued": 0}
    LOGGER.info("bulk analysis requested for %d items", len(ids))
    result = await backend.post(f"{ANALYSIS}/bulk-ai-analyze", token=admin["token"],
                                action="run bulk analysis", json={"content_ids": ids})
    return {"ok": True, "queued": len(ids), "result": result}


@router.put("/update-content")
async def api_update_content(
    body: UpdateContentRequest,
    admin: dict = Depends(require_admin),
    backend: BackendClient = Depends(get_backend),
):
    return await backend.put(f"{ANALYSIS}/update-content", token=admin["token"],
                             action="update content", json=body.model_dump())


@router.delete("/delete-content")
async def api_delete_content(
    body: DeleteContentRequest,
    admin: dict = Depends(require_admin),
    backend: BackendClient = Depends(get_backend),
):
    await backend.delete(f"{ANALYSIS}/delete-content", token=admin["token"],
                         action="delete content", json={"content_id": body.content_id})
    return {"ok": True}


@router.post("/export")
async def api_export_content(
    body: ExportRequest,
    admin: dict = Depends(require_admin),
    backend: BackendClient = Depends(get_backend),
):
    items = await _load_content(backend, admin["token"])
    if body.content_ids:
        wanted = set(body.content_ids)
        items = [i for i in items if str(i.get("id")) in wanted]
    elif body.filters:
        items = apply_content_filter(items, body.filters)

    filename = f"content_analysis_{date.today().isoformat()}.json"
    return Response(
        content=json.dumps(items, ensure_ascii=False, indent=2),
        media_type="application/json",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
