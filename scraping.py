"""
Content-scraping admin: jobs, configs, sources and scraped content.

All scraping itself runs in the backend; these routes forward CRUD calls,
assemble job requests from the admin's source selection, and filter the
source list the way the Jobs tab does.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, HTTPException
from pydantic import BaseModel, field_validator

from auth import require_admin
from backend import BackendClient, BackendError, get_backend
from config import JOB_POLL_SECONDS
from filters import as_list, as_utc, field_contains, field_equals, parse_timestamp, split_csv, text_matches

LOGGER = logging.getLogger("hp_portal.scraping")

router = APIRouter(prefix="/api/admin")

SCRAPING     = "/api/v1/admin/content-scraping"
SOURCES      = "/api/v1/admin/content-sources"
INTELLIGENT  = "/api/v1/admin/intelligent-scraping"
HP_SOURCES   = "/api/v1/admin/hp-scraping/content-sources"

PRIORITY_LEVELS = {"high": 8, "medium": 5, "low": 2}
JOB_ACTIONS     = ("start", "pause", "stop", "retry")


# ──────────────────────────────────────────────
# Job helpers
# ──────────────────────────────────────────────

def priority_number(priority: Any) -> int:
    if isinstance(priority, int):
        return priority
    return PRIORITY_LEVELS.get(str(priority).lower(), 5)


def compile_target_urls(
    selection_type: str,
    sources: list[dict],
    selected_ids: list[int],
    custom_urls: list[str],
) -> list[str]:
    """Build a job's URL list from predefined sources, custom URLs, or both."""
    chosen = set(selected_ids)
    predefined = [s["source_url"] for s in sources if s.get("id") in chosen and s.get("source_url")]
    custom = [u.strip() for u in custom_urls if u and u.strip()]

    if selection_type == "predefined":
        return predefined
    if selection_type == "custom":
        return custom
    if selection_type == "mixed":
        return predefined + custom
    return []


def format_duration(
    started_at: Any,
    ended_at: Any,
    status: str = "",
    now: Optional[datetime] = None,
) -> str:
    start = parse_timestamp(started_at)
    if start is None:
        return "Not started"
    end = parse_timestamp(ended_at)
    if end is None:
        if status != "running":
            return "In progress"
        end = now or datetime.now(timezone.utc)
    seconds = max(0, int((as_utc(end) - as_utc(start)).total_seconds()))
    return f"{seconds // 60}m {seconds % 60}s"


def summarise_jobs(jobs: list[dict], now: Optional[datetime] = None) -> dict:
    rows = [
        {**job, "duration_display": format_duration(
            job.get("started_at"), job.get("completed_at"), job.get("status", ""), now
        )}
        for job in jobs
    ]
    running = any(job.get("status") == "running" for job in jobs)
    return {
        "jobs":               rows,
        "count":              len(rows),
        "has_running_jobs":   running,
        "poll_after_seconds": JOB_POLL_SECONDS if running else None,
    }


def filter_sources(
    sources: list[dict],
    search: Optional[str] = None,
    source_type: Optional[str] = None,
    category: Optional[str] = None,
    exam: Optional[str] = None,
) -> list[dict]:
    return [
        s for s in sources
        if text_matches(search, s.get("name"), s.get("description"), s.get("source_url"))
        and field_equals(s, "source_type", source_type)
        and field_contains(s, "content_categories", category)
        and field_contains(s, "exam_focus", exam)
    ]


# ──────────────────────────────────────────────
# Pydantic request models
# ──────────────────────────────────────────────

class CreateJobRequest(BaseModel):
    job_name: str
    job_type: str = "bulk_scrape"
    source_selection_type: str = "predefined"    # predefined | custom | mixed
    selected_source_ids: list[int] = []
    custom_urls: list[str] = []
    scraping_config_id: Optional[str] = None
    priority: str = "medium"
    auto_start: bool = True

    @field_validator("scraping_config_id", mode="before")
    @classmethod
    def _config_id_text(cls, value):
        return None if value is None else str(value)


class ScrapingConfigRequest(BaseModel):
    name: str
    description: str = ""
    source_type: str = "government"
    domain_patterns: list[str] = []
    crawl_depth: int = 2
    rate_limit_delay: float = 1
    respect_robots_txt: bool = True
    extract_text: bool = True
    extract_images: bool = True
    extract_videos: bool = False
    extract_documents: bool = True
    auto_categorize: bool = True
    generate_summary: bool = True
    generate_keywords: bool = True
    quality_threshold: float = 0.7
    max_file_size_mb: int = 50
    allowed_content_types: list[str] = ["text/html", "application/pdf", "image/jpeg", "image/png"]
    blocked_keywords: list[str] = []
    required_keywords: list[str] = []
    custom_selectors: dict[str, str] = {}

    @field_validator(
        "domain_patterns", "allowed_content_types", "blocked_keywords", "required_keywords",
        mode="before",
    )
    @classmethod
    def _csv(cls, value):
        return split_csv(value)

    @field_validator("custom_selectors", mode="before")
    @classmethod
    def _selectors(cls, value):
        if value is None or value == "":
            return {}
        if isinstance(value, str):
            return json.loads(value)
        return value


class ContentSourceRequest(BaseModel):
    name: str
    description: str = ""
    source_url: str
    source_type: str = "government"
    scraping_frequency: str = "daily"
    content_categories: list[str] = []
    exam_focus: list[str] = []

    @field_validator("content_categories", "exam_focus", mode="before")
    @classmethod
    def _csv(cls, value):
        return split_csv(value)

    @field_validator("name", "source_url")
    @classmethod
    def _required(cls, value: str):
        if not value.strip():
            raise ValueError("must not be blank")
        return value.strip()


class ContentStatusRequest(BaseModel):
    status: str


class CrawlRequest(BaseModel):
    source_ids: list[int]
    max_depth: int = 3
    force_recrawl: bool = False


# ──────────────────────────────────────────────
# Content scraping – dashboard & jobs
# ──────────────────────────────────────────────

@router.get("/content-scraping/dashboard")
async def api_scraping_dashboard(
    admin: dict = Depends(require_admin),
    backend: BackendClient = Depends(get_backend),
):
    return await backend.get(f"{SCRAPING}/dashboard", token=admin["token"],
                             action="load scraping dashboard")


@router.get("/content-scraping/jobs")
async def api_list_jobs(
    status: Optional[str] = None,
    admin: dict = Depends(require_admin),
    backend: BackendClient = Depends(get_backend),
):
    data = await backend.get(f"{SCRAPING}/jobs", token=admin["token"], action="load scraping jobs",
                             params={"status": None if status == "all" else status})
    return summarise_jobs(as_list(data, "jobs"))


@router.post("/content-scraping/jobs")
async def api_create_job(
    body: CreateJobRequest,
    admin: dict = Depends(require_admin),
    backend: BackendClient = Depends(get_backend),
):
    """Create a scraping job and, unless told otherwise, start it straight away.

    A failed start does not undo the creation; the created job comes back
    with a ``warning`` instead.
    """
    sources: list[dict] = []
    if body.source_selection_type in ("predefined", "mixed") and body.selected_source_ids:
        sources = as_list(
            await backend.get(HP_SOURCES, token=admin["token"], action="load content sources"),
            "sources",
        )

    urls = compile_target_urls(
        body.source_selection_type, sources, body.selected_source_ids, body.custom_urls
    )
    if not urls:
        raise HTTPException(
            status_code=400,
            detail="Please select at least one source or provide custom URLs.",
        )

    config_id = body.scraping_config_id
    job_data = {
        "job_name":           body.job_name,
        "job_type":           body.job_type,
        "target_urls":        urls,
        "scraping_config_id": int(config_id) if config_id and config_id.isdigit() else None,
        "priority":           priority_number(body.priority),
    }
    job = await backend.post(f"{SCRAPING}/jobs", token=admin["token"],
                             action="create scraping job", json=job_data)
    LOGGER.info("scraping job %s created with %d urls", job.get("id"), len(urls))

    if not body.auto_start:
        return {"job": job, "url_count": len(urls)}

    try:
        await backend.post(f"{SCRAPING}/jobs/{job['id']}/start", token=admin["token"],
                           action="start job")
    except BackendError as exc:
        return {
            "job":       job,
            "url_count": len(urls),
            "warning":   f"Job created but failed to start: {exc.detail or 'Unknown error'}",
        }

    job = {**job, "status": "running",
           "started_at": datetime.now(timezone.utc).replace(microsecond=0).isoformat()}
    return {"job": job, "url_count": len(urls)}


@router.get("/content-scraping/jobs/{job_id}")
async def api_job_details(
    job_id: int,
    admin: dict = Depends(require_admin),
    backend: BackendClient = Depends(get_backend),
):
    return await backend.get(f"{SCRAPING}/jobs/{job_id}", token=admin["token"],
                             action="load job details")


@router.get("/content-scraping/jobs/{job_id}/logs")
async def api_job_logs(
    job_id: int,
    limit: Optional[int] = None,
    admin: dict = Depends(require_admin),
    backend: BackendClient = Depends(get_backend),
):
    return await backend.get(f"{SCRAPING}/jobs/{job_id}/logs", token=admin["token"],
                             action="load job logs", params={"limit": limit})


@router.post("/content-scraping/jobs/{job_id}/{action}")
async def api_job_action(
    job_id: int,
    action: str,
    admin: dict = Depends(require_admin),
    backend: BackendClient = Depends(get_backend),
):
    if action not in JOB_ACTIONS:
        raise HTTPException(status_code=404, detail=f"Unknown job action {action!r}.")
    result = await backend.post(f"{SCRAPING}/jobs/{job_id}/{action}", token=admin["token"],
                                action=f"{action} job")
    LOGGER.info("scraping job %s: %s", job_id, action)
    return {"ok": True, "job_id": job_id, "action": action, "result": result}


# ──────────────────────────────────────────────
# Content scraping – configs
# ──────────────────────────────────────────────

@router.get("/content-scraping/configs")
async def api_list_configs(
    admin: dict = Depends(require_admin),
    backend: BackendClient = Depends(get_backend),
):
    data = await backend.get(f"{SCRAPING}/configs", token=admin["token"],
                             action="load scraping configurations")
    return as_list(data, "configs")


@router.post("/content-scraping/configs")
async def api_create_config(
    body: ScrapingConfigRequest,
    admin: dict = Depends(require_admin),
    backend: BackendClient = Depends(get_backend),
):
    return await backend.post(f"{SCRAPING}/configs", token=admin["token"],
                              action="create scraping configuration", json=body.model_dump())


@router.put("/content-scraping/configs/{config_id}")
async def api_update_config(
    config_id: int,
    body: ScrapingConfigRequest,
    admin: dict = Depends(require_admin),
    backend: BackendClient = Depends(get_backend),
):
    return await backend.put(f"{SCRAPING}/configs/{config_id}", token=admin["token"],
                             action="update scraping configuration", json=body.model_dump())


@router.delete("/content-scraping/configs/{config_id}")
async def api_delete_config(
    config_id: int,
    admin: dict = Depends(require_admin),
    backend: BackendClient = Depends(get_backend),
):
    await backend.delete(f"{SCRAPING}/configs/{config_id}", token=admin["token"],
                         action="delete scraping configuration")
    return {"ok": True}


@router.post("/content-scraping/configs/{config_id}/test")
async def api_test_config(
    config_id: int,
    admin: dict = Depends(require_admin),
    backend: BackendClient = Depends(get_backend),
):
    return await backend.post(f"{SCRAPING}/configs/{config_id}/test", token=admin["token"],
                              action="test scraping configuration")


# ──────────────────────────────────────────────
# Content scraping – sources
# ──────────────────────────────────────────────

@router.get("/content-scraping/sources")
async def api_list_sources(
    search: Optional[str] = None,
    source_type: Optional[str] = None,
    category: Optional[str] = None,
    exam: Optional[str] = None,
    admin: dict = Depends(require_admin),
    backend: BackendClient = Depends(get_backend),
):
    data = await backend.get(f"{SCRAPING}/sources", token=admin["token"],
                             action="load content sources")
    sources = as_list(data, "sources")
    filtered = filter_sources(sources, search, source_type, category, exam)
    return {"sources": filtered, "total": len(sources), "count": len(filtered)}


@router.post("/content-scraping/sources")
async def api_create_source(
    body: ContentSourceRequest,
    admin: dict = Depends(require_admin),
    backend: BackendClient = Depends(get_backend),
):
    return await backend.post(f"{SCRAPING}/sources", token=admin["token"],
                              action="create content source", json=body.model_dump())


@router.put("/content-scraping/sources/{source_id}")
async def api_update_source(
    source_id: int,
    body: ContentSourceRequest,
    admin: dict = Depends(require_admin),
    backend: BackendClient = Depends(get_backend),
):
    return await backend.put(f"{SCRAPING}/sources/{source_id}", token=admin["token"],
                             action="update content source", json=body.model_dump())


@router.delete("/content-scraping/sources/{source_id}")
async def api_delete_source(
    source_id: int,
    admin: dict = Depends(require_admin),
    backend: BackendClient = Depends(get_backend),
):
    await backend.delete(f"{SCRAPING}/sources/{source_id}", token=admin["token"],
                         action="delete content source")
    return {"ok": True}


@router.post("/content-scraping/sources/{source_id}/test")
async def api_test_source(
    source_id: int,
    admin: dict = Depends(require_admin),
    backend: BackendClient = Depends(get_backend),
):
    return await backend.post(f"{SCRAPING}/sources/{source_id}/test", token=admin["token"],
                              action="test content source")


# ──────────────────────────────────────────────
# Content scraping – scraped content
# ──────────────────────────────────────────────

@router.get("/content-scraping/content")
async def api_list_scraped_content(
    status: Optional[str] = None,
    search: Optional[str] = None,
    skip: int = 0,
    limit: int = 50,
    admin: dict = Depends(require_admin),
    backend: BackendClient = Depends(get_backend),
):
    return await backend.get(
        f"{SCRAPING}/content", token=admin["token"], action="load scraped content",
        params={"status": None if status == "all" else status, "search": search,
                "skip": skip, "limit": limit},
    )


@router.put("/content-scraping/content/{content_id}/status")
async def api_update_content_status(
    content_id: int,
    body: ContentStatusRequest,
    admin: dict = Depends(require_admin),
    backend: BackendClient = Depends(get_backend),
):
    return await backend.put(f"{SCRAPING}/content/{content_id}/status", token=admin["token"],
                             action="update content status", json={"status": body.status})


@router.delete("/content-scraping/content/{content_id}")
async def api_delete_scraped_content(
    content_id: int,
    admin: dict = Depends(require_admin),
    backend: BackendClient = Depends(get_backend),
):
    await backend.delete(f"{SCRAPING}/content/{content_id}", token=admin["token"],
                         action="delete content")
    return {"ok": True}


# ──────────────────────────────────────────────
# Content sources page (comprehensive crawling)
# ──────────────────────────────────────────────

@router.get("/content-sources")
async def api_content_sources(
    admin: dict = Depends(require_admin),
    backend: BackendClient = Depends(get_backend),
):
    data = await backend.get(f"{SOURCES}/content-sources", token=admin["token"],
                             action="load content sources")
    return as_list(data, "sources", "content_sources")


@router.post("/content-sources")
async def api_add_content_source(
    body: ContentSourceRequest,
    admin: dict = Depends(require_admin),
    backend: BackendClient = Depends(get_backend),
):
    return await backend.post(f"{SOURCES}/add-content-source", token=admin["token"],
                              action="add content source", json=body.model_dump())


@router.delete("/content-sources/{source_id}")
async def api_remove_content_source(
    source_id: int,
    admin: dict = Depends(require_admin),
    backend: BackendClient = Depends(get_backend),
):
    await backend.delete(f"{SOURCES}/content-source/{source_id}", token=admin["token"],
                         action="delete content source")
    return {"ok": True}


@router.post("/content-sources/crawl")
async def api_start_crawl(
    body: CrawlRequest,
    admin: dict = Depends(require_admin),
    backend: BackendClient = Depends(get_backend),
):
    if not body.source_ids:
        raise HTTPException(status_code=400, detail="Select at least one source to crawl.")
    LOGGER.info("comprehensive crawl requested for %d sources", len(body.source_ids))
    return await backend.post(f"{SOURCES}/start-comprehensive-crawling", token=admin["token"],
                              action="start crawling", json=body.model_dump())


@router.get("/content-sources/stats")
async def api_crawling_stats(
    admin: dict = Depends(require_admin),
    backend: BackendClient = Depends(get_backend),
):
    return await backend.get("/api/v1/admin/content-reports/content-summary",
                             token=admin["token"], action="load crawling stats")


# ──────────────────────────────────────────────
# Intelligent scraping
# ──────────────────────────────────────────────

@router.get("/intelligent-scraping/jobs")
async def api_intelligent_jobs(
    status: Optional[str] = None,
    admin: dict = Depends(require_admin),
    backend: BackendClient = Depends(get_backend),
):
    data = await backend.get(f"{INTELLIGENT}/scraping-jobs", token=admin["token"],
                             action="load intelligent scraping jobs",
                             params={"status": None if status == "all" else status})
    return summarise_jobs(as_list(data, "jobs"))


@router.get("/intelligent-scraping/jobs/{job_id}")
async def api_intelligent_job_status(
    job_id: int,
    admin: dict = Depends(require_admin),
    backend: BackendClient = Depends(get_backend),
):
    return await backend.get(f"{INTELLIGENT}/scraping-job-status/{job_id}", token=admin["token"],
                             action="load job status")


@router.post("/intelligent-scraping/start")
async def api_start_intelligent_scraping(
    body: dict = Body(...),
    admin: dict = Depends(require_admin),
    backend: BackendClient = Depends(get_backend),
):
    return await backend.post(f"{INTELLIGENT}/start-intelligent-scraping", token=admin["token"],
                              action="start intelligent scraping", json=body)


@router.post("/intelligent-scraping/jobs/{job_id}/retry")
async def api_retry_intelligent_job(
    job_id: int,
    admin: dict = Depends(require_admin),
    backend: BackendClient = Depends(get_backend),
):
    return await backend.post(f"{INTELLIGENT}/retry-scraping-job/{job_id}", token=admin["token"],
                              action="retry scraping job")


@router.get("/intelligent-scraping/active")
async def api_active_intelligent_jobs(
    admin: dict = Depends(require_admin),
    backend: BackendClient = Depends(get_backend),
):
    data = await backend.get(f"{INTELLIGENT}/active-scraping-jobs", token=admin["token"],
                             action="load active scraping jobs")
    return summarise_jobs(as_list(data, "jobs"))
