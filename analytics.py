"""
Performance analytics for students and the admin system-analytics dashboard.

Student charts are served from built-in fixture data (the backend has no feed
for them yet); the per-user and leaderboard feeds the backend does expose are
proxied.  Admin charts try the backend first and fall back to fixtures, which
are tagged ``"source": "fixture"`` so the UI can show a notice.
"""

import json
import logging
import random
from datetime import date, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import Response

from auth import get_current_user, require_admin
from backend import BackendClient, BackendError, get_backend
from filters import is_unset

LOGGER = logging.getLogger("hp_portal.analytics")

router = APIRouter(prefix="/api/analytics")
admin_router = APIRouter(prefix="/api/admin")

ANALYTICS = "/api/v1/analytics/analytics"
ADMIN_ANALYTICS = "/api/v1/admin/analytics"

TIME_FRAME_MONTHS = {"1M": 1, "3M": 3, "6M": 6, "1Y": 12}
TIME_RANGES = ("7d", "30d", "90d", "1y")


# ──────────────────────────────────────────────
# Student fixture data
# ──────────────────────────────────────────────

PERFORMANCE_HISTORY = [
    {"date": "2024-01-01", "score": 65, "rank": 850, "percentile": 72, "time_taken": 55},
    {"date": "2024-01-08", "score": 70, "rank": 750, "percentile": 76, "time_taken": 52},
    {"date": "2024-01-15", "score": 75, "rank": 650, "percentile": 80, "time_taken": 48},
    {"date": "2024-01-22", "score": 78, "rank": 580, "percentile": 82, "time_taken": 45},
    {"date": "2024-01-29", "score": 82, "rank": 450, "percentile": 86, "time_taken": 42},
    {"date": "2024-02-05", "score": 85, "rank": 320, "percentile": 89, "time_taken": 40},
    {"date": "2024-02-12", "score": 88, "rank": 250, "percentile": 92, "time_taken": 38},
]

SUBJECT_ANALYSIS = [
    {
        "subject": "Quantitative Aptitude", "total_questions": 25, "correct_answers": 20,
        "incorrect_answers": 3, "unattempted": 2, "average_time": 1.8, "accuracy": 87,
        "strong_topics": ["Arithmetic", "Percentage", "Profit & Loss"],
        "weak_topics": ["Data Interpretation", "Geometry"],
    },
    {
        "subject": "Reasoning Ability", "total_questions": 25, "correct_answers": 22,
        "incorrect_answers": 2, "unattempted": 1, "average_time": 1.5, "accuracy": 92,
        "strong_topics": ["Logical Reasoning", "Coding-Decoding", "Blood Relations"],
        "weak_topics": ["Seating Arrangement", "Puzzles"],
    },
    {
        "subject": "English Language", "total_questions": 25, "correct_answers": 18,
        "incorrect_answers": 5, "unattempted": 2, "average_time": 1.2, "accuracy": 78,
        "strong_topics": ["Grammar", "Vocabulary"],
        "weak_topics": ["Reading Comprehension", "Para Jumbles"],
    },
    {
        "subject": "General Awareness", "total_questions": 25, "correct_answers": 15,
        "incorrect_answers": 7, "unattempted": 3, "average_time": 0.8, "accuracy": 68,
        "strong_topics": ["Current Affairs", "Geography"],
        "weak_topics": ["History", "Economics", "Polity"],
    },
]

COMPARISON = [
    {"metric": "Overall Score",         "your_score": 88, "average_score": 72, "top_score": 96},
    {"metric": "Quantitative Aptitude", "your_score": 87, "average_score": 68, "top_score": 94},
    {"metric": "Reasoning Ability",     "your_score": 92, "average_score": 74, "top_score": 98},
    {"metric": "English Language",      "your_score": 78, "average_score": 70, "top_score": 92},
    {"metric": "General Awareness",     "your_score": 68, "average_score": 65, "top_score": 88},
    {"metric": "Time Management",       "your_score": 85, "average_score": 70, "top_score": 95},
]

STRENGTHS_WEAKNESSES = [
    {
        "type": "strength", "topic": "Logical Reasoning", "subject": "Reasoning Ability",
        "accuracy": 95, "questions_attempted": 20, "improvement": 15,
        "recommendation": "Continue practicing complex logical puzzles to maintain your edge",
    },
    {
        "type": "strength", "topic": "Arithmetic", "subject": "Quantitative Aptitude",
        "accuracy": 90, "questions_attempted": 15, "improvement": 12,
        "recommendation": "Focus on speed improvement for time optimization",
    },
    {
        "type": "weakness", "topic": "Data Interpretation", "subject": "Quantitative Aptitude",
        "accuracy": 55, "questions_attempted": 12, "improvement": -5,
        "recommendation": "Practice graph reading and calculation shortcuts daily",
    },
    {
        "type": "weakness", "topic": "Reading Comprehension", "subject": "English Language",
        "accuracy": 60, "questions_attempted": 18, "improvement": -3,
        "recommendation": "Read newspaper editorials and practice time-bound passages",
    },
]

_TIME_SUBJECTS = ["Quantitative Aptitude", "Reasoning", "English", "GK"]


def filter_history(history: list[dict], time_frame: str = "3M") -> list[dict]:
    """Keep entries within *time_frame* of the most recent attempt."""
    if not history:
        return []
    months = TIME_FRAME_MONTHS.get(time_frame, 3)
    latest = max(date.fromisoformat(h["date"]) for h in history)
    cutoff = latest - timedelta(days=30 * months)
    return [h for h in history if date.fromisoformat(h["date"]) >= cutoff]


def radar_data(subjects: list[dict]) -> list[dict]:
    return [
        {
            "subject":   s["subject"].split(" ")[0],
            "accuracy":  s["accuracy"],
            "speed":     round(60 / s["average_time"], 1),
            "attempted": round(
                (s["correct_answers"] + s["incorrect_answers"]) / s["total_questions"] * 100
            ),
        }
        for s in subjects
    ]


def time_analysis(seed: int = 0, count: int = 100) -> list[dict]:
    """Per-question timing chart; the same seed always yields the same data."""
    rng = random.Random(seed)
    return [
        {
            "question_number": i + 1,
            "time_spent":      round(rng.random() * 180 + 30, 1),
            "difficulty":      rng.choice(["easy", "medium", "hard"]),
            "status":          rng.choice(["correct", "incorrect", "unattempted"]),
            "subject":         rng.choice(_TIME_SUBJECTS),
        }
        for i in range(count)
    ]


# ──────────────────────────────────────────────
# Admin fixture data
# ──────────────────────────────────────────────

FIXTURE_SYSTEM_STATS = {
    "users": {"total": 12847, "active_today": 2456, "new_this_month": 1247, "growth_rate": 12.5},
    "content": {"total_materials": 487, "total_exams": 156, "total_questions": 7834, "avg_rating": 4.3},
    "activity": {
        "total_sessions": 45672, "avg_session_duration": 18.5,
        "total_test_attempts": 23456, "completion_rate": 78.9,
    },
    "performance": {
        "server_uptime": 99.7, "avg_response_time": 245, "error_rate": 0.3, "storage_used": 68.2,
    },
}

FIXTURE_USER_GROWTH = {
    "labels": ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"],
    "datasets": [
        {"label": "New Users",    "data": [45, 67, 89, 123, 156, 134, 178],             "color": "#3b82f6"},
        {"label": "Active Users", "data": [2345, 2456, 2567, 2678, 2789, 2567, 2890], "color": "#10b981"},
    ],
}

FIXTURE_CONTENT_USAGE = {
    "labels": ["Materials", "Exams", "Quizzes", "Videos", "Notes"],
    "datasets": [
        {"label": "Views",     "data": [12450, 8967, 5634, 3421, 2890], "color": "#8b5cf6"},
        {"label": "Downloads", "data": [8967, 6543, 3421, 1234, 890],   "color": "#f59e0b"},
    ],
}

FIXTURE_TOP_CONTENT = {
    "content": [
        {"id": "1", "title": "Himachal Pradesh History - Complete Guide", "type": "material",
         "views": 12450, "downloads": 8967, "rating": 4.8},
        {"id": "2", "title": "HPPSC Prelims Mock Test - 2024", "type": "exam",
         "views": 9876, "downloads": 0, "rating": 4.6},
        {"id": "3", "title": "HP Geography Quick Quiz", "type": "exam",
         "views": 8765, "downloads": 0, "rating": 4.4},
        {"id": "4", "title": "Current Affairs - December 2024", "type": "material",
         "views": 7654, "downloads": 5432, "rating": 4.2},
        {"id": "5", "title": "Mathematics Practice Set", "type": "material",
         "views": 6543, "downloads": 4321, "rating": 4.5},
    ],
}

FIXTURE_RECENT_ACTIVITY = {
    "activities": [
        {"id": "1", "user": "john.doe@example.com", "action": "Started exam",
         "resource": "HPPSC Prelims Mock Test", "timestamp": "2024-12-01T15:30:00Z", "status": "success"},
        {"id": "2", "user": "jane.smith@example.com", "action": "Downloaded material",
         "resource": "HP History Guide", "timestamp": "2024-12-01T15:25:00Z", "status": "success"},
        {"id": "3", "user": "admin@example.com", "action": "Created exam",
         "resource": "Geography Quiz - December", "timestamp": "2024-12-01T15:20:00Z", "status": "success"},
        {"id": "4", "user": "bob.wilson@example.com", "action": "Failed login attempt",
         "resource": "Authentication", "timestamp": "2024-12-01T15:15:00Z", "status": "error"},
        {"id": "5", "user": "alice.brown@example.com", "action": "Completed exam",
         "resource": "Geography Quick Quiz", "timestamp": "2024-12-01T15:10:00Z", "status": "success"},
    ],
}

ADMIN_FIXTURES = {
    "stats":           FIXTURE_SYSTEM_STATS,
    "user-growth":     FIXTURE_USER_GROWTH,
    "content-usage":   FIXTURE_CONTENT_USAGE,
    "top-content":     FIXTURE_TOP_CONTENT,
    "recent-activity": FIXTURE_RECENT_ACTIVITY,
}


async def admin_chart(backend: BackendClient, token: str, name: str, time_range: str) -> dict:
    """Backend chart data when available, else the fixture for *name*."""
    try:
        data = await backend.get(f"{ADMIN_ANALYTICS}/{name}", token=token,
                                 action=f"load {name.replace('-', ' ')}",
                                 params={"range": time_range})
    except BackendError:
        LOGGER.info("admin analytics %s unavailable, serving fixture data", name)
        return {**ADMIN_FIXTURES[name], "range": time_range, "source": "fixture"}
    return data


def _check_range(time_range: str) -> str:
    if time_range not in TIME_RANGES:
        raise HTTPException(status_code=400, detail=f"range must be one of: {', '.join(TIME_RANGES)}.")
    return time_range


# ──────────────────────────────────────────────
# Student routes
# ──────────────────────────────────────────────

@router.get("/performance-history")
async def api_performance_history(time_frame: str = "3M", user: dict = Depends(get_current_user)):
    if time_frame not in TIME_FRAME_MONTHS:
        raise HTTPException(status_code=400, detail="time_frame must be one of: 1M, 3M, 6M, 1Y.")
    return filter_history(PERFORMANCE_HISTORY, time_frame)


@router.get("/subject-analysis")
async def api_subject_analysis(subject: str = "all", user: dict = Depends(get_current_user)):
    subjects = [s for s in SUBJECT_ANALYSIS if is_unset(subject) or s["subject"] == subject]
    return {"subjects": subjects, "radar": radar_data(subjects)}


@router.get("/time-analysis")
async def api_time_analysis(seed: Optional[int] = None, user: dict = Depends(get_current_user)):
    """Seeded per user by default so a refresh does not reshuffle the chart."""
    if seed is None:
        seed = sum(ord(c) for c in user["user_id"])
    return time_analysis(seed)


@router.get("/comparison")
async def api_comparison(user: dict = Depends(get_current_user)):
    return COMPARISON


@router.get("/strengths-weaknesses")
async def api_strengths_weaknesses(kind: str = "all", user: dict = Depends(get_current_user)):
    return [s for s in STRENGTHS_WEAKNESSES if is_unset(kind) or s["type"] == kind]


@router.get("/report")
async def api_download_report(user: dict = Depends(get_current_user)):
    today = date.today().isoformat()
    report = {
        "performance_history":  PERFORMANCE_HISTORY,
        "subject_analysis":     SUBJECT_ANALYSIS,
        "time_analysis":        time_analysis(sum(ord(c) for c in user["user_id"])),
        "comparison":           COMPARISON,
        "strengths_weaknesses": STRENGTHS_WEAKNESSES,
        "generated_at":         today,
    }
    return Response(
        content=json.dumps(report, indent=2),
        media_type="application/json",
        headers={"Content-Disposition": f'attachment; filename="performance-report-{today}.json"'},
    )


# ── Backend analytics feeds ───────────────────

@router.get("/user-performance/{user_id}")
async def api_user_performance(
    user_id: str,
    user: dict = Depends(get_current_user),
    backend: BackendClient = Depends(get_backend),
):
    return await backend.get(f"{ANALYTICS}/user-performance/{user_id}", token=user["token"],
                             action="fetch user performance")


@router.get("/leaderboard")
async def api_leaderboard(
    user: dict = Depends(get_current_user),
    backend: BackendClient = Depends(get_backend),
):
    return await backend.get(f"{ANALYTICS}/leaderboard", token=user["token"],
                             action="fetch leaderboard")


@router.get("/weak-areas")
async def api_weak_areas(
    user: dict = Depends(get_current_user),
    backend: BackendClient = Depends(get_backend),
):
    return await backend.get(f"{ANALYTICS}/weak-areas-analysis", token=user["token"],
                             action="fetch weak areas")


@router.get("/subject-wise-performance")
async def api_subject_wise_performance(
    user: dict = Depends(get_current_user),
    backend: BackendClient = Depends(get_backend),
):
    return await backend.get(f"{ANALYTICS}/subject-wise-performance", token=user["token"],
                             action="fetch subject-wise performance")


@router.get("/question-statistics/{question_id}")
async def api_question_statistics(
    question_id: str,
    user: dict = Depends(get_current_user),
    backend: BackendClient = Depends(get_backend),
):
    return await backend.get(f"{ANALYTICS}/question-statistics/{question_id}", token=user["token"],
                             action="fetch question statistics")


# ──────────────────────────────────────────────
# Admin routes
# ──────────────────────────────────────────────

@admin_router.get("/stats")
async def api_admin_overview(
    admin: dict = Depends(require_admin),
    backend: BackendClient = Depends(get_backend),
):
    return await backend.get("/admin/stats", token=admin["token"], action="fetch admin stats")


@admin_router.get("/analytics/{chart}")
async def api_admin_analytics(
    chart: str,
    range: str = "7d",
    admin: dict = Depends(require_admin),
    backend: BackendClient = Depends(get_backend),
):
    if chart not in ADMIN_FIXTURES:
        raise HTTPException(status_code=404, detail="Unknown analytics chart.")
    return await admin_chart(backend, admin["token"], chart, _check_range(range))
