"""
config.py – environment-driven settings for the HP exam portal
"""

import os

# ── Upstream REST backend ─────────────────────────────────────────────────────

BACKEND_URL     = (os.environ.get("BACKEND_URL") or "http://127.0.0.1:8000").rstrip("/")
BACKEND_TIMEOUT = float(os.environ.get("BACKEND_TIMEOUT", "15"))

# ── Token verification (tokens are issued by the backend) ─────────────────────

SECRET_KEY    = os.environ.get("SECRET_KEY", "dev-secret")
JWT_ALGORITHM = os.environ.get("JWT_ALGORITHM", "HS256")
ADMIN_ROLES   = {"admin", "super_admin"}

# ── Test sessions ─────────────────────────────────────────────────────────────

DEFAULT_AUTO_SAVE_INTERVAL = int(os.environ.get("DEFAULT_AUTO_SAVE_INTERVAL", "30"))
LOW_TIME_THRESHOLD         = 300   # seconds; timer turns red below this
SESSION_RETENTION_SECONDS  = int(os.environ.get("SESSION_RETENTION_SECONDS", "3600"))
UNSTARTED_SESSION_TTL      = int(os.environ.get("UNSTARTED_SESSION_TTL", "1800"))
SESSION_SWEEP_INTERVAL     = int(os.environ.get("SESSION_SWEEP_INTERVAL", "60"))
JOB_POLL_SECONDS           = 10

# ── Uploads ───────────────────────────────────────────────────────────────────

UPLOAD_PREVIEW_CHARS = int(os.environ.get("UPLOAD_PREVIEW_CHARS", "500"))

# ── Runtime ───────────────────────────────────────────────────────────────────

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
PORT      = int(os.environ.get("PORT", 3000))
