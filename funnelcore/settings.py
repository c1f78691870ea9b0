"""
Centralized configuration for the completion service.
Env-based constants, loaded once from .env at import time.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# --- Storage ---
# "memory" keeps everything in-process (dev / tests), "gcs" persists JSON documents
STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "memory").lower()
GCS_BUCKET_NAME = os.getenv("GCS_BUCKET_NAME", "funnelcore_dev")

# --- Funnel manifests ---
MANIFEST_DIR = os.getenv(
    "MANIFEST_DIR",
    str(Path(__file__).parent / "data" / "manifests"),
)

# --- Auth ---
AUTH_JWT_SECRET = os.getenv("AUTH_JWT_SECRET", "")
AUTH_JWT_AUDIENCE = os.getenv("AUTH_JWT_AUDIENCE") or None

# --- Idempotency ---
IDEMPOTENCY_TTL_SECONDS = int(os.getenv("IDEMPOTENCY_TTL_SECONDS", str(24 * 60 * 60)))
IDEMPOTENCY_LOCK_TIMEOUT_SECONDS = int(os.getenv("IDEMPOTENCY_LOCK_TIMEOUT_SECONDS", "60"))
IDEMPOTENCY_WAIT_TIMEOUT_SECONDS = float(os.getenv("IDEMPOTENCY_WAIT_TIMEOUT_SECONDS", "10"))
IDEMPOTENCY_PURGE_INTERVAL_SECONDS = float(os.getenv("IDEMPOTENCY_PURGE_INTERVAL_SECONDS", "300"))

# --- Patient state ---
ACTIVITY_LOG_CAP = int(os.getenv("ACTIVITY_LOG_CAP", "10"))

# --- Server ---
PORT = int(os.getenv("PORT", "8080"))
