"""Correlation id resolution for request tracing."""

from __future__ import annotations

import uuid
from typing import Mapping

# Checked in order; the first non-empty header wins
CORRELATION_HEADERS = ("x-correlation-id", "x-request-id")

MAX_CORRELATION_ID_LENGTH = 128


def get_correlation_id(headers: Mapping[str, str]) -> str:
    """Propagate the caller's tracing id, or generate one."""
    for name in CORRELATION_HEADERS:
        value = (headers.get(name) or "").strip()
        if value:
            return value[:MAX_CORRELATION_ID_LENGTH]
    return str(uuid.uuid4())
