"""
KPI tracking: assessment lifecycle metrics written to an audit trail.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any

logger = logging.getLogger("completion.kpi")


class KPIEventType(str, Enum):
    ASSESSMENT_COMPLETED = "assessment_completed"


def _parse_timestamp(value: datetime | str | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except (AttributeError, ValueError):
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def calculate_duration_seconds(start: datetime | str | None, end: datetime | str | None) -> int:
    """Whole seconds between two timestamps; 0 if either is invalid or end < start."""
    start_dt = _parse_timestamp(start)
    end_dt = _parse_timestamp(end)
    if start_dt is None or end_dt is None:
        logger.warning("Invalid timestamp for duration: start=%r end=%r", start, end)
        return 0
    delta = (end_dt - start_dt).total_seconds()
    if delta < 0:
        logger.warning("End time before start time: start=%r end=%r", start, end)
        return 0
    return round(delta)


class KpiTracker:
    """Records KPI events in a bounded in-memory audit log and the kpi logger."""

    MAX_AUDIT_ENTRIES = 500

    def __init__(self) -> None:
        self._audit_log: list[dict[str, Any]] = []

    def track_assessment_completed(
        self,
        *,
        actor_user_id: str | None,
        assessment_id: str,
        funnel_slug: str,
        funnel_id: str | None = None,
        started_at: datetime | None = None,
        completed_at: datetime | None = None,
        duration_seconds: int | None = None,
    ) -> dict[str, Any]:
        metadata: dict[str, Any] = {
            "kpi_event": KPIEventType.ASSESSMENT_COMPLETED.value,
            "funnel_slug": funnel_slug,
            "funnel_id": funnel_id,
        }
        if duration_seconds is not None:
            metadata["duration_seconds"] = duration_seconds
        if started_at is not None:
            metadata["started_at"] = started_at.isoformat()
        if completed_at is not None:
            metadata["completed_at"] = completed_at.isoformat()

        entry = {
            "actor_user_id": actor_user_id,
            "source": "api",
            "entity_type": "assessment",
            "entity_id": assessment_id,
            "action": "complete",
            "metadata": metadata,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        self._audit(entry)
        return entry

    def _audit(self, entry: dict[str, Any]) -> None:
        self._audit_log.append(entry)
        # Keep audit log bounded
        if len(self._audit_log) > self.MAX_AUDIT_ENTRIES:
            self._audit_log = self._audit_log[-(self.MAX_AUDIT_ENTRIES // 2):]

        logger.info(
            "KPI %s: %s %s [%s]",
            entry["metadata"]["kpi_event"],
            entry["entity_type"],
            entry["entity_id"],
            ", ".join(f"{k}={v}" for k, v in entry["metadata"].items() if k != "kpi_event"),
        )

    @property
    def audit_log(self) -> list[dict[str, Any]]:
        return list(self._audit_log)
