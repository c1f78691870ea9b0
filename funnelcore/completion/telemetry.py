"""
Pilot flow telemetry: PHI-safe funnel lifecycle events.

Payloads pass an allowlist: only known keys survive, free-text strings are
dropped except for enumerated/identifier keys (truncated to 100 chars), and
the serialized payload must fit in 2 KB or it is reduced to the version
marker.  Emission is best-effort and never raises.
"""

from __future__ import annotations

import json
import logging
import uuid
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger("completion.telemetry")

PAYLOAD_VERSION = 1
MAX_PAYLOAD_SIZE_BYTES = 2048
MAX_STRING_LENGTH = 100

ALLOWED_PAYLOAD_KEYS = frozenset({
    "payloadVersion",
    "nextAction",
    "tier",
    "missingDataCount",
    "redFlag",
    "offerType",
    "funnelSlug",
    "stepId",
    "stepIndex",
    "previousStatus",
    "newStatus",
    "durationMs",
    "resultId",
    "reportId",
    "workupStatus",
    "escalationCorrelationId",
})

# Keys whose string values are identifiers or enum members, never free text
STRING_PAYLOAD_KEYS = frozenset({
    "nextAction",
    "tier",
    "offerType",
    "funnelSlug",
    "stepId",
    "previousStatus",
    "newStatus",
    "resultId",
    "reportId",
    "workupStatus",
    "escalationCorrelationId",
})


def _new_uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class PilotEventType(str, Enum):
    FUNNEL_COMPLETED = "FUNNEL_COMPLETED"


def sanitize_payload(payload: dict[str, Any] | None) -> dict[str, Any]:
    sanitized: dict[str, Any] = {"payloadVersion": PAYLOAD_VERSION}
    if not payload:
        return sanitized

    for key, value in payload.items():
        if key not in ALLOWED_PAYLOAD_KEYS or key == "payloadVersion":
            continue
        if isinstance(value, str):
            if key in STRING_PAYLOAD_KEYS:
                sanitized[key] = value[:MAX_STRING_LENGTH]
        elif value is None or isinstance(value, (bool, int, float)):
            sanitized[key] = value

    if len(json.dumps(sanitized).encode("utf-8")) > MAX_PAYLOAD_SIZE_BYTES:
        logger.warning("Telemetry payload exceeds %d bytes; reduced to version marker", MAX_PAYLOAD_SIZE_BYTES)
        return {"payloadVersion": PAYLOAD_VERSION}
    return sanitized


class PilotEvent(BaseModel):
    event_id: str = Field(default_factory=_new_uuid)
    correlation_id: str
    event_type: PilotEventType
    entity_type: str
    entity_id: str
    patient_id: Optional[str] = None
    actor_role: str = "patient"
    from_state: Optional[str] = None
    to_state: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_now)

    @classmethod
    def funnel_completed(
        cls,
        correlation_id: str,
        assessment_id: str,
        funnel_slug: str,
        patient_id: str | None = None,
    ) -> PilotEvent:
        return cls(
            correlation_id=correlation_id,
            event_type=PilotEventType.FUNNEL_COMPLETED,
            entity_type="assessment",
            entity_id=assessment_id,
            patient_id=patient_id,
            actor_role="patient",
            from_state="in_progress",
            to_state="completed",
            payload=sanitize_payload({"funnelSlug": funnel_slug}),
        )


class TelemetrySink(ABC):
    @abstractmethod
    def emit(self, event: PilotEvent) -> None:
        ...


class LoggingTelemetrySink(TelemetrySink):
    """Logs each event and keeps the most recent ones in memory."""

    def __init__(self, buffer_size: int = 500) -> None:
        self._events: deque[PilotEvent] = deque(maxlen=buffer_size)

    def emit(self, event: PilotEvent) -> None:
        self._events.append(event)
        logger.info(
            "Pilot event %s %s/%s %s->%s [correlation=%s] %s",
            event.event_type.value,
            event.entity_type,
            event.entity_id,
            event.from_state,
            event.to_state,
            event.correlation_id,
            json.dumps(event.payload, sort_keys=True),
        )

    @property
    def events(self) -> list[PilotEvent]:
        return list(self._events)


def emit_pilot_event(sink: TelemetrySink, event: PilotEvent) -> str | None:
    """Returns the event id, or None if the sink failed."""
    try:
        sink.emit(event)
        return event.event_id
    except Exception as exc:
        logger.warning(
            "Failed to emit pilot event %s [correlation=%s]: %s",
            event.event_type.value, event.correlation_id, exc,
        )
        return None


def emit_funnel_completed(
    sink: TelemetrySink,
    correlation_id: str,
    assessment_id: str,
    funnel_slug: str,
    patient_id: str | None = None,
) -> str | None:
    return emit_pilot_event(
        sink,
        PilotEvent.funnel_completed(
            correlation_id=correlation_id,
            assessment_id=assessment_id,
            funnel_slug=funnel_slug,
            patient_id=patient_id,
        ),
    )
