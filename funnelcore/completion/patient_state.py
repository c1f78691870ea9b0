"""
Patient State: denormalized per-user aggregate (schema version 0.1).

One JSON document per user, read by dashboards without recomputation:

  assessment  last completed assessment summary
  results     summary cards / recommended actions
  dialog      assistant conversation counters
  activity    recentActivity, newest first, capped
  metrics     health score and key metric series
  updatedAt

The document is created lazily on first write.  Writes replace the whole
document (last write wins).
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from funnelcore.infrastructure.gcs import DocumentNotFoundError

logger = logging.getLogger("completion.patient_state")

PATIENT_STATE_VERSION = "0.1"
DEFAULT_ACTIVITY_CAP = 10


def _now() -> datetime:
    return datetime.now(timezone.utc)


class PatientStateNotFoundError(Exception):
    pass


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Sections
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class AssessmentProgress(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class AssessmentSummary(_CamelModel):
    status: AssessmentProgress = AssessmentProgress.NOT_STARTED
    funnel_slug: Optional[str] = None
    updated_at: Optional[datetime] = None
    answers_count: int = Field(default=0, ge=0)
    report_id: Optional[str] = None


class AssessmentSection(_CamelModel):
    last_assessment_id: Optional[str] = None
    status: AssessmentProgress = AssessmentProgress.NOT_STARTED
    progress: float = Field(default=0.0, ge=0.0, le=1.0)
    completed_at: Optional[datetime] = None
    last_assessment: Optional[AssessmentSummary] = None


class SummaryCard(_CamelModel):
    id: str
    type: Literal["risk", "recommendation", "metric", "insight"]
    title: str
    value: str
    trend: Optional[Literal["up", "down", "stable", "none"]] = None
    priority: int = Field(default=0, ge=0, le=10)


class ResultsSection(_CamelModel):
    summary_cards: list[SummaryCard] = Field(default_factory=list, max_length=5)
    recommended_actions: list[str] = Field(default_factory=list)
    last_generated_at: Optional[datetime] = None


class DialogSection(_CamelModel):
    last_context: Literal["dashboard", "results", "insights", "assessment", "none"] = "none"
    message_count: int = Field(default=0, ge=0)
    last_message_at: Optional[datetime] = None


class ActivityType(str, Enum):
    ASSESSMENT_COMPLETED = "assessment_completed"
    RESULT_GENERATED = "result_generated"
    DIALOG_SESSION = "dialog_session"
    MEASURE_RECORDED = "measure_recorded"
    OTHER = "other"


class ActivityItem(_CamelModel):
    type: ActivityType
    label: str
    timestamp: datetime = Field(default_factory=_now)
    metadata: Optional[dict[str, Any]] = None


class ActivitySection(_CamelModel):
    recent_activity: list[ActivityItem] = Field(default_factory=list)


class HealthScore(_CamelModel):
    current: float = Field(default=0, ge=0, le=100)
    delta: float = 0
    updated_at: Optional[datetime] = None


class MetricDataPoint(_CamelModel):
    timestamp: datetime
    value: float


class MetricSeries(_CamelModel):
    metric_type: Literal["HR", "BP_systolic", "BP_diastolic", "Sleep", "Weight", "other"]
    unit: str
    data: list[MetricDataPoint] = Field(default_factory=list, max_length=30)


class MetricsSection(_CamelModel):
    health_score: HealthScore = Field(default_factory=HealthScore)
    key_metrics: list[MetricSeries] = Field(default_factory=list, max_length=5)


class PatientState(_CamelModel):
    patient_state_version: Literal["0.1"] = Field(
        default=PATIENT_STATE_VERSION, alias="patient_state_version"
    )
    assessment: AssessmentSection = Field(default_factory=AssessmentSection)
    results: ResultsSection = Field(default_factory=ResultsSection)
    dialog: DialogSection = Field(default_factory=DialogSection)
    activity: ActivitySection = Field(default_factory=ActivitySection)
    metrics: MetricsSection = Field(default_factory=MetricsSection)
    updated_at: datetime = Field(default_factory=_now)

    @classmethod
    def create_empty(cls) -> PatientState:
        return cls()

    @classmethod
    def safe_validate(cls, data: Any) -> PatientState | None:
        """Parse a stored document; None if it does not match the schema."""
        try:
            return cls.model_validate(data)
        except ValidationError:
            return None

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Activity log
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class BoundedActivityLog:
    """
    Newest-first activity list with a fixed capacity.

    Prepending to a full log evicts the oldest entry.
    """

    def __init__(self, items: Iterable[ActivityItem] = (), capacity: int = DEFAULT_ACTIVITY_CAP) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._capacity = capacity
        self._items: deque[ActivityItem] = deque(maxlen=capacity)
        # items arrive newest first; keep the newest `capacity` of them
        for item in list(items)[:capacity]:
            self._items.append(item)

    @property
    def capacity(self) -> int:
        return self._capacity

    def prepend(self, item: ActivityItem) -> None:
        self._items.appendleft(item)

    def to_list(self) -> list[ActivityItem]:
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self):
        return iter(self._items)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Stores
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class PatientStateStore(ABC):
    @abstractmethod
    def load(self, user_id: str) -> dict[str, Any]:
        """Raw stored document.  Raises PatientStateNotFoundError."""

    @abstractmethod
    def save(self, user_id: str, state: PatientState) -> None:
        ...


class InMemoryPatientStateStore(PatientStateStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._docs: dict[str, dict[str, Any]] = {}

    def put_raw(self, user_id: str, document: dict[str, Any]) -> None:
        with self._lock:
            self._docs[user_id] = document

    def load(self, user_id: str) -> dict[str, Any]:
        with self._lock:
            doc = self._docs.get(user_id)
        if doc is None:
            raise PatientStateNotFoundError(f"No patient state for user {user_id}")
        return doc

    def save(self, user_id: str, state: PatientState) -> None:
        with self._lock:
            self._docs[user_id] = state.to_document()


class GCSPatientStateStore(PatientStateStore):
    STATE_PREFIX = "patient_states"

    def __init__(self, gcs_bucket_manager) -> None:
        self._gcs = gcs_bucket_manager

    def _path(self, user_id: str) -> str:
        return f"{self.STATE_PREFIX}/{user_id}.json"

    def load(self, user_id: str) -> dict[str, Any]:
        try:
            data, _ = self._gcs.read_json(self._path(user_id))
        except DocumentNotFoundError as exc:
            raise PatientStateNotFoundError(f"No patient state for user {user_id}") from exc
        return data

    def save(self, user_id: str, state: PatientState) -> None:
        self._gcs.write_json(self._path(user_id), state.to_document())


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Aggregator
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class PatientStateAggregator:
    def __init__(self, store: PatientStateStore, activity_cap: int = DEFAULT_ACTIVITY_CAP) -> None:
        self._store = store
        self._activity_cap = activity_cap

    def get_state(self, user_id: str) -> PatientState | None:
        try:
            raw = self._store.load(user_id)
        except PatientStateNotFoundError:
            return None
        return PatientState.safe_validate(raw)

    def load_or_create(self, user_id: str) -> PatientState:
        try:
            raw = self._store.load(user_id)
        except PatientStateNotFoundError:
            return PatientState.create_empty()
        state = PatientState.safe_validate(raw)
        if state is None:
            logger.warning("Stored patient state for user %s is invalid; starting fresh", user_id)
            return PatientState.create_empty()
        return state

    def record_assessment_completed(
        self,
        user_id: str,
        assessment_id: str,
        funnel_slug: str,
        completed_at: datetime,
        answers_count: int = 0,
    ) -> PatientState:
        state = self.load_or_create(user_id)

        log = BoundedActivityLog(state.activity.recent_activity, capacity=self._activity_cap)
        log.prepend(
            ActivityItem(
                type=ActivityType.ASSESSMENT_COMPLETED,
                label=f"Completed {funnel_slug} Assessment",
                timestamp=completed_at,
                metadata={"assessmentId": assessment_id, "funnelSlug": funnel_slug},
            )
        )

        previous = state.assessment.last_assessment
        state = state.model_copy(
            update={
                "assessment": AssessmentSection(
                    last_assessment_id=assessment_id,
                    status=AssessmentProgress.COMPLETED,
                    progress=1.0,
                    completed_at=completed_at,
                    last_assessment=AssessmentSummary(
                        status=AssessmentProgress.COMPLETED,
                        funnel_slug=funnel_slug,
                        updated_at=completed_at,
                        answers_count=answers_count,
                        report_id=previous.report_id if previous else None,
                    ),
                ),
                "activity": ActivitySection(recent_activity=log.to_list()),
                "updated_at": _now(),
            }
        )
        self._store.save(user_id, state)
        logger.info(
            "Patient state updated for user %s (assessment %s, %d activities)",
            user_id, assessment_id, len(log),
        )
        return state
