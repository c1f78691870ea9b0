"""
Assessment domain model: records the completion pipeline reads and writes.

An Assessment is one patient's attempt at one funnel.  Where its questions
come from depends on the funnel flavour, expressed as a tagged union:

  CatalogFunnel(slug)            manifest resolved dynamically by slug
  LegacyFunnel(slug, funnel_id)  fixed relational step/question schema
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, Field, model_validator


def _now() -> datetime:
    return datetime.now(timezone.utc)


class AssessmentStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class WorkupStatus(str, Enum):
    NEEDS_MORE_DATA = "needs_more_data"
    READY_FOR_REVIEW = "ready_for_review"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Funnel reference
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@dataclass(frozen=True)
class CatalogFunnel:
    slug: str


@dataclass(frozen=True)
class LegacyFunnel:
    slug: str
    funnel_id: str


FunnelRef = Union[CatalogFunnel, LegacyFunnel]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Records
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class Assessment(BaseModel):
    id: str
    patient_id: str
    funnel: str  # funnel slug
    funnel_id: Optional[str] = None  # null for catalog funnels
    status: AssessmentStatus = AssessmentStatus.IN_PROGRESS
    started_at: Optional[datetime] = Field(default_factory=_now)
    completed_at: Optional[datetime] = None
    workup_status: Optional[WorkupStatus] = None
    missing_data_fields: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _completed_at_matches_status(self) -> Assessment:
        if (self.status == AssessmentStatus.COMPLETED) != (self.completed_at is not None):
            raise ValueError("completed_at must be set if and only if status is completed")
        return self

    @property
    def funnel_ref(self) -> FunnelRef:
        if self.funnel_id is None:
            return CatalogFunnel(slug=self.funnel)
        return LegacyFunnel(slug=self.funnel, funnel_id=self.funnel_id)

    @property
    def is_completed(self) -> bool:
        return self.status == AssessmentStatus.COMPLETED


class Answer(BaseModel):
    assessment_id: str
    question_id: str
    answer_value: Any = None


class PatientProfile(BaseModel):
    id: str
    user_id: str


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Legacy relational funnel schema
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class LegacyStepQuestion(BaseModel):
    question_id: str
    key: str
    label: str = ""
    is_required: bool = False
    order_index: int = 0


class LegacyStep(BaseModel):
    id: str
    funnel_id: str
    title: str = ""
    order_index: int = 0
    questions: list[LegacyStepQuestion] = Field(default_factory=list)


@dataclass
class WorkupJob:
    """A detached workup check scheduled after a completion."""

    assessment_id: str
    funnel_slug: str
    patient_id: str
    correlation_id: str
    scheduled_at: datetime = field(default_factory=_now)
