"""
Assessment Store: persistence gateway for the completion pipeline.

Everything the orchestrator and the workup evaluator read or write about
assessments goes through AssessmentStore:

  - patient profile lookup (auth user id -> patient profile)
  - assessment load, scoped by funnel slug
  - answers (answered-id set for validation, full values for evidence packs)
  - legacy funnel step/question schema
  - the completion write (compare-and-set on status)
  - the workup write

Two implementations: InMemoryAssessmentStore (dev / tests, seedable) and
GCSAssessmentStore (JSON documents with generation-match locking).
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from funnelcore.completion.models import (
    Answer,
    Assessment,
    AssessmentStatus,
    LegacyStep,
    PatientProfile,
    WorkupStatus,
)
from funnelcore.infrastructure.gcs import DocumentNotFoundError, GenerationMismatchError

logger = logging.getLogger("completion.store")


class StorageError(Exception):
    """The backing store failed to read or write."""
    pass


class FunnelDefinitionNotFoundError(Exception):
    """A legacy funnel has no step definitions."""
    pass


class AssessmentStore(ABC):
    @abstractmethod
    def get_patient_profile(self, user_id: str) -> PatientProfile | None:
        ...

    @abstractmethod
    def load_assessment(self, assessment_id: str, funnel_slug: str) -> Assessment | None:
        """Load an assessment only if it belongs to the given funnel."""

    @abstractmethod
    def list_answered_question_ids(self, assessment_id: str) -> set[str]:
        ...

    @abstractmethod
    def load_answers(self, assessment_id: str) -> dict[str, Any]:
        ...

    @abstractmethod
    def load_legacy_steps(self, funnel_id: str) -> list[LegacyStep]:
        """Raises FunnelDefinitionNotFoundError if the funnel has no steps."""

    @abstractmethod
    def mark_completed(self, assessment_id: str, completed_at: datetime) -> bool:
        """
        Set status=completed and completed_at, only if still in_progress.

        Returns False when the assessment was already completed (lost race).
        Raises StorageError on write failure.
        """

    @abstractmethod
    def update_workup(
        self, assessment_id: str, workup_status: WorkupStatus, missing_data_fields: list[str]
    ) -> None:
        ...


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  In-memory
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class InMemoryAssessmentStore(AssessmentStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._profiles: dict[str, PatientProfile] = {}
        self._assessments: dict[str, Assessment] = {}
        self._answers: dict[str, dict[str, Any]] = {}
        self._legacy_steps: dict[str, list[LegacyStep]] = {}
        self.completion_writes = 0

    # ── Seeding ──

    def add_profile(self, profile: PatientProfile) -> None:
        with self._lock:
            self._profiles[profile.user_id] = profile

    def add_assessment(self, assessment: Assessment) -> None:
        with self._lock:
            self._assessments[assessment.id] = assessment.model_copy(deep=True)

    def save_answer(self, answer: Answer) -> None:
        """Upsert: at most one answer per (assessment, question)."""
        with self._lock:
            self._answers.setdefault(answer.assessment_id, {})[answer.question_id] = answer.answer_value

    def add_legacy_steps(self, funnel_id: str, steps: list[LegacyStep]) -> None:
        with self._lock:
            self._legacy_steps[funnel_id] = list(steps)

    def get_assessment(self, assessment_id: str) -> Assessment | None:
        with self._lock:
            a = self._assessments.get(assessment_id)
            return a.model_copy(deep=True) if a else None

    # ── AssessmentStore ──

    def get_patient_profile(self, user_id: str) -> PatientProfile | None:
        with self._lock:
            return self._profiles.get(user_id)

    def load_assessment(self, assessment_id: str, funnel_slug: str) -> Assessment | None:
        with self._lock:
            a = self._assessments.get(assessment_id)
            if a is None or a.funnel != funnel_slug:
                return None
            return a.model_copy(deep=True)

    def list_answered_question_ids(self, assessment_id: str) -> set[str]:
        with self._lock:
            return set(self._answers.get(assessment_id, {}))

    def load_answers(self, assessment_id: str) -> dict[str, Any]:
        with self._lock:
            return dict(self._answers.get(assessment_id, {}))

    def load_legacy_steps(self, funnel_id: str) -> list[LegacyStep]:
        with self._lock:
            steps = self._legacy_steps.get(funnel_id)
        if not steps:
            raise FunnelDefinitionNotFoundError(f"No steps defined for funnel {funnel_id}")
        return [s.model_copy(deep=True) for s in steps]

    def mark_completed(self, assessment_id: str, completed_at: datetime) -> bool:
        with self._lock:
            a = self._assessments.get(assessment_id)
            if a is None:
                raise StorageError(f"Assessment {assessment_id} disappeared")
            if a.status != AssessmentStatus.IN_PROGRESS:
                return False
            self._assessments[assessment_id] = a.model_copy(
                update={"status": AssessmentStatus.COMPLETED, "completed_at": completed_at}
            )
            self.completion_writes += 1
            return True

    def update_workup(
        self, assessment_id: str, workup_status: WorkupStatus, missing_data_fields: list[str]
    ) -> None:
        with self._lock:
            a = self._assessments.get(assessment_id)
            if a is None:
                raise StorageError(f"Assessment {assessment_id} disappeared")
            self._assessments[assessment_id] = a.model_copy(
                update={
                    "workup_status": workup_status,
                    "missing_data_fields": list(missing_data_fields),
                }
            )


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  GCS
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class GCSAssessmentStore(AssessmentStore):
    """
    Assessment documents in GCS.

    Layout:
      assessments/{id}.json             Assessment
      assessment_answers/{id}.json      {question_id: answer_value}
      patient_profiles/{user_id}.json   PatientProfile
      legacy_funnels/{funnel_id}.json   {"steps": [LegacyStep, ...]}

    Writes to an assessment are read-modify-write guarded by the blob
    generation, so two concurrent completions cannot both win.
    """

    ASSESSMENT_PREFIX = "assessments"
    ANSWERS_PREFIX = "assessment_answers"
    PROFILE_PREFIX = "patient_profiles"
    LEGACY_PREFIX = "legacy_funnels"

    # Retries after losing a generation race on a workup write
    MAX_WRITE_ATTEMPTS = 3

    def __init__(self, gcs_bucket_manager) -> None:
        self._gcs = gcs_bucket_manager

    def _read(self, path: str) -> tuple[dict, int] | None:
        try:
            return self._gcs.read_json(path)
        except DocumentNotFoundError:
            return None
        except Exception as exc:
            raise StorageError(f"Failed to read {path}: {exc}") from exc

    def get_patient_profile(self, user_id: str) -> PatientProfile | None:
        found = self._read(f"{self.PROFILE_PREFIX}/{user_id}.json")
        return PatientProfile.model_validate(found[0]) if found else None

    def load_assessment(self, assessment_id: str, funnel_slug: str) -> Assessment | None:
        found = self._read(f"{self.ASSESSMENT_PREFIX}/{assessment_id}.json")
        if not found:
            return None
        assessment = Assessment.model_validate(found[0])
        return assessment if assessment.funnel == funnel_slug else None

    def list_answered_question_ids(self, assessment_id: str) -> set[str]:
        return set(self.load_answers(assessment_id))

    def load_answers(self, assessment_id: str) -> dict[str, Any]:
        found = self._read(f"{self.ANSWERS_PREFIX}/{assessment_id}.json")
        return dict(found[0]) if found else {}

    def load_legacy_steps(self, funnel_id: str) -> list[LegacyStep]:
        found = self._read(f"{self.LEGACY_PREFIX}/{funnel_id}.json")
        steps = [LegacyStep.model_validate(s) for s in (found[0].get("steps") or [])] if found else []
        if not steps:
            raise FunnelDefinitionNotFoundError(f"No steps defined for funnel {funnel_id}")
        return steps

    def mark_completed(self, assessment_id: str, completed_at: datetime) -> bool:
        path = f"{self.ASSESSMENT_PREFIX}/{assessment_id}.json"
        for attempt in range(1, self.MAX_WRITE_ATTEMPTS + 1):
            found = self._read(path)
            if not found:
                raise StorageError(f"Assessment {assessment_id} disappeared")
            data, generation = found
            assessment = Assessment.model_validate(data)
            if assessment.status != AssessmentStatus.IN_PROGRESS:
                return False

            updated = assessment.model_copy(
                update={"status": AssessmentStatus.COMPLETED, "completed_at": completed_at}
            )
            try:
                self._gcs.write_json(path, updated.model_dump(mode="json"), if_generation_match=generation)
                return True
            except GenerationMismatchError:
                # Re-read: the status check above decides whether we lost
                logger.info(
                    "Completion write for %s raced (attempt %d/%d)",
                    assessment_id, attempt, self.MAX_WRITE_ATTEMPTS,
                )
            except Exception as exc:
                raise StorageError(f"Failed to complete assessment {assessment_id}: {exc}") from exc
        raise StorageError(f"Completion write for {assessment_id} kept racing")

    def update_workup(
        self, assessment_id: str, workup_status: WorkupStatus, missing_data_fields: list[str]
    ) -> None:
        path = f"{self.ASSESSMENT_PREFIX}/{assessment_id}.json"
        for attempt in range(1, self.MAX_WRITE_ATTEMPTS + 1):
            found = self._read(path)
            if not found:
                raise StorageError(f"Assessment {assessment_id} disappeared")
            data, generation = found
            updated = Assessment.model_validate(data).model_copy(
                update={
                    "workup_status": workup_status,
                    "missing_data_fields": list(missing_data_fields),
                }
            )
            try:
                self._gcs.write_json(path, updated.model_dump(mode="json"), if_generation_match=generation)
                return
            except GenerationMismatchError:
                logger.warning(
                    "Workup write for %s raced (attempt %d/%d)",
                    assessment_id, attempt, self.MAX_WRITE_ATTEMPTS,
                )
            except Exception as exc:
                raise StorageError(f"Failed to update workup for {assessment_id}: {exc}") from exc
        raise StorageError(f"Workup write for {assessment_id} kept racing")
