"""
Completion Orchestrator: drives one "complete assessment" request.

  input checks -> auth -> profile -> assessment -> ownership
    -> already completed?  (return existing result, no side effects)
    -> required-question validation
    -> status write (compare-and-set: only if still in_progress)
    -> best-effort stages: telemetry, KPI, patient state, workup scheduling
    -> 200

Everything up to and including the status write decides the response.
Everything after it is advisory: each stage is caught and logged on its own
and can never change the outcome or roll back the write.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from funnelcore.completion.auth import CallerIdentity, CallerResolver
from funnelcore.completion.kpi import KpiTracker, calculate_duration_seconds
from funnelcore.completion.manifests import ManifestLoader, ManifestLoadError, ManifestNotFoundError
from funnelcore.completion.models import Assessment, AssessmentStatus, PatientProfile, WorkupJob
from funnelcore.completion.patient_state import PatientStateAggregator
from funnelcore.completion.responses import (
    PATIENT_ASSESSMENT_SCHEMA_VERSION,
    ApiResponse,
    forbidden_response,
    internal_error_response,
    missing_fields_response,
    not_found_response,
    unauthorized_response,
    validation_error_response,
    versioned_success_response,
)
from funnelcore.completion.store import AssessmentStore, FunnelDefinitionNotFoundError
from funnelcore.completion.telemetry import TelemetrySink, emit_funnel_completed
from funnelcore.completion.validators import validate_required_questions
from funnelcore.completion.workup import WorkupService

logger = logging.getLogger("completion.orchestrator")

ALREADY_COMPLETED_MESSAGE = "Assessment was already completed."
VALIDATION_FAILED_MESSAGE = "Not all required questions have been answered."


def completion_endpoint_path(slug: str, assessment_id: str) -> str:
    return f"/funnels/{slug}/assessments/{assessment_id}/complete"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class CompletionOrchestrator:
    def __init__(
        self,
        store: AssessmentStore,
        manifest_loader: ManifestLoader,
        caller_resolver: CallerResolver,
        patient_state: PatientStateAggregator,
        workup_service: WorkupService,
        telemetry_sink: TelemetrySink,
        kpi_tracker: KpiTracker,
    ) -> None:
        self._store = store
        self._manifests = manifest_loader
        self._auth = caller_resolver
        self._patient_state = patient_state
        self._workup = workup_service
        self._telemetry = telemetry_sink
        self._kpi = kpi_tracker

    async def complete(
        self,
        slug: str | None,
        assessment_id: str | None,
        credentials: str | None,
        correlation_id: str,
    ) -> ApiResponse:
        try:
            return await self._complete(slug, assessment_id, credentials, correlation_id)
        except Exception as exc:
            logger.error(
                "Unexpected error completing assessment %s (funnel=%s, correlation=%s): %s",
                assessment_id, slug, correlation_id, exc,
                exc_info=True,
            )
            return internal_error_response(correlation_id=correlation_id)

    async def _complete(
        self,
        slug: str | None,
        assessment_id: str | None,
        credentials: str | None,
        correlation_id: str,
    ) -> ApiResponse:
        slug = (slug or "").strip()
        assessment_id = (assessment_id or "").strip()
        if not slug or not assessment_id:
            return missing_fields_response(
                "Funnel slug or assessment id is missing.", correlation_id=correlation_id
            )
        endpoint = completion_endpoint_path(slug, assessment_id)

        caller = self._auth.resolve_caller(credentials)
        if caller is None:
            logger.warning("Unauthorized completion attempt on %s [correlation=%s]", endpoint, correlation_id)
            return unauthorized_response(correlation_id=correlation_id)

        profile = await asyncio.to_thread(self._store.get_patient_profile, caller.user_id)
        if profile is None:
            logger.warning("No patient profile for user %s on %s", caller.user_id, endpoint)
            return not_found_response("Patient profile", correlation_id=correlation_id)

        assessment = await asyncio.to_thread(self._store.load_assessment, assessment_id, slug)
        if assessment is None:
            logger.info("Assessment %s not found in funnel %s", assessment_id, slug)
            return not_found_response("Assessment", correlation_id=correlation_id)

        if assessment.patient_id != profile.id:
            logger.warning(
                "Forbidden: user %s tried to complete assessment %s owned by another patient",
                caller.user_id, assessment_id,
            )
            return forbidden_response(
                "You are not allowed to complete this assessment.", correlation_id=correlation_id
            )

        if assessment.is_completed:
            return self._already_completed(assessment, correlation_id)

        try:
            result = await asyncio.to_thread(
                validate_required_questions,
                assessment.funnel_ref,
                assessment_id,
                self._manifests,
                self._store,
            )
        except (ManifestNotFoundError, FunnelDefinitionNotFoundError) as exc:
            logger.warning("Funnel definition for %s not found: %s", slug, exc)
            return not_found_response("Funnel", correlation_id=correlation_id)
        except ManifestLoadError as exc:
            logger.error("Failed to load manifest for %s: %s", slug, exc, exc_info=True)
            return internal_error_response(correlation_id=correlation_id)

        if not result.is_valid:
            return validation_error_response(
                VALIDATION_FAILED_MESSAGE,
                {"missingQuestions": [m.to_dict() for m in result.missing_questions]},
                correlation_id=correlation_id,
            )

        completed_at = _now()
        try:
            won = await asyncio.to_thread(self._store.mark_completed, assessment_id, completed_at)
        except Exception as exc:
            logger.error(
                "Failed to mark assessment %s completed [correlation=%s]: %s",
                assessment_id, correlation_id, exc,
                exc_info=True,
            )
            return internal_error_response(
                "Failed to complete the assessment.", correlation_id=correlation_id
            )
        if not won:
            logger.info("Assessment %s was completed by a concurrent request", assessment_id)
            return self._already_completed(assessment, correlation_id)

        logger.info(
            "Assessment %s completed (funnel=%s, user=%s, correlation=%s)",
            assessment_id, slug, caller.user_id, correlation_id,
        )

        await self._run_side_effects(caller, profile, assessment, completed_at, correlation_id)

        return versioned_success_response(
            {"assessmentId": assessment.id, "status": AssessmentStatus.COMPLETED.value},
            PATIENT_ASSESSMENT_SCHEMA_VERSION,
            200,
            correlation_id,
        )

    def _already_completed(self, assessment: Assessment, correlation_id: str) -> ApiResponse:
        return versioned_success_response(
            {
                "assessmentId": assessment.id,
                "status": AssessmentStatus.COMPLETED.value,
                "message": ALREADY_COMPLETED_MESSAGE,
            },
            PATIENT_ASSESSMENT_SCHEMA_VERSION,
            200,
            correlation_id,
        )

    # ── Best-effort stages ──

    async def _run_side_effects(
        self,
        caller: CallerIdentity,
        profile: PatientProfile,
        assessment: Assessment,
        completed_at: datetime,
        correlation_id: str,
    ) -> None:
        slug = assessment.funnel

        try:
            emit_funnel_completed(
                self._telemetry,
                correlation_id=correlation_id,
                assessment_id=assessment.id,
                funnel_slug=slug,
                patient_id=profile.id,
            )
        except Exception as exc:
            logger.warning("Failed to emit FUNNEL_COMPLETED for %s: %s", assessment.id, exc)

        try:
            duration: int | None = None
            if assessment.started_at is not None:
                duration = calculate_duration_seconds(assessment.started_at, completed_at) or None
            self._kpi.track_assessment_completed(
                actor_user_id=caller.user_id,
                assessment_id=assessment.id,
                funnel_slug=slug,
                funnel_id=assessment.funnel_id,
                started_at=assessment.started_at,
                completed_at=completed_at,
                duration_seconds=duration,
            )
        except Exception as exc:
            logger.warning("Failed to track KPI for %s: %s", assessment.id, exc)

        try:
            answers_count = len(
                await asyncio.to_thread(self._store.list_answered_question_ids, assessment.id)
            )
            await asyncio.to_thread(
                self._patient_state.record_assessment_completed,
                caller.user_id,
                assessment.id,
                slug,
                completed_at,
                answers_count,
            )
        except Exception as exc:
            logger.warning(
                "Failed to update patient state for user %s: %s", caller.user_id, exc, exc_info=True
            )

        try:
            await self._workup.schedule(
                WorkupJob(
                    assessment_id=assessment.id,
                    funnel_slug=slug,
                    patient_id=profile.id,
                    correlation_id=correlation_id,
                )
            )
        except Exception as exc:
            logger.warning("Failed to schedule workup for %s: %s", assessment.id, exc)
