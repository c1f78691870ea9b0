"""
Completion Pipeline Setup: builds and wires every pipeline component.

Called once during app startup.  If anything fails the pipeline stays
uninitialized and the completion routes answer 503.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from funnelcore import settings
from funnelcore.completion.auth import CallerResolver, JwtCallerResolver, StaticCallerResolver
from funnelcore.completion.idempotency import (
    GCSIdempotencyStore,
    IdempotencyGuard,
    IdempotencyStore,
    InMemoryIdempotencyStore,
)
from funnelcore.completion.kpi import KpiTracker
from funnelcore.completion.manifests import FileManifestLoader, GCSManifestLoader, ManifestLoader
from funnelcore.completion.orchestrator import CompletionOrchestrator
from funnelcore.completion.patient_state import (
    GCSPatientStateStore,
    InMemoryPatientStateStore,
    PatientStateAggregator,
    PatientStateStore,
)
from funnelcore.completion.queue import WorkupQueueManager
from funnelcore.completion.store import AssessmentStore, GCSAssessmentStore, InMemoryAssessmentStore
from funnelcore.completion.telemetry import LoggingTelemetrySink, TelemetrySink
from funnelcore.completion.workup import WorkupService

logger = logging.getLogger("completion.setup")


@dataclass
class CompletionPipeline:
    orchestrator: CompletionOrchestrator
    idempotency_guard: IdempotencyGuard
    caller_resolver: CallerResolver
    patient_state: PatientStateAggregator
    workup_service: WorkupService
    queue_manager: WorkupQueueManager | None
    assessment_store: AssessmentStore
    telemetry_sink: TelemetrySink
    kpi_tracker: KpiTracker


# Module-level singleton (set during initialize)
_pipeline: CompletionPipeline | None = None


def build_pipeline(
    *,
    assessment_store: AssessmentStore,
    manifest_loader: ManifestLoader,
    caller_resolver: CallerResolver,
    patient_state_store: PatientStateStore,
    idempotency_store: IdempotencyStore,
    telemetry_sink: TelemetrySink | None = None,
    kpi_tracker: KpiTracker | None = None,
    queue_manager: WorkupQueueManager | None = None,
    activity_cap: int = settings.ACTIVITY_LOG_CAP,
    idempotency_ttl_seconds: int = settings.IDEMPOTENCY_TTL_SECONDS,
    idempotency_lock_timeout_seconds: int = settings.IDEMPOTENCY_LOCK_TIMEOUT_SECONDS,
    idempotency_wait_timeout_seconds: float = settings.IDEMPOTENCY_WAIT_TIMEOUT_SECONDS,
    idempotency_purge_interval_seconds: float = settings.IDEMPOTENCY_PURGE_INTERVAL_SECONDS,
) -> CompletionPipeline:
    """Wire components without starting anything (no event loop needed)."""
    telemetry_sink = telemetry_sink or LoggingTelemetrySink()
    kpi_tracker = kpi_tracker or KpiTracker()
    patient_state = PatientStateAggregator(patient_state_store, activity_cap=activity_cap)
    workup_service = WorkupService(assessment_store, queue_manager)

    orchestrator = CompletionOrchestrator(
        store=assessment_store,
        manifest_loader=manifest_loader,
        caller_resolver=caller_resolver,
        patient_state=patient_state,
        workup_service=workup_service,
        telemetry_sink=telemetry_sink,
        kpi_tracker=kpi_tracker,
    )
    guard = IdempotencyGuard(
        idempotency_store,
        ttl_seconds=idempotency_ttl_seconds,
        lock_timeout_seconds=idempotency_lock_timeout_seconds,
        wait_timeout_seconds=idempotency_wait_timeout_seconds,
        purge_interval_seconds=idempotency_purge_interval_seconds,
    )
    return CompletionPipeline(
        orchestrator=orchestrator,
        idempotency_guard=guard,
        caller_resolver=caller_resolver,
        patient_state=patient_state,
        workup_service=workup_service,
        queue_manager=queue_manager,
        assessment_store=assessment_store,
        telemetry_sink=telemetry_sink,
        kpi_tracker=kpi_tracker,
    )


def _build_caller_resolver() -> CallerResolver:
    if settings.AUTH_JWT_SECRET:
        return JwtCallerResolver(settings.AUTH_JWT_SECRET, audience=settings.AUTH_JWT_AUDIENCE)
    logger.warning("AUTH_JWT_SECRET not set: every completion request will be unauthorized")
    return StaticCallerResolver()


async def initialize_pipeline(backend: str | None = None) -> CompletionPipeline:
    """
    Build the pipeline for the configured storage backend and start the
    workup queue.
    """
    global _pipeline

    backend = (backend or settings.STORAGE_BACKEND).lower()
    logger.info("Initializing completion pipeline (backend=%s)...", backend)

    if backend == "gcs":
        from funnelcore.dependencies import get_gcs
        gcs = get_gcs()
        gcs._ensure_initialized()
        assessment_store: AssessmentStore = GCSAssessmentStore(gcs)
        manifest_loader: ManifestLoader = GCSManifestLoader(gcs)
        patient_state_store: PatientStateStore = GCSPatientStateStore(gcs)
        idempotency_store: IdempotencyStore = GCSIdempotencyStore(gcs)
    elif backend == "memory":
        assessment_store = InMemoryAssessmentStore()
        manifest_loader = FileManifestLoader(settings.MANIFEST_DIR)
        patient_state_store = InMemoryPatientStateStore()
        idempotency_store = InMemoryIdempotencyStore()
    else:
        raise ValueError(f"Unknown STORAGE_BACKEND: {backend}")

    pipeline = build_pipeline(
        assessment_store=assessment_store,
        manifest_loader=manifest_loader,
        caller_resolver=_build_caller_resolver(),
        patient_state_store=patient_state_store,
        idempotency_store=idempotency_store,
    )
    # The queue needs the service's run() and the service needs the queue
    workup_queue = WorkupQueueManager(processor=pipeline.workup_service.run)
    pipeline.workup_service.attach_queue(workup_queue)
    pipeline.queue_manager = workup_queue
    await workup_queue.start()

    _pipeline = pipeline
    logger.info("Completion pipeline initialized (backend=%s)", backend)
    return pipeline


async def shutdown_pipeline() -> None:
    """Let scheduled workups finish, then stop the queue."""
    global _pipeline
    if _pipeline is None:
        return
    try:
        await _pipeline.workup_service.drain()
    except Exception as exc:
        logger.warning("Error draining workup jobs on shutdown: %s", exc)
    if _pipeline.queue_manager:
        await _pipeline.queue_manager.stop()
    logger.info("Completion pipeline shutdown complete")
    _pipeline = None


def get_pipeline() -> CompletionPipeline | None:
    return _pipeline
