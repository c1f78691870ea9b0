"""
Shared fixtures for the funnelcore test suite.
Everything runs offline: in-memory stores, the bundled manifests, and an
in-memory stand-in for the GCS bucket behind a real GCSBucketManager.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
from google.api_core.exceptions import NotFound, PreconditionFailed

from funnelcore import settings
from funnelcore.completion.auth import StaticCallerResolver
from funnelcore.completion.idempotency import InMemoryIdempotencyStore
from funnelcore.completion.kpi import KpiTracker
from funnelcore.completion.manifests import FileManifestLoader
from funnelcore.completion.models import Answer, Assessment, PatientProfile
from funnelcore.completion.patient_state import InMemoryPatientStateStore
from funnelcore.completion.setup import build_pipeline
from funnelcore.completion.store import InMemoryAssessmentStore
from funnelcore.completion.telemetry import LoggingTelemetrySink
from funnelcore.infrastructure.gcs import GCSBucketManager

CARDIO_SLUG = "cardio-age"
CARDIO_QUESTIONS = ["q1-age", "q2-gender", "q3-blood-pressure"]

AUTH_USER_1 = {"Authorization": "Bearer token-1"}
AUTH_USER_2 = {"Authorization": "Bearer token-2"}


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Fake GCS bucket
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class FakeBlob:
    """Mimics the blob calls GCSBucketManager makes, including generations."""

    def __init__(self, bucket, name):
        self._bucket = bucket
        self.name = name
        self.generation = None

    def download_as_text(self, timeout=None):
        if self.name not in self._bucket.objects:
            raise NotFound(f"{self.name} not found")
        content, self.generation = self._bucket.objects[self.name]
        return content

    def upload_from_string(self, content, content_type=None, if_generation_match=None, timeout=None):
        current = self._bucket.objects.get(self.name, (None, 0))[1]
        if if_generation_match is not None and if_generation_match != current:
            raise PreconditionFailed("conditionNotMet")
        self._bucket.next_generation += 1
        self.generation = self._bucket.next_generation
        self._bucket.objects[self.name] = (content, self.generation)

    def delete(self, if_generation_match=None, timeout=None):
        if self.name not in self._bucket.objects:
            raise NotFound(f"{self.name} not found")
        if if_generation_match is not None and if_generation_match != self._bucket.objects[self.name][1]:
            raise PreconditionFailed("conditionNotMet")
        del self._bucket.objects[self.name]


class FakeBucket:
    def __init__(self):
        self.objects = {}
        self.next_generation = 1000

    def blob(self, name):
        return FakeBlob(self, name)


@pytest.fixture
def fake_gcs():
    """A GCSBucketManager whose bucket lives in memory."""
    gcs = GCSBucketManager(bucket_name="funnelcore-test")
    gcs._client = MagicMock()
    gcs._bucket = FakeBucket()
    return gcs


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Domain helpers
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def make_assessment(
    assessment_id="assess-1",
    patient_id="patient-1",
    funnel=CARDIO_SLUG,
    funnel_id=None,
    **kwargs,
) -> Assessment:
    kwargs.setdefault("started_at", datetime.now(timezone.utc) - timedelta(minutes=5))
    return Assessment(
        id=assessment_id,
        patient_id=patient_id,
        funnel=funnel,
        funnel_id=funnel_id,
        **kwargs,
    )


def answer(store, assessment_id, question_ids, value="42"):
    for qid in question_ids:
        store.save_answer(Answer(assessment_id=assessment_id, question_id=qid, answer_value=value))


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Pipeline fixtures
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@pytest.fixture
def assessment_store():
    store = InMemoryAssessmentStore()
    store.add_profile(PatientProfile(id="patient-1", user_id="user-1"))
    store.add_profile(PatientProfile(id="patient-2", user_id="user-2"))
    return store


@pytest.fixture
def manifest_loader():
    return FileManifestLoader(settings.MANIFEST_DIR)


@pytest.fixture
def caller_resolver():
    return StaticCallerResolver({
        "token-1": "user-1",
        "token-2": "user-2",
        "token-orphan": "user-without-profile",
    })


@pytest.fixture
def patient_state_store():
    return InMemoryPatientStateStore()


@pytest.fixture
def idempotency_store():
    return InMemoryIdempotencyStore()


@pytest.fixture
def telemetry_sink():
    return LoggingTelemetrySink()


@pytest.fixture
def kpi_tracker():
    return KpiTracker()


@pytest.fixture
def pipeline(
    assessment_store,
    manifest_loader,
    caller_resolver,
    patient_state_store,
    idempotency_store,
    telemetry_sink,
    kpi_tracker,
):
    return build_pipeline(
        assessment_store=assessment_store,
        manifest_loader=manifest_loader,
        caller_resolver=caller_resolver,
        patient_state_store=patient_state_store,
        idempotency_store=idempotency_store,
        telemetry_sink=telemetry_sink,
        kpi_tracker=kpi_tracker,
        idempotency_wait_timeout_seconds=2.0,
    )


@pytest.fixture
def client(pipeline):
    """
    FastAPI test client with the API routers only, wired to the test pipeline.

    The with-block keeps one event loop alive across requests so detached
    workup tasks can finish between calls.
    """
    from fastapi import FastAPI
    from fastapi.testclient import TestClient
    from funnelcore.routers import funnels, health, patient_state

    app = FastAPI()
    app.include_router(health.router)
    app.include_router(funnels.router)
    app.include_router(patient_state.router)

    with patch("funnelcore.completion.setup._pipeline", pipeline):
        with TestClient(app) as c:
            yield c
