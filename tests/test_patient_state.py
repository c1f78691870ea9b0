"""
Tests for the Patient State aggregate and the bounded activity log.

Tests cover:
  - BoundedActivityLog capacity / eviction / ordering
  - Empty state defaults and camelCase document shape
  - Lazy creation on first completion
  - Activity entry label + metadata, assessment section overwrite
  - Report link carried into the new assessment summary
  - Activity capped at 10 after many completions
  - Invalid stored documents replaced
  - GCS-backed store
"""

from datetime import datetime, timedelta, timezone

import pytest

from funnelcore.completion.patient_state import (
    ActivityItem,
    ActivityType,
    AssessmentProgress,
    AssessmentSummary,
    BoundedActivityLog,
    GCSPatientStateStore,
    InMemoryPatientStateStore,
    PatientState,
    PatientStateAggregator,
    PatientStateNotFoundError,
)

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


def _item(n: int) -> ActivityItem:
    return ActivityItem(type=ActivityType.OTHER, label=f"item-{n}", timestamp=T0 + timedelta(minutes=n))


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Activity log
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestBoundedActivityLog:

    def test_prepend_is_newest_first(self):
        log = BoundedActivityLog(capacity=3)
        for n in range(3):
            log.prepend(_item(n))
        assert [i.label for i in log] == ["item-2", "item-1", "item-0"]

    def test_full_log_evicts_oldest(self):
        log = BoundedActivityLog(capacity=3)
        for n in range(5):
            log.prepend(_item(n))
        assert len(log) == 3
        assert [i.label for i in log.to_list()] == ["item-4", "item-3", "item-2"]

    def test_seed_longer_than_capacity_keeps_newest(self):
        seeded = [_item(n) for n in (9, 8, 7, 6)]  # newest first
        log = BoundedActivityLog(seeded, capacity=2)
        assert [i.label for i in log] == ["item-9", "item-8"]

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            BoundedActivityLog(capacity=0)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Document model
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestPatientStateModel:

    def test_empty_defaults(self):
        state = PatientState.create_empty()
        assert state.patient_state_version == "0.1"
        assert state.assessment.status == AssessmentProgress.NOT_STARTED
        assert state.assessment.progress == 0
        assert state.activity.recent_activity == []
        assert state.dialog.last_context == "none"

    def test_document_uses_camel_case(self):
        doc = PatientState.create_empty().to_document()
        assert doc["patient_state_version"] == "0.1"
        assert "updatedAt" in doc
        assert "recentActivity" in doc["activity"]
        assert "lastAssessmentId" in doc["assessment"]
        assert "healthScore" in doc["metrics"]

    def test_document_validates_back(self):
        doc = PatientState.create_empty().to_document()
        assert PatientState.safe_validate(doc) is not None

    def test_safe_validate_rejects_garbage(self):
        assert PatientState.safe_validate({"patient_state_version": "9.9"}) is None
        assert PatientState.safe_validate("nope") is None


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Aggregator
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestPatientStateAggregator:

    def test_created_lazily(self):
        store = InMemoryPatientStateStore()
        agg = PatientStateAggregator(store)
        assert agg.get_state("user-1") is None
        with pytest.raises(PatientStateNotFoundError):
            store.load("user-1")

        agg.record_assessment_completed("user-1", "a-1", "cardio-age", T0)
        assert agg.get_state("user-1") is not None

    def test_activity_entry(self):
        agg = PatientStateAggregator(InMemoryPatientStateStore())
        state = agg.record_assessment_completed("user-1", "a-1", "cardio-age", T0)
        entry = state.activity.recent_activity[0]
        assert entry.type == ActivityType.ASSESSMENT_COMPLETED
        assert entry.label == "Completed cardio-age Assessment"
        assert entry.metadata == {"assessmentId": "a-1", "funnelSlug": "cardio-age"}
        assert entry.timestamp == T0

    def test_assessment_section_overwritten(self):
        agg = PatientStateAggregator(InMemoryPatientStateStore())
        agg.record_assessment_completed("user-1", "a-1", "cardio-age", T0, answers_count=3)
        state = agg.record_assessment_completed("user-1", "a-2", "stress-assessment", T0 + timedelta(days=1))
        section = state.assessment
        assert section.last_assessment_id == "a-2"
        assert section.status == AssessmentProgress.COMPLETED
        assert section.progress == 1.0
        assert section.completed_at == T0 + timedelta(days=1)
        assert section.last_assessment.funnel_slug == "stress-assessment"
        assert [a.metadata["assessmentId"] for a in state.activity.recent_activity] == ["a-2", "a-1"]

    def test_report_link_carried_over(self):
        store = InMemoryPatientStateStore()
        existing = PatientState.create_empty()
        existing.assessment.last_assessment = AssessmentSummary(
            status=AssessmentProgress.COMPLETED, funnel_slug="cardio-age", report_id="rep-1"
        )
        store.save("user-1", existing)

        agg = PatientStateAggregator(store)
        state = agg.record_assessment_completed("user-1", "a-2", "stress-assessment", T0)
        assert state.assessment.last_assessment.report_id == "rep-1"
        assert agg.get_state("user-1").assessment.last_assessment.report_id == "rep-1"

    def test_no_report_link_on_first_completion(self):
        agg = PatientStateAggregator(InMemoryPatientStateStore())
        state = agg.record_assessment_completed("user-1", "a-1", "cardio-age", T0)
        assert state.assessment.last_assessment.report_id is None

    def test_activity_capped_at_ten(self):
        agg = PatientStateAggregator(InMemoryPatientStateStore())
        for n in range(12):
            state = agg.record_assessment_completed("user-1", f"a-{n}", "cardio-age", T0 + timedelta(hours=n))
        ids = [a.metadata["assessmentId"] for a in state.activity.recent_activity]
        assert len(ids) == 10
        assert ids[0] == "a-11"
        assert ids[-1] == "a-2"

    def test_invalid_stored_document_replaced(self):
        store = InMemoryPatientStateStore()
        store.put_raw("user-1", {"patient_state_version": "0.0", "activity": "broken"})
        agg = PatientStateAggregator(store)
        state = agg.record_assessment_completed("user-1", "a-1", "cardio-age", T0)
        assert len(state.activity.recent_activity) == 1
        assert PatientState.safe_validate(store.load("user-1")) is not None

    def test_other_sections_preserved(self):
        store = InMemoryPatientStateStore()
        existing = PatientState.create_empty()
        existing.dialog.message_count = 7
        store.save("user-1", existing)

        state = PatientStateAggregator(store).record_assessment_completed("user-1", "a-1", "cardio-age", T0)
        assert state.dialog.message_count == 7

    def test_updated_at_refreshed(self):
        agg = PatientStateAggregator(InMemoryPatientStateStore())
        state = agg.record_assessment_completed("user-1", "a-1", "cardio-age", T0)
        assert state.updated_at > T0


class TestGCSPatientStateStore:

    def test_save_and_load(self, fake_gcs):
        store = GCSPatientStateStore(fake_gcs)
        with pytest.raises(PatientStateNotFoundError):
            store.load("user-1")

        agg = PatientStateAggregator(store)
        agg.record_assessment_completed("user-1", "a-1", "cardio-age", T0)

        raw = store.load("user-1")
        assert raw["assessment"]["lastAssessmentId"] == "a-1"
        assert "patient_states/user-1.json" in fake_gcs.bucket.objects
