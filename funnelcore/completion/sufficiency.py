"""
Workup Sufficiency Evaluator: is there enough evidence for clinical review?

Pure, deterministic rule evaluation.  Each funnel may have a versioned
ruleset; a rule names a data field and the question ids that can supply it.
A rule is satisfied when at least one of those questions carries a
non-empty answer.  Unsatisfied rules produce follow-up questions.

No diagnosis is produced here: the only outputs are sufficiency,
the missing field keys and follow-up prompts.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from typing import Any

from funnelcore.completion.models import WorkupStatus

DEFAULT_RULESET_VERSION = "default"


@dataclass(frozen=True)
class FollowUpQuestion:
    id: str
    field_key: str
    question_text: str
    input_type: str
    priority: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "fieldKey": self.field_key,
            "questionText": self.question_text,
            "inputType": self.input_type,
            "priority": self.priority,
        }


@dataclass(frozen=True)
class DataSufficiencyRule:
    field_key: str
    question_ids: tuple[str, ...]
    follow_up: FollowUpQuestion


@dataclass(frozen=True)
class Ruleset:
    funnel_slug: str
    version: str
    rules: tuple[DataSufficiencyRule, ...]
    aliases: tuple[str, ...] = ()


@dataclass
class EvidencePack:
    assessment_id: str
    funnel_slug: str
    answers: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "assessmentId": self.assessment_id,
            "funnelSlug": self.funnel_slug,
            "answers": dict(self.answers),
        }


@dataclass
class WorkupResult:
    is_sufficient: bool
    missing_data_fields: list[str]
    follow_up_questions: list[FollowUpQuestion]
    evidence_pack_hash: str
    ruleset_version: str = DEFAULT_RULESET_VERSION

    @property
    def workup_status(self) -> WorkupStatus:
        return determine_workup_status(self)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Rulesets
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

STRESS_ASSESSMENT_RULESET = Ruleset(
    funnel_slug="stress-assessment",
    version="1.0.0",
    aliases=("stress",),
    rules=(
        DataSufficiencyRule(
            field_key="sleep_quality",
            question_ids=("sleep_q1", "sleep_q2"),
            follow_up=FollowUpQuestion(
                id="followup-sleep-quality",
                field_key="sleep_quality",
                question_text="How would you rate your sleep quality over the past two weeks?",
                input_type="scale",
                priority=10,
            ),
        ),
        DataSufficiencyRule(
            field_key="stress_triggers",
            question_ids=("stress_q1", "stress_q2"),
            follow_up=FollowUpQuestion(
                id="followup-stress-triggers",
                field_key="stress_triggers",
                question_text="Which situations cause you the most stress?",
                input_type="text",
                priority=8,
            ),
        ),
    ),
)

CARDIOVASCULAR_AGE_RULESET = Ruleset(
    funnel_slug="cardiovascular-age",
    version="1.0.0",
    aliases=("cardio-age",),
    rules=(
        DataSufficiencyRule(
            field_key="age",
            question_ids=("q1-age",),
            follow_up=FollowUpQuestion(
                id="followup-age",
                field_key="age",
                question_text="Please confirm your age in years.",
                input_type="number",
                priority=10,
            ),
        ),
        DataSufficiencyRule(
            field_key="blood_pressure",
            question_ids=("q3-blood-pressure",),
            follow_up=FollowUpQuestion(
                id="followup-blood-pressure",
                field_key="blood_pressure",
                question_text="What was your most recent blood pressure reading?",
                input_type="text",
                priority=9,
            ),
        ),
    ),
)

RULESETS: tuple[Ruleset, ...] = (STRESS_ASSESSMENT_RULESET, CARDIOVASCULAR_AGE_RULESET)


def _normalize_slug(slug: str | None) -> str:
    return (slug or "").strip().lower()


def get_ruleset_for_funnel(funnel_slug: str | None) -> Ruleset | None:
    slug = _normalize_slug(funnel_slug)
    if not slug:
        return None
    for ruleset in RULESETS:
        if slug == ruleset.funnel_slug or slug in ruleset.aliases:
            return ruleset
    return None


def get_ruleset_version(funnel_slug: str | None) -> str | None:
    ruleset = get_ruleset_for_funnel(funnel_slug)
    return ruleset.version if ruleset else None


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Evaluation
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def compute_evidence_pack_hash(pack: EvidencePack) -> str:
    canonical = json.dumps(pack.to_dict(), sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _has_value(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return value.strip() != ""
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) > 0
    return True


def check_data_sufficiency(pack: EvidencePack) -> WorkupResult:
    evidence_hash = compute_evidence_pack_hash(pack)
    ruleset = get_ruleset_for_funnel(pack.funnel_slug)
    if ruleset is None:
        return WorkupResult(
            is_sufficient=True,
            missing_data_fields=[],
            follow_up_questions=[],
            evidence_pack_hash=evidence_hash,
        )

    missing: list[str] = []
    follow_ups: list[FollowUpQuestion] = []
    for rule in ruleset.rules:
        if not any(_has_value(pack.answers.get(qid)) for qid in rule.question_ids):
            missing.append(rule.field_key)
            follow_ups.append(rule.follow_up)

    # stable sort keeps ruleset order between equal priorities
    follow_ups.sort(key=lambda q: q.priority, reverse=True)
    return WorkupResult(
        is_sufficient=not missing,
        missing_data_fields=missing,
        follow_up_questions=follow_ups,
        evidence_pack_hash=evidence_hash,
        ruleset_version=ruleset.version,
    )


def determine_workup_status(result: WorkupResult) -> WorkupStatus:
    return WorkupStatus.READY_FOR_REVIEW if result.is_sufficient else WorkupStatus.NEEDS_MORE_DATA
