"""
Required-Question Validator: checks every required question is answered.

Two strategies share one output contract:

  Catalog funnels  walk the manifest resolved by slug
  Legacy funnels   walk funnel_steps / funnel_step_questions by order_index

order_index on a MissingQuestion is a global, zero-based index over every
question (required or not) across all steps, in presentation order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

from funnelcore.completion.manifests import FunnelManifest, ManifestLoader
from funnelcore.completion.models import CatalogFunnel, FunnelRef, LegacyFunnel, LegacyStep
from funnelcore.completion.store import AssessmentStore

logger = logging.getLogger("completion.validators")


@dataclass(frozen=True)
class MissingQuestion:
    question_id: str
    question_key: str
    question_label: str
    order_index: int

    def to_dict(self) -> dict:
        return {
            "questionId": self.question_id,
            "questionKey": self.question_key,
            "questionLabel": self.question_label,
            "orderIndex": self.order_index,
        }


@dataclass
class ValidationResult:
    is_valid: bool
    missing_questions: list[MissingQuestion] = field(default_factory=list)


def _collect_missing(
    questions: Iterable[tuple[str, str, str, bool]], answered_ids: set[str]
) -> ValidationResult:
    """questions: (id, key, label, required) in presentation order."""
    missing = [
        MissingQuestion(question_id=qid, question_key=key, question_label=label, order_index=idx)
        for idx, (qid, key, label, required) in enumerate(questions)
        if required and qid not in answered_ids
    ]
    return ValidationResult(is_valid=not missing, missing_questions=missing)


def validate_catalog_required_questions(
    manifest: FunnelManifest, answered_ids: set[str]
) -> ValidationResult:
    return _collect_missing(
        ((q.id, q.key, q.label, q.required) for q in manifest.iter_questions()),
        answered_ids,
    )


def validate_legacy_required_questions(
    steps: list[LegacyStep], answered_ids: set[str]
) -> ValidationResult:
    ordered = (
        (q.question_id, q.key, q.label, q.is_required)
        for step in sorted(steps, key=lambda s: s.order_index)
        for q in sorted(step.questions, key=lambda q: q.order_index)
    )
    return _collect_missing(ordered, answered_ids)


def validate_required_questions(
    ref: FunnelRef,
    assessment_id: str,
    manifest_loader: ManifestLoader,
    store: AssessmentStore,
) -> ValidationResult:
    """
    Load the funnel definition for ``ref`` and validate the assessment's answers.

    Propagates ManifestNotFoundError / ManifestLoadError for catalog funnels
    and FunnelDefinitionNotFoundError for legacy funnels.
    """
    match ref:
        case CatalogFunnel(slug=slug):
            manifest = manifest_loader.load_manifest(slug)
            answered = store.list_answered_question_ids(assessment_id)
            result = validate_catalog_required_questions(manifest, answered)
        case LegacyFunnel(funnel_id=funnel_id):
            steps = store.load_legacy_steps(funnel_id)
            answered = store.list_answered_question_ids(assessment_id)
            result = validate_legacy_required_questions(steps, answered)
        case _:
            raise TypeError(f"Unsupported funnel reference: {ref!r}")

    if not result.is_valid:
        logger.info(
            "Assessment %s missing %d required question(s): %s",
            assessment_id,
            len(result.missing_questions),
            [m.question_id for m in result.missing_questions],
        )
    return result
