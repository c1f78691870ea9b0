"""
Funnel API: patient-facing assessment completion.

Endpoints:
  POST /funnels/{slug}/assessments/{assessment_id}/complete

Headers:
  Authorization: Bearer <jwt>   caller identity
  Idempotency-Key               optional; duplicates replay the first response
  X-Correlation-Id              optional; echoed back (X-Request-Id accepted too)
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse

from funnelcore.completion.correlation import get_correlation_id
from funnelcore.completion.idempotency import IDEMPOTENCY_HEADER, IdempotencyConfig
from funnelcore.completion.orchestrator import completion_endpoint_path
from funnelcore.completion.responses import (
    CORRELATION_HEADER,
    ApiResponse,
    internal_error_response,
)
from funnelcore.completion.setup import get_pipeline

logger = logging.getLogger("completion.api")

router = APIRouter(tags=["funnels"])


def to_json_response(response: ApiResponse, correlation_id: str) -> JSONResponse:
    # The caller's own correlation id wins over one cached with a replayed response
    headers = dict(response.headers)
    headers[CORRELATION_HEADER] = correlation_id
    return JSONResponse(status_code=response.status_code, content=response.body, headers=headers)


@router.post("/funnels/{slug}/assessments/{assessment_id}/complete")
async def complete_assessment(slug: str, assessment_id: str, request: Request):
    """
    Complete an in-progress assessment.

    Validates that every required question is answered, marks the
    assessment completed exactly once, and schedules the workup check.
    """
    correlation_id = get_correlation_id(request.headers)

    pipeline = get_pipeline()
    if pipeline is None:
        raise HTTPException(
            status_code=503,
            detail="Completion pipeline not initialized",
            headers={CORRELATION_HEADER: correlation_id},
        )

    credentials = request.headers.get("authorization")
    caller = pipeline.caller_resolver.resolve_caller(credentials)
    config = IdempotencyConfig(endpoint_path=completion_endpoint_path(slug, assessment_id))

    async def handler() -> ApiResponse:
        return await pipeline.orchestrator.complete(slug, assessment_id, credentials, correlation_id)

    try:
        response = await pipeline.idempotency_guard.run(
            request.headers.get(IDEMPOTENCY_HEADER),
            config,
            None,
            handler,
            user_id=caller.user_id if caller else None,
            correlation_id=correlation_id,
        )
    except Exception as exc:
        logger.error(
            "Completion request failed for %s [correlation=%s]: %s",
            config.endpoint_path, correlation_id, exc,
            exc_info=True,
        )
        response = internal_error_response(correlation_id=correlation_id)

    return to_json_response(response, correlation_id)
