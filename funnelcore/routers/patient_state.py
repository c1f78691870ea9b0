"""
Patient State API: read the caller's denormalized dashboard state.

Endpoints:
  GET /patient/state
"""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, HTTPException, Request

from funnelcore.completion.correlation import get_correlation_id
from funnelcore.completion.patient_state import PATIENT_STATE_VERSION
from funnelcore.completion.responses import (
    CORRELATION_HEADER,
    internal_error_response,
    unauthorized_response,
    versioned_success_response,
)
from funnelcore.completion.setup import get_pipeline
from funnelcore.routers.funnels import to_json_response

logger = logging.getLogger("completion.api")

router = APIRouter(tags=["patient"])


@router.get("/patient/state")
async def get_patient_state(request: Request):
    """Returns data=null until the first write creates the document."""
    correlation_id = get_correlation_id(request.headers)

    pipeline = get_pipeline()
    if pipeline is None:
        raise HTTPException(
            status_code=503,
            detail="Completion pipeline not initialized",
            headers={CORRELATION_HEADER: correlation_id},
        )

    caller = pipeline.caller_resolver.resolve_caller(request.headers.get("authorization"))
    if caller is None:
        return to_json_response(unauthorized_response(correlation_id=correlation_id), correlation_id)

    try:
        state = await asyncio.to_thread(pipeline.patient_state.get_state, caller.user_id)
    except Exception as exc:
        logger.error("Failed to load patient state for %s: %s", caller.user_id, exc, exc_info=True)
        return to_json_response(internal_error_response(correlation_id=correlation_id), correlation_id)

    response = versioned_success_response(
        state.to_document() if state else None,
        PATIENT_STATE_VERSION,
        correlation_id=correlation_id,
    )
    return to_json_response(response, correlation_id)
