import os

from fastapi import APIRouter

from funnelcore.completion.setup import get_pipeline

router = APIRouter()


@router.get("/")
async def root():
    return {
        "status": "Funnel Completion Service is Running",
        "features": ["assessment_completion", "idempotency", "patient_state", "workup"],
        "endpoints": {
            "complete": "/funnels/{slug}/assessments/{assessment_id}/complete",
            "patient_state": "/patient/state",
            "health": "/health",
        },
    }


@router.get("/health")
async def health_check():
    """Health check endpoint"""
    pipeline = get_pipeline()
    queue = pipeline.queue_manager if pipeline else None
    return {
        "status": "healthy",
        "service": "funnelcore",
        "port": os.environ.get("PORT", 8080),
        "pipeline": "ready" if pipeline else "not_initialized",
        "active_workup_queues": queue.active_count if queue else 0,
    }
