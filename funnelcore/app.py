"""
Funnel Completion Service: Application Factory
"""

import logging
import os
import time

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# ── 1. Configure logging ──
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("funnelcore-server")

_startup_time = time.time()
logger.info("Server initialization started...")

# ── 2. Create FastAPI app ──
app = FastAPI(title="Funnel Completion Service")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Correlation-Id"],
)

# ── 3. Register routers ──
from funnelcore.routers import funnels, health, patient_state  # noqa: E402

app.include_router(health.router)
app.include_router(funnels.router)
app.include_router(patient_state.router)


# ── 4. Lifecycle ──
@app.on_event("startup")
async def startup_event():
    port = os.environ.get("PORT", "8080")
    logger.info("=" * 60)
    logger.info("Funnel Completion Service Starting")
    logger.info("Listening on port: %s", port)

    # Completion pipeline (blocking, needed before serving requests)
    try:
        from funnelcore.completion.setup import initialize_pipeline
        await initialize_pipeline()
    except Exception as e:
        logger.warning("Completion pipeline failed to start, routes will return 503: %s", e)

    logger.info("Total init time: %.2fs", time.time() - _startup_time)
    logger.info("=" * 60)


@app.on_event("shutdown")
async def shutdown_event():
    from funnelcore.completion.setup import shutdown_pipeline
    await shutdown_pipeline()
