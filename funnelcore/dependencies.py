"""
Lazy-init shared dependencies used across routers and setup.
"""

import logging

from funnelcore import settings

logger = logging.getLogger("funnelcore-server")

# Global singletons - initialized lazily
gcs = None


def get_gcs():
    """Lazy initialization of GCS Bucket Manager"""
    global gcs
    if gcs is None:
        from funnelcore.infrastructure.gcs import GCSBucketManager
        logger.info("Initializing GCS Bucket Manager (lazy)...")
        gcs = GCSBucketManager(bucket_name=settings.GCS_BUCKET_NAME)
        logger.info("GCS Bucket Manager initialized successfully")
    return gcs


def get_pipeline():
    """Get the completion pipeline singleton (initialized during startup)."""
    from funnelcore.completion.setup import get_pipeline as _get_pipeline
    return _get_pipeline()
