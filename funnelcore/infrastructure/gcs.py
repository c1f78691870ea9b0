"""
GCS document storage.

GCSBucketManager wraps a lazily-initialised bucket and exposes JSON document
read/write with blob generations, which every GCS-backed store uses as its
optimistic lock:

  - read_json() returns (document, generation)
  - write_json(..., if_generation_match=gen) only succeeds if nobody wrote since
  - write_json(..., if_generation_match=0) only succeeds if the blob does not exist
"""

import json
import logging
import os

from google.api_core.exceptions import NotFound, PreconditionFailed
from google.cloud import storage
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger("gcs-manager")


class DocumentNotFoundError(Exception):
    pass


class GenerationMismatchError(Exception):
    """The blob changed (or already existed) since the caller's generation."""
    pass


class GCSBucketManager:
    # HTTP timeout for individual GCS operations (seconds)
    GCS_TIMEOUT = 30

    def __init__(self, bucket_name, service_account_json_path=None):
        """
        Initializes the GCS Client (lazy - only on first use).

        :param bucket_name: The name of the GCS bucket.
        :param service_account_json_path: Path to service account JSON key.
                                          If None, uses GOOGLE_APPLICATION_CREDENTIALS
                                          or default environment auth.
        """
        self.bucket_name = bucket_name
        self.service_account_json_path = service_account_json_path
        self._client = None
        self._bucket = None

    def _ensure_initialized(self):
        """Lazy initialization of GCS client and bucket"""
        if self._client is None:
            try:
                project_id = os.getenv("PROJECT_ID")
                if self.service_account_json_path:
                    self._client = storage.Client.from_service_account_json(
                        self.service_account_json_path,
                        project=project_id
                    )
                else:
                    self._client = storage.Client(project=project_id)

                self._bucket = self._client.bucket(self.bucket_name)
                logger.info("Connected to GCS bucket: %s", self.bucket_name)
            except Exception as e:
                logger.error("Error initializing GCS client: %s", e)
                raise

    @property
    def client(self):
        self._ensure_initialized()
        return self._client

    @property
    def bucket(self):
        self._ensure_initialized()
        return self._bucket

    # ── JSON documents ──

    def read_json(self, blob_name: str) -> tuple[dict, int]:
        """Download a JSON document. Returns (data, generation)."""
        blob = self.bucket.blob(blob_name)
        try:
            content = blob.download_as_text(timeout=self.GCS_TIMEOUT)
        except NotFound as e:
            raise DocumentNotFoundError(blob_name) from e
        return json.loads(content), blob.generation or 0

    def write_json(
        self, blob_name: str, data: dict, if_generation_match: int | None = None
    ) -> int:
        """
        Upload a JSON document. Returns the new generation number.

        Pass ``if_generation_match=0`` for create-only writes.
        """
        blob = self.bucket.blob(blob_name)
        content = json.dumps(data, indent=2, default=str)
        try:
            if if_generation_match is not None:
                blob.upload_from_string(
                    content,
                    content_type="application/json",
                    if_generation_match=if_generation_match,
                    timeout=self.GCS_TIMEOUT,
                )
            else:
                blob.upload_from_string(
                    content,
                    content_type="application/json",
                    timeout=self.GCS_TIMEOUT,
                )
        except PreconditionFailed as e:
            raise GenerationMismatchError(blob_name) from e
        return blob.generation or 0

    def delete(self, blob_name: str, if_generation_match: int | None = None) -> bool:
        blob = self.bucket.blob(blob_name)
        try:
            if if_generation_match is not None:
                blob.delete(if_generation_match=if_generation_match, timeout=self.GCS_TIMEOUT)
            else:
                blob.delete(timeout=self.GCS_TIMEOUT)
            return True
        except (NotFound, PreconditionFailed):
            return False
