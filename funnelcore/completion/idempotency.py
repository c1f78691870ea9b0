"""
Idempotency Guard: at-most-once execution per (endpoint, user, key).

Flow for a request carrying an Idempotency-Key:

  1. completed, unexpired record   -> replay cached status/body/headers
  2. no record (or expired/stale)  -> reserve with a create-only write,
                                      run the handler, store the response
  3. pending record held by another request -> poll until it completes,
                                      or give up with 409 DUPLICATE_OPERATION

The create-only reservation is the mutex: the in-memory store inserts under
a lock, the GCS store writes with if_generation_match=0.  Responses with
status >= 500 (and handler exceptions) release the reservation so the
client can retry.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, Field

from funnelcore.completion.responses import ApiResponse, duplicate_operation_response
from funnelcore.infrastructure.gcs import DocumentNotFoundError, GenerationMismatchError

logger = logging.getLogger("completion.idempotency")

IDEMPOTENCY_HEADER = "Idempotency-Key"
MAX_KEY_LENGTH = 255

Handler = Callable[[], Awaitable[ApiResponse]]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def hash_payload(payload: Any) -> str:
    """SHA-256 of the canonical JSON form; key order does not matter."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class RecordState(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class IdempotencyRecord(BaseModel):
    endpoint_path: str
    key: str
    user_id: Optional[str] = None
    request_hash: str
    state: RecordState = RecordState.PENDING
    response_status: Optional[int] = None
    response_body: Optional[dict[str, Any]] = None
    response_headers: dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_now)
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def is_stale(self, now: datetime, lock_timeout_seconds: int) -> bool:
        return (
            self.state == RecordState.PENDING
            and (now - self.created_at).total_seconds() > lock_timeout_seconds
        )

    def to_response(self) -> ApiResponse:
        return ApiResponse(
            status_code=self.response_status or 200,
            body=dict(self.response_body or {}),
            headers=dict(self.response_headers),
        )


@dataclass(frozen=True)
class IdempotencyConfig:
    endpoint_path: str
    check_payload_conflict: bool = False


def record_id(endpoint_path: str, user_id: str | None, key: str) -> str:
    raw = f"{endpoint_path}|{user_id or ''}|{key}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Stores
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class IdempotencyStore(ABC):
    """
    Record storage keyed by record_id().  Every write is conditional on a
    generation number so that exactly one writer wins a reservation.
    """

    @abstractmethod
    def get(self, rid: str) -> tuple[IdempotencyRecord, int] | None:
        ...

    @abstractmethod
    def reserve(
        self, rid: str, record: IdempotencyRecord, expected_generation: int | None
    ) -> int | None:
        """
        Insert (expected_generation=None) or take over (matching generation).
        Returns the new generation, or None if another writer got there first.
        """

    @abstractmethod
    def complete(self, rid: str, record: IdempotencyRecord, generation: int) -> bool:
        ...

    @abstractmethod
    def release(self, rid: str, generation: int) -> None:
        ...

    def purge_expired(self, now: datetime | None = None) -> int:
        """Drop records past expires_at.  Returns how many were removed."""
        return 0


class InMemoryIdempotencyStore(IdempotencyStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, tuple[IdempotencyRecord, int]] = {}
        self._next_generation = 1

    def _bump(self) -> int:
        gen = self._next_generation
        self._next_generation += 1
        return gen

    def get(self, rid: str) -> tuple[IdempotencyRecord, int] | None:
        with self._lock:
            entry = self._records.get(rid)
            if entry is None:
                return None
            record, gen = entry
            return record.model_copy(deep=True), gen

    def reserve(
        self, rid: str, record: IdempotencyRecord, expected_generation: int | None
    ) -> int | None:
        with self._lock:
            current = self._records.get(rid)
            if expected_generation is None and current is not None:
                return None
            if expected_generation is not None and (current is None or current[1] != expected_generation):
                return None
            gen = self._bump()
            self._records[rid] = (record.model_copy(deep=True), gen)
            return gen

    def complete(self, rid: str, record: IdempotencyRecord, generation: int) -> bool:
        with self._lock:
            current = self._records.get(rid)
            if current is None or current[1] != generation:
                return False
            self._records[rid] = (record.model_copy(deep=True), self._bump())
            return True

    def release(self, rid: str, generation: int) -> None:
        with self._lock:
            current = self._records.get(rid)
            if current is not None and current[1] == generation:
                del self._records[rid]

    def purge_expired(self, now: datetime | None = None) -> int:
        now = now or _now()
        with self._lock:
            expired = [rid for rid, (rec, _) in self._records.items() if rec.is_expired(now)]
            for rid in expired:
                del self._records[rid]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class GCSIdempotencyStore(IdempotencyStore):
    """
    One JSON blob per record under idempotency_keys/.  Expired blobs are
    overwritten in place when their key comes back; the rest are removed by
    the bucket's lifecycle rule on that prefix, so purge_expired is a no-op.
    """

    KEY_PREFIX = "idempotency_keys"

    def __init__(self, gcs_bucket_manager) -> None:
        self._gcs = gcs_bucket_manager

    def _path(self, rid: str) -> str:
        return f"{self.KEY_PREFIX}/{rid}.json"

    def get(self, rid: str) -> tuple[IdempotencyRecord, int] | None:
        try:
            data, gen = self._gcs.read_json(self._path(rid))
        except DocumentNotFoundError:
            return None
        return IdempotencyRecord.model_validate(data), gen

    def reserve(
        self, rid: str, record: IdempotencyRecord, expected_generation: int | None
    ) -> int | None:
        try:
            return self._gcs.write_json(
                self._path(rid),
                record.model_dump(mode="json"),
                if_generation_match=0 if expected_generation is None else expected_generation,
            )
        except GenerationMismatchError:
            return None

    def complete(self, rid: str, record: IdempotencyRecord, generation: int) -> bool:
        try:
            self._gcs.write_json(
                self._path(rid), record.model_dump(mode="json"), if_generation_match=generation
            )
            return True
        except GenerationMismatchError:
            return False

    def release(self, rid: str, generation: int) -> None:
        self._gcs.delete(self._path(rid), if_generation_match=generation)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
#  Guard
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class IdempotencyGuard:
    def __init__(
        self,
        store: IdempotencyStore,
        ttl_seconds: int = 24 * 60 * 60,
        lock_timeout_seconds: int = 60,
        wait_timeout_seconds: float = 10.0,
        poll_interval_seconds: float = 0.05,
        purge_interval_seconds: float = 300.0,
    ) -> None:
        self._store = store
        self._ttl = ttl_seconds
        self._lock_timeout = lock_timeout_seconds
        self._wait_timeout = wait_timeout_seconds
        self._poll_interval = poll_interval_seconds
        self._purge_interval = purge_interval_seconds
        self._next_purge = 0.0

    async def purge_expired(self) -> int:
        """Evict expired records now; failures are logged, never raised."""
        self._next_purge = time.monotonic() + self._purge_interval
        try:
            removed = await asyncio.to_thread(self._store.purge_expired, _now())
        except Exception as exc:
            logger.error("Idempotency purge failed: %s", exc, exc_info=True)
            return 0
        if removed:
            logger.info("Purged %d expired idempotency records", removed)
        return removed

    async def run(
        self,
        key: str | None,
        config: IdempotencyConfig,
        payload: Any,
        handler: Handler,
        *,
        user_id: str | None = None,
        correlation_id: str | None = None,
    ) -> ApiResponse:
        key = (key or "").strip()
        if not key:
            return await handler()
        if len(key) > MAX_KEY_LENGTH:
            key = hashlib.sha256(key.encode("utf-8")).hexdigest()

        if time.monotonic() >= self._next_purge:
            await self.purge_expired()

        rid = record_id(config.endpoint_path, user_id, key)
        request_hash = hash_payload(payload)
        deadline = time.monotonic() + self._wait_timeout

        while True:
            existing = await asyncio.to_thread(self._store.get, rid)
            now = _now()
            expected_generation: int | None = None

            if existing is not None:
                record, gen = existing
                if record.is_expired(now) or record.is_stale(now, self._lock_timeout):
                    logger.info("Taking over %s idempotency key %s", record.state.value, key)
                    expected_generation = gen
                else:
                    if config.check_payload_conflict and record.request_hash != request_hash:
                        logger.warning("Idempotency key %s reused with a different payload", key)
                        return duplicate_operation_response(
                            "Idempotency key was already used with a different request payload.",
                            correlation_id=correlation_id,
                        )
                    if record.state == RecordState.COMPLETED:
                        logger.info("Replaying cached response for idempotency key %s", key)
                        return record.to_response()
                    if time.monotonic() >= deadline:
                        logger.warning("Gave up waiting on in-flight idempotency key %s", key)
                        return duplicate_operation_response(correlation_id=correlation_id)
                    await asyncio.sleep(self._poll_interval)
                    continue

            pending = IdempotencyRecord(
                endpoint_path=config.endpoint_path,
                key=key,
                user_id=user_id,
                request_hash=request_hash,
                created_at=now,
                # A purge must not evict a reservation whose handler may still be running
                expires_at=now + timedelta(seconds=max(self._ttl, self._lock_timeout)),
            )
            generation = await asyncio.to_thread(self._store.reserve, rid, pending, expected_generation)
            if generation is not None:
                break
            # Lost the reservation race; re-read and wait on the winner

        try:
            response = await handler()
        except Exception:
            await self._release(rid, generation, key)
            raise

        if response.status_code >= 500:
            await self._release(rid, generation, key)
            return response

        completed = pending.model_copy(
            update={
                "state": RecordState.COMPLETED,
                "response_status": response.status_code,
                "response_body": response.body,
                "response_headers": dict(response.headers),
                "expires_at": pending.created_at + timedelta(seconds=self._ttl),
            }
        )
        try:
            stored = await asyncio.to_thread(self._store.complete, rid, completed, generation)
            if not stored:
                logger.warning("Idempotency record for key %s changed before completion", key)
        except Exception as exc:
            # The handler already ran; the response still goes out
            logger.error("Failed to store idempotent response for key %s: %s", key, exc, exc_info=True)
        return response

    async def _release(self, rid: str, generation: int, key: str) -> None:
        try:
            await asyncio.to_thread(self._store.release, rid, generation)
        except Exception as exc:
            logger.error("Failed to release idempotency key %s: %s", key, exc, exc_info=True)
