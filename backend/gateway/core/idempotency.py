"""Helpers for enforcing at-most-once execution of mutating requests."""

from __future__ import annotations

import hashlib
import json
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

import anyio
from fastapi import Request
from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from gateway.core.db import GatewayStore
from gateway.core.errors import MissingIdempotencyKey
from gateway.models import GwIdempotencyKey

MAX_KEY_LENGTH = 128
MAX_ERROR_LENGTH = 2000

MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


class IdempotencyStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class IdempotencyClaimState(str, Enum):
    CLAIMED = "claimed"
    CACHED = "cached"
    CONFLICT = "conflict"
    IN_PROGRESS = "in_progress"


@dataclass(frozen=True, slots=True)
class IdempotencyLease:
    """Proof that the holder may run the handler for ``key`` and finalize it."""

    key: str
    fingerprint: str
    lease_id: str


@dataclass(frozen=True, slots=True)
class CachedResponse:
    """What a replay sends back: status, body, content type and the handler's own headers."""

    status_code: int
    body: bytes
    content_type: str
    headers: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class IdempotencyClaim:
    """Represents the result of attempting to claim an idempotency key."""

    state: IdempotencyClaimState
    lease: IdempotencyLease | None = None
    response: CachedResponse | None = None
    retry_after_ms: int | None = None


def require_idempotency_key(request: Request) -> str:
    """Extract and validate the Idempotency-Key header."""

    key = request.headers.get("Idempotency-Key", "").strip()
    if not key:
        raise MissingIdempotencyKey()
    if len(key) > MAX_KEY_LENGTH:
        raise MissingIdempotencyKey(f"Idempotency-Key must be {MAX_KEY_LENGTH} characters or fewer.")
    return key


def request_fingerprint(method: str, path: str, body: bytes) -> str:
    """Hash method, path (with query string) and body into one fingerprint."""

    body_hash = hashlib.sha256(body).hexdigest()
    return hashlib.sha256(f"{method.upper()}\n{path}\n{body_hash}".encode()).hexdigest()


class IdempotencyBroker:
    """Hands out at most one lease per idempotency key and replays finished results.

    A second caller that finds the key pending with the same fingerprint
    waits (up to ``wait_timeout_ms``) for the holder to finish instead of
    running the handler again.
    """

    def __init__(
        self,
        store: GatewayStore,
        *,
        ttl_ms: int,
        clock: Callable[[], int],
        wait_timeout_ms: int = 10_000,
        poll_interval_ms: int = 50,
    ) -> None:
        self.store = store
        self.ttl_ms = ttl_ms
        self.clock = clock
        self.wait_timeout_ms = wait_timeout_ms
        self.poll_interval_ms = poll_interval_ms

    async def begin(self, key: str, fingerprint: str) -> IdempotencyClaim:
        """Claim *key*, or return its cached result, a conflict, or (after waiting) in-progress."""

        claim = await self.try_claim(key, fingerprint, self.clock())
        # Wait on loop time; record timestamps come from the injectable clock.
        deadline = anyio.current_time() + self.wait_timeout_ms / 1000
        while claim.state == IdempotencyClaimState.IN_PROGRESS:
            remaining = deadline - anyio.current_time()
            if remaining <= 0:
                logger.bind(idempotency_key=key).warning("idempotency_in_progress")
                break
            await anyio.sleep(min(self.poll_interval_ms / 1000, remaining))
            claim = await self.try_claim(key, fingerprint, self.clock())
        return claim

    async def try_claim(self, key: str, fingerprint: str, now: int) -> IdempotencyClaim:
        """Single non-blocking claim attempt."""

        while True:
            try:
                return await self.store.run(
                    lambda session: self._claim_in_session(session, key, fingerprint, now)
                )
            except IntegrityError:
                # Another writer inserted the key between our read and insert;
                # loop to read its record instead.
                logger.bind(idempotency_key=key).debug("idempotency_insert_race")

    async def _claim_in_session(
        self,
        session: AsyncSession,
        key: str,
        fingerprint: str,
        now: int,
    ) -> IdempotencyClaim:
        record = await session.scalar(
            select(GwIdempotencyKey).where(GwIdempotencyKey.idempotency_key == key)
        )
        if record is not None and record.expires_at <= now:
            await session.delete(record)
            await session.flush()
            record = None

        if record is not None and record.fingerprint_hash != fingerprint:
            logger.bind(idempotency_key=key, status=record.status).warning("idempotency_conflict")
            return IdempotencyClaim(IdempotencyClaimState.CONFLICT)

        if record is not None and record.status == IdempotencyStatus.COMPLETED.value:
            return IdempotencyClaim(
                IdempotencyClaimState.CACHED,
                response=CachedResponse(
                    status_code=record.response_status or 200,
                    body=record.response_body or b"",
                    content_type=record.response_content_type or "application/json",
                    headers=json.loads(record.response_headers) if record.response_headers else {},
                ),
            )

        if record is not None and record.status == IdempotencyStatus.PENDING.value:
            # The holder usually finishes well before the record expires; suggest
            # another try after one poll interval.
            return IdempotencyClaim(
                IdempotencyClaimState.IN_PROGRESS,
                retry_after_ms=min(self.poll_interval_ms, max(0, record.expires_at - now)),
            )

        if record is not None:
            # Failed attempts are not cached; a retry starts a fresh claim.
            await session.delete(record)
            await session.flush()

        lease = IdempotencyLease(key=key, fingerprint=fingerprint, lease_id=uuid.uuid4().hex)
        session.add(
            GwIdempotencyKey(
                idempotency_key=key,
                fingerprint_hash=fingerprint,
                status=IdempotencyStatus.PENDING.value,
                lease_id=lease.lease_id,
                created_at=now,
                expires_at=now + self.ttl_ms,
            )
        )
        await session.flush()
        return IdempotencyClaim(IdempotencyClaimState.CLAIMED, lease=lease)

    async def complete(self, lease: IdempotencyLease, response: CachedResponse) -> bool:
        """Mark the request as completed so subsequent replays can short-circuit."""

        return await self._finalize(
            lease,
            status=IdempotencyStatus.COMPLETED.value,
            response_status=response.status_code,
            response_body=response.body,
            response_content_type=response.content_type,
            response_headers=json.dumps(response.headers) if response.headers else None,
        )

    async def fail(self, lease: IdempotencyLease, error: str) -> bool:
        """Mark the attempt failed; a retry with the same fingerprint may re-run it."""

        return await self._finalize(
            lease,
            status=IdempotencyStatus.FAILED.value,
            error_message=error[:MAX_ERROR_LENGTH],
        )

    async def _finalize(self, lease: IdempotencyLease, **values) -> bool:
        async def _update(session: AsyncSession) -> int:
            result = await session.execute(
                update(GwIdempotencyKey)
                .where(
                    GwIdempotencyKey.idempotency_key == lease.key,
                    GwIdempotencyKey.lease_id == lease.lease_id,
                    GwIdempotencyKey.status == IdempotencyStatus.PENDING.value,
                )
                .values(**values)
            )
            return result.rowcount or 0

        updated = await self.store.run(_update)
        if not updated:
            # The pending record expired and was swept or reclaimed meanwhile.
            logger.bind(idempotency_key=lease.key, status=values["status"]).warning(
                "idempotency_lease_lost"
            )
        return bool(updated)

    async def get(self, key: str) -> GwIdempotencyKey | None:
        async def _load(session: AsyncSession) -> GwIdempotencyKey | None:
            return await session.scalar(
                select(GwIdempotencyKey).where(GwIdempotencyKey.idempotency_key == key)
            )

        return await self.store.run(_load)
