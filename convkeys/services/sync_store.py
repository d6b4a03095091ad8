"""Key-record synchronization store.

The backend is only trusted with routing: it can hand a participant the
records addressed to them and accept records a participant created, plus the
status write a target makes when it accepts or rejects a record.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Protocol, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from convkeys.config import settings
from convkeys.errors import RecordAlreadyExists, RecordNotFound, SyncStoreUnavailable
from convkeys.models.core import WrappedKeyRecordRow
from convkeys.schemas.records import RecordKey, RecordStatus, WrappedKeyRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")


class KeyRecordStore(Protocol):
    async def create(self, record: WrappedKeyRecord) -> None: ...

    async def addressed_to(self, target_id: str, conversation_id: str | None = None) -> list[WrappedKeyRecord]: ...

    async def update_status(
        self,
        key: RecordKey,
        status: RecordStatus,
        *,
        responded_at: datetime | None = None,
    ) -> None: ...


async def with_retries(
    call: Callable[[], Awaitable[T]],
    *,
    what: str,
    attempts: int | None = None,
    base_delay: float | None = None,
) -> T:
    """Run a store call, retrying transient failures with bounded exponential backoff."""
    attempts = max(1, attempts if attempts is not None else settings.store_retry_attempts)
    delay = base_delay if base_delay is not None else settings.store_retry_base_delay_seconds
    for attempt in range(1, attempts + 1):
        try:
            return await call()
        except SyncStoreUnavailable as exc:
            if attempt == attempts:
                logger.warning("Store call %s failed after %s attempts: %s", what, attempts, exc)
                raise
            logger.info("Store call %s failed (attempt %s/%s), retrying in %.2fs", what, attempt, attempts, delay)
            await asyncio.sleep(delay)
            delay *= 2
    raise AssertionError("unreachable")


class InMemoryKeyRecordStore:
    """Process-local store, used for tests and single-process deployments."""

    def __init__(self):
        self._records: dict[RecordKey, WrappedKeyRecord] = {}
        self._lock = asyncio.Lock()

    async def create(self, record: WrappedKeyRecord) -> None:
        async with self._lock:
            if record.key in self._records:
                raise RecordAlreadyExists(f"Record {record.key} already exists")
            self._records[record.key] = record.model_copy()

    async def addressed_to(self, target_id: str, conversation_id: str | None = None) -> list[WrappedKeyRecord]:
        async with self._lock:
            return [
                rec.model_copy()
                for rec in self._records.values()
                if rec.target_id == target_id and (conversation_id is None or rec.conversation_id == conversation_id)
            ]

    async def update_status(
        self,
        key: RecordKey,
        status: RecordStatus,
        *,
        responded_at: datetime | None = None,
    ) -> None:
        async with self._lock:
            existing = self._records.get(key)
            if existing is None:
                raise RecordNotFound(f"Record {key} not found")
            self._records[key] = existing.model_copy(update={"status": status, "responded_at": responded_at})


class SqlKeyRecordStore:
    """Row-per-record backing store; blocking SQLAlchemy calls run on worker threads."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    async def create(self, record: WrappedKeyRecord) -> None:
        await self._run(self._create, record)

    async def addressed_to(self, target_id: str, conversation_id: str | None = None) -> list[WrappedKeyRecord]:
        return await self._run(self._addressed_to, target_id, conversation_id)

    async def update_status(
        self,
        key: RecordKey,
        status: RecordStatus,
        *,
        responded_at: datetime | None = None,
    ) -> None:
        await self._run(self._update_status, key, status, responded_at)

    async def _run(self, fn: Callable[..., T], *args) -> T:
        try:
            return await asyncio.to_thread(fn, *args)
        except OperationalError as exc:
            raise SyncStoreUnavailable(str(exc.orig or exc)) from exc

    def _create(self, record: WrappedKeyRecord) -> None:
        with self._session_factory() as db:
            db.add(
                WrappedKeyRecordRow(
                    requester_id=record.requester_id,
                    target_id=record.target_id,
                    conversation_id=record.conversation_id,
                    epoch=record.epoch,
                    ciphertext=record.ciphertext,
                    status=record.status.value,
                    created_at=record.created_at,
                    expires_at=record.expires_at,
                    responded_at=record.responded_at,
                )
            )
            try:
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                raise RecordAlreadyExists(f"Record {record.key} already exists") from exc

    def _addressed_to(self, target_id: str, conversation_id: str | None) -> list[WrappedKeyRecord]:
        stmt = select(WrappedKeyRecordRow).where(WrappedKeyRecordRow.target_id == target_id)
        if conversation_id is not None:
            stmt = stmt.where(WrappedKeyRecordRow.conversation_id == conversation_id)
        stmt = stmt.order_by(WrappedKeyRecordRow.conversation_id, WrappedKeyRecordRow.epoch)
        with self._session_factory() as db:
            return [WrappedKeyRecord.model_validate(row) for row in db.scalars(stmt)]

    def _update_status(self, key: RecordKey, status: RecordStatus, responded_at: datetime | None) -> None:
        with self._session_factory() as db:
            row = db.scalars(
                select(WrappedKeyRecordRow).where(
                    WrappedKeyRecordRow.requester_id == key.requester_id,
                    WrappedKeyRecordRow.target_id == key.target_id,
                    WrappedKeyRecordRow.conversation_id == key.conversation_id,
                    WrappedKeyRecordRow.epoch == key.epoch,
                )
            ).first()
            if row is None:
                raise RecordNotFound(f"Record {key} not found")
            row.status = status.value
            row.responded_at = responded_at
            db.commit()
