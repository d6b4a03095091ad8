"""One-time move of conversations off server-stored keys.

A conversation is cut over only after the newly derived key decrypts every
historical sample the legacy key decrypts. Until then the legacy key stays
available, so a failed verification never blocks reading messages.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from sqlalchemy import func
from sqlalchemy.orm import Session, sessionmaker

from convkeys.config import settings
from convkeys.errors import ConversationKeyError, MigrationEquivalenceFailed
from convkeys.models.core import MigrationRecordRow
from convkeys.schemas.records import MigrationRecord, MigrationStatus
from convkeys.services.audit import AuditTrail
from convkeys.services.crypto import check_key_32, fingerprint, try_open
from convkeys.services.key_derivation import DerivedKeyMaterial
from convkeys.services.legacy_keystore import LegacyKeyStore

logger = logging.getLogger(__name__)

NewKeyResolver = Callable[[str], Awaitable[DerivedKeyMaterial]]


@dataclass(frozen=True)
class CiphertextSample:
    message_id: str
    nonce: bytes
    ciphertext: bytes
    aad: bytes | None = None


class HistoricalSampler(Protocol):
    async def sample(self, conversation_id: str, limit: int) -> list[CiphertextSample]: ...


def verify_equivalence(legacy_key: bytes, new_key: bytes, samples: list[CiphertextSample]) -> int:
    """Check that ``new_key`` reads everything ``legacy_key`` reads. Returns samples checked."""
    if not samples:
        return 0
    legacy_plain = {}
    for s in samples:
        plain = try_open(legacy_key, s.nonce, s.ciphertext, aad=s.aad)
        if plain is not None:
            legacy_plain[s.message_id] = plain
    if not legacy_plain:
        raise MigrationEquivalenceFailed(f"Legacy key decrypts none of {len(samples)} samples")

    mismatched = []
    for s in samples:
        if s.message_id not in legacy_plain:
            continue
        if try_open(new_key, s.nonce, s.ciphertext, aad=s.aad) != legacy_plain[s.message_id]:
            mismatched.append(s.message_id)
    if mismatched:
        raise MigrationEquivalenceFailed(
            f"New key failed {len(mismatched)} of {len(legacy_plain)} samples the legacy key decrypts"
        )
    return len(samples)


class MigrationCoordinator:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        sampler: HistoricalSampler,
        resolve_new: NewKeyResolver,
        *,
        legacy_store: LegacyKeyStore | None = None,
        audit: AuditTrail | None = None,
        sample_size: int | None = None,
        discard_legacy_on_completion: bool = True,
        now: Callable[[], datetime] = datetime.utcnow,
    ):
        self._session_factory = session_factory
        self._sampler = sampler
        self._resolve_new = resolve_new
        self._legacy_store = legacy_store
        self._audit = audit
        self._sample_size = sample_size if sample_size is not None else settings.migration_sample_size
        self._discard_legacy = discard_legacy_on_completion
        self._now = now
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock

    async def migrate_if_needed(self, conversation_id: str, legacy_key: bytes | None = None) -> MigrationStatus:
        if legacy_key is None and self._legacy_store is not None:
            legacy_key = await asyncio.to_thread(self._legacy_store.get_key, conversation_id)
        if legacy_key is None:
            return await self.status(conversation_id)
        legacy_key = check_key_32(legacy_key, name="legacy key")
        legacy_fpr = fingerprint(legacy_key)

        async with self._lock_for(conversation_id):
            existing = await self.record(conversation_id)
            if (
                existing is not None
                and existing.status is MigrationStatus.COMPLETED
                and existing.legacy_key_fingerprint == legacy_fpr
            ):
                return MigrationStatus.COMPLETED

            await self._save(conversation_id, legacy_fpr, MigrationStatus.VERIFYING, count_attempt=True)
            try:
                material = await self._resolve_new(conversation_id)
                samples = await self._sampler.sample(conversation_id, self._sample_size)
                checked = verify_equivalence(legacy_key, material.message_key, samples)
            except ConversationKeyError as exc:
                await self._fail(conversation_id, legacy_fpr, exc)
                return MigrationStatus.FAILED
            except Exception as exc:
                await self._fail(conversation_id, legacy_fpr, exc)
                raise

            await self._save(
                conversation_id,
                legacy_fpr,
                MigrationStatus.COMPLETED,
                samples_checked=checked,
                verified_at=self._now(),
            )
            logger.info("Migration completed conversation=%s samples=%s", conversation_id, checked)
            await self._record_audit(
                "encryption.migration_completed",
                conversation_id,
                f"Verified new key against {checked} historical samples.",
            )
            if self._discard_legacy and self._legacy_store is not None:
                await asyncio.to_thread(self._legacy_store.discard, conversation_id)
            return MigrationStatus.COMPLETED

    async def status(self, conversation_id: str) -> MigrationStatus:
        rec = await self.record(conversation_id)
        return rec.status if rec is not None else MigrationStatus.NOT_STARTED

    async def record(self, conversation_id: str) -> MigrationRecord | None:
        return await asyncio.to_thread(self._get, conversation_id)

    async def decryption_key(
        self,
        conversation_id: str,
        legacy_key: bytes | None,
        material: DerivedKeyMaterial,
    ) -> bytes:
        """Key to read history with: the new key once verified, the legacy key until then."""
        if legacy_key is None or await self.status(conversation_id) is MigrationStatus.COMPLETED:
            return material.message_key
        return legacy_key

    async def progress(self) -> dict[str, int]:
        return await asyncio.to_thread(self._progress)

    # ---- persistence ----

    def _get(self, conversation_id: str) -> MigrationRecord | None:
        with self._session_factory() as db:
            row = db.query(MigrationRecordRow).filter(MigrationRecordRow.conversation_id == conversation_id).first()
            return MigrationRecord.model_validate(row) if row is not None else None

    def _upsert(
        self,
        conversation_id: str,
        legacy_fpr: str,
        status: MigrationStatus,
        count_attempt: bool,
        samples_checked: int | None,
        verified_at: datetime | None,
        error: str | None,
    ) -> None:
        with self._session_factory() as db:
            row = db.query(MigrationRecordRow).filter(MigrationRecordRow.conversation_id == conversation_id).first()
            if row is None:
                row = MigrationRecordRow(conversation_id=conversation_id, legacy_key_fingerprint=legacy_fpr, attempts=0)
                db.add(row)
            row.legacy_key_fingerprint = legacy_fpr
            row.status = status.value
            row.error = error
            if count_attempt:
                row.attempts = (row.attempts or 0) + 1
            if samples_checked is not None:
                row.samples_checked = samples_checked
            row.verified_at = verified_at
            db.commit()

    async def _save(
        self,
        conversation_id: str,
        legacy_fpr: str,
        status: MigrationStatus,
        *,
        count_attempt: bool = False,
        samples_checked: int | None = None,
        verified_at: datetime | None = None,
        error: str | None = None,
    ) -> None:
        await asyncio.to_thread(
            self._upsert,
            conversation_id,
            legacy_fpr,
            status,
            count_attempt,
            samples_checked,
            verified_at,
            error,
        )

    async def _fail(self, conversation_id: str, legacy_fpr: str, exc: BaseException) -> None:
        error = f"{type(exc).__name__}: {exc}"
        await self._save(conversation_id, legacy_fpr, MigrationStatus.FAILED, error=error)
        logger.warning("Migration failed conversation=%s, keeping legacy key: %s", conversation_id, error)
        await self._record_audit("encryption.migration_failed", conversation_id, error)

    def _progress(self) -> dict[str, int]:
        counts = {status.value: 0 for status in MigrationStatus}
        with self._session_factory() as db:
            for status, count in db.query(MigrationRecordRow.status, func.count()).group_by(MigrationRecordRow.status):
                counts[status] = count
        return counts

    async def _record_audit(self, event_type: str, conversation_id: str, details: str) -> None:
        if self._audit is None:
            return
        await asyncio.to_thread(self._audit.record, event_type, conversation_id=conversation_id, details=details)
