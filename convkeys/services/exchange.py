"""Receiving side of group key distribution.

A wrapped key record starts PENDING and ends ACCEPTED, REJECTED or EXPIRED.
Expiry is never written by a timer: a PENDING record read after its
``expires_at`` is simply treated as EXPIRED.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from collections.abc import Callable
from datetime import datetime, timedelta

from convkeys.config import settings
from convkeys.errors import (
    EpochRegression,
    ExchangeRecordExpired,
    ExchangeRecordPending,
    ExchangeRecordRejected,
    InvalidTransition,
    UnwrapAuthenticationFailed,
)
from convkeys.schemas.records import RecordKey, RecordStatus, WrappedKeyRecord
from convkeys.services.audit import AuditTrail
from convkeys.services.conversations import ConversationRegistry
from convkeys.services.directory import IdentityKeyProvider
from convkeys.services.key_cache import ConversationKeyCache
from convkeys.services.key_derivation import DerivedKeyMaterial, material_from_raw_key
from convkeys.services.key_wrap import unwrap_conversation_key
from convkeys.services.sync_store import KeyRecordStore, with_retries

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("convkeys.security")

# Failed (record, ciphertext) pairs remembered per device; oldest are forgotten first.
MAX_FAILED_UNWRAPS = 1024


def default_ttl() -> timedelta:
    return timedelta(hours=settings.exchange_ttl_hours)


def build_record(
    *,
    requester_id: str,
    target_id: str,
    conversation_id: str,
    epoch: int,
    ciphertext: str,
    created_at: datetime,
    ttl: timedelta | None = None,
) -> WrappedKeyRecord:
    return WrappedKeyRecord(
        requester_id=requester_id,
        target_id=target_id,
        conversation_id=conversation_id,
        epoch=epoch,
        ciphertext=ciphertext,
        status=RecordStatus.PENDING,
        created_at=created_at,
        expires_at=created_at + (ttl if ttl is not None else default_ttl()),
    )


def effective_status(record: WrappedKeyRecord, now: datetime) -> RecordStatus:
    if record.status is RecordStatus.PENDING and now > record.expires_at:
        return RecordStatus.EXPIRED
    return record.status


class KeyExchange:
    def __init__(
        self,
        local_user_id: str,
        directory: IdentityKeyProvider,
        store: KeyRecordStore,
        cache: ConversationKeyCache,
        registry: ConversationRegistry,
        *,
        audit: AuditTrail | None = None,
        now: Callable[[], datetime] = datetime.utcnow,
        poll_interval: float | None = None,
        salt: bytes | None = None,
    ):
        self.local_user_id = local_user_id
        self._directory = directory
        self._store = store
        self._cache = cache
        self._registry = registry
        self._audit = audit
        self._now = now
        self._poll_interval = poll_interval if poll_interval is not None else settings.record_poll_interval_seconds
        self._salt = salt
        # (record key, ciphertext) pairs that failed authentication; never retried while remembered.
        self._failed_unwraps: OrderedDict[tuple[RecordKey, str], None] = OrderedDict()

    def status_of(self, record: WrappedKeyRecord) -> RecordStatus:
        return effective_status(record, self._now())

    async def pending_for_me(self, conversation_id: str | None = None) -> list[WrappedKeyRecord]:
        """Records addressed to this device, with lazy expiry applied."""
        records = await with_retries(
            lambda: self._store.addressed_to(self.local_user_id, conversation_id),
            what="addressed_to",
        )
        now = self._now()
        return [rec.model_copy(update={"status": effective_status(rec, now)}) for rec in records]

    async def find_record(self, conversation_id: str, epoch: int) -> WrappedKeyRecord | None:
        records = await with_retries(
            lambda: self._store.addressed_to(self.local_user_id, conversation_id),
            what="addressed_to",
        )
        candidates = [rec for rec in records if rec.epoch == epoch]
        if not candidates:
            return None
        now = self._now()
        order = {RecordStatus.ACCEPTED: 0, RecordStatus.PENDING: 1, RecordStatus.REJECTED: 2, RecordStatus.EXPIRED: 3}
        candidates.sort(key=lambda rec: (order[effective_status(rec, now)], -rec.created_at.timestamp()))
        return candidates[0]

    async def wait_for_record(
        self,
        conversation_id: str,
        epoch: int,
        *,
        timeout: float | None = None,
    ) -> WrappedKeyRecord:
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            record = await self.find_record(conversation_id, epoch)
            if record is not None:
                return record
            if deadline is not None and loop.time() >= deadline:
                raise ExchangeRecordPending(
                    f"No key record for conversation={conversation_id} epoch={epoch} yet"
                )
            await asyncio.sleep(self._poll_interval)

    async def accept(self, record: WrappedKeyRecord) -> DerivedKeyMaterial:
        if record.target_id != self.local_user_id:
            raise InvalidTransition("Only the target of a record can accept it")
        status = self.status_of(record)
        if status is RecordStatus.REJECTED:
            raise ExchangeRecordRejected(f"Record {record.key} was rejected")
        if status is RecordStatus.EXPIRED:
            raise ExchangeRecordExpired(f"Record {record.key} expired at {record.expires_at.isoformat()}")

        attempt_key = (record.key, record.ciphertext)
        if attempt_key in self._failed_unwraps:
            raise UnwrapAuthenticationFailed(f"Record {record.key} already failed authentication")

        requester_public_key = await self._directory.get_public_key(record.requester_id)
        try:
            raw_key = unwrap_conversation_key(
                record.ciphertext,
                requester_id=record.requester_id,
                requester_public_key=requester_public_key,
                target_id=record.target_id,
                target_private_key=self._directory.get_local_private_key(),
                conversation_id=record.conversation_id,
                epoch=record.epoch,
                salt=self._salt,
            )
        except UnwrapAuthenticationFailed:
            self._remember_failure(attempt_key)
            security_logger.warning(
                "Wrapped key failed authentication requester=%s conversation=%s epoch=%s",
                record.requester_id,
                record.conversation_id,
                record.epoch,
            )
            await self._record_audit(
                "encryption.unwrap_failed",
                record,
                f"AEAD verification failed for key record from {record.requester_id} epoch={record.epoch}.",
            )
            raise

        material = material_from_raw_key(raw_key, record.conversation_id, record.epoch, salt=self._salt)
        if status is RecordStatus.PENDING:
            responded_at = self._now()
            await with_retries(
                lambda: self._store.update_status(record.key, RecordStatus.ACCEPTED, responded_at=responded_at),
                what="update_status",
            )
            await self._record_audit(
                "encryption.key_exchange_accepted",
                record,
                f"Accepted key record from {record.requester_id} epoch={record.epoch}.",
            )
            logger.info(
                "Accepted key record requester=%s conversation=%s epoch=%s",
                record.requester_id,
                record.conversation_id,
                record.epoch,
            )

        self._forget_failures(record.conversation_id, record.epoch)
        await self._commit(material)
        return material

    def _remember_failure(self, attempt_key: tuple[RecordKey, str]) -> None:
        self._failed_unwraps[attempt_key] = None
        self._failed_unwraps.move_to_end(attempt_key)
        while len(self._failed_unwraps) > MAX_FAILED_UNWRAPS:
            self._failed_unwraps.popitem(last=False)

    def _forget_failures(self, conversation_id: str, epoch: int) -> None:
        """A key for ``epoch`` was accepted, so records of earlier epochs are superseded."""
        stale = [k for k in self._failed_unwraps if k[0].conversation_id == conversation_id and k[0].epoch < epoch]
        for k in stale:
            del self._failed_unwraps[k]

    async def reject(self, record: WrappedKeyRecord, *, reason: str | None = None) -> None:
        if record.target_id != self.local_user_id:
            raise InvalidTransition("Only the target of a record can reject it")
        status = self.status_of(record)
        if status is RecordStatus.REJECTED:
            return
        if status is not RecordStatus.PENDING:
            raise InvalidTransition(f"Cannot reject a record that is {status.value}")
        responded_at = self._now()
        await with_retries(
            lambda: self._store.update_status(record.key, RecordStatus.REJECTED, responded_at=responded_at),
            what="update_status",
        )
        await self._record_audit(
            "encryption.key_exchange_rejected",
            record,
            f"Rejected key record from {record.requester_id} epoch={record.epoch}: {reason or 'no reason given'}.",
        )
        logger.info(
            "Rejected key record requester=%s conversation=%s epoch=%s",
            record.requester_id,
            record.conversation_id,
            record.epoch,
        )

    async def resolve_group_key(
        self,
        conversation_id: str,
        epoch: int,
        *,
        wait_timeout: float | None = None,
    ) -> DerivedKeyMaterial:
        if wait_timeout is not None:
            record = await self.wait_for_record(conversation_id, epoch, timeout=wait_timeout)
        else:
            record = await self.find_record(conversation_id, epoch)
        if record is None:
            raise ExchangeRecordPending(f"No key record for conversation={conversation_id} epoch={epoch} yet")
        status = self.status_of(record)
        if status is RecordStatus.EXPIRED:
            raise ExchangeRecordExpired(
                f"Key record for conversation={conversation_id} epoch={epoch} expired; a new one must be issued"
            )
        if status is RecordStatus.REJECTED:
            raise ExchangeRecordRejected(
                f"Key record for conversation={conversation_id} epoch={epoch} was rejected"
            )
        return await self.accept(record)

    async def _commit(self, material: DerivedKeyMaterial) -> None:
        conv = await self._registry.ensure_group(material.conversation_id)
        if material.epoch > conv.current_epoch:
            await self._registry.observe_epoch(material.conversation_id, material.epoch)
        try:
            await self._cache.put(material)
        except EpochRegression:
            # Older epoch accepted late; usable for history only, not as the active key.
            logger.info(
                "Not caching superseded epoch=%s for conversation=%s",
                material.epoch,
                material.conversation_id,
            )

    async def _record_audit(self, event_type: str, record: WrappedKeyRecord, details: str) -> None:
        if self._audit is None:
            return
        await asyncio.to_thread(
            self._audit.record,
            event_type,
            conversation_id=record.conversation_id,
            details=details,
        )
