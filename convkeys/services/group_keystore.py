from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta

from convkeys.config import settings
from convkeys.errors import (
    EpochPartiallyIssued,
    EpochRegression,
    ExchangeRecordPending,
    RecordAlreadyExists,
    SyncStoreUnavailable,
)
from convkeys.schemas.records import WrappedKeyRecord
from convkeys.services.audit import AuditTrail
from convkeys.services.conversations import ConversationKind, ConversationRegistry
from convkeys.services.crypto import generate_key_32, zeroize
from convkeys.services.directory import IdentityKeyProvider
from convkeys.services.exchange import build_record, default_ttl
from convkeys.services.key_cache import ConversationKeyCache
from convkeys.services.key_derivation import DerivedKeyMaterial, material_from_raw_key
from convkeys.services.key_wrap import wrap_conversation_key
from convkeys.services.sync_store import KeyRecordStore, with_retries

logger = logging.getLogger(__name__)


class RotationPolicy(str, enum.Enum):
    NEVER = "never"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    ON_DEMAND = "on_demand"


_POLICY_MAX_AGE = {
    RotationPolicy.DAILY: timedelta(days=1),
    RotationPolicy.WEEKLY: timedelta(days=7),
    RotationPolicy.MONTHLY: timedelta(days=30),
}


class GroupKeyDistributor:
    """Issues random per-epoch keys for group conversations, wrapped for each member.

    One member (normally the group owner) issues epochs for a conversation;
    everybody else receives them through KeyExchange.
    """

    def __init__(
        self,
        local_user_id: str,
        directory: IdentityKeyProvider,
        store: KeyRecordStore,
        cache: ConversationKeyCache,
        registry: ConversationRegistry,
        *,
        audit: AuditTrail | None = None,
        ttl: timedelta | None = None,
        now: Callable[[], datetime] = datetime.utcnow,
        rotation_policy: RotationPolicy | str | None = None,
        salt: bytes | None = None,
    ):
        self.local_user_id = local_user_id
        self._directory = directory
        self._store = store
        self._cache = cache
        self._registry = registry
        self._audit = audit
        self._ttl = ttl if ttl is not None else default_ttl()
        self._now = now
        self.rotation_policy = RotationPolicy(rotation_policy or settings.rotation_policy)
        self._salt = salt
        self._epoch_keys: dict[tuple[str, int], bytearray] = {}
        # Members of an issued epoch whose record could not be written yet.
        self._missing: dict[tuple[str, int], set[str]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock

    # ---- epochs ----

    async def create_epoch(self, conversation_id: str, participant_ids: Iterable[str]) -> tuple[int, bytes]:
        async with self._lock_for(conversation_id):
            return await self._create_epoch(conversation_id, set(participant_ids))

    async def rotate(self, conversation_id: str, participant_ids: Iterable[str]) -> tuple[int, bytes]:
        """Fresh key, fresh epoch. Keys of earlier epochs say nothing about the new one."""
        return await self.create_epoch(conversation_id, participant_ids)

    async def reissue(self, conversation_id: str) -> tuple[int, bytes]:
        """Re-distribute after a record expired or was rejected.

        Records are unique per epoch, so re-issuing always means a new epoch.
        """
        conv = self._registry.get(conversation_id)
        if conv is None:
            raise KeyError(f"Unknown conversation {conversation_id!r}")
        return await self.rotate(conversation_id, conv.members)

    async def _create_epoch(self, conversation_id: str, participant_ids: set[str]) -> tuple[int, bytes]:
        members = set(participant_ids) | {self.local_user_id}
        targets = sorted(m for m in members if m != self.local_user_id)
        # Look up every member first: a missing public key must not advance the epoch.
        public_keys = {target: await self._directory.get_public_key(target) for target in targets}

        conv = await self._registry.ensure_group(conversation_id, members)
        if conv.kind is not ConversationKind.GROUP:
            raise ValueError("Epoch distribution is only for group conversations")
        conv = await self._registry.advance_epoch(conversation_id, members=members)
        epoch = conv.current_epoch

        raw_key = generate_key_32()
        self._epoch_keys[(conversation_id, epoch)] = bytearray(raw_key)
        private_key = self._directory.get_local_private_key()
        issued_at = self._now()
        missing: set[str] = set()
        for target in targets:
            try:
                await self._issue(conversation_id, epoch, raw_key, target, public_keys[target], private_key, issued_at)
            except SyncStoreUnavailable:
                missing.add(target)

        await self._commit(material_from_raw_key(raw_key, conversation_id, epoch, salt=self._salt))
        if missing:
            self._missing[(conversation_id, epoch)] = missing
            logger.warning(
                "Half-issued group epoch conversation=%s epoch=%s missing=%s",
                conversation_id,
                epoch,
                sorted(missing),
            )
            await self._record_audit(
                "encryption.group_epoch_incomplete",
                conversation_id,
                f"Epoch={epoch} issued to {len(targets) - len(missing)} of {len(targets)} members; "
                f"missing {', '.join(sorted(missing))}.",
            )
            raise EpochPartiallyIssued(conversation_id, epoch, frozenset(missing))

        await self._record_audit(
            "encryption.group_epoch_created",
            conversation_id,
            f"Created epoch={epoch} for conversation={conversation_id} with {len(targets)} wrapped records.",
        )
        logger.info(
            "Created group epoch conversation=%s epoch=%s recipients=%s",
            conversation_id,
            epoch,
            len(targets),
        )
        return epoch, raw_key

    def missing_members(self, conversation_id: str, epoch: int) -> frozenset[str]:
        return frozenset(self._missing.get((conversation_id, epoch), ()))

    async def complete_epoch(self, conversation_id: str, epoch: int | None = None) -> frozenset[str]:
        """Issue the records a store outage kept from being written. Returns who is still missing."""
        async with self._lock_for(conversation_id):
            if epoch is None:
                conv = self._registry.get(conversation_id)
                if conv is None:
                    raise KeyError(f"Unknown conversation {conversation_id!r}")
                epoch = conv.current_epoch
            pending = self._missing.get((conversation_id, epoch))
            if not pending:
                return frozenset()
            raw_key = await self._current_raw_key(conversation_id, epoch)
            private_key = self._directory.get_local_private_key()
            issued_at = self._now()
            for target in sorted(pending):
                public_key = await self._directory.get_public_key(target)
                try:
                    await self._issue(conversation_id, epoch, raw_key, target, public_key, private_key, issued_at)
                except SyncStoreUnavailable:
                    continue
                pending.discard(target)
            if pending:
                return frozenset(pending)
            del self._missing[(conversation_id, epoch)]
        await self._record_audit(
            "encryption.group_epoch_created",
            conversation_id,
            f"Completed epoch={epoch} for conversation={conversation_id} after a store outage.",
        )
        logger.info("Completed half-issued group epoch conversation=%s epoch=%s", conversation_id, epoch)
        return frozenset()

    # ---- membership ----

    async def add_participant(self, conversation_id: str, participant_id: str) -> WrappedKeyRecord:
        """Wrap the current epoch key for one new member; nobody else is re-keyed."""
        async with self._lock_for(conversation_id):
            conv = self._registry.get(conversation_id)
            if conv is None or conv.current_epoch < 1:
                raise KeyError(f"Conversation {conversation_id!r} has no epoch to share")
            raw_key = await self._current_raw_key(conversation_id, conv.current_epoch)
            public_key = await self._directory.get_public_key(participant_id)
            record = await self._issue(
                conversation_id,
                conv.current_epoch,
                raw_key,
                participant_id,
                public_key,
                self._directory.get_local_private_key(),
                self._now(),
            )
            await self._registry.set_members(conversation_id, conv.members | {participant_id})
        await self._record_audit(
            "encryption.group_member_added",
            conversation_id,
            f"Wrapped epoch={conv.current_epoch} for new member {participant_id}.",
        )
        return record

    async def remove_participant(self, conversation_id: str, participant_id: str) -> int:
        """Drop a member and rotate at once. Their access to earlier epochs is not revoked."""
        async with self._lock_for(conversation_id):
            conv = self._registry.get(conversation_id)
            if conv is None:
                raise KeyError(f"Unknown conversation {conversation_id!r}")
            remaining = set(conv.members) - {participant_id}
            epoch, _ = await self._create_epoch(conversation_id, remaining)
        await self._record_audit(
            "encryption.group_member_removed",
            conversation_id,
            f"Removed {participant_id}; rotated to epoch={epoch}.",
        )
        return epoch

    # ---- policy ----

    def needs_rotation(self, conversation_id: str, now: datetime | None = None) -> bool:
        max_age = _POLICY_MAX_AGE.get(self.rotation_policy)
        conv = self._registry.get(conversation_id)
        if max_age is None or conv is None or conv.epoch_started_at is None:
            return False
        return (now or self._now()) - conv.epoch_started_at >= max_age

    # ---- issuer-side material ----

    def has_epoch_key(self, conversation_id: str, epoch: int) -> bool:
        return (conversation_id, epoch) in self._epoch_keys

    def key_material(self, conversation_id: str, epoch: int) -> DerivedKeyMaterial:
        raw = self._epoch_keys.get((conversation_id, epoch))
        if raw is None:
            raise KeyError(f"No locally issued key for conversation={conversation_id} epoch={epoch}")
        return material_from_raw_key(bytes(raw), conversation_id, epoch, salt=self._salt)

    def forget(self, conversation_id: str) -> None:
        for key in [k for k in self._epoch_keys if k[0] == conversation_id]:
            zeroize(self._epoch_keys.pop(key))
        for key in [k for k in self._missing if k[0] == conversation_id]:
            del self._missing[key]

    # ---- internals ----

    async def _current_raw_key(self, conversation_id: str, epoch: int) -> bytes:
        raw = self._epoch_keys.get((conversation_id, epoch))
        if raw is not None:
            return bytes(raw)
        cached = await self._cache.peek(conversation_id, epoch)
        if cached is None:
            raise ExchangeRecordPending(
                f"Key for conversation={conversation_id} epoch={epoch} is not available on this device"
            )
        return cached.raw_key

    async def _issue(
        self,
        conversation_id: str,
        epoch: int,
        raw_key: bytes,
        target_id: str,
        target_public_key: bytes,
        private_key: bytes,
        issued_at: datetime,
    ) -> WrappedKeyRecord:
        ciphertext = wrap_conversation_key(
            raw_key,
            requester_id=self.local_user_id,
            requester_private_key=private_key,
            target_id=target_id,
            target_public_key=target_public_key,
            conversation_id=conversation_id,
            epoch=epoch,
            salt=self._salt,
        )
        record = build_record(
            requester_id=self.local_user_id,
            target_id=target_id,
            conversation_id=conversation_id,
            epoch=epoch,
            ciphertext=ciphertext,
            created_at=issued_at,
            ttl=self._ttl,
        )
        try:
            await with_retries(lambda: self._store.create(record), what="create")
        except RecordAlreadyExists:
            logger.info(
                "Key record already issued conversation=%s epoch=%s target=%s",
                conversation_id,
                epoch,
                target_id,
            )
        return record

    async def _commit(self, material: DerivedKeyMaterial) -> None:
        try:
            await self._cache.put(material)
        except EpochRegression:
            logger.info(
                "Not caching superseded epoch=%s for conversation=%s",
                material.epoch,
                material.conversation_id,
            )

    async def _record_audit(self, event_type: str, conversation_id: str, details: str) -> None:
        if self._audit is None:
            return
        await asyncio.to_thread(self._audit.record, event_type, conversation_id=conversation_id, details=details)
