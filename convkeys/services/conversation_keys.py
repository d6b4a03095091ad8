from __future__ import annotations

import enum
import logging
from collections.abc import Iterable

from convkeys.errors import ConversationKeyError, ExchangeRecordPending, InvalidTransition
from convkeys.schemas.records import RecordStatus
from convkeys.services import pairwise
from convkeys.services.conversations import Conversation, ConversationKind, ConversationRegistry
from convkeys.services.directory import IdentityKeyProvider
from convkeys.services.exchange import KeyExchange
from convkeys.services.group_keystore import GroupKeyDistributor
from convkeys.services.key_cache import ConversationKeyCache, Resolver
from convkeys.services.key_derivation import DerivedKeyMaterial

logger = logging.getLogger(__name__)


class ChannelState(str, enum.Enum):
    READY = "ready"
    ESTABLISHING = "establishing"


class ConversationKeyService:
    """What the encrypt/decrypt layer talks to.

    Current-epoch keys go through the cache; older epochs (reading history)
    are resolved directly so the cache never hands out an epoch below one it
    already served.
    """

    def __init__(
        self,
        local_user_id: str,
        directory: IdentityKeyProvider,
        cache: ConversationKeyCache,
        registry: ConversationRegistry,
        distributor: GroupKeyDistributor,
        exchange: KeyExchange,
        *,
        wait_timeout: float | None = None,
        salt: bytes | None = None,
    ):
        self.local_user_id = local_user_id
        self.directory = directory
        self.cache = cache
        self.registry = registry
        self.distributor = distributor
        self.exchange = exchange
        self._wait_timeout = wait_timeout
        self._salt = salt

    # ---- conversations ----

    async def register_pairwise(self, conversation_id: str, counterpart_id: str) -> Conversation:
        if counterpart_id == self.local_user_id:
            raise ValueError("A pairwise conversation needs a counterpart other than the local user")
        return await self.registry.ensure_pairwise(conversation_id, counterpart_id)

    async def register_group(self, conversation_id: str, members: Iterable[str] = ()) -> Conversation:
        return await self.registry.ensure_group(conversation_id, set(members) | {self.local_user_id})

    async def rotate_pairwise(self, conversation_id: str) -> int:
        """Bump the epoch. The counterpart derives the same key on its own; nothing is sent."""
        conv = self._require(conversation_id)
        if conv.kind is not ConversationKind.PAIRWISE:
            raise InvalidTransition("Group conversations rotate through the distributor")
        conv = await self.registry.advance_epoch(conversation_id)
        logger.info("Rotated pairwise conversation=%s to epoch=%s", conversation_id, conv.current_epoch)
        return conv.current_epoch

    async def observe_epoch(self, conversation_id: str, epoch: int) -> Conversation:
        """Follow an epoch seen on an incoming message."""
        return await self.registry.observe_epoch(conversation_id, epoch)

    # ---- keys ----

    async def get_key(self, conversation_id: str, epoch: int | None = None) -> DerivedKeyMaterial:
        conv = self._require(conversation_id)
        epoch = epoch if epoch is not None else conv.current_epoch
        if epoch < 1:
            raise ExchangeRecordPending(f"Conversation {conversation_id} has no key epoch yet")
        return await self.cache.get_or_resolve(conversation_id, epoch, self._resolver(conv, epoch))

    async def historical_key(self, conversation_id: str, epoch: int) -> DerivedKeyMaterial:
        conv = self._require(conversation_id)
        if epoch >= self.cache.highest_served_epoch(conversation_id):
            return await self.get_key(conversation_id, epoch)
        return await self._resolver(conv, epoch)()

    async def channel_state(self, conversation_id: str) -> ChannelState:
        try:
            await self.get_key(conversation_id)
        except ConversationKeyError as exc:
            if exc.recoverable:
                logger.info("Secure channel still establishing for conversation=%s: %s", conversation_id, exc)
                return ChannelState.ESTABLISHING
            raise
        return ChannelState.READY

    async def accept_pending(self, conversation_id: str | None = None) -> list[DerivedKeyMaterial]:
        """Accept every PENDING record addressed to this device."""
        accepted = []
        for record in await self.exchange.pending_for_me(conversation_id):
            if record.status is not RecordStatus.PENDING:
                continue
            await self.registry.ensure_group(record.conversation_id)
            try:
                accepted.append(await self.exchange.accept(record))
            except ConversationKeyError as exc:
                logger.warning(
                    "Could not accept key record conversation=%s epoch=%s: %s",
                    record.conversation_id,
                    record.epoch,
                    exc,
                )
        return accepted

    async def prefetch(self, conversation_ids: Iterable[str]) -> dict[tuple[str, int], BaseException]:
        requests = []
        for conversation_id in conversation_ids:
            conv = self._require(conversation_id)
            if conv.current_epoch >= 1:
                requests.append((conversation_id, conv.current_epoch, self._resolver(conv, conv.current_epoch)))
        return await self.cache.preload(requests)

    # ---- internals ----

    def _require(self, conversation_id: str) -> Conversation:
        conv = self.registry.get(conversation_id)
        if conv is None:
            raise KeyError(f"Unknown conversation {conversation_id!r}")
        return conv

    def _resolver(self, conv: Conversation, epoch: int) -> Resolver:
        if conv.kind is ConversationKind.PAIRWISE:

            async def resolve_pairwise() -> DerivedKeyMaterial:
                remote_public_key = await self.directory.get_public_key(conv.counterpart_id)
                return pairwise.resolve(
                    conv.id,
                    epoch,
                    self.directory.get_local_private_key(),
                    remote_public_key,
                    salt=self._salt,
                )

            return resolve_pairwise

        async def resolve_group() -> DerivedKeyMaterial:
            if self.distributor.has_epoch_key(conv.id, epoch):
                return self.distributor.key_material(conv.id, epoch)
            return await self.exchange.resolve_group_key(conv.id, epoch, wait_timeout=self._wait_timeout)

        return resolve_group
