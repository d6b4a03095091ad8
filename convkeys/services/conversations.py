from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime

from convkeys.errors import EpochRegression
from convkeys.services.key_derivation import check_epoch

logger = logging.getLogger(__name__)


class ConversationKind(str, enum.Enum):
    PAIRWISE = "pairwise"
    GROUP = "group"


@dataclass(frozen=True)
class Conversation:
    id: str
    kind: ConversationKind
    # 0 until the first epoch is established
    current_epoch: int = 0
    counterpart_id: str | None = None
    members: frozenset[str] = field(default_factory=frozenset)
    epoch_started_at: datetime | None = None


class ConversationRegistry:
    """Local view of the conversations this device takes part in."""

    def __init__(self):
        self._conversations: dict[str, Conversation] = {}
        self._lock = asyncio.Lock()

    def get(self, conversation_id: str) -> Conversation | None:
        return self._conversations.get(conversation_id)

    async def ensure_pairwise(self, conversation_id: str, counterpart_id: str) -> Conversation:
        async with self._lock:
            existing = self._conversations.get(conversation_id)
            if existing is not None:
                if existing.kind is not ConversationKind.PAIRWISE or existing.counterpart_id != counterpart_id:
                    raise ValueError("Conversation counterpart does not match")
                return existing
            conv = Conversation(
                id=conversation_id,
                kind=ConversationKind.PAIRWISE,
                current_epoch=1,
                counterpart_id=counterpart_id,
                epoch_started_at=datetime.utcnow(),
            )
            self._conversations[conversation_id] = conv
            logger.info("Registered pairwise conversation=%s counterpart=%s", conversation_id, counterpart_id)
            return conv

    async def ensure_group(self, conversation_id: str, members: set[str] | frozenset[str] = frozenset()) -> Conversation:
        async with self._lock:
            existing = self._conversations.get(conversation_id)
            if existing is not None:
                if existing.kind is not ConversationKind.GROUP:
                    raise ValueError("Conversation is not a group conversation")
                return existing
            conv = Conversation(id=conversation_id, kind=ConversationKind.GROUP, members=frozenset(members))
            self._conversations[conversation_id] = conv
            logger.info("Registered group conversation=%s members=%s", conversation_id, len(conv.members))
            return conv

    async def advance_epoch(
        self,
        conversation_id: str,
        *,
        members: set[str] | frozenset[str] | None = None,
    ) -> Conversation:
        """Move to current_epoch + 1. The only way an epoch changes."""
        async with self._lock:
            conv = self._require(conversation_id)
            updated = replace(
                conv,
                current_epoch=check_epoch(conv.current_epoch + 1),
                members=frozenset(members) if members is not None else conv.members,
                epoch_started_at=datetime.utcnow(),
            )
            self._conversations[conversation_id] = updated
            return updated

    async def observe_epoch(self, conversation_id: str, epoch: int) -> Conversation:
        """Catch up to an epoch learned from a peer (e.g. an incoming exchange record)."""
        check_epoch(epoch)
        async with self._lock:
            conv = self._require(conversation_id)
            if epoch < conv.current_epoch:
                raise EpochRegression(conversation_id, epoch, conv.current_epoch)
            if epoch == conv.current_epoch:
                return conv
            updated = replace(conv, current_epoch=epoch, epoch_started_at=datetime.utcnow())
            self._conversations[conversation_id] = updated
            return updated

    async def set_members(self, conversation_id: str, members: set[str] | frozenset[str]) -> Conversation:
        async with self._lock:
            conv = self._require(conversation_id)
            updated = replace(conv, members=frozenset(members))
            self._conversations[conversation_id] = updated
            return updated

    def _require(self, conversation_id: str) -> Conversation:
        conv = self._conversations.get(conversation_id)
        if conv is None:
            raise KeyError(f"Unknown conversation {conversation_id!r}")
        return conv
