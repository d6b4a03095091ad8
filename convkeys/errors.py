from __future__ import annotations


class ConversationKeyError(Exception):
    """Base class for every error raised by convkeys.

    ``recoverable`` tells the encrypt/decrypt layer whether the message can be
    retried later ("establishing secure channel") or must be rejected.
    """

    recoverable: bool = False


class InvalidKeyMaterial(ConversationKeyError):
    """Malformed key, identity element, low-order point or out-of-range epoch."""


class PeerKeyUnavailable(ConversationKeyError):
    recoverable = True

    def __init__(self, user_id: str):
        super().__init__(f"No public key on file for user {user_id!r}")
        self.user_id = user_id


class ExchangeRecordPending(ConversationKeyError):
    """No usable wrapped key record has arrived yet."""

    recoverable = True


class ExchangeRecordExpired(ConversationKeyError):
    recoverable = True


class ExchangeRecordRejected(ConversationKeyError):
    """The record was rejected; the requester must issue a new epoch."""

    recoverable = True


class UnwrapAuthenticationFailed(ConversationKeyError):
    """AEAD verification of a wrapped key failed (wrong key, tampering or wrong participant)."""


class InvalidTransition(ConversationKeyError):
    pass


class EpochRegression(ConversationKeyError):
    def __init__(self, conversation_id: str, requested: int, served: int):
        super().__init__(
            f"Epoch {requested} for conversation {conversation_id!r} is below already served epoch {served}"
        )
        self.conversation_id = conversation_id
        self.requested = requested
        self.served = served


class EpochPartiallyIssued(ConversationKeyError):
    """The epoch exists but some members got no wrapped record; finish it with complete_epoch()."""

    recoverable = True

    def __init__(self, conversation_id: str, epoch: int, missing: frozenset[str]):
        super().__init__(
            f"Epoch {epoch} of conversation {conversation_id!r} has no record yet for {', '.join(sorted(missing))}"
        )
        self.conversation_id = conversation_id
        self.epoch = epoch
        self.missing = missing


class MigrationEquivalenceFailed(ConversationKeyError):
    recoverable = True


class CacheClosed(ConversationKeyError):
    pass


class SyncStoreError(ConversationKeyError):
    pass


class SyncStoreUnavailable(SyncStoreError):
    """Transient failure talking to the key-record store."""

    recoverable = True


class RecordAlreadyExists(SyncStoreError):
    pass


class RecordNotFound(SyncStoreError):
    pass
