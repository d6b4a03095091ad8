from __future__ import annotations

import enum
from datetime import datetime
from typing import NamedTuple

from pydantic import BaseModel, ConfigDict, Field

from convkeys.services.key_derivation import MAX_EPOCH


class RecordStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"


class RecordKey(NamedTuple):
    requester_id: str
    target_id: str
    conversation_id: str
    epoch: int


class WrappedKeyRecord(BaseModel):
    """A conversation key sealed for one participant.

    The store only ever sees routing fields and ``ciphertext``; the key itself
    is recoverable only with the target's private key.
    """

    model_config = ConfigDict(from_attributes=True)

    requester_id: str
    target_id: str
    conversation_id: str
    epoch: int = Field(ge=1, le=MAX_EPOCH)
    # base64url(AES-GCM ciphertext || tag)
    ciphertext: str
    status: RecordStatus = RecordStatus.PENDING
    created_at: datetime
    expires_at: datetime
    responded_at: datetime | None = None

    @property
    def key(self) -> RecordKey:
        return RecordKey(self.requester_id, self.target_id, self.conversation_id, self.epoch)


class WrappedKeyRecordPayload(BaseModel):
    """Wire shape exchanged with the synchronization backend."""

    model_config = ConfigDict(from_attributes=True)

    requester_id: str = Field(min_length=1, max_length=150)
    target_id: str = Field(min_length=1, max_length=150)
    conversation_id: str = Field(min_length=1, max_length=255)
    # unsigned, never truncated to 32 bits
    epoch: int = Field(ge=1, le=MAX_EPOCH)
    ciphertext: str = Field(min_length=1)
    status: RecordStatus
    created_at: datetime
    expires_at: datetime
    responded_at: datetime | None = None

    @classmethod
    def from_record(cls, record: WrappedKeyRecord) -> "WrappedKeyRecordPayload":
        return cls.model_validate(record.model_dump())

    def to_record(self) -> WrappedKeyRecord:
        return WrappedKeyRecord.model_validate(self.model_dump())


class MigrationStatus(str, enum.Enum):
    NOT_STARTED = "not_started"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    FAILED = "failed"


class MigrationRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    conversation_id: str
    # SHA-256 hex of the server-stored key this record verified against
    legacy_key_fingerprint: str
    status: MigrationStatus = MigrationStatus.NOT_STARTED
    attempts: int = 0
    samples_checked: int = 0
    error: str | None = None
    verified_at: datetime | None = None
