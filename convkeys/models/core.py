import uuid
from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from convkeys.db import Base


class WrappedKeyRecordRow(Base):
    __tablename__ = "wrapped_key_records"
    __table_args__ = (
        UniqueConstraint("requester_id", "target_id", "conversation_id", "epoch", name="uq_wrapped_key_record"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    requester_id: Mapped[str] = mapped_column(String(150), index=True)
    target_id: Mapped[str] = mapped_column(String(150), index=True)
    conversation_id: Mapped[str] = mapped_column(String(255), index=True)
    epoch: Mapped[int] = mapped_column(BigInteger)
    # base64url AEAD output (ciphertext || tag) of the 32-byte conversation key
    ciphertext: Mapped[str] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(20), default="pending")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime)
    responded_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class MigrationRecordRow(Base):
    __tablename__ = "migration_records"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    legacy_key_fingerprint: Mapped[str] = mapped_column(String(64))
    status: Mapped[str] = mapped_column(String(20), default="not_started")
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    samples_checked: Mapped[int] = mapped_column(Integer, default=0)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    verified_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class LegacyConversationKey(Base):
    """Conversation key as escrowed by the pre-migration backend."""

    __tablename__ = "legacy_conversation_keys"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    # base64url strings (nonce + ciphertext) wrapping the 32-byte key under the legacy master key
    wrap_nonce: Mapped[str] = mapped_column(String(64))
    wrapped_dek: Mapped[str] = mapped_column(Text)
    key_version: Mapped[int] = mapped_column(Integer, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str | None] = mapped_column(String(150), nullable=True)
    conversation_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    event_type: Mapped[str] = mapped_column(String(120))
    event_timestamp: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
