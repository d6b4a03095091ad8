"""Conversation keys escrowed by the pre-migration backend.

The backend stored every conversation key wrapped with AES-256-GCM under one
master key, with a random nonce and the conversation id as associated data.
The master key is either configured directly or stretched from a passphrase
with the same Argon2id parameters the backend used.
"""

from __future__ import annotations

import base64
import logging
import os
from functools import lru_cache
from pathlib import Path

from argon2.low_level import Type, hash_secret_raw
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from convkeys.config import settings
from convkeys.models.core import LegacyConversationKey
from convkeys.services.audit import add_audit_log
from convkeys.services.crypto import KEY_SIZE, NONCE_SIZE, b64d, b64e, check_key_32, open_sealed, seal

logger = logging.getLogger(__name__)

_MASTER_KEY_INFO = b"convkeys-legacy:master-key:v1"


@lru_cache(maxsize=4)
def _passphrase_root_key(passphrase_file: str, salt_file: str) -> bytes:
    passphrase = Path(passphrase_file).read_bytes().strip()
    if not passphrase:
        raise ValueError(f"Passphrase file {passphrase_file} is empty")
    salt = Path(salt_file).read_bytes()
    if len(salt) < 16:
        raise ValueError(f"Salt file {salt_file} must hold at least 16 bytes")
    # Must match the backend's Argon2id parameters or nothing will unwrap.
    return hash_secret_raw(
        secret=passphrase,
        salt=salt,
        time_cost=3,
        memory_cost=65536,
        parallelism=1,
        hash_len=KEY_SIZE,
        type=Type.ID,
    )


@lru_cache(maxsize=1)
def load_legacy_master_key() -> bytes:
    """Master key from CONVKEYS_LEGACY_PASSPHRASE_FILE, else CONVKEYS_LEGACY_MASTER_KEY."""
    if settings.legacy_passphrase_file:
        if not settings.legacy_salt_file:
            raise ValueError("CONVKEYS_LEGACY_SALT_FILE is not set")
        root = _passphrase_root_key(settings.legacy_passphrase_file, settings.legacy_salt_file)
        return HKDF(algorithm=hashes.SHA256(), length=KEY_SIZE, salt=None, info=_MASTER_KEY_INFO).derive(root)

    if not settings.legacy_master_key:
        raise ValueError("Neither CONVKEYS_LEGACY_MASTER_KEY nor CONVKEYS_LEGACY_PASSPHRASE_FILE is set")
    raw = base64.urlsafe_b64decode(settings.legacy_master_key.encode())
    if len(raw) != KEY_SIZE:
        raise ValueError("CONVKEYS_LEGACY_MASTER_KEY must decode to 32 bytes")
    return raw


def legacy_aad(conversation_id: str) -> bytes:
    return f"legacy-conversation:{conversation_id}".encode()


def escrow_wrap(master_key: bytes, conversation_id: str, dek: bytes) -> tuple[str, str]:
    """Wrap a conversation key the way the backend escrow did. Returns (nonce, ciphertext), base64url."""
    dek = check_key_32(dek, name="conversation key")
    nonce = os.urandom(NONCE_SIZE)
    return b64e(nonce), b64e(seal(master_key, nonce, dek, aad=legacy_aad(conversation_id)))


def escrow_unwrap(master_key: bytes, conversation_id: str, nonce_b64: str, wrapped_b64: str) -> bytes:
    dek = open_sealed(master_key, b64d(nonce_b64), b64d(wrapped_b64), aad=legacy_aad(conversation_id))
    return check_key_32(dek, name="escrowed conversation key")


class LegacyKeyStore:
    """Conversation keys that the backend used to hold, wrapped under the legacy master key.

    Kept only until migration for the conversation has been verified.
    """

    def __init__(self, session_factory: sessionmaker[Session], *, master_key: bytes | None = None):
        self._session_factory = session_factory
        self._master_key = master_key

    def _master(self) -> bytes:
        return self._master_key if self._master_key is not None else load_legacy_master_key()

    def import_key(self, conversation_id: str, dek: bytes) -> LegacyConversationKey:
        with self._session_factory() as db:
            existing = (
                db.query(LegacyConversationKey).filter(LegacyConversationKey.conversation_id == conversation_id).first()
            )
            if existing:
                return existing

            wrap_nonce, wrapped_dek = escrow_wrap(self._master(), conversation_id, dek)
            row = LegacyConversationKey(
                conversation_id=conversation_id,
                wrap_nonce=wrap_nonce,
                wrapped_dek=wrapped_dek,
                key_version=1,
            )
            try:
                db.add(row)
                db.flush()
                add_audit_log(
                    db,
                    event_type="encryption.legacy_key_imported",
                    conversation_id=conversation_id,
                    details=f"Imported legacy key id={row.id} for conversation={conversation_id}.",
                )
                db.commit()
            except IntegrityError:
                db.rollback()
                existing = (
                    db.query(LegacyConversationKey)
                    .filter(LegacyConversationKey.conversation_id == conversation_id)
                    .first()
                )
                if existing:
                    return existing
                raise
            db.refresh(row)
        logger.info("Imported legacy key id=%s for conversation=%s", row.id, conversation_id)
        return row

    def get_key(self, conversation_id: str) -> bytes | None:
        with self._session_factory() as db:
            row = (
                db.query(LegacyConversationKey).filter(LegacyConversationKey.conversation_id == conversation_id).first()
            )
            if row is None:
                return None
            return escrow_unwrap(self._master(), conversation_id, row.wrap_nonce, row.wrapped_dek)

    def discard(self, conversation_id: str) -> bool:
        with self._session_factory() as db:
            row = (
                db.query(LegacyConversationKey).filter(LegacyConversationKey.conversation_id == conversation_id).first()
            )
            if row is None:
                return False
            db.delete(row)
            add_audit_log(
                db,
                event_type="encryption.legacy_key_discarded",
                conversation_id=conversation_id,
                details=f"Discarded local legacy key for conversation={conversation_id} after verified migration.",
            )
            db.commit()
        logger.info("Discarded legacy key for conversation=%s", conversation_id)
        return True

    def conversation_ids(self) -> list[str]:
        with self._session_factory() as db:
            return [cid for (cid,) in db.query(LegacyConversationKey.conversation_id).all()]
