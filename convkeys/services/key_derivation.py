"""ECDH + HKDF derivation of purpose-scoped conversation subkeys.

Every subkey is ``HKDF-SHA256(salt=app salt, ikm=secret, info=...)`` where
``info`` binds the conversation id, the epoch and the purpose, so keys for
different purposes, conversations or epochs are independent even when they
share the same input secret.
"""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from convkeys.config import settings
from convkeys.errors import InvalidKeyMaterial
from convkeys.services.crypto import KEY_SIZE, check_key_32

_INFO_PREFIX = b"convkeys:v1"
MAX_EPOCH = 2**64 - 1


class Purpose(str, enum.Enum):
    MESSAGE = "message"
    MEDIA = "media"
    AUTH = "auth"
    KEY_WRAP = "key-wrap"
    ROOT = "root"


SUBKEY_PURPOSES = (Purpose.MESSAGE, Purpose.MEDIA, Purpose.AUTH)


def check_epoch(epoch: int) -> int:
    if isinstance(epoch, bool) or not isinstance(epoch, int):
        raise InvalidKeyMaterial("epoch must be an integer")
    if epoch < 1 or epoch > MAX_EPOCH:
        raise InvalidKeyMaterial(f"epoch {epoch} outside 1..2**64-1")
    return epoch


def derivation_info(conversation_id: str, epoch: int, purpose: Purpose) -> bytes:
    if not conversation_id:
        raise InvalidKeyMaterial("conversation_id is required")
    conv = conversation_id.encode()
    return b"".join(
        (
            _INFO_PREFIX,
            struct.pack(">I", len(conv)),
            conv,
            struct.pack(">Q", check_epoch(epoch)),
            purpose.value.encode(),
        )
    )


def derive(
    shared_secret: bytes,
    conversation_id: str,
    epoch: int,
    purpose: Purpose,
    *,
    salt: bytes | None = None,
) -> bytes:
    secret = check_key_32(shared_secret, name="shared secret")
    return HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=salt if salt is not None else settings.hkdf_salt.encode(),
        info=derivation_info(conversation_id, epoch, purpose),
    ).derive(secret)


@dataclass(frozen=True, repr=False)
class DerivedKeyMaterial:
    conversation_id: str
    epoch: int
    raw_key: bytes
    message_key: bytes
    media_key: bytes
    auth_key: bytes

    def bundle(self) -> bytes:
        return self.message_key + self.media_key + self.auth_key

    def key_for(self, purpose: Purpose) -> bytes:
        if purpose is Purpose.MESSAGE:
            return self.message_key
        if purpose is Purpose.MEDIA:
            return self.media_key
        if purpose is Purpose.AUTH:
            return self.auth_key
        if purpose is Purpose.ROOT:
            return self.raw_key
        raise ValueError(f"No subkey for purpose {purpose}")

    def __repr__(self) -> str:
        # Never render key bytes into logs or tracebacks.
        return f"DerivedKeyMaterial(conversation_id={self.conversation_id!r}, epoch={self.epoch})"


def build_key_material(
    secret: bytes,
    conversation_id: str,
    epoch: int,
    *,
    raw_key: bytes,
    salt: bytes | None = None,
) -> DerivedKeyMaterial:
    message_key, media_key, auth_key = (
        derive(secret, conversation_id, epoch, purpose, salt=salt) for purpose in SUBKEY_PURPOSES
    )
    return DerivedKeyMaterial(
        conversation_id=conversation_id,
        epoch=epoch,
        raw_key=check_key_32(raw_key, name="raw key"),
        message_key=message_key,
        media_key=media_key,
        auth_key=auth_key,
    )


def material_from_raw_key(
    raw_key: bytes,
    conversation_id: str,
    epoch: int,
    *,
    salt: bytes | None = None,
) -> DerivedKeyMaterial:
    """Subkeys of a distributed (group) conversation key."""
    return build_key_material(raw_key, conversation_id, epoch, raw_key=raw_key, salt=salt)
