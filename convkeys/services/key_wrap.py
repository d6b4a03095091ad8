from __future__ import annotations

import struct

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes

from convkeys.errors import UnwrapAuthenticationFailed
from convkeys.services.crypto import NONCE_SIZE, b64d, b64e, check_key_32, ecdh, open_sealed, seal
from convkeys.services.key_derivation import Purpose, check_epoch, derive


def _field(value: str) -> bytes:
    raw = value.encode()
    return struct.pack(">I", len(raw)) + raw


def wrap_nonce(conversation_id: str, epoch: int, participant_id: str) -> bytes:
    """Deterministic nonce: unique per (conversation, epoch, participant), no counter to keep."""
    digest = hashes.Hash(hashes.SHA256())
    digest.update(b"convkeys-wrap-nonce:v1")
    digest.update(_field(conversation_id))
    digest.update(struct.pack(">Q", check_epoch(epoch)))
    digest.update(_field(participant_id))
    return digest.finalize()[:NONCE_SIZE]


def wrap_aad(requester_id: str, target_id: str, conversation_id: str, epoch: int) -> bytes:
    return b"".join(
        (
            b"convkeys-wrap:v1",
            _field(requester_id),
            _field(target_id),
            _field(conversation_id),
            struct.pack(">Q", check_epoch(epoch)),
        )
    )


def wrapping_key(
    local_private_key: bytes,
    peer_public_key: bytes,
    conversation_id: str,
    epoch: int,
    *,
    salt: bytes | None = None,
) -> bytes:
    shared = ecdh(local_private_key, peer_public_key)
    return derive(shared, conversation_id, epoch, Purpose.KEY_WRAP, salt=salt)


def wrap_conversation_key(
    raw_key: bytes,
    *,
    requester_id: str,
    requester_private_key: bytes,
    target_id: str,
    target_public_key: bytes,
    conversation_id: str,
    epoch: int,
    salt: bytes | None = None,
) -> str:
    """Seal ``raw_key`` for one recipient. Returns base64url(ciphertext || tag)."""
    raw_key = check_key_32(raw_key, name="raw key")
    key = wrapping_key(requester_private_key, target_public_key, conversation_id, epoch, salt=salt)
    sealed = seal(
        key,
        wrap_nonce(conversation_id, epoch, target_id),
        raw_key,
        aad=wrap_aad(requester_id, target_id, conversation_id, epoch),
    )
    return b64e(sealed)


def unwrap_conversation_key(
    ciphertext_b64: str,
    *,
    requester_id: str,
    requester_public_key: bytes,
    target_id: str,
    target_private_key: bytes,
    conversation_id: str,
    epoch: int,
    salt: bytes | None = None,
) -> bytes:
    key = wrapping_key(target_private_key, requester_public_key, conversation_id, epoch, salt=salt)
    try:
        sealed = b64d(ciphertext_b64)
        raw_key = open_sealed(
            key,
            wrap_nonce(conversation_id, epoch, target_id),
            sealed,
            aad=wrap_aad(requester_id, target_id, conversation_id, epoch),
        )
    except (InvalidTag, ValueError) as exc:
        raise UnwrapAuthenticationFailed(
            f"Wrapped key from {requester_id} for conversation={conversation_id} epoch={epoch} "
            "failed authentication"
        ) from exc
    if len(raw_key) != 32:
        raise UnwrapAuthenticationFailed("Unwrapped key has invalid length")
    return raw_key
