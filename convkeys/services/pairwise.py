from __future__ import annotations

from convkeys.services.crypto import ecdh
from convkeys.services.key_derivation import DerivedKeyMaterial, Purpose, build_key_material, check_epoch, derive


def resolve(
    conversation_id: str,
    epoch: int,
    local_private_key: bytes,
    remote_public_key: bytes,
    *,
    salt: bytes | None = None,
) -> DerivedKeyMaterial:
    """Key material for a two-party conversation.

    Both sides compute the same result with their own private key and the
    other side's public key. Nothing is fetched or stored, so rotating a
    pairwise conversation is just asking for the next epoch.
    """
    check_epoch(epoch)
    shared = ecdh(local_private_key, remote_public_key)
    raw_key = derive(shared, conversation_id, epoch, Purpose.ROOT, salt=salt)
    return build_key_material(shared, conversation_id, epoch, raw_key=raw_key, salt=salt)
