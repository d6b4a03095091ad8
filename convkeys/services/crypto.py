from __future__ import annotations

import base64
import hashlib
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.asymmetric import x25519
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from convkeys.errors import InvalidKeyMaterial

KEY_SIZE = 32
NONCE_SIZE = 12
_ZERO_KEY = bytes(KEY_SIZE)


def b64e(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode()


def b64d(data: str) -> bytes:
    return base64.urlsafe_b64decode(data.encode())


def generate_key_32() -> bytes:
    return os.urandom(KEY_SIZE)


def fingerprint(key: bytes) -> str:
    return hashlib.sha256(key).hexdigest()


def zeroize(buf: bytearray) -> None:
    """Best-effort overwrite of key bytes we own."""
    for i in range(len(buf)):
        buf[i] = 0


def check_key_32(key: bytes, *, name: str) -> bytes:
    if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_SIZE:
        raise InvalidKeyMaterial(f"{name} must be {KEY_SIZE} bytes")
    if bytes(key) == _ZERO_KEY:
        raise InvalidKeyMaterial(f"{name} is the identity element")
    return bytes(key)


def x25519_generate() -> tuple[bytes, bytes]:
    sk = x25519.X25519PrivateKey.generate()
    pk = sk.public_key()
    return sk.private_bytes_raw(), pk.public_bytes_raw()


def x25519_public_from_private(private_key: bytes) -> bytes:
    sk = x25519.X25519PrivateKey.from_private_bytes(check_key_32(private_key, name="private key"))
    return sk.public_key().public_bytes_raw()


def ecdh(private_key: bytes, public_key: bytes) -> bytes:
    """X25519 shared secret between a private key and a counterpart public key."""
    private_key = check_key_32(private_key, name="private key")
    public_key = check_key_32(public_key, name="public key")
    try:
        sk = x25519.X25519PrivateKey.from_private_bytes(private_key)
        shared = sk.exchange(x25519.X25519PublicKey.from_public_bytes(public_key))
    except ValueError as exc:
        # cryptography refuses low-order points (all-zero shared secret).
        raise InvalidKeyMaterial("public key is a low-order point") from exc
    return check_key_32(shared, name="shared secret")


def seal(key: bytes, nonce: bytes, plaintext: bytes, *, aad: bytes) -> bytes:
    """AES-256-GCM; returns ciphertext || tag."""
    if len(key) != KEY_SIZE:
        raise InvalidKeyMaterial("AEAD key must be 32 bytes")
    if len(nonce) != NONCE_SIZE:
        raise InvalidKeyMaterial("AEAD nonce must be 12 bytes")
    return AESGCM(key).encrypt(nonce, plaintext, aad)


def open_sealed(key: bytes, nonce: bytes, sealed: bytes, *, aad: bytes) -> bytes:
    """Inverse of seal(). Raises cryptography's InvalidTag on any mismatch."""
    if len(key) != KEY_SIZE:
        raise InvalidKeyMaterial("AEAD key must be 32 bytes")
    return AESGCM(key).decrypt(nonce, sealed, aad)


def try_open(key: bytes, nonce: bytes, sealed: bytes, *, aad: bytes | None = None) -> bytes | None:
    try:
        return AESGCM(key).decrypt(nonce, sealed, aad)
    except (InvalidTag, ValueError):
        return None
