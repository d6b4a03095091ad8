import struct

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from convkeys.errors import InvalidKeyMaterial
from convkeys.services.crypto import ecdh, x25519_generate
from convkeys.services.key_derivation import (
    MAX_EPOCH,
    Purpose,
    derivation_info,
    derive,
    material_from_raw_key,
)

SECRET = bytes(range(32, 64))
SALT = b"test-salt"


def test_derive_matches_hkdf_sha256_over_bound_info():
    info = b"convkeys:v1" + struct.pack(">I", 2) + b"c1" + struct.pack(">Q", 7) + b"message"
    expected = HKDF(algorithm=hashes.SHA256(), length=32, salt=SALT, info=info).derive(SECRET)

    assert derivation_info("c1", 7, Purpose.MESSAGE) == info
    assert derive(SECRET, "c1", 7, Purpose.MESSAGE, salt=SALT) == expected


def test_purposes_are_separated():
    keys = {purpose: derive(SECRET, "c1", 1, purpose, salt=SALT) for purpose in Purpose}

    assert len(set(keys.values())) == len(Purpose)
    assert all(len(k) == 32 for k in keys.values())


def test_conversation_and_epoch_change_the_key():
    base = derive(SECRET, "c1", 1, Purpose.MESSAGE, salt=SALT)

    assert derive(SECRET, "c1", 2, Purpose.MESSAGE, salt=SALT) != base
    assert derive(SECRET, "c2", 1, Purpose.MESSAGE, salt=SALT) != base
    assert derive(SECRET, "c1", 1, Purpose.MESSAGE, salt=b"other") != base


def test_length_prefix_keeps_ids_unambiguous():
    # "ab" + epoch vs "a" + something else must never produce the same info bytes
    assert derivation_info("ab", 1, Purpose.AUTH) != derivation_info("a", 1, Purpose.AUTH)


@pytest.mark.parametrize("secret", [b"", b"\x01" * 31, b"\x01" * 33, bytes(32)])
def test_rejects_bad_shared_secret(secret):
    with pytest.raises(InvalidKeyMaterial):
        derive(secret, "c1", 1, Purpose.MESSAGE)


@pytest.mark.parametrize("epoch", [0, -1, MAX_EPOCH + 1, True, 1.0])
def test_rejects_out_of_range_epoch(epoch):
    with pytest.raises(InvalidKeyMaterial):
        derive(SECRET, "c1", epoch, Purpose.MESSAGE)


def test_accepts_largest_epoch_without_truncation():
    info = derivation_info("c1", MAX_EPOCH, Purpose.MEDIA)
    assert struct.pack(">Q", MAX_EPOCH) in info
    assert derive(SECRET, "c1", MAX_EPOCH, Purpose.MEDIA) != derive(SECRET, "c1", 2**31 - 1, Purpose.MEDIA)


def test_rejects_empty_conversation_id():
    with pytest.raises(InvalidKeyMaterial):
        derive(SECRET, "", 1, Purpose.MESSAGE)


def test_ecdh_rejects_identity_and_low_order_points():
    private_key, _ = x25519_generate()

    with pytest.raises(InvalidKeyMaterial):
        ecdh(private_key, bytes(32))
    with pytest.raises(InvalidKeyMaterial):
        # u = 1 has order 4; the shared secret would be all zeroes
        ecdh(private_key, b"\x01" + bytes(31))
    with pytest.raises(InvalidKeyMaterial):
        ecdh(private_key[:16], x25519_generate()[1])


def test_material_never_renders_key_bytes():
    material = material_from_raw_key(SECRET, "c1", 3)
    text = repr(material)

    assert "c1" in text and "epoch=3" in text
    assert SECRET.hex() not in text
    assert repr(material.raw_key) not in text


def test_bundle_is_three_subkeys():
    material = material_from_raw_key(SECRET, "c1", 1)

    assert material.bundle() == material.message_key + material.media_key + material.auth_key
    assert len(material.bundle()) == 96
    assert material.key_for(Purpose.MEDIA) == material.media_key
    with pytest.raises(ValueError):
        material.key_for(Purpose.KEY_WRAP)
