"""Tests for PLC log key material."""

from plc_log.core.errors import InvalidKeyEncoding, PlcError
from plc_log.core.keys import (
    KeyAlgorithm, KeyPair, KeyRole, SECP256K1_ORDER, decode_did_key,
    generate_key, verify_signature
)


def test_generate_rotation_key():
    """Rotation keys are secp256k1 with compressed public points."""
    key = generate_key(KeyRole.ROTATION)
    assert key.algorithm == KeyAlgorithm.SECP256K1
    assert len(key.public_key) == 33
    assert key.public_key[0] in (2, 3)
    assert len(key.private_key) == 32
    assert key.did_key.startswith("did:key:zQ3s")
    print("  ✓ generate_rotation_key")


def test_generate_verification_key():
    """Verification keys are Ed25519."""
    key = generate_key(KeyRole.VERIFICATION)
    assert key.algorithm == KeyAlgorithm.ED25519
    assert len(key.public_key) == 32
    assert key.did_key.startswith("did:key:z6Mk")
    print("  ✓ generate_verification_key")


def test_private_round_trip():
    """decode(encode_private(k)) == k for both roles."""
    for role in KeyRole:
        key = generate_key(role)
        assert KeyPair.from_private(key.encode_private()) == key
        assert KeyPair.from_private(key.encode_private(), role) == key
    print("  ✓ private_round_trip")


def test_public_round_trip():
    """decode(encode_public(k)) == public half of k."""
    for role in KeyRole:
        key = generate_key(role)
        decoded = KeyPair.from_public(key.encode_public())
        assert decoded == key.public_only()
        assert decoded.private_key is None
        assert decode_did_key(key.did_key) == key.public_only()
    print("  ✓ public_round_trip")


def test_encoding_is_deterministic():
    key = generate_key(KeyRole.ROTATION)
    assert key.encode_private() == key.encode_private()
    assert key.encode_public() == KeyPair.from_private(key.encode_private()).encode_public()
    print("  ✓ encoding_is_deterministic")


def test_role_mismatch_rejected():
    """A verification key cannot be loaded as a rotation key."""
    ed = generate_key(KeyRole.VERIFICATION)
    try:
        KeyPair.from_private(ed.encode_private(), KeyRole.ROTATION)
        assert False, "Should have raised"
    except InvalidKeyEncoding:
        pass
    ec = generate_key(KeyRole.ROTATION)
    try:
        KeyPair.from_public(ec.encode_public(), KeyRole.VERIFICATION)
        assert False, "Should have raised"
    except InvalidKeyEncoding:
        pass
    print("  ✓ role_mismatch_rejected")


def test_malformed_encodings_rejected():
    key = generate_key(KeyRole.ROTATION)
    for bad in ["", "not-a-key", "z", "zzzzzzzz", key.encode_private()[:-4],
                "did:key:" + key.encode_public()]:
        try:
            KeyPair.from_private(bad)
            assert False, f"Should have raised for {bad!r}"
        except InvalidKeyEncoding:
            pass
    # A public encoding is not a private one
    try:
        KeyPair.from_private(key.encode_public())
        assert False, "Should have raised"
    except InvalidKeyEncoding:
        pass
    print("  ✓ malformed_encodings_rejected")


def test_sign_and_verify():
    for role in KeyRole:
        key = generate_key(role)
        msg = b"test operation payload"
        sig = key.sign(msg)
        assert len(sig) == 64
        assert key.verify(msg, sig)
        assert verify_signature(key.did_key, msg, sig)
        assert not verify_signature(key.did_key, b"tampered", sig)
        other = generate_key(role)
        assert not verify_signature(other.did_key, msg, sig)
    print("  ✓ sign_and_verify")


def test_rotation_signatures_are_low_s():
    key = generate_key(KeyRole.ROTATION)
    for i in range(20):
        sig = key.sign(f"msg {i}".encode())
        s = int.from_bytes(sig[32:], "big")
        assert s <= SECP256K1_ORDER // 2
    print("  ✓ rotation_signatures_are_low_s")


def test_high_s_rejected():
    key = generate_key(KeyRole.ROTATION)
    msg = b"malleable"
    sig = key.sign(msg)
    s = int.from_bytes(sig[32:], "big")
    flipped = sig[:32] + (SECP256K1_ORDER - s).to_bytes(32, "big")
    assert not key.verify(msg, flipped)
    print("  ✓ high_s_rejected")


def test_public_only_cannot_sign():
    for role in KeyRole:
        pub = generate_key(role).public_only()
        try:
            pub.sign(b"nope")
            assert False, "Should have raised"
        except InvalidKeyEncoding as e:
            assert isinstance(e, PlcError)
            assert not e.recoverable
    try:
        pub.encode_private()
        assert False, "Should have raised"
    except InvalidKeyEncoding:
        pass
    print("  ✓ public_only_cannot_sign")


def test_private_key_not_in_repr():
    key = generate_key(KeyRole.ROTATION)
    assert key.encode_private() not in repr(key)
    assert repr(key.private_key) not in repr(key)
    print("  ✓ private_key_not_in_repr")


if __name__ == "__main__":
    print("Testing key material...")
    test_generate_rotation_key()
    test_generate_verification_key()
    test_private_round_trip()
    test_public_round_trip()
    test_encoding_is_deterministic()
    test_role_mismatch_rejected()
    test_malformed_encodings_rejected()
    test_sign_and_verify()
    test_rotation_signatures_are_low_s()
    test_high_s_rejected()
    test_public_only_cannot_sign()
    test_private_key_not_in_repr()
    print("\nAll key tests passed ✓")
