"""Tests for PLC operations: building, canonical form, signing, CIDs, identifiers."""

from multiformats import CID

from plc_log.core.errors import EncodingError
from plc_log.core.keys import KeyRole, generate_key, verify_signature
from plc_log.core.operation import (
    Operation, Service, b64url_decode, build_genesis, canonical_bytes,
    content_identifier, derive_identifier, is_identifier, sign_operation,
    upsert_service, verify_operation
)


# ============================================================
# Helpers
# ============================================================

def make_keys():
    return generate_key(KeyRole.ROTATION), generate_key(KeyRole.VERIFICATION)


def make_signed_genesis(handle="my-plugin"):
    rotation, verification = make_keys()
    genesis = build_genesis(rotation.did_key, verification.did_key, handle)
    return sign_operation(genesis, rotation), rotation, verification


def expect_encoding_error(fn, *args, **kwargs):
    try:
        fn(*args, **kwargs)
        assert False, "Should have raised EncodingError"
    except EncodingError:
        pass


# ============================================================
# Genesis
# ============================================================

def test_build_genesis():
    rotation, verification = make_keys()
    op = build_genesis(rotation.did_key, verification.did_key, "my-plugin")
    assert op.type == "plc_operation"
    assert op.prev is None
    assert op.is_genesis
    assert op.rotation_keys == (rotation.did_key,)
    assert op.verification_methods == {"primary": verification.did_key}
    assert op.also_known_as == ("my-plugin",)
    assert op.services == {}
    assert op.sig is None
    print("  ✓ build_genesis")


def test_genesis_validation():
    rotation, verification = make_keys()
    expect_encoding_error(build_genesis, rotation.did_key, verification.did_key, "")
    expect_encoding_error(build_genesis, rotation.did_key, verification.did_key, "has space")
    expect_encoding_error(build_genesis, "not-a-key", verification.did_key, "ok")
    expect_encoding_error(build_genesis, rotation.did_key, "did:key:zBogus", "ok")
    print("  ✓ genesis_validation")


def test_empty_rotation_keys_rejected():
    _, verification = make_keys()
    op = Operation(rotation_keys=(), verification_methods={"primary": verification.did_key},
                   also_known_as=("x",))
    expect_encoding_error(canonical_bytes, op)
    print("  ✓ empty_rotation_keys_rejected")


# ============================================================
# Canonical bytes
# ============================================================

def test_canonical_bytes_pure():
    """Independently built operations with equal fields encode identically."""
    rotation, verification = make_keys()
    a = Operation(
        rotation_keys=(rotation.did_key,),
        verification_methods={"primary": verification.did_key, "alt": rotation.did_key},
        also_known_as=("my-plugin",),
        services={"a": Service("T1", "https://a.test"), "b": Service("T2", "https://b.test")},
    )
    b = Operation(
        rotation_keys=[rotation.did_key],
        verification_methods={"alt": rotation.did_key, "primary": verification.did_key},
        also_known_as=["my-plugin"],
        services={"b": Service("T2", "https://b.test"), "a": Service("T1", "https://a.test")},
    )
    assert canonical_bytes(a) == canonical_bytes(b)
    print("  ✓ canonical_bytes_pure")


def test_canonical_bytes_exclude_sig():
    signed, _, _ = make_signed_genesis()
    assert canonical_bytes(signed.unsigned()) == canonical_bytes(
        build_genesis(signed.rotation_keys[0], signed.verification_methods["primary"], "my-plugin"))
    assert "sig" not in signed.unsigned_dict()
    assert "sig" in signed.to_dict()
    print("  ✓ canonical_bytes_exclude_sig")


def test_canonical_bytes_sensitive_to_fields():
    rotation, verification = make_keys()
    a = build_genesis(rotation.did_key, verification.did_key, "one")
    b = build_genesis(rotation.did_key, verification.did_key, "two")
    assert canonical_bytes(a) != canonical_bytes(b)
    print("  ✓ canonical_bytes_sensitive_to_fields")


# ============================================================
# Signing
# ============================================================

def test_sign_does_not_mutate():
    rotation, verification = make_keys()
    genesis = build_genesis(rotation.did_key, verification.did_key, "my-plugin")
    signed = sign_operation(genesis, rotation)
    assert genesis.sig is None
    assert signed.sig is not None
    assert signed.unsigned() == genesis
    assert len(b64url_decode(signed.sig)) == 64
    assert "=" not in signed.sig
    print("  ✓ sign_does_not_mutate")


def test_signed_operation_is_read_only():
    """Mappings inside a signed operation cannot change under its CID."""
    signed, _, _ = make_signed_genesis()
    cid = content_identifier(signed)
    for mapping, key, value in (
        (signed.services, "x", Service("T", "https://evil.test")),
        (signed.verification_methods, "alt", signed.rotation_keys[0]),
    ):
        try:
            mapping[key] = value
            assert False, "Should have raised"
        except TypeError:
            pass
    assert content_identifier(signed) == cid

    # Caller's containers are copied, not aliased
    services = {"a": Service("T1", "https://a.test")}
    op = signed.with_service("b", "T2", "https://b.test")
    op = Operation(**{**op.__dict__, "services": services})
    services["c"] = Service("T3", "https://c.test")
    assert set(op.services) == {"a"}
    print("  ✓ signed_operation_is_read_only")


def test_signature_verifies():
    signed, rotation, _ = make_signed_genesis()
    assert verify_operation(signed, [rotation.did_key])
    assert verify_signature(rotation.did_key, canonical_bytes(signed.unsigned()),
                            b64url_decode(signed.sig))
    other = generate_key(KeyRole.ROTATION)
    assert not verify_operation(signed, [other.did_key])
    print("  ✓ signature_verifies")


def test_tampered_operation_fails_verification():
    signed, rotation, _ = make_signed_genesis()
    tampered = signed.with_service("x", "T", "https://evil.test")
    tampered = Operation(**{**tampered.__dict__, "sig": signed.sig})
    assert not verify_operation(tampered, [rotation.did_key])
    print("  ✓ tampered_operation_fails_verification")


def test_genesis_must_be_signed_by_own_rotation_key():
    rotation, verification = make_keys()
    genesis = build_genesis(rotation.did_key, verification.did_key, "my-plugin")
    stranger = generate_key(KeyRole.ROTATION)
    expect_encoding_error(sign_operation, genesis, stranger)
    expect_encoding_error(sign_operation, genesis, verification)
    print("  ✓ genesis_must_be_signed_by_own_rotation_key")


# ============================================================
# CIDs and identifiers
# ============================================================

def test_content_identifier_format():
    signed, _, _ = make_signed_genesis()
    cid = content_identifier(signed)
    assert cid.startswith("bafyrei")
    parsed = CID.decode(cid)
    assert parsed.version == 1
    assert parsed.codec.name == "dag-cbor"
    assert content_identifier(signed) == cid
    print("  ✓ content_identifier_format")


def test_content_identifier_requires_signature():
    rotation, verification = make_keys()
    genesis = build_genesis(rotation.did_key, verification.did_key, "my-plugin")
    expect_encoding_error(content_identifier, genesis)
    print("  ✓ content_identifier_requires_signature")


def test_identifier_deterministic():
    signed, _, _ = make_signed_genesis()
    did = derive_identifier(signed)
    assert did == derive_identifier(signed)
    assert did.startswith("did:plc:")
    assert is_identifier(did)
    # Same field values, parsed back from the wire, derive the same identifier
    assert derive_identifier(Operation.from_dict(signed.to_dict())) == did
    print("  ✓ identifier_deterministic")


def test_identifier_only_from_genesis():
    signed, rotation, _ = make_signed_genesis()
    update = Operation(
        rotation_keys=signed.rotation_keys,
        verification_methods=signed.verification_methods,
        also_known_as=signed.also_known_as,
        prev=content_identifier(signed),
    )
    expect_encoding_error(derive_identifier, sign_operation(update, rotation))
    print("  ✓ identifier_only_from_genesis")


# ============================================================
# Wire form
# ============================================================

def test_wire_field_names():
    signed, _, _ = make_signed_genesis()
    d = signed.to_dict()
    assert set(d) == {"type", "rotationKeys", "verificationMethods", "alsoKnownAs",
                      "services", "prev", "sig"}
    assert d["prev"] is None
    assert Operation.from_dict(d) == signed
    print("  ✓ wire_field_names")


def test_from_dict_rejects_unknown_and_missing_fields():
    signed, _, _ = make_signed_genesis()
    extra = {**signed.to_dict(), "surprise": 1}
    expect_encoding_error(Operation.from_dict, extra)
    missing = signed.to_dict()
    del missing["prev"]
    expect_encoding_error(Operation.from_dict, missing)
    wrong_type = {**signed.to_dict(), "type": "create"}
    expect_encoding_error(Operation.from_dict, wrong_type)
    print("  ✓ from_dict_rejects_unknown_and_missing_fields")


def test_service_validation():
    signed, _, _ = make_signed_genesis()
    expect_encoding_error(canonical_bytes, signed.with_service("x", "", "https://a.test"))
    expect_encoding_error(canonical_bytes, signed.with_service("x", "T", "ftp://a.test"))
    print("  ✓ service_validation")


# ============================================================
# Service upsert
# ============================================================

def test_upsert_appends_and_replaces():
    services = {"atproto_pds": Service("AtprotoPersonalDataServer", "https://pds.test")}
    added = upsert_service(services, "fairpm_repo", "FairPackageManagementRepo",
                           "https://example.test/metadata.json")
    assert set(added) == {"atproto_pds", "fairpm_repo"}
    assert added["atproto_pds"] == services["atproto_pds"]
    replaced = upsert_service(added, "#fairpm_repo", "FairPackageManagementRepo",
                              "https://example.test/v2.json")
    assert len(replaced) == 2
    assert replaced["fairpm_repo"].endpoint == "https://example.test/v2.json"
    assert len(services) == 1  # input untouched
    print("  ✓ upsert_appends_and_replaces")


def test_upsert_idempotent():
    once = upsert_service({}, "fairpm_repo", "FairPackageManagementRepo", "https://e.test/m.json")
    twice = upsert_service(once, "fairpm_repo", "FairPackageManagementRepo", "https://e.test/m.json")
    assert once == twice
    print("  ✓ upsert_idempotent")


if __name__ == "__main__":
    print("Testing operations...")
    test_build_genesis()
    test_genesis_validation()
    test_empty_rotation_keys_rejected()
    test_canonical_bytes_pure()
    test_canonical_bytes_exclude_sig()
    test_canonical_bytes_sensitive_to_fields()
    test_sign_does_not_mutate()
    test_signed_operation_is_read_only()
    test_signature_verifies()
    test_tampered_operation_fails_verification()
    test_genesis_must_be_signed_by_own_rotation_key()
    test_content_identifier_format()
    test_content_identifier_requires_signature()
    test_identifier_deterministic()
    test_identifier_only_from_genesis()
    test_wire_field_names()
    test_from_dict_rejects_unknown_and_missing_fields()
    test_service_validation()
    test_upsert_appends_and_replaces()
    test_upsert_idempotent()
    print("\nAll operation tests passed ✓")
