"""
PLC Log Key Material

Two kinds of key pair:
  - Rotation keys (secp256k1) authorize the next operation in the chain.
  - Verification keys (Ed25519) are published for others to check claims.

Keys encode to multibase base58btc text over a multicodec prefix, so the
algorithm travels with the key. Public keys also render as did:key.

Nothing here logs or formats private material. Persisting it is the
caller's job.
"""

import hashlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from cryptography import exceptions as crypto_exceptions
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import (
    decode_dss_signature, encode_dss_signature
)
from multiformats import multibase, multicodec
from nacl.exceptions import BadSignatureError, CryptoError
from nacl.signing import SigningKey, VerifyKey

from plc_log.core.errors import InvalidKeyEncoding, KeyGenerationError


DID_KEY_PREFIX = "did:key:"

# Order of the secp256k1 group. Signatures are normalized to s <= n/2.
SECP256K1_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141


class KeyRole(Enum):
    ROTATION = "rotation"
    VERIFICATION = "verification"


class KeyAlgorithm(Enum):
    SECP256K1 = "secp256k1"
    ED25519 = "ed25519"


ROLE_ALGORITHM: dict[KeyRole, KeyAlgorithm] = {
    KeyRole.ROTATION: KeyAlgorithm.SECP256K1,
    KeyRole.VERIFICATION: KeyAlgorithm.ED25519,
}
ALGORITHM_ROLE = {alg: role for role, alg in ROLE_ALGORITHM.items()}

# multicodec names per algorithm: (public, private)
_CODECS: dict[KeyAlgorithm, tuple[str, str]] = {
    KeyAlgorithm.SECP256K1: ("secp256k1-pub", "secp256k1-priv"),
    KeyAlgorithm.ED25519: ("ed25519-pub", "ed25519-priv"),
}
_PUB_CODEC_ALG = {pub: alg for alg, (pub, _) in _CODECS.items()}
_PRIV_CODEC_ALG = {priv: alg for alg, (_, priv) in _CODECS.items()}

_PUB_LENGTH = {KeyAlgorithm.SECP256K1: 33, KeyAlgorithm.ED25519: 32}


@dataclass(frozen=True)
class KeyPair:
    """A typed key pair. Private half is optional (public-only copies)."""
    role: KeyRole
    public_key: bytes          # 33-byte compressed point or 32-byte Ed25519 key
    private_key: Optional[bytes] = field(default=None, repr=False)  # 32 bytes

    @property
    def algorithm(self) -> KeyAlgorithm:
        return ROLE_ALGORITHM[self.role]

    @property
    def has_private(self) -> bool:
        return self.private_key is not None

    @property
    def did_key(self) -> str:
        """did:key form, as carried in operations."""
        return DID_KEY_PREFIX + self.encode_public()

    def encode_public(self) -> str:
        codec = _CODECS[self.algorithm][0]
        return multibase.encode(multicodec.wrap(codec, self.public_key), "base58btc")

    def encode_private(self) -> str:
        if self.private_key is None:
            raise InvalidKeyEncoding("public-only key has no private encoding")
        codec = _CODECS[self.algorithm][1]
        return multibase.encode(multicodec.wrap(codec, self.private_key), "base58btc")

    def public_only(self) -> 'KeyPair':
        """Return a copy without the private key (for sharing)."""
        return KeyPair(role=self.role, public_key=self.public_key)

    def sign(self, message: bytes) -> bytes:
        """Sign a message. Returns a 64-byte signature.

        Rotation keys: ECDSA over SHA-256, compact r||s with low S.
        Verification keys: Ed25519.
        """
        if self.private_key is None:
            raise InvalidKeyEncoding("cannot sign with a public-only key")
        if self.algorithm is KeyAlgorithm.ED25519:
            return SigningKey(self.private_key).sign(message).signature

        sk = ec.derive_private_key(int.from_bytes(self.private_key, "big"), ec.SECP256K1())
        der = sk.sign(message, ec.ECDSA(hashes.SHA256()))
        r, s = decode_dss_signature(der)
        if s > SECP256K1_ORDER // 2:
            s = SECP256K1_ORDER - s
        return r.to_bytes(32, "big") + s.to_bytes(32, "big")

    def verify(self, message: bytes, signature: bytes) -> bool:
        return _verify_raw(self.algorithm, self.public_key, message, signature)

    @staticmethod
    def generate(role: KeyRole) -> 'KeyPair':
        return generate_key(role)

    @staticmethod
    def from_private(encoded: str, role: Optional[KeyRole] = None) -> 'KeyPair':
        return decode_private(encoded, role)

    @staticmethod
    def from_public(encoded: str, role: Optional[KeyRole] = None) -> 'KeyPair':
        return decode_public(encoded, role)


def generate_key(role: KeyRole) -> KeyPair:
    """Generate a new key pair. Algorithm is fixed by role."""
    try:
        if ROLE_ALGORITHM[role] is KeyAlgorithm.ED25519:
            sk = SigningKey.generate()
            return KeyPair(role=role, public_key=bytes(sk.verify_key), private_key=bytes(sk))
        ec_key = ec.generate_private_key(ec.SECP256K1())
    except (OSError, CryptoError) as e:
        raise KeyGenerationError(f"entropy source failed: {e}") from e
    scalar = ec_key.private_numbers().private_value.to_bytes(32, "big")
    return KeyPair(role=role, public_key=_compress(ec_key.public_key()), private_key=scalar)


def _compress(public_key: ec.EllipticCurvePublicKey) -> bytes:
    return public_key.public_bytes(
        serialization.Encoding.X962, serialization.PublicFormat.CompressedPoint
    )


def _unwrap(encoded: str) -> tuple[str, bytes]:
    if not isinstance(encoded, str) or not encoded.startswith("z"):
        raise InvalidKeyEncoding("key must be base58btc multibase text")
    try:
        codec, raw = multicodec.unwrap(multibase.decode(encoded.strip()))
    except (KeyError, ValueError, TypeError, IndexError) as e:
        raise InvalidKeyEncoding(f"undecodable key: {e}") from e
    return codec.name, bytes(raw)


def _check_role(algorithm: KeyAlgorithm, role: Optional[KeyRole]) -> KeyRole:
    expected = ALGORITHM_ROLE[algorithm]
    if role is not None and role is not expected:
        raise InvalidKeyEncoding(
            f"{algorithm.value} key cannot be used as a {role.value} key"
        )
    return expected


def decode_private(encoded: str, role: Optional[KeyRole] = None) -> KeyPair:
    """Rebuild a full key pair from its private encoding."""
    codec, raw = _unwrap(encoded)
    algorithm = _PRIV_CODEC_ALG.get(codec)
    if algorithm is None:
        raise InvalidKeyEncoding(f"not a private key codec: {codec}")
    role = _check_role(algorithm, role)
    if len(raw) != 32:
        raise InvalidKeyEncoding(f"private key must be 32 bytes, got {len(raw)}")

    if algorithm is KeyAlgorithm.ED25519:
        return KeyPair(role=role, public_key=bytes(SigningKey(raw).verify_key), private_key=raw)
    try:
        sk = ec.derive_private_key(int.from_bytes(raw, "big"), ec.SECP256K1())
    except ValueError as e:
        raise InvalidKeyEncoding(f"invalid secp256k1 scalar: {e}") from e
    return KeyPair(role=role, public_key=_compress(sk.public_key()), private_key=raw)


def decode_public(encoded: str, role: Optional[KeyRole] = None) -> KeyPair:
    """Rebuild a public-only key pair. Accepts bare multibase or did:key."""
    if isinstance(encoded, str) and encoded.startswith(DID_KEY_PREFIX):
        encoded = encoded[len(DID_KEY_PREFIX):]
    codec, raw = _unwrap(encoded)
    algorithm = _PUB_CODEC_ALG.get(codec)
    if algorithm is None:
        raise InvalidKeyEncoding(f"not a public key codec: {codec}")
    role = _check_role(algorithm, role)
    if len(raw) != _PUB_LENGTH[algorithm]:
        raise InvalidKeyEncoding(f"{algorithm.value} public key has wrong length {len(raw)}")
    if algorithm is KeyAlgorithm.SECP256K1:
        try:
            ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), raw)
        except ValueError as e:
            raise InvalidKeyEncoding(f"invalid secp256k1 point: {e}") from e
    return KeyPair(role=role, public_key=raw)


def decode_did_key(did_key: str) -> KeyPair:
    """Parse a did:key string into a public-only key pair."""
    if not isinstance(did_key, str) or not did_key.startswith(DID_KEY_PREFIX):
        raise InvalidKeyEncoding(f"not a did:key: {did_key!r}")
    return decode_public(did_key)


def _verify_raw(algorithm: KeyAlgorithm, public_key: bytes,
                message: bytes, signature: bytes) -> bool:
    if len(signature) != 64:
        return False
    if algorithm is KeyAlgorithm.ED25519:
        try:
            VerifyKey(public_key).verify(message, signature)
            return True
        except BadSignatureError:
            return False

    r = int.from_bytes(signature[:32], "big")
    s = int.from_bytes(signature[32:], "big")
    if s > SECP256K1_ORDER // 2:
        return False  # high-S signatures are malleable; reject
    pub = ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), public_key)
    try:
        pub.verify(encode_dss_signature(r, s), message, ec.ECDSA(hashes.SHA256()))
        return True
    except crypto_exceptions.InvalidSignature:
        return False


def verify_signature(did_key: str, message: bytes, signature: bytes) -> bool:
    """Verify a signature against a did:key (or bare multibase) public key."""
    try:
        key = decode_public(did_key)
    except InvalidKeyEncoding:
        return False
    return key.verify(message, signature)


def key_fingerprint(key: KeyPair) -> str:
    """Short hex fingerprint of the public key. Safe to log."""
    return hashlib.sha256(key.public_key).hexdigest()[:16]
