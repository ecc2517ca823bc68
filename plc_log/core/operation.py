"""
PLC Log Operations

Every change to an identity is an operation. Every operation is signed
by a rotation key and names its predecessor by content identifier.

Operation: one entry of the identity log (immutable)
canonical_bytes: DAG-CBOR of the operation without its signature
content_identifier: CIDv1 of the signed bytes, placed in the next prev
derive_identifier: the permanent did:plc, derived once from the genesis
"""

import base64
import binascii
import dataclasses
import hashlib
import re
import types
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional

import dag_cbor
from multiformats import CID, multihash
from pydantic import ValidationError

from plc_log.core.errors import EncodingError, InvalidKeyEncoding
from plc_log.core.keys import (
    DID_KEY_PREFIX, KeyPair, KeyRole, decode_did_key, verify_signature
)
from plc_log.core.records import OperationRecord


OPERATION_TYPE = "plc_operation"
IDENTIFIER_METHOD = "did:plc"
IDENTIFIER_LENGTH = 24              # base32 chars kept from the genesis hash
MAX_ROTATION_KEYS = 5
DEFAULT_METHOD_NAME = "primary"

HANDLE_RE = re.compile(r"^(at://)?[A-Za-z0-9](?:[A-Za-z0-9._-]{0,251}[A-Za-z0-9])?$")
IDENTIFIER_RE = re.compile(r"^did:plc:[a-z2-7]{24}$")


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(text: str) -> bytes:
    padded = text + "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def normalize_service_id(service_id: str) -> str:
    """Service ids are keyed without the '#' fragment marker."""
    return service_id[1:] if service_id.startswith("#") else service_id


# ============================================================
# Operation
# ============================================================

@dataclass(frozen=True)
class Service:
    type: str
    endpoint: str

    def to_dict(self) -> dict[str, str]:
        return {"type": self.type, "endpoint": self.endpoint}


@dataclass(frozen=True)
class Operation:
    """One entry in the identity log. Superseded, never mutated."""
    rotation_keys: tuple[str, ...]
    verification_methods: Mapping[str, str]
    also_known_as: tuple[str, ...]
    services: Mapping[str, Service] = field(default_factory=dict)
    prev: Optional[str] = None          # CID of predecessor, None only for genesis
    sig: Optional[str] = None           # base64url compact signature
    type: str = OPERATION_TYPE

    def __post_init__(self):
        # Copy containers and expose them read-only: a signed operation cannot
        # change under its signature or CID
        object.__setattr__(self, "rotation_keys", tuple(self.rotation_keys))
        object.__setattr__(self, "also_known_as", tuple(self.also_known_as))
        object.__setattr__(self, "verification_methods",
                           types.MappingProxyType(dict(self.verification_methods)))
        object.__setattr__(self, "services", types.MappingProxyType(dict(self.services)))

    @property
    def is_genesis(self) -> bool:
        return self.prev is None

    @property
    def is_signed(self) -> bool:
        return self.sig is not None

    def unsigned(self) -> 'Operation':
        return dataclasses.replace(self, sig=None)

    def unsigned_dict(self) -> dict[str, Any]:
        """Wire form without the sig field."""
        return {
            "type": self.type,
            "rotationKeys": list(self.rotation_keys),
            "verificationMethods": dict(self.verification_methods),
            "alsoKnownAs": list(self.also_known_as),
            "services": {sid: svc.to_dict() for sid, svc in self.services.items()},
            "prev": self.prev,
        }

    def to_dict(self) -> dict[str, Any]:
        """Wire form. Includes sig when signed."""
        d = self.unsigned_dict()
        if self.sig is not None:
            d["sig"] = self.sig
        return d

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> 'Operation':
        """Parse and validate the wire form."""
        try:
            record = OperationRecord.model_validate(dict(data))
        except ValidationError as e:
            raise EncodingError(f"malformed operation: {e.error_count()} field error(s): "
                                f"{'; '.join(err['msg'] for err in e.errors())}") from e
        op = Operation(
            rotation_keys=tuple(record.rotation_keys),
            verification_methods=dict(record.verification_methods),
            also_known_as=tuple(record.also_known_as),
            services={sid: Service(type=s.type, endpoint=s.endpoint)
                      for sid, s in record.services.items()},
            prev=record.prev,
            sig=record.sig,
        )
        validate_operation(op)
        return op

    def with_service(self, service_id: str, service_type: str, endpoint: str) -> 'Operation':
        """Return an unsigned copy with one service upserted by id."""
        return dataclasses.replace(
            self,
            services=upsert_service(self.services, service_id, service_type, endpoint),
            sig=None,
        )


def upsert_service(services: Mapping[str, Service], service_id: str,
                   service_type: str, endpoint: str) -> dict[str, Service]:
    """Merge one service into a services map.

    Replaces the entry with the same id, appends otherwise. Every other
    entry is kept as-is.
    """
    merged = dict(services)
    merged[normalize_service_id(service_id)] = Service(type=service_type, endpoint=endpoint)
    return merged


# ============================================================
# Validation
# ============================================================

def _unique(values: Iterable[str]) -> bool:
    values = list(values)
    return len(values) == len(set(values))


def validate_operation(op: Operation) -> None:
    """Raise EncodingError if any field is not in canonical form."""
    if op.type != OPERATION_TYPE:
        raise EncodingError(f"unsupported operation type: {op.type!r}")

    if not op.rotation_keys:
        raise EncodingError("rotation_keys must contain at least one key")
    if len(op.rotation_keys) > MAX_ROTATION_KEYS:
        raise EncodingError(f"at most {MAX_ROTATION_KEYS} rotation keys allowed")
    if not _unique(op.rotation_keys):
        raise EncodingError("rotation_keys contains duplicates")
    for key in op.rotation_keys:
        if not isinstance(key, str) or not key.startswith(DID_KEY_PREFIX):
            raise EncodingError(f"rotation key is not a did:key: {key!r}")
        try:
            decode_did_key(key)
        except InvalidKeyEncoding as e:
            raise EncodingError(f"rotation key does not decode: {e}") from e

    for name, key in op.verification_methods.items():
        if not name or not isinstance(name, str):
            raise EncodingError("verification method names must be non-empty")
        try:
            decode_did_key(key)
        except InvalidKeyEncoding as e:
            raise EncodingError(f"verification method {name!r} does not decode: {e}") from e

    if not _unique(op.also_known_as):
        raise EncodingError("also_known_as contains duplicates")
    for alias in op.also_known_as:
        if not isinstance(alias, str) or not HANDLE_RE.match(alias):
            raise EncodingError(f"malformed handle: {alias!r}")

    for sid, svc in op.services.items():
        if not sid or sid.startswith("#"):
            raise EncodingError(f"malformed service id: {sid!r}")
        if not svc.type:
            raise EncodingError(f"service {sid!r} has no type")
        if not svc.endpoint.startswith(("https://", "http://")):
            raise EncodingError(f"service {sid!r} endpoint is not an http(s) URL")

    if op.prev is not None:
        try:
            CID.decode(op.prev)
        except (KeyError, ValueError) as e:
            raise EncodingError(f"prev is not a valid CID: {op.prev!r}") from e

    if op.sig is not None:
        try:
            raw = b64url_decode(op.sig)
        except (binascii.Error, ValueError) as e:
            raise EncodingError("sig is not base64url") from e
        if len(raw) != 64:
            raise EncodingError(f"sig must decode to 64 bytes, got {len(raw)}")


# ============================================================
# Codec
# ============================================================

def build_genesis(rotation_key: str, verification_key: str, handle: str,
                  method_name: str = DEFAULT_METHOD_NAME) -> Operation:
    """Build the first (unsigned) operation of a new identity.

    Keys are did:key strings (see KeyPair.did_key).
    """
    op = Operation(
        rotation_keys=(rotation_key,),
        verification_methods={method_name: verification_key},
        also_known_as=(handle,),
        services={},
        prev=None,
    )
    validate_operation(op)
    return op


def canonical_bytes(op: Operation) -> bytes:
    """DAG-CBOR of the operation with sig elided. Signed over, never stored."""
    validate_operation(op)
    return dag_cbor.encode(op.unsigned_dict())


def signed_bytes(op: Operation) -> bytes:
    """DAG-CBOR of the full signed operation."""
    if op.sig is None:
        raise EncodingError("operation is not signed")
    validate_operation(op)
    return dag_cbor.encode(op.to_dict())


def sign_operation(op: Operation, signing_key: KeyPair) -> Operation:
    """Return a signed copy. The input is left untouched."""
    if signing_key.role is not KeyRole.ROTATION:
        raise EncodingError("operations are signed with a rotation key")
    if op.is_genesis and signing_key.did_key not in op.rotation_keys:
        raise EncodingError("genesis must be signed by one of its own rotation keys")
    payload = canonical_bytes(op.unsigned())
    return dataclasses.replace(op, sig=b64url_encode(signing_key.sign(payload)))


def verify_operation(op: Operation, authorized_keys: Iterable[str]) -> bool:
    """True if op.sig verifies against any of the authorized did:keys."""
    if op.sig is None:
        return False
    try:
        sig = b64url_decode(op.sig)
        payload = canonical_bytes(op.unsigned())
    except (binascii.Error, ValueError, EncodingError):
        return False
    return any(verify_signature(key, payload, sig) for key in authorized_keys)


def content_identifier(op: Operation) -> str:
    """CIDv1 (dag-cbor, sha2-256, base32) of the signed operation."""
    mh = multihash.digest(signed_bytes(op), "sha2-256")
    return str(CID("base32", 1, "dag-cbor", mh))


def derive_identifier(genesis: Operation) -> str:
    """Permanent identifier: did:plc + truncated base32 SHA-256 of the
    signed genesis bytes."""
    if not genesis.is_genesis:
        raise EncodingError("identifiers are derived from the genesis operation only")
    digest = hashlib.sha256(signed_bytes(genesis)).digest()
    suffix = base64.b32encode(digest).decode("ascii").lower().rstrip("=")
    return f"{IDENTIFIER_METHOD}:{suffix[:IDENTIFIER_LENGTH]}"


def is_identifier(value: str) -> bool:
    return isinstance(value, str) and bool(IDENTIFIER_RE.match(value))
