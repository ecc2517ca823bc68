"""
Artifact signatures.

A release artifact is signed by the identity's verification key: the key
signs the lowercase hex SHA-384 digest of the file, and the signature is
published base64url-encoded next to a sha256 checksum.
"""

import binascii
import hashlib
from dataclasses import dataclass
from pathlib import Path
from typing import Union

from plc_log.core.keys import KeyPair, KeyRole, verify_signature
from plc_log.core.operation import b64url_decode, b64url_encode


@dataclass(frozen=True)
class ArtifactSignature:
    signature: str     # base64url, no padding
    checksum: str      # "sha256:<hex>"


def artifact_digest(data: bytes) -> bytes:
    """The message that gets signed: hex SHA-384, as ASCII bytes."""
    return hashlib.sha384(data).hexdigest().encode("ascii")


def sign_artifact(key: KeyPair, data: bytes) -> ArtifactSignature:
    if key.role is not KeyRole.VERIFICATION:
        raise ValueError("artifacts are signed with the verification key")
    return ArtifactSignature(
        signature=b64url_encode(key.sign(artifact_digest(data))),
        checksum="sha256:" + hashlib.sha256(data).hexdigest(),
    )


def sign_artifact_file(key: KeyPair, path: Union[str, Path]) -> ArtifactSignature:
    return sign_artifact(key, Path(path).read_bytes())


def verify_artifact(did_key: str, data: bytes, signature: ArtifactSignature) -> bool:
    if signature.checksum != "sha256:" + hashlib.sha256(data).hexdigest():
        return False
    try:
        raw = b64url_decode(signature.signature)
    except (binascii.Error, ValueError):
        return False
    return verify_signature(did_key, artifact_digest(data), raw)
