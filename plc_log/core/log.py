"""
PLC Log Operation Chain

Append-only, CID-chained. One log per identifier.

Exactly one entry has prev = None (the genesis). Every later entry names
the CID of the entry before it and is signed by one of that entry's
rotation keys. Anything else is a fork or a forgery and is refused.

Nothing is deleted. Nothing is modified. Entries only append.
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from plc_log.core.errors import EncodingError, ErrorKind, SubmitResult
from plc_log.core.operation import (
    Operation, content_identifier, derive_identifier, validate_operation,
    verify_operation
)


DID_CONTEXT = [
    "https://www.w3.org/ns/did/v1",
    "https://w3id.org/security/multikey/v1",
]
FORK_DETAIL = "Proposed prev does not match the most recent operation"


class OperationState(Enum):
    """Where an operation stands from the caller's point of view."""
    UNPUBLISHED = "unpublished"    # built and signed, not accepted
    PUBLISHED = "published"        # the accepted head
    SUPERSEDED = "superseded"      # accepted, later replaced by a newer head


@dataclass
class LogEntry:
    """An accepted operation in the chain."""
    index: int
    cid: str
    operation: Operation
    created_at: int            # ms since epoch

    def to_audit(self, identifier: str) -> dict[str, Any]:
        return {
            "did": identifier,
            "operation": self.operation.to_dict(),
            "cid": self.cid,
            "nullified": False,
            "createdAt": time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(self.created_at / 1000))
                         + f".{self.created_at % 1000:03d}Z",
        }


class OperationLog:
    """The accepted operation history of one identifier."""

    def __init__(self, identifier: str):
        self.identifier = identifier
        self.entries: list[LogEntry] = []
        self._by_cid: dict[str, LogEntry] = {}

    @property
    def length(self) -> int:
        return len(self.entries)

    @property
    def head(self) -> Optional[LogEntry]:
        return self.entries[-1] if self.entries else None

    @property
    def head_cid(self) -> Optional[str]:
        """CID of the most recent entry, None for an empty log."""
        return self.entries[-1].cid if self.entries else None

    def check_append(self, op: Operation) -> SubmitResult:
        """Decide whether op may extend this log. Never mutates."""
        try:
            validate_operation(op)
            if op.sig is None:
                return SubmitResult.reject(ErrorKind.INVALID_SIGNATURE, "operation is not signed")
            cid = content_identifier(op)
        except EncodingError as e:
            return SubmitResult.reject(ErrorKind.ENCODING, f"Invalid operation: {e.detail}")

        if cid in self._by_cid:
            return SubmitResult(accepted=True, cid=cid, duplicate=True)

        if not self.entries:
            if op.prev is not None:
                return SubmitResult.reject(ErrorKind.FORK_CONFLICT, FORK_DETAIL, cid)
            if derive_identifier(op) != self.identifier:
                return SubmitResult.reject(
                    ErrorKind.ENCODING,
                    f"Invalid operation: genesis derives a different identifier than {self.identifier}",
                    cid)
            authorized = op.rotation_keys
        else:
            if op.prev != self.head_cid:
                return SubmitResult.reject(ErrorKind.FORK_CONFLICT, FORK_DETAIL, cid)
            authorized = self.head.operation.rotation_keys

        if not verify_operation(op, authorized):
            return SubmitResult.reject(ErrorKind.INVALID_SIGNATURE, "Invalid signature on op", cid)
        return SubmitResult(accepted=True, cid=cid)

    def append(self, op: Operation, created_at: Optional[int] = None) -> SubmitResult:
        """Append op if check_append accepts it. All-or-nothing."""
        result = self.check_append(op)
        if not result.accepted or result.duplicate:
            return result
        entry = LogEntry(
            index=len(self.entries),
            cid=result.cid,
            operation=op,
            created_at=created_at if created_at is not None else int(time.time() * 1000),
        )
        self.entries.append(entry)
        self._by_cid[entry.cid] = entry
        return result

    def state_of(self, cid: str) -> OperationState:
        entry = self._by_cid.get(cid)
        if entry is None:
            return OperationState.UNPUBLISHED
        if entry is self.entries[-1]:
            return OperationState.PUBLISHED
        return OperationState.SUPERSEDED

    def get_entry(self, cid: str) -> Optional[LogEntry]:
        return self._by_cid.get(cid)

    def entries_since(self, after_cid: Optional[str]) -> list[LogEntry]:
        """Entries after a given CID. None means the whole log."""
        if after_cid is None:
            return list(self.entries)
        entry = self._by_cid.get(after_cid)
        if entry is None:
            return []  # unknown cid, diverged
        return list(self.entries[entry.index + 1:])

    def verify_chain(self) -> bool:
        """Re-check every link, signature and the genesis derivation."""
        for i, entry in enumerate(self.entries):
            op = entry.operation
            if content_identifier(op) != entry.cid:
                return False
            if i == 0:
                if op.prev is not None or derive_identifier(op) != self.identifier:
                    return False
                authorized = op.rotation_keys
            else:
                previous = self.entries[i - 1]
                if op.prev != previous.cid:
                    return False
                authorized = previous.operation.rotation_keys
            if not verify_operation(op, authorized):
                return False
        return True

    def data(self) -> dict[str, Any]:
        """Current state as served by GET /{did}/data."""
        if not self.entries:
            raise LookupError(f"{self.identifier} has no operations")
        op = self.head.operation
        return {
            "did": self.identifier,
            "rotationKeys": list(op.rotation_keys),
            "verificationMethods": dict(op.verification_methods),
            "alsoKnownAs": list(op.also_known_as),
            "services": {sid: svc.to_dict() for sid, svc in op.services.items()},
        }

    def did_document(self) -> dict[str, Any]:
        """Current state rendered as a W3C DID document."""
        state = self.data()
        did = self.identifier
        return {
            "@context": list(DID_CONTEXT),
            "id": did,
            "alsoKnownAs": state["alsoKnownAs"],
            "verificationMethod": [
                {
                    "id": f"{did}#{name}",
                    "type": "Multikey",
                    "controller": did,
                    "publicKeyMultibase": key.split(":", 2)[2],
                }
                for name, key in state["verificationMethods"].items()
            ],
            "service": [
                {"id": f"#{sid}", "type": svc["type"], "serviceEndpoint": svc["endpoint"]}
                for sid, svc in state["services"].items()
            ],
        }

    def audit(self) -> list[dict[str, Any]]:
        return [entry.to_audit(self.identifier) for entry in self.entries]

    @staticmethod
    def from_genesis(genesis: Operation) -> 'OperationLog':
        """Start a log for the identifier a signed genesis derives."""
        log = OperationLog(derive_identifier(genesis))
        result = log.append(genesis)
        result.raise_for_error()
        return log
