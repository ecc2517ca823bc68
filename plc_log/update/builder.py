"""
PLC Log Update Builder

Creates identities and chains updates onto them without forking.

Update flow (sequential, single writer):
  1. resolve current state and fetch the latest operation with its CID
  2. rebuild keys, methods and aliases from that operation
  3. merge the change set (service upsert by id)
  4. build with prev = latest CID, sign, submit
  5. re-resolve and check the change is visible

A fork conflict is surfaced, never retried: the caller rebuilds from a
freshly resolved prev. A missing change after an accepted submit is a
warning, since directory reads may lag writes.
"""

import dataclasses
import logging
from dataclasses import dataclass
from typing import Optional

from plc_log.core.errors import (
    ErrorKind, InvalidSignature, PlcError, SubmitResult
)
from plc_log.core.keys import KeyPair, KeyRole, key_fingerprint
from plc_log.core.operation import (
    DEFAULT_METHOD_NAME, Operation, Service, build_genesis, content_identifier,
    derive_identifier, normalize_service_id, sign_operation
)
from plc_log.core.records import DocumentRecord
from plc_log.directory.client import DirectoryClient

logger = logging.getLogger("plc_log.update")


@dataclass
class GenesisResult:
    identifier: str
    operation: Operation
    cid: str
    submission: Optional[SubmitResult] = None   # None when not submitted

    @property
    def published(self) -> bool:
        return self.submission is not None and self.submission.accepted


@dataclass
class VerificationResult:
    verified: bool
    error: Optional[ErrorKind] = None
    detail: str = ""


@dataclass
class UpdateResult:
    operation: Operation
    cid: str
    prev: str
    submission: SubmitResult
    verification: VerificationResult


def operation_from_document(doc: DocumentRecord, prev: str) -> Operation:
    """Unsigned operation carrying the resolved state forward unchanged."""
    return Operation(
        rotation_keys=tuple(doc.rotation_keys),
        verification_methods=dict(doc.verification_methods),
        also_known_as=tuple(doc.also_known_as),
        services={sid: Service(type=s.type, endpoint=s.endpoint)
                  for sid, s in doc.services.items()},
        prev=prev,
    )


def operation_after(head: Operation, prev: str) -> Operation:
    """Unsigned operation carrying the head operation's state forward unchanged."""
    return dataclasses.replace(head, prev=prev, sig=None)


class UpdateBuilder:
    """Builds, signs and submits operations against one directory."""

    def __init__(self, client: DirectoryClient):
        self.client = client

    # ------------------------------------------------------------
    # Genesis
    # ------------------------------------------------------------

    def build_identity(self, rotation_key: KeyPair, verification_key: KeyPair,
                       handle: str, method_name: str = DEFAULT_METHOD_NAME) -> GenesisResult:
        """Build and sign a genesis operation. No network."""
        genesis = build_genesis(rotation_key.did_key, verification_key.did_key,
                                handle, method_name)
        signed = sign_operation(genesis, rotation_key)
        return GenesisResult(
            identifier=derive_identifier(signed),
            operation=signed,
            cid=content_identifier(signed),
        )

    def create_identity(self, rotation_key: KeyPair, verification_key: KeyPair,
                        handle: str, method_name: str = DEFAULT_METHOD_NAME) -> GenesisResult:
        """Build, sign and submit a genesis operation.

        An unreachable directory is not fatal: the identifier is valid
        without directory acceptance, and the same signed operation can be
        resubmitted later.
        """
        result = self.build_identity(rotation_key, verification_key, handle, method_name)
        logger.info(f"Generated identifier {result.identifier} (genesis {result.cid})")

        result.submission = self.client.submit(result.identifier, result.operation)
        if result.submission.accepted:
            logger.info(f"Identifier {result.identifier} published")
        elif result.submission.recoverable:
            logger.warning(f"Could not submit {result.identifier}: "
                           f"{result.submission.error_detail}; identifier can still be used locally")
        else:
            result.submission.raise_for_error()
        return result

    # ------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------

    def prepare_service_update(self, identifier: str, rotation_key: KeyPair,
                               service_id: str, service_type: str,
                               endpoint: str) -> tuple[Operation, Operation]:
        """Steps 1-4 up to signing. Returns the signed op and the head it extends.

        The new operation is built from the same audit entry whose CID it
        names as prev. A write landing after that read makes the submit a
        fork; it can never be merged over silently.
        """
        if rotation_key.role is not KeyRole.ROTATION or not rotation_key.has_private:
            raise InvalidSignature("updates must be signed with a private rotation key")

        logger.info(f"Fetching current state for {identifier}")
        doc = self.client.resolve(identifier)
        logger.info(f"Found {len(doc.verification_methods)} verification methods, "
                    f"{len(doc.also_known_as)} handles, {len(doc.services)} services")

        # Fetched right before building to keep the fork window small.
        # NotFound / DirectoryUnavailable propagate: no safe update without prev.
        latest = self.client.latest_operation(identifier)
        head = Operation.from_dict(latest.operation)
        prev = latest.cid
        logger.info(f"Latest operation CID: {prev}")

        base = operation_after(head, prev)
        if operation_from_document(doc, prev) != base:
            logger.warning(f"Resolved state of {identifier} differs from operation {prev}; "
                           f"building on the operation")

        if rotation_key.did_key not in base.rotation_keys:
            raise InvalidSignature(
                f"rotation key {key_fingerprint(rotation_key)} is not authorized for {identifier}"
            )

        op = base.with_service(service_id, service_type, endpoint)
        return sign_operation(op, rotation_key), head

    def update_service(self, identifier: str, rotation_key: KeyPair,
                       service_id: str, service_type: str, endpoint: str) -> UpdateResult:
        """Upsert one service endpoint onto an identifier."""
        signed, _ = self.prepare_service_update(identifier, rotation_key,
                                                service_id, service_type, endpoint)
        cid = content_identifier(signed)

        logger.info(f"Submitting update {cid} for {identifier}")
        submission = self.client.submit(identifier, signed)
        if not submission.accepted:
            if submission.error is ErrorKind.FORK_CONFLICT:
                logger.error(f"Fork conflict for {identifier}: prev {signed.prev} is stale; "
                             f"re-resolve and rebuild")
            submission.raise_for_error()

        verification = self.verify_service(identifier, service_id, service_type, endpoint)
        return UpdateResult(operation=signed, cid=cid, prev=signed.prev,
                            submission=submission, verification=verification)

    def verify_service(self, identifier: str, service_id: str,
                       service_type: str, endpoint: str) -> VerificationResult:
        """Re-resolve and check the service is published as expected."""
        sid = normalize_service_id(service_id)
        try:
            doc = self.client.resolve(identifier)
        except PlcError as e:
            # Submit already landed: report, never raise
            logger.warning(f"Could not re-resolve {identifier} to verify update: {e.detail}")
            return VerificationResult(verified=False, error=ErrorKind.VERIFICATION_MISMATCH,
                                      detail=f"re-resolve failed: {e.detail}")

        found = doc.services.get(sid)
        if found is None or found.type != service_type or found.endpoint != endpoint:
            detail = f"service {sid!r} not visible after update"
            logger.warning(f"{detail} for {identifier}; the directory may not have caught up")
            return VerificationResult(verified=False, error=ErrorKind.VERIFICATION_MISMATCH,
                                      detail=detail)

        logger.info(f"Service {sid} verified on {identifier}: {found.type} -> {found.endpoint}")
        return VerificationResult(verified=True)


def describe_failure(error: PlcError) -> str:
    """One-line summary of a failure for callers' output."""
    severity = "recoverable" if error.recoverable else "fatal"
    return f"{error.kind.value} ({severity}): {error.detail}"
