"""
PLC Directory Client

Talks to a plc.directory compatible service over HTTP:

  GET  /{did}/data        current state (keys, handles, services)
  GET  /{did}             W3C DID document
  GET  /{did}/log/audit   accepted operations with their CIDs
  POST /{did}             append a signed operation

Reads raise typed errors. Submissions return a SubmitResult so callers
can tell a fork (rebuild from a fresh prev) from an outage (retry later).
Fork conflicts are never retried here.
"""

import logging
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from plc_log.core.errors import (
    DirectoryUnavailable, EncodingError, ErrorKind, NotFound, SubmitResult
)
from plc_log.core.operation import Operation, content_identifier
from plc_log.core.records import AuditEntry, DocumentRecord

logger = logging.getLogger("plc_log.directory")

DEFAULT_DIRECTORY_URL = "https://plc.directory"


def classify_rejection(status_code: int, message: str) -> ErrorKind:
    """Map a directory rejection to an error kind."""
    text = message.lower()
    if status_code == 404:
        return ErrorKind.NOT_FOUND
    if status_code == 409:
        return ErrorKind.FORK_CONFLICT
    if status_code >= 500:
        return ErrorKind.DIRECTORY_UNAVAILABLE
    if "signature" in text:
        return ErrorKind.INVALID_SIGNATURE
    if "does not match" in text or "fork" in text or "misordered" in text:
        return ErrorKind.FORK_CONFLICT
    return ErrorKind.ENCODING


def _message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200]
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or "")
    return ""


class DirectoryClient:
    """Synchronous client for one PLC directory.

    No timeout by default: callers impose their own deadline and a
    timeout surfaces as DirectoryUnavailable.
    """

    def __init__(self, base_url: str = DEFAULT_DIRECTORY_URL,
                 timeout: Optional[float] = None,
                 transport: Optional[httpx.BaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> 'DirectoryClient':
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------

    def _get(self, path: str, identifier: str) -> Any:
        try:
            resp = self._client.get(path)
        except httpx.RequestError as e:
            logger.error(f"Directory unreachable fetching {path}: {e}")
            raise DirectoryUnavailable(f"GET {path} failed: {e}") from e

        if resp.status_code in (404, 410):
            raise NotFound(f"{identifier} is not known to {self.base_url}")
        if resp.status_code != 200:
            logger.error(f"Directory error {resp.status_code} on {path}: {resp.text[:200]}")
            raise DirectoryUnavailable(f"GET {path} returned {resp.status_code}")
        try:
            return resp.json()
        except ValueError as e:
            raise EncodingError(f"directory returned non-JSON body for {path}") from e

    # ------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------

    def resolve(self, identifier: str) -> DocumentRecord:
        """Current published state of an identifier."""
        body = self._get(f"/{identifier}/data", identifier)
        try:
            return DocumentRecord.model_validate(body)
        except ValidationError as e:
            raise EncodingError(f"directory returned a malformed document: {e.error_count()} error(s)") from e

    def resolve_did_document(self, identifier: str) -> dict[str, Any]:
        """W3C DID document, as published."""
        body = self._get(f"/{identifier}", identifier)
        if not isinstance(body, dict):
            raise EncodingError("directory returned a malformed DID document")
        return body

    def audit_log(self, identifier: str) -> list[AuditEntry]:
        body = self._get(f"/{identifier}/log/audit", identifier)
        if not isinstance(body, list):
            raise EncodingError("directory returned a malformed audit log")
        try:
            return [AuditEntry.model_validate(item) for item in body]
        except ValidationError as e:
            raise EncodingError(f"directory returned a malformed audit entry: {e.error_count()} error(s)") from e

    def latest_operation(self, identifier: str) -> AuditEntry:
        """Most recently accepted, non-nullified operation."""
        entries = [e for e in self.audit_log(identifier) if not e.nullified]
        if not entries:
            raise NotFound(f"{identifier} has no accepted operations")
        latest = entries[-1]
        if latest.operation.get("type") == "plc_tombstone":
            raise NotFound(f"{identifier} has been tombstoned")

        # The directory's CID is authoritative for prev; recompute to catch drift.
        try:
            local_cid = content_identifier(Operation.from_dict(latest.operation))
        except EncodingError:
            local_cid = None
        if local_cid is not None and local_cid != latest.cid:
            logger.warning(f"Directory CID {latest.cid} differs from computed {local_cid}")
        return latest

    def latest_operation_cid(self, identifier: str) -> str:
        return self.latest_operation(identifier).cid

    # ------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------

    def submit(self, identifier: str, operation: Operation) -> SubmitResult:
        """Append a signed operation. Returns the directory's verdict."""
        cid = content_identifier(operation)
        try:
            resp = self._client.post(f"/{identifier}", json=operation.to_dict())
        except httpx.RequestError as e:
            logger.warning(f"Submit of {cid} to {self.base_url} failed: {e}")
            return SubmitResult.reject(ErrorKind.DIRECTORY_UNAVAILABLE, str(e), cid)

        if resp.status_code == 200:
            logger.info(f"Directory accepted {cid} for {identifier}")
            return SubmitResult(accepted=True, cid=cid)

        message = _message(resp)
        kind = classify_rejection(resp.status_code, message)
        logger.warning(f"Directory rejected {cid} ({resp.status_code} {kind.value}): {message}")
        return SubmitResult.reject(kind, message or f"HTTP {resp.status_code}", cid)
