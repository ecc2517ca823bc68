"""
In-process PLC directory.

Holds one OperationLog per identifier and answers the same HTTP contract
as a real directory through httpx.MockTransport. Used for local dry runs
and tests; it is not a network server.

Switches:
  available = False   every request answers 503
  freeze_reads()      reads keep serving the current state (lagging replica)
"""

import json
import logging
from typing import Any, Optional

import httpx

from plc_log.core.errors import EncodingError, ErrorKind, NotFound, SubmitResult
from plc_log.core.log import OperationLog
from plc_log.core.operation import Operation, is_identifier

logger = logging.getLogger("plc_log.directory.memory")

_STATUS = {
    ErrorKind.FORK_CONFLICT: 409,
    ErrorKind.INVALID_SIGNATURE: 400,
    ErrorKind.ENCODING: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.DIRECTORY_UNAVAILABLE: 503,
}


class InMemoryDirectory:

    def __init__(self):
        self._logs: dict[str, OperationLog] = {}
        self._frozen: Optional[dict[str, dict[str, Any]]] = None
        self.available = True
        self.submissions = 0

    def log_for(self, identifier: str) -> OperationLog:
        log = self._logs.get(identifier)
        if log is None or not log.entries:
            raise NotFound(f"{identifier} is not registered")
        return log

    def freeze_reads(self) -> None:
        """Serve reads from a snapshot of the current state."""
        self._frozen = {did: {"data": log.data(), "doc": log.did_document()}
                        for did, log in self._logs.items() if log.entries}

    def thaw_reads(self) -> None:
        self._frozen = None

    # ------------------------------------------------------------
    # Directory operations
    # ------------------------------------------------------------

    def resolve(self, identifier: str) -> dict[str, Any]:
        if self._frozen is not None:
            if identifier not in self._frozen:
                raise NotFound(f"{identifier} is not registered")
            return self._frozen[identifier]["data"]
        return self.log_for(identifier).data()

    def did_document(self, identifier: str) -> dict[str, Any]:
        if self._frozen is not None:
            if identifier not in self._frozen:
                raise NotFound(f"{identifier} is not registered")
            return self._frozen[identifier]["doc"]
        return self.log_for(identifier).did_document()

    def audit(self, identifier: str) -> list[dict[str, Any]]:
        return self.log_for(identifier).audit()

    def submit(self, identifier: str, payload: dict[str, Any]) -> SubmitResult:
        """Validate and append one wire-form operation."""
        self.submissions += 1
        if not is_identifier(identifier):
            return SubmitResult.reject(ErrorKind.ENCODING, f"Invalid operation: bad identifier {identifier!r}")
        try:
            op = Operation.from_dict(payload)
        except EncodingError as e:
            return SubmitResult.reject(ErrorKind.ENCODING, f"Invalid operation: {e.detail}")

        log = self._logs.get(identifier)
        if log is None:
            if not op.is_genesis:
                return SubmitResult.reject(ErrorKind.NOT_FOUND, f"{identifier} is not registered")
            log = OperationLog(identifier)

        result = log.append(op)
        if result.accepted and identifier not in self._logs:
            self._logs[identifier] = log
        if result.accepted and not result.duplicate:
            logger.info(f"Accepted {result.cid} for {identifier} (length {log.length})")
        return result

    # ------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------

    def handle(self, request: httpx.Request) -> httpx.Response:
        if not self.available:
            return httpx.Response(503, json={"message": "directory unavailable"})

        parts = [p for p in request.url.path.split("/") if p]
        if not parts:
            return httpx.Response(404, json={"message": "not found"})
        identifier, rest = parts[0], parts[1:]

        try:
            if request.method == "POST" and not rest:
                try:
                    payload = json.loads(request.content)
                except ValueError:
                    return httpx.Response(400, json={"message": "Invalid operation: body is not JSON"})
                result = self.submit(identifier, payload)
                if result.accepted:
                    return httpx.Response(200, json={})
                return httpx.Response(_STATUS.get(result.error, 400),
                                      json={"message": result.error_detail})

            if request.method == "GET":
                if not rest:
                    return httpx.Response(200, json=self.did_document(identifier))
                if rest == ["data"]:
                    return httpx.Response(200, json=self.resolve(identifier))
                if rest == ["log", "audit"]:
                    return httpx.Response(200, json=self.audit(identifier))
        except NotFound as e:
            return httpx.Response(404, json={"message": e.detail})

        return httpx.Response(404, json={"message": "not found"})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)
