"""
PLC Log Error Taxonomy

Every failure in the operation log carries a deterministic error kind.
Key and encoding errors are fatal. Directory outages and read-after-write
mismatches are recoverable: the caller decides whether to retry later.

PlcError: exception raised by reads, codecs and key handling
SubmitResult: outcome of appending an operation (accepted or a kind)
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Deterministic error codes."""
    INVALID_KEY_ENCODING = "E_KEY_ENCODING"   # malformed key text / wrong role
    KEY_GENERATION = "E_KEYGEN"               # entropy source failed
    ENCODING = "E_ENCODING"                   # malformed operation fields
    FORK_CONFLICT = "E_FORK"                  # prev != directory's latest cid
    INVALID_SIGNATURE = "E_SIG"               # signature rejected
    NOT_FOUND = "E_NOT_FOUND"                 # identifier unknown
    DIRECTORY_UNAVAILABLE = "E_UNAVAILABLE"   # transport failure / timeout / 5xx
    VERIFICATION_MISMATCH = "E_MISMATCH"      # re-resolve does not show change


RECOVERABLE_KINDS = {
    ErrorKind.DIRECTORY_UNAVAILABLE,
    ErrorKind.VERIFICATION_MISMATCH,
}


class PlcError(Exception):
    """Base class. Subclasses pin their ErrorKind."""
    kind: ErrorKind = ErrorKind.ENCODING

    def __init__(self, detail: str = ""):
        super().__init__(detail)
        self.detail = detail

    @property
    def recoverable(self) -> bool:
        return self.kind in RECOVERABLE_KINDS


class InvalidKeyEncoding(PlcError):
    kind = ErrorKind.INVALID_KEY_ENCODING


class KeyGenerationError(PlcError):
    kind = ErrorKind.KEY_GENERATION


class EncodingError(PlcError):
    kind = ErrorKind.ENCODING


class ForkConflict(PlcError):
    kind = ErrorKind.FORK_CONFLICT


class InvalidSignature(PlcError):
    kind = ErrorKind.INVALID_SIGNATURE


class NotFound(PlcError):
    kind = ErrorKind.NOT_FOUND


class DirectoryUnavailable(PlcError):
    kind = ErrorKind.DIRECTORY_UNAVAILABLE


class VerificationMismatch(PlcError):
    kind = ErrorKind.VERIFICATION_MISMATCH


ERROR_CLASSES: dict[ErrorKind, type[PlcError]] = {
    cls.kind: cls for cls in (
        InvalidKeyEncoding, KeyGenerationError, EncodingError, ForkConflict,
        InvalidSignature, NotFound, DirectoryUnavailable, VerificationMismatch,
    )
}


@dataclass
class SubmitResult:
    """Result of offering an operation to a log or directory."""
    accepted: bool
    cid: str = ""
    error: Optional[ErrorKind] = None
    error_detail: str = ""
    duplicate: bool = False    # same signed bytes were already accepted

    @property
    def recoverable(self) -> bool:
        return self.error in RECOVERABLE_KINDS

    def raise_for_error(self) -> None:
        """Raise the typed exception for a rejection. No-op when accepted."""
        if self.accepted:
            return
        cls = ERROR_CLASSES.get(self.error, PlcError)
        raise cls(self.error_detail or (self.error.value if self.error else "rejected"))

    @staticmethod
    def reject(kind: ErrorKind, detail: str, cid: str = "") -> 'SubmitResult':
        return SubmitResult(accepted=False, cid=cid, error=kind, error_detail=detail)
