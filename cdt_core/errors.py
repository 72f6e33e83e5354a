"""
Error Taxonomy Module

Local validation failures carry a stable machine-checkable kind plus a
human-readable message so the calling layer can translate them into
client-facing responses. Storage and cache failures are kept apart because
they are handled differently: storage failures propagate, cache failures are
logged and ignored.
"""

from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Stable identifiers for lifecycle failures"""
    NOT_FOUND = "not_found"
    INVALID_TRANSITION = "invalid_transition"
    PERMISSION_DENIED = "permission_denied"
    PRECONDITION_FAILED = "precondition_failed"
    CONFLICT = "conflict"


class CertificateError(ValueError):
    """Base class for validation failures raised by the engine"""

    kind: ErrorKind = ErrorKind.PRECONDITION_FAILED

    def __init__(self, message: str, cdt_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.cdt_id = cdt_id

    def to_dict(self) -> dict:
        return {
            'kind': self.kind.value,
            'message': self.message,
            'cdt_id': self.cdt_id
        }


class NotFoundError(CertificateError):
    kind = ErrorKind.NOT_FOUND


class InvalidTransitionError(CertificateError):
    kind = ErrorKind.INVALID_TRANSITION


class PermissionDeniedError(CertificateError):
    kind = ErrorKind.PERMISSION_DENIED


class PreconditionFailedError(CertificateError):
    kind = ErrorKind.PRECONDITION_FAILED


class ConflictError(CertificateError):
    """Lost a concurrent status race; the caller may retry with a fresh read"""
    kind = ErrorKind.CONFLICT


class StorageError(RuntimeError):
    """Backing store unreachable or errored"""


class CacheError(RuntimeError):
    """Cache backend unreachable or errored"""
