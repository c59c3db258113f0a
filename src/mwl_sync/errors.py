"""
Error taxonomy for the worklist synchronization engine.

Every error exposes a ``classification`` string that ends up in the sync
report, so operators can tell a bad source record from a broken backend.
"""

from typing import Optional


class MwlSyncError(Exception):
    """Base class for all engine errors."""

    classification = "Error"


class MappingError(MwlSyncError):
    """The order record cannot be turned into a valid worklist item."""

    classification = "MappingError"


class OrderNotFoundError(MwlSyncError):
    """The order store has no record for the requested order."""

    classification = "OrderNotFound"


class BackendError(MwlSyncError):
    """A PACS backend rejected a request or could not be reached.

    Args:
        message: Human readable description
        backend: Name of the backend (``orthanc`` or ``dcm4chee``)
        status_code: HTTP status code, if a response was received
        body: Raw response body, if any
    """

    classification = "BackendError"
    retryable = False

    def __init__(
        self,
        message: str,
        backend: str = "",
        status_code: Optional[int] = None,
        body: str = "",
    ):
        super().__init__(message)
        self.backend = backend
        self.status_code = status_code
        self.body = body

    def __str__(self) -> str:
        text = super().__str__()
        if self.status_code is not None:
            text = f"{text} (HTTP {self.status_code})"
        return text


class BackendConnectionError(BackendError):
    """Network failure, timeout or transient server error. Retried."""

    classification = "ConnectionError"
    retryable = True


class AuthError(BackendError):
    """Credentials rejected by the backend. Never retried."""

    classification = "AuthError"


class ValidationError(BackendError):
    """The backend rejected the payload shape. Never retried."""

    classification = "ValidationError"


class ConflictError(BackendError):
    """The accession number already exists on the backend."""

    classification = "ConflictError"


class AmbiguousStudyError(BackendError):
    """More than one study matches an identifier that must be unique."""

    classification = "AmbiguousStudy"
