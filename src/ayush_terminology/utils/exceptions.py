"""Custom exceptions for the AYUSH terminology engine."""

from typing import List, Optional, Tuple


class TerminologyException(Exception):
    """Base exception for all terminology engine failures.

    ``code`` is a stable machine-readable error code and ``issue_code`` the
    FHIR OperationOutcome issue type used when the failure is rendered.
    """

    issue_code = "processing"

    def __init__(self, message: str, code: Optional[str] = None):
        """Initialize exception.

        Args:
            message: Error message
            code: Optional error code
        """
        super().__init__(message)
        self.message = message
        self.code = code


class ParseError(TerminologyException):
    """Raised when a bulk source or one of its rows cannot be parsed."""

    issue_code = "invalid"

    def __init__(self, message: str, line_number: Optional[int] = None):
        """Initialize ParseError."""
        super().__init__(message, "PARSE_ERROR")
        self.line_number = line_number


class NotFoundError(TerminologyException):
    """Raised when a code or mapping is absent."""

    issue_code = "not-found"

    def __init__(self, message: str = "Code not found"):
        """Initialize NotFoundError."""
        super().__init__(message, "NOT_FOUND")


class UnsupportedSystemError(TerminologyException):
    """Raised when an operation names a code system the engine does not know."""

    issue_code = "not-supported"

    def __init__(self, message: str = "Code system not supported"):
        """Initialize UnsupportedSystemError."""
        super().__init__(message, "UNSUPPORTED_SYSTEM")


class InvalidRequestError(TerminologyException):
    """Raised when request parameters are out of range."""

    issue_code = "invalid"

    def __init__(self, message: str = "Invalid request"):
        """Initialize InvalidRequestError."""
        super().__init__(message, "INVALID_REQUEST")


class EmptyQueryError(InvalidRequestError):
    """Raised when a search query is shorter than the minimum length."""

    def __init__(self, message: str = "Query must be at least 2 characters"):
        """Initialize EmptyQueryError."""
        super().__init__(message)
        self.code = "EMPTY_QUERY"


class UnresolvedCodeError(TerminologyException):
    """Raised when bundle assembly references a code missing from the store.

    Entry indexes are 0-based positions in the submitted entry list, so the
    second entry is index 1. ``entry_index`` and ``code`` identify the first
    failing entry; ``unresolved`` lists every failing ``(entry_index, code)``
    pair in submission order.
    """

    issue_code = "not-found"

    def __init__(
        self,
        entry_index: int,
        code: str,
        unresolved: Optional[List[Tuple[int, str]]] = None,
    ):
        """Initialize UnresolvedCodeError."""
        super().__init__(
            f"Diagnosis entry {entry_index} references unknown code '{code}'",
            "UNRESOLVED_CODE",
        )
        self.entry_index = entry_index
        self.unresolved_code = code
        self.unresolved = unresolved or [(entry_index, code)]


class SyncError(TerminologyException):
    """Base exception for external terminology synchronization failures."""

    def __init__(self, message: str = "Terminology sync failed", code: str = "SYNC_ERROR"):
        """Initialize SyncError."""
        super().__init__(message, code)


class NetworkFailure(SyncError):
    """Raised for transient transport, timeout or server-side failures."""

    def __init__(self, message: str = "Network failure"):
        """Initialize NetworkFailure."""
        super().__init__(message, "NETWORK_FAILURE")


class AuthFailure(SyncError):
    """Raised when the external authority rejects our credentials."""

    def __init__(self, message: str = "Authorization failed"):
        """Initialize AuthFailure."""
        super().__init__(message, "AUTH_FAILURE")


class RateLimited(SyncError):
    """Raised when the external authority throttles requests."""

    def __init__(self, message: str = "Rate limited", retry_after: Optional[float] = None):
        """Initialize RateLimited."""
        super().__init__(message, "RATE_LIMITED")
        self.retry_after = retry_after
