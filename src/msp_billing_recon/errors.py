"""Error taxonomy for the billing reconciliation engine.

Source-unavailable failures never reach callers as exceptions: the aggregator
turns them into SourceFailure records. Everything below is fatal for the
single operation that raised it and is surfaced synchronously.
"""

from enum import Enum


class ErrorCode(str, Enum):
    """Stable machine-readable error codes returned by the API."""

    NOT_FOUND = "not_found"
    PRECONDITION_FAILED = "precondition_failed"
    UNKNOWN_VENDOR = "unknown_vendor"
    CONFLICT = "conflict"
    LEASE_BUSY = "lease_busy"
    PSA_ERROR = "psa_error"


class ReconciliationError(Exception):
    """Base class for all engine errors."""

    status_code: int = 400

    def __init__(self, message: str, error_code: ErrorCode) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code


class NotFoundError(ReconciliationError):
    """A referenced company, snapshot, item or mapping does not exist."""

    status_code = 404

    def __init__(self, resource: str, resource_id: object) -> None:
        super().__init__(f"{resource} {resource_id} not found", ErrorCode.NOT_FOUND)
        self.resource = resource
        self.resource_id = resource_id


class PreconditionError(ReconciliationError):
    """A configuration or data gap that needs operator attention."""

    status_code = 409

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.PRECONDITION_FAILED) -> None:
        super().__init__(message, error_code)


class UnknownVendorError(PreconditionError):
    """No VendorCountSource is registered for the vendor id."""

    def __init__(self, vendor_id: str) -> None:
        super().__init__(f"No count source registered for vendor '{vendor_id}'", ErrorCode.UNKNOWN_VENDOR)
        self.vendor_id = vendor_id


class ConflictError(ReconciliationError):
    """A row with the same natural key already exists."""

    status_code = 409

    def __init__(self, message: str) -> None:
        super().__init__(message, ErrorCode.CONFLICT)


class LeaseBusyError(ReconciliationError):
    """Another reconciliation or write-back currently holds the company lease."""

    status_code = 409

    def __init__(self, lease_key: str) -> None:
        super().__init__(f"Operation already in progress for {lease_key}", ErrorCode.LEASE_BUSY)
        self.lease_key = lease_key


class PsaClientError(ReconciliationError):
    """The PSA rejected or failed a request."""

    status_code = 502

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message, ErrorCode.PSA_ERROR)
        self.status = status
