"""
Blob Transfer Exception Hierarchy

Exception types for transfer operations with error codes and context. Every
failure a caller can observe is one of these, so outcomes stay inspectable
rather than being folded into a generic error.

Author: Ayodele Oladeji
Date: 2025
"""

import asyncio
from typing import Any, Dict, Optional


class BlobTransferError(Exception):
    """
    Base exception for all blob transfer errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code (e.g., 'ConditionNotMet')
        details: Additional context (status code, operation, offsets, etc.)
        request_result: The request attempt that produced the error, if any
    """

    error_code: str = "BlobTransferError"
    is_transient: bool = False

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.error_code
        self.details = details or {}
        self.request_result: Optional[Any] = None

    @property
    def status_code(self) -> Optional[int]:
        return self.details.get("status_code")

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary format for logs and diagnostics."""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "details": self.details,
            }
        }


# ========== Caller Errors ==========

class CallerUsageError(BlobTransferError):
    """
    Raised synchronously for malformed requests: unaligned page ranges, a
    precondition that does not apply to the blob type, writes after commit,
    mutations of a snapshot. Never retried.
    """
    error_code = "CallerUsageError"


# ========== Service Errors ==========

class StorageServiceError(BlobTransferError):
    """Raised when the service rejects a request with a non-transient status."""
    error_code = "StorageServiceError"

    def __init__(
        self,
        status_code: int,
        error_code: Optional[str] = None,
        operation: Optional[str] = None,
        message: Optional[str] = None,
    ):
        message = message or f"Operation '{operation}' failed with status {status_code}"
        details = {"status_code": status_code}
        if operation:
            details["operation"] = operation
        super().__init__(message, error_code=error_code, details=details)


class PreconditionFailedError(StorageServiceError):
    """
    The service rejected the request because an ETag, lease, append-position,
    max-size or sequence-number condition did not hold.

    Never retried: the same stale precondition would fail identically.
    """
    error_code = "ConditionNotMet"


class ResourceNotFoundError(StorageServiceError):
    """Raised when the container or blob does not exist."""
    error_code = "BlobNotFound"


class AuthorizationError(StorageServiceError):
    """Raised when the request is not authorized (401/403)."""
    error_code = "AuthorizationFailure"


class ConflictError(StorageServiceError):
    """Raised on 409 responses, such as lease conflicts or existing blobs."""
    error_code = "Conflict"


class BlobTypeMismatchError(BlobTransferError):
    """Raised when the service reports a blob type other than the handle's."""
    error_code = "BlobTypeMismatch"

    def __init__(self, expected: str, actual: str, message: Optional[str] = None):
        message = message or f"Blob type of the blob reference doesn't match blob type of the blob: expected {expected}, got {actual}"
        super().__init__(message, details={"expected": expected, "actual": actual})


# ========== Integrity Errors ==========

class IntegrityError(BlobTransferError):
    """
    Raised when the bytes received disagree with what the service reported:
    length mismatch, hash mismatch, or a missing hash that was required.

    Fatal for the engine instance; the caller may restart the whole transfer.
    """
    error_code = "IntegrityError"


# ========== Transient and Cancellation Errors ==========

class TransientTransportError(BlobTransferError):
    """Raised for connection resets, timeouts, 408 and retryable 5xx responses."""
    error_code = "TransientTransportError"
    is_transient = True

    def __init__(
        self,
        reason: str,
        status_code: Optional[int] = None,
        message: Optional[str] = None,
    ):
        message = message or f"Transient transport failure: {reason}"
        details: Dict[str, Any] = {"reason": reason}
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, details=details)


class OperationCancelledError(BlobTransferError):
    """Raised when the caller cancels an operation. Never retried."""
    error_code = "OperationCancelled"

    def __init__(self, operation: str, message: Optional[str] = None):
        message = message or f"Operation '{operation}' was cancelled"
        super().__init__(message, details={"operation": operation})


class OperationTimeoutError(BlobTransferError):
    """Raised when an operation exceeds its maximum execution time. Never retried."""
    error_code = "OperationTimedOut"

    def __init__(self, operation: str, timeout_seconds: float, message: Optional[str] = None):
        message = message or f"Operation '{operation}' exceeded its maximum execution time of {timeout_seconds}s"
        super().__init__(message, details={"operation": operation, "timeout_seconds": timeout_seconds})


# ========== Service Error Codes ==========

class BlobErrorCode:
    """Error codes the service reports in ``x-ms-error-code``."""
    CONDITION_NOT_MET = "ConditionNotMet"
    APPEND_POSITION_CONDITION_NOT_MET = "AppendPositionConditionNotMet"
    MAX_BLOB_SIZE_CONDITION_NOT_MET = "MaxBlobSizeConditionNotMet"
    SEQUENCE_NUMBER_CONDITION_NOT_MET = "SequenceNumberConditionNotMet"
    LEASE_ID_MISSING = "LeaseIdMissing"
    LEASE_ID_MISMATCH = "LeaseIdMismatchWithBlobOperation"
    LEASE_NOT_PRESENT = "LeaseNotPresentWithBlobOperation"
    LEASE_ALREADY_PRESENT = "LeaseAlreadyPresent"
    BLOB_NOT_FOUND = "BlobNotFound"
    CONTAINER_NOT_FOUND = "ContainerNotFound"
    BLOB_ALREADY_EXISTS = "BlobAlreadyExists"
    INVALID_BLOB_TYPE = "InvalidBlobType"
    INVALID_RANGE = "InvalidRange"
    INVALID_PAGE_RANGE = "InvalidPageRange"
    INVALID_BLOCK_LIST = "InvalidBlockList"
    MD5_MISMATCH = "Md5Mismatch"
    SERVER_BUSY = "ServerBusy"
    INTERNAL_ERROR = "InternalError"


# ========== Utility Functions ==========

NON_RETRYABLE_SERVER_STATUSES = (501, 505)


def is_transient_status(status_code: int) -> bool:
    """
    Determine if an HTTP status is worth retrying.

    3xx and 4xx are final except 408 (request timeout); 5xx is retryable
    except 501 (not implemented) and 505 (version not supported).
    """
    if status_code == 408:
        return True
    if 500 <= status_code < 600:
        return status_code not in NON_RETRYABLE_SERVER_STATUSES
    return False


def error_from_status(
    status_code: int,
    error_code: Optional[str] = None,
    operation: Optional[str] = None,
    message: Optional[str] = None,
) -> BlobTransferError:
    """
    Translate an unexpected HTTP status into the matching exception.

    Args:
        status_code: HTTP status returned by the service
        error_code: Value of the ``x-ms-error-code`` header, if any
        operation: Operation name for the error message
        message: Optional override message

    Returns:
        Exception instance (not raised)
    """
    if is_transient_status(status_code):
        return TransientTransportError(
            reason=error_code or f"HTTP {status_code}",
            status_code=status_code,
            message=message,
        )
    if status_code in (304, 412):
        return PreconditionFailedError(status_code, error_code, operation, message)
    if status_code == 404:
        return ResourceNotFoundError(status_code, error_code, operation, message)
    if status_code in (401, 403):
        return AuthorizationError(status_code, error_code, operation, message)
    if status_code == 409:
        return ConflictError(status_code, error_code, operation, message)
    return StorageServiceError(status_code, error_code, operation, message)


def is_transient_error(error: BaseException) -> bool:
    """
    Determine if an error is transient and can be retried.

    Cancellation is never transient, whatever layer raised it.

    Args:
        error: Exception to check

    Returns:
        True if error is transient and operation should be retried
    """
    if isinstance(error, (asyncio.CancelledError, OperationCancelledError)):
        return False

    if isinstance(error, BlobTransferError):
        return error.is_transient

    # Standard transient exceptions
    if isinstance(error, (
        ConnectionError,
        ConnectionRefusedError,
        ConnectionResetError,
        TimeoutError,
        asyncio.TimeoutError,
    )):
        return True

    return False
