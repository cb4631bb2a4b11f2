"""
Unit tests for retry policies and error classification.

Author: Ayodele Oladeji
Date: 2025
"""

import asyncio

import pytest

from streamzure.blob.exceptions import (
    BlobTransferError,
    CallerUsageError,
    ConflictError,
    IntegrityError,
    OperationCancelledError,
    PreconditionFailedError,
    ResourceNotFoundError,
    StorageServiceError,
    TransientTransportError,
    error_from_status,
    is_transient_error,
    is_transient_status,
)
from streamzure.blob.models import LocationMode, StorageLocation
from streamzure.blob.retry import ExponentialRetry, LinearRetry, NoRetry, RetryContext


def _context(error, retry_count=0, location=StorageLocation.PRIMARY,
             next_location=StorageLocation.PRIMARY, mode=LocationMode.PRIMARY_ONLY):
    return RetryContext(
        retry_count=retry_count,
        error=error,
        location=location,
        next_location=next_location,
        location_mode=mode,
    )


class TestStatusClassification:
    """Test which HTTP statuses are transient."""

    def test_server_errors_are_transient(self):
        """Test 5xx statuses are retryable."""
        for status in (500, 502, 503, 504):
            assert is_transient_status(status)

    def test_not_implemented_and_version_are_final(self):
        """Test 501 and 505 are not retryable."""
        assert not is_transient_status(501)
        assert not is_transient_status(505)

    def test_request_timeout_is_transient(self):
        """Test 408 is the one retryable 4xx."""
        assert is_transient_status(408)

    def test_client_errors_are_final(self):
        """Test 3xx and other 4xx statuses are not retryable."""
        for status in (304, 400, 403, 404, 409, 412, 416):
            assert not is_transient_status(status)


class TestErrorFromStatus:
    """Test mapping statuses to exceptions."""

    def test_precondition(self):
        """Test 412 maps to a precondition failure with its error code."""
        error = error_from_status(412, "AppendPositionConditionNotMet", "AppendBlock")
        assert isinstance(error, PreconditionFailedError)
        assert error.error_code == "AppendPositionConditionNotMet"
        assert error.status_code == 412

    def test_not_modified(self):
        """Test 304 maps to a precondition failure."""
        assert isinstance(error_from_status(304), PreconditionFailedError)

    def test_not_found(self):
        """Test 404 maps to resource not found."""
        assert isinstance(error_from_status(404, "BlobNotFound"), ResourceNotFoundError)

    def test_conflict(self):
        """Test 409 maps to a conflict."""
        assert isinstance(error_from_status(409, "LeaseAlreadyPresent"), ConflictError)

    def test_transient(self):
        """Test 503 maps to a transient transport error."""
        error = error_from_status(503, "ServerBusy")
        assert isinstance(error, TransientTransportError)
        assert error.status_code == 503

    def test_other_final(self):
        """Test other statuses map to a generic service error."""
        error = error_from_status(400, "InvalidInput")
        assert type(error) is StorageServiceError

    def test_to_dict(self):
        """Test errors serialize for diagnostics."""
        data = error_from_status(412, "ConditionNotMet", "GetBlob").to_dict()
        assert data["error"]["code"] == "ConditionNotMet"
        assert data["error"]["details"]["status_code"] == 412


class TestIsTransientError:
    """Test transient error classification."""

    def test_transport_errors(self):
        """Test transport failures are transient."""
        assert is_transient_error(TransientTransportError("reset"))
        assert is_transient_error(ConnectionResetError())
        assert is_transient_error(asyncio.TimeoutError())

    def test_final_errors(self):
        """Test caller, integrity and precondition errors are final."""
        assert not is_transient_error(CallerUsageError("bad"))
        assert not is_transient_error(IntegrityError("bad"))
        assert not is_transient_error(PreconditionFailedError(412))
        assert not is_transient_error(ValueError())

    def test_cancellation_is_never_transient(self):
        """Test cancellation is never retried."""
        assert not is_transient_error(asyncio.CancelledError())
        assert not is_transient_error(OperationCancelledError("GetBlob"))

    def test_base_error_not_transient(self):
        """Test the base error is final by default."""
        assert not BlobTransferError("x").is_transient


class TestExponentialRetry:
    """Test exponential backoff."""

    def test_backoff_grows(self):
        """Test delays double and are capped."""
        policy = ExponentialRetry(max_attempts=10, backoff=4.0, max_backoff=20.0)
        assert policy.backoff(1) == 4.0
        assert policy.backoff(2) == 8.0
        assert policy.backoff(3) == 16.0
        assert policy.backoff(4) == 20.0

    def test_retries_transient(self):
        """Test a transient error is retried at the next location."""
        policy = ExponentialRetry(max_attempts=3, backoff=1.0)
        info = policy.evaluate(_context(TransientTransportError("reset"), next_location=StorageLocation.SECONDARY))
        assert info is not None
        assert info.target_location == StorageLocation.SECONDARY
        assert info.retry_interval == 1.0
        assert info.updated_location_mode is None

    def test_gives_up_after_max_attempts(self):
        """Test no retry once attempts are exhausted."""
        policy = ExponentialRetry(max_attempts=2)
        assert policy.evaluate(_context(TransientTransportError("reset"), retry_count=2)) is None

    def test_final_error_not_retried(self):
        """Test a precondition failure is not retried."""
        policy = ExponentialRetry()
        assert policy.evaluate(_context(PreconditionFailedError(412))) is None

    def test_primary_not_found_not_retried(self):
        """Test a 404 from the primary is final."""
        policy = ExponentialRetry()
        assert policy.evaluate(_context(ResourceNotFoundError(404))) is None

    def test_secondary_not_found_retries_primary(self):
        """Test a 404 from a secondary that may lag goes to the primary."""
        policy = ExponentialRetry(backoff=2.0)
        info = policy.evaluate(_context(
            ResourceNotFoundError(404),
            location=StorageLocation.SECONDARY,
            next_location=StorageLocation.PRIMARY,
            mode=LocationMode.SECONDARY_THEN_PRIMARY,
        ))
        assert info is not None
        assert info.target_location == StorageLocation.PRIMARY
        assert info.updated_location_mode == LocationMode.PRIMARY_ONLY

    def test_secondary_only_not_found_is_final(self):
        """Test a 404 is final when only the secondary may be used."""
        policy = ExponentialRetry()
        assert policy.evaluate(_context(
            ResourceNotFoundError(404),
            location=StorageLocation.SECONDARY,
            mode=LocationMode.SECONDARY_ONLY,
        )) is None

    def test_create_instance_is_independent(self):
        """Test each operation gets its own copy."""
        policy = ExponentialRetry(max_attempts=5, backoff=1.0)
        clone = policy.create_instance()
        assert clone is not policy
        assert clone.max_attempts == 5
        assert clone.backoff(1) == 1.0


class TestLinearAndNoRetry:
    """Test linear and disabled retry."""

    def test_linear_constant_delay(self):
        """Test linear backoff is constant."""
        policy = LinearRetry(backoff=3.0)
        assert policy.backoff(1) == policy.backoff(5) == 3.0

    def test_no_retry(self):
        """Test retries are disabled."""
        assert NoRetry().evaluate(_context(TransientTransportError("reset"))) is None
