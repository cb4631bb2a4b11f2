"""
Transfer Attempts and the Executor Loop

A ``TransferAttempt`` builds the request for one try of a logical operation,
checks and consumes the response, and knows how to recover its own state
before the next try. ``execute`` drives attempts sequentially: it sends,
classifies the outcome, consults the retry policy, runs the recovery hook and
waits. Only transient failures are retried; cancellation is observed between
attempts and during the backoff wait.

Author: Ayodele Oladeji
Date: 2025
"""

import asyncio
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Generic, List, Optional, Tuple, TypeVar

from ..core.logging_config import correlation_scope, log_with_context
from ..core.metrics import TransferMetrics
from .exceptions import (
    BlobTransferError,
    OperationCancelledError,
    OperationTimeoutError,
    PreconditionFailedError,
    TransientTransportError,
    error_from_status,
)
from .models import LocationMode, StorageLocation
from .options import BlobRequestOptions
from .retry import RetryContext
from .transport import BlobOperation, LocationSelector, RequestSpec, ResponseSpec, Transport

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass
class RequestResult:
    """Outcome of one attempt, kept on the operation context."""

    operation: str
    location: StorageLocation
    status_code: Optional[int] = None
    service_request_id: Optional[str] = None
    etag: Optional[str] = None
    error: Optional[BaseException] = None
    start_time: float = field(default_factory=time.time)
    end_time: Optional[float] = None


class OperationContext:
    """
    Per-operation bookkeeping shared by every attempt: the client request id
    used as correlation id, the results of all attempts so far, and the
    cancellation signal.
    """

    def __init__(
        self,
        client_request_id: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        self.client_request_id = client_request_id or str(uuid.uuid4())
        self.cancel_event = cancel_event or asyncio.Event()
        self.request_results: List[RequestResult] = []

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def last_result(self) -> Optional[RequestResult]:
        return self.request_results[-1] if self.request_results else None


class TransferAttempt(ABC, Generic[T]):
    """
    One logical operation, retried as a sequence of attempts.

    Subclasses implement ``build_request`` and ``process_response``. The
    executor calls ``check_response`` before ``process_response`` and
    ``recover`` before every retry.
    """

    operation: BlobOperation
    expected_status: Tuple[int, ...] = (200,)

    @abstractmethod
    def build_request(self, location: StorageLocation) -> RequestSpec:
        """Build the request for the next attempt against ``location``."""

    @abstractmethod
    async def process_response(self, response: ResponseSpec, context: OperationContext) -> T:
        """Consume a response whose status was accepted."""

    def check_response(self, response: ResponseSpec, context: OperationContext) -> None:
        """
        Raise for a status the attempt does not accept.

        Raises:
            BlobTransferError: Mapped from the HTTP status and ``x-ms-error-code``
        """
        if response.status_code not in self.expected_status:
            raise error_from_status(
                response.status_code,
                error_code=response.header('x-ms-error-code'),
                operation=self.operation.value,
            )

    def recover(self, error: BaseException) -> None:
        """Adjust attempt state before a retry. Default: nothing to adjust."""


class SimpleAttempt(TransferAttempt[T]):
    """Attempt assembled from a request builder and a response handler."""

    def __init__(
        self,
        operation: BlobOperation,
        build: Callable[[StorageLocation], RequestSpec],
        process: Optional[Callable[[ResponseSpec], T]] = None,
        expected_status: Tuple[int, ...] = (200,),
    ):
        self.operation = operation
        self.expected_status = expected_status
        self._build = build
        self._process = process

    def build_request(self, location: StorageLocation) -> RequestSpec:
        return self._build(location)

    async def process_response(self, response: ResponseSpec, context: OperationContext) -> T:
        return self._process(response) if self._process else None


def _normalize_error(exc: BaseException) -> BaseException:
    if isinstance(exc, BlobTransferError):
        return exc
    if isinstance(exc, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return TransientTransportError(reason=type(exc).__name__, message=str(exc) or None)
    return exc


async def execute(
    attempt: TransferAttempt[T],
    transport: Transport,
    options: BlobRequestOptions,
    context: Optional[OperationContext] = None,
    selector: Optional[LocationSelector] = None,
    metrics: Optional[TransferMetrics] = None,
) -> T:
    """
    Run ``attempt`` until it succeeds or fails for good.

    Args:
        attempt: The operation to run
        transport: Transport to send requests through
        options: Retry policy, location mode and time limit
        context: Operation context; a fresh one is created if omitted
        selector: Location selector; by default reads follow
            ``options.location_mode`` and writes go to the primary
        metrics: Optional metrics collector

    Returns:
        Whatever ``attempt.process_response`` returned

    Raises:
        OperationCancelledError: If the context was cancelled between attempts
        OperationTimeoutError: If ``options.maximum_execution_time`` elapsed
        BlobTransferError: The first non-retryable failure, or the last
            transient one once the policy gives up
    """
    context = context or OperationContext()
    policy = options.retry_policy.create_instance()
    if selector is None:
        mode = options.location_mode if attempt.operation.reads else LocationMode.PRIMARY_ONLY
        selector = LocationSelector(mode)

    loop = asyncio.get_running_loop()
    deadline = (
        loop.time() + options.maximum_execution_time
        if options.maximum_execution_time is not None
        else None
    )
    operation = attempt.operation.value
    location = selector.initial()
    retry_count = 0

    with correlation_scope(context.client_request_id):
        while True:
            if context.cancelled:
                raise OperationCancelledError(operation)
            if deadline is not None and loop.time() >= deadline:
                raise OperationTimeoutError(operation, options.maximum_execution_time)

            request = attempt.build_request(location)
            request.client_request_id = context.client_request_id
            result = RequestResult(operation=operation, location=location)
            context.request_results.append(result)
            started = time.perf_counter()

            try:
                response = await transport.send(request)
                result.status_code = response.status_code
                result.service_request_id = response.header('x-ms-request-id')
                result.etag = response.header('ETag')
                attempt.check_response(response, context)
                value = await attempt.process_response(response, context)
            except asyncio.CancelledError:
                result.end_time = time.time()
                raise
            except Exception as exc:
                result.end_time = time.time()
                error = _normalize_error(exc)
                result.error = error
                if isinstance(error, BlobTransferError):
                    error.request_result = result
                _track_failure(metrics, operation, error, result, time.perf_counter() - started)

                next_location = selector.next(location)
                retry_info = None
                if not isinstance(error, OperationCancelledError):
                    retry_info = policy.evaluate(RetryContext(
                        retry_count=retry_count,
                        error=error,
                        location=location,
                        next_location=next_location,
                        location_mode=selector.mode,
                    ))

                if retry_info is None:
                    log_with_context(
                        logger, logging.WARNING,
                        f"Operation failed: {operation}",
                        operation=operation,
                        attempt=retry_count + 1,
                        location=location.value,
                        status_code=result.status_code,
                        error_type=type(error).__name__,
                        error_message=str(error),
                    )
                    if error is exc:
                        raise
                    raise error from exc

                retry_count += 1
                attempt.recover(error)
                if retry_info.updated_location_mode is not None:
                    selector.mode = retry_info.updated_location_mode
                location = (
                    retry_info.target_location
                    if selector.allows(retry_info.target_location)
                    else selector.initial()
                )

                if metrics is not None:
                    metrics.track_retry(operation, type(error).__name__)
                log_with_context(
                    logger, logging.INFO,
                    f"Retrying {operation}",
                    operation=operation,
                    attempt=retry_count,
                    status_code=result.status_code,
                    error_type=type(error).__name__,
                    next_location=location.value,
                    retry_delay_seconds=retry_info.retry_interval,
                )

                if deadline is not None and loop.time() + retry_info.retry_interval >= deadline:
                    raise OperationTimeoutError(operation, options.maximum_execution_time) from error
                await _wait_unless_cancelled(context, retry_info.retry_interval)
                continue

            result.end_time = time.time()
            if metrics is not None:
                metrics.track_request(operation, str(result.status_code), time.perf_counter() - started)
            if retry_count:
                logger.info(f"Operation succeeded after {retry_count + 1} attempts: {operation}")
            return value


async def _wait_unless_cancelled(context: OperationContext, delay: float) -> None:
    if delay <= 0:
        return
    try:
        await asyncio.wait_for(context.cancel_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        pass


def _track_failure(
    metrics: Optional[TransferMetrics],
    operation: str,
    error: BaseException,
    result: RequestResult,
    duration: float,
) -> None:
    if metrics is None:
        return
    status = str(result.status_code) if result.status_code is not None else type(error).__name__
    metrics.track_request(operation, status, duration)
    if isinstance(error, PreconditionFailedError):
        metrics.track_precondition_failure(operation, error.error_code)
