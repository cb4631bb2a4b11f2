"""
Resumable Downloads

``ResumableDownloadEngine`` streams a blob (or a range of it) into a sink and
survives dropped connections without starting over: a retry asks only for the
bytes not yet written, against the replica that served the first response,
and only if the blob still carries the ETag seen on that first response.
Length and MD5 are checked against the first response once the last byte is
written.

``BlobReadStream`` layers a seekable, buffered reader on top of the engine.

Author: Ayodele Oladeji
Date: 2025
"""

import hashlib
import logging
from typing import Any, Optional

from ..core.metrics import TransferMetrics
from .attempt import OperationContext, SimpleAttempt, TransferAttempt, execute
from .conditions import ConditionalPrecondition
from .exceptions import CallerUsageError, IntegrityError
from .models import MAX_RANGE_GET_MD5_SIZE, BlobIdentity, StorageLocation, TransferRange
from .options import BlobRequestOptions
from .payload import encode_digest, write_to_sink
from .state import BlobEntityState, apply_response
from .transport import BlobOperation, LocationSelector, RequestSpec, ResponseSpec, Transport

logger = logging.getLogger(__name__)

DEFAULT_READ_BUFFER_SIZE = MAX_RANGE_GET_MD5_SIZE


class _DownloadAttempt(TransferAttempt[int]):
    """
    GET of one blob range. Copy progress, running hash and the locked ETag
    live here and survive every retry.
    """

    operation = BlobOperation.GET_BLOB
    expected_status = (200, 206)

    def __init__(
        self,
        engine: 'ResumableDownloadEngine',
        identity: BlobIdentity,
        transfer_range: TransferRange,
        precondition: ConditionalPrecondition,
        sink: Any,
        selector: LocationSelector,
    ):
        self.engine = engine
        self.identity = identity
        self.sink = sink
        self.selector = selector
        self.caller_precondition = precondition
        self.precondition = precondition

        self.starting_offset = transfer_range.offset
        self.starting_length = transfer_range.remaining_length
        self.transfer_range = transfer_range

        self.request_md5 = (
            engine.options.use_transactional_md5
            and transfer_range.is_bounded
            and transfer_range.remaining_length <= MAX_RANGE_GET_MD5_SIZE
        )

        self.properties_populated = False
        self.first_state: Optional[BlobEntityState] = None
        self.locked_etag: Optional[str] = None
        self.expected_length: Optional[int] = None
        self.expected_md5: Optional[str] = None
        self.copied = 0
        self.hasher = hashlib.md5()

    def build_request(self, location: StorageLocation) -> RequestSpec:
        return RequestSpec(
            operation=self.operation,
            identity=self.identity,
            location=location,
            precondition=self.precondition,
            transfer_range=self.transfer_range if self.transfer_range.is_range else None,
            # Only the first response's hash is ever checked
            request_transactional_md5=self.request_md5 and not self.properties_populated,
        )

    async def process_response(self, response: ResponseSpec, context: OperationContext) -> int:
        if not self.properties_populated:
            self._capture_first_response(response)

        remaining = self._remaining()
        async for chunk in response.chunks():
            if remaining is not None:
                chunk = chunk[:remaining]
            if chunk:
                await write_to_sink(self.sink, chunk)
                self.hasher.update(chunk)
                self.copied += len(chunk)
                if self.engine.metrics is not None:
                    self.engine.metrics.track_download_bytes(len(chunk))
            remaining = self._remaining()
            if remaining == 0:
                break

        self._validate()
        # Published only once the whole download has checked out
        self.engine.state = self.first_state
        return self.copied

    def _capture_first_response(self, response: ResponseSpec) -> None:
        self.first_state = apply_response(self.engine.state, response.headers, properties=True)
        self.locked_etag = response.header('ETag')

        length = response.header('Content-Length')
        self.expected_length = int(length) if length is not None else None

        self.expected_md5 = response.header('Content-MD5')
        if self.request_md5 and not self.expected_md5:
            self._fail_integrity(
                "missing_md5",
                "Transactional MD5 was requested for the range but the service did not return one",
            )

        # Every later attempt goes to the replica that holds this version
        self.selector.pin(response.location)
        self.properties_populated = True

    def _remaining(self) -> Optional[int]:
        limits = []
        if self.expected_length is not None:
            limits.append(self.expected_length - self.copied)
        if self.starting_length is not None:
            limits.append(self.starting_length - self.copied)
        return min(limits) if limits else None

    def _validate(self) -> None:
        if self.expected_length is not None and self.copied != self.expected_length:
            self._fail_integrity(
                "length_mismatch",
                f"Incorrect number of bytes received. Expected '{self.expected_length}', received '{self.copied}'",
            )
        if self.expected_md5 and not self.engine.options.disable_content_md5_validation:
            computed = encode_digest(self.hasher)
            if computed != self.expected_md5:
                self._fail_integrity(
                    "md5_mismatch",
                    f"Calculated MD5 does not match existing property. Expected '{self.expected_md5}', computed '{computed}'",
                )

    def _fail_integrity(self, reason: str, message: str) -> None:
        if self.engine.metrics is not None:
            self.engine.metrics.track_integrity_failure(reason)
        raise IntegrityError(
            message,
            details={
                "reason": reason,
                "blob": str(self.identity),
                "expected_length": self.expected_length,
                "received_length": self.copied,
            },
        )

    def recover(self, error: BaseException) -> None:
        if not self.properties_populated:
            return

        if self.locked_etag:
            self.precondition = self.caller_precondition.with_etag(self.locked_etag)

        if self.copied > 0:
            offset = (self.starting_offset or 0) + self.copied
            length = (
                self.starting_length - self.copied
                if self.starting_length is not None
                else None
            )
            self.transfer_range = TransferRange(offset=offset, remaining_length=length)
            logger.debug(
                f"Resuming download of {self.identity} at offset {offset} after {self.copied} bytes"
            )


class ResumableDownloadEngine:
    """
    Runs one download of one blob.

    The engine is single-use: a second ``download`` call raises
    ``CallerUsageError``. ``state`` takes the entity state reported by the
    first response, and only once the download has passed its length and
    hash checks.
    """

    def __init__(
        self,
        transport: Transport,
        options: Optional[BlobRequestOptions] = None,
        state: Optional[BlobEntityState] = None,
        metrics: Optional[TransferMetrics] = None,
    ):
        self.transport = transport
        self.options = options or BlobRequestOptions()
        self.state = state or BlobEntityState()
        self.metrics = metrics
        self._used = False

    async def download(
        self,
        identity: BlobIdentity,
        sink: Any,
        transfer_range: Optional[TransferRange] = None,
        precondition: Optional[ConditionalPrecondition] = None,
        context: Optional[OperationContext] = None,
    ) -> int:
        """
        Download a blob or a range of it into ``sink``.

        Args:
            identity: Blob to read (snapshots allowed)
            sink: Object with a ``write(bytes)`` method, sync or async
            transfer_range: Byte range; the whole blob if omitted
            precondition: Caller conditions for the first request
            context: Operation context for cancellation and diagnostics

        Returns:
            Number of bytes written to ``sink``

        Raises:
            IntegrityError: Length or hash mismatch, or a requested hash missing
            PreconditionFailedError: The blob changed between attempts, or a
                caller condition did not hold
            OperationCancelledError: The context was cancelled between attempts
        """
        if self._used:
            raise CallerUsageError("A download engine runs a single download")
        self._used = True

        attempt = _DownloadAttempt(
            engine=self,
            identity=identity,
            transfer_range=transfer_range or TransferRange(),
            precondition=precondition or ConditionalPrecondition(),
            sink=sink,
            selector=LocationSelector(self.options.location_mode),
        )
        return await execute(
            attempt,
            self.transport,
            self.options,
            context=context,
            selector=attempt.selector,
            metrics=self.metrics,
        )


class MemorySink:
    """In-memory download sink."""

    def __init__(self):
        self.parts = []

    def write(self, data: bytes) -> None:
        self.parts.append(data)

    def getvalue(self) -> bytes:
        return b''.join(self.parts)


class BlobReadStream:
    """
    Buffered, seekable reader over a blob.

    The first read fetches the blob's properties; every later range request
    is conditioned on the ETag seen then, so a concurrent overwrite surfaces
    as ``PreconditionFailedError`` instead of a torn read. When the stream is
    read sequentially from offset 0 to the end, the blob's stored MD5 is
    checked at EOF.
    """

    def __init__(
        self,
        transport: Transport,
        identity: BlobIdentity,
        options: Optional[BlobRequestOptions] = None,
        state: Optional[BlobEntityState] = None,
        precondition: Optional[ConditionalPrecondition] = None,
        buffer_size: int = DEFAULT_READ_BUFFER_SIZE,
        metrics: Optional[TransferMetrics] = None,
    ):
        self.transport = transport
        self.identity = identity
        self.options = options or BlobRequestOptions()
        self.state = state or BlobEntityState()
        self.precondition = precondition or ConditionalPrecondition()
        self.buffer_size = buffer_size
        self.metrics = metrics

        self._opened = False
        self._position = 0
        self._buffer = b''
        self._buffer_offset = 0
        self._hasher: Optional[Any] = hashlib.md5()
        self._hashed_up_to = 0

    @property
    def length(self) -> int:
        if not self._opened or self.state.content_length is None:
            raise CallerUsageError("Stream length is unknown until the first read")
        return self.state.content_length

    def tell(self) -> int:
        return self._position

    def seek(self, offset: int) -> int:
        if offset < 0:
            raise CallerUsageError(f"Cannot seek to negative offset {offset}")
        if offset != self._position:
            # Out-of-order reads cannot be hashed end to end
            self._hasher = None
        self._position = offset
        return self._position

    async def _open(self) -> None:
        self.state = await fetch_properties(
            self.transport, self.identity, self.options, self.state, self.precondition, self.metrics,
        )
        self.precondition = self.precondition.with_etag(self.state.etag)
        self._opened = True

    async def _fill(self) -> None:
        length = min(self.buffer_size, self.state.content_length - self._position)
        sink = MemorySink()
        engine = ResumableDownloadEngine(
            self.transport,
            self.options,
            self.state,
            self.metrics,
        )
        await engine.download(
            self.identity,
            sink,
            TransferRange(offset=self._position, remaining_length=length),
            self.precondition,
        )
        self.state = engine.state
        self._buffer = sink.getvalue()
        self._buffer_offset = self._position

    async def read(self, size: int = -1) -> bytes:
        """
        Read up to ``size`` bytes (all remaining bytes if negative).

        Returns b'' at end of blob.

        Raises:
            IntegrityError: On a sequential full read whose MD5 does not match
        """
        if not self._opened:
            await self._open()

        total = self.state.content_length or 0
        if size < 0:
            size = total - self._position

        parts = []
        while size > 0 and self._position < total:
            start = self._position - self._buffer_offset
            if start < 0 or start >= len(self._buffer):
                await self._fill()
                start = 0
            piece = self._buffer[start:start + size]
            parts.append(piece)
            self._track_hash(piece)
            self._position += len(piece)
            size -= len(piece)

        data = b''.join(parts)
        if self._position >= total:
            self._verify_md5()
        return data

    def _track_hash(self, piece: bytes) -> None:
        if self._hasher is None:
            return
        if self._position != self._hashed_up_to:
            self._hasher = None
            return
        self._hasher.update(piece)
        self._hashed_up_to += len(piece)

    def _verify_md5(self) -> None:
        if self._hasher is None or self.options.disable_content_md5_validation:
            return
        expected = self.state.content_md5
        hasher, self._hasher = self._hasher, None
        if expected and self._hashed_up_to == self.state.content_length:
            computed = encode_digest(hasher)
            if computed != expected:
                raise IntegrityError(
                    f"Blob data corrupted (integrity check failed), Expected value is '{expected}', retrieved '{computed}'",
                    details={"reason": "md5_mismatch", "blob": str(self.identity)},
                )

    async def __aenter__(self) -> 'BlobReadStream':
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self._buffer = b''


async def fetch_properties(
    transport: Transport,
    identity: BlobIdentity,
    options: BlobRequestOptions,
    state: BlobEntityState,
    precondition: Optional[ConditionalPrecondition] = None,
    metrics: Optional[TransferMetrics] = None,
    context: Optional[OperationContext] = None,
) -> BlobEntityState:
    """Fetch a blob's properties and fold them into ``state``."""
    attempt = SimpleAttempt(
        BlobOperation.GET_PROPERTIES,
        build=lambda location: RequestSpec(
            operation=BlobOperation.GET_PROPERTIES,
            identity=identity,
            location=location,
            precondition=precondition,
        ),
        process=lambda response: apply_response(state, response.headers, properties=True),
    )
    return await execute(attempt, transport, options, context=context, metrics=metrics)
