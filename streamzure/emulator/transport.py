"""
In-Memory Transport

Serves ``RequestSpec`` objects from a ``BlobServiceBackend`` and produces the
``ResponseSpec`` a real service would return, headers included. Faults can be
scheduled per operation to reproduce dropped connections, lost responses,
throttling and corrupted bodies.

Author: Ayodele Oladeji
Date: 2025
"""

import logging
import uuid
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from ..blob.conditions import HTTP_DATE_FORMAT, ConditionalPrecondition
from ..blob.exceptions import BlobErrorCode, TransientTransportError
from ..blob.models import BlobType, SequenceNumberAction, StorageLocation
from ..blob.payload import content_md5
from ..blob.transport import BlobOperation, RequestSpec, ResponseSpec, Transport
from .backend import BlobServiceBackend, EmulatorError, InvalidInputError, StoredBlob

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024

DEFAULT_ERROR_CODES = {
    408: "OperationTimedOut",
    500: BlobErrorCode.INTERNAL_ERROR,
    503: BlobErrorCode.SERVER_BUSY,
}


class FaultKind:
    """What a scheduled fault does to the matching request."""
    STATUS = "status"
    DROP = "drop"
    LOST_RESPONSE = "lost_response"
    CORRUPT = "corrupt"
    RAISE = "raise"


@dataclass
class Fault:
    """
    A failure injected into the next ``times`` requests matching
    ``operation`` (and ``location``, if set).
    """
    operation: BlobOperation
    kind: str
    times: int = 1
    status_code: int = 500
    error_code: Optional[str] = None
    after_bytes: int = 0
    location: Optional[StorageLocation] = None
    exception: Optional[BaseException] = None

    def matches(self, request: RequestSpec) -> bool:
        if self.times <= 0 or request.operation != self.operation:
            return False
        return self.location is None or request.location == self.location


def _http_date(blob: StoredBlob) -> str:
    return blob.last_modified.strftime(HTTP_DATE_FORMAT)


class MemoryTransport(Transport):
    """
    Transport backed by an in-memory service.

    Both replicas read from the same backend; ``lag_secondary`` makes the
    secondary answer 404 for a blob it has not caught up with yet.

    Args:
        backend: Service to serve from; a new one is created if omitted
        chunk_size: Size of the body chunks yielded by responses
    """

    def __init__(self, backend: Optional[BlobServiceBackend] = None, chunk_size: int = DEFAULT_CHUNK_SIZE):
        self.backend = backend or BlobServiceBackend()
        self.chunk_size = chunk_size
        self.requests: List[RequestSpec] = []
        self.faults: List[Fault] = []
        self.before_send: Optional[Callable[[RequestSpec], Awaitable[None]]] = None
        self._lagging: Set[Tuple[str, str]] = set()

    # ========================================================================
    # Fault scheduling
    # ========================================================================

    def fail_with_status(
        self,
        operation: BlobOperation,
        status_code: int,
        times: int = 1,
        error_code: Optional[str] = None,
        location: Optional[StorageLocation] = None,
    ) -> Fault:
        """Answer matching requests with ``status_code`` without touching the backend."""
        return self._schedule(Fault(
            operation, FaultKind.STATUS, times,
            status_code=status_code, error_code=error_code, location=location,
        ))

    def drop_connection(self, operation: BlobOperation, after_bytes: int, times: int = 1) -> Fault:
        """Cut the response body after ``after_bytes`` bytes."""
        return self._schedule(Fault(operation, FaultKind.DROP, times, after_bytes=after_bytes))

    def lose_response(self, operation: BlobOperation, times: int = 1) -> Fault:
        """Apply the request, then fail as if the response never arrived."""
        return self._schedule(Fault(operation, FaultKind.LOST_RESPONSE, times))

    def corrupt_body(self, operation: BlobOperation, times: int = 1) -> Fault:
        """Flip the first byte of the response body."""
        return self._schedule(Fault(operation, FaultKind.CORRUPT, times))

    def raise_error(self, operation: BlobOperation, exception: BaseException, times: int = 1) -> Fault:
        """Raise ``exception`` from ``send`` before the request is applied."""
        return self._schedule(Fault(operation, FaultKind.RAISE, times, exception=exception))

    def lag_secondary(self, container_name: str, blob_name: str) -> None:
        self._lagging.add((container_name, blob_name))

    def _schedule(self, fault: Fault) -> Fault:
        self.faults.append(fault)
        return fault

    def _take_fault(self, request: RequestSpec) -> Optional[Fault]:
        for fault in self.faults:
            if fault.matches(request):
                fault.times -= 1
                return fault
        return None

    # ========================================================================
    # Inspection
    # ========================================================================

    def calls(self, operation: Optional[BlobOperation] = None) -> List[RequestSpec]:
        """Requests sent so far, optionally only those for ``operation``."""
        if operation is None:
            return list(self.requests)
        return [request for request in self.requests if request.operation == operation]

    # ========================================================================
    # Transport
    # ========================================================================

    async def send(self, request: RequestSpec) -> ResponseSpec:
        self.requests.append(request)
        if self.before_send is not None:
            await self.before_send(request)

        fault = self._take_fault(request)
        if fault is not None:
            logger.debug(f"Injecting {fault.kind} fault into {request.operation.value}")
            if fault.kind == FaultKind.RAISE:
                raise fault.exception
            if fault.kind == FaultKind.STATUS:
                error_code = fault.error_code or DEFAULT_ERROR_CODES.get(fault.status_code, "InjectedFault")
                return self._error_response(request, fault.status_code, error_code)

        key = (request.identity.container_name, request.identity.blob_name)
        if request.location == StorageLocation.SECONDARY and key in self._lagging:
            return self._error_response(request, 404, BlobErrorCode.BLOB_NOT_FOUND)

        try:
            status_code, headers, body = await self._dispatch(request)
        except EmulatorError as e:
            return self._error_response(request, e.status_code, e.error_code)

        if fault is not None and fault.kind == FaultKind.LOST_RESPONSE:
            raise TransientTransportError(
                reason="ConnectionResetError",
                message=f"Connection reset before the {request.operation.value} response was received",
            )
        if fault is not None and fault.kind == FaultKind.CORRUPT and body:
            body = bytes([body[0] ^ 0xFF]) + body[1:]
        drop_after = fault.after_bytes if fault is not None and fault.kind == FaultKind.DROP else None

        headers['x-ms-request-id'] = str(uuid.uuid4())
        return ResponseSpec(
            status_code=status_code,
            headers=headers,
            body=self._chunks(body, drop_after),
            location=request.location,
        )

    def _error_response(self, request: RequestSpec, status_code: int, error_code: str) -> ResponseSpec:
        return ResponseSpec(
            status_code=status_code,
            headers={'x-ms-error-code': error_code, 'x-ms-request-id': str(uuid.uuid4())},
            location=request.location,
        )

    async def _chunks(self, body: bytes, drop_after: Optional[int]) -> AsyncIterator[bytes]:
        limit = len(body) if drop_after is None else min(drop_after, len(body))
        for start in range(0, limit, self.chunk_size):
            yield body[start:min(start + self.chunk_size, limit)]
        if drop_after is not None:
            raise TransientTransportError(
                reason="ConnectionResetError",
                message=f"Connection reset after {limit} bytes of the response body",
            )

    # ========================================================================
    # Request dispatch
    # ========================================================================

    async def _dispatch(self, request: RequestSpec) -> Tuple[int, Dict[str, str], bytes]:
        headers = {k.lower(): v for k, v in request.all_headers().items()}
        condition = ConditionalPrecondition.from_headers(headers)
        identity = request.identity
        container, name = identity.container_name, identity.blob_name
        operation = request.operation
        backend = self.backend

        if operation == BlobOperation.GET_BLOB:
            return await self._get_blob(request, headers, condition)

        if operation == BlobOperation.GET_PROPERTIES:
            blob = await backend.get_properties(container, name, identity.snapshot, condition)
            return 200, self._properties_headers(blob, content_length=True), b""

        if operation == BlobOperation.PUT_BLOB:
            blob_type = BlobType(headers['x-ms-blob-type'])
            blob = await backend.put_blob(
                container, name, blob_type,
                content=request.payload or b"",
                size=int(headers.get('x-ms-blob-content-length', 0)),
                sequence_number=int(headers.get('x-ms-blob-sequence-number', 0)),
                content_type=headers.get('x-ms-blob-content-type'),
                metadata=request.metadata,
                condition=condition,
            )
            return 201, self._write_headers(blob), b""

        if operation == BlobOperation.APPEND_BLOCK:
            blob, offset = await backend.append_block(
                container, name, request.payload or b"", request.content_md5, condition,
            )
            response_headers = self._write_headers(blob)
            response_headers['x-ms-blob-append-offset'] = str(offset)
            response_headers['x-ms-blob-committed-block-count'] = str(blob.committed_block_count)
            return 201, response_headers, b""

        if operation in (BlobOperation.PUT_PAGE, BlobOperation.CLEAR_PAGES):
            if request.page_range is None:
                raise InvalidInputError("Page writes require a page range")
            clearing = headers.get('x-ms-page-write') == 'clear'
            blob = await backend.put_pages(
                container, name,
                request.page_range.start_offset, request.page_range.end_offset,
                None if clearing else (request.payload or b""),
                request.content_md5, condition,
            )
            response_headers = self._write_headers(blob)
            response_headers['x-ms-blob-sequence-number'] = str(blob.sequence_number)
            return 201, response_headers, b""

        if operation == BlobOperation.SET_SEQUENCE_NUMBER:
            value = headers.get('x-ms-blob-sequence-number')
            blob = await backend.set_sequence_number(
                container, name,
                SequenceNumberAction(headers['x-ms-sequence-number-action']),
                int(value) if value is not None else None,
                condition,
            )
            response_headers = self._write_headers(blob)
            response_headers['x-ms-blob-sequence-number'] = str(blob.sequence_number)
            return 200, response_headers, b""

        if operation == BlobOperation.PUT_BLOCK:
            await backend.put_block(
                container, name, request.block_id, request.payload or b"",
                request.content_md5, condition.lease_id,
            )
            return 201, {}, b""

        if operation == BlobOperation.PUT_BLOCK_LIST:
            blob = await backend.put_block_list(
                container, name, list(request.block_list or []),
                content_md5=headers.get('x-ms-blob-content-md5'),
                metadata=request.metadata,
                condition=condition,
            )
            return 201, self._write_headers(blob), b""

        if operation == BlobOperation.SET_PROPERTIES:
            blob = await backend.set_properties(
                container, name,
                content_md5=headers.get('x-ms-blob-content-md5'),
                content_type=headers.get('x-ms-blob-content-type'),
                condition=condition,
            )
            return 200, self._write_headers(blob), b""

        if operation == BlobOperation.SET_METADATA:
            blob = await backend.set_metadata(container, name, dict(request.metadata or {}), condition)
            return 200, self._write_headers(blob), b""

        if operation == BlobOperation.SNAPSHOT:
            snapshot = await backend.create_snapshot(container, name, request.metadata, condition)
            response_headers = self._write_headers(snapshot)
            response_headers['x-ms-snapshot'] = snapshot.snapshot
            return 201, response_headers, b""

        raise InvalidInputError(f"Unsupported operation {operation.value}", status_code=501, error_code="NotImplemented")

    async def _get_blob(
        self,
        request: RequestSpec,
        headers: Dict[str, str],
        condition: ConditionalPrecondition,
    ) -> Tuple[int, Dict[str, str], bytes]:
        identity = request.identity
        byte_range = None
        if request.transfer_range is not None and request.transfer_range.is_range:
            start = request.transfer_range.offset
            length = request.transfer_range.remaining_length
            byte_range = (start, start + length - 1 if length is not None else None)

        blob, data, served = await self.backend.get_blob(
            identity.container_name, identity.blob_name, identity.snapshot,
            byte_range=byte_range,
            range_md5=headers.get('x-ms-range-get-content-md5') == 'true',
            condition=condition,
        )

        response_headers = self._properties_headers(blob, content_length=False)
        response_headers['Content-Length'] = str(len(data))
        if served is None:
            if blob.content_md5:
                response_headers['Content-MD5'] = blob.content_md5
            return 200, response_headers, data

        start, last = served
        response_headers['Content-Range'] = f"bytes {start}-{last}/{blob.content_length}"
        if blob.content_md5:
            response_headers['x-ms-blob-content-md5'] = blob.content_md5
        if headers.get('x-ms-range-get-content-md5') == 'true':
            response_headers['Content-MD5'] = content_md5(data)
        return 206, response_headers, data

    @staticmethod
    def _write_headers(blob: StoredBlob) -> Dict[str, str]:
        return {'ETag': blob.etag, 'Last-Modified': _http_date(blob)}

    @staticmethod
    def _properties_headers(blob: StoredBlob, content_length: bool) -> Dict[str, str]:
        headers = {
            'ETag': blob.etag,
            'Last-Modified': _http_date(blob),
            'Content-Type': blob.content_type,
            'x-ms-blob-type': blob.blob_type.value,
            'x-ms-lease-status': blob.lease_status.value,
            'x-ms-lease-state': blob.lease_state.value,
        }
        if content_length:
            headers['Content-Length'] = str(blob.content_length)
            if blob.content_md5:
                headers['Content-MD5'] = blob.content_md5
        if blob.lease is not None and blob.lease.is_active():
            headers['x-ms-lease-duration'] = 'infinite' if blob.lease.duration == -1 else 'fixed'
        if blob.blob_type == BlobType.PAGE_BLOB:
            headers['x-ms-blob-sequence-number'] = str(blob.sequence_number)
        if blob.blob_type == BlobType.APPEND_BLOB:
            headers['x-ms-blob-committed-block-count'] = str(blob.committed_block_count)
        if blob.snapshot:
            headers['x-ms-snapshot'] = blob.snapshot
        for key, value in blob.metadata.items():
            headers[f'x-ms-meta-{key}'] = value
        return headers
