"""
Blob Client Handles

Caller-facing handles for one blob. A handle owns the blob's identity and its
``BlobEntityState``; every operation folds its response into that state
through the reducer. Snapshot handles are read-only, and malformed requests
(unaligned pages, mistyped preconditions) fail before anything is sent.

Author: Ayodele Oladeji
Date: 2025
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..core.metrics import TransferMetrics
from .attempt import OperationContext, SimpleAttempt, TransferAttempt, execute
from .conditions import ConditionalPrecondition
from .download import BlobReadStream, MemorySink, ResumableDownloadEngine, fetch_properties
from .exceptions import BlobErrorCode, CallerUsageError, ResourceNotFoundError, error_from_status
from .models import (
    MAX_APPEND_BLOCK_SIZE,
    MAX_BLOCK_SIZE,
    MAX_PAGE_WRITE_SIZE,
    PAGE_SIZE,
    AppendUnit,
    BlobIdentity,
    BlobType,
    PageRange,
    SequenceNumberAction,
    StorageLocation,
    TransferRange,
    validate_page_batch,
)
from .options import BlobRequestOptions
from .payload import Payload, prepare_payload
from .state import BlobEntityState, apply_response, with_properties
from .strategies import AppendCommitStrategy, BlockCommitStrategy, PageCommitStrategy
from .transport import BlobOperation, RequestSpec, ResponseSpec, Transport
from .write_stream import BlobWriteStream

logger = logging.getLogger(__name__)


class BlobClient:
    """
    Handle for a blob of any type.

    Args:
        transport: Transport used for every request
        identity: Blob address; a snapshot identity makes the handle read-only
        options: Default request options, overridable per call
        metrics: Optional metrics collector
        state: Known entity state, if any
    """

    blob_type: BlobType = BlobType.UNSPECIFIED

    def __init__(
        self,
        transport: Transport,
        identity: BlobIdentity,
        options: Optional[BlobRequestOptions] = None,
        metrics: Optional[TransferMetrics] = None,
        state: Optional[BlobEntityState] = None,
    ):
        self.transport = transport
        self.identity = identity
        self.options = options or BlobRequestOptions()
        self.metrics = metrics
        self.state = state or BlobEntityState(blob_type=self.blob_type)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.identity})"

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _options(self, options: Optional[BlobRequestOptions]) -> BlobRequestOptions:
        return options or self.options

    def _condition(self, precondition: Optional[ConditionalPrecondition]) -> ConditionalPrecondition:
        return (precondition or ConditionalPrecondition()).bind(self.blob_type)

    def _request(self, operation: BlobOperation, location: StorageLocation, **kwargs: Any) -> RequestSpec:
        return RequestSpec(operation=operation, identity=self.identity, location=location, **kwargs)

    async def _execute(
        self,
        attempt: TransferAttempt,
        options: Optional[BlobRequestOptions],
        context: Optional[OperationContext],
    ) -> Any:
        return await execute(attempt, self.transport, self._options(options), context=context, metrics=self.metrics)

    async def _simple(
        self,
        operation: BlobOperation,
        options: Optional[BlobRequestOptions],
        context: Optional[OperationContext],
        expected_status: Tuple[int, ...] = (200,),
        update_length: bool = False,
        known_length: Optional[int] = None,
        fresh_state: bool = False,
        **request_kwargs: Any,
    ) -> ResponseSpec:
        """
        Run a bodiless write and fold its headers into the state. With
        ``fresh_state`` the response replaces the state instead, as for a
        create that replaces the blob.
        """

        def process(response: ResponseSpec) -> ResponseSpec:
            base = BlobEntityState(blob_type=self.blob_type) if fresh_state else self.state
            self.state = apply_response(
                base, response.headers, update_length=update_length, known_length=known_length,
            )
            return response

        attempt = SimpleAttempt(
            operation,
            build=lambda location: self._request(operation, location, **request_kwargs),
            process=process,
            expected_status=expected_status,
        )
        return await self._execute(attempt, options, context)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def fetch_attributes(
        self,
        precondition: Optional[ConditionalPrecondition] = None,
        options: Optional[BlobRequestOptions] = None,
        context: Optional[OperationContext] = None,
    ) -> BlobEntityState:
        """
        Refresh the entity state from the service.

        Raises:
            BlobTypeMismatchError: If the blob is not of this handle's type
        """
        self.state = await fetch_properties(
            self.transport, self.identity, self._options(options), self.state,
            precondition, self.metrics, context,
        )
        return self.state

    async def exists(
        self,
        options: Optional[BlobRequestOptions] = None,
        context: Optional[OperationContext] = None,
    ) -> bool:
        try:
            await self.fetch_attributes(options=options, context=context)
        except ResourceNotFoundError:
            return False
        return True

    async def download_to_stream(
        self,
        sink: Any,
        precondition: Optional[ConditionalPrecondition] = None,
        options: Optional[BlobRequestOptions] = None,
        context: Optional[OperationContext] = None,
    ) -> int:
        """Download the whole blob into ``sink``. Returns bytes written."""
        return await self._download(sink, TransferRange(), precondition, options, context)

    async def download_range_to_stream(
        self,
        sink: Any,
        offset: int,
        length: Optional[int] = None,
        precondition: Optional[ConditionalPrecondition] = None,
        options: Optional[BlobRequestOptions] = None,
        context: Optional[OperationContext] = None,
    ) -> int:
        """Download ``length`` bytes from ``offset`` (to the end if None)."""
        transfer_range = TransferRange(offset=offset, remaining_length=length)
        return await self._download(sink, transfer_range, precondition, options, context)

    async def download_to_bytes(
        self,
        precondition: Optional[ConditionalPrecondition] = None,
        options: Optional[BlobRequestOptions] = None,
        context: Optional[OperationContext] = None,
    ) -> bytes:
        sink = MemorySink()
        await self.download_to_stream(sink, precondition, options, context)
        return sink.getvalue()

    async def download_range_to_bytes(
        self,
        offset: int,
        length: Optional[int] = None,
        precondition: Optional[ConditionalPrecondition] = None,
        options: Optional[BlobRequestOptions] = None,
        context: Optional[OperationContext] = None,
    ) -> bytes:
        sink = MemorySink()
        await self.download_range_to_stream(sink, offset, length, precondition, options, context)
        return sink.getvalue()

    async def _download(
        self,
        sink: Any,
        transfer_range: TransferRange,
        precondition: Optional[ConditionalPrecondition],
        options: Optional[BlobRequestOptions],
        context: Optional[OperationContext],
    ) -> int:
        engine = ResumableDownloadEngine(self.transport, self._options(options), self.state, self.metrics)
        try:
            return await engine.download(self.identity, sink, transfer_range, precondition, context)
        finally:
            self.state = engine.state

    def open_read(
        self,
        precondition: Optional[ConditionalPrecondition] = None,
        options: Optional[BlobRequestOptions] = None,
    ) -> BlobReadStream:
        """Open a buffered reader locked to the blob version seen on first read."""
        return BlobReadStream(
            self.transport,
            self.identity,
            options=self._options(options),
            state=self.state,
            precondition=precondition,
            metrics=self.metrics,
        )

    # ------------------------------------------------------------------
    # Property and snapshot writes
    # ------------------------------------------------------------------

    async def set_properties(
        self,
        content_md5: Optional[str] = None,
        content_type: Optional[str] = None,
        precondition: Optional[ConditionalPrecondition] = None,
        options: Optional[BlobRequestOptions] = None,
        context: Optional[OperationContext] = None,
    ) -> None:
        self.identity.assert_live("set_properties")
        headers: Dict[str, str] = {}
        if content_md5 is not None:
            headers['x-ms-blob-content-md5'] = content_md5
        if content_type is not None:
            headers['x-ms-blob-content-type'] = content_type
        await self._simple(
            BlobOperation.SET_PROPERTIES, options, context,
            precondition=self._condition(precondition), headers=headers,
        )
        self.state = with_properties(self.state, content_md5=content_md5, content_type=content_type)

    async def set_metadata(
        self,
        metadata: Dict[str, str],
        precondition: Optional[ConditionalPrecondition] = None,
        options: Optional[BlobRequestOptions] = None,
        context: Optional[OperationContext] = None,
    ) -> None:
        self.identity.assert_live("set_metadata")
        await self._simple(
            BlobOperation.SET_METADATA, options, context,
            precondition=self._condition(precondition), metadata=dict(metadata),
        )
        self.state = self.state.model_copy(update={"metadata": dict(metadata)})

    async def create_snapshot(
        self,
        metadata: Optional[Dict[str, str]] = None,
        precondition: Optional[ConditionalPrecondition] = None,
        options: Optional[BlobRequestOptions] = None,
        context: Optional[OperationContext] = None,
    ) -> 'BlobClient':
        """
        Snapshot the blob.

        Returns:
            A read-only handle of the same type addressing the snapshot
        """
        self.identity.assert_live("create_snapshot")

        def process(response: ResponseSpec) -> str:
            snapshot = response.header('x-ms-snapshot')
            if not snapshot:
                raise error_from_status(
                    response.status_code,
                    message="Snapshot response did not include the snapshot timestamp",
                    operation=BlobOperation.SNAPSHOT.value,
                )
            return snapshot

        attempt = SimpleAttempt(
            BlobOperation.SNAPSHOT,
            build=lambda location: self._request(
                BlobOperation.SNAPSHOT, location,
                precondition=self._condition(precondition), metadata=metadata,
            ),
            process=process,
            expected_status=(201,),
        )
        snapshot = await self._execute(attempt, options, context)
        return self.__class__(
            self.transport,
            self.identity.with_snapshot(snapshot),
            options=self.options,
            metrics=self.metrics,
            state=self.state.model_copy(update={"metadata": dict(metadata) if metadata else dict(self.state.metadata)}),
        )

    async def _create(
        self,
        headers: Dict[str, str],
        size: int,
        precondition: Optional[ConditionalPrecondition],
        metadata: Optional[Dict[str, str]],
        options: Optional[BlobRequestOptions],
        context: Optional[OperationContext],
    ) -> None:
        self.identity.assert_live("create")
        headers = {'x-ms-blob-type': self.blob_type.value, **headers}
        condition = self._condition(precondition)
        await self._simple(
            BlobOperation.PUT_BLOB, options, context,
            expected_status=(201,), known_length=size, fresh_state=True,
            precondition=condition, headers=headers, metadata=metadata,
        )
        self.state = self.state.model_copy(update={"metadata": dict(metadata or {})})


class _AppendAttempt(TransferAttempt[AppendUnit]):
    """
    One append-block call.

    With ``absorb_conditional_errors_on_retry``, an append-position or max-size
    412 on a retry means the earlier attempt reached the service even though
    its response was lost: the block is treated as appended.
    """

    operation = BlobOperation.APPEND_BLOCK
    expected_status = (201,)
    ABSORBABLE_CODES = (
        BlobErrorCode.APPEND_POSITION_CONDITION_NOT_MET,
        BlobErrorCode.MAX_BLOB_SIZE_CONDITION_NOT_MET,
    )

    def __init__(
        self,
        blob: 'AppendBlobClient',
        data: bytes,
        content_md5: Optional[str],
        precondition: ConditionalPrecondition,
        options: BlobRequestOptions,
    ):
        self.blob = blob
        self.data = data
        self.content_md5 = content_md5
        self.precondition = precondition
        self.options = options
        self.attempts = 0
        self.absorbed = False

    def build_request(self, location: StorageLocation) -> RequestSpec:
        self.attempts += 1
        return self.blob._request(
            self.operation, location,
            precondition=self.precondition,
            payload=self.data,
            content_md5=self.content_md5,
        )

    def check_response(self, response: ResponseSpec, context: OperationContext) -> None:
        error_code = response.header('x-ms-error-code')
        if (
            response.status_code == 412
            and self.options.absorb_conditional_errors_on_retry
            and self.attempts > 1
            and error_code in self.ABSORBABLE_CODES
        ):
            logger.warning(
                f"{error_code} on retry of append to {self.blob.identity}; "
                f"treating the earlier attempt as applied"
            )
            if self.blob.metrics is not None:
                self.blob.metrics.track_absorbed_error()
            self.absorbed = True
            return
        super().check_response(response, context)

    async def process_response(self, response: ResponseSpec, context: OperationContext) -> AppendUnit:
        if self.absorbed:
            return AppendUnit(length=len(self.data), content_md5=self.content_md5, absorbed=True)

        offset_header = response.header('x-ms-blob-append-offset')
        append_offset = int(offset_header) if offset_header is not None else None
        count_header = response.header('x-ms-blob-committed-block-count')
        known_length = append_offset + len(self.data) if append_offset is not None else None
        self.blob.state = apply_response(self.blob.state, response.headers, known_length=known_length)
        return AppendUnit(
            length=len(self.data),
            content_md5=self.content_md5,
            append_offset=append_offset,
            committed_block_count=int(count_header) if count_header is not None else None,
        )


class AppendBlobClient(BlobClient):
    """Handle for an append blob."""

    blob_type = BlobType.APPEND_BLOB

    async def create(
        self,
        precondition: Optional[ConditionalPrecondition] = None,
        metadata: Optional[Dict[str, str]] = None,
        options: Optional[BlobRequestOptions] = None,
        context: Optional[OperationContext] = None,
    ) -> None:
        """Create an empty append blob, replacing any existing blob unless conditioned."""
        await self._create({}, 0, precondition, metadata, options, context)

    async def append_block(
        self,
        data: Payload,
        precondition: Optional[ConditionalPrecondition] = None,
        options: Optional[BlobRequestOptions] = None,
        context: Optional[OperationContext] = None,
    ) -> AppendUnit:
        """
        Append one block of up to 4 MiB.

        Args:
            data: Bytes or a binary stream read from its current position
            precondition: Conditions, typically an append position

        Returns:
            The appended unit with the offset the service placed it at
        """
        self.identity.assert_live("append_block")
        opts = self._options(options)
        payload, md5 = prepare_payload(data, MAX_APPEND_BLOCK_SIZE, opts.use_transactional_md5)
        return await self._append(payload, md5, self._condition(precondition), opts, context)

    async def _append(
        self,
        payload: bytes,
        content_md5: Optional[str],
        condition: ConditionalPrecondition,
        options: BlobRequestOptions,
        context: Optional[OperationContext],
    ) -> AppendUnit:
        attempt = _AppendAttempt(self, payload, content_md5, condition, options)
        return await self._execute(attempt, options, context)

    async def open_write(
        self,
        create_new: bool,
        precondition: Optional[ConditionalPrecondition] = None,
        options: Optional[BlobRequestOptions] = None,
        context: Optional[OperationContext] = None,
    ) -> BlobWriteStream:
        """
        Open a stream that appends to this blob.

        Args:
            create_new: Create (or replace) the blob first; otherwise append
                to the existing blob from its current length
            precondition: Applied to the create or attribute fetch; its lease,
                append-position and max-size parts also govern every append
        """
        self.identity.assert_live("open_write")
        opts = self._options(options)
        strategy = AppendCommitStrategy(self, self._condition(precondition), opts)
        await strategy.prepare(create_new, context)
        return BlobWriteStream(strategy, opts, context)


class PageBlobClient(BlobClient):
    """Handle for a page blob."""

    blob_type = BlobType.PAGE_BLOB

    @staticmethod
    def _check_aligned(value: int, what: str) -> None:
        if value < 0 or value % PAGE_SIZE != 0:
            raise CallerUsageError(
                f"Page blob {what} {value} must be a non-negative multiple of {PAGE_SIZE}",
                details={what: value},
            )

    async def create(
        self,
        size: int,
        sequence_number: Optional[int] = None,
        precondition: Optional[ConditionalPrecondition] = None,
        metadata: Optional[Dict[str, str]] = None,
        options: Optional[BlobRequestOptions] = None,
        context: Optional[OperationContext] = None,
    ) -> None:
        """Create a zero-filled page blob of ``size`` bytes (a multiple of 512)."""
        self._check_aligned(size, "size")
        headers = {'x-ms-blob-content-length': str(size)}
        if sequence_number is not None:
            headers['x-ms-blob-sequence-number'] = str(sequence_number)
        await self._create(headers, size, precondition, metadata, options, context)

    async def write_pages(
        self,
        data: Payload,
        offset: int,
        precondition: Optional[ConditionalPrecondition] = None,
        options: Optional[BlobRequestOptions] = None,
        context: Optional[OperationContext] = None,
    ) -> PageRange:
        """
        Write whole pages at ``offset``.

        Raises:
            CallerUsageError: If offset or length is not 512-aligned; raised
                before any request is sent
        """
        self.identity.assert_live("write_pages")
        self._check_aligned(offset, "offset")
        opts = self._options(options)
        payload, md5 = prepare_payload(data, MAX_PAGE_WRITE_SIZE, opts.use_transactional_md5)
        if not payload or len(payload) % PAGE_SIZE != 0:
            raise CallerUsageError(
                f"Page write length {len(payload)} must be a positive multiple of {PAGE_SIZE}",
                details={"length": len(payload)},
            )
        page_range = PageRange.from_offset(offset, len(payload))
        await self._put_pages(page_range, payload, md5, self._condition(precondition), opts, context)
        return page_range

    async def write_page_batch(
        self,
        pages: Iterable[Tuple[int, bytes]],
        precondition: Optional[ConditionalPrecondition] = None,
        options: Optional[BlobRequestOptions] = None,
        context: Optional[OperationContext] = None,
    ) -> List[PageRange]:
        """
        Write several (offset, data) pages in ascending offset order.

        Raises:
            CallerUsageError: If any range is unaligned or two ranges overlap;
                nothing is written in that case
        """
        self.identity.assert_live("write_pages")
        payloads = {}
        ranges = []
        for offset, data in pages:
            self._check_aligned(offset, "offset")
            page_range = PageRange.from_offset(offset, len(data))
            payloads[page_range.start_offset] = data
            ranges.append(page_range)
        ordered = validate_page_batch(ranges)
        for page_range in ordered:
            await self.write_pages(payloads[page_range.start_offset], page_range.start_offset, precondition, options, context)
        return ordered

    async def _put_pages(
        self,
        page_range: PageRange,
        payload: bytes,
        content_md5: Optional[str],
        condition: ConditionalPrecondition,
        options: BlobRequestOptions,
        context: Optional[OperationContext],
    ) -> None:
        await self._simple(
            BlobOperation.PUT_PAGE, options, context,
            expected_status=(201,),
            precondition=condition,
            page_range=page_range,
            payload=payload,
            content_md5=content_md5,
            headers={'x-ms-page-write': 'update'},
        )

    async def clear_pages(
        self,
        offset: int,
        length: int,
        precondition: Optional[ConditionalPrecondition] = None,
        options: Optional[BlobRequestOptions] = None,
        context: Optional[OperationContext] = None,
    ) -> PageRange:
        """Zero a page-aligned range without sending a payload."""
        self.identity.assert_live("clear_pages")
        self._check_aligned(offset, "offset")
        self._check_aligned(length, "length")
        page_range = PageRange.from_offset(offset, length)
        await self._simple(
            BlobOperation.CLEAR_PAGES, options, context,
            expected_status=(201,),
            precondition=self._condition(precondition),
            page_range=page_range,
            headers={'x-ms-page-write': 'clear'},
        )
        return page_range

    async def set_sequence_number(
        self,
        action: SequenceNumberAction,
        sequence_number: Optional[int] = None,
        precondition: Optional[ConditionalPrecondition] = None,
        options: Optional[BlobRequestOptions] = None,
        context: Optional[OperationContext] = None,
    ) -> int:
        """
        Change the sequence number.

        Returns:
            The sequence number the service reports afterwards
        """
        self.identity.assert_live("set_sequence_number")
        if action == SequenceNumberAction.INCREMENT:
            if sequence_number is not None:
                raise CallerUsageError("The increment action does not take a sequence number")
        elif sequence_number is None or sequence_number < 0:
            raise CallerUsageError(f"The {action.value} action requires a non-negative sequence number")

        headers = {'x-ms-sequence-number-action': action.value}
        if sequence_number is not None:
            headers['x-ms-blob-sequence-number'] = str(sequence_number)
        await self._simple(
            BlobOperation.SET_SEQUENCE_NUMBER, options, context,
            precondition=self._condition(precondition), headers=headers,
        )
        return self.state.sequence_number

    async def open_write(
        self,
        size: Optional[int] = None,
        precondition: Optional[ConditionalPrecondition] = None,
        options: Optional[BlobRequestOptions] = None,
        context: Optional[OperationContext] = None,
    ) -> BlobWriteStream:
        """
        Open a stream that writes pages from offset 0.

        Args:
            size: Create (or replace) the blob with this size; if omitted the
                existing blob is written and its size fetched
            precondition: Applied to the create or attribute fetch; only its
                lease governs the page writes
        """
        self.identity.assert_live("open_write")
        opts = self._options(options)
        strategy = PageCommitStrategy(self, self._condition(precondition), opts)
        await strategy.prepare(size, context)
        return BlobWriteStream(strategy, opts, context)


class BlockBlobClient(BlobClient):
    """Handle for a block blob."""

    blob_type = BlobType.BLOCK_BLOB

    async def put_block(
        self,
        block_id: str,
        data: Payload,
        lease_id: Optional[str] = None,
        options: Optional[BlobRequestOptions] = None,
        context: Optional[OperationContext] = None,
    ) -> None:
        """Stage an uncommitted block. Only a lease applies to staging."""
        self.identity.assert_live("put_block")
        opts = self._options(options)
        payload, md5 = prepare_payload(data, MAX_BLOCK_SIZE, opts.use_transactional_md5)
        await self._stage(block_id, payload, md5, ConditionalPrecondition(lease_id=lease_id), opts, context)

    async def _stage(
        self,
        block_id: str,
        payload: bytes,
        content_md5: Optional[str],
        condition: ConditionalPrecondition,
        options: BlobRequestOptions,
        context: Optional[OperationContext],
    ) -> None:
        attempt = SimpleAttempt(
            BlobOperation.PUT_BLOCK,
            build=lambda location: self._request(
                BlobOperation.PUT_BLOCK, location,
                precondition=condition, block_id=block_id,
                payload=payload, content_md5=content_md5,
            ),
            expected_status=(201,),
        )
        await self._execute(attempt, options, context)

    async def put_block_list(
        self,
        block_ids: List[str],
        content_md5: Optional[str] = None,
        precondition: Optional[ConditionalPrecondition] = None,
        metadata: Optional[Dict[str, str]] = None,
        options: Optional[BlobRequestOptions] = None,
        context: Optional[OperationContext] = None,
    ) -> None:
        """Commit staged blocks, in the given order, as the blob's content."""
        self.identity.assert_live("put_block_list")
        headers: Dict[str, str] = {}
        if content_md5 is not None:
            headers['x-ms-blob-content-md5'] = content_md5
        await self._simple(
            BlobOperation.PUT_BLOCK_LIST, options, context,
            expected_status=(201,),
            precondition=self._condition(precondition),
            block_list=list(block_ids),
            headers=headers,
            metadata=metadata,
        )
        self.state = with_properties(self.state, content_md5=content_md5)

    async def open_write(
        self,
        precondition: Optional[ConditionalPrecondition] = None,
        options: Optional[BlobRequestOptions] = None,
        context: Optional[OperationContext] = None,
    ) -> BlobWriteStream:
        """
        Open a stream that stages blocks and commits them on ``commit``.

        Args:
            precondition: Applied when the block list is committed; only its
                lease governs staging
        """
        self.identity.assert_live("open_write")
        opts = self._options(options)
        strategy = BlockCommitStrategy(self, self._condition(precondition), opts)
        await strategy.prepare(context)
        return BlobWriteStream(strategy, opts, context)

    async def upload_from_bytes(
        self,
        data: bytes,
        precondition: Optional[ConditionalPrecondition] = None,
        options: Optional[BlobRequestOptions] = None,
        context: Optional[OperationContext] = None,
    ) -> None:
        """Upload ``data`` as the blob's whole content through a write stream."""
        async with await self.open_write(precondition, options, context) as stream:
            await stream.write(data)
