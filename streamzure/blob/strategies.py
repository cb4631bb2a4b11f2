"""
Commit Strategies

A write stream hands full units of buffered bytes to one commit strategy,
chosen when the stream is opened:

- ``AppendCommitStrategy`` appends each unit at an explicit append position.
- ``PageCommitStrategy`` writes 512-aligned units at a forward-moving offset
  of a fixed-size page blob.
- ``BlockCommitStrategy`` stages each unit as a block and commits the ordered
  block list at the end.

Author: Ayodele Oladeji
Date: 2025
"""

import base64
import logging
import uuid
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, List, Optional

from .attempt import OperationContext
from .conditions import ConditionalPrecondition
from .exceptions import BlobErrorCode, CallerUsageError, PreconditionFailedError
from .models import (
    MAX_APPEND_BLOCK_SIZE,
    MAX_BLOCK_SIZE,
    MAX_PAGE_WRITE_SIZE,
    PAGE_SIZE,
    AppendUnit,
    BlobType,
    PageRange,
)
from .options import BlobRequestOptions
from .state import with_properties
from .transport import BlobOperation

if TYPE_CHECKING:
    from .client import AppendBlobClient, BlobClient, BlockBlobClient, PageBlobClient

logger = logging.getLogger(__name__)


class CommitStrategy(ABC):
    """
    Turns buffered writes into durable blob content for one blob type.

    Args:
        blob: Handle of the blob being written; its state is kept current
        precondition: Conditions given when the stream was opened
        options: Request options for every call the stream makes
    """

    blob_type: BlobType = BlobType.UNSPECIFIED
    max_unit_size: int = MAX_BLOCK_SIZE

    def __init__(
        self,
        blob: 'BlobClient',
        precondition: ConditionalPrecondition,
        options: BlobRequestOptions,
    ):
        self.blob = blob
        self.precondition = precondition
        self.options = options
        self.bytes_committed = 0

    @property
    def unit_size(self) -> int:
        """Bytes sent per request."""
        return min(self.options.stream_write_size_in_bytes, self.max_unit_size)

    def check_seek(self, offset: int, buffered: int) -> None:
        """
        Validate a seek before anything is flushed.

        Raises:
            CallerUsageError: Streams are sequential unless a strategy says otherwise
        """
        raise CallerUsageError(
            f"Seeking is not supported when writing a {self.blob_type.value}",
            details={"offset": offset},
        )

    def seek(self, offset: int) -> None:
        """Move the write position. Called only after ``check_seek`` and a flush."""

    def check_unit(self, length: int) -> None:
        """Validate a unit about to be dispatched."""

    @abstractmethod
    async def dispatch(self, data: bytes, content_md5: Optional[str], context: Optional[OperationContext]) -> None:
        """Send one unit. Called sequentially, never concurrently."""

    async def finalize(self, blob_md5: Optional[str], context: Optional[OperationContext]) -> None:
        """Make the written content final, storing ``blob_md5`` if given."""
        if blob_md5 is not None:
            await self.blob.set_properties(
                content_md5=blob_md5,
                precondition=self.precondition.lease_only(),
                options=self.options,
                context=context,
            )

    def _track(self, length: int) -> None:
        self.bytes_committed += length
        if self.blob.metrics is not None:
            self.blob.metrics.track_upload_bytes(self.blob_type.value, length)


class AppendCommitStrategy(CommitStrategy):
    """
    Appends each unit with ``if_append_position_equal`` set to where the
    stream expects the blob to end. The next position comes from the offset
    the service reports, so the stream stays consistent with what the service
    actually accepted.
    """

    blob_type = BlobType.APPEND_BLOB
    max_unit_size = MAX_APPEND_BLOCK_SIZE

    blob: 'AppendBlobClient'

    def __init__(self, blob: 'AppendBlobClient', precondition: ConditionalPrecondition, options: BlobRequestOptions):
        super().__init__(blob, precondition, options)
        self.write_condition = ConditionalPrecondition(
            lease_id=precondition.lease_id,
            if_max_size_less_than_or_equal=precondition.if_max_size_less_than_or_equal,
            blob_type=BlobType.APPEND_BLOB,
        )
        self.current_offset = 0
        self.units: List[AppendUnit] = []

    async def prepare(self, create_new: bool, context: Optional[OperationContext]) -> None:
        """
        Create the blob, or read the existing blob's length.

        Raises:
            CallerUsageError: If a whole-blob MD5 is requested for an existing blob
        """
        access = self.precondition.without_positional()
        if create_new:
            await self.blob.create(precondition=access, options=self.options, context=context)
        else:
            if self.options.store_blob_content_md5:
                raise CallerUsageError(
                    "A whole-blob MD5 cannot be computed when appending to an existing blob; "
                    "disable store_blob_content_md5 or create a new blob"
                )
            await self.blob.fetch_attributes(precondition=access, options=self.options, context=context)

        if self.precondition.if_append_position_equal is not None:
            self.current_offset = self.precondition.if_append_position_equal
        else:
            self.current_offset = self.blob.state.content_length or 0

    async def dispatch(self, data: bytes, content_md5: Optional[str], context: Optional[OperationContext]) -> None:
        max_size = self.write_condition.if_max_size_less_than_or_equal
        if max_size is not None and self.current_offset + len(data) > max_size:
            raise PreconditionFailedError(
                412,
                error_code=BlobErrorCode.MAX_BLOB_SIZE_CONDITION_NOT_MET,
                operation=BlobOperation.APPEND_BLOCK.value,
                message=(
                    f"Appending {len(data)} bytes at offset {self.current_offset} "
                    f"would exceed the maximum blob size of {max_size}"
                ),
            )

        condition = self.write_condition.with_append_position(self.current_offset)
        unit = await self.blob._append(data, content_md5, condition, self.options, context)
        self.units.append(unit)

        start = unit.append_offset if unit.append_offset is not None else self.current_offset
        self.current_offset = start + len(data)
        if unit.absorbed:
            self.blob.state = with_properties(self.blob.state, content_length=self.current_offset)
        self._track(len(data))


class PageCommitStrategy(CommitStrategy):
    """
    Writes whole pages at a forward-only offset within a blob whose size is
    fixed when the stream opens. Only the lease from the opening precondition
    applies to the page writes.
    """

    blob_type = BlobType.PAGE_BLOB
    max_unit_size = MAX_PAGE_WRITE_SIZE

    blob: 'PageBlobClient'

    def __init__(self, blob: 'PageBlobClient', precondition: ConditionalPrecondition, options: BlobRequestOptions):
        super().__init__(blob, precondition, options)
        self.write_condition = precondition.lease_only()
        self.current_offset = 0
        self.size = 0

    @property
    def unit_size(self) -> int:
        size = super().unit_size
        return size - size % PAGE_SIZE

    async def prepare(self, size: Optional[int], context: Optional[OperationContext]) -> None:
        """
        Create the blob with ``size`` bytes, or read the existing blob's size.

        Raises:
            CallerUsageError: If ``size`` is unaligned, or a whole-blob MD5 is
                requested for an existing blob
        """
        access = self.precondition.without_positional()
        if size is not None:
            await self.blob.create(size, precondition=access, options=self.options, context=context)
            self.size = size
        else:
            if self.options.store_blob_content_md5:
                raise CallerUsageError(
                    "A whole-blob MD5 cannot be computed when writing to an existing page blob; "
                    "disable store_blob_content_md5 or pass a size to create a new blob"
                )
            await self.blob.fetch_attributes(precondition=access, options=self.options, context=context)
            self.size = self.blob.state.content_length or 0

    def check_seek(self, offset: int, buffered: int) -> None:
        position = self.current_offset + buffered
        if offset % PAGE_SIZE != 0:
            raise CallerUsageError(
                f"Page stream offset {offset} must be a multiple of {PAGE_SIZE}",
                details={"offset": offset},
            )
        if offset > self.size:
            raise CallerUsageError(
                f"Cannot seek to {offset} beyond the end of a {self.size} byte page blob",
                details={"offset": offset, "size": self.size},
            )
        if offset < position:
            raise CallerUsageError(
                f"Page streams only move forward: cannot seek to {offset} from {position}",
                details={"offset": offset, "position": position},
            )

    def seek(self, offset: int) -> None:
        self.current_offset = offset

    def check_unit(self, length: int) -> None:
        if length % PAGE_SIZE != 0:
            raise CallerUsageError(
                f"Page blob writes must be a multiple of {PAGE_SIZE} bytes; {length} bytes are buffered",
                details={"length": length},
            )
        if self.current_offset + length > self.size:
            raise CallerUsageError(
                f"Writing {length} bytes at {self.current_offset} would pass the end of a {self.size} byte page blob",
                details={"offset": self.current_offset, "length": length, "size": self.size},
            )

    async def dispatch(self, data: bytes, content_md5: Optional[str], context: Optional[OperationContext]) -> None:
        page_range = PageRange.from_offset(self.current_offset, len(data))
        await self.blob._put_pages(page_range, data, content_md5, self.write_condition, self.options, context)
        self.current_offset += len(data)
        self._track(len(data))


class BlockCommitStrategy(CommitStrategy):
    """
    Stages units as uncommitted blocks, then commits them in write order with
    the opening precondition. Nothing is visible on the blob until commit.
    """

    blob_type = BlobType.BLOCK_BLOB
    max_unit_size = MAX_BLOCK_SIZE

    blob: 'BlockBlobClient'

    def __init__(self, blob: 'BlockBlobClient', precondition: ConditionalPrecondition, options: BlobRequestOptions):
        super().__init__(blob, precondition, options)
        self.block_prefix = ''
        self.block_ids: List[str] = []

    async def prepare(self, context: Optional[OperationContext]) -> None:
        self.block_prefix = uuid.uuid4().hex

    def block_id(self, index: int) -> str:
        """Base64 id of the ``index``-th block; every id has the same length."""
        raw = f"{self.block_prefix}-{index:06d}"
        return base64.b64encode(raw.encode('utf-8')).decode('ascii')

    async def dispatch(self, data: bytes, content_md5: Optional[str], context: Optional[OperationContext]) -> None:
        block_id = self.block_id(len(self.block_ids))
        await self.blob._stage(block_id, data, content_md5, self.precondition.lease_only(), self.options, context)
        self.block_ids.append(block_id)
        self._track(len(data))

    async def finalize(self, blob_md5: Optional[str], context: Optional[OperationContext]) -> None:
        await self.blob.put_block_list(
            self.block_ids,
            content_md5=blob_md5,
            precondition=self.precondition,
            options=self.options,
            context=context,
        )
        self.blob.state = with_properties(self.blob.state, content_length=self.bytes_committed)
        logger.debug(f"Committed {len(self.block_ids)} blocks to {self.blob.identity}")
