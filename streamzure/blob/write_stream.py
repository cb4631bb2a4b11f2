"""
Blob Write Stream

Buffers caller writes into transport-sized units and hands each full unit to
the stream's commit strategy, one at a time and in write order. ``commit``
flushes the remainder and finalizes. A failed dispatch poisons the stream:
every later call re-raises the same error.

Author: Ayodele Oladeji
Date: 2025
"""

import hashlib
import logging
from typing import Any, Optional

from .attempt import OperationContext
from .exceptions import CallerUsageError
from .options import BlobRequestOptions
from .payload import Payload, content_md5, encode_digest
from .strategies import CommitStrategy

logger = logging.getLogger(__name__)


class BlobWriteStream:
    """
    Writable stream over one blob.

    Use as an async context manager to commit on a clean exit; leaving the
    block with an exception skips the commit.

    Args:
        strategy: Commit strategy for the blob type, already prepared
        options: Request options; MD5 and unit-size settings are read here
        context: Operation context shared by every request of the stream
    """

    def __init__(
        self,
        strategy: CommitStrategy,
        options: Optional[BlobRequestOptions] = None,
        context: Optional[OperationContext] = None,
    ):
        self.strategy = strategy
        self.options = options or strategy.options
        self.context = context
        self._buffer = bytearray()
        self._committed = False
        self._last_error: Optional[BaseException] = None
        self._blob_hasher: Optional[Any] = (
            hashlib.md5() if self.options.store_blob_content_md5 else None
        )

    @property
    def committed(self) -> bool:
        return self._committed

    @property
    def unit_size(self) -> int:
        return self.strategy.unit_size

    def _check_usable(self) -> None:
        if self._committed:
            raise CallerUsageError("The stream has already been committed")
        if self._last_error is not None:
            raise self._last_error

    async def write(self, data: Payload) -> None:
        """
        Buffer ``data``, dispatching every unit that fills up.

        Raises:
            CallerUsageError: After commit
            BlobTransferError: The first failed dispatch, on this and every later call
        """
        self._check_usable()
        if isinstance(data, (bytes, bytearray, memoryview)):
            await self._write_bytes(data)
            return

        # Streams are pulled at most one unit at a time
        while True:
            chunk = data.read(self.unit_size - len(self._buffer))
            if chunk is None:
                raise CallerUsageError("Payload stream returned no data; non-blocking streams are not supported")
            if not isinstance(chunk, (bytes, bytearray)):
                raise CallerUsageError("Payload stream must be opened in binary mode")
            if not chunk:
                return
            await self._write_bytes(chunk)

    async def _write_bytes(self, data: Any) -> None:
        view = memoryview(data)
        unit_size = self.unit_size
        while view:
            space = unit_size - len(self._buffer)
            self._buffer += view[:space]
            view = view[space:]
            if len(self._buffer) >= unit_size:
                await self._dispatch()

    async def seek(self, offset: int) -> int:
        """
        Move the write position. Only page streams support this, and only
        forward; the check runs before anything buffered is flushed.
        """
        self._check_usable()
        self.strategy.check_seek(offset, len(self._buffer))
        await self.flush()
        if self._blob_hasher is not None and offset != self.strategy.current_offset:
            logger.warning(
                f"Seek on {self.strategy.blob.identity} skips bytes; the whole-blob MD5 will not be stored"
            )
            self._blob_hasher = None
        self.strategy.seek(offset)
        return offset

    async def flush(self) -> None:
        """Dispatch whatever is buffered."""
        self._check_usable()
        if self._buffer:
            await self._dispatch()

    async def commit(self) -> None:
        """
        Flush and finalize. Afterwards the stream rejects every call.

        Raises:
            CallerUsageError: If already committed, or for a page stream whose
                remainder is not page-aligned
        """
        self._check_usable()
        await self.flush()
        blob_md5 = encode_digest(self._blob_hasher) if self._blob_hasher is not None else None
        try:
            await self.strategy.finalize(blob_md5, self.context)
        except Exception as e:
            self._last_error = e
            raise
        self._committed = True
        logger.debug(
            f"Committed {self.strategy.bytes_committed} bytes to {self.strategy.blob.identity}"
        )

    async def _dispatch(self) -> None:
        data = bytes(self._buffer)
        self.strategy.check_unit(len(data))
        self._buffer.clear()

        md5 = content_md5(data) if self.options.use_transactional_md5 else None
        try:
            await self.strategy.dispatch(data, md5, self.context)
        except Exception as e:
            self._last_error = e
            raise
        if self._blob_hasher is not None:
            self._blob_hasher.update(data)

    async def __aenter__(self) -> 'BlobWriteStream':
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc_type is None and not self._committed:
            await self.commit()
