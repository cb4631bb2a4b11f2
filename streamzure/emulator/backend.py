"""
In-Memory Blob Service Backend

Storage side of the emulator: containers, the three blob types, leases,
snapshots and the conditional checks the service applies to every request.

Author: Ayodele Oladeji
Date: 2025
"""

import asyncio
import hashlib
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from ..blob.conditions import ConditionalPrecondition
from ..blob.exceptions import BlobErrorCode
from ..blob.models import (
    MAX_APPEND_BLOCK_SIZE,
    MAX_RANGE_GET_MD5_SIZE,
    PAGE_SIZE,
    BlobType,
    ContainerNameValidator,
    LeaseState,
    LeaseStatus,
    SequenceNumberAction,
)
from ..blob.payload import content_md5 as content_md5_of


class EmulatorError(Exception):
    """Base class for service errors; carries the HTTP status and error code."""

    status_code: int = 500
    error_code: str = BlobErrorCode.INTERNAL_ERROR

    def __init__(self, message: str, error_code: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.error_code
        self.status_code = status_code or self.__class__.status_code


class ContainerNotFoundError(EmulatorError):
    """Raised when a container is not found."""
    status_code = 404
    error_code = BlobErrorCode.CONTAINER_NOT_FOUND


class InvalidContainerNameError(EmulatorError):
    """Raised when a container name is invalid."""
    status_code = 400
    error_code = "InvalidResourceName"


class BlobNotFoundError(EmulatorError):
    """Raised when a blob or snapshot is not found."""
    status_code = 404
    error_code = BlobErrorCode.BLOB_NOT_FOUND


class BlobAlreadyExistsError(EmulatorError):
    """Raised when If-None-Match: * is sent for a blob that exists."""
    status_code = 409
    error_code = BlobErrorCode.BLOB_ALREADY_EXISTS


class InvalidBlobTypeError(EmulatorError):
    """Raised when an operation does not apply to the blob's type."""
    status_code = 409
    error_code = BlobErrorCode.INVALID_BLOB_TYPE


class ConditionNotMetError(EmulatorError):
    """Raised when a conditional header does not hold."""
    status_code = 412
    error_code = BlobErrorCode.CONDITION_NOT_MET


class NotModifiedError(EmulatorError):
    """Raised for a read whose If-None-Match or If-Modified-Since says nothing changed."""
    status_code = 304
    error_code = BlobErrorCode.CONDITION_NOT_MET


class LeaseAlreadyPresentError(EmulatorError):
    """Raised when attempting to acquire a lease on an already leased blob."""
    status_code = 409
    error_code = BlobErrorCode.LEASE_ALREADY_PRESENT


class InvalidRangeError(EmulatorError):
    """Raised when a requested range does not fit the blob."""
    status_code = 416
    error_code = BlobErrorCode.INVALID_RANGE


class InvalidInputError(EmulatorError):
    """Raised for malformed requests: bad page ranges, unknown blocks, bad hashes."""
    status_code = 400
    error_code = "InvalidInput"


class Lease(BaseModel):
    """Active lease on a blob."""
    lease_id: str
    duration: int = Field(description="Seconds, or -1 for infinite")
    acquired_time: datetime
    expiration_time: Optional[datetime] = None
    broken: bool = False

    def is_expired(self) -> bool:
        return self.expiration_time is not None and datetime.now(timezone.utc) >= self.expiration_time

    def is_active(self) -> bool:
        return not self.broken and not self.is_expired()


class StoredBlob(BaseModel):
    """One blob (or snapshot) as the service stores it."""
    container_name: str
    name: str
    blob_type: BlobType
    content: bytes = b""
    etag: str
    last_modified: datetime
    content_md5: Optional[str] = None
    content_type: str = "application/octet-stream"
    metadata: Dict[str, str] = Field(default_factory=dict)
    sequence_number: int = 0
    committed_block_count: int = 0
    committed_blocks: List[str] = Field(default_factory=list)
    committed_block_sizes: List[int] = Field(default_factory=list)
    snapshot: Optional[str] = None
    lease: Optional[Lease] = None

    @property
    def content_length(self) -> int:
        return len(self.content)

    @property
    def lease_status(self) -> LeaseStatus:
        return LeaseStatus.LOCKED if self.lease and self.lease.is_active() else LeaseStatus.UNLOCKED

    @property
    def lease_state(self) -> LeaseState:
        if self.lease is None:
            return LeaseState.AVAILABLE
        if self.lease.broken:
            return LeaseState.BROKEN
        if self.lease.is_expired():
            return LeaseState.EXPIRED
        return LeaseState.LEASED


class BlobServiceBackend:
    """
    In-memory blob service.

    Every public method takes the conditions the request carried and checks
    them against the blob under the backend lock, so each request is applied
    atomically or not at all.
    """

    def __init__(self):
        """Initialize the backend."""
        self._containers: Dict[str, datetime] = {}
        self._blobs: Dict[Tuple[str, str], StoredBlob] = {}
        self._snapshots: Dict[Tuple[str, str, str], StoredBlob] = {}
        self._uncommitted: Dict[Tuple[str, str], Dict[str, bytes]] = {}
        self._lock = asyncio.Lock()

    # ========================================================================
    # Containers
    # ========================================================================

    async def create_container(self, name: str) -> None:
        """
        Create a container if it does not exist.

        Raises:
            InvalidContainerNameError: If name is invalid
        """
        is_valid, error = ContainerNameValidator.validate(name)
        if not is_valid:
            raise InvalidContainerNameError(error)
        async with self._lock:
            self._containers.setdefault(name, datetime.now(timezone.utc))

    async def reset(self) -> None:
        """Drop every container and blob."""
        async with self._lock:
            self._containers.clear()
            self._blobs.clear()
            self._snapshots.clear()
            self._uncommitted.clear()

    # ========================================================================
    # Helpers
    # ========================================================================

    def _generate_etag(self) -> str:
        """Generate a unique ETag."""
        return f'"{hashlib.md5(uuid.uuid4().bytes).hexdigest()}"'

    @staticmethod
    def _now() -> datetime:
        # HTTP dates carry whole seconds
        return datetime.now(timezone.utc).replace(microsecond=0)

    def _require_container(self, container_name: str) -> None:
        if container_name not in self._containers:
            raise ContainerNotFoundError(f"Container '{container_name}' not found")

    def _find(self, container_name: str, blob_name: str, snapshot: Optional[str] = None) -> Optional[StoredBlob]:
        self._require_container(container_name)
        if snapshot is not None:
            found = self._snapshots.get((container_name, blob_name, snapshot))
            if found is None:
                raise BlobNotFoundError(f"Snapshot '{snapshot}' of blob '{blob_name}' not found")
            return found
        return self._blobs.get((container_name, blob_name))

    def _get(self, container_name: str, blob_name: str, snapshot: Optional[str] = None) -> StoredBlob:
        blob = self._find(container_name, blob_name, snapshot)
        if blob is None:
            raise BlobNotFoundError(f"Blob '{blob_name}' not found in container '{container_name}'")
        return blob

    def _touch(self, blob: StoredBlob) -> None:
        blob.etag = self._generate_etag()
        blob.last_modified = self._now()

    @staticmethod
    def _require_type(blob: StoredBlob, blob_type: BlobType) -> None:
        if blob.blob_type != blob_type:
            raise InvalidBlobTypeError(
                f"The blob type is invalid for this operation: expected {blob_type.value}, blob is {blob.blob_type.value}"
            )

    def _check_lease(self, blob: Optional[StoredBlob], lease_id: Optional[str], write: bool) -> None:
        active = blob is not None and blob.lease is not None and blob.lease.is_active()
        if lease_id:
            if not active:
                raise ConditionNotMetError(
                    "There is currently no lease on the blob",
                    error_code=BlobErrorCode.LEASE_NOT_PRESENT,
                )
            if lease_id != blob.lease.lease_id:
                raise ConditionNotMetError(
                    "The lease ID specified did not match the lease ID for the blob",
                    error_code=BlobErrorCode.LEASE_ID_MISMATCH,
                )
        elif active and write:
            raise ConditionNotMetError(
                "There is currently a lease on the blob and no lease ID was specified in the request",
                error_code=BlobErrorCode.LEASE_ID_MISSING,
            )

    def _check_access(self, blob: Optional[StoredBlob], condition: ConditionalPrecondition, write: bool) -> None:
        """Apply ETag, time and lease conditions in the order the service does."""
        self._check_lease(blob, condition.lease_id, write)

        if condition.if_match:
            if blob is None or (condition.if_match != '*' and condition.if_match != blob.etag):
                raise ConditionNotMetError("The condition specified using HTTP conditional header(s) is not met")

        if condition.if_none_match:
            if blob is not None and (condition.if_none_match == '*' or condition.if_none_match == blob.etag):
                if not write:
                    raise NotModifiedError("The blob has not been modified")
                if condition.if_none_match == '*':
                    raise BlobAlreadyExistsError("The specified blob already exists")
                raise ConditionNotMetError("The condition specified using HTTP conditional header(s) is not met")

        if blob is None:
            return

        if condition.if_modified_since is not None and blob.last_modified <= condition.if_modified_since:
            if not write:
                raise NotModifiedError("The blob has not been modified")
            raise ConditionNotMetError("The condition specified using HTTP conditional header(s) is not met")

        if condition.if_unmodified_since is not None and blob.last_modified > condition.if_unmodified_since:
            raise ConditionNotMetError("The condition specified using HTTP conditional header(s) is not met")

    @staticmethod
    def _check_sequence_number(blob: StoredBlob, condition: ConditionalPrecondition) -> None:
        failed = (
            (condition.if_sequence_number_less_than_or_equal is not None
             and not blob.sequence_number <= condition.if_sequence_number_less_than_or_equal)
            or (condition.if_sequence_number_less_than is not None
                and not blob.sequence_number < condition.if_sequence_number_less_than)
            or (condition.if_sequence_number_equal is not None
                and not blob.sequence_number == condition.if_sequence_number_equal)
        )
        if failed:
            raise ConditionNotMetError(
                "The sequence number condition specified was not met",
                error_code=BlobErrorCode.SEQUENCE_NUMBER_CONDITION_NOT_MET,
            )

    # ========================================================================
    # Reads
    # ========================================================================

    async def get_blob(
        self,
        container_name: str,
        blob_name: str,
        snapshot: Optional[str] = None,
        byte_range: Optional[Tuple[int, Optional[int]]] = None,
        range_md5: bool = False,
        condition: Optional[ConditionalPrecondition] = None,
    ) -> Tuple[StoredBlob, bytes, Optional[Tuple[int, int]]]:
        """
        Read a blob or a range of it.

        Args:
            byte_range: (start, inclusive end or None)
            range_md5: Return a transactional MD5 for the range

        Returns:
            Tuple of (blob copy, data, served inclusive range or None for a full read)

        Raises:
            InvalidRangeError: If the range starts past the end of the blob
            InvalidInputError: If a range MD5 is requested for more than 4 MiB
        """
        async with self._lock:
            blob = self._get(container_name, blob_name, snapshot)
            self._check_access(blob, condition or ConditionalPrecondition(), write=False)
            blob = blob.model_copy(deep=True)

        if byte_range is None:
            return blob, blob.content, None

        start, end = byte_range
        if start >= blob.content_length:
            raise InvalidRangeError("The range specified is invalid for the current size of the resource")
        last = blob.content_length - 1 if end is None else min(end, blob.content_length - 1)
        if range_md5 and last - start + 1 > MAX_RANGE_GET_MD5_SIZE:
            raise InvalidInputError(
                "A transactional MD5 can only be requested for ranges of 4 MiB or less",
                error_code="OutOfRangeInput",
            )
        return blob, blob.content[start:last + 1], (start, last)

    async def get_properties(
        self,
        container_name: str,
        blob_name: str,
        snapshot: Optional[str] = None,
        condition: Optional[ConditionalPrecondition] = None,
    ) -> StoredBlob:
        async with self._lock:
            blob = self._get(container_name, blob_name, snapshot)
            self._check_access(blob, condition or ConditionalPrecondition(), write=False)
            return blob.model_copy(deep=True)

    # ========================================================================
    # Writes
    # ========================================================================

    async def put_blob(
        self,
        container_name: str,
        blob_name: str,
        blob_type: BlobType,
        content: bytes = b"",
        size: int = 0,
        sequence_number: int = 0,
        content_type: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
        condition: Optional[ConditionalPrecondition] = None,
    ) -> StoredBlob:
        """
        Create or replace a blob: an empty append blob, a zeroed page blob of
        ``size`` bytes, or a block blob holding ``content``.
        """
        if blob_type == BlobType.PAGE_BLOB and size % PAGE_SIZE != 0:
            raise InvalidInputError(f"Page blob size {size} must be a multiple of {PAGE_SIZE}")

        async with self._lock:
            existing = self._find(container_name, blob_name)
            self._check_access(existing, condition or ConditionalPrecondition(), write=True)

            if blob_type == BlobType.PAGE_BLOB:
                data = bytes(size)
            elif blob_type == BlobType.APPEND_BLOB:
                data = b""
            else:
                data = content

            blob = StoredBlob(
                container_name=container_name,
                name=blob_name,
                blob_type=blob_type,
                content=data,
                etag=self._generate_etag(),
                last_modified=self._now(),
                content_type=content_type or "application/octet-stream",
                metadata=dict(metadata or {}),
                sequence_number=sequence_number,
                lease=existing.lease if existing else None,
            )
            self._blobs[(container_name, blob_name)] = blob
            self._uncommitted.pop((container_name, blob_name), None)
            return blob.model_copy(deep=True)

    async def append_block(
        self,
        container_name: str,
        blob_name: str,
        data: bytes,
        content_md5: Optional[str] = None,
        condition: Optional[ConditionalPrecondition] = None,
    ) -> Tuple[StoredBlob, int]:
        """
        Append ``data`` to an append blob.

        Returns:
            Tuple of (blob copy, offset the block was appended at)
        """
        condition = condition or ConditionalPrecondition()
        if len(data) > MAX_APPEND_BLOCK_SIZE:
            raise InvalidInputError("The append block exceeds the maximum size", error_code="RequestBodyTooLarge")
        self._check_payload_md5(data, content_md5)

        async with self._lock:
            blob = self._get(container_name, blob_name)
            self._require_type(blob, BlobType.APPEND_BLOB)
            self._check_access(blob, condition, write=True)

            offset = blob.content_length
            if (condition.if_max_size_less_than_or_equal is not None
                    and offset + len(data) > condition.if_max_size_less_than_or_equal):
                raise ConditionNotMetError(
                    "The max blob size condition specified was not met",
                    error_code=BlobErrorCode.MAX_BLOB_SIZE_CONDITION_NOT_MET,
                )
            if (condition.if_append_position_equal is not None
                    and offset != condition.if_append_position_equal):
                raise ConditionNotMetError(
                    "The append position condition specified was not met",
                    error_code=BlobErrorCode.APPEND_POSITION_CONDITION_NOT_MET,
                )

            blob.content = blob.content + data
            blob.committed_block_count += 1
            self._touch(blob)
            return blob.model_copy(deep=True), offset

    async def put_pages(
        self,
        container_name: str,
        blob_name: str,
        start: int,
        end: int,
        data: Optional[bytes],
        content_md5: Optional[str] = None,
        condition: Optional[ConditionalPrecondition] = None,
    ) -> StoredBlob:
        """Write (``data``) or clear (``data`` None) the inclusive page range."""
        condition = condition or ConditionalPrecondition()
        length = end - start + 1
        if start % PAGE_SIZE != 0 or length <= 0 or length % PAGE_SIZE != 0:
            raise InvalidInputError(
                f"Page range {start}-{end} is not page aligned",
                error_code=BlobErrorCode.INVALID_PAGE_RANGE,
            )
        if data is not None:
            if len(data) != length:
                raise InvalidInputError("The page range does not match the request body length")
            self._check_payload_md5(data, content_md5)

        async with self._lock:
            blob = self._get(container_name, blob_name)
            self._require_type(blob, BlobType.PAGE_BLOB)
            self._check_access(blob, condition, write=True)
            self._check_sequence_number(blob, condition)
            if end >= blob.content_length:
                raise InvalidRangeError("The page range extends past the end of the blob", error_code=BlobErrorCode.INVALID_PAGE_RANGE)

            payload = data if data is not None else bytes(length)
            blob.content = blob.content[:start] + payload + blob.content[end + 1:]
            self._touch(blob)
            return blob.model_copy(deep=True)

    async def set_sequence_number(
        self,
        container_name: str,
        blob_name: str,
        action: SequenceNumberAction,
        value: Optional[int] = None,
        condition: Optional[ConditionalPrecondition] = None,
    ) -> StoredBlob:
        condition = condition or ConditionalPrecondition()
        async with self._lock:
            blob = self._get(container_name, blob_name)
            self._require_type(blob, BlobType.PAGE_BLOB)
            self._check_access(blob, condition, write=True)
            self._check_sequence_number(blob, condition)

            if action == SequenceNumberAction.INCREMENT:
                blob.sequence_number += 1
            elif action == SequenceNumberAction.MAX:
                blob.sequence_number = max(blob.sequence_number, value or 0)
            else:
                blob.sequence_number = value or 0
            self._touch(blob)
            return blob.model_copy(deep=True)

    async def put_block(
        self,
        container_name: str,
        blob_name: str,
        block_id: str,
        data: bytes,
        content_md5: Optional[str] = None,
        lease_id: Optional[str] = None,
    ) -> None:
        """Stage an uncommitted block. Staged blocks are invisible until committed."""
        self._check_payload_md5(data, content_md5)
        async with self._lock:
            blob = self._find(container_name, blob_name)
            self._check_lease(blob, lease_id, write=True)
            if blob is not None:
                self._require_type(blob, BlobType.BLOCK_BLOB)
            self._uncommitted.setdefault((container_name, blob_name), {})[block_id] = data

    async def put_block_list(
        self,
        container_name: str,
        blob_name: str,
        block_ids: List[str],
        content_md5: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
        condition: Optional[ConditionalPrecondition] = None,
    ) -> StoredBlob:
        """Commit blocks, in order, as the blob's content."""
        async with self._lock:
            blob = self._find(container_name, blob_name)
            self._check_access(blob, condition or ConditionalPrecondition(), write=True)
            if blob is None:
                blob = StoredBlob(
                    container_name=container_name,
                    name=blob_name,
                    blob_type=BlobType.BLOCK_BLOB,
                    etag=self._generate_etag(),
                    last_modified=self._now(),
                )
            self._require_type(blob, BlobType.BLOCK_BLOB)

            staged = self._uncommitted.get((container_name, blob_name), {})
            committed = dict(zip(blob.committed_blocks, self._split_committed(blob)))
            parts = []
            for block_id in block_ids:
                if block_id in staged:
                    parts.append(staged[block_id])
                elif block_id in committed:
                    parts.append(committed[block_id])
                else:
                    raise InvalidInputError(
                        f"Block '{block_id}' not found",
                        error_code=BlobErrorCode.INVALID_BLOCK_LIST,
                    )

            blob.content = b"".join(parts)
            blob.committed_blocks = list(block_ids)
            blob.committed_block_sizes = [len(part) for part in parts]
            blob.content_md5 = content_md5
            if metadata is not None:
                blob.metadata = dict(metadata)
            self._touch(blob)
            self._uncommitted.pop((container_name, blob_name), None)
            self._blobs[(container_name, blob_name)] = blob
            return blob.model_copy(deep=True)

    def staged_blocks(self, container_name: str, blob_name: str) -> List[str]:
        """Ids of blocks staged but not yet committed."""
        return list(self._uncommitted.get((container_name, blob_name), {}))

    @staticmethod
    def _split_committed(blob: StoredBlob) -> List[bytes]:
        sizes = blob.committed_block_sizes
        parts, offset = [], 0
        for size in sizes:
            parts.append(blob.content[offset:offset + size])
            offset += size
        return parts

    async def set_properties(
        self,
        container_name: str,
        blob_name: str,
        content_md5: Optional[str] = None,
        content_type: Optional[str] = None,
        condition: Optional[ConditionalPrecondition] = None,
    ) -> StoredBlob:
        async with self._lock:
            blob = self._get(container_name, blob_name)
            self._check_access(blob, condition or ConditionalPrecondition(), write=True)
            blob.content_md5 = content_md5
            if content_type is not None:
                blob.content_type = content_type
            self._touch(blob)
            return blob.model_copy(deep=True)

    async def set_metadata(
        self,
        container_name: str,
        blob_name: str,
        metadata: Dict[str, str],
        condition: Optional[ConditionalPrecondition] = None,
    ) -> StoredBlob:
        async with self._lock:
            blob = self._get(container_name, blob_name)
            self._check_access(blob, condition or ConditionalPrecondition(), write=True)
            blob.metadata = dict(metadata)
            self._touch(blob)
            return blob.model_copy(deep=True)

    async def create_snapshot(
        self,
        container_name: str,
        blob_name: str,
        metadata: Optional[Dict[str, str]] = None,
        condition: Optional[ConditionalPrecondition] = None,
    ) -> StoredBlob:
        """
        Create a read-only point-in-time copy of the blob.

        Returns:
            The snapshot, with ``snapshot`` set to its timestamp
        """
        async with self._lock:
            blob = self._get(container_name, blob_name)
            self._check_access(blob, condition or ConditionalPrecondition(), write=False)

            snapshot_id = datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%fZ')
            snapshot = blob.model_copy(deep=True)
            snapshot.snapshot = snapshot_id
            snapshot.lease = None
            if metadata:
                snapshot.metadata = dict(metadata)
            self._snapshots[(container_name, blob_name, snapshot_id)] = snapshot
            return snapshot.model_copy(deep=True)

    # ========================================================================
    # Leases
    # ========================================================================

    async def acquire_lease(
        self,
        container_name: str,
        blob_name: str,
        duration: int = -1,
        proposed_lease_id: Optional[str] = None,
    ) -> str:
        """
        Acquire a lease on a blob.

        Args:
            duration: Lease duration in seconds (15-60 or -1 for infinite)

        Returns:
            The lease id

        Raises:
            LeaseAlreadyPresentError: If blob already leased
        """
        if duration != -1 and (duration < 15 or duration > 60):
            raise InvalidInputError("Lease duration must be 15-60 seconds or -1 for infinite")

        async with self._lock:
            blob = self._get(container_name, blob_name)
            if blob.lease is not None and blob.lease.is_active():
                raise LeaseAlreadyPresentError(f"Blob '{blob_name}' is already leased")

            acquired_time = datetime.now(timezone.utc)
            blob.lease = Lease(
                lease_id=proposed_lease_id or str(uuid.uuid4()),
                duration=duration,
                acquired_time=acquired_time,
                expiration_time=None if duration == -1 else acquired_time + timedelta(seconds=duration),
            )
            return blob.lease.lease_id

    async def release_lease(self, container_name: str, blob_name: str, lease_id: str) -> None:
        async with self._lock:
            blob = self._get(container_name, blob_name)
            self._check_lease(blob, lease_id, write=True)
            blob.lease = None

    async def break_lease(self, container_name: str, blob_name: str) -> None:
        async with self._lock:
            blob = self._get(container_name, blob_name)
            if blob.lease is not None:
                blob.lease.broken = True

    # ========================================================================
    # Validation
    # ========================================================================

    @staticmethod
    def _check_payload_md5(data: bytes, content_md5: Optional[str]) -> None:
        if content_md5 is not None and content_md5_of(data) != content_md5:
            raise InvalidInputError(
                "The MD5 value specified in the request did not match the MD5 value calculated by the server",
                error_code=BlobErrorCode.MD5_MISMATCH,
            )
