"""
Blob Transfer Models

Pydantic models for blob identities, byte ranges, page ranges and append units,
plus the service constants the transfer engine is sized against.

Author: Ayodele Oladeji
Date: 2025
"""

import re
from datetime import datetime
from enum import Enum
from typing import Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .exceptions import CallerUsageError


KB = 1024
MB = 1024 * KB

PAGE_SIZE = 512
MAX_APPEND_BLOCK_SIZE = 4 * MB
MAX_PAGE_WRITE_SIZE = 4 * MB
MAX_BLOCK_SIZE = 100 * MB
MAX_RANGE_GET_MD5_SIZE = 4 * MB
DEFAULT_WRITE_BLOCK_SIZE = 4 * MB
MIN_STREAM_WRITE_SIZE = 16 * KB


class BlobType(str, Enum):
    """Blob type."""
    BLOCK_BLOB = "BlockBlob"
    APPEND_BLOB = "AppendBlob"
    PAGE_BLOB = "PageBlob"
    UNSPECIFIED = "Unspecified"


class LeaseStatus(str, Enum):
    """Blob lease status."""
    LOCKED = "locked"
    UNLOCKED = "unlocked"


class LeaseState(str, Enum):
    """Blob lease state."""
    AVAILABLE = "available"
    LEASED = "leased"
    EXPIRED = "expired"
    BREAKING = "breaking"
    BROKEN = "broken"


class LeaseDuration(str, Enum):
    """Blob lease duration."""
    INFINITE = "infinite"
    FIXED = "fixed"


class CopyStatus(str, Enum):
    """Status of a server-side copy into the blob."""
    PENDING = "pending"
    SUCCESS = "success"
    ABORTED = "aborted"
    FAILED = "failed"


class StorageLocation(str, Enum):
    """Replica that serves a request."""
    PRIMARY = "primary"
    SECONDARY = "secondary"


class LocationMode(str, Enum):
    """Which replicas a request may be sent to, and in what order."""
    PRIMARY_ONLY = "primary_only"
    PRIMARY_THEN_SECONDARY = "primary_then_secondary"
    SECONDARY_ONLY = "secondary_only"
    SECONDARY_THEN_PRIMARY = "secondary_then_primary"


class SequenceNumberAction(str, Enum):
    """How set-sequence-number changes a page blob's sequence number."""
    MAX = "max"
    UPDATE = "update"
    INCREMENT = "increment"


class ContainerNameValidator:
    """
    Validates Azure Blob Storage container names.

    Rules:
    - 3-63 characters
    - Lowercase letters, numbers, hyphens only
    - Must start and end with letter or number
    - No consecutive hyphens
    """

    PATTERN = re.compile(r'^[a-z0-9]([a-z0-9-]*[a-z0-9])?$')
    MIN_LENGTH = 3
    MAX_LENGTH = 63

    @classmethod
    def validate(cls, name: str) -> tuple[bool, Optional[str]]:
        """
        Validate container name against Azure rules.

        Args:
            name: Container name to validate

        Returns:
            Tuple of (is_valid, error_message)
        """
        if not name:
            return False, "Container name cannot be empty"

        if len(name) < cls.MIN_LENGTH:
            return False, f"Container name must be at least {cls.MIN_LENGTH} characters"

        if len(name) > cls.MAX_LENGTH:
            return False, f"Container name must be at most {cls.MAX_LENGTH} characters"

        if not cls.PATTERN.match(name):
            return False, "Container name must contain only lowercase letters, numbers, and hyphens, and must start/end with letter or number"

        if '--' in name:
            return False, "Container name cannot contain consecutive hyphens"

        return True, None


class BlobIdentity(BaseModel):
    """
    Address of a blob: container, name and optional snapshot timestamp.

    Identities are immutable. A snapshot identity is read-only: any operation
    that targets a live blob must be rejected before it reaches the wire.
    """

    model_config = ConfigDict(frozen=True)

    container_name: str = Field(description="Container name")
    blob_name: str = Field(description="Blob name")
    snapshot: Optional[str] = Field(default=None, description="Snapshot timestamp")

    @field_validator('container_name')
    @classmethod
    def validate_container_name(cls, v: str) -> str:
        """Validate container name."""
        is_valid, error = ContainerNameValidator.validate(v)
        if not is_valid:
            raise ValueError(error)
        return v

    @field_validator('blob_name')
    @classmethod
    def validate_blob_name(cls, v: str) -> str:
        """Blob names are 1-1024 characters."""
        if not v or len(v) > 1024:
            raise ValueError("Blob name must be between 1 and 1024 characters")
        return v

    @property
    def is_snapshot(self) -> bool:
        """True when the identity addresses a snapshot."""
        return self.snapshot is not None

    def with_snapshot(self, snapshot: str) -> 'BlobIdentity':
        """Return the identity of a snapshot of this blob."""
        return BlobIdentity(
            container_name=self.container_name,
            blob_name=self.blob_name,
            snapshot=snapshot,
        )

    def assert_live(self, operation: str) -> None:
        """
        Reject an operation that mutates the blob if this is a snapshot.

        Args:
            operation: Operation name used in the error message

        Raises:
            CallerUsageError: If the identity addresses a snapshot
        """
        if self.is_snapshot:
            raise CallerUsageError(
                f"Cannot perform '{operation}' on snapshot '{self.snapshot}' of blob '{self.blob_name}'",
                details={"operation": operation, "snapshot": self.snapshot},
            )

    def __str__(self) -> str:
        path = f"{self.container_name}/{self.blob_name}"
        if self.snapshot:
            path += f"?snapshot={self.snapshot}"
        return path


class TransferRange(BaseModel):
    """
    Byte range of a download.

    ``offset`` of None means the whole blob. ``remaining_length`` of None means
    "to the end of the blob". Only the download engine's recovery step moves the
    range once an attempt has started.
    """

    offset: Optional[int] = Field(default=None, description="First byte, at least 0")
    remaining_length: Optional[int] = Field(default=None, description="Bytes left to read, at least 1")

    @model_validator(mode='after')
    def validate_bounds(self) -> 'TransferRange':
        if self.offset is not None and self.offset < 0:
            raise CallerUsageError(f"Range offset must not be negative, got {self.offset}")
        if self.remaining_length is not None and self.remaining_length <= 0:
            raise CallerUsageError(f"Range length must be positive, got {self.remaining_length}")
        if self.remaining_length is not None and self.offset is None:
            raise CallerUsageError("A range length requires an offset")
        return self

    @property
    def is_range(self) -> bool:
        """True when the request must carry an explicit range header."""
        return self.offset is not None

    @property
    def is_bounded(self) -> bool:
        return self.remaining_length is not None

    def to_header(self) -> Optional[str]:
        """Format as an ``x-ms-range`` header value."""
        if self.offset is None:
            return None
        if self.remaining_length is None:
            return f"bytes={self.offset}-"
        return f"bytes={self.offset}-{self.offset + self.remaining_length - 1}"


class PageRange(BaseModel):
    """
    Inclusive range of 512-byte pages in a page blob.

    Both bounds are page aligned: ``start_offset % 512 == 0`` and
    ``(end_offset - start_offset + 1) % 512 == 0``.
    """

    model_config = ConfigDict(frozen=True)

    start_offset: int
    end_offset: int

    @model_validator(mode='after')
    def validate_alignment(self) -> 'PageRange':
        if self.start_offset < 0 or self.start_offset % PAGE_SIZE != 0:
            raise CallerUsageError(
                f"Page range start offset {self.start_offset} must be a non-negative multiple of {PAGE_SIZE}",
                details={"start_offset": self.start_offset},
            )
        length = self.end_offset - self.start_offset + 1
        if length <= 0 or length % PAGE_SIZE != 0:
            raise CallerUsageError(
                f"Page range length {length} must be a positive multiple of {PAGE_SIZE}",
                details={"start_offset": self.start_offset, "end_offset": self.end_offset},
            )
        return self

    @classmethod
    def from_offset(cls, start_offset: int, length: int) -> 'PageRange':
        """Build a range from a start offset and a length in bytes."""
        return cls(start_offset=start_offset, end_offset=start_offset + length - 1)

    @property
    def length(self) -> int:
        return self.end_offset - self.start_offset + 1

    def overlaps(self, other: 'PageRange') -> bool:
        return self.start_offset <= other.end_offset and other.start_offset <= self.end_offset

    def to_header(self) -> str:
        return f"bytes={self.start_offset}-{self.end_offset}"


def validate_page_batch(ranges: Iterable[PageRange]) -> List[PageRange]:
    """
    Order a batch of page ranges and reject overlaps.

    Args:
        ranges: Page ranges written as one batch

    Returns:
        The ranges sorted by start offset

    Raises:
        CallerUsageError: If any two ranges overlap
    """
    ordered = sorted(ranges, key=lambda r: r.start_offset)
    for previous, current in zip(ordered, ordered[1:]):
        if previous.overlaps(current):
            raise CallerUsageError(
                f"Page ranges {previous.to_header()} and {current.to_header()} overlap",
                details={
                    "first": [previous.start_offset, previous.end_offset],
                    "second": [current.start_offset, current.end_offset],
                },
            )
    return ordered


class AppendUnit(BaseModel):
    """
    One append-block call: payload size, hash and the offset the service
    reported for it. Used for diagnostics, never for ordering.
    """

    length: int = Field(ge=0)
    content_md5: Optional[str] = Field(default=None)
    append_offset: Optional[int] = Field(default=None, description="Server-reported append offset")
    committed_block_count: Optional[int] = Field(default=None)
    absorbed: bool = Field(default=False, description="Accepted on an earlier attempt whose response was lost")


class CopyState(BaseModel):
    """State of the last server-side copy into a blob."""

    copy_id: Optional[str] = None
    status: Optional[CopyStatus] = None
    source: Optional[str] = None
    bytes_copied: Optional[int] = None
    total_bytes: Optional[int] = None
    completion_time: Optional[datetime] = None
    status_description: Optional[str] = None
