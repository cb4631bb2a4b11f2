"""
Conditional Preconditions

Immutable description of the optimistic-concurrency requirements attached to
one request: ETag match, modification time, lease ownership, append position,
maximum size and page-blob sequence numbers.

Append-position and max-size conditions only apply to append blobs and
sequence-number conditions only to page blobs. Mixing them up is a caller
error raised here, when the condition is built or bound to a blob type, never
at the wire. A lease id is ANDed with every other condition; it never
replaces an ETag requirement.

Author: Ayodele Oladeji
Date: 2025
"""

from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .exceptions import CallerUsageError
from .models import BlobType


HTTP_DATE_FORMAT = '%a, %d %b %Y %H:%M:%S GMT'

_APPEND_FIELDS = ('if_append_position_equal', 'if_max_size_less_than_or_equal')
_SEQUENCE_FIELDS = (
    'if_sequence_number_less_than_or_equal',
    'if_sequence_number_less_than',
    'if_sequence_number_equal',
)


def _format_http_date(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(HTTP_DATE_FORMAT)


def _parse_http_date(value: str) -> datetime:
    return datetime.strptime(value, HTTP_DATE_FORMAT).replace(tzinfo=timezone.utc)


class ConditionalPrecondition(BaseModel):
    """
    Conditions that must hold on the service for a request to proceed.

    ``blob_type`` records the blob type the condition has been bound to, if
    any; binding validates that positional conditions fit that type.
    """

    model_config = ConfigDict(frozen=True)

    if_match: Optional[str] = Field(default=None, description="ETag that must match")
    if_none_match: Optional[str] = Field(default=None, description="ETag that must not match")
    if_modified_since: Optional[datetime] = Field(default=None)
    if_unmodified_since: Optional[datetime] = Field(default=None)
    lease_id: Optional[str] = Field(default=None)
    if_append_position_equal: Optional[int] = Field(default=None)
    if_max_size_less_than_or_equal: Optional[int] = Field(default=None)
    if_sequence_number_less_than_or_equal: Optional[int] = Field(default=None)
    if_sequence_number_less_than: Optional[int] = Field(default=None)
    if_sequence_number_equal: Optional[int] = Field(default=None)
    blob_type: Optional[BlobType] = Field(default=None, description="Blob type this condition is bound to")

    @model_validator(mode='after')
    def validate_blob_type_fields(self) -> 'ConditionalPrecondition':
        """Reject negative positional conditions and those that cannot apply to the target type."""
        negative = {
            name: getattr(self, name)
            for name in _APPEND_FIELDS + _SEQUENCE_FIELDS
            if getattr(self, name) is not None and getattr(self, name) < 0
        }
        if negative:
            raise CallerUsageError(
                f"Positional conditions must not be negative: {', '.join(negative)}",
                details={"fields": negative},
            )

        append_fields = [name for name in _APPEND_FIELDS if getattr(self, name) is not None]
        sequence_fields = [name for name in _SEQUENCE_FIELDS if getattr(self, name) is not None]

        if append_fields and sequence_fields:
            raise CallerUsageError(
                "Append blob conditions and page blob sequence number conditions cannot be combined",
                details={"append_fields": append_fields, "sequence_fields": sequence_fields},
            )

        if self.blob_type is not None:
            if append_fields and self.blob_type != BlobType.APPEND_BLOB:
                raise CallerUsageError(
                    f"{', '.join(append_fields)} only applies to append blobs, not {self.blob_type.value}",
                    details={"blob_type": self.blob_type.value, "fields": append_fields},
                )
            if sequence_fields and self.blob_type != BlobType.PAGE_BLOB:
                raise CallerUsageError(
                    f"{', '.join(sequence_fields)} only applies to page blobs, not {self.blob_type.value}",
                    details={"blob_type": self.blob_type.value, "fields": sequence_fields},
                )
        return self

    # ------------------------------------------------------------------
    # Combinators
    # ------------------------------------------------------------------

    @classmethod
    def empty(cls) -> 'ConditionalPrecondition':
        return cls()

    @classmethod
    def if_not_exists(cls) -> 'ConditionalPrecondition':
        """Condition that succeeds only if the blob does not exist."""
        return cls(if_none_match='*')

    @classmethod
    def if_exists(cls) -> 'ConditionalPrecondition':
        """Condition that succeeds only if the blob exists."""
        return cls(if_match='*')

    @classmethod
    def if_match_etag(cls, etag: str) -> 'ConditionalPrecondition':
        return cls(if_match=etag)

    @classmethod
    def if_none_match_etag(cls, etag: str) -> 'ConditionalPrecondition':
        return cls(if_none_match=etag)

    @classmethod
    def modified_since(cls, modified_time: datetime) -> 'ConditionalPrecondition':
        return cls(if_modified_since=modified_time)

    @classmethod
    def not_modified_since(cls, modified_time: datetime) -> 'ConditionalPrecondition':
        return cls(if_unmodified_since=modified_time)

    @classmethod
    def append_position(cls, position: int) -> 'ConditionalPrecondition':
        return cls(if_append_position_equal=position, blob_type=BlobType.APPEND_BLOB)

    @classmethod
    def max_size(cls, max_size: int) -> 'ConditionalPrecondition':
        return cls(if_max_size_less_than_or_equal=max_size, blob_type=BlobType.APPEND_BLOB)

    @classmethod
    def sequence_number_less_than_or_equal(cls, sequence_number: int) -> 'ConditionalPrecondition':
        return cls(if_sequence_number_less_than_or_equal=sequence_number, blob_type=BlobType.PAGE_BLOB)

    @classmethod
    def sequence_number_less_than(cls, sequence_number: int) -> 'ConditionalPrecondition':
        return cls(if_sequence_number_less_than=sequence_number, blob_type=BlobType.PAGE_BLOB)

    @classmethod
    def sequence_number_equal(cls, sequence_number: int) -> 'ConditionalPrecondition':
        return cls(if_sequence_number_equal=sequence_number, blob_type=BlobType.PAGE_BLOB)

    @classmethod
    def lease(cls, lease_id: str) -> 'ConditionalPrecondition':
        return cls(lease_id=lease_id)

    def _replace(self, **changes: Any) -> 'ConditionalPrecondition':
        # model_copy skips validation; rebuild so the type guard runs again
        values = self.model_dump()
        values.update(changes)
        return self.__class__(**values)

    def with_lease(self, lease_id: Optional[str]) -> 'ConditionalPrecondition':
        """Return a copy that additionally requires ``lease_id``."""
        return self._replace(lease_id=lease_id)

    def with_etag(self, etag: str) -> 'ConditionalPrecondition':
        """
        Return an If-Match condition on ``etag`` that keeps only this
        condition's lease requirement.

        Used to lock a resumed download onto the version it started reading.
        """
        return self.__class__(if_match=etag, lease_id=self.lease_id, blob_type=self.blob_type)

    def with_append_position(self, position: int) -> 'ConditionalPrecondition':
        return self._replace(if_append_position_equal=position)

    def lease_only(self) -> 'ConditionalPrecondition':
        """Return a condition carrying only the lease requirement."""
        return self.__class__(lease_id=self.lease_id, blob_type=self.blob_type)

    def without_positional(self) -> 'ConditionalPrecondition':
        """Return a copy without append-position, max-size or sequence-number conditions."""
        cleared = {name: None for name in _APPEND_FIELDS + _SEQUENCE_FIELDS}
        return self._replace(**cleared)

    def bind(self, blob_type: BlobType) -> 'ConditionalPrecondition':
        """
        Validate this condition against a blob type.

        Args:
            blob_type: Type of the blob the condition will be sent to

        Returns:
            A copy bound to ``blob_type``

        Raises:
            CallerUsageError: If a positional condition does not apply to the type
        """
        if blob_type == BlobType.UNSPECIFIED:
            return self
        return self._replace(blob_type=blob_type)

    def merge(self, other: Optional['ConditionalPrecondition']) -> 'ConditionalPrecondition':
        """
        AND two conditions together.

        Raises:
            CallerUsageError: If both set the same field to different values
        """
        if other is None:
            return self
        values = self.model_dump()
        for name, value in other.model_dump().items():
            if value is None:
                continue
            current = values.get(name)
            if current is not None and current != value:
                raise CallerUsageError(
                    f"Conflicting values for condition '{name}': {current!r} and {value!r}",
                    details={"field": name},
                )
            values[name] = value
        return self.__class__(**values)

    @property
    def is_conditional(self) -> bool:
        """True when an ETag or modification-time condition is present."""
        return any((
            self.if_match,
            self.if_none_match,
            self.if_modified_since is not None,
            self.if_unmodified_since is not None,
        ))

    # ------------------------------------------------------------------
    # Header mapping
    # ------------------------------------------------------------------

    def to_headers(self) -> Dict[str, str]:
        """Convert conditions to HTTP request headers."""
        headers: Dict[str, str] = {}
        if self.if_match:
            headers['If-Match'] = self.if_match
        if self.if_none_match:
            headers['If-None-Match'] = self.if_none_match
        if self.if_modified_since is not None:
            headers['If-Modified-Since'] = _format_http_date(self.if_modified_since)
        if self.if_unmodified_since is not None:
            headers['If-Unmodified-Since'] = _format_http_date(self.if_unmodified_since)
        if self.lease_id:
            headers['x-ms-lease-id'] = self.lease_id
        if self.if_append_position_equal is not None:
            headers['x-ms-blob-condition-appendpos'] = str(self.if_append_position_equal)
        if self.if_max_size_less_than_or_equal is not None:
            headers['x-ms-blob-condition-maxsize'] = str(self.if_max_size_less_than_or_equal)
        if self.if_sequence_number_less_than_or_equal is not None:
            headers['x-ms-if-sequence-number-le'] = str(self.if_sequence_number_less_than_or_equal)
        if self.if_sequence_number_less_than is not None:
            headers['x-ms-if-sequence-number-lt'] = str(self.if_sequence_number_less_than)
        if self.if_sequence_number_equal is not None:
            headers['x-ms-if-sequence-number-eq'] = str(self.if_sequence_number_equal)
        return headers

    @classmethod
    def from_headers(cls, headers: Mapping[str, str]) -> 'ConditionalPrecondition':
        """Extract conditions from HTTP request headers."""
        lowered = {k.lower(): v for k, v in headers.items()}

        def _int(name: str) -> Optional[int]:
            value = lowered.get(name)
            return int(value) if value is not None else None

        modified = lowered.get('if-modified-since')
        unmodified = lowered.get('if-unmodified-since')
        return cls(
            if_match=lowered.get('if-match'),
            if_none_match=lowered.get('if-none-match'),
            if_modified_since=_parse_http_date(modified) if modified else None,
            if_unmodified_since=_parse_http_date(unmodified) if unmodified else None,
            lease_id=lowered.get('x-ms-lease-id'),
            if_append_position_equal=_int('x-ms-blob-condition-appendpos'),
            if_max_size_less_than_or_equal=_int('x-ms-blob-condition-maxsize'),
            if_sequence_number_less_than_or_equal=_int('x-ms-if-sequence-number-le'),
            if_sequence_number_less_than=_int('x-ms-if-sequence-number-lt'),
            if_sequence_number_equal=_int('x-ms-if-sequence-number-eq'),
        )
