"""
Blob Entity State

The client's last-known view of a blob's service-side attributes, and the one
reducer through which responses update it.

The reducer only overwrites fields whose headers are present in a response.
A header that is missing means "unknown in this response", never "cleared",
so a write response that omits the content length leaves the known length
alone.

Author: Ayodele Oladeji
Date: 2025
"""

from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, Field

from .exceptions import BlobTypeMismatchError
from .models import (
    BlobType,
    CopyState,
    CopyStatus,
    LeaseDuration,
    LeaseState,
    LeaseStatus,
)


HTTP_DATE_FORMAT = '%a, %d %b %Y %H:%M:%S GMT'
METADATA_PREFIX = 'x-ms-meta-'


class BlobEntityState(BaseModel):
    """Attributes of one blob as last reported by the service."""

    blob_type: BlobType = BlobType.UNSPECIFIED
    etag: Optional[str] = None
    last_modified: Optional[datetime] = None
    content_length: Optional[int] = None
    content_md5: Optional[str] = None
    content_type: Optional[str] = None
    lease_status: Optional[LeaseStatus] = None
    lease_state: Optional[LeaseState] = None
    lease_duration: Optional[LeaseDuration] = None
    sequence_number: Optional[int] = Field(default=None, description="Page blobs only")
    append_blob_committed_block_count: Optional[int] = Field(default=None, description="Append blobs only")
    copy_state: Optional[CopyState] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

    @property
    def is_populated(self) -> bool:
        """True once a response has supplied an ETag."""
        return self.etag is not None


def _lookup(headers: Mapping[str, str]) -> Dict[str, str]:
    return {key.lower(): value for key, value in headers.items()}


def _parse_date(value: str) -> datetime:
    return datetime.strptime(value, HTTP_DATE_FORMAT).replace(tzinfo=timezone.utc)


def parse_content_range_total(value: str) -> Optional[int]:
    """
    Extract the total blob size from a ``Content-Range`` value.

    ``bytes 0-99/1000`` gives 1000; an unknown total (``*``) gives None.
    """
    _, _, total = value.rpartition('/')
    total = total.strip()
    if not total or total == '*':
        return None
    return int(total)


def _parse_copy_state(lowered: Dict[str, str], existing: Optional[CopyState]) -> Optional[CopyState]:
    copy_headers = {k: v for k, v in lowered.items() if k.startswith('x-ms-copy-')}
    if not copy_headers:
        return existing

    values: Dict[str, Any] = existing.model_dump() if existing else {}
    if 'x-ms-copy-id' in copy_headers:
        values['copy_id'] = copy_headers['x-ms-copy-id']
    if 'x-ms-copy-status' in copy_headers:
        values['status'] = CopyStatus(copy_headers['x-ms-copy-status'].lower())
    if 'x-ms-copy-source' in copy_headers:
        values['source'] = copy_headers['x-ms-copy-source']
    if 'x-ms-copy-status-description' in copy_headers:
        values['status_description'] = copy_headers['x-ms-copy-status-description']
    if 'x-ms-copy-completion-time' in copy_headers:
        values['completion_time'] = _parse_date(copy_headers['x-ms-copy-completion-time'])
    if 'x-ms-copy-progress' in copy_headers:
        copied, _, total = copy_headers['x-ms-copy-progress'].partition('/')
        values['bytes_copied'] = int(copied)
        values['total_bytes'] = int(total) if total else None
    return CopyState(**values)


def apply_response(
    state: BlobEntityState,
    headers: Mapping[str, str],
    update_length: bool = False,
    known_length: Optional[int] = None,
    properties: bool = False,
) -> BlobEntityState:
    """
    Fold a response's headers into the entity state.

    Args:
        state: Current state
        headers: Response headers (any casing)
        update_length: Take the content length from the response. For range
            responses the total comes from ``Content-Range``.
        known_length: Length implied by the request itself, such as the size
            a page blob was created with or an append's end offset
        properties: The response describes the full set of blob properties
            (GET or HEAD): also read type, MD5, lease, copy and metadata

    Returns:
        New state; ``state`` is not modified

    Raises:
        BlobTypeMismatchError: If the service reports a different blob type
    """
    lowered = _lookup(headers)
    updates: Dict[str, Any] = {}

    if 'etag' in lowered:
        updates['etag'] = lowered['etag']
    if 'last-modified' in lowered:
        updates['last_modified'] = _parse_date(lowered['last-modified'])
    if 'x-ms-blob-sequence-number' in lowered:
        updates['sequence_number'] = int(lowered['x-ms-blob-sequence-number'])
    if 'x-ms-blob-committed-block-count' in lowered:
        updates['append_blob_committed_block_count'] = int(lowered['x-ms-blob-committed-block-count'])

    if known_length is not None:
        updates['content_length'] = known_length
    elif update_length or properties:
        if 'content-range' in lowered:
            total = parse_content_range_total(lowered['content-range'])
            if total is not None:
                updates['content_length'] = total
        elif 'content-length' in lowered:
            updates['content_length'] = int(lowered['content-length'])

    if properties:
        reported_type = lowered.get('x-ms-blob-type')
        if reported_type:
            blob_type = BlobType(reported_type)
            if state.blob_type not in (BlobType.UNSPECIFIED, blob_type):
                raise BlobTypeMismatchError(expected=state.blob_type.value, actual=blob_type.value)
            updates['blob_type'] = blob_type

        # A range response carries the range's own Content-MD5; the whole-blob
        # hash is reported separately.
        if 'content-range' in lowered:
            if 'x-ms-blob-content-md5' in lowered:
                updates['content_md5'] = lowered['x-ms-blob-content-md5']
        elif 'content-md5' in lowered:
            updates['content_md5'] = lowered['content-md5']

        if 'content-type' in lowered:
            updates['content_type'] = lowered['content-type']
        if 'x-ms-lease-status' in lowered:
            updates['lease_status'] = LeaseStatus(lowered['x-ms-lease-status'])
        if 'x-ms-lease-state' in lowered:
            updates['lease_state'] = LeaseState(lowered['x-ms-lease-state'])
        if 'x-ms-lease-duration' in lowered:
            updates['lease_duration'] = LeaseDuration(lowered['x-ms-lease-duration'])

        copy_state = _parse_copy_state(lowered, state.copy_state)
        if copy_state is not state.copy_state:
            updates['copy_state'] = copy_state

        # A properties response lists every metadata entry
        updates['metadata'] = {
            key[len(METADATA_PREFIX):]: value
            for key, value in lowered.items()
            if key.startswith(METADATA_PREFIX)
        }

    if not updates:
        return state
    return state.model_copy(update=updates)


def with_properties(state: BlobEntityState, **changes: Any) -> BlobEntityState:
    """
    Record properties the caller just set successfully, such as the content
    MD5 written by set-properties or metadata written by set-metadata.
    """
    return state.model_copy(update={k: v for k, v in changes.items() if v is not None})
