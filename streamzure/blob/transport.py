"""
Transport Contracts

The request/response shapes the transfer engine speaks, the abstract
``Transport`` that carries them, and the location selector that decides which
replica each attempt targets.

Signing, header serialization and the HTTP client live behind ``Transport``.

Author: Ayodele Oladeji
Date: 2025
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Dict, List, Optional, Tuple

from .conditions import ConditionalPrecondition
from .models import BlobIdentity, LocationMode, PageRange, StorageLocation, TransferRange


class BlobOperation(str, Enum):
    """Blob service operations the engine issues."""
    GET_BLOB = "GetBlob"
    GET_PROPERTIES = "GetBlobProperties"
    SET_PROPERTIES = "SetBlobProperties"
    SET_METADATA = "SetBlobMetadata"
    PUT_BLOB = "PutBlob"
    APPEND_BLOCK = "AppendBlock"
    PUT_PAGE = "PutPage"
    CLEAR_PAGES = "ClearPages"
    SET_SEQUENCE_NUMBER = "SetSequenceNumber"
    PUT_BLOCK = "PutBlock"
    PUT_BLOCK_LIST = "PutBlockList"
    SNAPSHOT = "SnapshotBlob"

    @property
    def method(self) -> str:
        if self == BlobOperation.GET_BLOB:
            return "GET"
        if self == BlobOperation.GET_PROPERTIES:
            return "HEAD"
        return "PUT"

    @property
    def reads(self) -> bool:
        """True for operations a secondary replica may serve."""
        return self in (BlobOperation.GET_BLOB, BlobOperation.GET_PROPERTIES)


@dataclass
class RequestSpec:
    """
    One HTTP request to the blob service.

    ``headers`` carries operation-specific headers (blob type, content length,
    sequence number action); conditions live in ``precondition`` and are
    rendered by the transport through ``ConditionalPrecondition.to_headers``.
    """

    operation: BlobOperation
    identity: BlobIdentity
    location: StorageLocation = StorageLocation.PRIMARY
    precondition: Optional[ConditionalPrecondition] = None
    headers: Dict[str, str] = field(default_factory=dict)
    payload: Optional[bytes] = None
    content_md5: Optional[str] = None
    transfer_range: Optional[TransferRange] = None
    page_range: Optional[PageRange] = None
    block_id: Optional[str] = None
    block_list: Optional[List[str]] = None
    metadata: Optional[Dict[str, str]] = None
    request_transactional_md5: bool = False
    client_request_id: Optional[str] = None

    @property
    def method(self) -> str:
        return self.operation.method

    def all_headers(self) -> Dict[str, str]:
        """Operation headers merged with condition and range headers."""
        headers = dict(self.headers)
        if self.precondition is not None:
            headers.update(self.precondition.to_headers())
        if self.transfer_range is not None and self.transfer_range.is_range:
            headers['x-ms-range'] = self.transfer_range.to_header()
            if self.request_transactional_md5:
                headers['x-ms-range-get-content-md5'] = 'true'
        if self.page_range is not None:
            headers['x-ms-range'] = self.page_range.to_header()
        if self.content_md5:
            headers['Content-MD5'] = self.content_md5
        if self.payload is not None:
            headers['Content-Length'] = str(len(self.payload))
        if self.client_request_id:
            headers['x-ms-client-request-id'] = self.client_request_id
        for key, value in (self.metadata or {}).items():
            headers[f'x-ms-meta-{key}'] = value
        return headers


async def _empty_body() -> AsyncIterator[bytes]:
    return
    yield  # pragma: no cover


@dataclass
class ResponseSpec:
    """
    One HTTP response. ``body`` yields chunks and may raise
    ``TransientTransportError`` part-way through.
    """

    status_code: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[AsyncIterator[bytes]] = None
    location: StorageLocation = StorageLocation.PRIMARY

    def header(self, name: str) -> Optional[str]:
        """Case-insensitive header lookup."""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None

    def chunks(self) -> AsyncIterator[bytes]:
        return self.body if self.body is not None else _empty_body()

    async def read(self) -> bytes:
        """Read the remaining body into memory."""
        parts = []
        async for chunk in self.chunks():
            parts.append(chunk)
        return b''.join(parts)


class Transport(ABC):
    """Sends blob requests. Implementations handle signing and HTTP."""

    @abstractmethod
    async def send(self, request: RequestSpec) -> ResponseSpec:
        """
        Send one request.

        Returns the response for any HTTP status. Connection resets and
        timeouts raise ``TransientTransportError``; ``asyncio.CancelledError``
        propagates unchanged.
        """


class LocationSelector:
    """
    Chooses the replica for each attempt of one operation.

    ``*_THEN_*`` modes start on the first location and alternate on every
    retry. ``pin`` fixes the operation to one location, which is what a
    resumed download does once a replica has served its first byte.
    """

    def __init__(self, mode: LocationMode = LocationMode.PRIMARY_ONLY):
        self.mode = mode

    @staticmethod
    def _order(mode: LocationMode) -> Tuple[StorageLocation, ...]:
        if mode == LocationMode.PRIMARY_ONLY:
            return (StorageLocation.PRIMARY,)
        if mode == LocationMode.SECONDARY_ONLY:
            return (StorageLocation.SECONDARY,)
        if mode == LocationMode.PRIMARY_THEN_SECONDARY:
            return (StorageLocation.PRIMARY, StorageLocation.SECONDARY)
        return (StorageLocation.SECONDARY, StorageLocation.PRIMARY)

    def initial(self) -> StorageLocation:
        return self._order(self.mode)[0]

    def next(self, current: StorageLocation) -> StorageLocation:
        """Location for the attempt after one sent to ``current``."""
        order = self._order(self.mode)
        if len(order) == 1:
            return order[0]
        return order[1] if current == order[0] else order[0]

    def pin(self, location: StorageLocation) -> None:
        self.mode = (
            LocationMode.PRIMARY_ONLY
            if location == StorageLocation.PRIMARY
            else LocationMode.SECONDARY_ONLY
        )

    def allows(self, location: StorageLocation) -> bool:
        return location in self._order(self.mode)

    @property
    def is_pinned(self) -> bool:
        return self.mode in (LocationMode.PRIMARY_ONLY, LocationMode.SECONDARY_ONLY)
