"""Request payload preparation and hashing helpers."""

import base64
import hashlib
import inspect
from typing import Any, BinaryIO, Optional, Tuple, Union

from .exceptions import CallerUsageError

Payload = Union[bytes, bytearray, memoryview, BinaryIO]


def content_md5(data: bytes) -> str:
    """Base64-encoded MD5 of ``data`` as sent in ``Content-MD5``."""
    return base64.b64encode(hashlib.md5(data).digest()).decode('ascii')


def encode_digest(hasher: Any) -> str:
    return base64.b64encode(hasher.digest()).decode('ascii')


def prepare_payload(
    payload: Payload,
    max_length: int,
    compute_md5: bool = False,
) -> Tuple[bytes, Optional[str]]:
    """
    Read a request payload into memory, capped at one transport unit.

    Streams are read from their current position. Every attempt of a request
    resends the same bytes, so the payload has to be replayable; a forward-only
    stream is copied here once rather than re-read per attempt.

    Args:
        payload: Bytes or a binary stream
        max_length: Largest payload one request may carry
        compute_md5: Also compute the transactional Content-MD5

    Returns:
        Tuple of (payload bytes, Content-MD5 or None)

    Raises:
        CallerUsageError: If the payload exceeds ``max_length``
    """
    if isinstance(payload, (bytes, bytearray, memoryview)):
        data = bytes(payload)
    else:
        data = payload.read(max_length + 1)
        if not isinstance(data, bytes):
            raise CallerUsageError("Payload stream must be opened in binary mode")

    if len(data) > max_length:
        raise CallerUsageError(
            f"Payload of {len(data)} bytes exceeds the {max_length} byte limit for one request",
            details={"max_length": max_length},
        )
    return data, (content_md5(data) if compute_md5 else None)


async def write_to_sink(sink: Any, data: bytes) -> None:
    """Write to a sink whose ``write`` may be sync (files, BytesIO) or async."""
    result = sink.write(data)
    if inspect.isawaitable(result):
        await result


