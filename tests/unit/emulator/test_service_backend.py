"""
Unit tests for the in-memory blob service backend.
"""

import pytest

from streamzure.blob.conditions import ConditionalPrecondition
from streamzure.blob.exceptions import BlobErrorCode
from streamzure.blob.models import BlobType, LeaseState, LeaseStatus, SequenceNumberAction
from streamzure.blob.payload import content_md5
from streamzure.emulator.backend import (
    BlobAlreadyExistsError,
    BlobNotFoundError,
    BlobServiceBackend,
    ConditionNotMetError,
    ContainerNotFoundError,
    InvalidBlobTypeError,
    InvalidContainerNameError,
    InvalidInputError,
    InvalidRangeError,
    LeaseAlreadyPresentError,
    NotModifiedError,
)


@pytest.fixture
async def backend():
    backend = BlobServiceBackend()
    await backend.create_container("data")
    return backend


class TestContainers:
    """Test container handling."""

    @pytest.mark.asyncio
    async def test_invalid_name(self):
        """Test container names are validated."""
        with pytest.raises(InvalidContainerNameError):
            await BlobServiceBackend().create_container("Bad_Name")

    @pytest.mark.asyncio
    async def test_missing_container(self, backend):
        """Test blobs cannot be written to a missing container."""
        with pytest.raises(ContainerNotFoundError) as exc_info:
            await backend.put_blob("missing", "a", BlobType.BLOCK_BLOB)
        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_reset(self, backend):
        """Test reset drops everything."""
        await backend.put_blob("data", "a", BlobType.BLOCK_BLOB, content=b"x")
        await backend.reset()
        with pytest.raises(ContainerNotFoundError):
            await backend.get_properties("data", "a")


class TestReads:
    """Test blob and range reads."""

    @pytest.mark.asyncio
    async def test_full_read(self, backend):
        """Test reading a whole blob."""
        await backend.put_blob("data", "a", BlobType.BLOCK_BLOB, content=b"0123456789")
        blob, data, served = await backend.get_blob("data", "a")
        assert data == b"0123456789"
        assert served is None
        assert blob.content_length == 10

    @pytest.mark.asyncio
    async def test_range_read(self, backend):
        """Test ranges are clipped to the blob."""
        await backend.put_blob("data", "a", BlobType.BLOCK_BLOB, content=b"0123456789")

        _, data, served = await backend.get_blob("data", "a", byte_range=(2, 4))
        assert (data, served) == (b"234", (2, 4))

        _, data, served = await backend.get_blob("data", "a", byte_range=(8, 100))
        assert (data, served) == (b"89", (8, 9))

        _, data, served = await backend.get_blob("data", "a", byte_range=(5, None))
        assert (data, served) == (b"56789", (5, 9))

    @pytest.mark.asyncio
    async def test_range_past_end(self, backend):
        """Test a range starting past the end is invalid."""
        await backend.put_blob("data", "a", BlobType.BLOCK_BLOB, content=b"abc")
        with pytest.raises(InvalidRangeError) as exc_info:
            await backend.get_blob("data", "a", byte_range=(3, None))
        assert exc_info.value.status_code == 416

    @pytest.mark.asyncio
    async def test_range_md5_limit(self, backend):
        """Test a range hash is only served for ranges up to 4 MiB."""
        await backend.put_blob("data", "a", BlobType.BLOCK_BLOB, content=bytes(4 * 1024 * 1024 + 1))

        await backend.get_blob("data", "a", byte_range=(0, 4 * 1024 * 1024 - 1), range_md5=True)
        with pytest.raises(InvalidInputError) as exc_info:
            await backend.get_blob("data", "a", byte_range=(0, None), range_md5=True)
        assert exc_info.value.error_code == "OutOfRangeInput"

    @pytest.mark.asyncio
    async def test_missing_blob(self, backend):
        """Test reading a missing blob."""
        with pytest.raises(BlobNotFoundError) as exc_info:
            await backend.get_blob("data", "missing")
        assert exc_info.value.error_code == BlobErrorCode.BLOB_NOT_FOUND

    @pytest.mark.asyncio
    async def test_copies_are_returned(self, backend):
        """Test callers cannot change stored blobs through returned objects."""
        await backend.put_blob("data", "a", BlobType.BLOCK_BLOB, content=b"x", metadata={"k": "v"})
        blob = await backend.get_properties("data", "a")
        blob.metadata["k"] = "changed"
        assert (await backend.get_properties("data", "a")).metadata == {"k": "v"}


class TestConditions:
    """Test conditional request checks."""

    @pytest.mark.asyncio
    async def test_if_match(self, backend):
        """Test If-Match on reads and writes."""
        blob = await backend.put_blob("data", "a", BlobType.BLOCK_BLOB, content=b"x")

        await backend.get_properties("data", "a", condition=ConditionalPrecondition(if_match=blob.etag))
        with pytest.raises(ConditionNotMetError):
            await backend.get_properties("data", "a", condition=ConditionalPrecondition(if_match='"stale"'))
        with pytest.raises(ConditionNotMetError):
            await backend.set_metadata("data", "a", {}, condition=ConditionalPrecondition(if_match='"stale"'))

    @pytest.mark.asyncio
    async def test_if_match_star_requires_blob(self, backend):
        """Test If-Match: * fails for a missing blob."""
        with pytest.raises(ConditionNotMetError):
            await backend.put_blob("data", "a", BlobType.BLOCK_BLOB, condition=ConditionalPrecondition.if_exists())

    @pytest.mark.asyncio
    async def test_if_none_match(self, backend):
        """Test If-None-Match answers reads with 304 and writes with 409 or 412."""
        blob = await backend.put_blob("data", "a", BlobType.BLOCK_BLOB, content=b"x")

        with pytest.raises(NotModifiedError) as exc_info:
            await backend.get_blob("data", "a", condition=ConditionalPrecondition(if_none_match=blob.etag))
        assert exc_info.value.status_code == 304

        with pytest.raises(BlobAlreadyExistsError):
            await backend.put_blob("data", "a", BlobType.BLOCK_BLOB, condition=ConditionalPrecondition.if_not_exists())
        with pytest.raises(ConditionNotMetError):
            await backend.put_blob("data", "a", BlobType.BLOCK_BLOB, condition=ConditionalPrecondition(if_none_match=blob.etag))

    @pytest.mark.asyncio
    async def test_modification_times(self, backend):
        """Test If-Modified-Since and If-Unmodified-Since."""
        blob = await backend.put_blob("data", "a", BlobType.BLOCK_BLOB, content=b"x")

        with pytest.raises(NotModifiedError):
            await backend.get_blob("data", "a", condition=ConditionalPrecondition.modified_since(blob.last_modified))
        await backend.set_metadata(
            "data", "a", {}, condition=ConditionalPrecondition.not_modified_since(blob.last_modified),
        )


class TestAppendBlobs:
    """Test append blob storage."""

    @pytest.mark.asyncio
    async def test_append(self, backend):
        """Test appends report the offset they landed at."""
        await backend.put_blob("data", "log", BlobType.APPEND_BLOB)
        _, first = await backend.append_block("data", "log", b"abc")
        blob, second = await backend.append_block("data", "log", b"de")

        assert (first, second) == (0, 3)
        assert blob.content == b"abcde"
        assert blob.committed_block_count == 2

    @pytest.mark.asyncio
    async def test_append_conditions(self, backend):
        """Test append position and max size conditions."""
        await backend.put_blob("data", "log", BlobType.APPEND_BLOB)
        await backend.append_block("data", "log", b"abc")

        with pytest.raises(ConditionNotMetError) as position:
            await backend.append_block("data", "log", b"x", condition=ConditionalPrecondition(if_append_position_equal=0))
        assert position.value.error_code == BlobErrorCode.APPEND_POSITION_CONDITION_NOT_MET

        with pytest.raises(ConditionNotMetError) as size:
            await backend.append_block("data", "log", b"xy", condition=ConditionalPrecondition(if_max_size_less_than_or_equal=4))
        assert size.value.error_code == BlobErrorCode.MAX_BLOB_SIZE_CONDITION_NOT_MET

        await backend.append_block("data", "log", b"d", condition=ConditionalPrecondition(
            if_append_position_equal=3, if_max_size_less_than_or_equal=4,
        ))
        assert (await backend.get_properties("data", "log")).content == b"abcd"

    @pytest.mark.asyncio
    async def test_wrong_type(self, backend):
        """Test appending to a block blob."""
        await backend.put_blob("data", "a", BlobType.BLOCK_BLOB, content=b"x")
        with pytest.raises(InvalidBlobTypeError) as exc_info:
            await backend.append_block("data", "a", b"x")
        assert exc_info.value.status_code == 409

    @pytest.mark.asyncio
    async def test_payload_md5(self, backend):
        """Test a wrong transactional MD5 is rejected before anything is stored."""
        await backend.put_blob("data", "log", BlobType.APPEND_BLOB)

        with pytest.raises(InvalidInputError) as exc_info:
            await backend.append_block("data", "log", b"abc", content_md5=content_md5(b"abd"))
        assert exc_info.value.error_code == BlobErrorCode.MD5_MISMATCH

        await backend.append_block("data", "log", b"abc", content_md5=content_md5(b"abc"))
        assert (await backend.get_properties("data", "log")).content == b"abc"


class TestPageBlobs:
    """Test page blob storage."""

    @pytest.mark.asyncio
    async def test_write_and_clear(self, backend):
        """Test writing and clearing page ranges."""
        await backend.put_blob("data", "disk", BlobType.PAGE_BLOB, size=2048)
        await backend.put_pages("data", "disk", 0, 1023, b"p" * 1024)
        blob = await backend.put_pages("data", "disk", 512, 1023, None)

        assert blob.content == b"p" * 512 + bytes(1536)

    @pytest.mark.asyncio
    async def test_alignment(self, backend):
        """Test unaligned sizes and ranges are rejected."""
        with pytest.raises(InvalidInputError):
            await backend.put_blob("data", "disk", BlobType.PAGE_BLOB, size=1000)

        await backend.put_blob("data", "disk", BlobType.PAGE_BLOB, size=2048)
        with pytest.raises(InvalidInputError) as exc_info:
            await backend.put_pages("data", "disk", 100, 611, b"p" * 512)
        assert exc_info.value.error_code == BlobErrorCode.INVALID_PAGE_RANGE
        with pytest.raises(InvalidRangeError):
            await backend.put_pages("data", "disk", 2048, 2559, b"p" * 512)

    @pytest.mark.asyncio
    async def test_sequence_numbers(self, backend):
        """Test sequence number actions and conditions."""
        await backend.put_blob("data", "disk", BlobType.PAGE_BLOB, size=512, sequence_number=4)

        blob = await backend.set_sequence_number("data", "disk", SequenceNumberAction.MAX, 2)
        assert blob.sequence_number == 4
        blob = await backend.set_sequence_number("data", "disk", SequenceNumberAction.INCREMENT)
        assert blob.sequence_number == 5
        blob = await backend.set_sequence_number("data", "disk", SequenceNumberAction.UPDATE, 1)
        assert blob.sequence_number == 1

        with pytest.raises(ConditionNotMetError) as exc_info:
            await backend.put_pages(
                "data", "disk", 0, 511, b"p" * 512,
                condition=ConditionalPrecondition(if_sequence_number_less_than_or_equal=0),
            )
        assert exc_info.value.error_code == BlobErrorCode.SEQUENCE_NUMBER_CONDITION_NOT_MET


class TestBlockBlobs:
    """Test block staging and commit."""

    @pytest.mark.asyncio
    async def test_stage_and_commit(self, backend):
        """Test staged blocks become content only on commit."""
        await backend.put_block("data", "doc", "a", b"one-")
        await backend.put_block("data", "doc", "b", b"two")
        assert backend.staged_blocks("data", "doc") == ["a", "b"]
        with pytest.raises(BlobNotFoundError):
            await backend.get_properties("data", "doc")

        blob = await backend.put_block_list("data", "doc", ["a", "b"], content_md5="bWQ1")
        assert blob.content == b"one-two"
        assert blob.committed_blocks == ["a", "b"]
        assert blob.content_md5 == "bWQ1"
        assert backend.staged_blocks("data", "doc") == []

    @pytest.mark.asyncio
    async def test_unknown_block(self, backend):
        """Test a block list naming an unknown block fails."""
        with pytest.raises(InvalidInputError) as exc_info:
            await backend.put_block_list("data", "doc", ["missing"])
        assert exc_info.value.error_code == BlobErrorCode.INVALID_BLOCK_LIST

    @pytest.mark.asyncio
    async def test_put_blob_discards_staged(self, backend):
        """Test replacing a blob drops its staged blocks."""
        await backend.put_block("data", "doc", "a", b"one")
        await backend.put_blob("data", "doc", BlobType.BLOCK_BLOB, content=b"direct")
        assert backend.staged_blocks("data", "doc") == []


class TestLeases:
    """Test lease handling."""

    @pytest.mark.asyncio
    async def test_lease_lifecycle(self, backend):
        """Test acquire, use, release."""
        await backend.put_blob("data", "a", BlobType.BLOCK_BLOB, content=b"x")
        lease_id = await backend.acquire_lease("data", "a", proposed_lease_id="lease-1")
        assert lease_id == "lease-1"

        blob = await backend.get_properties("data", "a")
        assert blob.lease_status == LeaseStatus.LOCKED
        assert blob.lease_state == LeaseState.LEASED

        with pytest.raises(LeaseAlreadyPresentError):
            await backend.acquire_lease("data", "a")
        with pytest.raises(ConditionNotMetError) as missing:
            await backend.set_metadata("data", "a", {"k": "v"})
        assert missing.value.error_code == BlobErrorCode.LEASE_ID_MISSING

        await backend.set_metadata("data", "a", {"k": "v"}, condition=ConditionalPrecondition.lease(lease_id))
        await backend.release_lease("data", "a", lease_id)
        await backend.set_metadata("data", "a", {"k": "w"})

    @pytest.mark.asyncio
    async def test_reads_need_no_lease(self, backend):
        """Test a leased blob is still readable without the lease."""
        await backend.put_blob("data", "a", BlobType.BLOCK_BLOB, content=b"x")
        await backend.acquire_lease("data", "a")
        _, data, _ = await backend.get_blob("data", "a")
        assert data == b"x"

    @pytest.mark.asyncio
    async def test_broken_lease(self, backend):
        """Test a broken lease no longer blocks writes but cannot be used."""
        await backend.put_blob("data", "a", BlobType.BLOCK_BLOB, content=b"x")
        lease_id = await backend.acquire_lease("data", "a")
        await backend.break_lease("data", "a")

        assert (await backend.get_properties("data", "a")).lease_state == LeaseState.BROKEN
        await backend.set_metadata("data", "a", {"k": "v"})
        with pytest.raises(ConditionNotMetError) as exc_info:
            await backend.set_metadata("data", "a", {}, condition=ConditionalPrecondition.lease(lease_id))
        assert exc_info.value.error_code == BlobErrorCode.LEASE_NOT_PRESENT

    @pytest.mark.asyncio
    async def test_invalid_duration(self, backend):
        """Test lease durations are validated."""
        await backend.put_blob("data", "a", BlobType.BLOCK_BLOB, content=b"x")
        with pytest.raises(InvalidInputError):
            await backend.acquire_lease("data", "a", duration=5)


class TestSnapshots:
    """Test snapshot storage."""

    @pytest.mark.asyncio
    async def test_snapshot(self, backend):
        """Test snapshots are frozen copies addressed by timestamp."""
        await backend.put_blob("data", "a", BlobType.BLOCK_BLOB, content=b"v1")
        snapshot = await backend.create_snapshot("data", "a")
        await backend.put_blob("data", "a", BlobType.BLOCK_BLOB, content=b"v2")

        _, data, _ = await backend.get_blob("data", "a", snapshot=snapshot.snapshot)
        assert data == b"v1"
        _, data, _ = await backend.get_blob("data", "a")
        assert data == b"v2"

    @pytest.mark.asyncio
    async def test_missing_snapshot(self, backend):
        """Test reading an unknown snapshot."""
        await backend.put_blob("data", "a", BlobType.BLOCK_BLOB, content=b"v1")
        with pytest.raises(BlobNotFoundError):
            await backend.get_properties("data", "a", snapshot="2025-01-01T00:00:00.0000000Z")
