"""
Unit tests for blob client handles.
"""

import pytest

from streamzure.blob.attempt import OperationContext
from streamzure.blob.client import AppendBlobClient, BlobClient, BlockBlobClient, PageBlobClient
from streamzure.blob.conditions import ConditionalPrecondition
from streamzure.blob.exceptions import (
    BlobErrorCode,
    BlobTypeMismatchError,
    CallerUsageError,
    ConflictError,
    PreconditionFailedError,
    StorageServiceError,
)
from streamzure.blob.models import BlobIdentity, BlobType, PageRange, SequenceNumberAction
from streamzure.blob.options import BlobRequestOptions
from streamzure.blob.payload import content_md5
from streamzure.blob.retry import LinearRetry
from streamzure.blob.transport import BlobOperation
from streamzure.emulator import BlobServiceBackend, MemoryTransport


CONTAINER = "data"
IDENTITY = BlobIdentity(container_name=CONTAINER, blob_name="object.bin")


@pytest.fixture
async def transport():
    backend = BlobServiceBackend()
    await backend.create_container(CONTAINER)
    return MemoryTransport(backend)


@pytest.fixture
def options():
    return BlobRequestOptions(retry_policy=LinearRetry(max_attempts=3, backoff=0))


async def _stored(transport):
    return await transport.backend.get_properties(CONTAINER, IDENTITY.blob_name)


class TestBlobClient:
    """Test operations shared by every blob type."""

    @pytest.mark.asyncio
    async def test_fetch_attributes(self, transport, options):
        """Test the state reflects the service's properties."""
        await transport.backend.put_blob(
            CONTAINER, IDENTITY.blob_name, BlobType.BLOCK_BLOB,
            content=b"hello", metadata={"owner": "ops"},
        )
        client = BlockBlobClient(transport, IDENTITY, options)
        state = await client.fetch_attributes()

        stored = await _stored(transport)
        assert state is client.state
        assert state.etag == stored.etag
        assert state.content_length == 5
        assert state.blob_type == BlobType.BLOCK_BLOB
        assert state.metadata == {"owner": "ops"}

    @pytest.mark.asyncio
    async def test_exists(self, transport, options):
        """Test existence checks."""
        client = BlockBlobClient(transport, IDENTITY, options)
        assert await client.exists() is False

        await transport.backend.put_blob(CONTAINER, IDENTITY.blob_name, BlobType.BLOCK_BLOB, content=b"x")
        assert await client.exists() is True

    @pytest.mark.asyncio
    async def test_type_mismatch(self, transport, options):
        """Test a handle refuses a blob of another type."""
        await transport.backend.put_blob(CONTAINER, IDENTITY.blob_name, BlobType.APPEND_BLOB)
        with pytest.raises(BlobTypeMismatchError):
            await BlockBlobClient(transport, IDENTITY, options).fetch_attributes()

        state = await BlobClient(transport, IDENTITY, options).fetch_attributes()
        assert state.blob_type == BlobType.APPEND_BLOB

    @pytest.mark.asyncio
    async def test_download_helpers(self, transport, options):
        """Test whole and ranged downloads into memory."""
        await transport.backend.put_blob(CONTAINER, IDENTITY.blob_name, BlobType.BLOCK_BLOB, content=b"0123456789")
        client = BlockBlobClient(transport, IDENTITY, options)

        assert await client.download_to_bytes() == b"0123456789"
        assert await client.download_range_to_bytes(2, 3) == b"234"
        assert await client.download_range_to_bytes(7) == b"789"
        assert client.state.content_length == 10

    @pytest.mark.asyncio
    async def test_set_properties(self, transport, options):
        """Test setting content type and hash."""
        await transport.backend.put_blob(CONTAINER, IDENTITY.blob_name, BlobType.BLOCK_BLOB, content=b"x")
        client = BlockBlobClient(transport, IDENTITY, options)
        await client.set_properties(content_md5="bW9jaw==", content_type="text/plain")

        stored = await _stored(transport)
        assert stored.content_type == "text/plain"
        assert stored.content_md5 == "bW9jaw=="
        assert client.state.content_type == "text/plain"
        assert client.state.etag == stored.etag

    @pytest.mark.asyncio
    async def test_set_metadata(self, transport, options):
        """Test replacing metadata."""
        await transport.backend.put_blob(
            CONTAINER, IDENTITY.blob_name, BlobType.BLOCK_BLOB, content=b"x", metadata={"old": "1"},
        )
        client = BlockBlobClient(transport, IDENTITY, options)
        await client.set_metadata({"new": "2"})

        assert (await _stored(transport)).metadata == {"new": "2"}
        assert client.state.metadata == {"new": "2"}

    @pytest.mark.asyncio
    async def test_if_match_etag(self, transport, options):
        """Test a stale ETag is rejected."""
        await transport.backend.put_blob(CONTAINER, IDENTITY.blob_name, BlobType.BLOCK_BLOB, content=b"x")
        client = BlockBlobClient(transport, IDENTITY, options)
        first_etag = (await client.fetch_attributes()).etag

        await client.set_metadata({"a": "1"}, precondition=ConditionalPrecondition.if_match_etag(first_etag))
        assert client.state.etag != first_etag

        with pytest.raises(PreconditionFailedError) as exc_info:
            await client.set_metadata({"a": "2"}, precondition=ConditionalPrecondition.if_match_etag(first_etag))
        assert exc_info.value.error_code == BlobErrorCode.CONDITION_NOT_MET
        assert len(transport.calls(BlobOperation.SET_METADATA)) == 2

    @pytest.mark.asyncio
    async def test_request_ids_recorded(self, transport, options):
        """Test the operation context keeps every attempt's service request id."""
        await transport.backend.put_blob(CONTAINER, IDENTITY.blob_name, BlobType.BLOCK_BLOB, content=b"x")
        transport.fail_with_status(BlobOperation.SET_METADATA, 503)
        context = OperationContext(client_request_id="req-1")

        await BlockBlobClient(transport, IDENTITY, options).set_metadata({"a": "1"}, context=context)

        assert [result.status_code for result in context.request_results] == [503, 200]
        assert all(result.service_request_id for result in context.request_results)
        assert all(request.client_request_id == "req-1" for request in transport.requests)


class TestSnapshots:
    """Test snapshot handles."""

    @pytest.mark.asyncio
    async def test_snapshot_is_isolated(self, transport, options):
        """Test a snapshot keeps its content after the base blob changes."""
        client = BlockBlobClient(transport, IDENTITY, options)
        await client.upload_from_bytes(b"version one")
        snapshot = await client.create_snapshot()

        assert isinstance(snapshot, BlockBlobClient)
        assert snapshot.identity.is_snapshot
        assert snapshot.identity.blob_name == IDENTITY.blob_name

        await client.upload_from_bytes(b"version two")
        assert await snapshot.download_to_bytes() == b"version one"
        assert await client.download_to_bytes() == b"version two"

    @pytest.mark.asyncio
    async def test_snapshot_metadata(self, transport, options):
        """Test a snapshot can be given its own metadata."""
        client = BlockBlobClient(transport, IDENTITY, options)
        await client.upload_from_bytes(b"x")
        snapshot = await client.create_snapshot(metadata={"tag": "v1"})

        assert snapshot.state.metadata == {"tag": "v1"}
        assert (await snapshot.fetch_attributes()).metadata == {"tag": "v1"}

    @pytest.mark.asyncio
    async def test_snapshot_is_read_only(self, transport, options):
        """Test mutating a snapshot fails before any request is sent."""
        client = AppendBlobClient(transport, IDENTITY, options)
        await client.create()
        snapshot = await client.create_snapshot()
        sent = len(transport.requests)

        with pytest.raises(CallerUsageError):
            await snapshot.set_metadata({"a": "1"})
        with pytest.raises(CallerUsageError):
            await snapshot.set_properties(content_type="text/plain")
        with pytest.raises(CallerUsageError):
            await snapshot.append_block(b"x")
        with pytest.raises(CallerUsageError):
            await snapshot.open_write(create_new=False)
        with pytest.raises(CallerUsageError):
            await snapshot.create_snapshot()
        assert len(transport.requests) == sent


class TestAppendBlobClient:
    """Test append blob operations."""

    @pytest.mark.asyncio
    async def test_append_block(self, transport, options):
        """Test appends report their offsets."""
        client = AppendBlobClient(transport, IDENTITY, options)
        await client.create()

        first = await client.append_block(b"abc")
        second = await client.append_block(b"de")

        assert (first.append_offset, first.committed_block_count) == (0, 1)
        assert (second.append_offset, second.committed_block_count) == (3, 2)
        assert client.state.content_length == 5
        assert client.state.append_blob_committed_block_count == 2

    @pytest.mark.asyncio
    async def test_append_position_mismatch(self, transport, options):
        """Test a wrong append position is reported with its error code."""
        client = AppendBlobClient(transport, IDENTITY, options)
        await client.create()

        with pytest.raises(PreconditionFailedError) as exc_info:
            await client.append_block(b"x", precondition=ConditionalPrecondition.append_position(10))
        assert exc_info.value.error_code == BlobErrorCode.APPEND_POSITION_CONDITION_NOT_MET
        assert exc_info.value.status_code == 412
        assert len(transport.calls(BlobOperation.APPEND_BLOCK)) == 1

    @pytest.mark.asyncio
    async def test_create_if_not_exists(self, transport, options):
        """Test a conditional create refuses to replace a blob."""
        client = AppendBlobClient(transport, IDENTITY, options)
        await client.create(precondition=ConditionalPrecondition.if_not_exists())

        with pytest.raises(ConflictError) as exc_info:
            await client.create(precondition=ConditionalPrecondition.if_not_exists())
        assert exc_info.value.error_code == BlobErrorCode.BLOB_ALREADY_EXISTS

    @pytest.mark.asyncio
    async def test_create_with_metadata(self, transport, options):
        """Test metadata given at create is stored."""
        client = AppendBlobClient(transport, IDENTITY, options)
        await client.create(metadata={"source": "logs"})

        assert (await _stored(transport)).metadata == {"source": "logs"}
        assert client.state.metadata == {"source": "logs"}
        assert client.state.content_length == 0

    @pytest.mark.asyncio
    async def test_lease_required(self, transport, options):
        """Test a leased blob needs the lease id and accepts it."""
        await transport.backend.put_blob(CONTAINER, IDENTITY.blob_name, BlobType.APPEND_BLOB)
        lease_id = await transport.backend.acquire_lease(CONTAINER, IDENTITY.blob_name)
        client = AppendBlobClient(transport, IDENTITY, options)

        with pytest.raises(PreconditionFailedError) as exc_info:
            await client.append_block(b"x")
        assert exc_info.value.error_code == BlobErrorCode.LEASE_ID_MISSING

        with pytest.raises(PreconditionFailedError) as mismatch:
            await client.append_block(b"x", precondition=ConditionalPrecondition.lease("not-the-lease"))
        assert mismatch.value.error_code == BlobErrorCode.LEASE_ID_MISMATCH

        unit = await client.append_block(b"x", precondition=ConditionalPrecondition.lease(lease_id))
        assert unit.append_offset == 0

    @pytest.mark.asyncio
    async def test_sequence_condition_rejected(self, transport, options):
        """Test a page-only condition cannot be sent to an append blob."""
        client = AppendBlobClient(transport, IDENTITY, options)
        with pytest.raises(CallerUsageError):
            await client.append_block(b"x", precondition=ConditionalPrecondition.sequence_number_equal(0))
        assert transport.requests == []

    @pytest.mark.asyncio
    async def test_oversized_block(self, transport, options):
        """Test a block over 4 MiB is refused locally."""
        client = AppendBlobClient(transport, IDENTITY, options)
        with pytest.raises(CallerUsageError):
            await client.append_block(bytes(4 * 1024 * 1024 + 1))
        assert transport.requests == []


class TestPageBlobClient:
    """Test page blob operations."""

    @pytest.fixture
    async def client(self, transport, options):
        client = PageBlobClient(transport, IDENTITY, options)
        await client.create(4096)
        return client

    @pytest.mark.asyncio
    async def test_create(self, transport, client):
        """Test a created page blob is zero filled."""
        assert (await _stored(transport)).content == bytes(4096)
        assert client.state.content_length == 4096

    @pytest.mark.asyncio
    async def test_unaligned_create(self, transport, options):
        """Test an unaligned size is refused locally."""
        with pytest.raises(CallerUsageError):
            await PageBlobClient(transport, IDENTITY, options).create(1000)
        assert transport.requests == []

    @pytest.mark.asyncio
    async def test_write_pages(self, transport, client):
        """Test writing pages at an offset."""
        page_range = await client.write_pages(b"w" * 1024, 512)

        assert page_range == PageRange(start_offset=512, end_offset=1535)
        content = (await _stored(transport)).content
        assert content[:512] == bytes(512)
        assert content[512:1536] == b"w" * 1024

    @pytest.mark.asyncio
    async def test_unaligned_writes(self, transport, client):
        """Test unaligned offsets and lengths are refused locally."""
        sent = len(transport.requests)
        with pytest.raises(CallerUsageError):
            await client.write_pages(b"w" * 512, 100)
        with pytest.raises(CallerUsageError):
            await client.write_pages(b"w" * 500, 0)
        with pytest.raises(CallerUsageError):
            await client.write_pages(b"", 0)
        assert len(transport.requests) == sent

    @pytest.mark.asyncio
    async def test_write_past_end(self, client):
        """Test the service rejects pages past the blob size."""
        with pytest.raises(StorageServiceError) as exc_info:
            await client.write_pages(b"w" * 512, 4096)
        assert exc_info.value.status_code == 416

    @pytest.mark.asyncio
    async def test_clear_pages(self, transport, client):
        """Test clearing zeroes the range."""
        await client.write_pages(b"w" * 2048, 0)
        await client.clear_pages(512, 1024)

        content = (await _stored(transport)).content
        assert content[:512] == b"w" * 512
        assert content[512:1536] == bytes(1024)
        assert content[1536:2048] == b"w" * 512
        assert transport.calls(BlobOperation.CLEAR_PAGES)[0].payload is None

    @pytest.mark.asyncio
    async def test_page_batch(self, transport, client):
        """Test a batch is written in offset order."""
        ranges = await client.write_page_batch([(2048, b"b" * 512), (0, b"a" * 512)])

        assert [r.start_offset for r in ranges] == [0, 2048]
        assert [r.page_range.start_offset for r in transport.calls(BlobOperation.PUT_PAGE)] == [0, 2048]

    @pytest.mark.asyncio
    async def test_overlapping_batch(self, transport, client):
        """Test an overlapping batch writes nothing."""
        with pytest.raises(CallerUsageError):
            await client.write_page_batch([(0, b"a" * 1024), (512, b"b" * 512)])
        assert transport.calls(BlobOperation.PUT_PAGE) == []

    @pytest.mark.asyncio
    async def test_sequence_numbers(self, client):
        """Test each sequence number action."""
        assert await client.set_sequence_number(SequenceNumberAction.UPDATE, 5) == 5
        assert await client.set_sequence_number(SequenceNumberAction.MAX, 3) == 5
        assert await client.set_sequence_number(SequenceNumberAction.MAX, 9) == 9
        assert await client.set_sequence_number(SequenceNumberAction.INCREMENT) == 10
        assert client.state.sequence_number == 10

    @pytest.mark.asyncio
    async def test_sequence_number_arguments(self, transport, client):
        """Test malformed sequence number requests are refused locally."""
        sent = len(transport.requests)
        with pytest.raises(CallerUsageError):
            await client.set_sequence_number(SequenceNumberAction.INCREMENT, 1)
        with pytest.raises(CallerUsageError):
            await client.set_sequence_number(SequenceNumberAction.UPDATE)
        with pytest.raises(CallerUsageError):
            await client.set_sequence_number(SequenceNumberAction.MAX, -1)
        assert len(transport.requests) == sent

    @pytest.mark.asyncio
    async def test_sequence_number_condition(self, client):
        """Test page writes honor sequence number conditions."""
        await client.set_sequence_number(SequenceNumberAction.UPDATE, 7)

        await client.write_pages(b"s" * 512, 0, precondition=ConditionalPrecondition.sequence_number_less_than(8))
        with pytest.raises(PreconditionFailedError) as exc_info:
            await client.write_pages(b"s" * 512, 0, precondition=ConditionalPrecondition.sequence_number_less_than(7))
        assert exc_info.value.error_code == BlobErrorCode.SEQUENCE_NUMBER_CONDITION_NOT_MET

    @pytest.mark.asyncio
    async def test_append_condition_rejected(self, transport, client):
        """Test an append-only condition cannot be sent to a page blob."""
        sent = len(transport.requests)
        with pytest.raises(CallerUsageError):
            await client.write_pages(b"s" * 512, 0, precondition=ConditionalPrecondition.append_position(0))
        assert len(transport.requests) == sent


class TestBlockBlobClient:
    """Test block blob operations."""

    @pytest.mark.asyncio
    async def test_put_block_and_commit(self, transport, options):
        """Test staging blocks and committing them in a chosen order."""
        client = BlockBlobClient(transport, IDENTITY, options)
        await client.put_block("YQ==", b"first-")
        await client.put_block("Yg==", b"second")
        await client.put_block_list(["Yg==", "YQ=="])

        assert (await _stored(transport)).content == b"secondfirst-"
        assert transport.backend.staged_blocks(CONTAINER, IDENTITY.blob_name) == []

    @pytest.mark.asyncio
    async def test_recommit_committed_blocks(self, transport, options):
        """Test committed blocks can be reused in a later list."""
        client = BlockBlobClient(transport, IDENTITY, options)
        await client.put_block("YQ==", b"aa")
        await client.put_block("Yg==", b"bb")
        await client.put_block_list(["YQ==", "Yg=="])

        await client.put_block("Yw==", b"cc")
        await client.put_block_list(["Yg==", "Yw=="])
        assert (await _stored(transport)).content == b"bbcc"

    @pytest.mark.asyncio
    async def test_unknown_block(self, transport, options):
        """Test committing an unknown block id fails."""
        client = BlockBlobClient(transport, IDENTITY, options)
        with pytest.raises(StorageServiceError) as exc_info:
            await client.put_block_list(["bm9wZQ=="])
        assert exc_info.value.error_code == BlobErrorCode.INVALID_BLOCK_LIST
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_commit_retried_when_busy(self, transport, options):
        """Test a throttled commit is retried."""
        client = BlockBlobClient(transport, IDENTITY, options)
        await client.put_block("YQ==", b"data")
        transport.fail_with_status(BlobOperation.PUT_BLOCK_LIST, 503, times=2)

        await client.put_block_list(["YQ=="])
        assert len(transport.calls(BlobOperation.PUT_BLOCK_LIST)) == 3
        assert (await _stored(transport)).content == b"data"

    @pytest.mark.asyncio
    async def test_not_implemented_is_final(self, transport, options):
        """Test a 501 is not retried."""
        client = BlockBlobClient(transport, IDENTITY, options)
        transport.fail_with_status(BlobOperation.PUT_BLOCK_LIST, 501, error_code="NotImplemented")

        with pytest.raises(StorageServiceError) as exc_info:
            await client.put_block_list([])
        assert exc_info.value.status_code == 501
        assert len(transport.calls(BlobOperation.PUT_BLOCK_LIST)) == 1

    @pytest.mark.asyncio
    async def test_transactional_md5_sent(self, transport):
        """Test staged blocks carry their payload hash."""
        options = BlobRequestOptions(retry_policy=LinearRetry(backoff=0), use_transactional_md5=True)
        client = BlockBlobClient(transport, IDENTITY, options)
        await client.put_block("YQ==", b"hashed")

        assert transport.calls(BlobOperation.PUT_BLOCK)[0].content_md5 == content_md5(b"hashed")
