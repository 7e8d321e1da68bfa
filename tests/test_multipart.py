"""Unit tests for the multipart upload pipeline with mocked S3 clients."""

from __future__ import annotations

import io
import threading
import time
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from blobstore.storage.buffers import BufferPool
from blobstore.storage.multipart import (
    CompletedPart,
    MultipartSession,
    MultipartWriter,
    PartUploader,
)


def client_error(code: str, operation: str = "UploadPart") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": f"{code} message"}}, operation)


def mock_client() -> MagicMock:
    client = MagicMock()
    client.create_multipart_upload.return_value = {"UploadId": "upload-1"}
    client.upload_part.side_effect = lambda **kw: {"ETag": f'"etag-{kw["PartNumber"]}"'}
    client.upload_part_copy.side_effect = lambda **kw: {
        "CopyPartResult": {"ETag": f'"copy-{kw["PartNumber"]}"'}
    }
    client.head_object.side_effect = client_error("404", "HeadObject")
    return client


class FailingSource(io.RawIOBase):
    """Returns ``data`` then raises on the next read."""

    def __init__(self, data: bytes) -> None:
        self._data = io.BytesIO(data)

    def readable(self) -> bool:
        return True

    def read(self, size: int = -1) -> bytes:
        chunk = self._data.read(size)
        if not chunk:
            raise OSError("connection reset by peer")
        return chunk


class TestMultipartSession:
    """Tests for the scoped multipart upload."""

    def test_enter_initiates_upload(self) -> None:
        """Entering creates the upload with the extra arguments."""
        client = mock_client()
        with MultipartSession(client, "b", "k", {"ContentType": "application/octet-stream"}) as session:
            assert session.upload_id == "upload-1"
            session.upload_part(1, b"data")
            session.complete()
        client.create_multipart_upload.assert_called_once_with(
            Bucket="b", Key="k", ContentType="application/octet-stream"
        )

    def test_complete_skips_abort(self) -> None:
        """A completed upload is not aborted on exit."""
        client = mock_client()
        with MultipartSession(client, "b", "k") as session:
            session.upload_part(1, b"data")
            session.complete()
        assert session.completed is True
        client.abort_multipart_upload.assert_not_called()

    def test_exit_without_complete_aborts(self) -> None:
        """Leaving the block without completing aborts."""
        client = mock_client()
        with MultipartSession(client, "b", "k") as session:
            session.upload_part(1, b"data")
        assert session.aborted is True
        client.abort_multipart_upload.assert_called_once_with(Bucket="b", Key="k", UploadId="upload-1")
        client.complete_multipart_upload.assert_not_called()

    def test_exception_aborts_and_propagates(self) -> None:
        """Errors inside the block abort the upload and are re-raised."""
        client = mock_client()
        with pytest.raises(RuntimeError, match="boom"):
            with MultipartSession(client, "b", "k"):
                raise RuntimeError("boom")
        client.abort_multipart_upload.assert_called_once()

    def test_abort_is_retried(self) -> None:
        """A transient abort failure is retried."""
        client = mock_client()
        client.abort_multipart_upload.side_effect = [client_error("InternalError", "AbortMultipartUpload"), {}]
        with MultipartSession(client, "b", "k") as session:
            pass
        assert client.abort_multipart_upload.call_count == 2
        assert session.aborted is True

    def test_abort_failure_does_not_mask_original_error(self, caplog) -> None:
        """When abort keeps failing, the original error still surfaces."""
        client = mock_client()
        client.abort_multipart_upload.side_effect = client_error("InternalError", "AbortMultipartUpload")
        with pytest.raises(ValueError, match="original"):
            with MultipartSession(client, "b", "k"):
                raise ValueError("original")
        assert client.abort_multipart_upload.call_count == 3
        assert "Failed to abort multipart upload" in caplog.text

    def test_parts_sorted_by_number(self) -> None:
        """Parts are reported in part-number order."""
        client = mock_client()
        with MultipartSession(client, "b", "k") as session:
            session.upload_part(2, b"bb")
            session.upload_part(1, b"a")
            session.complete()
        assert [part.part_number for part in session.parts] == [1, 2]
        completed = client.complete_multipart_upload.call_args.kwargs["MultipartUpload"]["Parts"]
        assert completed == [
            {"ETag": '"etag-1"', "PartNumber": 1},
            {"ETag": '"etag-2"', "PartNumber": 2},
        ]

    def test_copy_part_range(self) -> None:
        """Copy parts use an inclusive byte range from the source key."""
        client = mock_client()
        with MultipartSession(client, "b", "k") as session:
            part = session.copy_part(1, "k", (0, 99))
            session.complete()
        assert part == CompletedPart(1, '"copy-1"', 100)
        kwargs = client.upload_part_copy.call_args.kwargs
        assert kwargs["CopySource"] == {"Bucket": "b", "Key": "k"}
        assert kwargs["CopySourceRange"] == "bytes=0-99"


class TestPartUploader:
    """Tests for background part uploads."""

    def test_one_upload_in_flight(self) -> None:
        """submit() waits for the previous upload first."""
        active = 0
        peak = 0
        lock = threading.Lock()

        def slow_upload(part_number, body):
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            time.sleep(0.01)
            with lock:
                active -= 1
            return CompletedPart(part_number, "e", len(body))

        session = MagicMock()
        session.upload_part.side_effect = slow_upload
        pool = BufferPool(4)

        with PartUploader(session, pool) as uploader:
            for number in range(1, 6):
                uploader.submit(number, pool.acquire(), 4)

        assert peak == 1
        assert session.upload_part.call_count == 5
        assert pool.free_count >= 1

    def test_uploads_only_requested_length(self) -> None:
        """Only buf[:length] is sent."""
        session = MagicMock()
        session.upload_part.side_effect = lambda n, body: CompletedPart(n, "e", len(body))
        pool = BufferPool(8)
        buf = pool.acquire()
        buf[:3] = b"abc"

        with PartUploader(session, pool) as uploader:
            uploader.submit(1, buf, 3)
            part = uploader.wait()

        session.upload_part.assert_called_once_with(1, b"abc")
        assert part.size == 3

    def test_full_buffer_sent_without_copy(self) -> None:
        """A full buffer is passed to the session as-is."""
        session = MagicMock()
        session.upload_part.side_effect = lambda n, body: CompletedPart(n, "e", len(body))
        pool = BufferPool(8)
        buf = pool.acquire()

        with PartUploader(session, pool) as uploader:
            uploader.submit(1, buf, 8)
            uploader.submit(2, pool.zeros, 8, release=False)

        bodies = [call.args[1] for call in session.upload_part.call_args_list]
        assert bodies[0] is buf
        assert bodies[1] is pool.zeros

    def test_error_surfaces_on_next_submit(self) -> None:
        """A failed upload is raised by the next submit."""
        session = MagicMock()
        session.upload_part.side_effect = client_error("SlowDown")
        pool = BufferPool(4)

        with pytest.raises(ClientError):
            with PartUploader(session, pool) as uploader:
                uploader.submit(1, pool.acquire(), 4)
                uploader.submit(2, pool.acquire(), 4)

        assert session.upload_part.call_count == 1

    def test_buffer_released_after_failure(self) -> None:
        """Buffers go back to the pool even when the upload fails."""
        session = MagicMock()
        session.upload_part.side_effect = client_error("SlowDown")
        pool = BufferPool(4)

        with pytest.raises(ClientError):
            with PartUploader(session, pool) as uploader:
                uploader.submit(1, pool.acquire(), 4)

        assert pool.free_count == 1

    def test_shared_buffer_not_released(self) -> None:
        """release=False leaves the buffer with the caller."""
        session = MagicMock()
        session.upload_part.side_effect = lambda n, body: CompletedPart(n, "e", len(body))
        pool = BufferPool(4)

        with PartUploader(session, pool) as uploader:
            uploader.submit(1, pool.zeros, 4, release=False)

        assert pool.free_count == 0


class TestMultipartWriter:
    """Tests for the write-at-offset algorithm against a mocked client."""

    def test_streams_source_in_chunks(self) -> None:
        """Offset zero uploads the source in chunk-sized parts."""
        client = mock_client()
        pool = BufferPool(8)
        writer = MultipartWriter(client, "b", "k", pool)

        consumed = writer.write(0, io.BytesIO(b"x" * 20))

        assert consumed == 20
        bodies = [call.kwargs["Body"] for call in client.upload_part.call_args_list]
        assert bodies == [b"x" * 8, b"x" * 8, b"x" * 4]
        client.complete_multipart_upload.assert_called_once()
        client.head_object.assert_not_called()

    def test_exact_chunk_multiple(self) -> None:
        """A source of exactly N chunks yields N parts, no empty trailer."""
        client = mock_client()
        writer = MultipartWriter(client, "b", "k", BufferPool(8))

        assert writer.write(0, io.BytesIO(b"y" * 16)) == 16
        assert client.upload_part.call_count == 2

    def test_empty_source_writes_empty_object(self) -> None:
        """An empty source at offset zero aborts the upload and PUTs nothing."""
        client = mock_client()
        writer = MultipartWriter(client, "b", "k", BufferPool(8), extra_args={"ContentType": "t"})

        assert writer.write(0, io.BytesIO(b"")) == 0

        client.put_object.assert_called_once_with(Bucket="b", Key="k", Body=b"", ContentType="t")
        client.complete_multipart_upload.assert_not_called()
        client.abort_multipart_upload.assert_called_once()

    def test_offset_within_first_chunk_reads_prefix(self) -> None:
        """A small retained prefix is re-read and re-uploaded with the new data."""
        client = mock_client()
        client.head_object.side_effect = None
        client.head_object.return_value = {"ContentLength": 6}
        client.get_object.return_value = {"Body": io.BytesIO(b"abcd")}
        writer = MultipartWriter(client, "b", "k", BufferPool(8))

        assert writer.write(4, io.BytesIO(b"XY")) == 2

        client.get_object.assert_called_once_with(Bucket="b", Key="k", Range="bytes=0-3")
        client.upload_part.assert_called_once()
        assert client.upload_part.call_args.kwargs["Body"] == b"abcdXY"

    def test_large_offset_copies_prefix(self) -> None:
        """A retained prefix of at least one chunk is copied server-side."""
        client = mock_client()
        client.head_object.side_effect = None
        client.head_object.return_value = {"ContentLength": 20}
        writer = MultipartWriter(client, "b", "k", BufferPool(8))

        writer.write(10, io.BytesIO(b"new"))

        copy_kwargs = client.upload_part_copy.call_args.kwargs
        assert copy_kwargs["PartNumber"] == 1
        assert copy_kwargs["CopySourceRange"] == "bytes=0-9"
        assert client.upload_part.call_args.kwargs["PartNumber"] == 2
        assert client.upload_part.call_args.kwargs["Body"] == b"new"
        client.get_object.assert_not_called()

    def test_gap_past_small_object_zero_fills(self) -> None:
        """A gap beyond a short object is zero-filled across chunk boundaries."""
        client = mock_client()
        client.head_object.side_effect = None
        client.head_object.return_value = {"ContentLength": 3}
        client.get_object.return_value = {"Body": io.BytesIO(b"abc")}
        writer = MultipartWriter(client, "b", "k", BufferPool(4))

        writer.write(13, io.BytesIO(b"Z"))

        bodies = [call.kwargs["Body"] for call in client.upload_part.call_args_list]
        assert b"".join(bodies) == b"abc" + bytes(10) + b"Z"
        assert bodies[0] == b"abc\x00"
        assert all(len(body) == 4 for body in bodies[:-1])

    def test_gap_past_large_object_copies_then_pads(self) -> None:
        """Objects of at least one chunk are copied, then padded with zero parts."""
        client = mock_client()
        client.head_object.side_effect = None
        client.head_object.return_value = {"ContentLength": 5}
        writer = MultipartWriter(client, "b", "k", BufferPool(4))

        writer.write(14, io.BytesIO(b"Q"))

        assert client.upload_part_copy.call_args.kwargs["CopySourceRange"] == "bytes=0-4"
        bodies = [call.kwargs["Body"] for call in client.upload_part.call_args_list]
        assert bodies == [bytes(4), bytes(4), b"\x00Q"]
        numbers = [call.kwargs["PartNumber"] for call in client.upload_part.call_args_list]
        assert numbers == [2, 3, 4]

    def test_truncate_with_empty_source(self) -> None:
        """An empty source at a non-zero offset keeps just the prefix."""
        client = mock_client()
        client.head_object.side_effect = None
        client.head_object.return_value = {"ContentLength": 6}
        client.get_object.return_value = {"Body": io.BytesIO(b"abc")}
        writer = MultipartWriter(client, "b", "k", BufferPool(8))

        assert writer.write(3, io.BytesIO(b"")) == 0
        assert client.upload_part.call_args.kwargs["Body"] == b"abc"
        client.complete_multipart_upload.assert_called_once()

    def test_missing_object_treated_as_empty(self) -> None:
        """Writing past the end of a missing object zero-fills the gap."""
        client = mock_client()
        writer = MultipartWriter(client, "b", "k", BufferPool(8))

        writer.write(2, io.BytesIO(b"hi"))

        client.get_object.assert_not_called()
        assert client.upload_part.call_args.kwargs["Body"] == b"\x00\x00hi"

    def test_upload_failure_aborts_and_reports_consumed(self) -> None:
        """A failed part upload aborts the upload; consumed stays accurate."""
        client = mock_client()
        client.upload_part.side_effect = client_error("SlowDown")
        writer = MultipartWriter(client, "b", "k", BufferPool(8))

        with pytest.raises(ClientError):
            writer.write(0, io.BytesIO(b"z" * 30))

        client.abort_multipart_upload.assert_called_once()
        client.complete_multipart_upload.assert_not_called()
        assert 8 <= writer.consumed <= 24

    def test_source_failure_aborts(self) -> None:
        """A failing source aborts the upload and reports the bytes read."""
        client = mock_client()
        pool = BufferPool(8)
        writer = MultipartWriter(client, "b", "k", pool)

        with pytest.raises(OSError, match="connection reset"):
            writer.write(0, FailingSource(b"w" * 11))

        assert writer.consumed == 11
        client.abort_multipart_upload.assert_called_once()
        client.complete_multipart_upload.assert_not_called()
        client.put_object.assert_not_called()
        assert pool.free_count in (1, 2)

    def test_head_failure_propagates(self) -> None:
        """Errors other than not-found on the length probe propagate."""
        client = mock_client()
        client.head_object.side_effect = client_error("AccessDenied", "HeadObject")
        writer = MultipartWriter(client, "b", "k", BufferPool(8))

        with pytest.raises(ClientError):
            writer.write(5, io.BytesIO(b"x"))
        client.abort_multipart_upload.assert_called_once()
