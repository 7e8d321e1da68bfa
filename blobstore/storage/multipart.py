"""Resumable, arbitrary-offset streaming writes over S3 multipart uploads.

S3 has no "write at offset". Every write therefore rebuilds the whole
object as a new multipart upload: the retained prefix ``[0, offset)`` is
re-expressed as server-side copy parts, re-uploaded bytes or zero padding,
and the new data from the source follows. Every part except the last must
be at least the minimum part size, which is why the prefix handling
depends on how ``offset`` and the current object length relate to the
chunk size.

The new content only becomes visible when the upload is completed. Any
failure aborts the upload instead.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, BinaryIO, Dict, List, Optional, Tuple, Union

from botocore.exceptions import BotoCoreError, ClientError

from blobstore.errors import NOT_FOUND_CODES
from blobstore.resilience import with_retry
from blobstore.storage.buffers import BufferPool

logger = logging.getLogger(__name__)

__all__ = [
    "CompletedPart",
    "MultipartSession",
    "PartUploader",
    "MultipartWriter",
]


@dataclass(frozen=True)
class CompletedPart:
    """One uploaded part of a multipart upload."""

    part_number: int
    etag: str
    size: int


class MultipartSession:
    """A multipart upload scoped to a ``with`` block.

    Entering the block initiates the upload. Leaving it without a
    successful ``complete()`` aborts the upload, whatever the exit path.
    Parts already uploaded are not deleted individually; the abort releases
    them.
    """

    def __init__(
        self,
        client: Any,
        bucket: str,
        key: str,
        extra_args: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._client = client
        self.bucket = bucket
        self.key = key
        self._extra_args = extra_args or {}
        self.upload_id: Optional[str] = None
        self.completed = False
        self.aborted = False
        self._parts: List[CompletedPart] = []
        self._lock = threading.Lock()

    def __enter__(self) -> "MultipartSession":
        response = self._client.create_multipart_upload(
            Bucket=self.bucket, Key=self.key, **self._extra_args
        )
        self.upload_id = response["UploadId"]
        logger.debug("Initiated multipart upload %s for s3://%s/%s", self.upload_id, self.bucket, self.key)
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> bool:
        if not self.completed and not self.aborted:
            try:
                self.abort()
            except (BotoCoreError, ClientError) as abort_exc:
                logger.warning(
                    "Failed to abort multipart upload %s for s3://%s/%s: %s",
                    self.upload_id,
                    self.bucket,
                    self.key,
                    abort_exc,
                )
            else:
                if exc_type is not None:
                    logger.warning(
                        "Aborted multipart upload %s for s3://%s/%s after %s: %s",
                        self.upload_id,
                        self.bucket,
                        self.key,
                        exc_type.__name__,
                        exc,
                    )
        return False

    @property
    def parts(self) -> List[CompletedPart]:
        with self._lock:
            return sorted(self._parts, key=lambda part: part.part_number)

    def _record(self, part: CompletedPart) -> CompletedPart:
        with self._lock:
            self._parts.append(part)
        return part

    def upload_part(self, part_number: int, body: Union[bytes, bytearray]) -> CompletedPart:
        response = self._client.upload_part(
            Bucket=self.bucket,
            Key=self.key,
            UploadId=self.upload_id,
            PartNumber=part_number,
            Body=body,
        )
        logger.debug("Uploaded part %d (%d bytes) of %s", part_number, len(body), self.upload_id)
        return self._record(CompletedPart(part_number, response["ETag"], len(body)))

    def copy_part(
        self,
        part_number: int,
        source_key: str,
        byte_range: Tuple[int, int],
    ) -> CompletedPart:
        """Add a part copied server-side from ``source_key``.

        ``byte_range`` is an inclusive ``(first, last)`` pair.
        """
        first, last = byte_range
        response = self._client.upload_part_copy(
            Bucket=self.bucket,
            Key=self.key,
            UploadId=self.upload_id,
            PartNumber=part_number,
            CopySource={"Bucket": self.bucket, "Key": source_key},
            CopySourceRange=f"bytes={first}-{last}",
        )
        logger.debug("Copied part %d from %s into %s", part_number, source_key, self.upload_id)
        return self._record(CompletedPart(part_number, response["CopyPartResult"]["ETag"], last - first + 1))

    def complete(self) -> None:
        parts = self.parts
        self._client.complete_multipart_upload(
            Bucket=self.bucket,
            Key=self.key,
            UploadId=self.upload_id,
            MultipartUpload={
                "Parts": [{"ETag": part.etag, "PartNumber": part.part_number} for part in parts]
            },
        )
        self.completed = True
        logger.info("Completed multipart upload of s3://%s/%s with %d part(s)", self.bucket, self.key, len(parts))

    @with_retry(max_attempts=3, retry_exceptions=(BotoCoreError, ClientError))
    def abort(self) -> None:
        self._client.abort_multipart_upload(Bucket=self.bucket, Key=self.key, UploadId=self.upload_id)
        self.aborted = True
        logger.debug("Aborted multipart upload %s for s3://%s/%s", self.upload_id, self.bucket, self.key)


class PartUploader:
    """Uploads parts in the background, at most one at a time.

    ``submit`` first resolves the previous upload (re-raising its error),
    so the caller fills the next buffer while the current one is in
    flight but never gets more than one part ahead.
    """

    def __init__(self, session: MultipartSession, pool: BufferPool) -> None:
        self._session = session
        self._pool = pool
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="part-upload")
        self._pending: Optional[Future] = None

    def __enter__(self) -> "PartUploader":
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> bool:
        try:
            if exc_type is None:
                self.wait()
            else:
                try:
                    self.wait()
                except Exception as pending_exc:
                    logger.debug("Discarding in-flight upload error after failure: %s", pending_exc)
        finally:
            self._executor.shutdown(wait=True)
        return False

    def submit(
        self,
        part_number: int,
        buf: Any,
        length: int,
        *,
        release: bool = True,
    ) -> "Future[CompletedPart]":
        """Upload ``buf[:length]`` as ``part_number``.

        When ``release`` is set the buffer goes back to the pool once the
        upload finishes, successfully or not.
        """
        self.wait()
        self._pending = self._executor.submit(self._upload, part_number, buf, length, release)
        return self._pending

    def wait(self) -> Optional[CompletedPart]:
        pending, self._pending = self._pending, None
        if pending is None:
            return None
        return pending.result()

    def _upload(self, part_number: int, buf: Any, length: int, release: bool) -> CompletedPart:
        try:
            # Full chunks go out as-is; only a short final part is sliced.
            body = buf if length == len(buf) else bytes(memoryview(buf)[:length])
            return self._session.upload_part(part_number, body)
        finally:
            if release:
                self._pool.release(buf)


class MultipartWriter:
    """Writes one stream at an offset. Create one per write call.

    ``consumed`` counts bytes read from the source and stays accurate when
    ``write`` raises.
    """

    def __init__(
        self,
        client: Any,
        bucket: str,
        key: str,
        pool: BufferPool,
        extra_args: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._client = client
        self._bucket = bucket
        self._key = key
        self._pool = pool
        self._chunk_size = pool.chunk_size
        self._extra_args = extra_args or {}
        self.consumed = 0

        self._session: Optional[MultipartSession] = None
        self._uploader: Optional[PartUploader] = None
        self._source: Optional[BinaryIO] = None
        self._buf: Optional[bytearray] = None
        self._part_number = 1

    def write(self, offset: int, source: BinaryIO) -> int:
        """Replace the object with ``current[0:offset]`` (zero-padded) + source."""
        self._source = source
        with MultipartSession(self._client, self._bucket, self._key, self._extra_args) as session:
            self._session = session
            with PartUploader(session, self._pool) as uploader:
                self._uploader = uploader
                self._buf = self._pool.acquire()
                try:
                    self._write_parts(offset)
                finally:
                    if self._buf is not None:
                        self._pool.release(self._buf)
                        self._buf = None

            if session.parts:
                session.complete()
            else:
                # Nothing to assemble: an empty source at offset zero. S3
                # cannot complete an upload without parts, so the session is
                # aborted on exit and an empty object is written directly.
                self._client.put_object(Bucket=self._bucket, Key=self._key, Body=b"", **self._extra_args)
        return self.consumed

    def _write_parts(self, offset: int) -> None:
        chunk = self._chunk_size

        if offset > 0:
            current = self._current_length()

            if offset <= current:
                if offset < chunk:
                    self._fill_from_current(offset)
                    if not self._stream(offset):
                        return
                else:
                    self._copy_current(offset)
            elif current < chunk:
                self._fill_from_current(current)
                if offset < chunk:
                    self._zero_fill(current, offset)
                    if not self._stream(offset):
                        return
                else:
                    self._zero_fill(current, chunk)
                    self._flush(chunk)
                    remainder = self._put_zero_parts(offset - chunk)
                    if not self._stream(remainder):
                        return
            else:
                self._copy_current(current)
                remainder = self._put_zero_parts(offset - current)
                if not self._stream(remainder):
                    return

        while self._stream(0):
            pass

    def _next_part_number(self) -> int:
        number = self._part_number
        self._part_number += 1
        return number

    def _current_length(self) -> int:
        try:
            response = self._client.head_object(Bucket=self._bucket, Key=self._key)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in NOT_FOUND_CODES:
                return 0
            raise
        return int(response.get("ContentLength", 0))

    def _fill_from_current(self, length: int) -> None:
        """Read ``current[0:length]`` into the head of the buffer."""
        if length <= 0:
            return
        response = self._client.get_object(Bucket=self._bucket, Key=self._key, Range=f"bytes=0-{length - 1}")
        body = response["Body"]
        view = memoryview(self._buf)
        filled = 0
        try:
            while filled < length:
                data = body.read(length - filled)
                if not data:
                    break
                view[filled:filled + len(data)] = data
                filled += len(data)
        finally:
            body.close()

        if filled < length:
            logger.warning(
                "Read %d of %d existing bytes from s3://%s/%s; padding with zeros",
                filled,
                length,
                self._bucket,
                self._key,
            )
            self._zero_fill(filled, length)

    def _zero_fill(self, start: int, end: int) -> None:
        if end > start:
            self._buf[start:end] = memoryview(self._pool.zeros)[: end - start]

    def _copy_current(self, length: int) -> None:
        self._uploader.wait()
        self._session.copy_part(self._next_part_number(), self._key, (0, length - 1))

    def _put_zero_parts(self, gap: int) -> int:
        """Emit whole zero chunks for ``gap`` bytes; zero-fill and return the remainder."""
        for _ in range(gap // self._chunk_size):
            self._uploader.submit(self._next_part_number(), self._pool.zeros, self._chunk_size, release=False)
        remainder = gap % self._chunk_size
        self._zero_fill(0, remainder)
        return remainder

    def _fill_from_source(self, start: int) -> int:
        """Fill the buffer from ``start`` until full or the source is exhausted."""
        view = memoryview(self._buf)
        filled = start
        while filled < self._chunk_size:
            data = self._source.read(self._chunk_size - filled)
            if not data:
                break
            view[filled:filled + len(data)] = data
            filled += len(data)
            self.consumed += len(data)
        return filled

    def _flush(self, length: int) -> None:
        """Hand the current buffer to the uploader and take a fresh one."""
        if length == 0:
            return
        # Ownership passes to the uploader only once submit succeeds
        self._uploader.submit(self._next_part_number(), self._buf, length)
        self._buf = self._pool.acquire()

    def _stream(self, start: int) -> bool:
        """Fill from the source and upload; True while the source may have more."""
        filled = self._fill_from_source(start)
        self._flush(filled)
        return filled == self._chunk_size
