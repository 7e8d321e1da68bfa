"""S3 storage driver.

Stores registry blobs as objects at keys under an optional root prefix in
one bucket. Uses boto3 for all storage operations.

S3 guarantees only eventual consistency, so a successful write does not
imply that the data is immediately readable. The one guarantee relied on
is that once ``stat`` reports a size, that many bytes are retrievable.

Writes to the same path from concurrent callers are not coordinated; the
last completed upload wins.
"""

from __future__ import annotations

import io
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, BinaryIO, Callable, Dict, List, Mapping, Optional, TypeVar

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from blobstore.config import S3DriverConfig
from blobstore.errors import (
    NOT_FOUND_CODES,
    BackendError,
    PathNotFoundError,
    UnsupportedMethodError,
    WriteStreamError,
)
from blobstore.storage.base import FileInfo, StorageDriver, register_driver
from blobstore.storage.buffers import BufferPool
from blobstore.storage.multipart import MultipartWriter
from blobstore.storage.paths import KeyTranslator

logger = logging.getLogger(__name__)

__all__ = ["S3Driver", "LIST_MAX", "DEFAULT_URL_EXPIRY"]

T = TypeVar("T")

DRIVER_NAME = "s3"

# Largest number of keys S3 returns from one list call
LIST_MAX = 1000

DEFAULT_URL_EXPIRY = timedelta(minutes=20)

CONTENT_TYPE = "application/octet-stream"

_PRESIGN_METHODS = {"GET": "get_object", "HEAD": "head_object"}


class S3Driver(StorageDriver):
    """StorageDriver backed by an S3 bucket.

    Example:
        >>> driver = S3Driver.from_parameters({"region": "us-east-1", "bucket": "registry"})
        >>> driver.put_content("/docker/hello", b"world")
        >>> driver.stat("/docker/hello").size
        5
    """

    list_page_size = LIST_MAX

    def __init__(self, config: S3DriverConfig, client: Any = None) -> None:
        """Build the driver and probe the bucket for read access.

        Args:
            config: Validated driver configuration
            client: Optional pre-built boto3 S3 client

        Raises:
            BackendError: If the bucket cannot be listed with the given credentials.
        """
        self.config = config
        self.bucket = config.bucket
        self.chunk_size = config.chunk_size
        self.keys = KeyTranslator(config.root_directory)
        self.client = client if client is not None else self._build_client(config)
        self.pool = BufferPool(config.chunk_size)

        self._call(
            "probe",
            config.root_directory or "/",
            self.client.list_objects_v2,
            Bucket=self.bucket,
            Prefix=config.root_directory.rstrip("/").lstrip("/"),
            MaxKeys=1,
        )
        logger.debug(
            "Created S3 driver for bucket '%s' in %s (chunk size %d)",
            self.bucket,
            config.region,
            self.chunk_size,
        )

    @classmethod
    def from_parameters(cls, parameters: Mapping[str, Any]) -> "S3Driver":
        return cls(S3DriverConfig.from_parameters(parameters))

    @staticmethod
    def _build_client(config: S3DriverConfig) -> Any:
        """Create a boto3 S3 client from configuration.

        Empty credentials fall through to boto3's ambient chain
        (environment, shared config, instance profile).
        """
        session = boto3.session.Session(
            aws_access_key_id=config.access_key or None,
            aws_secret_access_key=config.secret_key or None,
            region_name=config.region,
        )
        return session.client(
            "s3",
            endpoint_url=config.endpoint_url,
            use_ssl=config.secure,
            config=Config(signature_version="s3v4" if config.signature_version4 else "s3"),
        )

    @property
    def name(self) -> str:
        return DRIVER_NAME

    def bucket_key(self, path: str) -> str:
        """Return the object key for a logical path."""
        return self.keys.key_for(path)

    def _write_args(self) -> Dict[str, Any]:
        args: Dict[str, Any] = {"ContentType": CONTENT_TYPE}
        if self.config.encrypt:
            args["ServerSideEncryption"] = "AES256"
        return args

    def _call(self, operation: str, path: str, func: Callable[..., T], **kwargs: Any) -> T:
        """Invoke a client method, translating failures into driver errors."""
        try:
            return func(**kwargs)
        except (BotoCoreError, ClientError) as exc:
            raise self._translate_error(operation, path, exc) from exc

    def _translate_error(self, operation: str, path: str, exc: BaseException) -> Exception:
        if isinstance(exc, ClientError):
            error = exc.response.get("Error", {})
            code = str(error.get("Code", "Unknown"))
            if code in NOT_FOUND_CODES:
                return PathNotFoundError(path, driver=DRIVER_NAME)
            return BackendError(
                f"S3 {operation} failed for {path}",
                driver=DRIVER_NAME,
                path=path,
                operation=operation,
                code=code,
                backend_message=error.get("Message"),
            )
        if isinstance(exc, BotoCoreError):
            return BackendError(
                f"S3 {operation} failed for {path}: {exc}",
                driver=DRIVER_NAME,
                path=path,
                operation=operation,
                code=type(exc).__name__,
            )
        return exc  # type: ignore[return-value]

    # -------------------------------------------------------------------------
    # Whole-object operations
    # -------------------------------------------------------------------------

    def get_content(self, path: str) -> bytes:
        response = self._call("get", path, self.client.get_object, Bucket=self.bucket, Key=self.bucket_key(path))
        with response["Body"] as body:
            return body.read()

    def put_content(self, path: str, content: bytes) -> None:
        self._call(
            "put",
            path,
            self.client.put_object,
            Bucket=self.bucket,
            Key=self.bucket_key(path),
            Body=content,
            **self._write_args(),
        )
        logger.debug("Put %d bytes to s3://%s/%s", len(content), self.bucket, self.bucket_key(path))

    def read_stream(self, path: str, offset: int) -> BinaryIO:
        params: Dict[str, Any] = {"Bucket": self.bucket, "Key": self.bucket_key(path)}
        if offset > 0:
            params["Range"] = f"bytes={offset}-"
        try:
            response = self.client.get_object(**params)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") == "InvalidRange":
                return io.BytesIO(b"")
            raise self._translate_error("read", path, exc) from exc
        except BotoCoreError as exc:
            raise self._translate_error("read", path, exc) from exc
        return response["Body"]

    def write_stream(self, path: str, offset: int, source: BinaryIO) -> int:
        writer = MultipartWriter(
            self.client,
            self.bucket,
            self.bucket_key(path),
            self.pool,
            extra_args=self._write_args(),
        )
        try:
            consumed = writer.write(offset, source)
        except Exception as exc:
            cause = self._translate_error("write", path, exc)
            logger.error(
                "Write to s3://%s/%s at offset %d failed after %d bytes: %s",
                self.bucket,
                self.bucket_key(path),
                offset,
                writer.consumed,
                cause,
            )
            raise WriteStreamError(
                path,
                bytes_consumed=writer.consumed,
                cause=cause,
                driver=DRIVER_NAME,
            ) from exc
        logger.debug("Wrote %d bytes to s3://%s/%s at offset %d", consumed, self.bucket, self.bucket_key(path), offset)
        return consumed

    def stat(self, path: str) -> FileInfo:
        key = self.bucket_key(path)
        dir_prefix = key + "/" if key else ""
        response = self._call(
            "stat",
            path,
            self.client.list_objects_v2,
            Bucket=self.bucket,
            Prefix=key,
            Delimiter="/",
            MaxKeys=1,
        )

        contents = response.get("Contents", [])
        if contents and contents[0]["Key"] == key and key:
            entry = contents[0]
            return FileInfo(
                path=path,
                size=int(entry.get("Size", 0)),
                mod_time=entry.get("LastModified"),
                is_dir=False,
            )

        prefixes = [item["Prefix"] for item in response.get("CommonPrefixes", [])]
        if dir_prefix in prefixes or self._has_descendants(path, dir_prefix):
            return FileInfo(path=path, is_dir=True)

        raise PathNotFoundError(path, driver=DRIVER_NAME)

    def _has_descendants(self, path: str, prefix: str) -> bool:
        response = self._call(
            "stat",
            path,
            self.client.list_objects_v2,
            Bucket=self.bucket,
            Prefix=prefix,
            MaxKeys=1,
        )
        return bool(response.get("Contents"))

    def list(self, path: str) -> List[str]:
        if path != "/" and not path.endswith("/"):
            path = path + "/"
        prefix = self.bucket_key(path)

        files: List[str] = []
        directories: List[str] = []
        params: Dict[str, Any] = {
            "Bucket": self.bucket,
            "Prefix": prefix,
            "Delimiter": "/",
            "MaxKeys": min(self.list_page_size, LIST_MAX),
        }

        while True:
            response = self._call("list", path, self.client.list_objects_v2, **params)

            for entry in response.get("Contents", []):
                if entry["Key"] == prefix:
                    continue
                files.append(self.keys.path_for(entry["Key"]))

            for common_prefix in response.get("CommonPrefixes", []):
                directories.append(self.keys.path_for(common_prefix["Prefix"].rstrip("/")))

            if not response.get("IsTruncated"):
                break
            params["ContinuationToken"] = response["NextContinuationToken"]

        return list(dict.fromkeys(files + directories))

    def move(self, source_path: str, dest_path: str) -> None:
        """Copy to ``dest_path`` then delete the ``source_path`` object.

        The two calls are not atomic: a crash in between leaves the object
        at both paths. Keys under ``source_path/`` are left alone.
        """
        self._call(
            "copy",
            source_path,
            self.client.copy_object,
            Bucket=self.bucket,
            Key=self.bucket_key(dest_path),
            CopySource={"Bucket": self.bucket, "Key": self.bucket_key(source_path)},
            MetadataDirective="REPLACE",
            **self._write_args(),
        )
        self._delete_keys(source_path, [self.bucket_key(source_path)])
        logger.debug("Moved %s to %s", source_path, dest_path)

    def delete(self, path: str) -> None:
        """Delete the object at ``path`` and every object under ``path/``."""
        key = self.bucket_key(path)
        deleted = 0

        if key:
            response = self._call(
                "delete",
                path,
                self.client.list_objects_v2,
                Bucket=self.bucket,
                Prefix=key,
                MaxKeys=1,
            )
            contents = response.get("Contents", [])
            if contents and contents[0]["Key"] == key:
                self._delete_keys(path, [key])
                deleted += 1

        prefix = key + "/" if key else ""
        while True:
            response = self._call(
                "delete",
                path,
                self.client.list_objects_v2,
                Bucket=self.bucket,
                Prefix=prefix,
                MaxKeys=min(self.list_page_size, LIST_MAX),
            )
            keys = [entry["Key"] for entry in response.get("Contents", [])]
            if not keys:
                break
            self._delete_keys(path, keys)
            deleted += len(keys)

        if deleted == 0:
            raise PathNotFoundError(path, driver=DRIVER_NAME)
        logger.debug("Deleted %d object(s) under %s", deleted, path)

    def _delete_keys(self, path: str, keys: List[str]) -> None:
        response = self._call(
            "delete",
            path,
            self.client.delete_objects,
            Bucket=self.bucket,
            Delete={"Objects": [{"Key": key} for key in keys], "Quiet": False},
        )
        errors = response.get("Errors", [])
        if errors:
            first = errors[0]
            raise BackendError(
                f"S3 delete failed for {len(errors)} of {len(keys)} object(s) under {path}",
                driver=DRIVER_NAME,
                path=path,
                operation="delete",
                code=first.get("Code"),
                backend_message=f"{first.get('Key')}: {first.get('Message')}",
            )

    def url_for(self, path: str, options: Optional[Mapping[str, Any]] = None) -> str:
        """Return a presigned URL for GET (default) or HEAD.

        Options:
            method: "GET" or "HEAD"
            expiry: datetime at which the URL stops working (default 20 minutes from now)
        """
        options = options or {}
        method = options.get("method", "GET")
        if not isinstance(method, str) or method not in _PRESIGN_METHODS:
            raise UnsupportedMethodError(method, driver=DRIVER_NAME, path=path)

        now = datetime.now(timezone.utc)
        expires_at = now + DEFAULT_URL_EXPIRY
        expiry = options.get("expiry")
        if isinstance(expiry, datetime):
            expires_at = expiry if expiry.tzinfo else expiry.replace(tzinfo=timezone.utc)
        expires_in = max(1, int((expires_at - now).total_seconds()))

        return self._call(
            "presign",
            path,
            self.client.generate_presigned_url,
            ClientMethod=_PRESIGN_METHODS[method],
            Params={"Bucket": self.bucket, "Key": self.bucket_key(path)},
            ExpiresIn=expires_in,
        )


@register_driver(DRIVER_NAME)
def _s3_factory(parameters: Dict[str, Any]) -> StorageDriver:
    return S3Driver.from_parameters(parameters)
