"""Validating facade placed in front of every driver."""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Any, BinaryIO, Iterator, List, Mapping, Optional

from blobstore.errors import InvalidOffsetError
from blobstore.storage.base import FileInfo, StorageDriver
from blobstore.storage.paths import validate_path

logger = logging.getLogger(__name__)

__all__ = ["ValidatingDriver"]


class ValidatingDriver(StorageDriver):
    """Checks paths and offsets, then delegates to the wrapped driver.

    Invalid input raises before the backend is touched.
    """

    def __init__(self, driver: StorageDriver, max_depth: Optional[int] = None) -> None:
        self.driver = driver
        self.max_depth = max_depth

    @property
    def name(self) -> str:
        return self.driver.name

    def _check(self, path: str, *, allow_root: bool = False) -> None:
        validate_path(path, allow_root=allow_root, max_depth=self.max_depth)

    @contextmanager
    def _traced(self, operation: str, path: str) -> Iterator[None]:
        started = time.perf_counter()
        try:
            yield
        finally:
            logger.debug(
                "%s.%s(%s) took %.1fms",
                self.name,
                operation,
                path,
                (time.perf_counter() - started) * 1000,
            )

    def get_content(self, path: str) -> bytes:
        self._check(path)
        with self._traced("get_content", path):
            return self.driver.get_content(path)

    def put_content(self, path: str, content: bytes) -> None:
        self._check(path)
        with self._traced("put_content", path):
            self.driver.put_content(path, content)

    def read_stream(self, path: str, offset: int) -> BinaryIO:
        self._check(path)
        if offset < 0:
            raise InvalidOffsetError(path, offset, driver=self.name)
        with self._traced("read_stream", path):
            return self.driver.read_stream(path, offset)

    def write_stream(self, path: str, offset: int, source: BinaryIO) -> int:
        self._check(path)
        if offset < 0:
            raise InvalidOffsetError(path, offset, driver=self.name)
        with self._traced("write_stream", path):
            return self.driver.write_stream(path, offset, source)

    def stat(self, path: str) -> FileInfo:
        self._check(path)
        with self._traced("stat", path):
            return self.driver.stat(path)

    def list(self, path: str) -> List[str]:
        self._check(path, allow_root=True)
        with self._traced("list", path):
            return self.driver.list(path)

    def move(self, source_path: str, dest_path: str) -> None:
        self._check(source_path)
        self._check(dest_path)
        with self._traced("move", source_path):
            self.driver.move(source_path, dest_path)

    def delete(self, path: str) -> None:
        self._check(path)
        with self._traced("delete", path):
            self.driver.delete(path)

    def url_for(self, path: str, options: Optional[Mapping[str, Any]] = None) -> str:
        self._check(path)
        with self._traced("url_for", path):
            return self.driver.url_for(path, options)
