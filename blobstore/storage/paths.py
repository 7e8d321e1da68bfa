"""Logical path handling.

Logical paths are slash-rooted strings (``/docker/registry/v2/blobs/...``).
``KeyTranslator`` maps them to object keys under a configured root prefix
and back; ``validate_path`` enforces the path grammar the facade accepts.
"""

from __future__ import annotations

import re
from typing import Optional

from blobstore.errors import InvalidPathError

__all__ = ["PATH_REGEX", "KeyTranslator", "validate_path"]

PATH_REGEX = re.compile(r"^(/[A-Za-z0-9._-]+)+$")


def validate_path(path: str, *, allow_root: bool = False, max_depth: Optional[int] = None) -> None:
    """Raise InvalidPathError unless ``path`` is a well-formed logical path."""
    if not isinstance(path, str):
        raise InvalidPathError(repr(path), "path must be a string")
    if allow_root and path == "/":
        return
    if not PATH_REGEX.match(path):
        raise InvalidPathError(path, "must match " + PATH_REGEX.pattern)

    segments = path[1:].split("/")
    if any(segment in (".", "..") for segment in segments):
        raise InvalidPathError(path, "relative segments are not allowed")
    if max_depth is not None and len(segments) > max_depth:
        raise InvalidPathError(path, f"deeper than {max_depth} segments")


class KeyTranslator:
    """Maps logical paths to object keys under a root prefix.

    Example:
        >>> keys = KeyTranslator("/registry/")
        >>> keys.key_for("/docker/blob")
        'registry/docker/blob'
        >>> keys.path_for("registry/docker/blob")
        '/docker/blob'
    """

    def __init__(self, root_directory: str = "") -> None:
        self.root_directory = root_directory
        self._root = root_directory.rstrip("/")
        self._base = self.key_for("")
        # With no root prefix keys carry no leading slash, so restore it
        self._restore = "/" if self._base == "" else ""

    def key_for(self, path: str) -> str:
        return (self._root + path).lstrip("/")

    def path_for(self, key: str) -> str:
        """Inverse of ``key_for`` for keys under the root prefix."""
        if self._base and key.startswith(self._base):
            key = key[len(self._base):]
        return self._restore + key
