"""Storage drivers.

Importing this package registers the built-in drivers:

    >>> from blobstore.storage import get_driver
    >>> driver = get_driver("s3", {"region": "us-east-1", "bucket": "registry"})
"""

from blobstore.storage.base import (
    DRIVER_REGISTRY,
    FileInfo,
    StorageDriver,
    get_driver,
    get_driver_factory,
    list_drivers,
    register_driver,
)
from blobstore.storage.s3 import S3Driver
from blobstore.storage.validating import ValidatingDriver

__all__ = [
    "DRIVER_REGISTRY",
    "FileInfo",
    "StorageDriver",
    "S3Driver",
    "ValidatingDriver",
    "get_driver",
    "get_driver_factory",
    "list_drivers",
    "register_driver",
]
