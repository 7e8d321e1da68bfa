"""Typed driver configuration.

``S3DriverConfig`` is validated once, when a driver is built, and is never
mutated afterwards. Loose parameter maps (registry-style option names,
YAML files) are normalized into it through ``from_parameters`` and
``load_storage_config``.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple, Union

import boto3
import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    StrictBool,
    ValidationError,
    field_validator,
    model_validator,
)

from blobstore.env import expand_options
from blobstore.errors import InvalidConfigurationError

logger = logging.getLogger(__name__)

__all__ = [
    "MIN_CHUNK_SIZE",
    "DEFAULT_CHUNK_SIZE",
    "S3DriverConfig",
    "known_regions",
    "load_storage_config",
]

# S3 requires every multipart part except the last to be at least 5 MiB
MIN_CHUNK_SIZE = 5 << 20

DEFAULT_CHUNK_SIZE = 2 * MIN_CHUNK_SIZE

# Regions launched after SigV2 was retired
SIGV4_ONLY_REGIONS: FrozenSet[str] = frozenset(
    {
        "eu-central-1",
        "eu-central-2",
        "eu-west-2",
        "eu-west-3",
        "eu-north-1",
        "eu-south-1",
        "eu-south-2",
        "ap-northeast-2",
        "ap-northeast-3",
        "ap-south-1",
        "ap-south-2",
        "ap-east-1",
        "ap-southeast-3",
        "ap-southeast-4",
        "us-east-2",
        "ca-central-1",
        "ca-west-1",
        "me-south-1",
        "me-central-1",
        "af-south-1",
        "il-central-1",
        "cn-north-1",
        "cn-northwest-1",
    }
)

# Registry option names and their camelCase spellings, mapped onto fields
_PARAMETER_ALIASES: Dict[str, str] = {
    "accesskey": "access_key",
    "secretkey": "secret_key",
    "region": "region",
    "bucket": "bucket",
    "encrypt": "encrypt",
    "secure": "secure",
    "v4auth": "signature_version4",
    "signatureversion4": "signature_version4",
    "chunksize": "chunk_size",
    "rootdirectory": "root_directory",
    "regionendpoint": "endpoint_url",
    "endpointurl": "endpoint_url",
}


@lru_cache(maxsize=1)
def known_regions() -> FrozenSet[str]:
    """Regions botocore knows an S3 endpoint for, across all partitions."""
    session = boto3.session.Session()
    regions = set()
    for partition in session.get_available_partitions():
        regions.update(session.get_available_regions("s3", partition_name=partition))
    return frozenset(regions)


class S3DriverConfig(BaseModel):
    """Immutable configuration for the S3 storage driver."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    access_key: str = ""
    secret_key: str = ""
    region: str
    bucket: str
    encrypt: StrictBool = False
    secure: StrictBool = True
    signature_version4: StrictBool = False
    chunk_size: int = DEFAULT_CHUNK_SIZE
    root_directory: str = ""
    endpoint_url: Optional[str] = None

    @field_validator("region")
    @classmethod
    def _validate_region(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("No region parameter provided")
        if value not in known_regions():
            raise ValueError(f"Invalid region provided: {value}")
        return value

    @field_validator("bucket")
    @classmethod
    def _validate_bucket(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("No bucket parameter provided")
        return value

    @field_validator("chunk_size", mode="before")
    @classmethod
    def _parse_chunk_size(cls, value: Any) -> int:
        if isinstance(value, bool):
            raise ValueError(f"chunksize parameter must be an integer, {value!r} invalid")
        if isinstance(value, str):
            try:
                return int(value.strip(), 0)
            except ValueError:
                raise ValueError(f"chunksize parameter must be an integer, {value!r} invalid")
        if isinstance(value, int):
            return value
        raise ValueError(f"invalid value for chunksize: {value!r}")

    @field_validator("chunk_size")
    @classmethod
    def _validate_chunk_size(cls, value: int) -> int:
        if value < MIN_CHUNK_SIZE:
            raise ValueError(
                f"The chunksize {value} parameter should be a number that is "
                f"larger than or equal to {MIN_CHUNK_SIZE}"
            )
        return value

    @model_validator(mode="after")
    def _validate_signature(self) -> "S3DriverConfig":
        if not self.signature_version4 and self.region in SIGV4_ONLY_REGIONS:
            raise ValueError(f"The {self.region} region only works with v4 authentication")
        return self

    @classmethod
    def from_parameters(cls, parameters: Mapping[str, Any]) -> "S3DriverConfig":
        """Build a config from a loose parameter map.

        Raises:
            InvalidConfigurationError: listing every failing field.
        """
        fields: Dict[str, Any] = {}
        for name, value in parameters.items():
            key = str(name)
            field_name = key if key in cls.model_fields else _PARAMETER_ALIASES.get(key.lower())
            if field_name is None:
                logger.warning("Ignoring unknown s3 driver parameter %r", key)
                continue
            if value is None:
                continue
            if field_name in {"access_key", "secret_key", "region", "bucket", "root_directory"}:
                value = str(value)
            fields[field_name] = value

        try:
            return cls(**fields)
        except ValidationError as exc:
            raise InvalidConfigurationError(
                "Invalid s3 driver configuration",
                driver="s3",
                issues=_format_issues(exc),
            ) from exc


def _format_issues(exc: ValidationError) -> List[str]:
    issues = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        message = error.get("msg", "invalid value")
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        issues.append(f"{location}: {message}" if location else message)
    return issues


def load_storage_config(path: Union[str, Path]) -> Tuple[str, Dict[str, Any]]:
    """Read the storage section of a YAML configuration file.

    The file must contain a ``storage`` mapping with exactly one driver
    section, for example::

        storage:
          s3:
            region: us-east-1
            bucket: ${REGISTRY_BUCKET}

    Returns:
        Tuple of (driver_name, parameters) with environment references expanded.
    """
    config_path = Path(path)
    try:
        raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise InvalidConfigurationError(
            f"Cannot read configuration file {config_path}",
            details={"cause": str(exc)},
        ) from exc
    except yaml.YAMLError as exc:
        raise InvalidConfigurationError(
            f"Configuration file {config_path} is not valid YAML",
            details={"cause": str(exc)},
        ) from exc

    storage = raw.get("storage") if isinstance(raw, dict) else None
    if not isinstance(storage, dict) or len(storage) != 1:
        raise InvalidConfigurationError(
            f"Configuration file {config_path} must define exactly one storage driver",
            suggestion="Add a 'storage:' section such as 'storage: {s3: {...}}'.",
        )

    driver_name, parameters = next(iter(storage.items()))
    if parameters is None:
        parameters = {}
    if not isinstance(parameters, dict):
        raise InvalidConfigurationError(
            f"Parameters for storage driver {driver_name!r} must be a mapping",
            driver=str(driver_name),
        )
    return str(driver_name).lower(), expand_options(parameters)
