"""Command-line access to a configured storage driver.

Usage:
    blobstore --config storage.yaml check
    blobstore --config storage.yaml ls /docker/registry/v2
    blobstore --config storage.yaml put /uploads/abc ./layer.tar --offset 0
    blobstore --config storage.yaml url /blobs/sha256/ab/cd --method HEAD

The configuration file holds one driver section, for example::

    storage:
      s3:
        region: us-east-1
        bucket: ${REGISTRY_BUCKET}
        v4auth: true

``--config`` defaults to the ``BLOBSTORE_CONFIG`` environment variable.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import shutil
import sys
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from blobstore import __version__
from blobstore.config import load_storage_config
from blobstore.env import load_env_file
from blobstore.errors import (
    InvalidConfigurationError,
    InvalidOffsetError,
    InvalidPathError,
    StorageDriverError,
)
from blobstore.logging import setup_logging
from blobstore.storage import StorageDriver, get_driver

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_STORAGE_ERROR = 1
EXIT_CONFIG_ERROR = 2

COPY_BUFFER_SIZE = 1 << 20


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="blobstore",
        description="Inspect and modify registry blob storage",
    )
    parser.add_argument(
        "--config",
        default=os.environ.get("BLOBSTORE_CONFIG"),
        help="Path to YAML storage config (default: $BLOBSTORE_CONFIG)",
    )
    parser.add_argument(
        "--env-file",
        help="Load environment variables from this .env file before reading the config",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose (DEBUG level) logging",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit logs as JSON lines",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"blobstore {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("check", help="Build the driver and verify bucket access")

    stat_parser = subparsers.add_parser("stat", help="Show size and modification time of a path")
    stat_parser.add_argument("path")

    ls_parser = subparsers.add_parser("ls", help="List the direct children of a path")
    ls_parser.add_argument("path", nargs="?", default="/")

    cat_parser = subparsers.add_parser("cat", help="Write the content of a path to stdout")
    cat_parser.add_argument("path")
    cat_parser.add_argument("--offset", type=int, default=0, help="Start reading at this byte")

    put_parser = subparsers.add_parser("put", help="Write a local file (or - for stdin) to a path")
    put_parser.add_argument("path")
    put_parser.add_argument("file")
    put_parser.add_argument("--offset", type=int, default=0, help="Write starting at this byte")

    mv_parser = subparsers.add_parser("mv", help="Move an object")
    mv_parser.add_argument("source")
    mv_parser.add_argument("dest")

    rm_parser = subparsers.add_parser("rm", help="Recursively delete a path")
    rm_parser.add_argument("path")

    url_parser = subparsers.add_parser("url", help="Print a presigned URL for a path")
    url_parser.add_argument("path")
    url_parser.add_argument("--method", choices=["GET", "HEAD"], default="GET")
    url_parser.add_argument(
        "--expires-in",
        type=int,
        default=None,
        help="Seconds until the URL expires (default: 1200)",
    )

    return parser


def _open_driver(args: argparse.Namespace) -> StorageDriver:
    if not args.config:
        raise InvalidConfigurationError(
            "No storage configuration given",
            suggestion="Pass --config PATH or set BLOBSTORE_CONFIG.",
        )
    driver_name, parameters = load_storage_config(args.config)
    return get_driver(driver_name, parameters, use_cache=False)


def _run_command(driver: StorageDriver, args: argparse.Namespace) -> int:
    out = sys.stdout

    if args.command == "check":
        driver.list("/")
        print(f"OK: {driver.name} driver is reachable", file=out)

    elif args.command == "stat":
        info = driver.stat(args.path)
        print(
            json.dumps(
                {
                    "path": info.path,
                    "size": info.size,
                    "mod_time": info.mod_time.isoformat() if info.mod_time else None,
                    "is_dir": info.is_dir,
                }
            ),
            file=out,
        )

    elif args.command == "ls":
        for child in driver.list(args.path):
            print(child, file=out)

    elif args.command == "cat":
        stream = driver.read_stream(args.path, args.offset)
        try:
            shutil.copyfileobj(stream, out.buffer, COPY_BUFFER_SIZE)
        finally:
            stream.close()
        out.flush()

    elif args.command == "put":
        if args.file == "-":
            written = driver.write_stream(args.path, args.offset, sys.stdin.buffer)
        else:
            with open(args.file, "rb") as source:
                written = driver.write_stream(args.path, args.offset, source)
        logger.info("Wrote %d bytes to %s at offset %d", written, args.path, args.offset)

    elif args.command == "mv":
        driver.move(args.source, args.dest)

    elif args.command == "rm":
        driver.delete(args.path)

    elif args.command == "url":
        options: Dict[str, Any] = {"method": args.method}
        if args.expires_in is not None:
            options["expiry"] = datetime.now(timezone.utc) + timedelta(seconds=args.expires_in)
        print(driver.url_for(args.path, options), file=out)

    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(verbose=args.verbose, json_format=args.json_logs)

    if args.env_file:
        if not load_env_file(args.env_file):
            logger.warning("No variables loaded from %s", args.env_file)

    try:
        driver = _open_driver(args)
    except InvalidConfigurationError as exc:
        logger.error("%s", exc)
        return EXIT_CONFIG_ERROR
    except StorageDriverError as exc:
        logger.error("%s", exc)
        return EXIT_STORAGE_ERROR

    try:
        return _run_command(driver, args)
    except (InvalidPathError, InvalidOffsetError) as exc:
        logger.error("%s", exc)
        return EXIT_CONFIG_ERROR
    except StorageDriverError as exc:
        logger.error("%s", exc)
        return EXIT_STORAGE_ERROR
    except OSError as exc:
        logger.error("I/O error: %s", exc)
        return EXIT_STORAGE_ERROR


if __name__ == "__main__":
    sys.exit(main())
