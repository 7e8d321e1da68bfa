"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import boto3
import pytest
from moto import mock_aws

from blobstore.config import MIN_CHUNK_SIZE, S3DriverConfig
from blobstore.storage.s3 import S3Driver

# Add the project root to the Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

BUCKET = "registry-test"
REGION = "us-east-1"


@pytest.fixture
def aws_credentials(monkeypatch):
    """Mock AWS credentials for moto."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", REGION)


@pytest.fixture
def s3_client(aws_credentials):
    """Mocked S3 client with the test bucket created."""
    with mock_aws():
        client = boto3.client("s3", region_name=REGION)
        client.create_bucket(Bucket=BUCKET)
        yield client


@pytest.fixture
def s3_parameters():
    """Driver parameters using the smallest allowed chunk size."""
    return {
        "region": REGION,
        "bucket": BUCKET,
        "chunksize": MIN_CHUNK_SIZE,
        "v4auth": True,
    }


@pytest.fixture
def driver(s3_client):
    """S3Driver against the mocked bucket, no root prefix."""
    config = S3DriverConfig(
        region=REGION,
        bucket=BUCKET,
        chunk_size=MIN_CHUNK_SIZE,
        signature_version4=True,
    )
    return S3Driver(config)


@pytest.fixture
def rooted_driver(s3_client):
    """S3Driver against the mocked bucket with a root prefix."""
    config = S3DriverConfig(
        region=REGION,
        bucket=BUCKET,
        chunk_size=MIN_CHUNK_SIZE,
        signature_version4=True,
        root_directory="/registry",
    )
    return S3Driver(config)


@pytest.fixture
def chunk():
    """The chunk size used by the driver fixtures."""
    return MIN_CHUNK_SIZE
