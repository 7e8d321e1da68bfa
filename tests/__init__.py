"""registry-blobstore test suite."""
