"""Blob storage drivers for a content-addressable container registry."""

__version__ = "1.0.0"
