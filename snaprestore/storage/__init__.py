"""Object stores holding snapshots."""

from __future__ import annotations

import pathlib

from snaprestore.models import ObjectStoreConfig
from snaprestore.storage.local import LocalFileSystemStore
from snaprestore.storage.protocol import ObjectStore
from snaprestore.storage.s3 import S3ObjectStore

__all__ = ['LocalFileSystemStore', 'ObjectStore', 'S3ObjectStore', 'create_object_store']


def create_object_store(config: ObjectStoreConfig, timeout: float = 5.0) -> ObjectStore:
    """
    Build the store selected by the configuration (local directory or S3).

    Raises:
        ValueError: If the local directory does not exist
        ConnectivityError: If the S3 client cannot be created
    """
    if config.local_dir:
        return LocalFileSystemStore(pathlib.Path(config.local_dir))
    return S3ObjectStore(config, timeout=timeout)
