"""
Object store protocol for snapshot sources.

Defines the interface the catalog and the restore transport phase depend on
(S3, local directory).
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Sequence
from typing import Protocol, runtime_checkable

from snaprestore.models import SnapshotDescriptor

DEFAULT_CHUNK_SIZE = 64 * 1024


@runtime_checkable
class ObjectStore(Protocol):
    """Protocol for snapshot object stores."""

    @property
    def location(self) -> str:
        """Human-readable location (e.g. s3://bucket) used in messages."""
        ...

    async def list_snapshots(self, prefix: str) -> Sequence[SnapshotDescriptor]:
        """
        List objects under a prefix.

        Args:
            prefix: Key prefix to list

        Returns:
            Descriptors in store order (unfiltered, unsorted)

        Raises:
            CatalogLoadError: If the listing cannot be retrieved
        """
        ...

    def fetch(self, key: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> AsyncGenerator[bytes, None]:
        """
        Stream an object's bytes.

        Args:
            key: Remote key of the object
            chunk_size: Maximum size of each yielded chunk

        Yields:
            Consecutive chunks of the object

        Raises:
            ConnectivityError: If the object cannot be read
        """
        ...
