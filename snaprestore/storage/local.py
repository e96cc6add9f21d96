"""
Local filesystem object store.

Implements ObjectStore over a directory tree; keys are POSIX paths relative
to the base directory. Useful for snapshots already copied to disk.
"""

from __future__ import annotations

import asyncio
import pathlib
from collections.abc import AsyncGenerator, Sequence
from datetime import UTC, datetime

from snaprestore.exceptions import CatalogLoadError, ConnectivityError
from snaprestore.models import SnapshotDescriptor
from snaprestore.storage.protocol import DEFAULT_CHUNK_SIZE


class LocalFileSystemStore:
    """Local filesystem object store."""

    def __init__(self, base_path: pathlib.Path) -> None:
        """
        Initialize local filesystem store.

        Args:
            base_path: Directory holding snapshot files

        Raises:
            ValueError: If base_path doesn't exist or is not a directory (fail-fast)
        """
        if not base_path.exists():
            raise ValueError(f'Storage path does not exist: {base_path}. Please create it first.')

        if not base_path.is_dir():
            raise ValueError(f'Storage path is not a directory: {base_path}')

        self.base_path = base_path

    @property
    def location(self) -> str:
        return str(self.base_path.absolute())

    async def list_snapshots(self, prefix: str) -> Sequence[SnapshotDescriptor]:
        """List files whose relative path starts with prefix."""
        try:
            return await asyncio.to_thread(self._list_sync, prefix)
        except OSError as e:
            raise CatalogLoadError(f'Failed to list {self.location}: {e}') from e

    def _list_sync(self, prefix: str) -> list[SnapshotDescriptor]:
        descriptors = []
        for path in sorted(self.base_path.rglob('*')):
            if not path.is_file():
                continue
            key = path.relative_to(self.base_path).as_posix()
            if not key.startswith(prefix):
                continue
            stat = path.stat()
            descriptors.append(
                SnapshotDescriptor(
                    key=key,
                    size=stat.st_size,
                    last_modified=datetime.fromtimestamp(stat.st_mtime, tz=UTC),
                )
            )
        return descriptors

    async def fetch(self, key: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> AsyncGenerator[bytes, None]:
        """Stream a file in chunks, reading off the event loop."""
        file_path = self._resolve(key)
        try:
            handle = await asyncio.to_thread(file_path.open, 'rb')
        except OSError as e:
            raise ConnectivityError(f'Cannot open {key}: {e}') from e
        try:
            while True:
                try:
                    chunk = await asyncio.to_thread(handle.read, chunk_size)
                except OSError as e:
                    raise ConnectivityError(f'Error reading {key}: {e}') from e
                if not chunk:
                    break
                yield chunk
        finally:
            handle.close()

    def _resolve(self, key: str) -> pathlib.Path:
        file_path = (self.base_path / key).resolve()
        if not file_path.is_relative_to(self.base_path.resolve()):
            raise ConnectivityError(f'Key escapes the storage directory: {key}')
        return file_path
