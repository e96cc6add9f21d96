"""
Snapshot file sniffing helpers shared by the backend adapters.

Everything here is synchronous file inspection; adapters call it through
asyncio.to_thread.
"""

from __future__ import annotations

import gzip
import io
import json
import tarfile
from collections.abc import Iterator
from enum import StrEnum
from pathlib import Path
from typing import IO, Any

from snaprestore.exceptions import SnapshotValidationError

HEAD_SIZE = 8192
GZIP_MAGIC = b'\x1f\x8b'
TAR_MAGIC = b'ustar'
TAR_MAGIC_OFFSET = 257

# Top-level keys of the single-object exports (search results, point collections)
COLLECTION_KEYS = frozenset({'hits', 'points', 'result'})


class JsonLayout(StrEnum):
    ARRAY = 'json-array'
    OBJECT = 'json-object'
    NDJSON = 'ndjson'


def read_head(path: Path, size: int = HEAD_SIZE) -> bytes:
    """First bytes of a file, transparently gunzipped."""
    with open_binary(path) as handle:
        return handle.read(size)


def is_gzip(path: Path) -> bool:
    with path.open('rb') as handle:
        return handle.read(2) == GZIP_MAGIC


def open_binary(path: Path) -> IO[bytes]:
    if is_gzip(path):
        return gzip.open(path, 'rb')
    return path.open('rb')


def open_text(path: Path) -> IO[str]:
    return io.TextIOWrapper(open_binary(path), encoding='utf-8-sig')


def is_tar(head: bytes) -> bool:
    return head[TAR_MAGIC_OFFSET : TAR_MAGIC_OFFSET + len(TAR_MAGIC)] == TAR_MAGIC


def tar_members(path: Path) -> list[str]:
    """
    Member names of a tar archive.

    Raises:
        SnapshotValidationError: If the archive is truncated or corrupt
    """
    try:
        with tarfile.open(path) as archive:
            return archive.getnames()
    except (tarfile.TarError, OSError, EOFError) as e:
        raise SnapshotValidationError(f'corrupt tar archive: {e}') from e


def sniff_json_layout(path: Path) -> JsonLayout | None:
    """Guess how JSON content is laid out from its first non-blank lines."""
    try:
        with open_text(path) as handle:
            first_line = _next_non_blank(handle)
            if first_line.startswith('['):
                return JsonLayout.ARRAY
            if not first_line.startswith('{'):
                return None
            try:
                first = json.loads(first_line)
            except json.JSONDecodeError:
                return JsonLayout.OBJECT
            if not isinstance(first, dict):
                return JsonLayout.OBJECT
            if _next_non_blank(handle) or not COLLECTION_KEYS & first.keys():
                return JsonLayout.NDJSON
            return JsonLayout.OBJECT
    except (UnicodeDecodeError, OSError, EOFError):
        return None


def _next_non_blank(handle: IO[str]) -> str:
    for line in handle:
        stripped = line.strip()
        if stripped:
            return stripped
    return ''


def load_json(path: Path) -> Any:
    """
    Parse a whole JSON document.

    Raises:
        SnapshotValidationError: If the content is not valid JSON
    """
    try:
        with open_text(path) as handle:
            return json.load(handle)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise SnapshotValidationError(f'invalid JSON: {e}') from e


def iter_ndjson(path: Path) -> Iterator[tuple[int, Any]]:
    """
    Yield (line_number, value) for each non-blank line.

    Raises:
        SnapshotValidationError: On the first line that is not valid JSON
    """
    with open_text(path) as handle:
        for line_number, line in enumerate(handle, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                yield line_number, json.loads(line)
            except json.JSONDecodeError as e:
                raise SnapshotValidationError(f'line {line_number} is not valid JSON: {e.msg}') from e
