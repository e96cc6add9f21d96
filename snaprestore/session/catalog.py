"""Snapshot catalog - the listed snapshots plus the selection cursor."""

from __future__ import annotations

from collections.abc import Sequence

from snaprestore.models import SnapshotDescriptor
from snaprestore.types import Direction

__all__ = ['SnapshotCatalog']


class SnapshotCatalog:
    """
    Ordered snapshot descriptors, newest first.

    ``selected`` is an index clamped to ``[0, len)``, or None when the catalog
    is empty.
    """

    def __init__(self) -> None:
        self.items: tuple[SnapshotDescriptor, ...] = ()
        self.selected: int | None = None
        self.loading = False
        self.loaded = False
        self.error_message = ''

    def __len__(self) -> int:
        return len(self.items)

    @property
    def is_empty(self) -> bool:
        return not self.items

    @property
    def selected_descriptor(self) -> SnapshotDescriptor | None:
        if self.selected is None:
            return None
        return self.items[self.selected]

    def load(self, descriptors: Sequence[SnapshotDescriptor], prefix: str = '') -> None:
        """Replace the contents; directory markers and keys outside the prefix are skipped."""
        kept = [d for d in descriptors if d.key.startswith(prefix) and not d.key.endswith('/')]
        kept.sort(key=lambda d: (d.last_modified, d.key), reverse=True)
        self.items = tuple(kept)
        self.selected = 0 if self.items else None
        self.loading = False
        self.loaded = True
        self.error_message = ''

    def fail(self, message: str) -> None:
        """Record a load failure; the previous listing is discarded."""
        self.items = ()
        self.selected = None
        self.loading = False
        self.error_message = message

    def move(self, direction: Direction) -> SnapshotDescriptor | None:
        """Move the cursor one row, wrapping. No-op on an empty catalog."""
        if self.selected is None:
            return None
        self.selected = (self.selected + direction.value) % len(self.items)
        return self.items[self.selected]

    def select(self, index: int) -> SnapshotDescriptor | None:
        if not self.items:
            return None
        self.selected = max(0, min(index, len(self.items) - 1))
        return self.items[self.selected]
