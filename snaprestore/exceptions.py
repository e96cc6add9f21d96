"""
Shared exceptions for snaprestore.

Exception Hierarchy:
    SnapRestoreError (base)
    ├── ConfigInvalidError (local, field-scoped, raised before any network call)
    ├── ConnectivityError (probe or transport could not reach the endpoint)
    │   └── CatalogLoadError (snapshot listing failed)
    ├── SnapshotValidationError (staged artifact does not match the backend)
    ├── ApplyError (mutation attempted, target may be partially written)
    │   └── VerificationError (post-restore check failed)
    └── RestoreBusyError (a restore run is already in flight)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from snaprestore.types import FocusField


class SnapRestoreError(Exception):
    """Base exception for all snaprestore errors."""


class ConfigInvalidError(SnapRestoreError):
    """Raised when a configuration value is structurally invalid."""

    def __init__(self, field: FocusField, message: str) -> None:
        self.field = field
        self.message = message
        super().__init__(f'{field.label}: {message}')


class ConnectivityError(SnapRestoreError):
    """Raised when a remote endpoint cannot be reached or rejects the request."""


class CatalogLoadError(ConnectivityError):
    """Raised when the snapshot listing cannot be retrieved."""


class SnapshotValidationError(SnapRestoreError):
    """Raised when a staged snapshot is not in a format the backend accepts."""


class ApplyError(SnapRestoreError):
    """Raised when writing a snapshot into the target system fails."""


class VerificationError(ApplyError):
    """Raised when the post-restore check fails after data was written."""


class RestoreBusyError(SnapRestoreError):
    """Raised when a restore is requested while another one is still running."""

    def __init__(self, active_key: str) -> None:
        self.active_key = active_key
        super().__init__(f'A restore of {active_key} is already in progress. Wait for it to finish.')
