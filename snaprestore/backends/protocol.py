"""
Backend adapter protocol.

Every restore target implements the same four operations; the orchestrator
and the session depend only on this contract, never on transport details.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from pathlib import Path
from typing import Protocol, TypeVar, runtime_checkable

import attrs

from snaprestore.models import BackendConfig, ConnectionOutcome, SnapshotDescriptor
from snaprestore.types import RestoreTarget

ConfigT = TypeVar('ConfigT', bound=BackendConfig, contravariant=True)


@attrs.define(frozen=True)
class StagedArtifact:
    """A snapshot downloaded into the local staging area."""

    path: Path
    descriptor: SnapshotDescriptor

    @property
    def size(self) -> int:
        return self.path.stat().st_size


@attrs.define(frozen=True)
class ApplyProgress:
    """Adapter-defined progress during the apply phase.

    ``total`` is None when the adapter cannot know the amount of work upfront.
    """

    done: int
    total: int | None
    unit: str


@runtime_checkable
class BackendAdapter(Protocol[ConfigT]):
    """Protocol for restore target adapters."""

    target: RestoreTarget

    async def test_connection(self, config: ConfigT) -> ConnectionOutcome:
        """
        Side-effect-free reachability probe with a bounded timeout.

        Callers run ``config.verify_settings()`` first. Never raises for
        connectivity problems; they are reported in the returned outcome.
        """
        ...

    async def validate(self, artifact: StagedArtifact) -> str:
        """
        Inspect the staged artifact without touching the target.

        Returns:
            Name of the detected snapshot format

        Raises:
            SnapshotValidationError: If the artifact is not a format this backend accepts
        """
        ...

    def apply(self, artifact: StagedArtifact, config: ConfigT) -> AsyncIterator[ApplyProgress]:
        """
        Write the artifact into the target, creating the container if absent.

        Yields:
            Progress updates; the last one describes the total work written

        Raises:
            ApplyError: If writing fails (target may be partially written)
        """
        ...

    async def verify(self, config: ConfigT, applied: ApplyProgress | None) -> str:
        """
        Post-restore sanity check.

        Args:
            config: Target connection parameters
            applied: Last progress reported by apply, if any

        Returns:
            Short description of what was verified

        Raises:
            VerificationError: If the target does not look restored
        """
        ...
