"""
Restore orchestrator - drives one snapshot through the restore pipeline.

Pipeline phases, each short-circuiting to a terminal outcome on failure:
    1. Transport: stream the object into a private staging directory
    2. Validate: adapter inspects the staged file (never touches the target)
    3. Apply: adapter writes into the target (the only mutating phase)
    4. Verify: adapter checks the target afterwards

Cancellation is cooperative. The token is checked at every phase boundary and
before every transport chunk. Once Apply has begun a cancel request no longer
preempts anything: Apply runs to completion, Verify is skipped and the outcome
records that the request arrived late.

At most one run is active per orchestrator; starting another raises
RestoreBusyError immediately. Staged files are deleted when the run ends,
whatever the outcome.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
import shutil
import tempfile
import time
from collections.abc import Callable
from enum import StrEnum
from pathlib import Path, PurePosixPath

from snaprestore.backends.protocol import ApplyProgress, BackendAdapter, StagedArtifact
from snaprestore.exceptions import ConnectivityError, RestoreBusyError
from snaprestore.models import BackendConfig, RestoreOutcome, SnapshotDescriptor
from snaprestore.session.events import PhaseStarted, PipelineEvent, Progress, ProgressEvent, RunFinished
from snaprestore.storage.protocol import DEFAULT_CHUNK_SIZE, ObjectStore
from snaprestore.types import OutcomeKind, Phase

__all__ = ['CancelDisposition', 'Emit', 'RestoreOrchestrator', 'RestoreRun']

logger = logging.getLogger(__name__)

Emit = Callable[[PipelineEvent], None]

PROGRESS_INTERVAL_SECONDS = 0.1
STAGED_FILE_STEM = 'snapshot'
MAX_STAGED_SUFFIX = 32

_FAILURE_KINDS = {
    Phase.TRANSPORT: OutcomeKind.TRANSPORT_FAILED,
    Phase.VALIDATE: OutcomeKind.VALIDATION_FAILED,
    Phase.APPLY: OutcomeKind.APPLY_FAILED,
    Phase.VERIFY: OutcomeKind.APPLY_FAILED,
}


class CancelDisposition(StrEnum):
    """What a cancel request achieved."""

    PREEMPTED = 'preempted'  # no target writes will happen
    DEFERRED = 'deferred'  # apply already running; takes effect before verify
    TOO_LATE = 'too_late'  # run is verifying or finished


# ==============================================================================
# Progress throttling
# ==============================================================================


class _ProgressMeter:
    """Rate-limits progress events and tracks throughput."""

    def __init__(self, emit: Emit, run_id: int, phase: Phase) -> None:
        self._emit = emit
        self._run_id = run_id
        self._phase = phase
        self._started = time.monotonic()
        self._last_emit: float | None = None
        self._last: Progress | None = None
        self._pending = False

    def update(self, done: int, total: int | None, unit: str) -> None:
        now = time.monotonic()
        elapsed = now - self._started
        rate = done / elapsed if elapsed > 0 else None
        self._last = Progress(done=done, total=total, unit=unit, rate=rate)
        self._pending = True
        if self._last_emit is None or now - self._last_emit >= PROGRESS_INTERVAL_SECONDS:
            self._flush(now)

    def finish(self) -> None:
        """Emit the latest value if throttling held it back."""
        if self._pending:
            self._flush(time.monotonic())

    def _flush(self, stamp: float) -> None:
        assert self._last is not None
        self._last_emit = stamp
        self._pending = False
        self._emit(ProgressEvent(run_id=self._run_id, phase=self._phase, progress=self._last))


def staged_file_name(descriptor: SnapshotDescriptor) -> str:
    """Fixed file name for the staged copy, keeping a short extension such as .sql.gz."""
    suffix = ''.join(PurePosixPath(descriptor.name).suffixes)
    if len(suffix) > MAX_STAGED_SUFFIX:
        suffix = ''
    return STAGED_FILE_STEM + suffix


# ==============================================================================
# Runs
# ==============================================================================


class RestoreRun:
    """
    One invocation of the pipeline.

    Holds read-only references to the descriptor and backend configuration for
    its lifetime; the orchestrator drops the run when its outcome is delivered.
    """

    def __init__(
        self,
        orchestrator: RestoreOrchestrator,
        run_id: int,
        descriptor: SnapshotDescriptor,
        backend: BackendAdapter,
        config: BackendConfig,
    ) -> None:
        self.run_id = run_id
        self.descriptor = descriptor
        self.backend = backend
        self.config = config
        self.phase: Phase | None = None
        self.finished = False
        self._orchestrator = orchestrator
        self._cancel_requested = False
        self._apply_started = False

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    def cancel(self) -> CancelDisposition:
        """Request cancellation; returns whether it can still prevent target writes."""
        if self.finished or self.phase == Phase.VERIFY:
            logger.info('Cancel of run %d ignored: run is past apply', self.run_id)
            return CancelDisposition.TOO_LATE
        self._cancel_requested = True
        if self._apply_started:
            logger.info('Cancel of run %d accepted late: apply already started', self.run_id)
            return CancelDisposition.DEFERRED
        logger.info('Cancel of run %d accepted before apply', self.run_id)
        return CancelDisposition.PREEMPTED

    async def execute(self, emit: Emit) -> RestoreOutcome:
        """
        Run the pipeline to its terminal outcome.

        Args:
            emit: Receives PhaseStarted and ProgressEvent in order; RunFinished is always last

        Returns:
            The terminal outcome (also delivered through emit)
        """
        staging: Path | None = None
        try:
            try:
                staging = self._make_staging()
            except OSError as e:
                logger.exception('Run %d: cannot create staging directory', self.run_id)
                outcome = self._failed(Phase.TRANSPORT, e)
            else:
                logger.info(
                    'Run %d: restoring %s into %s (staging %s)',
                    self.run_id,
                    self.descriptor.key,
                    self.backend.target.label,
                    staging,
                )
                outcome = await self._pipeline(staging, emit)
        finally:
            if staging is not None:
                shutil.rmtree(staging, ignore_errors=True)
            self.finished = True
            self._orchestrator._release(self)

        logger.info('Run %d finished: %s', self.run_id, outcome.message)
        emit(RunFinished(run_id=self.run_id, outcome=outcome))
        return outcome

    def _make_staging(self) -> Path:
        staging_root = self._orchestrator.staging_dir
        if staging_root is not None:
            staging_root.mkdir(parents=True, exist_ok=True)
        return Path(tempfile.mkdtemp(prefix='snaprestore-', dir=staging_root))

    async def _pipeline(self, staging: Path, emit: Emit) -> RestoreOutcome:
        if self._cancel_requested:
            return self._cancelled()

        # Phase 1: transport
        self._enter(Phase.TRANSPORT, emit)
        try:
            artifact = await self._transport(staging, emit)
        except Exception as e:
            logger.exception('Run %d: transport failed', self.run_id)
            return self._failed(Phase.TRANSPORT, e)
        if artifact is None or self._cancel_requested:
            return self._cancelled()

        # Phase 2: validate
        self._enter(Phase.VALIDATE, emit)
        try:
            snapshot_format = await self.backend.validate(artifact)
        except Exception as e:
            logger.exception('Run %d: validation failed', self.run_id)
            return self._failed(Phase.VALIDATE, e)
        logger.info('Run %d: %s validated as %s', self.run_id, self.descriptor.key, snapshot_format)
        if self._cancel_requested:
            return self._cancelled()

        # Phase 3: apply. No await between the last cancel check and this flag.
        self._apply_started = True
        self._enter(Phase.APPLY, emit)
        meter = _ProgressMeter(emit, self.run_id, Phase.APPLY)
        applied: ApplyProgress | None = None
        try:
            async for applied in self.backend.apply(artifact, self.config):
                meter.update(applied.done, applied.total, applied.unit)
        except Exception as e:
            logger.exception('Run %d: apply failed', self.run_id)
            meter.finish()
            return self._failed(Phase.APPLY, e, applied)
        meter.finish()

        if self._cancel_requested:
            logger.info('Run %d: skipping verification after late cancel', self.run_id)
            return self._outcome(OutcomeKind.SUCCESS, applied=applied)

        # Phase 4: verify
        self._enter(Phase.VERIFY, emit)
        try:
            summary = await self.backend.verify(self.config, applied)
        except Exception as e:
            logger.exception('Run %d: verification failed', self.run_id)
            return self._failed(Phase.VERIFY, e, applied)
        logger.info('Run %d: verified (%s)', self.run_id, summary)
        return self._outcome(OutcomeKind.SUCCESS, applied=applied, verified=True)

    async def _transport(self, staging: Path, emit: Emit) -> StagedArtifact | None:
        """Stream the object to disk; None when a cancel was observed between chunks."""
        orchestrator = self._orchestrator
        path = staging / staged_file_name(self.descriptor)
        total = self.descriptor.size or None
        meter = _ProgressMeter(emit, self.run_id, Phase.TRANSPORT)
        done = 0
        meter.update(0, total, 'bytes')
        async with contextlib.aclosing(orchestrator.store.fetch(self.descriptor.key, orchestrator.chunk_size)) as chunks:
            with path.open('wb') as handle:
                while True:
                    if self._cancel_requested:
                        logger.info('Run %d: transport cancelled after %d bytes', self.run_id, done)
                        return None
                    chunk = await anext(chunks, None)
                    if chunk is None:
                        break
                    await asyncio.to_thread(handle.write, chunk)
                    done += len(chunk)
                    meter.update(done, total, 'bytes')
        meter.finish()

        if total is not None and done != total:
            raise ConnectivityError(f'received {done:,} of {total:,} bytes')
        return StagedArtifact(path=path, descriptor=self.descriptor)

    def _enter(self, phase: Phase, emit: Emit) -> None:
        self.phase = phase
        logger.debug('Run %d: entering %s', self.run_id, phase)
        emit(PhaseStarted(run_id=self.run_id, phase=phase))

    # ==========================================================================
    # Outcomes
    # ==========================================================================

    def _outcome(
        self,
        kind: OutcomeKind,
        *,
        reason: str = '',
        failed_phase: Phase | None = None,
        applied: ApplyProgress | None = None,
        verified: bool = False,
    ) -> RestoreOutcome:
        late = self._cancel_requested and self._apply_started
        return RestoreOutcome(
            kind=kind,
            snapshot_key=self.descriptor.key,
            target=self.backend.target,
            reason=reason,
            failed_phase=failed_phase,
            partial_writes=self._apply_started and kind != OutcomeKind.SUCCESS,
            verified=verified,
            cancel_requested_late=late,
            objects_applied=applied.done if applied is not None else None,
        )

    def _failed(self, phase: Phase, error: Exception, applied: ApplyProgress | None = None) -> RestoreOutcome:
        reason = str(error) or type(error).__name__
        return self._outcome(_FAILURE_KINDS[phase], reason=reason, failed_phase=phase, applied=applied)

    def _cancelled(self) -> RestoreOutcome:
        return self._outcome(OutcomeKind.CANCELLED, reason='cancelled by operator')


# ==============================================================================
# Orchestrator
# ==============================================================================


class RestoreOrchestrator:
    """Starts restore runs, one at a time."""

    def __init__(
        self,
        store: ObjectStore,
        staging_dir: Path | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            store: Object store snapshots are fetched from (replaceable between runs)
            staging_dir: Parent of per-run staging directories (system temp when None)
            chunk_size: Transport chunk size in bytes
        """
        self.store = store
        self.staging_dir = staging_dir
        self.chunk_size = chunk_size
        self._active: RestoreRun | None = None
        self._run_ids = itertools.count(1)

    @property
    def busy(self) -> bool:
        return self._active is not None

    @property
    def active_run(self) -> RestoreRun | None:
        return self._active

    def start(self, descriptor: SnapshotDescriptor, backend: BackendAdapter, config: BackendConfig) -> RestoreRun:
        """
        Reserve the pipeline for a new run. Call ``execute`` on the result to drive it.

        Raises:
            RestoreBusyError: If a run is already outstanding (never queued)
        """
        if self._active is not None:
            raise RestoreBusyError(self._active.descriptor.key)
        run = RestoreRun(self, next(self._run_ids), descriptor, backend, config)
        self._active = run
        return run

    async def run(
        self,
        descriptor: SnapshotDescriptor,
        backend: BackendAdapter,
        config: BackendConfig,
        emit: Emit,
    ) -> RestoreOutcome:
        """Start and drive a run to its terminal outcome."""
        return await self.start(descriptor, backend, config).execute(emit)

    def _release(self, run: RestoreRun) -> None:
        if self._active is run:
            self._active = None
