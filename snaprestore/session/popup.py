"""
Popup/modal controller.

Transition table (initial state Hidden):

    Hidden          --request_restore-->  ConfirmRestore
    ConfirmRestore  --y-->                START_RUN action; begin_run -> Downloading
    ConfirmRestore  --n/escape-->         Hidden
    Downloading     --escape-->           ConfirmCancel
    ConfirmCancel   --y-->                Hidden + SIGNAL_CANCEL action
    ConfirmCancel   --n/escape-->         back to the run (Downloading, or Restoring
                                          if Apply began while the prompt was open)
    Downloading     --apply started-->    Restoring
    Downloading     --run finished-->     Error | Success
    Restoring       --run finished-->     Error | Success
    Error, Success, TestResult --enter/escape--> Hidden

Result popups are never auto-dismissed. A result that arrives while another
popup is showing waits in a queue and is shown when that popup is dismissed.
Keys outside a state's accepted set are ignored without side effects.
"""

from __future__ import annotations

import collections
import logging
from collections.abc import Mapping
from enum import StrEnum

import attrs

from snaprestore.models import ConnectionOutcome, RestoreOutcome, SnapshotDescriptor
from snaprestore.session.events import PopupKey, Progress
from snaprestore.types import OutcomeKind, Phase, RestoreTarget

__all__ = [
    'ACCEPTED_KEYS',
    'ConfirmCancel',
    'ConfirmRestore',
    'Downloading',
    'Error',
    'Hidden',
    'PopupAction',
    'PopupController',
    'PopupState',
    'Restoring',
    'Success',
    'TestResult',
]

logger = logging.getLogger(__name__)


# ==============================================================================
# States
# ==============================================================================


@attrs.define(frozen=True)
class Hidden:
    pass


@attrs.define(frozen=True)
class ConfirmRestore:
    descriptor: SnapshotDescriptor
    target: RestoreTarget


@attrs.define(frozen=True)
class Downloading:
    """Transport or validation in progress."""

    run_id: int
    descriptor: SnapshotDescriptor
    target: RestoreTarget
    phase: Phase = Phase.TRANSPORT
    progress: Progress | None = None


@attrs.define(frozen=True)
class Restoring:
    """Apply or verification in progress."""

    run_id: int
    descriptor: SnapshotDescriptor
    target: RestoreTarget
    phase: Phase = Phase.APPLY
    progress: Progress | None = None


@attrs.define(frozen=True)
class ConfirmCancel:
    """Cancel prompt over a running restore; ``resume`` keeps tracking the run."""

    resume: Downloading | Restoring

    @property
    def run_id(self) -> int:
        return self.resume.run_id


@attrs.define(frozen=True)
class TestResult:
    __test__ = False  # not a pytest test class

    outcome: ConnectionOutcome


@attrs.define(frozen=True)
class Error:
    message: str


@attrs.define(frozen=True)
class Success:
    message: str


PopupState = Hidden | ConfirmRestore | Downloading | Restoring | ConfirmCancel | TestResult | Error | Success
RunState = Downloading | Restoring

ACCEPTED_KEYS: Mapping[type, frozenset[PopupKey]] = {
    Hidden: frozenset(),
    ConfirmRestore: frozenset({PopupKey.YES, PopupKey.NO, PopupKey.ESCAPE}),
    Downloading: frozenset({PopupKey.ESCAPE}),
    Restoring: frozenset(),
    ConfirmCancel: frozenset({PopupKey.YES, PopupKey.NO, PopupKey.ESCAPE}),
    TestResult: frozenset({PopupKey.ENTER, PopupKey.ESCAPE}),
    Error: frozenset({PopupKey.ENTER, PopupKey.ESCAPE}),
    Success: frozenset({PopupKey.ENTER, PopupKey.ESCAPE}),
}


class PopupAction(StrEnum):
    """Side effects the session performs after a popup key."""

    START_RUN = 'start_run'
    SIGNAL_CANCEL = 'signal_cancel'


# ==============================================================================
# Controller
# ==============================================================================


class PopupController:
    """Owns the single active popup state."""

    def __init__(self) -> None:
        self.state: PopupState = Hidden()
        self._queued: collections.deque[PopupState] = collections.deque()
        # Run whose cancel was confirmed; its popup is already hidden
        self._cancelled_run: int | None = None

    @property
    def is_hidden(self) -> bool:
        return isinstance(self.state, Hidden)

    @property
    def tracking_run(self) -> bool:
        """True while a restore popup (progress or cancel prompt) is showing."""
        return isinstance(self.state, Downloading | Restoring | ConfirmCancel)

    def accepts(self, key: PopupKey) -> bool:
        return key in ACCEPTED_KEYS[type(self.state)]

    def handle_key(self, key: PopupKey) -> PopupAction | None:
        """Apply an operator key. Keys the current state does not accept change nothing."""
        if not self.accepts(key):
            return None
        state = self.state
        match state:
            case ConfirmRestore():
                if key == PopupKey.YES:
                    return PopupAction.START_RUN
                self._set(Hidden())
            case Downloading():
                self._set(ConfirmCancel(resume=state))
            case ConfirmCancel():
                if key == PopupKey.YES:
                    self._cancelled_run = state.run_id
                    self._set(Hidden())
                    return PopupAction.SIGNAL_CANCEL
                self._set(state.resume)
            case TestResult() | Error() | Success():
                self.dismiss()
            case _:
                raise AssertionError(f'unreachable popup state: {state}')
        return None

    # ==========================================================================
    # Session-driven transitions
    # ==========================================================================

    def request_restore(self, descriptor: SnapshotDescriptor, target: RestoreTarget) -> None:
        if not self.is_hidden:
            raise RuntimeError(f'cannot confirm a restore while {type(self.state).__name__} is showing')
        self._set(ConfirmRestore(descriptor=descriptor, target=target))

    def begin_run(self, run_id: int) -> None:
        """The run accepted in ConfirmRestore has started."""
        state = self.state
        if not isinstance(state, ConfirmRestore):
            raise RuntimeError(f'no restore awaiting start ({type(state).__name__} is showing)')
        self._set(Downloading(run_id=run_id, descriptor=state.descriptor, target=state.target))

    def fail_start(self, message: str) -> None:
        """The run accepted in ConfirmRestore could not start (e.g. busy)."""
        self._set(Error(message=message))

    def present(self, state: TestResult | Error | Success) -> None:
        """Show a result popup now, or after the current popup is dismissed."""
        if self.is_hidden:
            self._set(state)
        else:
            self._queued.append(state)

    def dismiss(self) -> None:
        self._set(self._queued.popleft() if self._queued else Hidden())

    # ==========================================================================
    # Pipeline events
    # ==========================================================================

    def _run_state(self, run_id: int) -> RunState | None:
        state = self.state
        resume = state.resume if isinstance(state, ConfirmCancel) else state
        if isinstance(resume, Downloading | Restoring) and resume.run_id == run_id:
            return resume
        return None

    def _replace_run_state(self, run_state: RunState) -> None:
        if isinstance(self.state, ConfirmCancel):
            self._set(ConfirmCancel(resume=run_state))
        else:
            self._set(run_state)

    def on_phase_started(self, run_id: int, phase: Phase) -> None:
        run_state = self._run_state(run_id)
        if run_state is None:
            return
        if phase in (Phase.APPLY, Phase.VERIFY):
            updated: RunState = Restoring(
                run_id=run_id,
                descriptor=run_state.descriptor,
                target=run_state.target,
                phase=phase,
                progress=None,
            )
        else:
            updated = attrs.evolve(run_state, phase=phase, progress=None)
        self._replace_run_state(updated)

    def on_progress(self, run_id: int, progress: Progress) -> None:
        """Progress only updates the embedded value, never the state kind."""
        run_state = self._run_state(run_id)
        if run_state is not None:
            self._replace_run_state(attrs.evolve(run_state, progress=progress))

    def on_run_finished(self, run_id: int, outcome: RestoreOutcome) -> None:
        if self._run_state(run_id) is not None:
            self._set(_result_state(outcome))
            self._cancelled_run = None
            return
        if self._cancelled_run == run_id:
            self._cancelled_run = None
            if outcome.kind == OutcomeKind.CANCELLED:
                logger.debug('Run %d cancelled as requested', run_id)
                return
            # The cancel came too late to prevent writes; the operator must see what happened
            self.present(_result_state(outcome))
            return
        logger.debug('Ignoring outcome of untracked run %d', run_id)

    def _set(self, state: PopupState) -> None:
        if type(state) is not type(self.state):
            logger.debug('Popup %s -> %s', type(self.state).__name__, type(state).__name__)
        self.state = state


def _result_state(outcome: RestoreOutcome) -> Error | Success:
    if outcome.ok:
        return Success(message=outcome.message)
    return Error(message=outcome.message)
