"""Tests for the popup transition table."""

from __future__ import annotations

from collections.abc import Callable

import pytest

from fakes import descriptor
from snaprestore.models import ConnectionOutcome, RestoreOutcome
from snaprestore.session.events import PopupKey, Progress
from snaprestore.session.popup import (
    ACCEPTED_KEYS,
    ConfirmCancel,
    ConfirmRestore,
    Downloading,
    Error,
    Hidden,
    PopupAction,
    PopupController,
    PopupState,
    Restoring,
    Success,
    TestResult,
)
from snaprestore.types import OutcomeKind, Phase, RestoreTarget

SNAPSHOT = descriptor('db/2024-05-01.dump', size=1024)
TARGET = RestoreTarget.RELATIONAL
DOWNLOADING = Downloading(run_id=1, descriptor=SNAPSHOT, target=TARGET)
RESTORING = Restoring(run_id=1, descriptor=SNAPSHOT, target=TARGET)
PROBE = TestResult(outcome=ConnectionOutcome(ok=True, subject='db', message='reachable'))


def _outcome(kind: OutcomeKind, **extra: object) -> RestoreOutcome:
    return RestoreOutcome(kind=kind, snapshot_key=SNAPSHOT.key, target=TARGET, **extra)


def _controller(state: PopupState) -> PopupController:
    popup = PopupController()
    popup.state = state
    return popup


@pytest.mark.parametrize(
    ('state', 'key', 'expected', 'action'),
    [
        pytest.param(ConfirmRestore(SNAPSHOT, TARGET), PopupKey.YES, ConfirmRestore, PopupAction.START_RUN, id='confirm-yes'),
        pytest.param(ConfirmRestore(SNAPSHOT, TARGET), PopupKey.NO, Hidden, None, id='confirm-no'),
        pytest.param(ConfirmRestore(SNAPSHOT, TARGET), PopupKey.ESCAPE, Hidden, None, id='confirm-escape'),
        pytest.param(DOWNLOADING, PopupKey.ESCAPE, ConfirmCancel, None, id='downloading-escape'),
        pytest.param(ConfirmCancel(DOWNLOADING), PopupKey.YES, Hidden, PopupAction.SIGNAL_CANCEL, id='cancel-yes'),
        pytest.param(ConfirmCancel(DOWNLOADING), PopupKey.NO, Downloading, None, id='cancel-no'),
        pytest.param(ConfirmCancel(DOWNLOADING), PopupKey.ESCAPE, Downloading, None, id='cancel-escape'),
        pytest.param(PROBE, PopupKey.ENTER, Hidden, None, id='test-result-enter'),
        pytest.param(Error('boom'), PopupKey.ESCAPE, Hidden, None, id='error-escape'),
        pytest.param(Success('done'), PopupKey.ENTER, Hidden, None, id='success-enter'),
    ],
)
def test_transition_table(state: PopupState, key: PopupKey, expected: type, action: PopupAction | None) -> None:
    popup = _controller(state)

    assert popup.handle_key(key) == action
    assert type(popup.state) is expected


@pytest.mark.parametrize(
    'state',
    [Hidden(), ConfirmRestore(SNAPSHOT, TARGET), DOWNLOADING, RESTORING, ConfirmCancel(DOWNLOADING), PROBE, Error('x')],
    ids=lambda s: type(s).__name__,
)
def test_unaccepted_keys_change_nothing(state: PopupState) -> None:
    popup = _controller(state)
    for key in PopupKey:
        if key in ACCEPTED_KEYS[type(state)]:
            continue
        assert popup.handle_key(key) is None
        assert popup.state == state


def test_restoring_cannot_be_cancelled() -> None:
    assert ACCEPTED_KEYS[Restoring] == frozenset()


def test_run_lifecycle() -> None:
    popup = PopupController()
    popup.request_restore(SNAPSHOT, TARGET)
    popup.begin_run(7)
    assert popup.state == Downloading(run_id=7, descriptor=SNAPSHOT, target=TARGET)

    popup.on_phase_started(7, Phase.VALIDATE)
    assert isinstance(popup.state, Downloading)
    assert popup.state.phase == Phase.VALIDATE

    popup.on_phase_started(7, Phase.APPLY)
    assert isinstance(popup.state, Restoring)

    popup.on_progress(7, Progress(done=5, total=10, unit='rows'))
    assert isinstance(popup.state, Restoring)
    assert popup.state.progress.fraction == 0.5

    popup.on_run_finished(7, _outcome(OutcomeKind.SUCCESS, verified=True))
    assert isinstance(popup.state, Success)


def test_events_for_other_runs_are_ignored() -> None:
    popup = _controller(DOWNLOADING)

    popup.on_progress(2, Progress(done=1, total=2, unit='bytes'))
    popup.on_phase_started(2, Phase.APPLY)

    assert popup.state == DOWNLOADING


def test_apply_start_behind_cancel_prompt_updates_resume_state() -> None:
    popup = _controller(ConfirmCancel(DOWNLOADING))

    popup.on_phase_started(1, Phase.APPLY)

    assert isinstance(popup.state, ConfirmCancel)
    assert isinstance(popup.state.resume, Restoring)
    popup.handle_key(PopupKey.NO)
    assert isinstance(popup.state, Restoring)


def test_run_finishing_behind_cancel_prompt_shows_result() -> None:
    popup = _controller(ConfirmCancel(DOWNLOADING))

    popup.on_run_finished(1, _outcome(OutcomeKind.TRANSPORT_FAILED, reason='reset'))

    assert isinstance(popup.state, Error)


@pytest.mark.parametrize(
    ('outcome', 'expected'),
    [
        pytest.param(_outcome(OutcomeKind.CANCELLED), Hidden, id='cancelled'),
        pytest.param(_outcome(OutcomeKind.SUCCESS, cancel_requested_late=True), Success, id='late-cancel'),
        pytest.param(_outcome(OutcomeKind.APPLY_FAILED, reason='x', partial_writes=True), Error, id='apply-failed'),
    ],
)
def test_outcome_after_confirmed_cancel(outcome: RestoreOutcome, expected: type) -> None:
    popup = _controller(ConfirmCancel(DOWNLOADING))
    popup.handle_key(PopupKey.YES)

    popup.on_run_finished(1, outcome)

    assert type(popup.state) is expected


@pytest.mark.parametrize(
    'make_result',
    [lambda: PROBE, lambda: Error('later')],
    ids=['test-result', 'error'],
)
def test_results_queue_behind_visible_popup(make_result: Callable[[], TestResult | Error]) -> None:
    popup = _controller(Success('first'))
    result = make_result()

    popup.present(result)
    assert popup.state == Success('first')

    popup.handle_key(PopupKey.ENTER)
    assert popup.state == result
    popup.handle_key(PopupKey.ESCAPE)
    assert isinstance(popup.state, Hidden)


def test_request_restore_requires_hidden_popup() -> None:
    popup = _controller(Error('boom'))

    with pytest.raises(RuntimeError, match='cannot confirm'):
        popup.request_restore(SNAPSHOT, TARGET)
