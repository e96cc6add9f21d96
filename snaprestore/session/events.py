"""
Events consumed by the session controller.

Input events come from the rendering layer; pipeline, probe and catalog events
come from background tasks. Everything travels through one ordered queue, so
the controller is the only code that mutates session state.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from enum import StrEnum

import attrs

from snaprestore.models import ConnectionOutcome, RestoreOutcome, SnapshotDescriptor
from snaprestore.types import Phase

__all__ = [
    'CatalogLoadFailed',
    'CatalogLoaded',
    'Command',
    'KeyPress',
    'NORMAL_KEYMAP',
    'POPUP_KEYMAP',
    'PhaseStarted',
    'PipelineEvent',
    'PopupKey',
    'Progress',
    'ProgressEvent',
    'RunFinished',
    'SessionEvent',
    'TestFinished',
]


# ==============================================================================
# Input
# ==============================================================================


@attrs.define(frozen=True)
class KeyPress:
    """A key from the terminal.

    ``key`` uses Textual key names ('tab', 'enter', 'ctrl+z', 'a');
    ``character`` is the printable character, if any.
    """

    key: str
    character: str | None = None


class Command(StrEnum):
    """Normal-mode commands."""

    NEXT_FIELD = 'next_field'
    PREVIOUS_FIELD = 'previous_field'
    CYCLE_GROUP = 'cycle_group'
    ACTIVATE = 'activate'
    SELECT_RELATIONAL = 'select_relational'
    SELECT_DOCUMENT_SEARCH = 'select_document_search'
    SELECT_VECTOR_STORE = 'select_vector_store'
    FOCUS_TARGET_SELECTOR = 'focus_target_selector'
    RELOAD = 'reload'
    TEST_CONNECTION = 'test_connection'
    QUIT = 'quit'
    SUSPEND = 'suspend'


class PopupKey(StrEnum):
    """Keys a popup can accept."""

    YES = 'y'
    NO = 'n'
    ESCAPE = 'escape'
    ENTER = 'enter'


NORMAL_KEYMAP: Mapping[str, Command] = {
    'down': Command.NEXT_FIELD,
    'up': Command.PREVIOUS_FIELD,
    'tab': Command.CYCLE_GROUP,
    'enter': Command.ACTIVATE,
    '1': Command.SELECT_RELATIONAL,
    '2': Command.SELECT_DOCUMENT_SEARCH,
    '3': Command.SELECT_VECTOR_STORE,
    'b': Command.FOCUS_TARGET_SELECTOR,
    'r': Command.RELOAD,
    't': Command.TEST_CONNECTION,
    'q': Command.QUIT,
    'ctrl+z': Command.SUSPEND,
}

POPUP_KEYMAP: Mapping[str, PopupKey] = {key.value: key for key in PopupKey}


# ==============================================================================
# Restore pipeline
# ==============================================================================


@attrs.define(frozen=True)
class Progress:
    """Progress of one phase. ``total`` is None when indeterminate."""

    done: int
    total: int | None
    unit: str
    rate: float | None = None

    @property
    def fraction(self) -> float | None:
        if not self.total:
            return None
        return min(self.done / self.total, 1.0)


@attrs.define(frozen=True)
class PhaseStarted:
    run_id: int
    phase: Phase


@attrs.define(frozen=True)
class ProgressEvent:
    run_id: int
    phase: Phase
    progress: Progress


@attrs.define(frozen=True)
class RunFinished:
    """Terminal event of a run; always the last event for its run_id."""

    run_id: int
    outcome: RestoreOutcome


PipelineEvent = PhaseStarted | ProgressEvent | RunFinished


# ==============================================================================
# Probes and catalog
# ==============================================================================


@attrs.define(frozen=True)
class TestFinished:
    __test__ = False  # not a pytest test class

    outcome: ConnectionOutcome


@attrs.define(frozen=True)
class CatalogLoaded:
    generation: int
    descriptors: Sequence[SnapshotDescriptor]
    prefix: str
    user_initiated: bool


@attrs.define(frozen=True)
class CatalogLoadFailed:
    generation: int
    message: str


SessionEvent = KeyPress | PipelineEvent | TestFinished | CatalogLoaded | CatalogLoadFailed
