"""
Session controller - the single consumer of input, pipeline, probe and
catalog events.

Every state change (focus, input mode, popup, catalog, configuration) happens
in ``handle`` on the foreground task. Network and disk work runs in background
tasks that report back by posting events to the queue.

Rules enforced here:
- While a popup is showing, only that popup's keys are processed.
- While a restore is outstanding, nothing the run borrows can change: no target
  switch, no configuration edits, no catalog reload, and no quit.
- Results of connection tests that arrive while a field is being edited are
  held until the edit ends.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Callable, Coroutine
from enum import StrEnum
from typing import Any

import attrs

from snaprestore.backends.protocol import BackendAdapter
from snaprestore.exceptions import ConfigInvalidError, ConnectivityError, RestoreBusyError
from snaprestore.models import BackendConfig, ConnectionOutcome, EditableConfig, ObjectStoreConfig
from snaprestore.services.orchestrator import CancelDisposition, RestoreOrchestrator, RestoreRun
from snaprestore.session.catalog import SnapshotCatalog
from snaprestore.session.events import (
    NORMAL_KEYMAP,
    POPUP_KEYMAP,
    CatalogLoaded,
    CatalogLoadFailed,
    Command,
    KeyPress,
    PhaseStarted,
    ProgressEvent,
    RunFinished,
    SessionEvent,
    TestFinished,
)
from snaprestore.session.focus import FocusModel
from snaprestore.session.popup import ConfirmRestore, Error, PopupAction, PopupController, TestResult
from snaprestore.session.targets import TargetConfigurationSet
from snaprestore.storage.protocol import ObjectStore
from snaprestore.types import Direction, FieldGroup, FocusField, RestoreTarget

__all__ = ['Editing', 'SessionController', 'Signal']

logger = logging.getLogger(__name__)

BackendFactory = Callable[[RestoreTarget], BackendAdapter]
StoreFactory = Callable[[ObjectStoreConfig], ObjectStore]

_SELECT_COMMANDS = {
    Command.SELECT_RELATIONAL: RestoreTarget.RELATIONAL,
    Command.SELECT_DOCUMENT_SEARCH: RestoreTarget.DOCUMENT_SEARCH,
    Command.SELECT_VECTOR_STORE: RestoreTarget.VECTOR_STORE,
}

_CANCEL_STATUS = {
    CancelDisposition.PREEMPTED: 'Cancelling restore; no data will be written.',
    CancelDisposition.DEFERRED: 'Cancel accepted late: writes already started and will finish; verification will be skipped.',
    CancelDisposition.TOO_LATE: 'Restore is already finishing; cancel had no effect.',
}


class Signal(StrEnum):
    """What the rendering loop should do after an event."""

    CONTINUE = 'continue'
    QUIT = 'quit'
    SUSPEND = 'suspend'


@attrs.define
class Editing:
    """Editing sub-mode: the buffer is independent of the committed value."""

    field: FocusField
    buffer: str


class SessionController:
    """Top-level event loop state."""

    def __init__(
        self,
        targets: TargetConfigurationSet,
        orchestrator: RestoreOrchestrator,
        backend_factory: BackendFactory,
        store_factory: StoreFactory,
        probe_timeout: float = 5.0,
    ) -> None:
        """
        Initialize the session.

        Args:
            targets: Initial configuration (any subset may be empty)
            orchestrator: Restore pipeline owner; its store is replaced when the source changes
            backend_factory: Builds the adapter for a restore target
            store_factory: Builds an object store from the source configuration
            probe_timeout: Upper bound for listing probes, in seconds
        """
        self.targets = targets
        self.orchestrator = orchestrator
        self.focus = FocusModel(targets.active)
        self.popup = PopupController()
        self.catalog = SnapshotCatalog()
        self.editing: Editing | None = None
        self.status = ''
        self.events: asyncio.Queue[SessionEvent] = asyncio.Queue()
        self.probe_timeout = probe_timeout
        self._backend_factory = backend_factory
        self._store_factory = store_factory
        self._backends: dict[RestoreTarget, BackendAdapter] = {}
        self._active_run: RestoreRun | None = None
        self._deferred: list[TestResult | Error] = []
        self._tasks: set[asyncio.Task[None]] = set()
        self._catalog_generation = itertools.count(1)
        self._expected_catalog = 0

    # ==========================================================================
    # Event loop plumbing
    # ==========================================================================

    def post(self, event: SessionEvent) -> None:
        self.events.put_nowait(event)

    async def step(self) -> Signal:
        """Wait for the next event and handle it."""
        return self.handle(await self.events.get())

    def start(self) -> None:
        """Kick off the initial catalog load. Requires a running event loop."""
        self.reload_catalog(user_initiated=False)

    async def shutdown(self) -> None:
        """Cancel background work (process exit)."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)

    def _spawn(self, coro: Coroutine[Any, Any, None], name: str) -> None:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @property
    def busy(self) -> bool:
        return self.orchestrator.busy

    @property
    def background_tasks(self) -> int:
        """Number of restore, probe and catalog tasks still running."""
        return len(self._tasks)

    def handle(self, event: SessionEvent) -> Signal:
        match event:
            case KeyPress():
                return self._on_key(event)
            case PhaseStarted(run_id=run_id, phase=phase):
                self.popup.on_phase_started(run_id, phase)
            case ProgressEvent(run_id=run_id, progress=progress):
                self.popup.on_progress(run_id, progress)
            case RunFinished():
                self._on_run_finished(event)
            case TestFinished(outcome=outcome):
                self._present(TestResult(outcome=outcome))
            case CatalogLoaded():
                self._on_catalog_loaded(event)
            case CatalogLoadFailed():
                self._on_catalog_failed(event)
            case _:
                raise AssertionError(f'unreachable event: {event!r}')
        return Signal.CONTINUE

    # ==========================================================================
    # Keys
    # ==========================================================================

    def _on_key(self, key: KeyPress) -> Signal:
        if not self.popup.is_hidden:
            popup_key = POPUP_KEYMAP.get(key.key)
            if popup_key is None or not self.popup.accepts(popup_key):
                return Signal.CONTINUE
            match self.popup.handle_key(popup_key):
                case PopupAction.START_RUN:
                    self._start_run()
                case PopupAction.SIGNAL_CANCEL:
                    self._signal_cancel()
            return Signal.CONTINUE

        if self.editing is not None:
            self._on_edit_key(self.editing, key)
            return Signal.CONTINUE

        command = NORMAL_KEYMAP.get(key.key)
        if command is None:
            return Signal.CONTINUE
        return self._on_command(command)

    def _on_command(self, command: Command) -> Signal:
        self.status = ''
        match command:
            case Command.NEXT_FIELD | Command.PREVIOUS_FIELD:
                direction = Direction.NEXT if command == Command.NEXT_FIELD else Direction.PREVIOUS
                if self.focus.current == FocusField.SNAPSHOT_LIST:
                    self.catalog.move(direction)
                else:
                    self.focus.advance(direction)
            case Command.CYCLE_GROUP:
                self.focus.cycle_group()
            case Command.ACTIVATE:
                self._activate()
            case Command.SELECT_RELATIONAL | Command.SELECT_DOCUMENT_SEARCH | Command.SELECT_VECTOR_STORE:
                self.select_target(_SELECT_COMMANDS[command])
            case Command.FOCUS_TARGET_SELECTOR:
                self.focus.jump_to_group(FieldGroup.TARGET_SELECTOR)
            case Command.RELOAD:
                if self.busy:
                    self.status = 'Cannot reload the catalog while a restore is running.'
                else:
                    self.reload_catalog(user_initiated=True)
            case Command.TEST_CONNECTION:
                self.test_connection()
            case Command.QUIT:
                if self.busy:
                    self.status = 'A restore is still running; wait for it to finish or cancel it first.'
                    return Signal.CONTINUE
                return Signal.QUIT
            case Command.SUSPEND:
                return Signal.SUSPEND
            case _:
                raise AssertionError(f'unreachable command: {command}')
        return Signal.CONTINUE

    def _activate(self) -> None:
        field = self.focus.current
        if field == FocusField.SNAPSHOT_LIST:
            self.request_restore()
        elif field == FocusField.RESTORE_TARGET:
            targets = list(RestoreTarget)
            self.select_target(targets[(targets.index(self.targets.active) + 1) % len(targets)])
        elif self.busy:
            self.status = 'Configuration cannot change while a restore is running.'
        else:
            config = self.targets.config_for(field)
            self.editing = Editing(field=field, buffer=config.get_field_value(field))

    def _on_edit_key(self, editing: Editing, key: KeyPress) -> None:
        if key.key == 'enter':
            self._commit_edit(editing)
        elif key.key == 'escape':
            self._end_edit()
        elif key.key == 'backspace':
            editing.buffer = editing.buffer[:-1]
        elif key.character is not None and len(key.character) == 1 and key.character.isprintable():
            editing.buffer += key.character

    def _commit_edit(self, editing: Editing) -> None:
        try:
            self.targets.commit(editing.field, editing.buffer)
        except ConfigInvalidError as e:
            self.status = str(e)
            self._end_edit()
            return
        self.status = f'{editing.field.label} updated.'
        self._end_edit()
        if ObjectStoreConfig.owns(editing.field):
            self.reload_catalog(user_initiated=False)

    def _end_edit(self) -> None:
        self.editing = None
        deferred, self._deferred = self._deferred, []
        for state in deferred:
            self.popup.present(state)

    def _present(self, state: TestResult | Error) -> None:
        if self.editing is not None:
            self._deferred.append(state)
        else:
            self.popup.present(state)

    # ==========================================================================
    # Target selection
    # ==========================================================================

    def select_target(self, target: RestoreTarget) -> None:
        if self.busy:
            self.status = 'Cannot switch restore target while a restore is running.'
            return
        self.targets.select(target)
        relocated = self.focus.select_target(target)
        logger.debug('Selected %s (focus relocated: %s)', target.label, relocated)

    def backend(self, target: RestoreTarget) -> BackendAdapter:
        if target not in self._backends:
            self._backends[target] = self._backend_factory(target)
        return self._backends[target]

    # ==========================================================================
    # Restore
    # ==========================================================================

    def request_restore(self) -> None:
        descriptor = self.catalog.selected_descriptor
        if descriptor is None:
            self.status = 'No snapshot selected. Press r to reload the catalog.'
            return
        if self.catalog.loading:
            self.status = 'The catalog is reloading; try again when it has loaded.'
            return
        if self._active_run is not None:
            self.popup.present(Error(message=str(RestoreBusyError(self._active_run.descriptor.key))))
            return
        slot = self.targets.active_slot
        try:
            slot.config.verify_settings()
        except ConfigInvalidError as e:
            self.targets.set_error(e)
            self.popup.present(Error(message=str(e)))
            return
        self.popup.request_restore(descriptor, slot.target)

    def _start_run(self) -> None:
        state = self.popup.state
        assert isinstance(state, ConfirmRestore)
        slot = self.targets.slot(state.target)
        try:
            run = self.orchestrator.start(state.descriptor, self.backend(state.target), slot.config)
        except RestoreBusyError as e:
            self.popup.fail_start(str(e))
            return
        self._active_run = run
        self.popup.begin_run(run.run_id)
        self.status = f'Restoring {state.descriptor.key} into {state.target.label}...'
        self._spawn(self._execute(run), name=f'restore-{run.run_id}')

    async def _execute(self, run: RestoreRun) -> None:
        await run.execute(self.post)

    def _signal_cancel(self) -> None:
        if self._active_run is None:
            return
        self.status = _CANCEL_STATUS[self._active_run.cancel()]

    def _on_run_finished(self, event: RunFinished) -> None:
        if self._active_run is not None and self._active_run.run_id == event.run_id:
            self._active_run = None
        self.popup.on_run_finished(event.run_id, event.outcome)
        self.status = event.outcome.message

    # ==========================================================================
    # Connection tests
    # ==========================================================================

    def test_connection(self) -> None:
        """Probe the object store (source/catalog focus) or the active backend."""
        probe_source = self.focus.group in (FieldGroup.SOURCE, FieldGroup.CATALOG)
        config: EditableConfig = self.targets.source if probe_source else self.targets.active_slot.config
        try:
            config.verify_settings()
        except ConfigInvalidError as e:
            self.targets.set_error(e)
            self._present(Error(message=str(e)))
            return
        if probe_source:
            assert isinstance(config, ObjectStoreConfig)
            self.status = 'Testing object store connection...'
            self._spawn(self._probe_source(config), name='probe-source')
        else:
            target = self.targets.active
            self.status = f'Testing {target.label} connection...'
            self._spawn(self._probe_backend(target, self.targets.active_slot.config), name=f'probe-{target}')

    async def _probe_source(self, config: ObjectStoreConfig) -> None:
        location = config.local_dir or f's3://{config.bucket}'
        try:
            store = self._store_factory(config)
            listed = await asyncio.wait_for(store.list_snapshots(config.prefix), self.probe_timeout)
        except TimeoutError:
            outcome = ConnectionOutcome(
                ok=False, subject=location, message=f'Listing {location} timed out after {self.probe_timeout:g}s'
            )
        except (ConnectivityError, ValueError) as e:
            outcome = ConnectionOutcome(ok=False, subject=location, message=str(e))
        except Exception as e:
            logger.exception('Object store probe failed')
            outcome = ConnectionOutcome(ok=False, subject=location, message=f'Unexpected error: {e}')
        else:
            outcome = ConnectionOutcome(
                ok=True,
                subject=store.location,
                message=f'Connected to {store.location}; {len(listed)} objects under {config.prefix or "/"}.',
            )
        self.post(TestFinished(outcome=outcome))

    async def _probe_backend(self, target: RestoreTarget, config: BackendConfig) -> None:
        try:
            outcome = await self.backend(target).test_connection(config)
        except Exception as e:
            logger.exception('%s probe failed', target.label)
            outcome = ConnectionOutcome(ok=False, subject=target.label, message=f'Unexpected error: {e}')
        self.post(TestFinished(outcome=outcome))

    # ==========================================================================
    # Catalog
    # ==========================================================================

    def reload_catalog(self, user_initiated: bool) -> None:
        """
        Rebuild the object store from the source configuration and list it again.

        Failures are shown inline in the catalog and in an Error popup.
        Only operator reloads report a successful load on the status line.
        """
        if self.busy:
            self.status = 'Cannot reload the catalog while a restore is running.'
            return
        config = self.targets.source
        try:
            config.verify_settings()
            store = self._store_factory(config)
        except ConfigInvalidError as e:
            self.targets.set_error(e)
            self._catalog_failed(str(e))
            return
        except (ConnectivityError, ValueError) as e:
            self._catalog_failed(str(e))
            return

        self.orchestrator.store = store
        generation = next(self._catalog_generation)
        self._expected_catalog = generation
        self.catalog.loading = True
        self._spawn(self._load_catalog(store, config.prefix, generation, user_initiated), name='catalog')

    async def _load_catalog(self, store: ObjectStore, prefix: str, generation: int, user_initiated: bool) -> None:
        try:
            descriptors = await store.list_snapshots(prefix)
        except ConnectivityError as e:
            self.post(CatalogLoadFailed(generation=generation, message=str(e)))
        except Exception as e:
            logger.exception('Catalog load failed')
            self.post(CatalogLoadFailed(generation=generation, message=f'Unexpected error: {e}'))
        else:
            self.post(CatalogLoaded(generation=generation, descriptors=descriptors, prefix=prefix, user_initiated=user_initiated))

    def _on_catalog_loaded(self, event: CatalogLoaded) -> None:
        if event.generation != self._expected_catalog:
            return
        self.catalog.load(event.descriptors, event.prefix)
        logger.info('Catalog loaded: %d snapshots', len(self.catalog))
        if event.user_initiated:
            self.status = f'Loaded {len(self.catalog)} snapshots.'

    def _on_catalog_failed(self, event: CatalogLoadFailed) -> None:
        if event.generation != self._expected_catalog:
            return
        self._catalog_failed(event.message)

    def _catalog_failed(self, message: str) -> None:
        logger.warning('Catalog load failed: %s', message)
        self.catalog.fail(message)
        self._present(Error(message=f'Failed to load snapshots: {message}'))
