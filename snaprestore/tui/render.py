"""
Rendering - turns session state into rich renderables.

Pure functions of the controller's state; nothing here mutates the session.
Secrets are masked here and only here.
"""

from __future__ import annotations

from rich.console import Group, RenderableType
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from snaprestore.models import EditableConfig
from snaprestore.session.controller import SessionController
from snaprestore.session.events import Progress
from snaprestore.session.popup import (
    ConfirmCancel,
    ConfirmRestore,
    Downloading,
    Error,
    Hidden,
    PopupState,
    Restoring,
    Success,
    TestResult,
)
from snaprestore.types import FieldGroup, FocusField, Phase, RestoreTarget

__all__ = [
    'backend_panel',
    'catalog_panel',
    'format_bytes',
    'format_progress',
    'mask',
    'popup_panel',
    'source_panel',
    'status_line',
    'target_panel',
]

FOCUS_STYLE = 'bold black on cyan'
EDIT_STYLE = 'bold black on yellow'
BAR_WIDTH = 32
_UNITS = ('B', 'KB', 'MB', 'GB', 'TB')

NORMAL_HELP = (
    'tab group  ↑/↓ move  enter edit/restore  1/2/3 target  b selector  r reload  t test  q quit  ctrl+z suspend'
)
EDIT_HELP = 'enter save  esc discard  backspace delete'


# ==============================================================================
# Formatting
# ==============================================================================


def mask(value: str) -> str:
    """Replace all but the last four characters with '*'."""
    if len(value) <= 4:
        return '*' * len(value)
    return '*' * (len(value) - 4) + value[-4:]


def format_bytes(size: float) -> str:
    for unit in _UNITS:
        if abs(size) < 1024 or unit == _UNITS[-1]:
            return f'{size:.0f} {unit}' if unit == 'B' else f'{size:.1f} {unit}'
        size /= 1024
    raise AssertionError('unreachable')


def _amount(value: float, unit: str) -> str:
    return format_bytes(value) if unit == 'bytes' else f'{value:,.0f} {unit}'


def format_progress(progress: Progress) -> str:
    """'42.0% 1.2 MB / 3.0 MB (512.0 KB/s)' or '1,204 objects' when indeterminate."""
    if progress.fraction is not None and progress.total is not None:
        text = f'{progress.fraction * 100:5.1f}% {_amount(progress.done, progress.unit)} / {_amount(progress.total, progress.unit)}'
    else:
        text = _amount(progress.done, progress.unit)
    if progress.rate:
        text += f' ({_amount(progress.rate, progress.unit)}/s)'
    return text


def _bar(fraction: float | None) -> str:
    if fraction is None:
        return '░' * BAR_WIDTH
    filled = int(fraction * BAR_WIDTH)
    return '█' * filled + '░' * (BAR_WIDTH - filled)


# ==============================================================================
# Panels
# ==============================================================================


def _field_line(session: SessionController, config: EditableConfig, field: FocusField) -> Text:
    editing = session.editing
    focused = session.focus.current == field
    if editing is not None and editing.field == field:
        value = (mask(editing.buffer) if field.is_sensitive else editing.buffer) + '▏'
        style = EDIT_STYLE
    else:
        raw = config.get_field_value(field)
        value = mask(raw) if field.is_sensitive else raw
        style = FOCUS_STYLE if focused else ''
    line = Text()
    line.append(f'{field.label:<24}', style='bold' if focused else 'dim')
    line.append(value or ' ', style=style)
    return line


def _border(session: SessionController, group: FieldGroup) -> str:
    return 'cyan' if session.focus.group == group else 'grey50'


def _with_error(lines: list[RenderableType], error: str) -> Group:
    if error:
        lines.append(Text(error, style='red'))
    return Group(*lines)


def source_panel(session: SessionController) -> Panel:
    config = session.targets.source
    lines: list[RenderableType] = [_field_line(session, config, field) for field in config.FIELDS]
    if config.local_dir:
        lines.append(Text(f'Serving snapshots from {config.local_dir}', style='italic'))
    return Panel(
        _with_error(lines, session.targets.source_error),
        title='Source (object store)',
        border_style=_border(session, FieldGroup.SOURCE),
    )


def target_panel(session: SessionController) -> Panel:
    line = Text()
    focused = session.focus.current == FocusField.RESTORE_TARGET
    for target in RestoreTarget:
        active = target == session.targets.active
        style = (FOCUS_STYLE if focused else 'bold reverse') if active else 'dim'
        line.append(f' {target.select_key} {target.label} ', style=style)
        line.append(' ')
    return Panel(line, title='Restore target', border_style=_border(session, FieldGroup.TARGET_SELECTOR))


def backend_panel(session: SessionController) -> Panel:
    slot = session.targets.active_slot
    lines: list[RenderableType] = [_field_line(session, slot.config, field) for field in slot.config.FIELDS]
    return Panel(
        _with_error(lines, slot.error_message),
        title=f'{slot.target.label} connection',
        border_style=_border(session, FieldGroup.BACKEND),
    )


def catalog_panel(session: SessionController) -> Panel:
    catalog = session.catalog
    title = f'Snapshots ({len(catalog)})'
    border = _border(session, FieldGroup.CATALOG)
    if catalog.loading:
        return Panel(Text('Loading snapshots...', style='italic'), title=title, border_style=border)
    if catalog.error_message:
        return Panel(Text(catalog.error_message, style='red'), title=title, border_style=border)
    if catalog.is_empty:
        message = 'No snapshots found. Press r to reload.' if catalog.loaded else 'Catalog not loaded.'
        return Panel(Text(message, style='italic'), title=title, border_style=border)

    table = Table(expand=True, box=None, show_edge=False)
    table.add_column('Snapshot', ratio=3, no_wrap=True)
    table.add_column('Size', justify='right')
    table.add_column('Last modified', justify='right')
    focused = session.focus.current == FocusField.SNAPSHOT_LIST
    for index, descriptor in enumerate(catalog.items):
        selected = index == catalog.selected
        style = (FOCUS_STYLE if focused else 'reverse') if selected else ''
        table.add_row(
            descriptor.key,
            format_bytes(descriptor.size),
            descriptor.last_modified.strftime('%Y-%m-%d %H:%M:%S'),
            style=style,
        )
    return Panel(table, title=title, border_style=border)


def status_line(session: SessionController) -> Text:
    help_text = EDIT_HELP if session.editing is not None else NORMAL_HELP
    line = Text()
    if session.status:
        line.append(session.status, style='bold')
        line.append('  |  ', style='dim')
    line.append(help_text, style='dim')
    return line


# ==============================================================================
# Popups
# ==============================================================================


def _run_body(state: Downloading | Restoring) -> Group:
    verb = {
        Phase.TRANSPORT: 'Downloading',
        Phase.VALIDATE: 'Validating',
        Phase.APPLY: 'Restoring into',
        Phase.VERIFY: 'Verifying',
    }[state.phase]
    subject = state.target.label if state.phase in (Phase.APPLY, Phase.VERIFY) else state.descriptor.key
    lines: list[RenderableType] = [Text(f'{verb} {subject}')]
    if state.progress is not None:
        lines.append(Text(_bar(state.progress.fraction), style='green'))
        lines.append(Text(format_progress(state.progress)))
    if isinstance(state, Downloading):
        lines.append(Text('esc: cancel', style='dim'))
    else:
        lines.append(Text('Writing to the target; this cannot be interrupted.', style='dim'))
    return Group(*lines)


def popup_panel(state: PopupState) -> Panel | None:
    """Renderable for the current popup, or None when hidden."""
    match state:
        case Hidden():
            return None
        case ConfirmRestore(descriptor=descriptor, target=target):
            body = Text.assemble(
                f'Restore {descriptor.key} ({format_bytes(descriptor.size)}) into {target.label}?\n',
                ('Existing data in the target may be overwritten.\n\n', 'yellow'),
                ('y: restore   n/esc: back', 'dim'),
            )
            return Panel(body, title='Confirm restore', border_style='yellow')
        case Downloading() | Restoring():
            return Panel(_run_body(state), title='Restore in progress', border_style='cyan')
        case ConfirmCancel(resume=resume):
            body = Text.assemble(
                f'Cancel restore of {resume.descriptor.key}?\n',
                ('y: cancel restore   n/esc: keep going', 'dim'),
            )
            return Panel(body, title='Cancel restore', border_style='yellow')
        case TestResult(outcome=outcome):
            style = 'green' if outcome.ok else 'red'
            title = 'Connection OK' if outcome.ok else 'Connection failed'
            body = Text.assemble((outcome.message + '\n\n', style), ('enter/esc: close', 'dim'))
            return Panel(body, title=title, border_style=style)
        case Error(message=message):
            body = Text.assemble((message + '\n\n', 'red'), ('enter/esc: close', 'dim'))
            return Panel(body, title='Error', border_style='red')
        case Success(message=message):
            body = Text.assemble((message + '\n\n', 'green'), ('enter/esc: close', 'dim'))
            return Panel(body, title='Success', border_style='green')
        case _:
            raise AssertionError(f'unreachable popup state: {state}')
