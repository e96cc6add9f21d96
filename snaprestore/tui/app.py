"""
Textual front end.

The app only forwards keys into the session queue and repaints after each
handled event; all state lives in the SessionController.
"""

from __future__ import annotations

from textual import events
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Vertical
from textual.widgets import Static

from snaprestore.session.controller import SessionController, Signal
from snaprestore.session.events import KeyPress
from snaprestore.tui import render


class SnapRestoreApp(App[None]):
    """Snapshot restore TUI."""

    TITLE = 'snaprestore'
    CSS = """
    Screen {
        layers: base popup;
        align: center top;
    }
    #main {
        width: 100%;
        height: 100%;
    }
    #catalog {
        height: 1fr;
    }
    #status {
        height: 1;
    }
    #popup {
        layer: popup;
        width: 76;
        height: auto;
        margin-top: 6;
        display: none;
    }
    """

    # Keys textual would otherwise consume (focus cycling, suspend, built-in quit)
    BINDINGS = [
        Binding(key, f"forward_key('{key}')", show=False, priority=True)
        for key in ('tab', 'ctrl+z', 'ctrl+q', 'ctrl+c')
    ]

    def __init__(self, session: SessionController) -> None:
        super().__init__()
        self.session = session

    def compose(self) -> ComposeResult:
        with Vertical(id='main'):
            yield Static(id='source')
            yield Static(id='target')
            yield Static(id='backend')
            yield Static(id='catalog')
            yield Static(id='status')
        yield Static(id='popup')

    def on_mount(self) -> None:
        self.session.start()
        self.repaint()
        self.run_worker(self._pump(), name='session', exclusive=True)

    def on_key(self, event: events.Key) -> None:
        event.stop()
        event.prevent_default()
        self.session.post(KeyPress(key=event.key, character=event.character))

    def action_forward_key(self, key: str) -> None:
        self.session.post(KeyPress(key=key))

    async def _pump(self) -> None:
        while True:
            signal = await self.session.step()
            self.repaint()
            if signal == Signal.QUIT:
                await self.session.shutdown()
                self.exit()
                return
            if signal == Signal.SUSPEND:
                self.action_suspend_process()

    def repaint(self) -> None:
        session = self.session
        self.query_one('#source', Static).update(render.source_panel(session))
        self.query_one('#target', Static).update(render.target_panel(session))
        self.query_one('#backend', Static).update(render.backend_panel(session))
        self.query_one('#catalog', Static).update(render.catalog_panel(session))
        self.query_one('#status', Static).update(render.status_line(session))
        popup = self.query_one('#popup', Static)
        panel = render.popup_panel(session.popup.state)
        popup.display = panel is not None
        if panel is not None:
            popup.update(panel)
