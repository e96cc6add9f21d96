"""
Interactive session state: focus, popups, catalog, per-target configuration
and the controller that drives them from one event queue.

Submodules are imported directly (``snaprestore.session.controller``); this
package init stays empty so the orchestrator can depend on
``snaprestore.session.events`` without importing the controller.
"""
