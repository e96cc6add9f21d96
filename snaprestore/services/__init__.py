"""Service layer for restore operations."""

from snaprestore.services.orchestrator import CancelDisposition, Emit, RestoreOrchestrator, RestoreRun

__all__ = [
    'CancelDisposition',
    'Emit',
    'RestoreOrchestrator',
    'RestoreRun',
]
