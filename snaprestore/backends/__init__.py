"""Restore target adapters, one per RestoreTarget variant."""

from __future__ import annotations

from snaprestore.backends.elasticsearch import ElasticsearchBackend
from snaprestore.backends.postgres import PostgresBackend
from snaprestore.backends.protocol import ApplyProgress, BackendAdapter, StagedArtifact
from snaprestore.backends.qdrant import QdrantBackend
from snaprestore.types import RestoreTarget

__all__ = [
    'ApplyProgress',
    'BackendAdapter',
    'ElasticsearchBackend',
    'PostgresBackend',
    'QdrantBackend',
    'StagedArtifact',
    'create_backend',
]


def create_backend(target: RestoreTarget, timeout: float = 5.0, batch_size: int = 500) -> BackendAdapter:
    """Build the adapter for a restore target."""
    match target:
        case RestoreTarget.RELATIONAL:
            return PostgresBackend(timeout=timeout)
        case RestoreTarget.DOCUMENT_SEARCH:
            return ElasticsearchBackend(timeout=timeout, batch_size=batch_size)
        case RestoreTarget.VECTOR_STORE:
            return QdrantBackend(timeout=timeout, batch_size=batch_size)
        case _:
            raise AssertionError(f'unreachable restore target: {target}')
