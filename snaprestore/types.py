"""
Shared type definitions for the snaprestore package.

Pure enumerations - no logic beyond display metadata.
"""

from __future__ import annotations

from enum import Enum, StrEnum


# =============================================================================
# Restore targets
# =============================================================================


class RestoreTarget(StrEnum):
    """Closed set of datastores a snapshot can be restored into."""

    RELATIONAL = 'relational'
    DOCUMENT_SEARCH = 'document_search'
    VECTOR_STORE = 'vector_store'

    @property
    def label(self) -> str:
        return _TARGET_LABELS[self]

    @property
    def select_key(self) -> str:
        """Normal-mode key that selects this target."""
        return str(list(RestoreTarget).index(self) + 1)


_TARGET_LABELS = {
    RestoreTarget.RELATIONAL: 'PostgreSQL',
    RestoreTarget.DOCUMENT_SEARCH: 'Elasticsearch',
    RestoreTarget.VECTOR_STORE: 'Qdrant',
}


# =============================================================================
# Focus
# =============================================================================


class FieldGroup(StrEnum):
    """Disjoint groups of navigable fields."""

    SOURCE = 'source'
    TARGET_SELECTOR = 'target_selector'
    BACKEND = 'backend'
    CATALOG = 'catalog'


class FocusField(Enum):
    """Every navigable element of the interface.

    Value is ``(label, is_sensitive)``. Sensitive fields hold secrets that the
    rendering layer masks; the core stores them in plain form.
    """

    # Object store (source connection)
    BUCKET = ('Bucket', False)
    REGION = ('Region', False)
    PREFIX = ('Prefix', False)
    ENDPOINT_URL = ('Endpoint URL', False)
    ACCESS_KEY_ID = ('Access Key ID', True)
    SECRET_ACCESS_KEY = ('Secret Access Key', True)
    PATH_STYLE = ('Path Style', False)

    # Target selector
    RESTORE_TARGET = ('Restore Target', False)

    # Relational
    PG_HOST = ('PostgreSQL Host', False)
    PG_PORT = ('PostgreSQL Port', False)
    PG_USERNAME = ('PostgreSQL Username', False)
    PG_PASSWORD = ('PostgreSQL Password', True)
    PG_SSL = ('PostgreSQL SSL', False)
    PG_DB_NAME = ('PostgreSQL Database', False)

    # Document search
    ES_HOST = ('Elasticsearch Host', False)
    ES_INDEX = ('Elasticsearch Index', False)
    ES_USERNAME = ('Elasticsearch Username', False)
    ES_PASSWORD = ('Elasticsearch Password', True)

    # Vector store
    QDRANT_HOST = ('Qdrant Host', False)
    QDRANT_COLLECTION = ('Qdrant Collection', False)
    QDRANT_API_KEY = ('Qdrant API Key', True)

    # Catalog
    SNAPSHOT_LIST = ('Snapshot List', False)

    @property
    def label(self) -> str:
        return self.value[0]

    @property
    def is_sensitive(self) -> bool:
        return self.value[1]

    def __str__(self) -> str:
        return self.label


class Direction(Enum):
    NEXT = 1
    PREVIOUS = -1


# =============================================================================
# Pipeline
# =============================================================================


class Phase(StrEnum):
    """Restore pipeline phases, in execution order."""

    TRANSPORT = 'transport'
    VALIDATE = 'validate'
    APPLY = 'apply'
    VERIFY = 'verify'


class OutcomeKind(StrEnum):
    """Terminal result of one restore run."""

    SUCCESS = 'success'
    TRANSPORT_FAILED = 'transport_failed'
    VALIDATION_FAILED = 'validation_failed'
    APPLY_FAILED = 'apply_failed'
    CANCELLED = 'cancelled'
