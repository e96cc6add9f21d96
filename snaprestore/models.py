"""
Data models for snaprestore.

Snapshot descriptors, connection configurations for the object store and each
restore target, and the terminal outcomes reported by probes and restore runs.
All models are frozen; configuration edits produce new instances.
"""

from __future__ import annotations

import abc
import re
from collections.abc import Mapping
from datetime import datetime
from pathlib import Path
from typing import ClassVar, Literal, Self

import pydantic

from snaprestore.base_model import StrictModel
from snaprestore.exceptions import ConfigInvalidError
from snaprestore.types import FocusField, OutcomeKind, Phase, RestoreTarget

# ==============================================================================
# Snapshot descriptors
# ==============================================================================


class SnapshotDescriptor(StrictModel):
    """One remote snapshot as reported by the object store listing."""

    key: str
    size: int = pydantic.Field(ge=0)
    last_modified: datetime

    @property
    def name(self) -> str:
        """Last path segment of the key."""
        return self.key.rsplit('/', 1)[-1]


# ==============================================================================
# Editable configuration base
# ==============================================================================

_TRUE_WORDS = frozenset({'true', 'yes', 'on', '1'})
_FALSE_WORDS = frozenset({'false', 'no', 'off', '0'})


def _is_http_url(value: str) -> bool:
    return value.startswith(('http://', 'https://')) and len(value.split('://', 1)[1]) > 0


class EditableConfig(StrictModel):
    """
    Configuration whose attributes are exposed as navigable focus fields.

    Subclasses declare FIELDS (ordered, the first one is the group's designated
    first field) and FIELD_ATTRS mapping each field to its attribute name.
    """

    FIELDS: ClassVar[tuple[FocusField, ...]] = ()
    FIELD_ATTRS: ClassVar[Mapping[FocusField, str]] = {}
    INTEGER_FIELDS: ClassVar[frozenset[FocusField]] = frozenset()
    BOOLEAN_FIELDS: ClassVar[frozenset[FocusField]] = frozenset()

    @classmethod
    def owns(cls, field: FocusField) -> bool:
        return field in cls.FIELD_ATTRS

    def get_field_value(self, field: FocusField) -> str:
        """Current committed value of a field, as editable text."""
        value = getattr(self, self._attr(field))
        if isinstance(value, bool):
            return 'true' if value else 'false'
        return '' if value is None else str(value)

    def with_field_value(self, field: FocusField, text: str) -> Self:
        """
        Return a copy with one field replaced by the parsed text.

        Raises:
            ConfigInvalidError: If the text cannot be parsed for this field
        """
        attr = self._attr(field)
        text = text.strip()
        value: str | int | bool | None
        if field in self.BOOLEAN_FIELDS:
            lowered = text.lower()
            if lowered in _TRUE_WORDS:
                value = True
            elif lowered in _FALSE_WORDS:
                value = False
            else:
                raise ConfigInvalidError(field, "must be 'true' or 'false'")
        elif field in self.INTEGER_FIELDS:
            if not text:
                value = None
            else:
                try:
                    value = int(text)
                except ValueError:
                    raise ConfigInvalidError(field, f"'{text}' is not a whole number") from None
        else:
            value = text
        return self.model_copy(update={attr: value})

    @abc.abstractmethod
    def verify_settings(self) -> None:
        """
        Local structural check, no network access.

        Raises:
            ConfigInvalidError: For the first invalid field found
        """

    def _attr(self, field: FocusField) -> str:
        try:
            return self.FIELD_ATTRS[field]
        except KeyError:
            raise ValueError(f'{field.label} is not a field of {type(self).__name__}') from None


# ==============================================================================
# Object store
# ==============================================================================


class ObjectStoreConfig(EditableConfig):
    """Connection parameters for the snapshot source."""

    FIELDS: ClassVar[tuple[FocusField, ...]] = (
        FocusField.BUCKET,
        FocusField.REGION,
        FocusField.PREFIX,
        FocusField.ENDPOINT_URL,
        FocusField.ACCESS_KEY_ID,
        FocusField.SECRET_ACCESS_KEY,
        FocusField.PATH_STYLE,
    )
    FIELD_ATTRS: ClassVar[Mapping[FocusField, str]] = {
        FocusField.BUCKET: 'bucket',
        FocusField.REGION: 'region',
        FocusField.PREFIX: 'prefix',
        FocusField.ENDPOINT_URL: 'endpoint_url',
        FocusField.ACCESS_KEY_ID: 'access_key_id',
        FocusField.SECRET_ACCESS_KEY: 'secret_access_key',
        FocusField.PATH_STYLE: 'path_style',
    }
    BOOLEAN_FIELDS: ClassVar[frozenset[FocusField]] = frozenset({FocusField.PATH_STYLE})

    bucket: str = ''
    region: str = 'us-west-2'
    prefix: str = 'backups/'
    endpoint_url: str = ''
    access_key_id: str = ''
    secret_access_key: str = ''
    path_style: bool = True
    # Serve snapshots from a local directory instead of S3 (not editable in the UI)
    local_dir: str = ''

    def verify_settings(self) -> None:
        if self.local_dir:
            if not Path(self.local_dir).is_dir():
                raise ConfigInvalidError(FocusField.BUCKET, f'local directory {self.local_dir} does not exist')
            return
        if not self.bucket:
            raise ConfigInvalidError(FocusField.BUCKET, 'bucket name is required')
        if not self.endpoint_url and not self.region:
            raise ConfigInvalidError(FocusField.REGION, 'region is required when no endpoint URL is set')
        if self.endpoint_url and not _is_http_url(self.endpoint_url):
            raise ConfigInvalidError(FocusField.ENDPOINT_URL, 'must start with http:// or https://')
        if bool(self.access_key_id) != bool(self.secret_access_key):
            missing = FocusField.SECRET_ACCESS_KEY if self.access_key_id else FocusField.ACCESS_KEY_ID
            raise ConfigInvalidError(missing, 'access key ID and secret access key must be set together')


# ==============================================================================
# Restore targets
# ==============================================================================


class PostgresConfig(EditableConfig):
    """Connection parameters for the relational target."""

    FIELDS: ClassVar[tuple[FocusField, ...]] = (
        FocusField.PG_HOST,
        FocusField.PG_PORT,
        FocusField.PG_USERNAME,
        FocusField.PG_PASSWORD,
        FocusField.PG_SSL,
        FocusField.PG_DB_NAME,
    )
    FIELD_ATTRS: ClassVar[Mapping[FocusField, str]] = {
        FocusField.PG_HOST: 'host',
        FocusField.PG_PORT: 'port',
        FocusField.PG_USERNAME: 'username',
        FocusField.PG_PASSWORD: 'password',
        FocusField.PG_SSL: 'use_ssl',
        FocusField.PG_DB_NAME: 'db_name',
    }
    INTEGER_FIELDS: ClassVar[frozenset[FocusField]] = frozenset({FocusField.PG_PORT})
    BOOLEAN_FIELDS: ClassVar[frozenset[FocusField]] = frozenset({FocusField.PG_SSL})

    host: str = ''
    port: int | None = None
    username: str = ''
    password: str = ''
    use_ssl: bool = False
    db_name: str = ''

    def verify_settings(self) -> None:
        if not self.host:
            raise ConfigInvalidError(FocusField.PG_HOST, 'host is required')
        if self.port is None:
            raise ConfigInvalidError(FocusField.PG_PORT, 'port is required')
        if not 1 <= self.port <= 65535:
            raise ConfigInvalidError(FocusField.PG_PORT, 'must be between 1 and 65535')
        if not self.db_name:
            raise ConfigInvalidError(FocusField.PG_DB_NAME, 'database name is required')
        if len(self.db_name) > 63:
            raise ConfigInvalidError(FocusField.PG_DB_NAME, 'must be at most 63 characters')


# Elasticsearch index names: lowercase, no path/wildcard characters, no leading -_+
_INVALID_INDEX_CHARS = re.compile(r'[\\/*?"<>| ,#:]')


class ElasticsearchConfig(EditableConfig):
    """Connection parameters for the document-search target."""

    FIELDS: ClassVar[tuple[FocusField, ...]] = (
        FocusField.ES_HOST,
        FocusField.ES_INDEX,
        FocusField.ES_USERNAME,
        FocusField.ES_PASSWORD,
    )
    FIELD_ATTRS: ClassVar[Mapping[FocusField, str]] = {
        FocusField.ES_HOST: 'host',
        FocusField.ES_INDEX: 'index',
        FocusField.ES_USERNAME: 'username',
        FocusField.ES_PASSWORD: 'password',
    }

    host: str = ''
    index: str = ''
    username: str = ''
    password: str = ''

    def verify_settings(self) -> None:
        if not self.host:
            raise ConfigInvalidError(FocusField.ES_HOST, 'host is required')
        if not _is_http_url(self.host):
            raise ConfigInvalidError(FocusField.ES_HOST, 'must start with http:// or https://')
        if not self.index:
            raise ConfigInvalidError(FocusField.ES_INDEX, 'index name is required')
        if self.index != self.index.lower():
            raise ConfigInvalidError(FocusField.ES_INDEX, 'must be lowercase')
        if self.index.startswith(('-', '_', '+')) or _INVALID_INDEX_CHARS.search(self.index):
            raise ConfigInvalidError(FocusField.ES_INDEX, 'contains characters Elasticsearch does not allow')
        if self.password and not self.username:
            raise ConfigInvalidError(FocusField.ES_USERNAME, 'username is required when a password is set')


QdrantDistance = Literal['Cosine', 'Euclid', 'Dot', 'Manhattan']


class QdrantConfig(EditableConfig):
    """Connection parameters for the vector target."""

    FIELDS: ClassVar[tuple[FocusField, ...]] = (
        FocusField.QDRANT_HOST,
        FocusField.QDRANT_COLLECTION,
        FocusField.QDRANT_API_KEY,
    )
    FIELD_ATTRS: ClassVar[Mapping[FocusField, str]] = {
        FocusField.QDRANT_HOST: 'host',
        FocusField.QDRANT_COLLECTION: 'collection',
        FocusField.QDRANT_API_KEY: 'api_key',
    }

    host: str = ''
    collection: str = ''
    api_key: str = ''
    distance: QdrantDistance = 'Cosine'

    def verify_settings(self) -> None:
        if not self.host:
            raise ConfigInvalidError(FocusField.QDRANT_HOST, 'host is required')
        if not _is_http_url(self.host):
            raise ConfigInvalidError(FocusField.QDRANT_HOST, 'must start with http:// or https://')
        if not self.collection:
            raise ConfigInvalidError(FocusField.QDRANT_COLLECTION, 'collection name is required')
        if '/' in self.collection:
            raise ConfigInvalidError(FocusField.QDRANT_COLLECTION, "must not contain '/'")


BackendConfig = PostgresConfig | ElasticsearchConfig | QdrantConfig

CONFIG_TYPES: Mapping[RestoreTarget, type[PostgresConfig] | type[ElasticsearchConfig] | type[QdrantConfig]] = {
    RestoreTarget.RELATIONAL: PostgresConfig,
    RestoreTarget.DOCUMENT_SEARCH: ElasticsearchConfig,
    RestoreTarget.VECTOR_STORE: QdrantConfig,
}


# ==============================================================================
# Outcomes
# ==============================================================================


class ConnectionOutcome(StrictModel):
    """Result of a side-effect-free reachability probe."""

    ok: bool
    subject: str
    message: str


class RestoreOutcome(StrictModel):
    """Terminal result of one restore run. Produced exactly once per run."""

    kind: OutcomeKind
    snapshot_key: str
    target: RestoreTarget
    reason: str = ''
    failed_phase: Phase | None = None
    partial_writes: bool = False
    verified: bool = False
    cancel_requested_late: bool = False
    objects_applied: int | None = None

    @property
    def ok(self) -> bool:
        return self.kind == OutcomeKind.SUCCESS

    @property
    def message(self) -> str:
        """Operator-facing summary, rendered verbatim by the result popups."""
        label = self.target.label
        match self.kind:
            case OutcomeKind.SUCCESS:
                text = f'Restored {self.snapshot_key} to {label}'
                if self.objects_applied is not None:
                    text += f' ({self.objects_applied:,} objects)'
                text += ' and verified.' if self.verified else '.'
            case OutcomeKind.TRANSPORT_FAILED:
                text = f'Download of {self.snapshot_key} failed: {self.reason}'
            case OutcomeKind.VALIDATION_FAILED:
                text = f'{self.snapshot_key} is not a valid {label} snapshot: {self.reason}. Nothing was written.'
            case OutcomeKind.APPLY_FAILED if self.failed_phase == Phase.VERIFY:
                text = (
                    f'Restore into {label} finished but verification failed: {self.reason}. '
                    f'Target state may be partially mutated.'
                )
            case OutcomeKind.APPLY_FAILED:
                text = f'Restore into {label} failed while writing: {self.reason}. The target may contain partial data.'
            case OutcomeKind.CANCELLED:
                text = f'Restore of {self.snapshot_key} cancelled before any data was written.'
            case _:
                raise AssertionError(f'unreachable outcome kind: {self.kind}')
        if self.cancel_requested_late:
            text += (
                ' Cancel was requested after writes had started, so it did not interrupt them;'
                ' verification was skipped.'
            )
        return text
