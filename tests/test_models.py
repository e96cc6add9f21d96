"""Tests for configuration editing, local validation and outcome messages."""

from __future__ import annotations

import pytest

from snaprestore.exceptions import ConfigInvalidError
from snaprestore.models import (
    EditableConfig,
    ElasticsearchConfig,
    ObjectStoreConfig,
    PostgresConfig,
    QdrantConfig,
    RestoreOutcome,
)
from snaprestore.types import FocusField, OutcomeKind, Phase, RestoreTarget

# ==============================================================================
# Field editing
# ==============================================================================


@pytest.mark.parametrize(
    ('text', 'expected'),
    [
        pytest.param('5433', 5433, id='number'),
        pytest.param(' 6000 ', 6000, id='whitespace'),
        pytest.param('', None, id='empty'),
    ],
)
def test_integer_field_parsing(text: str, expected: int | None) -> None:
    config = PostgresConfig(host='db', port=5432, db_name='app')

    assert config.with_field_value(FocusField.PG_PORT, text).port == expected


@pytest.mark.parametrize(
    ('text', 'expected'),
    [('true', True), ('YES', True), ('off', False), ('0', False)],
    ids=['true', 'yes', 'off', 'zero'],
)
def test_boolean_field_parsing(text: str, expected: bool) -> None:
    assert PostgresConfig().with_field_value(FocusField.PG_SSL, text).use_ssl is expected


@pytest.mark.parametrize(
    ('field', 'text', 'message'),
    [
        pytest.param(FocusField.PG_PORT, '54x', 'not a whole number', id='port'),
        pytest.param(FocusField.PG_SSL, 'maybe', "must be 'true' or 'false'", id='ssl'),
    ],
)
def test_unparseable_edit_raises_field_error(field: FocusField, text: str, message: str) -> None:
    with pytest.raises(ConfigInvalidError) as exc_info:
        PostgresConfig().with_field_value(field, text)

    assert exc_info.value.field == field
    assert message in str(exc_info.value)


def test_edit_returns_new_instance() -> None:
    original = ObjectStoreConfig(bucket='one')

    edited = original.with_field_value(FocusField.BUCKET, 'two')

    assert original.bucket == 'one'
    assert edited.bucket == 'two'
    assert edited.get_field_value(FocusField.PATH_STYLE) == 'true'


def test_field_of_another_config_is_rejected() -> None:
    with pytest.raises(ValueError, match='not a field of'):
        QdrantConfig().get_field_value(FocusField.PG_HOST)


# ==============================================================================
# verify_settings
# ==============================================================================


@pytest.mark.parametrize(
    ('config', 'field'),
    [
        pytest.param(ObjectStoreConfig(), FocusField.BUCKET, id='s3-no-bucket'),
        pytest.param(ObjectStoreConfig(bucket='b', region=''), FocusField.REGION, id='s3-no-region'),
        pytest.param(ObjectStoreConfig(bucket='b', endpoint_url='minio:9000'), FocusField.ENDPOINT_URL, id='s3-endpoint'),
        pytest.param(ObjectStoreConfig(bucket='b', access_key_id='AKIA'), FocusField.SECRET_ACCESS_KEY, id='s3-half-creds'),
        pytest.param(PostgresConfig(), FocusField.PG_HOST, id='pg-no-host'),
        pytest.param(PostgresConfig(host='db', port=70000, db_name='x'), FocusField.PG_PORT, id='pg-port-range'),
        pytest.param(PostgresConfig(host='db', port=5432), FocusField.PG_DB_NAME, id='pg-no-db'),
        pytest.param(ElasticsearchConfig(host='es:9200', index='logs'), FocusField.ES_HOST, id='es-scheme'),
        pytest.param(ElasticsearchConfig(host='http://es', index='Logs'), FocusField.ES_INDEX, id='es-uppercase'),
        pytest.param(ElasticsearchConfig(host='http://es', index='_logs'), FocusField.ES_INDEX, id='es-leading-underscore'),
        pytest.param(ElasticsearchConfig(host='http://es', index='logs', password='pw'), FocusField.ES_USERNAME, id='es-password-only'),
        pytest.param(QdrantConfig(host='http://qdrant'), FocusField.QDRANT_COLLECTION, id='qdrant-no-collection'),
        pytest.param(QdrantConfig(host='http://qdrant', collection='a/b'), FocusField.QDRANT_COLLECTION, id='qdrant-slash'),
    ],
)
def test_verify_settings_names_the_invalid_field(config: EditableConfig, field: FocusField) -> None:
    with pytest.raises(ConfigInvalidError) as exc_info:
        config.verify_settings()

    assert exc_info.value.field == field


@pytest.mark.parametrize(
    'config',
    [
        ObjectStoreConfig(bucket='backups'),
        ObjectStoreConfig(bucket='backups', region='', endpoint_url='http://minio:9000'),
        PostgresConfig(host='db', port=5432, db_name='app'),
        ElasticsearchConfig(host='https://es:9200', index='logs-2024', username='elastic', password='pw'),
        QdrantConfig(host='http://qdrant:6333', collection='embeddings'),
    ],
    ids=['s3', 's3-endpoint', 'postgres', 'elasticsearch', 'qdrant'],
)
def test_valid_configs_pass(config: EditableConfig) -> None:
    config.verify_settings()


def test_editable_config_base_cannot_be_instantiated() -> None:
    with pytest.raises(TypeError, match='verify_settings'):
        EditableConfig()


def test_local_dir_must_exist(tmp_path) -> None:
    ObjectStoreConfig(local_dir=str(tmp_path)).verify_settings()

    with pytest.raises(ConfigInvalidError, match='does not exist'):
        ObjectStoreConfig(local_dir=str(tmp_path / 'missing')).verify_settings()


# ==============================================================================
# Outcome messages
# ==============================================================================


def _outcome(kind: OutcomeKind, **extra: object) -> RestoreOutcome:
    return RestoreOutcome(kind=kind, snapshot_key='db/x.dump', target=RestoreTarget.DOCUMENT_SEARCH, **extra)


def test_every_outcome_kind_has_a_distinct_message() -> None:
    messages = {
        _outcome(kind, reason='boom', failed_phase=Phase.APPLY if kind == OutcomeKind.APPLY_FAILED else None).message
        for kind in OutcomeKind
    }
    messages.add(_outcome(OutcomeKind.APPLY_FAILED, reason='boom', failed_phase=Phase.VERIFY).message)

    assert len(messages) == len(OutcomeKind) + 1


def test_success_message_mentions_count_and_verification() -> None:
    message = _outcome(OutcomeKind.SUCCESS, objects_applied=1200, verified=True).message

    assert message == 'Restored db/x.dump to Elasticsearch (1,200 objects) and verified.'


def test_late_cancel_is_called_out() -> None:
    message = _outcome(OutcomeKind.SUCCESS, cancel_requested_late=True).message

    assert 'verification was skipped' in message
    assert not _outcome(OutcomeKind.SUCCESS, cancel_requested_late=True).verified
