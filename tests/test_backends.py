"""
Tests for the backend adapters.

Elasticsearch and Qdrant talk to an httpx.MockTransport; PostgreSQL gets a fake
asyncpg connect function. Nothing here needs a running server.
"""

from __future__ import annotations

import asyncio
import gzip
import io
import json
import tarfile
from collections.abc import Callable
from pathlib import Path
from typing import Any

import asyncpg
import httpx
import pytest

from fakes import descriptor
from snaprestore.backends import ElasticsearchBackend, PostgresBackend, QdrantBackend, create_backend
from snaprestore.backends.protocol import ApplyProgress, BackendAdapter, StagedArtifact
from snaprestore.exceptions import ApplyError, SnapshotValidationError, VerificationError
from snaprestore.models import ElasticsearchConfig, PostgresConfig, QdrantConfig
from snaprestore.types import RestoreTarget

ES = ElasticsearchConfig(host='http://es:9200', index='logs', username='elastic', password='secret')
QDRANT = QdrantConfig(host='http://qdrant:6333', collection='embeddings', api_key='key-123')
POSTGRES = PostgresConfig(host='db', port=5432, username='postgres', db_name='app')


def stage(tmp_path: Path, name: str, content: bytes | str) -> StagedArtifact:
    path = tmp_path / name
    path.write_bytes(content.encode() if isinstance(content, str) else content)
    return StagedArtifact(path=path, descriptor=descriptor(f'snapshots/{name}', size=path.stat().st_size))


def ndjson(*values: Any) -> str:
    return '\n'.join(json.dumps(value) for value in values) + '\n'


def tar_bytes(members: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode='w', format=tarfile.USTAR_FORMAT) as archive:
        for name, data in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            archive.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


async def collect(backend: BackendAdapter, artifact: StagedArtifact, config: Any) -> list[ApplyProgress]:
    return [progress async for progress in backend.apply(artifact, config)]


class Recorder:
    """httpx MockTransport handler that records requests and answers from a route table."""

    def __init__(self, routes: dict[tuple[str, str], Callable[[httpx.Request], httpx.Response]]) -> None:
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get((request.method, request.url.path))
        if handler is None:
            return httpx.Response(404, json={'error': 'not found'})
        return handler(request)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]


def reply(status: int = 200, **body: Any) -> Callable[[httpx.Request], httpx.Response]:
    return lambda request: httpx.Response(status, json=body)


def test_create_backend_matches_target() -> None:
    for target in RestoreTarget:
        assert create_backend(target).target == target


# ==============================================================================
# Elasticsearch
# ==============================================================================

DOCS = [{'title': 'a'}, {'title': 'b'}, {'title': 'c'}]


@pytest.mark.parametrize(
    ('content', 'layout'),
    [
        pytest.param(
            ndjson({'index': {'_id': '1'}}, DOCS[0], {'create': {}}, DOCS[1], {'index': {'_id': 3}}, DOCS[2]),
            'bulk',
            id='bulk',
        ),
        pytest.param(ndjson(*DOCS), 'ndjson', id='ndjson'),
        pytest.param(json.dumps(DOCS), 'json-array', id='array'),
        pytest.param(
            json.dumps({'hits': {'hits': [{'_id': str(i), '_source': doc} for i, doc in enumerate(DOCS)]}}),
            'search-export',
            id='search-export',
        ),
    ],
)
def test_elasticsearch_detects_layout(tmp_path: Path, content: str, layout: str) -> None:
    artifact = stage(tmp_path, 'docs.json', content)

    assert ElasticsearchBackend().inspect(artifact) == (layout, 3)


def test_elasticsearch_reads_gzipped_ndjson(tmp_path: Path) -> None:
    artifact = stage(tmp_path, 'docs.ndjson.gz', gzip.compress(ndjson(*DOCS).encode()))

    assert asyncio.run(ElasticsearchBackend().validate(artifact)) == 'ndjson'


@pytest.mark.parametrize(
    ('content', 'layout'),
    [
        pytest.param(ndjson(DOCS[0]), 'ndjson', id='one-document'),
        pytest.param(json.dumps(DOCS[0]), 'ndjson', id='one-document-no-newline'),
        pytest.param(json.dumps({'hits': {'hits': [{'_source': DOCS[0]}]}}), 'search-export', id='one-hit'),
    ],
)
def test_elasticsearch_accepts_single_record(tmp_path: Path, content: str, layout: str) -> None:
    artifact = stage(tmp_path, 'docs.ndjson', content)

    assert asyncio.run(ElasticsearchBackend().validate(artifact)) == layout
    assert ElasticsearchBackend().inspect(artifact) == (layout, 1)


@pytest.mark.parametrize(
    ('content', 'message'),
    [
        pytest.param('[]', 'no documents', id='empty-array'),
        pytest.param('pg_dump output, not JSON\n', 'not a JSON', id='text'),
        pytest.param(ndjson({'delete': {'_id': '1'}}, {'index': {}}), "'delete' is not supported", id='bulk-delete'),
        pytest.param(ndjson({'index': {}}, DOCS[0], {'index': {}}), 'no source line', id='bulk-missing-source'),
        pytest.param(json.dumps([{'a': 1}, 'oops']), 'item 1', id='array-scalar'),
        pytest.param(json.dumps({'took': 3, 'hits': {'total': 0}}), 'no hits.hits', id='object-without-hits'),
        pytest.param(tar_bytes({'index/meta.json': b'{}'}), 'repository snapshots', id='tar'),
    ],
)
def test_elasticsearch_rejects_invalid_snapshots(tmp_path: Path, content: str | bytes, message: str) -> None:
    artifact = stage(tmp_path, 'bad.json', content)

    with pytest.raises(SnapshotValidationError, match=message):
        asyncio.run(ElasticsearchBackend().validate(artifact))


def _es_routes(bulk_body: dict[str, Any] | None = None) -> Recorder:
    return Recorder(
        {
            ('HEAD', '/logs'): lambda request: httpx.Response(404),
            ('PUT', '/logs'): reply(acknowledged=True),
            ('POST', '/_bulk'): reply(**(bulk_body or {'errors': False, 'items': []})),
            ('POST', '/logs/_refresh'): reply(),
            ('GET', '/logs/_count'): reply(count=3),
        }
    )


def test_elasticsearch_apply_creates_index_and_bulk_loads(tmp_path: Path) -> None:
    recorder = _es_routes()
    backend = ElasticsearchBackend(batch_size=2, transport=recorder.transport)
    artifact = stage(tmp_path, 'docs.ndjson', ndjson(*DOCS))

    progress = asyncio.run(collect(backend, artifact, ES))

    assert [p.done for p in progress] == [0, 2, 3]
    assert all(p.total == 3 and p.unit == 'documents' for p in progress)
    assert len(recorder.calls('PUT', '/logs')) == 1
    bulk = recorder.calls('POST', '/_bulk')
    assert len(bulk) == 2
    lines = bulk[0].content.decode().splitlines()
    assert json.loads(lines[0]) == {'index': {'_index': 'logs'}}
    assert json.loads(lines[1]) == DOCS[0]
    assert recorder.requests[-1].url.path == '/logs/_refresh'
    assert recorder.requests[0].headers['authorization'].startswith('Basic ')


def test_elasticsearch_apply_reports_rejected_documents(tmp_path: Path) -> None:
    recorder = _es_routes(
        {'errors': True, 'items': [{'index': {'error': {'type': 'mapper_parsing_exception', 'reason': 'bad field'}}}]}
    )
    backend = ElasticsearchBackend(transport=recorder.transport)
    artifact = stage(tmp_path, 'docs.ndjson', ndjson(*DOCS))

    with pytest.raises(ApplyError, match='mapper_parsing_exception'):
        asyncio.run(collect(backend, artifact, ES))


def test_elasticsearch_verify_compares_counts() -> None:
    backend = ElasticsearchBackend(transport=_es_routes().transport)

    assert asyncio.run(backend.verify(ES, ApplyProgress(done=3, total=3, unit='documents'))) == '3 documents in logs'
    with pytest.raises(VerificationError, match='expected at least 5'):
        asyncio.run(backend.verify(ES, ApplyProgress(done=5, total=5, unit='documents')))


@pytest.mark.parametrize(
    ('response', 'ok', 'text'),
    [
        pytest.param(reply(version={'number': '8.13.0'}, cluster_name='prod'), True, '8.13.0', id='ok'),
        pytest.param(reply(401), False, 'rejected the credentials', id='unauthorized'),
        pytest.param(reply(500), False, 'Failed to connect', id='server-error'),
    ],
)
def test_elasticsearch_probe(response: Callable[[httpx.Request], httpx.Response], ok: bool, text: str) -> None:
    backend = ElasticsearchBackend(transport=Recorder({('GET', '/'): response}).transport)

    outcome = asyncio.run(backend.test_connection(ES))

    assert outcome.ok is ok
    assert text in outcome.message


# ==============================================================================
# Qdrant
# ==============================================================================

POINTS = [
    {'id': 1, 'vector': [0.1, 0.2, 0.3], 'payload': {'lang': 'en'}},
    {'id': '6f1c8c5e-3f4a-4d1b-9a57-1e2f3a4b5c6d', 'vector': [0.4, 0.5, 0.6]},
]


@pytest.mark.parametrize(
    'content',
    [
        pytest.param(json.dumps(POINTS), id='list'),
        pytest.param(json.dumps({'points': POINTS}), id='points-object'),
        pytest.param(json.dumps({'result': {'points': POINTS, 'next_page_offset': None}}), id='scroll-response'),
        pytest.param(ndjson(*POINTS), id='ndjson'),
    ],
)
def test_qdrant_reads_point_collections(tmp_path: Path, content: str) -> None:
    artifact = stage(tmp_path, 'points.json', content)

    assert QdrantBackend().inspect(artifact) == ('points-json', 2, {'': 3})


@pytest.mark.parametrize(
    'content',
    [
        pytest.param(ndjson(POINTS[0]), id='one-point'),
        pytest.param(json.dumps({'points': [POINTS[0]]}), id='one-point-object'),
    ],
)
def test_qdrant_accepts_single_point(tmp_path: Path, content: str) -> None:
    artifact = stage(tmp_path, 'points.ndjson', content)

    assert asyncio.run(QdrantBackend().validate(artifact)) == 'points-json'
    assert QdrantBackend().inspect(artifact) == ('points-json', 1, {'': 3})


def test_qdrant_named_vectors(tmp_path: Path) -> None:
    points = [{'id': 1, 'vector': {'text': [1.0, 2.0], 'image': [1, 2, 3, 4]}}]
    artifact = stage(tmp_path, 'points.json', json.dumps(points))

    assert QdrantBackend().inspect(artifact) == ('points-json', 1, {'text': 2, 'image': 4})


def test_qdrant_snapshot_archive(tmp_path: Path) -> None:
    artifact = stage(tmp_path, 'embeddings.snapshot', tar_bytes({'config.json': b'{}', 'segments/0.dat': b'\x00'}))

    assert asyncio.run(QdrantBackend().validate(artifact)) == 'snapshot'


@pytest.mark.parametrize(
    ('points', 'message'),
    [
        pytest.param([], 'no points', id='empty'),
        pytest.param([{'id': 1, 'vector': [1, 2]}, {'id': 2, 'vector': [1, 2, 3]}], 'differ', id='dimension-mismatch'),
        pytest.param([{'id': 'not-a-uuid', 'vector': [1]}], 'not a UUID', id='bad-id'),
        pytest.param([{'id': -1, 'vector': [1]}], 'unsigned integer', id='negative-id'),
        pytest.param([{'id': 1}], 'missing vector', id='no-vector'),
        pytest.param([{'id': 1, 'vector': ['a']}], 'non-numeric', id='text-vector'),
        pytest.param([{'id': 1, 'vector': [1], 'payload': [1]}], 'payload', id='payload-list'),
    ],
)
def test_qdrant_rejects_invalid_points(tmp_path: Path, points: list[Any], message: str) -> None:
    artifact = stage(tmp_path, 'points.json', json.dumps(points))

    with pytest.raises(SnapshotValidationError, match=message):
        asyncio.run(QdrantBackend().validate(artifact))


def test_qdrant_rejects_sql_dump(tmp_path: Path) -> None:
    artifact = stage(tmp_path, 'dump.sql', 'CREATE TABLE t (id int);\n')

    with pytest.raises(SnapshotValidationError, match='neither a Qdrant snapshot'):
        asyncio.run(QdrantBackend().validate(artifact))


def test_qdrant_apply_creates_collection_and_upserts(tmp_path: Path) -> None:
    recorder = Recorder(
        {
            ('PUT', '/collections/embeddings'): reply(result=True),
            ('PUT', '/collections/embeddings/points'): reply(result={'status': 'completed'}),
        }
    )
    backend = QdrantBackend(batch_size=1, transport=recorder.transport)
    artifact = stage(tmp_path, 'points.json', json.dumps(POINTS))

    progress = asyncio.run(collect(backend, artifact, QDRANT))

    assert [p.done for p in progress] == [0, 1, 2]
    created = json.loads(recorder.calls('PUT', '/collections/embeddings')[0].content)
    assert created == {'vectors': {'size': 3, 'distance': 'Cosine'}}
    upserts = recorder.calls('PUT', '/collections/embeddings/points')
    assert [json.loads(r.content)['points'][0]['id'] for r in upserts] == [POINTS[0]['id'], POINTS[1]['id']]
    assert all(r.url.params['wait'] == 'true' for r in upserts)
    assert recorder.requests[0].headers['api-key'] == 'key-123'


def test_qdrant_apply_uploads_snapshot(tmp_path: Path) -> None:
    recorder = Recorder({('POST', '/collections/embeddings/snapshots/upload'): reply(result=True)})
    backend = QdrantBackend(transport=recorder.transport)
    artifact = stage(tmp_path, 'embeddings.snapshot', tar_bytes({'config.json': b'{}'}))

    progress = asyncio.run(collect(backend, artifact, QDRANT))

    assert progress[-1] == ApplyProgress(done=artifact.size, total=artifact.size, unit='bytes')
    upload = recorder.calls('POST', '/collections/embeddings/snapshots/upload')[0]
    assert upload.url.params['priority'] == 'snapshot'
    assert upload.headers['content-type'].startswith('multipart/form-data')


def test_qdrant_apply_wraps_http_errors(tmp_path: Path) -> None:
    recorder = Recorder({('GET', '/collections/embeddings'): reply(500, detail='internal error')})
    backend = QdrantBackend(transport=recorder.transport)
    artifact = stage(tmp_path, 'points.json', json.dumps(POINTS))

    with pytest.raises(ApplyError, match='500'):
        asyncio.run(collect(backend, artifact, QDRANT))


@pytest.mark.parametrize(
    ('applied', 'routes', 'error'),
    [
        pytest.param(
            ApplyProgress(done=2, total=2, unit='points'),
            {('POST', '/collections/embeddings/points/count'): reply(result={'count': 2})},
            None,
            id='points-match',
        ),
        pytest.param(
            ApplyProgress(done=5, total=5, unit='points'),
            {('POST', '/collections/embeddings/points/count'): reply(result={'count': 2})},
            'expected at least 5',
            id='points-missing',
        ),
        pytest.param(
            ApplyProgress(done=10, total=10, unit='bytes'),
            {('GET', '/collections/embeddings'): reply(result={'status': 'green', 'points_count': 7})},
            None,
            id='snapshot-green',
        ),
        pytest.param(
            ApplyProgress(done=10, total=10, unit='bytes'),
            {('GET', '/collections/embeddings'): reply(result={'status': 'red'})},
            "status is 'red'",
            id='snapshot-red',
        ),
    ],
)
def test_qdrant_verify(applied: ApplyProgress, routes: dict, error: str | None) -> None:
    backend = QdrantBackend(transport=Recorder(routes).transport)

    if error is None:
        asyncio.run(backend.verify(QDRANT, applied))
    else:
        with pytest.raises(VerificationError, match=error):
            asyncio.run(backend.verify(QDRANT, applied))


@pytest.mark.parametrize(
    ('response', 'ok', 'text'),
    [
        pytest.param(reply(result={'collections': [{'name': 'embeddings'}]}), True, 'embeddings exists', id='exists'),
        pytest.param(reply(result={'collections': []}), True, 'will be created', id='missing'),
        pytest.param(reply(403), False, 'rejected the API key', id='forbidden'),
    ],
)
def test_qdrant_probe(response: Callable[[httpx.Request], httpx.Response], ok: bool, text: str) -> None:
    backend = QdrantBackend(transport=Recorder({('GET', '/collections'): response}).transport)

    outcome = asyncio.run(backend.test_connection(QDRANT))

    assert outcome.ok is ok
    assert text in outcome.message


# ==============================================================================
# PostgreSQL
# ==============================================================================


class FakeConnection:
    def __init__(self, value: Any, query_error: Exception | None = None) -> None:
        self.value = value
        self.query_error = query_error
        self.queries: list[str] = []
        self.timeouts: list[float | None] = []
        self.closed = False

    async def fetchval(self, query: str, *args: Any, timeout: float | None = None) -> Any:
        self.queries.append(query)
        self.timeouts.append(timeout)
        if self.query_error is not None:
            raise self.query_error
        return self.value

    async def execute(self, query: str) -> str:
        self.queries.append(query)
        return 'OK'

    async def close(self) -> None:
        self.closed = True


def fake_connect(
    value: Any = 1,
    missing: frozenset[str] = frozenset(),
    error: Exception | None = None,
    query_error: Exception | None = None,
):
    opened: list[tuple[str, FakeConnection]] = []

    async def connect(**kwargs: Any) -> FakeConnection:
        if error is not None:
            raise error
        if kwargs['database'] in missing:
            raise asyncpg.InvalidCatalogNameError(f'database "{kwargs["database"]}" does not exist')
        conn = FakeConnection(value, query_error)
        opened.append((kwargs['database'], conn))
        return conn

    connect.opened = opened  # type: ignore[attr-defined]
    return connect


@pytest.mark.parametrize(
    ('content', 'expected'),
    [
        pytest.param(b'PGDMP\x01\x0e\x00' + b'\x00' * 32, 'custom', id='custom'),
        pytest.param(tar_bytes({'toc.dat': b'PGDMP', '3001.dat': b'1\tfoo\n'}), 'tar', id='tar'),
        pytest.param(b'--\n-- PostgreSQL database dump\n--\nSET statement_timeout = 0;\n', 'plain', id='plain'),
    ],
)
def test_postgres_detects_dump_format(tmp_path: Path, content: bytes, expected: str) -> None:
    assert PostgresBackend.detect_format(stage(tmp_path, 'db.dump', content)) == expected


@pytest.mark.parametrize(
    ('content', 'message'),
    [
        pytest.param(b'', 'empty', id='empty'),
        pytest.param(tar_bytes({'notes.txt': b'hi'}), 'no toc.dat', id='foreign-tar'),
        pytest.param(gzip.compress(b'CREATE TABLE t ();'), 'compressed', id='gzip'),
        pytest.param(b'\xff\xfe\x00\x01' * 64, 'neither a pg_dump archive', id='binary'),
        pytest.param(b'{"title": "a document"}\n', 'does not look like an SQL dump', id='json'),
    ],
)
def test_postgres_rejects_non_dumps(tmp_path: Path, content: bytes, message: str) -> None:
    with pytest.raises(SnapshotValidationError, match=message):
        PostgresBackend.detect_format(stage(tmp_path, 'db.dump', content))


def test_postgres_validate_requires_client_tool(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr('snaprestore.backends.postgres.shutil.which', lambda program: None)
    artifact = stage(tmp_path, 'db.dump', b'PGDMP' + b'\x00' * 16)

    with pytest.raises(SnapshotValidationError, match='pg_restore is required'):
        asyncio.run(PostgresBackend().validate(artifact))


def test_postgres_probe_reports_version() -> None:
    connect = fake_connect(value='16.2')

    outcome = asyncio.run(PostgresBackend(connect=connect).test_connection(POSTGRES))

    assert outcome.ok
    assert 'PostgreSQL 16.2' in outcome.message
    assert all(conn.closed for _, conn in connect.opened)


def test_postgres_probe_missing_database_falls_back_to_maintenance_db() -> None:
    connect = fake_connect(value='16.2', missing=frozenset({'app'}))

    outcome = asyncio.run(PostgresBackend(connect=connect).test_connection(POSTGRES))

    assert outcome.ok
    assert 'will be created' in outcome.message
    assert [database for database, _ in connect.opened] == ['postgres']


@pytest.mark.parametrize(
    'missing',
    [pytest.param(frozenset(), id='database-exists'), pytest.param(frozenset({'app'}), id='maintenance-db')],
)
def test_postgres_probe_query_failure_is_reported(missing: frozenset[str]) -> None:
    connect = fake_connect(missing=missing, query_error=asyncio.TimeoutError())

    outcome = asyncio.run(PostgresBackend(timeout=2.5, connect=connect).test_connection(POSTGRES))

    assert not outcome.ok
    assert 'query failed' in outcome.message
    [(_, conn)] = connect.opened
    assert conn.closed
    assert conn.timeouts == [2.5]


def test_postgres_probe_unreachable() -> None:
    connect = fake_connect(error=OSError('connection refused'))

    outcome = asyncio.run(PostgresBackend(connect=connect).test_connection(POSTGRES))

    assert not outcome.ok
    assert 'connection refused' in outcome.message


@pytest.mark.parametrize(
    ('tables', 'error'),
    [
        pytest.param(12, None, id='tables'),
        pytest.param(0, 'no user tables', id='empty-database'),
    ],
)
def test_postgres_verify_counts_tables(tables: int, error: str | None) -> None:
    backend = PostgresBackend(connect=fake_connect(value=tables))

    if error is None:
        assert asyncio.run(backend.verify(POSTGRES, None)) == '12 tables present in app'
    else:
        with pytest.raises(VerificationError, match=error):
            asyncio.run(backend.verify(POSTGRES, None))


def test_postgres_verify_unreachable_database() -> None:
    backend = PostgresBackend(connect=fake_connect(error=OSError('timeout')))

    with pytest.raises(VerificationError, match='not reachable'):
        asyncio.run(backend.verify(POSTGRES, None))
