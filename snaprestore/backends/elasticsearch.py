"""
Elasticsearch restore target.

Accepted snapshot formats (optionally gzip-compressed):
- bulk: NDJSON in _bulk format (action line followed by source line)
- ndjson: one document per line
- json-array: a JSON array of documents
- search-export: a search response ({"hits": {"hits": [...]}})

Documents may be bare sources or hits carrying ``_id``/``_source``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Iterator
from typing import Any

import httpx

from snaprestore.backends import formats
from snaprestore.backends.protocol import ApplyProgress, StagedArtifact
from snaprestore.exceptions import ApplyError, SnapshotValidationError, VerificationError
from snaprestore.models import ConnectionOutcome, ElasticsearchConfig
from snaprestore.types import RestoreTarget

__all__ = ['Document', 'ElasticsearchBackend']

logger = logging.getLogger(__name__)

# (document id or None, source)
Document = tuple[str | None, dict[str, Any]]

_BULK_ACTIONS = frozenset({'index', 'create'})
_UNSUPPORTED_BULK_ACTIONS = frozenset({'delete', 'update'})
APPLY_TIMEOUT_SECONDS = 120.0


class ElasticsearchBackend:
    """Document-search restore target backed by Elasticsearch."""

    target = RestoreTarget.DOCUMENT_SEARCH

    def __init__(
        self,
        timeout: float = 5.0,
        batch_size: int = 500,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize the adapter.

        Args:
            timeout: Timeout for probes and verification, in seconds
            batch_size: Documents per _bulk request
            transport: Custom httpx transport (tests)
        """
        self.timeout = timeout
        self.batch_size = batch_size
        self._transport = transport

    def _client(self, config: ElasticsearchConfig, timeout: float) -> httpx.AsyncClient:
        auth = httpx.BasicAuth(config.username, config.password) if config.username else None
        return httpx.AsyncClient(
            base_url=config.host.rstrip('/'),
            auth=auth,
            timeout=timeout,
            transport=self._transport,
        )

    # ==========================================================================
    # Probe
    # ==========================================================================

    async def test_connection(self, config: ElasticsearchConfig) -> ConnectionOutcome:
        try:
            async with self._client(config, self.timeout) as client:
                response = await client.get('/')
                if response.status_code in (401, 403):
                    return ConnectionOutcome(
                        ok=False, subject=config.host, message=f'Elasticsearch rejected the credentials ({response.status_code})'
                    )
                response.raise_for_status()
                info = response.json()
        except (httpx.HTTPError, ValueError) as e:
            return ConnectionOutcome(ok=False, subject=config.host, message=f'Failed to connect to Elasticsearch: {e}')

        version = info.get('version', {}).get('number', 'unknown version')
        cluster = info.get('cluster_name', 'unknown cluster')
        return ConnectionOutcome(
            ok=True, subject=config.host, message=f"Connected to Elasticsearch {version} cluster '{cluster}' at {config.host}."
        )

    # ==========================================================================
    # Validate
    # ==========================================================================

    async def validate(self, artifact: StagedArtifact) -> str:
        layout, count = await asyncio.to_thread(self.inspect, artifact)
        if count == 0:
            raise SnapshotValidationError('snapshot contains no documents')
        logger.debug('Validated %s as %s with %d documents', artifact.descriptor.key, layout, count)
        return layout

    def inspect(self, artifact: StagedArtifact) -> tuple[str, int]:
        """
        Detect the layout and count documents with a full structural pass.

        Raises:
            SnapshotValidationError: If the content is not a document collection
        """
        layout = self._layout(artifact)
        count = sum(1 for _ in self._documents(artifact, layout))
        return layout, count

    def _layout(self, artifact: StagedArtifact) -> str:
        head = formats.read_head(artifact.path)
        if formats.is_tar(head):
            raise SnapshotValidationError(
                'tar archives are repository snapshots; export documents as NDJSON or JSON to restore them here'
            )
        json_layout = formats.sniff_json_layout(artifact.path)
        if json_layout is None:
            raise SnapshotValidationError('not a JSON or NDJSON document collection')
        if json_layout == formats.JsonLayout.NDJSON:
            _, first = next(formats.iter_ndjson(artifact.path))
            if _is_bulk_action(first):
                return 'bulk'
            return 'ndjson'
        if json_layout == formats.JsonLayout.ARRAY:
            return 'json-array'
        return 'search-export'

    def _documents(self, artifact: StagedArtifact, layout: str) -> Iterator[Document]:
        if layout == 'bulk':
            yield from _bulk_documents(formats.iter_ndjson(artifact.path))
        elif layout == 'ndjson':
            for line_number, value in formats.iter_ndjson(artifact.path):
                yield _as_document(value, f'line {line_number}')
        elif layout == 'json-array':
            data = formats.load_json(artifact.path)
            if not isinstance(data, list):
                raise SnapshotValidationError('expected a JSON array of documents')
            for position, value in enumerate(data):
                yield _as_document(value, f'item {position}')
        else:
            data = formats.load_json(artifact.path)
            hits = data.get('hits', {}).get('hits') if isinstance(data, dict) else None
            if not isinstance(hits, list):
                raise SnapshotValidationError('JSON object has no hits.hits list of documents')
            for position, value in enumerate(hits):
                yield _as_document(value, f'hit {position}')

    # ==========================================================================
    # Apply
    # ==========================================================================

    async def apply(self, artifact: StagedArtifact, config: ElasticsearchConfig) -> AsyncIterator[ApplyProgress]:
        layout, total = await asyncio.to_thread(self.inspect, artifact)
        batches = self._batches(artifact, layout)
        done = 0
        try:
            async with self._client(config, APPLY_TIMEOUT_SECONDS) as client:
                await self._ensure_index(client, config.index)
                yield ApplyProgress(done=0, total=total, unit='documents')
                while batch := await asyncio.to_thread(next, batches, None):
                    await self._bulk(client, config.index, batch)
                    done += len(batch)
                    yield ApplyProgress(done=done, total=total, unit='documents')
                response = await client.post(f'/{config.index}/_refresh')
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise ApplyError(f'Elasticsearch request failed after {done} documents: {e}') from e

    def _batches(self, artifact: StagedArtifact, layout: str) -> Iterator[list[Document]]:
        batch: list[Document] = []
        for document in self._documents(artifact, layout):
            batch.append(document)
            if len(batch) >= self.batch_size:
                yield batch
                batch = []
        if batch:
            yield batch

    async def _ensure_index(self, client: httpx.AsyncClient, index: str) -> None:
        response = await client.head(f'/{index}')
        if response.status_code == 200:
            return
        if response.status_code != 404:
            response.raise_for_status()
        logger.info('Creating Elasticsearch index %s', index)
        response = await client.put(f'/{index}')
        if response.status_code == 400 and 'resource_already_exists' in response.text:
            return
        response.raise_for_status()

    async def _bulk(self, client: httpx.AsyncClient, index: str, batch: list[Document]) -> None:
        lines = []
        for document_id, source in batch:
            action: dict[str, Any] = {'_index': index}
            if document_id is not None:
                action['_id'] = document_id
            lines.append(json.dumps({'index': action}))
            lines.append(json.dumps(source))
        body = '\n'.join(lines) + '\n'
        response = await client.post('/_bulk', content=body, headers={'Content-Type': 'application/x-ndjson'})
        response.raise_for_status()
        result = response.json()
        if result.get('errors'):
            failed = [item['index'] for item in result.get('items', []) if 'error' in item.get('index', {})]
            first = failed[0]['error'] if failed else {}
            raise ApplyError(
                f'{len(failed)} of {len(batch)} documents rejected: '
                f'{first.get("type", "error")}: {first.get("reason", "unknown reason")}'
            )

    # ==========================================================================
    # Verify
    # ==========================================================================

    async def verify(self, config: ElasticsearchConfig, applied: ApplyProgress | None) -> str:
        expected = applied.done if applied is not None else 0
        try:
            async with self._client(config, self.timeout) as client:
                response = await client.get(f'/{config.index}/_count')
                response.raise_for_status()
                count = int(response.json()['count'])
        except (httpx.HTTPError, KeyError, ValueError) as e:
            raise VerificationError(f'could not count documents in {config.index}: {e}') from e
        if count < expected:
            raise VerificationError(f'index {config.index} reports {count} documents, expected at least {expected}')
        return f'{count} documents in {config.index}'


def _is_bulk_action(value: Any) -> bool:
    return isinstance(value, dict) and len(value) == 1 and next(iter(value)) in _BULK_ACTIONS | _UNSUPPORTED_BULK_ACTIONS


def _bulk_documents(lines: Iterator[tuple[int, Any]]) -> Iterator[Document]:
    for line_number, action in lines:
        if not _is_bulk_action(action):
            raise SnapshotValidationError(f'line {line_number}: expected a bulk action line')
        action_name, meta = next(iter(action.items()))
        if action_name in _UNSUPPORTED_BULK_ACTIONS:
            raise SnapshotValidationError(f'line {line_number}: bulk action {action_name!r} is not supported')
        try:
            source_line, source = next(lines)
        except StopIteration:
            raise SnapshotValidationError(f'line {line_number}: action has no source line') from None
        if not isinstance(source, dict):
            raise SnapshotValidationError(f'line {source_line}: document source must be a JSON object')
        document_id = meta.get('_id') if isinstance(meta, dict) else None
        yield (str(document_id) if document_id is not None else None), source


def _as_document(value: Any, where: str) -> Document:
    if not isinstance(value, dict):
        raise SnapshotValidationError(f'{where}: document must be a JSON object')
    if '_source' in value:
        source = value['_source']
        if not isinstance(source, dict):
            raise SnapshotValidationError(f'{where}: _source must be a JSON object')
        document_id = value.get('_id')
        return (str(document_id) if document_id is not None else None), source
    return None, value
