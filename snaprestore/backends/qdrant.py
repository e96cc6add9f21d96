"""
Qdrant restore target.

Accepted snapshot formats:
- snapshot: a Qdrant collection snapshot archive (tar), uploaded through the
  snapshot upload endpoint which recreates the collection
- points-json: a JSON vector collection, either a list of points, an object
  with a ``points`` list (also the ``result.points`` of a scroll response), or
  one point per line; every point needs an ``id`` and a ``vector``
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator, Iterable, Iterator
from typing import Any

import httpx

from snaprestore.backends import formats
from snaprestore.backends.protocol import ApplyProgress, StagedArtifact
from snaprestore.exceptions import ApplyError, SnapshotValidationError, VerificationError
from snaprestore.models import ConnectionOutcome, QdrantConfig
from snaprestore.types import RestoreTarget

__all__ = ['QdrantBackend', 'vector_dimensions']

logger = logging.getLogger(__name__)

APPLY_TIMEOUT_SECONDS = 300.0
_HEALTHY_STATUSES = frozenset({'green', 'yellow'})

# Vector name -> dimension; unnamed vectors use the empty name
Dimensions = dict[str, int]


def vector_dimensions(vector: Any, where: str) -> Dimensions:
    """
    Dimensions of a point's vector (plain list or named vectors).

    Raises:
        SnapshotValidationError: If the vector is not a non-empty list of numbers
    """
    if isinstance(vector, dict):
        if not vector:
            raise SnapshotValidationError(f'{where}: named vector map is empty')
        dimensions: Dimensions = {}
        for name, values in vector.items():
            dimensions[name] = _dense_length(values, f'{where} vector {name!r}')
        return dimensions
    return {'': _dense_length(vector, f'{where} vector')}


def _dense_length(values: Any, where: str) -> int:
    if not isinstance(values, list) or not values:
        raise SnapshotValidationError(f'{where} must be a non-empty list of numbers')
    if not all(isinstance(v, int | float) and not isinstance(v, bool) for v in values):
        raise SnapshotValidationError(f'{where} contains non-numeric values')
    return len(values)


def _check_point_id(point_id: Any, where: str) -> None:
    if isinstance(point_id, bool):
        raise SnapshotValidationError(f'{where}: id must be an unsigned integer or a UUID')
    if isinstance(point_id, int):
        if point_id < 0:
            raise SnapshotValidationError(f'{where}: id must be an unsigned integer or a UUID')
        return
    if isinstance(point_id, str):
        try:
            uuid.UUID(point_id)
        except ValueError:
            raise SnapshotValidationError(f'{where}: id {point_id!r} is not a UUID') from None
        return
    raise SnapshotValidationError(f'{where}: id must be an unsigned integer or a UUID')


class QdrantBackend:
    """Vector restore target backed by Qdrant's HTTP API."""

    target = RestoreTarget.VECTOR_STORE

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
            batch_size: Points per upsert request
            transport: Custom httpx transport (tests)
        """
        self.timeout = timeout
        self.batch_size = batch_size
        self._transport = transport

    def _client(self, config: QdrantConfig, timeout: float) -> httpx.AsyncClient:
        headers = {'api-key': config.api_key} if config.api_key else {}
        return httpx.AsyncClient(
            base_url=config.host.rstrip('/'),
            headers=headers,
            timeout=timeout,
            transport=self._transport,
        )

    # ==========================================================================
    # Probe
    # ==========================================================================

    async def test_connection(self, config: QdrantConfig) -> ConnectionOutcome:
        try:
            async with self._client(config, self.timeout) as client:
                response = await client.get('/collections')
                if response.status_code in (401, 403):
                    return ConnectionOutcome(
                        ok=False, subject=config.host, message=f'Qdrant rejected the API key ({response.status_code})'
                    )
                response.raise_for_status()
                collections = response.json()['result']['collections']
        except (httpx.HTTPError, KeyError, ValueError) as e:
            return ConnectionOutcome(ok=False, subject=config.host, message=f'Failed to connect to Qdrant: {e}')

        names = {c.get('name') for c in collections}
        note = 'exists' if config.collection in names else 'will be created'
        key_note = ' with API key' if config.api_key else ''
        return ConnectionOutcome(
            ok=True,
            subject=config.host,
            message=f'Connected to Qdrant at {config.host}{key_note}; collection {config.collection} {note}.',
        )

    # ==========================================================================
    # Validate
    # ==========================================================================

    async def validate(self, artifact: StagedArtifact) -> str:
        snapshot_format, count, _ = await asyncio.to_thread(self.inspect, artifact)
        if snapshot_format == 'points-json' and count == 0:
            raise SnapshotValidationError('vector collection contains no points')
        return snapshot_format

    def inspect(self, artifact: StagedArtifact) -> tuple[str, int, Dimensions]:
        """
        Detect the format; for JSON collections count points and check dimensions.

        Raises:
            SnapshotValidationError: If the content is neither format
        """
        head = formats.read_head(artifact.path)
        if formats.is_tar(head):
            if formats.is_gzip(artifact.path):
                raise SnapshotValidationError('compressed snapshot archives must be decompressed before upload')
            if not formats.tar_members(artifact.path):
                raise SnapshotValidationError('snapshot archive is empty')
            return 'snapshot', 0, {}

        count = 0
        dimensions: Dimensions = {}
        for position, point in enumerate(self._points(artifact)):
            where = f'point {position}'
            _check_point_id(point.get('id'), where)
            if 'vector' not in point:
                raise SnapshotValidationError(f'{where}: missing vector')
            point_dimensions = vector_dimensions(point['vector'], where)
            if not dimensions:
                dimensions = point_dimensions
            elif point_dimensions != dimensions:
                raise SnapshotValidationError(
                    f'{where}: vector dimensions {point_dimensions} differ from the first point {dimensions}'
                )
            payload = point.get('payload')
            if payload is not None and not isinstance(payload, dict):
                raise SnapshotValidationError(f'{where}: payload must be a JSON object')
            count += 1
        return 'points-json', count, dimensions

    def _points(self, artifact: StagedArtifact) -> Iterator[dict[str, Any]]:
        layout = formats.sniff_json_layout(artifact.path)
        if layout is None:
            raise SnapshotValidationError('neither a Qdrant snapshot archive nor a JSON vector collection')
        if layout == formats.JsonLayout.NDJSON:
            values: Iterable[Any] = (value for _, value in formats.iter_ndjson(artifact.path))
        else:
            data = formats.load_json(artifact.path)
            if isinstance(data, dict):
                result = data.get('result')
                data = data['points'] if 'points' in data else (result.get('points') if isinstance(result, dict) else None)
            if not isinstance(data, list):
                raise SnapshotValidationError('JSON vector collection must be a list of points or have a points list')
            values = data
        for position, value in enumerate(values):
            if not isinstance(value, dict):
                raise SnapshotValidationError(f'point {position}: must be a JSON object')
            yield value

    # ==========================================================================
    # Apply
    # ==========================================================================

    async def apply(self, artifact: StagedArtifact, config: QdrantConfig) -> AsyncIterator[ApplyProgress]:
        snapshot_format, total, dimensions = await asyncio.to_thread(self.inspect, artifact)
        try:
            async with self._client(config, APPLY_TIMEOUT_SECONDS) as client:
                if snapshot_format == 'snapshot':
                    async for progress in self._upload_snapshot(client, artifact, config):
                        yield progress
                    return

                await self._ensure_collection(client, config, dimensions)
                done = 0
                yield ApplyProgress(done=0, total=total, unit='points')
                batches = self._batches(artifact)
                while batch := await asyncio.to_thread(next, batches, None):
                    response = await client.put(
                        f'/collections/{config.collection}/points', params={'wait': 'true'}, json={'points': batch}
                    )
                    response.raise_for_status()
                    done += len(batch)
                    yield ApplyProgress(done=done, total=total, unit='points')
        except httpx.HTTPStatusError as e:
            raise ApplyError(f'Qdrant rejected the request: {e.response.status_code} {e.response.text[:200]}') from e
        except httpx.HTTPError as e:
            raise ApplyError(f'Qdrant request failed: {e}') from e

    async def _upload_snapshot(
        self, client: httpx.AsyncClient, artifact: StagedArtifact, config: QdrantConfig
    ) -> AsyncIterator[ApplyProgress]:
        size = artifact.size
        yield ApplyProgress(done=0, total=size, unit='bytes')
        logger.info('Uploading snapshot %s to collection %s', artifact.descriptor.key, config.collection)
        with artifact.path.open('rb') as handle:
            response = await client.post(
                f'/collections/{config.collection}/snapshots/upload',
                params={'priority': 'snapshot', 'wait': 'true'},
                files={'snapshot': (artifact.descriptor.name, handle, 'application/octet-stream')},
            )
        response.raise_for_status()
        yield ApplyProgress(done=size, total=size, unit='bytes')

    async def _ensure_collection(self, client: httpx.AsyncClient, config: QdrantConfig, dimensions: Dimensions) -> None:
        response = await client.get(f'/collections/{config.collection}')
        if response.status_code == 200:
            return
        if response.status_code != 404:
            response.raise_for_status()
        if set(dimensions) == {''}:
            vectors: dict[str, Any] = {'size': dimensions[''], 'distance': config.distance}
        else:
            vectors = {name: {'size': size, 'distance': config.distance} for name, size in dimensions.items()}
        logger.info('Creating Qdrant collection %s (%s)', config.collection, vectors)
        response = await client.put(f'/collections/{config.collection}', json={'vectors': vectors})
        response.raise_for_status()

    def _batches(self, artifact: StagedArtifact) -> Iterator[list[dict[str, Any]]]:
        batch: list[dict[str, Any]] = []
        for point in self._points(artifact):
            batch.append({key: point[key] for key in ('id', 'vector', 'payload') if key in point})
            if len(batch) >= self.batch_size:
                yield batch
                batch = []
        if batch:
            yield batch

    # ==========================================================================
    # Verify
    # ==========================================================================

    async def verify(self, config: QdrantConfig, applied: ApplyProgress | None) -> str:
        try:
            async with self._client(config, self.timeout) as client:
                if applied is not None and applied.unit == 'points':
                    response = await client.post(
                        f'/collections/{config.collection}/points/count', json={'exact': True}
                    )
                    response.raise_for_status()
                    count = int(response.json()['result']['count'])
                    if count < applied.done:
                        raise VerificationError(
                            f'collection {config.collection} reports {count} points, expected at least {applied.done}'
                        )
                    return f'{count} points in {config.collection}'

                response = await client.get(f'/collections/{config.collection}')
                response.raise_for_status()
                info = response.json()['result']
        except (httpx.HTTPError, KeyError, ValueError, TypeError) as e:
            raise VerificationError(f'could not inspect collection {config.collection}: {e}') from e

        status = info.get('status')
        if status not in _HEALTHY_STATUSES:
            raise VerificationError(f'collection {config.collection} status is {status!r}')
        return f'collection {config.collection} is {status} with {info.get("points_count", 0)} points'
