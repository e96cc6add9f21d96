"""
S3 object store.

boto3 is synchronous, so every call runs in a worker thread to keep the
event loop (and the UI) responsive.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Sequence
from typing import Any

import boto3
import botocore.config
import botocore.exceptions

from snaprestore.exceptions import CatalogLoadError, ConnectivityError
from snaprestore.models import ObjectStoreConfig, SnapshotDescriptor
from snaprestore.storage.protocol import DEFAULT_CHUNK_SIZE

_BOTO_ERRORS = (botocore.exceptions.BotoCoreError, botocore.exceptions.ClientError)


class S3ObjectStore:
    """S3 (or S3-compatible) object store."""

    def __init__(self, config: ObjectStoreConfig, timeout: float = 5.0, client: Any | None = None) -> None:
        """
        Initialize S3 store.

        Args:
            config: Object store connection parameters
            timeout: Connect timeout in seconds
            client: Pre-built boto3 S3 client (tests); built from config when omitted

        Raises:
            ConnectivityError: If boto3 rejects the client parameters (e.g. malformed endpoint)
        """
        self.bucket = config.bucket
        if client is None:
            try:
                client = self._build_client(config, timeout)
            except (*_BOTO_ERRORS, ValueError) as e:
                raise ConnectivityError(f'Cannot create S3 client: {e}') from e
        self._client = client

    @staticmethod
    def _build_client(config: ObjectStoreConfig, timeout: float) -> Any:
        session = boto3.session.Session(
            aws_access_key_id=config.access_key_id or None,
            aws_secret_access_key=config.secret_access_key or None,
            region_name=config.region or None,
        )
        return session.client(
            's3',
            endpoint_url=config.endpoint_url or None,
            config=botocore.config.Config(
                s3={'addressing_style': 'path' if config.path_style else 'auto'},
                connect_timeout=timeout,
                retries={'max_attempts': 2},
            ),
        )

    @property
    def location(self) -> str:
        return f's3://{self.bucket}'

    async def list_snapshots(self, prefix: str) -> Sequence[SnapshotDescriptor]:
        return await asyncio.to_thread(self._list_sync, prefix)

    def _list_sync(self, prefix: str) -> list[SnapshotDescriptor]:
        descriptors = []
        try:
            paginator = self._client.get_paginator('list_objects_v2')
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for obj in page.get('Contents', []):
                    descriptors.append(
                        SnapshotDescriptor(
                            key=obj['Key'],
                            size=int(obj.get('Size', 0)),
                            last_modified=obj['LastModified'],
                        )
                    )
        except _BOTO_ERRORS as e:
            raise CatalogLoadError(f'Failed to list objects in {self.location}/{prefix}: {e}') from e
        return descriptors

    async def fetch(self, key: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> AsyncGenerator[bytes, None]:
        try:
            response = await asyncio.to_thread(self._client.get_object, Bucket=self.bucket, Key=key)
        except _BOTO_ERRORS as e:
            raise ConnectivityError(f'Failed to download {self.location}/{key}: {e}') from e

        body = response['Body']
        try:
            while True:
                try:
                    chunk = await asyncio.to_thread(body.read, chunk_size)
                except _BOTO_ERRORS as e:
                    raise ConnectivityError(f'Error reading {self.location}/{key}: {e}') from e
                if not chunk:
                    break
                yield chunk
        finally:
            body.close()
