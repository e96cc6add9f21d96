"""
Base configuration for snaprestore.

Settings are read from the environment (and an optional .env file) and turned
into the initial Target Configuration Set handed to the session.
"""

from __future__ import annotations

import os
import pathlib
from collections.abc import Mapping
from typing import Any, TypeVar

import lazy_object_proxy
import pydantic
import pydantic_settings

from snaprestore.models import (
    BackendConfig,
    ElasticsearchConfig,
    ObjectStoreConfig,
    PostgresConfig,
    QdrantConfig,
    QdrantDistance,
)
from snaprestore.types import RestoreTarget

T = TypeVar('T', bound='RestoreSettings')


class RestoreSettings(pydantic_settings.BaseSettings):
    """Configuration for the object store, each restore target and the runtime."""

    model_config = pydantic_settings.SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        case_sensitive=True,  # Fail fast on misconfiguration
        extra='forbid',  # Reject unknown keys in the .env file
    )

    # Object store
    S3_BUCKET: str = ''
    S3_REGION: str = 'us-west-2'
    S3_PREFIX: str = 'backups/'
    S3_ENDPOINT_URL: str = ''
    S3_ACCESS_KEY_ID: str = ''
    S3_SECRET_ACCESS_KEY: str = ''
    S3_PATH_STYLE: bool = True
    S3_LOCAL_DIR: str = ''

    # Relational target
    PG_HOST: str = 'localhost'
    PG_PORT: int | None = 5432
    PG_USERNAME: str = 'postgres'
    PG_PASSWORD: str = ''
    PG_USE_SSL: bool = False
    PG_DB_NAME: str = 'postgres'

    # Document-search target
    ES_HOST: str = ''
    ES_INDEX: str = ''
    ES_USERNAME: str = ''
    ES_PASSWORD: str = ''

    # Vector target
    QDRANT_HOST: str = ''
    QDRANT_COLLECTION: str = ''
    QDRANT_API_KEY: str = ''
    QDRANT_DISTANCE: QdrantDistance = 'Cosine'

    # Runtime
    RESTORE_TARGET: RestoreTarget = RestoreTarget.RELATIONAL
    STAGING_DIR: pathlib.Path | None = None
    LOG_FILE: pathlib.Path = pathlib.Path.home() / '.snaprestore' / 'snaprestore.log'
    PROBE_TIMEOUT_SECONDS: float = 5.0
    TRANSFER_CHUNK_SIZE: int = 64 * 1024
    APPLY_BATCH_SIZE: int = 500

    @pydantic.field_validator('PROBE_TIMEOUT_SECONDS', 'TRANSFER_CHUNK_SIZE', 'APPLY_BATCH_SIZE')
    @classmethod
    def validate_positive(cls, v: float, info: pydantic.ValidationInfo) -> float:
        """Runtime bounds must be positive."""
        if v <= 0:
            raise ValueError(f'{info.field_name} must be greater than 0')
        return v

    def with_overrides(self, overrides: Mapping[str, Any]) -> RestoreSettings:
        """Apply CLI flag values on top of the environment; None means 'not given'."""
        given = {name: value for name, value in overrides.items() if value is not None}
        if not given:
            return self
        return type(self).model_validate(self.model_dump() | given)

    def object_store_config(self) -> ObjectStoreConfig:
        return ObjectStoreConfig(
            bucket=self.S3_BUCKET,
            region=self.S3_REGION,
            prefix=self.S3_PREFIX,
            endpoint_url=self.S3_ENDPOINT_URL,
            access_key_id=self.S3_ACCESS_KEY_ID,
            secret_access_key=self.S3_SECRET_ACCESS_KEY,
            path_style=self.S3_PATH_STYLE,
            local_dir=self.S3_LOCAL_DIR,
        )

    def backend_configs(self) -> dict[RestoreTarget, BackendConfig]:
        """Initial configuration for every target; the session instantiates them lazily."""
        return {
            RestoreTarget.RELATIONAL: PostgresConfig(
                host=self.PG_HOST,
                port=self.PG_PORT,
                username=self.PG_USERNAME,
                password=self.PG_PASSWORD,
                use_ssl=self.PG_USE_SSL,
                db_name=self.PG_DB_NAME,
            ),
            RestoreTarget.DOCUMENT_SEARCH: ElasticsearchConfig(
                host=self.ES_HOST,
                index=self.ES_INDEX,
                username=self.ES_USERNAME,
                password=self.ES_PASSWORD,
            ),
            RestoreTarget.VECTOR_STORE: QdrantConfig(
                host=self.QDRANT_HOST,
                collection=self.QDRANT_COLLECTION,
                api_key=self.QDRANT_API_KEY,
                distance=self.QDRANT_DISTANCE,
            ),
        }


def get_settings(settings_class: type[T] = RestoreSettings, env_file: str | None = None) -> T:
    """
    Factory for creating settings with dynamic .env file loading.

    DOTENV_PATH environment variable specifies a custom .env file path.
    When unset, the default .env (if present) and the environment are used.

    Args:
        settings_class: Settings class to instantiate
        env_file: Optional path to .env file (overrides DOTENV_PATH)

    Returns:
        Settings instance

    Raises:
        FileNotFoundError: If specified .env file doesn't exist
        pydantic.ValidationError: If a value has the wrong type or is out of bounds
    """
    env_file_path = env_file or os.getenv('DOTENV_PATH')

    if not env_file_path:
        return settings_class()

    resolved_path = pathlib.Path(env_file_path).resolve()
    if not resolved_path.exists():
        raise FileNotFoundError(f'Environment file not found: {resolved_path}')

    return settings_class(_env_file=resolved_path)


def lazy_settings(settings_class: type[T]) -> T:
    """
    Lazy settings - defers instantiation until first access.

    Args:
        settings_class: Settings class to instantiate

    Returns:
        Proxy that instantiates settings on first access
    """
    return lazy_object_proxy.Proxy(lambda: get_settings(settings_class))


# Module-level singleton (lazy-loaded)
settings = lazy_settings(RestoreSettings)
