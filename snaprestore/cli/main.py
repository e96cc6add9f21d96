#!/usr/bin/env python3
"""
Command-line interface for snaprestore.

Global options override environment variables (and the .env file); they go
before the command:

    snaprestore --bucket backups --target vector_store browse
    snaprestore --local-dir ./snapshots restore dumps/app.dump --yes
"""

from __future__ import annotations

import asyncio
import signal
import traceback
from pathlib import Path

import pydantic
import typer

from snaprestore.backends import create_backend
from snaprestore.cli.logger import CLILogger, configure_logging
from snaprestore.config import RestoreSettings, get_settings
from snaprestore.exceptions import ConfigInvalidError, SnapRestoreError
from snaprestore.models import BackendConfig, ObjectStoreConfig, SnapshotDescriptor
from snaprestore.services.orchestrator import CancelDisposition, RestoreOrchestrator
from snaprestore.session.catalog import SnapshotCatalog
from snaprestore.session.controller import SessionController
from snaprestore.session.events import PhaseStarted, PipelineEvent, ProgressEvent, RunFinished
from snaprestore.session.targets import TargetConfigurationSet
from snaprestore.storage import ObjectStore, create_object_store
from snaprestore.tui.app import SnapRestoreApp
from snaprestore.tui.render import format_bytes, format_progress
from snaprestore.types import RestoreTarget

app = typer.Typer(
    name='snaprestore',
    help='Browse backup snapshots in an object store and restore them into PostgreSQL, Elasticsearch or Qdrant',
    add_completion=False,
)


def _settings(ctx: typer.Context) -> RestoreSettings:
    settings = ctx.obj
    assert isinstance(settings, RestoreSettings)
    return settings


@app.callback(invoke_without_command=True)
def configure(
    ctx: typer.Context,
    env_file: Path | None = typer.Option(None, '--env-file', help='Alternative .env file (or DOTENV_PATH env)'),
    bucket: str | None = typer.Option(None, '--bucket', help='S3 bucket [S3_BUCKET]'),
    region: str | None = typer.Option(None, '--region', help='S3 region [S3_REGION]'),
    prefix: str | None = typer.Option(None, '--prefix', help='Key prefix of snapshots [S3_PREFIX]'),
    endpoint_url: str | None = typer.Option(None, '--endpoint-url', help='S3-compatible endpoint [S3_ENDPOINT_URL]'),
    access_key_id: str | None = typer.Option(None, '--access-key-id', help='[S3_ACCESS_KEY_ID]'),
    secret_access_key: str | None = typer.Option(None, '--secret-access-key', help='[S3_SECRET_ACCESS_KEY]'),
    path_style: bool | None = typer.Option(
        None, '--path-style/--virtual-host-style', help='S3 addressing style [S3_PATH_STYLE]'
    ),
    local_dir: str | None = typer.Option(None, '--local-dir', help='Read snapshots from a directory [S3_LOCAL_DIR]'),
    pg_host: str | None = typer.Option(None, '--pg-host', help='[PG_HOST]'),
    pg_port: int | None = typer.Option(None, '--pg-port', help='[PG_PORT]'),
    pg_username: str | None = typer.Option(None, '--pg-username', help='[PG_USERNAME]'),
    pg_password: str | None = typer.Option(None, '--pg-password', help='[PG_PASSWORD]'),
    pg_ssl: bool | None = typer.Option(None, '--pg-ssl/--no-pg-ssl', help='[PG_USE_SSL]'),
    pg_db_name: str | None = typer.Option(None, '--pg-db-name', help='[PG_DB_NAME]'),
    es_host: str | None = typer.Option(None, '--es-host', help='[ES_HOST]'),
    es_index: str | None = typer.Option(None, '--es-index', help='[ES_INDEX]'),
    es_username: str | None = typer.Option(None, '--es-username', help='[ES_USERNAME]'),
    es_password: str | None = typer.Option(None, '--es-password', help='[ES_PASSWORD]'),
    qdrant_host: str | None = typer.Option(None, '--qdrant-host', help='[QDRANT_HOST]'),
    qdrant_collection: str | None = typer.Option(None, '--qdrant-collection', help='[QDRANT_COLLECTION]'),
    qdrant_api_key: str | None = typer.Option(None, '--qdrant-api-key', help='[QDRANT_API_KEY]'),
    qdrant_distance: str | None = typer.Option(
        None, '--qdrant-distance', help='Cosine, Euclid, Dot or Manhattan [QDRANT_DISTANCE]'
    ),
    target: RestoreTarget | None = typer.Option(None, '--target', help='Restore target [RESTORE_TARGET]'),
    staging_dir: Path | None = typer.Option(None, '--staging-dir', help='Staging directory [STAGING_DIR]'),
    log_file: Path | None = typer.Option(None, '--log-file', help='Log file [LOG_FILE]'),
    timeout: float | None = typer.Option(None, '--timeout', help='Probe timeout in seconds [PROBE_TIMEOUT_SECONDS]'),
    verbose: bool = typer.Option(False, '--verbose', '-v', help='Debug logging and verbose output'),
) -> None:
    """Load configuration; invalid configuration exits before any command runs. Without a command, browse."""
    overrides = {
        'S3_BUCKET': bucket,
        'S3_REGION': region,
        'S3_PREFIX': prefix,
        'S3_ENDPOINT_URL': endpoint_url,
        'S3_ACCESS_KEY_ID': access_key_id,
        'S3_SECRET_ACCESS_KEY': secret_access_key,
        'S3_PATH_STYLE': path_style,
        'S3_LOCAL_DIR': local_dir,
        'PG_HOST': pg_host,
        'PG_PORT': pg_port,
        'PG_USERNAME': pg_username,
        'PG_PASSWORD': pg_password,
        'PG_USE_SSL': pg_ssl,
        'PG_DB_NAME': pg_db_name,
        'ES_HOST': es_host,
        'ES_INDEX': es_index,
        'ES_USERNAME': es_username,
        'ES_PASSWORD': es_password,
        'QDRANT_HOST': qdrant_host,
        'QDRANT_COLLECTION': qdrant_collection,
        'QDRANT_API_KEY': qdrant_api_key,
        'QDRANT_DISTANCE': qdrant_distance,
        'RESTORE_TARGET': target,
        'STAGING_DIR': staging_dir,
        'LOG_FILE': log_file,
        'PROBE_TIMEOUT_SECONDS': timeout,
    }
    try:
        settings = get_settings(env_file=str(env_file) if env_file else None).with_overrides(overrides)
        configure_logging(settings.LOG_FILE, verbose=verbose)
    except (FileNotFoundError, pydantic.ValidationError, OSError) as e:
        typer.secho(f'Error: invalid configuration: {e}', fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    ctx.obj = settings
    ctx.meta['verbose'] = verbose
    if ctx.invoked_subcommand is None:
        browse(ctx)


# ==============================================================================
# Commands
# ==============================================================================


@app.command()
def browse(ctx: typer.Context) -> None:
    """Open the interactive browser (default workflow)."""
    settings = _settings(ctx)
    source = settings.object_store_config()
    try:
        store = create_object_store(source, timeout=settings.PROBE_TIMEOUT_SECONDS)
    except (SnapRestoreError, ValueError) as e:
        typer.secho(f'Error: {e}', fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    session = SessionController(
        targets=TargetConfigurationSet(source, settings.backend_configs(), settings.RESTORE_TARGET),
        orchestrator=RestoreOrchestrator(store, settings.STAGING_DIR, settings.TRANSFER_CHUNK_SIZE),
        backend_factory=lambda target: create_backend(target, settings.PROBE_TIMEOUT_SECONDS, settings.APPLY_BATCH_SIZE),
        store_factory=lambda config: create_object_store(config, timeout=settings.PROBE_TIMEOUT_SECONDS),
        probe_timeout=settings.PROBE_TIMEOUT_SECONDS,
    )
    SnapRestoreApp(session).run()


@app.command('list')
def list_snapshots(ctx: typer.Context) -> None:
    """Print the snapshot catalog, newest first."""
    asyncio.run(_list_async(_settings(ctx), ctx.meta['verbose']))


@app.command()
def test(ctx: typer.Context) -> None:
    """Test the object store and restore target connections."""
    asyncio.run(_test_async(_settings(ctx), ctx.meta['verbose']))


@app.command()
def restore(
    ctx: typer.Context,
    key: str = typer.Argument(..., help='Remote key of the snapshot to restore'),
    yes: bool = typer.Option(False, '--yes', '-y', help='Do not ask for confirmation'),
) -> None:
    """Restore one snapshot into the selected target. Ctrl-C requests cancellation."""
    settings = _settings(ctx)
    target = settings.RESTORE_TARGET
    if not yes:
        typer.confirm(f'Restore {key} into {target.label}? Existing data may be overwritten', abort=True)
    asyncio.run(_restore_async(settings, key, ctx.meta['verbose']))


# ==============================================================================
# Implementations
# ==============================================================================


def _open_store(config: ObjectStoreConfig, settings: RestoreSettings) -> ObjectStore:
    config.verify_settings()
    return create_object_store(config, timeout=settings.PROBE_TIMEOUT_SECONDS)


async def _list_async(settings: RestoreSettings, verbose: bool) -> None:
    """Async implementation of list command."""
    logger = CLILogger(verbose=verbose)
    config = settings.object_store_config()
    try:
        store = _open_store(config, settings)
        await logger.info(f'Listing {store.location} under {config.prefix!r}')
        catalog = SnapshotCatalog()
        catalog.load(await store.list_snapshots(config.prefix), config.prefix)
    except (SnapRestoreError, ValueError) as e:
        typer.secho(f'Error: {e}', fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    if catalog.is_empty:
        typer.echo(f'No snapshots under {config.prefix or "/"}')
        return
    width = max(len(d.key) for d in catalog.items)
    for descriptor in catalog.items:
        modified = descriptor.last_modified.strftime('%Y-%m-%d %H:%M:%S')
        typer.echo(f'{descriptor.key:<{width}}  {format_bytes(descriptor.size):>10}  {modified}')
    typer.echo(f'\n{len(catalog)} snapshot(s)')


async def _test_async(settings: RestoreSettings, verbose: bool) -> None:
    """Async implementation of test command."""
    logger = CLILogger(verbose=verbose)
    failures = 0

    source = settings.object_store_config()
    try:
        store = _open_store(source, settings)
        listed = await asyncio.wait_for(store.list_snapshots(source.prefix), settings.PROBE_TIMEOUT_SECONDS)
        typer.secho(f'✓ Object store {store.location}: {len(listed)} objects', fg=typer.colors.GREEN)
    except (SnapRestoreError, ValueError, TimeoutError) as e:
        failures += 1
        typer.secho(f'✗ Object store: {str(e) or "timed out"}', fg=typer.colors.RED)

    target = settings.RESTORE_TARGET
    config = settings.backend_configs()[target]
    try:
        config.verify_settings()
    except ConfigInvalidError as e:
        failures += 1
        typer.secho(f'✗ {target.label}: {e}', fg=typer.colors.RED)
    else:
        await logger.info(f'Probing {target.label}')
        outcome = await create_backend(target, settings.PROBE_TIMEOUT_SECONDS).test_connection(config)
        if outcome.ok:
            typer.secho(f'✓ {outcome.message}', fg=typer.colors.GREEN)
        else:
            failures += 1
            typer.secho(f'✗ {target.label}: {outcome.message}', fg=typer.colors.RED)

    if failures:
        raise typer.Exit(1)


async def _find_snapshot(store: ObjectStore, key: str) -> SnapshotDescriptor | None:
    for descriptor in await store.list_snapshots(key):
        if descriptor.key == key:
            return descriptor
    return None


async def _restore_async(settings: RestoreSettings, key: str, verbose: bool) -> None:
    """Async implementation of restore command."""
    logger = CLILogger(verbose=verbose)
    target = settings.RESTORE_TARGET
    config: BackendConfig = settings.backend_configs()[target]

    try:
        config.verify_settings()
        store = _open_store(settings.object_store_config(), settings)
        descriptor = await _find_snapshot(store, key)
    except (SnapRestoreError, ValueError) as e:
        typer.secho(f'Error: {e}', fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    if descriptor is None:
        typer.secho(f'Error: snapshot not found: {key}', fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    orchestrator = RestoreOrchestrator(store, settings.STAGING_DIR, settings.TRANSFER_CHUNK_SIZE)
    backend = create_backend(target, settings.PROBE_TIMEOUT_SECONDS, settings.APPLY_BATCH_SIZE)
    run = orchestrator.start(descriptor, backend, config)

    def on_interrupt() -> None:
        disposition = run.cancel()
        message = {
            CancelDisposition.PREEMPTED: 'Cancelling; nothing will be written.',
            CancelDisposition.DEFERRED: 'Cancel requested late: writes in progress will finish, verification is skipped.',
            CancelDisposition.TOO_LATE: 'Restore is already verifying; cancel has no effect.',
        }[disposition]
        typer.secho(f'\n{message}', fg=typer.colors.YELLOW, err=True)

    def emit(event: PipelineEvent) -> None:
        match event:
            case PhaseStarted(phase=phase):
                typer.echo(f'\n[{phase}]', nl=False)
            case ProgressEvent(progress=progress):
                typer.echo(f'\r[{event.phase}] {format_progress(progress)}', nl=False)
            case RunFinished():
                typer.echo()

    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, on_interrupt)
    try:
        await logger.info(f'Restoring {descriptor.key} ({format_bytes(descriptor.size)}) into {target.label}')
        outcome = await run.execute(emit)
    except Exception as e:
        await logger.error(f'Restore crashed: {e}')
        if verbose:
            traceback.print_exc()
        raise typer.Exit(1)
    finally:
        loop.remove_signal_handler(signal.SIGINT)

    if outcome.ok:
        typer.secho(f'✓ {outcome.message}', fg=typer.colors.GREEN)
    else:
        typer.secho(f'✗ {outcome.message}', fg=typer.colors.RED, err=True)
        raise typer.Exit(1)


def main() -> None:
    """Entry point for CLI."""
    app()


if __name__ == '__main__':
    main()
