"""
PostgreSQL restore target.

Accepts pg_dump custom and tar archives (applied with pg_restore) and plain
SQL dumps (applied with psql). Connection checks, database creation and
verification go through asyncpg; the dump itself is replayed by the
PostgreSQL client tools, streamed line by line for progress.
"""

from __future__ import annotations

import asyncio
import collections
import logging
import os
import re
import shutil
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from typing import Any

import asyncpg

from snaprestore.backends import formats
from snaprestore.backends.protocol import ApplyProgress, StagedArtifact
from snaprestore.exceptions import ApplyError, SnapshotValidationError, VerificationError
from snaprestore.models import ConnectionOutcome, PostgresConfig
from snaprestore.types import RestoreTarget

__all__ = ['PostgresBackend', 'quote_ident']

logger = logging.getLogger(__name__)

CUSTOM_DUMP_MAGIC = b'PGDMP'
MAINTENANCE_DB = 'postgres'
_SQL_KEYWORDS = re.compile(r'\b(CREATE|INSERT|COPY|SET|ALTER|BEGIN|SELECT|DROP|COMMENT)\b', re.IGNORECASE)
_ERROR_TAIL_LINES = 20

Connect = Callable[..., Awaitable[Any]]
_CONNECTION_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)


def quote_ident(name: str) -> str:
    """Quote an SQL identifier (double quotes, embedded quotes doubled)."""
    return '"' + name.replace('"', '""') + '"'


class PostgresBackend:
    """Relational restore target backed by PostgreSQL."""

    target = RestoreTarget.RELATIONAL

    # Dump format -> client program that replays it
    PROGRAMS = {'custom': 'pg_restore', 'tar': 'pg_restore', 'plain': 'psql'}

    def __init__(self, timeout: float = 5.0, connect: Connect = asyncpg.connect) -> None:
        """
        Initialize the adapter.

        Args:
            timeout: Connect and query timeout for probes and verification, in seconds
            connect: asyncpg-compatible connect function (injectable for tests)
        """
        self.timeout = timeout
        self._connect = connect

    # ==========================================================================
    # Probe
    # ==========================================================================

    async def test_connection(self, config: PostgresConfig) -> ConnectionOutcome:
        subject = f'{config.host}:{config.port}'
        database_missing = False
        try:
            conn = await self._open(config, config.db_name)
        except asyncpg.InvalidCatalogNameError:
            # Database missing is fine: apply creates it
            database_missing = True
            try:
                conn = await self._open(config, MAINTENANCE_DB)
            except _CONNECTION_ERRORS as e:
                return ConnectionOutcome(ok=False, subject=subject, message=f'Failed to connect to PostgreSQL: {e}')
        except _CONNECTION_ERRORS as e:
            return ConnectionOutcome(ok=False, subject=subject, message=f'Failed to connect to PostgreSQL: {e}')

        try:
            version = await conn.fetchval('SHOW server_version', timeout=self.timeout)
        except _CONNECTION_ERRORS as e:
            return ConnectionOutcome(ok=False, subject=subject, message=f'Connected but query failed: {e}')
        finally:
            await conn.close()
        if database_missing:
            return ConnectionOutcome(
                ok=True,
                subject=subject,
                message=f'Connected to PostgreSQL {version} at {subject}; database {config.db_name} will be created.',
            )
        return ConnectionOutcome(
            ok=True, subject=subject, message=f'Connected to PostgreSQL {version} at {subject}/{config.db_name}.'
        )

    # ==========================================================================
    # Validate
    # ==========================================================================

    async def validate(self, artifact: StagedArtifact) -> str:
        dump_format = await asyncio.to_thread(self.detect_format, artifact)
        program = self.PROGRAMS[dump_format]
        if shutil.which(program) is None:
            raise SnapshotValidationError(
                f'{program} is required to restore {dump_format} dumps but was not found on PATH'
            )
        return dump_format

    @staticmethod
    def detect_format(artifact: StagedArtifact) -> str:
        """
        Classify a dump as 'custom', 'tar' or 'plain'.

        Raises:
            SnapshotValidationError: If the file is none of them
        """
        with artifact.path.open('rb') as handle:
            head = handle.read(formats.HEAD_SIZE)
        if not head:
            raise SnapshotValidationError('file is empty')
        if head.startswith(CUSTOM_DUMP_MAGIC):
            return 'custom'
        if formats.is_tar(head):
            if 'toc.dat' not in formats.tar_members(artifact.path):
                raise SnapshotValidationError('tar archive is not a pg_dump archive (no toc.dat)')
            return 'tar'
        if head.startswith(formats.GZIP_MAGIC):
            raise SnapshotValidationError('compressed SQL dumps are not supported; decompress before uploading')
        try:
            text = head.decode('utf-8', errors='strict')
        except UnicodeDecodeError:
            # Cut may have split a multi-byte character at the end of the head
            try:
                text = head[:-3].decode('utf-8')
            except UnicodeDecodeError:
                raise SnapshotValidationError('binary file is neither a pg_dump archive nor SQL text') from None
        if not _SQL_KEYWORDS.search(text):
            raise SnapshotValidationError('text file does not look like an SQL dump')
        return 'plain'

    # ==========================================================================
    # Apply
    # ==========================================================================

    async def apply(self, artifact: StagedArtifact, config: PostgresConfig) -> AsyncIterator[ApplyProgress]:
        dump_format = await asyncio.to_thread(self.detect_format, artifact)
        await self._ensure_database(config)

        env = os.environ | {
            'PGPASSWORD': config.password,
            'PGSSLMODE': 'require' if config.use_ssl else 'disable',
        }
        connection_args = ['--host', config.host, '--port', str(config.port), '--dbname', config.db_name]
        if config.username:
            connection_args += ['--username', config.username]

        if dump_format == 'plain':
            args = ['psql', *connection_args, '--no-password', '-v', 'ON_ERROR_STOP=1', '--file', str(artifact.path)]
            unit, progress_stream = 'statements', 'stdout'
        else:
            args = [
                'pg_restore',
                *connection_args,
                '--no-password',
                '--no-owner',
                '--clean',
                '--if-exists',
                '--verbose',
                str(artifact.path),
            ]
            unit, progress_stream = 'objects', 'stderr'

        logger.info('Replaying %s dump with %s into %s', dump_format, args[0], config.db_name)
        async for done in self._run_tool(args, env, progress_stream):
            yield ApplyProgress(done=done, total=None, unit=unit)

    async def _ensure_database(self, config: PostgresConfig) -> None:
        try:
            conn = await self._open(config, MAINTENANCE_DB)
        except _CONNECTION_ERRORS as e:
            raise ApplyError(f'Cannot connect to PostgreSQL at {config.host}:{config.port}: {e}') from e
        try:
            exists = await conn.fetchval('SELECT 1 FROM pg_database WHERE datname = $1', config.db_name)
            if not exists:
                logger.info('Creating database %s', config.db_name)
                await conn.execute(f'CREATE DATABASE {quote_ident(config.db_name)}')
        except _CONNECTION_ERRORS as e:
            raise ApplyError(f'Cannot create database {config.db_name}: {e}') from e
        finally:
            await conn.close()

    async def _run_tool(self, args: Sequence[str], env: dict[str, str], progress_stream: str) -> AsyncIterator[int]:
        """Run a client tool, yielding the running count of progress lines."""
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except OSError as e:
            raise ApplyError(f'Failed to start {args[0]}: {e}') from e

        assert process.stdout is not None and process.stderr is not None
        if progress_stream == 'stdout':
            progress, other = process.stdout, process.stderr
        else:
            progress, other = process.stderr, process.stdout
        other_output = asyncio.create_task(other.read())
        tail: collections.deque[str] = collections.deque(maxlen=_ERROR_TAIL_LINES)

        count = 0
        try:
            async for raw_line in progress:
                line = raw_line.decode('utf-8', errors='replace').rstrip()
                if not line:
                    continue
                tail.append(line)
                count += 1
                yield count
            returncode = await process.wait()
            other_text = (await other_output).decode('utf-8', errors='replace')
        finally:
            if process.returncode is None:
                # Consumer went away mid-restore (task torn down); never leave the tool orphaned
                process.kill()
                await process.wait()
            other_output.cancel()

        if returncode != 0:
            details = '\n'.join(list(tail) + other_text.strip().splitlines()[-_ERROR_TAIL_LINES:])
            errors = [line for line in details.splitlines() if 'error' in line.lower()]
            summary = errors[-1] if errors else (details.splitlines()[-1] if details else 'no output')
            logger.error('%s exited with status %s:\n%s', args[0], returncode, details)
            raise ApplyError(f'{args[0]} exited with status {returncode}: {summary}')

    # ==========================================================================
    # Verify
    # ==========================================================================

    async def verify(self, config: PostgresConfig, applied: ApplyProgress | None) -> str:
        try:
            conn = await self._open(config, config.db_name)
        except _CONNECTION_ERRORS as e:
            raise VerificationError(f'database {config.db_name} is not reachable: {e}') from e
        try:
            tables = await conn.fetchval(
                'SELECT count(*) FROM information_schema.tables '
                "WHERE table_schema NOT IN ('pg_catalog', 'information_schema')",
                timeout=self.timeout,
            )
        except _CONNECTION_ERRORS as e:
            raise VerificationError(f'could not inspect database {config.db_name}: {e}') from e
        finally:
            await conn.close()
        if not tables:
            raise VerificationError(f'database {config.db_name} contains no user tables')
        return f'{tables} tables present in {config.db_name}'

    async def _open(self, config: PostgresConfig, database: str) -> Any:
        return await self._connect(
            host=config.host,
            port=config.port,
            user=config.username or None,
            password=config.password or None,
            database=database,
            ssl='require' if config.use_ssl else 'disable',
            timeout=self.timeout,
        )
