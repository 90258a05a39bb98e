"""
PostgreSQL operations for vote aggregation.

ResultStore serializes concurrent updates of one election's result through
SERIALIZABLE transactions with row locks, retrying serialization failures.
CandidateRegistry is the read-only roster lookup used for zero-fill.
"""
import asyncio
import json
import logging
from typing import Optional, Set, Callable, Awaitable

import asyncpg

from ..shared.exceptions import TransientStoreError, RosterUnavailable
from ..shared.models import ElectionResult
from .config import config

logger = logging.getLogger(__name__)

# Errors worth retrying: another transaction touched the same rows
RETRYABLE_ERRORS = (
    asyncpg.exceptions.SerializationError,
    asyncpg.exceptions.DeadlockDetectedError,
)

# Errors meaning the store itself is unavailable
CONNECTION_ERRORS = (
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.InterfaceError,
    ConnectionError,
    OSError,
)


async def init_connection(conn: asyncpg.Connection):
    """Decode and encode JSONB columns as Python objects."""
    await conn.set_type_codec(
        'jsonb',
        encoder=json.dumps,
        decoder=json.loads,
        schema='pg_catalog'
    )


class Database:
    """Async PostgreSQL connection pool."""

    def __init__(self, dsn: str = None):
        self.dsn = dsn or config.postgres_dsn
        self.pool: Optional[asyncpg.Pool] = None

    async def initialize(self):
        """Create database connection pool."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=config.POSTGRES_MIN_CONNECTIONS,
                max_size=config.POSTGRES_MAX_CONNECTIONS,
                init=init_connection,
                command_timeout=60
            )
            logger.info(
                f"Database connection pool created: "
                f"{config.POSTGRES_HOST}:{config.POSTGRES_PORT}/{config.POSTGRES_DB}"
            )
        except Exception as e:
            logger.error(f"Failed to create connection pool: {e}")
            raise TransientStoreError(f"Connection pool creation failed: {e}") from e

    async def check_health(self) -> bool:
        """Check database connection health."""
        try:
            if not self.pool:
                return False
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception as e:
            logger.error(f"PostgreSQL health check failed: {e}")
            return False

    async def close(self):
        """Close all connections in the pool."""
        if self.pool:
            await self.pool.close()
            logger.info("Database connection pool closed")


def _row_to_result(row) -> ElectionResult:
    return ElectionResult.from_dict({
        'election_id': row['election_id'],
        'total_votes': row['total_votes'],
        'total_dislike_marks': row['total_dislike_marks'],
        'candidates': row['candidates'],
        'last_updated': row['last_updated'],
    })


class ResultStore:
    """Transactional access to the election_results table."""

    def __init__(self, database: Database, max_attempts: int = None, retry_delay: float = None):
        self.database = database
        self.max_attempts = max_attempts or config.MAX_RETRY_ATTEMPTS
        self.retry_delay = config.RETRY_DELAY_SECONDS if retry_delay is None else retry_delay

    async def get_result(self, election_id: str) -> Optional[ElectionResult]:
        """
        Read the stored result for an election.

        Returns:
            ElectionResult or None if no result has been written yet
        """
        query = """
        SELECT election_id, total_votes, total_dislike_marks, candidates, last_updated
        FROM election_results
        WHERE election_id = $1
        """
        try:
            async with self.database.pool.acquire() as conn:
                row = await conn.fetchrow(query, election_id)
        except CONNECTION_ERRORS as e:
            raise TransientStoreError(f"Failed to read result for {election_id}: {e}") from e
        return _row_to_result(row) if row else None

    async def update_result(
        self,
        election_id: str,
        compute: Callable[[Optional[ElectionResult]], Awaitable[ElectionResult]],
        change_id: Optional[int] = None
    ) -> Optional[ElectionResult]:
        """
        Read-modify-write one election's result in a single transaction.

        Args:
            election_id: Election to update
            compute: Coroutine function receiving the current result (or None)
                and returning the full replacement record
            change_id: Vote-state change being applied; a change already
                recorded for this election is skipped

        Returns:
            The written ElectionResult, or None if the change was already applied

        Raises:
            TransientStoreError: If retries are exhausted or the store is unreachable
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                async with self.database.pool.acquire() as conn:
                    async with conn.transaction(isolation='serializable'):
                        return await self._update_in_transaction(conn, election_id, compute, change_id)

            except RETRYABLE_ERRORS as e:
                logger.warning(
                    f"Write conflict on election={election_id} "
                    f"(attempt {attempt}/{self.max_attempts}): {e}"
                )
                if attempt < self.max_attempts:
                    await asyncio.sleep(self.retry_delay * attempt)

            except CONNECTION_ERRORS as e:
                logger.error(f"Database unavailable while updating election={election_id}: {e}")
                raise TransientStoreError(f"Database unavailable: {e}") from e

        raise TransientStoreError(
            f"Gave up updating election={election_id} after {self.max_attempts} attempts"
        )

    async def _update_in_transaction(self, conn, election_id, compute, change_id):
        if change_id is not None:
            recorded = await conn.fetchval(
                """
                INSERT INTO processed_changes (change_id, election_id)
                VALUES ($1, $2)
                ON CONFLICT DO NOTHING
                RETURNING change_id
                """,
                change_id, election_id
            )
            if recorded is None:
                return None

        row = await conn.fetchrow(
            """
            SELECT election_id, total_votes, total_dislike_marks, candidates, last_updated
            FROM election_results
            WHERE election_id = $1
            FOR UPDATE
            """,
            election_id
        )
        current = _row_to_result(row) if row else None

        updated = await compute(current)
        payload = updated.to_dict()

        await conn.execute(
            """
            INSERT INTO election_results
                (election_id, total_votes, total_dislike_marks, candidates, last_updated)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (election_id)
            DO UPDATE SET
                total_votes = EXCLUDED.total_votes,
                total_dislike_marks = EXCLUDED.total_dislike_marks,
                candidates = EXCLUDED.candidates,
                last_updated = EXCLUDED.last_updated
            """,
            election_id,
            updated.total_votes,
            updated.total_dislike_marks,
            payload['candidates'],
            updated.last_updated
        )
        return updated


class CandidateRegistry:
    """Read-only roster of candidate ids per election."""

    def __init__(self, database: Database, timeout: float = None):
        self.database = database
        self.timeout = timeout or config.ROSTER_TIMEOUT_SECONDS

    async def list_candidate_ids(self, election_id: str) -> Set[str]:
        """
        List the candidate ids registered for an election.

        Raises:
            RosterUnavailable: If the registry cannot be read in time
        """
        try:
            rows = await asyncio.wait_for(self._fetch(election_id), timeout=self.timeout)
        except (asyncio.TimeoutError, asyncpg.PostgresError) + CONNECTION_ERRORS as e:
            raise RosterUnavailable(f"Roster lookup failed for {election_id}: {e}") from e
        return {row['id'] for row in rows}

    async def _fetch(self, election_id: str):
        async with self.database.pool.acquire() as conn:
            return await conn.fetch("SELECT id FROM candidates WHERE election_id = $1", election_id)
