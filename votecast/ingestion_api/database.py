"""PostgreSQL database connection and queries for the ingestion API."""
import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, List, Callable, Tuple

import asyncpg

from ..shared.exceptions import TransientStoreError, MutationConflict
from ..shared.models import (
    ElectionChoice,
    ElectionResult,
    VoteState,
    VoteStateChange,
    get_current_timestamp,
)
from .config import settings

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (
    asyncpg.exceptions.SerializationError,
    asyncpg.exceptions.DeadlockDetectedError,
    asyncpg.exceptions.UniqueViolationError,
)

CONNECTION_ERRORS = (
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.InterfaceError,
    ConnectionError,
    OSError,
)

# mutation(entry, now=...) -> replacement entry or None
Mutation = Callable[..., Optional[ElectionChoice]]


async def init_connection(conn: asyncpg.Connection):
    """Decode and encode JSONB columns as Python objects."""
    await conn.set_type_codec(
        'jsonb',
        encoder=json.dumps,
        decoder=json.loads,
        schema='pg_catalog'
    )


def _vote_state_from_column(user_id: str, elections: Optional[dict]) -> VoteState:
    return VoteState.from_dict({'user_id': user_id, 'elections': elections or {}})


def _change_from_row(row) -> VoteStateChange:
    before = row['before']
    after = row['after']
    return VoteStateChange(
        change_id=row['id'],
        user_id=row['user_id'],
        before=VoteState.from_dict(before) if before is not None else None,
        after=VoteState.from_dict(after) if after is not None else None,
        occurred_at=row['occurred_at'],
    )


class Database:
    """Async PostgreSQL database manager."""

    def __init__(self, dsn: str = None):
        self.dsn = dsn or settings.postgres_dsn
        self.pool: Optional[asyncpg.Pool] = None

    async def initialize(self):
        """Initialize database connection pool."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=settings.POSTGRES_POOL_MIN_SIZE,
                max_size=settings.POSTGRES_POOL_MAX_SIZE,
                init=init_connection,
                command_timeout=60
            )
            logger.info("PostgreSQL connection pool initialized successfully")

            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                logger.info("PostgreSQL connection verified")

        except Exception as e:
            logger.error(f"Failed to initialize PostgreSQL connection pool: {e}")
            raise

    async def close(self):
        """Close database connection pool."""
        try:
            if self.pool:
                await self.pool.close()
                logger.info("PostgreSQL connection pool closed successfully")
        except Exception as e:
            logger.error(f"Error closing PostgreSQL connection pool: {e}")

    async def check_health(self) -> bool:
        """Check database connection health."""
        try:
            if not self.pool:
                return False
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            return False

    # Vote State

    async def get_vote_state(self, user_id: str) -> VoteState:
        """
        Get a user's vote state.

        Returns:
            VoteState, empty when the user has never voted
        """
        try:
            async with self.pool.acquire() as conn:
                elections = await conn.fetchval(
                    "SELECT elections FROM vote_states WHERE user_id = $1",
                    user_id
                )
        except CONNECTION_ERRORS as e:
            raise TransientStoreError(f"Failed to read vote state for {user_id}: {e}") from e
        return _vote_state_from_column(user_id, elections)

    async def mutate_vote_state(
        self,
        user_id: str,
        election_id: str,
        mutation: Mutation
    ) -> Tuple[VoteState, Optional[VoteStateChange]]:
        """
        Apply a mutation to one election entry of a user's vote state.

        Runs as a read-modify-write transaction on the user's own row. The
        change (before-image, after-image) is appended to the outbox in the
        same transaction. A mutation that leaves the entry unchanged writes
        nothing.

        Args:
            user_id: Acting user
            election_id: Election whose entry is mutated
            mutation: Callable ``mutation(entry, now=...)`` returning the
                replacement entry, or None to remove it

        Returns:
            Tuple of (resulting vote state, change or None if nothing changed)

        Raises:
            MutationConflict: If concurrent edits exhaust the retry budget
            TransientStoreError: If the database is unreachable
        """
        for attempt in range(1, settings.MAX_RETRY_ATTEMPTS + 1):
            try:
                async with self.pool.acquire() as conn:
                    async with conn.transaction(isolation='serializable'):
                        return await self._mutate_in_transaction(conn, user_id, election_id, mutation)

            except RETRYABLE_ERRORS as e:
                logger.warning(
                    f"Vote-state conflict for user={user_id} election={election_id} "
                    f"(attempt {attempt}/{settings.MAX_RETRY_ATTEMPTS}): {e}"
                )
                if attempt < settings.MAX_RETRY_ATTEMPTS:
                    await asyncio.sleep(settings.RETRY_DELAY_SECONDS * attempt)

            except CONNECTION_ERRORS as e:
                logger.error(f"Database unavailable while mutating vote state: {e}")
                raise TransientStoreError(f"Database unavailable: {e}") from e

        raise MutationConflict(
            f"Vote-state update for user={user_id} election={election_id} "
            f"failed after {settings.MAX_RETRY_ATTEMPTS} attempts"
        )

    async def _mutate_in_transaction(self, conn, user_id, election_id, mutation):
        row = await conn.fetchrow(
            "SELECT elections FROM vote_states WHERE user_id = $1 FOR UPDATE",
            user_id
        )
        before = _vote_state_from_column(user_id, row['elections']) if row else None
        current = before or VoteState.empty(user_id)

        now = get_current_timestamp()
        entry = current.choice_for(election_id)
        replacement = mutation(entry, now=now)
        if replacement == entry:
            return current, None

        after = current.with_choice(election_id, replacement)
        after_doc = after.to_dict()

        await conn.execute(
            """
            INSERT INTO vote_states (user_id, elections, updated_at)
            VALUES ($1, $2, $3)
            ON CONFLICT (user_id)
            DO UPDATE SET
                elections = EXCLUDED.elections,
                updated_at = EXCLUDED.updated_at
            """,
            user_id, after_doc['elections'], now
        )

        change_id = await conn.fetchval(
            """
            INSERT INTO vote_state_changes (user_id, before, after, occurred_at)
            VALUES ($1, $2, $3, $4)
            RETURNING id
            """,
            user_id,
            before.to_dict() if before is not None else None,
            after_doc,
            now
        )

        return after, VoteStateChange(
            change_id=change_id,
            user_id=user_id,
            before=before,
            after=after,
            occurred_at=now,
        )

    # Change outbox

    async def mark_change_published(self, change_id: int):
        """Flag an outbox row as delivered to the message queue."""
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    "UPDATE vote_state_changes SET published_at = NOW() WHERE id = $1",
                    change_id
                )
        except CONNECTION_ERRORS as e:
            raise TransientStoreError(f"Failed to mark change {change_id} published: {e}") from e

    async def has_unpublished_changes_before(self, user_id: str, change_id: int) -> bool:
        """Check whether an older change of the same user still waits in the outbox."""
        query = """
            SELECT EXISTS(
                SELECT 1 FROM vote_state_changes
                WHERE user_id = $1 AND id < $2 AND published_at IS NULL
            )
        """
        try:
            async with self.pool.acquire() as conn:
                return await conn.fetchval(query, user_id, change_id)
        except CONNECTION_ERRORS as e:
            raise TransientStoreError(f"Failed to read change outbox for {user_id}: {e}") from e

    async def fetch_unpublished_changes(self, older_than_seconds: float, limit: int) -> List[VoteStateChange]:
        """
        Get outbox rows that were never published.

        Only rows older than ``older_than_seconds`` are returned so the
        request that wrote them gets the first chance to publish. A row is
        held back while an older row of the same user is still inside that
        window, so one user's changes leave in write order.
        """
        query = """
            SELECT c.id, c.user_id, c.before, c.after, c.occurred_at
            FROM vote_state_changes c
            WHERE c.published_at IS NULL
              AND c.occurred_at < NOW() - make_interval(secs => $1)
              AND NOT EXISTS (
                  SELECT 1 FROM vote_state_changes p
                  WHERE p.user_id = c.user_id
                    AND p.id < c.id
                    AND p.published_at IS NULL
                    AND p.occurred_at >= NOW() - make_interval(secs => $1)
              )
            ORDER BY c.id
            LIMIT $2
        """
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(query, float(older_than_seconds), limit)
        except CONNECTION_ERRORS as e:
            raise TransientStoreError(f"Failed to read change outbox: {e}") from e
        return [_change_from_row(row) for row in rows]

    # Results (read-only)

    async def get_results(self, election_id: str) -> ElectionResult:
        """
        Get the cached result for an election.

        Never returns None: an election without a result yet gets a
        zero-valued record filled with its registered candidates.
        """
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    SELECT election_id, total_votes, total_dislike_marks, candidates, last_updated
                    FROM election_results
                    WHERE election_id = $1
                    """,
                    election_id
                )
                if row:
                    return ElectionResult.from_dict(dict(row))

                candidate_ids = await conn.fetch(
                    "SELECT id FROM candidates WHERE election_id = $1 ORDER BY created_at, id",
                    election_id
                )
        except CONNECTION_ERRORS as e:
            raise TransientStoreError(f"Failed to read results for {election_id}: {e}") from e

        return ElectionResult.zero(election_id, [r['id'] for r in candidate_ids])

    # Registry (read-only)

    async def get_elections(self) -> List[Dict]:
        """Get all elections, newest first, with a voting-period flag."""
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT id, title, description, start_date, end_date, created_at
                    FROM elections
                    ORDER BY created_at DESC, id
                    """
                )
        except CONNECTION_ERRORS as e:
            raise TransientStoreError(f"Failed to list elections: {e}") from e

        now = datetime.now(timezone.utc)
        elections = []
        for row in rows:
            election = dict(row)
            election['is_voting_period'] = is_voting_period(row['start_date'], row['end_date'], now)
            elections.append(election)
        return elections

    async def get_candidates(self, election_id: str) -> List[Dict]:
        """Get candidates for an election in registration order."""
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT id, election_id, name, description, image_url
                    FROM candidates
                    WHERE election_id = $1
                    ORDER BY created_at, id
                    """,
                    election_id
                )
        except CONNECTION_ERRORS as e:
            raise TransientStoreError(f"Failed to list candidates for {election_id}: {e}") from e
        return [dict(row) for row in rows]

    async def candidate_exists(self, election_id: str, candidate_id: str) -> bool:
        """Check that a candidate is registered for an election."""
        try:
            async with self.pool.acquire() as conn:
                found = await conn.fetchval(
                    "SELECT 1 FROM candidates WHERE election_id = $1 AND id = $2",
                    election_id, candidate_id
                )
        except CONNECTION_ERRORS as e:
            raise TransientStoreError(f"Failed to look up candidate {candidate_id}: {e}") from e
        return found is not None


def is_voting_period(start_date: Optional[datetime], end_date: Optional[datetime], now: datetime) -> bool:
    """
    Whether ``now`` falls inside the declared voting window.

    Informational only: votes outside the window are not rejected.
    """
    if start_date is not None and now < start_date:
        return False
    if end_date is not None and now > end_date:
        return False
    return True


# Global database instance
database = Database()
