"""Pytest fixtures for integration tests.

These tests run the real asyncpg stores against a PostgreSQL database
(configured through the usual POSTGRES_* environment variables). The schema
is applied once per session and every table is truncated before each test.
Tests are skipped when the database is unreachable.
"""

import os
from pathlib import Path
from typing import Generator

import psycopg2
import pytest
from psycopg2.extensions import ISOLATION_LEVEL_AUTOCOMMIT

from votecast.aggregation.database import Database as AggregationDatabase
from votecast.ingestion_api.database import Database as ApiDatabase

SCHEMA_PATH = Path(__file__).resolve().parents[2] / "sql" / "schema.sql"

TABLES = [
    "processed_changes",
    "election_results",
    "vote_state_changes",
    "vote_states",
    "candidates",
    "elections",
]


@pytest.fixture(scope="session")
def postgres_dsn() -> str:
    """DSN for the test database."""
    return (
        f"postgresql://{os.getenv('POSTGRES_USER', 'forecast_user')}"
        f":{os.getenv('POSTGRES_PASSWORD', 'forecast_pass')}"
        f"@{os.getenv('POSTGRES_HOST', 'localhost')}:{os.getenv('POSTGRES_PORT', '5432')}"
        f"/{os.getenv('POSTGRES_DB', 'election_forecast')}"
    )


@pytest.fixture(scope="session")
def postgres_connection(postgres_dsn) -> Generator:
    """PostgreSQL connection for setup and direct assertions.

    Applies the schema once; skips the session when no database is reachable.
    """
    try:
        conn = psycopg2.connect(postgres_dsn, connect_timeout=3)
    except psycopg2.OperationalError:
        pytest.skip("PostgreSQL not available")
    conn.set_isolation_level(ISOLATION_LEVEL_AUTOCOMMIT)

    with conn.cursor() as cur:
        cur.execute(SCHEMA_PATH.read_text())

    yield conn

    conn.close()


@pytest.fixture
def postgres_client(postgres_connection):
    """PostgreSQL cursor on a clean database.

    Yields a cursor from the session-scoped connection after truncating
    every table.
    """
    cursor = postgres_connection.cursor()
    cursor.execute(f"TRUNCATE TABLE {', '.join(TABLES)} RESTART IDENTITY CASCADE")
    yield cursor
    cursor.close()


@pytest.fixture
def seeded_election(postgres_client) -> str:
    """A 'mayor' election with three registered candidates."""
    postgres_client.execute(
        "INSERT INTO elections (id, title) VALUES ('mayor', 'Mayoral Election')"
    )
    for candidate_id in ("alice", "bob", "carol"):
        postgres_client.execute(
            "INSERT INTO candidates (id, election_id, name) VALUES (%s, 'mayor', %s)",
            (candidate_id, candidate_id.title())
        )
    return "mayor"


@pytest.fixture
async def aggregation_database(postgres_dsn, postgres_client):
    """Aggregation-side asyncpg pool."""
    database = AggregationDatabase(postgres_dsn)
    await database.initialize()
    yield database
    await database.close()


@pytest.fixture
async def api_database(postgres_dsn, postgres_client):
    """API-side asyncpg pool."""
    database = ApiDatabase(postgres_dsn)
    await database.initialize()
    yield database
    await database.close()


def pytest_configure(config):
    """Register custom pytest markers."""
    config.addinivalue_line(
        "markers",
        "docker: mark test as requiring PostgreSQL/Redis/RabbitMQ"
    )
    config.addinivalue_line(
        "markers",
        "slow: mark test as slow running"
    )
