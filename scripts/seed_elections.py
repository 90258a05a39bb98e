#!/usr/bin/env python3
"""
Seed elections and candidates into PostgreSQL.

Applies sql/schema.sql (optional) and loads elections with their candidate
rosters from a JSON file, or a small built-in sample when no file is given.

Usage:
    python seed_elections.py [--file elections.json] [--init-schema] [--postgres-host HOST]

JSON format:
    [{"id": "mayor-2025", "title": "...", "start_date": "...", "end_date": "...",
      "candidates": [{"id": "cand-alice", "name": "Alice"}, ...]}, ...]

Environment Variables:
    POSTGRES_HOST, POSTGRES_PORT, POSTGRES_DB, POSTGRES_USER, POSTGRES_PASSWORD
"""

import os
import sys
import json
import argparse
from pathlib import Path
from typing import List, Dict

import psycopg2
from psycopg2.extras import execute_batch

SAMPLE_ELECTIONS = [
    {
        'id': 'mayor-2025',
        'title': 'Mayoral Election 2025',
        'description': 'City mayor forecast',
        'start_date': '2025-01-01T00:00:00+00:00',
        'end_date': '2030-12-31T23:59:59+00:00',
        'candidates': [
            {'id': 'cand-alice', 'name': 'Alice Martin'},
            {'id': 'cand-bob', 'name': 'Bob Tremblay'},
            {'id': 'cand-carol', 'name': 'Carol Roy'},
        ],
    },
    {
        'id': 'council-2025',
        'title': 'City Council 2025',
        'description': None,
        'start_date': None,
        'end_date': None,
        'candidates': [
            {'id': 'cand-dan', 'name': 'Dan Gagnon'},
            {'id': 'cand-eve', 'name': 'Eve Cote'},
        ],
    },
]


class ElectionSeeder:
    """Insert elections and their candidate rosters."""

    def __init__(self, dsn: str):
        self.dsn = dsn
        self.conn = None

    def connect(self) -> bool:
        """
        Connect to PostgreSQL.

        Returns:
            bool: True if connection successful
        """
        try:
            self.conn = psycopg2.connect(self.dsn, connect_timeout=5)
            print("✓ Connected to PostgreSQL")
            return True
        except psycopg2.Error as e:
            print(f"✗ Failed to connect to PostgreSQL: {e}", file=sys.stderr)
            return False

    def apply_schema(self, schema_path: Path):
        """Run the schema DDL (idempotent)."""
        with self.conn, self.conn.cursor() as cur:
            cur.execute(schema_path.read_text())
        print(f"✓ Applied schema from {schema_path}")

    def seed(self, elections: List[Dict]) -> dict:
        """
        Upsert elections and candidates in one transaction.

        Returns:
            dict: Number of elections and candidates written
        """
        stats = {'elections': 0, 'candidates': 0}

        with self.conn, self.conn.cursor() as cur:
            for election in elections:
                cur.execute(
                    """
                    INSERT INTO elections (id, title, description, start_date, end_date)
                    VALUES (%s, %s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE SET
                        title = EXCLUDED.title,
                        description = EXCLUDED.description,
                        start_date = EXCLUDED.start_date,
                        end_date = EXCLUDED.end_date
                    """,
                    (
                        election['id'],
                        election['title'],
                        election.get('description'),
                        election.get('start_date'),
                        election.get('end_date'),
                    )
                )
                stats['elections'] += 1

                candidates = election.get('candidates', [])
                execute_batch(
                    cur,
                    """
                    INSERT INTO candidates (id, election_id, name, description, image_url)
                    VALUES (%s, %s, %s, %s, %s)
                    ON CONFLICT (election_id, id) DO UPDATE SET
                        name = EXCLUDED.name,
                        description = EXCLUDED.description,
                        image_url = EXCLUDED.image_url
                    """,
                    [
                        (c['id'], election['id'], c['name'], c.get('description'), c.get('image_url'))
                        for c in candidates
                    ]
                )
                stats['candidates'] += len(candidates)
                print(f"  {election['id']}: {len(candidates)} candidate(s)")

        return stats

    def close(self):
        if self.conn:
            self.conn.close()


def load_elections(path: Path) -> List[Dict]:
    """Read elections from a JSON file (a list, or {"elections": [...]})."""
    with open(path, 'r') as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get('elections', [])
    if not isinstance(data, list):
        raise ValueError(f"Expected a list of elections in {path}")
    return data


def build_dsn(args) -> str:
    return (
        f"host={args.postgres_host} port={args.postgres_port} dbname={args.postgres_db} "
        f"user={args.postgres_user} password={args.postgres_password}"
    )


def add_postgres_arguments(parser: argparse.ArgumentParser):
    """Connection options shared by the maintenance scripts."""
    parser.add_argument('--postgres-host', default=os.getenv('POSTGRES_HOST', 'localhost'))
    parser.add_argument('--postgres-port', type=int, default=int(os.getenv('POSTGRES_PORT', 5432)))
    parser.add_argument('--postgres-db', default=os.getenv('POSTGRES_DB', 'election_forecast'))
    parser.add_argument('--postgres-user', default=os.getenv('POSTGRES_USER', 'forecast_user'))
    parser.add_argument('--postgres-password', default=os.getenv('POSTGRES_PASSWORD', 'forecast_pass'))


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Seed elections and candidates into PostgreSQL')
    add_postgres_arguments(parser)
    parser.add_argument(
        '--file',
        type=Path,
        help='JSON file with elections (default: built-in sample)'
    )
    parser.add_argument(
        '--init-schema',
        action='store_true',
        help='Apply sql/schema.sql before seeding'
    )
    parser.add_argument(
        '--schema',
        type=Path,
        default=Path(__file__).parent.parent / 'sql' / 'schema.sql',
        help='Schema file (default: ../sql/schema.sql)'
    )

    args = parser.parse_args()

    seeder = ElectionSeeder(build_dsn(args))
    if not seeder.connect():
        sys.exit(1)

    try:
        if args.init_schema:
            seeder.apply_schema(args.schema)

        elections = load_elections(args.file) if args.file else SAMPLE_ELECTIONS
        stats = seeder.seed(elections)

        print(f"\n✓ Seed complete!")
        print(f"  Elections: {stats['elections']}")
        print(f"  Candidates: {stats['candidates']}")

    except (psycopg2.Error, ValueError, OSError) as e:
        print(f"\n✗ Seed failed: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        seeder.close()


if __name__ == '__main__':
    main()
