#!/usr/bin/env python3
"""
Remove an election and everything derived from it.

Deletes the cached result, the processed-change markers, the candidate
roster and the election row. Vote-state entries are left alone: they belong
to users and stop counting once the election no longer exists.

Usage:
    python cleanup_election.py ELECTION_ID [--keep-election] [--yes]
"""

import sys
import argparse

import psycopg2

from seed_elections import add_postgres_arguments, build_dsn


def cleanup_election(conn, election_id: str, keep_election: bool = False) -> dict:
    """
    Delete derived rows for an election in one transaction.

    Args:
        conn: psycopg2 connection
        election_id: Election to clean up
        keep_election: Keep the election and its candidates, drop only
            aggregation state (forces a fresh rebuild)

    Returns:
        dict: Rows deleted per table
    """
    deleted = {}
    with conn, conn.cursor() as cur:
        cur.execute("DELETE FROM election_results WHERE election_id = %s", (election_id,))
        deleted['election_results'] = cur.rowcount

        cur.execute("DELETE FROM processed_changes WHERE election_id = %s", (election_id,))
        deleted['processed_changes'] = cur.rowcount

        if not keep_election:
            cur.execute("DELETE FROM candidates WHERE election_id = %s", (election_id,))
            deleted['candidates'] = cur.rowcount

            cur.execute("DELETE FROM elections WHERE id = %s", (election_id,))
            deleted['elections'] = cur.rowcount

    return deleted


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Remove an election and its aggregation state')
    parser.add_argument('election_id', help='Election identifier')
    add_postgres_arguments(parser)
    parser.add_argument(
        '--keep-election',
        action='store_true',
        help='Only drop the cached result and processed-change markers'
    )
    parser.add_argument(
        '--yes',
        action='store_true',
        help='Do not ask for confirmation'
    )

    args = parser.parse_args()

    if not args.yes:
        answer = input(f"Delete data for election '{args.election_id}'? [y/N] ")
        if answer.strip().lower() != 'y':
            print("Aborted")
            return

    try:
        conn = psycopg2.connect(build_dsn(args), connect_timeout=5)
    except psycopg2.Error as e:
        print(f"✗ Failed to connect to PostgreSQL: {e}", file=sys.stderr)
        sys.exit(1)

    try:
        deleted = cleanup_election(conn, args.election_id, keep_election=args.keep_election)
        print(f"✓ Cleaned up election {args.election_id}")
        for table, count in deleted.items():
            print(f"  {table}: {count:,} row(s)")
    except psycopg2.Error as e:
        print(f"✗ Cleanup failed: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        conn.close()


if __name__ == '__main__':
    main()
