#!/usr/bin/env python3
"""
Apply the pipeline schema (infra/job_pipeline.sql) to the database.
Idempotent - safe to run multiple times.
"""
import sys
import argparse
from pathlib import Path

import psycopg2
from dotenv import load_dotenv

sys.path.insert(0, str(Path(__file__).parent.parent))


def get_table_summary(cursor) -> dict:
    """Row counts of the public tables."""
    cursor.execute("""
        SELECT table_name
        FROM information_schema.tables
        WHERE table_schema = 'public'
        ORDER BY table_name
    """)
    tables = [row[0] for row in cursor.fetchall()]

    summary = {}
    for table in tables:
        cursor.execute(f"SELECT COUNT(*) FROM {table}")
        summary[table] = cursor.fetchone()[0]
    return summary


def main():
    parser = argparse.ArgumentParser(description="Apply the JobLink pipeline schema")
    parser.add_argument(
        "--schema",
        type=Path,
        default=Path(__file__).resolve().parents[3] / "infra" / "job_pipeline.sql",
        help="Path to the schema file",
    )
    args = parser.parse_args()

    load_dotenv()
    from app.db_config import db_config

    conn_params = db_config.get_connection_params()
    if not conn_params:
        print("Error: DATABASE_URL environment variable is not set")
        sys.exit(1)

    if not args.schema.exists():
        print(f"Error: Schema file not found: {args.schema}")
        sys.exit(1)

    print(f"Connecting to: {conn_params['host']}:{conn_params['port']}")
    try:
        conn = psycopg2.connect(**conn_params, connect_timeout=10)
    except psycopg2.Error as e:
        print(f"✗ Connection failed: {e}")
        sys.exit(1)

    try:
        cursor = conn.cursor()
        before = get_table_summary(cursor)

        cursor.execute(args.schema.read_text())
        conn.commit()

        after = get_table_summary(cursor)
        new_tables = set(after) - set(before)
        if new_tables:
            print(f"✓ Created {len(new_tables)} new table(s): {', '.join(sorted(new_tables))}")
        else:
            print("✓ All tables already exist (idempotent)")

        print("\nDatabase Summary:")
        print("-" * 60)
        for table, count in sorted(after.items()):
            print(f"  {table:30} {count} row(s)")
    except psycopg2.Error as e:
        conn.rollback()
        print(f"✗ Failed to apply schema: {e}")
        sys.exit(1)
    finally:
        conn.close()


if __name__ == "__main__":
    main()
