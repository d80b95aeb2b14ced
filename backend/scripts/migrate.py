#!/usr/bin/env python3
import os
import sys
from pathlib import Path

import psycopg
from psycopg.rows import dict_row

MIGRATIONS_DIR = Path(__file__).resolve().parents[1] / "db" / "migrations"


def pending(applied: set) -> list:
    return [p for p in sorted(MIGRATIONS_DIR.glob("*.sql")) if p.name not in applied]


def main() -> int:
    db_url = os.getenv("DATABASE_URL")
    if not db_url:
        print("migrate: missing DATABASE_URL", file=sys.stderr)
        return 2

    with psycopg.connect(db_url, row_factory=dict_row) as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS schema_migrations (
                      name text PRIMARY KEY,
                      applied_at timestamptz NOT NULL DEFAULT now()
                    )
                    """
                )
                cur.execute("SELECT name FROM schema_migrations")
                applied = {r["name"] for r in cur.fetchall()}

        for path in pending(applied):
            # One transaction per file so a broken migration leaves earlier ones applied.
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(path.read_text(encoding="utf-8"))
                    cur.execute("INSERT INTO schema_migrations (name) VALUES (%s)", (path.name,))
            print(f"applied {path.name}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
