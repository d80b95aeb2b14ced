#!/usr/bin/env python3
import argparse
import json
import os
import sys

import psycopg
from psycopg.rows import dict_row

from backend.app.security import hash_password

MIN_PASSWORD_LENGTH = 6


def main() -> int:
    parser = argparse.ArgumentParser(description="Set a user's password and revoke their sessions.")
    parser.add_argument(
        "--db",
        default=os.getenv("DATABASE_URL") or "postgresql://localhost/billing",
        help="Postgres connection string (defaults to $DATABASE_URL).",
    )
    parser.add_argument("--login", required=True, help="email or username")
    parser.add_argument("--password", required=True)
    parser.add_argument("--activate", action="store_true", help="also set the user's status to Active")
    args = parser.parse_args()

    login = (args.login or "").strip().lower()
    if not login:
        print("login is required", file=sys.stderr)
        return 2
    if len(args.password) < MIN_PASSWORD_LENGTH:
        print(f"password must be at least {MIN_PASSWORD_LENGTH} characters", file=sys.stderr)
        return 2

    with psycopg.connect(args.db, row_factory=dict_row) as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE users
                    SET hashed_password = %s,
                        status = CASE WHEN %s THEN 'Active' ELSE status END,
                        updated_at = now()
                    WHERE lower(email) = %s OR lower(username) = %s
                    RETURNING id, email, status
                    """,
                    (hash_password(args.password), args.activate, login, login),
                )
                row = cur.fetchone()
                if not row:
                    print(f"user not found: {login}", file=sys.stderr)
                    return 2

                # Old tokens must not survive a reset.
                cur.execute(
                    "UPDATE auth_sessions SET is_active = false WHERE user_id = %s AND is_active",
                    (row["id"],),
                )
                revoked = cur.rowcount
                cur.execute(
                    """
                    INSERT INTO audit_logs (id, user_id, action, entity_type, entity_id, details)
                    VALUES (gen_random_uuid(), NULL, 'password_reset', 'user', %s, %s::jsonb)
                    """,
                    (str(row["id"]), json.dumps({"sessions_revoked": revoked, "activated": args.activate})),
                )

    print(f"OK {row['email']} ({row['status']}), {revoked} session(s) revoked")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
