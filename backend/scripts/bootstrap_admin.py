#!/usr/bin/env python3
"""
First-run admin account.

Runs only when BOOTSTRAP_ADMIN is truthy. Creates (or reuses) the admin role,
makes every module visible to it and adds one Active user. Safe to re-run: an
existing user with the same email is left untouched.
"""
import os
import secrets
import sys

import psycopg
from psycopg.rows import dict_row

from backend.app.deps import MODULES
from backend.app.security import hash_password, username_from_email


def _enabled(raw: str) -> bool:
    return (raw or "").strip().lower() in {"1", "true", "yes", "on"}


def _ensure_role(cur, name: str):
    cur.execute(
        """
        INSERT INTO roles (id, name)
        VALUES (gen_random_uuid(), %s)
        ON CONFLICT (name) DO UPDATE SET status = 'Active'
        RETURNING id
        """,
        (name,),
    )
    role_id = cur.fetchone()["id"]
    for module in MODULES:
        cur.execute(
            """
            INSERT INTO role_modules (role_id, module, visible)
            VALUES (%s, %s, true)
            ON CONFLICT (role_id, module) DO UPDATE SET visible = true
            """,
            (role_id, module),
        )
    return role_id


def ensure_admin(cur, email: str, password: str, role_name: str) -> bool:
    """Returns False when a user with this email already exists."""
    cur.execute("SELECT 1 FROM users WHERE email = %s", (email,))
    if cur.fetchone():
        return False
    role_id = _ensure_role(cur, role_name)
    cur.execute(
        """
        INSERT INTO users (id, first_name, last_name, username, email, hashed_password, role_id, status)
        VALUES (gen_random_uuid(), 'Admin', '', %s, %s, %s, %s, 'Active')
        """,
        (username_from_email(email), email, hash_password(password), role_id),
    )
    return True


def main() -> int:
    if not _enabled(os.getenv("BOOTSTRAP_ADMIN", "")):
        return 0

    db_url = os.getenv("DATABASE_URL")
    email = (os.getenv("BOOTSTRAP_ADMIN_EMAIL") or "admin@billing.local").strip().lower()
    role_name = (os.getenv("BOOTSTRAP_ADMIN_ROLE_NAME") or "Admin").strip() or "Admin"
    password = os.getenv("BOOTSTRAP_ADMIN_PASSWORD") or ""
    if not db_url:
        print("bootstrap_admin: DATABASE_URL is not set", file=sys.stderr)
        return 2
    if not email:
        print("bootstrap_admin: BOOTSTRAP_ADMIN_EMAIL is blank", file=sys.stderr)
        return 2
    generated = not password
    if generated:
        password = secrets.token_urlsafe(16)

    with psycopg.connect(db_url, row_factory=dict_row) as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                created = ensure_admin(cur, email, password, role_name)

    if not created:
        print(f"bootstrap_admin: {email} already exists, nothing to do")
        return 0
    print(f"bootstrap_admin: created {email} with role {role_name}")
    if generated:
        print(f"bootstrap_admin: generated password {password}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
