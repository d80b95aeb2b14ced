from datetime import datetime, timezone
from typing import Optional

from fastapi import Cookie, Depends, Header, HTTPException

from .db import get_conn
from .security import hash_session_token


SESSION_COOKIE_NAME = "billing_session"


def _extract_session_token(authorization: Optional[str], cookie_token: Optional[str]) -> str:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization.split(" ", 1)[1].strip()
    if cookie_token:
        return cookie_token
    raise HTTPException(status_code=401, detail="no token, authorization denied")


def get_session(
    authorization: Optional[str] = Header(None),
    cookie_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME),
):
    token = _extract_session_token(authorization, cookie_token)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT s.id AS session_id, s.user_id, s.expires_at, s.is_active,
                       u.email, u.username, u.status AS user_status,
                       r.id AS role_id, r.name AS role_name
                FROM auth_sessions s
                JOIN users u ON u.id = s.user_id
                JOIN roles r ON r.id = u.role_id
                WHERE s.token = %s
                """,
                (hash_session_token(token),),
            )
            row = cur.fetchone()
            now = datetime.now(timezone.utc)
            if not row or not row["is_active"] or row["expires_at"] < now:
                raise HTTPException(status_code=401, detail="token is not valid")
            if row["user_status"] != "Active":
                raise HTTPException(status_code=401, detail="user is inactive")
            return {
                "session_id": row["session_id"],
                "user_id": row["user_id"],
                "email": row["email"],
                "username": row["username"],
                "role": {"id": row["role_id"], "name": row["role_name"]},
            }


def get_current_user(session=Depends(get_session)):
    return {
        "user_id": session["user_id"],
        "email": session["email"],
        "username": session["username"],
        "role": session["role"],
    }


def require_module(module: str):
    """Gate a router on the caller's role having `module` marked visible."""

    def _dep(user=Depends(get_current_user)):
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT visible
                    FROM role_modules
                    WHERE role_id = %s AND module = %s
                    """,
                    (user["role"]["id"], module),
                )
                row = cur.fetchone()
                if not row or not row["visible"]:
                    raise HTTPException(status_code=403, detail="access to this module is not allowed")
        return True

    return _dep


# Module names checked by `require_module`; the bootstrap admin role gets all of them.
MODULES = (
    "dashboard",
    "profile",
    "users",
    "roles",
    "customers",
    "suppliers",
    "products",
    "brands",
    "categories",
    "warehouses",
    "purchases",
    "purchase-returns",
    "sales-orders",
    "sales-returns",
    "account-payable",
    "account-receivable",
    "cash-in-handph",
    "cash-in-bankph",
    "cash-in-chequeph",
    "cash-in-handsa",
    "cash-in-banksa",
    "cash-in-chequesa",
    "expenses",
    "reports",
)

# What a freshly created signup role can see.
DEFAULT_ROLE_MODULES = ("dashboard", "profile")
