from fastapi import APIRouter, HTTPException, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from datetime import datetime, timedelta, timezone
from typing import Optional
import json
import secrets
from ..config import settings
from ..db import get_conn
from ..deps import get_session, SESSION_COOKIE_NAME, DEFAULT_ROLE_MODULES
from ..logs import json_log
from ..security import hash_password, verify_password, needs_rehash, hash_session_token
from .users import normalize_email, unique_username

router = APIRouter(prefix="/api/auth", tags=["auth"])


class LoginIn(BaseModel):
    email: str
    password: str
    # When given, login fails unless the user actually holds this role.
    role: Optional[str] = None


class SignupIn(BaseModel):
    name: str = Field(min_length=1)
    email: str
    password: str = Field(min_length=6)
    role: Optional[str] = None


def _role_payload(cur, role_id) -> dict:
    cur.execute("SELECT id, name, status FROM roles WHERE id = %s", (role_id,))
    role = cur.fetchone()
    if not role:
        raise HTTPException(status_code=500, detail="role configuration error")
    cur.execute(
        """
        SELECT module, visible
        FROM role_modules
        WHERE role_id = %s
        ORDER BY module
        """,
        (role_id,),
    )
    return {"id": role["id"], "name": role["name"], "permissions": cur.fetchall()}


def _user_payload(user: dict, role: dict) -> dict:
    return {
        "id": str(user["id"]),
        "username": user["username"],
        "first_name": user["first_name"],
        "last_name": user["last_name"],
        "email": user["email"],
        "role": role,
        "status": user["status"],
    }


def _mint_session(cur, user_id) -> str:
    # Use a strong random token and store only a one-way hash in the DB.
    token = secrets.token_urlsafe(32)
    expires = datetime.now(timezone.utc) + timedelta(days=settings.session_days)
    cur.execute(
        """
        INSERT INTO auth_sessions (id, user_id, token, expires_at)
        VALUES (gen_random_uuid(), %s, %s, %s)
        """,
        (user_id, hash_session_token(token), expires),
    )
    return token


def _session_response(body: dict, token: str, status_code: int = 200) -> JSONResponse:
    resp = JSONResponse(json.loads(json.dumps(body, default=str)), status_code=status_code)
    resp.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=token,
        httponly=True,
        samesite="lax",
        secure=not settings.expose_errors,
        max_age=settings.session_days * 24 * 60 * 60,
        path="/",
    )
    return resp


@router.post("/login")
def login(data: LoginIn):
    email = (data.email or "").strip().lower()
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, username, first_name, last_name, email, hashed_password, role_id, status
                    FROM users
                    WHERE email = %s
                    """,
                    (email,),
                )
                user = cur.fetchone()
                if not user or not verify_password(data.password, user["hashed_password"]):
                    json_log("warning", "auth.login_failed", email=email)
                    raise HTTPException(status_code=400, detail="invalid credentials")
                if user["status"] != "Active":
                    raise HTTPException(status_code=400, detail="account is inactive")

                role = _role_payload(cur, user["role_id"])
                if data.role and role["name"] != data.role:
                    raise HTTPException(
                        status_code=403,
                        detail=f"access denied. you don't have {data.role} privileges. your role is {role['name']}.",
                    )

                if needs_rehash(user["hashed_password"]):
                    cur.execute(
                        "UPDATE users SET hashed_password = %s WHERE id = %s",
                        (hash_password(data.password), user["id"]),
                    )

                token = _mint_session(cur, user["id"])
                json_log("info", "auth.login", user_id=user["id"])
                # The token is returned for bearer clients and also set as an httponly cookie.
                return _session_response({"token": token, "user": _user_payload(user, role)}, token)


@router.post("/signup")
def signup(data: SignupIn):
    email = normalize_email(data.email)
    parts = data.name.strip().split()
    first_name = parts[0]
    last_name = " ".join(parts[1:]) or "User"
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT 1 FROM users WHERE email = %s", (email,))
                if cur.fetchone():
                    raise HTTPException(status_code=400, detail="user already exists with this email")

                role_name = (data.role or "").strip()
                if role_name:
                    cur.execute("SELECT id FROM roles WHERE name = %s", (role_name,))
                    role_row = cur.fetchone()
                    if not role_row:
                        raise HTTPException(status_code=400, detail="invalid role specified")
                else:
                    cur.execute("SELECT id FROM roles WHERE name = %s", (settings.default_signup_role,))
                    role_row = cur.fetchone()
                    if not role_row:
                        cur.execute(
                            "INSERT INTO roles (id, name, status) VALUES (gen_random_uuid(), %s, 'Active') RETURNING id",
                            (settings.default_signup_role,),
                        )
                        role_row = cur.fetchone()
                        for module in DEFAULT_ROLE_MODULES:
                            cur.execute(
                                "INSERT INTO role_modules (role_id, module, visible) VALUES (%s, %s, true)",
                                (role_row["id"], module),
                            )
                        json_log("info", "auth.default_role_created", role=settings.default_signup_role)

                username = unique_username(cur, email)
                cur.execute(
                    """
                    INSERT INTO users (id, first_name, last_name, username, email, hashed_password, role_id, status)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, 'Active')
                    RETURNING id, username, first_name, last_name, email, role_id, status
                    """,
                    (first_name, last_name, username, email, hash_password(data.password), role_row["id"]),
                )
                user = cur.fetchone()
                role = _role_payload(cur, user["role_id"])
                token = _mint_session(cur, user["id"])
                cur.execute(
                    """
                    INSERT INTO audit_logs (id, user_id, action, entity_type, entity_id, details)
                    VALUES (gen_random_uuid(), %s, 'auth.signup', 'user', %s, %s::jsonb)
                    """,
                    (user["id"], str(user["id"]), json.dumps({"email": email, "role": role["name"]})),
                )
                body = {"token": token, "user": _user_payload(user, role), "detail": "user registered successfully"}
                return _session_response(body, token, status_code=201)


@router.get("/roles")
def list_signup_roles():
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT name FROM roles WHERE status = 'Active' ORDER BY name")
            return {"roles": [r["name"] for r in cur.fetchall()]}


@router.get("/me")
def me(session=Depends(get_session)):
    return {"user_id": str(session["user_id"]), "email": session["email"], "role": session["role"]}


@router.post("/logout")
def logout(session=Depends(get_session)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute("UPDATE auth_sessions SET is_active = false WHERE id = %s", (session["session_id"],))
    resp = JSONResponse({"ok": True})
    resp.delete_cookie(key=SESSION_COOKIE_NAME, path="/")
    return resp
