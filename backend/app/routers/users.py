from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from typing import Optional
from ..db import get_conn
from ..deps import require_module, get_current_user
from ..security import hash_password, verify_password, username_from_email
from ..validation import ActiveStatus
import json

router = APIRouter(prefix="/api/users", tags=["users"])

USER_COLUMNS = """
    u.id, u.first_name, u.last_name, u.username, u.email, u.mobile, u.status,
    u.created_at, u.updated_at,
    r.id AS role_id, r.name AS role_name
"""


class UserIn(BaseModel):
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    email: str
    password: str = Field(min_length=6)
    mobile: Optional[str] = None
    role_id: str
    status: ActiveStatus = "Active"


class UserUpdate(BaseModel):
    first_name: Optional[str] = Field(default=None, min_length=1)
    last_name: Optional[str] = Field(default=None, min_length=1)
    email: Optional[str] = None
    password: Optional[str] = Field(default=None, min_length=6)
    mobile: Optional[str] = None
    role_id: Optional[str] = None
    status: Optional[ActiveStatus] = None


class ProfileUpdate(BaseModel):
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    email: str
    mobile: Optional[str] = None


class PasswordChangeIn(BaseModel):
    current_password: str
    new_password: str = Field(min_length=6)


def normalize_email(raw: Optional[str]) -> str:
    email = (raw or "").strip().lower()
    if "@" not in email or email.startswith("@") or email.endswith("@"):
        raise HTTPException(status_code=400, detail="please include a valid email")
    return email


def _normalize_mobile(raw: Optional[str]) -> Optional[str]:
    mobile = (raw or "").strip() or None
    if mobile and not (len(mobile) == 10 and mobile.isdigit()):
        raise HTTPException(status_code=400, detail="please enter a valid 10-digit mobile number")
    return mobile


def unique_username(cur, email: str, exclude_id: Optional[str] = None) -> str:
    """Email local part, suffixed 1, 2, ... until no other user holds it."""
    base = username_from_email(email)
    candidate = base
    counter = 1
    while True:
        cur.execute(
            "SELECT 1 FROM users WHERE username = %s AND id IS DISTINCT FROM %s",
            (candidate, exclude_id),
        )
        if not cur.fetchone():
            return candidate
        candidate = f"{base}{counter}"
        counter += 1


def _ensure_role(cur, role_id: str):
    cur.execute("SELECT id, name FROM roles WHERE id = %s", (role_id,))
    role = cur.fetchone()
    if not role:
        raise HTTPException(status_code=400, detail="invalid role specified")
    return role


def _fetch_user(cur, user_id: str):
    cur.execute(
        f"""
        SELECT {USER_COLUMNS}
        FROM users u
        JOIN roles r ON r.id = u.role_id
        WHERE u.id = %s
        """,
        (user_id,),
    )
    return cur.fetchone()


@router.get("", dependencies=[Depends(require_module("users"))])
def list_users():
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT {USER_COLUMNS}
                FROM users u
                JOIN roles r ON r.id = u.role_id
                ORDER BY u.created_at DESC
                """
            )
            return {"users": cur.fetchall()}


@router.get("/profile")
def get_profile(user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.cursor() as cur:
            row = _fetch_user(cur, user["user_id"])
            if not row:
                raise HTTPException(status_code=404, detail="user not found")
            return {"user": row}


@router.put("/profile")
def update_profile(data: ProfileUpdate, user=Depends(get_current_user)):
    email = normalize_email(data.email)
    mobile = _normalize_mobile(data.mobile)
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                current = _fetch_user(cur, user["user_id"])
                if not current:
                    raise HTTPException(status_code=404, detail="user not found")
                username = current["username"]
                if email != current["email"]:
                    username = unique_username(cur, email, exclude_id=user["user_id"])
                cur.execute(
                    """
                    UPDATE users
                    SET first_name = %s, last_name = %s, email = %s, username = %s, mobile = %s, updated_at = now()
                    WHERE id = %s
                    """,
                    (data.first_name.strip(), data.last_name.strip(), email, username, mobile, user["user_id"]),
                )
                return {"user": _fetch_user(cur, user["user_id"])}


@router.put("/profile/password")
def change_password(data: PasswordChangeIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT hashed_password FROM users WHERE id = %s", (user["user_id"],))
                row = cur.fetchone()
                if not row:
                    raise HTTPException(status_code=404, detail="user not found")
                if not verify_password(data.current_password, row["hashed_password"]):
                    raise HTTPException(status_code=400, detail="current password is incorrect")
                cur.execute(
                    "UPDATE users SET hashed_password = %s, updated_at = now() WHERE id = %s",
                    (hash_password(data.new_password), user["user_id"]),
                )
                cur.execute(
                    """
                    INSERT INTO audit_logs (id, user_id, action, entity_type, entity_id, details)
                    VALUES (gen_random_uuid(), %s, 'users.password_change', 'user', %s, '{}'::jsonb)
                    """,
                    (user["user_id"], str(user["user_id"])),
                )
    return {"ok": True}


@router.post("", dependencies=[Depends(require_module("users"))])
def create_user(data: UserIn, user=Depends(get_current_user)):
    email = normalize_email(data.email)
    mobile = _normalize_mobile(data.mobile)
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT 1 FROM users WHERE email = %s", (email,))
                if cur.fetchone():
                    raise HTTPException(status_code=400, detail="user already exists with this email")
                _ensure_role(cur, data.role_id)
                username = unique_username(cur, email)
                cur.execute(
                    """
                    INSERT INTO users (id, first_name, last_name, username, email, hashed_password, mobile, role_id, status)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING id
                    """,
                    (
                        data.first_name.strip(),
                        data.last_name.strip(),
                        username,
                        email,
                        hash_password(data.password),
                        mobile,
                        data.role_id,
                        data.status,
                    ),
                )
                uid = cur.fetchone()["id"]
                cur.execute(
                    """
                    INSERT INTO audit_logs (id, user_id, action, entity_type, entity_id, details)
                    VALUES (gen_random_uuid(), %s, 'users.create', 'user', %s, %s::jsonb)
                    """,
                    (user["user_id"], str(uid), json.dumps({"email": email, "role_id": data.role_id})),
                )
                return {"user": _fetch_user(cur, uid)}


@router.get("/{user_id}", dependencies=[Depends(require_module("users"))])
def get_user(user_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            row = _fetch_user(cur, user_id)
            if not row:
                raise HTTPException(status_code=404, detail="user not found")
            return {"user": row}


@router.put("/{user_id}", dependencies=[Depends(require_module("users"))])
def update_user(user_id: str, data: UserUpdate, user=Depends(get_current_user)):
    patch = data.model_dump(exclude_unset=True)
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                current = _fetch_user(cur, user_id)
                if not current:
                    raise HTTPException(status_code=404, detail="user not found")
                fields = []
                params = []
                if "email" in patch:
                    email = normalize_email(patch.pop("email"))
                    if email != current["email"]:
                        fields.extend(["email = %s", "username = %s"])
                        params.extend([email, unique_username(cur, email, exclude_id=user_id)])
                if "password" in patch:
                    password = patch.pop("password")
                    if password:
                        fields.append("hashed_password = %s")
                        params.append(hash_password(password))
                if "mobile" in patch:
                    patch["mobile"] = _normalize_mobile(patch["mobile"])
                if patch.get("role_id"):
                    _ensure_role(cur, patch["role_id"])
                for k, v in patch.items():
                    if v is None and k != "mobile":
                        continue
                    fields.append(f"{k} = %s")
                    params.append(v.strip() if isinstance(v, str) else v)
                if fields:
                    params.append(user_id)
                    cur.execute(
                        f"""
                        UPDATE users
                        SET {', '.join(fields)}, updated_at = now()
                        WHERE id = %s
                        """,
                        params,
                    )
                    if patch.get("status") == "Inactive" or "role_id" in patch:
                        # Role or status changes apply on the next request.
                        cur.execute("UPDATE auth_sessions SET is_active = false WHERE user_id = %s", (user_id,))
                    cur.execute(
                        """
                        INSERT INTO audit_logs (id, user_id, action, entity_type, entity_id, details)
                        VALUES (gen_random_uuid(), %s, 'users.update', 'user', %s, %s::jsonb)
                        """,
                        (user["user_id"], user_id, json.dumps({"fields": sorted(data.model_fields_set)})),
                    )
                return {"user": _fetch_user(cur, user_id)}


@router.delete("/{user_id}", dependencies=[Depends(require_module("users"))])
def delete_user(user_id: str, user=Depends(get_current_user)):
    if str(user_id) == str(user["user_id"]):
        raise HTTPException(status_code=400, detail="you cannot delete your own account")
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("DELETE FROM users WHERE id = %s RETURNING id, email", (user_id,))
                row = cur.fetchone()
                if not row:
                    raise HTTPException(status_code=404, detail="user not found")
                cur.execute(
                    """
                    INSERT INTO audit_logs (id, user_id, action, entity_type, entity_id, details)
                    VALUES (gen_random_uuid(), %s, 'users.delete', 'user', %s, %s::jsonb)
                    """,
                    (user["user_id"], user_id, json.dumps({"email": row["email"]})),
                )
    return {"ok": True}
