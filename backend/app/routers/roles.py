from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from typing import List, Optional
from ..db import get_conn
from ..deps import get_current_user
from ..validation import ActiveStatus
import json

router = APIRouter(prefix="/api/roles", tags=["roles"])


class ModuleVisibility(BaseModel):
    module: str = Field(min_length=1)
    visible: bool = False


class RoleIn(BaseModel):
    name: str = Field(min_length=1)
    status: ActiveStatus = "Active"
    permissions: List[ModuleVisibility] = []


class RoleUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    status: Optional[ActiveStatus] = None
    permissions: Optional[List[ModuleVisibility]] = None


def _replace_modules(cur, role_id, permissions: List[ModuleVisibility]):
    cur.execute("DELETE FROM role_modules WHERE role_id = %s", (role_id,))
    seen = set()
    for p in permissions:
        module = p.module.strip()
        if module in seen:
            continue
        seen.add(module)
        cur.execute(
            "INSERT INTO role_modules (role_id, module, visible) VALUES (%s, %s, %s)",
            (role_id, module, p.visible),
        )


def _fetch_role(cur, role_id):
    cur.execute("SELECT id, name, status, created_at FROM roles WHERE id = %s", (role_id,))
    role = cur.fetchone()
    if not role:
        return None
    cur.execute(
        "SELECT module, visible FROM role_modules WHERE role_id = %s ORDER BY module",
        (role_id,),
    )
    role["permissions"] = cur.fetchall()
    return role


@router.get("")
def list_roles():
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT r.id, r.name, r.status, r.created_at,
                       COALESCE(
                         json_agg(json_build_object('module', m.module, 'visible', m.visible) ORDER BY m.module)
                           FILTER (WHERE m.module IS NOT NULL),
                         '[]'::json
                       ) AS permissions
                FROM roles r
                LEFT JOIN role_modules m ON m.role_id = r.id
                GROUP BY r.id
                ORDER BY r.created_at DESC
                """
            )
            return {"roles": cur.fetchall()}


@router.get("/{role_id}")
def get_role(role_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            role = _fetch_role(cur, role_id)
            if not role:
                raise HTTPException(status_code=404, detail="role not found")
            return {"role": role}


@router.post("")
def create_role(data: RoleIn, user=Depends(get_current_user)):
    name = data.name.strip()
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT 1 FROM roles WHERE name = %s", (name,))
                if cur.fetchone():
                    raise HTTPException(status_code=400, detail="role already exists")
                cur.execute(
                    "INSERT INTO roles (id, name, status) VALUES (gen_random_uuid(), %s, %s) RETURNING id",
                    (name, data.status),
                )
                role_id = cur.fetchone()["id"]
                _replace_modules(cur, role_id, data.permissions)
                cur.execute(
                    """
                    INSERT INTO audit_logs (id, user_id, action, entity_type, entity_id, details)
                    VALUES (gen_random_uuid(), %s, 'roles.create', 'role', %s, %s::jsonb)
                    """,
                    (user["user_id"], str(role_id), json.dumps({"name": name})),
                )
                return {"role": _fetch_role(cur, role_id)}


@router.put("/{role_id}")
def update_role(role_id: str, data: RoleUpdate, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id FROM roles WHERE id = %s FOR UPDATE", (role_id,))
                if not cur.fetchone():
                    raise HTTPException(status_code=404, detail="role not found")
                fields = []
                params = []
                if data.name:
                    fields.append("name = %s")
                    params.append(data.name.strip())
                if data.status:
                    fields.append("status = %s")
                    params.append(data.status)
                if fields:
                    params.append(role_id)
                    cur.execute(f"UPDATE roles SET {', '.join(fields)} WHERE id = %s", params)
                if data.permissions is not None:
                    _replace_modules(cur, role_id, data.permissions)
                cur.execute(
                    """
                    INSERT INTO audit_logs (id, user_id, action, entity_type, entity_id, details)
                    VALUES (gen_random_uuid(), %s, 'roles.update', 'role', %s, %s::jsonb)
                    """,
                    (user["user_id"], role_id, json.dumps({"fields": sorted(data.model_fields_set)})),
                )
                return {"role": _fetch_role(cur, role_id)}


@router.delete("/{role_id}")
def delete_role(role_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT COUNT(*)::int AS n FROM users WHERE role_id = %s", (role_id,))
                if cur.fetchone()["n"]:
                    raise HTTPException(status_code=400, detail="role is assigned to users")
                cur.execute("DELETE FROM roles WHERE id = %s RETURNING name", (role_id,))
                row = cur.fetchone()
                if not row:
                    raise HTTPException(status_code=404, detail="role not found")
                cur.execute(
                    """
                    INSERT INTO audit_logs (id, user_id, action, entity_type, entity_id, details)
                    VALUES (gen_random_uuid(), %s, 'roles.delete', 'role', %s, %s::jsonb)
                    """,
                    (user["user_id"], role_id, json.dumps({"name": row["name"]})),
                )
    return {"ok": True}
