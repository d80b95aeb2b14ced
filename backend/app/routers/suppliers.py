from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from typing import Optional
from ..business_ids import next_supplier_id
from ..db import get_conn
from ..deps import get_current_user
from ..exports import csv_response
from .users import normalize_email
import json

router = APIRouter(prefix="/api/suppliers", tags=["suppliers"])

SUPPLIER_COLUMNS = "id, supplier_id, name, email, phone, address, created_at, updated_at"


class SupplierIn(BaseModel):
    name: str = Field(min_length=1)
    email: str
    phone: str = Field(min_length=1)
    address: str = Field(min_length=1)


class SupplierUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None


@router.get("")
def list_suppliers():
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(f"SELECT {SUPPLIER_COLUMNS} FROM suppliers ORDER BY created_at DESC")
            return {"suppliers": cur.fetchall()}


@router.get("/export")
def export_suppliers():
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT supplier_id, name, email, phone, address FROM suppliers ORDER BY supplier_id")
            rows = cur.fetchall()
    return csv_response(["supplier_id", "name", "email", "phone", "address"], rows, "suppliers.csv")


@router.get("/{supplier_id}")
def get_supplier(supplier_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(f"SELECT {SUPPLIER_COLUMNS} FROM suppliers WHERE id = %s", (supplier_id,))
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="supplier not found")
            return {"supplier": row}


@router.post("", status_code=201)
def create_supplier(data: SupplierIn, user=Depends(get_current_user)):
    email = normalize_email(data.email)
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                code = next_supplier_id(cur)
                cur.execute(
                    f"""
                    INSERT INTO suppliers (id, supplier_id, name, email, phone, address)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s)
                    RETURNING {SUPPLIER_COLUMNS}
                    """,
                    (code, data.name.strip(), email, data.phone.strip(), data.address.strip()),
                )
                row = cur.fetchone()
                cur.execute(
                    """
                    INSERT INTO audit_logs (id, user_id, action, entity_type, entity_id, details)
                    VALUES (gen_random_uuid(), %s, 'suppliers.create', 'supplier', %s, %s::jsonb)
                    """,
                    (user["user_id"], str(row["id"]), json.dumps({"supplier_id": code})),
                )
                return {"supplier": row}


def _update_supplier(supplier_id: str, data: SupplierUpdate, user) -> dict:
    patch = {k: (v or "").strip() for k, v in data.model_dump(exclude_unset=True).items()}
    patch = {k: v for k, v in patch.items() if v}
    if "email" in patch:
        patch["email"] = normalize_email(patch["email"])
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id, email FROM suppliers WHERE id = %s FOR UPDATE", (supplier_id,))
                current = cur.fetchone()
                if not current:
                    raise HTTPException(status_code=404, detail="supplier not found")
                if patch.get("email") and patch["email"] != current["email"]:
                    cur.execute("SELECT 1 FROM suppliers WHERE email = %s AND id <> %s", (patch["email"], supplier_id))
                    if cur.fetchone():
                        raise HTTPException(status_code=400, detail="email already exists")
                if patch:
                    fields = [f"{k} = %s" for k in patch]
                    params = list(patch.values()) + [supplier_id]
                    cur.execute(
                        f"""
                        UPDATE suppliers
                        SET {', '.join(fields)}, updated_at = now()
                        WHERE id = %s
                        """,
                        params,
                    )
                    if "name" in patch:
                        cur.execute(
                            "UPDATE account_payables SET supplier = %s, updated_at = now() WHERE supplier_id = %s",
                            (patch["name"], supplier_id),
                        )
                    cur.execute(
                        """
                        INSERT INTO audit_logs (id, user_id, action, entity_type, entity_id, details)
                        VALUES (gen_random_uuid(), %s, 'suppliers.update', 'supplier', %s, %s::jsonb)
                        """,
                        (user["user_id"], supplier_id, json.dumps({"fields": sorted(patch)})),
                    )
                cur.execute(f"SELECT {SUPPLIER_COLUMNS} FROM suppliers WHERE id = %s", (supplier_id,))
                return {"supplier": cur.fetchone()}


@router.put("/{supplier_id}")
def replace_supplier(supplier_id: str, data: SupplierUpdate, user=Depends(get_current_user)):
    return _update_supplier(supplier_id, data, user)


@router.patch("/{supplier_id}")
def update_supplier(supplier_id: str, data: SupplierUpdate, user=Depends(get_current_user)):
    return _update_supplier(supplier_id, data, user)


@router.delete("/{supplier_id}")
def delete_supplier(supplier_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("DELETE FROM suppliers WHERE id = %s RETURNING supplier_id", (supplier_id,))
                row = cur.fetchone()
                if not row:
                    raise HTTPException(status_code=404, detail="supplier not found")
                cur.execute(
                    """
                    INSERT INTO audit_logs (id, user_id, action, entity_type, entity_id, details)
                    VALUES (gen_random_uuid(), %s, 'suppliers.delete', 'supplier', %s, %s::jsonb)
                    """,
                    (user["user_id"], supplier_id, json.dumps({"supplier_id": row["supplier_id"]})),
                )
    return {"ok": True}
