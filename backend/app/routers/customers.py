from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from typing import Optional
from ..business_ids import next_customer_id
from ..db import get_conn
from ..deps import get_current_user
from ..exports import csv_response
from .users import normalize_email
import json

router = APIRouter(prefix="/api/customers", tags=["customers"])

CUSTOMER_COLUMNS = "id, customer_id, name, email, phone, address, created_at, updated_at"


class CustomerIn(BaseModel):
    name: str = Field(min_length=1)
    email: str
    phone: str = Field(min_length=1)
    address: str = Field(min_length=1)


class CustomerUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None


@router.get("")
def list_customers():
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(f"SELECT {CUSTOMER_COLUMNS} FROM customers ORDER BY created_at DESC")
            return {"customers": cur.fetchall()}


@router.get("/export")
def export_customers():
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT customer_id, name, email, phone, address FROM customers ORDER BY customer_id")
            rows = cur.fetchall()
    return csv_response(["customer_id", "name", "email", "phone", "address"], rows, "customers.csv")


@router.get("/{customer_id}")
def get_customer(customer_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(f"SELECT {CUSTOMER_COLUMNS} FROM customers WHERE id = %s", (customer_id,))
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="customer not found")
            return {"customer": row}


@router.post("", status_code=201)
def create_customer(data: CustomerIn, user=Depends(get_current_user)):
    email = normalize_email(data.email)
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                code = next_customer_id(cur)
                cur.execute(
                    f"""
                    INSERT INTO customers (id, customer_id, name, email, phone, address)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s)
                    RETURNING {CUSTOMER_COLUMNS}
                    """,
                    (code, data.name.strip(), email, data.phone.strip(), data.address.strip()),
                )
                row = cur.fetchone()
                cur.execute(
                    """
                    INSERT INTO audit_logs (id, user_id, action, entity_type, entity_id, details)
                    VALUES (gen_random_uuid(), %s, 'customers.create', 'customer', %s, %s::jsonb)
                    """,
                    (user["user_id"], str(row["id"]), json.dumps({"customer_id": code})),
                )
                return {"customer": row}


@router.put("/{customer_id}")
def update_customer(customer_id: str, data: CustomerUpdate, user=Depends(get_current_user)):
    # Blank values keep the stored value.
    patch = {k: (v or "").strip() for k, v in data.model_dump(exclude_unset=True).items()}
    patch = {k: v for k, v in patch.items() if v}
    if "email" in patch:
        patch["email"] = normalize_email(patch["email"])
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id, email FROM customers WHERE id = %s FOR UPDATE", (customer_id,))
                current = cur.fetchone()
                if not current:
                    raise HTTPException(status_code=404, detail="customer not found")
                if patch.get("email") and patch["email"] != current["email"]:
                    cur.execute("SELECT 1 FROM customers WHERE email = %s AND id <> %s", (patch["email"], customer_id))
                    if cur.fetchone():
                        raise HTTPException(status_code=400, detail="email already exists")
                if patch:
                    fields = [f"{k} = %s" for k in patch]
                    params = list(patch.values()) + [customer_id]
                    cur.execute(
                        f"""
                        UPDATE customers
                        SET {', '.join(fields)}, updated_at = now()
                        WHERE id = %s
                        """,
                        params,
                    )
                    if "name" in patch:
                        # Open receivables carry the customer's name.
                        cur.execute(
                            "UPDATE account_receivables SET customer_name = %s, updated_at = now() WHERE customer_id = %s",
                            (patch["name"], customer_id),
                        )
                    cur.execute(
                        """
                        INSERT INTO audit_logs (id, user_id, action, entity_type, entity_id, details)
                        VALUES (gen_random_uuid(), %s, 'customers.update', 'customer', %s, %s::jsonb)
                        """,
                        (user["user_id"], customer_id, json.dumps({"fields": sorted(patch)})),
                    )
                cur.execute(f"SELECT {CUSTOMER_COLUMNS} FROM customers WHERE id = %s", (customer_id,))
                return {"customer": cur.fetchone()}


@router.delete("/{customer_id}")
def delete_customer(customer_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("DELETE FROM customers WHERE id = %s RETURNING customer_id", (customer_id,))
                row = cur.fetchone()
                if not row:
                    raise HTTPException(status_code=404, detail="customer not found")
                cur.execute(
                    """
                    INSERT INTO audit_logs (id, user_id, action, entity_type, entity_id, details)
                    VALUES (gen_random_uuid(), %s, 'customers.delete', 'customer', %s, %s::jsonb)
                    """,
                    (user["user_id"], customer_id, json.dumps({"customer_id": row["customer_id"]})),
                )
    return {"ok": True}
