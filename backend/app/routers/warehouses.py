from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from typing import Optional
from ..db import get_conn
from ..deps import get_current_user
from ..ledger import recount_warehouse, record_adjustment

router = APIRouter(prefix="/api/warehouses", tags=["warehouses"])

WAREHOUSE_COLUMNS = "id, name, description, total_products, stock_count, created_at, updated_at"


class WarehouseIn(BaseModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None


class WarehouseUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None


@router.get("")
def list_warehouses():
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(f"SELECT {WAREHOUSE_COLUMNS} FROM warehouses ORDER BY name")
            return {"warehouses": cur.fetchall()}


@router.get("/{warehouse_id}")
def get_warehouse(warehouse_id: str):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                row = recount_warehouse(cur, warehouse_id)
                if not row:
                    raise HTTPException(status_code=404, detail="warehouse not found")
                cur.execute(f"SELECT {WAREHOUSE_COLUMNS} FROM warehouses WHERE id = %s", (warehouse_id,))
                return {"warehouse": cur.fetchone()}


@router.post("", status_code=201)
def create_warehouse(data: WarehouseIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    INSERT INTO warehouses (id, name, description)
                    VALUES (gen_random_uuid(), %s, %s)
                    RETURNING {WAREHOUSE_COLUMNS}
                    """,
                    (data.name.strip(), (data.description or "").strip() or None),
                )
                row = cur.fetchone()
                record_adjustment(cur, user["user_id"], "warehouse_create", "warehouse", row["id"], {"name": row["name"]})
                return {"warehouse": row}


@router.put("/{warehouse_id}")
def update_warehouse(warehouse_id: str, data: WarehouseUpdate, user=Depends(get_current_user)):
    fields = []
    params = []
    if data.name:
        fields.append("name = %s")
        params.append(data.name.strip())
    if "description" in data.model_fields_set:
        fields.append("description = %s")
        params.append((data.description or "").strip() or None)
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                if fields:
                    params.append(warehouse_id)
                    cur.execute(
                        f"UPDATE warehouses SET {', '.join(fields)}, updated_at = now() WHERE id = %s",
                        params,
                    )
                cur.execute(f"SELECT {WAREHOUSE_COLUMNS} FROM warehouses WHERE id = %s", (warehouse_id,))
                row = cur.fetchone()
                if not row:
                    raise HTTPException(status_code=404, detail="warehouse not found")
                return {"warehouse": row}


@router.delete("/{warehouse_id}")
def delete_warehouse(warehouse_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id, name FROM warehouses WHERE id = %s FOR UPDATE", (warehouse_id,))
                warehouse = cur.fetchone()
                if not warehouse:
                    raise HTTPException(status_code=404, detail="warehouse not found")
                cur.execute("SELECT COUNT(*)::int AS n FROM products WHERE warehouse_id = %s", (warehouse_id,))
                if cur.fetchone()["n"]:
                    raise HTTPException(status_code=400, detail="cannot delete warehouse with products")
                cur.execute("DELETE FROM warehouses WHERE id = %s", (warehouse_id,))
                record_adjustment(
                    cur, user["user_id"], "warehouse_delete", "warehouse", warehouse_id, {"name": warehouse["name"]}
                )
    return {"ok": True}
