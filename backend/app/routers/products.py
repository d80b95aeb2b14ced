from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from decimal import Decimal
from typing import Optional
from ..db import get_conn
from ..deps import get_current_user
from ..ledger import apply_product_counters, recount_counters, record_adjustment

router = APIRouter(prefix="/api/products", tags=["products"])

PRODUCT_SELECT = """
    SELECT p.id, p.product_id, p.barcode, p.name, p.brand, p.category, p.description,
           p.price, p.stock, p.warehouse_id, w.name AS warehouse_name,
           p.created_at, p.updated_at
    FROM products p
    JOIN warehouses w ON w.id = p.warehouse_id
"""


class ProductIn(BaseModel):
    product_id: str = Field(min_length=1)
    barcode: Optional[str] = None
    name: str = Field(min_length=1)
    brand: str = Field(min_length=1)
    category: str = Field(min_length=1)
    description: str = Field(min_length=1)
    price: Decimal = Field(gt=0)
    stock: int = Field(ge=0)
    warehouse_id: str


class ProductUpdate(BaseModel):
    product_id: Optional[str] = Field(default=None, min_length=1)
    barcode: Optional[str] = None
    name: Optional[str] = Field(default=None, min_length=1)
    brand: Optional[str] = Field(default=None, min_length=1)
    category: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = Field(default=None, min_length=1)
    price: Optional[Decimal] = Field(default=None, gt=0)
    stock: Optional[int] = Field(default=None, ge=0)
    warehouse_id: Optional[str] = None


def _ensure_warehouse(cur, warehouse_id: str):
    cur.execute("SELECT id FROM warehouses WHERE id = %s", (warehouse_id,))
    if not cur.fetchone():
        raise HTTPException(status_code=404, detail="warehouse not found")


def fetch_product(cur, product_id: str) -> dict:
    cur.execute(PRODUCT_SELECT + " WHERE p.id = %s", (product_id,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="product not found")
    return row


@router.get("")
def list_products():
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(PRODUCT_SELECT + " ORDER BY p.created_at DESC")
            return {"products": cur.fetchall()}


@router.get("/warehouse/{warehouse_id}")
def list_products_by_warehouse(warehouse_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(PRODUCT_SELECT + " WHERE p.warehouse_id = %s ORDER BY p.name", (warehouse_id,))
            return {"products": cur.fetchall()}


@router.get("/search")
def search_products(q: Optional[str] = None, barcode: Optional[str] = None, limit: int = 10):
    limit = max(1, min(int(limit or 10), 100))
    with get_conn() as conn:
        with conn.cursor() as cur:
            if barcode and barcode.strip():
                cur.execute(
                    PRODUCT_SELECT + " WHERE p.barcode = %s OR p.product_id = %s LIMIT %s",
                    (barcode.strip(), barcode.strip(), limit),
                )
            elif q and q.strip():
                like = f"%{q.strip()}%"
                cur.execute(
                    PRODUCT_SELECT
                    + """
                    WHERE p.product_id ILIKE %s
                       OR p.name ILIKE %s
                       OR p.brand ILIKE %s
                       OR p.category ILIKE %s
                       OR p.barcode ILIKE %s
                       OR p.description ILIKE %s
                    ORDER BY p.name
                    LIMIT %s
                    """,
                    (like, like, like, like, like, like, limit),
                )
            else:
                cur.execute(PRODUCT_SELECT + " ORDER BY p.name LIMIT %s", (limit,))
            return {"products": cur.fetchall()}


@router.get("/barcode/{barcode}")
def lookup_barcode(barcode: str):
    value = barcode.strip()
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                PRODUCT_SELECT + " WHERE p.barcode = %s OR p.product_id = %s OR p.id::text = %s LIMIT 1",
                (value, value, value),
            )
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="no product found with this barcode")
            return {"product": row}


@router.post("/recount-aggregates")
def recount_aggregates(user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                return recount_counters(cur, user_id=user["user_id"])


@router.get("/{product_id}")
def get_product(product_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"product": fetch_product(cur, product_id)}


@router.post("", status_code=201)
def create_product(data: ProductIn, user=Depends(get_current_user)):
    code = data.product_id.strip()
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                _ensure_warehouse(cur, data.warehouse_id)
                cur.execute(
                    """
                    INSERT INTO products
                      (id, product_id, barcode, name, brand, category, description, price, stock, warehouse_id)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING id, brand, category, warehouse_id, stock
                    """,
                    (
                        code,
                        (data.barcode or "").strip() or code,
                        data.name.strip(),
                        data.brand.strip(),
                        data.category.strip(),
                        data.description.strip(),
                        data.price,
                        data.stock,
                        data.warehouse_id,
                    ),
                )
                created = cur.fetchone()
                apply_product_counters(cur, created, 1)
                record_adjustment(
                    cur, user["user_id"], "product_create", "product", created["id"],
                    {"product_id": code, "stock": data.stock},
                )
                return {"product": fetch_product(cur, created["id"])}


@router.put("/{product_id}")
def update_product(product_id: str, data: ProductUpdate, user=Depends(get_current_user)):
    patch = {k: v for k, v in data.model_dump(exclude_unset=True).items() if v is not None}
    for k in ("product_id", "barcode", "name", "brand", "category", "description"):
        if k in patch:
            patch[k] = patch[k].strip()
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT id, product_id, brand, category, warehouse_id, stock FROM products WHERE id = %s FOR UPDATE",
                    (product_id,),
                )
                old = cur.fetchone()
                if not old:
                    raise HTTPException(status_code=404, detail="product not found")
                if not patch:
                    return {"product": fetch_product(cur, product_id)}
                if "warehouse_id" in patch:
                    _ensure_warehouse(cur, patch["warehouse_id"])
                fields = [f"{k} = %s" for k in patch]
                params = list(patch.values()) + [product_id]
                cur.execute(
                    f"""
                    UPDATE products
                    SET {', '.join(fields)}, updated_at = now()
                    WHERE id = %s
                    RETURNING id, brand, category, warehouse_id, stock
                    """,
                    params,
                )
                new = cur.fetchone()
                moved = any(str(old[k]) != str(new[k]) for k in ("brand", "category", "warehouse_id", "stock"))
                if moved:
                    apply_product_counters(cur, old, -1)
                    apply_product_counters(cur, new, 1)
                record_adjustment(
                    cur, user["user_id"], "product_update", "product", product_id,
                    {"fields": sorted(patch), "stock": new["stock"]},
                )
                return {"product": fetch_product(cur, product_id)}


@router.delete("/{product_id}")
def delete_product(product_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT
                      (SELECT COUNT(*) FROM purchases WHERE product_id = %s)
                      + (SELECT COUNT(*) FROM sales_orders WHERE product_id = %s)
                      + (SELECT COUNT(*) FROM purchase_returns WHERE product_id = %s)
                      + (SELECT COUNT(*) FROM sales_returns WHERE product_id = %s) AS n
                    """,
                    (product_id, product_id, product_id, product_id),
                )
                if int(cur.fetchone()["n"] or 0) > 0:
                    raise HTTPException(status_code=400, detail="product is referenced by orders and cannot be deleted")
                cur.execute(
                    "DELETE FROM products WHERE id = %s RETURNING id, product_id, brand, category, warehouse_id, stock",
                    (product_id,),
                )
                old = cur.fetchone()
                if not old:
                    raise HTTPException(status_code=404, detail="product not found")
                apply_product_counters(cur, old, -1)
                record_adjustment(
                    cur, user["user_id"], "product_delete", "product", product_id,
                    {"product_id": old["product_id"], "stock": old["stock"]},
                )
    return {"ok": True}
