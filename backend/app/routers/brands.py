from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from typing import Optional
from ..db import get_conn
from ..deps import get_current_user
from ..ledger import recount_brand, record_adjustment

router = APIRouter(prefix="/api/brands", tags=["brands"])

BRAND_COLUMNS = "id, name, description, total_products, total_stock, active, created_at, updated_at"


class BrandIn(BaseModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    active: bool = True


class BrandUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    active: Optional[bool] = None


def _assert_name_free(cur, name: str, exclude_id: Optional[str] = None):
    cur.execute(
        "SELECT 1 FROM brands WHERE lower(name) = lower(%s) AND id IS DISTINCT FROM %s",
        (name, exclude_id),
    )
    if cur.fetchone():
        raise HTTPException(status_code=400, detail="brand name already exists")


@router.get("")
def list_brands():
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(f"SELECT {BRAND_COLUMNS} FROM brands ORDER BY name")
            return {"brands": cur.fetchall()}


@router.get("/{brand_id}")
def get_brand(brand_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(f"SELECT {BRAND_COLUMNS} FROM brands WHERE id = %s", (brand_id,))
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="brand not found")
            return {"brand": row}


@router.get("/{brand_id}/stock")
def brand_stock(brand_id: str):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT name FROM brands WHERE id = %s", (brand_id,))
                row = cur.fetchone()
                if not row:
                    raise HTTPException(status_code=404, detail="brand not found")
                totals = recount_brand(cur, row["name"])
                cur.execute(
                    "SELECT id, product_id, name, stock FROM products WHERE brand = %s ORDER BY name",
                    (row["name"],),
                )
                return {
                    "total_products": totals["total_products"],
                    "total_stock": totals["total_stock"],
                    "products": cur.fetchall(),
                }


@router.post("", status_code=201)
def create_brand(data: BrandIn, user=Depends(get_current_user)):
    name = data.name.strip()
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                _assert_name_free(cur, name)
                cur.execute(
                    f"""
                    INSERT INTO brands (id, name, description, active)
                    VALUES (gen_random_uuid(), %s, %s, %s)
                    RETURNING {BRAND_COLUMNS}
                    """,
                    (name, (data.description or "").strip() or None, data.active),
                )
                row = cur.fetchone()
                # Products may already name this brand.
                recount_brand(cur, name)
                record_adjustment(cur, user["user_id"], "brand_create", "brand", row["id"], {"name": name})
                cur.execute(f"SELECT {BRAND_COLUMNS} FROM brands WHERE id = %s", (row["id"],))
                return {"brand": cur.fetchone()}


@router.put("/{brand_id}")
def update_brand(brand_id: str, data: BrandUpdate, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id, name FROM brands WHERE id = %s FOR UPDATE", (brand_id,))
                current = cur.fetchone()
                if not current:
                    raise HTTPException(status_code=404, detail="brand not found")
                fields = []
                params = []
                renamed_to = None
                if data.name and data.name.strip() != current["name"]:
                    renamed_to = data.name.strip()
                    _assert_name_free(cur, renamed_to, exclude_id=brand_id)
                    fields.append("name = %s")
                    params.append(renamed_to)
                if "description" in data.model_fields_set:
                    fields.append("description = %s")
                    params.append((data.description or "").strip() or None)
                if data.active is not None:
                    fields.append("active = %s")
                    params.append(data.active)
                if fields:
                    params.append(brand_id)
                    cur.execute(
                        f"UPDATE brands SET {', '.join(fields)}, updated_at = now() WHERE id = %s",
                        params,
                    )
                if renamed_to:
                    cur.execute(
                        "UPDATE products SET brand = %s, updated_at = now() WHERE brand = %s",
                        (renamed_to, current["name"]),
                    )
                    record_adjustment(
                        cur, user["user_id"], "brand_rename", "brand", brand_id,
                        {"from": current["name"], "to": renamed_to, "products": cur.rowcount},
                    )
                cur.execute(f"SELECT {BRAND_COLUMNS} FROM brands WHERE id = %s", (brand_id,))
                return {"brand": cur.fetchone()}


@router.delete("/{brand_id}")
def delete_brand(brand_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id, name FROM brands WHERE id = %s FOR UPDATE", (brand_id,))
                brand = cur.fetchone()
                if not brand:
                    raise HTTPException(status_code=404, detail="brand not found")
                cur.execute("SELECT COUNT(*)::int AS n FROM products WHERE brand = %s", (brand["name"],))
                if cur.fetchone()["n"]:
                    raise HTTPException(
                        status_code=400,
                        detail="cannot delete brand with associated products. please delete or update the products first.",
                    )
                cur.execute("DELETE FROM brands WHERE id = %s", (brand_id,))
                record_adjustment(cur, user["user_id"], "brand_delete", "brand", brand_id, {"name": brand["name"]})
    return {"ok": True}
