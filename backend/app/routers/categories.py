from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from typing import Optional
from ..db import get_conn
from ..deps import get_current_user
from ..ledger import recount_category, record_adjustment

router = APIRouter(prefix="/api/categories", tags=["categories"])

CATEGORY_COLUMNS = "id, name, description, total_products, total_stock, created_at, updated_at"


class CategoryIn(BaseModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None


def _assert_name_free(cur, name: str, exclude_id: Optional[str] = None):
    # Names are unique regardless of case.
    cur.execute(
        "SELECT 1 FROM categories WHERE lower(name) = lower(%s) AND id IS DISTINCT FROM %s",
        (name, exclude_id),
    )
    if cur.fetchone():
        raise HTTPException(status_code=400, detail="category already exists")


@router.get("")
def list_categories():
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(f"SELECT {CATEGORY_COLUMNS} FROM categories ORDER BY name")
            return {"categories": cur.fetchall()}


@router.get("/{category_id}")
def get_category(category_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(f"SELECT {CATEGORY_COLUMNS} FROM categories WHERE id = %s", (category_id,))
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="category not found")
            return {"category": row}


@router.get("/{category_id}/stock")
def category_stock(category_id: str):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT name FROM categories WHERE id = %s", (category_id,))
                row = cur.fetchone()
                if not row:
                    raise HTTPException(status_code=404, detail="category not found")
                totals = recount_category(cur, row["name"])
                cur.execute(
                    "SELECT id, product_id, name, stock FROM products WHERE category = %s ORDER BY name",
                    (row["name"],),
                )
                return {
                    "total_products": totals["total_products"],
                    "total_stock": totals["total_stock"],
                    "products": cur.fetchall(),
                }


@router.post("", status_code=201)
def create_category(data: CategoryIn, user=Depends(get_current_user)):
    name = data.name.strip()
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                _assert_name_free(cur, name)
                cur.execute(
                    "INSERT INTO categories (id, name, description) VALUES (gen_random_uuid(), %s, %s) RETURNING id",
                    (name, (data.description or "").strip() or None),
                )
                category_id = cur.fetchone()["id"]
                recount_category(cur, name)
                record_adjustment(cur, user["user_id"], "category_create", "category", category_id, {"name": name})
                cur.execute(f"SELECT {CATEGORY_COLUMNS} FROM categories WHERE id = %s", (category_id,))
                return {"category": cur.fetchone()}


@router.put("/{category_id}")
def update_category(category_id: str, data: CategoryUpdate, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id, name FROM categories WHERE id = %s FOR UPDATE", (category_id,))
                current = cur.fetchone()
                if not current:
                    raise HTTPException(status_code=404, detail="category not found")
                fields = []
                params = []
                renamed_to = None
                if data.name and data.name.strip() != current["name"]:
                    renamed_to = data.name.strip()
                    _assert_name_free(cur, renamed_to, exclude_id=category_id)
                    fields.append("name = %s")
                    params.append(renamed_to)
                if "description" in data.model_fields_set:
                    fields.append("description = %s")
                    params.append((data.description or "").strip() or None)
                if fields:
                    params.append(category_id)
                    cur.execute(
                        f"UPDATE categories SET {', '.join(fields)}, updated_at = now() WHERE id = %s",
                        params,
                    )
                if renamed_to:
                    cur.execute(
                        "UPDATE products SET category = %s, updated_at = now() WHERE category = %s",
                        (renamed_to, current["name"]),
                    )
                    record_adjustment(
                        cur, user["user_id"], "category_rename", "category", category_id,
                        {"from": current["name"], "to": renamed_to, "products": cur.rowcount},
                    )
                cur.execute(f"SELECT {CATEGORY_COLUMNS} FROM categories WHERE id = %s", (category_id,))
                return {"category": cur.fetchone()}


@router.delete("/{category_id}")
def delete_category(category_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id, name FROM categories WHERE id = %s FOR UPDATE", (category_id,))
                category = cur.fetchone()
                if not category:
                    raise HTTPException(status_code=404, detail="category not found")
                cur.execute("SELECT COUNT(*)::int AS n FROM products WHERE category = %s", (category["name"],))
                if cur.fetchone()["n"]:
                    raise HTTPException(status_code=400, detail="cannot delete category with associated products")
                cur.execute("DELETE FROM categories WHERE id = %s", (category_id,))
                record_adjustment(
                    cur, user["user_id"], "category_delete", "category", category_id, {"name": category["name"]}
                )
    return {"ok": True}
