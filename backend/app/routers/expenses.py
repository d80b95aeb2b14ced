from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from ..business_ids import next_expense_number
from ..db import get_conn
from ..deps import get_current_user
from ..ledger import record_adjustment
from ..validation import ExpensePaymentType, ExpenseStatus, NonBlankStr, as_utc

router = APIRouter(prefix="/api/expenses", tags=["expenses"])

EXPENSE_COLUMNS = """
    id, expense_number, date, category, amount, payment_type, description, vendor, reference, status,
    created_at, updated_at
"""


class ExpenseIn(BaseModel):
    date: Optional[datetime] = None
    category: NonBlankStr
    amount: Decimal = Field(gt=0)
    payment_type: ExpensePaymentType
    description: Optional[str] = None
    vendor: Optional[str] = None
    reference: Optional[str] = None
    status: ExpenseStatus = "Pending"


class ExpenseUpdate(BaseModel):
    date: Optional[datetime] = None
    category: Optional[NonBlankStr] = None
    amount: Optional[Decimal] = Field(default=None, gt=0)
    payment_type: Optional[ExpensePaymentType] = None
    description: Optional[str] = None
    vendor: Optional[str] = None
    reference: Optional[str] = None
    status: Optional[ExpenseStatus] = None


def _clean(v: Optional[str]) -> str:
    return (v or "").strip()


def _fetch_expense(cur, expense_id) -> dict:
    cur.execute(f"SELECT {EXPENSE_COLUMNS} FROM expenses WHERE id = %s", (expense_id,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="expense not found")
    return row


@router.get("")
def list_expenses(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=500),
    category: Optional[str] = None,
    payment_type: Optional[str] = None,
    status: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    search: Optional[str] = None,
):
    where = ["1=1"]
    params = []
    if category:
        where.append("category = %s")
        params.append(category)
    if payment_type:
        where.append("payment_type = %s")
        params.append(payment_type)
    if status:
        where.append("status = %s")
        params.append(status)
    if start_date:
        where.append("date >= %s")
        params.append(as_utc(start_date))
    if end_date:
        where.append("date <= %s")
        params.append(as_utc(end_date))
    if search:
        needle = f"%{search.strip()}%"
        where.append(
            "(expense_number ILIKE %s OR description ILIKE %s OR vendor ILIKE %s OR reference ILIKE %s)"
        )
        params.extend([needle] * 4)
    sql_where = " AND ".join(where)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(f"SELECT COUNT(*)::int AS n FROM expenses WHERE {sql_where}", params)
            total = cur.fetchone()["n"]
            cur.execute(
                f"""
                SELECT {EXPENSE_COLUMNS}
                FROM expenses
                WHERE {sql_where}
                ORDER BY date DESC, created_at DESC
                LIMIT %s OFFSET %s
                """,
                params + [limit, (page - 1) * limit],
            )
            return {
                "expenses": cur.fetchall(),
                "pagination": {
                    "current": page,
                    "pages": (total + limit - 1) // limit,
                    "total": total,
                    "limit": limit,
                },
            }


@router.get("/stats")
def expense_stats():
    now = datetime.now(timezone.utc)
    start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
    start_of_month = start_of_day.replace(day=1)
    start_of_year = start_of_month.replace(month=1)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT COALESCE(SUM(amount), 0) AS total,
                       COUNT(*)::int AS total_count,
                       COALESCE(SUM(amount) FILTER (WHERE date >= %s), 0) AS today,
                       COUNT(*) FILTER (WHERE date >= %s)::int AS today_count,
                       COALESCE(SUM(amount) FILTER (WHERE date >= %s), 0) AS monthly,
                       COUNT(*) FILTER (WHERE date >= %s)::int AS monthly_count,
                       COALESCE(SUM(amount) FILTER (WHERE date >= %s), 0) AS yearly,
                       COUNT(*) FILTER (WHERE date >= %s)::int AS yearly_count
                FROM expenses
                """,
                (start_of_day, start_of_day, start_of_month, start_of_month, start_of_year, start_of_year),
            )
            stats = dict(cur.fetchone())
            cur.execute(
                """
                SELECT category, SUM(amount) AS total, COUNT(*)::int AS count
                FROM expenses
                GROUP BY category
                ORDER BY total DESC
                LIMIT 10
                """
            )
            stats["category_breakdown"] = cur.fetchall()
            cur.execute(
                """
                SELECT payment_type, SUM(amount) AS total, COUNT(*)::int AS count
                FROM expenses
                GROUP BY payment_type
                ORDER BY total DESC
                """
            )
            stats["payment_type_breakdown"] = cur.fetchall()
            return stats


@router.get("/categories")
def expense_categories():
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT DISTINCT category FROM expenses ORDER BY category")
            return {"categories": [r["category"] for r in cur.fetchall()]}


@router.get("/{expense_id}")
def get_expense(expense_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"expense": _fetch_expense(cur, expense_id)}


@router.post("", status_code=201)
def create_expense(data: ExpenseIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                expense_number = next_expense_number(cur)
                cur.execute(
                    f"""
                    INSERT INTO expenses
                      (id, expense_number, date, category, amount, payment_type, description, vendor, reference, status)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING {EXPENSE_COLUMNS}
                    """,
                    (
                        expense_number, as_utc(data.date) or datetime.now(timezone.utc), data.category,
                        data.amount, data.payment_type, _clean(data.description), _clean(data.vendor),
                        _clean(data.reference), data.status,
                    ),
                )
                row = cur.fetchone()
                record_adjustment(
                    cur, user["user_id"], "expense_create", "expense", expense_number,
                    {"category": data.category, "amount": data.amount},
                )
                return {"expense": row}


@router.put("/{expense_id}")
def update_expense(expense_id: str, data: ExpenseUpdate, user=Depends(get_current_user)):
    fields = []
    params = []
    for key in ("category", "amount", "payment_type", "status"):
        value = getattr(data, key)
        if value is not None:
            fields.append(f"{key} = %s")
            params.append(value)
    if data.date is not None:
        fields.append("date = %s")
        params.append(as_utc(data.date))
    for key in ("description", "vendor", "reference"):
        if key in data.model_fields_set:
            fields.append(f"{key} = %s")
            params.append(_clean(getattr(data, key)))
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                if fields:
                    params.append(expense_id)
                    cur.execute(
                        f"UPDATE expenses SET {', '.join(fields)}, updated_at = now() WHERE id = %s",
                        params,
                    )
                    if cur.rowcount == 0:
                        raise HTTPException(status_code=404, detail="expense not found")
                return {"expense": _fetch_expense(cur, expense_id)}


@router.delete("/{expense_id}")
def delete_expense(expense_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("DELETE FROM expenses WHERE id = %s RETURNING expense_number, amount", (expense_id,))
                row = cur.fetchone()
                if not row:
                    raise HTTPException(status_code=404, detail="expense not found")
                record_adjustment(
                    cur, user["user_id"], "expense_delete", "expense", row["expense_number"],
                    {"amount": row["amount"]},
                )
    return {"ok": True}
