from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from ..db import get_conn
from ..deps import get_current_user
from ..exports import csv_response
from ..ledger import receivable_status, record_adjustment
from ..payment_guards import assert_not_overpaid
from ..validation import NonBlankStr, as_utc

router = APIRouter(prefix="/api/account-receivable", tags=["account-receivable"])

RECEIVABLE_SELECT = """
    SELECT ar.id, ar.order_id, ar.invoice_number, ar.date, ar.due_date,
           ar.customer_id, ar.customer_name, c.customer_id AS customer_code, c.email AS customer_email,
           ar.description, ar.amount, ar.amount_paid, ar.collected, ar.balance, ar.status,
           ar.created_at, ar.updated_at
    FROM account_receivables ar
    LEFT JOIN customers c ON c.id = ar.customer_id
"""

EXPORT_COLUMNS = [
    "invoice_number", "order_id", "customer_name", "date", "due_date",
    "amount", "amount_paid", "balance", "status",
]


class ReceivableIn(BaseModel):
    customer_id: str
    invoice_number: NonBlankStr
    order_id: Optional[str] = None
    description: str = ""
    date: Optional[datetime] = None
    due_date: datetime
    amount: Decimal = Field(gt=0)
    amount_paid: Decimal = Field(default=Decimal("0"), ge=0)


class ReceivableUpdate(BaseModel):
    customer_id: Optional[str] = None
    invoice_number: Optional[NonBlankStr] = None
    description: Optional[str] = None
    due_date: Optional[datetime] = None
    amount: Optional[Decimal] = Field(default=None, gt=0)
    amount_paid: Optional[Decimal] = Field(default=None, ge=0)


class CollectionIn(BaseModel):
    amount: Decimal = Field(gt=0)


def _with_live_status(rows, now: Optional[datetime] = None):
    # Overdue depends on the clock, so the stored status is re-derived on read.
    now = now or datetime.now(timezone.utc)
    for r in rows:
        r["status"] = receivable_status(r["amount"], r["amount_paid"], r["due_date"], now)
    return rows


def _load_customer(cur, customer_id: str) -> dict:
    cur.execute("SELECT id, name FROM customers WHERE id = %s", (customer_id,))
    customer = cur.fetchone()
    if not customer:
        raise HTTPException(status_code=404, detail="customer not found")
    return customer


def _fetch_receivable(cur, receivable_id) -> dict:
    cur.execute(RECEIVABLE_SELECT + " WHERE ar.id = %s", (receivable_id,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="account receivable not found")
    return _with_live_status([row])[0]


@router.get("")
def list_receivables(status: Optional[str] = None):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(RECEIVABLE_SELECT + " ORDER BY ar.created_at DESC")
            rows = _with_live_status(cur.fetchall())
    if status:
        rows = [r for r in rows if r["status"] == status]
    return {"receivables": rows}


@router.get("/export")
def export_receivables():
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(RECEIVABLE_SELECT + " ORDER BY ar.created_at DESC")
            rows = _with_live_status(cur.fetchall())
    return csv_response(EXPORT_COLUMNS, rows, "account_receivables.csv")


@router.get("/customer/{customer_id}")
def list_customer_receivables(customer_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(RECEIVABLE_SELECT + " WHERE ar.customer_id = %s ORDER BY ar.created_at DESC", (customer_id,))
            return {"receivables": _with_live_status(cur.fetchall())}


@router.get("/{receivable_id}")
def get_receivable(receivable_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"receivable": _fetch_receivable(cur, receivable_id)}


@router.post("", status_code=201)
def create_receivable(data: ReceivableIn, user=Depends(get_current_user)):
    assert_not_overpaid(data.amount, data.amount_paid, detail="amount paid cannot exceed total amount")
    date = as_utc(data.date) or datetime.now(timezone.utc)
    due_date = as_utc(data.due_date)
    status = receivable_status(data.amount, data.amount_paid, due_date)
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                customer = _load_customer(cur, data.customer_id)
                cur.execute(
                    """
                    INSERT INTO account_receivables
                      (id, order_id, invoice_number, date, due_date, customer_id, customer_name, description,
                       amount, amount_paid, balance, status)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING id
                    """,
                    (
                        (data.order_id or "").strip() or None, data.invoice_number, date, due_date,
                        customer["id"], customer["name"], data.description.strip(),
                        data.amount, data.amount_paid, data.amount - data.amount_paid, status,
                    ),
                )
                receivable_id = cur.fetchone()["id"]
                record_adjustment(
                    cur, user["user_id"], "receivable_create", "account_receivable", receivable_id,
                    {"invoice_number": data.invoice_number, "amount": data.amount},
                )
                return {"receivable": _fetch_receivable(cur, receivable_id)}


@router.put("/{receivable_id}")
def update_receivable(receivable_id: str, data: ReceivableUpdate, user=Depends(get_current_user)):
    patch = {k: v for k, v in data.model_dump(exclude_unset=True).items() if v is not None}
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, customer_id, customer_name, invoice_number, description, due_date, amount, amount_paid, collected
                    FROM account_receivables
                    WHERE id = %s
                    FOR UPDATE
                    """,
                    (receivable_id,),
                )
                current = cur.fetchone()
                if not current:
                    raise HTTPException(status_code=404, detail="account receivable not found")
                ar = dict(current)
                ar.update(patch)
                if "customer_id" in patch and str(patch["customer_id"]) != str(current["customer_id"]):
                    ar["customer_name"] = _load_customer(cur, patch["customer_id"])["name"]
                ar["due_date"] = as_utc(ar["due_date"])
                amount = Decimal(ar["amount"])
                paid = Decimal(ar["amount_paid"])
                assert_not_overpaid(amount, paid, detail="amount paid cannot exceed total amount")
                # A manual paid-amount edit moves the collected part by the same delta.
                collected = max(Decimal(current["collected"]) + paid - Decimal(current["amount_paid"]), Decimal("0"))
                cur.execute(
                    """
                    UPDATE account_receivables
                    SET customer_id = %s, customer_name = %s, invoice_number = %s, description = %s,
                        due_date = %s, amount = %s, amount_paid = %s, balance = %s, status = %s,
                        collected = %s,
                        updated_at = now()
                    WHERE id = %s
                    """,
                    (
                        ar["customer_id"], ar["customer_name"], ar["invoice_number"], ar["description"],
                        ar["due_date"], amount, paid, amount - paid,
                        receivable_status(amount, paid, ar["due_date"]), collected, receivable_id,
                    ),
                )
                record_adjustment(
                    cur, user["user_id"], "receivable_update", "account_receivable", receivable_id,
                    {"amount": amount, "amount_paid": paid},
                )
                return {"receivable": _fetch_receivable(cur, receivable_id)}


@router.post("/{receivable_id}/payments")
def record_collection(receivable_id: str, data: CollectionIn, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT id, due_date, amount, amount_paid FROM account_receivables WHERE id = %s FOR UPDATE",
                    (receivable_id,),
                )
                ar = cur.fetchone()
                if not ar:
                    raise HTTPException(status_code=404, detail="account receivable not found")
                amount = Decimal(ar["amount"])
                remaining = amount - Decimal(ar["amount_paid"])
                if remaining <= 0:
                    raise HTTPException(status_code=400, detail="receivable is already fully received")
                applied = min(data.amount, remaining)
                paid = Decimal(ar["amount_paid"]) + applied
                cur.execute(
                    """
                    UPDATE account_receivables
                    SET amount_paid = %s, collected = collected + %s, balance = %s, status = %s, updated_at = now()
                    WHERE id = %s
                    """,
                    (paid, applied, amount - paid, receivable_status(amount, paid, ar["due_date"]), receivable_id),
                )
                record_adjustment(
                    cur, user["user_id"], "receivable_collect", "account_receivable", receivable_id,
                    {"requested": data.amount, "applied": applied, "amount_paid": paid},
                )
                return {"receivable": _fetch_receivable(cur, receivable_id), "applied": applied}


@router.delete("/{receivable_id}")
def delete_receivable(receivable_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM account_receivables WHERE id = %s RETURNING id, invoice_number",
                    (receivable_id,),
                )
                row = cur.fetchone()
                if not row:
                    raise HTTPException(status_code=404, detail="account receivable not found")
                record_adjustment(
                    cur, user["user_id"], "receivable_delete", "account_receivable", receivable_id,
                    {"invoice_number": row["invoice_number"]},
                )
    return {"ok": True}
