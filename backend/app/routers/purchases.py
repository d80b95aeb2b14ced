from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional
from ..business_ids import next_purchase_order_id
from ..db import get_conn
from ..deps import get_current_user
from ..ledger import (
    apply_payable_delta,
    drop_purchase_cash_entries,
    payments_total,
    record_adjustment,
    sync_purchase_cash_entries,
)
from ..payment_guards import assert_bank_account, assert_not_overpaid
from ..validation import Note, PaymentType, as_utc

router = APIRouter(prefix="/api/purchases", tags=["purchases"])

PURCHASE_SELECT = """
    SELECT pu.id, pu.order_id, pu.date, pu.due_date,
           pu.supplier_id, pu.supplier_name, s.supplier_id AS supplier_code,
           pu.product_id, p.name AS product_name,
           pu.warehouse_id, w.name AS warehouse_name,
           pu.quantity, pu.total, pu.balance,
           COALESCE((
             SELECT json_agg(json_build_object(
                      'id', pp.id, 'amount', pp.amount, 'payment_type', pp.payment_type,
                      'account_number', pp.account_number, 'payment_note', pp.payment_note
                    ) ORDER BY pp.id)
             FROM purchase_payments pp
             WHERE pp.purchase_id = pu.id
           ), '[]'::json) AS payments,
           pu.created_at, pu.updated_at
    FROM purchases pu
    LEFT JOIN suppliers s ON s.id = pu.supplier_id
    JOIN products p ON p.id = pu.product_id
    JOIN warehouses w ON w.id = pu.warehouse_id
"""


class PurchasePaymentIn(BaseModel):
    amount: Decimal = Field(gt=0)
    payment_type: PaymentType
    account_number: Optional[str] = None
    payment_note: Optional[Note] = None


class PurchaseIn(BaseModel):
    date: Optional[datetime] = None
    due_date: datetime
    supplier_id: str
    product_id: str
    warehouse_id: str
    quantity: int = Field(ge=1)
    total: Decimal = Field(gt=0)
    payments: List[PurchasePaymentIn] = []


class PurchaseUpdate(BaseModel):
    date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    supplier_id: Optional[str] = None
    product_id: Optional[str] = None
    warehouse_id: Optional[str] = None
    quantity: Optional[int] = Field(default=None, ge=1)
    total: Optional[Decimal] = Field(default=None, gt=0)
    payments: Optional[List[PurchasePaymentIn]] = None


def _check_payments(total: Decimal, payments: List[PurchasePaymentIn]) -> Decimal:
    for p in payments:
        assert_bank_account(p.payment_type, p.account_number)
    paid = payments_total(payments)
    assert_not_overpaid(total, paid, detail="total payments cannot exceed purchase total")
    return paid


def _load_refs(cur, supplier_id: str, product_id: str, warehouse_id: str):
    cur.execute("SELECT id, name FROM suppliers WHERE id = %s", (supplier_id,))
    supplier = cur.fetchone()
    if not supplier:
        raise HTTPException(status_code=404, detail="supplier not found")
    cur.execute("SELECT id, name FROM products WHERE id = %s", (product_id,))
    product = cur.fetchone()
    if not product:
        raise HTTPException(status_code=404, detail="product not found")
    cur.execute("SELECT id FROM warehouses WHERE id = %s", (warehouse_id,))
    if not cur.fetchone():
        raise HTTPException(status_code=404, detail="warehouse not found")
    return supplier, product


def _write_payments(cur, purchase_id, payments: List[PurchasePaymentIn]) -> list:
    cur.execute("DELETE FROM purchase_payments WHERE purchase_id = %s", (purchase_id,))
    rows = []
    for p in payments:
        row = {
            "amount": p.amount,
            "payment_type": p.payment_type,
            "account_number": (p.account_number or "").strip() or None,
            "payment_note": p.payment_note or None,
        }
        cur.execute(
            """
            INSERT INTO purchase_payments (id, purchase_id, amount, payment_type, account_number, payment_note)
            VALUES (gen_random_uuid(), %s, %s, %s, %s, %s)
            """,
            (purchase_id, row["amount"], row["payment_type"], row["account_number"], row["payment_note"]),
        )
        rows.append(row)
    return rows


def _fetch_purchase(cur, purchase_id) -> dict:
    cur.execute(PURCHASE_SELECT + " WHERE pu.id = %s", (purchase_id,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="purchase not found")
    return row


@router.get("/supplier-totals")
def supplier_totals():
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT supplier_name, id, order_id, total
                FROM purchases
                WHERE supplier_id IS NOT NULL
                ORDER BY supplier_name, created_at
                """
            )
            totals = {}
            for r in cur.fetchall():
                slot = totals.setdefault(r["supplier_name"], {"total_amount": Decimal("0"), "purchases": []})
                slot["total_amount"] += Decimal(r["total"])
                slot["purchases"].append({"id": r["id"], "order_id": r["order_id"], "total": r["total"]})
            return totals


@router.get("")
def list_purchases(supplier_id: Optional[str] = None):
    with get_conn() as conn:
        with conn.cursor() as cur:
            if supplier_id:
                cur.execute(PURCHASE_SELECT + " WHERE pu.supplier_id = %s ORDER BY pu.created_at DESC", (supplier_id,))
            else:
                cur.execute(PURCHASE_SELECT + " ORDER BY pu.created_at DESC")
            return {"purchases": cur.fetchall()}


@router.get("/{purchase_id}")
def get_purchase(purchase_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"purchase": _fetch_purchase(cur, purchase_id)}


@router.post("", status_code=201)
def create_purchase(data: PurchaseIn, user=Depends(get_current_user)):
    paid = _check_payments(data.total, data.payments)
    date = as_utc(data.date) or datetime.now(timezone.utc)
    due_date = as_utc(data.due_date)
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                supplier, product = _load_refs(cur, data.supplier_id, data.product_id, data.warehouse_id)
                order_id = next_purchase_order_id(cur)
                cur.execute(
                    """
                    INSERT INTO purchases
                      (id, order_id, date, due_date, supplier_id, supplier_name, product_id, warehouse_id, quantity, total, balance)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING id, order_id, date, due_date, supplier_name, quantity, total
                    """,
                    (
                        order_id, date, due_date, data.supplier_id, supplier["name"], data.product_id,
                        data.warehouse_id, data.quantity, data.total, data.total - paid,
                    ),
                )
                purchase = cur.fetchone()
                payments = _write_payments(cur, purchase["id"], data.payments)
                sync_purchase_cash_entries(cur, purchase, payments, product_name=product["name"], user_id=user["user_id"])
                apply_payable_delta(cur, data.supplier_id, data.total, paid, user_id=user["user_id"])
                return {"purchase": _fetch_purchase(cur, purchase["id"])}


@router.put("/{purchase_id}")
def update_purchase(purchase_id: str, data: PurchaseUpdate, user=Depends(get_current_user)):
    patch = {k: v for k, v in data.model_dump(exclude_unset=True).items() if v is not None}
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, order_id, date, due_date, supplier_id, supplier_name, product_id, warehouse_id, quantity, total
                    FROM purchases
                    WHERE id = %s
                    FOR UPDATE
                    """,
                    (purchase_id,),
                )
                old = cur.fetchone()
                if not old:
                    raise HTTPException(status_code=404, detail="purchase not found")
                cur.execute(
                    "SELECT amount, payment_type, account_number, payment_note FROM purchase_payments WHERE purchase_id = %s",
                    (purchase_id,),
                )
                old_payments = cur.fetchall()
                old_paid = payments_total(old_payments)

                purchase = dict(old)
                purchase.update({k: v for k, v in patch.items() if k != "payments"})
                purchase["date"] = as_utc(purchase["date"])
                purchase["due_date"] = as_utc(purchase["due_date"])
                if data.payments is not None:
                    paid = _check_payments(Decimal(purchase["total"]), data.payments)
                else:
                    paid = old_paid
                    assert_not_overpaid(Decimal(purchase["total"]), paid, detail="total payments cannot exceed purchase total")

                if not purchase["supplier_id"]:
                    raise HTTPException(status_code=400, detail="supplier is required")
                supplier, product = _load_refs(cur, purchase["supplier_id"], purchase["product_id"], purchase["warehouse_id"])
                purchase["supplier_name"] = supplier["name"]

                cur.execute(
                    """
                    UPDATE purchases
                    SET date = %s, due_date = %s, supplier_id = %s, supplier_name = %s, product_id = %s,
                        warehouse_id = %s, quantity = %s, total = %s, balance = %s, updated_at = now()
                    WHERE id = %s
                    """,
                    (
                        purchase["date"], purchase["due_date"], purchase["supplier_id"], purchase["supplier_name"],
                        purchase["product_id"], purchase["warehouse_id"], purchase["quantity"], purchase["total"],
                        Decimal(purchase["total"]) - paid, purchase_id,
                    ),
                )
                if data.payments is not None:
                    payments = _write_payments(cur, purchase_id, data.payments)
                else:
                    payments = old_payments
                sync_purchase_cash_entries(cur, purchase, payments, product_name=product["name"], user_id=user["user_id"])

                old_total = Decimal(old["total"])
                new_total = Decimal(purchase["total"])
                if str(old["supplier_id"]) != str(purchase["supplier_id"]):
                    if old["supplier_id"]:
                        apply_payable_delta(cur, old["supplier_id"], -old_total, -old_paid, user_id=user["user_id"])
                    apply_payable_delta(cur, purchase["supplier_id"], new_total, paid, user_id=user["user_id"])
                else:
                    apply_payable_delta(
                        cur, purchase["supplier_id"], new_total - old_total, paid - old_paid, user_id=user["user_id"]
                    )
                return {"purchase": _fetch_purchase(cur, purchase_id)}


@router.delete("/{purchase_id}")
def delete_purchase(purchase_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT id, order_id, supplier_id, total FROM purchases WHERE id = %s FOR UPDATE",
                    (purchase_id,),
                )
                purchase = cur.fetchone()
                if not purchase:
                    raise HTTPException(status_code=404, detail="purchase not found")
                cur.execute("SELECT COUNT(*)::int AS n FROM purchase_returns WHERE order_id = %s", (purchase["order_id"],))
                if cur.fetchone()["n"]:
                    raise HTTPException(status_code=400, detail="purchase has returns. delete the returns first")
                cur.execute("SELECT amount FROM purchase_payments WHERE purchase_id = %s", (purchase_id,))
                paid = payments_total(cur.fetchall())

                cur.execute("DELETE FROM purchases WHERE id = %s", (purchase_id,))
                drop_purchase_cash_entries(cur, purchase["order_id"], user_id=user["user_id"])
                apply_payable_delta(cur, purchase["supplier_id"], -Decimal(purchase["total"]), -paid, user_id=user["user_id"])
                record_adjustment(
                    cur, user["user_id"], "purchase_delete", "purchase", purchase["order_id"],
                    {"total": purchase["total"], "paid": paid},
                )
    return {"ok": True}
