"""
Purchase returns against a supplier purchase. They are a paper record against
the supplier; stock is not moved.

A return is checked against the quantity still outstanding on its purchase: the
purchased quantity minus every other return already booked against it.
"""
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from ..business_ids import next_daily_id
from ..db import get_conn
from ..deps import get_current_user
from ..exports import csv_response
from ..ledger import record_adjustment
from ..payment_guards import assert_due_after, assert_not_overpaid
from ..validation import NonBlankStr, PaymentType, ReturnStatus, as_utc

router = APIRouter(prefix="/api/purchase-returns", tags=["purchase-returns"])

RETURN_SELECT = """
    SELECT r.id, r.return_id, r.order_id, r.date, r.due_date,
           r.supplier_id, s.name AS supplier_name, s.supplier_id AS supplier_code,
           r.product_id, p.product_id AS product_code, p.name AS product_name,
           r.quantity, r.total, r.payment_amount, r.payment_type, r.reason, r.status,
           r.created_at, r.updated_at
    FROM purchase_returns r
    LEFT JOIN suppliers s ON s.id = r.supplier_id
    JOIN products p ON p.id = r.product_id
"""

EXPORT_COLUMNS = [
    "return_id", "order_id", "date", "supplier_name", "product_code", "product_name",
    "quantity", "total", "payment_amount", "payment_type", "reason", "status",
]


class PurchaseReturnIn(BaseModel):
    order_id: NonBlankStr
    quantity: int = Field(ge=1)
    date: Optional[datetime] = None
    due_date: datetime
    total: Decimal = Field(gt=0)
    payment_amount: Decimal = Field(default=Decimal("0"), ge=0)
    payment_type: PaymentType = "Cash"
    reason: NonBlankStr
    status: ReturnStatus = "Pending"


class PurchaseReturnUpdate(BaseModel):
    quantity: Optional[int] = Field(default=None, ge=1)
    date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    total: Optional[Decimal] = Field(default=None, gt=0)
    payment_amount: Optional[Decimal] = Field(default=None, ge=0)
    payment_type: Optional[PaymentType] = None
    reason: Optional[NonBlankStr] = None
    status: Optional[ReturnStatus] = None


def _lock_purchase(cur, order_id: str) -> Optional[dict]:
    cur.execute(
        "SELECT id, order_id, supplier_id, product_id, quantity FROM purchases WHERE order_id = %s FOR UPDATE",
        (order_id,),
    )
    return cur.fetchone()


def _assert_returnable(cur, purchase: dict, quantity: int, exclude_id=None):
    cur.execute(
        """
        SELECT COALESCE(SUM(quantity), 0)::int AS returned
        FROM purchase_returns
        WHERE order_id = %s AND id IS DISTINCT FROM %s
        """,
        (purchase["order_id"], exclude_id),
    )
    outstanding = int(purchase["quantity"]) - int(cur.fetchone()["returned"])
    if quantity > outstanding:
        raise HTTPException(
            status_code=400,
            detail=f"return quantity cannot exceed quantity still outstanding on the purchase ({outstanding})",
        )


def _fetch_return(cur, return_id) -> dict:
    cur.execute(RETURN_SELECT + " WHERE r.id = %s", (return_id,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="purchase return not found")
    return row


@router.get("")
def list_purchase_returns(order_id: Optional[str] = None):
    with get_conn() as conn:
        with conn.cursor() as cur:
            if order_id:
                cur.execute(RETURN_SELECT + " WHERE r.order_id = %s ORDER BY r.created_at DESC", (order_id,))
            else:
                cur.execute(RETURN_SELECT + " ORDER BY r.created_at DESC")
            return {"purchase_returns": cur.fetchall()}


@router.get("/export")
def export_purchase_returns():
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(RETURN_SELECT + " ORDER BY r.created_at DESC")
            rows = cur.fetchall()
    return csv_response(EXPORT_COLUMNS, rows, "purchase_returns.csv")


@router.get("/{return_id}")
def get_purchase_return(return_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"purchase_return": _fetch_return(cur, return_id)}


@router.post("", status_code=201)
def create_purchase_return(data: PurchaseReturnIn, user=Depends(get_current_user)):
    date = as_utc(data.date) or datetime.now(timezone.utc)
    due_date = as_utc(data.due_date)
    assert_due_after(date, due_date)
    assert_not_overpaid(data.total, data.payment_amount)

    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                purchase = _lock_purchase(cur, data.order_id)
                if not purchase:
                    raise HTTPException(status_code=400, detail="original purchase order not found")
                _assert_returnable(cur, purchase, data.quantity)

                return_no = next_daily_id(cur, "purchase_return")
                cur.execute(
                    """
                    INSERT INTO purchase_returns
                      (id, return_id, order_id, date, due_date, supplier_id, product_id,
                       quantity, total, payment_amount, payment_type, reason, status)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING id
                    """,
                    (
                        return_no, purchase["order_id"], date, due_date, purchase["supplier_id"],
                        purchase["product_id"], data.quantity, data.total, data.payment_amount,
                        data.payment_type, data.reason, data.status,
                    ),
                )
                new_id = cur.fetchone()["id"]
                record_adjustment(
                    cur, user["user_id"], "purchase_return_create", "purchase_return", return_no,
                    {"order_id": purchase["order_id"], "quantity": data.quantity, "total": data.total},
                )
                return {"purchase_return": _fetch_return(cur, new_id)}


@router.put("/{return_id}")
def update_purchase_return(return_id: str, data: PurchaseReturnUpdate, user=Depends(get_current_user)):
    patch = {k: v for k, v in data.model_dump(exclude_unset=True).items() if v is not None}
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, return_id, order_id, date, due_date, quantity, total,
                           payment_amount, payment_type, reason, status
                    FROM purchase_returns
                    WHERE id = %s
                    FOR UPDATE
                    """,
                    (return_id,),
                )
                old = cur.fetchone()
                if not old:
                    raise HTTPException(status_code=404, detail="purchase return not found")

                ret = dict(old)
                ret.update(patch)
                ret["date"] = as_utc(ret["date"])
                ret["due_date"] = as_utc(ret["due_date"])
                assert_due_after(ret["date"], ret["due_date"])
                assert_not_overpaid(Decimal(ret["total"]), Decimal(ret["payment_amount"]))

                if int(ret["quantity"]) != int(old["quantity"]):
                    purchase = _lock_purchase(cur, old["order_id"])
                    if purchase:
                        _assert_returnable(cur, purchase, int(ret["quantity"]), exclude_id=return_id)

                cur.execute(
                    """
                    UPDATE purchase_returns
                    SET date = %s, due_date = %s, quantity = %s, total = %s, payment_amount = %s,
                        payment_type = %s, reason = %s, status = %s, updated_at = now()
                    WHERE id = %s
                    """,
                    (
                        ret["date"], ret["due_date"], ret["quantity"], ret["total"], ret["payment_amount"],
                        ret["payment_type"], ret["reason"], ret["status"], return_id,
                    ),
                )
                return {"purchase_return": _fetch_return(cur, return_id)}


@router.delete("/{return_id}")
def delete_purchase_return(return_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT id, return_id, order_id, status FROM purchase_returns WHERE id = %s FOR UPDATE",
                    (return_id,),
                )
                ret = cur.fetchone()
                if not ret:
                    raise HTTPException(status_code=404, detail="purchase return not found")
                if ret["status"] == "Completed":
                    raise HTTPException(status_code=400, detail="cannot delete a completed purchase return")
                cur.execute("DELETE FROM purchase_returns WHERE id = %s", (return_id,))
                record_adjustment(
                    cur, user["user_id"], "purchase_return_delete", "purchase_return", ret["return_id"],
                    {"order_id": ret["order_id"]},
                )
    return {"ok": True}
