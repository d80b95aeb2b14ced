"""
Sales returns bring stock back into the returned product.

A return is checked against the quantity still outstanding on its sales order:
the order quantity minus every other return already booked against it. So
several partial returns can never add up to more than was sold.
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
from ..ledger import adjust_stock, record_adjustment
from ..payment_guards import assert_due_after, assert_not_overpaid
from ..validation import NonBlankStr, ReturnStatus, SalesReturnPaymentType, as_utc

router = APIRouter(prefix="/api/sales-returns", tags=["sales-returns"])

RETURN_SELECT = """
    SELECT r.id, r.return_id, r.order_id, r.date, r.due_date,
           r.customer_id, r.customer_name, c.customer_id AS customer_code,
           r.product_id, p.product_id AS product_code, p.name AS product_name,
           r.quantity, r.total, r.payment_amount, r.payment_type, r.reason, r.status,
           r.created_at, r.updated_at
    FROM sales_returns r
    LEFT JOIN customers c ON c.id = r.customer_id
    JOIN products p ON p.id = r.product_id
"""

EXPORT_COLUMNS = [
    "return_id", "order_id", "date", "customer_name", "product_code", "product_name",
    "quantity", "total", "payment_amount", "payment_type", "reason", "status",
]


class SalesReturnIn(BaseModel):
    order_id: NonBlankStr
    product_id: Optional[str] = None
    quantity: int = Field(ge=1)
    date: Optional[datetime] = None
    due_date: datetime
    total: Decimal = Field(gt=0)
    payment_amount: Decimal = Field(default=Decimal("0"), ge=0)
    payment_type: SalesReturnPaymentType = "Cash"
    reason: NonBlankStr
    status: ReturnStatus = "Pending"


class SalesReturnUpdate(BaseModel):
    quantity: Optional[int] = Field(default=None, ge=1)
    date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    total: Optional[Decimal] = Field(default=None, gt=0)
    payment_amount: Optional[Decimal] = Field(default=None, ge=0)
    payment_type: Optional[SalesReturnPaymentType] = None
    reason: Optional[NonBlankStr] = None
    status: Optional[ReturnStatus] = None


def _outstanding_quantity(cur, order: dict, exclude_id=None) -> int:
    cur.execute(
        """
        SELECT COALESCE(SUM(quantity), 0)::int AS returned
        FROM sales_returns
        WHERE order_id = %s AND id IS DISTINCT FROM %s
        """,
        (order["order_number"], exclude_id),
    )
    return int(order["quantity"]) - int(cur.fetchone()["returned"])


def _assert_returnable(cur, order: dict, quantity: int, exclude_id=None):
    outstanding = _outstanding_quantity(cur, order, exclude_id)
    if quantity > outstanding:
        raise HTTPException(
            status_code=400,
            detail=f"return quantity cannot exceed quantity still outstanding on the sales order ({outstanding})",
        )


def _fetch_return(cur, return_id) -> dict:
    cur.execute(RETURN_SELECT + " WHERE r.id = %s", (return_id,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="sales return not found")
    return row


@router.get("")
def list_sales_returns(order_id: Optional[str] = None):
    with get_conn() as conn:
        with conn.cursor() as cur:
            if order_id:
                cur.execute(RETURN_SELECT + " WHERE r.order_id = %s ORDER BY r.created_at DESC", (order_id,))
            else:
                cur.execute(RETURN_SELECT + " ORDER BY r.created_at DESC")
            return {"sales_returns": cur.fetchall()}


@router.get("/export")
def export_sales_returns():
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(RETURN_SELECT + " ORDER BY r.created_at DESC")
            rows = cur.fetchall()
    return csv_response(EXPORT_COLUMNS, rows, "sales_returns.csv")


@router.get("/{return_id}")
def get_sales_return(return_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"sales_return": _fetch_return(cur, return_id)}


@router.post("", status_code=201)
def create_sales_return(data: SalesReturnIn, user=Depends(get_current_user)):
    date = as_utc(data.date) or datetime.now(timezone.utc)
    due_date = as_utc(data.due_date)
    assert_due_after(date, due_date)
    assert_not_overpaid(data.total, data.payment_amount)

    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                # Lock the order so concurrent returns see each other's quantities.
                cur.execute(
                    """
                    SELECT id, order_number, customer_id, customer_name, product_id, quantity
                    FROM sales_orders
                    WHERE order_number = %s
                    FOR UPDATE
                    """,
                    (data.order_id,),
                )
                order = cur.fetchone()
                if not order:
                    raise HTTPException(status_code=400, detail="original sales order not found")
                if data.product_id and str(data.product_id) != str(order["product_id"]):
                    raise HTTPException(status_code=400, detail="product does not match the sales order")
                _assert_returnable(cur, order, data.quantity)

                return_no = next_daily_id(cur, "sales_return")
                cur.execute(
                    """
                    INSERT INTO sales_returns
                      (id, return_id, order_id, date, due_date, customer_id, customer_name, product_id,
                       quantity, total, payment_amount, payment_type, reason, status)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING id
                    """,
                    (
                        return_no, order["order_number"], date, due_date, order["customer_id"],
                        order["customer_name"], order["product_id"], data.quantity, data.total,
                        data.payment_amount, data.payment_type, data.reason, data.status,
                    ),
                )
                new_id = cur.fetchone()["id"]
                adjust_stock(
                    cur, order["product_id"], data.quantity,
                    user_id=user["user_id"], reason=f"sales return {return_no}",
                )
                return {"sales_return": _fetch_return(cur, new_id)}


@router.put("/{return_id}")
def update_sales_return(return_id: str, data: SalesReturnUpdate, user=Depends(get_current_user)):
    patch = {k: v for k, v in data.model_dump(exclude_unset=True).items() if v is not None}
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, return_id, order_id, date, due_date, product_id, quantity, total,
                           payment_amount, payment_type, reason, status
                    FROM sales_returns
                    WHERE id = %s
                    FOR UPDATE
                    """,
                    (return_id,),
                )
                old = cur.fetchone()
                if not old:
                    raise HTTPException(status_code=404, detail="sales return not found")

                ret = dict(old)
                ret.update(patch)
                ret["date"] = as_utc(ret["date"])
                ret["due_date"] = as_utc(ret["due_date"])
                assert_due_after(ret["date"], ret["due_date"])
                assert_not_overpaid(Decimal(ret["total"]), Decimal(ret["payment_amount"]))

                delta = int(ret["quantity"]) - int(old["quantity"])
                if delta:
                    cur.execute(
                        "SELECT order_number, quantity FROM sales_orders WHERE order_number = %s FOR UPDATE",
                        (old["order_id"],),
                    )
                    order = cur.fetchone()
                    if order:
                        _assert_returnable(cur, order, int(ret["quantity"]), exclude_id=return_id)
                    adjust_stock(
                        cur, old["product_id"], delta,
                        user_id=user["user_id"], reason=f"sales return {old['return_id']} update",
                    )

                cur.execute(
                    """
                    UPDATE sales_returns
                    SET date = %s, due_date = %s, quantity = %s, total = %s, payment_amount = %s,
                        payment_type = %s, reason = %s, status = %s, updated_at = now()
                    WHERE id = %s
                    """,
                    (
                        ret["date"], ret["due_date"], ret["quantity"], ret["total"], ret["payment_amount"],
                        ret["payment_type"], ret["reason"], ret["status"], return_id,
                    ),
                )
                return {"sales_return": _fetch_return(cur, return_id)}


@router.delete("/{return_id}")
def delete_sales_return(return_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT id, return_id, product_id, quantity, status FROM sales_returns WHERE id = %s FOR UPDATE",
                    (return_id,),
                )
                ret = cur.fetchone()
                if not ret:
                    raise HTTPException(status_code=404, detail="sales return not found")
                if ret["status"] == "Completed":
                    raise HTTPException(status_code=400, detail="cannot delete a completed sales return")
                adjust_stock(
                    cur, ret["product_id"], -int(ret["quantity"]),
                    user_id=user["user_id"], reason=f"sales return {ret['return_id']} delete",
                )
                cur.execute("DELETE FROM sales_returns WHERE id = %s", (return_id,))
                record_adjustment(
                    cur, user["user_id"], "sales_return_delete", "sales_return", ret["return_id"],
                    {"quantity_removed": ret["quantity"]},
                )
    return {"ok": True}
