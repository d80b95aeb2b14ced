from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from ..business_ids import next_daily_id
from ..db import get_conn
from ..deps import get_current_user
from ..ledger import (
    adjust_stock,
    close_receivable,
    drop_sales_cash_entry,
    move_sales_cash_entry,
    open_receivable,
    post_sales_cash_entry,
    record_adjustment,
    sync_receivable,
)
from ..payment_guards import assert_bank_account, assert_due_after, assert_non_negative, assert_not_overpaid
from ..validation import Note, PaymentType, SalesOrderStatus, as_utc

router = APIRouter(prefix="/api/sales-orders", tags=["sales-orders"])

ORDER_SELECT = """
    SELECT o.id, o.order_number, o.date, o.due_date,
           o.customer_id, o.customer_name, c.customer_id AS customer_code, c.email AS customer_email, c.phone AS customer_phone,
           o.product_id, p.name AS product_name, p.brand AS product_brand, p.category AS product_category,
           o.warehouse_id, w.name AS warehouse_name,
           o.quantity, o.total, o.payment_amount, o.payment_type, o.account_number, o.payment_note, o.status,
           o.created_at, o.updated_at
    FROM sales_orders o
    LEFT JOIN customers c ON c.id = o.customer_id
    JOIN products p ON p.id = o.product_id
    JOIN warehouses w ON w.id = o.warehouse_id
"""

# Columns written on update, in SET order.
ORDER_FIELDS = (
    "date",
    "due_date",
    "customer_id",
    "customer_name",
    "product_id",
    "warehouse_id",
    "quantity",
    "total",
    "payment_amount",
    "payment_type",
    "account_number",
    "payment_note",
    "status",
)


class SalesOrderIn(BaseModel):
    customer_id: str
    product_id: str
    warehouse_id: str
    quantity: int = Field(ge=1)
    date: Optional[datetime] = None
    due_date: datetime
    total: Decimal = Field(gt=0)
    payment_amount: Decimal = Decimal("0")
    payment_type: PaymentType = "Cash"
    account_number: Optional[str] = None
    payment_note: Note = ""
    status: SalesOrderStatus = "Pending"


class SalesOrderUpdate(BaseModel):
    customer_id: Optional[str] = None
    product_id: Optional[str] = None
    warehouse_id: Optional[str] = None
    quantity: Optional[int] = Field(default=None, ge=1)
    date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    total: Optional[Decimal] = Field(default=None, gt=0)
    payment_amount: Optional[Decimal] = None
    payment_type: Optional[PaymentType] = None
    account_number: Optional[str] = None
    payment_note: Optional[Note] = None
    status: Optional[SalesOrderStatus] = None


def _validate_payment(order: dict):
    assert_non_negative(order["payment_amount"], "payment amount")
    assert_not_overpaid(order["total"], order["payment_amount"])
    assert_due_after(order["date"], order["due_date"])
    assert_bank_account(order["payment_type"], order.get("account_number"))


def _load_customer(cur, customer_id: str) -> dict:
    cur.execute("SELECT id, name FROM customers WHERE id = %s", (customer_id,))
    customer = cur.fetchone()
    if not customer:
        raise HTTPException(status_code=404, detail="customer not found")
    return customer


def _load_product(cur, product_id: str) -> dict:
    cur.execute("SELECT id, name, stock FROM products WHERE id = %s FOR UPDATE", (product_id,))
    product = cur.fetchone()
    if not product:
        raise HTTPException(status_code=404, detail="product not found")
    return product


def _ensure_warehouse(cur, warehouse_id: str):
    cur.execute("SELECT id FROM warehouses WHERE id = %s", (warehouse_id,))
    if not cur.fetchone():
        raise HTTPException(status_code=404, detail="warehouse not found")


def _fetch_order(cur, order_id: str) -> dict:
    cur.execute(ORDER_SELECT + " WHERE o.id = %s", (order_id,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="sales order not found")
    return row


@router.get("")
def list_sales_orders(status: Optional[str] = None, customer_id: Optional[str] = None):
    where = ["1=1"]
    params = []
    if status:
        where.append("o.status = %s")
        params.append(status)
    if customer_id:
        where.append("o.customer_id = %s")
        params.append(customer_id)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                ORDER_SELECT + f" WHERE {' AND '.join(where)} ORDER BY o.created_at DESC",
                params,
            )
            return {"sales_orders": cur.fetchall()}


@router.get("/{order_id}")
def get_sales_order(order_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"sales_order": _fetch_order(cur, order_id)}


@router.post("", status_code=201)
def create_sales_order(data: SalesOrderIn, user=Depends(get_current_user)):
    order = data.model_dump()
    order["date"] = as_utc(order["date"]) or datetime.now(timezone.utc)
    order["due_date"] = as_utc(order["due_date"])
    order["account_number"] = (order.get("account_number") or "").strip()
    _validate_payment(order)

    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                customer = _load_customer(cur, data.customer_id)
                product = _load_product(cur, data.product_id)
                _ensure_warehouse(cur, data.warehouse_id)
                if data.quantity > int(product["stock"]):
                    raise HTTPException(
                        status_code=400,
                        detail=f"insufficient stock. available: {product['stock']}, requested: {data.quantity}",
                    )

                order["order_number"] = next_daily_id(cur, "sales_order")
                order["customer_name"] = customer["name"]
                cur.execute(
                    """
                    INSERT INTO sales_orders
                      (id, order_number, date, due_date, customer_id, customer_name, product_id, warehouse_id,
                       quantity, total, payment_amount, payment_type, account_number, payment_note, status)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING id
                    """,
                    (
                        order["order_number"], order["date"], order["due_date"], order["customer_id"],
                        order["customer_name"], order["product_id"], order["warehouse_id"], order["quantity"],
                        order["total"], order["payment_amount"], order["payment_type"], order["account_number"],
                        order["payment_note"], order["status"],
                    ),
                )
                order_id = cur.fetchone()["id"]

                adjust_stock(
                    cur, data.product_id, -data.quantity,
                    user_id=user["user_id"], reason=f"sales order {order['order_number']}",
                )
                post_sales_cash_entry(
                    cur, order, customer_name=customer["name"], product_name=product["name"], user_id=user["user_id"]
                )
                open_receivable(cur, order, customer_name=customer["name"], user_id=user["user_id"])
                return {"sales_order": _fetch_order(cur, order_id)}


@router.put("/{order_id}")
def update_sales_order(order_id: str, data: SalesOrderUpdate, user=Depends(get_current_user)):
    patch = {k: v for k, v in data.model_dump(exclude_unset=True).items() if v is not None or k == "account_number"}
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT id, order_number, {', '.join(ORDER_FIELDS)} FROM sales_orders WHERE id = %s FOR UPDATE",
                    (order_id,),
                )
                old = cur.fetchone()
                if not old:
                    raise HTTPException(status_code=404, detail="sales order not found")

                order = dict(old)
                order.update(patch)
                order["date"] = as_utc(order["date"])
                order["due_date"] = as_utc(order["due_date"])
                order["account_number"] = (order.get("account_number") or "").strip()
                _validate_payment(order)

                product_changed = str(order["product_id"]) != str(old["product_id"])
                if product_changed or int(order["quantity"]) < int(old["quantity"]):
                    cur.execute(
                        "SELECT COALESCE(SUM(quantity), 0)::int AS returned FROM sales_returns WHERE order_id = %s",
                        (old["order_number"],),
                    )
                    returned = int(cur.fetchone()["returned"])
                    if product_changed and returned:
                        raise HTTPException(status_code=400, detail="sales order has returns. product cannot be changed")
                    if int(order["quantity"]) < returned:
                        raise HTTPException(
                            status_code=400,
                            detail=f"quantity cannot be lower than the returned quantity ({returned})",
                        )

                if order["customer_id"]:
                    order["customer_name"] = _load_customer(cur, order["customer_id"])["name"]
                if "warehouse_id" in patch:
                    _ensure_warehouse(cur, order["warehouse_id"])

                # Return the old quantity before taking the new one so a same-product
                # update only needs the difference to be available.
                reason = f"sales order {old['order_number']} update"
                if product_changed:
                    adjust_stock(cur, old["product_id"], int(old["quantity"]), user_id=user["user_id"], reason=reason)
                    product = adjust_stock(cur, order["product_id"], -int(order["quantity"]), user_id=user["user_id"], reason=reason)
                else:
                    product = adjust_stock(
                        cur, order["product_id"], int(old["quantity"]) - int(order["quantity"]),
                        user_id=user["user_id"], reason=reason,
                    )

                cur.execute(
                    f"""
                    UPDATE sales_orders
                    SET {', '.join(f'{k} = %s' for k in ORDER_FIELDS)}, updated_at = now()
                    WHERE id = %s
                    """,
                    [order[k] for k in ORDER_FIELDS] + [order_id],
                )
                move_sales_cash_entry(
                    cur, order, customer_name=order["customer_name"], product_name=product["name"], user_id=user["user_id"]
                )
                sync_receivable(cur, order, customer_name=order["customer_name"], user_id=user["user_id"])
                return {"sales_order": _fetch_order(cur, order_id)}


@router.delete("/{order_id}")
def delete_sales_order(order_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT id, order_number, product_id, quantity FROM sales_orders WHERE id = %s FOR UPDATE",
                    (order_id,),
                )
                order = cur.fetchone()
                if not order:
                    raise HTTPException(status_code=404, detail="sales order not found")
                cur.execute("SELECT COUNT(*)::int AS n FROM sales_returns WHERE order_id = %s", (order["order_number"],))
                if cur.fetchone()["n"]:
                    raise HTTPException(status_code=400, detail="sales order has returns. delete the returns first")

                adjust_stock(
                    cur, order["product_id"], int(order["quantity"]),
                    user_id=user["user_id"], reason=f"sales order {order['order_number']} delete",
                )
                drop_sales_cash_entry(cur, order["order_number"], user_id=user["user_id"])
                close_receivable(cur, order["order_number"], user_id=user["user_id"])
                cur.execute("DELETE FROM sales_orders WHERE id = %s", (order_id,))
                record_adjustment(
                    cur, user["user_id"], "sales_order_delete", "sales_order", order["order_number"],
                    {"quantity_restored": order["quantity"]},
                )
    return {"ok": True}
