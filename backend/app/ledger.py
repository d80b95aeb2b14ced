"""
Ledger synchronization.

Single owner of every derived write: product stock, brand/category/warehouse
counters, the purchase/sales cash ledgers, receivables and payables. Routers call
into this module from inside their own `conn.transaction()`, so a failure in any
step rolls back the order together with all of its side records.

Every applied adjustment leaves an `audit_logs` row and a `ledger.adjustment`
log line.
"""
import json
import time
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Iterable, Optional

from fastapi import HTTPException

from .logs import json_log

ZERO = Decimal("0")
PAYABLE_DESCRIPTION = "Supplier total"


def _dec(v) -> Decimal:
    if v is None:
        return ZERO
    if isinstance(v, Decimal):
        return v
    return Decimal(str(v))


def settlement_status(total, paid) -> str:
    total, paid = _dec(total), _dec(paid)
    if paid >= total:
        return "Paid"
    if paid > 0:
        return "Partially Paid"
    return "Unpaid"


def receivable_status(amount, paid, due, now: Optional[datetime] = None) -> str:
    amount, paid = _dec(amount), _dec(paid)
    if paid >= amount:
        return "Received"
    if paid > 0:
        return "Partially Paid"
    if due is None:
        return "Pending"
    now = now or datetime.now(timezone.utc)
    if isinstance(due, datetime):
        if due.tzinfo is None:
            due = due.replace(tzinfo=timezone.utc)
        return "Overdue" if now > due else "Pending"
    if isinstance(due, date):
        return "Overdue" if now.date() > due else "Pending"
    return "Pending"


def payments_total(payments: Iterable) -> Decimal:
    total = ZERO
    for p in payments or []:
        amount = p.get("amount") if isinstance(p, dict) else getattr(p, "amount", None)
        total += _dec(amount)
    return total


def payable_invoice_number(supplier_code: str) -> str:
    return f"PO-{supplier_code}-TOTAL"


def record_adjustment(cur, user_id, action: str, entity_type: str, entity_id, details: dict):
    cur.execute(
        """
        INSERT INTO audit_logs (id, user_id, action, entity_type, entity_id, details)
        VALUES (gen_random_uuid(), %s, %s, %s, %s, %s::jsonb)
        """,
        (user_id, action, entity_type, str(entity_id) if entity_id is not None else None, json.dumps(details, default=str)),
    )
    json_log("info", "ledger.adjustment", action=action, entity_type=entity_type, entity_id=entity_id, **details)


# ---------------------------------------------------------------------------
# Aggregate counters
# ---------------------------------------------------------------------------

def shift_counters(cur, brand: Optional[str], category: Optional[str], warehouse_id, *, products: int, stock: int):
    if not products and not stock:
        return
    if brand:
        cur.execute(
            """
            INSERT INTO brands (id, name, total_products, total_stock)
            VALUES (gen_random_uuid(), %s, GREATEST(%s, 0), GREATEST(%s, 0))
            ON CONFLICT (name) DO UPDATE
            SET total_products = brands.total_products + %s,
                total_stock = brands.total_stock + %s,
                updated_at = now()
            """,
            (brand, products, stock, products, stock),
        )
    if category:
        cur.execute(
            """
            INSERT INTO categories (id, name, total_products, total_stock)
            VALUES (gen_random_uuid(), %s, GREATEST(%s, 0), GREATEST(%s, 0))
            ON CONFLICT (name) DO UPDATE
            SET total_products = categories.total_products + %s,
                total_stock = categories.total_stock + %s,
                updated_at = now()
            """,
            (category, products, stock, products, stock),
        )
    if warehouse_id:
        cur.execute(
            """
            UPDATE warehouses
            SET total_products = total_products + %s,
                stock_count = stock_count + %s,
                updated_at = now()
            WHERE id = %s
            """,
            (products, stock, warehouse_id),
        )


def apply_product_counters(cur, product: dict, sign: int):
    """Add (sign=1) or remove (sign=-1) one product's contribution to its counters."""
    shift_counters(
        cur,
        product.get("brand"),
        product.get("category"),
        product.get("warehouse_id"),
        products=sign,
        stock=sign * int(product.get("stock") or 0),
    )


def recount_brand(cur, name: str) -> dict:
    cur.execute(
        """
        INSERT INTO brands (id, name, total_products, total_stock)
        SELECT gen_random_uuid(), %s, COUNT(*), COALESCE(SUM(stock), 0)
        FROM products
        WHERE brand = %s
        ON CONFLICT (name) DO UPDATE
        SET total_products = EXCLUDED.total_products,
            total_stock = EXCLUDED.total_stock,
            updated_at = now()
        RETURNING name, total_products, total_stock
        """,
        (name, name),
    )
    return cur.fetchone()


def recount_category(cur, name: str) -> dict:
    cur.execute(
        """
        INSERT INTO categories (id, name, total_products, total_stock)
        SELECT gen_random_uuid(), %s, COUNT(*), COALESCE(SUM(stock), 0)
        FROM products
        WHERE category = %s
        ON CONFLICT (name) DO UPDATE
        SET total_products = EXCLUDED.total_products,
            total_stock = EXCLUDED.total_stock,
            updated_at = now()
        RETURNING name, total_products, total_stock
        """,
        (name, name),
    )
    return cur.fetchone()


def recount_warehouse(cur, warehouse_id) -> Optional[dict]:
    cur.execute(
        """
        UPDATE warehouses w
        SET total_products = (SELECT COUNT(*) FROM products p WHERE p.warehouse_id = w.id),
            stock_count = (SELECT COALESCE(SUM(p.stock), 0) FROM products p WHERE p.warehouse_id = w.id),
            updated_at = now()
        WHERE w.id = %s
        RETURNING id, name, total_products, stock_count
        """,
        (warehouse_id,),
    )
    return cur.fetchone()


def recount_counters(cur, user_id=None) -> dict:
    """Full rescan of every counter. Running it twice in a row yields identical totals."""
    cur.execute("SELECT name FROM brands UNION SELECT DISTINCT brand FROM products")
    brands = [recount_brand(cur, r["name"]) for r in cur.fetchall()]
    cur.execute("SELECT name FROM categories UNION SELECT DISTINCT category FROM products")
    categories = [recount_category(cur, r["name"]) for r in cur.fetchall()]
    cur.execute("SELECT id FROM warehouses")
    warehouses = [recount_warehouse(cur, r["id"]) for r in cur.fetchall()]
    record_adjustment(
        cur,
        user_id,
        "counters_recount",
        "product",
        None,
        {"brands": len(brands), "categories": len(categories), "warehouses": len(warehouses)},
    )
    return {"brands": brands, "categories": categories, "warehouses": warehouses}


# ---------------------------------------------------------------------------
# Stock
# ---------------------------------------------------------------------------

def adjust_stock(cur, product_id, delta: int, *, user_id=None, reason: str = "") -> dict:
    cur.execute(
        """
        SELECT id, product_id, name, brand, category, warehouse_id, stock
        FROM products
        WHERE id = %s
        FOR UPDATE
        """,
        (product_id,),
    )
    product = cur.fetchone()
    if not product:
        raise HTTPException(status_code=404, detail="product not found")
    delta = int(delta)
    current = int(product["stock"])
    new_stock = current + delta
    if new_stock < 0:
        raise HTTPException(
            status_code=400,
            detail=f"insufficient stock. available: {current}, requested: {-delta}",
        )
    if delta:
        cur.execute(
            "UPDATE products SET stock = %s, updated_at = now() WHERE id = %s",
            (new_stock, product_id),
        )
        shift_counters(cur, product["brand"], product["category"], product["warehouse_id"], products=0, stock=delta)
        record_adjustment(
            cur,
            user_id,
            "stock_adjust",
            "product",
            product_id,
            {"delta": delta, "stock": new_stock, "reason": reason},
        )
    product["stock"] = new_stock
    return product


# ---------------------------------------------------------------------------
# Cash ledgers
# ---------------------------------------------------------------------------

def _sales_cash_values(order: dict, customer_name: str, product_name: str) -> dict:
    total = _dec(order["total"])
    paid = _dec(order["payment_amount"])
    return {
        "method": order["payment_type"],
        "order_id": order["order_number"],
        "date": order["date"],
        "due_date": order["due_date"],
        "party": customer_name,
        "product": product_name,
        "quantity": int(order["quantity"]),
        "total_amount": total,
        "amount_paid": paid,
        "balance": total - paid,
        "status": settlement_status(total, paid),
        "account_number": (order.get("account_number") or "").strip() or None if order["payment_type"] == "Bank" else None,
        "payment_note": order.get("payment_note") or "",
    }


def post_sales_cash_entry(cur, order: dict, *, customer_name: str, product_name: str, user_id=None) -> dict:
    v = _sales_cash_values(order, customer_name, product_name)
    transaction_id = f"{order['order_number']}-{int(time.time() * 1000)}"
    cur.execute(
        """
        INSERT INTO cash_ledger_entries
          (id, side, method, source, order_id, transaction_id, date, due_date, party, product,
           quantity, total_amount, amount_paid, balance, status, account_number, payment_note)
        VALUES
          (gen_random_uuid(), 'sales', %s, 'sales_order', %s, %s, %s, %s, %s, %s,
           %s, %s, %s, %s, %s, %s, %s)
        RETURNING id, method, order_id, transaction_id, amount_paid, balance, status
        """,
        (
            v["method"], v["order_id"], transaction_id, v["date"], v["due_date"], v["party"], v["product"],
            v["quantity"], v["total_amount"], v["amount_paid"], v["balance"], v["status"],
            v["account_number"], v["payment_note"],
        ),
    )
    entry = cur.fetchone()
    record_adjustment(
        cur, user_id, "cash_entry_post", "sales_order", order["order_number"],
        {"method": v["method"], "amount_paid": v["amount_paid"], "status": v["status"]},
    )
    return entry


def move_sales_cash_entry(cur, order: dict, *, customer_name: str, product_name: str, user_id=None) -> dict:
    """Upsert the entry for the order's current payment type and drop the other two."""
    v = _sales_cash_values(order, customer_name, product_name)
    cur.execute(
        """
        DELETE FROM cash_ledger_entries
        WHERE side = 'sales' AND source = 'sales_order' AND order_id = %s AND method <> %s
        """,
        (v["order_id"], v["method"]),
    )
    removed = cur.rowcount
    transaction_id = f"{order['order_number']}-{int(time.time() * 1000)}"
    cur.execute(
        """
        INSERT INTO cash_ledger_entries
          (id, side, method, source, order_id, transaction_id, date, due_date, party, product,
           quantity, total_amount, amount_paid, balance, status, account_number, payment_note)
        VALUES
          (gen_random_uuid(), 'sales', %s, 'sales_order', %s, %s, %s, %s, %s, %s,
           %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (side, method, order_id) WHERE source <> 'manual' DO UPDATE
        SET date = EXCLUDED.date,
            due_date = EXCLUDED.due_date,
            party = EXCLUDED.party,
            product = EXCLUDED.product,
            quantity = EXCLUDED.quantity,
            total_amount = EXCLUDED.total_amount,
            amount_paid = EXCLUDED.amount_paid,
            balance = EXCLUDED.balance,
            status = EXCLUDED.status,
            account_number = EXCLUDED.account_number,
            payment_note = EXCLUDED.payment_note,
            updated_at = now()
        RETURNING id, method, order_id, transaction_id, amount_paid, balance, status
        """,
        (
            v["method"], v["order_id"], transaction_id, v["date"], v["due_date"], v["party"], v["product"],
            v["quantity"], v["total_amount"], v["amount_paid"], v["balance"], v["status"],
            v["account_number"], v["payment_note"],
        ),
    )
    entry = cur.fetchone()
    record_adjustment(
        cur, user_id, "cash_entry_move", "sales_order", order["order_number"],
        {"method": v["method"], "removed_other_methods": removed, "amount_paid": v["amount_paid"], "status": v["status"]},
    )
    return entry


def drop_sales_cash_entry(cur, order_number: str, *, user_id=None) -> int:
    cur.execute(
        """
        DELETE FROM cash_ledger_entries
        WHERE side = 'sales' AND source = 'sales_order' AND order_id = %s
        """,
        (order_number,),
    )
    removed = cur.rowcount
    record_adjustment(cur, user_id, "cash_entry_drop", "sales_order", order_number, {"removed": removed})
    return removed


def sync_purchase_cash_entries(cur, purchase: dict, payments: Iterable, *, product_name: str, user_id=None) -> list:
    """Mirror a purchase's payments into the purchase-side ledger, one row per payment type."""
    order_id = purchase["order_id"]
    cur.execute(
        """
        DELETE FROM cash_ledger_entries
        WHERE side = 'purchase' AND source = 'purchase' AND order_id = %s
        """,
        (order_id,),
    )
    by_method: dict = {}
    for p in payments or []:
        method = p["payment_type"]
        slot = by_method.setdefault(method, {"amount": ZERO, "account_number": None, "notes": []})
        slot["amount"] += _dec(p["amount"])
        if method == "Bank" and not slot["account_number"]:
            slot["account_number"] = (p.get("account_number") or "").strip() or None
        if p.get("payment_note"):
            slot["notes"].append(p["payment_note"])

    total = _dec(purchase["total"])
    entries = []
    for method in ("Cash", "Bank", "Cheque"):
        slot = by_method.get(method)
        if not slot or slot["amount"] <= 0:
            continue
        paid = slot["amount"]
        cur.execute(
            """
            INSERT INTO cash_ledger_entries
              (id, side, method, source, order_id, date, due_date, party, product,
               quantity, total_amount, amount_paid, balance, status, account_number, payment_note)
            VALUES
              (gen_random_uuid(), 'purchase', %s, 'purchase', %s, %s, %s, %s, %s,
               %s, %s, %s, %s, %s, %s, %s)
            RETURNING id, method, order_id, amount_paid, balance, status
            """,
            (
                method, order_id, purchase["date"], purchase["due_date"], purchase["supplier_name"], product_name,
                int(purchase["quantity"]), total, paid, total - paid, settlement_status(total, paid),
                slot["account_number"], "; ".join(slot["notes"])[:500],
            ),
        )
        entries.append(cur.fetchone())
    record_adjustment(
        cur, user_id, "purchase_cash_sync", "purchase", order_id,
        {"methods": [e["method"] for e in entries]},
    )
    return entries


def drop_purchase_cash_entries(cur, order_id: str, *, user_id=None) -> int:
    cur.execute(
        """
        DELETE FROM cash_ledger_entries
        WHERE side = 'purchase' AND source = 'purchase' AND order_id = %s
        """,
        (order_id,),
    )
    removed = cur.rowcount
    record_adjustment(cur, user_id, "purchase_cash_drop", "purchase", order_id, {"removed": removed})
    return removed


# ---------------------------------------------------------------------------
# Receivables
# ---------------------------------------------------------------------------

def open_receivable(cur, order: dict, *, customer_name: str, user_id=None) -> dict:
    amount = _dec(order["total"])
    paid = _dec(order["payment_amount"])
    status = receivable_status(amount, paid, order["due_date"])
    cur.execute(
        """
        INSERT INTO account_receivables
          (id, order_id, invoice_number, date, due_date, customer_id, customer_name, description,
           amount, amount_paid, balance, status)
        VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        RETURNING id, order_id, invoice_number, amount, amount_paid, balance, status
        """,
        (
            order["order_number"], order["order_number"], order["date"], order["due_date"],
            order["customer_id"], customer_name, f"Sales order {order['order_number']}",
            amount, paid, amount - paid, status,
        ),
    )
    receivable = cur.fetchone()
    record_adjustment(
        cur, user_id, "receivable_open", "sales_order", order["order_number"],
        {"amount": amount, "amount_paid": paid, "status": status},
    )
    return receivable


def sync_receivable(cur, order: dict, *, customer_name: str, user_id=None) -> dict:
    """
    Re-derive the order's receivable. Collections recorded against the receivable
    itself (`collected`) are kept on top of the order's own payment, capped at
    the order total.
    """
    cur.execute(
        "SELECT id, collected FROM account_receivables WHERE order_id = %s FOR UPDATE",
        (order["order_number"],),
    )
    current = cur.fetchone()
    if not current:
        return open_receivable(cur, order, customer_name=customer_name, user_id=user_id)
    amount = _dec(order["total"])
    collected = _dec(current["collected"])
    paid = min(_dec(order["payment_amount"]) + collected, amount)
    status = receivable_status(amount, paid, order["due_date"])
    cur.execute(
        """
        UPDATE account_receivables
        SET amount = %s,
            amount_paid = %s,
            balance = %s,
            status = %s,
            date = %s,
            due_date = %s,
            customer_id = %s,
            customer_name = %s,
            updated_at = now()
        WHERE id = %s
        RETURNING id, order_id, invoice_number, amount, amount_paid, balance, status
        """,
        (
            amount, paid, amount - paid, status, order["date"], order["due_date"],
            order["customer_id"], customer_name, current["id"],
        ),
    )
    receivable = cur.fetchone()
    record_adjustment(
        cur, user_id, "receivable_sync", "sales_order", order["order_number"],
        {"amount": amount, "amount_paid": paid, "collected": collected, "status": status},
    )
    return receivable


def close_receivable(cur, order_number: str, *, user_id=None) -> int:
    cur.execute(
        "DELETE FROM account_receivables WHERE invoice_number = %s OR order_id = %s",
        (order_number, order_number),
    )
    removed = cur.rowcount
    record_adjustment(cur, user_id, "receivable_close", "sales_order", order_number, {"removed": removed})
    return removed


# ---------------------------------------------------------------------------
# Payables: one canonical record per supplier
# ---------------------------------------------------------------------------

def _lock_supplier(cur, supplier_id) -> Optional[dict]:
    cur.execute(
        "SELECT id, supplier_id, name FROM suppliers WHERE id = %s FOR UPDATE",
        (supplier_id,),
    )
    return cur.fetchone()


def _supplier_payables(cur, supplier: dict) -> list:
    # Manually entered payables that only carry the supplier's name are adopted too.
    # The canonical invoice sorts first so a reconcile keeps it.
    cur.execute(
        """
        SELECT id, invoice_number, total_amount, amount_paid, created_at
        FROM account_payables
        WHERE supplier_id = %s OR (supplier_id IS NULL AND supplier = %s)
        ORDER BY (invoice_number = %s) DESC, created_at ASC, id ASC
        """,
        (supplier["id"], supplier["name"], payable_invoice_number(supplier["supplier_id"])),
    )
    return cur.fetchall()


def _write_payable(cur, payable_id, supplier: dict, total: Decimal, paid: Decimal) -> dict:
    cur.execute(
        """
        UPDATE account_payables
        SET supplier_id = %s,
            supplier = %s,
            invoice_number = %s,
            description = %s,
            total_amount = %s,
            amount_paid = %s,
            balance = %s,
            status = %s,
            updated_at = now()
        WHERE id = %s
        RETURNING id, supplier_id, supplier, invoice_number, total_amount, amount_paid, balance, status
        """,
        (
            supplier["id"], supplier["name"], payable_invoice_number(supplier["supplier_id"]), PAYABLE_DESCRIPTION,
            total, paid, total - paid, settlement_status(total, paid), payable_id,
        ),
    )
    return cur.fetchone()


def is_canonical_payable(payable: dict) -> bool:
    invoice = payable.get("invoice_number") or ""
    return invoice.startswith("PO-") and invoice.endswith("-TOTAL")


def reconcile_supplier_payable(cur, supplier_id, *, user_id=None) -> Optional[dict]:
    """Full rescan of the supplier's purchases, collapsed into one canonical payable."""
    supplier = _lock_supplier(cur, supplier_id)
    if not supplier:
        return None
    cur.execute(
        """
        SELECT COUNT(*)::int AS purchases,
               COALESCE(SUM(p.total), 0) AS total_amount,
               COALESCE(SUM((SELECT COALESCE(SUM(pp.amount), 0)
                              FROM purchase_payments pp
                              WHERE pp.purchase_id = p.id)), 0) AS amount_paid
        FROM purchases p
        WHERE p.supplier_id = %s
        """,
        (supplier_id,),
    )
    sums = cur.fetchone()
    total = _dec(sums["total_amount"])
    paid = _dec(sums["amount_paid"])

    rows = _supplier_payables(cur, supplier)
    if rows:
        keep = rows[0]["id"]
        # Drop the others first; the kept row takes over the canonical invoice number.
        cur.execute(
            """
            DELETE FROM account_payables
            WHERE (supplier_id = %s OR (supplier_id IS NULL AND supplier = %s)) AND id <> %s
            """,
            (supplier["id"], supplier["name"], keep),
        )
        collapsed = cur.rowcount
        payable = _write_payable(cur, keep, supplier, total, paid)
    elif int(sums["purchases"] or 0) > 0:
        cur.execute(
            """
            INSERT INTO account_payables
              (id, supplier_id, supplier, invoice_number, description, total_amount, amount_paid, balance, status)
            VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING id, supplier_id, supplier, invoice_number, total_amount, amount_paid, balance, status
            """,
            (
                supplier["id"], supplier["name"], payable_invoice_number(supplier["supplier_id"]),
                PAYABLE_DESCRIPTION, total, paid, total - paid, settlement_status(total, paid),
            ),
        )
        payable = cur.fetchone()
        collapsed = 0
    else:
        return None

    record_adjustment(
        cur, user_id, "payable_reconcile", "supplier", supplier_id,
        {"total_amount": total, "amount_paid": paid, "collapsed": collapsed},
    )
    return payable


def apply_payable_delta(cur, supplier_id, d_total, d_paid, *, user_id=None) -> Optional[dict]:
    """
    Shift the supplier's canonical payable by a signed delta. The supplier row lock
    serializes concurrent purchase writes for the same supplier. Anything other than
    exactly one row carrying the canonical invoice number falls back to a full
    reconcile, so adopted manual payables never absorb a delta.
    """
    if supplier_id is None:
        return None
    supplier = _lock_supplier(cur, supplier_id)
    if not supplier:
        return None
    rows = _supplier_payables(cur, supplier)
    if len(rows) != 1 or rows[0]["invoice_number"] != payable_invoice_number(supplier["supplier_id"]):
        return reconcile_supplier_payable(cur, supplier_id, user_id=user_id)
    row = rows[0]
    total = _dec(row["total_amount"]) + _dec(d_total)
    paid = _dec(row["amount_paid"]) + _dec(d_paid)
    if total < 0 or paid < 0:
        return reconcile_supplier_payable(cur, supplier_id, user_id=user_id)
    payable = _write_payable(cur, row["id"], supplier, total, paid)
    record_adjustment(
        cur, user_id, "payable_delta", "supplier", supplier_id,
        {"d_total": _dec(d_total), "d_paid": _dec(d_paid), "total_amount": total, "amount_paid": paid},
    )
    return payable
