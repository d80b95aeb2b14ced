from fastapi import APIRouter, HTTPException, Query
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from decimal import Decimal
from ..db import get_conn
from ..exports import csv_response

router = APIRouter(prefix="/api/reports", tags=["reports"])

LOW_STOCK_THRESHOLD = 10

ReportFormat = Query("json", pattern="^(json|csv)$")


def profit_and_loss_summary(gross_sales, sales_returns, purchases, purchase_returns, expenses) -> dict:
    gross_sales = Decimal(gross_sales or 0)
    sales_returns = Decimal(sales_returns or 0)
    purchases = Decimal(purchases or 0)
    purchase_returns = Decimal(purchase_returns or 0)
    expenses = Decimal(expenses or 0)
    net_sales = gross_sales - sales_returns
    cost_of_goods_sold = purchases - purchase_returns
    gross_profit = net_sales - cost_of_goods_sold
    return {
        "gross_sales": gross_sales,
        "sales_returns": sales_returns,
        "net_sales": net_sales,
        "purchases": purchases,
        "purchase_returns": purchase_returns,
        "cost_of_goods_sold": cost_of_goods_sold,
        "gross_profit": gross_profit,
        "operating_expenses": expenses,
        "net_profit": gross_profit - expenses,
    }


def stock_status(stock: int) -> str:
    if stock <= 0:
        return "Out of Stock"
    if stock < LOW_STOCK_THRESHOLD:
        return "Low Stock"
    return "In Stock"


def _window(start: Optional[date], end: Optional[date], default_start: Optional[date] = None):
    """Turn inclusive calendar dates into a [start, end) UTC timestamp window."""
    start = start or default_start
    if start and end and end < start:
        raise HTTPException(status_code=400, detail="end date cannot be earlier than start date")
    lo = datetime.combine(start, time.min, tzinfo=timezone.utc) if start else None
    hi = datetime.combine(end + timedelta(days=1), time.min, tzinfo=timezone.utc) if end else None
    return lo, hi


def _date_clause(column: str, lo, hi, where: list, params: list):
    if lo:
        where.append(f"{column} >= %s")
        params.append(lo)
    if hi:
        where.append(f"{column} < %s")
        params.append(hi)


def _ledger_totals(cur, lo, hi, warehouse_id: Optional[str]) -> dict:
    # Returns carry no warehouse of their own; they follow their product's warehouse.
    cur.execute(
        """
        SELECT
          (SELECT COALESCE(SUM(o.total), 0) FROM sales_orders o
            WHERE o.date >= %(lo)s AND o.date < %(hi)s
              AND (%(wh)s::uuid IS NULL OR o.warehouse_id = %(wh)s::uuid)) AS gross_sales,
          (SELECT COALESCE(SUM(r.total), 0) FROM sales_returns r JOIN products p ON p.id = r.product_id
            WHERE r.date >= %(lo)s AND r.date < %(hi)s
              AND (%(wh)s::uuid IS NULL OR p.warehouse_id = %(wh)s::uuid)) AS sales_returns,
          (SELECT COALESCE(SUM(pu.total), 0) FROM purchases pu
            WHERE pu.date >= %(lo)s AND pu.date < %(hi)s
              AND (%(wh)s::uuid IS NULL OR pu.warehouse_id = %(wh)s::uuid)) AS purchases,
          (SELECT COALESCE(SUM(r.total), 0) FROM purchase_returns r JOIN products p ON p.id = r.product_id
            WHERE r.date >= %(lo)s AND r.date < %(hi)s
              AND (%(wh)s::uuid IS NULL OR p.warehouse_id = %(wh)s::uuid)) AS purchase_returns,
          (SELECT COALESCE(SUM(e.amount), 0) FROM expenses e
            WHERE e.date >= %(lo)s AND e.date < %(hi)s AND e.status <> 'Rejected') AS expenses
        """,
        {"lo": lo, "hi": hi, "wh": warehouse_id},
    )
    return cur.fetchone()


def _warehouse_name(cur, warehouse_id: Optional[str]) -> str:
    if not warehouse_id:
        return "All Warehouses"
    cur.execute("SELECT name FROM warehouses WHERE id = %s", (warehouse_id,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="warehouse not found")
    return row["name"]


def _statement_rows(summary: dict) -> list:
    return [
        {"transaction_type": "Sales (+)", "total_amount": summary["gross_sales"]},
        {"transaction_type": "Sales returns (-)", "total_amount": summary["sales_returns"]},
        {"transaction_type": "Purchases (-)", "total_amount": summary["purchases"]},
        {"transaction_type": "Purchase returns (+)", "total_amount": summary["purchase_returns"]},
        {"transaction_type": "Expenses (-)", "total_amount": summary["operating_expenses"]},
    ]


def _statement(start_date, end_date, warehouse_id):
    lo, _ = _window(start_date, None, default_start=date.today().replace(month=1, day=1))
    hi = _window(None, end_date)[1] if end_date else datetime.now(timezone.utc)
    if lo > hi:
        raise HTTPException(status_code=400, detail="end date cannot be earlier than start date")
    with get_conn() as conn:
        with conn.cursor() as cur:
            name = _warehouse_name(cur, warehouse_id)
            t = _ledger_totals(cur, lo, hi, warehouse_id)
    summary = profit_and_loss_summary(
        t["gross_sales"], t["sales_returns"], t["purchases"], t["purchase_returns"], t["expenses"]
    )
    filters = {"start_date": lo, "end_date": hi, "warehouse": name}
    return summary, filters


@router.get("/profit-loss")
def profit_loss(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    warehouse_id: Optional[str] = None,
    format: str = ReportFormat,
):
    summary, filters = _statement(start_date, end_date, warehouse_id)
    rows = _statement_rows(summary)
    if format == "csv":
        return csv_response(["transaction_type", "total_amount"], rows, "profit_loss.csv")
    return {"data": rows, "summary": summary, "filters": filters}


@router.get("/balance-sheet")
def balance_sheet(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    warehouse_id: Optional[str] = None,
    format: str = ReportFormat,
):
    summary, filters = _statement(start_date, end_date, warehouse_id)
    rows = _statement_rows(summary)
    if format == "csv":
        return csv_response(["transaction_type", "total_amount"], rows, "balance_sheet.csv")
    return {
        "data": rows,
        "summary": {
            "net_summary": summary["net_profit"],
            "gross_profit": summary["gross_profit"],
            "net_sales": summary["net_sales"],
            "cost_of_goods_sold": summary["cost_of_goods_sold"],
            "total_expenses": summary["operating_expenses"],
            "gross_profit_details": {
                "sales": summary["gross_sales"],
                "sales_returns": summary["sales_returns"],
                "net_sales": summary["net_sales"],
                "purchases": summary["purchases"],
                "purchase_returns": summary["purchase_returns"],
                "cost_of_goods_sold": summary["cost_of_goods_sold"],
            },
        },
        "filters": filters,
    }


PURCHASE_REPORT_COLUMNS = [
    "date", "order_id", "supplier", "product", "quantity", "grand_total", "paid_amount", "balance", "status",
]


@router.get("/purchase-report")
def purchase_report(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    supplier_id: Optional[str] = None,
    format: str = ReportFormat,
):
    lo, hi = _window(start_date, end_date)
    where = ["1=1"]
    params = []
    _date_clause("pu.date", lo, hi, where, params)
    if supplier_id:
        where.append("pu.supplier_id = %s")
        params.append(supplier_id)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT pu.id, pu.date, pu.order_id, pu.supplier_name AS supplier, p.name AS product,
                       pu.quantity, pu.total AS grand_total,
                       COALESCE((SELECT SUM(pp.amount) FROM purchase_payments pp WHERE pp.purchase_id = pu.id), 0)
                         AS paid_amount
                FROM purchases pu
                JOIN products p ON p.id = pu.product_id
                WHERE {' AND '.join(where)}
                ORDER BY pu.date DESC
                """,
                params,
            )
            rows = cur.fetchall()
    for r in rows:
        r["balance"] = Decimal(r["grand_total"]) - Decimal(r["paid_amount"])
        r["status"] = "Pending" if r["balance"] > 0 else "Paid"
    if format == "csv":
        return csv_response(PURCHASE_REPORT_COLUMNS, rows, "purchase_report.csv")
    total = sum([Decimal(r["grand_total"]) for r in rows], Decimal("0"))
    paid = sum([Decimal(r["paid_amount"]) for r in rows], Decimal("0"))
    return {
        "data": rows,
        "summary": {
            "total_records": len(rows),
            "total_grand_total": total,
            "total_paid_amount": paid,
            "total_balance": total - paid,
        },
        "filters": {"start_date": start_date, "end_date": end_date, "supplier_id": supplier_id},
    }


SALES_REPORT_COLUMNS = [
    "date", "order_number", "customer", "product", "quantity", "grand_total", "paid_amount", "balance", "status",
]


@router.get("/sales-report")
def sales_report(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    customer_id: Optional[str] = None,
    format: str = ReportFormat,
):
    lo, hi = _window(start_date, end_date)
    where = ["1=1"]
    params = []
    _date_clause("o.date", lo, hi, where, params)
    if customer_id:
        where.append("o.customer_id = %s")
        params.append(customer_id)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT o.id, o.date, o.order_number, o.customer_name AS customer, p.name AS product,
                       o.quantity, o.total AS grand_total, o.payment_amount AS paid_amount
                FROM sales_orders o
                JOIN products p ON p.id = o.product_id
                WHERE {' AND '.join(where)}
                ORDER BY o.date DESC
                """,
                params,
            )
            rows = cur.fetchall()
    for r in rows:
        r["balance"] = Decimal(r["grand_total"]) - Decimal(r["paid_amount"])
        r["status"] = "Paid" if r["balance"] <= 0 else "Pending"
    if format == "csv":
        return csv_response(SALES_REPORT_COLUMNS, rows, "sales_report.csv")
    total = sum([Decimal(r["grand_total"]) for r in rows], Decimal("0"))
    paid = sum([Decimal(r["paid_amount"]) for r in rows], Decimal("0"))
    return {
        "data": rows,
        "summary": {
            "total_records": len(rows),
            "total_grand_total": total,
            "total_paid_amount": paid,
            "total_balance": total - paid,
        },
        "filters": {"start_date": start_date, "end_date": end_date, "customer_id": customer_id},
    }


EXPENSE_REPORT_COLUMNS = [
    "date", "expense_number", "category", "amount", "payment_type", "description", "vendor", "reference", "status",
]


@router.get("/expense-report")
def expense_report(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    category: Optional[str] = None,
    format: str = ReportFormat,
):
    lo, hi = _window(start_date, end_date)
    where = ["1=1"]
    params = []
    _date_clause("date", lo, hi, where, params)
    if category:
        where.append("category = %s")
        params.append(category)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT id, date, expense_number, category, amount, payment_type,
                       COALESCE(description, '') AS description, COALESCE(vendor, '') AS vendor,
                       COALESCE(reference, '') AS reference, status
                FROM expenses
                WHERE {' AND '.join(where)}
                ORDER BY date DESC, created_at DESC
                """,
                params,
            )
            rows = cur.fetchall()
    if format == "csv":
        return csv_response(EXPENSE_REPORT_COLUMNS, rows, "expense_report.csv")
    by_status: dict = {}
    by_payment_type: dict = {}
    for r in rows:
        amount = Decimal(r["amount"])
        by_status[r["status"]] = by_status.get(r["status"], Decimal("0")) + amount
        by_payment_type[r["payment_type"]] = by_payment_type.get(r["payment_type"], Decimal("0")) + amount
    return {
        "data": rows,
        "summary": {
            "total_records": len(rows),
            "total_amount": sum([Decimal(r["amount"]) for r in rows], Decimal("0")),
            "status_breakdown": by_status,
            "payment_type_breakdown": by_payment_type,
        },
        "filters": {"start_date": start_date, "end_date": end_date, "category": category or "All Categories"},
    }


PRODUCT_REPORT_COLUMNS = [
    "product_id", "name", "brand", "category", "price", "stock", "warehouse", "stock_value", "stock_status",
]


@router.get("/product-report")
def product_report(
    category: Optional[str] = None,
    brand: Optional[str] = None,
    warehouse_id: Optional[str] = None,
    format: str = ReportFormat,
):
    where = ["1=1"]
    params = []
    if category:
        where.append("p.category = %s")
        params.append(category)
    if brand:
        where.append("p.brand = %s")
        params.append(brand)
    if warehouse_id:
        where.append("p.warehouse_id = %s")
        params.append(warehouse_id)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT p.id, p.product_id, p.name, p.brand, p.category, p.description, p.price, p.stock,
                       w.name AS warehouse
                FROM products p
                JOIN warehouses w ON w.id = p.warehouse_id
                WHERE {' AND '.join(where)}
                ORDER BY p.created_at DESC
                """,
                params,
            )
            rows = cur.fetchall()
    for r in rows:
        r["stock_value"] = Decimal(r["price"]) * int(r["stock"])
        r["stock_status"] = stock_status(int(r["stock"]))
    if format == "csv":
        return csv_response(PRODUCT_REPORT_COLUMNS, rows, "product_report.csv")
    return {
        "data": rows,
        "summary": {
            "total_products": len(rows),
            "total_stock": sum([int(r["stock"]) for r in rows]),
            "total_value": sum([r["stock_value"] for r in rows], Decimal("0")),
            "low_stock_products": len([r for r in rows if int(r["stock"]) < LOW_STOCK_THRESHOLD]),
        },
        "filters": {
            "category": category or "All Categories",
            "brand": brand or "All Brands",
            "warehouse_id": warehouse_id,
        },
    }
