from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest
from fastapi import HTTPException

from backend.app import ledger
from backend.tests.fake_db import FakeDB


NOW = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)


def test_settlement_status():
    assert ledger.settlement_status(Decimal("100"), Decimal("100")) == "Paid"
    assert ledger.settlement_status(Decimal("100"), Decimal("150")) == "Paid"
    assert ledger.settlement_status(Decimal("100"), Decimal("0.01")) == "Partially Paid"
    assert ledger.settlement_status(Decimal("100"), Decimal("0")) == "Unpaid"
    assert ledger.settlement_status(100, None) == "Unpaid"


def test_receivable_status_depends_on_due_date_only_when_unpaid():
    past = NOW - timedelta(days=1)
    future = NOW + timedelta(days=1)
    assert ledger.receivable_status(Decimal("100"), Decimal("100"), past, NOW) == "Received"
    assert ledger.receivable_status(Decimal("100"), Decimal("40"), past, NOW) == "Partially Paid"
    assert ledger.receivable_status(Decimal("100"), Decimal("0"), past, NOW) == "Overdue"
    assert ledger.receivable_status(Decimal("100"), Decimal("0"), future, NOW) == "Pending"
    assert ledger.receivable_status(Decimal("100"), Decimal("0"), None, NOW) == "Pending"


def test_receivable_status_accepts_naive_and_date_values():
    assert ledger.receivable_status(100, 0, datetime(2026, 4, 30), NOW) == "Overdue"
    assert ledger.receivable_status(100, 0, date(2026, 5, 1), NOW) == "Pending"
    assert ledger.receivable_status(100, 0, date(2026, 4, 30), NOW) == "Overdue"


def test_payments_total_accepts_rows_and_models():
    class _P:
        def __init__(self, amount):
            self.amount = amount

    assert ledger.payments_total([{"amount": Decimal("10.50")}, _P(Decimal("4.50"))]) == Decimal("15.00")
    assert ledger.payments_total([]) == Decimal("0")
    assert ledger.payments_total(None) == Decimal("0")


def test_payable_invoice_number_uses_supplier_code():
    assert ledger.payable_invoice_number("SUP0007") == "PO-SUP0007-TOTAL"


def _stock_db(stock):
    db = FakeDB()
    product = {
        "id": "p-1",
        "product_id": "P001",
        "name": "Widget",
        "brand": "Acme",
        "category": "Tools",
        "warehouse_id": "w-1",
        "stock": stock,
    }
    db.on("FROM products WHERE id = %s FOR UPDATE", lambda _p: [dict(product)])
    db.on("UPDATE products SET stock", lambda p: product.update(stock=p[0]) or 1)
    db.on("INSERT INTO brands", lambda _p: 1)
    db.on("INSERT INTO categories", lambda _p: 1)
    db.on("UPDATE warehouses", lambda _p: 1)
    db.on("INSERT INTO audit_logs", lambda _p: 1)
    return db, product


def test_adjust_stock_applies_delta_and_shifts_counters():
    db, product = _stock_db(50)
    out = ledger.adjust_stock(db.cursor(), "p-1", -10, user_id="u-1", reason="sales order SO-1")
    assert out["stock"] == 40
    assert product["stock"] == 40

    _, brand_params = db.statements("INSERT INTO brands")[0]
    assert brand_params == ("Acme", 0, -10, 0, -10)
    _, wh_params = db.statements("UPDATE warehouses")[0]
    assert wh_params == (0, -10, "w-1")
    assert len(db.statements("INSERT INTO audit_logs")) == 1


def test_adjust_stock_rejects_negative_result_without_writes():
    db, product = _stock_db(3)
    with pytest.raises(HTTPException) as exc_info:
        ledger.adjust_stock(db.cursor(), "p-1", -5)
    assert exc_info.value.status_code == 400
    assert exc_info.value.detail == "insufficient stock. available: 3, requested: 5"
    assert product["stock"] == 3
    assert db.writes() == []


def test_adjust_stock_zero_delta_is_a_no_op():
    db, _ = _stock_db(7)
    out = ledger.adjust_stock(db.cursor(), "p-1", 0)
    assert out["stock"] == 7
    assert db.writes() == []


def test_adjust_stock_unknown_product_is_404():
    db = FakeDB()
    db.on("FROM products WHERE id = %s FOR UPDATE", lambda _p: [])
    with pytest.raises(HTTPException) as exc_info:
        ledger.adjust_stock(db.cursor(), "missing", 1)
    assert exc_info.value.status_code == 404


def test_apply_product_counters_removes_whole_contribution():
    db = FakeDB()
    db.on("INSERT INTO brands", lambda _p: 1)
    db.on("INSERT INTO categories", lambda _p: 1)
    db.on("UPDATE warehouses", lambda _p: 1)
    ledger.apply_product_counters(
        db.cursor(), {"brand": "Acme", "category": "Tools", "warehouse_id": "w-1", "stock": 12}, -1
    )
    _, cat_params = db.statements("INSERT INTO categories")[0]
    assert cat_params == ("Tools", -1, -12, -1, -12)


def test_recount_counters_is_idempotent():
    products = [
        {"brand": "Acme", "category": "Tools", "warehouse_id": "w-1", "stock": 5},
        {"brand": "Acme", "category": "Toys", "warehouse_id": "w-1", "stock": 7},
    ]

    def _brand(p):
        rows = [x for x in products if x["brand"] == p[0]]
        return [{"name": p[0], "total_products": len(rows), "total_stock": sum(x["stock"] for x in rows)}]

    def _category(p):
        rows = [x for x in products if x["category"] == p[0]]
        return [{"name": p[0], "total_products": len(rows), "total_stock": sum(x["stock"] for x in rows)}]

    def _warehouse(p):
        rows = [x for x in products if x["warehouse_id"] == p[0]]
        return [{"id": p[0], "name": "Main", "total_products": len(rows), "stock_count": sum(x["stock"] for x in rows)}]

    db = FakeDB()
    db.on("SELECT name FROM brands", lambda _p: [{"name": "Acme"}])
    db.on("SELECT name FROM categories", lambda _p: [{"name": "Tools"}, {"name": "Toys"}])
    db.on("SELECT id FROM warehouses", lambda _p: [{"id": "w-1"}])
    db.on("INSERT INTO brands", _brand)
    db.on("INSERT INTO categories", _category)
    db.on("UPDATE warehouses w", _warehouse)
    db.on("INSERT INTO audit_logs", lambda _p: 1)

    first = ledger.recount_counters(db.cursor())
    second = ledger.recount_counters(db.cursor())
    assert first == second
    assert first["brands"] == [{"name": "Acme", "total_products": 2, "total_stock": 12}]
    assert first["warehouses"][0]["stock_count"] == 12


class _PayableStore:
    def __init__(self, payables, purchases_total=Decimal("0"), purchases_paid=Decimal("0"), purchase_count=0):
        self.payables = payables
        self.db = FakeDB()
        self.db.on("FROM suppliers WHERE id = %s FOR UPDATE", lambda _p: [{"id": "s-1", "supplier_id": "SUP0001", "name": "Acme Supply"}])
        self.db.on("SELECT id, invoice_number, total_amount, amount_paid, created_at FROM account_payables", lambda _p: [dict(r) for r in self.payables])
        self.db.on("UPDATE account_payables", self._write)
        self.db.on("DELETE FROM account_payables", self._delete)
        self.db.on("INSERT INTO account_payables", self._insert)
        self.db.on(
            "FROM purchases p WHERE p.supplier_id = %s",
            lambda _p: [{"purchases": purchase_count, "total_amount": purchases_total, "amount_paid": purchases_paid}],
        )
        self.db.on("INSERT INTO audit_logs", lambda _p: 1)

    def _write(self, p):
        supplier_id, supplier, invoice, _description, total, paid, balance, status, payable_id = p
        for r in self.payables:
            if r["id"] == payable_id:
                r.update(
                    supplier_id=supplier_id, supplier=supplier, invoice_number=invoice,
                    total_amount=total, amount_paid=paid, balance=balance, status=status,
                )
                return [dict(r)]
        return []

    def _delete(self, p):
        keep = p[2]
        before = len(self.payables)
        self.payables = [r for r in self.payables if r["id"] == keep]
        return before - len(self.payables)

    def _insert(self, p):
        supplier_id, supplier, invoice, description, total, paid, balance, status = p
        row = {
            "id": "ap-new",
            "supplier_id": supplier_id,
            "supplier": supplier,
            "invoice_number": invoice,
            "total_amount": total,
            "amount_paid": paid,
            "balance": balance,
            "status": status,
        }
        self.payables.append(row)
        return [dict(row)]


def test_payable_delta_shifts_the_single_canonical_record():
    store = _PayableStore([{"id": "ap-1", "invoice_number": "PO-SUP0001-TOTAL", "total_amount": Decimal("500"), "amount_paid": Decimal("100")}])
    out = ledger.apply_payable_delta(store.db.cursor(), "s-1", Decimal("200"), Decimal("50"), user_id="u-1")
    assert out["total_amount"] == Decimal("700")
    assert out["amount_paid"] == Decimal("150")
    assert out["balance"] == Decimal("550")
    assert out["status"] == "Partially Paid"
    assert store.db.statements("FROM purchases p") == []


def test_payable_delta_falls_back_to_reconcile_and_collapses_duplicates():
    store = _PayableStore(
        [
            {"id": "ap-old", "invoice_number": "INV-OLD", "total_amount": Decimal("100"), "amount_paid": Decimal("0")},
            {"id": "ap-dup", "invoice_number": "INV-DUP", "total_amount": Decimal("300"), "amount_paid": Decimal("300")},
        ],
        purchases_total=Decimal("900"),
        purchases_paid=Decimal("900"),
        purchase_count=3,
    )
    out = ledger.apply_payable_delta(store.db.cursor(), "s-1", Decimal("100"), Decimal("100"))
    assert [r["id"] for r in store.payables] == ["ap-old"]
    assert store.payables[0]["invoice_number"] == "PO-SUP0001-TOTAL"
    assert out["total_amount"] == Decimal("900")
    assert out["balance"] == Decimal("0")
    assert out["status"] == "Paid"


def test_reconcile_creates_canonical_payable_only_when_purchases_exist():
    store = _PayableStore([], purchases_total=Decimal("250"), purchases_paid=Decimal("0"), purchase_count=1)
    out = ledger.reconcile_supplier_payable(store.db.cursor(), "s-1")
    assert out["invoice_number"] == "PO-SUP0001-TOTAL"
    assert out["status"] == "Unpaid"

    empty = _PayableStore([])
    assert ledger.reconcile_supplier_payable(empty.db.cursor(), "s-1") is None
    assert empty.db.statements("INSERT INTO account_payables") == []


def test_payable_delta_without_supplier_is_ignored():
    db = FakeDB()
    assert ledger.apply_payable_delta(db.cursor(), None, Decimal("1"), Decimal("0")) is None
    assert db.executed == []


def test_payable_delta_going_negative_reconciles_from_purchases():
    store = _PayableStore(
        [{"id": "ap-1", "invoice_number": "PO-SUP0001-TOTAL", "total_amount": Decimal("100"), "amount_paid": Decimal("0")}],
        purchases_total=Decimal("40"),
        purchases_paid=Decimal("10"),
        purchase_count=1,
    )
    out = ledger.apply_payable_delta(store.db.cursor(), "s-1", Decimal("-200"), Decimal("0"))
    assert len(store.db.statements("FROM purchases p")) == 1
    assert out["total_amount"] == Decimal("40")
    assert out["balance"] == Decimal("30")


def test_payable_delta_never_lands_on_a_manual_payable():
    # A hand-entered invoice for the supplier is adopted, not shifted.
    store = _PayableStore(
        [{"id": "ap-7", "invoice_number": "INV-7", "total_amount": Decimal("500"), "amount_paid": Decimal("0")}],
        purchases_total=Decimal("1000"),
        purchases_paid=Decimal("0"),
        purchase_count=1,
    )
    out = ledger.apply_payable_delta(store.db.cursor(), "s-1", Decimal("1000"), Decimal("0"))
    assert out["total_amount"] == Decimal("1000")
    assert out["balance"] == Decimal("1000")
    assert out["invoice_number"] == "PO-SUP0001-TOTAL"
    assert len(store.db.statements("FROM purchases p")) == 1


def test_reconcile_keeps_the_canonical_row_when_one_exists():
    store = _PayableStore(
        [
            {"id": "ap-canon", "invoice_number": "PO-SUP0001-TOTAL", "total_amount": Decimal("200"), "amount_paid": Decimal("0")},
            {"id": "ap-manual", "invoice_number": "INV-9", "total_amount": Decimal("50"), "amount_paid": Decimal("0")},
        ],
        purchases_total=Decimal("200"),
        purchase_count=1,
    )
    # The SELECT orders the canonical row first; the store mirrors that order.
    ledger.reconcile_supplier_payable(store.db.cursor(), "s-1")
    assert [r["id"] for r in store.payables] == ["ap-canon"]
    assert store.payables[0]["total_amount"] == Decimal("200")
    _, select_params = store.db.statements("FROM account_payables WHERE supplier_id")[0]
    assert select_params == ("s-1", "Acme Supply", "PO-SUP0001-TOTAL")


def test_is_canonical_payable():
    assert ledger.is_canonical_payable({"invoice_number": "PO-SUP0001-TOTAL"})
    assert not ledger.is_canonical_payable({"invoice_number": "INV-7"})
    assert not ledger.is_canonical_payable({"invoice_number": None})


def _receivable_db(collected):
    db = FakeDB()
    db.on("SELECT id, collected FROM account_receivables", lambda _p: [{"id": "ar-1", "collected": collected}])
    db.on(
        "UPDATE account_receivables",
        lambda p: [{"id": "ar-1", "order_id": "SO-1", "invoice_number": "SO-1", "amount": p[0], "amount_paid": p[1], "balance": p[2], "status": p[3]}],
    )
    db.on("INSERT INTO audit_logs", lambda _p: 1)
    return db


ORDER = {
    "order_number": "SO-1",
    "date": NOW,
    "due_date": NOW + timedelta(days=30),
    "customer_id": "c-1",
    "total": Decimal("1000"),
    "payment_amount": Decimal("0"),
}


def test_sync_receivable_keeps_collections_recorded_on_the_receivable():
    db = _receivable_db(Decimal("600"))
    out = ledger.sync_receivable(db.cursor(), dict(ORDER), customer_name="Jane")
    assert out["amount_paid"] == Decimal("600")
    assert out["balance"] == Decimal("400")
    assert out["status"] == "Partially Paid"


def test_sync_receivable_caps_collections_at_the_order_total():
    db = _receivable_db(Decimal("600"))
    order = dict(ORDER, total=Decimal("800"), payment_amount=Decimal("500"))
    out = ledger.sync_receivable(db.cursor(), order, customer_name="Jane")
    assert out["amount_paid"] == Decimal("800")
    assert out["balance"] == Decimal("0")
    assert out["status"] == "Received"


def test_sync_receivable_opens_one_when_missing():
    db = FakeDB()
    db.on("SELECT id, collected FROM account_receivables", lambda _p: [])
    db.on("INSERT INTO account_receivables", lambda p: [{"id": "ar-new", "amount": p[7], "amount_paid": p[8]}])
    db.on("INSERT INTO audit_logs", lambda _p: 1)
    out = ledger.sync_receivable(db.cursor(), dict(ORDER), customer_name="Jane")
    assert out["id"] == "ar-new"
    assert db.statements("UPDATE account_receivables") == []
