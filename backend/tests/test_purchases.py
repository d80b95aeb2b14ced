from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from fastapi import HTTPException

from backend.app.routers import account_payable, purchases
from backend.app.routers.account_payable import PayableIn, PayableUpdate
from backend.app.routers.purchases import PurchaseIn, PurchasePaymentIn, PurchaseUpdate
from backend.tests.fake_db import FakeDB


USER = {"user_id": "u-1", "email": "admin@example.com", "username": "admin", "role": {"id": "r-1", "name": "Admin"}}


class _Store:
    """Purchases, their payments, the purchase-side cash ledger and supplier payables."""

    def __init__(self):
        self.suppliers = {
            "s-1": {"id": "s-1", "supplier_id": "SUP0001", "name": "Acme Supply"},
            "s-2": {"id": "s-2", "supplier_id": "SUP0002", "name": "Bolt Traders"},
        }
        self.purchases = {}
        self.payments = {}
        self.cash_entries = []
        self.payables = []
        self.counters = {}
        self._seq = 0

        db = FakeDB()
        db.on("FROM suppliers WHERE id = %s FOR UPDATE", lambda p: [dict(self.suppliers[p[0]])] if p[0] in self.suppliers else [])
        db.on("SELECT id, name FROM suppliers", self._supplier)
        db.on("SELECT id FROM suppliers", self._supplier)
        db.on("SELECT id, name FROM products", lambda p: [{"id": p[0], "name": "Widget"}] if p[0] == "p-1" else [])
        db.on("SELECT id FROM warehouses", lambda p: [{"id": p[0]}] if p[0] == "w-1" else [])
        db.on("substring(order_id", lambda _p: [{"n": 0}])
        db.on("INSERT INTO document_counters", self._advance)
        db.on("INSERT INTO audit_logs", lambda _p: 1)
        db.on("INSERT INTO purchases", self._insert_purchase)
        db.on("FROM purchases pu LEFT JOIN suppliers", lambda p: [dict(self.purchases[p[0]])] if p[0] in self.purchases else [])
        db.on("FROM purchases WHERE id = %s FOR UPDATE", lambda p: [dict(self.purchases[p[0]])] if p[0] in self.purchases else [])
        db.on("UPDATE purchases", self._update_purchase)
        db.on("DELETE FROM purchases", lambda p: 1 if self.purchases.pop(p[0], None) else 0)
        db.on("FROM purchases p WHERE p.supplier_id = %s", self._sums)
        db.on("COUNT(*)::int AS n FROM purchases WHERE supplier_id", self._count_purchases)
        db.on("COUNT(*)::int AS n FROM purchase_returns", lambda _p: [{"n": 0}])
        db.on("DELETE FROM purchase_payments", lambda p: len(self.payments.pop(p[0], [])))
        db.on("INSERT INTO purchase_payments", self._insert_payment)
        db.on("FROM purchase_payments WHERE purchase_id", lambda p: [dict(r) for r in self.payments.get(p[0], [])])
        db.on("DELETE FROM cash_ledger_entries", self._delete_cash)
        db.on("INSERT INTO cash_ledger_entries", self._insert_cash)
        db.on("SELECT id, invoice_number, total_amount, amount_paid, created_at FROM account_payables", self._supplier_payables)
        db.on("FROM account_payables WHERE id = %s FOR UPDATE", self._lock_payable)
        db.on("UPDATE account_payables", self._write_payable)
        db.on("DELETE FROM account_payables", self._delete_payables)
        db.on("INSERT INTO account_payables", self._insert_payable)
        db.on("FROM account_payables WHERE id = %s", self._lock_payable)
        self.db = db

    def _next(self) -> int:
        self._seq += 1
        return self._seq

    def _supplier(self, p):
        row = self.suppliers.get(p[0])
        return [{"id": row["id"], "name": row["name"]}] if row else []

    def _advance(self, p):
        key, seeded = p
        self.counters[key] = max(self.counters[key] + 1, seeded) if key in self.counters else seeded
        return [{"seq": self.counters[key]}]

    def _insert_purchase(self, p):
        order_id, date, due_date, supplier_id, supplier_name, product_id, warehouse_id, quantity, total, balance = p
        purchase_id = f"pu-{self._next()}"
        self.purchases[purchase_id] = {
            "id": purchase_id,
            "order_id": order_id,
            "date": date,
            "due_date": due_date,
            "supplier_id": supplier_id,
            "supplier_name": supplier_name,
            "product_id": product_id,
            "warehouse_id": warehouse_id,
            "quantity": quantity,
            "total": total,
            "balance": balance,
        }
        return [dict(self.purchases[purchase_id])]

    def _update_purchase(self, p):
        date, due_date, supplier_id, supplier_name, product_id, warehouse_id, quantity, total, balance, purchase_id = p
        self.purchases[purchase_id].update(
            date=date, due_date=due_date, supplier_id=supplier_id, supplier_name=supplier_name,
            product_id=product_id, warehouse_id=warehouse_id, quantity=quantity, total=total, balance=balance,
        )
        return 1

    def _insert_payment(self, p):
        purchase_id, amount, payment_type, account_number, payment_note = p
        self.payments.setdefault(purchase_id, []).append(
            {"amount": amount, "payment_type": payment_type, "account_number": account_number, "payment_note": payment_note}
        )
        return 1

    def _sums(self, p):
        rows = [r for r in self.purchases.values() if r["supplier_id"] == p[0]]
        return [{
            "purchases": len(rows),
            "total_amount": sum((Decimal(r["total"]) for r in rows), Decimal("0")),
            "amount_paid": sum((Decimal(x["amount"]) for r in rows for x in self.payments.get(r["id"], [])), Decimal("0")),
        }]

    def _count_purchases(self, p):
        return [{"n": sum(1 for r in self.purchases.values() if r["supplier_id"] == p[0])}]

    def _delete_cash(self, p):
        before = len(self.cash_entries)
        self.cash_entries = [e for e in self.cash_entries if e["order_id"] != p[0]]
        return before - len(self.cash_entries)

    def _insert_cash(self, p):
        method, order_id, date, due_date, party, product, quantity, total, paid, balance, status, account_number, note = p
        entry = {
            "id": f"cl-{self._next()}",
            "method": method,
            "order_id": order_id,
            "party": party,
            "amount_paid": paid,
            "balance": balance,
            "status": status,
            "account_number": account_number,
        }
        self.cash_entries.append(entry)
        return [dict(entry)]

    def _owned(self, row, supplier_id, name) -> bool:
        return row["supplier_id"] == supplier_id or (row["supplier_id"] is None and row["supplier"] == name)

    def _supplier_payables(self, p):
        supplier_id, name, canonical = p
        rows = [r for r in self.payables if self._owned(r, supplier_id, name)]
        rows.sort(key=lambda r: (r["invoice_number"] != canonical, r["seq"]))
        return [dict(r) for r in rows]

    def _lock_payable(self, p):
        return [dict(r) for r in self.payables if r["id"] == p[0]]

    def _write_payable(self, p):
        if len(p) == 9:
            supplier_id, supplier, invoice, description, total, paid, balance, status, payable_id = p
        else:
            supplier, invoice, description, total, paid, balance, status, payable_id = p
            supplier_id = next(r["supplier_id"] for r in self.payables if r["id"] == payable_id)
        for r in self.payables:
            if r["id"] == payable_id:
                r.update(
                    supplier_id=supplier_id, supplier=supplier, invoice_number=invoice, description=description,
                    total_amount=total, amount_paid=paid, balance=balance, status=status,
                )
                return [dict(r)]
        return 0

    def _delete_payables(self, p):
        before = len(self.payables)
        if len(p) == 1:
            self.payables = [r for r in self.payables if r["id"] != p[0]]
        else:
            supplier_id, name, keep = p
            self.payables = [r for r in self.payables if not self._owned(r, supplier_id, name) or r["id"] == keep]
        return before - len(self.payables)

    def _insert_payable(self, p):
        supplier_id, supplier, invoice, description, total, paid, balance, status = p
        seq = self._next()
        row = {
            "id": f"ap-{seq}",
            "seq": seq,
            "supplier_id": supplier_id,
            "supplier": supplier,
            "invoice_number": invoice,
            "description": description,
            "total_amount": total,
            "amount_paid": paid,
            "balance": balance,
            "status": status,
        }
        self.payables.append(row)
        return [dict(row)]

    def payables_of(self, supplier_id):
        return [r for r in self.payables if r["supplier_id"] == supplier_id]


@pytest.fixture
def store(monkeypatch):
    s = _Store()
    monkeypatch.setattr(purchases, "get_conn", lambda: s.db.conn())
    monkeypatch.setattr(account_payable, "get_conn", lambda: s.db.conn())
    return s


def _purchase(supplier_id="s-1", total="1000", payments=()):
    return PurchaseIn(
        due_date=datetime.now(timezone.utc) + timedelta(days=30),
        supplier_id=supplier_id,
        product_id="p-1",
        warehouse_id="w-1",
        quantity=5,
        total=Decimal(total),
        payments=list(payments),
    )


def _pay(amount, payment_type="Cash", account_number=None):
    return PurchasePaymentIn(amount=Decimal(amount), payment_type=payment_type, account_number=account_number)


def test_create_mirrors_payments_and_opens_the_supplier_total(store):
    out = purchases.create_purchase(
        _purchase(total="1000", payments=[_pay("300"), _pay("200", "bank", "ACC-1")]), user=USER
    )["purchase"]

    assert out["order_id"].startswith("PO-")
    assert out["balance"] == Decimal("500")
    assert sorted((e["method"], e["amount_paid"]) for e in store.cash_entries) == [
        ("Bank", Decimal("200")),
        ("Cash", Decimal("300")),
    ]
    bank = next(e for e in store.cash_entries if e["method"] == "Bank")
    assert bank["account_number"] == "ACC-1"
    assert bank["party"] == "Acme Supply"

    [payable] = store.payables_of("s-1")
    assert payable["invoice_number"] == "PO-SUP0001-TOTAL"
    assert payable["total_amount"] == Decimal("1000")
    assert payable["amount_paid"] == Decimal("500")
    assert payable["status"] == "Partially Paid"


def test_second_purchase_shifts_the_existing_supplier_total(store):
    purchases.create_purchase(_purchase(total="1000"), user=USER)
    purchases.create_purchase(_purchase(total="250", payments=[_pay("250")]), user=USER)

    [payable] = store.payables_of("s-1")
    assert payable["total_amount"] == Decimal("1250")
    assert payable["amount_paid"] == Decimal("250")
    assert payable["balance"] == Decimal("1000")
    # Only the first purchase needed a full rescan.
    assert len(store.db.statements("FROM purchases p WHERE p.supplier_id")) == 1


def test_manual_payable_is_folded_into_the_supplier_total(store):
    account_payable.create_payable(
        PayableIn(supplier="Acme Supply", supplier_id="s-1", invoice_number="INV-7", description="opening", total_amount=Decimal("500")),
        user=USER,
    )
    purchases.create_purchase(_purchase(total="1000"), user=USER)

    [payable] = store.payables_of("s-1")
    assert payable["invoice_number"] == "PO-SUP0001-TOTAL"
    assert payable["total_amount"] == Decimal("1000")
    assert payable["balance"] == Decimal("1000")


def test_unpaid_purchase_writes_no_cash_entries(store):
    purchases.create_purchase(_purchase(total="400"), user=USER)
    assert store.cash_entries == []
    assert store.payables_of("s-1")[0]["status"] == "Unpaid"


def test_overpaid_purchase_is_rejected_before_the_database(store):
    with pytest.raises(HTTPException) as exc_info:
        purchases.create_purchase(_purchase(total="100", payments=[_pay("60"), _pay("50")]), user=USER)
    assert exc_info.value.status_code == 400
    assert exc_info.value.detail == "total payments cannot exceed purchase total"
    assert store.db.executed == []


def test_update_replacing_payments_rewrites_the_cash_mirror(store):
    out = purchases.create_purchase(_purchase(total="1000", payments=[_pay("300")]), user=USER)["purchase"]
    purchases.update_purchase(out["id"], PurchaseUpdate(payments=[_pay("1000", "cheque")]), user=USER)

    assert [(e["method"], e["amount_paid"]) for e in store.cash_entries] == [("Cheque", Decimal("1000"))]
    [payable] = store.payables_of("s-1")
    assert payable["amount_paid"] == Decimal("1000")
    assert payable["status"] == "Paid"
    assert store.purchases[out["id"]]["balance"] == Decimal("0")


def test_update_moving_to_another_supplier_moves_the_amounts(store):
    first = purchases.create_purchase(_purchase(total="1000", payments=[_pay("100")]), user=USER)["purchase"]
    purchases.create_purchase(_purchase(total="400"), user=USER)

    purchases.update_purchase(first["id"], PurchaseUpdate(supplier_id="s-2"), user=USER)

    [old] = store.payables_of("s-1")
    assert old["total_amount"] == Decimal("400")
    assert old["amount_paid"] == Decimal("0")
    [new] = store.payables_of("s-2")
    assert new["invoice_number"] == "PO-SUP0002-TOTAL"
    assert new["total_amount"] == Decimal("1000")
    assert new["amount_paid"] == Decimal("100")
    assert store.purchases[first["id"]]["supplier_name"] == "Bolt Traders"
    assert store.cash_entries[0]["party"] == "Bolt Traders"


def test_update_cannot_push_payments_over_the_new_total(store):
    out = purchases.create_purchase(_purchase(total="1000", payments=[_pay("800")]), user=USER)["purchase"]
    with pytest.raises(HTTPException) as exc_info:
        purchases.update_purchase(out["id"], PurchaseUpdate(total=Decimal("500")), user=USER)
    assert exc_info.value.status_code == 400
    assert store.purchases[out["id"]]["total"] == Decimal("1000")


def test_delete_drops_the_cash_mirror_and_the_payable_amounts(store):
    out = purchases.create_purchase(_purchase(total="1000", payments=[_pay("300")]), user=USER)["purchase"]
    assert purchases.delete_purchase(out["id"], user=USER) == {"ok": True}

    assert store.purchases == {}
    assert store.cash_entries == []
    [payable] = store.payables_of("s-1")
    assert payable["total_amount"] == Decimal("0")
    assert payable["balance"] == Decimal("0")


def test_each_supplier_keeps_exactly_one_payable_matching_its_purchases(store):
    a = purchases.create_purchase(_purchase("s-1", "100", [_pay("20")]), user=USER)["purchase"]
    b = purchases.create_purchase(_purchase("s-2", "200"), user=USER)["purchase"]
    c = purchases.create_purchase(_purchase("s-1", "300", [_pay("300")]), user=USER)["purchase"]
    purchases.update_purchase(b["id"], PurchaseUpdate(supplier_id="s-1", total=Decimal("250")), user=USER)
    purchases.update_purchase(a["id"], PurchaseUpdate(supplier_id="s-2"), user=USER)
    purchases.delete_purchase(c["id"], user=USER)

    for supplier_id in ("s-1", "s-2"):
        rows = [r for r in store.purchases.values() if r["supplier_id"] == supplier_id]
        paid = sum((Decimal(x["amount"]) for r in rows for x in store.payments.get(r["id"], [])), Decimal("0"))
        [payable] = store.payables_of(supplier_id)
        assert payable["total_amount"] == sum((Decimal(r["total"]) for r in rows), Decimal("0"))
        assert payable["amount_paid"] == paid


def test_supplier_total_amounts_cannot_be_edited_by_hand(store):
    purchases.create_purchase(_purchase(total="1000"), user=USER)
    [payable] = store.payables_of("s-1")

    with pytest.raises(HTTPException) as exc_info:
        account_payable.update_payable(payable["id"], PayableUpdate(total_amount=Decimal("5")), user=USER)
    assert exc_info.value.status_code == 400
    assert store.payables_of("s-1")[0]["total_amount"] == Decimal("1000")

    out = account_payable.patch_payable(payable["id"], PayableUpdate(description="Main supplier"), user=USER)["payable"]
    assert out["description"] == "Main supplier"
    assert out["total_amount"] == Decimal("1000")


def test_supplier_total_cannot_be_deleted_while_purchases_exist(store):
    out = purchases.create_purchase(_purchase(total="1000"), user=USER)["purchase"]
    [payable] = store.payables_of("s-1")

    with pytest.raises(HTTPException) as exc_info:
        account_payable.delete_payable(payable["id"], user=USER)
    assert exc_info.value.status_code == 400
    assert len(store.payables) == 1

    purchases.delete_purchase(out["id"], user=USER)
    assert account_payable.delete_payable(payable["id"], user=USER) == {"ok": True}
    assert store.payables == []


def test_supplier_total_invoice_numbers_are_reserved(store):
    with pytest.raises(HTTPException) as exc_info:
        account_payable.create_payable(
            PayableIn(supplier="Acme Supply", invoice_number="PO-SUP0001-TOTAL", description="x", total_amount=Decimal("1")),
            user=USER,
        )
    assert exc_info.value.status_code == 400
    assert store.db.executed == []
