from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from fastapi import HTTPException

from backend.app import ledger
from backend.app.routers import account_receivable
from backend.app.routers.account_receivable import CollectionIn, ReceivableUpdate
from backend.tests.fake_db import FakeDB


USER = {"user_id": "u-1", "email": "admin@example.com", "username": "admin", "role": {"id": "r-1", "name": "Admin"}}
DUE = datetime.now(timezone.utc) + timedelta(days=30)


class _Store:
    def __init__(self, amount="1000", paid="0", collected="0"):
        self.row = {
            "id": "ar-1",
            "order_id": "SO-260101-001",
            "invoice_number": "SO-260101-001",
            "customer_id": "c-1",
            "customer_name": "Jane Buyer",
            "description": "Sales order SO-260101-001",
            "date": DUE - timedelta(days=60),
            "due_date": DUE,
            "amount": Decimal(amount),
            "amount_paid": Decimal(paid),
            "collected": Decimal(collected),
            "balance": Decimal(amount) - Decimal(paid),
            "status": "Pending",
        }
        db = FakeDB()
        db.on("FROM account_receivables WHERE id = %s FOR UPDATE", self._by_id)
        db.on("SELECT id, collected FROM account_receivables WHERE order_id", self._by_order)
        db.on("UPDATE account_receivables", self._update)
        db.on("FROM account_receivables ar LEFT JOIN customers", self._by_id)
        db.on("INSERT INTO audit_logs", lambda _p: 1)
        self.db = db

    def _by_id(self, p):
        return [dict(self.row)] if p[0] == self.row["id"] else []

    def _by_order(self, p):
        return [{"id": self.row["id"], "collected": self.row["collected"]}] if p[0] == self.row["order_id"] else []

    def _update(self, p):
        if len(p) == 5:
            # Collection: collected grows by the applied amount.
            paid, applied, balance, status, _id = p
            self.row.update(amount_paid=paid, collected=self.row["collected"] + applied, balance=balance, status=status)
        elif len(p) == 9:
            amount, paid, balance, status, _date, _due, _customer_id, _customer_name, _id = p
            self.row.update(amount=amount, amount_paid=paid, balance=balance, status=status)
        else:
            (customer_id, customer_name, invoice_number, description, due_date,
             amount, paid, balance, status, collected, _id) = p
            self.row.update(amount=amount, amount_paid=paid, balance=balance, status=status, collected=collected)
        return [dict(self.row)]


@pytest.fixture
def store(monkeypatch):
    def _make(**kw):
        s = _Store(**kw)
        monkeypatch.setattr(account_receivable, "get_conn", lambda: s.db.conn())
        return s

    return _make


def test_collection_adds_to_paid_and_collected(store):
    s = store(amount="1000")
    out = account_receivable.record_collection("ar-1", CollectionIn(amount=Decimal("400")), user=USER)
    assert out["applied"] == Decimal("400")
    assert out["receivable"]["amount_paid"] == Decimal("400")
    assert out["receivable"]["status"] == "Partially Paid"
    assert s.row["collected"] == Decimal("400")
    assert s.row["balance"] == Decimal("600")


def test_collection_is_capped_at_the_outstanding_balance(store):
    s = store(amount="1000", paid="900")
    out = account_receivable.record_collection("ar-1", CollectionIn(amount=Decimal("500")), user=USER)
    assert out["applied"] == Decimal("100")
    assert out["receivable"]["status"] == "Received"
    assert s.row["balance"] == Decimal("0")
    assert s.row["collected"] == Decimal("100")


def test_collection_on_a_settled_receivable_is_rejected(store):
    s = store(amount="1000", paid="1000")
    with pytest.raises(HTTPException) as exc_info:
        account_receivable.record_collection("ar-1", CollectionIn(amount=Decimal("1")), user=USER)
    assert exc_info.value.status_code == 400
    assert exc_info.value.detail == "receivable is already fully received"
    assert s.db.writes() == []


def test_collection_on_unknown_receivable_is_404(store):
    store()
    with pytest.raises(HTTPException) as exc_info:
        account_receivable.record_collection("nope", CollectionIn(amount=Decimal("1")), user=USER)
    assert exc_info.value.status_code == 404


def test_collections_survive_a_later_order_sync(store):
    s = store(amount="1000")
    account_receivable.record_collection("ar-1", CollectionIn(amount=Decimal("600")), user=USER)

    order = {
        "order_number": "SO-260101-001",
        "date": s.row["date"],
        "due_date": DUE,
        "customer_id": "c-1",
        "total": Decimal("1000"),
        "payment_amount": Decimal("0"),
    }
    ledger.sync_receivable(s.db.cursor(), order, customer_name="Jane Buyer")
    assert s.row["amount_paid"] == Decimal("600")
    assert s.row["balance"] == Decimal("400")


def test_manual_paid_edit_moves_collected_by_the_same_delta(store):
    s = store(amount="1000", paid="400", collected="300")
    account_receivable.update_receivable("ar-1", ReceivableUpdate(amount_paid=Decimal("900")), user=USER)
    assert s.row["collected"] == Decimal("800")

    account_receivable.update_receivable("ar-1", ReceivableUpdate(amount_paid=Decimal("0")), user=USER)
    assert s.row["collected"] == Decimal("0")
    assert s.row["status"] == "Pending"


def test_manual_edit_cannot_overpay(store):
    s = store(amount="1000")
    with pytest.raises(HTTPException) as exc_info:
        account_receivable.update_receivable("ar-1", ReceivableUpdate(amount_paid=Decimal("1200")), user=USER)
    assert exc_info.value.status_code == 400
    assert s.db.writes() == []
