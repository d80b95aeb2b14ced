from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from fastapi import HTTPException

from backend.app.routers import cash_ledgers
from backend.app.routers.cash_ledgers import CashEntryIn
from backend.tests.fake_db import FakeDB


USER = {"user_id": "u-1", "email": "admin@example.com", "username": "admin", "role": {"id": "r-1", "name": "Admin"}}


def _endpoint(slug, path, method):
    router = cash_ledgers.routers[slug]
    for route in router.routes:
        if route.path == f"/api/{slug}{path}" and method in route.methods:
            return route.endpoint
    raise LookupError(f"{method} {path}")


def test_six_ledgers_are_mounted():
    assert sorted(cash_ledgers.routers) == [
        "cash-in-bankph",
        "cash-in-banksa",
        "cash-in-chequeph",
        "cash-in-chequesa",
        "cash-in-handph",
        "cash-in-handsa",
    ]


def _entry(**kw):
    data = {
        "order_id": "SO-260101-001",
        "due_date": datetime.now(timezone.utc) + timedelta(days=3),
        "party": "Jane Buyer",
        "product": "Widget",
        "quantity": 2,
        "total_amount": Decimal("100"),
        "amount_paid": Decimal("40"),
    }
    data.update(kw)
    return CashEntryIn(**data)


def test_manual_sales_entry_gets_transaction_id_and_status(monkeypatch):
    db = FakeDB()
    captured = {}

    def _insert(p):
        captured["params"] = p
        return [{"id": "cl-1", "order_id": p[2], "transaction_id": p[3], "balance": p[11], "status": p[12]}]

    db.on("INSERT INTO cash_ledger_entries", _insert)
    db.on("INSERT INTO audit_logs", lambda _p: 1)
    monkeypatch.setattr(cash_ledgers, "get_conn", lambda: db.conn())

    create = _endpoint("cash-in-handsa", "", "POST")
    out = create(_entry(), user=USER)["entry"]
    assert out["transaction_id"].startswith("SO-260101-001-")
    assert out["balance"] == Decimal("60")
    assert out["status"] == "Partially Paid"
    assert captured["params"][:2] == ("sales", "Cash")


def test_bank_entry_requires_account_number(monkeypatch):
    db = FakeDB()
    monkeypatch.setattr(cash_ledgers, "get_conn", lambda: db.conn())
    create = _endpoint("cash-in-bankph", "", "POST")
    with pytest.raises(HTTPException) as exc_info:
        create(_entry(), user=USER)
    assert exc_info.value.detail == "account number is required for bank entries"
    assert db.executed == []


def test_overpaid_entry_is_rejected(monkeypatch):
    monkeypatch.setattr(cash_ledgers, "get_conn", lambda: FakeDB().conn())
    create = _endpoint("cash-in-handph", "", "POST")
    with pytest.raises(HTTPException) as exc_info:
        create(_entry(amount_paid=Decimal("150")), user=USER)
    assert exc_info.value.status_code == 400


def test_synced_entries_cannot_be_deleted(monkeypatch):
    db = FakeDB()
    db.on(
        "FROM cash_ledger_entries WHERE id = %s",
        lambda _p: [{"id": "cl-1", "source": "sales_order", "order_id": "SO-260101-001"}],
    )
    monkeypatch.setattr(cash_ledgers, "get_conn", lambda: db.conn())
    delete = _endpoint("cash-in-handsa", "/{entry_id}", "DELETE")
    with pytest.raises(HTTPException) as exc_info:
        delete("cl-1", user=USER)
    assert exc_info.value.status_code == 400
    assert "sales order SO-260101-001" in exc_info.value.detail
    assert db.writes() == []


def test_manual_entry_delete(monkeypatch):
    db = FakeDB()
    db.on(
        "SELECT",
        lambda _p: [{"id": "cl-1", "source": "manual", "order_id": "X-1"}],
    )
    db.on("DELETE FROM cash_ledger_entries", lambda _p: 1)
    db.on("INSERT INTO audit_logs", lambda _p: 1)
    monkeypatch.setattr(cash_ledgers, "get_conn", lambda: db.conn())
    delete = _endpoint("cash-in-chequesa", "/{entry_id}", "DELETE")
    assert delete("cl-1", user=USER) == {"ok": True}
    _, params = db.statements("SELECT")[0]
    assert params == ("cl-1", "sales", "Cheque")
    assert len(db.statements("DELETE FROM cash_ledger_entries")) == 1
