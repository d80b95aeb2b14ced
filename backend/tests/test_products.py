from decimal import Decimal

import pytest
from fastapi import HTTPException

from backend.app.routers import products
from backend.app.routers.products import ProductIn, ProductUpdate
from backend.tests.fake_db import FakeDB


USER = {"user_id": "u-1", "email": "admin@example.com", "username": "admin", "role": {"id": "r-1", "name": "Admin"}}


class _Store:
    def __init__(self, references=0):
        self.rows = {
            "p-1": {"id": "p-1", "product_id": "P001", "name": "Widget", "brand": "Acme", "category": "Tools",
                    "warehouse_id": "w-1", "stock": 12, "price": Decimal("9.50")},
        }
        self.references = references
        db = FakeDB()
        db.on("SELECT id FROM warehouses", lambda p: [{"id": p[0]}] if p[0] in ("w-1", "w-2") else [])
        db.on("INSERT INTO products", self._insert)
        db.on("FROM products WHERE id = %s FOR UPDATE", lambda p: [dict(self.rows[p[0]])] if p[0] in self.rows else [])
        db.on("UPDATE products", self._update)
        db.on("COUNT(*) FROM purchases WHERE product_id", lambda _p: [{"n": self.references}])
        db.on("DELETE FROM products", lambda p: [self.rows.pop(p[0])] if p[0] in self.rows else [])
        db.on("FROM products p JOIN warehouses", lambda p: [dict(self.rows[p[0]])] if p[0] in self.rows else [])
        db.on("INSERT INTO brands", lambda _p: 1)
        db.on("INSERT INTO categories", lambda _p: 1)
        db.on("UPDATE warehouses", lambda _p: 1)
        db.on("INSERT INTO audit_logs", lambda _p: 1)
        self.db = db

    def _insert(self, p):
        code, barcode, name, brand, category, description, price, stock, warehouse_id = p
        row = {"id": "p-2", "product_id": code, "barcode": barcode, "name": name, "brand": brand,
               "category": category, "warehouse_id": warehouse_id, "stock": stock, "price": price}
        self.rows["p-2"] = row
        return [dict(row)]

    def _update(self, p):
        # Column names come from the SET clause of the statement being run.
        sql = self.db.executed[-1][0]
        columns = [part.split(" = ")[0] for part in sql.split(" SET ", 1)[1].split(", updated_at")[0].split(", ")]
        *values, product_id = p
        self.rows[product_id].update(zip(columns, values))
        return [dict(self.rows[product_id])]


@pytest.fixture
def store(monkeypatch):
    def _make(references=0):
        s = _Store(references)
        monkeypatch.setattr(products, "get_conn", lambda: s.db.conn())
        return s

    return _make


def test_create_counts_the_new_product_once(store):
    s = store()
    out = products.create_product(
        ProductIn(product_id=" P002 ", name="Gadget", brand="Bolt", category="Toys", description="small",
                  price=Decimal("4"), stock=7, warehouse_id="w-1"),
        user=USER,
    )["product"]
    assert out["product_id"] == "P002"
    assert out["barcode"] == "P002"
    _, brand_params = s.db.statements("INSERT INTO brands")[0]
    assert brand_params == ("Bolt", 1, 7, 1, 7)
    _, wh_params = s.db.statements("UPDATE warehouses")[0]
    assert wh_params == (1, 7, "w-1")


def test_update_moving_brand_and_stock_shifts_both_counters(store):
    s = store()
    products.update_product("p-1", ProductUpdate(brand="Bolt", stock=20), user=USER)

    assert [p for _, p in s.db.statements("INSERT INTO brands")] == [
        ("Acme", -1, -12, -1, -12),
        ("Bolt", 1, 20, 1, 20),
    ]
    assert [p for _, p in s.db.statements("UPDATE warehouses")] == [(-1, -12, "w-1"), (1, 20, "w-1")]
    assert s.rows["p-1"]["brand"] == "Bolt"


def test_update_moving_warehouse_shifts_stock_between_them(store):
    s = store()
    products.update_product("p-1", ProductUpdate(warehouse_id="w-2"), user=USER)
    assert [p for _, p in s.db.statements("UPDATE warehouses")] == [(-1, -12, "w-1"), (1, 12, "w-2")]


def test_update_of_price_only_leaves_counters_alone(store):
    s = store()
    out = products.update_product("p-1", ProductUpdate(price=Decimal("11")), user=USER)["product"]
    assert out["price"] == Decimal("11")
    assert s.db.statements("INSERT INTO brands") == []
    assert s.db.statements("UPDATE warehouses") == []


def test_update_to_unknown_warehouse_is_404(store):
    s = store()
    with pytest.raises(HTTPException) as exc_info:
        products.update_product("p-1", ProductUpdate(warehouse_id="w-9"), user=USER)
    assert exc_info.value.status_code == 404
    assert s.db.writes() == []


def test_delete_removes_the_whole_contribution(store):
    s = store()
    assert products.delete_product("p-1", user=USER) == {"ok": True}
    _, cat_params = s.db.statements("INSERT INTO categories")[0]
    assert cat_params == ("Tools", -1, -12, -1, -12)
    assert "p-1" not in s.rows


def test_referenced_product_cannot_be_deleted(store):
    s = store(references=2)
    with pytest.raises(HTTPException) as exc_info:
        products.delete_product("p-1", user=USER)
    assert exc_info.value.status_code == 400
    assert s.db.writes() == []
    assert "p-1" in s.rows
