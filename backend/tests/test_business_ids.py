from datetime import date

from backend.app import business_ids
from backend.tests.fake_db import FakeDB


def _counter_db(existing_max=0):
    """document_counters emulated with a dict; table maxima come from `existing_max`."""
    db = FakeDB()
    counters = {}

    def _advance(params):
        key, seeded = params
        counters[key] = max(counters.get(key, 0) + 1, seeded) if key in counters else seeded
        return [{"seq": counters[key]}]

    db.on("AS n FROM", lambda _p: [{"n": existing_max}])
    db.on("INSERT INTO document_counters", _advance)
    return db, counters


def test_formatters():
    assert business_ids.format_party_code("CUS", 1) == "CUS0001"
    assert business_ids.format_party_code("SUP", 12345) == "SUP12345"
    assert business_ids.format_purchase_order_id(date(2024, 1, 1), 7) == "PO-20240101-0007"
    assert business_ids.format_daily_id("SO", date(2024, 1, 31), 12) == "SO-240131-012"
    assert business_ids.format_daily_id("SRET", date(2024, 12, 5), 1) == "SRET-241205-001"
    assert business_ids.format_expense_number(42) == "EXP-000042"


def test_parse_trailing_number():
    assert business_ids.parse_trailing_number("CUS0042") == 42
    assert business_ids.parse_trailing_number("SO-240101-003") == 3
    assert business_ids.parse_trailing_number("no digits") is None
    assert business_ids.parse_trailing_number(None) is None


def test_first_and_second_customer_ids():
    db, _ = _counter_db()
    cur = db.cursor()
    assert business_ids.next_customer_id(cur) == "CUS0001"
    assert business_ids.next_customer_id(cur) == "CUS0002"


def test_customer_sequence_is_numeric_past_four_digits():
    db, _ = _counter_db(existing_max=9999)
    assert business_ids.next_customer_id(db.cursor()) == "CUS10000"


def test_daily_ids_are_scoped_per_day():
    db, counters = _counter_db()
    cur = db.cursor()
    assert business_ids.next_daily_id(cur, "sales_order", date(2024, 1, 1)) == "SO-240101-001"
    assert business_ids.next_daily_id(cur, "sales_order", date(2024, 1, 1)) == "SO-240101-002"
    assert business_ids.next_daily_id(cur, "sales_order", date(2024, 1, 2)) == "SO-240102-001"
    assert business_ids.next_daily_id(cur, "purchase_return", date(2024, 1, 2)) == "RET-240102-001"
    assert set(counters) == {"sales_order:240101", "sales_order:240102", "purchase_return:240102"}


def test_purchase_order_and_expense_numbers():
    db, _ = _counter_db()
    cur = db.cursor()
    assert business_ids.next_purchase_order_id(cur, date(2024, 2, 29)) == "PO-20240229-0001"
    assert business_ids.next_expense_number(cur) == "EXP-000001"


def test_counter_seeds_from_rows_already_in_the_table():
    db, _ = _counter_db(existing_max=41)
    cur = db.cursor()
    assert business_ids.next_expense_number(cur) == "EXP-000042"
    floor_sql, floor_params = db.statements("AS n FROM")[0]
    assert "FROM expenses" in floor_sql
    assert floor_params == (r"^EXP-([0-9]+)$", r"^EXP-([0-9]+)$")
