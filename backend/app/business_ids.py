"""
Human-readable business identifiers (CUS0001, PO-20240101-0001, SO-240101-001, ...).

Every sequence is advanced through `document_counters` with a single upsert, so two
requests can never be handed the same number. A counter that has never been used is
seeded from the numeric maximum already stored in its table, which keeps imported
rows (and `CUS9999` -> `CUS10000`) ordered correctly.
"""
import re
from datetime import date
from typing import Optional


# (table, column) pairs are fixed here; never built from request data.
_SEQUENCES = {
    "customer": ("customers", "customer_id"),
    "supplier": ("suppliers", "supplier_id"),
    "purchase_order": ("purchases", "order_id"),
    "sales_order": ("sales_orders", "order_number"),
    "purchase_return": ("purchase_returns", "return_id"),
    "sales_return": ("sales_returns", "return_id"),
    "expense": ("expenses", "expense_number"),
}

_DAILY_PREFIX = {
    "sales_order": "SO",
    "purchase_return": "RET",
    "sales_return": "SRET",
}


def format_party_code(prefix: str, seq: int) -> str:
    return f"{prefix}{seq:04d}"


def format_purchase_order_id(day: date, seq: int) -> str:
    return f"PO-{day:%Y%m%d}-{seq:04d}"


def format_daily_id(prefix: str, day: date, seq: int) -> str:
    return f"{prefix}-{day:%y%m%d}-{seq:03d}"


def format_expense_number(seq: int) -> str:
    return f"EXP-{seq:06d}"


def parse_trailing_number(value: Optional[str]) -> Optional[int]:
    m = re.search(r"([0-9]+)$", value or "")
    return int(m.group(1)) if m else None


def _numeric_floor(cur, kind: str, pattern: str) -> int:
    table, column = _SEQUENCES[kind]
    cur.execute(
        f"""
        SELECT COALESCE(MAX(substring({column} FROM %s)::bigint), 0) AS n
        FROM {table}
        WHERE {column} ~ %s
        """,
        (pattern, pattern),
    )
    row = cur.fetchone()
    return int((row or {}).get("n") or 0)


def next_sequence(cur, key: str, floor: int = 0) -> int:
    cur.execute(
        """
        INSERT INTO document_counters (key, seq)
        VALUES (%s, %s)
        ON CONFLICT (key) DO UPDATE
        SET seq = GREATEST(document_counters.seq + 1, EXCLUDED.seq),
            updated_at = now()
        RETURNING seq
        """,
        (key, int(floor) + 1),
    )
    return int(cur.fetchone()["seq"])


def next_customer_id(cur) -> str:
    floor = _numeric_floor(cur, "customer", r"^CUS([0-9]+)$")
    return format_party_code("CUS", next_sequence(cur, "customer", floor))


def next_supplier_id(cur) -> str:
    floor = _numeric_floor(cur, "supplier", r"^SUP([0-9]+)$")
    return format_party_code("SUP", next_sequence(cur, "supplier", floor))


def next_purchase_order_id(cur, today: Optional[date] = None) -> str:
    today = today or date.today()
    floor = _numeric_floor(cur, "purchase_order", r"^PO-[0-9]{8}-([0-9]+)$")
    return format_purchase_order_id(today, next_sequence(cur, "purchase_order", floor))


def next_daily_id(cur, kind: str, today: Optional[date] = None) -> str:
    today = today or date.today()
    prefix = _DAILY_PREFIX[kind]
    stamp = f"{today:%y%m%d}"
    floor = _numeric_floor(cur, kind, rf"^{prefix}-{stamp}-([0-9]+)$")
    seq = next_sequence(cur, f"{kind}:{stamp}", floor)
    return format_daily_id(prefix, today, seq)


def next_expense_number(cur) -> str:
    floor = _numeric_floor(cur, "expense", r"^EXP-([0-9]+)$")
    return format_expense_number(next_sequence(cur, "expense", floor))
