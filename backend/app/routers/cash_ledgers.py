"""
The six cash-in ledgers (hand/bank/cheque on the purchase and sales side).

All six share `cash_ledger_entries`; each router is scoped to one (side, method)
pair. Rows written by purchases and sales orders are read-only here; only
manual entries can be edited or deleted through these endpoints.
"""
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from ..db import get_conn
from ..deps import get_current_user
from ..ledger import record_adjustment, settlement_status
from ..payment_guards import assert_due_after, assert_not_overpaid
from ..validation import NonBlankStr, Note, as_utc

ENTRY_COLUMNS = """
    id, side, method, source, order_id, transaction_id, date, due_date, party, product,
    quantity, total_amount, amount_paid, balance, status, account_number, payment_note,
    created_at, updated_at
"""

# module name (also the url slug) -> (side, method)
LEDGERS = {
    "cash-in-handph": ("purchase", "Cash"),
    "cash-in-bankph": ("purchase", "Bank"),
    "cash-in-chequeph": ("purchase", "Cheque"),
    "cash-in-handsa": ("sales", "Cash"),
    "cash-in-banksa": ("sales", "Bank"),
    "cash-in-chequesa": ("sales", "Cheque"),
}


class CashEntryIn(BaseModel):
    order_id: NonBlankStr
    date: Optional[datetime] = None
    due_date: datetime
    party: NonBlankStr
    product: NonBlankStr
    quantity: int = Field(ge=1)
    total_amount: Decimal = Field(gt=0)
    amount_paid: Decimal = Field(ge=0)
    account_number: Optional[str] = None
    payment_note: Optional[Note] = None


class CashEntryUpdate(BaseModel):
    order_id: Optional[NonBlankStr] = None
    date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    party: Optional[NonBlankStr] = None
    product: Optional[NonBlankStr] = None
    quantity: Optional[int] = Field(default=None, ge=1)
    total_amount: Optional[Decimal] = Field(default=None, gt=0)
    amount_paid: Optional[Decimal] = Field(default=None, ge=0)
    account_number: Optional[str] = None
    payment_note: Optional[Note] = None


def _check_entry(method: str, entry: dict):
    assert_not_overpaid(Decimal(entry["total_amount"]), Decimal(entry["amount_paid"]), detail="amount paid cannot exceed total amount")
    assert_due_after(entry["date"], entry["due_date"])
    if method == "Bank" and not (entry.get("account_number") or "").strip():
        raise HTTPException(status_code=400, detail="account number is required for bank entries")


def build_router(slug: str, side: str, method: str) -> APIRouter:
    router = APIRouter(prefix=f"/api/{slug}", tags=[slug])
    scope = "side = %s AND method = %s"

    def _fetch(cur, entry_id) -> dict:
        cur.execute(
            f"SELECT {ENTRY_COLUMNS} FROM cash_ledger_entries WHERE id = %s AND {scope}",
            (entry_id, side, method),
        )
        row = cur.fetchone()
        if not row:
            raise HTTPException(status_code=404, detail="transaction not found")
        return row

    def _lock_manual(cur, entry_id) -> dict:
        cur.execute(
            f"SELECT {ENTRY_COLUMNS} FROM cash_ledger_entries WHERE id = %s AND {scope} FOR UPDATE",
            (entry_id, side, method),
        )
        row = cur.fetchone()
        if not row:
            raise HTTPException(status_code=404, detail="transaction not found")
        if row["source"] != "manual":
            raise HTTPException(
                status_code=400,
                detail=f"entry is kept in sync with {row['source'].replace('_', ' ')} {row['order_id']}; edit that instead",
            )
        return row

    @router.get("")
    def list_entries(order_id: Optional[str] = None):
        with get_conn() as conn:
            with conn.cursor() as cur:
                if order_id:
                    cur.execute(
                        f"SELECT {ENTRY_COLUMNS} FROM cash_ledger_entries WHERE {scope} AND order_id = %s ORDER BY date DESC",
                        (side, method, order_id),
                    )
                else:
                    cur.execute(
                        f"SELECT {ENTRY_COLUMNS} FROM cash_ledger_entries WHERE {scope} ORDER BY date DESC",
                        (side, method),
                    )
                return {"entries": cur.fetchall()}

    @router.get("/{entry_id}")
    def get_entry(entry_id: str):
        with get_conn() as conn:
            with conn.cursor() as cur:
                return {"entry": _fetch(cur, entry_id)}

    @router.post("", status_code=201)
    def create_entry(data: CashEntryIn, user=Depends(get_current_user)):
        entry = data.model_dump()
        entry["date"] = as_utc(entry["date"]) or datetime.now(timezone.utc)
        entry["due_date"] = as_utc(entry["due_date"])
        _check_entry(method, entry)
        total, paid = entry["total_amount"], entry["amount_paid"]
        transaction_id = f"{entry['order_id']}-{int(time.time() * 1000)}" if side == "sales" else None
        with get_conn() as conn:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(
                        f"""
                        INSERT INTO cash_ledger_entries
                          (id, side, method, source, order_id, transaction_id, date, due_date, party, product,
                           quantity, total_amount, amount_paid, balance, status, account_number, payment_note)
                        VALUES
                          (gen_random_uuid(), %s, %s, 'manual', %s, %s, %s, %s, %s, %s,
                           %s, %s, %s, %s, %s, %s, %s)
                        RETURNING {ENTRY_COLUMNS}
                        """,
                        (
                            side, method, entry["order_id"], transaction_id, entry["date"], entry["due_date"],
                            entry["party"], entry["product"], entry["quantity"], total, paid, total - paid,
                            settlement_status(total, paid),
                            (entry.get("account_number") or "").strip() or None if method == "Bank" else None,
                            entry.get("payment_note") or None,
                        ),
                    )
                    row = cur.fetchone()
                    record_adjustment(
                        cur, user["user_id"], "cash_entry_create", f"{side}_cash_{method.lower()}", row["id"],
                        {"order_id": row["order_id"], "amount_paid": paid},
                    )
                    return {"entry": row}

    @router.put("/{entry_id}")
    def update_entry(entry_id: str, data: CashEntryUpdate, user=Depends(get_current_user)):
        patch = {k: v for k, v in data.model_dump(exclude_unset=True).items() if v is not None}
        with get_conn() as conn:
            with conn.transaction():
                with conn.cursor() as cur:
                    entry = dict(_lock_manual(cur, entry_id))
                    entry.update(patch)
                    entry["date"] = as_utc(entry["date"])
                    entry["due_date"] = as_utc(entry["due_date"])
                    _check_entry(method, entry)
                    total = Decimal(entry["total_amount"])
                    paid = Decimal(entry["amount_paid"])
                    cur.execute(
                        """
                        UPDATE cash_ledger_entries
                        SET order_id = %s, date = %s, due_date = %s, party = %s, product = %s, quantity = %s,
                            total_amount = %s, amount_paid = %s, balance = %s, status = %s,
                            account_number = %s, payment_note = %s, updated_at = now()
                        WHERE id = %s
                        """,
                        (
                            entry["order_id"], entry["date"], entry["due_date"], entry["party"], entry["product"],
                            entry["quantity"], total, paid, total - paid, settlement_status(total, paid),
                            (entry.get("account_number") or "").strip() or None if method == "Bank" else None,
                            entry.get("payment_note") or None, entry_id,
                        ),
                    )
                    record_adjustment(
                        cur, user["user_id"], "cash_entry_update", f"{side}_cash_{method.lower()}", entry_id,
                        {"amount_paid": paid, "total_amount": total},
                    )
                    return {"entry": _fetch(cur, entry_id)}

    @router.delete("/{entry_id}")
    def delete_entry(entry_id: str, user=Depends(get_current_user)):
        with get_conn() as conn:
            with conn.transaction():
                with conn.cursor() as cur:
                    entry = _lock_manual(cur, entry_id)
                    cur.execute("DELETE FROM cash_ledger_entries WHERE id = %s", (entry_id,))
                    record_adjustment(
                        cur, user["user_id"], "cash_entry_delete", f"{side}_cash_{method.lower()}", entry_id,
                        {"order_id": entry["order_id"]},
                    )
        return {"ok": True}

    return router


routers = {module: build_router(module, side, method) for module, (side, method) in LEDGERS.items()}
