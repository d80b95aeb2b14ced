from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from decimal import Decimal
from typing import Optional
from ..db import get_conn
from ..deps import get_current_user
from ..ledger import is_canonical_payable, reconcile_supplier_payable, record_adjustment, settlement_status
from ..payment_guards import assert_not_overpaid
from ..validation import NonBlankStr

router = APIRouter(prefix="/api/account-payable", tags=["account-payable"])

PAYABLE_COLUMNS = """
    id, supplier_id, supplier, invoice_number, description,
    total_amount, amount_paid, balance, status, created_at, updated_at
"""


class PayableIn(BaseModel):
    supplier: NonBlankStr
    supplier_id: Optional[str] = None
    invoice_number: NonBlankStr
    description: NonBlankStr
    total_amount: Decimal = Field(ge=0)
    amount_paid: Decimal = Field(default=Decimal("0"), ge=0)


class PayableUpdate(BaseModel):
    supplier: Optional[NonBlankStr] = None
    invoice_number: Optional[NonBlankStr] = None
    description: Optional[NonBlankStr] = None
    total_amount: Optional[Decimal] = Field(default=None, ge=0)
    amount_paid: Optional[Decimal] = Field(default=None, ge=0)


def _reject_reserved_invoice(invoice_number: str):
    if is_canonical_payable({"invoice_number": invoice_number}):
        raise HTTPException(status_code=400, detail="invoice numbers of the form PO-<supplier>-TOTAL are reserved")


def _fetch_payable(cur, payable_id) -> dict:
    cur.execute(f"SELECT {PAYABLE_COLUMNS} FROM account_payables WHERE id = %s", (payable_id,))
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="account payable not found")
    return row


@router.get("")
def list_payables(status: Optional[str] = None, supplier_id: Optional[str] = None):
    where = ["1=1"]
    params = []
    if status:
        where.append("status = %s")
        params.append(status)
    if supplier_id:
        where.append("supplier_id = %s")
        params.append(supplier_id)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                f"SELECT {PAYABLE_COLUMNS} FROM account_payables WHERE {' AND '.join(where)} ORDER BY created_at DESC",
                params,
            )
            return {"payables": cur.fetchall()}


@router.get("/{payable_id}")
def get_payable(payable_id: str):
    with get_conn() as conn:
        with conn.cursor() as cur:
            return {"payable": _fetch_payable(cur, payable_id)}


@router.post("", status_code=201)
def create_payable(data: PayableIn, user=Depends(get_current_user)):
    assert_not_overpaid(data.total_amount, data.amount_paid, detail="amount paid cannot exceed total amount")
    _reject_reserved_invoice(data.invoice_number)
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                supplier_id = data.supplier_id
                if supplier_id:
                    cur.execute("SELECT id FROM suppliers WHERE id = %s", (supplier_id,))
                    if not cur.fetchone():
                        raise HTTPException(status_code=404, detail="supplier not found")
                cur.execute(
                    f"""
                    INSERT INTO account_payables
                      (id, supplier_id, supplier, invoice_number, description, total_amount, amount_paid, balance, status)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING {PAYABLE_COLUMNS}
                    """,
                    (
                        supplier_id, data.supplier, data.invoice_number, data.description,
                        data.total_amount, data.amount_paid, data.total_amount - data.amount_paid,
                        settlement_status(data.total_amount, data.amount_paid),
                    ),
                )
                row = cur.fetchone()
                record_adjustment(
                    cur, user["user_id"], "payable_create", "account_payable", row["id"],
                    {"invoice_number": row["invoice_number"], "total_amount": row["total_amount"]},
                )
                return {"payable": row}


def _update_payable(payable_id: str, data: PayableUpdate, user: dict):
    patch = {k: v for k, v in data.model_dump(exclude_unset=True).items() if v is not None}
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, supplier, invoice_number, description, total_amount, amount_paid
                    FROM account_payables
                    WHERE id = %s
                    FOR UPDATE
                    """,
                    (payable_id,),
                )
                current = cur.fetchone()
                if not current:
                    raise HTTPException(status_code=404, detail="account payable not found")
                if is_canonical_payable(current):
                    if {"total_amount", "amount_paid", "invoice_number"} & set(patch):
                        raise HTTPException(
                            status_code=400,
                            detail="supplier total is kept in sync with purchases; edit the purchases instead",
                        )
                elif "invoice_number" in patch:
                    _reject_reserved_invoice(patch["invoice_number"])
                payable = dict(current)
                payable.update(patch)
                total = Decimal(payable["total_amount"])
                paid = Decimal(payable["amount_paid"])
                assert_not_overpaid(total, paid, detail="amount paid cannot exceed total amount")
                cur.execute(
                    """
                    UPDATE account_payables
                    SET supplier = %s, invoice_number = %s, description = %s,
                        total_amount = %s, amount_paid = %s, balance = %s, status = %s, updated_at = now()
                    WHERE id = %s
                    """,
                    (
                        payable["supplier"], payable["invoice_number"], payable["description"],
                        total, paid, total - paid, settlement_status(total, paid), payable_id,
                    ),
                )
                record_adjustment(
                    cur, user["user_id"], "payable_update", "account_payable", payable_id,
                    {"total_amount": total, "amount_paid": paid},
                )
                return {"payable": _fetch_payable(cur, payable_id)}


@router.put("/{payable_id}")
def update_payable(payable_id: str, data: PayableUpdate, user=Depends(get_current_user)):
    return _update_payable(payable_id, data, user)


@router.patch("/{payable_id}")
def patch_payable(payable_id: str, data: PayableUpdate, user=Depends(get_current_user)):
    return _update_payable(payable_id, data, user)


@router.delete("/{payable_id}")
def delete_payable(payable_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT id, supplier_id, invoice_number FROM account_payables WHERE id = %s FOR UPDATE",
                    (payable_id,),
                )
                row = cur.fetchone()
                if not row:
                    raise HTTPException(status_code=404, detail="account payable not found")
                if is_canonical_payable(row) and row["supplier_id"]:
                    cur.execute("SELECT COUNT(*)::int AS n FROM purchases WHERE supplier_id = %s", (row["supplier_id"],))
                    if cur.fetchone()["n"]:
                        raise HTTPException(status_code=400, detail="supplier still has purchases; delete those first")
                cur.execute("DELETE FROM account_payables WHERE id = %s", (payable_id,))
                record_adjustment(
                    cur, user["user_id"], "payable_delete", "account_payable", payable_id,
                    {"invoice_number": row["invoice_number"]},
                )
    return {"ok": True}


@router.post("/reconcile/{supplier_id}")
def reconcile_payable(supplier_id: str, user=Depends(get_current_user)):
    with get_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id FROM suppliers WHERE id = %s", (supplier_id,))
                if not cur.fetchone():
                    raise HTTPException(status_code=404, detail="supplier not found")
                return {"payable": reconcile_supplier_payable(cur, supplier_id, user_id=user["user_id"])}
