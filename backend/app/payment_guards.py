from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import HTTPException


def assert_not_overpaid(total: Decimal, paid: Decimal, detail: str = "payment amount cannot exceed total amount"):
    if paid > total:
        raise HTTPException(status_code=400, detail=detail)


def assert_non_negative(amount: Decimal, label: str):
    if amount < 0:
        raise HTTPException(status_code=400, detail=f"{label} must be >= 0")


def assert_bank_account(payment_type: str, account_number: Optional[str]):
    if payment_type == "Bank" and not (account_number or "").strip():
        raise HTTPException(status_code=400, detail="account number is required for bank payments")


def assert_due_after(date: datetime, due_date: datetime):
    if due_date < date:
        raise HTTPException(status_code=400, detail="due date cannot be earlier than order date")
