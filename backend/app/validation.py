from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Literal, Optional

from pydantic import BeforeValidator, StringConstraints


_CANONICAL = {
    "cash": "Cash",
    "bank": "Bank",
    "cheque": "Cheque",
    "check": "Cheque",
    "upi": "UPI",
    "card": "Card",
    "credit card": "Credit Card",
    "online transfer": "Online Transfer",
    "pending": "Pending",
    "processing": "Processing",
    "completed": "Completed",
    "cancelled": "Cancelled",
    "approved": "Approved",
    "paid": "Paid",
    "rejected": "Rejected",
    "active": "Active",
    "inactive": "Inactive",
}


def _canonical_label(v):
    if v is None:
        return v
    raw = " ".join(str(v).split())
    return _CANONICAL.get(raw.lower(), raw)


def _strip_str(v):
    if v is None:
        return v
    return str(v).strip()


# Canonical labels mirror the CHECK constraints in `backend/db/migrations/001_init.sql`.
PaymentType = Annotated[Literal["Cash", "Bank", "Cheque"], BeforeValidator(_canonical_label)]
SalesReturnPaymentType = Annotated[Literal["Cash", "Bank", "UPI", "Card"], BeforeValidator(_canonical_label)]
ExpensePaymentType = Annotated[
    Literal["Cash", "Bank", "Cheque", "Credit Card", "Online Transfer"],
    BeforeValidator(_canonical_label),
]
SalesOrderStatus = Annotated[
    Literal["Pending", "Processing", "Completed", "Cancelled"], BeforeValidator(_canonical_label)
]
ReturnStatus = Annotated[Literal["Pending", "Completed", "Cancelled"], BeforeValidator(_canonical_label)]
ExpenseStatus = Annotated[Literal["Pending", "Approved", "Paid", "Rejected"], BeforeValidator(_canonical_label)]
ActiveStatus = Annotated[Literal["Active", "Inactive"], BeforeValidator(_canonical_label)]

NonBlankStr = Annotated[str, BeforeValidator(_strip_str), StringConstraints(min_length=1)]
Note = Annotated[str, BeforeValidator(_strip_str), StringConstraints(max_length=500)]


def as_utc(v: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes from clients are taken as UTC so they compare with stored timestamptz values."""
    if v is None:
        return None
    if v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v
