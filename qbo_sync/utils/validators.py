from __future__ import annotations

import uuid

from fastapi import HTTPException, status

from qbo_sync.schemas.sync import LocalEntityType


_LOCAL_TYPE_ALIASES = {
    "client": LocalEntityType.CLIENT,
    "clients": LocalEntityType.CLIENT,
    "expense": LocalEntityType.EXPENSE,
    "expenses": LocalEntityType.EXPENSE,
    "expense_payment": LocalEntityType.EXPENSE_PAYMENT,
    "expense-payments": LocalEntityType.EXPENSE_PAYMENT,
    "invoice": LocalEntityType.INVOICE,
    "invoices": LocalEntityType.INVOICE,
    "invoice_payment": LocalEntityType.INVOICE_PAYMENT,
    "invoice-payments": LocalEntityType.INVOICE_PAYMENT,
}


def parse_uuid(value: str, field_name: str = "identifier") -> uuid.UUID:
    try:
        return uuid.UUID(str(value))
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid {field_name} format",
        ) from exc


def resolve_local_type(value: str) -> LocalEntityType:
    """Map a route segment to a syncable entity type.

    Vendors are synced only as a dependency of an expense, so they are not
    addressable here.
    """
    resolved = _LOCAL_TYPE_ALIASES.get(value.strip().lower())
    if resolved is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unsupported entity type '{value}'",
        )
    return resolved
