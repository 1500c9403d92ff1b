from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class LocalEntityType(str, enum.Enum):
    CLIENT = "client"
    VENDOR = "vendor"
    EXPENSE = "expense"
    EXPENSE_PAYMENT = "expense_payment"
    INVOICE = "invoice"
    INVOICE_PAYMENT = "invoice_payment"


class ExternalEntityType(str, enum.Enum):
    CUSTOMER = "customer"
    VENDOR = "vendor"
    BILL = "bill"
    BILL_PAYMENT = "billpayment"
    INVOICE = "invoice"
    PAYMENT = "payment"


class QBOResource(enum.Enum):
    """QBO entities this service creates: (resource path, response key, ledger type)."""

    CUSTOMER = ("customer", "Customer", ExternalEntityType.CUSTOMER)
    VENDOR = ("vendor", "Vendor", ExternalEntityType.VENDOR)
    BILL = ("bill", "Bill", ExternalEntityType.BILL)
    BILL_PAYMENT = ("billpayment", "BillPayment", ExternalEntityType.BILL_PAYMENT)
    INVOICE = ("invoice", "Invoice", ExternalEntityType.INVOICE)
    PAYMENT = ("payment", "Payment", ExternalEntityType.PAYMENT)

    def __init__(self, path: str, entity: str, external_type: ExternalEntityType):
        self.path = path
        self.entity = entity
        self.external_type = external_type


SyncState = Literal["unsynced", "synced"]


class ConnectionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    account_id: uuid.UUID
    realm_id: str
    access_expires_at: Optional[datetime]
    refresh_expires_at: Optional[datetime]
    scopes: list[str] | None = None
    refresh_counter: int
    created_at: datetime
    updated_at: datetime


class ConnectionStatus(BaseModel):
    account_id: uuid.UUID
    connected: bool
    environment: str
    realm_id: Optional[str] = None
    access_expires_at: Optional[datetime] = None
    refresh_expires_at: Optional[datetime] = None
    reconnect_required: bool = Field(
        default=False,
        description="True when the stored refresh token has expired and the user must reconnect.",
    )


class SyncResult(BaseModel):
    local_entity_type: LocalEntityType
    local_entity_id: str
    external_entity_id: str
    external_entity_type: Optional[ExternalEntityType] = None


class SyncStatusRead(BaseModel):
    local_entity_type: LocalEntityType
    local_entity_id: str
    status: SyncState
    external_entity_id: Optional[str] = None
    external_entity_type: Optional[ExternalEntityType] = None
    synced_at: Optional[datetime] = None


class BatchSyncRequest(BaseModel):
    ids: list[str] = Field(min_length=1, max_length=500)


class BatchSyncItem(BaseModel):
    local_entity_id: str
    status: Literal["synced", "already_synced", "failed"]
    external_entity_id: Optional[str] = None
    error: Optional[str] = None
    message: Optional[str] = None
    retriable: Optional[bool] = None


class BatchSyncResult(BaseModel):
    local_entity_type: LocalEntityType
    items: list[BatchSyncItem] = Field(default_factory=list)

    @property
    def failed(self) -> list[BatchSyncItem]:
        return [item for item in self.items if item.status == "failed"]


class ErrorResponse(BaseModel):
    code: int
    error: Optional[str] = None
    message: str
    retriable: Optional[bool] = None
    details: Any = None
    correlation_id: Optional[str] = None
