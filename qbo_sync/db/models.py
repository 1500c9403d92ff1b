from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import CHAR, TypeDecorator

from qbo_sync.schemas.sync import ExternalEntityType, LocalEntityType


class GUID(TypeDecorator):
    """Platform-independent GUID type."""

    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PGUUID(as_uuid=True))
        return dialect.type_descriptor(CHAR(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return str(value)
        return str(uuid.UUID(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(value)


Money = Numeric(14, 4, asdecimal=True)


class Base(DeclarativeBase):
    """Shared base class for ORM models."""

    id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        primary_key=True,
        default=uuid.uuid4,
    )


class Connection(Base):
    __tablename__ = "qbo_connections"
    __table_args__ = (
        UniqueConstraint("account_id", name="uq_qbo_connections_account"),
        Index("ix_qbo_connections_realm_id", "realm_id"),
    )

    account_id: Mapped[uuid.UUID] = mapped_column(GUID(), nullable=False)
    realm_id: Mapped[str] = mapped_column(String(64), nullable=False)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token_enc: Mapped[str] = mapped_column(Text, nullable=False)
    access_expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    refresh_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    scopes: Mapped[Optional[list[str]]] = mapped_column(JSON(none_as_null=True))
    refresh_counter: Mapped[int] = mapped_column(default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class EntityReference(Base):
    __tablename__ = "entity_references"
    __table_args__ = (
        UniqueConstraint("local_entity_type", "local_entity_id", name="uq_entity_references_local"),
        Index("ix_entity_references_account_id", "account_id"),
    )

    account_id: Mapped[uuid.UUID] = mapped_column(GUID(), nullable=False)
    realm_id: Mapped[str] = mapped_column(String(64), nullable=False)
    local_entity_type: Mapped[LocalEntityType] = mapped_column(
        Enum(
            LocalEntityType,
            name="local_entity_type_enum",
            native_enum=False,
            values_callable=lambda members: [member.value for member in members],
        ),
        nullable=False,
    )
    local_entity_id: Mapped[str] = mapped_column(String(255), nullable=False)
    external_entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    external_entity_type: Mapped[ExternalEntityType] = mapped_column(
        Enum(
            ExternalEntityType,
            name="external_entity_type_enum",
            native_enum=False,
            values_callable=lambda members: [member.value for member in members],
        ),
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


class SyncLogEntry(Base):
    __tablename__ = "qbo_sync_logs"
    __table_args__ = (
        Index("ix_qbo_sync_logs_account_created", "account_id", "created_at"),
    )

    account_id: Mapped[uuid.UUID] = mapped_column(GUID(), nullable=False)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(
        Enum("success", "error", name="sync_log_status_enum", native_enum=False),
        nullable=False,
    )
    local_entity_type: Mapped[Optional[str]] = mapped_column(String(32))
    local_entity_id: Mapped[Optional[str]] = mapped_column(String(255))
    payload: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON(none_as_null=True))
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


# Local domain rows. The wider application owns these tables; the sync layer only reads them.


class Client(Base):
    __tablename__ = "clients"

    account_id: Mapped[uuid.UUID] = mapped_column(GUID(), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    company_name: Mapped[Optional[str]] = mapped_column(String(255))
    email: Mapped[Optional[str]] = mapped_column(String(255))
    phone: Mapped[Optional[str]] = mapped_column(String(64))
    address_line1: Mapped[Optional[str]] = mapped_column(String(500))
    address_line2: Mapped[Optional[str]] = mapped_column(String(500))
    city: Mapped[Optional[str]] = mapped_column(String(100))
    state: Mapped[Optional[str]] = mapped_column(String(100))
    postal_code: Mapped[Optional[str]] = mapped_column(String(50))
    country: Mapped[Optional[str]] = mapped_column(String(100))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


class Expense(Base):
    __tablename__ = "expenses"

    account_id: Mapped[uuid.UUID] = mapped_column(GUID(), nullable=False, index=True)
    client_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        GUID(),
        ForeignKey("clients.id", ondelete="SET NULL"),
        nullable=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    payee: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    expense_date: Mapped[Optional[date]] = mapped_column(Date)
    expense_number: Mapped[Optional[str]] = mapped_column(String(64))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


class ExpensePayment(Base):
    __tablename__ = "expense_payments"

    account_id: Mapped[uuid.UUID] = mapped_column(GUID(), nullable=False, index=True)
    expense_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("expenses.id", ondelete="CASCADE"),
        nullable=False,
    )
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    payment_date: Mapped[Optional[date]] = mapped_column(Date)
    payment_reference: Mapped[Optional[str]] = mapped_column(String(64))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


class Invoice(Base):
    __tablename__ = "invoices"

    account_id: Mapped[uuid.UUID] = mapped_column(GUID(), nullable=False, index=True)
    client_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("clients.id", ondelete="RESTRICT"),
        nullable=False,
    )
    invoice_number: Mapped[Optional[str]] = mapped_column(String(64))
    description: Mapped[Optional[str]] = mapped_column(String(4000))
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    invoice_date: Mapped[Optional[date]] = mapped_column(Date)
    due_date: Mapped[Optional[date]] = mapped_column(Date)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


class InvoicePayment(Base):
    __tablename__ = "invoice_payments"

    account_id: Mapped[uuid.UUID] = mapped_column(GUID(), nullable=False, index=True)
    invoice_id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        ForeignKey("invoices.id", ondelete="CASCADE"),
        nullable=False,
    )
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    payment_date: Mapped[Optional[date]] = mapped_column(Date)
    payment_method: Mapped[Optional[str]] = mapped_column(String(32))
    payment_reference: Mapped[Optional[str]] = mapped_column(String(64))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
