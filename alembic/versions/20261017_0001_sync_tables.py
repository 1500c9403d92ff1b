"""QBO connection, entity reference and sync log tables

Revision ID: 20261017_0001
Revises:
Create Date: 2026-10-17 09:00:00.000000
"""
from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql


revision = "20261017_0001"
down_revision = None
branch_labels = None
depends_on = None


local_entity_type_enum = sa.Enum(
    "client",
    "vendor",
    "expense",
    "expense_payment",
    "invoice",
    "invoice_payment",
    name="local_entity_type_enum",
    native_enum=False,
)

external_entity_type_enum = sa.Enum(
    "customer",
    "vendor",
    "bill",
    "billpayment",
    "invoice",
    "payment",
    name="external_entity_type_enum",
    native_enum=False,
)

sync_log_status_enum = sa.Enum(
    "success",
    "error",
    name="sync_log_status_enum",
    native_enum=False,
)


def _guid_type(bind) -> sa.types.TypeEngine:
    if bind.dialect.name == "postgresql":
        return postgresql.UUID(as_uuid=True)
    return sa.String(length=36)


def _timestamp(name: str) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
    )


def upgrade() -> None:
    bind = op.get_bind()
    guid = _guid_type(bind)

    op.create_table(
        "qbo_connections",
        sa.Column("id", guid, nullable=False),
        sa.Column("account_id", guid, nullable=False),
        sa.Column("realm_id", sa.String(length=64), nullable=False),
        sa.Column("access_token", sa.Text(), nullable=False),
        sa.Column("refresh_token_enc", sa.Text(), nullable=False),
        sa.Column("access_expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("refresh_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("scopes", sa.JSON(), nullable=True),
        sa.Column("refresh_counter", sa.Integer(), nullable=False, server_default="0"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("account_id", name="uq_qbo_connections_account"),
    )
    op.create_index("ix_qbo_connections_realm_id", "qbo_connections", ["realm_id"])

    op.create_table(
        "entity_references",
        sa.Column("id", guid, nullable=False),
        sa.Column("account_id", guid, nullable=False),
        sa.Column("realm_id", sa.String(length=64), nullable=False),
        sa.Column("local_entity_type", local_entity_type_enum, nullable=False),
        sa.Column("local_entity_id", sa.String(length=255), nullable=False),
        sa.Column("external_entity_id", sa.String(length=64), nullable=False),
        sa.Column("external_entity_type", external_entity_type_enum, nullable=False),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "local_entity_type",
            "local_entity_id",
            name="uq_entity_references_local",
        ),
    )
    op.create_index("ix_entity_references_account_id", "entity_references", ["account_id"])

    op.create_table(
        "qbo_sync_logs",
        sa.Column("id", guid, nullable=False),
        sa.Column("account_id", guid, nullable=False),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("status", sync_log_status_enum, nullable=False),
        sa.Column("local_entity_type", sa.String(length=32), nullable=True),
        sa.Column("local_entity_id", sa.String(length=255), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_qbo_sync_logs_account_created",
        "qbo_sync_logs",
        ["account_id", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_qbo_sync_logs_account_created", table_name="qbo_sync_logs")
    op.drop_table("qbo_sync_logs")
    op.drop_index("ix_entity_references_account_id", table_name="entity_references")
    op.drop_table("entity_references")
    op.drop_index("ix_qbo_connections_realm_id", table_name="qbo_connections")
    op.drop_table("qbo_connections")
