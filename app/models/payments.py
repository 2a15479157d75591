"""M-Pesa payment records using SQLAlchemy Core."""

from uuid import uuid4

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Numeric,
    String,
    Table,
    Text,
    Uuid,
    func,
)

from app.models.base import metadata

# Append-only; one row per applied success callback
mpesa_payments = Table(
    "mpesa_payments",
    metadata,
    Column("id", Uuid(as_uuid=True), primary_key=True, default=uuid4),
    Column(
        "appointment_id",
        Uuid(as_uuid=True),
        ForeignKey("appointments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("checkout_request_id", Text, nullable=True),
    Column("merchant_request_id", Text, nullable=True),
    Column("amount", Numeric(10, 2), nullable=True),
    Column("mpesa_receipt", Text, nullable=False, unique=True),
    Column("phone_number", String(12), nullable=True),
    Column("transaction_date", DateTime(timezone=True), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)
