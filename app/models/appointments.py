"""Appointments table model using SQLAlchemy Core."""

from uuid import uuid4

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Table,
    Text,
    Uuid,
    func,
    text,
)

from app.models.base import metadata

# Statuses that hold a doctor's slot exclusively
SLOT_HOLDING_CLAUSE = "status IN ('Booked', 'Confirmed')"

appointments = Table(
    "appointments",
    metadata,
    Column("id", Uuid(as_uuid=True), primary_key=True, default=uuid4),
    # Ownership / references
    Column(
        "client_id",
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column(
        "doctor_id",
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    ),
    # Slot
    Column("appointment_date", DateTime(timezone=True), nullable=False),
    # Payment parameters captured at booking time
    Column("amount", Numeric(10, 2), nullable=False),
    Column("phone_number", String(12), nullable=False),
    # State machine
    Column("status", Text, nullable=False, server_default=text("'PendingPayment'")),
    Column("payment_status", Text, nullable=True),
    Column("transaction_id", Text, nullable=True),
    # Gateway references from the STK push acknowledgement
    Column("merchant_request_id", Text, nullable=True),
    Column("checkout_request_id", Text, nullable=True, index=True),
    # Audit fields; created_at anchors reservation expiry
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    CheckConstraint(
        "status IN ('PendingPayment', 'Pending', 'Booked', 'Failed', 'Expired', "
        "'Confirmed', 'Rejected')",
        name="appointments_status_check",
    ),
    CheckConstraint(
        "payment_status IS NULL OR payment_status IN ('Completed', 'Failed')",
        name="appointments_payment_status_check",
    ),
    CheckConstraint(
        "payment_status IS NULL OR payment_status <> 'Completed' OR transaction_id IS NOT NULL",
        name="appointments_completed_has_transaction_check",
    ),
    Index("ix_appointments_doctor_slot", "doctor_id", "appointment_date"),
    Index("ix_appointments_client_id", "client_id"),
    Index("ix_appointments_status_created_at", "status", "created_at"),
    Index(
        "uq_appointments_doctor_slot_held",
        "doctor_id",
        "appointment_date",
        unique=True,
        postgresql_where=text(SLOT_HOLDING_CLAUSE),
        sqlite_where=text(SLOT_HOLDING_CLAUSE),
    ),
)
