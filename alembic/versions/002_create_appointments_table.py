"""Create appointments table

Revision ID: 002
Revises: 001
Create Date: 2026-09-21 00:10:00.000000

"""

from typing import Sequence, Union

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create appointments table with its slot constraints."""
    op.create_table(
        "appointments",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column(
            "client_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "doctor_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("appointment_date", sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("phone_number", sa.String(12), nullable=False),
        sa.Column(
            "status",
            sa.Text(),
            nullable=False,
            server_default=sa.text("'PendingPayment'"),
        ),
        sa.Column("payment_status", sa.Text(), nullable=True),
        sa.Column("transaction_id", sa.Text(), nullable=True),
        sa.Column("merchant_request_id", sa.Text(), nullable=True),
        sa.Column("checkout_request_id", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.CheckConstraint(
            "status IN ('PendingPayment', 'Pending', 'Booked', 'Failed', 'Expired', "
            "'Confirmed', 'Rejected')",
            name="appointments_status_check",
        ),
        sa.CheckConstraint(
            "payment_status IS NULL OR payment_status IN ('Completed', 'Failed')",
            name="appointments_payment_status_check",
        ),
        sa.CheckConstraint(
            "payment_status IS NULL OR payment_status <> 'Completed' OR transaction_id IS NOT NULL",
            name="appointments_completed_has_transaction_check",
        ),
    )

    op.create_index(
        "ix_appointments_doctor_slot", "appointments", ["doctor_id", "appointment_date"]
    )
    op.create_index("ix_appointments_client_id", "appointments", ["client_id"])
    op.create_index(
        "ix_appointments_status_created_at", "appointments", ["status", "created_at"]
    )
    op.create_index(
        "ix_appointments_checkout_request_id", "appointments", ["checkout_request_id"]
    )

    # At most one appointment holds a doctor's slot
    op.create_index(
        "uq_appointments_doctor_slot_held",
        "appointments",
        ["doctor_id", "appointment_date"],
        unique=True,
        postgresql_where=sa.text("status IN ('Booked', 'Confirmed')"),
    )


def downgrade() -> None:
    """Drop appointments table."""
    op.drop_index("uq_appointments_doctor_slot_held", table_name="appointments")
    op.drop_index("ix_appointments_checkout_request_id", table_name="appointments")
    op.drop_index("ix_appointments_status_created_at", table_name="appointments")
    op.drop_index("ix_appointments_client_id", table_name="appointments")
    op.drop_index("ix_appointments_doctor_slot", table_name="appointments")
    op.drop_table("appointments")
