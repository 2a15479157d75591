"""Create mpesa_payments table

Revision ID: 003
Revises: 002
Create Date: 2026-09-21 00:20:00.000000

"""

from typing import Sequence, Union

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "003"
down_revision: Union[str, None] = "002"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create mpesa_payments table."""
    op.create_table(
        "mpesa_payments",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column(
            "appointment_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("appointments.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("checkout_request_id", sa.Text(), nullable=True),
        sa.Column("merchant_request_id", sa.Text(), nullable=True),
        sa.Column("amount", sa.Numeric(10, 2), nullable=True),
        sa.Column("mpesa_receipt", sa.Text(), nullable=False),
        sa.Column("phone_number", sa.String(12), nullable=True),
        sa.Column("transaction_date", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.UniqueConstraint("mpesa_receipt", name="mpesa_payments_mpesa_receipt_key"),
    )

    op.create_index("ix_mpesa_payments_appointment_id", "mpesa_payments", ["appointment_id"])


def downgrade() -> None:
    """Drop mpesa_payments table."""
    op.drop_index("ix_mpesa_payments_appointment_id", table_name="mpesa_payments")
    op.drop_table("mpesa_payments")
