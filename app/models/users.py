"""User model definition using SQLAlchemy Core."""

from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    String,
    Table,
    Text,
    Uuid,
    func,
    text,
)

from app.models.base import metadata

# Owned by the account service; the booking workflow only reads it
users = Table(
    "users",
    metadata,
    Column("id", Uuid(as_uuid=True), primary_key=True, default=uuid4),
    Column("email", Text, nullable=False, unique=True, index=True),
    Column("full_name", Text),
    Column("phone", String(20)),
    Column("role", Text, nullable=False, server_default=text("'client'")),
    Column("is_active", Boolean, nullable=False, server_default=text("true")),
    # Audit
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    CheckConstraint(
        "role IN ('client', 'doctor', 'admin')",
        name="users_role_check",
    ),
)
