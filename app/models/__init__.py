"""Database models."""

from app.models.appointments import appointments
from app.models.base import metadata
from app.models.payments import mpesa_payments
from app.models.users import users

__all__ = [
    "appointments",
    "metadata",
    "mpesa_payments",
    "users",
]
