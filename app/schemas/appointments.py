"""Appointment schemas for request/response validation."""

import re
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class AppointmentStatus(str, Enum):
    """Appointment status enumeration."""

    PENDING_PAYMENT = "PendingPayment"
    # Legacy spelling written by older clients; same meaning as PENDING_PAYMENT
    PENDING = "Pending"
    BOOKED = "Booked"
    FAILED = "Failed"
    EXPIRED = "Expired"
    CONFIRMED = "Confirmed"
    REJECTED = "Rejected"


class PaymentStatus(str, Enum):
    """Payment status enumeration."""

    COMPLETED = "Completed"
    FAILED = "Failed"


PENDING_STATUSES = (AppointmentStatus.PENDING_PAYMENT.value, AppointmentStatus.PENDING.value)
SLOT_HOLDING_STATUSES = (AppointmentStatus.BOOKED.value, AppointmentStatus.CONFIRMED.value)

_KENYAN_MOBILE = re.compile(r"^2547\d{8}$")

# Whole-shilling charge range accepted by the booking endpoint
MIN_AMOUNT = Decimal("1")
MAX_AMOUNT = Decimal("99999999")


def normalize_phone_number(value: Any) -> str:
    """
    Normalize a Kenyan mobile number to the ``2547XXXXXXXX`` form.

    Accepts ``+2547…``, ``07…`` and bare ``2547…`` with any whitespace.

    Raises:
        ValueError: If the number cannot be normalized
    """
    if not isinstance(value, str):
        raise ValueError("Phone number must be a string")

    cleaned = re.sub(r"\s+", "", value)
    if cleaned.startswith("+"):
        cleaned = cleaned[1:]
    elif cleaned.startswith("0"):
        cleaned = "254" + cleaned[1:]

    if not _KENYAN_MOBILE.match(cleaned):
        raise ValueError("Invalid phone number format. Use +2547XXXXXXXX or 07XXXXXXXX.")
    return cleaned


def parse_appointment_date(value: Any) -> datetime:
    """
    Parse an ISO-8601 slot timestamp into an aware UTC datetime.

    Naive timestamps are taken as UTC.

    Raises:
        ValueError: If the value is not a valid instant
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as e:
            raise ValueError(f"Invalid appointment date: {value!r}") from e
    else:
        raise ValueError("Appointment date is required")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def parse_amount(value: Any) -> Decimal:
    """
    Parse a payment amount in whole shillings.

    M-Pesa only charges whole shillings, and ``appointments.amount`` is
    ``Numeric(10, 2)``; anything outside ``MIN_AMOUNT..MAX_AMOUNT`` or
    with a fractional part is rejected so the stored amount is the
    charged amount.

    Raises:
        ValueError: If the amount is missing, not numeric, out of range
            or not a whole number
    """
    if isinstance(value, bool) or value is None:
        raise ValueError("Amount must be a positive number")
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation as e:
        raise ValueError("Amount must be a positive number") from e
    if not amount.is_finite() or amount <= 0:
        raise ValueError("Amount must be a positive number")
    if amount < MIN_AMOUNT or amount > MAX_AMOUNT:
        raise ValueError(f"Amount must be between {MIN_AMOUNT} and {MAX_AMOUNT}")
    if amount != amount.to_integral_value():
        raise ValueError("Amount must be a whole number of shillings")
    return amount.quantize(Decimal("1"))


class BookingRequest(BaseModel):
    """
    Body of ``POST /appointments/book``.

    Field contents are checked by the booking service so that every
    rule violation is reported the same way.
    """

    model_config = ConfigDict(populate_by_name=True)

    doctor_id: UUID = Field(..., alias="doctorId")
    appointment_date: str = Field(..., alias="appointmentDate")
    phone_number: str = Field(..., alias="phoneNumber")
    amount: Decimal | str = Field(..., alias="amount")


class BookingResponse(BaseModel):
    """Result of a successful booking call."""

    model_config = ConfigDict(populate_by_name=True)

    appointment_id: UUID = Field(..., alias="appointmentId")
    payment_status: str = Field(default="Pending", alias="paymentStatus")
    payment_details: dict[str, Any] = Field(default_factory=dict, alias="paymentDetails")
    message: str = "Payment initiated successfully. Please complete the payment on your M-Pesa app."


class AppointmentResponse(BaseModel):
    """Schema for appointment response."""

    id: UUID
    client_id: UUID
    doctor_id: UUID
    appointment_date: datetime
    amount: Decimal
    phone_number: str
    status: AppointmentStatus
    payment_status: PaymentStatus | None = None
    transaction_id: str | None = None
    checkout_request_id: str | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class AppointmentListResponse(BaseModel):
    """Schema for appointment list response."""

    total: int
    items: list[AppointmentResponse]


class DoctorDecision(str, Enum):
    """Outcomes a doctor may record on a booked appointment."""

    CONFIRMED = "Confirmed"
    REJECTED = "Rejected"


class DoctorDecisionRequest(BaseModel):
    """Schema for a doctor confirming or rejecting a booked appointment."""

    model_config = ConfigDict(populate_by_name=True)

    appointment_id: UUID = Field(..., alias="appointmentId")
    status: DoctorDecision
