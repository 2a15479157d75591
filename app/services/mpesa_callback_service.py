"""Reconciliation of M-Pesa STK push result callbacks."""

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any
from uuid import UUID

import structlog
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import CallbackMalformedException, PersistenceException
from app.repositories.appointment_repository import AppointmentRepository
from app.schemas.appointments import normalize_phone_number
from app.schemas.mpesa import CallbackAck, CallbackPayload, StkCallback
from app.services.mpesa_client import NAIROBI_TZ

logger = structlog.get_logger()

# Daraja reports a completed payment with ResultCode 0
SUCCESS_RESULT_CODE = 0


def parse_transaction_date(value: Any) -> datetime | None:
    """Parse a ``YYYYMMDDHHMMSS`` Daraja transaction date (Nairobi time)."""
    if value in (None, ""):
        return None
    try:
        return datetime.strptime(str(value), "%Y%m%d%H%M%S").replace(tzinfo=NAIROBI_TZ)
    except ValueError:
        return None


def _parse_decimal(value: Any) -> Decimal | None:
    if value in (None, "") or isinstance(value, bool):
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def _parse_phone(value: Any) -> str | None:
    if value in (None, ""):
        return None
    try:
        return normalize_phone_number(str(value))
    except ValueError:
        return None


class MpesaCallbackService:
    """
    Apply payment results posted by the gateway.

    The payload is untrusted. Whatever happens inside, the gateway gets
    an acknowledgement; a reservation left pending is reclaimed by the
    expiry sweeper.
    """

    def __init__(self, db: AsyncSession):
        """Initialize service with database session."""
        self.db = db
        self.repository = AppointmentRepository(db)

    async def handle_callback(self, payload: Any) -> CallbackAck:
        """
        Reconcile one callback with its appointment.

        Args:
            payload: Decoded JSON body as posted by the gateway

        Returns:
            Acknowledgement for the gateway; ``ResultCode`` 0 when the
            callback changed an appointment
        """
        try:
            callback = self._parse(payload)
            return await self._apply(callback)
        except CallbackMalformedException as e:
            logger.warning("mpesa_callback_malformed", reason=e.message)
            return CallbackAck(result_code=1, result_desc=e.message)
        except PersistenceException as e:
            logger.error("mpesa_callback_persistence_failed", error=e.message)
            return CallbackAck(result_code=1, result_desc="Failed to process payment")
        except Exception:
            # The gateway must always get an acknowledgement
            logger.exception("mpesa_callback_failed")
            return CallbackAck(result_code=1, result_desc="Failed to process payment")

    def _parse(self, payload: Any) -> StkCallback:
        if not isinstance(payload, dict):
            raise CallbackMalformedException("Invalid callback structure")
        try:
            return CallbackPayload.model_validate(payload).body.stk_callback
        except ValidationError as e:
            raise CallbackMalformedException("Invalid callback structure") from e

    async def _resolve_appointment_id(self, callback: StkCallback) -> UUID:
        """Appointment the callback refers to: account reference, else checkout ID."""
        reference = callback.value("AccountReference")
        if reference not in (None, ""):
            try:
                return UUID(str(reference))
            except ValueError as e:
                raise CallbackMalformedException("Unknown account reference") from e

        if callback.checkout_request_id:
            appointment = await self.repository.find_by_checkout_request_id(
                callback.checkout_request_id
            )
            if appointment is not None:
                return appointment["id"]

        raise CallbackMalformedException("Callback does not identify an appointment")

    async def _apply(self, callback: StkCallback) -> CallbackAck:
        appointment_id = await self._resolve_appointment_id(callback)
        log = logger.bind(
            appointment_id=str(appointment_id),
            checkout_request_id=callback.checkout_request_id,
            result_code=callback.result_code,
        )

        if callback.result_code != SUCCESS_RESULT_CODE:
            if await self.repository.mark_failed(appointment_id):
                log.info("mpesa_payment_failed", result_desc=callback.result_desc)
            else:
                log.info("mpesa_failure_callback_ignored")
            return CallbackAck(result_code=1, result_desc="Payment failed")

        receipt = callback.value("MpesaReceiptNumber")
        if receipt in (None, ""):
            raise CallbackMalformedException("Missing receipt number")

        applied = await self.repository.mark_booked(
            appointment_id,
            receipt=str(receipt),
            payment={
                "checkout_request_id": callback.checkout_request_id,
                "merchant_request_id": callback.merchant_request_id,
                "amount": _parse_decimal(callback.value("Amount")),
                "phone_number": _parse_phone(callback.value("PhoneNumber")),
                "transaction_date": parse_transaction_date(callback.value("TransactionDate")),
            },
        )

        if not applied:
            # Replayed callback, unknown ID, expired reservation or slot taken
            log.warning("mpesa_success_callback_not_applied", receipt=str(receipt))
            return CallbackAck(
                result_code=1,
                result_desc="No matching appointment found or appointment status already updated.",
            )

        log.info("mpesa_payment_applied", receipt=str(receipt))
        return CallbackAck(result_code=0, result_desc="Payment processed successfully")
