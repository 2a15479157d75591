"""Appointment reservation service."""

from typing import Any
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, settings
from app.core.exceptions import (
    ConflictException,
    GatewayException,
    InvalidRequestException,
    NotFoundException,
    PaymentInitiationFailedException,
    PersistenceException,
    SlotConflictException,
)
from app.repositories.appointment_repository import AppointmentRepository
from app.schemas.appointments import (
    AppointmentListResponse,
    AppointmentResponse,
    BookingResponse,
    DoctorDecision,
    normalize_phone_number,
    parse_amount,
    parse_appointment_date,
)
from app.services.mpesa_client import MpesaClient, get_mpesa_client
from app.services.user_service import UserService

logger = structlog.get_logger()


class AppointmentService:
    """Service for reserving doctor slots and starting their payment."""

    def __init__(
        self,
        db: AsyncSession,
        gateway: MpesaClient | None = None,
        config: Settings | None = None,
    ):
        """
        Initialize service.

        Args:
            db: Database session
            gateway: M-Pesa client used to start the charge; defaults to the shared client
            config: Settings; defaults to the application settings
        """
        self.db = db
        self.gateway = gateway or get_mpesa_client()
        self.config = config or settings
        self.repository = AppointmentRepository(db)

    async def book(
        self,
        client_id: UUID,
        doctor_id: UUID,
        appointment_date: Any,
        phone_number: Any,
        amount: Any,
    ) -> BookingResponse:
        """
        Reserve a slot and initiate its payment.

        A pending reservation of the same client for the same slot is
        reused, with its expiry window restarted. A freshly created
        reservation is removed again when the charge cannot be started.

        Args:
            client_id: Authenticated client
            doctor_id: Doctor being booked
            appointment_date: ISO-8601 slot timestamp
            phone_number: Client phone number in any accepted format
            amount: Amount to charge

        Returns:
            Booking response with the gateway acknowledgement

        Raises:
            InvalidRequestException: If the input is malformed
            NotFoundException: If the doctor (or the doctor's phone) is unknown
            SlotConflictException: If the slot is already booked
            PaymentInitiationFailedException: If the charge could not be started
            PersistenceException: If the database fails
        """
        try:
            slot = parse_appointment_date(appointment_date)
            phone = normalize_phone_number(phone_number)
            charge = parse_amount(amount)
        except ValueError as e:
            raise InvalidRequestException(str(e)) from e

        payer_phone = await self._resolve_payer_phone(doctor_id, phone)

        log = logger.bind(
            client_id=str(client_id),
            doctor_id=str(doctor_id),
            appointment_date=slot.isoformat(),
        )

        reused = False

        existing = await self.repository.find_pending(client_id, doctor_id, slot)

        # A pending reservation can never be paid for once the slot is held
        if await self.repository.slot_is_taken(doctor_id, slot):
            log.info(
                "slot_conflict",
                pending_appointment_id=str(existing["id"]) if existing else None,
            )
            raise SlotConflictException()

        if existing and await self.repository.refresh_pending(existing["id"], charge, phone):
            appointment_id = existing["id"]
            reused = True
            log.info("reservation_reused", appointment_id=str(appointment_id))
        else:
            # The reused row left PendingPayment since the check above
            if existing and await self.repository.slot_is_taken(doctor_id, slot):
                log.info("slot_conflict", pending_appointment_id=str(existing["id"]))
                raise SlotConflictException()

            created = await self.repository.create_pending(
                client_id=client_id,
                doctor_id=doctor_id,
                appointment_date=slot,
                amount=charge,
                phone_number=phone,
            )
            appointment_id = created["id"]
            log.info("reservation_created", appointment_id=str(appointment_id))

        try:
            acknowledgement = await self.gateway.initiate(
                account_reference=str(appointment_id),
                amount=charge,
                phone_number=payer_phone,
            )
        except GatewayException as e:
            await self._compensate(appointment_id, reused)
            log.warning(
                "payment_initiation_failed",
                appointment_id=str(appointment_id),
                error=e.message,
            )
            raise PaymentInitiationFailedException() from e

        if not acknowledgement.accepted:
            await self._compensate(appointment_id, reused)
            log.warning(
                "payment_initiation_rejected",
                appointment_id=str(appointment_id),
                response_code=acknowledgement.response_code,
                response_description=acknowledgement.response_description,
            )
            raise PaymentInitiationFailedException()

        try:
            await self.repository.attach_checkout_reference(
                appointment_id,
                acknowledgement.merchant_request_id,
                acknowledgement.checkout_request_id,
            )
        except PersistenceException:
            # The callback still carries the account reference
            log.warning("checkout_reference_not_stored", appointment_id=str(appointment_id))

        log.info(
            "payment_initiated",
            appointment_id=str(appointment_id),
            checkout_request_id=acknowledgement.checkout_request_id,
        )

        return BookingResponse(
            appointmentId=appointment_id,
            paymentStatus="Pending",
            paymentDetails=acknowledgement.details(),
        )

    async def _resolve_payer_phone(self, doctor_id: UUID, client_phone: str) -> str:
        """Phone number that receives the STK push prompt."""
        doctor = await UserService.get_doctor(self.db, doctor_id)
        if doctor is None:
            raise NotFoundException("Doctor not found")

        if self.config.mpesa_payer == "client":
            return client_phone

        try:
            return normalize_phone_number(doctor.get("phone") or "")
        except ValueError as e:
            raise NotFoundException("Doctor phone number not found") from e

    async def _compensate(self, appointment_id: UUID, reused: bool) -> None:
        """Release a reservation created by this call. Reused ones are kept for retries."""
        if reused:
            return
        try:
            await self.repository.delete_pending(appointment_id)
        except PersistenceException:
            # The expiry sweeper reclaims it once its window elapses
            logger.error("reservation_release_failed", appointment_id=str(appointment_id))

    async def list_client_appointments(self, client_id: UUID) -> AppointmentListResponse:
        """List a client's appointments."""
        rows = await self.repository.list_for_client(client_id)
        items = [AppointmentResponse.model_validate(row) for row in rows]
        return AppointmentListResponse(total=len(items), items=items)

    async def list_doctor_appointments(self, doctor_id: UUID) -> AppointmentListResponse:
        """List a doctor's appointments."""
        rows = await self.repository.list_for_doctor(doctor_id)
        items = [AppointmentResponse.model_validate(row) for row in rows]
        return AppointmentListResponse(total=len(items), items=items)

    async def record_doctor_decision(
        self,
        doctor_id: UUID,
        appointment_id: UUID,
        decision: DoctorDecision,
    ) -> AppointmentResponse:
        """
        Confirm or reject a paid appointment.

        Raises:
            NotFoundException: If the appointment does not belong to the doctor
            ConflictException: If the appointment is not in Booked
        """
        updated = await self.repository.record_doctor_decision(
            appointment_id, doctor_id, decision.value
        )
        if updated is None:
            current = await self.repository.get(appointment_id)
            if current is None or current["doctor_id"] != doctor_id:
                raise NotFoundException("Appointment not found or you're not authorized.")
            raise ConflictException(
                f"Appointment is {current['status']}; only booked appointments can be updated."
            )

        logger.info(
            "doctor_decision_recorded",
            appointment_id=str(appointment_id),
            status=decision.value,
        )
        return AppointmentResponse.model_validate(updated)
