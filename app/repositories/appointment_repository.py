"""Persistence gateway for appointment and payment records.

Every state transition here is a compare-and-set on ``status``: the
``UPDATE … WHERE id = :id AND status IN (pending)`` either wins and
reports one affected row, or loses to a concurrent writer and reports
zero. Each public method is a complete unit of work that ends in a
commit or rollback, so a dropped connection can be retried from the top.
"""

from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, TypeVar
from uuid import UUID

import structlog
from sqlalchemy import and_, delete, exists, func, insert, select, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from app.config import settings
from app.core.exceptions import PersistenceException
from app.models.appointments import appointments
from app.models.payments import mpesa_payments
from app.schemas.appointments import (
    PENDING_STATUSES,
    SLOT_HOLDING_STATUSES,
    AppointmentStatus,
    PaymentStatus,
)

logger = structlog.get_logger()

T = TypeVar("T")

# Errors raised when the connection itself went away
TRANSIENT_ERRORS = (OperationalError, InterfaceError)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


class AppointmentRepository:
    """Sole mutator of booking state."""

    def __init__(self, db: AsyncSession, retry_attempts: int | None = None):
        """
        Initialize repository.

        Args:
            db: Database session
            retry_attempts: Attempts per unit of work on transient errors
        """
        self.db = db
        self.retry_attempts = retry_attempts or settings.db_retry_attempts

    async def _run(self, action: str, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run one unit of work with bounded retry on dropped connections.

        Args:
            action: Name used in logs
            operation: Coroutine factory; must commit or roll back itself

        Returns:
            Result of the operation

        Raises:
            PersistenceException: If the database stays unavailable or
                the statement fails
        """
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(TRANSIENT_ERRORS),
                stop=stop_after_attempt(self.retry_attempts),
                wait=wait_exponential(multiplier=0.2, max=2),
                reraise=True,
            ):
                with attempt:
                    try:
                        return await operation()
                    except SQLAlchemyError:
                        await self.db.rollback()
                        if attempt.retry_state.attempt_number > 1:
                            logger.warning(
                                "database_retry",
                                action=action,
                                attempt=attempt.retry_state.attempt_number,
                            )
                        raise
        except SQLAlchemyError as e:
            logger.error("database_operation_failed", action=action, error=str(e))
            raise PersistenceException(f"Database operation failed: {action}") from e
        raise PersistenceException(f"Database operation failed: {action}")

    # Reads

    async def get(self, appointment_id: UUID) -> dict[str, Any] | None:
        """Get an appointment by ID."""

        async def operation() -> dict[str, Any] | None:
            result = await self.db.execute(
                select(appointments).where(appointments.c.id == appointment_id)
            )
            row = result.mappings().first()
            return dict(row) if row else None

        return await self._run("get_appointment", operation)

    async def find_pending(
        self,
        client_id: UUID,
        doctor_id: UUID,
        appointment_date: datetime,
    ) -> dict[str, Any] | None:
        """Most recent pending reservation of this client for the slot."""

        async def operation() -> dict[str, Any] | None:
            stmt = (
                select(appointments)
                .where(
                    and_(
                        appointments.c.client_id == client_id,
                        appointments.c.doctor_id == doctor_id,
                        appointments.c.appointment_date == appointment_date,
                        appointments.c.status.in_(PENDING_STATUSES),
                    )
                )
                .order_by(appointments.c.created_at.desc())
                .limit(1)
            )
            result = await self.db.execute(stmt)
            row = result.mappings().first()
            return dict(row) if row else None

        return await self._run("find_pending", operation)

    async def slot_is_taken(self, doctor_id: UUID, appointment_date: datetime) -> bool:
        """Whether a confirmed appointment already holds the slot."""

        async def operation() -> bool:
            stmt = select(
                exists().where(
                    and_(
                        appointments.c.doctor_id == doctor_id,
                        appointments.c.appointment_date == appointment_date,
                        appointments.c.status.in_(SLOT_HOLDING_STATUSES),
                    )
                )
            )
            result = await self.db.execute(stmt)
            return bool(result.scalar())

        return await self._run("slot_is_taken", operation)

    async def find_by_checkout_request_id(self, checkout_request_id: str) -> dict[str, Any] | None:
        """Find the appointment an STK push acknowledgement was attached to."""

        async def operation() -> dict[str, Any] | None:
            result = await self.db.execute(
                select(appointments).where(
                    appointments.c.checkout_request_id == checkout_request_id
                )
            )
            row = result.mappings().first()
            return dict(row) if row else None

        return await self._run("find_by_checkout_request_id", operation)

    async def list_for_client(self, client_id: UUID) -> list[dict[str, Any]]:
        """Appointments of a client, latest slot first."""
        return await self._list(appointments.c.client_id == client_id, "list_for_client")

    async def list_for_doctor(self, doctor_id: UUID) -> list[dict[str, Any]]:
        """Appointments of a doctor, latest slot first."""
        return await self._list(appointments.c.doctor_id == doctor_id, "list_for_doctor")

    async def _list(self, condition: Any, action: str) -> list[dict[str, Any]]:
        async def operation() -> list[dict[str, Any]]:
            stmt = (
                select(appointments)
                .where(condition)
                .order_by(appointments.c.appointment_date.desc())
            )
            result = await self.db.execute(stmt)
            return [dict(row) for row in result.mappings().all()]

        return await self._run(action, operation)

    # Reservation writes

    async def create_pending(
        self,
        client_id: UUID,
        doctor_id: UUID,
        appointment_date: datetime,
        amount: Decimal,
        phone_number: str,
    ) -> dict[str, Any]:
        """Insert a new reservation in PendingPayment."""

        async def operation() -> dict[str, Any]:
            now = utcnow()
            stmt = (
                insert(appointments)
                .values(
                    client_id=client_id,
                    doctor_id=doctor_id,
                    appointment_date=appointment_date,
                    amount=amount,
                    phone_number=phone_number,
                    status=AppointmentStatus.PENDING_PAYMENT.value,
                    created_at=now,
                    updated_at=now,
                )
                .returning(appointments)
            )
            result = await self.db.execute(stmt)
            row = result.mappings().one()
            await self.db.commit()
            return dict(row)

        return await self._run("create_pending", operation)

    async def refresh_pending(
        self,
        appointment_id: UUID,
        amount: Decimal,
        phone_number: str,
    ) -> bool:
        """
        Restart the expiry window of a reservation that is still pending.

        Returns:
            False if the reservation left PendingPayment in the meantime
        """

        async def operation() -> bool:
            now = utcnow()
            stmt = (
                update(appointments)
                .where(
                    and_(
                        appointments.c.id == appointment_id,
                        appointments.c.status.in_(PENDING_STATUSES),
                    )
                )
                .values(
                    amount=amount,
                    phone_number=phone_number,
                    created_at=now,
                    updated_at=now,
                )
            )
            result = await self.db.execute(stmt)
            await self.db.commit()
            return result.rowcount == 1

        return await self._run("refresh_pending", operation)

    async def attach_checkout_reference(
        self,
        appointment_id: UUID,
        merchant_request_id: str | None,
        checkout_request_id: str | None,
    ) -> bool:
        """Store the STK push references on a still-pending reservation."""

        async def operation() -> bool:
            stmt = (
                update(appointments)
                .where(
                    and_(
                        appointments.c.id == appointment_id,
                        appointments.c.status.in_(PENDING_STATUSES),
                    )
                )
                .values(
                    merchant_request_id=merchant_request_id,
                    checkout_request_id=checkout_request_id,
                    updated_at=utcnow(),
                )
            )
            result = await self.db.execute(stmt)
            await self.db.commit()
            return result.rowcount == 1

        return await self._run("attach_checkout_reference", operation)

    async def delete_pending(self, appointment_id: UUID) -> bool:
        """Delete a reservation, only while it is still pending."""

        async def operation() -> bool:
            stmt = delete(appointments).where(
                and_(
                    appointments.c.id == appointment_id,
                    appointments.c.status.in_(PENDING_STATUSES),
                )
            )
            result = await self.db.execute(stmt)
            await self.db.commit()
            return result.rowcount == 1

        return await self._run("delete_pending", operation)

    # Payment transitions

    async def mark_booked(
        self,
        appointment_id: UUID,
        receipt: str,
        payment: dict[str, Any],
    ) -> bool:
        """
        Apply a successful payment in one transaction.

        The appointment moves PendingPayment -> Booked only if no other
        appointment holds the slot; the payment record is written in the
        same transaction.

        Args:
            appointment_id: Account reference from the callback
            receipt: M-Pesa receipt number
            payment: Remaining ``mpesa_payments`` column values

        Returns:
            True if the transition was applied, False if it was a no-op
        """
        holder = appointments.alias("holder")

        async def operation() -> bool:
            now = utcnow()
            slot_held = (
                select(holder.c.id)
                .where(
                    and_(
                        holder.c.doctor_id == appointments.c.doctor_id,
                        holder.c.appointment_date == appointments.c.appointment_date,
                        holder.c.status.in_(SLOT_HOLDING_STATUSES),
                        holder.c.id != appointments.c.id,
                    )
                )
                .exists()
            )
            stmt = (
                update(appointments)
                .where(
                    and_(
                        appointments.c.id == appointment_id,
                        appointments.c.status.in_(PENDING_STATUSES),
                        ~slot_held,
                    )
                )
                .values(
                    status=AppointmentStatus.BOOKED.value,
                    payment_status=PaymentStatus.COMPLETED.value,
                    transaction_id=receipt,
                    updated_at=now,
                )
            )
            try:
                result = await self.db.execute(stmt)
                if result.rowcount != 1:
                    await self.db.rollback()
                    return False

                await self.db.execute(
                    insert(mpesa_payments).values(
                        appointment_id=appointment_id,
                        mpesa_receipt=receipt,
                        created_at=now,
                        **payment,
                    )
                )
                await self.db.commit()
            except IntegrityError as e:
                # Slot taken or receipt already recorded by a concurrent writer
                await self.db.rollback()
                logger.warning(
                    "payment_transition_conflict",
                    appointment_id=str(appointment_id),
                    error=str(e.orig),
                )
                return False
            return True

        return await self._run("mark_booked", operation)

    async def mark_failed(self, appointment_id: UUID) -> bool:
        """Move a pending reservation to Failed."""

        async def operation() -> bool:
            stmt = (
                update(appointments)
                .where(
                    and_(
                        appointments.c.id == appointment_id,
                        appointments.c.status.in_(PENDING_STATUSES),
                    )
                )
                .values(
                    status=AppointmentStatus.FAILED.value,
                    payment_status=PaymentStatus.FAILED.value,
                    updated_at=utcnow(),
                )
            )
            result = await self.db.execute(stmt)
            await self.db.commit()
            return result.rowcount == 1

        return await self._run("mark_failed", operation)

    async def expire_stale(self, cutoff: datetime) -> list[UUID]:
        """
        Soft-mark reservations created before ``cutoff`` as Expired.

        Returns:
            IDs of the reservations that were expired
        """

        async def operation() -> list[UUID]:
            stmt = (
                update(appointments)
                .where(
                    and_(
                        appointments.c.status.in_(PENDING_STATUSES),
                        appointments.c.created_at < cutoff,
                    )
                )
                .values(
                    status=AppointmentStatus.EXPIRED.value,
                    updated_at=utcnow(),
                )
                .returning(appointments.c.id)
            )
            result = await self.db.execute(stmt)
            expired = [row[0] for row in result.fetchall()]
            await self.db.commit()
            return expired

        return await self._run("expire_stale", operation)

    async def record_doctor_decision(
        self,
        appointment_id: UUID,
        doctor_id: UUID,
        decision: str,
    ) -> dict[str, Any] | None:
        """
        Confirm or reject a booked appointment of this doctor.

        Returns:
            Updated appointment, or None if it is not a booked appointment
            of the doctor
        """

        async def operation() -> dict[str, Any] | None:
            stmt = (
                update(appointments)
                .where(
                    and_(
                        appointments.c.id == appointment_id,
                        appointments.c.doctor_id == doctor_id,
                        appointments.c.status == AppointmentStatus.BOOKED.value,
                    )
                )
                .values(status=decision, updated_at=utcnow())
                .returning(appointments)
            )
            result = await self.db.execute(stmt)
            row = result.mappings().first()
            await self.db.commit()
            return dict(row) if row else None

        return await self._run("record_doctor_decision", operation)

    async def count_payments(self, appointment_id: UUID) -> int:
        """Number of payment records attached to an appointment."""

        async def operation() -> int:
            result = await self.db.execute(
                select(func.count())
                .select_from(mpesa_payments)
                .where(mpesa_payments.c.appointment_id == appointment_id)
            )
            return int(result.scalar() or 0)

        return await self._run("count_payments", operation)
