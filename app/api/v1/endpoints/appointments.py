"""Appointment endpoints."""

from fastapi import APIRouter, status

from app.dependencies import CurrentDoctor, CurrentUser, DatabaseSession, MpesaGateway
from app.schemas.appointments import (
    AppointmentListResponse,
    AppointmentResponse,
    BookingRequest,
    BookingResponse,
    DoctorDecisionRequest,
)
from app.services.appointment_service import AppointmentService

router = APIRouter()


@router.post(
    "/book",
    response_model=BookingResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Reserve a slot and initiate M-Pesa payment",
)
async def book_appointment(
    data: BookingRequest,
    current_user: CurrentUser,
    db: DatabaseSession,
    gateway: MpesaGateway,
) -> BookingResponse:
    """
    Reserve a doctor's slot for the authenticated client and send an STK
    push prompt for the fee.

    The slot is confirmed once the gateway reports the payment through
    the callback endpoint.

    Args:
        data: Booking request
        current_user: Authenticated client
        db: Database session
        gateway: M-Pesa client

    Returns:
        Reservation ID and the gateway acknowledgement
    """
    service = AppointmentService(db, gateway)
    return await service.book(
        client_id=current_user["id"],
        doctor_id=data.doctor_id,
        appointment_date=data.appointment_date,
        phone_number=data.phone_number,
        amount=data.amount,
    )


@router.get(
    "/client",
    response_model=AppointmentListResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="List the client's appointments",
)
async def list_client_appointments(
    current_user: CurrentUser,
    db: DatabaseSession,
) -> AppointmentListResponse:
    """List appointments booked by the authenticated user."""
    service = AppointmentService(db)
    return await service.list_client_appointments(current_user["id"])


@router.get(
    "/doctor",
    response_model=AppointmentListResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="List the doctor's appointments",
)
async def list_doctor_appointments(
    current_doctor: CurrentDoctor,
    db: DatabaseSession,
) -> AppointmentListResponse:
    """List appointments with the authenticated doctor."""
    service = AppointmentService(db)
    return await service.list_doctor_appointments(current_doctor["id"])


@router.post(
    "/doctor/decision",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Confirm or reject a booked appointment",
)
async def record_doctor_decision(
    data: DoctorDecisionRequest,
    current_doctor: CurrentDoctor,
    db: DatabaseSession,
) -> AppointmentResponse:
    """
    Record the doctor's decision on a paid appointment.

    Args:
        data: Appointment ID and decision
        current_doctor: Authenticated doctor
        db: Database session

    Returns:
        Updated appointment
    """
    service = AppointmentService(db)
    return await service.record_doctor_decision(
        doctor_id=current_doctor["id"],
        appointment_id=data.appointment_id,
        decision=data.status,
    )
