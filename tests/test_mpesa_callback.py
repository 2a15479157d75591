"""Tests for M-Pesa callback reconciliation."""

from datetime import UTC, datetime
from decimal import Decimal
from uuid import uuid4

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from app.repositories.appointment_repository import AppointmentRepository
from app.services.mpesa_callback_service import MpesaCallbackService, parse_transaction_date

SLOT = datetime(2026, 11, 2, 9, 0, tzinfo=UTC)


async def reserve(db_session: AsyncSession, client: dict, doctor: dict, slot=SLOT) -> dict:
    return await AppointmentRepository(db_session).create_pending(
        client_id=client["id"],
        doctor_id=doctor["id"],
        appointment_date=slot,
        amount=Decimal("1500"),
        phone_number="254712345678",
    )


@pytest.mark.asyncio
async def test_success_callback_books_appointment(
    client: AsyncClient,
    db_session: AsyncSession,
    client_user: dict,
    doctor_user: dict,
    success_payload,
) -> None:
    """A success callback moves the reservation to Booked and records the payment."""
    appointment = await reserve(db_session, client_user, doctor_user)

    response = await client.post(
        "/api/v1/mpesa/callback",
        json=success_payload(appointment["id"]),
    )
    assert response.status_code == 200
    assert response.json()["ResultCode"] == 0

    repository = AppointmentRepository(db_session)
    updated = await repository.get(appointment["id"])
    assert updated["status"] == "Booked"
    assert updated["payment_status"] == "Completed"
    assert updated["transaction_id"] == "QFT7ABCD12"
    assert await repository.count_payments(appointment["id"]) == 1


@pytest.mark.asyncio
async def test_replayed_success_callback_is_idempotent(
    client: AsyncClient,
    db_session: AsyncSession,
    client_user: dict,
    doctor_user: dict,
    success_payload,
) -> None:
    """Replaying the same callback changes nothing and is still acknowledged."""
    appointment = await reserve(db_session, client_user, doctor_user)
    payload = success_payload(appointment["id"])

    first = await client.post("/api/v1/mpesa/callback", json=payload)
    repository = AppointmentRepository(db_session)
    after_first = await repository.get(appointment["id"])
    await db_session.commit()

    second = await client.post("/api/v1/mpesa/callback", json=payload)
    assert first.json()["ResultCode"] == 0
    assert second.status_code == 200
    assert second.json()["ResultCode"] == 1

    after_second = await repository.get(appointment["id"])
    assert after_second == after_first
    assert await repository.count_payments(appointment["id"]) == 1


@pytest.mark.asyncio
async def test_success_callback_for_failed_appointment_is_noop(
    client: AsyncClient,
    db_session: AsyncSession,
    client_user: dict,
    doctor_user: dict,
    success_payload,
    failure_payload,
) -> None:
    """A late success for a reservation already marked Failed does not revive it."""
    appointment = await reserve(db_session, client_user, doctor_user)

    failed = await client.post("/api/v1/mpesa/callback", json=failure_payload(appointment["id"]))
    assert failed.status_code == 200
    assert failed.json() == {"ResultCode": 1, "ResultDesc": "Payment failed"}

    late = await client.post("/api/v1/mpesa/callback", json=success_payload(appointment["id"]))
    assert late.status_code == 200
    assert late.json()["ResultCode"] == 1

    repository = AppointmentRepository(db_session)
    current = await repository.get(appointment["id"])
    assert current["status"] == "Failed"
    assert current["payment_status"] == "Failed"
    assert current["transaction_id"] is None
    assert await repository.count_payments(appointment["id"]) == 0


@pytest.mark.asyncio
async def test_failure_callback_for_booked_appointment_is_noop(
    client: AsyncClient,
    db_session: AsyncSession,
    client_user: dict,
    doctor_user: dict,
    success_payload,
    failure_payload,
) -> None:
    """A failure notice cannot undo a completed payment."""
    appointment = await reserve(db_session, client_user, doctor_user)
    await client.post("/api/v1/mpesa/callback", json=success_payload(appointment["id"]))

    response = await client.post(
        "/api/v1/mpesa/callback",
        json=failure_payload(appointment["id"]),
    )
    assert response.status_code == 200

    current = await AppointmentRepository(db_session).get(appointment["id"])
    assert current["status"] == "Booked"
    assert current["payment_status"] == "Completed"


@pytest.mark.asyncio
async def test_second_payment_for_held_slot_is_not_applied(
    client: AsyncClient,
    db_session: AsyncSession,
    client_user: dict,
    other_client_user: dict,
    doctor_user: dict,
    success_payload,
) -> None:
    """When two clients pay for one slot, only the first payment books it."""
    first = await reserve(db_session, client_user, doctor_user)
    second = await reserve(db_session, other_client_user, doctor_user)

    won = await client.post(
        "/api/v1/mpesa/callback",
        json=success_payload(first["id"], receipt="RECEIPT001"),
    )
    lost = await client.post(
        "/api/v1/mpesa/callback",
        json=success_payload(second["id"], receipt="RECEIPT002", checkout_request_id="ws_CO_2"),
    )
    assert won.json()["ResultCode"] == 0
    assert lost.status_code == 200
    assert lost.json()["ResultCode"] == 1

    repository = AppointmentRepository(db_session)
    assert (await repository.get(first["id"]))["status"] == "Booked"
    assert (await repository.get(second["id"]))["status"] == "PendingPayment"
    assert await repository.count_payments(second["id"]) == 0


@pytest.mark.asyncio
async def test_success_callback_for_unknown_appointment(
    client: AsyncClient,
    db_session: AsyncSession,
    success_payload,
) -> None:
    """A reference that matches nothing is acknowledged without changes."""
    response = await client.post("/api/v1/mpesa/callback", json=success_payload(uuid4()))
    assert response.status_code == 200
    assert response.json()["ResultCode"] == 1


@pytest.mark.asyncio
async def test_flat_callback_form(
    client: AsyncClient,
    db_session: AsyncSession,
    client_user: dict,
    doctor_user: dict,
) -> None:
    """Result values may be relayed as top-level fields of stkCallback."""
    appointment = await reserve(db_session, client_user, doctor_user)
    payload = {
        "Body": {
            "stkCallback": {
                "MerchantRequestID": "merchant-9",
                "CheckoutRequestID": "ws_CO_9",
                "ResultCode": 0,
                "ResultDesc": "The service request is processed successfully.",
                "Amount": 1500,
                "MpesaReceiptNumber": "FLAT123456",
                "TransactionDate": "20261018103045",
                "PhoneNumber": "254712345678",
                "AccountReference": str(appointment["id"]),
            }
        }
    }

    response = await client.post("/api/v1/mpesa/result", json=payload)
    assert response.status_code == 200
    assert response.json()["ResultCode"] == 0

    current = await AppointmentRepository(db_session).get(appointment["id"])
    assert current["transaction_id"] == "FLAT123456"


@pytest.mark.asyncio
async def test_callback_resolved_by_checkout_request_id(
    client: AsyncClient,
    db_session: AsyncSession,
    client_user: dict,
    doctor_user: dict,
) -> None:
    """Without an account reference the stored CheckoutRequestID identifies the appointment."""
    repository = AppointmentRepository(db_session)
    appointment = await reserve(db_session, client_user, doctor_user)
    await repository.attach_checkout_reference(appointment["id"], "merchant-5", "ws_CO_555")

    payload = {
        "Body": {
            "stkCallback": {
                "MerchantRequestID": "merchant-5",
                "CheckoutRequestID": "ws_CO_555",
                "ResultCode": 0,
                "ResultDesc": "The service request is processed successfully.",
                "CallbackMetadata": {
                    "Item": [
                        {"Name": "Amount", "Value": 1500.0},
                        {"Name": "MpesaReceiptNumber", "Value": "CHK5550001"},
                        {"Name": "TransactionDate", "Value": 20261018103045},
                        {"Name": "PhoneNumber", "Value": 254712345678},
                    ]
                },
            }
        }
    }

    response = await client.post("/api/v1/mpesa/callback", json=payload)
    assert response.json()["ResultCode"] == 0
    assert (await repository.get(appointment["id"]))["status"] == "Booked"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        {},
        {"Body": {}},
        {"Body": {"stkCallback": {"CheckoutRequestID": "ws_CO_1"}}},
        {"Body": {"stkCallback": {"ResultCode": "not-a-number"}}},
        {"Body": {"stkCallback": {"ResultCode": 0, "AccountReference": "not-a-uuid"}}},
        [1, 2, 3],
    ],
)
async def test_malformed_callback_is_acknowledged(
    client: AsyncClient,
    db_session: AsyncSession,
    payload,
) -> None:
    """Malformed payloads never produce an error response."""
    response = await client.post("/api/v1/mpesa/callback", json=payload)
    assert response.status_code == 200
    assert response.json()["ResultCode"] == 1


@pytest.mark.asyncio
async def test_non_json_callback_is_acknowledged(
    client: AsyncClient,
    db_session: AsyncSession,
) -> None:
    """A body that is not JSON is treated as malformed."""
    response = await client.post(
        "/api/v1/mpesa/callback",
        content=b"<xml>nope</xml>",
        headers={"Content-Type": "application/xml"},
    )
    assert response.status_code == 200
    assert response.json()["ResultCode"] == 1


@pytest.mark.asyncio
async def test_success_callback_without_receipt_is_rejected(
    db_session: AsyncSession,
    client_user: dict,
    doctor_user: dict,
    success_payload,
) -> None:
    """A success without a receipt number leaves the reservation pending."""
    appointment = await reserve(db_session, client_user, doctor_user)
    payload = success_payload(appointment["id"])
    items = payload["Body"]["stkCallback"]["CallbackMetadata"]["Item"]
    payload["Body"]["stkCallback"]["CallbackMetadata"]["Item"] = [
        item for item in items if item["Name"] != "MpesaReceiptNumber"
    ]

    ack = await MpesaCallbackService(db_session).handle_callback(payload)
    assert ack.result_code == 1

    current = await AppointmentRepository(db_session).get(appointment["id"])
    assert current["status"] == "PendingPayment"


@pytest.mark.asyncio
async def test_expired_reservation_is_not_revived(
    db_session: AsyncSession,
    client_user: dict,
    doctor_user: dict,
    success_payload,
) -> None:
    """A payment arriving after expiry does not book the slot."""
    repository = AppointmentRepository(db_session)
    appointment = await reserve(db_session, client_user, doctor_user)
    expired = await repository.expire_stale(datetime(2100, 1, 1, tzinfo=UTC))
    assert expired == [appointment["id"]]

    ack = await MpesaCallbackService(db_session).handle_callback(
        success_payload(appointment["id"])
    )
    assert ack.result_code == 1
    assert (await repository.get(appointment["id"]))["status"] == "Expired"


def test_parse_transaction_date() -> None:
    """Daraja transaction dates are Nairobi local time."""
    parsed = parse_transaction_date(20261018103045)
    assert parsed is not None
    assert parsed.astimezone(UTC) == datetime(2026, 10, 18, 7, 30, 45, tzinfo=UTC)
    assert parse_transaction_date("garbage") is None
    assert parse_transaction_date(None) is None
