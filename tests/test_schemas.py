"""Tests for booking input parsing and gateway schemas."""

from datetime import UTC, datetime
from decimal import Decimal

import pytest

from app.schemas.appointments import (
    BookingResponse,
    normalize_phone_number,
    parse_amount,
    parse_appointment_date,
)
from app.schemas.mpesa import CallbackAck, CallbackPayload, GatewayResponse


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("0712345678", "254712345678"),
        ("+254712345678", "254712345678"),
        ("254712345678", "254712345678"),
        (" 0712 345 678 ", "254712345678"),
    ],
)
def test_normalize_phone_number(raw: str, expected: str) -> None:
    """Accepted formats normalize to 2547XXXXXXXX."""
    assert normalize_phone_number(raw) == expected


@pytest.mark.parametrize(
    "raw",
    ["", "12345", "0812345678", "+1234567890", "07123456789", "07123abc78", None, 712345678],
)
def test_normalize_phone_number_rejects(raw) -> None:
    """Anything that is not a Kenyan mobile number is rejected."""
    with pytest.raises(ValueError):
        normalize_phone_number(raw)


def test_parse_appointment_date() -> None:
    """Slots are normalized to UTC; naive values are taken as UTC."""
    expected = datetime(2026, 11, 2, 9, 0, tzinfo=UTC)
    assert parse_appointment_date("2026-11-02T09:00:00Z") == expected
    assert parse_appointment_date("2026-11-02T12:00:00+03:00") == expected
    assert parse_appointment_date("2026-11-02T09:00:00") == expected

    with pytest.raises(ValueError):
        parse_appointment_date("tomorrow")
    with pytest.raises(ValueError):
        parse_appointment_date("")


def test_parse_amount() -> None:
    """Amounts are whole shillings within the storable range."""
    assert parse_amount(500) == Decimal("500")
    assert parse_amount("1500.00") == Decimal("1500")
    assert parse_amount(1) == Decimal("1")
    assert parse_amount("99999999") == Decimal("99999999")

    for bad in (0, -1, "abc", None, True, "NaN", "Infinity"):
        with pytest.raises(ValueError):
            parse_amount(bad)


@pytest.mark.parametrize("raw", ["0.4", "0.99", "100000000", "1e9", "1500.50", "500.40"])
def test_parse_amount_rejects_uncharged_amounts(raw: str) -> None:
    """Amounts M-Pesa would round or the amount column cannot hold are rejected."""
    with pytest.raises(ValueError):
        parse_amount(raw)


def test_booking_response_uses_wire_names() -> None:
    """The booking response is serialized with camelCase keys."""
    response = BookingResponse(
        appointmentId="3f0e0f5c-6b1a-4a43-9d55-2f5b3a1c0e11",
        paymentDetails={"ResponseCode": "0"},
    )
    data = response.model_dump(by_alias=True, mode="json")
    assert data["appointmentId"] == "3f0e0f5c-6b1a-4a43-9d55-2f5b3a1c0e11"
    assert data["paymentStatus"] == "Pending"
    assert data["paymentDetails"] == {"ResponseCode": "0"}
    assert data["message"]


def test_gateway_response_keeps_unknown_fields() -> None:
    """Extra acknowledgement fields are passed back to the client."""
    ack = GatewayResponse.model_validate(
        {"ResponseCode": 0, "CheckoutRequestID": "ws_CO_1", "Extra": "kept"}
    )
    assert ack.accepted
    assert ack.details() == {"CheckoutRequestID": "ws_CO_1", "ResponseCode": "0", "Extra": "kept"}


def test_callback_value_lookup() -> None:
    """Flat fields win over metadata items."""
    payload = CallbackPayload.model_validate(
        {
            "Body": {
                "stkCallback": {
                    "ResultCode": 0,
                    "MpesaReceiptNumber": "FLAT",
                    "CallbackMetadata": {
                        "Item": [
                            {"Name": "MpesaReceiptNumber", "Value": "META"},
                            {"Name": "Amount", "Value": 10},
                        ]
                    },
                }
            }
        }
    )
    callback = payload.body.stk_callback
    assert callback.value("MpesaReceiptNumber") == "FLAT"
    assert callback.value("Amount") == 10
    assert callback.value("AccountReference") is None


def test_callback_ack_serialization() -> None:
    """Acknowledgements use the gateway's field names."""
    ack = CallbackAck(result_code=0, result_desc="ok")
    assert ack.model_dump(by_alias=True) == {"ResultCode": 0, "ResultDesc": "ok"}
