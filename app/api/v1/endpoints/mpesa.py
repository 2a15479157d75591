"""M-Pesa result callback endpoints."""

from typing import Any

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from app.dependencies import DatabaseSession
from app.schemas.mpesa import CallbackAck
from app.services.mpesa_callback_service import MpesaCallbackService

router = APIRouter()


async def _acknowledge(request: Request, db: DatabaseSession) -> JSONResponse:
    payload: Any
    try:
        payload = await request.json()
    except ValueError:
        # Handled as a malformed callback below
        payload = None

    service = MpesaCallbackService(db)
    ack = await service.handle_callback(payload)
    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content=ack.model_dump(by_alias=True),
    )


@router.post(
    "/callback",
    response_model=CallbackAck,
    status_code=status.HTTP_200_OK,
    tags=["M-Pesa"],
    summary="STK push result callback",
)
async def mpesa_callback(request: Request, db: DatabaseSession) -> JSONResponse:
    """
    Receive the asynchronous result of an STK push.

    Always answered with HTTP 200 so the gateway stops retrying;
    ``ResultCode`` 0 means the callback updated an appointment.
    """
    return await _acknowledge(request, db)


@router.post(
    "/result",
    response_model=CallbackAck,
    status_code=status.HTTP_200_OK,
    tags=["M-Pesa"],
    summary="STK push result callback (alias)",
)
async def mpesa_result(request: Request, db: DatabaseSession) -> JSONResponse:
    """Alias of ``/callback`` for gateways configured with the result URL."""
    return await _acknowledge(request, db)
