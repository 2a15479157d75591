import json
import os
from collections.abc import AsyncGenerator
from datetime import timedelta
from typing import Any
from uuid import uuid4

import httpx
import pytest
import pytest_asyncio
from dotenv import load_dotenv
from httpx import ASGITransport, AsyncClient
from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

# Load environment variables from .env file
load_dotenv()

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("EXPIRY_SWEEPER_ENABLED", "false")
os.environ.setdefault("MPESA_CONSUMER_KEY", "test-consumer-key")
os.environ.setdefault("MPESA_CONSUMER_SECRET", "test-consumer-secret")
os.environ.setdefault("MPESA_PASSKEY", "test-passkey")

from app.config import settings  # noqa: E402
from app.core.security import create_access_token  # noqa: E402
from app.database import get_db  # noqa: E402
from app.main import app  # noqa: E402
from app.models import metadata, users  # noqa: E402
from app.services.mpesa_client import MpesaClient, get_mpesa_client  # noqa: E402

# Test database URL - MUST be different from production
# Defaults to a throwaway SQLite file; set TEST_DATABASE_URL to run against PostgreSQL
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite+aiosqlite:///./test_booking.db")

if TEST_DATABASE_URL.startswith("postgresql://"):
    TEST_DATABASE_URL = TEST_DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://", 1)

if TEST_DATABASE_URL.replace("+asyncpg", "") == settings.database_url:
    raise RuntimeError("TEST_DATABASE_URL must not point at the application database")

# Use NullPool to avoid event loop issues across tests
test_engine = create_async_engine(
    TEST_DATABASE_URL,
    echo=False,  # Set to True for SQL debugging
    poolclass=NullPool,
)

# Create test session factory
TestSessionLocal = async_sessionmaker(
    test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class FakeDaraja:
    """
    In-memory stand-in for the Daraja OAuth and STK push endpoints.

    Set ``stk_status``/``stk_body`` to change the STK push answer, or
    ``fail_with`` to raise a transport error.
    """

    def __init__(self) -> None:
        self.token_requests: list[httpx.Request] = []
        self.stk_requests: list[dict[str, Any]] = []
        self.stk_status = 200
        self.stk_body: Any = None
        self.fail_with: Exception | None = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.fail_with is not None:
            raise self.fail_with

        if request.url.path.endswith("/oauth/v1/generate"):
            self.token_requests.append(request)
            return httpx.Response(200, json={"access_token": "test-token", "expires_in": "3599"})

        body = json.loads(request.content)
        self.stk_requests.append(body)
        if self.stk_body is not None:
            return httpx.Response(self.stk_status, json=self.stk_body)
        return httpx.Response(
            self.stk_status,
            json={
                "MerchantRequestID": f"merchant-{len(self.stk_requests)}",
                "CheckoutRequestID": f"ws_CO_{len(self.stk_requests):06d}",
                "ResponseCode": "0",
                "ResponseDescription": "Success. Request accepted for processing",
                "CustomerMessage": "Success. Request accepted for processing",
            },
        )

    @property
    def last_stk_request(self) -> dict[str, Any]:
        return self.stk_requests[-1]


@pytest_asyncio.fixture
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    # Create tables
    async with test_engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)
        await conn.run_sync(metadata.create_all)

    # Create session
    async with TestSessionLocal() as session:
        yield session

    # Drop tables after test
    async with test_engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)


@pytest.fixture
def daraja() -> FakeDaraja:
    """Fake Daraja API."""
    return FakeDaraja()


@pytest_asyncio.fixture
async def mpesa_client(daraja: FakeDaraja) -> AsyncGenerator[MpesaClient, None]:
    """M-Pesa client wired to the fake Daraja API, without a token cache."""
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(daraja.handler))
    yield MpesaClient(http_client=http_client)
    await http_client.aclose()


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    mpesa_client: MpesaClient,
) -> AsyncGenerator[AsyncClient, None]:
    """Create a test HTTP client."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_mpesa_client] = lambda: mpesa_client

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


async def _create_user(db_session: AsyncSession, **values: Any) -> dict:
    user_id = uuid4()
    user_data = {
        "id": user_id,
        "email": f"{user_id}@example.com",
        "full_name": "Test User",
        "phone": None,
        "role": "client",
        "is_active": True,
    }
    user_data.update(values)

    await db_session.execute(insert(users).values(**user_data))
    await db_session.commit()
    return user_data


@pytest_asyncio.fixture
async def client_user(db_session: AsyncSession) -> dict:
    """A client account."""
    return await _create_user(db_session, full_name="Jane Client", phone="+254712345678")


@pytest_asyncio.fixture
async def other_client_user(db_session: AsyncSession) -> dict:
    """A second client account."""
    return await _create_user(db_session, full_name="John Client", phone="+254798765432")


@pytest_asyncio.fixture
async def doctor_user(db_session: AsyncSession) -> dict:
    """A doctor account that can be booked."""
    return await _create_user(
        db_session,
        full_name="Dr. Achieng Otieno",
        phone="0722000111",
        role="doctor",
    )


@pytest.fixture
def make_auth_headers():
    """Build bearer headers for a user."""

    def _make(user: dict) -> dict:
        token_data = {
            "sub": str(user["id"]),
            "email": user["email"],
        }
        token = create_access_token(data=token_data, expires_delta=timedelta(minutes=30))
        return {"Authorization": f"Bearer {token}"}

    return _make


@pytest.fixture
def auth_headers(client_user: dict, make_auth_headers) -> dict:
    """Authentication headers of the client account."""
    return make_auth_headers(client_user)


@pytest.fixture
def doctor_headers(doctor_user: dict, make_auth_headers) -> dict:
    """Authentication headers of the doctor account."""
    return make_auth_headers(doctor_user)


def _success_callback(
    appointment_id: Any,
    receipt: str = "QFT7ABCD12",
    checkout_request_id: str = "ws_CO_000001",
    amount: Any = 1500,
) -> dict:
    """Success callback in the Daraja ``CallbackMetadata`` form."""
    return {
        "Body": {
            "stkCallback": {
                "MerchantRequestID": "merchant-1",
                "CheckoutRequestID": checkout_request_id,
                "ResultCode": 0,
                "ResultDesc": "The service request is processed successfully.",
                "CallbackMetadata": {
                    "Item": [
                        {"Name": "Amount", "Value": amount},
                        {"Name": "MpesaReceiptNumber", "Value": receipt},
                        {"Name": "TransactionDate", "Value": 20261018103045},
                        {"Name": "PhoneNumber", "Value": 254712345678},
                        {"Name": "AccountReference", "Value": str(appointment_id)},
                    ]
                },
            }
        }
    }


def _failure_callback(appointment_id: Any, checkout_request_id: str = "ws_CO_000001") -> dict:
    """Failure callback (cancelled by the user)."""
    return {
        "Body": {
            "stkCallback": {
                "MerchantRequestID": "merchant-1",
                "CheckoutRequestID": checkout_request_id,
                "ResultCode": 1032,
                "ResultDesc": "Request cancelled by user",
                "AccountReference": str(appointment_id),
            }
        }
    }


@pytest.fixture
def success_payload():
    """Builder for success callbacks."""
    return _success_callback


@pytest.fixture
def failure_payload():
    """Builder for failure callbacks."""
    return _failure_callback


@pytest.fixture
def session_factory():
    """Factory for sessions on the test database, for code that opens its own."""
    return TestSessionLocal
