import os

# Settings are read at import time; point them at test values first
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test.db")
os.environ.setdefault("POS_ENCRYPTION_KEY", "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff")
os.environ.setdefault("SQUARE_CLIENT_ID", "sq0idp-test-client")
os.environ.setdefault("SQUARE_CLIENT_SECRET", "sq0csp-test-secret")
os.environ.setdefault("SQUARE_WEBHOOK_SIGNATURE_KEY", "test-webhook-signature-key")
os.environ.setdefault("SQUARE_WEBHOOK_URL", "https://api.example.com/webhooks/square")
os.environ.setdefault("DEBUG", "false")

import uuid
from datetime import datetime, timedelta

import httpx
import pytest
import pytest_asyncio
from jose import jwt
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from app.config import settings
from app.database import Base
from app.models.integration_connection import IntegrationConnection, ConnectionStatus
from app.services.daily_summary_service import DailySummaryService
from app.services.encryption import CredentialVault
from app.services.square_client import SquareClient
from app.services.square_sync_service import SquareSyncService
from app.services.square_token_manager import SquareTokenManager

TEST_DATABASE_URL = "sqlite+aiosqlite:///./test.db"
TEST_ENCRYPTION_KEY = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"
TEST_LOCATION_ID = "L-TEST-1"


class FakeSleep:
    """Records requested delays instead of sleeping."""

    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


class FakeSquareAPI:
    """
    In-memory Square API served through httpx.MockTransport.

    ``pages`` is a list of order lists; page N is returned for cursor
    ``"cursor-N"`` and links to the next page until the last one.
    """

    def __init__(self, pages=None, orders_by_id=None):
        self.pages = pages or [[]]
        self.orders_by_id = orders_by_id or {}
        self.requests: list[httpx.Request] = []
        self.search_bodies: list[dict] = []
        self.token_response = httpx.Response(
            200,
            json={
                "access_token": "EAAA-refreshed-access",
                "refresh_token": "EQAA-rotated-refresh",
                "expires_at": (datetime.utcnow() + timedelta(days=30)).strftime("%Y-%m-%dT%H:%M:%SZ"),
                "merchant_id": "MERCHANT-1",
            },
        )
        self.search_error: httpx.Response | None = None
        self.fail_search_on_page: int | None = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        import json

        self.requests.append(request)
        path = request.url.path

        if path == "/oauth2/token":
            return self.token_response

        if path == "/oauth2/revoke":
            return httpx.Response(200, json={"success": True})

        if path == "/v2/locations":
            return httpx.Response(200, json={"locations": [
                {"id": TEST_LOCATION_ID, "name": "High Street", "status": "ACTIVE",
                 "address": {"address_line_1": "1 High Street", "locality": "London", "postal_code": "N1 1AA"}},
                {"id": "L-CLOSED", "name": "Old Site", "status": "INACTIVE"},
            ]})

        if path == "/v2/orders/search":
            body = json.loads(request.content)
            self.search_bodies.append(body)
            cursor = body.get("cursor")
            index = int(cursor.split("-")[1]) if cursor else 0
            if self.search_error is not None:
                return self.search_error
            if self.fail_search_on_page is not None and index == self.fail_search_on_page:
                return httpx.Response(500, json={"errors": [{"category": "API_ERROR", "code": "INTERNAL_SERVER_ERROR", "detail": "boom"}]})
            page = {"orders": self.pages[index]}
            if index + 1 < len(self.pages):
                page["cursor"] = f"cursor-{index + 1}"
            return httpx.Response(200, json=page)

        if path.startswith("/v2/orders/"):
            order_id = path.rsplit("/", 1)[1]
            order = self.orders_by_id.get(order_id)
            if order is None:
                return httpx.Response(404, json={"errors": [{"category": "INVALID_REQUEST_ERROR", "code": "NOT_FOUND", "detail": "Order not found"}]})
            return httpx.Response(200, json={"order": order})

        return httpx.Response(404, json={"errors": [{"code": "NOT_FOUND", "detail": f"No route {path}"}]})

    @property
    def api_calls(self) -> list[str]:
        return [r.url.path for r in self.requests]


def build_square_client(handler, sleep=None) -> SquareClient:
    return SquareClient(
        environment="sandbox",
        client_id="sq0idp-test-client",
        client_secret="sq0csp-test-secret",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        sleep=sleep or FakeSleep(),
    )


@pytest_asyncio.fixture
async def test_db():
    """Create test database and tables."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=NullPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async_session = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )

    async with async_session() as session:
        yield session

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def vault() -> CredentialVault:
    return CredentialVault(TEST_ENCRYPTION_KEY)


@pytest.fixture
def company_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def fake_square() -> FakeSquareAPI:
    return FakeSquareAPI()


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
def square_client(fake_square, fake_sleep) -> SquareClient:
    return build_square_client(fake_square.handler, sleep=fake_sleep)


@pytest.fixture
def token_manager(square_client, vault) -> SquareTokenManager:
    return SquareTokenManager(square_client, vault)


@pytest.fixture
def sync_service(square_client, token_manager, fake_sleep) -> SquareSyncService:
    return SquareSyncService(
        square_client,
        token_manager,
        DailySummaryService(),
        sleep=fake_sleep,
    )


async def create_connection(
    db: AsyncSession,
    vault: CredentialVault,
    company_id: uuid.UUID,
    expires_in: timedelta = timedelta(days=30),
    status: str = ConnectionStatus.CONNECTED,
    location_id: str | None = TEST_LOCATION_ID,
    access_token: str = "EAAA-stored-access",
    refresh_token: str = "EQAA-stored-refresh",
) -> IntegrationConnection:
    connection = IntegrationConnection(
        company_id=company_id,
        provider="square",
        access_token_encrypted=vault.encrypt_to_str(access_token),
        refresh_token_encrypted=vault.encrypt_to_str(refresh_token),
        token_expires_at=datetime.utcnow() + expires_in,
        merchant_id="MERCHANT-1",
        location_id=location_id,
        status=status,
    )
    db.add(connection)
    await db.commit()
    await db.refresh(connection)
    return connection


@pytest_asyncio.fixture
async def connected_company(test_db, vault, company_id) -> IntegrationConnection:
    return await create_connection(test_db, vault, company_id)


def make_jwt(company_id: uuid.UUID, role: str = "Admin", email: str = "owner@example.com") -> str:
    return jwt.encode(
        {
            "sub": "user-1",
            "company_id": str(company_id),
            "role": role,
            "email": email,
            "exp": datetime.utcnow() + timedelta(minutes=30),
        },
        settings.SECRET_KEY,
        algorithm=settings.ALGORITHM,
    )


@pytest.fixture
def make_connection(test_db, vault, company_id):
    """Factory fixture: ``await make_connection(expires_in=timedelta(days=3))``."""

    async def _make(**kwargs) -> IntegrationConnection:
        kwargs.setdefault("company_id", company_id)
        return await create_connection(test_db, vault, **kwargs)

    return _make


@pytest.fixture
def auth_headers(company_id):
    return {"Authorization": f"Bearer {make_jwt(company_id)}"}


@pytest.fixture
def staff_auth_headers(company_id):
    return {"Authorization": f"Bearer {make_jwt(company_id, role='Staff')}"}
