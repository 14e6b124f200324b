import functools

import httpx
import pytest
from mongomock_motor import AsyncMongoMockClient

import database
from config import settings
from core.rate_limit import limiter
from core.realtime import hub
from core.security import create_access_token
from models.common import UserRole
from models.rider import RiderCreate
from services import mpesa_service, rider_service, user_service

MPESA_KEYS = {
    "MPESA_CONSUMER_KEY":        "ck_test",
    "MPESA_CONSUMER_SECRET":     "cs_test",
    "MPESA_BUSINESS_SHORT_CODE": "174379",
    "MPESA_PASSKEY":             "passkey",
    "MPESA_B2C_SHORT_CODE":      "600000",
    "MPESA_INITIATOR_NAME":      "testapi",
    "MPESA_SECURITY_CREDENTIAL": "credential",
}


@pytest.fixture(autouse=True)
async def mock_db():
    instance = AsyncMongoMockClient()["captain_compost_test"]
    database.use_database(instance)
    limiter.enabled = False
    yield instance
    hub._subscriptions.clear()
    database.use_database(None)


@pytest.fixture
def mpesa_configured(monkeypatch):
    for key, value in MPESA_KEYS.items():
        monkeypatch.setattr(settings, key, value)
    monkeypatch.setattr(settings, "MPESA_TEST_MODE", False)


@pytest.fixture
def mpesa_gateway(monkeypatch, mpesa_configured):
    """
    Daraja simulé via httpx.MockTransport. `gateway.responses` fixe la réponse
    par chemin ; `gateway.requests` garde les appels reçus.
    """
    class Gateway:
        def __init__(self):
            self.requests = []
            self.responses = {
                "/mpesa/stkpush/v1/processrequest": {
                    "MerchantRequestID":   "29115-34620561-1",
                    "CheckoutRequestID":   "ws_CO_191220191020363925",
                    "ResponseCode":        "0",
                    "ResponseDescription": "Success. Request accepted for processing",
                    "CustomerMessage":     "Success. Request accepted for processing",
                },
                "/mpesa/b2c/v3/paymentrequest": {
                    "ConversationID":           "AG_20191219_00005797af5d7d75f652",
                    "OriginatorConversationID": "16740-34861180-1",
                    "ResponseCode":             "0",
                    "ResponseDescription":      "Accept the service request successfully.",
                },
            }
            self.raise_timeout = False

        def handler(self, request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            if request.url.path == "/oauth/v1/generate":
                return httpx.Response(200, json={"access_token": "token", "expires_in": "3599"})
            if self.raise_timeout:
                raise httpx.ReadTimeout("timed out", request=request)
            return httpx.Response(200, json=self.responses[request.url.path])

    gateway = Gateway()
    real_client = httpx.AsyncClient
    monkeypatch.setattr(
        mpesa_service.httpx,
        "AsyncClient",
        functools.partial(real_client, transport=httpx.MockTransport(gateway.handler)),
    )
    return gateway


async def _profile(role: UserRole, email: str, name: str, phone: str) -> dict:
    return await user_service.create_profile(
        email=email,
        password="password123",
        full_name=name,
        phone_number=phone,
        location="Kiambu",
        role=role,
    )


@pytest.fixture
async def farmer():
    return await _profile(UserRole.FARMER, "farmer@example.com", "Mary Njeri", "0712345678")


@pytest.fixture
async def other_farmer():
    return await _profile(UserRole.FARMER, "farmer2@example.com", "John Kamau", "0723456789")


@pytest.fixture
async def admin():
    return await _profile(UserRole.ADMIN, "admin@example.com", "Jane Wanjiru", "0700000001")


@pytest.fixture
async def dispatcher():
    return await _profile(UserRole.DISPATCH, "dispatch@example.com", "Peter Otieno", "0700000002")


@pytest.fixture
async def rider():
    return await rider_service.create_rider(RiderCreate(name="Agent Mike", phone_number="0722000111"))


def auth_headers(user: dict) -> dict:
    token = create_access_token({"sub": user["user_id"], "role": user["role"]})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
async def client():
    from main import app
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
