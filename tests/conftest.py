"""
Pytest configuration and fixtures for FireFund tests
"""

import pytest
import httpx
from httpx import AsyncClient, ASGITransport
from unittest.mock import AsyncMock

from firefund.api.dependencies import get_receipt_service
from firefund.config.config_loader import default_config, _deep_update
from firefund.core.database import db_service
from firefund.core.email_service import EmailService, SMTPConfig
from firefund.core.models import ProfileDB, TeamDB, Role
from firefund.core.receipts import ReceiptService
from firefund.core.security import security_service
from firefund.integrations.n8n_adapter import N8nAdapter, N8nConfig
from firefund.main import create_app


TEST_PASSWORD = "password123"


class N8nStub:
    """Stands in for the n8n webhook behind an httpx.MockTransport"""

    def __init__(self):
        self.requests = []
        self.status_code = 200
        self.response = {"workflowId": "wf-123", "estimatedProcessingTime": 5}

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json=self.response)


@pytest.fixture
def test_config():
    """Server configuration for tests: in-memory database, fast hashing"""
    config = default_config()
    _deep_update(config, {
        'database': {'url': 'sqlite+aiosqlite:///:memory:'},
        'auth': {'password_iterations': 1000},
        'n8n': {
            'webhook_url': 'http://n8n.test/webhook/receipt',
            'api_key': 'test-n8n-key',
            'webhook_secret': '',
            'callback_base_url': 'http://test'
        },
        'receipts': {
            'delivery': 'n8n',
            'association_name': 'Amicale des Sapeurs-Pompiers de Test'
        }
    })
    return config


@pytest.fixture
async def setup_test_db():
    """Fresh in-memory database per test"""
    await db_service.close()
    db_service.initialize("sqlite+aiosqlite:///:memory:")
    await db_service.create_tables()

    yield db_service

    await db_service.close()


@pytest.fixture
def n8n_stub():
    return N8nStub()


@pytest.fixture
async def receipt_service(test_config, n8n_stub, setup_test_db):
    """Receipt service wired to the n8n stub; SMTP sending is mocked"""
    adapter = N8nAdapter(
        N8nConfig.from_config(test_config),
        client=httpx.AsyncClient(transport=httpx.MockTransport(n8n_stub.handler))
    )
    email_service = EmailService(SMTPConfig.from_config(test_config))
    email_service.send_email = AsyncMock(return_value=True)

    yield ReceiptService(test_config, adapter, email_service)

    await adapter._client.aclose()


@pytest.fixture
async def test_app(test_config, setup_test_db, receipt_service):
    """Create a test FastAPI application"""
    app = create_app(test_config)
    app.dependency_overrides[get_receipt_service] = lambda: receipt_service
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
async def client(test_app):
    """AsyncClient talking to the app in-process"""
    async with AsyncClient(transport=ASGITransport(app=test_app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def make_team(setup_test_db):
    async def _make_team(name="Équipe Nord", calendars_target=100, **kwargs):
        async with db_service.get_session() as session:
            team = TeamDB(name=name, calendars_target=calendars_target, **kwargs)
            session.add(team)
        return team.id

    return _make_team


@pytest.fixture
def make_user(client):
    """Create a profile directly, sign it in; returns (profile_id, auth headers)"""
    async def _make_user(email, role=Role.VOLUNTEER, team_id=None, full_name=None):
        async with db_service.get_session() as session:
            session.add(ProfileDB(
                email=email,
                full_name=full_name or email.split('@')[0].title(),
                role=role.value,
                team_id=team_id,
                password_hash=security_service.hash_password(TEST_PASSWORD)
            ))

        response = await client.post("/api/v1/auth/signin", json={"email": email, "password": TEST_PASSWORD})
        assert response.status_code == 200, response.text
        data = response.json()
        return data["profile"]["id"], {"Authorization": f"Bearer {data['access_token']}"}

    return _make_user
