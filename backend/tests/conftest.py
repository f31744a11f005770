"""Shared pytest fixtures for test suite"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "development")

import pytest
from typing import Generator
from unittest.mock import MagicMock, Mock, patch
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
import fakeredis
import stripe

from timelens.main import app
from timelens.api.transform import get_orchestrator
from timelens.core.config import settings
from timelens.db import redis as redis_module
from timelens.db.session import get_db
from timelens.models import Base
from timelens.models.user import User
from timelens.services.auth_service import create_user
from timelens.services.generation.gemini_client import GeneratedImage
from timelens.services.generation.generator import ImageGenerator
from timelens.services.storage.r2_service import R2Service
from timelens.services.transform_service import TransformOrchestrator

TEST_PASSWORD = "TestPassword123!"
BASIC_PRICE_ID = "price_basic_test"
PRO_PRICE_ID = "price_pro_test"

# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine with StaticPool for in-memory database
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# Create test session factory
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    Base.metadata.create_all(bind=test_engine)
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function", autouse=True)
def mock_redis():
    """Replace the Redis client with fakeredis"""
    fake_redis = fakeredis.FakeStrictRedis(decode_responses=True)
    with patch.object(redis_module, "_client", fake_redis):
        yield fake_redis


@pytest.fixture(scope="function", autouse=True)
def stripe_prices(monkeypatch):
    """Configure Stripe price ids for the paid plans"""
    monkeypatch.setattr(settings, "STRIPE_BASIC_PRICE_ID", BASIC_PRICE_ID)
    monkeypatch.setattr(settings, "STRIPE_PRO_PRICE_ID", PRO_PRICE_ID)
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", "whsec_test")


@pytest.fixture(scope="function", autouse=True)
def auto_mock_stripe():
    """Automatically mock Stripe for all tests to prevent real API calls"""
    with patch("timelens.services.stripe_service.stripe") as mock_stripe_module:
        mock_stripe_module.Customer.create = Mock(return_value=Mock(id="cus_test123"))
        mock_stripe_module.Subscription.modify = Mock(return_value=Mock(id="sub_test123", cancel_at_period_end=True))
        mock_stripe_module.checkout.Session.create = Mock(return_value=Mock(
            id="cs_test123",
            url="https://checkout.stripe.com/test"
        ))
        mock_stripe_module.billing_portal.Session.create = Mock(return_value=Mock(
            url="https://billing.stripe.com/test"
        ))
        mock_stripe_module.Webhook.construct_event = Mock(return_value={
            "id": "evt_test123",
            "type": "ping",
            "created": 1700000000,
            "data": {"object": {}}
        })

        # Real error classes so except clauses match
        mock_stripe_module.StripeError = stripe.StripeError
        mock_stripe_module.SignatureVerificationError = stripe.SignatureVerificationError

        yield mock_stripe_module


@pytest.fixture(scope="function")
def test_user(db_session: Session) -> User:
    """A free-plan user"""
    return create_user(email="user@example.com", password=TEST_PASSWORD, db=db_session)


@pytest.fixture(scope="function")
def test_user_2(db_session: Session) -> User:
    return create_user(email="user2@example.com", password=TEST_PASSWORD, db=db_session)


@pytest.fixture(scope="function")
def admin_user(db_session: Session) -> User:
    user = create_user(email="admin@example.com", password=TEST_PASSWORD, db=db_session)
    user.is_admin = True
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture(scope="function")
def basic_user(db_session: Session) -> User:
    user = create_user(email="basic@example.com", password=TEST_PASSWORD, db=db_session)
    user.current_plan = "basic"
    user.stripe_customer_id = "cus_basic"
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture(scope="function")
def pro_user(db_session: Session) -> User:
    user = create_user(email="pro@example.com", password=TEST_PASSWORD, db=db_session)
    user.current_plan = "pro"
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture(scope="function")
def s3_client() -> MagicMock:
    return MagicMock()


@pytest.fixture(scope="function")
def storage(s3_client, monkeypatch) -> R2Service:
    """R2Service backed by a mocked boto3 client"""
    monkeypatch.setattr(settings, "R2_PUBLIC_DOMAIN", "images.example.com")
    return R2Service(s3_client=s3_client)


@pytest.fixture(scope="function")
def image_client() -> Mock:
    """Image provider client that returns a PNG by default"""
    client = Mock()
    client.generate = Mock(return_value=GeneratedImage(data=b"generated-bytes", mime_type="image/png"))
    return client


@pytest.fixture(scope="function")
def generator(image_client) -> ImageGenerator:
    return ImageGenerator(client=image_client, max_attempts=3, initial_delay=1.0, sleep=Mock())


@pytest.fixture(scope="function")
def orchestrator(storage, generator) -> TransformOrchestrator:
    return TransformOrchestrator(storage=storage, generator=generator, clock=lambda: 1700000000.0)


@pytest.fixture(scope="function")
def client(db_session: Session, orchestrator) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database, fakeredis and mocked providers"""

    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    # Lifespan is not entered: no OTEL, no background reconciliation loop
    test_client = TestClient(app)
    try:
        yield test_client
    finally:
        app.dependency_overrides.clear()


def login(client: TestClient, email: str, password: str = TEST_PASSWORD) -> TestClient:
    """Log in and attach the CSRF header"""
    response = client.post("/api/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    client.headers.update({"X-CSRF-Token": response.json()["csrf_token"]})
    return client


@pytest.fixture(scope="function")
def authenticated_client(client: TestClient, test_user: User) -> TestClient:
    return login(client, test_user.email)


@pytest.fixture(scope="function")
def admin_client(client: TestClient, admin_user: User) -> TestClient:
    return login(client, admin_user.email)


@pytest.fixture(scope="function")
def login_as(client: TestClient):
    """Log the shared client in as the given user"""
    def _login(user: User) -> TestClient:
        return login(client, user.email)
    return _login
