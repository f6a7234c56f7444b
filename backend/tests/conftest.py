"""Shared pytest fixtures for test suite"""
import hashlib
import hmac
import json
import os
import sys
import time
import uuid
from pathlib import Path
from typing import Generator
from unittest.mock import Mock, patch

import pytest

# Settings are read at import time; configure the test environment first
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["RESEND_API_KEY"] = "re_test_key"
os.environ["INTERNAL_API_KEY"] = "test-internal-key"
os.environ["EMAIL_RETRY_BASE_DELAY"] = "0"
os.environ["CLEANUP_TASK_ENABLED"] = "false"
os.environ["QUEUE_SCHEDULER_ENABLED"] = "false"
os.environ["ALERT_EMAILS"] = ""
os.environ["OTEL_EXPORTER_OTLP_ENDPOINT"] = ""

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from backoffice.main import app
from backoffice.db.session import get_db
from backoffice.models import Base
from backoffice.models.user import User
from backoffice.models.email_template import EmailTemplate
from backoffice.core.retry import RetryPolicy
from backoffice.services.email_service import ResendTransport


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

# Resend test email addresses - use these in ALL tests to avoid fake addresses
# See: https://resend.com/docs/dashboard/emails/send-test-emails
RESEND_TEST_DELIVERED = "delivered@resend.dev"
RESEND_TEST_BOUNCED = "bounced@resend.dev"

WEBHOOK_SECRET = "whsec_test_secret"
INTERNAL_HEADERS = {"X-Internal-Key": "test-internal-key"}

# Templates used by the webhook handlers and queue tests
TEST_TEMPLATES = [
    ("payment_success", "Pagamento confirmado", "Pagamento de {{amount}} confirmado", "<p>Olá {{client_name}}, recebemos {{amount}}.</p>"),
    ("payment_failed", "Falha no pagamento", "Falha no pagamento", "<p>Olá {{client_name}}: {{failure_reason}}</p>"),
    ("subscription_cancelled", "Assinatura cancelada", "Assinatura cancelada", "<p>Acesso até {{access_until_date}}</p>"),
    ("subscription_expiring", "Renovação próxima", "Sua assinatura renova em {{renewal_date}}", "<p>{{plan_name}}</p>"),
    ("welcome_client", "Boas-vindas", "Bem-vindo, {{client_name}}", "<p>Plano: {{plan_name}}</p>"),
    ("design_order_paid", "Pedido pago", "Pedido {{order_id}} confirmado", "<p>{{package_name}}</p>"),
    ("admin_new_design_order", "Novo pedido", "Novo pedido de {{client_name}}", "<p>{{package_name}}</p>"),
    ("admin_new_client", "Novo cliente", "Novo cliente: {{client_name}}", "<p>{{plan_name}}</p>"),
]


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    # Create all tables
    Base.metadata.create_all(bind=test_engine)

    # Create session
    session = TestSessionLocal()

    try:
        yield session
    finally:
        session.close()
        # Drop all tables after test
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def client(db_session: Session) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database"""

    # Override get_db dependency to use test database
    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db

    try:
        # Disable OpenTelemetry in tests
        with patch('backoffice.main.configure_tracing', return_value=False):
            with TestClient(app) as test_client:
                yield test_client
    finally:
        # Cleanup - always clear overrides
        app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def mock_email_service():
    """Mock email service (Resend) to avoid sending actual emails"""
    with patch('backoffice.services.email_service.resend') as mock_resend:
        mock_resend.Emails.send = Mock(return_value={"id": "email_test123"})
        yield mock_resend


@pytest.fixture(scope="function")
def failing_email_service():
    """Resend mock whose every send raises"""
    with patch('backoffice.services.email_service.resend') as mock_resend:
        mock_resend.Emails.send = Mock(side_effect=Exception("Resend API unavailable"))
        yield mock_resend


@pytest.fixture(scope="function")
def transport() -> ResendTransport:
    """Transport with a fast retry policy and no real sleeping"""
    async def no_sleep(delay):
        return None

    return ResendTransport(
        api_key="re_test_key",
        policy=RetryPolicy(max_attempts=3, base_delay=0.01, multiplier=2.0, timeout=5),
        sleep=no_sleep,
    )


@pytest.fixture(scope="function")
def email_templates(db_session: Session):
    """Seed the templates used across the pipeline"""
    templates = []
    for slug, name, subject, html in TEST_TEMPLATES:
        template = EmailTemplate(
            slug=slug,
            name=name,
            subject=subject,
            html_template=html,
            sender_email="noreply@webq.com.br",
            sender_name="WebQ",
            is_active=True,
        )
        db_session.add(template)
        templates.append(template)
    db_session.commit()
    return {t.slug: t for t in templates}


@pytest.fixture(scope="function")
def make_user(db_session: Session):
    """Factory creating users with Resend test addresses"""
    def _make_user(label: str = None, is_admin: bool = False, email: str = None) -> User:
        label = label or uuid.uuid4().hex[:8]
        user = User(
            email=email or f"delivered+{label}@resend.dev",
            full_name=f"User {label}",
            is_admin=is_admin,
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make_user


@pytest.fixture(scope="function")
def admin_user(make_user) -> User:
    return make_user("admin", is_admin=True)


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Build a stripe-signature header the way Stripe does"""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture(scope="function")
def signed_event():
    """Factory returning (raw_body, signature_header) for a Stripe event"""
    def _signed_event(event_type: str, data_object: dict = None, event_id: str = None, secret: str = WEBHOOK_SECRET):
        event = {
            "id": event_id or f"evt_{uuid.uuid4().hex[:16]}",
            "object": "event",
            "type": event_type,
            "data": {"object": data_object or {}},
        }
        payload = json.dumps(event)
        return payload.encode("utf-8"), sign_payload(payload, secret)

    return _signed_event
