from datetime import datetime, timezone
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from votepay.main import app
from votepay.core.limiter import limiter
from votepay.schemas.payment import BulkClixWebhookPayload
from votepay.tracker import TransactionTracker

TRANSACTION_ID = "3f2b8c1e-9a4d-4e6f-8b2a-1c5d7e9f0a3b"
PROVIDER_TRANSACTION_ID = "BCX1234567890"
WEBHOOK_SECRET = "test_webhook_secret"
MONITORING_KEY = "test_monitoring_key"

VALID_INITIATE_PAYLOAD = {
    "amount": "25.00",
    "account_number": "0241234567",
    "channel": "MTN",
    "account_name": "Ama Mensah",
    "client_reference": "dash-ref-001",
    "election_id": "election_42",
    "customer_name": "Ama Mensah",
    "customer_email": "ama@example.com",
}


@pytest.fixture
def client():
    """TestClient without lifespan (no database) and with rate limits off"""
    limiter.enabled = False
    yield TestClient(app)
    limiter.enabled = True


@pytest.fixture
def tracker():
    """Fresh tracker swapped in for the process-wide one"""
    fresh = TransactionTracker()
    with patch("votepay.services.payment_service.transaction_tracker", fresh):
        yield fresh


@pytest.fixture
def mock_store():
    """PaymentStore as used by the payment service, every method an AsyncMock"""
    with patch("votepay.services.payment_service.PaymentStore") as store:
        store.find_by_client_reference = AsyncMock(return_value=None)
        store.get_payment_transaction = AsyncMock(return_value=None)
        store.find_by_provider_transaction_id = AsyncMock(return_value=None)
        store.create_payment_transaction = AsyncMock()
        store.update_payment_transaction = AsyncMock()
        store.update_unsettled_transaction = AsyncMock(return_value=True)
        store.reset_failed_transaction = AsyncMock(return_value=False)
        store.get_election = AsyncMock(return_value=None)
        store.update_election = AsyncMock(return_value=SimpleNamespace(name="Student Council 2026"))
        yield store


@pytest.fixture
def mock_bulkclix():
    """BulkClix client returned by get_bulkclix_client()"""
    bulkclix = MagicMock()
    bulkclix.callback_base_url = "https://votes.example.com"
    bulkclix.initiate_collection = AsyncMock()
    bulkclix.query_transaction_status = AsyncMock(return_value=None)
    bulkclix.query_account_name = AsyncMock(return_value=None)

    with patch("votepay.services.payment_service.get_bulkclix_client", return_value=bulkclix):
        yield bulkclix


@pytest.fixture
def mock_notifications():
    notifications = MagicMock()
    notifications.notify_payment_completed = AsyncMock()

    with patch("votepay.services.payment_service.get_notification_service", return_value=notifications):
        yield notifications


@pytest.fixture
def initiate_payload():
    return dict(VALID_INITIATE_PAYLOAD)


def create_webhook_payload(
    ext_transaction_id=TRANSACTION_ID,
    status="success",
    transaction_id=PROVIDER_TRANSACTION_ID,
    amount="25.00",
    phone_number="0241234567",
):
    """BulkClix-shaped callback body with customizable parameters"""
    return {
        "amount": amount,
        "status": status,
        "transaction_id": transaction_id,
        "ext_transaction_id": ext_transaction_id,
        "phone_number": phone_number,
    }


@pytest.fixture
def webhook_body():
    return create_webhook_payload()


@pytest.fixture
def webhook_payload():
    return BulkClixWebhookPayload(**create_webhook_payload())


def make_transaction(
    transaction_id=TRANSACTION_ID,
    status="pending",
    amount=Decimal("25.00"),
    election_id="election_42",
    provider_transaction_id=None,
    metadata=None,
):
    """Stand-in for a stored PaymentTransaction document"""
    now = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)
    return SimpleNamespace(
        transaction_id=transaction_id,
        status=status,
        amount=amount,
        currency="GHS",
        election_id=election_id,
        provider_transaction_id=provider_transaction_id,
        failure_reason=None,
        metadata=metadata if metadata is not None else {
            "client_reference": "dash-ref-001",
            "phone_number": "0241234567",
            "network": "MTN",
            "customer_name": "Ama Mensah",
            "customer_email": "ama@example.com",
        },
        created_at=now,
        updated_at=now,
    )


@pytest.fixture
def pending_transaction():
    return make_transaction()


@pytest.fixture
def webhook_secret(monkeypatch):
    monkeypatch.setattr("votepay.security.WEBHOOK_SECRET", WEBHOOK_SECRET)
    return WEBHOOK_SECRET


@pytest.fixture
def monitoring_key(monkeypatch):
    monkeypatch.setenv("MONITORING_API_KEY", MONITORING_KEY)
    return MONITORING_KEY


@pytest.fixture(autouse=True)
def unsigned_webhooks(monkeypatch):
    """Tests run without a webhook secret unless they ask for `webhook_secret`"""
    monkeypatch.setattr("votepay.security.WEBHOOK_SECRET", None)
