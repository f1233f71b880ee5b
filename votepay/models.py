from beanie import Document, Indexed
from pymongo import ASCENDING, IndexModel
from pydantic import Field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Dict, Any


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# Durable statuses that a later callback may not overwrite
TERMINAL_STATUSES = frozenset({"completed", "failed", "refunded"})


class PaymentTransaction(Document):
    """Durable payment record; the system of record for reconciliation."""

    transaction_id: Indexed(str, unique=True)  # our id, echoed back by the aggregator
    election_id: Optional[Indexed(str)] = None
    invoice_id: Optional[str] = None
    amount: Decimal
    currency: str = "GHS"
    status: Indexed(str) = "pending"  # pending, processing, completed, failed, refunded
    payment_method: Optional[str] = None
    payment_provider: Optional[str] = None
    provider_transaction_id: Optional[Indexed(str)] = None
    failure_reason: Optional[str] = None
    # client_reference while the attempt is live; cleared once it fails
    idempotency_key: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    class Settings:
        name = "payment_transactions"
        indexes = [
            IndexModel(
                [("idempotency_key", ASCENDING)],
                name="unique_live_client_reference",
                unique=True,
                partialFilterExpression={"idempotency_key": {"$type": "string"}},
            ),
        ]


class Election(Document):
    """The subset of an election the payment flow reads and writes."""

    election_id: Indexed(str, unique=True)
    name: str
    owner_email: Optional[str] = None
    owner_phone: Optional[str] = None
    status: str = "draft"
    payment_status: str = "unpaid"
    payment_date: Optional[datetime] = None
    payment_intent_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    class Settings:
        name = "elections"
