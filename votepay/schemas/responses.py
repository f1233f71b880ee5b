"""
Pydantic response models returned by the payment service layer.

The service returns these models and FastAPI serializes them, so route
functions stay free of HTTP shaping.
"""

from pydantic import BaseModel, Field
from typing import Any, Dict, Literal, Optional
from datetime import datetime


class ServiceResult(BaseModel):
    """Generic base class for service responses."""

    success: bool = Field(..., description="Whether the operation was successful")
    message: str = Field(..., description="Human-readable result message")


class InitiatePaymentResponse(ServiceResult):
    """Response for a successfully forwarded collection request."""

    transaction_id: str = Field(..., description="Our transaction id")
    client_reference: str = Field(..., description="Caller-supplied idempotency reference")
    data: Optional[Dict[str, Any]] = Field(None, description="Aggregator response data")


class WebhookAck(BaseModel):
    """Acknowledgement returned to the aggregator."""

    received: bool = True
    transaction_id: str = Field(..., description="Reconciliation key used")
    status: Literal["pending", "completed", "failed"]


class PaymentStatusResponse(BaseModel):
    """Answer to a status poll."""

    status: Literal["pending", "success", "failed"]
    transaction_id: str
    amount: Optional[str] = None
    source: Literal["database", "api", "default"]
    message: str
    updated_at: datetime
    # Only filled when BulkClix answered the poll
    phone_number: Optional[str] = None
    network: Optional[str] = None
    ext_transaction_id: Optional[str] = None
