"""
Pydantic schemas for inbound payment requests and aggregator callbacks.
"""

from pydantic import BaseModel, EmailStr, Field, field_validator
from typing import Optional, Union
from decimal import Decimal

from votepay.services.bulkclix import normalize_channel


class InitiatePaymentRequest(BaseModel):
    """Body of POST /api/payments/initiate"""

    amount: Decimal = Field(
        ...,
        gt=0,
        le=100000,
        decimal_places=2,
        max_digits=12,
        description="Amount to collect in GHS",
    )
    account_number: str = Field(..., min_length=9, max_length=20, description="Payer mobile-money number")
    channel: str = Field(..., description="Mobile-money network: MTN, VODAFONE or AIRTELTIGO")
    account_name: str = Field(..., min_length=1, max_length=100, description="Display name of the payer")
    client_reference: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Caller-supplied idempotency reference",
    )
    reference: Optional[str] = Field(
        None,
        max_length=120,
        description="Existing transaction id (UUID or legacy PREFIX-<id>-<ts>)",
    )
    election_id: Optional[str] = Field(None, max_length=100)
    customer_name: Optional[str] = Field(None, max_length=100)
    customer_email: Optional[EmailStr] = None
    amount_usd: Optional[Decimal] = Field(None, ge=0, decimal_places=2)

    @field_validator("account_number")
    @classmethod
    def validate_account_number(cls, v):
        digits = v.replace(" ", "").replace("-", "")
        if not digits.lstrip("+").isdigit():
            raise ValueError("Account number must contain only digits")
        return digits

    @field_validator("channel")
    @classmethod
    def validate_channel(cls, v):
        if normalize_channel(v) is None:
            raise ValueError("Channel must be one of MTN, VODAFONE, AIRTELTIGO")
        return v.strip().upper()

    @field_validator("account_name", "client_reference")
    @classmethod
    def strip_required(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("Field cannot be blank")
        return v


class BulkClixWebhookPayload(BaseModel):
    """
    Callback body sent by BulkClix.

    Every field is optional here; the handler decides whether enough of them
    are present to reconcile.
    """

    amount: Optional[Union[Decimal, str]] = None
    status: Optional[str] = None
    transaction_id: Optional[str] = Field(None, description="BulkClix transaction id")
    ext_transaction_id: Optional[str] = Field(None, description="Our client_reference echoed back")
    phone_number: Optional[str] = None

    @field_validator("transaction_id", "ext_transaction_id", mode="before")
    @classmethod
    def coerce_identifier(cls, v):
        # BulkClix sometimes sends numeric ids
        if v is None:
            return None
        v = str(v).strip()
        return v or None
