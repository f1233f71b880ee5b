"""
Payment service layer: collection initiation, webhook ingest and status polling.

Flow: the dashboard initiates a collection, BulkClix prompts the payer and later
calls the webhook, the dashboard polls the status endpoint until the payment
settles. MongoDB is authoritative throughout; the in-process tracker only
mirrors in-flight state for this server instance.
"""

import uuid
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx
from fastapi import BackgroundTasks
from pydantic import ValidationError

from votepay.models import PaymentTransaction, TERMINAL_STATUSES
from votepay.schemas.payment import InitiatePaymentRequest, BulkClixWebhookPayload
from votepay.schemas.responses import (
    InitiatePaymentResponse,
    PaymentStatusResponse,
    WebhookAck,
)
from votepay.services.bulkclix import (
    detect_network,
    format_phone_number,
    get_bulkclix_client,
    normalize_channel,
)
from votepay.services.notification_service import get_notification_service
from votepay.services.reconciliation import (
    normalize_provider_status,
    resolve_reference,
    to_tracker_status,
)
from votepay.store import PaymentStore
from votepay.tracker import TransactionRecord, transaction_tracker
from votepay.core.exceptions import (
    AccountConfigurationError,
    BaseAppError,
    ConfigurationError,
    DatabaseError,
    NotFoundError,
    MalformedWebhookError,
    PaymentRejectedError,
    UpstreamServiceError,
)
from votepay.core.monitoring import error_monitor, monitor_errors

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/api/payments/bulkclix-webhook"

# Name the dashboard sends when the payer did not type one
PLACEHOLDER_ACCOUNT_NAME = "Voter"

# Substrings BulkClix uses when the merchant account itself is misconfigured.
# Matching provider prose is brittle; extend this list when BulkClix rewords.
ACCOUNT_CONFIGURATION_MARKERS = (
    "not allowed",
    "not whitelisted",
    "momo collection",
    "collection not enabled",
    "contact support",
)

ACCOUNT_CONFIGURATION_HINT = (
    "Your BulkClix account is not enabled for mobile money collection from this "
    "server. Ask BulkClix support to enable MoMo collection and whitelist the "
    "server IP address."
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def classify_rejection(provider_message: str) -> BaseAppError:
    """Turn an aggregator rejection into the matching application error."""
    lowered = (provider_message or "").lower()
    if any(marker in lowered for marker in ACCOUNT_CONFIGURATION_MARKERS):
        return AccountConfigurationError(ACCOUNT_CONFIGURATION_HINT, provider_message)
    return PaymentRejectedError(provider_message or "Failed to initiate payment", provider_message)


def ack_status(durable_status: str) -> str:
    """Collapse a durable status onto the three the webhook acknowledgement reports."""
    if durable_status == "completed":
        return "completed"
    if durable_status in ("failed", "refunded"):
        return "failed"
    return "pending"


def _record_from_transaction(transaction: PaymentTransaction) -> TransactionRecord:
    metadata = transaction.metadata or {}
    return TransactionRecord(
        transaction_id=transaction.transaction_id,
        status=to_tracker_status(transaction.status),
        amount_local=transaction.amount,
        phone_number=metadata.get("phone_number"),
        network=metadata.get("network"),
        provider_transaction_id=transaction.provider_transaction_id,
        customer_name=metadata.get("customer_name"),
        customer_email=metadata.get("customer_email"),
        election_id=transaction.election_id,
        webhook_received=bool(metadata.get("webhook_received_at")),
    )


class PaymentService:
    """Service layer for the mobile-money payment flow"""

    @staticmethod
    @monitor_errors("initiate_payment")
    async def initiate_payment(request: InitiatePaymentRequest, request_base_url: str) -> InitiatePaymentResponse:
        """
        Record a pending transaction and forward the collection to BulkClix.

        Args:
            request: Validated initiation request
            request_base_url: Base URL of the inbound request, used for the
                callback URL when no public site URL is configured

        Raises:
            AccountConfigurationError: BulkClix refused because of merchant setup
            PaymentRejectedError: BulkClix refused the collection
            UpstreamServiceError: BulkClix could not be reached
            DatabaseError: If database operations fail
        """
        existing = await PaymentStore.find_by_client_reference(request.client_reference)
        if existing is not None:
            return PaymentService._replay_initiation(existing, request.client_reference)

        client = get_bulkclix_client()
        transaction_id = resolve_reference(request.reference) or str(uuid.uuid4())
        phone_number = format_phone_number(request.account_number)
        detected_network = detect_network(phone_number)
        if normalize_channel(detected_network) != normalize_channel(request.channel):
            logger.info(
                f"Channel {request.channel} does not match number prefix ({detected_network}); "
                f"using the requested channel"
            )

        account_name = request.account_name
        if account_name == PLACEHOLDER_ACCOUNT_NAME:
            account_name = await PaymentService._lookup_account_name(phone_number) or account_name

        callback_base = client.callback_base_url or request_base_url.rstrip("/")
        callback_url = f"{callback_base}{WEBHOOK_PATH}"

        metadata = {
            "client_reference": request.client_reference,
            "phone_number": phone_number,
            "network": request.channel,
            "detected_network": detected_network,
            "account_name": account_name,
            "customer_name": request.customer_name,
            "customer_email": request.customer_email,
        }
        if request.amount_usd is not None:
            metadata["amount_usd"] = str(request.amount_usd)

        existing = await PaymentService._record_attempt({
            "transaction_id": transaction_id,
            "election_id": request.election_id,
            "amount": request.amount,
            "currency": "GHS",
            "payment_method": "mobile_money",
            "payment_provider": "bulkclix",
            "idempotency_key": request.client_reference,
            "metadata": metadata,
        })
        if existing is not None:
            return PaymentService._replay_initiation(existing, request.client_reference)

        transaction_tracker.initialize({
            "transaction_id": transaction_id,
            "status": "pending",
            "amount_local": request.amount,
            "amount_usd": request.amount_usd,
            "phone_number": phone_number,
            "network": request.channel,
            "customer_name": request.customer_name or account_name,
            "customer_email": request.customer_email,
            "election_id": request.election_id,
        })

        try:
            # Our id travels as client_reference so the callback resolves straight to it
            result = await client.initiate_collection(
                amount=request.amount,
                account_number=phone_number,
                channel=request.channel,
                account_name=account_name,
                client_reference=transaction_id,
                callback_url=callback_url,
            )
        except UpstreamServiceError as e:
            await PaymentService._mark_initiation_failed(transaction_id, e.message)
            raise

        if not result.success:
            await PaymentService._mark_initiation_failed(transaction_id, result.message)
            raise classify_rejection(result.message)

        provider_transaction_id = result.transaction_id
        if provider_transaction_id and provider_transaction_id != transaction_id:
            await PaymentStore.update_payment_transaction(
                transaction_id, {"provider_transaction_id": provider_transaction_id}
            )
            transaction_tracker.update(
                transaction_id, {"provider_transaction_id": provider_transaction_id}
            )

        logger.info(f"Collection initiated for transaction {transaction_id}")
        error_monitor.log_payment_event(
            "initiated", transaction_id, "pending",
            provider_transaction_id=provider_transaction_id, channel=request.channel,
        )
        return InitiatePaymentResponse(
            success=True,
            message=result.message,
            transaction_id=transaction_id,
            client_reference=request.client_reference,
            data=result.data,
        )

    @staticmethod
    def _replay_initiation(existing: PaymentTransaction, client_reference: str) -> InitiatePaymentResponse:
        logger.info(f"Client reference {client_reference} already initiated as {existing.transaction_id}")
        error_monitor.log_payment_event("initiation_replayed", existing.transaction_id, existing.status)
        return InitiatePaymentResponse(
            success=True,
            message="Payment was previously initiated",
            transaction_id=existing.transaction_id,
            client_reference=client_reference,
            data={
                "status": existing.status,
                "provider_transaction_id": existing.provider_transaction_id,
            },
        )

    @staticmethod
    async def _record_attempt(fields: Dict[str, Any]) -> Optional[PaymentTransaction]:
        """
        Store a new pending attempt.

        Returns None when this call owns the attempt, or the transaction to
        replay when a concurrent or earlier initiation already holds it. A
        failed transaction with the same id is reset and reused.
        """
        try:
            await PaymentStore.create_payment_transaction(fields)
            return None
        except DatabaseError as e:
            if e.database_error != "duplicate_key":
                raise

        # A concurrent initiation with the same client reference won the insert
        existing = await PaymentStore.find_by_client_reference(fields["idempotency_key"])
        if existing is not None:
            return existing

        transaction_id = fields["transaction_id"]
        if await PaymentStore.reset_failed_transaction(transaction_id, fields):
            logger.info(f"Retrying failed transaction {transaction_id}")
            return None

        existing = await PaymentStore.get_payment_transaction(transaction_id)
        if existing is None:
            raise DatabaseError(
                "Transaction already exists",
                operation="insert_transaction",
                database_error="duplicate_key",
            )
        return existing

    @staticmethod
    @monitor_errors("process_webhook")
    async def process_webhook(
        payload: BulkClixWebhookPayload,
        background_tasks: Optional[BackgroundTasks] = None,
    ) -> WebhookAck:
        """
        Apply a BulkClix callback to the durable store and the tracker.

        Unknown transactions are acknowledged, not rejected, so BulkClix does
        not retry them forever. Durable terminal states are sticky: a replayed
        or contradictory callback for a settled transaction changes nothing.
        The terminal-state check is repeated inside the write itself, so of two
        overlapping deliveries only one marks the election paid and notifies.

        Raises:
            MalformedWebhookError: Neither a resolvable reference nor a provider id
            DatabaseError: If database operations fail (BulkClix will retry)
        """
        local_id = resolve_reference(payload.ext_transaction_id)
        provider_transaction_id = payload.transaction_id
        key = local_id or provider_transaction_id
        if not key:
            raise MalformedWebhookError(payload.ext_transaction_id)

        new_status = normalize_provider_status(payload.status)

        if local_id:
            transaction = await PaymentStore.get_payment_transaction(local_id)
        else:
            logger.info(
                f"Unresolvable reference {payload.ext_transaction_id!r}; "
                f"reconciling by provider id {provider_transaction_id}"
            )
            transaction = await PaymentStore.find_by_provider_transaction_id(provider_transaction_id)

        if transaction is None:
            logger.warning(f"Webhook for unknown transaction {key}; acknowledged without changes")
            error_monitor.log_payment_event("webhook_unmatched", key, new_status)
            return WebhookAck(transaction_id=key, status=new_status)

        if transaction.status in TERMINAL_STATUSES:
            return PaymentService._ignore_settled(transaction, key, new_status)

        fields: Dict[str, Any] = {
            "status": new_status,
            "metadata.webhook_received_at": _utc_now().isoformat(),
            "metadata.bulkclix_status": payload.status,
        }
        if payload.phone_number:
            fields["metadata.phone_number"] = payload.phone_number
        if provider_transaction_id:
            fields["provider_transaction_id"] = provider_transaction_id
        if new_status == "failed":
            # Frees the client reference for a retry
            fields["idempotency_key"] = None

        applied = await PaymentStore.update_unsettled_transaction(transaction.transaction_id, fields)
        if not applied:
            # Another delivery settled it between the read and the write
            settled = await PaymentStore.get_payment_transaction(transaction.transaction_id)
            return PaymentService._ignore_settled(settled or transaction, key, new_status)

        tracker_updates: Dict[str, Any] = {
            "status": to_tracker_status(new_status),
            "webhook_received": True,
            "status_message": f"BulkClix reported {payload.status or 'no status'}",
        }
        if provider_transaction_id:
            tracker_updates["provider_transaction_id"] = provider_transaction_id
        if payload.phone_number:
            tracker_updates["phone_number"] = payload.phone_number
        record = transaction_tracker.update(transaction.transaction_id, tracker_updates)

        logger.info(f"Transaction {transaction.transaction_id} -> {new_status} (webhook)")
        error_monitor.log_payment_event(
            "webhook_applied", transaction.transaction_id, new_status,
            provider_transaction_id=provider_transaction_id,
        )

        if new_status == "completed":
            election_name = await PaymentService._mark_election_paid(transaction, provider_transaction_id)
            if background_tasks is not None:
                if record is None:
                    record = _record_from_transaction(transaction).model_copy(update=tracker_updates)
                background_tasks.add_task(
                    get_notification_service().notify_payment_completed, record, election_name
                )

        return WebhookAck(transaction_id=key, status=new_status)

    @staticmethod
    def _ignore_settled(transaction: PaymentTransaction, key: str, new_status: str) -> WebhookAck:
        if new_status != transaction.status:
            logger.warning(
                f"Ignoring webhook status {new_status} for settled transaction "
                f"{transaction.transaction_id} ({transaction.status})"
            )
        else:
            logger.info(f"Duplicate webhook for transaction {transaction.transaction_id}")
        error_monitor.log_payment_event(
            "webhook_ignored", transaction.transaction_id, transaction.status, reported_status=new_status,
        )
        return WebhookAck(transaction_id=key, status=ack_status(transaction.status))

    @staticmethod
    async def get_payment_status(transaction_id: str) -> PaymentStatusResponse:
        """
        Resolve the status of a transaction for polling clients.

        Precedence: settled durable record, then BulkClix, then `pending`.
        Store and aggregator failures fall through to the next step.
        """
        transaction: Optional[PaymentTransaction] = None
        try:
            transaction = await PaymentStore.get_payment_transaction(transaction_id)
        except DatabaseError:
            logger.warning(f"Database check failed for {transaction_id}; asking BulkClix")

        if transaction is not None:
            updated_at = transaction.updated_at or transaction.created_at
            if transaction.status == "completed":
                return PaymentStatusResponse(
                    status="success",
                    transaction_id=transaction_id,
                    amount=str(transaction.amount),
                    source="database",
                    message="Payment completed",
                    updated_at=updated_at,
                )
            if transaction.status in ("failed", "refunded"):
                return PaymentStatusResponse(
                    status="failed",
                    transaction_id=transaction_id,
                    source="database",
                    message="Payment failed",
                    updated_at=updated_at,
                )

        cached = transaction_tracker.get(transaction_id)
        provider_transaction_id = (
            (transaction.provider_transaction_id if transaction else None)
            or (cached.provider_transaction_id if cached else None)
            or transaction_id
        )

        try:
            aggregator_status = await get_bulkclix_client().query_transaction_status(provider_transaction_id)
        except (UpstreamServiceError, ConfigurationError) as e:
            logger.warning(f"BulkClix status check failed for {transaction_id}: {e.message}")
            aggregator_status = None
        except ValidationError as e:
            logger.warning(f"Unusable BulkClix status for {transaction_id}: {e.error_count()} invalid fields")
            aggregator_status = None

        if aggregator_status is not None:
            status = to_tracker_status(normalize_provider_status(aggregator_status.status))
            transaction_tracker.update(transaction_id, {
                "status": status,
                "provider_transaction_id": aggregator_status.transaction_id,
                "status_message": aggregator_status.message,
            })

            amount = aggregator_status.amount
            if amount is None and transaction is not None:
                amount = transaction.amount

            return PaymentStatusResponse(
                status=status,
                transaction_id=transaction_id,
                amount=str(amount) if amount is not None else None,
                source="api",
                message=aggregator_status.message or "Status from BulkClix API",
                updated_at=_utc_now(),
                phone_number=aggregator_status.phone,
                network=aggregator_status.network,
                ext_transaction_id=aggregator_status.reference,
            )

        return PaymentStatusResponse(
            status="pending",
            transaction_id=transaction_id,
            source="default",
            message="Payment is being processed",
            updated_at=_utc_now(),
        )

    @staticmethod
    async def _lookup_account_name(phone_number: str) -> Optional[str]:
        # Best effort: the payer's typed name is good enough when this fails
        try:
            return await get_bulkclix_client().query_account_name(phone_number)
        except (UpstreamServiceError, httpx.HTTPError, ValueError) as e:
            logger.warning(f"Account name lookup failed: {type(e).__name__}")
            return None

    @staticmethod
    async def _mark_initiation_failed(transaction_id: str, message: str) -> None:
        transaction_tracker.update(transaction_id, {"status": "failed", "status_message": message})
        error_monitor.log_payment_event("rejected", transaction_id, "failed", reason=message)
        try:
            await PaymentStore.update_payment_transaction(
                transaction_id,
                {"status": "failed", "failure_reason": message, "idempotency_key": None},
            )
        except (DatabaseError, NotFoundError) as e:
            # The provider error is what the caller needs to see
            error_monitor.log_error(e, {
                "context": "mark_initiation_failed",
                "transaction_id": transaction_id,
            })

    @staticmethod
    async def _mark_election_paid(
        transaction: PaymentTransaction,
        provider_transaction_id: Optional[str],
    ) -> Optional[str]:
        """Flag the election as paid; returns its name for the receipt."""
        if not transaction.election_id:
            return None

        try:
            election = await PaymentStore.update_election(transaction.election_id, {
                "payment_status": "paid",
                "payment_date": _utc_now(),
                "payment_intent_id": provider_transaction_id or transaction.transaction_id,
            })
        except (DatabaseError, NotFoundError) as e:
            # The payment itself is recorded; a retried webhook would be a no-op
            error_monitor.log_error(e, {
                "context": "mark_election_paid",
                "election_id": transaction.election_id,
                "transaction_id": transaction.transaction_id,
            })
            return None

        logger.info(f"Election {transaction.election_id} marked paid")
        return election.name
