from decimal import Decimal

import pytest
from fastapi import BackgroundTasks

from votepay.core.exceptions import (
    AccountConfigurationError,
    DatabaseError,
    MalformedWebhookError,
    NotFoundError,
    PaymentRejectedError,
    UpstreamServiceError,
)
from votepay.schemas.payment import InitiatePaymentRequest, BulkClixWebhookPayload
from votepay.services.bulkclix import AggregatorStatus, CollectionResult
from votepay.services.payment_service import (
    ACCOUNT_CONFIGURATION_HINT,
    PaymentService,
    classify_rejection,
)

from conftest import (
    PROVIDER_TRANSACTION_ID,
    TRANSACTION_ID,
    create_webhook_payload,
    make_transaction,
)

BASE_URL = "http://testserver/"

DUPLICATE = DatabaseError(
    "Transaction already exists", operation="insert_transaction", database_error="duplicate_key"
)


def accepted(transaction_id=PROVIDER_TRANSACTION_ID):
    return CollectionResult(
        success=True,
        message="Payment initiated successfully",
        transaction_id=transaction_id,
        http_status=200,
        data={"transaction_id": transaction_id},
    )


def rejected(message):
    return CollectionResult(success=False, message=message, http_status=400)


class TestClassifyRejection:
    @pytest.mark.parametrize("message", [
        "MoMo collection not allowed for this merchant",
        "IP address NOT WHITELISTED",
        "Collection not enabled, contact support",
    ])
    def test_account_configuration_messages(self, message):
        error = classify_rejection(message)

        assert isinstance(error, AccountConfigurationError)
        assert error.http_status_code == 403
        assert error.message == ACCOUNT_CONFIGURATION_HINT
        assert error.provider_message == message

    def test_other_rejections_pass_message_through(self):
        error = classify_rejection("Insufficient balance")

        assert isinstance(error, PaymentRejectedError)
        assert error.http_status_code == 400
        assert error.message == "Insufficient balance"

    def test_empty_message(self):
        error = classify_rejection("")
        assert isinstance(error, PaymentRejectedError)
        assert error.message == "Failed to initiate payment"


class TestInitiatePayment:
    @pytest.mark.asyncio
    async def test_success_records_and_forwards(self, initiate_payload, mock_store, mock_bulkclix, tracker):
        mock_bulkclix.initiate_collection.return_value = accepted()

        result = await PaymentService.initiate_payment(InitiatePaymentRequest(**initiate_payload), BASE_URL)

        assert result.success is True
        assert result.client_reference == "dash-ref-001"
        assert len(result.transaction_id) == 36

        fields = mock_store.create_payment_transaction.call_args.args[0]
        assert fields["transaction_id"] == result.transaction_id
        assert fields["amount"] == Decimal("25.00")
        assert fields["election_id"] == "election_42"
        assert fields["metadata"]["client_reference"] == "dash-ref-001"
        assert fields["idempotency_key"] == "dash-ref-001"

        call = mock_bulkclix.initiate_collection.call_args.kwargs
        assert call["client_reference"] == result.transaction_id
        assert call["callback_url"] == "https://votes.example.com/api/payments/bulkclix-webhook"
        assert call["account_number"] == "0241234567"

        mock_store.update_payment_transaction.assert_awaited_once_with(
            result.transaction_id, {"provider_transaction_id": PROVIDER_TRANSACTION_ID}
        )
        record = tracker.get(result.transaction_id)
        assert record.status == "pending"
        assert record.provider_transaction_id == PROVIDER_TRANSACTION_ID
        assert record.election_id == "election_42"

    @pytest.mark.asyncio
    async def test_callback_falls_back_to_request_base_url(self, initiate_payload, mock_store, mock_bulkclix, tracker):
        mock_bulkclix.callback_base_url = None
        mock_bulkclix.initiate_collection.return_value = accepted()

        await PaymentService.initiate_payment(InitiatePaymentRequest(**initiate_payload), BASE_URL)

        call = mock_bulkclix.initiate_collection.call_args.kwargs
        assert call["callback_url"] == "http://testserver/api/payments/bulkclix-webhook"

    @pytest.mark.asyncio
    async def test_legacy_reference_reuses_transaction_id(self, initiate_payload, mock_store, mock_bulkclix, tracker):
        mock_bulkclix.initiate_collection.return_value = accepted()
        initiate_payload["reference"] = "PRELYCT-order-77-1700000000000"

        result = await PaymentService.initiate_payment(InitiatePaymentRequest(**initiate_payload), BASE_URL)

        assert result.transaction_id == "order-77"
        assert mock_bulkclix.initiate_collection.call_args.kwargs["client_reference"] == "order-77"

    @pytest.mark.asyncio
    async def test_placeholder_name_is_looked_up(self, initiate_payload, mock_store, mock_bulkclix, tracker):
        mock_bulkclix.initiate_collection.return_value = accepted()
        mock_bulkclix.query_account_name.return_value = "KOFI BOATENG"
        initiate_payload["account_name"] = "Voter"

        await PaymentService.initiate_payment(InitiatePaymentRequest(**initiate_payload), BASE_URL)

        mock_bulkclix.query_account_name.assert_awaited_once_with("0241234567")
        assert mock_bulkclix.initiate_collection.call_args.kwargs["account_name"] == "KOFI BOATENG"

    @pytest.mark.asyncio
    async def test_failed_name_lookup_keeps_placeholder(self, initiate_payload, mock_store, mock_bulkclix, tracker):
        mock_bulkclix.initiate_collection.return_value = accepted()
        mock_bulkclix.query_account_name.side_effect = UpstreamServiceError("unreachable")
        initiate_payload["account_name"] = "Voter"

        await PaymentService.initiate_payment(InitiatePaymentRequest(**initiate_payload), BASE_URL)

        assert mock_bulkclix.initiate_collection.call_args.kwargs["account_name"] == "Voter"

    @pytest.mark.asyncio
    async def test_typed_name_is_not_looked_up(self, initiate_payload, mock_store, mock_bulkclix, tracker):
        mock_bulkclix.initiate_collection.return_value = accepted()

        await PaymentService.initiate_payment(InitiatePaymentRequest(**initiate_payload), BASE_URL)

        mock_bulkclix.query_account_name.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_repeated_client_reference_returns_existing(self, initiate_payload, mock_store, mock_bulkclix, tracker):
        mock_store.find_by_client_reference.return_value = make_transaction(
            provider_transaction_id=PROVIDER_TRANSACTION_ID
        )

        result = await PaymentService.initiate_payment(InitiatePaymentRequest(**initiate_payload), BASE_URL)

        assert result.transaction_id == TRANSACTION_ID
        assert result.message == "Payment was previously initiated"
        assert result.data["provider_transaction_id"] == PROVIDER_TRANSACTION_ID
        mock_bulkclix.initiate_collection.assert_not_awaited()
        mock_store.create_payment_transaction.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_account_configuration_rejection(self, initiate_payload, mock_store, mock_bulkclix, tracker):
        mock_bulkclix.initiate_collection.return_value = rejected("MoMo collection not allowed from this IP")

        with pytest.raises(AccountConfigurationError) as exc_info:
            await PaymentService.initiate_payment(InitiatePaymentRequest(**initiate_payload), BASE_URL)

        assert exc_info.value.http_status_code == 403
        transaction_id = mock_store.create_payment_transaction.call_args.args[0]["transaction_id"]
        mock_store.update_payment_transaction.assert_awaited_once_with(
            transaction_id,
            {
                "status": "failed",
                "failure_reason": "MoMo collection not allowed from this IP",
                "idempotency_key": None,
            },
        )
        assert tracker.get(transaction_id).status == "failed"

    @pytest.mark.asyncio
    async def test_generic_rejection(self, initiate_payload, mock_store, mock_bulkclix, tracker):
        mock_bulkclix.initiate_collection.return_value = rejected("Invalid account number")

        with pytest.raises(PaymentRejectedError) as exc_info:
            await PaymentService.initiate_payment(InitiatePaymentRequest(**initiate_payload), BASE_URL)

        assert exc_info.value.message == "Invalid account number"

    @pytest.mark.asyncio
    async def test_rejection_reported_even_if_failure_not_persisted(
        self, initiate_payload, mock_store, mock_bulkclix, tracker
    ):
        mock_bulkclix.initiate_collection.return_value = rejected("Invalid account number")
        mock_store.update_payment_transaction.side_effect = DatabaseError("down")

        with pytest.raises(PaymentRejectedError):
            await PaymentService.initiate_payment(InitiatePaymentRequest(**initiate_payload), BASE_URL)

    @pytest.mark.asyncio
    async def test_unreachable_aggregator(self, initiate_payload, mock_store, mock_bulkclix, tracker):
        mock_bulkclix.initiate_collection.side_effect = UpstreamServiceError(
            "Payment provider unreachable", service="bulkclix.initiate_collection"
        )

        with pytest.raises(UpstreamServiceError):
            await PaymentService.initiate_payment(InitiatePaymentRequest(**initiate_payload), BASE_URL)

        transaction_id = mock_store.create_payment_transaction.call_args.args[0]["transaction_id"]
        assert tracker.get(transaction_id).status == "failed"
        assert mock_store.update_payment_transaction.call_args.args[1]["status"] == "failed"

    @pytest.mark.asyncio
    async def test_store_failure_stops_before_aggregator(self, initiate_payload, mock_store, mock_bulkclix, tracker):
        mock_store.create_payment_transaction.side_effect = DatabaseError("insert failed")

        with pytest.raises(DatabaseError):
            await PaymentService.initiate_payment(InitiatePaymentRequest(**initiate_payload), BASE_URL)

        mock_bulkclix.initiate_collection.assert_not_awaited()
        assert len(tracker) == 0

    @pytest.mark.asyncio
    async def test_retry_reuses_failed_transaction(self, initiate_payload, mock_store, mock_bulkclix, tracker):
        mock_bulkclix.initiate_collection.return_value = accepted()
        mock_store.create_payment_transaction.side_effect = DUPLICATE
        mock_store.reset_failed_transaction.return_value = True
        initiate_payload["reference"] = "PRELYCT-order-77-1700000000000"

        result = await PaymentService.initiate_payment(InitiatePaymentRequest(**initiate_payload), BASE_URL)

        assert result.transaction_id == "order-77"
        assert result.message == "Payment initiated successfully"
        transaction_id, fields = mock_store.reset_failed_transaction.call_args.args
        assert transaction_id == "order-77"
        assert fields["idempotency_key"] == "dash-ref-001"
        mock_bulkclix.initiate_collection.assert_awaited_once()
        assert tracker.get("order-77").status == "pending"

    @pytest.mark.asyncio
    async def test_concurrent_initiation_replays_winner(self, initiate_payload, mock_store, mock_bulkclix, tracker):
        winner = make_transaction(provider_transaction_id=PROVIDER_TRANSACTION_ID)
        mock_store.find_by_client_reference.side_effect = [None, winner]
        mock_store.create_payment_transaction.side_effect = DUPLICATE

        result = await PaymentService.initiate_payment(InitiatePaymentRequest(**initiate_payload), BASE_URL)

        assert result.transaction_id == TRANSACTION_ID
        assert result.message == "Payment was previously initiated"
        mock_store.reset_failed_transaction.assert_not_awaited()
        mock_bulkclix.initiate_collection.assert_not_awaited()
        assert len(tracker) == 0

    @pytest.mark.asyncio
    async def test_live_transaction_with_same_id_is_replayed(
        self, initiate_payload, mock_store, mock_bulkclix, tracker
    ):
        mock_store.create_payment_transaction.side_effect = DUPLICATE
        mock_store.get_payment_transaction.return_value = make_transaction(transaction_id="order-77")
        initiate_payload["reference"] = "PRELYCT-order-77-1700000000000"

        result = await PaymentService.initiate_payment(InitiatePaymentRequest(**initiate_payload), BASE_URL)

        assert result.transaction_id == "order-77"
        assert result.data["status"] == "pending"
        mock_bulkclix.initiate_collection.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_other_insert_failures_propagate(self, initiate_payload, mock_store, mock_bulkclix, tracker):
        mock_store.create_payment_transaction.side_effect = DatabaseError(
            "Failed to create transaction", operation="insert_transaction"
        )

        with pytest.raises(DatabaseError):
            await PaymentService.initiate_payment(InitiatePaymentRequest(**initiate_payload), BASE_URL)

        mock_store.find_by_client_reference.assert_awaited_once()
        mock_store.reset_failed_transaction.assert_not_awaited()


class TestProcessWebhook:
    @pytest.mark.asyncio
    async def test_success_callback_completes_transaction(
        self, webhook_payload, pending_transaction, mock_store, mock_notifications, tracker
    ):
        mock_store.get_payment_transaction.return_value = pending_transaction
        tracker.initialize({"transaction_id": TRANSACTION_ID, "customer_email": "ama@example.com"})
        tasks = BackgroundTasks()

        ack = await PaymentService.process_webhook(webhook_payload, tasks)

        assert ack.received is True
        assert ack.transaction_id == TRANSACTION_ID
        assert ack.status == "completed"

        transaction_id, fields = mock_store.update_unsettled_transaction.call_args.args
        assert transaction_id == TRANSACTION_ID
        assert fields["status"] == "completed"
        assert fields["provider_transaction_id"] == PROVIDER_TRANSACTION_ID
        assert fields["metadata.bulkclix_status"] == "success"
        assert fields["metadata.phone_number"] == "0241234567"
        assert "metadata.webhook_received_at" in fields
        assert "metadata" not in fields
        assert "idempotency_key" not in fields

        record = tracker.get(TRANSACTION_ID)
        assert record.status == "success"
        assert record.webhook_received is True
        assert record.provider_transaction_id == PROVIDER_TRANSACTION_ID

        election_id, election_fields = mock_store.update_election.call_args.args
        assert election_id == "election_42"
        assert election_fields["payment_status"] == "paid"
        assert election_fields["payment_intent_id"] == PROVIDER_TRANSACTION_ID

        assert len(tasks.tasks) == 1
        assert tasks.tasks[0].func == mock_notifications.notify_payment_completed
        assert tasks.tasks[0].args[1] == "Student Council 2026"

    @pytest.mark.asyncio
    async def test_replayed_callback_changes_nothing(self, webhook_payload, mock_store, tracker):
        mock_store.get_payment_transaction.return_value = make_transaction(status="completed")

        ack = await PaymentService.process_webhook(webhook_payload, BackgroundTasks())

        assert ack.status == "completed"
        mock_store.update_unsettled_transaction.assert_not_awaited()
        mock_store.update_election.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_terminal_status_is_sticky(self, mock_store, tracker):
        mock_store.get_payment_transaction.return_value = make_transaction(status="completed")
        payload = BulkClixWebhookPayload(**create_webhook_payload(status="failed"))

        ack = await PaymentService.process_webhook(payload)

        assert ack.status == "completed"
        mock_store.update_unsettled_transaction.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reported", ["success", "failed", "pending"])
    async def test_refunded_transaction_is_acknowledged(self, reported, mock_store, tracker):
        mock_store.get_payment_transaction.return_value = make_transaction(status="refunded")
        payload = BulkClixWebhookPayload(**create_webhook_payload(status=reported))

        ack = await PaymentService.process_webhook(payload, BackgroundTasks())

        assert ack.received is True
        assert ack.status == "failed"
        mock_store.update_unsettled_transaction.assert_not_awaited()
        mock_store.update_election.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_overlapping_delivery_has_no_side_effects(
        self, webhook_payload, mock_store, mock_notifications, tracker
    ):
        # Both deliveries read `pending`; the other one wrote first
        mock_store.get_payment_transaction.side_effect = [
            make_transaction(),
            make_transaction(status="completed"),
        ]
        mock_store.update_unsettled_transaction.return_value = False
        tracker.initialize({"transaction_id": TRANSACTION_ID})
        tasks = BackgroundTasks()

        ack = await PaymentService.process_webhook(webhook_payload, tasks)

        assert ack.status == "completed"
        mock_store.update_unsettled_transaction.assert_awaited_once()
        mock_store.update_election.assert_not_awaited()
        assert tasks.tasks == []
        assert tracker.get(TRANSACTION_ID).webhook_received is False

    @pytest.mark.asyncio
    async def test_overlapping_contradictory_delivery_reports_winner(self, mock_store, tracker):
        mock_store.get_payment_transaction.side_effect = [
            make_transaction(),
            make_transaction(status="completed"),
        ]
        mock_store.update_unsettled_transaction.return_value = False
        payload = BulkClixWebhookPayload(**create_webhook_payload(status="failed"))

        ack = await PaymentService.process_webhook(payload)

        assert ack.status == "completed"

    @pytest.mark.asyncio
    async def test_failed_callback(self, pending_transaction, mock_store, tracker):
        mock_store.get_payment_transaction.return_value = pending_transaction
        tracker.initialize({"transaction_id": TRANSACTION_ID})
        payload = BulkClixWebhookPayload(**create_webhook_payload(status="FAILED"))
        tasks = BackgroundTasks()

        ack = await PaymentService.process_webhook(payload, tasks)

        assert ack.status == "failed"
        assert mock_store.update_unsettled_transaction.call_args.args[1]["status"] == "failed"
        assert mock_store.update_unsettled_transaction.call_args.args[1]["idempotency_key"] is None
        assert tracker.get(TRANSACTION_ID).status == "failed"
        mock_store.update_election.assert_not_awaited()
        assert tasks.tasks == []

    @pytest.mark.asyncio
    async def test_unknown_status_stays_pending(self, pending_transaction, mock_store, tracker):
        mock_store.get_payment_transaction.return_value = pending_transaction
        payload = BulkClixWebhookPayload(**create_webhook_payload(status="queued"))

        ack = await PaymentService.process_webhook(payload)

        assert ack.status == "pending"
        assert mock_store.update_unsettled_transaction.call_args.args[1]["status"] == "pending"

    @pytest.mark.asyncio
    async def test_unknown_transaction_is_acknowledged(self, webhook_payload, mock_store, tracker):
        ack = await PaymentService.process_webhook(webhook_payload)

        assert ack.received is True
        assert ack.transaction_id == TRANSACTION_ID
        mock_store.update_unsettled_transaction.assert_not_awaited()
        assert tracker.get(TRANSACTION_ID) is None

    @pytest.mark.asyncio
    async def test_legacy_reference_is_resolved(self, mock_store, tracker):
        payload = BulkClixWebhookPayload(
            **create_webhook_payload(ext_transaction_id=f"PRELYCT-{TRANSACTION_ID}-1700000000000")
        )

        await PaymentService.process_webhook(payload)

        mock_store.get_payment_transaction.assert_awaited_once_with(TRANSACTION_ID)

    @pytest.mark.asyncio
    async def test_unresolvable_reference_uses_provider_id(self, mock_store, tracker):
        mock_store.find_by_provider_transaction_id.return_value = make_transaction(
            provider_transaction_id=PROVIDER_TRANSACTION_ID
        )
        payload = BulkClixWebhookPayload(**create_webhook_payload(ext_transaction_id="random-string"))

        ack = await PaymentService.process_webhook(payload)

        assert ack.transaction_id == PROVIDER_TRANSACTION_ID
        mock_store.get_payment_transaction.assert_not_awaited()
        mock_store.find_by_provider_transaction_id.assert_awaited_once_with(PROVIDER_TRANSACTION_ID)
        assert mock_store.update_unsettled_transaction.call_args.args[0] == TRANSACTION_ID

    @pytest.mark.asyncio
    async def test_no_identifiers_is_malformed(self, mock_store, tracker):
        payload = BulkClixWebhookPayload(status="success", ext_transaction_id="random-string")

        with pytest.raises(MalformedWebhookError):
            await PaymentService.process_webhook(payload)

        mock_store.get_payment_transaction.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_notification_uses_durable_record_when_tracker_misses(
        self, webhook_payload, pending_transaction, mock_store, mock_notifications, tracker
    ):
        mock_store.get_payment_transaction.return_value = pending_transaction
        tasks = BackgroundTasks()

        await PaymentService.process_webhook(webhook_payload, tasks)

        assert tracker.get(TRANSACTION_ID) is None
        record = tasks.tasks[0].args[0]
        assert record.transaction_id == TRANSACTION_ID
        assert record.customer_email == "ama@example.com"
        assert record.status == "success"

    @pytest.mark.asyncio
    async def test_missing_election_does_not_fail_webhook(
        self, webhook_payload, pending_transaction, mock_store, mock_notifications, tracker
    ):
        mock_store.get_payment_transaction.return_value = pending_transaction
        mock_store.update_election.side_effect = NotFoundError("Election", "election_42")
        tasks = BackgroundTasks()

        ack = await PaymentService.process_webhook(webhook_payload, tasks)

        assert ack.status == "completed"
        assert tasks.tasks[0].args[1] is None

    @pytest.mark.asyncio
    async def test_transaction_without_election(self, webhook_payload, mock_store, mock_notifications, tracker):
        mock_store.get_payment_transaction.return_value = make_transaction(election_id=None)

        await PaymentService.process_webhook(webhook_payload, BackgroundTasks())

        mock_store.update_election.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_store_failure_propagates(self, webhook_payload, pending_transaction, mock_store, tracker):
        mock_store.get_payment_transaction.return_value = pending_transaction
        mock_store.update_unsettled_transaction.side_effect = DatabaseError("write failed")

        with pytest.raises(DatabaseError):
            await PaymentService.process_webhook(webhook_payload)


class TestGetPaymentStatus:
    @pytest.mark.asyncio
    async def test_completed_in_database(self, mock_store, mock_bulkclix, tracker):
        mock_store.get_payment_transaction.return_value = make_transaction(status="completed")

        result = await PaymentService.get_payment_status(TRANSACTION_ID)

        assert result.status == "success"
        assert result.source == "database"
        assert result.amount == "25.00"
        mock_bulkclix.query_transaction_status.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("durable_status", ["failed", "refunded"])
    async def test_failed_in_database(self, durable_status, mock_store, mock_bulkclix, tracker):
        mock_store.get_payment_transaction.return_value = make_transaction(status=durable_status)

        result = await PaymentService.get_payment_status(TRANSACTION_ID)

        assert result.status == "failed"
        assert result.source == "database"
        mock_bulkclix.query_transaction_status.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_database_beats_tracker(self, mock_store, mock_bulkclix, tracker):
        tracker.initialize({"transaction_id": TRANSACTION_ID, "status": "pending"})
        mock_store.get_payment_transaction.return_value = make_transaction(status="completed")

        result = await PaymentService.get_payment_status(TRANSACTION_ID)

        assert result.status == "success"

    @pytest.mark.asyncio
    async def test_pending_in_database_asks_aggregator(self, mock_store, mock_bulkclix, tracker):
        mock_store.get_payment_transaction.return_value = make_transaction(
            provider_transaction_id=PROVIDER_TRANSACTION_ID
        )
        tracker.initialize({"transaction_id": TRANSACTION_ID})
        mock_bulkclix.query_transaction_status.return_value = AggregatorStatus(
            transaction_id=PROVIDER_TRANSACTION_ID, status="successful", amount=Decimal("25.00")
        )

        result = await PaymentService.get_payment_status(TRANSACTION_ID)

        mock_bulkclix.query_transaction_status.assert_awaited_once_with(PROVIDER_TRANSACTION_ID)
        assert result.status == "success"
        assert result.source == "api"
        assert result.amount == "25.00"
        assert tracker.get(TRANSACTION_ID).status == "success"

    @pytest.mark.asyncio
    async def test_tracker_provider_id_used_when_not_persisted(self, mock_store, mock_bulkclix, tracker):
        tracker.initialize({"transaction_id": TRANSACTION_ID, "provider_transaction_id": "BCX-TRACKED"})

        await PaymentService.get_payment_status(TRANSACTION_ID)

        mock_bulkclix.query_transaction_status.assert_awaited_once_with("BCX-TRACKED")

    @pytest.mark.asyncio
    async def test_unknown_everywhere_is_pending(self, mock_store, mock_bulkclix, tracker):
        result = await PaymentService.get_payment_status(TRANSACTION_ID)

        mock_bulkclix.query_transaction_status.assert_awaited_once_with(TRANSACTION_ID)
        assert result.status == "pending"
        assert result.source == "default"
        assert result.message == "Payment is being processed"

    @pytest.mark.asyncio
    async def test_aggregator_failure_degrades_to_pending(self, mock_store, mock_bulkclix, tracker):
        mock_bulkclix.query_transaction_status.side_effect = UpstreamServiceError("unreachable")

        result = await PaymentService.get_payment_status(TRANSACTION_ID)

        assert result.status == "pending"
        assert result.source == "default"

    @pytest.mark.asyncio
    async def test_database_failure_falls_through_to_aggregator(self, mock_store, mock_bulkclix, tracker):
        mock_store.get_payment_transaction.side_effect = DatabaseError("down")
        mock_bulkclix.query_transaction_status.return_value = AggregatorStatus(
            transaction_id=PROVIDER_TRANSACTION_ID, status="failed"
        )

        result = await PaymentService.get_payment_status(TRANSACTION_ID)

        assert result.status == "failed"
        assert result.source == "api"
        assert result.amount is None

    @pytest.mark.asyncio
    async def test_aggregator_details_are_passed_through(self, mock_store, mock_bulkclix, tracker):
        mock_bulkclix.query_transaction_status.return_value = AggregatorStatus(
            transaction_id=PROVIDER_TRANSACTION_ID,
            status="pending",
            phone="0241234567",
            network="MTN",
            reference=TRANSACTION_ID,
        )

        result = await PaymentService.get_payment_status(TRANSACTION_ID)

        assert result.source == "api"
        assert result.phone_number == "0241234567"
        assert result.network == "MTN"
        assert result.ext_transaction_id == TRANSACTION_ID

    @pytest.mark.asyncio
    async def test_database_answer_has_no_aggregator_details(self, mock_store, mock_bulkclix, tracker):
        mock_store.get_payment_transaction.return_value = make_transaction(status="completed")

        result = await PaymentService.get_payment_status(TRANSACTION_ID)

        assert result.phone_number is None
        assert result.ext_transaction_id is None

    @pytest.mark.asyncio
    async def test_unusable_aggregator_answer_degrades_to_pending(self, mock_store, mock_bulkclix, tracker):
        def unusable(provider_transaction_id):
            return AggregatorStatus(transaction_id=provider_transaction_id, status="pending", amount="GHS 2.00")

        mock_bulkclix.query_transaction_status.side_effect = unusable

        result = await PaymentService.get_payment_status(TRANSACTION_ID)

        assert result.status == "pending"
        assert result.source == "default"
