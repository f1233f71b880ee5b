"""
Durable store operations for payment transactions and elections.

Thin layer over the Beanie documents. Driver failures are logged and wrapped
in DatabaseError without leaking the raw message; a missing document on update
raises NotFoundError.
"""

import logging
from typing import Any, Dict, Optional

from pymongo.errors import DuplicateKeyError

from votepay.models import PaymentTransaction, Election, TERMINAL_STATUSES, utc_now
from votepay.core.exceptions import DatabaseError, NotFoundError

logger = logging.getLogger(__name__)


class PaymentStore:
    """Persistence operations used by the payment handlers"""

    @staticmethod
    async def get_payment_transaction(transaction_id: str) -> Optional[PaymentTransaction]:
        try:
            return await PaymentTransaction.find_one({"transaction_id": transaction_id})
        except Exception:
            logger.error(f"Database error reading transaction {transaction_id}", exc_info=True)
            raise DatabaseError("Failed to retrieve transaction", operation="find_transaction")

    @staticmethod
    async def find_by_provider_transaction_id(provider_transaction_id: str) -> Optional[PaymentTransaction]:
        try:
            return await PaymentTransaction.find_one(
                {"provider_transaction_id": provider_transaction_id}
            )
        except Exception:
            logger.error(
                f"Database error reading provider transaction {provider_transaction_id}",
                exc_info=True,
            )
            raise DatabaseError(
                "Failed to retrieve transaction",
                operation="find_transaction_by_provider_id",
            )

    @staticmethod
    async def find_by_client_reference(client_reference: str) -> Optional[PaymentTransaction]:
        """A live (not failed) transaction started with this idempotency reference"""
        try:
            return await PaymentTransaction.find_one({"idempotency_key": client_reference})
        except Exception:
            logger.error(
                f"Database error reading client reference {client_reference}",
                exc_info=True,
            )
            raise DatabaseError(
                "Failed to retrieve transaction",
                operation="find_transaction_by_client_reference",
            )

    @staticmethod
    async def create_payment_transaction(fields: Dict[str, Any]) -> PaymentTransaction:
        """
        Insert a new transaction in `pending` state.

        Raises:
            DatabaseError: If the insert fails or the transaction id already exists
        """
        transaction = PaymentTransaction(**{**fields, "status": "pending"})

        try:
            await transaction.insert()
        except DuplicateKeyError:
            logger.warning(f"Transaction {fields.get('transaction_id')} already exists")
            raise DatabaseError(
                "Transaction already exists",
                operation="insert_transaction",
                database_error="duplicate_key",
            )
        except Exception:
            logger.error(
                f"Database error creating transaction {fields.get('transaction_id')}",
                exc_info=True,
            )
            raise DatabaseError("Failed to create transaction", operation="insert_transaction")

        logger.info(f"Created pending transaction {transaction.transaction_id}")
        return transaction

    @staticmethod
    async def update_payment_transaction(transaction_id: str, fields: Dict[str, Any]) -> PaymentTransaction:
        """
        Merge `fields` into the stored transaction and refresh `updated_at`.

        Raises:
            NotFoundError: If no transaction has this id
            DatabaseError: If database operations fail
        """
        transaction = await PaymentStore.get_payment_transaction(transaction_id)
        if transaction is None:
            raise NotFoundError("Transaction", transaction_id)

        try:
            await transaction.set({**fields, "updated_at": utc_now()})
        except Exception:
            logger.error(f"Database error updating transaction {transaction_id}", exc_info=True)
            raise DatabaseError("Failed to update transaction", operation="update_transaction")

        return transaction

    @staticmethod
    async def update_unsettled_transaction(transaction_id: str, fields: Dict[str, Any]) -> bool:
        """
        Apply `fields` only while the transaction is not in a terminal state.

        The status check and the write are one MongoDB operation, so of two
        overlapping callbacks exactly one settles the transaction.

        Returns:
            True if a document was updated, False if it was missing or already settled

        Raises:
            DatabaseError: If database operations fail
        """
        try:
            result = await PaymentTransaction.find_one(
                {"transaction_id": transaction_id, "status": {"$nin": sorted(TERMINAL_STATUSES)}}
            ).update({"$set": {**fields, "updated_at": utc_now()}})
        except Exception:
            logger.error(f"Database error settling transaction {transaction_id}", exc_info=True)
            raise DatabaseError("Failed to update transaction", operation="update_unsettled_transaction")

        return result.matched_count > 0

    @staticmethod
    async def reset_failed_transaction(transaction_id: str, fields: Dict[str, Any]) -> bool:
        """
        Reuse a failed transaction for a new attempt, back in `pending`.

        Returns:
            True if a failed transaction with this id was reset

        Raises:
            DatabaseError: If the write fails or the idempotency key is already live
        """
        changes = {
            **fields,
            "status": "pending",
            "failure_reason": None,
            "provider_transaction_id": None,
            "updated_at": utc_now(),
        }

        try:
            result = await PaymentTransaction.find_one(
                {"transaction_id": transaction_id, "status": "failed"}
            ).update({"$set": changes})
        except DuplicateKeyError:
            logger.warning(f"Client reference for {transaction_id} is already live")
            raise DatabaseError(
                "Transaction already exists",
                operation="reset_failed_transaction",
                database_error="duplicate_key",
            )
        except Exception:
            logger.error(f"Database error resetting transaction {transaction_id}", exc_info=True)
            raise DatabaseError("Failed to update transaction", operation="reset_failed_transaction")

        return result.matched_count > 0

    @staticmethod
    async def get_election(election_id: str) -> Optional[Election]:
        try:
            return await Election.find_one({"election_id": election_id})
        except Exception:
            logger.error(f"Database error reading election {election_id}", exc_info=True)
            raise DatabaseError("Failed to retrieve election", operation="find_election")

    @staticmethod
    async def update_election(election_id: str, fields: Dict[str, Any]) -> Election:
        """
        Raises:
            NotFoundError: If no election has this id
            DatabaseError: If database operations fail
        """
        election = await PaymentStore.get_election(election_id)
        if election is None:
            raise NotFoundError("Election", election_id)

        try:
            await election.set({**fields, "updated_at": utc_now()})
        except Exception:
            logger.error(f"Database error updating election {election_id}", exc_info=True)
            raise DatabaseError("Failed to update election", operation="update_election")

        return election
