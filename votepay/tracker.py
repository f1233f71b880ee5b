"""
Process-local transaction status tracker.

The tracker maps our transaction id to its reconciliation state while a
mobile-money collection is in flight. It is a per-process cache layered over
the MongoDB store and is never the system of record: it is lost on restart, and
with several server instances each one holds its own copy, so a webhook that
lands on instance A is invisible to instance B's tracker. Readers that miss
here must fall through to the durable store.

Every write replaces the whole record object under a lock, so concurrent
request handlers never observe a half-applied update.
"""

import asyncio
import logging
import threading
from contextlib import suppress
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Literal, Optional

from pydantic import BaseModel, Field

from votepay.core.monitoring import error_monitor

logger = logging.getLogger(__name__)

TrackerStatus = Literal["pending", "success", "failed"]

DEFAULT_RETENTION = timedelta(hours=24)
DEFAULT_SWEEP_INTERVAL_SECONDS = 3600


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TransactionRecord(BaseModel):
    """Reconciliation state of one collection attempt."""

    transaction_id: str
    status: TrackerStatus = "pending"
    amount_local: Optional[Decimal] = None
    amount_usd: Optional[Decimal] = None
    phone_number: Optional[str] = None
    network: Optional[str] = None
    provider_transaction_id: Optional[str] = None
    status_message: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    election_id: Optional[str] = None
    webhook_received: bool = False
    updated_at: datetime = Field(default_factory=_utc_now)


class TransactionTracker:
    """Thread-safe in-memory map of transaction id to TransactionRecord."""

    def __init__(
        self,
        retention: timedelta = DEFAULT_RETENTION,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.retention = retention
        self._clock = clock
        self._records: Dict[str, TransactionRecord] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._records)

    def initialize(self, data: Dict[str, Any]) -> TransactionRecord:
        """
        Insert or replace the record for `data["transaction_id"]`.

        Re-initializing an existing id overwrites it wholesale; nothing from
        the previous record is kept.
        """
        fields = {k: v for k, v in data.items() if k != "updated_at"}
        record = TransactionRecord(**fields, updated_at=self._clock())

        with self._lock:
            self._records[record.transaction_id] = record

        logger.info(f"Tracker initialized transaction {record.transaction_id}")
        return record

    def get(self, transaction_id: str) -> Optional[TransactionRecord]:
        """Return the record, or None when this process has never seen the id."""
        return self._records.get(transaction_id)

    def update(self, transaction_id: str, updates: Dict[str, Any]) -> Optional[TransactionRecord]:
        """
        Merge `updates` into an existing record.

        An unknown id is not an error: callbacks can race past the sweep or
        arrive for ids another instance initiated. Nothing is created.
        """
        changes = {
            k: v for k, v in updates.items()
            if k not in ("transaction_id", "updated_at")
        }

        with self._lock:
            existing = self._records.get(transaction_id)
            if existing is None:
                logger.warning(f"Tracker has no transaction {transaction_id}; update skipped")
                return None

            now = self._clock()
            merged = existing.model_dump()
            merged.update(changes)
            # A clock that steps backwards must not move updated_at back
            merged["updated_at"] = max(now, existing.updated_at)
            record = TransactionRecord(**merged)
            self._records[transaction_id] = record

        logger.info(
            f"Tracker updated transaction {transaction_id} -> {record.status}"
        )
        return record

    def sweep(self) -> int:
        """Drop every record last touched more than `retention` ago, whatever its status."""
        cutoff = self._clock() - self.retention

        with self._lock:
            expired = [
                transaction_id
                for transaction_id, record in self._records.items()
                if record.updated_at < cutoff
            ]
            for transaction_id in expired:
                del self._records[transaction_id]

        if expired:
            logger.info(f"Tracker swept {len(expired)} expired transactions")
        return len(expired)


class TrackerSweeper:
    """
    Runs `tracker.sweep()` on a fixed interval.

    Started once from the application lifespan and stopped at shutdown.
    """

    def __init__(self, tracker: TransactionTracker, interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS):
        self.tracker = tracker
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info(f"Tracker sweeper started (interval={self.interval_seconds}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Tracker sweeper stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                self.tracker.sweep()
            except Exception as e:
                error_monitor.log_error(e, {"context": "tracker_sweep"})


# Process-wide tracker shared by the payment handlers
transaction_tracker = TransactionTracker()
