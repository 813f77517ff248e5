"""
PAYMENT OPERATION IDEMPOTENCY

Payment callers may retry (gateway webhooks, a double-clicked "record
payment", a payer refreshing the link page). Each payment carries an
operation_id; the id is CLAIMED in payment_operation_logs before the ledger
is touched, so the unique index decides which caller applies it:

- first claim wins and applies the payment
- a later call for an applied id gets the stored response back
- a call while the first is still running gets OperationInProgress
- a payment the engine refused (BillingError) releases its claim so the
  caller can retry; any other failure keeps the claim, since the ledger may
  already have moved

Usage:
    async with IdempotentOperation(db, operation_id, "invoice", invoice_id) as op:
        if op.is_duplicate:
            return op.previous_response
        response = await apply_payment(...)
        await op.record_success(response)
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError
from datetime import datetime
from typing import Any, Dict, Optional
import logging
import uuid

from billing_engine.financial_precision import BillingError

logger = logging.getLogger(__name__)

COLLECTION = "payment_operation_logs"

CLAIMED = "claimed"
APPLIED = "applied"


class OperationInProgress(BillingError):
    """Raised when another caller holds the claim on the same operation_id"""
    def __init__(self, operation_id: str):
        self.operation_id = operation_id
        super().__init__(f"Payment operation {operation_id} is already being processed")


def replay_response(record: Dict[str, Any]) -> Dict[str, Any]:
    """The stored response of an applied operation, flagged as a replay."""
    response = dict(record.get("response") or {})
    applied_at = record.get("applied_at")
    response.update({
        "idempotent_replay": True,
        "operation_id": record["operation_id"],
        "original_timestamp": applied_at.isoformat() if applied_at else None,
    })
    return response


class IdempotentOperation:
    """Claim / replay / release around one payment application."""

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        operation_id: Optional[str],
        entity_type: str,
        entity_id,
        session=None
    ):
        self.log = db[COLLECTION]
        self.operation_id = operation_id or str(uuid.uuid4())
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        self.session = session
        self.is_duplicate = False
        self.previous_response: Optional[Dict[str, Any]] = None
        self._claimed = False
        self._applied = False

    async def __aenter__(self):
        try:
            await self.log.insert_one(
                {
                    "operation_id": self.operation_id,
                    "entity_type": self.entity_type,
                    "entity_id": self.entity_id,
                    "state": CLAIMED,
                    "claimed_at": datetime.utcnow(),
                },
                session=self.session
            )
            self._claimed = True
            return self
        except DuplicateKeyError:
            pass

        existing = await self.log.find_one({"operation_id": self.operation_id}, session=self.session)
        if existing and existing.get("state") == APPLIED:
            logger.info(
                f"[IDEMPOTENT] Replaying {self.operation_id} on "
                f"{existing.get('entity_type')}:{existing.get('entity_id')}"
            )
            self.is_duplicate = True
            self.previous_response = replay_response(existing)
            return self

        raise OperationInProgress(self.operation_id)

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if not self._claimed or self._applied:
            return False

        if exc_type is None or issubclass(exc_type, BillingError):
            # Refused before anything was written; free the id for a retry
            await self.log.delete_one(
                {"operation_id": self.operation_id, "state": CLAIMED}, session=self.session
            )
            if exc_type is not None:
                logger.info(f"[IDEMPOTENT] Released {self.operation_id} after {exc_type.__name__}")
        else:
            # The ledger may already hold this payment; keep the claim
            logger.error(
                f"[IDEMPOTENT] {self.operation_id} left claimed after {exc_type.__name__}: {exc_val}"
            )
        return False

    async def record_success(self, response: Optional[Dict[str, Any]] = None):
        """Mark the claimed operation applied and keep its response for replays."""
        if self.is_duplicate:
            return
        await self.log.update_one(
            {"operation_id": self.operation_id},
            {"$set": {"state": APPLIED, "response": response or {}, "applied_at": datetime.utcnow()}},
            session=self.session
        )
        self._applied = True
        logger.info(f"[IDEMPOTENT] Applied {self.operation_id} to {self.entity_type}:{self.entity_id}")
