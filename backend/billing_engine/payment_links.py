"""
PAYMENT LINK TOKENS

Lets an external payer resolve exactly one invoice without logging in.

- issue():              random 256-bit token, persisted with expires_at
- verify():             read-only peek (renders the payment page)
- verify_and_consume(): single findOneAndUpdate guarded by
                        is_used=False and expires_at > now, so two
                        concurrent payment callbacks cannot both succeed
- cleanup_expired():    periodic sweep
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
import logging
import secrets

from billing_engine.financial_precision import BillingError
from billing_engine.document_types import DocumentType

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(days=7)


class PaymentTokenError(BillingError):
    """Base class for payment-link failures. `public_reason` is safe to show a payer."""
    public_reason = "Invalid payment link"

    def __init__(self, token: str, message: Optional[str] = None):
        self.token = token
        super().__init__(message or self.public_reason)


class TokenNotFound(PaymentTokenError):
    public_reason = "Invalid payment link"


class TokenAlreadyUsed(PaymentTokenError):
    public_reason = "This payment link has already been used"


class TokenExpired(PaymentTokenError):
    public_reason = "This payment link has expired"


@dataclass(frozen=True)
class PaymentTokenGrant:
    token: str
    document_id: str
    document_type: str
    expires_at: datetime


def _grant(record: Dict[str, Any]) -> PaymentTokenGrant:
    return PaymentTokenGrant(
        token=record["token"],
        document_id=str(record["document_id"]),
        document_type=record.get("document_type", DocumentType.INVOICE),
        expires_at=record["expires_at"],
    )


class PaymentLinkIssuer:
    COLLECTION = "payment_tokens"
    TOKEN_BYTES = 32

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db[self.COLLECTION]

    @classmethod
    def generate_secure_token(cls) -> str:
        return secrets.token_hex(cls.TOKEN_BYTES)

    async def issue(
        self,
        document_id: str,
        ttl: Optional[timedelta] = None,
        document_type: str = DocumentType.INVOICE,
        metadata: Optional[Dict[str, Any]] = None,
        session=None,
    ) -> str:
        """Create a single-use token for one document."""
        now = datetime.utcnow()
        token = self.generate_secure_token()
        await self.collection.insert_one(
            {
                "token": token,
                "document_id": str(document_id),
                "document_type": document_type,
                "expires_at": now + (ttl if ttl is not None else DEFAULT_TTL),
                "is_used": False,
                "used_at": None,
                "used_by": None,
                "metadata": metadata or {},
                "created_at": now,
            },
            session=session,
        )
        logger.info(f"[PAYMENT_LINK] Issued token for {document_type}:{document_id}")
        return token

    def _check(self, record: Optional[Dict[str, Any]], token: str, now: datetime) -> None:
        if not record:
            raise TokenNotFound(token)
        if record.get("is_used"):
            raise TokenAlreadyUsed(token)
        if record["expires_at"] <= now:
            raise TokenExpired(token)

    async def verify(self, token: str, session=None) -> PaymentTokenGrant:
        """Read-only check; does not consume."""
        record = await self.collection.find_one({"token": token}, session=session)
        self._check(record, token, datetime.utcnow())
        return _grant(record)

    async def verify_and_consume(self, token: str, used_by: Optional[str] = None, session=None) -> PaymentTokenGrant:
        """
        Consume a token exactly once.

        Raises TokenNotFound / TokenAlreadyUsed / TokenExpired.
        """
        now = datetime.utcnow()
        record = await self.collection.find_one_and_update(
            {"token": token, "is_used": False, "expires_at": {"$gt": now}},
            {"$set": {"is_used": True, "used_at": now, "used_by": used_by}},
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        if record:
            logger.info(f"[PAYMENT_LINK] Consumed token for {record.get('document_type')}:{record['document_id']}")
            return _grant(record)

        # Lost the guard: work out why for the caller
        existing = await self.collection.find_one({"token": token}, session=session)
        self._check(existing, token, now)
        # Record looked valid on re-read: a concurrent consumer won the guard
        raise TokenAlreadyUsed(token)

    async def cleanup_expired(self, session=None) -> int:
        """Delete expired tokens. Returns count removed."""
        result = await self.collection.delete_many(
            {"expires_at": {"$lt": datetime.utcnow()}}, session=session
        )
        if result.deleted_count:
            logger.info(f"[PAYMENT_LINK] Removed {result.deleted_count} expired tokens")
        return result.deleted_count or 0

    async def create_unique_constraints(self):
        await self.collection.create_index([("token", 1)], unique=True, name="unique_payment_token")
        await self.collection.create_index([("document_id", 1), ("is_used", 1)], name="idx_payment_token_document")
        await self.collection.create_index([("expires_at", 1)], name="idx_payment_token_expiry")
        logger.info("Created payment token indexes")
