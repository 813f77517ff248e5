"""
Payment link token tests: issue, verify, single-use consumption, expiry sweep
"""
import asyncio
import re
from datetime import timedelta

import pytest

from billing_engine.payment_links import (
    PaymentLinkIssuer,
    PaymentTokenGrant,
    TokenAlreadyUsed,
    TokenExpired,
    TokenNotFound,
)

DOCUMENT_ID = "665f1c2e9b1e8a0012345678"


class TestIssue:
    """Token generation"""

    async def test_token_is_256_bit_hex(self, db):
        token = await PaymentLinkIssuer(db).issue(DOCUMENT_ID)
        assert re.fullmatch(r"[0-9a-f]{64}", token)

    async def test_tokens_are_unique(self, db):
        issuer = PaymentLinkIssuer(db)
        tokens = {await issuer.issue(DOCUMENT_ID) for _ in range(10)}
        assert len(tokens) == 10

    async def test_token_record(self, db):
        issuer = PaymentLinkIssuer(db)
        token = await issuer.issue(DOCUMENT_ID, ttl=timedelta(days=2), metadata={"sent_to": "a@b.com"})

        record = await db.payment_tokens.find_one({"token": token})
        assert record["document_id"] == DOCUMENT_ID
        assert record["document_type"] == "invoice"
        assert record["is_used"] is False
        assert record["metadata"] == {"sent_to": "a@b.com"}
        assert record["expires_at"] - record["created_at"] == timedelta(days=2)


class TestVerify:
    """Read-only verification"""

    async def test_verify_does_not_consume(self, db):
        issuer = PaymentLinkIssuer(db)
        token = await issuer.issue(DOCUMENT_ID)

        grant = await issuer.verify(token)
        again = await issuer.verify(token)

        assert isinstance(grant, PaymentTokenGrant)
        assert grant.document_id == DOCUMENT_ID
        assert again.token == token

    async def test_unknown_token(self, db):
        with pytest.raises(TokenNotFound):
            await PaymentLinkIssuer(db).verify("0" * 64)

    async def test_expired_token(self, db):
        issuer = PaymentLinkIssuer(db)
        token = await issuer.issue(DOCUMENT_ID, ttl=timedelta(seconds=-1))
        with pytest.raises(TokenExpired) as exc:
            await issuer.verify(token)
        assert exc.value.public_reason == "This payment link has expired"


class TestVerifyAndConsume:
    """Single-use consumption"""

    async def test_consume_once(self, db):
        issuer = PaymentLinkIssuer(db)
        token = await issuer.issue(DOCUMENT_ID)

        grant = await issuer.verify_and_consume(token, used_by="payer@example.com")

        assert grant.document_id == DOCUMENT_ID
        record = await db.payment_tokens.find_one({"token": token})
        assert record["is_used"] is True
        assert record["used_by"] == "payer@example.com"
        assert record["used_at"] is not None

    async def test_second_consume_rejected(self, db):
        issuer = PaymentLinkIssuer(db)
        token = await issuer.issue(DOCUMENT_ID)
        await issuer.verify_and_consume(token)

        with pytest.raises(TokenAlreadyUsed):
            await issuer.verify_and_consume(token)
        with pytest.raises(TokenAlreadyUsed):
            await issuer.verify(token)

    async def test_expired_token_not_consumed(self, db):
        issuer = PaymentLinkIssuer(db)
        token = await issuer.issue(DOCUMENT_ID, ttl=timedelta(seconds=-1))

        with pytest.raises(TokenExpired):
            await issuer.verify_and_consume(token)

        record = await db.payment_tokens.find_one({"token": token})
        assert record["is_used"] is False

    async def test_unknown_token(self, db):
        with pytest.raises(TokenNotFound):
            await PaymentLinkIssuer(db).verify_and_consume("f" * 64)

    async def test_concurrent_consumers_only_one_wins(self, db):
        issuer = PaymentLinkIssuer(db)
        token = await issuer.issue(DOCUMENT_ID)

        outcomes = await asyncio.gather(
            *[issuer.verify_and_consume(token) for _ in range(5)],
            return_exceptions=True,
        )

        grants = [o for o in outcomes if isinstance(o, PaymentTokenGrant)]
        failures = [o for o in outcomes if isinstance(o, TokenAlreadyUsed)]
        assert len(grants) == 1
        assert len(failures) == 4


class TestCleanup:
    """Expired token sweep"""

    async def test_only_expired_tokens_removed(self, db):
        issuer = PaymentLinkIssuer(db)
        live = await issuer.issue(DOCUMENT_ID)
        await issuer.issue(DOCUMENT_ID, ttl=timedelta(seconds=-5))
        await issuer.issue(DOCUMENT_ID, ttl=timedelta(days=-1))

        removed = await issuer.cleanup_expired()

        assert removed == 2
        assert await db.payment_tokens.count_documents({}) == 1
        assert (await issuer.verify(live)).token == live

    async def test_nothing_to_remove(self, db):
        assert await PaymentLinkIssuer(db).cleanup_expired() == 0
