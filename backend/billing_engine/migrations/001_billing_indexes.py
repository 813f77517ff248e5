"""
MIGRATION SCRIPT: Billing Indexes

Creates the indexes the billing engine's concurrency guarantees rest on:
1. document_sequences    unique (type, date_key, letter)
2. payment_tokens        unique token, expiry sweep
3. payment_operation_logs unique operation_id
4. per-collection lookups (document_number, po_number, overdue sweep)

Run: python -m billing_engine.migrations.001_billing_indexes
(or applied on server startup through billing_engine.migrations.run_migrations)
"""

import asyncio
import logging
import os
from datetime import datetime

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from dotenv import load_dotenv

from billing_engine.atomic_numbering import SequenceAllocator
from billing_engine.payment_links import PaymentLinkIssuer
from billing_engine.document_types import DOCUMENT_TYPES

logger = logging.getLogger(__name__)

MIGRATION_ID = "001_billing_indexes"


async def upgrade(db: AsyncIOMotorDatabase) -> dict:
    """Create all billing indexes. Safe to re-run."""
    indexes = []

    await SequenceAllocator(db).create_unique_constraints()
    indexes.append("unique_sequence_key")

    await PaymentLinkIssuer(db).create_unique_constraints()
    indexes.extend(["unique_payment_token", "idx_payment_token_document", "idx_payment_token_expiry"])

    await db.payment_operation_logs.create_index(
        [("operation_id", 1)],
        unique=True,
        name="idx_payment_operation_id_unique"
    )
    indexes.append("idx_payment_operation_id_unique")

    for config in DOCUMENT_TYPES.values():
        collection = db[config.collection]
        await collection.create_index(
            [("document_number", 1)],
            unique=True,
            name=f"idx_{config.collection}_number_unique"
        )
        await collection.create_index(
            [("po_number", 1), ("created_at", 1)],
            name=f"idx_{config.collection}_po_number"
        )
        indexes.extend([f"idx_{config.collection}_number_unique", f"idx_{config.collection}_po_number"])
        if config.supports_overdue:
            await collection.create_index(
                [("payment_status", 1), ("due_date", 1)],
                name=f"idx_{config.collection}_overdue"
            )
            indexes.append(f"idx_{config.collection}_overdue")

    await db.payments.create_index(
        [("document_type", 1), ("document_id", 1), ("created_at", 1)],
        name="idx_payments_document"
    )
    await db.background_jobs.create_index(
        [("status", 1), ("run_at", 1)],
        name="job_queue_lookup"
    )
    await db.audit_logs.create_index(
        [("entity_type", 1), ("entity_id", 1), ("timestamp", -1)],
        name="idx_audit_entity"
    )
    indexes.extend(["idx_payments_document", "job_queue_lookup", "idx_audit_entity"])

    migration_record = {
        "migration_id": MIGRATION_ID,
        "description": "Billing engine indexes",
        "indexes_created": indexes,
        "executed_at": datetime.utcnow(),
        "status": "success"
    }
    await db.migrations.update_one(
        {"migration_id": MIGRATION_ID},
        {"$set": migration_record},
        upsert=True
    )
    logger.info(f"[MIGRATION] {MIGRATION_ID}: {len(indexes)} indexes ensured")

    return {"status": "success", "indexes": len(indexes)}


async def main():
    load_dotenv()
    client = AsyncIOMotorClient(os.environ.get('MONGO_URL', 'mongodb://localhost:27017'))
    try:
        return await upgrade(client[os.environ.get('DB_NAME', 'billing')])
    finally:
        client.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    logger.info(f"[MIGRATION] {MIGRATION_ID} finished: {asyncio.run(main())}")
