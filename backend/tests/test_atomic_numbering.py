"""
Reference code allocation tests: format, concurrency, letter rollover
"""
import asyncio
from datetime import datetime

import pytest

from billing_engine.atomic_numbering import (
    AllocationFailed,
    SequenceAllocator,
    SequenceExhausted,
    date_key_for,
    format_reference_code,
    parse_reference_code,
)
from billing_engine.financial_precision import ValidationError


class TestReferenceCodes:
    """Formatting and parsing"""

    def test_format(self):
        assert format_reference_code("QT", "250627", "A", 1) == "QT250627-A-000001"

    def test_parse(self):
        code = parse_reference_code("IN250627-C-000123")
        assert code.prefix == "IN"
        assert code.date_key == "250627"
        assert code.letter == "C"
        assert code.sequence == 123

    @pytest.mark.parametrize("code", ["", "IN250627-a-000001", "IN25062-A-000001", "IN250627-A-000000"])
    def test_parse_rejects_malformed(self, code):
        with pytest.raises(ValidationError):
            parse_reference_code(code)

    def test_date_key_is_yymmdd(self):
        assert date_key_for(datetime(2025, 6, 27, 23, 59)) == "250627"


class TestSequenceAllocator:
    """Atomic counter behaviour against the sequences collection"""

    async def test_first_code_of_the_day(self, db):
        allocator = SequenceAllocator(db)
        assert await allocator.allocate("quotation", "250627") == "QT250627-A-000001"
        assert await allocator.allocate("quotation", "250627") == "QT250627-A-000002"

    async def test_counters_are_per_type_and_day(self, db):
        allocator = SequenceAllocator(db)
        await allocator.allocate("invoice", "250627")
        assert await allocator.allocate("invoice", "250628") == "IN250628-A-000001"
        assert await allocator.allocate("purchase_order", "250627") == "PO250627-A-000001"

    async def test_counter_only_prefixes(self, db):
        allocator = SequenceAllocator(db)
        assert await allocator.allocate("adjustment", "250627") == "AD250627-A-000001"

    async def test_defaults_to_today(self, db):
        code = await SequenceAllocator(db).allocate("amc_invoice")
        assert code.startswith(f"AI{date_key_for()}-A-")

    async def test_unknown_type_rejected(self, db):
        with pytest.raises(ValidationError):
            await SequenceAllocator(db).allocate("receipt", "250627")

    async def test_concurrent_allocations_are_distinct_and_gapless(self, db):
        allocator = SequenceAllocator(db)

        codes = await asyncio.gather(*[allocator.allocate("invoice", "250627") for _ in range(20)])

        assert len(set(codes)) == 20
        sequences = sorted(parse_reference_code(c).sequence for c in codes)
        assert sequences == list(range(1, 21))

    async def test_letter_rollover(self, db):
        await db.document_sequences.insert_one(
            {"type": "invoice", "date_key": "250627", "letter": "A", "sequence": 999995}
        )
        allocator = SequenceAllocator(db)

        codes = [await allocator.allocate("invoice", "250627") for _ in range(5)]

        assert codes == [
            "IN250627-A-999996",
            "IN250627-A-999997",
            "IN250627-A-999998",
            "IN250627-A-999999",
            "IN250627-B-000001",
        ]

    async def test_full_letter_counter_is_not_incremented(self, db):
        await db.document_sequences.insert_one(
            {"type": "invoice", "date_key": "250627", "letter": "A", "sequence": 999999}
        )
        allocator = SequenceAllocator(db)

        assert await allocator._increment("invoice", "250627", "A") is None
        counter = await db.document_sequences.find_one({"letter": "A"})
        assert counter["sequence"] == 999999
        assert await db.document_sequences.count_documents({}) == 1

        assert await allocator.allocate("invoice", "250627") == "IN250627-B-000001"

    async def test_exhausted_after_z(self, db):
        await db.document_sequences.insert_one(
            {"type": "invoice", "date_key": "250627", "letter": "Z", "sequence": 999999}
        )
        with pytest.raises(SequenceExhausted):
            await SequenceAllocator(db).allocate("invoice", "250627")

    async def test_allocation_failed_after_retries(self, db, monkeypatch):
        allocator = SequenceAllocator(db)
        allocator.RETRY_DELAY_MS = 0

        async def always_collides(*args, **kwargs):
            return None

        monkeypatch.setattr(allocator, "_increment", always_collides)

        with pytest.raises(AllocationFailed):
            await allocator.allocate("invoice", "250627")
