"""
BILLING ENGINE - ATOMIC DOCUMENT NUMBERING

Reference codes: {prefix}{YYMMDD}-{letter}-{sequence:06d}
e.g. QT250627-A-000123

Provides:
1. findOneAndUpdate + $inc upsert per (type, date_key, letter) counter
2. Letter rollover A -> Z when a letter reaches 999,999
3. Unique (type, date_key, letter) constraint
4. Bounded retry on upsert collisions
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError
from datetime import datetime
from typing import Optional, NamedTuple
import asyncio
import logging
import re
import string

from billing_engine.document_types import SEQUENCE_PREFIXES
from billing_engine.financial_precision import BillingError, ValidationError

logger = logging.getLogger(__name__)

MAX_SEQUENCE = 999_999
LETTERS = string.ascii_uppercase

REFERENCE_CODE_PATTERN = re.compile(r"^([A-Z]{2})(\d{6})-([A-Z])-(\d{6})$")


class SequenceError(BillingError):
    """Base class for allocation failures"""
    pass


class SequenceExhausted(SequenceError):
    """Raised when every letter A-Z is used up for the day"""
    def __init__(self, document_type: str, date_key: str):
        self.document_type = document_type
        self.date_key = date_key
        super().__init__(f"Letter sequence exhausted for {document_type} on {date_key}")


class AllocationFailed(SequenceError):
    """Raised when the counter could not be incremented after max retries"""
    pass


class ReferenceCode(NamedTuple):
    prefix: str
    date_key: str
    letter: str
    sequence: int


def date_key_for(moment: Optional[datetime] = None) -> str:
    """UTC date as YYMMDD"""
    return (moment or datetime.utcnow()).strftime("%y%m%d")


def format_reference_code(prefix: str, date_key: str, letter: str, sequence: int) -> str:
    return f"{prefix}{date_key}-{letter}-{sequence:06d}"


def parse_reference_code(code: str) -> ReferenceCode:
    match = REFERENCE_CODE_PATTERN.match(code or "")
    if not match:
        raise ValidationError.single("reference_code", f"Malformed reference code: {code!r}")
    prefix, date_key, letter, sequence = match.groups()
    sequence = int(sequence)
    if not 1 <= sequence <= MAX_SEQUENCE:
        raise ValidationError.single("reference_code", f"Sequence out of range: {code!r}")
    return ReferenceCode(prefix, date_key, letter, sequence)


class SequenceAllocator:
    """
    Atomic reference-code generator with collision protection.

    The increment itself is a single findOneAndUpdate with $inc, so it is
    linearizable per counter across processes. Collisions only occur when
    two writers race to create the same letter's counter (unique index
    rejects one) and are retried.
    """

    COLLECTION = "document_sequences"
    MAX_RETRIES = 5
    RETRY_DELAY_MS = 20  # Base delay in milliseconds

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db[self.COLLECTION]

    def prefix_for(self, document_type: str) -> str:
        prefix = SEQUENCE_PREFIXES.get(document_type)
        if prefix is None:
            raise ValidationError.single(
                "document_type",
                f"No reference prefix for '{document_type}'",
            )
        return prefix

    async def _current_letter(self, document_type: str, date_key: str, session=None) -> str:
        """Letter to allocate from: the highest counter's letter, or the next one if it is full."""
        latest = await self.collection.find_one(
            {"type": document_type, "date_key": date_key},
            sort=[("letter", -1), ("sequence", -1)],
            session=session,
        )
        if not latest:
            return LETTERS[0]
        if latest.get("sequence", 0) < MAX_SEQUENCE:
            return latest["letter"]

        next_index = LETTERS.index(latest["letter"]) + 1
        if next_index >= len(LETTERS):
            raise SequenceExhausted(document_type, date_key)
        logger.info(f"[SEQUENCE] Rolling {document_type}/{date_key} to letter {LETTERS[next_index]}")
        return LETTERS[next_index]

    async def _increment(self, document_type: str, date_key: str, letter: str, session=None):
        """
        Increment the counter for one letter, creating it at 1 if absent.
        Returns None when the letter filled up before our increment landed.
        """
        now = datetime.utcnow()
        try:
            return await self.collection.find_one_and_update(
                {
                    "type": document_type,
                    "date_key": date_key,
                    "letter": letter,
                    "sequence": {"$lt": MAX_SEQUENCE},
                },
                {
                    "$inc": {"sequence": 1},
                    "$set": {"updated_at": now},
                    "$setOnInsert": {"created_at": now},
                },
                upsert=True,
                return_document=ReturnDocument.AFTER,
                session=session,
            )
        except DuplicateKeyError:
            # Full counter for this letter already exists, or a concurrent upsert won
            return None

    async def allocate(
        self,
        document_type: str,
        date_key: Optional[str] = None,
        session=None,
    ) -> str:
        """
        Allocate the next reference code for (document_type, date_key).

        Raises:
            SequenceExhausted: letters A-Z all reached 999,999 for the day
            AllocationFailed: upsert kept colliding after MAX_RETRIES
        """
        prefix = self.prefix_for(document_type)
        date_key = date_key or date_key_for()

        for attempt in range(self.MAX_RETRIES):
            letter = await self._current_letter(document_type, date_key, session)
            counter = await self._increment(document_type, date_key, letter, session)

            if counter is not None:
                code = format_reference_code(prefix, date_key, counter["letter"], counter["sequence"])
                logger.debug(f"[SEQUENCE] Allocated {code}")
                return code

            logger.warning(
                f"[SEQUENCE] Collision on {document_type}/{date_key}/{letter}, retry {attempt + 1}"
            )
            await asyncio.sleep(self.RETRY_DELAY_MS * (attempt + 1) / 1000)

        raise AllocationFailed(
            f"Failed to allocate a reference code for {document_type}/{date_key} "
            f"after {self.MAX_RETRIES} attempts"
        )

    async def create_unique_constraints(self):
        """Unique counter key. Required for collision detection on upsert."""
        await self.collection.create_index(
            [("type", 1), ("date_key", 1), ("letter", 1)],
            unique=True,
            name="unique_sequence_key",
        )
        logger.info("Created unique sequence counter constraint")
