"""
AUDIT TRAIL

Insert-only record of every financial action on a billing document. Each
entry keeps the before/after snapshot the caller passes plus a field-level
`changes` list, so the history of a document's totals and payments can be
read back without diffing snapshots.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Optional, Dict, Any, List
import logging

logger = logging.getLogger(__name__)


class AuditAction:
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    STATUS_CHANGE = "STATUS_CHANGE"
    DELETE = "DELETE"
    CANCEL = "CANCEL"
    PAYMENT = "PAYMENT"
    PAYMENT_REVERSAL = "PAYMENT_REVERSAL"
    CONVERT = "CONVERT"
    PAYMENT_LINK_SENT = "PAYMENT_LINK_SENT"


def field_changes(old: Optional[Dict[str, Any]], new: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    old, new = old or {}, new or {}
    return [
        {"field": key, "from": old.get(key), "to": new.get(key)}
        for key in sorted(set(old) | set(new))
        if old.get(key) != new.get(key)
    ]


class AuditService:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.collection = db.audit_logs

    async def log_action(
        self,
        entity_type: str,
        entity_id,
        action_type: str,
        user_id: Optional[str],
        document_number: Optional[str] = None,
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None,
        session=None
    ):
        await self.collection.insert_one(
            {
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "document_number": document_number,
                "action_type": action_type,
                "old_value_json": old_value,
                "new_value_json": new_value,
                "changes": field_changes(old_value, new_value),
                "user_id": user_id,
                "timestamp": datetime.utcnow(),
            },
            session=session
        )
        logger.info(f"[AUDIT] {action_type} {entity_type} {document_number or entity_id} by {user_id or 'SYSTEM'}")

    async def get_history(self, entity_type: str, entity_id, limit: int = 100) -> List[Dict[str, Any]]:
        """Entries for one document, oldest first."""
        cursor = self.collection.find(
            {"entity_type": entity_type, "entity_id": str(entity_id)}
        ).sort("timestamp", 1).limit(limit)
        entries = await cursor.to_list(length=limit)
        for entry in entries:
            entry["audit_id"] = str(entry.pop("_id"))
        return entries
