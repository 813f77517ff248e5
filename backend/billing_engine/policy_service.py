"""
BILLING POLICIES

Admin-tunable billing behaviour, stored as one document in global_settings:

    {"key": "billing_policies", "settings": {<policy>: <value>, ...}}

Any policy missing from the stored document takes its value from
DEFAULT_POLICIES. Reads go through a short in-process cache so the payment
path does not hit global_settings on every call.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from typing import Optional, Dict, Any
from datetime import datetime, timedelta
import logging

logger = logging.getLogger(__name__)


DEFAULT_POLICIES = {
    "overpayment_tolerance": 0.0,
    "payment_link_ttl_days": 7,
    "amc_gst_rate": 18.0,
    "allow_advance_payment": True,
}

# Stored values are coerced to these types on update
POLICY_TYPES = {
    "overpayment_tolerance": float,
    "payment_link_ttl_days": int,
    "amc_gst_rate": float,
    "allow_advance_payment": bool,
}

CACHE_SECONDS = 60


def coerce_policy_value(key: str, value: Any) -> Any:
    """Validate a policy key and convert value to the policy's type."""
    if key not in POLICY_TYPES:
        raise ValueError(f"Unknown policy key: {key}")
    kind = POLICY_TYPES[key]
    if kind is bool:
        if not isinstance(value, bool):
            raise ValueError(f"Policy {key} expects true or false")
        return value
    if isinstance(value, bool):
        raise ValueError(f"Policy {key} expects a number")
    try:
        return kind(value)
    except (TypeError, ValueError):
        raise ValueError(f"Policy {key} expects a number, got {value!r}")


class PolicyService:
    COLLECTION = "global_settings"
    SETTINGS_KEY = "billing_policies"

    def __init__(self, db: AsyncIOMotorDatabase):
        self.settings = db[self.COLLECTION]
        self._cached: Optional[Dict[str, Any]] = None
        self._loaded_at: Optional[datetime] = None

    async def _load(self, fresh: bool = False) -> Dict[str, Any]:
        now = datetime.utcnow()
        if not fresh and self._cached is not None and (now - self._loaded_at).total_seconds() < CACHE_SECONDS:
            return self._cached

        stored = await self.settings.find_one({"key": self.SETTINGS_KEY})
        policies = dict(DEFAULT_POLICIES)
        if stored:
            policies.update(stored.get("settings") or {})

        self._cached, self._loaded_at = policies, now
        return policies

    async def _value(self, key: str) -> Any:
        policies = await self._load()
        return policies.get(key, DEFAULT_POLICIES[key])

    async def _write(self, update: Dict[str, Any], note: str) -> Dict[str, Any]:
        now = datetime.utcnow()
        await self.settings.update_one(
            {"key": self.SETTINGS_KEY},
            {"$set": {**update, "updated_at": now}, "$setOnInsert": {"key": self.SETTINGS_KEY, "created_at": now}},
            upsert=True
        )
        self._cached = None
        logger.info(f"[POLICY] {note}")
        return await self.get_all_policies()

    async def get_overpayment_tolerance(self) -> float:
        """
        How far a single payment may run past the amount due. Negative
        values are read as 0 (no tolerance).
        """
        return max(float(await self._value("overpayment_tolerance") or 0), 0.0)

    async def get_payment_link_ttl(self) -> timedelta:
        return timedelta(days=int(await self._value("payment_link_ttl_days")))

    async def get_amc_gst_rate(self) -> float:
        return float(await self._value("amc_gst_rate"))

    async def is_advance_payment_allowed(self) -> bool:
        return bool(await self._value("allow_advance_payment"))

    async def get_all_policies(self) -> Dict[str, Any]:
        return {
            "policies": await self._load(fresh=True),
            "defaults": DEFAULT_POLICIES,
            "cache_ttl_seconds": CACHE_SECONDS,
        }

    async def update_policy(self, key: str, value: Any) -> Dict[str, Any]:
        """Set one policy. Raises ValueError for an unknown key or a mistyped value."""
        value = coerce_policy_value(key, value)
        return await self._write({f"settings.{key}": value}, f"{key} set to {value}")

    async def reset_to_defaults(self) -> Dict[str, Any]:
        return await self._write({"settings": dict(DEFAULT_POLICIES)}, "Billing policies reset to defaults")
