import importlib
import logging

logger = logging.getLogger(__name__)

# Applied in order; names are module names in this package
MIGRATIONS = [
    "001_billing_indexes",
]


async def run_migrations(db):
    """Apply every migration's upgrade(db). Each one is idempotent."""
    results = {}
    for name in MIGRATIONS:
        module = importlib.import_module(f"{__name__}.{name}")
        results[name] = await module.upgrade(db)
    return results
