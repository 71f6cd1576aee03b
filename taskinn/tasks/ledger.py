import asyncio
import logging
from typing import Any, Dict

from taskinn.worker import celery_app
from taskinn.core.config import settings
from taskinn.db.database import Database
from taskinn.services.ledger import LedgerService

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, name="taskinn.tasks.ledger.reconcile_ledger")
def reconcile_ledger(self):
    """Check every wallet balance against its transaction history"""
    return asyncio.run(_reconcile_with_fresh_database())


async def _reconcile_with_fresh_database() -> Dict[str, Any]:
    # Each asyncio.run gets its own loop, so the engine cannot outlive it
    database = Database.from_settings(settings)
    try:
        return await run_reconciliation(database)
    finally:
        await database.dispose()


async def run_reconciliation(database: Database) -> Dict[str, Any]:
    ledger = LedgerService(database, default_commission_rate=settings.DEFAULT_COMMISSION_RATE)
    mismatches = await ledger.reconcile()

    if not mismatches:
        logger.info("Ledger reconciliation passed: all wallets balanced")
        return {"status": "balanced", "mismatches": []}

    for entry in mismatches:
        logger.error(
            f"Wallet {entry.wallet_id} ({entry.currency}) out of balance: "
            f"balance={entry.balance} ledger={entry.ledger_total} difference={entry.difference}"
        )
    return {
        "status": "mismatch",
        "mismatches": [entry.model_dump(mode="json") for entry in mismatches],
    }
