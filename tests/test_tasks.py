from decimal import Decimal

import pytest
from sqlalchemy import update

from taskinn.models.wallet import Wallet
from taskinn.tasks.ledger import run_reconciliation
from taskinn.worker import celery_app


def test_reconciliation_is_scheduled():
    schedule = celery_app.conf.beat_schedule["reconcile-ledger"]
    assert schedule["task"] == "taskinn.tasks.ledger.reconcile_ledger"
    assert "taskinn.tasks.ledger.reconcile_ledger" in celery_app.tasks


@pytest.mark.asyncio
async def test_run_reconciliation_reports_mismatches(database, ledger, create_user):
    user_id = await create_user()
    await ledger.settle_deposit(user_id, "USD", Decimal("100.00"), "ORDER-1", "paypal")

    assert await run_reconciliation(database) == {"status": "balanced", "mismatches": []}

    async with database.transaction() as session:
        await session.execute(update(Wallet).where(Wallet.user_id == user_id).values(balance=Decimal("90.00")))

    report = await run_reconciliation(database)
    assert report["status"] == "mismatch"
    assert report["mismatches"][0]["user_id"] == user_id
    assert Decimal(report["mismatches"][0]["difference"]) == Decimal("-5.00")
