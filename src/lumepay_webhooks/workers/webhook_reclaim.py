"""Worker: release delivery claims left behind by an interrupted sweep."""
from __future__ import annotations

from datetime import datetime, timedelta

from lumepay_webhooks.services.ledger import DeliveryLedger
from lumepay_webhooks.worker import TaskFn


def webhook_reclaim_stuck(ledger: DeliveryLedger, *, claim_timeout_minutes: int) -> TaskFn:
    async def run(now: datetime) -> str | None:
        cutoff = now - timedelta(minutes=claim_timeout_minutes)
        reclaimed = await ledger.reclaim_stuck(cutoff)
        return f"reclaimed={reclaimed}" if reclaimed else None

    return run
