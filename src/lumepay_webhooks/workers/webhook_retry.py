"""Worker: retry failed webhook deliveries that are due."""
from __future__ import annotations

from datetime import datetime

from lumepay_webhooks.services.retry import RetryScheduler
from lumepay_webhooks.worker import TaskFn


def webhook_retry_sweep(scheduler: RetryScheduler) -> TaskFn:
    async def run(now: datetime) -> str | None:
        stats = await scheduler.sweep(now)
        return stats.summary()

    return run
