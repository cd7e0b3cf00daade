"""Background workers for the webhook service.

Each worker module exports a factory returning a task function compatible
with :class:`lumepay_webhooks.worker.WorkerTask`. :func:`build_worker`
assembles them into the service's single periodic loop.
"""
from __future__ import annotations

from lumepay_webhooks.services.dependencies import WebhookServices
from lumepay_webhooks.settings import Settings
from lumepay_webhooks.worker import BackgroundWorker, WorkerTask
from lumepay_webhooks.workers.webhook_reclaim import webhook_reclaim_stuck
from lumepay_webhooks.workers.webhook_retry import webhook_retry_sweep


def build_worker(services: WebhookServices, settings: Settings) -> BackgroundWorker:
    return BackgroundWorker(
        interval_seconds=settings.webhook_retry_interval_seconds,
        tasks=[
            # reclaim first so released records are retried in the same sweep
            WorkerTask(
                name="webhook_reclaim_stuck",
                fn=webhook_reclaim_stuck(
                    services.ledger,
                    claim_timeout_minutes=settings.webhook_claim_timeout_minutes,
                ),
            ),
            WorkerTask(name="webhook_retry_sweep", fn=webhook_retry_sweep(services.scheduler)),
        ],
    )


__all__ = ["build_worker"]
