from __future__ import annotations

from loguru import logger

from gob_api.celery_app import celery_app
from gob_api.core.settings import settings
from gob_api.tasks.payouts import settle_payout_sync


@celery_app.task(name="payouts.settle_payout", queue=settings.payout_task_queue)
def settle_payout(transaction_id: str) -> dict[str, object]:
    """Celery entrypoint for settling one PENDING payout transaction."""

    try:
        return settle_payout_sync(transaction_id)
    except Exception:
        logger.exception("Payout settlement task failed", transaction_id=transaction_id)
        raise
