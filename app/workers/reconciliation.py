"""
Payment Reconciliation Worker.

Runs every 15 minutes to fail payments stuck in pending or processing and to
report completed payments the booking never picked up.
"""

import logging
from app.workers.celery_app import celery_app
from app.database import get_db_context

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, max_retries=3)
def reconcile_payments(self):
    """
    Fail stale pending/processing payments, then list remaining anomalies.
    """
    import asyncio

    async def run():
        async with get_db_context() as db:
            from app.services.reconciliation_service import ReconciliationService

            service = ReconciliationService(db)
            failed = await service.fail_stale_processing()
            anomalies = await service.find_payment_anomalies()

            return failed, [a.as_dict() for a in anomalies]

    try:
        failed, anomalies = asyncio.run(run())
        logger.info(f"Reconciliation: failed {failed} stale payments, {len(anomalies)} anomalies open")
        return {"success": True, "failed_stale": failed, "anomalies": anomalies}
    except Exception as e:
        logger.error(f"Payment reconciliation failed: {e}")
        self.retry(exc=e, countdown=60)
