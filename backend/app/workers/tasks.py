"""
Celery Tasks — labor cost recompute.

recompute_labor_costs is idempotent: running it twice for the same rules and
rates leaves the cache unchanged apart from calculated_at.
"""
import asyncio
import logging

from app.services.errors import DataUnavailable
from app.workers.celery_app import celery_app

logger = logging.getLogger("fence-config.celery")


def _run_async(coro):
    """Run an async coroutine in a sync Celery task context (new event loop)."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


async def _recompute(product_type: str, business_unit_id: str) -> dict:
    from app.db import session_scope
    from app.db.rule_repository import RuleRepository
    from app.services.labor_cost_cache import LaborCostCacheRepository, refresh_labor_costs

    async with session_scope() as session:
        summary = await refresh_labor_costs(
            RuleRepository(session),
            LaborCostCacheRepository(session),
            product_type,
            business_unit_id,
        )

    return {
        "status": "updated",
        "product_type": summary.product_type,
        "business_unit_id": summary.business_unit_id,
        "rules_fingerprint": summary.fingerprint,
        "written": summary.written,
    }


@celery_app.task(
    bind=True,
    name="tasks.recompute_labor_costs",
    autoretry_for=(DataUnavailable,),
    retry_backoff=True,
    max_retries=3,
)
def recompute_labor_costs(self, product_type: str, business_unit_id: str):
    """Recompute precomputed labor costs for every SKU of a product type in one business unit."""
    self.update_state(state="PROGRESS", meta={"step": "Recomputing labor costs", "pct": 10})
    result = _run_async(_recompute(product_type, business_unit_id))
    logger.info(
        "Labor cost recompute complete: %s / %s, %d entries",
        product_type, business_unit_id, result["written"],
        extra={"product_type": product_type, "business_unit_id": business_unit_id},
    )
    return result
