import asyncio
import logging
from app.config import settings
from app.services.reconciliation_service import run_reconciliation_pass

logger = logging.getLogger(__name__)


async def run_reconciliation_loop():
    """
    Background loop started from the application lifespan.

    - Runs one pass every RECONCILIATION_INTERVAL_SECONDS
    - Overlapping passes across instances are prevented by the execution lock
    - Errors are logged and the loop keeps going
    """
    interval = settings.reconciliation_interval_seconds
    logger.info(f"Starting reconciliation loop (every {interval}s)...")

    while True:
        try:
            result = await run_reconciliation_pass()
            if result.skipped:
                logger.info(f"Reconciliation {result.execution_id} skipped: lock held elsewhere")
            elif not result.success:
                logger.warning(
                    f"Reconciliation {result.execution_id} finished with {len(result.errors)} errors"
                )
        except Exception as e:
            logger.error(f"Error in reconciliation loop: {e}", exc_info=True)

        await asyncio.sleep(interval)
