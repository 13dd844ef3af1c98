"""
Reconciliation pass: one guarded sweep over recent orders and tickets.

Steps run in a fixed order under the execution lock:

1. link orphan tickets to their orders
2. detect orphan orders (pending, no gateway charge)
3. detect price inconsistencies on pending orders
4. validate and correct batch purchases
5. apply the remaining individual corrections

Row-level failures are collected in the result and never abort the pass.
Metrics are recorded and the lock released whatever happens after it was
acquired.
"""
import asyncio
import logging
import time
import uuid
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Optional, List, Dict
from app.database import STORE_ERRORS
from app.config import settings
from app.models.monitoring import ExecutionMetrics, ExecutionStats
from app.models.reconciliation import (
    ReconciliationResult, PricedLineItem, PriceInconsistency, CorrectionOutcome
)
from app.services import lock_service, monitoring_service
from app.services.batch_validation_service import (
    apply_corrections, check_batch_items, needs_batch_validation
)
from app.services.inconsistency_detector import (
    build_corrections, detect_orphan_orders, find_price_inconsistencies,
    link_orphan_tickets, load_pending_line_items
)
from app.core.logging import log_execution_context

logger = logging.getLogger(__name__)


class PassState:
    """Working set shared by the steps of one pass"""

    def __init__(self, execution_id: str, now: datetime):
        self.execution_id = execution_id
        self.now = now
        self.items: List[PricedLineItem] = []
        self.inconsistencies: List[PriceInconsistency] = []
        self.corrected_orders = set()


def _absorb(result: ReconciliationResult, state: PassState, outcome: CorrectionOutcome, order_by_item: Dict[str, str]):
    result.api_calls += outcome.applied + outcome.skipped + len(outcome.errors)
    result.api_failures += len(outcome.errors)
    result.errors.extend(outcome.errors)
    for line_item_id in outcome.applied_line_items:
        state.corrected_orders.add(order_by_item[line_item_id])


async def _step(result: ReconciliationResult, name: str, coro):
    """Run one step; a store failure is recorded and the pass moves on"""
    result.api_calls += 1
    try:
        return await coro
    except STORE_ERRORS as e:
        result.api_failures += 1
        result.errors.append(f"{name}: {e}")
        logger.error(f"[{result.execution_id}] Step {name} failed: {e}", exc_info=True)
        return None


async def _link_orphans(result: ReconciliationResult, state: PassState):
    lookback = timedelta(hours=settings.lookback_hours)
    report = await _step(result, "orphan_tickets", link_orphan_tickets(state.execution_id, lookback, state.now))
    if report is None:
        return

    result.orphan_tickets_processed = report.processed
    result.orphan_tickets_corrected = report.linked
    result.orphan_tickets_unresolved = len(report.unresolved)
    result.processed += report.processed
    result.corrected += report.linked
    result.api_calls += report.processed
    result.api_failures += len(report.errors)
    result.errors.extend(report.errors)


async def _detect_orphan_orders(result: ReconciliationResult, state: PassState):
    orphans = await _step(result, "orphan_orders", detect_orphan_orders(state.execution_id, state.now))
    if orphans is not None:
        result.orphan_orders_found = len(orphans)


async def _detect_prices(result: ReconciliationResult, state: PassState):
    lookback = timedelta(hours=settings.lookback_hours)
    items = await _step(result, "price_inconsistencies", load_pending_line_items(lookback, state.now))
    if items is None:
        return

    state.items = items
    state.inconsistencies = find_price_inconsistencies(items)
    result.processed += len({i.order_id for i in items})
    result.inconsistencies_found = len(state.inconsistencies)

    if state.inconsistencies:
        logger.warning(f"[{state.execution_id}] {len(state.inconsistencies)} price inconsistencies found")


async def _correct_batches(result: ReconciliationResult, state: PassState):
    by_order: Dict[str, List[PricedLineItem]] = defaultdict(list)
    for item in state.items:
        by_order[item.order_id].append(item)

    order_by_item = {item.id: item.order_id for item in state.items}

    for order_id, items in by_order.items():
        if not needs_batch_validation(items):
            continue

        validation = check_batch_items(order_id, items)
        if validation.is_valid:
            continue

        outcome = await apply_corrections(validation.corrections, state.execution_id)
        _absorb(result, state, outcome, order_by_item)
        if outcome.applied:
            result.batch_corrections += 1
            logger.info(f"[{state.execution_id}] Batch order {order_id}: {outcome.applied} corrections applied")


async def _correct_individual(result: ReconciliationResult, state: PassState):
    if not state.inconsistencies:
        return

    # Corrections already made by the batch step come back as stale and are skipped
    corrections = build_corrections(state.inconsistencies)
    order_by_item = {item.id: item.order_id for item in state.items}
    outcome = await apply_corrections(corrections, state.execution_id)
    _absorb(result, state, outcome, order_by_item)


async def _run_steps(result: ReconciliationResult, state: PassState):
    await _link_orphans(result, state)
    await _detect_orphan_orders(result, state)
    await _detect_prices(result, state)
    await _correct_batches(result, state)
    await _correct_individual(result, state)


async def run_reconciliation_pass(now: Optional[datetime] = None) -> ReconciliationResult:
    """
    Run one reconciliation pass.

    Returns skipped=True without processing or recording anything when
    another execution holds the lock.
    """
    execution_id = f"exec_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"
    result = ReconciliationResult(execution_id=execution_id)
    context = log_execution_context(execution_id)
    started = time.monotonic()

    ttl = timedelta(seconds=settings.lock_ttl_seconds)
    try:
        acquired = await lock_service.acquire(execution_id, ttl)
    except STORE_ERRORS as e:
        logger.error(f"[{execution_id}] Could not acquire lock: {e}", extra={"context": context})
        result.errors.append(f"lock: {e}")
        return result
    result.lock_acquisition_ms = int((time.monotonic() - started) * 1000)

    if not acquired:
        logger.info(f"[{execution_id}] Another execution is running, skipping", extra={"context": context})
        result.skipped = True
        result.success = True
        return result

    logger.info(f"[{execution_id}] Reconciliation started", extra={"context": context})
    state = PassState(execution_id, now or datetime.now(timezone.utc))

    try:
        await asyncio.wait_for(_run_steps(result, state), timeout=settings.execution_timeout_seconds)
    except asyncio.TimeoutError:
        logger.error(
            f"[{execution_id}] Pass exceeded {settings.execution_timeout_seconds}s, stopped",
            extra={"context": context}
        )
        result.errors.append(f"Execution timeout after {settings.execution_timeout_seconds}s")
    finally:
        result.corrected += len(state.corrected_orders)
        result.execution_time_ms = int((time.monotonic() - started) * 1000)
        result.success = not result.errors
        await _finish(result)

    logger.info(
        f"[{execution_id}] Reconciliation finished in {result.execution_time_ms}ms: "
        f"processed={result.processed}, corrected={result.corrected}, "
        f"inconsistencies={result.inconsistencies_found}, errors={len(result.errors)}",
        extra={"context": context}
    )
    return result


async def _finish(result: ReconciliationResult):
    """Record metrics and release the lock; neither failure may mask the other"""
    metrics = ExecutionMetrics(
        execution_id=result.execution_id,
        recorded_at=datetime.now(timezone.utc),
        duration_ms=result.execution_time_ms,
        orders_processed=result.processed,
        orders_corrected=result.corrected,
        errors_count=len(result.errors),
        api_calls_count=result.api_calls,
        api_success_rate=result.api_success_rate,
        lock_acquisition_time_ms=result.lock_acquisition_ms,
        batch_corrections=result.batch_corrections,
        metadata={
            "inconsistencies_found": result.inconsistencies_found,
            "orphan_tickets_processed": result.orphan_tickets_processed,
            "orphan_tickets_corrected": result.orphan_tickets_corrected,
            "orphan_tickets_unresolved": result.orphan_tickets_unresolved,
            "orphan_orders_found": result.orphan_orders_found,
            "errors": result.errors[:20],
        }
    )

    try:
        await monitoring_service.record(metrics)
    except STORE_ERRORS as e:
        logger.error(f"[{result.execution_id}] Could not record metrics: {e}")

    try:
        await lock_service.release(result.execution_id)
    except STORE_ERRORS as e:
        logger.error(f"[{result.execution_id}] Could not release lock, it will expire: {e}")


async def get_execution_stats(hours: int = 24) -> ExecutionStats:
    return await monitoring_service.get_execution_stats(hours)
