import logging
from collections import defaultdict
from decimal import Decimal
from typing import List
from app.database import get_db_connection, STORE_ERRORS
from app.config import settings
from app.models.reconciliation import (
    AuditRecord, AuditType, BatchValidation, Correction, CorrectionField,
    CorrectionOutcome, PricedLineItem
)
from app.services.audit_service import append_audit
from app.services.inconsistency_detector import (
    build_corrections, fetch_priced_line_items, find_price_inconsistencies
)
from app.services.ticket_issuance_service import classify_line_item

logger = logging.getLogger(__name__)


def needs_batch_validation(items: List[PricedLineItem]) -> bool:
    """Orders with several ticket lines or a multi-unit line"""
    ticket_items = [i for i in items if classify_line_item(i) is not None]
    return len(ticket_items) > 1 or any(i.quantity > 1 for i in ticket_items)


def check_batch_items(order_id: str, items: List[PricedLineItem]) -> BatchValidation:
    """
    Validate one order's ticket lines grouped by event.

    Price drift becomes corrections. A batch line bought alongside single
    lines of the same event is only a warning: it may be a genuine second
    purchase and is left for review.
    """
    validation = BatchValidation(order_id=order_id)
    by_event = defaultdict(list)

    for item in items:
        if classify_line_item(item) is None:
            continue
        by_event[item.event_id].append(item)

    for event_id, event_items in by_event.items():
        if event_id and event_items[0].catalog_price is None:
            validation.warnings.append(
                f"Event {event_id} has no catalog price; only totals and intra-order prices checked"
            )

        batches = [i for i in event_items if i.quantity > 1]
        singles = [i for i in event_items if i.quantity == 1]
        if batches and singles:
            validation.warnings.append(
                f"Event {event_id}: batch line(s) {', '.join(str(i.id) for i in batches)} "
                f"bought together with {len(singles)} individual line(s)"
            )

    inconsistencies = find_price_inconsistencies(items)
    validation.corrections = build_corrections(inconsistencies, source=AuditType.BATCH_VALIDATION)
    validation.is_valid = not inconsistencies
    return validation


async def validate_batch_purchases(order_id: str) -> BatchValidation:
    """Validate the stored line items of one order"""
    try:
        async with get_db_connection(use_transaction=False) as conn:
            items = await fetch_priced_line_items(conn, [order_id])
    except STORE_ERRORS as e:
        logger.error(f"Batch validation failed for order {order_id}: {e}")
        return BatchValidation(order_id=order_id, is_valid=False, errors=[f"Order {order_id}: {e}"])

    validation = check_batch_items(order_id, items)

    if not validation.is_valid:
        logger.warning(
            f"Order {order_id}: batch validation found {len(validation.corrections)} corrections"
        )
    for warning in validation.warnings:
        logger.info(f"Order {order_id}: {warning}")

    return validation


async def _apply_one(correction: Correction, execution_id: str) -> bool:
    """
    Apply a single correction in its own transaction.
    Returns False when the stored value no longer equals old_value.
    """
    epsilon = settings.price_epsilon
    field = correction.field.value

    async with get_db_connection() as conn:
        row = await conn.fetchrow("""
            SELECT id, order_id, unit_price, total_price
            FROM order_line_items WHERE id = $1
            FOR UPDATE
        """, correction.line_item_id)

        if not row:
            logger.warning(f"[{execution_id}] Line item {correction.line_item_id} disappeared, skipping")
            return False

        current = row[field] if row[field] is not None else Decimal("0")
        if abs(current - correction.old_value) > epsilon:
            logger.info(
                f"[{execution_id}] Stale correction on {correction.line_item_id}.{field}: "
                f"expected {correction.old_value}, found {current}"
            )
            return False

        await conn.execute(f"""
            UPDATE order_line_items
            SET {field} = $2, updated_at = NOW()
            WHERE id = $1
        """, correction.line_item_id, correction.new_value)

        order_id = str(row['order_id'])
        old_values = {field: current}
        new_values = {field: correction.new_value}

        if correction.field == CorrectionField.TOTAL_PRICE:
            delta = correction.new_value - current
            order_total = await conn.fetchval("""
                UPDATE orders
                SET total_amount = total_amount + $2, updated_at = NOW()
                WHERE id = $1
                RETURNING total_amount
            """, order_id, delta)
            old_values["order_total_amount"] = order_total - delta if order_total is not None else None
            new_values["order_total_amount"] = order_total

        await append_audit(conn, AuditRecord(
            execution_id=execution_id,
            entity_type="order_line_item",
            entity_id=correction.line_item_id,
            order_id=order_id,
            correction_type=correction.source,
            old_values=old_values,
            new_values=new_values,
            metadata={"reason": correction.reason}
        ))

    return True


async def apply_corrections(corrections: List[Correction], execution_id: str) -> CorrectionOutcome:
    """
    Apply corrections one transaction at a time.

    Stale corrections are skipped, which makes a repeated run over the same
    detections a no-op. A failing correction is recorded and the rest go on.
    """
    outcome = CorrectionOutcome()

    for correction in corrections:
        try:
            if await _apply_one(correction, execution_id):
                outcome.applied += 1
                if correction.line_item_id not in outcome.applied_line_items:
                    outcome.applied_line_items.append(correction.line_item_id)
                logger.info(
                    f"[{execution_id}] Corrected {correction.line_item_id}.{correction.field.value}: "
                    f"{correction.old_value} -> {correction.new_value}"
                )
            else:
                outcome.skipped += 1
        except STORE_ERRORS as e:
            logger.error(
                f"[{execution_id}] Correction failed on {correction.line_item_id}.{correction.field.value}: {e}"
            )
            outcome.errors.append(
                f"Correction {correction.line_item_id}.{correction.field.value}: {e}"
            )

    return outcome
