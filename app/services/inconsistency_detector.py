import logging
from collections import defaultdict
from decimal import Decimal
from typing import Optional, List, Dict, Tuple
from datetime import datetime, timedelta, timezone
from app.database import get_db_connection, STORE_ERRORS
from app.config import settings
from app.models.reconciliation import (
    OrphanCandidate, OrphanMatch, OrphanTicket, OrphanTicketReport, OrphanOrder,
    PricedLineItem, PriceInconsistency, InconsistencyType, Correction,
    CorrectionField, MatchOutcome, AuditRecord, AuditType, ScanResult
)
from app.models.ticket import OrderStatus
from app.services.audit_service import append_audit, append_audits
from app.services.ticket_issuance_service import classify_line_item

logger = logging.getLogger(__name__)


def rank_orphan_candidates(
    ticket_created_at: datetime,
    candidates: List[OrphanCandidate],
    tolerance: timedelta
) -> OrphanMatch:
    """
    Rank the line items that reference an orphan ticket.

    Only candidates created within +/- tolerance of the ticket count. One
    order in the window is a unique match; several orders resolve to the
    smallest absolute time delta. A tie on that delta between different
    orders is ambiguous and selects nothing.
    """
    in_window = [
        c for c in candidates
        if abs(c.created_at - ticket_created_at) <= tolerance
    ]

    if not in_window:
        return OrphanMatch(outcome=MatchOutcome.NONE)

    def delta(c: OrphanCandidate) -> float:
        return abs((c.created_at - ticket_created_at).total_seconds())

    ranked = sorted(in_window, key=delta)
    best = ranked[0]

    if len({c.order_id for c in ranked}) == 1:
        return OrphanMatch(
            outcome=MatchOutcome.UNIQUE,
            selected=best,
            candidates=ranked,
            delta_seconds=delta(best)
        )

    tied_orders = {c.order_id for c in ranked if delta(c) == delta(best)}
    if len(tied_orders) > 1:
        return OrphanMatch(
            outcome=MatchOutcome.AMBIGUOUS,
            candidates=ranked,
            delta_seconds=delta(best)
        )

    return OrphanMatch(
        outcome=MatchOutcome.CLOSEST,
        selected=best,
        candidates=ranked,
        delta_seconds=delta(best)
    )


async def _fetch_orphan_tickets(since: datetime, limit: int) -> List[OrphanTicket]:
    async with get_db_connection(use_transaction=False) as conn:
        rows = await conn.fetch("""
            SELECT id, event_id, price, created_at
            FROM tickets
            WHERE order_id IS NULL AND created_at >= $1
            ORDER BY created_at
            LIMIT $2
        """, since, limit)

    return [
        OrphanTicket(
            ticket_id=str(row['id']),
            event_id=str(row['event_id']) if row['event_id'] else None,
            price=row['price'],
            created_at=row['created_at']
        )
        for row in rows
    ]


async def _fetch_orphan_candidates(ticket: OrphanTicket, tolerance: timedelta) -> List[OrphanCandidate]:
    async with get_db_connection(use_transaction=False) as conn:
        rows = await conn.fetch("""
            SELECT id, order_id, quantity, created_at
            FROM order_line_items
            WHERE ticket_id = $1 AND created_at BETWEEN $2 AND $3
            ORDER BY created_at
        """, ticket.ticket_id, ticket.created_at - tolerance, ticket.created_at + tolerance)

    return [
        OrphanCandidate(
            line_item_id=str(row['id']),
            order_id=str(row['order_id']),
            quantity=row['quantity'],
            created_at=row['created_at']
        )
        for row in rows
    ]


async def _link_ticket(execution_id: str, ticket: OrphanTicket, match: OrphanMatch) -> bool:
    """Attach the ticket to the matched order. False when someone linked it first."""
    selected = match.selected

    async with get_db_connection() as conn:
        result = await conn.execute("""
            UPDATE tickets
            SET order_id = $2, updated_at = NOW()
            WHERE id = $1 AND order_id IS NULL
        """, ticket.ticket_id, selected.order_id)

        if result == "UPDATE 0":
            return False

        await append_audit(conn, AuditRecord(
            execution_id=execution_id,
            entity_type="ticket",
            entity_id=ticket.ticket_id,
            order_id=selected.order_id,
            correction_type=AuditType.ORPHAN_TICKET_LINKED,
            old_values={"order_id": None},
            new_values={"order_id": selected.order_id},
            metadata={
                "line_item_id": selected.line_item_id,
                "outcome": match.outcome.value,
                "heuristic": match.heuristic,
                "delta_seconds": match.delta_seconds,
                "candidate_order_ids": sorted({c.order_id for c in match.candidates}),
            }
        ))

    return True


async def link_orphan_tickets(
    execution_id: str,
    lookback: Optional[timedelta] = None,
    now: Optional[datetime] = None
) -> OrphanTicketReport:
    """
    Link tickets with no order to the order whose line item references them.

    Every link is its own transaction with one audit row. Tickets with zero
    or ambiguous matches are reported for manual review and stay unlinked.
    """
    now = now or datetime.now(timezone.utc)
    lookback = lookback or timedelta(hours=settings.lookback_hours)
    tolerance = timedelta(minutes=settings.orphan_ticket_tolerance_minutes)
    report = OrphanTicketReport()

    orphans = await _fetch_orphan_tickets(now - lookback, settings.batch_size)
    logger.info(f"[{execution_id}] Found {len(orphans)} orphan tickets")

    for ticket in orphans:
        report.processed += 1
        try:
            candidates = await _fetch_orphan_candidates(ticket, tolerance)
            match = rank_orphan_candidates(ticket.created_at, candidates, tolerance)

            if match.selected is None:
                ticket.outcome = match.outcome
                ticket.candidate_order_ids = sorted({c.order_id for c in match.candidates})
                report.unresolved.append(ticket)
                logger.warning(
                    f"[{execution_id}] Orphan ticket {ticket.ticket_id}: {match.outcome.value} match, "
                    f"left for manual review"
                )
                continue

            if await _link_ticket(execution_id, ticket, match):
                report.linked += 1
                if match.heuristic:
                    report.heuristic_links += 1
                logger.info(
                    f"[{execution_id}] Orphan ticket {ticket.ticket_id} linked to order "
                    f"{match.selected.order_id} ({match.outcome.value})"
                )

        except STORE_ERRORS as e:
            logger.error(f"[{execution_id}] Error linking orphan ticket {ticket.ticket_id}: {e}")
            report.errors.append(f"Orphan ticket {ticket.ticket_id}: {e}")

    return report


async def _fetch_orphan_orders(now: datetime) -> List[OrphanOrder]:
    newest = now - timedelta(hours=settings.orphan_order_min_age_hours)
    oldest = now - timedelta(days=settings.orphan_order_max_age_days)

    async with get_db_connection(use_transaction=False) as conn:
        rows = await conn.fetch("""
            SELECT o.id, o.customer_email, o.total_amount, o.created_at,
                   COUNT(li.id) AS items_count,
                   COUNT(li.ticket_id) AS ticket_items
            FROM orders o
            LEFT JOIN order_line_items li ON li.order_id = o.id
            WHERE o.status = $1
              AND o.created_at < $2
              AND o.created_at > $3
              AND NOT EXISTS (
                  SELECT 1 FROM payment_charges pc WHERE pc.order_id = o.id
              )
            GROUP BY o.id, o.customer_email, o.total_amount, o.created_at
            ORDER BY o.created_at
            LIMIT $4
        """, OrderStatus.PENDING.value, newest, oldest, settings.batch_size)

    return [
        OrphanOrder(
            order_id=str(row['id']),
            customer_email=row['customer_email'],
            total_amount=row['total_amount'] or Decimal("0"),
            created_at=row['created_at'],
            items_count=row['items_count'],
            has_tickets=row['ticket_items'] > 0
        )
        for row in rows
    ]


async def detect_orphan_orders(
    execution_id: str,
    now: Optional[datetime] = None
) -> List[OrphanOrder]:
    """
    Pending orders with no gateway charge, aged between the configured bounds.
    Reported and audited once per order, never corrected.
    """
    now = now or datetime.now(timezone.utc)
    orphans = await _fetch_orphan_orders(now)

    if not orphans:
        return orphans

    async with get_db_connection() as conn:
        audited = await conn.fetch("""
            SELECT DISTINCT order_id FROM reconciliation_audit
            WHERE correction_type = $1 AND order_id = ANY($2)
        """, AuditType.ORPHAN_ORDER_DETECTED.value, [o.order_id for o in orphans])
        already = {str(row['order_id']) for row in audited}

        await append_audits(conn, [
            AuditRecord(
                execution_id=execution_id,
                entity_type="order",
                entity_id=o.order_id,
                order_id=o.order_id,
                correction_type=AuditType.ORPHAN_ORDER_DETECTED,
                metadata={
                    "customer_email": o.customer_email,
                    "total_amount": o.total_amount,
                    "items_count": o.items_count,
                    "has_tickets": o.has_tickets,
                    "age_hours": round((now - o.created_at).total_seconds() / 3600, 1),
                }
            )
            for o in orphans if o.order_id not in already
        ])

    logger.warning(f"[{execution_id}] {len(orphans)} orphan orders without gateway charge")
    return orphans


def find_price_inconsistencies(
    items: List[PricedLineItem],
    epsilon: Optional[Decimal] = None
) -> List[PriceInconsistency]:
    """Flag catalog, total and intra-order drift on ticket-bearing line items"""
    epsilon = settings.price_epsilon if epsilon is None else epsilon
    found = []
    groups: Dict[Tuple[str, str], List[PricedLineItem]] = defaultdict(list)

    for item in items:
        if classify_line_item(item) is None:
            continue

        common = dict(
            order_id=item.order_id,
            line_item_id=item.id,
            event_id=item.event_id,
            ticket_id=item.ticket_id,
            quantity=item.quantity,
            current_total=item.total_price,
            catalog_price=item.catalog_price,
        )

        if item.catalog_price is not None and abs(item.unit_price - item.catalog_price) > epsilon:
            found.append(PriceInconsistency(
                inconsistency_type=InconsistencyType.PRICE_MISMATCH,
                expected_value=item.catalog_price,
                actual_value=item.unit_price,
                **common
            ))

        expected_total = item.unit_price * item.quantity
        actual_total = item.total_price if item.total_price is not None else Decimal("0")
        if abs(actual_total - expected_total) > epsilon:
            found.append(PriceInconsistency(
                inconsistency_type=InconsistencyType.TOTAL_MISMATCH,
                expected_value=expected_total,
                actual_value=actual_total,
                **common
            ))

        if item.event_id:
            groups[(item.order_id, item.event_id)].append(item)

    for group in groups.values():
        highest = max(i.unit_price for i in group)
        for item in group:
            if highest - item.unit_price > epsilon:
                found.append(PriceInconsistency(
                    order_id=item.order_id,
                    line_item_id=item.id,
                    event_id=item.event_id,
                    ticket_id=item.ticket_id,
                    inconsistency_type=InconsistencyType.INTRA_ORDER_PRICE_MISMATCH,
                    expected_value=highest,
                    actual_value=item.unit_price,
                    quantity=item.quantity,
                    current_total=item.total_price,
                    catalog_price=item.catalog_price
                ))

    return found


def build_corrections(
    inconsistencies: List[PriceInconsistency],
    source: AuditType = AuditType.PRICE_CORRECTION,
    epsilon: Optional[Decimal] = None
) -> List[Correction]:
    """
    Turn detections into field rewrites, at most one per (line item, field).

    Catalog corrections take precedence; the highest-price rule only applies
    to events without a catalog price. Totals always follow the corrected
    unit price.
    """
    epsilon = settings.price_epsilon if epsilon is None else epsilon
    corrections: Dict[Tuple[str, CorrectionField], Correction] = {}

    def add(inc: PriceInconsistency, field: CorrectionField, old: Decimal, new: Decimal, reason: str):
        key = (inc.line_item_id, field)
        if key in corrections or abs(old - new) <= epsilon:
            return
        corrections[key] = Correction(
            line_item_id=inc.line_item_id,
            order_id=inc.order_id,
            field=field,
            old_value=old,
            new_value=new,
            reason=reason,
            source=source
        )

    def add_unit(inc: PriceInconsistency, reason: str):
        add(inc, CorrectionField.UNIT_PRICE, inc.actual_value, inc.expected_value, reason)
        current_total = inc.current_total if inc.current_total is not None else Decimal("0")
        add(inc, CorrectionField.TOTAL_PRICE, current_total, inc.expected_value * inc.quantity,
            f"{reason} (total recomputed)")

    by_type = defaultdict(list)
    for inc in inconsistencies:
        by_type[inc.inconsistency_type].append(inc)

    for inc in by_type[InconsistencyType.PRICE_MISMATCH]:
        add_unit(inc, f"Unit price differs from catalog price {inc.expected_value}")

    for inc in by_type[InconsistencyType.INTRA_ORDER_PRICE_MISMATCH]:
        if inc.catalog_price is not None:
            continue
        add_unit(inc, f"Unit price below highest price {inc.expected_value} for event in the same order")

    for inc in by_type[InconsistencyType.TOTAL_MISMATCH]:
        add(inc, CorrectionField.TOTAL_PRICE, inc.actual_value, inc.expected_value,
            f"Total differs from unit price x quantity ({inc.quantity})")

    return list(corrections.values())


LINE_ITEM_COLUMNS = """
    li.id, li.order_id, li.ticket_id, li.product_id, li.name, li.ticket_type,
    li.event_id, li.quantity, li.unit_price, li.total_price, li.created_at,
    cp.unit_price AS catalog_price
"""


async def fetch_priced_line_items(conn, order_ids: List[str]) -> List[PricedLineItem]:
    """Line items of the given orders joined with their catalog prices"""
    rows = await conn.fetch(f"""
        SELECT {LINE_ITEM_COLUMNS}
        FROM order_line_items li
        LEFT JOIN catalog_prices cp ON cp.event_id = li.event_id
        WHERE li.order_id = ANY($1)
        ORDER BY li.order_id, li.created_at, li.id
    """, order_ids)
    return [PricedLineItem(**dict(row)) for row in rows]


async def fetch_pending_order_ids(since: datetime, limit: Optional[int] = None) -> List[str]:
    """Pending orders created since the given instant, oldest first"""
    async with get_db_connection(use_transaction=False) as conn:
        rows = await conn.fetch("""
            SELECT id FROM orders
            WHERE status = $1 AND created_at >= $2
            ORDER BY created_at
            LIMIT $3
        """, OrderStatus.PENDING.value, since, limit or settings.batch_size)
    return [str(row['id']) for row in rows]


async def load_pending_line_items(
    lookback: Optional[timedelta] = None,
    now: Optional[datetime] = None
) -> List[PricedLineItem]:
    now = now or datetime.now(timezone.utc)
    lookback = lookback or timedelta(hours=settings.lookback_hours)

    order_ids = await fetch_pending_order_ids(now - lookback)
    if not order_ids:
        return []

    async with get_db_connection(use_transaction=False) as conn:
        return await fetch_priced_line_items(conn, order_ids)


async def detect_price_inconsistencies(
    lookback: Optional[timedelta] = None,
    now: Optional[datetime] = None
) -> List[PriceInconsistency]:
    """Price drift on ticket-bearing line items of pending orders in the window"""
    items = await load_pending_line_items(lookback, now)
    return find_price_inconsistencies(items)


async def scan_window(
    lookback: Optional[timedelta] = None,
    now: Optional[datetime] = None
) -> ScanResult:
    """Read-only view of what a pass would find. Nothing is linked, audited or corrected."""
    now = now or datetime.now(timezone.utc)
    lookback = lookback or timedelta(hours=settings.lookback_hours)

    return ScanResult(
        orphan_tickets=await _fetch_orphan_tickets(now - lookback, settings.batch_size),
        orphan_orders=await _fetch_orphan_orders(now),
        price_inconsistencies=await detect_price_inconsistencies(lookback, now)
    )
