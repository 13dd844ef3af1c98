import logging
import uuid
from typing import Optional, List
from datetime import datetime, timezone
from app.database import get_db_connection, STORE_ERRORS
from app.config import settings
from app.models.ticket import (
    OrderLineItem, CustomerData, PlannedTicket, IssuedTicket,
    IssuanceResult, OrderTickets, OrderStatus, TicketStatus, TicketRule,
    CredentialValidationResponse
)
from app.models.reconciliation import AuditRecord, AuditType
from app.services.seat_allocator import allocate_next_seat, format_seat_number
from app.services.audit_service import append_audit, append_audits
from app.services.alert_notifier import alert_notifier
from app.utils.qr_generator import (
    new_ticket_identity, encode_credential, decode_and_validate, default_max_age
)
from app.core.exceptions import CapacityExhausted, StoreFailure, TicketIssuanceError
from app.core.logging import log_execution_context

logger = logging.getLogger(__name__)

DEFAULT_TICKET_TYPE = "Standard admission"
SOLD_OUT_REASON = "Tickets sold out - seat pool capacity reached"

INSERT_TICKET_SQL = """
    INSERT INTO tickets (
        id, order_id, event_id, customer_email, user_id, seat_number,
        ticket_number, ticket_type, status, qr_payload, price, quantity,
        created_at, updated_at
    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, 1, $12, $12)
"""


def classify_line_item(item: OrderLineItem) -> Optional[TicketRule]:
    """
    Decide whether a line item carries tickets.

    Rules are evaluated in order and the first match wins: explicit ticket
    type, then an event/ticket reference, then the name pattern fallback for
    upstream data with incomplete metadata.
    """
    if item.ticket_type:
        return TicketRule.EXPLICIT_TICKET_TYPE

    if item.event_id or item.ticket_id:
        return TicketRule.EVENT_REFERENCE

    name = (item.name or "").lower()
    if name and any(pattern in name for pattern in settings.ticket_name_pattern_list):
        return TicketRule.NAME_PATTERN

    return None


def expand_line_items(order_id: str, line_items: List[OrderLineItem]) -> List[PlannedTicket]:
    """Expand ticket-bearing line items into one unit-ticket per quantity"""
    planned = []
    index = 1

    for item in line_items:
        rule = classify_line_item(item)
        if rule is None:
            logger.debug(f"Order {order_id}: line item {item.id or item.name} is not a ticket")
            continue

        logger.info(
            f"Order {order_id}: line item {item.id or item.name} classified as ticket "
            f"by rule {rule.value} (quantity {item.quantity})"
        )

        for _ in range(item.quantity):
            planned.append(PlannedTicket(
                line_item_id=item.id,
                event_id=item.event_id or settings.default_event_id,
                ticket_type=item.ticket_type or item.name or DEFAULT_TICKET_TYPE,
                price=item.unit_price,
                ticket_number=f"{order_id}-item-{index}",
                rule=rule
            ))
            index += 1

    return planned


async def _fetch_order_tickets(conn, order_id: str) -> List[IssuedTicket]:
    rows = await conn.fetch("""
        SELECT id, order_id, event_id, seat_number, ticket_number, ticket_type,
               price, quantity, status, qr_payload, created_at
        FROM tickets WHERE order_id = $1
        ORDER BY seat_number NULLS LAST, ticket_number
    """, order_id)

    tickets = []
    for row in rows:
        ticket = IssuedTicket(**dict(row))
        if ticket.seat_number is not None:
            ticket.seat_label = format_seat_number(ticket.seat_number)
        tickets.append(ticket)
    return tickets


async def _resolve_user_id(conn, order, customer: CustomerData) -> Optional[str]:
    """Buyer's user id: webhook payload, then the order, then a profile matched by email"""
    if customer.user_id:
        return customer.user_id

    if order['user_id']:
        return str(order['user_id'])

    email = customer.email or order['customer_email']
    if not email:
        return None

    profile_id = await conn.fetchval("""
        SELECT id FROM profiles WHERE email = $1 LIMIT 1
    """, email)

    if profile_id:
        logger.info(f"Order {order['id']}: user resolved by customer email")
        return str(profile_id)

    return None


def _result_from_tickets(order_id: str, tickets: List[IssuedTicket], **flags) -> IssuanceResult:
    return IssuanceResult(
        order_id=order_id,
        ticket_ids=[t.id for t in tickets],
        seat_numbers=[t.seat_number for t in tickets if t.seat_number is not None],
        tickets=tickets,
        **flags
    )


async def _mark_refund_required(order_id: str, issuance_id: str, reason: str) -> bool:
    """Move the order to refund_required in its own transaction"""
    try:
        async with get_db_connection() as conn:
            old_status = await conn.fetchval("""
                SELECT status FROM orders WHERE id = $1
            """, order_id)

            await conn.execute("""
                UPDATE orders
                SET status = $2, refund_reason = $3, updated_at = NOW()
                WHERE id = $1
            """, order_id, OrderStatus.REFUND_REQUIRED.value, reason)

            await append_audit(conn, AuditRecord(
                execution_id=issuance_id,
                entity_type="order",
                entity_id=order_id,
                order_id=order_id,
                correction_type=AuditType.REFUND_REQUIRED,
                old_values={"status": old_status},
                new_values={"status": OrderStatus.REFUND_REQUIRED.value},
                metadata={"reason": reason}
            ))
        return True
    except STORE_ERRORS as e:
        logger.error(f"Order {order_id}: could not mark refund_required: {e}", exc_info=True)
        return False


async def issue_tickets(
    order_id: str,
    line_items: Optional[List[OrderLineItem]] = None,
    customer_data: Optional[CustomerData] = None
) -> IssuanceResult:
    """
    Issue one ticket per unit of every ticket-bearing line item of a paid order.

    All tickets are written in a single transaction: either every ticket gets
    a seat and is stored, or nothing is. Re-invoking for an order that already
    has tickets returns the existing set without writing.

    Raises:
        CapacityExhausted: seat pool sold out; the order is moved to
            refund_required and no ticket is created.
        StoreFailure: transient store error; safe to retry.
        TicketIssuanceError: the order does not exist.
    """
    customer = customer_data or CustomerData()
    issuance_id = str(uuid.uuid4())
    context = log_execution_context(issuance_id, order_id)

    try:
        async with get_db_connection() as conn:
            # Row lock serialises duplicate webhook deliveries for this order
            order = await conn.fetchrow("""
                SELECT id, status, user_id, customer_email, customer_name
                FROM orders WHERE id = $1
                FOR UPDATE
            """, order_id)

            if not order:
                raise TicketIssuanceError(f"Order {order_id} not found", 404)

            existing = await _fetch_order_tickets(conn, order_id)
            if existing:
                logger.info(
                    f"Order {order_id}: {len(existing)} tickets already issued, returning existing set",
                    extra={"context": context}
                )
                return _result_from_tickets(order_id, existing, already_issued=True)

            if line_items is None:
                rows = await conn.fetch("""
                    SELECT id, order_id, ticket_id, product_id, name, ticket_type,
                           event_id, quantity, unit_price, total_price, created_at
                    FROM order_line_items WHERE order_id = $1
                    ORDER BY created_at, id
                """, order_id)
                line_items = [OrderLineItem(**dict(row)) for row in rows]

            planned = expand_line_items(order_id, line_items)
            if not planned:
                logger.info(f"Order {order_id}: no ticket-bearing line items", extra={"context": context})
                return IssuanceResult(order_id=order_id, no_ticket_items=True)

            user_id = await _resolve_user_id(conn, order, customer)
            email = customer.email or order['customer_email']
            issued_at = datetime.now(timezone.utc)

            tickets = []
            for unit in planned:
                seat = await allocate_next_seat(conn)
                ticket_id = new_ticket_identity()
                tickets.append(IssuedTicket(
                    id=ticket_id,
                    order_id=order_id,
                    event_id=unit.event_id,
                    seat_number=seat,
                    seat_label=format_seat_number(seat),
                    ticket_number=unit.ticket_number,
                    ticket_type=unit.ticket_type,
                    price=unit.price,
                    status=TicketStatus.ACTIVE,
                    qr_payload=encode_credential(ticket_id, issued_at),
                    created_at=issued_at
                ))

            await conn.executemany(INSERT_TICKET_SQL, [
                (
                    t.id, order_id, t.event_id, email, user_id, t.seat_number,
                    t.ticket_number, t.ticket_type, t.status.value, t.qr_payload,
                    t.price, issued_at
                )
                for t in tickets
            ])

            await append_audits(conn, [
                AuditRecord(
                    execution_id=issuance_id,
                    entity_type="ticket",
                    entity_id=t.id,
                    order_id=order_id,
                    correction_type=AuditType.TICKET_ISSUED,
                    new_values={
                        "seat_number": t.seat_number,
                        "price": t.price,
                        "ticket_number": t.ticket_number,
                    },
                    metadata={
                        "rule": unit.rule.value,
                        "line_item_id": unit.line_item_id,
                        "position": f"{i + 1}/{len(tickets)}",
                    },
                    created_at=issued_at
                )
                for i, (t, unit) in enumerate(zip(tickets, planned))
            ])

    except CapacityExhausted as e:
        # The transaction above has rolled back: no tickets, no seats consumed
        logger.error(f"Order {order_id}: seat pool exhausted, marking refund_required", extra={"context": context})
        marked = await _mark_refund_required(order_id, issuance_id, SOLD_OUT_REASON)
        e.details.update({"order_id": order_id, "refund_required_marked": marked})
        raise
    except STORE_ERRORS as e:
        logger.error(f"Order {order_id}: store failure during issuance: {e}", extra={"context": context})
        raise StoreFailure(f"Ticket issuance failed for order {order_id}", {"order_id": order_id}) from e

    logger.info(
        f"Order {order_id}: issued {len(tickets)} tickets, seats "
        f"{', '.join(t.seat_label for t in tickets)}",
        extra={"context": context}
    )
    return _result_from_tickets(order_id, tickets)


async def handle_order_paid(
    order_id: str,
    customer_data: Optional[CustomerData] = None,
    line_items: Optional[List[OrderLineItem]] = None
) -> IssuanceResult:
    """
    Entry point for the payment webhook once an order is marked paid.
    CapacityExhausted is re-raised so the webhook stops and the refund flow runs.
    """
    try:
        return await issue_tickets(order_id, line_items, customer_data)
    except CapacityExhausted as e:
        if alert_notifier:
            await alert_notifier.send_warning(
                "Tickets sold out",
                f"Order {order_id} was paid but no seats remain; refund required.",
                context=e.details
            )
        raise


async def get_order_tickets(order_id: str) -> OrderTickets:
    """Tickets currently linked to an order"""
    async with get_db_connection(use_transaction=False) as conn:
        tickets = await _fetch_order_tickets(conn, order_id)

    return OrderTickets(
        order_id=order_id,
        exists=len(tickets) > 0,
        quantity=len(tickets),
        tickets=tickets
    )


async def reprocess_order(order_id: str) -> IssuanceResult:
    """Re-run issuance for a paid order (admin recovery)"""
    async with get_db_connection(use_transaction=False) as conn:
        order = await conn.fetchrow("""
            SELECT id, status, customer_email, customer_name, user_id
            FROM orders WHERE id = $1
        """, order_id)

    if not order:
        raise TicketIssuanceError(f"Order {order_id} not found", 404)

    if order['status'] != OrderStatus.PAID.value:
        raise TicketIssuanceError(
            f"Order {order_id} is not paid (status: {order['status']})",
            details={"status": order['status']}
        )

    return await issue_tickets(order_id, customer_data=CustomerData(
        email=order['customer_email'],
        name=order['customer_name'],
        user_id=str(order['user_id']) if order['user_id'] else None
    ))


async def get_ticket(ticket_id: str) -> Optional[IssuedTicket]:
    async with get_db_connection(use_transaction=False) as conn:
        row = await conn.fetchrow("""
            SELECT id, order_id, event_id, seat_number, ticket_number, ticket_type,
                   price, quantity, status, qr_payload, created_at
            FROM tickets WHERE id = $1
        """, ticket_id)

    if not row:
        return None

    ticket = IssuedTicket(**dict(row))
    if ticket.seat_number is not None:
        ticket.seat_label = format_seat_number(ticket.seat_number)
    return ticket


async def validate_credential(payload: str) -> CredentialValidationResponse:
    """
    Check a scanned credential: signature and age first, then the ticket
    must exist and still be active.
    """
    ticket_id = decode_and_validate(payload, max_age=default_max_age())
    if ticket_id is None:
        return CredentialValidationResponse(is_valid=False, message="Invalid or expired credential")

    ticket = await get_ticket(ticket_id)
    if not ticket:
        return CredentialValidationResponse(is_valid=False, ticket_id=ticket_id, message="Ticket not found")

    if ticket.status != TicketStatus.ACTIVE:
        return CredentialValidationResponse(
            is_valid=False,
            ticket_id=ticket_id,
            message=f"Ticket is {ticket.status.value}"
        )

    return CredentialValidationResponse(is_valid=True, ticket_id=ticket_id, message="Valid ticket")
