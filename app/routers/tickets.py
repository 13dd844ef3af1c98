from fastapi import APIRouter, Depends, HTTPException, Response
from app.core.dependencies import require_internal_token
from app.models.ticket import (
    IssueTicketsRequest, IssuanceResult, OrderTickets,
    CredentialValidationRequest, CredentialValidationResponse
)
from app.services import ticket_issuance_service
from app.utils.qr_generator import generate_qr_image

router = APIRouter()


@router.post("/issue", response_model=IssuanceResult, dependencies=[Depends(require_internal_token)])
async def issue_tickets(data: IssueTicketsRequest):
    """
    Issue tickets for a paid order.

    Called by the payment webhook handler. Idempotent: a second call for the
    same order returns the tickets already issued. Responds 409 when the seat
    pool is sold out (the order is then marked refund_required).
    """
    return await ticket_issuance_service.handle_order_paid(data.order_id, data.customer_data, data.line_items)


@router.get("/orders/{order_id}", response_model=OrderTickets, dependencies=[Depends(require_internal_token)])
async def get_order_tickets(order_id: str):
    """Tickets linked to an order"""
    return await ticket_issuance_service.get_order_tickets(order_id)


@router.post(
    "/orders/{order_id}/reprocess",
    response_model=IssuanceResult,
    dependencies=[Depends(require_internal_token)]
)
async def reprocess_order(order_id: str):
    """Re-run issuance for a paid order whose tickets were never created"""
    return await ticket_issuance_service.reprocess_order(order_id)


@router.get("/{ticket_id}/qr", dependencies=[Depends(require_internal_token)])
async def get_ticket_qr(ticket_id: str):
    """
    Ticket credential as a PNG QR code.
    Useful for ticket delivery and reprinting.
    """
    ticket = await ticket_issuance_service.get_ticket(ticket_id)
    if not ticket or not ticket.qr_payload:
        raise HTTPException(status_code=404, detail="Ticket not found")

    return Response(
        content=generate_qr_image(ticket.qr_payload),
        media_type="image/png",
        headers={
            "Content-Disposition": f"inline; filename=ticket-{ticket_id}.png",
            "X-Seat-Number": ticket.seat_label or ""
        }
    )


@router.post("/credentials/validate", response_model=CredentialValidationResponse)
async def validate_credential(data: CredentialValidationRequest):
    """Validate a scanned credential at the entrance. Does not mark the ticket used."""
    return await ticket_issuance_service.validate_credential(data.payload)
