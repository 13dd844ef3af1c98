from pydantic import BaseModel, Field, EmailStr, computed_field, field_validator
from typing import Optional, List
from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID


class OrderStatus(str, Enum):
    """Order states"""
    PENDING = "pending"
    PAID = "paid"
    REFUND_REQUIRED = "refund_required"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class TicketStatus(str, Enum):
    """Issued ticket states"""
    ACTIVE = "active"
    USED = "used"
    CANCELLED = "cancelled"


class TicketRule(str, Enum):
    """Rule that classified a line item as ticket-bearing, in evaluation order"""
    EXPLICIT_TICKET_TYPE = "explicit_ticket_type"
    EVENT_REFERENCE = "event_reference"
    NAME_PATTERN = "name_pattern"


class OrderLineItem(BaseModel):
    """Priced line within an order"""
    id: Optional[str] = None
    order_id: Optional[str] = None
    ticket_id: Optional[str] = None
    product_id: Optional[str] = None
    name: Optional[str] = None
    ticket_type: Optional[str] = None
    event_id: Optional[str] = None
    quantity: int = Field(default=1, ge=1)
    unit_price: Decimal = Field(default=Decimal("0"), ge=0)
    total_price: Optional[Decimal] = None
    created_at: Optional[datetime] = None

    @field_validator('id', 'order_id', 'ticket_id', 'product_id', 'event_id', mode='before')
    @classmethod
    def convert_uuid_to_str(cls, v):
        if isinstance(v, UUID):
            return str(v)
        return v

    class Config:
        from_attributes = True


class CustomerData(BaseModel):
    """Buyer identity forwarded by the webhook handler"""
    email: Optional[EmailStr] = None
    name: Optional[str] = None
    user_id: Optional[str] = None


class PlannedTicket(BaseModel):
    """One unit-ticket expanded from a line item, before seat allocation"""
    line_item_id: Optional[str] = None
    event_id: Optional[str] = None
    ticket_type: str
    price: Decimal
    ticket_number: str
    rule: TicketRule


class IssuedTicket(BaseModel):
    """Ticket row as returned to callers"""
    id: str
    order_id: str
    event_id: Optional[str] = None
    seat_number: Optional[int] = None
    seat_label: Optional[str] = None
    ticket_number: Optional[str] = None
    ticket_type: Optional[str] = None
    price: Decimal
    quantity: int = 1
    status: TicketStatus = TicketStatus.ACTIVE
    qr_payload: Optional[str] = None
    created_at: Optional[datetime] = None

    @field_validator('id', 'order_id', 'event_id', mode='before')
    @classmethod
    def convert_uuid_to_str(cls, v):
        if isinstance(v, UUID):
            return str(v)
        return v

    class Config:
        from_attributes = True


class IssuanceResult(BaseModel):
    """Outcome of issue_tickets"""
    order_id: str
    ticket_ids: List[str] = Field(default_factory=list)
    seat_numbers: List[int] = Field(default_factory=list)
    tickets: List[IssuedTicket] = Field(default_factory=list)
    already_issued: bool = False
    no_ticket_items: bool = False

    @computed_field
    @property
    def total_tickets(self) -> int:
        return len(self.ticket_ids)


class IssueTicketsRequest(BaseModel):
    """Request from the payment webhook handler"""
    order_id: str = Field(..., description="Paid order id")
    line_items: Optional[List[OrderLineItem]] = Field(None, description="Defaults to the stored line items")
    customer_data: Optional[CustomerData] = None


class OrderTickets(BaseModel):
    """Tickets currently linked to an order"""
    order_id: str
    exists: bool
    quantity: int
    tickets: List[IssuedTicket] = Field(default_factory=list)


class SeatAvailability(BaseModel):
    """Seat pool usage"""
    capacity: int
    allocated: int
    remaining: int
    sold_out: bool


class CredentialValidationRequest(BaseModel):
    """Scanned credential payload"""
    payload: str = Field(..., description="Data read from the QR code")


class CredentialValidationResponse(BaseModel):
    """Result of credential validation"""
    is_valid: bool
    ticket_id: Optional[str] = None
    message: str
