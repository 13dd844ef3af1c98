from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime
from decimal import Decimal
from enum import Enum
from app.models.ticket import OrderLineItem


class InconsistencyType(str, Enum):
    """Kinds of price drift found on ticket line items"""
    PRICE_MISMATCH = "price_mismatch"
    TOTAL_MISMATCH = "total_mismatch"
    INTRA_ORDER_PRICE_MISMATCH = "intra_order_price_mismatch"


class CorrectionField(str, Enum):
    """Line item fields the corrector may rewrite"""
    UNIT_PRICE = "unit_price"
    TOTAL_PRICE = "total_price"


class AuditType(str, Enum):
    """correction_type values written to reconciliation_audit"""
    TICKET_ISSUED = "ticket_issued"
    ORPHAN_TICKET_LINKED = "orphan_ticket_linked"
    ORPHAN_ORDER_DETECTED = "orphan_order_detected"
    PRICE_CORRECTION = "price_correction"
    BATCH_VALIDATION = "batch_validation"
    REFUND_REQUIRED = "refund_required"


class MatchOutcome(str, Enum):
    """Result of ranking orphan ticket candidates"""
    NONE = "none"
    UNIQUE = "unique"
    CLOSEST = "closest"
    AMBIGUOUS = "ambiguous"


class OrphanCandidate(BaseModel):
    """Line item that references an orphan ticket"""
    line_item_id: str
    order_id: str
    quantity: int = 1
    created_at: datetime


class OrphanMatch(BaseModel):
    """Ranked candidates for one orphan ticket"""
    outcome: MatchOutcome
    selected: Optional[OrphanCandidate] = None
    candidates: List[OrphanCandidate] = Field(default_factory=list)
    delta_seconds: Optional[float] = None

    @property
    def heuristic(self) -> bool:
        return self.outcome == MatchOutcome.CLOSEST


class OrphanTicket(BaseModel):
    """Ticket without order linkage"""
    ticket_id: str
    event_id: Optional[str] = None
    price: Optional[Decimal] = None
    created_at: datetime
    outcome: Optional[MatchOutcome] = None
    candidate_order_ids: List[str] = Field(default_factory=list)


class OrphanTicketReport(BaseModel):
    """Outcome of the orphan-ticket linking step"""
    processed: int = 0
    linked: int = 0
    heuristic_links: int = 0
    unresolved: List[OrphanTicket] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)


class OrphanOrder(BaseModel):
    """Pending order with no gateway charge"""
    order_id: str
    customer_email: Optional[str] = None
    total_amount: Decimal = Decimal("0")
    created_at: datetime
    items_count: int = 0
    has_tickets: bool = False


class PricedLineItem(OrderLineItem):
    """Line item joined with the catalog price of its event"""
    catalog_price: Optional[Decimal] = None


class PriceInconsistency(BaseModel):
    """Detected drift on a single line item"""
    order_id: str
    line_item_id: str
    event_id: Optional[str] = None
    ticket_id: Optional[str] = None
    inconsistency_type: InconsistencyType
    expected_value: Decimal
    actual_value: Decimal
    quantity: int = 1
    current_total: Optional[Decimal] = None
    catalog_price: Optional[Decimal] = None


class Correction(BaseModel):
    """One field rewrite on one line item"""
    line_item_id: str
    order_id: Optional[str] = None
    field: CorrectionField
    old_value: Decimal
    new_value: Decimal
    reason: str
    source: AuditType = AuditType.PRICE_CORRECTION


class CorrectionOutcome(BaseModel):
    """Outcome of apply_corrections"""
    applied: int = 0
    skipped: int = 0
    errors: List[str] = Field(default_factory=list)
    applied_line_items: List[str] = Field(default_factory=list)


class BatchValidation(BaseModel):
    """Outcome of validating one order's batch purchases"""
    order_id: str
    is_valid: bool = True
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    corrections: List[Correction] = Field(default_factory=list)


class ScanResult(BaseModel):
    """Read-only scan of the reconciliation window"""
    orphan_tickets: List[OrphanTicket] = Field(default_factory=list)
    orphan_orders: List[OrphanOrder] = Field(default_factory=list)
    price_inconsistencies: List[PriceInconsistency] = Field(default_factory=list)


class AuditRecord(BaseModel):
    """Row appended to reconciliation_audit"""
    execution_id: str
    entity_type: str
    entity_id: str
    order_id: Optional[str] = None
    correction_type: AuditType
    old_values: Dict[str, Any] = Field(default_factory=dict)
    new_values: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None


class ReconciliationResult(BaseModel):
    """Summary of one reconciliation pass"""
    execution_id: str
    success: bool = False
    skipped: bool = False
    processed: int = 0
    corrected: int = 0
    inconsistencies_found: int = 0
    orphan_tickets_processed: int = 0
    orphan_tickets_corrected: int = 0
    orphan_tickets_unresolved: int = 0
    orphan_orders_found: int = 0
    batch_corrections: int = 0
    api_calls: int = 0
    api_failures: int = 0
    lock_acquisition_ms: int = 0
    execution_time_ms: int = 0
    errors: List[str] = Field(default_factory=list)

    @property
    def api_success_rate(self) -> float:
        if self.api_calls == 0:
            return 1.0
        return (self.api_calls - self.api_failures) / self.api_calls
