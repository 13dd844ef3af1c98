# Models module for the reconciliation & ticket-issuance engine
from app.models.ticket import (
    OrderStatus, TicketStatus, TicketRule,
    OrderLineItem, CustomerData, PlannedTicket, IssuedTicket, IssuanceResult,
    IssueTicketsRequest, OrderTickets, SeatAvailability,
    CredentialValidationRequest, CredentialValidationResponse
)
from app.models.reconciliation import (
    InconsistencyType, CorrectionField, AuditType, MatchOutcome,
    OrphanCandidate, OrphanMatch, OrphanTicket, OrphanTicketReport, OrphanOrder,
    PricedLineItem, PriceInconsistency, Correction, CorrectionOutcome,
    BatchValidation, ScanResult, AuditRecord, ReconciliationResult
)
from app.models.monitoring import (
    AlertSeverity, ComparisonOperator, HealthStatus, AlertRule, ExecutionMetrics,
    Alert, ExecutionStats, HealthCheckItem, HealthReport, ExecutionLock
)
