from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum


class AlertSeverity(str, Enum):
    """Alert severities, lowest first"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ComparisonOperator(str, Enum):
    GT = "gt"
    LT = "lt"
    EQ = "eq"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


class AlertRule(BaseModel):
    """Threshold rule evaluated against every recorded run"""
    metric: str
    operator: ComparisonOperator
    threshold: float
    severity: AlertSeverity
    description: str

    def is_triggered(self, value: Optional[float]) -> bool:
        if value is None:
            return False
        if self.operator == ComparisonOperator.GT:
            return value > self.threshold
        if self.operator == ComparisonOperator.LT:
            return value < self.threshold
        return value == self.threshold


class ExecutionMetrics(BaseModel):
    """One reconciliation run, as persisted in reconciliation_metrics"""
    execution_id: str
    recorded_at: datetime
    duration_ms: int
    orders_processed: int = 0
    orders_corrected: int = 0
    errors_count: int = 0
    api_calls_count: int = 0
    api_success_rate: float = 1.0
    lock_acquisition_time_ms: Optional[int] = None
    batch_corrections: int = 0
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def duration_seconds(self) -> float:
        return self.duration_ms / 1000

    @property
    def lock_acquisition_seconds(self) -> Optional[float]:
        if self.lock_acquisition_time_ms is None:
            return None
        return self.lock_acquisition_time_ms / 1000


class Alert(BaseModel):
    """Threshold breach raised for one run"""
    execution_id: str
    metric: str
    threshold_value: float
    actual_value: float
    severity: AlertSeverity
    description: str
    triggered_at: datetime


class ExecutionStats(BaseModel):
    """Aggregate over the runs of the last N hours"""
    hours: int
    total_executions: int = 0
    avg_duration_ms: int = 0
    total_processed: int = 0
    total_corrected: int = 0
    avg_success_rate: float = 0.0
    recent_errors: int = 0
    last_execution: Optional[datetime] = None


class HealthCheckItem(BaseModel):
    name: str
    status: bool
    message: Optional[str] = None


class HealthReport(BaseModel):
    """Aggregated health of the reconciliation engine"""
    status: HealthStatus
    checks: List[HealthCheckItem] = Field(default_factory=list)
    checked_at: datetime


class ExecutionLock(BaseModel):
    """Current holder of the reconciliation lease"""
    holder_id: str
    locked_at: datetime
    expires_at: datetime
    process_info: Dict[str, Any] = Field(default_factory=dict)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now
